"""Shopify Admin REST API gateway.

Resolves customer-facing order numbers to Shopify orders and executes
cancel / refund actions against them. Refunds go through Shopify's
``refunds/calculate`` endpoint first; when an admin supplies a manual total
the suggested transactions are rescaled by :func:`reconcile_refund_transactions`
before the refund is created.
"""
from __future__ import annotations

import json
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence

import httpx

from helpdesk.errors import NotFoundError, ProviderError, ValidationError
from helpdesk.utils.logger import logger, sanitize

DEFAULT_REFUND_NOTE = "Refund initiated from Help Centre"
DEFAULT_RESTOCK_TYPE = "no_restock"

_CENT = Decimal("0.01")
# Manual totals closer than this to the suggested total are not rescaled.
_SCALE_TOLERANCE = Decimal("0.001")

# Fields of a calculated refund that must not be echoed back on create.
_REFUND_ECHO_FIELDS = ("id", "order_id", "created_at", "processed_at")


def normalize_order_number(order_number: str) -> str:
    """``"#1001"``, ``"1001"`` and ``" 1001 "`` all become ``"1001"``."""
    value = (order_number or "").strip()
    if value.startswith("#"):
        value = value[1:].strip()
    return value


def _money(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"Invalid amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return amount


def _round_cents(value: Decimal) -> Decimal:
    try:
        return value.quantize(_CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValidationError(f"Amount out of range: {value}") from exc


def filter_refund_transactions(raw: Optional[Sequence[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """Keep suggested transactions that carry a parent id, amount and gateway."""
    transactions: List[Dict[str, Any]] = []
    for tx in raw or []:
        if not isinstance(tx, dict):
            continue
        if tx.get("parent_id") is None or tx.get("amount") is None or tx.get("gateway") is None:
            continue
        transactions.append(
            {
                "parent_id": tx["parent_id"],
                "amount": tx["amount"],
                "kind": "refund",
                "gateway": tx["gateway"],
            }
        )
    return transactions


def reconcile_refund_transactions(
    transactions: List[Dict[str, Any]],
    manual_amount: Optional[Any] = None,
) -> List[Dict[str, Any]]:
    """Rescale suggested refund transactions so they sum to ``manual_amount``.

    Every amount is multiplied by ``manual / suggested`` and rounded to cents.
    The rounding residual is added to the first transaction (never below
    zero), so the set sums exactly to the manual amount. Transactions are
    returned untouched when no override is given, when the override is within
    0.001 of the suggested total, or when the suggested total is zero.
    """
    if manual_amount is None or not transactions:
        return transactions

    manual = _money(manual_amount)
    if manual <= 0:
        raise ValidationError("Refund amount must be greater than zero")

    suggested_total = sum((_money(tx["amount"]) for tx in transactions), Decimal("0"))
    if suggested_total <= 0:
        return transactions
    if abs(manual - suggested_total) <= _SCALE_TOLERANCE:
        return transactions

    scale = manual / suggested_total
    amounts = [_round_cents(_money(tx["amount"]) * scale) for tx in transactions]

    diff = _round_cents(manual - sum(amounts, Decimal("0")))
    if diff != 0:
        amounts[0] = max(Decimal("0"), amounts[0] + diff)

    return [{**tx, "amount": f"{amount:.2f}"} for tx, amount in zip(transactions, amounts)]


def build_refund_create_payload(
    calculated: Dict[str, Any],
    transactions: List[Dict[str, Any]],
    note: Optional[str],
) -> Dict[str, Any]:
    """Turn a calculated refund into the body for ``refunds.json``.

    Provider-computed fields (shipping, duties, line items...) are kept as-is;
    only the note and transactions are overridden.
    """
    payload = dict(calculated)
    payload["note"] = note or calculated.get("note") or DEFAULT_REFUND_NOTE
    if transactions:
        payload["transactions"] = transactions
    else:
        payload.pop("transactions", None)
    for field in _REFUND_ECHO_FIELDS:
        payload.pop(field, None)
    return payload


def parse_provider_error(text: str, status: Optional[int]) -> ProviderError:
    """Extract a readable message from a Shopify error body.

    Prefers ``error``, then ``errors.base``, then every value of an
    ``errors`` map; falls back to the raw body.
    """
    message = text
    try:
        data = json.loads(text)
    except (TypeError, ValueError):
        data = None

    if isinstance(data, dict):
        errors = data.get("errors")
        if data.get("error"):
            message = str(data["error"])
        elif isinstance(errors, dict) and errors.get("base"):
            base = errors["base"]
            message = " ".join(str(part) for part in base) if isinstance(base, list) else str(base)
        elif isinstance(errors, dict) and errors:
            parts: List[str] = []
            for value in errors.values():
                if isinstance(value, list):
                    parts.extend(str(v) for v in value)
                else:
                    parts.append(str(value))
            if parts:
                message = " ".join(parts)
        elif isinstance(errors, str) and errors:
            message = errors

    return ProviderError(message or f"Shopify request failed ({status})", status=status)


class ShopifyClient:
    """Async client for the subset of the Shopify Admin API the help desk uses."""

    def __init__(
        self,
        shop_domain: str,
        api_version: str,
        access_token: str,
        *,
        timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.shop_domain = shop_domain
        self.api_version = api_version
        self._client = httpx.AsyncClient(
            base_url=f"https://{shop_domain}/admin/api/{api_version}",
            headers={
                "X-Shopify-Access-Token": access_token,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=httpx.Timeout(timeout, connect=5.0),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def admin_order_url(self, order_id: int) -> str:
        return f"https://{self.shop_domain}/admin/orders/{order_id}"

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.RequestError as exc:
            logger.error("Shopify %s %s transport error: %s", method, path, exc)
            raise ProviderError(f"Shopify request failed: {exc}") from exc

        logger.info("Shopify %s %s status=%s", method, path, resp.status_code)
        if resp.is_success:
            return resp

        logger.warning(
            "Shopify %s %s failed status=%s headers=%s body=%s",
            method,
            path,
            resp.status_code,
            sanitize(dict(resp.request.headers)),
            resp.text[:500],
        )
        raise parse_provider_error(resp.text, resp.status_code)

    async def find_order_by_name(self, order_number: str) -> Optional[Dict[str, Any]]:
        """Return the first order named ``#<order_number>``, or None."""
        normalized = normalize_order_number(order_number)
        resp = await self._request(
            "GET",
            "/orders.json",
            params={"name": f"#{normalized}", "status": "any", "limit": 1},
        )
        orders = resp.json().get("orders") or []
        return orders[0] if orders else None

    async def get_order(self, order_id: int) -> Dict[str, Any]:
        try:
            resp = await self._request("GET", f"/orders/{order_id}.json", params={"status": "any"})
        except ProviderError as exc:
            if exc.status == 404:
                raise NotFoundError(f"Shopify order {order_id} not found") from exc
            raise
        order = resp.json().get("order")
        if not order:
            raise NotFoundError(f"Shopify order {order_id} not found")
        return order

    async def cancel_order(self, order_id: int, reason: str = "customer") -> None:
        await self._request("POST", f"/orders/{order_id}/cancel.json", json={"reason": reason})

    async def refund_full_order(
        self,
        order_id: int,
        note: Optional[str] = None,
        manual_amount: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Refund every line item of the order without restocking."""
        order = await self.get_order(order_id)
        refund_line_items = [
            {"line_item_id": li["id"], "quantity": li["quantity"], "restock_type": DEFAULT_RESTOCK_TYPE}
            for li in order.get("line_items") or []
        ]
        return await self._execute_refund(order_id, order, refund_line_items, note, manual_amount)

    async def refund_partial_order(
        self,
        order_id: int,
        line_items: Sequence[Dict[str, int]],
        *,
        restock_type: Optional[str] = None,
        note: Optional[str] = None,
        manual_amount: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Refund the given ``{"line_item_id", "quantity"}`` entries.

        Quantities are clamped to what the order holds; non-positive ones are
        skipped. An id missing from the order is an error.
        """
        if not line_items:
            raise ValidationError("At least one line item with quantity > 0 is required")

        order = await self.get_order(order_id)
        by_id = {li["id"]: li for li in order.get("line_items") or []}
        restock = restock_type or DEFAULT_RESTOCK_TYPE

        items: List[Dict[str, Any]] = []
        for entry in line_items:
            line_item_id = entry["line_item_id"]
            quantity = entry["quantity"]
            if quantity <= 0:
                continue
            order_line = by_id.get(line_item_id)
            if order_line is None:
                raise ValidationError(f"Line item {line_item_id} not found in order")
            qty = min(quantity, order_line["quantity"])
            if qty > 0:
                items.append({"line_item_id": line_item_id, "quantity": qty, "restock_type": restock})

        if not items:
            raise ValidationError("At least one line item with quantity > 0 is required")

        return await self._execute_refund(order_id, order, items, note, manual_amount)

    async def _execute_refund(
        self,
        order_id: int,
        order: Dict[str, Any],
        refund_line_items: List[Dict[str, Any]],
        note: Optional[str],
        manual_amount: Optional[float],
    ) -> Dict[str, Any]:
        if manual_amount is not None and _money(manual_amount) <= 0:
            raise ValidationError("Refund amount must be greater than zero")

        calc_resp = await self._request(
            "POST",
            f"/orders/{order_id}/refunds/calculate.json",
            json={
                "refund": {
                    "currency": order.get("currency"),
                    "refund_line_items": refund_line_items,
                    "note": note or DEFAULT_REFUND_NOTE,
                }
            },
        )
        calculated = calc_resp.json().get("refund")
        if not calculated:
            raise ProviderError("Shopify refund calculate returned no refund payload")

        transactions = filter_refund_transactions(calculated.get("transactions"))
        transactions = reconcile_refund_transactions(transactions, manual_amount)

        payload = build_refund_create_payload(calculated, transactions, note)
        create_resp = await self._request("POST", f"/orders/{order_id}/refunds.json", json={"refund": payload})
        logger.info(
            "Shopify refund created order_id=%s transactions=%s manual_amount=%s",
            order_id,
            len(transactions),
            manual_amount,
        )
        return create_resp.json().get("refund") or {}
