"""Status changes and provider-backed actions for help requests.

Any status may be PATCHed to any other unless ``STRICT_STATUS_TRANSITIONS``
is enabled, in which case :data:`ALLOWED_TRANSITIONS` applies. A successful
provider cancel/refund always completes the request.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from helpdesk.errors import NotFoundError, ValidationError
from helpdesk.models.help_request import HelpRequestUpdate, RefundRequest
from helpdesk.models_sqlalchemy.models import HelpRequest, HelpRequestStatus
from helpdesk.services import help_requests as store
from helpdesk.services.shopify import ShopifyClient
from helpdesk.utils.logger import logger

ALLOWED_TRANSITIONS = {
    "pending": {"in_progress", "approved", "rejected", "completed"},
    "in_progress": {"approved", "rejected", "completed"},
    "approved": {"completed", "rejected"},
    "rejected": set(),
    "completed": set(),
}


def reference_code(request_id: str) -> str:
    """Short customer-facing reference: first 8 chars of the id, upper-cased."""
    return str(request_id)[:8].upper()


def check_transition(old_status: str, new_status: str) -> None:
    if old_status == new_status:
        return
    if new_status not in ALLOWED_TRANSITIONS.get(old_status, set()):
        raise ValidationError(
            f"Transition from {old_status} to {new_status} is not allowed",
            code="invalid_transition",
        )


def apply_admin_update(
    db: Session,
    request_id: str,
    payload: HelpRequestUpdate,
    admin_id: Optional[str],
    *,
    strict: bool = False,
) -> HelpRequest:
    fields = payload.model_dump(exclude_unset=True)
    if "status" in fields and fields["status"] is None:
        raise ValidationError("status cannot be null")

    if strict and fields.get("status") is not None:
        current = store.get_help_request(db, request_id)
        if current is None:
            raise NotFoundError("Request not found")
        check_transition(current.status, HelpRequestStatus(fields["status"]).value)

    updated = store.update_help_request(db, request_id, fields, admin_id)
    if updated is None:
        raise NotFoundError("Request not found")
    return updated


def _order_not_found(help_request: HelpRequest) -> NotFoundError:
    return NotFoundError(f"No Shopify order found for #{help_request.order_number}")


async def resolve_provider_order_id(shopify: ShopifyClient, help_request: HelpRequest) -> int:
    """Use the stored provider order id, or look it up by order number."""
    if help_request.provider_order_id:
        return int(help_request.provider_order_id)
    order = await shopify.find_order_by_name(help_request.order_number)
    if not order:
        raise _order_not_found(help_request)
    return int(order["id"])


async def lookup_provider_order(
    db: Session,
    shopify: ShopifyClient,
    help_request: HelpRequest,
    admin_id: Optional[str],
) -> Dict[str, Any]:
    order = await shopify.find_order_by_name(help_request.order_number)
    if not order:
        raise _order_not_found(help_request)

    updated = store.update_help_request(
        db,
        help_request.id,
        {"provider_order_id": str(order["id"]), "provider_shop": shopify.shop_domain},
        admin_id,
    )
    return {
        "request": updated or help_request,
        "provider": {
            "order_id": str(order["id"]),
            "order_name": order.get("name"),
            "admin_url": shopify.admin_order_url(order["id"]),
            "financial_status": order.get("financial_status"),
            "fulfillment_status": order.get("fulfillment_status"),
            "total_price": order.get("total_price"),
            "currency": order.get("currency"),
        },
    }


async def provider_order_summary(shopify: ShopifyClient, help_request: HelpRequest) -> Dict[str, Any]:
    order_id = await resolve_provider_order_id(shopify, help_request)
    order = await shopify.get_order(order_id)
    return {
        "order_id": order["id"],
        "order_name": order.get("name"),
        "currency": order.get("currency"),
        "line_items": [
            {
                "id": li["id"],
                "title": li.get("title"),
                "variant_title": li.get("variant_title"),
                "quantity": li["quantity"],
                "price": li.get("price"),
            }
            for li in order.get("line_items") or []
        ],
        "admin_url": shopify.admin_order_url(order_id),
    }


def _complete_after_provider_action(
    db: Session,
    shopify: ShopifyClient,
    help_request: HelpRequest,
    order_id: int,
    admin_id: Optional[str],
) -> HelpRequest:
    updated = store.update_help_request(
        db,
        help_request.id,
        {
            "status": HelpRequestStatus.completed.value,
            "provider_order_id": str(order_id),
            "provider_shop": shopify.shop_domain,
        },
        admin_id,
    )
    return updated or help_request


async def cancel_via_provider(
    db: Session,
    shopify: ShopifyClient,
    help_request: HelpRequest,
    admin_id: Optional[str],
) -> Dict[str, Any]:
    order_id = await resolve_provider_order_id(shopify, help_request)
    await shopify.cancel_order(order_id)
    logger.info("Order cancelled in Shopify request_id=%s order_id=%s", help_request.id, order_id)

    return {
        "request": _complete_after_provider_action(db, shopify, help_request, order_id, admin_id),
        "provider": {"admin_url": shopify.admin_order_url(order_id)},
        "message": "Order cancelled in Shopify",
    }


async def refund_via_provider(
    db: Session,
    shopify: ShopifyClient,
    help_request: HelpRequest,
    payload: RefundRequest,
    admin_id: Optional[str],
) -> Dict[str, Any]:
    if payload.refund_amount is not None and payload.refund_amount <= 0:
        raise ValidationError("refund_amount must be greater than zero")

    order_id = await resolve_provider_order_id(shopify, help_request)
    note = payload.note or f"Refund for help request {help_request.id}"

    if payload.refund_line_items:
        await shopify.refund_partial_order(
            order_id,
            [{"line_item_id": li.line_item_id, "quantity": li.quantity} for li in payload.refund_line_items],
            restock_type=payload.restock_type,
            note=note,
            manual_amount=payload.refund_amount,
        )
    else:
        await shopify.refund_full_order(order_id, note=note, manual_amount=payload.refund_amount)
    logger.info("Refund initiated in Shopify request_id=%s order_id=%s", help_request.id, order_id)

    return {
        "request": _complete_after_provider_action(db, shopify, help_request, order_id, admin_id),
        "provider": {"admin_url": shopify.admin_order_url(order_id)},
        "message": "Refund initiated in Shopify",
    }
