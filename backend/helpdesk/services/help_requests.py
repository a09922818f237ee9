"""Persistence for help requests and their attachments.

The one-open-request-per-order rule lives in the database
(``idx_help_requests_one_open_per_order``); writes that trip it are mapped to
:class:`ConflictError` here.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from helpdesk.errors import ConflictError
from helpdesk.models.help_request import HelpRequestCreate
from helpdesk.models_sqlalchemy.models import (
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    HelpRequest,
    HelpRequestAttachment,
    utcnow,
)
from helpdesk.services.shopify import normalize_order_number
from helpdesk.utils.logger import logger

OPEN_REQUEST_MESSAGE = (
    "You already have an open request for this order. "
    "Please wait for it to be processed or contact support."
)

_UPDATABLE_FIELDS = ("status", "admin_notes", "provider_order_id", "provider_shop")


def _commit_or_conflict(db: Session, context: str) -> None:
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.info("Open-request constraint hit during %s: %s", context, exc.orig)
        raise ConflictError(OPEN_REQUEST_MESSAGE, code="OPEN_REQUEST_EXISTS") from exc


def has_open_request(db: Session, order_number: str) -> bool:
    normalized = normalize_order_number(order_number)
    row = (
        db.query(HelpRequest.id)
        .filter(
            HelpRequest.order_number.in_([normalized, f"#{normalized}"]),
            HelpRequest.status.in_(OPEN_STATUSES),
        )
        .first()
    )
    return row is not None


def create_help_request(db: Session, payload: HelpRequestCreate) -> HelpRequest:
    request = HelpRequest(
        type=payload.type.value,
        customer_email=payload.customer_email.strip(),
        customer_phone=(payload.customer_phone or "").strip() or None,
        customer_name=payload.customer_name.strip(),
        order_number=normalize_order_number(payload.order_number) or payload.order_number.strip(),
        reason=(payload.reason or "").strip() or None,
    )
    db.add(request)
    _commit_or_conflict(db, "create")
    db.refresh(request)
    logger.info("Help request created id=%s type=%s order=%s", request.id, request.type, request.order_number)
    return request


def list_help_requests(
    db: Session,
    *,
    type: Optional[str] = None,
    status: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[HelpRequest]:
    query = db.query(HelpRequest)
    if type:
        query = query.filter(HelpRequest.type == type)
    if status:
        query = query.filter(HelpRequest.status == status)
    if search and search.strip():
        like = f"%{search.strip()}%"
        query = query.filter(
            or_(
                HelpRequest.order_number.ilike(like),
                HelpRequest.customer_email.ilike(like),
                HelpRequest.customer_name.ilike(like),
            )
        )
    return (
        query.order_by(HelpRequest.created_at.desc())
        .limit(limit)
        .offset(offset)
        .all()
    )


def get_help_request(db: Session, request_id: str) -> Optional[HelpRequest]:
    return db.get(HelpRequest, request_id)


def latest_request_for_customer(db: Session, order_number: str, email: str) -> Optional[HelpRequest]:
    return (
        db.query(HelpRequest)
        .filter(
            HelpRequest.order_number == normalize_order_number(order_number),
            func.lower(HelpRequest.customer_email) == email.strip().lower(),
        )
        .order_by(HelpRequest.created_at.desc())
        .first()
    )


def update_help_request(
    db: Session,
    request_id: str,
    fields: Dict[str, Any],
    acting_admin_id: Optional[str] = None,
) -> Optional[HelpRequest]:
    """Apply the fields present in ``fields``.

    Moving to ``completed`` or ``rejected`` stamps ``processed_at`` (and
    ``processed_by`` when an admin is known). With nothing to write this is a
    plain fetch. Returns None when the id does not exist.
    """
    request = get_help_request(db, request_id)
    if request is None:
        return None

    changes = {key: fields[key] for key in _UPDATABLE_FIELDS if key in fields}
    if not changes:
        return request

    for key, value in changes.items():
        setattr(request, key, getattr(value, "value", value))

    if changes.get("status") is not None and request.status in TERMINAL_STATUSES:
        request.processed_at = utcnow()
        if acting_admin_id:
            request.processed_by = acting_admin_id

    request.updated_at = utcnow()
    _commit_or_conflict(db, "update")
    db.refresh(request)
    logger.info("Help request updated id=%s fields=%s", request.id, sorted(changes))
    return request


def list_attachments(db: Session, request_id: str) -> List[HelpRequestAttachment]:
    return (
        db.query(HelpRequestAttachment)
        .filter(HelpRequestAttachment.request_id == request_id)
        .order_by(HelpRequestAttachment.created_at.asc())
        .all()
    )


def create_attachment(
    db: Session,
    *,
    request_id: str,
    object_url: str,
    object_container: str,
    object_path: str,
    file_name: Optional[str] = None,
    content_type: Optional[str] = None,
    file_size_bytes: Optional[int] = None,
) -> HelpRequestAttachment:
    attachment = HelpRequestAttachment(
        request_id=request_id,
        object_url=object_url,
        object_container=object_container,
        object_path=object_path,
        file_name=file_name,
        content_type=content_type,
        file_size_bytes=file_size_bytes,
    )
    db.add(attachment)
    db.commit()
    db.refresh(attachment)
    return attachment
