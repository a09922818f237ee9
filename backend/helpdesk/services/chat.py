"""Chat threads attached to help requests.

Sender attribution and read access follow the same rule: a valid admin
token wins, otherwise the caller must present the request's customer email.
"""
from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from helpdesk.errors import ForbiddenError, UnauthorizedError, ValidationError
from helpdesk.models.chat import ChatMessageCreate, ChatMessageResponse
from helpdesk.models.user import AuthenticatedAdmin
from helpdesk.models_sqlalchemy.models import ChatMessage, HelpRequest, SenderRole, as_utc
from helpdesk.utils.logger import logger


def _email_matches(help_request: HelpRequest, email: Optional[str]) -> bool:
    return bool(email) and email.strip().lower() == help_request.customer_email.strip().lower()


def resolve_sender(
    help_request: HelpRequest,
    admin: Optional[AuthenticatedAdmin],
    email: Optional[str],
) -> Tuple[str, Optional[str]]:
    """Return ``(sender_role, sender_id)`` for a new message."""
    if admin is not None:
        return SenderRole.admin.value, admin.id
    if _email_matches(help_request, email):
        return SenderRole.customer.value, None
    raise UnauthorizedError("Admin token or matching customer email required")


def authorize_read(help_request: HelpRequest, admin: Optional[AuthenticatedAdmin], email: Optional[str]) -> None:
    if admin is not None:
        return
    if not email:
        raise UnauthorizedError("Admin token or customer email required")
    if not _email_matches(help_request, email):
        raise ForbiddenError("Email does not match this request")


def list_messages(db: Session, request_id: str) -> List[ChatMessage]:
    return (
        db.query(ChatMessage)
        .filter(ChatMessage.request_id == request_id)
        .order_by(ChatMessage.created_at.asc(), ChatMessage.id.asc())
        .all()
    )


def create_message(
    db: Session,
    help_request: HelpRequest,
    payload: ChatMessageCreate,
    sender: str,
    sender_id: Optional[str],
) -> ChatMessage:
    body = (payload.body or "").strip() or None
    if body is None and not payload.attachment_url:
        raise ValidationError("Message body or attachment is required")

    message = ChatMessage(
        request_id=help_request.id,
        sender=sender,
        sender_id=sender_id,
        body=body,
        attachment_url=payload.attachment_url,
        attachment_path=payload.attachment_path,
        attachment_file_name=payload.attachment_file_name,
        attachment_content_type=payload.attachment_content_type,
    )
    db.add(message)
    db.commit()
    db.refresh(message)
    logger.info("Chat message stored request_id=%s sender=%s", help_request.id, sender)
    return message


def unread_count_for_admin(db: Session, help_request: HelpRequest) -> int:
    """Customer messages newer than both the request and the last admin reply."""
    last_admin_at = (
        db.query(func.max(ChatMessage.created_at))
        .filter(ChatMessage.request_id == help_request.id, ChatMessage.sender == SenderRole.admin.value)
        .scalar()
    )
    since = as_utc(help_request.created_at)
    if last_admin_at is not None and as_utc(last_admin_at) > since:
        since = as_utc(last_admin_at)

    return (
        db.query(func.count(ChatMessage.id))
        .filter(
            ChatMessage.request_id == help_request.id,
            ChatMessage.sender == SenderRole.customer.value,
            ChatMessage.created_at > since,
        )
        .scalar()
    ) or 0


def format_sse(data: Dict[str, Any]) -> str:
    return f"data: {json.dumps(data)}\n\n"


def _message_event(message: ChatMessage) -> Dict[str, Any]:
    return ChatMessageResponse.model_validate(message).model_dump(mode="json")


async def live_feed(
    session_factory: sessionmaker,
    request_id: str,
    *,
    interval: float,
    is_disconnected: Callable[[], Awaitable[bool]],
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> AsyncIterator[Dict[str, Any]]:
    """Poll the thread every ``interval`` seconds and yield new-message events.

    The first poll yields only the newest message. Later polls yield every
    message created after the last one emitted; ids already emitted at that
    same timestamp are skipped. Ends on disconnect or on a failed poll.
    """
    yield {"type": "connected"}

    first_poll = True
    cursor: Optional[datetime] = None
    seen_at_cursor: Set[str] = set()

    while True:
        await sleep(interval)
        if await is_disconnected():
            logger.info("Chat stream closed by client request_id=%s", request_id)
            return

        try:
            with session_factory() as db:
                messages = list_messages(db, request_id)
        except Exception:
            logger.exception("Chat stream poll failed request_id=%s", request_id)
            return

        if first_poll:
            first_poll = False
            pending = messages[-1:]
        else:
            pending = [
                m
                for m in messages
                if cursor is None
                or as_utc(m.created_at) > cursor
                or (as_utc(m.created_at) == cursor and m.id not in seen_at_cursor)
            ]

        for message in pending:
            created = as_utc(message.created_at)
            if cursor is None or created > cursor:
                cursor = created
                seen_at_cursor = {message.id}
            else:
                seen_at_cursor.add(message.id)
            yield _message_event(message)
