from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from helpdesk.config import Settings
from helpdesk.dependencies import get_notifier, get_settings
from helpdesk.errors import NotFoundError, UnauthorizedError
from helpdesk.models.chat import ChatMessageCreate, ChatMessageResponse, UnreadCountResponse
from helpdesk.models.user import AuthenticatedAdmin
from helpdesk.models_sqlalchemy import get_db
from helpdesk.models_sqlalchemy.models import HelpRequest
from helpdesk.services import chat as chat_service
from helpdesk.services import help_requests as store
from helpdesk.services.auth import get_current_admin, get_optional_admin, get_optional_admin_for_read
from helpdesk.services.lifecycle import reference_code
from helpdesk.services.notifications import Notifier
from helpdesk.utils.rate_limit import rate_limit

router = APIRouter(prefix="/api/chat", tags=["chat"], dependencies=[Depends(rate_limit("chat"))])


def _load_or_404(db: Session, request_id: str) -> HelpRequest:
    help_request = store.get_help_request(db, request_id)
    if help_request is None:
        raise NotFoundError("Request not found")
    return help_request


@router.get("/{request_id}/messages", response_model=List[ChatMessageResponse])
async def list_messages(
    request_id: str,
    email: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    admin: Optional[AuthenticatedAdmin] = Depends(get_optional_admin_for_read),
):
    help_request = _load_or_404(db, request_id)
    chat_service.authorize_read(help_request, admin, email)
    return chat_service.list_messages(db, request_id)


@router.post("/{request_id}/messages", response_model=ChatMessageResponse, status_code=status.HTTP_201_CREATED)
async def post_message(
    request_id: str,
    payload: ChatMessageCreate,
    email: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    admin: Optional[AuthenticatedAdmin] = Depends(get_optional_admin),
):
    email = email or payload.email
    if admin is None and not email:
        raise UnauthorizedError("Admin token or matching customer email required")

    help_request = _load_or_404(db, request_id)
    sender, sender_id = chat_service.resolve_sender(help_request, admin, email)
    message = chat_service.create_message(db, help_request, payload, sender, sender_id)
    notifier.notify_new_message(help_request, message, reference_code(help_request.id))
    return message


@router.get("/{request_id}/stream")
async def stream_messages(
    request_id: str,
    request: Request,
    email: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    admin: Optional[AuthenticatedAdmin] = Depends(get_optional_admin_for_read),
):
    """Server-Sent Events feed of new messages.

    Accepts ?token=<jwt> because EventSource cannot send headers.
    """
    help_request = _load_or_404(db, request_id)
    chat_service.authorize_read(help_request, admin, email)

    async def event_generator():
        async for event in chat_service.live_feed(
            request.app.state.session_factory,
            request_id,
            interval=settings.CHAT_POLL_INTERVAL_SECONDS,
            is_disconnected=request.is_disconnected,
        ):
            yield chat_service.format_sse(event)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/{request_id}/unread-count", response_model=UnreadCountResponse)
async def unread_count(
    request_id: str,
    db: Session = Depends(get_db),
    admin: AuthenticatedAdmin = Depends(get_current_admin),
):
    help_request = _load_or_404(db, request_id)
    return UnreadCountResponse(unread_count=chat_service.unread_count_for_admin(db, help_request))
