from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query, status
from sqlalchemy.orm import Session

from helpdesk.config import Settings
from helpdesk.dependencies import get_notifier, get_settings, get_shopify, get_storage
from helpdesk.errors import NotFoundError
from helpdesk.models.help_request import (
    AttachmentResponse,
    HelpRequestCreate,
    HelpRequestDetailResponse,
    HelpRequestResponse,
    HelpRequestStatusResponse,
    HelpRequestUpdate,
    OpenRequestCheckResponse,
    ProviderActionResponse,
    RefundRequest,
    UploadUrlRequest,
    UploadUrlResponse,
)
from helpdesk.models.user import AuthenticatedAdmin
from helpdesk.models_sqlalchemy import get_db
from helpdesk.models_sqlalchemy.models import HelpRequest, HelpRequestStatus, HelpRequestType
from helpdesk.services import help_requests as store
from helpdesk.services import lifecycle
from helpdesk.services.auth import get_current_admin
from helpdesk.services.notifications import Notifier
from helpdesk.services.shopify import ShopifyClient, normalize_order_number
from helpdesk.services.storage import StorageNotConfigured, SupabaseObjectStorage
from helpdesk.utils.logger import logger
from helpdesk.utils.rate_limit import rate_limit

router = APIRouter(
    prefix="/api/help-requests",
    tags=["help-requests"],
    dependencies=[Depends(rate_limit("help_requests"))],
)


def _load_or_404(db: Session, request_id: str) -> HelpRequest:
    help_request = store.get_help_request(db, request_id)
    if help_request is None:
        raise NotFoundError("Request not found")
    return help_request


# ---- Customer endpoints ----


@router.post(
    "",
    response_model=HelpRequestResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("create_request"))],
)
async def create_help_request(
    payload: HelpRequestCreate,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    help_request = store.create_help_request(db, payload)
    notifier.notify_request_created(help_request, lifecycle.reference_code(help_request.id))
    return help_request


@router.get("/check", response_model=OpenRequestCheckResponse)
async def check_open_request(order_number: str = Query(..., min_length=1), db: Session = Depends(get_db)):
    return OpenRequestCheckResponse(
        order_number=normalize_order_number(order_number),
        has_open_request=store.has_open_request(db, order_number),
    )


@router.get("/status", response_model=HelpRequestStatusResponse)
async def request_status(
    order_number: str = Query(..., min_length=1),
    email: str = Query(..., min_length=1),
    db: Session = Depends(get_db),
):
    help_request = store.latest_request_for_customer(db, order_number, email)
    if help_request is None:
        raise NotFoundError("No request found for this order and email")
    return HelpRequestStatusResponse(
        id=help_request.id,
        reference=lifecycle.reference_code(help_request.id),
        type=help_request.type,
        status=help_request.status,
        customer_email=help_request.customer_email,
        customer_name=help_request.customer_name,
        order_number=help_request.order_number,
        created_at=help_request.created_at,
        updated_at=help_request.updated_at,
    )


@router.post("/{request_id}/attachments/upload-url", response_model=UploadUrlResponse)
async def create_upload_url(
    request_id: str,
    payload: Optional[UploadUrlRequest] = Body(None),
    db: Session = Depends(get_db),
    storage: SupabaseObjectStorage = Depends(get_storage),
):
    help_request = _load_or_404(db, request_id)
    payload = payload or UploadUrlRequest()
    file_name = payload.file_name or "file"

    object_path = storage.object_path(help_request.id, file_name)
    upload_url = storage.create_upload_url(object_path)
    attachment = store.create_attachment(
        db,
        request_id=help_request.id,
        object_url=storage.public_url(object_path),
        object_container=storage.bucket,
        object_path=object_path,
        file_name=file_name,
        content_type=payload.content_type,
        file_size_bytes=payload.file_size_bytes,
    )
    return UploadUrlResponse(
        attachment_id=attachment.id,
        upload_url=upload_url,
        object_path=object_path,
        expires_in_minutes=storage.ttl_minutes,
    )


# ---- Admin endpoints ----


@router.get("", response_model=List[HelpRequestResponse])
async def list_help_requests(
    type: Optional[HelpRequestType] = Query(None),
    status: Optional[HelpRequestStatus] = Query(None),
    search: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    admin: AuthenticatedAdmin = Depends(get_current_admin),
):
    return store.list_help_requests(
        db,
        type=type.value if type else None,
        status=status.value if status else None,
        search=search,
        limit=limit,
        offset=offset,
    )


@router.get("/{request_id}", response_model=HelpRequestDetailResponse)
async def get_help_request(
    request_id: str,
    db: Session = Depends(get_db),
    storage: SupabaseObjectStorage = Depends(get_storage),
    admin: AuthenticatedAdmin = Depends(get_current_admin),
):
    help_request = _load_or_404(db, request_id)
    attachments = []
    for attachment in store.list_attachments(db, request_id):
        item = AttachmentResponse.model_validate(attachment)
        try:
            item.read_url = storage.create_read_url(attachment.object_path)
        except StorageNotConfigured:
            logger.warning("Storage not configured; attachment %s returned without read_url", attachment.id)
        attachments.append(item)

    detail = HelpRequestDetailResponse.model_validate(help_request)
    detail.attachments = attachments
    return detail


@router.patch("/{request_id}", response_model=HelpRequestResponse)
async def update_help_request(
    request_id: str,
    payload: HelpRequestUpdate,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    admin: AuthenticatedAdmin = Depends(get_current_admin),
):
    return lifecycle.apply_admin_update(
        db, request_id, payload, admin.id, strict=settings.STRICT_STATUS_TRANSITIONS
    )


@router.post("/{request_id}/provider/lookup", response_model=ProviderActionResponse)
async def provider_lookup(
    request_id: str,
    db: Session = Depends(get_db),
    shopify: ShopifyClient = Depends(get_shopify),
    admin: AuthenticatedAdmin = Depends(get_current_admin),
):
    help_request = _load_or_404(db, request_id)
    return await lifecycle.lookup_provider_order(db, shopify, help_request, admin.id)


@router.api_route("/{request_id}/provider/order", methods=["GET", "POST"])
async def provider_order(
    request_id: str,
    db: Session = Depends(get_db),
    shopify: ShopifyClient = Depends(get_shopify),
    admin: AuthenticatedAdmin = Depends(get_current_admin),
):
    help_request = _load_or_404(db, request_id)
    return await lifecycle.provider_order_summary(shopify, help_request)


@router.post("/{request_id}/provider/cancel", response_model=ProviderActionResponse)
async def provider_cancel(
    request_id: str,
    db: Session = Depends(get_db),
    shopify: ShopifyClient = Depends(get_shopify),
    admin: AuthenticatedAdmin = Depends(get_current_admin),
):
    help_request = _load_or_404(db, request_id)
    return await lifecycle.cancel_via_provider(db, shopify, help_request, admin.id)


@router.post("/{request_id}/provider/refund", response_model=ProviderActionResponse)
async def provider_refund(
    request_id: str,
    payload: Optional[RefundRequest] = Body(None),
    db: Session = Depends(get_db),
    shopify: ShopifyClient = Depends(get_shopify),
    admin: AuthenticatedAdmin = Depends(get_current_admin),
):
    help_request = _load_or_404(db, request_id)
    return await lifecycle.refund_via_provider(db, shopify, help_request, payload or RefundRequest(), admin.id)
