from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field, computed_field, field_validator

from helpdesk.models_sqlalchemy.models import HelpRequestStatus, HelpRequestType


def _strip_or_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class HelpRequestCreate(BaseModel):
    type: HelpRequestType
    customer_email: EmailStr
    customer_name: str
    order_number: str
    customer_phone: Optional[str] = None
    reason: Optional[str] = None

    @field_validator("customer_email", mode="before")
    @classmethod
    def _strip_email(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("customer_name", "order_number")
    @classmethod
    def _required_text(cls, value: str, info) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError(f"{info.field_name} is required")
        return value

    @field_validator("customer_phone", "reason")
    @classmethod
    def _optional_text(cls, value: Optional[str]) -> Optional[str]:
        return _strip_or_none(value)


class HelpRequestUpdate(BaseModel):
    """Partial admin update; only fields present in the body are written."""

    status: Optional[HelpRequestStatus] = None
    admin_notes: Optional[str] = None


class HelpRequestResponse(BaseModel):
    id: str
    type: str
    status: str
    customer_email: str
    customer_phone: Optional[str]
    customer_name: str
    order_number: str
    reason: Optional[str]
    provider_order_id: Optional[str]
    provider_shop: Optional[str]
    processed_at: Optional[datetime]
    processed_by: Optional[str]
    admin_notes: Optional[str]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True

    @computed_field  # type: ignore[misc]
    @property
    def reference(self) -> str:
        from helpdesk.services.lifecycle import reference_code

        return reference_code(self.id)


class AttachmentResponse(BaseModel):
    id: str
    request_id: str
    object_url: str
    object_container: str
    object_path: str
    file_name: Optional[str]
    content_type: Optional[str]
    file_size_bytes: Optional[int]
    created_at: datetime
    read_url: Optional[str] = None

    class Config:
        from_attributes = True


class HelpRequestDetailResponse(HelpRequestResponse):
    attachments: List[AttachmentResponse] = []


class OpenRequestCheckResponse(BaseModel):
    order_number: str
    has_open_request: bool


class HelpRequestStatusResponse(BaseModel):
    id: str
    reference: str
    type: str
    status: str
    customer_email: str
    customer_name: str
    order_number: str
    created_at: datetime
    updated_at: datetime


class UploadUrlRequest(BaseModel):
    file_name: Optional[str] = None
    content_type: Optional[str] = None
    file_size_bytes: Optional[int] = Field(default=None, ge=0)


class UploadUrlResponse(BaseModel):
    attachment_id: str
    upload_url: str
    object_path: str
    expires_in_minutes: int


MAX_REFUND_AMOUNT = 1_000_000_000


class RefundLineItem(BaseModel):
    line_item_id: int = Field(alias="lineItemId")
    quantity: int

    class Config:
        populate_by_name = True


class RefundRequest(BaseModel):
    """Body for the provider refund action.

    A non-empty ``refund_line_items`` means a partial refund; otherwise every
    line item is refunded. ``refund_amount`` overrides the provider total.
    """

    refund_line_items: Optional[List[RefundLineItem]] = Field(default=None, alias="refundLineItems")
    restock_type: Optional[str] = Field(default=None, alias="restockType")
    note: Optional[str] = None
    refund_amount: Optional[float] = Field(
        default=None, alias="refundAmount", gt=0, lt=MAX_REFUND_AMOUNT, allow_inf_nan=False
    )

    class Config:
        populate_by_name = True


class ProviderActionResponse(BaseModel):
    request: HelpRequestResponse
    provider: dict
    message: Optional[str] = None
