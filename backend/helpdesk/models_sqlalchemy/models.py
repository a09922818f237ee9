from sqlalchemy import BigInteger, Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, String, Text, text
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from typing import Optional
import enum
import uuid

from . import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive timestamps (SQLite drops the offset on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class HelpRequestType(str, enum.Enum):
    cancel = "cancel"
    return_ = "return"
    refund = "refund"
    exchange = "exchange"


class HelpRequestStatus(str, enum.Enum):
    pending = "pending"
    in_progress = "in_progress"
    approved = "approved"
    rejected = "rejected"
    completed = "completed"


class SenderRole(str, enum.Enum):
    customer = "customer"
    admin = "admin"


OPEN_STATUSES = (
    HelpRequestStatus.pending.value,
    HelpRequestStatus.in_progress.value,
    HelpRequestStatus.approved.value,
)
TERMINAL_STATUSES = (
    HelpRequestStatus.completed.value,
    HelpRequestStatus.rejected.value,
)

# Predicate shared by the partial unique index on every dialect we run on.
_OPEN_REQUEST_PREDICATE = text("status NOT IN ('completed', 'rejected')")


class AdminUser(Base):
    __tablename__ = "admin_users"

    id = Column(String(36), primary_key=True, default=_uuid)
    # Stored lower-cased; lookups are case-insensitive.
    email = Column(String(255), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    name = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    refresh_tokens = relationship("RefreshToken", back_populates="user", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_admin_users_email", "email"),
    )


class HelpRequest(Base):
    __tablename__ = "help_requests"

    id = Column(String(36), primary_key=True, default=_uuid)
    type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=HelpRequestStatus.pending.value)

    customer_email = Column(String(255), nullable=False)
    customer_phone = Column(String(50), nullable=True)
    customer_name = Column(String(255), nullable=False)
    # Normalized: no leading "#", no surrounding whitespace.
    order_number = Column(String(50), nullable=False)
    reason = Column(Text, nullable=True)

    provider_order_id = Column(String(100), nullable=True)
    provider_shop = Column(String(255), nullable=True)

    processed_at = Column(DateTime(timezone=True), nullable=True)
    processed_by = Column(String(36), ForeignKey("admin_users.id"), nullable=True)
    admin_notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    attachments = relationship(
        "HelpRequestAttachment",
        back_populates="request",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="HelpRequestAttachment.created_at",
    )
    messages = relationship(
        "ChatMessage",
        back_populates="request",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ChatMessage.created_at",
    )

    __table_args__ = (
        CheckConstraint(
            "type IN ('cancel', 'return', 'refund', 'exchange')",
            name="help_requests_type_check",
        ),
        CheckConstraint(
            "status IN ('pending', 'in_progress', 'approved', 'rejected', 'completed')",
            name="help_requests_status_check",
        ),
        Index("idx_help_requests_type", "type"),
        Index("idx_help_requests_status", "status"),
        Index("idx_help_requests_order_number", "order_number"),
        Index("idx_help_requests_created_at", "created_at"),
        Index("idx_help_requests_customer_email", "customer_email"),
        # At most one open request per order.
        Index(
            "idx_help_requests_one_open_per_order",
            "order_number",
            unique=True,
            postgresql_where=_OPEN_REQUEST_PREDICATE,
            sqlite_where=_OPEN_REQUEST_PREDICATE,
        ),
    )


class HelpRequestAttachment(Base):
    __tablename__ = "help_request_attachments"

    id = Column(String(36), primary_key=True, default=_uuid)
    request_id = Column(
        String(36), ForeignKey("help_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )

    # Stable (unsigned) URL plus bucket/path; signed URLs are minted on demand.
    object_url = Column(Text, nullable=False)
    object_container = Column(String(255), nullable=False)
    object_path = Column(String(512), nullable=False)

    file_name = Column(String(255), nullable=True)
    content_type = Column(String(150), nullable=True)
    file_size_bytes = Column(BigInteger, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    request = relationship("HelpRequest", back_populates="attachments")


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(String(36), primary_key=True, default=_uuid)
    request_id = Column(
        String(36), ForeignKey("help_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sender = Column(String(20), nullable=False)
    sender_id = Column(String(36), ForeignKey("admin_users.id"), nullable=True)

    body = Column(Text, nullable=True)
    attachment_url = Column(Text, nullable=True)
    attachment_path = Column(String(512), nullable=True)
    attachment_file_name = Column(String(255), nullable=True)
    attachment_content_type = Column(String(150), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    request = relationship("HelpRequest", back_populates="messages")

    __table_args__ = (
        CheckConstraint("sender IN ('customer', 'admin')", name="chat_messages_sender_check"),
    )


class RefreshToken(Base):
    __tablename__ = "refresh_tokens"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("admin_users.id", ondelete="CASCADE"), nullable=False, index=True)
    # Keyed hash of the opaque token; the raw value is never stored.
    token_hash = Column(String(255), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    user = relationship("AdminUser", back_populates="refresh_tokens")

    __table_args__ = (
        Index(
            "idx_refresh_tokens_token_hash",
            "token_hash",
            unique=True,
            postgresql_where=text("revoked_at IS NULL"),
            sqlite_where=text("revoked_at IS NULL"),
        ),
    )
