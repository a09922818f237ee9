from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class ChatMessageCreate(BaseModel):
    # Customer identity when no admin token is sent; ?email= also works.
    email: Optional[str] = None
    body: Optional[str] = None
    attachment_url: Optional[str] = None
    attachment_path: Optional[str] = None
    attachment_file_name: Optional[str] = None
    attachment_content_type: Optional[str] = None


class ChatMessageResponse(BaseModel):
    id: str
    request_id: str
    sender: str
    sender_id: Optional[str]
    body: Optional[str]
    attachment_url: Optional[str]
    attachment_path: Optional[str]
    attachment_file_name: Optional[str]
    attachment_content_type: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class UnreadCountResponse(BaseModel):
    unread_count: int
