from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, EmailStr


@dataclass
class AuthenticatedAdmin:
    """Identity carried by a verified access token."""

    id: str
    email: str


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class AdminUserResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None

    class Config:
        from_attributes = True


class LoginResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: str
    user: AdminUserResponse


class RefreshRequest(BaseModel):
    refresh_token: str


class RefreshResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: str


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = None
