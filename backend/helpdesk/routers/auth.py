from typing import Optional

from fastapi import APIRouter, Body, Depends, Request, status
from sqlalchemy.orm import Session

from helpdesk.config import Settings
from helpdesk.dependencies import get_settings
from helpdesk.errors import UnauthorizedError
from helpdesk.models.user import (
    AdminUserResponse,
    AuthenticatedAdmin,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    RefreshRequest,
    RefreshResponse,
)
from helpdesk.models_sqlalchemy import get_db
from helpdesk.models_sqlalchemy.models import AdminUser
from helpdesk.services import auth as auth_service
from helpdesk.services.auth import get_current_admin
from helpdesk.utils.logger import logger

router = APIRouter(prefix="/api/auth", tags=["authentication"])


@router.post("/login", response_model=LoginResponse)
async def login(
    credentials: LoginRequest,
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    rid = getattr(request.state, "rid", "unknown")
    logger.info(f"Login attempt email={credentials.email} rid={rid}")

    admin = auth_service.authenticate_admin(db, credentials.email, credentials.password)
    if admin is None:
        raise UnauthorizedError("Incorrect email or password")

    access_token, refresh_token = auth_service.issue_tokens(db, admin, settings)
    return LoginResponse(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=settings.ACCESS_TOKEN_EXPIRES_IN,
        user=AdminUserResponse.model_validate(admin),
    )


@router.post("/refresh", response_model=RefreshResponse)
async def refresh(payload: RefreshRequest, db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    access_token = auth_service.refresh_access_token(db, payload.refresh_token, settings)
    return RefreshResponse(access_token=access_token, expires_in=settings.ACCESS_TOKEN_EXPIRES_IN)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(payload: Optional[LogoutRequest] = Body(None), db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    if payload and payload.refresh_token:
        auth_service.revoke_refresh_token(db, payload.refresh_token, settings)


@router.get("/me", response_model=AdminUserResponse)
async def me(admin: AuthenticatedAdmin = Depends(get_current_admin), db: Session = Depends(get_db)):
    user = db.get(AdminUser, admin.id)
    if user is None or not user.is_active:
        raise UnauthorizedError("Account not found or inactive")
    return user
