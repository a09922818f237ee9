from datetime import timedelta
from typing import Optional, Tuple
import binascii
import hashlib
import hmac
import os
import re
import secrets

from fastapi import Depends, Query, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from helpdesk.config import Settings
from helpdesk.errors import UnauthorizedError
from helpdesk.models.user import AuthenticatedAdmin
from helpdesk.models_sqlalchemy.models import AdminUser, RefreshToken, as_utc, utcnow
from helpdesk.utils.logger import logger

bearer = HTTPBearer(auto_error=False)

# Stored format: "pbkdf2_sha256$<iterations>$<salt_hex>$<hash_hex>".
_PBKDF2_ALGO_PREFIX = "pbkdf2_sha256"
_PBKDF2_ITERATIONS = 100_000
_PBKDF2_SALT_BYTES = 16

_DURATION_RE = re.compile(r"^(\d+)([dhm])$")
_DURATION_UNITS = {"d": "days", "h": "hours", "m": "minutes"}
DEFAULT_REFRESH_TTL = timedelta(days=30)


def get_password_hash(password: str) -> str:
    """Return a PBKDF2-SHA256 hash string for the given password."""
    if not isinstance(password, str):
        raise TypeError("password must be a string")

    salt = os.urandom(_PBKDF2_SALT_BYTES)
    dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, _PBKDF2_ITERATIONS)
    salt_hex = binascii.hexlify(salt).decode("ascii")
    hash_hex = binascii.hexlify(dk).decode("ascii")
    return f"{_PBKDF2_ALGO_PREFIX}${_PBKDF2_ITERATIONS}${salt_hex}${hash_hex}"


def verify_password(password: str, encoded: Optional[str]) -> bool:
    """Verify a password against a PBKDF2-SHA256 encoded hash.

    Returns False if the hash is missing or malformed.
    """
    if not encoded:
        return False
    try:
        prefix, iter_str, salt_hex, hash_hex = encoded.split("$", 3)
        if prefix != _PBKDF2_ALGO_PREFIX:
            return False
        iterations = int(iter_str)
        salt = binascii.unhexlify(salt_hex.encode("ascii"))
        expected = binascii.unhexlify(hash_hex.encode("ascii"))
    except (ValueError, binascii.Error):
        return False

    dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    return hmac.compare_digest(dk, expected)


def parse_duration(value: Optional[str], default: timedelta = DEFAULT_REFRESH_TTL) -> timedelta:
    """Parse ``"30d"``, ``"12h"`` or ``"15m"``; anything else yields ``default``."""
    match = _DURATION_RE.match((value or "").strip())
    if not match:
        return default
    amount, unit = match.groups()
    return timedelta(**{_DURATION_UNITS[unit]: int(amount)})


def hash_refresh_token(token: str, settings: Settings) -> str:
    return hmac.new(
        settings.JWT_REFRESH_SECRET.encode("utf-8"), token.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def create_access_token(admin: AdminUser, settings: Settings) -> str:
    expire = utcnow() + parse_duration(settings.ACCESS_TOKEN_EXPIRES_IN, default=timedelta(days=7))
    to_encode = {"sub": admin.id, "email": admin.email, "type": "access", "exp": expire}
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.ALGORITHM)


def decode_access_token(token: str, settings: Settings) -> AuthenticatedAdmin:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.ALGORITHM])
    except JWTError as e:
        logger.warning(f"JWT validation error: {e}")
        raise UnauthorizedError("Invalid or expired token")

    if payload.get("type") != "access" or not payload.get("sub"):
        raise UnauthorizedError("Invalid token type")
    return AuthenticatedAdmin(id=payload["sub"], email=payload.get("email") or "")


def authenticate_admin(db: Session, email: str, password: str) -> Optional[AdminUser]:
    admin = db.query(AdminUser).filter(AdminUser.email == email.strip().lower()).first()
    if not admin or not admin.is_active:
        logger.warning(f"Authentication failed: unknown or inactive admin - {email}")
        return None
    if not verify_password(password, admin.password_hash):
        logger.warning(f"Authentication failed: invalid password - {email}")
        return None
    logger.info(f"Admin authenticated: {admin.email}")
    return admin


def issue_tokens(db: Session, admin: AdminUser, settings: Settings) -> Tuple[str, str]:
    """Return ``(access_token, refresh_token)``; only the refresh hash is stored."""
    refresh_token = secrets.token_hex(48)
    db.add(
        RefreshToken(
            user_id=admin.id,
            token_hash=hash_refresh_token(refresh_token, settings),
            expires_at=utcnow() + parse_duration(settings.REFRESH_TOKEN_EXPIRES_IN),
        )
    )
    db.commit()
    return create_access_token(admin, settings), refresh_token


def refresh_access_token(db: Session, refresh_token: str, settings: Settings) -> str:
    # The refresh token itself is not rotated; it stays valid until logout or expiry.
    row = (
        db.query(RefreshToken)
        .filter(
            RefreshToken.token_hash == hash_refresh_token(refresh_token, settings),
            RefreshToken.revoked_at.is_(None),
        )
        .first()
    )
    if row is None or as_utc(row.expires_at) <= utcnow():
        raise UnauthorizedError("Invalid or expired refresh token")

    admin = db.get(AdminUser, row.user_id)
    if admin is None or not admin.is_active:
        raise UnauthorizedError("Invalid or expired refresh token")
    return create_access_token(admin, settings)


def revoke_refresh_token(db: Session, refresh_token: str, settings: Settings) -> None:
    row = (
        db.query(RefreshToken)
        .filter(
            RefreshToken.token_hash == hash_refresh_token(refresh_token, settings),
            RefreshToken.revoked_at.is_(None),
        )
        .first()
    )
    if row is None:
        return
    row.revoked_at = utcnow()
    db.commit()


def create_admin_user(db: Session, email: str, password: str, name: Optional[str] = None) -> AdminUser:
    admin = AdminUser(email=email.strip().lower(), password_hash=get_password_hash(password), name=name)
    db.add(admin)
    db.commit()
    db.refresh(admin)
    logger.info(f"Admin user created: {admin.email}")
    return admin


def _settings(request: Request) -> Settings:
    return request.app.state.settings


async def get_current_admin(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> AuthenticatedAdmin:
    if credentials is None:
        raise UnauthorizedError("Missing bearer token")
    return decode_access_token(credentials.credentials, _settings(request))


def _try_decode(token: Optional[str], settings: Settings) -> Optional[AuthenticatedAdmin]:
    if not token:
        return None
    try:
        return decode_access_token(token, settings)
    except UnauthorizedError:
        return None


async def get_optional_admin(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> Optional[AuthenticatedAdmin]:
    """Admin identity from the Authorization header only, or None."""
    return _try_decode(credentials.credentials if credentials else None, _settings(request))


async def get_optional_admin_for_read(
    request: Request,
    token: Optional[str] = Query(None, description="JWT for EventSource clients that cannot set headers"),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> Optional[AuthenticatedAdmin]:
    """Like :func:`get_optional_admin` but also accepts ``?token=``."""
    jwt_token = credentials.credentials if credentials else token
    return _try_decode(jwt_token, _settings(request))
