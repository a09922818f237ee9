from pydantic_settings import BaseSettings
from typing import Optional
import os
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    # DATABASE_URL must point at the Postgres instance holding the help desk schema.
    DATABASE_URL: str = os.getenv("DATABASE_URL", "postgresql+psycopg://localhost:5432/helpdesk")
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 0
    # Seconds to wait for a pooled connection before giving up.
    DB_POOL_TIMEOUT: int = 10
    # Connections idle longer than this are recycled on next checkout.
    DB_POOL_RECYCLE: int = 60
    DB_CONNECT_TIMEOUT: int = 10

    SECRET_KEY: str = "your-secret-key-change-in-production"
    JWT_SECRET: Optional[str] = None
    JWT_REFRESH_SECRET: str = "your-refresh-secret-change-in-production"
    ALGORITHM: str = "HS256"
    # Durations use "<n>d", "<n>h" or "<n>m".
    ACCESS_TOKEN_EXPIRES_IN: str = "7d"
    REFRESH_TOKEN_EXPIRES_IN: str = "30d"

    @property
    def secret_key(self) -> str:
        return self.JWT_SECRET or self.SECRET_KEY

    # Supabase Storage holds attachment bytes; we only keep locators.
    SUPABASE_URL: Optional[str] = None
    SUPABASE_KEY: Optional[str] = None  # Anon key
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = None
    STORAGE_BUCKET: str = "help-requests"
    STORAGE_PATH_PREFIX: str = "help-requests"
    SIGNED_URL_TTL_MINUTES: int = 60

    # Outbound mail. When SMTP_USER/SMTP_PASS are missing, notifications are
    # only logged.
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASS: Optional[str] = None
    EMAIL_FROM: Optional[str] = None
    FROM_NAME: str = "Help Centre Support"
    ADMIN_NOTIFICATION_EMAIL: Optional[str] = None
    ADMIN_URL: str = "http://localhost:5299"
    CUSTOMER_URL: str = "http://localhost:5299"

    # Shopify Admin REST API (custom app access token).
    SHOPIFY_SHOP_DOMAIN: str = ""
    SHOPIFY_API_VERSION: str = "2023-01"
    SHOPIFY_ACCESS_TOKEN: str = ""
    SHOPIFY_TIMEOUT_SECONDS: float = 20.0

    RATE_LIMIT_WINDOW_SECONDS: int = 15 * 60
    RATE_LIMIT_HELP_REQUESTS_MAX: int = 100
    RATE_LIMIT_CREATE_REQUEST_MAX: int = 20
    RATE_LIMIT_CHAT_MAX: int = 60
    # Honour X-Forwarded-For for rate limiting. Enable only behind a proxy
    # that sets the header itself.
    TRUST_PROXY: bool = False

    CHAT_POLL_INTERVAL_SECONDS: float = 2.0
    # When True, PATCH /help-requests/{id} only accepts transitions listed in
    # services.lifecycle.ALLOWED_TRANSITIONS.
    STRICT_STATUS_TRANSITIONS: bool = False

    ALLOWED_ORIGINS: str = "http://localhost:5173,http://localhost:5299"

    class Config:
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def email_from(self) -> Optional[str]:
        return self.EMAIL_FROM or self.SMTP_USER

    @property
    def storage_key(self) -> Optional[str]:
        return self.SUPABASE_SERVICE_ROLE_KEY or self.SUPABASE_KEY


settings = Settings()
