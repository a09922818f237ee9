"""Attachment storage on Supabase Storage.

Only locators are persisted; the bytes are written by the browser through a
signed upload URL and read back through short-lived signed read URLs.
"""
import re
import time
from typing import Any, Optional

from supabase import Client, create_client

from helpdesk.config import Settings
from helpdesk.errors import HelpdeskError
from helpdesk.utils.logger import logger

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def sanitize_file_name(file_name: Optional[str]) -> str:
    return _UNSAFE_CHARS.sub("_", file_name or "file")


def build_object_path(prefix: str, request_id: str, file_name: Optional[str], now_ms: Optional[int] = None) -> str:
    """``<prefix>/<request_id>/<epoch-millis>-<sanitized-file-name>``."""
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{prefix}/{request_id}/{stamp}-{sanitize_file_name(file_name)}"


def _signed_url_from(res: Any) -> str:
    # supabase-py has returned both spellings across releases.
    if isinstance(res, dict):
        for key in ("signedURL", "signedUrl", "signed_url"):
            if res.get(key):
                return res[key]
    return res


class StorageNotConfigured(HelpdeskError):
    status_code = 500
    code = "storage_not_configured"


class SupabaseObjectStorage:
    def __init__(self, url: Optional[str], key: Optional[str], bucket: str, prefix: str, ttl_minutes: int):
        self.url = url
        self.key = key
        self.bucket = bucket
        self.prefix = prefix
        self.ttl_minutes = ttl_minutes
        self._client: Optional[Client] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "SupabaseObjectStorage":
        return cls(
            url=settings.SUPABASE_URL,
            key=settings.storage_key,
            bucket=settings.STORAGE_BUCKET,
            prefix=settings.STORAGE_PATH_PREFIX,
            ttl_minutes=settings.SIGNED_URL_TTL_MINUTES,
        )

    def _bucket(self):
        if self._client is None:
            if not self.url or not self.key:
                logger.warning("SUPABASE_URL or SUPABASE_KEY/SUPABASE_SERVICE_ROLE_KEY not set. Storage operations will fail.")
                raise StorageNotConfigured("Attachment storage is not configured")
            self._client = create_client(self.url, self.key)
        return self._client.storage.from_(self.bucket)

    def object_path(self, request_id: str, file_name: Optional[str]) -> str:
        return build_object_path(self.prefix, request_id, file_name)

    def public_url(self, object_path: str) -> str:
        return self._bucket().get_public_url(object_path)

    def create_upload_url(self, object_path: str) -> str:
        res = self._bucket().create_signed_upload_url(object_path)
        logger.info("Signed upload URL issued bucket=%s path=%s", self.bucket, object_path)
        return _signed_url_from(res)

    def create_read_url(self, object_path: str) -> str:
        res = self._bucket().create_signed_url(object_path, self.ttl_minutes * 60)
        return _signed_url_from(res)
