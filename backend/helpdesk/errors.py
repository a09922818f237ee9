"""Exception taxonomy shared by services and routers.

Services raise these; ``main.py`` renders them as ``{"error", "code"}`` JSON
with the matching HTTP status.
"""
from typing import Any, Dict, Optional


class HelpdeskError(Exception):
    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, *, code: Optional[str] = None, headers: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.headers = headers

    @property
    def http_status(self) -> int:
        return self.status_code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


class ValidationError(HelpdeskError):
    status_code = 400
    code = "validation_error"


class NotFoundError(HelpdeskError):
    status_code = 404
    code = "not_found"


class ConflictError(HelpdeskError):
    status_code = 409
    code = "conflict"


class UnauthorizedError(HelpdeskError):
    status_code = 401
    code = "unauthorized"

    def __init__(self, message: str = "Unauthorized", **kwargs):
        kwargs.setdefault("headers", {"WWW-Authenticate": "Bearer"})
        super().__init__(message, **kwargs)


class ForbiddenError(HelpdeskError):
    status_code = 403
    code = "forbidden"


class RateLimitedError(HelpdeskError):
    status_code = 429
    code = "rate_limited"


class ProviderError(HelpdeskError):
    """Failure reported by (or while talking to) the order provider.

    ``status`` is the provider's HTTP status, or None for transport failures.
    Only caller-correctable provider statuses are passed through to clients.
    """

    code = "provider_error"
    passthrough_statuses = (400, 422)

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    @property
    def http_status(self) -> int:
        if self.status in self.passthrough_statuses:
            return self.status
        return 500
