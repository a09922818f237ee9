import logging
import sys
from typing import Any, Dict, Optional

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s :: %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger("helpdesk")

_SENSITIVE_KEYS = (
    "access_token", "refresh_token", "password", "authorization", "x-shopify-access-token",
)


def sanitize(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Return a copy of ``data`` with credential-looking values masked."""
    if not data:
        return {}

    sanitized = dict(data)
    for key in list(sanitized):
        if key.lower() not in _SENSITIVE_KEYS:
            continue
        value = str(sanitized[key])
        if len(value) > 8:
            sanitized[key] = f"{value[:4]}...{value[-4:]}"
        else:
            sanitized[key] = "***"
    return sanitized
