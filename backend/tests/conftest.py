import json
import os
import re
from typing import Any, Dict, List, Optional, Tuple

os.environ.setdefault("DATABASE_URL", "sqlite://")

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from helpdesk.config import Settings
from helpdesk.main import create_app
from helpdesk.models_sqlalchemy import Base, build_session_factory
from helpdesk.models_sqlalchemy import models  # noqa: F401
from helpdesk.services.auth import create_access_token, create_admin_user
from helpdesk.services.notifications import Notifier
from helpdesk.services.shopify import ShopifyClient
from helpdesk.services.storage import build_object_path

SHOP_DOMAIN = "test-shop.myshopify.com"
API_VERSION = "2023-01"
ADMIN_EMAIL = "admin@helpdesk.io"
ADMIN_PASSWORD = "correct-horse-battery"


class ShopifyStub:
    """In-memory stand-in for the Shopify Admin REST API, served via httpx.MockTransport."""

    def __init__(self):
        self.orders: Dict[int, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str, Optional[dict]]] = []
        self.failures: Dict[str, Tuple[int, Any]] = {}
        self.suggested_transactions: List[Dict[str, Any]] = []
        self.created_refunds: List[Dict[str, Any]] = []

    def add_order(self, order_id: int, name: str, line_items: List[Dict[str, Any]], currency: str = "USD"):
        self.orders[order_id] = {
            "id": order_id,
            "name": name,
            "currency": currency,
            "financial_status": "paid",
            "fulfillment_status": None,
            "total_price": "100.00",
            "line_items": line_items,
        }
        return self.orders[order_id]

    def fail(self, path_suffix: str, status: int, body: Any):
        self.failures[path_suffix] = (status, body)

    def calls_to(self, path_suffix: str):
        return [call for call in self.calls if call[1].endswith(path_suffix)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        prefix = f"/admin/api/{API_VERSION}"
        path = request.url.path[len(prefix):]
        body = json.loads(request.content) if request.content else None
        self.calls.append((request.method, path, body))

        for suffix, (status, fail_body) in self.failures.items():
            if path.endswith(suffix):
                if isinstance(fail_body, str):
                    return httpx.Response(status, text=fail_body)
                return httpx.Response(status, json=fail_body)

        if request.method == "GET" and path == "/orders.json":
            name = request.url.params.get("name")
            matches = [o for o in self.orders.values() if o["name"] == name]
            return httpx.Response(200, json={"orders": matches[:1]})

        match = re.match(r"^/orders/(\d+)(.*)$", path)
        if not match:
            return httpx.Response(404, json={"errors": "Not Found"})
        order = self.orders.get(int(match.group(1)))
        if order is None:
            return httpx.Response(404, json={"errors": "Not Found"})
        rest = match.group(2)

        if request.method == "GET" and rest == ".json":
            return httpx.Response(200, json={"order": order})
        if request.method == "POST" and rest == "/cancel.json":
            return httpx.Response(200, json={"order": {**order, "cancelled_at": "2026-01-01T00:00:00Z"}})
        if request.method == "POST" and rest == "/refunds/calculate.json":
            refund = body["refund"]
            return httpx.Response(
                200,
                json={
                    "refund": {
                        "id": None,
                        "order_id": order["id"],
                        "created_at": None,
                        "processed_at": None,
                        "currency": refund.get("currency"),
                        "shipping": {"amount": "0.00", "tax": "0.00"},
                        "refund_line_items": refund["refund_line_items"],
                        "transactions": self.suggested_transactions,
                    }
                },
            )
        if request.method == "POST" and rest == "/refunds.json":
            self.created_refunds.append(body["refund"])
            return httpx.Response(201, json={"refund": {"id": 9001, **body["refund"]}})
        return httpx.Response(404, json={"errors": "Not Found"})


class FakeStorage:
    bucket = "help-requests"
    prefix = "help-requests"
    ttl_minutes = 60

    def __init__(self):
        self.upload_urls: List[str] = []

    def object_path(self, request_id, file_name):
        return build_object_path(self.prefix, request_id, file_name, now_ms=1700000000000)

    def public_url(self, object_path):
        return f"https://storage.helpdesk.io/{self.bucket}/{object_path}"

    def create_upload_url(self, object_path):
        self.upload_urls.append(object_path)
        return f"https://storage.helpdesk.io/upload/{self.bucket}/{object_path}?token=write"

    def create_read_url(self, object_path):
        return f"https://storage.helpdesk.io/sign/{self.bucket}/{object_path}?token=read"


class RecordingMailer:
    def __init__(self):
        self.sent: List[Dict[str, str]] = []
        self.fail = False

    async def send(self, to, subject, html):
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append({"to": to, "subject": subject, "html": html})


@pytest.fixture
def settings():
    return Settings(
        DATABASE_URL="sqlite://",
        JWT_SECRET="test-access-secret",
        JWT_REFRESH_SECRET="test-refresh-secret",
        SHOPIFY_SHOP_DOMAIN=SHOP_DOMAIN,
        SHOPIFY_ACCESS_TOKEN="shpat_test",
        CHAT_POLL_INTERVAL_SECONDS=0.01,
        ADMIN_NOTIFICATION_EMAIL="ops@helpdesk.io",
        ADMIN_URL="https://admin.helpdesk.io",
        CUSTOMER_URL="https://help.helpdesk.io",
    )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def shopify_stub():
    return ShopifyStub()


@pytest.fixture
def shopify(shopify_stub):
    return ShopifyClient(SHOP_DOMAIN, API_VERSION, "shpat_test", transport=httpx.MockTransport(shopify_stub.handler))


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def notifier(mailer, settings):
    return Notifier.from_settings(settings, mailer=mailer)


@pytest.fixture
def app(settings, engine, session_factory, shopify, storage, notifier):
    return create_app(
        settings,
        engine=engine,
        session_factory=session_factory,
        shopify=shopify,
        storage=storage,
        notifier=notifier,
        rate_limiters={},
    )


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin_user(db):
    return create_admin_user(db, ADMIN_EMAIL, ADMIN_PASSWORD, name="Ops")


@pytest.fixture
def admin_token(admin_user, settings):
    return create_access_token(admin_user, settings)


@pytest.fixture
def admin_headers(admin_token):
    return {"Authorization": f"Bearer {admin_token}"}


@pytest.fixture
def make_request(client):
    def _make(order_number="#42", email="a@b.com", name="A B", type="refund", **extra):
        payload = {
            "type": type,
            "customer_email": email,
            "customer_name": name,
            "order_number": order_number,
            **extra,
        }
        resp = client.post("/api/help-requests", json=payload)
        assert resp.status_code == 201, resp.text
        return resp.json()

    return _make
