import pytest
from fastapi.testclient import TestClient

from conftest import SHOP_DOMAIN

LINE_ITEMS = [
    {"id": 501, "title": "Mug", "variant_title": "Blue", "quantity": 2, "price": "15.00"},
    {"id": 502, "title": "Poster", "variant_title": None, "quantity": 1, "price": "20.00"},
]


def test_end_to_end_create_check_complete(client, admin_headers):
    resp = client.post(
        "/api/help-requests",
        json={"type": "refund", "customer_email": "a@b.com", "customer_name": "A B", "order_number": "#42"},
    )
    assert resp.status_code == 201
    created = resp.json()
    assert created["status"] == "pending"
    assert created["order_number"] == "42"
    assert created["reference"] == created["id"][:8].upper()

    assert client.get("/api/help-requests/check", params={"order_number": "42"}).json() == {
        "order_number": "42",
        "has_open_request": True,
    }

    resp = client.patch(f"/api/help-requests/{created['id']}", json={"status": "completed"}, headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "completed"
    assert resp.json()["processed_at"] is not None
    assert resp.json()["processed_by"] is not None

    assert client.get("/api/help-requests/check", params={"order_number": "#42"}).json()["has_open_request"] is False


def test_duplicate_open_request_returns_409(client, make_request):
    make_request(order_number="1001")

    resp = client.post(
        "/api/help-requests",
        json={"type": "cancel", "customer_email": "b@b.com", "customer_name": "B", "order_number": " #1001"},
    )

    assert resp.status_code == 409
    assert resp.json()["code"] == "OPEN_REQUEST_EXISTS"


def test_create_validation_errors_are_400(client):
    resp = client.post(
        "/api/help-requests",
        json={"type": "refund", "customer_email": "not-an-email", "customer_name": "A", "order_number": "1"},
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == "validation_error"

    resp = client.post(
        "/api/help-requests",
        json={"type": "upgrade", "customer_email": "a@b.com", "customer_name": "A", "order_number": "1"},
    )
    assert resp.status_code == 400

    resp = client.post(
        "/api/help-requests",
        json={"type": "refund", "customer_email": "a@b.com", "customer_name": "   ", "order_number": "1"},
    )
    assert resp.status_code == 400


def test_exchange_requests_are_accepted(make_request):
    assert make_request(type="exchange", order_number="777")["type"] == "exchange"


def test_create_sends_confirmation_and_admin_alert(app, mailer):
    with TestClient(app) as client:
        created = client.post(
            "/api/help-requests",
            json={"type": "return", "customer_email": "a@b.com", "customer_name": "A B", "order_number": "55"},
        ).json()

    recipients = sorted(mail["to"] for mail in mailer.sent)
    assert recipients == ["a@b.com", "ops@helpdesk.io"]
    confirmation = next(mail for mail in mailer.sent if mail["to"] == "a@b.com")
    assert created["reference"] in confirmation["subject"]
    admin_alert = next(mail for mail in mailer.sent if mail["to"] == "ops@helpdesk.io")
    assert f"https://admin.helpdesk.io/admin/{created['id']}" in admin_alert["html"]


def test_confirmation_link_encodes_customer_email(app, mailer):
    with TestClient(app) as client:
        created = client.post(
            "/api/help-requests",
            json={"type": "return", "customer_email": "a+b@store.io", "customer_name": "A B", "order_number": "57"},
        ).json()

    confirmation = next(mail for mail in mailer.sent if mail["to"] == "a+b@store.io")
    assert f"/help/success?id={created['id']}&amp;email=a%2Bb%40store.io" in confirmation["html"]


@pytest.mark.parametrize("email", ["jane@", "@store.io", "jane@store", "jane store@io.com"])
def test_create_rejects_malformed_customer_email(client, email):
    resp = client.post(
        "/api/help-requests",
        json={"type": "refund", "customer_email": email, "customer_name": "A", "order_number": "1"},
    )

    assert resp.status_code == 400
    assert resp.json()["code"] == "validation_error"


def test_notification_failure_does_not_fail_create(app, mailer):
    mailer.fail = True
    with TestClient(app) as client:
        resp = client.post(
            "/api/help-requests",
            json={"type": "return", "customer_email": "a@b.com", "customer_name": "A B", "order_number": "56"},
        )

    assert resp.status_code == 201
    assert mailer.sent == []


def test_status_lookup(client, make_request):
    created = make_request(order_number="#808", email="Cust@Shop.io")

    resp = client.get("/api/help-requests/status", params={"order_number": "808", "email": "cust@shop.io"})
    assert resp.status_code == 200
    assert resp.json()["id"] == created["id"]
    assert resp.json()["reference"] == created["reference"]

    resp = client.get("/api/help-requests/status", params={"order_number": "808", "email": "x@shop.io"})
    assert resp.status_code == 404


def test_admin_routes_require_bearer_token(client, make_request):
    created = make_request()

    assert client.get("/api/help-requests").status_code == 401
    assert client.get(f"/api/help-requests/{created['id']}").status_code == 401
    assert client.patch(f"/api/help-requests/{created['id']}", json={"status": "approved"}).status_code == 401
    resp = client.get("/api/help-requests", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401


def test_list_with_filters(client, make_request, admin_headers):
    make_request(order_number="1", name="Amy Pond", type="refund")
    make_request(order_number="2", name="Rory", type="cancel")

    resp = client.get("/api/help-requests", params={"type": "cancel"}, headers=admin_headers)
    assert [r["order_number"] for r in resp.json()] == ["2"]

    resp = client.get("/api/help-requests", params={"search": "pond"}, headers=admin_headers)
    assert [r["order_number"] for r in resp.json()] == ["1"]


def test_patch_unknown_request_is_404(client, admin_headers):
    resp = client.patch("/api/help-requests/nope", json={"admin_notes": "hi"}, headers=admin_headers)
    assert resp.status_code == 404


def test_patch_notes_only_keeps_status(client, make_request, admin_headers):
    created = make_request()

    resp = client.patch(f"/api/help-requests/{created['id']}", json={"admin_notes": "called"}, headers=admin_headers)

    assert resp.json()["admin_notes"] == "called"
    assert resp.json()["status"] == "pending"
    assert resp.json()["processed_at"] is None


def test_upload_url_then_detail_has_signed_read_url(client, make_request, admin_headers, storage):
    created = make_request()

    resp = client.post(
        f"/api/help-requests/{created['id']}/attachments/upload-url",
        json={"file_name": "photo of box.jpg", "content_type": "image/jpeg", "file_size_bytes": 2048},
    )
    assert resp.status_code == 200
    upload = resp.json()
    assert upload["object_path"] == f"help-requests/{created['id']}/1700000000000-photo_of_box.jpg"
    assert upload["upload_url"].endswith("?token=write")
    assert upload["expires_in_minutes"] == 60

    detail = client.get(f"/api/help-requests/{created['id']}", headers=admin_headers).json()
    assert len(detail["attachments"]) == 1
    attachment = detail["attachments"][0]
    assert attachment["id"] == upload["attachment_id"]
    assert attachment["file_name"] == "photo of box.jpg"
    assert attachment["read_url"].endswith("?token=read")
    assert attachment["object_url"].startswith("https://storage.helpdesk.io/help-requests/")


def test_upload_url_for_unknown_request_is_404(client):
    assert client.post("/api/help-requests/missing/attachments/upload-url", json={}).status_code == 404


def test_provider_lookup_persists_order_reference(client, make_request, admin_headers, shopify_stub):
    shopify_stub.add_order(7001, "#1001", LINE_ITEMS)
    created = make_request(order_number="1001")

    resp = client.post(f"/api/help-requests/{created['id']}/provider/lookup", headers=admin_headers)

    assert resp.status_code == 200
    body = resp.json()
    assert body["request"]["provider_order_id"] == "7001"
    assert body["request"]["provider_shop"] == SHOP_DOMAIN
    assert body["request"]["status"] == "pending"
    assert body["provider"]["admin_url"] == f"https://{SHOP_DOMAIN}/admin/orders/7001"
    assert body["provider"]["financial_status"] == "paid"


def test_provider_lookup_unknown_order_is_404(client, make_request, admin_headers):
    created = make_request(order_number="31337")

    resp = client.post(f"/api/help-requests/{created['id']}/provider/lookup", headers=admin_headers)

    assert resp.status_code == 404


def test_provider_order_summary_get_and_post(client, make_request, admin_headers, shopify_stub):
    shopify_stub.add_order(7001, "#1001", LINE_ITEMS, currency="GBP")
    created = make_request(order_number="1001")

    for method in ("GET", "POST"):
        resp = client.request(method, f"/api/help-requests/{created['id']}/provider/order", headers=admin_headers)
        assert resp.status_code == 200
        body = resp.json()
        assert body["currency"] == "GBP"
        assert [li["id"] for li in body["line_items"]] == [501, 502]
        assert body["line_items"][0]["variant_title"] == "Blue"


def test_provider_cancel_completes_request(client, make_request, admin_headers, shopify_stub):
    shopify_stub.add_order(7001, "#1001", LINE_ITEMS)
    created = make_request(order_number="1001", type="cancel")
    client.patch(f"/api/help-requests/{created['id']}", json={"status": "rejected"}, headers=admin_headers)

    resp = client.post(f"/api/help-requests/{created['id']}/provider/cancel", headers=admin_headers)

    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "Order cancelled in Shopify"
    assert body["request"]["status"] == "completed"
    assert body["request"]["provider_order_id"] == "7001"
    assert body["request"]["processed_at"] is not None


def test_provider_cancel_error_passes_through_422(client, make_request, admin_headers, shopify_stub):
    shopify_stub.add_order(7001, "#1001", LINE_ITEMS)
    shopify_stub.fail("/cancel.json", 422, {"error": "Cannot cancel a fulfilled order"})
    created = make_request(order_number="1001", type="cancel")

    resp = client.post(f"/api/help-requests/{created['id']}/provider/cancel", headers=admin_headers)

    assert resp.status_code == 422
    assert resp.json() == {"error": "Cannot cancel a fulfilled order", "code": "provider_error"}
    detail = client.get(f"/api/help-requests/{created['id']}", headers=admin_headers).json()
    assert detail["status"] == "pending"


def test_provider_server_error_collapses_to_500(client, make_request, admin_headers, shopify_stub):
    shopify_stub.add_order(7001, "#1001", LINE_ITEMS)
    shopify_stub.fail("/cancel.json", 503, "Service Unavailable")
    created = make_request(order_number="1001", type="cancel")

    resp = client.post(f"/api/help-requests/{created['id']}/provider/cancel", headers=admin_headers)

    assert resp.status_code == 500


def test_provider_full_refund_defaults(client, make_request, admin_headers, shopify_stub):
    shopify_stub.add_order(7001, "#1001", LINE_ITEMS)
    shopify_stub.suggested_transactions = [{"parent_id": 1, "amount": "50.00", "gateway": "shopify_payments"}]
    created = make_request(order_number="1001")

    resp = client.post(f"/api/help-requests/{created['id']}/provider/refund", headers=admin_headers)

    assert resp.status_code == 200
    assert resp.json()["message"] == "Refund initiated in Shopify"
    assert resp.json()["request"]["status"] == "completed"
    refund = shopify_stub.created_refunds[-1]
    assert refund["note"] == f"Refund for help request {created['id']}"
    assert {li["restock_type"] for li in refund["refund_line_items"]} == {"no_restock"}


def test_provider_partial_refund_with_manual_amount(client, make_request, admin_headers, shopify_stub):
    shopify_stub.add_order(7001, "#1001", LINE_ITEMS)
    shopify_stub.suggested_transactions = [
        {"parent_id": 1, "amount": "15.00", "gateway": "shopify_payments"},
        {"parent_id": 2, "amount": "15.00", "gateway": "gift_card"},
    ]
    created = make_request(order_number="1001")

    resp = client.post(
        f"/api/help-requests/{created['id']}/provider/refund",
        json={
            "refundLineItems": [{"lineItemId": 501, "quantity": 9}],
            "restockType": "return",
            "refundAmount": 10,
            "note": "partial",
        },
        headers=admin_headers,
    )

    assert resp.status_code == 200
    refund = shopify_stub.created_refunds[-1]
    assert refund["note"] == "partial"
    assert refund["refund_line_items"] == [{"line_item_id": 501, "quantity": 2, "restock_type": "return"}]
    assert [tx["amount"] for tx in refund["transactions"]] == ["5.00", "5.00"]


def test_provider_refund_rejects_unknown_line_item(client, make_request, admin_headers, shopify_stub):
    shopify_stub.add_order(7001, "#1001", LINE_ITEMS)
    created = make_request(order_number="1001")

    resp = client.post(
        f"/api/help-requests/{created['id']}/provider/refund",
        json={"refund_line_items": [{"line_item_id": 999, "quantity": 1}]},
        headers=admin_headers,
    )

    assert resp.status_code == 400
    detail = client.get(f"/api/help-requests/{created['id']}", headers=admin_headers).json()
    assert detail["status"] == "pending"


def test_provider_refund_rejects_non_positive_amount(client, make_request, admin_headers, shopify_stub):
    created = make_request(order_number="1001")

    resp = client.post(
        f"/api/help-requests/{created['id']}/provider/refund",
        json={"refund_amount": 0},
        headers=admin_headers,
    )

    assert resp.status_code == 400
    assert shopify_stub.calls == []


@pytest.mark.parametrize("raw_amount", ["NaN", "Infinity", "-Infinity", "1e30"])
def test_provider_refund_rejects_non_finite_and_huge_amounts(client, make_request, admin_headers, shopify_stub, raw_amount):
    created = make_request(order_number="1001")

    resp = client.post(
        f"/api/help-requests/{created['id']}/provider/refund",
        content=f'{{"refund_amount": {raw_amount}}}',
        headers={**admin_headers, "Content-Type": "application/json"},
    )

    assert resp.status_code == 400
    assert resp.json()["code"] == "validation_error"
    assert shopify_stub.calls == []


def test_strict_transitions_setting(settings, engine, session_factory, shopify, storage, notifier, admin_token):
    from helpdesk.main import create_app

    settings.STRICT_STATUS_TRANSITIONS = True
    app = create_app(
        settings, engine=engine, session_factory=session_factory, shopify=shopify,
        storage=storage, notifier=notifier, rate_limiters={},
    )
    headers = {"Authorization": f"Bearer {admin_token}"}
    with TestClient(app) as client:
        created = client.post(
            "/api/help-requests",
            json={"type": "refund", "customer_email": "a@b.com", "customer_name": "A", "order_number": "9"},
        ).json()
        assert client.patch(f"/api/help-requests/{created['id']}", json={"status": "completed"},
                            headers=headers).status_code == 200
        resp = client.patch(f"/api/help-requests/{created['id']}", json={"status": "pending"}, headers=headers)

    assert resp.status_code == 400
    assert resp.json()["code"] == "invalid_transition"


def test_rate_limit_on_create(settings, engine, session_factory, shopify, storage, notifier):
    from helpdesk.main import create_app
    from helpdesk.utils.rate_limit import RateLimiter

    app = create_app(
        settings, engine=engine, session_factory=session_factory, shopify=shopify,
        storage=storage, notifier=notifier,
        rate_limiters={"create_request": RateLimiter(1, 900)},
    )
    payload = {"type": "refund", "customer_email": "a@b.com", "customer_name": "A", "order_number": "10"}
    with TestClient(app) as client:
        assert client.post("/api/help-requests", json=payload).status_code == 201
        resp = client.post("/api/help-requests", json={**payload, "order_number": "11"})

    assert resp.status_code == 429
    assert resp.json()["error"] == "Too many requests. Please try again later."
    assert int(resp.headers["Retry-After"]) > 0


def test_health_endpoints(client):
    assert client.get("/healthz").json() == {"status": "ok"}
    assert client.get("/healthz/db").json() == {"status": "ok", "database": "ok"}
