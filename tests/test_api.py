import uuid

from haulhub.routes.files import get_storage
from haulhub.storage.local_provider import LocalStorageProvider

from conftest import DOCS, future_date, next_phone


WEBHOOK_SECRET = "change-me-webhook"


def _data(resp, status=200):
    assert resp.status_code == status, resp.text
    body = resp.json()
    assert body["success"] is True
    return body["data"]


def _error(resp, status, code):
    assert resp.status_code == status, resp.text
    body = resp.json()
    assert body["success"] is False
    assert body["error"]["code"] == code
    return body["error"]


def _bearer(session):
    return {"Authorization": f"Bearer {session['access_token']}"}


def test_health(api):
    assert _data(api.get("/health"))["status"] == "ok"


def test_unauthenticated_request_uses_error_envelope(api):
    _error(api.get("/auth/me"), 401, "UNAUTHORIZED")
    _error(api.get("/auth/me", headers={"Authorization": "Bearer nonsense"}), 401, "UNAUTHORIZED")


def test_request_id_header(api):
    resp = api.get("/health", headers={"X-Request-ID": "abc-123"})
    assert resp.headers["X-Request-ID"] == "abc-123"


def test_register_and_me(api):
    session = _data(api.post("/auth/register-client", json={"name": "Ann", "phone": next_phone()}))
    assert session["active_role"] == "client"
    me = _data(api.get("/auth/me", headers=_bearer(session)))
    assert me["roles"] == ["client"]
    assert me["executor_profile"] is None


def test_register_executor_reports_fields(api):
    err = _error(api.post("/auth/register-executor", json={"name": "Ivan", "phone": next_phone()}),
                 422, "VALIDATION_ERROR")
    assert "vehicle_capacity" in err["details"]["fields"]


def test_duplicate_registration(api):
    phone = next_phone()
    _data(api.post("/auth/register-client", json={"name": "Ann", "phone": phone}))
    _error(api.post("/auth/register-client", json={"name": "Ann", "phone": phone}), 409, "DUPLICATE_ACCOUNT")


def test_sms_login_for_new_phone(api):
    phone = next_phone()
    _data(api.post("/auth/send-sms", json={"phone": phone}))
    _error(api.post("/auth/verify-sms", json={"phone": phone, "code": "0000"}), 400, "INVALID_CODE")
    data = _data(api.post("/auth/verify-sms", json={"phone": phone, "code": "1234"}))
    assert data == {"is_new_user": True, "phone": phone}


def test_refresh_and_logout(api):
    session = _data(api.post("/auth/register-client", json={"name": "Ann", "phone": next_phone()}))
    refreshed = _data(api.post("/auth/refresh", json={"refresh_token": session["refresh_token"]}))
    _error(api.post("/auth/refresh", json={"refresh_token": session["access_token"]}), 401, "UNAUTHORIZED")

    headers = _bearer(refreshed)
    _data(api.post("/auth/logout", headers=headers))
    _error(api.get("/auth/me", headers=headers), 401, "UNAUTHORIZED")


def test_active_role_scopes_endpoints(api, factory, auth):
    client = factory.client()
    err = _error(api.post("/executor/start-work", headers=auth(client)), 403, "ROLE_NOT_GRANTED")
    assert err["message"]

    executor = factory.executor()
    _error(api.get("/orders/my", headers=auth(executor)), 403, "ROLE_NOT_GRANTED")


def test_switch_role_issues_new_scope(api, factory):
    session = _data(api.post("/auth/register-client", json={"name": "Ann", "phone": next_phone()}))
    headers = _bearer(session)
    _data(api.post("/auth/add-role", headers=headers,
                   json={"role": "executor", "vehicle_capacity": 5, "vehicle_number": "A1", **DOCS}))
    # Role granted but the token is still scoped to client
    _error(api.get("/executor/status", headers=headers), 403, "FORBIDDEN")

    switched = _data(api.post("/auth/switch-role", headers=headers, json={"role": "executor"}))
    status = _data(api.get("/executor/status", headers=_bearer(switched)))
    assert status["is_working"] is False
    assert status["is_verified"] is False


def test_order_validation_envelope(api, factory, auth):
    client = factory.client()
    err = _error(api.post("/orders", headers=auth(client), json={"vehicle_capacity": 4}), 422, "VALIDATION_ERROR")
    assert {"vehicle_capacity", "city", "street", "house_number"} <= set(err["details"]["fields"])
    _error(api.get("/orders/not-a-uuid", headers=auth(client)), 422, "VALIDATION_ERROR")
    _error(api.get(f"/orders/{uuid.uuid4()}", headers=auth(client)), 404, "NOT_FOUND")


def test_end_to_end_card_payment(api, factory, auth):
    client = factory.client()
    executor = factory.executor(balance="500")
    ch, eh = auth(client), auth(executor)

    order = _data(api.post("/orders", headers=ch, json={
        "vehicle_capacity": 5,
        "city": "Moscow",
        "street": "Arbat",
        "house_number": "10",
        "scheduled_date": future_date().isoformat(),
        "scheduled_time": "09:30",
    }))
    assert order["price"] == "3000.00"
    assert order["status"] == "pending"

    _error(api.get("/executor/orders", headers=eh), 409, "NOT_ON_DUTY")
    assert _data(api.post("/executor/start-work", headers=eh))["is_working"] is True
    listed = _data(api.get("/executor/orders", headers=eh))
    assert [o["id"] for o in listed] == [order["id"]]

    oid = order["id"]
    assert _data(api.post(f"/executor/orders/{oid}/accept", headers=eh))["status"] == "accepted"
    assert _data(api.get("/executor/orders/active", headers=eh))["id"] == oid
    assert _data(api.post(f"/executor/orders/{oid}/start", headers=eh))["status"] == "in_progress"
    assert _data(api.post(f"/executor/orders/{oid}/complete", headers=eh))["status"] == "awaiting_payment"

    paid = _data(api.post(f"/orders/{oid}/pay", headers=ch, json={"method": "card", "card_token": "tok"}))
    assert paid["order"]["status"] == "paid"
    assert paid["payment"]["commission"] == "300.00"
    _error(api.post(f"/orders/{oid}/pay", headers=ch, json={"method": "card", "card_token": "tok"}),
           409, "ALREADY_PAID")

    assert _data(api.get("/executor/balance", headers=eh))["balance"] == "3200.00"
    history = _data(api.get("/orders/history", headers=ch))
    assert [o["id"] for o in history] == [oid]
    notes = _data(api.get("/notifications", headers=ch))
    assert {"order_accepted", "order_started", "order_completed"} <= {n["template_key"] for n in notes}


def test_second_executor_gets_conflict(api, factory, auth):
    client = factory.client()
    order = factory.order(client)
    first = factory.on_duty(factory.executor())
    second = factory.on_duty(factory.executor())
    _data(api.post(f"/executor/orders/{order.id}/accept", headers=auth(first)))
    _error(api.post(f"/executor/orders/{order.id}/accept", headers=auth(second)), 409, "ORDER_ALREADY_TAKEN")


def test_client_cancel_without_body(api, factory, auth):
    client = factory.client()
    order = factory.order(client)
    data = _data(api.post(f"/orders/{order.id}/cancel", headers=auth(client)))
    assert data["status"] == "cancelled"


def test_deposit_webhook(api, factory, auth):
    executor = factory.executor(balance="150")
    eh = auth(executor)
    _error(api.post("/executor/start-work", headers=eh), 402, "INSUFFICIENT_BALANCE")

    deposit = _data(api.post("/executor/deposit", headers=eh, json={"amount": "100"}))
    assert deposit["status"] == "pending"

    body = {"external_id": deposit["external_id"], "status": "succeeded"}
    _error(api.post("/payments/webhook", json=body), 401, "UNAUTHORIZED")
    _error(api.post("/payments/webhook", json=body, headers={"X-Webhook-Secret": "wrong"}), 401, "UNAUTHORIZED")
    for _ in range(2):
        confirmed = _data(api.post("/payments/webhook", json=body, headers={"X-Webhook-Secret": WEBHOOK_SECRET}))
        assert confirmed["status"] == "succeeded"

    assert _data(api.get("/executor/balance", headers=eh))["balance"] == "250.00"
    assert _data(api.post("/executor/start-work", headers=eh))["is_working"] is True


def test_webhook_rejects_non_ascii_secret(api):
    body = {"external_id": "dep_missing", "status": "succeeded"}
    headers = {"X-Webhook-Secret": "sécret".encode("latin-1")}
    _error(api.post("/payments/webhook", json=body, headers=headers), 401, "UNAUTHORIZED")


def test_withdraw_insufficient_funds(api, factory, auth):
    executor = factory.executor(balance="150")
    _error(api.post("/executor/withdraw", headers=auth(executor), json={"amount": "500"}), 402, "INSUFFICIENT_FUNDS")


def test_admin_endpoints(api, factory, auth):
    admin = factory.admin()
    client = factory.client()
    executor = factory.executor(verified=False)

    _error(api.post(f"/admin/executors/{executor.id}/verify", headers=auth(client)), 403, "FORBIDDEN")
    profile = _data(api.post(f"/admin/executors/{executor.id}/verify", headers=auth(admin)))
    assert profile["is_verified"] is True

    order = factory.order(client)
    cancelled = _data(api.post(f"/admin/orders/{order.id}/cancel", headers=auth(admin), json={"reason": "duplicate"}))
    assert cancelled["status"] == "cancelled"

    audit = _data(api.get("/admin/audit", headers=auth(admin), params={"entity_id": str(order.id)}))
    assert {e["action"] for e in audit} >= {"CREATE", "CANCEL"}


def test_support_flow(api, factory, auth):
    user = factory.client()
    admin = factory.admin()
    ticket = _data(api.post("/support/tickets", headers=auth(user), json={"subject": "Help", "description": "Late"}))
    _data(api.post(f"/admin/tickets/{ticket['id']}/messages", headers=auth(admin), json={"body": "On it"}))
    _data(api.patch(f"/admin/tickets/{ticket['id']}", headers=auth(admin), json={"status": "closed"}))
    _error(api.post(f"/support/tickets/{ticket['id']}/messages", headers=auth(user), json={"body": "?"}),
           409, "TICKET_CLOSED")


def test_upload_roundtrip(api, app, factory, auth, tmp_path):
    storage = LocalStorageProvider(base_dir=str(tmp_path))
    app.dependency_overrides[get_storage] = lambda: storage
    user = factory.client()
    headers = auth(user)

    issued = _data(api.post("/files/upload-url", headers=headers,
                            json={"category": "photos", "original_name": "My Photo.JPG", "content_type": "image/jpeg"}))
    assert issued["uri"].startswith("local://")
    key = issued["key"].lstrip("/")
    assert key.endswith("my-photo.jpg")

    _data(api.put(f"/files/local/{key}", headers=headers, content=b"jpeg-bytes"))
    resp = api.get(f"/files/local/{key}", headers=headers)
    assert resp.content == b"jpeg-bytes"

    other = factory.client()
    _error(api.put(f"/files/local/{key}", headers=auth(other), content=b"x"), 403, "FORBIDDEN")
