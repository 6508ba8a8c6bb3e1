from __future__ import annotations

import pytest

from app.config import get_settings
from app.models.user import User
from app.services.auth import create_access_token, get_password_hash
from app.services.exceptions import AuthFailure, PushPaymentFailure

from conftest import callback_body

EMAIL = "jane@budget-tracker.co.ke"
ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


def _registration(session_id: str, **overrides) -> dict:
    data = {
        "phone": "0712345678",
        "amount": 500,
        "sessionId": session_id,
        "name": "Jane Wanjiku",
        "email": EMAIL,
        "password": "secret123",
    }
    data.update(overrides)
    return data


def test_health(client):
    assert client.get("/api/health").json() == {"ok": True}
    assert client.get("/").json()["status"] == "ok"


def test_registration_end_to_end(client, store, db):
    with client.websocket_connect("/ws") as ws:
        hello = ws.receive_json()
        assert hello["event"] == "connected"
        session_id = hello["data"]["session_id"]

        r = client.post("/api/mpesa/stk-push", json=_registration(session_id))
        assert r.status_code == 200
        body = r.json()
        assert body["CheckoutRequestID"] == "ws_1"
        assert body["MerchantRequestID"] == "mr_1"
        assert "ws_1" in store

        r = client.post("/api/mpesa/callback", json=callback_body("ws_1"))
        assert r.status_code == 200
        assert r.json() == ACK

        event = ws.receive_json()
        assert event["event"] == "registration-success"
        assert event["data"]["email"] == EMAIL

    assert "ws_1" not in store
    db.expire_all()
    assert db.query(User).filter(User.email == EMAIL).one().has_paid is True

    r = client.post("/api/auth/login", json={"email": EMAIL, "password": "secret123"})
    assert r.status_code == 200
    assert r.json()["token_type"] == "bearer"
    assert r.json()["user"]["has_paid"] is True
    token = r.json()["access_token"]
    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"}).json()
    assert me["email"] == EMAIL
    assert me["has_paid"] is True


def test_cancelled_payment_sends_registration_failure(client, store, db):
    with client.websocket_connect("/ws") as ws:
        session_id = ws.receive_json()["data"]["session_id"]
        client.post("/api/mpesa/stk-push", json=_registration(session_id))

        r = client.post("/api/mpesa/callback", json=callback_body("ws_1", 1032, "Request cancelled by user"))
        assert r.json() == ACK

        event = ws.receive_json()
        assert event["event"] == "registration-failure"
        assert event["data"]["message"] == "Payment not successful: Request cancelled by user"

    assert db.query(User).count() == 0
    assert len(store) == 0


def test_websocket_ping(client):
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_text("ping")
        assert ws.receive_text() == "pong"


def test_existing_user_activation_with_disconnected_session(client, store, db):
    user = User(name="Otieno", email="otieno@budget-tracker.co.ke", hashed_password=get_password_hash("pw123456"))
    db.add(user)
    db.commit()
    token = create_access_token(user.id, user.email)

    r = client.post(
        "/api/mpesa/stk-push",
        json={"phone": "254712345678", "amount": 100, "socketId": "gone"},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert r.status_code == 200

    r = client.post("/api/mpesa/callback", json=callback_body("ws_1"))
    assert r.json() == ACK
    db.expire_all()
    assert db.get(User, user.id).has_paid is True
    assert len(store) == 0


def test_invalid_token_is_treated_as_guest(client, store):
    r = client.post(
        "/api/mpesa/stk-push",
        json={"phone": "0712345678", "amount": 100, "sessionId": "s1"},
        headers={"Authorization": "Bearer not-a-jwt"},
    )
    assert r.status_code == 400
    assert "name" in r.json()["detail"]
    assert len(store) == 0


def test_invalid_phone_returns_400(client, store, daraja):
    r = client.post("/api/mpesa/stk-push", json=_registration("s1", phone="44abc"))
    assert r.status_code == 400
    assert "phone" in r.json()["detail"].lower()
    assert daraja.calls == []
    assert len(store) == 0


def test_duplicate_active_account_returns_400(client, store, db):
    db.add(User(name="Jane", email=EMAIL, hashed_password=get_password_hash("x"), has_paid=True))
    db.commit()

    r = client.post("/api/mpesa/stk-push", json=_registration("s1"))
    assert r.status_code == 400
    assert "already exists" in r.json()["detail"]
    assert len(store) == 0


def test_provider_errors_return_500_and_store_nothing(client, store, daraja):
    daraja.error = AuthFailure("Could not get Daraja access token. Please check your consumer key and secret.")
    r = client.post("/api/mpesa/stk-push", json=_registration("s1"))
    assert r.status_code == 500
    assert "access token" in r.json()["detail"]

    daraja.error = PushPaymentFailure("Bad Request - Invalid PhoneNumber", payload={"errorCode": "400.002.02"})
    r = client.post("/api/mpesa/stk-push", json=_registration("s1"))
    assert r.status_code == 500
    assert r.json()["detail"] == "Bad Request - Invalid PhoneNumber"
    assert len(store) == 0


def test_callback_for_unknown_request_is_acknowledged(client, db):
    r = client.post("/api/mpesa/callback", json=callback_body("ws_unknown"))
    assert r.status_code == 200
    assert r.json() == ACK
    assert db.query(User).count() == 0


def test_duplicate_callback_creates_one_user(client, db):
    client.post("/api/mpesa/stk-push", json=_registration("s1"))

    first = client.post("/api/mpesa/callback", json=callback_body("ws_1"))
    second = client.post("/api/mpesa/callback", json=callback_body("ws_1"))

    assert first.json() == second.json() == ACK
    assert db.query(User).filter(User.email == EMAIL).count() == 1


def test_malformed_callback_is_acknowledged(client):
    for payload in ({}, {"Body": {}}, {"Body": {"stkCallback": {"ResultCode": "x"}}}):
        r = client.post("/api/mpesa/callback", json=payload)
        assert r.status_code == 200
        assert r.json() == ACK

    r = client.post("/api/mpesa/callback", content=b"not json", headers={"Content-Type": "application/json"})
    assert r.status_code == 200
    assert r.json() == ACK


def test_callback_from_unlisted_address_is_ignored(client, store, monkeypatch):
    monkeypatch.setattr(get_settings(), "mpesa_callback_allowed_ips", "196.201.214.200, 196.201.214.206")
    client.post("/api/mpesa/stk-push", json=_registration("s1"))

    r = client.post("/api/mpesa/callback", json=callback_body("ws_1"))

    assert r.json() == ACK
    assert "ws_1" in store


def test_login_rejects_bad_password(client, db):
    db.add(User(name="Jane", email=EMAIL, hashed_password=get_password_hash("secret123"), has_paid=True))
    db.commit()

    r = client.post("/api/auth/login", json={"email": EMAIL, "password": "wrong"})
    assert r.status_code == 400
    assert client.get("/api/auth/me").status_code == 401


def test_app_uses_the_injected_store(client, store):
    assert client.app.state.activation.store is store

    r = client.post("/api/mpesa/stk-push", json=_registration("s1"))

    assert r.status_code == 200
    assert len(store) == 1


@pytest.mark.parametrize(
    "overrides, field",
    [
        ({"email": "not-an-email"}, "email"),
        ({"amount": 10.5}, "amount"),
        ({"amount": "abc"}, "amount"),
        ({"phone": 712345678}, "phone"),
    ],
)
def test_badly_typed_stk_push_fields_return_400(client, store, daraja, overrides, field):
    r = client.post("/api/mpesa/stk-push", json=_registration("s1", **overrides))

    assert r.status_code == 400
    assert field in r.json()["detail"]
    assert daraja.calls == []
    assert len(store) == 0


def test_login_with_invalid_email_returns_400(client):
    r = client.post("/api/auth/login", json={"email": "nope", "password": "x"})
    assert r.status_code == 400
    assert "email" in r.json()["detail"]


def test_websocket_is_unregistered_when_receive_fails(client):
    manager = client.app.state.notifier

    with pytest.raises(Exception):
        with client.websocket_connect("/ws") as ws:
            session_id = ws.receive_json()["data"]["session_id"]
            assert manager.is_connected(session_id)
            # receive_text() cannot read a binary frame
            ws.send_bytes(b"\x00")
            ws.receive_text()

    assert not manager.is_connected(session_id)
