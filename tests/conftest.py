from __future__ import annotations

import os
import sys
from pathlib import Path

# Ensure the project root is on sys.path so `import app.*` works in tests.
ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

# Settings are read once and cached; point them at an in-memory DB before app imports.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET_KEY"] = "test-secret"
os.environ["MPESA_CONSUMER_KEY"] = "consumer-key"
os.environ["MPESA_CONSUMER_SECRET"] = "consumer-secret"
os.environ["MPESA_SHORTCODE"] = "174379"
os.environ["MPESA_PASSKEY"] = "passkey"
os.environ["MPESA_CALLBACK_URL"] = "https://budget.example.co.ke/api/mpesa/callback"
os.environ["MPESA_CALLBACK_ALLOWED_IPS"] = ""

import pytest
from fastapi.testclient import TestClient

from app.database import Base, SessionLocal, engine
from app.main import create_app
from app.services.daraja import PushPaymentResult, normalize_phone
from app.services.pending_store import InMemoryPendingStore


class FakeDaraja:
    """Stands in for DarajaClient; accepts every push unless `error` is set."""

    def __init__(self):
        self.calls: list[dict] = []
        self.error: Exception | None = None
        self.next_request_id = "ws_1"

    async def initiate_push_payment(self, payee, amount, reference=None):
        phone = normalize_phone(payee)
        self.calls.append({"phone": phone, "amount": amount, "reference": reference})
        if self.error:
            raise self.error
        return PushPaymentResult(request_id=self.next_request_id, merchant_request_id="mr_1")


class FakeNotifier:
    def __init__(self):
        self.events: list[tuple[str, str, dict]] = []

    async def emit(self, session_id, event, data):
        self.events.append((session_id, event, data))


def callback_body(request_id: str, result_code: int = 0, desc: str = "The service request is processed successfully."):
    callback = {
        "MerchantRequestID": "mr_1",
        "CheckoutRequestID": request_id,
        "ResultCode": result_code,
        "ResultDesc": desc,
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": 500},
                {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]
        }
    return {"Body": {"stkCallback": callback}}


@pytest.fixture
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def daraja():
    return FakeDaraja()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def store():
    return InMemoryPendingStore()


@pytest.fixture
def client(db, daraja, store):
    app = create_app(daraja_client=daraja, pending_store=store)
    with TestClient(app) as c:
        yield c
