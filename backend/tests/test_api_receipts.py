from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient

from factories import FakeOcr, RecordingDispatcher, make_database, seed
from loyalty.api.main import app
from loyalty.core.database import get_db
from loyalty.services.ledger_service import LedgerUpdater
from loyalty.services.receipt_processor import ReceiptProcessor, get_receipt_processor


@pytest.fixture
def api(tmp_path):
    db = asyncio.run(make_database(tmp_path / "api.db"))
    state = {"ocr": FakeOcr(), "dispatcher": RecordingDispatcher()}

    def _processor():
        return ReceiptProcessor(
            session_factory=db.Session,
            service_session_factory=db.Session,
            ocr=state["ocr"],
            dispatcher=state["dispatcher"],
            ledger=LedgerUpdater(db.Session, max_attempts=1, backoff_seconds=0),
        )

    async def _db():
        async with db.Session() as session:
            yield session

    app.dependency_overrides[get_receipt_processor] = _processor
    app.dependency_overrides[get_db] = _db
    try:
        yield db, state, TestClient(app)
    finally:
        app.dependency_overrides.clear()
        asyncio.run(db.engine.dispose())


def test_process_receipt_success(api):
    db, state, client = api
    ids = asyncio.run(seed(db.Session))
    rid = ids.receipt_ids[0]

    resp = client.post("/api/receipts/process", json={"receiptId": rid})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["receiptId"] == rid
    assert body["pointsEarned"] == 4
    assert body["message"] == "Receipt processed successfully! You earned 4 points."
    assert body["extractedData"] == {"merchantName": "JOLLIBEE NAGA BRANCH", "totalAmount": 450.0, "currency": "PHP"}
    assert body["attributionTracking"] is None

    status = client.get(f"/api/receipts/{rid}")
    assert status.status_code == 200
    assert status.json()["status"] == "processed"
    assert status.json()["pointsEarned"] == 4


@pytest.mark.parametrize("payload", [{}, {"receiptId": ""}, None])
def test_missing_receipt_id_is_400(api, payload):
    _, _, client = api
    resp = client.post("/api/receipts/process", json=payload) if payload is not None else client.post("/api/receipts/process")
    assert resp.status_code == 400
    assert resp.json()["error"] == "Receipt ID is required"


def test_unknown_receipt_is_404(api):
    _, _, client = api
    resp = client.post("/api/receipts/process", json={"receiptId": "nope"})
    assert resp.status_code == 404
    assert resp.json() == {"error": "Receipt not found", "details": "No receipt exists with this ID.", "receiptId": "nope"}
    assert client.get("/api/receipts/nope").status_code == 404


def test_repeat_request_is_409(api):
    db, _, client = api
    rid = asyncio.run(seed(db.Session)).receipt_ids[0]
    assert client.post("/api/receipts/process", json={"receiptId": rid}).status_code == 200

    resp = client.post("/api/receipts/process", json={"receiptId": rid})
    assert resp.status_code == 409
    assert resp.json()["receiptId"] == rid


def test_merchant_mismatch_is_400_with_names(api):
    db, state, client = api
    rid = asyncio.run(seed(db.Session, business_name="ABC Store")).receipt_ids[0]
    state["ocr"] = FakeOcr(merchant="XYZ Mart")

    resp = client.post("/api/receipts/process", json={"receiptId": rid})

    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "Business name mismatch"
    assert body["expectedBusiness"] == "ABC Store"
    assert body["detectedBusiness"] == "XYZ Mart"
    assert body["details"].startswith('Receipt appears to be from "XYZ Mart" but you scanned the QR code for "ABC Store".')

    detail = client.get(f"/api/receipts/{rid}").json()
    assert detail["status"] == "failed"
    assert detail["failureReason"] == "merchant_mismatch"


def test_invalid_amount_is_400(api):
    db, state, client = api
    rid = asyncio.run(seed(db.Session)).receipt_ids[0]
    state["ocr"] = FakeOcr(total=0)

    resp = client.post("/api/receipts/process", json={"receiptId": rid})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid receipt amount"


def test_ocr_failure_is_422(api):
    from loyalty.core.errors import OcrFailure

    db, state, client = api
    rid = asyncio.run(seed(db.Session)).receipt_ids[0]
    state["ocr"] = FakeOcr(error=OcrFailure("The receipt could not be read."))

    resp = client.post("/api/receipts/process", json={"receiptId": rid})
    assert resp.status_code == 422
    assert resp.json()["details"] == "The receipt could not be read."


def test_health_and_root():
    client = TestClient(app)
    assert client.get("/health").json() == {"status": "healthy"}
    assert "message" in client.get("/").json()


def test_malformed_receipt_id_keeps_error_shape(api):
    _, _, client = api
    resp = client.post("/api/receipts/process", json={"receiptId": 123})
    assert resp.status_code == 422
    body = resp.json()
    assert body["error"] == "Validation error"
    assert "receiptId" in body and body["receiptId"] is None
    assert body["details"]


def test_error_responses_are_documented():
    schema = TestClient(app).get("/openapi.json").json()
    assert "ErrorResponse" in schema["components"]["schemas"]
    responses = schema["paths"]["/api/receipts/process"]["post"]["responses"]
    for code in ("400", "404", "409", "422", "500"):
        assert responses[code]["content"]["application/json"]["schema"]["$ref"].endswith("/ErrorResponse")
