"""
Shared fixtures for all tests.

The API runs against an in-memory mongomock database injected through the
get_db dependency, with the same unique indexes as production.
"""
from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from database import REFERRERS, STAFF, TESTS, ensure_indexes, get_db
from main import app


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def db():
    database = mongomock.MongoClient()["labpilot_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def missing_id():
    """Well-formed ObjectId that matches nothing."""
    return str(ObjectId())


# ---------------------------------------------------------------------------
# Document builders (insert straight into the store)
# ---------------------------------------------------------------------------

def _stamp(doc, age_minutes):
    ts = datetime.now(timezone.utc) - timedelta(minutes=age_minutes)
    doc.setdefault("createdAt", ts)
    doc.setdefault("updatedAt", ts)
    return doc


@pytest.fixture
def make_referrer(db):
    def _make(name="Dr. Rahman", age_minutes=0, **fields):
        doc = _stamp({
            "name": name,
            "contactNumber": "01700000000",
            "commissionType": "percentage",
            "commissionValue": 10,
            "isActive": True,
            **fields,
        }, age_minutes)
        db[REFERRERS].insert_one(doc)
        return doc

    return _make


@pytest.fixture
def make_staff(db):
    def _make(name="Nadia", username="nadia", age_minutes=0, **fields):
        doc = _stamp({
            "name": name,
            "username": username,
            "mobileNumber": "01800000000",
            "permissions": {
                "createInvoice": False,
                "editInvoice": False,
                "deleteInvoice": False,
                "cashmemo": False,
                "uploadReport": False,
            },
            "isActive": True,
            **fields,
        }, age_minutes)
        db[STAFF].insert_one(doc)
        return doc

    return _make


@pytest.fixture
def make_test(db):
    def _make(name="CBC", price=250.0, age_minutes=0, **fields):
        doc = _stamp({
            "name": name,
            "testId": str(ObjectId()),
            "categoryId": None,
            "schemaId": None,
            "price": price,
            **fields,
        }, age_minutes)
        db[TESTS].insert_one(doc)
        return doc

    return _make


@pytest.fixture
def invoice_payload():
    """Minimal valid payload for POST /api/v1/invoice/add, without tests."""

    def _payload(tests, **overrides):
        body = {
            "patientName": "Karim Uddin",
            "gender": "male",
            "age": 42,
            "contactNumber": "01900000000",
            "tests": tests,
            "totalAmount": 250,
            "hasReferrerDiscount": False,
            "referrerDiscountPercentage": 0,
            "priceAfterReferrerDiscount": 250,
            "hasLabAdjustment": False,
            "labAdjustmentAmount": 0,
            "finalPrice": 250,
        }
        body.update(overrides)
        return body

    return _payload
