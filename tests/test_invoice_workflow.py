"""
Unit tests for invoice ID generation and the invoice creation workflow.

No HTTP involved: the workflow is called directly with a fake clock and a
recording sleep, against a mongomock database.
"""
from datetime import datetime

import pytest
from bson import ObjectId
from pymongo.errors import ServerSelectionTimeoutError

import invoices
from database import INVOICES
from errors import IdAllocationError, StoreError, ValidationError
from invoices import MAX_ID_ATTEMPTS, RETRY_DELAY, create_invoice, generate_invoice_id
from schemas import InvoiceIn


T1 = datetime(2025, 3, 7, 9, 5, 4, 987654)
T2 = datetime(2025, 3, 7, 9, 5, 5, 3000)


def make_payload(**overrides):
    body = {
        "patientName": "Karim Uddin",
        "gender": "male",
        "age": 42,
        "contactNumber": "01900000000",
        "tests": [{"testId": str(ObjectId()), "name": "CBC", "price": 250}],
        "totalAmount": 250,
        "hasReferrerDiscount": False,
        "referrerDiscountPercentage": 0,
        "priceAfterReferrerDiscount": 250,
        "hasLabAdjustment": False,
        "labAdjustmentAmount": 0,
        "finalPrice": 250,
    }
    body.update(overrides)
    return InvoiceIn(**body)


class RecordingSleep:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


def fixed_clock(*times):
    it = iter(times)
    return lambda: next(it)


# -------------------------------------------------------------------
# generate_invoice_id
# -------------------------------------------------------------------

class TestGenerateInvoiceId:

    def test_layout(self):
        assert generate_invoice_id(T1) == "25030709050498"

    def test_fourteen_digits(self):
        for ts in (T1, T2, datetime(2000, 1, 1), datetime(2099, 12, 31, 23, 59, 59, 999999)):
            value = generate_invoice_id(ts)
            assert len(value) == 14
            assert value.isdigit()

    def test_zero_padding(self):
        assert generate_invoice_id(datetime(2003, 1, 2, 3, 4, 5, 6000)) == "03010203040500"

    def test_same_hundredth_collides(self):
        a = datetime(2025, 3, 7, 9, 5, 4, 120000)
        b = datetime(2025, 3, 7, 9, 5, 4, 129999)
        assert generate_invoice_id(a) == generate_invoice_id(b)

    def test_next_hundredth_differs(self):
        a = datetime(2025, 3, 7, 9, 5, 4, 129999)
        b = datetime(2025, 3, 7, 9, 5, 4, 130000)
        assert generate_invoice_id(a) != generate_invoice_id(b)

    def test_defaults_to_now(self):
        assert len(generate_invoice_id()) == 14


# -------------------------------------------------------------------
# create_invoice
# -------------------------------------------------------------------

class TestCreateInvoice:

    def test_first_attempt(self, db):
        sleep = RecordingSleep()
        result = create_invoice(db, make_payload(), clock=fixed_clock(T1), sleep=sleep)

        assert result["invoiceId"] == "25030709050498"
        assert result["link"].endswith("25030709050498")
        assert sleep.calls == []
        assert db[INVOICES].count_documents({"invoiceId": "25030709050498"}) == 1

    def test_retries_after_collision(self, db):
        db[INVOICES].insert_one({"invoiceId": generate_invoice_id(T1)})
        sleep = RecordingSleep()

        result = create_invoice(db, make_payload(), clock=fixed_clock(T1, T2), sleep=sleep)

        assert result["invoiceId"] == generate_invoice_id(T2)
        assert sleep.calls == [RETRY_DELAY]

    def test_exhaustion_raises_and_never_duplicates(self, db):
        taken = generate_invoice_id(T1)
        db[INVOICES].insert_one({"invoiceId": taken, "patientName": "first"})
        sleep = RecordingSleep()

        with pytest.raises(IdAllocationError) as exc_info:
            create_invoice(db, make_payload(), clock=lambda: T1, sleep=sleep)

        assert exc_info.value.http_status == 500
        assert len(sleep.calls) == MAX_ID_ATTEMPTS
        assert db[INVOICES].count_documents({"invoiceId": taken}) == 1

    def test_insert_race_counts_as_collision(self, db):
        """The existence check misses, the unique index catches the duplicate."""
        taken = generate_invoice_id(T1)
        db[INVOICES].insert_one({"invoiceId": taken})

        class BlindInvoices:
            def __init__(self, collection):
                self.collection = collection

            def find_one(self, *args, **kwargs):
                return None

            def insert_one(self, doc):
                return self.collection.insert_one(doc)

        store = {INVOICES: BlindInvoices(db[INVOICES])}
        sleep = RecordingSleep()

        result = create_invoice(store, make_payload(), clock=fixed_clock(T1, T2), sleep=sleep)

        assert result["invoiceId"] == generate_invoice_id(T2)
        assert len(sleep.calls) == 1
        assert db[INVOICES].count_documents({"invoiceId": taken}) == 1

    def test_store_failure_is_generic_error(self):
        class DownInvoices:
            def find_one(self, *args, **kwargs):
                raise ServerSelectionTimeoutError("no servers")

        with pytest.raises(StoreError) as exc_info:
            create_invoice({INVOICES: DownInvoices()}, make_payload(), clock=lambda: T1, sleep=RecordingSleep())

        assert exc_info.value.message == "Failed to create invoice"
        assert exc_info.value.http_status == 500

    def test_malformed_test_id_rejected_before_store(self, db):
        payload = make_payload(tests=[{"testId": "not-an-id", "name": "CBC", "price": 250}])

        with pytest.raises(ValidationError):
            create_invoice(db, payload, clock=lambda: T1, sleep=RecordingSleep())

        assert db[INVOICES].count_documents({}) == 0

    def test_malformed_referrer_rejected(self, db):
        with pytest.raises(ValidationError):
            create_invoice(db, make_payload(referredBy="xyz"), clock=lambda: T1, sleep=RecordingSleep())


class TestInvoiceDocument:

    def test_line_items_and_references(self, db):
        referrer_id = ObjectId()
        plain_id, schema_test_id, schema_id = ObjectId(), ObjectId(), ObjectId()
        payload = make_payload(
            referredBy=str(referrer_id),
            tests=[
                {"testId": str(plain_id), "name": "CBC", "price": 250},
                {"testId": str(schema_test_id), "name": "Lipid Profile", "price": 900, "schemaId": str(schema_id)},
            ],
        )

        create_invoice(db, payload, clock=lambda: T1, sleep=RecordingSleep())
        doc = db[INVOICES].find_one({"invoiceId": generate_invoice_id(T1)})

        assert doc["referredBy"] == referrer_id
        plain, with_schema = doc["tests"]
        assert plain == {"testId": plain_id, "name": "CBC", "price": 250, "schemaId": None}
        assert with_schema["testId"] == schema_test_id
        assert with_schema["schemaId"] == schema_id
        assert with_schema["report"] == {}
        assert with_schema["isCompleted"] is False

    def test_pricing_copied_verbatim(self, db):
        payload = make_payload(
            totalAmount=1000,
            hasReferrerDiscount=True,
            referrerDiscountPercentage=10,
            priceAfterReferrerDiscount=900,
            hasLabAdjustment=True,
            labAdjustmentAmount=50,
            finalPrice=850,
        )

        create_invoice(db, payload, clock=lambda: T1, sleep=RecordingSleep())
        doc = db[INVOICES].find_one({})

        assert doc["totalAmount"] == 1000
        assert doc["hasReferrerDiscount"] is True
        assert doc["referrerDiscountPercentage"] == 10
        assert doc["priceAfterReferrerDiscount"] == 900
        assert doc["hasLabAdjustment"] is True
        assert doc["labAdjustmentAmount"] == 50
        assert doc["finalPrice"] == 850

    def test_no_referrer_stored_as_null(self, db):
        create_invoice(db, make_payload(), clock=lambda: T1, sleep=RecordingSleep())
        assert db[INVOICES].find_one({})["referredBy"] is None

    def test_link_uses_configured_base(self, db, monkeypatch):
        monkeypatch.setattr(invoices, "INVOICE_LINK_BASE", "https://example.test/i/")
        result = create_invoice(db, make_payload(), clock=lambda: T1, sleep=RecordingSleep())
        assert result["link"] == "https://example.test/i/25030709050498"
