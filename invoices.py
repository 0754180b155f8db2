"""
Invoice ID allocation, invoice creation and invoice reads.

Invoice IDs are human readable timestamps (YYMMDDHHmmSSff). Two invoices created
inside the same hundredth of a second would get the same candidate, so creation
checks the store and retries a bounded number of times before giving up. The
unique index on ``invoices.invoiceId`` catches the race between the check and the
insert, and is treated as one more collision.
"""
import logging
import os
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import INVOICES, REFERRERS, TESTS
from errors import IdAllocationError, NotFoundError, store_errors
from repository import NEWEST_FIRST, parse_object_id, serialize_doc, utcnow
from schemas import InvoiceIn

logger = logging.getLogger(__name__)

MAX_ID_ATTEMPTS = 5
RETRY_DELAY = 0.01  # seconds
INVOICE_LINK_BASE = os.getenv("INVOICE_LINK_BASE", "https://labpilotpro.com/")

REFERRER_LOOKUP = {
    "$lookup": {
        "from": REFERRERS,
        "localField": "referredBy",
        "foreignField": "_id",
        "as": "referredBy",
    }
}


def generate_invoice_id(now: Optional[datetime] = None) -> str:
    """Return ``now`` as a 14 digit YYMMDDHHmmSSff string (ff = hundredths of a second)."""
    now = now or datetime.now()
    hundredths = now.microsecond // 10000
    return f"{now.year % 100:02d}{now.strftime('%m%d%H%M%S')}{hundredths:02d}"


def build_invoice_document(payload: InvoiceIn) -> Dict[str, Any]:
    """
    Assemble the stored invoice from a validated request, without its invoiceId.

    Line items are snapshots of the tests as ordered. A test with a report schema
    starts with an empty report and ``isCompleted=False``. Pricing is copied as sent.
    """
    line_items = []
    for test in payload.tests:
        item = {
            "testId": parse_object_id(test.testId, "test ID"),
            "name": test.name,
            "price": test.price,
            "schemaId": parse_object_id(test.schemaId, "schema ID") if test.schemaId else None,
        }
        if test.schemaId:
            item.update({"report": {}, "isCompleted": False})
        line_items.append(item)

    return {
        "patientName": payload.patientName,
        "gender": payload.gender,
        "age": payload.age,
        "contactNumber": payload.contactNumber,
        "referredBy": parse_object_id(payload.referredBy, "referrer ID") if payload.referredBy else None,
        "tests": line_items,
        "totalAmount": payload.totalAmount,
        "hasReferrerDiscount": payload.hasReferrerDiscount,
        "referrerDiscountPercentage": payload.referrerDiscountPercentage,
        "priceAfterReferrerDiscount": payload.priceAfterReferrerDiscount,
        "hasLabAdjustment": payload.hasLabAdjustment,
        "labAdjustmentAmount": payload.labAdjustmentAmount,
        "finalPrice": payload.finalPrice,
    }


def invoice_link(invoice_id: str) -> str:
    return INVOICE_LINK_BASE + invoice_id


@store_errors("Failed to create invoice")
def create_invoice(
    db: Database,
    payload: InvoiceIn,
    clock: Callable[[], datetime] = datetime.now,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, str]:
    # Malformed references fail here, before the store is touched
    doc = build_invoice_document(payload)
    invoices = db[INVOICES]

    for attempt in range(1, MAX_ID_ATTEMPTS + 1):
        candidate = generate_invoice_id(clock())
        if invoices.find_one({"invoiceId": candidate}, {"_id": 1}) is None:
            try:
                invoices.insert_one({"invoiceId": candidate, **doc, "createdAt": utcnow()})
            except DuplicateKeyError:
                logger.warning("Invoice ID %s taken between check and insert (attempt %d)", candidate, attempt)
            else:
                logger.info("Created invoice %s after %d attempt(s)", candidate, attempt)
                return {"invoiceId": candidate, "link": invoice_link(candidate)}
        else:
            logger.warning("Invoice ID %s already exists (attempt %d/%d)", candidate, attempt, MAX_ID_ATTEMPTS)
        sleep(RETRY_DELAY)

    logger.error("Could not allocate an invoice ID after %d attempts", MAX_ID_ATTEMPTS)
    raise IdAllocationError("Failed to generate a unique invoice ID, please try again")


def _with_referrer(doc: Dict[str, Any]) -> Dict[str, Any]:
    # $lookup yields a list; a deleted referrer leaves it empty
    joined = doc.get("referredBy") or []
    doc["referredBy"] = joined[0] if joined else None
    return serialize_doc(doc)


@store_errors("Failed to fetch invoices")
def list_invoices(db: Database) -> List[Dict[str, Any]]:
    """All invoices, newest invoiceId first, each with its referrer's current record."""
    pipeline = [REFERRER_LOOKUP, {"$sort": {"invoiceId": -1}}]
    return [_with_referrer(d) for d in db[INVOICES].aggregate(pipeline)]


@store_errors("Failed to fetch invoice")
def get_invoice(db: Database, invoice_id: str) -> Dict[str, Any]:
    pipeline = [{"$match": {"invoiceId": invoice_id}}, REFERRER_LOOKUP]
    found = list(db[INVOICES].aggregate(pipeline))
    if not found:
        raise NotFoundError("Invoice not found")
    return _with_referrer(found[0])


@store_errors("Failed to fetch invoice data")
def get_required_data(db: Database) -> Dict[str, List[Dict[str, Any]]]:
    """Referrers and tests needed by the invoice form, newest first."""
    referrers = db[REFERRERS].find({}).sort(NEWEST_FIRST)
    tests = db[TESTS].find({}).sort(NEWEST_FIRST)
    return {
        "referrers": [serialize_doc(d) for d in referrers],
        "tests": [serialize_doc(d) for d in tests],
    }
