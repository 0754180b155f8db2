"""
MongoDB connection for the LabPilot back-office API.

The client is created at import time; pymongo connects lazily on first use.
"""
import logging
import os

from dotenv import load_dotenv
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import ConnectionFailure, PyMongoError

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL") or os.getenv("MONGODB_URI") or "mongodb://localhost:27017"
DATABASE_NAME = os.getenv("DATABASE_NAME", "labpilot")
# How long an operation waits for a reachable server before failing
DATABASE_TIMEOUT_MS = int(os.getenv("DATABASE_TIMEOUT_MS", "5000"))

# Collection names as they exist in the production database
REFERRERS = "referrers"
STAFF = "staff"
TESTS = "myTestList"
TEST_CATEGORIES = "testCategory"
TEST_CATALOG = "testCatalog"
TEST_SCHEMAS = "testSchema"
INVOICES = "invoices"

UNIQUE_INDEXES = [
    (INVOICES, "invoiceId"),
    (STAFF, "username"),
    (TESTS, "name"),
]

client = MongoClient(DATABASE_URL, serverSelectionTimeoutMS=DATABASE_TIMEOUT_MS)
db = client[DATABASE_NAME]


def get_db() -> Database:
    return db


def ensure_indexes(database: Database) -> None:
    """
    Create the unique indexes backing invoice IDs, usernames and test names.

    Failures are logged and start-up continues; the pre-checks still apply. An
    unreachable server stops the loop so start-up waits for one timeout at most.
    """
    for collection, field in UNIQUE_INDEXES:
        try:
            database[collection].create_index([(field, ASCENDING)], unique=True)
        except ConnectionFailure:
            logger.exception("Database unreachable, skipping unique index creation")
            return
        except PyMongoError:
            # Existing duplicates in legacy data
            logger.exception("Could not create unique index on %s.%s", collection, field)
        else:
            logger.info("Unique index ensured on %s.%s", collection, field)
