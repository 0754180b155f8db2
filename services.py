"""
Referrer, staff and test catalog services.

Each service maps validated request models onto the generic Repository. The only
cross-document logic is the uniqueness pre-check for usernames and test names,
backed by unique indexes (see database.ensure_indexes).
"""
import logging
from typing import Any, Dict, List

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import REFERRERS, STAFF, TEST_CATALOG, TEST_CATEGORIES, TEST_SCHEMAS, TESTS
from errors import ConflictError, ValidationError, store_errors
from repository import BY_NAME, Repository, parse_object_id, serialize_doc
from schemas import (
    Permission,
    PermissionPatch,
    Permissions,
    ReferrerIn,
    ReferrerUpdate,
    StaffIn,
    StaffUpdate,
    TestIn,
    TestUpdate,
    commission_error,
)

logger = logging.getLogger(__name__)

referrers = Repository(REFERRERS, "Referrer")
staff = Repository(STAFF, "Staff")
tests = Repository(TESTS, "Test")


def _parse_permission(name: Any) -> Permission:
    permission = Permission.parse(name)
    if permission is None:
        raise ValidationError("Invalid permission type", code="INVALID_PERMISSION")
    return permission


# Referrers

@store_errors("Failed to fetch referrers")
def list_referrers(db: Database) -> List[Dict[str, Any]]:
    return referrers.list(db)


@store_errors("Failed to fetch referrer")
def get_referrer(db: Database, referrer_id: str) -> Dict[str, Any]:
    return referrers.get(db, {"_id": parse_object_id(referrer_id, "referrer ID")})


@store_errors("Failed to create referrer")
def create_referrer(db: Database, body: ReferrerIn) -> Dict[str, str]:
    inserted_id = referrers.insert(db, body.model_dump())
    logger.info("Created referrer %s", inserted_id)
    return {"_id": str(inserted_id)}


@store_errors("Failed to update referrer")
def update_referrer(db: Database, referrer_id: str, body: ReferrerUpdate) -> Dict[str, Any]:
    oid = parse_object_id(referrer_id, "referrer ID")
    fields = body.model_dump(exclude_unset=True, exclude_none=True)
    if {"commissionType", "commissionValue"} & fields.keys():
        # A partial edit is checked against the stored half of the pair
        current = referrers.get(db, {"_id": oid})
        error = commission_error(
            fields.get("commissionType", current.get("commissionType")),
            fields.get("commissionValue", current.get("commissionValue")),
        )
        if error:
            raise ValidationError(error)
    return referrers.update(db, {"_id": oid}, fields)


@store_errors("Failed to update referrer")
def set_referrer_active(db: Database, referrer_id: str, active: bool) -> Dict[str, str]:
    referrers.set_active(db, parse_object_id(referrer_id, "referrer ID"), active)
    state = "activated" if active else "deactivated"
    return {"message": f"Referrer {state} successfully", "_id": referrer_id}


@store_errors("Failed to delete referrer")
def delete_referrer(db: Database, referrer_id: str) -> Dict[str, str]:
    # Invoices keep their referredBy; the read-time join then finds nothing
    referrers.delete(db, {"_id": parse_object_id(referrer_id, "referrer ID")})
    logger.info("Deleted referrer %s", referrer_id)
    return {"message": "Referrer deleted successfully"}


# Staff

def _check_username_free(db: Database, username: str, exclude=None) -> None:
    query = {"username": username.lower()}
    if exclude is not None:
        query["_id"] = {"$ne": exclude}
    if staff.find_one(db, query):
        raise ConflictError("Username already exists", code="USERNAME_TAKEN")


@store_errors("Failed to fetch staff")
def list_staff(db: Database) -> List[Dict[str, Any]]:
    return staff.list(db)


@store_errors("Failed to fetch staff")
def get_staff(db: Database, staff_id: str) -> Dict[str, Any]:
    return staff.get(db, {"_id": parse_object_id(staff_id, "staff ID")})


@store_errors("Failed to create staff")
def create_staff(db: Database, body: StaffIn) -> Dict[str, str]:
    _check_username_free(db, body.username)
    try:
        inserted_id = staff.insert(db, body.model_dump())
    except DuplicateKeyError:
        raise ConflictError("Username already exists", code="USERNAME_TAKEN")
    logger.info("Created staff %s (%s)", inserted_id, body.username)
    return {"_id": str(inserted_id)}


@store_errors("Failed to update staff")
def update_staff(db: Database, staff_id: str, body: StaffUpdate) -> Dict[str, Any]:
    oid = parse_object_id(staff_id, "staff ID")
    if body.username:
        _check_username_free(db, body.username, exclude=oid)
    fields = body.model_dump(exclude_unset=True, exclude_none=True)
    if "permissions" in fields:
        # Full replace: flags missing from the request are reset to False.
        # exclude_unset above also trimmed the nested model, so rebuild it.
        fields["permissions"] = Permissions(**fields["permissions"]).model_dump()
    try:
        return staff.update(db, {"_id": oid}, fields)
    except DuplicateKeyError:
        raise ConflictError("Username already exists", code="USERNAME_TAKEN")


@store_errors("Failed to update staff")
def set_staff_active(db: Database, staff_id: str, active: bool) -> Dict[str, str]:
    staff.set_active(db, parse_object_id(staff_id, "staff ID"), active)
    state = "activated" if active else "deactivated"
    return {"message": f"Staff {state} successfully", "_id": staff_id}


@store_errors("Failed to update staff permission")
def set_staff_permission(db: Database, staff_id: str, body: PermissionPatch) -> Dict[str, Any]:
    oid = parse_object_id(staff_id, "staff ID")
    permission = _parse_permission(body.permission)
    if not isinstance(body.value, bool):
        raise ValidationError("Permission value must be boolean")
    return staff.update(db, {"_id": oid}, {f"permissions.{permission.value}": body.value})


@store_errors("Failed to delete staff")
def delete_staff(db: Database, staff_id: str) -> Dict[str, str]:
    staff.delete(db, {"_id": parse_object_id(staff_id, "staff ID")})
    logger.info("Deleted staff %s", staff_id)
    return {"message": "Staff deleted successfully"}


@store_errors("Failed to fetch staff")
def get_staff_by_username(db: Database, username: str) -> Dict[str, Any]:
    return staff.get(db, {"username": username.lower()})


@store_errors("Failed to fetch staff")
def list_active_staff(db: Database) -> List[Dict[str, Any]]:
    return staff.list(db, {"isActive": True}, sort=BY_NAME)


@store_errors("Failed to fetch staff")
def list_staff_with_permission(db: Database, name: str) -> List[Dict[str, Any]]:
    permission = _parse_permission(name)
    return staff.list(db, {f"permissions.{permission.value}": True, "isActive": True}, sort=BY_NAME)


# Test catalog

@store_errors("Failed to fetch tests")
def list_tests(db: Database) -> List[Dict[str, Any]]:
    return tests.list(db)


@store_errors("Failed to fetch test")
def get_test(db: Database, test_id: str) -> Dict[str, Any]:
    parse_object_id(test_id, "test ID")
    return tests.get(db, {"testId": test_id})


@store_errors("Failed to create test")
def create_test(db: Database, body: TestIn) -> Dict[str, Any]:
    if tests.find_one(db, {"name": body.name}):
        raise ConflictError("Test name already exists", code="TEST_NAME_TAKEN")
    doc = body.model_dump()
    try:
        inserted_id = tests.insert(db, doc)
    except DuplicateKeyError:
        raise ConflictError("Test name already exists", code="TEST_NAME_TAKEN")
    logger.info("Created test %s (%s)", inserted_id, body.name)
    return serialize_doc(doc)


@store_errors("Failed to update test")
def update_test(db: Database, test_id: str, body: TestUpdate) -> Dict[str, Any]:
    parse_object_id(test_id, "test ID")
    fields = {}
    if body.price is not None:
        fields["price"] = body.price
    if "schemaId" in body.model_fields_set:
        fields["schemaId"] = body.schemaId or None
    return tests.update(db, {"testId": test_id}, fields)


@store_errors("Failed to delete test")
def delete_test(db: Database, test_id: str) -> Dict[str, str]:
    parse_object_id(test_id, "test ID")
    tests.delete(db, {"testId": test_id})
    logger.info("Deleted test %s", test_id)
    return {"message": "Test deleted successfully"}


@store_errors("Failed to fetch test categories")
def list_test_categories(db: Database) -> List[Dict[str, Any]]:
    return [serialize_doc(d) for d in db[TEST_CATEGORIES].find({})]


@store_errors("Failed to fetch test catalog")
def list_test_catalog(db: Database) -> List[Dict[str, Any]]:
    return [serialize_doc(d) for d in db[TEST_CATALOG].find({})]


@store_errors("Failed to fetch test formats")
def list_active_schemas(db: Database, test_id: str) -> List[Dict[str, Any]]:
    parse_object_id(test_id, "test ID")
    return [serialize_doc(d) for d in db[TEST_SCHEMAS].find({"testId": test_id, "isActive": True})]
