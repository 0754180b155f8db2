"""
Generic collection repository shared by the referrer, staff and test catalog services.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo.database import Database

from errors import NotFoundError, ValidationError

NEWEST_FIRST = [("createdAt", -1)]
BY_NAME = [("name", 1)]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def serialize_doc(doc: Any) -> Any:
    """Convert ObjectIds to strings and datetimes to isoformat, recursively."""
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        return doc.isoformat()
    if isinstance(doc, dict):
        return {k: serialize_doc(v) for k, v in doc.items()}
    if isinstance(doc, list):
        return [serialize_doc(v) for v in doc]
    return doc


def parse_object_id(value: str, label: str = "ID") -> ObjectId:
    if not ObjectId.is_valid(value):
        raise ValidationError(f"Invalid {label} format", code="INVALID_ID")
    return ObjectId(value)


class Repository:
    """
    Thin CRUD wrapper over one collection.

    ``label`` names the entity in not-found messages ("Staff not found").
    All reads return serialized documents.
    """

    def __init__(self, collection: str, label: str, default_sort: Optional[List[Tuple[str, int]]] = None):
        self.collection_name = collection
        self.label = label
        self.default_sort = default_sort or NEWEST_FIRST

    def collection(self, db: Database):
        return db[self.collection_name]

    def not_found(self) -> NotFoundError:
        return NotFoundError(f"{self.label} not found")

    def list(self, db: Database, filter: Optional[Dict[str, Any]] = None, sort=None) -> List[Dict[str, Any]]:
        cursor = self.collection(db).find(filter or {}).sort(sort or self.default_sort)
        return [serialize_doc(d) for d in cursor]

    def find_one(self, db: Database, filter: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self.collection(db).find_one(filter)

    def get(self, db: Database, filter: Dict[str, Any]) -> Dict[str, Any]:
        doc = self.find_one(db, filter)
        if not doc:
            raise self.not_found()
        return serialize_doc(doc)

    def insert(self, db: Database, doc: Dict[str, Any]) -> ObjectId:
        now = utcnow()
        doc.setdefault("createdAt", now)
        doc.setdefault("updatedAt", now)
        res = self.collection(db).insert_one(doc)
        return res.inserted_id

    def update(self, db: Database, filter: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
        """Set ``fields`` on the matching document and return the updated document."""
        update = dict(fields)
        update["updatedAt"] = utcnow()
        res = self.collection(db).update_one(filter, {"$set": update})
        if res.matched_count == 0:
            raise self.not_found()
        return self.get(db, filter)

    def set_active(self, db: Database, oid: ObjectId, active: bool) -> None:
        res = self.collection(db).update_one(
            {"_id": oid},
            {"$set": {"isActive": active, "updatedAt": utcnow()}},
        )
        if res.matched_count == 0:
            raise self.not_found()

    def delete(self, db: Database, filter: Dict[str, Any]) -> None:
        res = self.collection(db).delete_one(filter)
        if res.deleted_count == 0:
            raise self.not_found()
