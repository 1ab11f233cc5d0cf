"""Document store access.

Handlers never touch a module level database handle. The application factory
receives a ``Store`` (or builds one from Flask-PyMongo) and every route reads
its collections through it, so tests can hand in an in-memory database.
"""
from datetime import datetime
from typing import Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument

from .errors import ValidationError

COLLECTIONS = {
    "heading": "websiteHeading",
    "sliders": "sliders",
    "categories": "categories",
    "products": "products",
    "users": "users",
    "orders": "orders",
    "settings": "settings",
}


def parse_object_id(value, label: str = "resource") -> ObjectId:
    try:
        return ObjectId(str(value or "").strip())
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {label} identifier.")


class Store:
    def __init__(self, database):
        if database is None:
            raise ValueError("A database handle is required to build the store.")
        self.db = database
        self.counters = database["counters"]

    def __getattr__(self, name):
        try:
            collection_name = COLLECTIONS[name]
        except KeyError:
            raise AttributeError(name)
        return self.db[collection_name]

    def collection(self, name: str):
        return getattr(self, name)

    def next_sequence(self, name: str) -> int:
        counter = self.counters.find_one_and_update(
            {"_id": name},
            {"$inc": {"value": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(counter["value"])

    def insert(self, name: str, document: Dict) -> Dict:
        document = dict(document)
        document.setdefault("created_at", datetime.utcnow())
        document["seq"] = self.next_sequence(name)
        result = self.collection(name).insert_one(document)
        document["_id"] = result.inserted_id
        return document

    def latest(
        self,
        name: str,
        query: Optional[Dict] = None,
        limit: int = 0,
        skip: int = 0,
        projection: Optional[Dict] = None,
    ) -> List[Dict]:
        cursor = self.collection(name).find(query or {}, projection)
        cursor = cursor.sort([("seq", -1), ("_id", -1)])
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def count(self, name: str, query: Optional[Dict] = None) -> int:
        return self.collection(name).count_documents(query or {})
