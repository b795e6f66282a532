"""
MongoDB access for TowerTrack.

A single ``Database`` instance is built by the app factory and handed to
request handlers through the ``get_database`` dependency.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Request
from pymongo import MongoClient
from pymongo.errors import PyMongoError

APARTMENTS = "apartments"
AGREEMENTS = "agreements"
USERS = "users"
COUPONS = "coupons"
ANNOUNCEMENTS = "announcements"
PAYMENTS = "payments"
NOTICES = "notices"
BUILDINGS = "buildings"

COLLECTIONS = (APARTMENTS, AGREEMENTS, USERS, COUPONS, ANNOUNCEMENTS, PAYMENTS, NOTICES, BUILDINGS)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_object_id(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def serialize(doc: Optional[dict]) -> Optional[dict]:
    """Return a JSON friendly copy of ``doc`` with ``_id`` exposed as ``id``."""
    if doc is None:
        return None
    out = {k: v for k, v in doc.items() if k != "_id"}
    if "_id" in doc:
        out["id"] = str(doc["_id"])
    return out


class Database:
    """Thin wrapper around a pymongo database handle."""

    def __init__(self, client: Any, name: str):
        self.client = client
        self.name = name
        self.db = client[name]

    @classmethod
    def from_url(cls, url: str, name: str) -> "Database":
        return cls(MongoClient(url, tz_aware=True), name)

    def collection(self, name: str):
        return self.db[name]

    @property
    def apartments(self):
        return self.db[APARTMENTS]

    @property
    def agreements(self):
        return self.db[AGREEMENTS]

    @property
    def users(self):
        return self.db[USERS]

    @property
    def coupons(self):
        return self.db[COUPONS]

    @property
    def announcements(self):
        return self.db[ANNOUNCEMENTS]

    @property
    def payments(self):
        return self.db[PAYMENTS]

    @property
    def notices(self):
        return self.db[NOTICES]

    @property
    def buildings(self):
        return self.db[BUILDINGS]

    def create_document(self, collection_name: str, data: Dict[str, Any]) -> str:
        now = utcnow()
        doc = dict(data)
        doc.setdefault("created_at", now)
        doc["updated_at"] = now
        result = self.db[collection_name].insert_one(doc)
        return str(result.inserted_id)

    def get_documents(
        self,
        collection_name: str,
        filter_dict: Optional[Dict[str, Any]] = None,
        sort: Optional[Sequence[Tuple[str, int]]] = None,
        limit: Optional[int] = None,
        skip: int = 0,
    ) -> List[dict]:
        cursor = self.db[collection_name].find(filter_dict or {})
        if sort:
            cursor = cursor.sort(list(sort))
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def ping(self) -> bool:
        try:
            self.client.admin.command("ping")
            return True
        except PyMongoError:
            return False

    def close(self) -> None:
        self.client.close()


def get_database(request: Request) -> Database:
    return request.app.state.database
