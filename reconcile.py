"""
Startup reconciliation.

Collapses agreements that share a tenant email down to one survivor and then
installs the unique index that keeps it that way. Must finish before any
agreement-writing route accepts traffic; the app's lifespan runs it and only
then marks the app ready.
"""

import logging
from typing import List

from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure

from database import Database

logger = logging.getLogger("towertrack.reconcile")

SECONDARY_INDEXES = (
    ("users", [("email", ASCENDING)], {"unique": True}),
    ("coupons", [("code", ASCENDING)], {"unique": True}),
    ("payments", [("email", ASCENDING), ("created_at", DESCENDING)], {}),
    ("announcements", [("created_at", DESCENDING)], {}),
    ("buildings", [("created_at", DESCENDING)], {}),
    ("notices", [("user_email", ASCENDING), ("status", ASCENDING)], {}),
)


KEYED = {"user_email": {"$type": "string"}}


def find_duplicate_agreements(database: Database) -> List[dict]:
    pipeline = [
        {"$match": KEYED},
        {"$group": {"_id": "$user_email", "ids": {"$push": "$_id"}, "count": {"$sum": 1}}},
        {"$match": {"count": {"$gt": 1}}},
    ]
    return list(database.agreements.aggregate(pipeline))


def remove_duplicate_agreements(database: Database) -> int:
    unkeyed = database.agreements.count_documents({}) - database.agreements.count_documents(KEYED)
    if unkeyed:
        logger.warning("Skipped %d agreement(s) without a user_email string", unkeyed)
    removed = 0
    for group in find_duplicate_agreements(database):
        survivor, *extras = group["ids"]
        result = database.agreements.delete_many({"_id": {"$in": extras}})
        removed += result.deleted_count
        logger.warning(
            "Removed %d duplicate agreement(s) for %s, kept %s",
            result.deleted_count,
            group["_id"],
            survivor,
        )
    return removed


def ensure_indexes(database: Database) -> None:
    database.agreements.create_index(
        [("user_email", ASCENDING)], unique=True, partialFilterExpression=KEYED
    )
    for name, keys, options in SECONDARY_INDEXES:
        try:
            database.collection(name).create_index(keys, **options)
        except OperationFailure as exc:
            logger.warning("Could not create index on %s %s: %s", name, keys, exc)


def reconcile(database: Database) -> int:
    """Run the startup pass. Returns the number of agreements removed."""
    removed = remove_duplicate_agreements(database)
    ensure_indexes(database)
    if removed:
        logger.info("Reconciliation removed %d agreement(s)", removed)
    else:
        logger.info("Reconciliation found no duplicate agreements")
    return removed
