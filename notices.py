"""
Notice issuance and the three-strikes escalation.

A notice's ``notice_count`` is the number of active notices the tenant
already has, plus one. Once the count reaches ``NOTICE_THRESHOLD`` the
tenant's agreement is deleted and their role is reset to ``user``. Notices
past the threshold are still recorded and re-run the revocation.

The count-then-insert sequence is not atomic: two notices issued for the
same tenant at the same moment can read the same prior count and be given
the same ``notice_count``. The revocation is also not transactional; if the
notice is written and a later step fails, the earlier writes stay.
"""

import logging
from typing import Optional

from pymongo.errors import PyMongoError

from database import Database, utcnow
from errors import PersistenceError
from schemas import Role

logger = logging.getLogger("towertrack.notices")

NOTICE_THRESHOLD = 3
ACTIVE = "active"


def count_active_notices(database: Database, user_email: str) -> int:
    return database.notices.count_documents({"user_email": user_email, "status": ACTIVE})


def revoke_tenancy(database: Database, user_email: str) -> None:
    agreement = database.agreements.delete_one({"user_email": user_email})
    user = database.users.update_one({"email": user_email}, {"$set": {"role": Role.USER.value, "updated_at": utcnow()}})
    logger.warning(
        "Tenancy revoked for %s (agreements deleted=%d, users reset=%d)",
        user_email,
        agreement.deleted_count,
        user.modified_count,
    )


def issue_notice(
    database: Database,
    user_email: str,
    apartment_id: Optional[str] = None,
    reason: Optional[str] = None,
) -> dict:
    try:
        prior = count_active_notices(database, user_email)
        now = utcnow()
        notice = {
            "user_email": user_email,
            "apartment_id": apartment_id,
            "reason": reason,
            "notice_count": prior + 1,
            "status": ACTIVE,
            "date": now,
            "created_at": now,
        }
        result = database.notices.insert_one(notice)
        logger.info("Notice %d issued to %s", notice["notice_count"], user_email)

        if notice["notice_count"] >= NOTICE_THRESHOLD:
            revoke_tenancy(database, user_email)
    except PyMongoError as exc:
        logger.error("Notice issuance for %s failed: %s", user_email, exc)
        raise PersistenceError("Failed to issue notice") from exc

    notice["_id"] = result.inserted_id
    return notice
