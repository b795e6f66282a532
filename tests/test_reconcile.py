import pytest
from pymongo.errors import DuplicateKeyError

from reconcile import find_duplicate_agreements, reconcile


def _agreement(email, status="pending"):
    return {"user_email": email, "user_name": email.split("@")[0], "status": status}


def test_duplicates_collapse_to_one_survivor(database):
    database.agreements.insert_many(
        [_agreement("a@x.com"), _agreement("a@x.com", "checked"), _agreement("a@x.com"), _agreement("b@x.com")]
    )

    removed = reconcile(database)

    assert removed == 2
    assert database.agreements.count_documents({"user_email": "a@x.com"}) == 1
    assert database.agreements.count_documents({"user_email": "b@x.com"}) == 1
    assert find_duplicate_agreements(database) == []


def test_second_run_is_a_no_op(database):
    database.agreements.insert_many([_agreement("a@x.com"), _agreement("a@x.com")])
    reconcile(database)
    before = sorted(str(d["_id"]) for d in database.agreements.find())

    assert reconcile(database) == 0
    assert sorted(str(d["_id"]) for d in database.agreements.find()) == before


def test_unique_constraint_is_installed(database):
    reconcile(database)
    database.agreements.insert_one(_agreement("a@x.com"))

    with pytest.raises(DuplicateKeyError):
        database.agreements.insert_one(_agreement("a@x.com", "checked"))


def test_startup_runs_reconciliation_before_ready(app, database):
    from fastapi.testclient import TestClient

    database.agreements.insert_many([_agreement("a@x.com"), _agreement("a@x.com")])
    assert app.state.ready is False

    with TestClient(app):
        assert app.state.ready is True
        assert database.agreements.count_documents({"user_email": "a@x.com"}) == 1


def test_agreements_without_user_email_are_left_alone(database):
    database.agreements.insert_many(
        [
            {"userEmail": "a@x.com", "status": "checked"},
            {"userEmail": "b@x.com", "status": "pending"},
            _agreement("c@x.com"),
        ]
    )

    assert reconcile(database) == 0
    assert database.agreements.count_documents({}) == 3

    database.agreements.insert_one({"userEmail": "d@x.com"})
    assert database.agreements.count_documents({}) == 4
