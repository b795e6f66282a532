from fastapi.testclient import TestClient


TENANT = "a@x.com"


def _application(email=TENANT, **overrides):
    body = {
        "user_name": "Alice",
        "user_email": email,
        "floor_no": 3,
        "block_name": "B",
        "apartment_no": "3B",
        "rent": 12000,
    }
    body.update(overrides)
    return body


def test_tenant_application_end_to_end(client, auth, make_user):
    make_user("boss@x.com", role="admin")
    admin = auth("boss@x.com")
    tenant = auth(TENANT)

    created = client.post("/agreements", json=_application(), headers=tenant)
    assert created.status_code == 201
    agreement_id = created.json()["inserted_id"]

    pending = client.get("/agreements", params={"status": "pending"}, headers=admin)
    assert pending.status_code == 200
    assert [a["id"] for a in pending.json()] == [agreement_id]
    assert pending.json()[0]["status"] == "pending"

    # not visible to the tenant until checked
    assert client.get(f"/agreements/member/{TENANT}", headers=tenant).json() is None

    updated = client.patch(f"/agreements/{agreement_id}/status", json={"status": "checked"}, headers=admin)
    assert updated.status_code == 200

    fetched = client.get(f"/agreements/member/{TENANT}", headers=tenant)
    assert fetched.status_code == 200
    assert fetched.json()["id"] == agreement_id
    assert fetched.json()["status"] == "checked"
    assert fetched.json()["apartment_no"] == "3B"


def test_member_lookup_is_case_insensitive(client, auth, database):
    database.agreements.insert_one({"user_email": TENANT, "user_name": "Alice", "status": "checked"})

    response = client.get("/agreements/member/A@X.COM", headers=auth(TENANT))

    assert response.json()["user_email"] == TENANT


def test_member_lookup_does_not_treat_email_as_pattern(client, auth, database):
    database.agreements.insert_one({"user_email": TENANT, "user_name": "Alice", "status": "checked"})

    response = client.get("/agreements/member/.*", headers=auth(TENANT))

    assert response.json() is None


def test_second_application_conflicts_regardless_of_status(client, auth, database):
    database.agreements.insert_one({"user_email": TENANT, "user_name": "Alice", "status": "rejected"})

    response = client.post("/agreements", json=_application(), headers=auth(TENANT))

    assert response.status_code == 409


def test_application_for_someone_else_is_forbidden(client, auth):
    response = client.post("/agreements", json=_application("b@x.com"), headers=auth(TENANT))

    assert response.status_code == 403


def test_admin_cannot_file_application(client, auth, make_user):
    make_user(TENANT, role="admin")

    response = client.post("/agreements", json=_application(), headers=auth(TENANT))

    assert response.status_code == 403


def test_missing_fields_are_rejected(client, auth):
    response = client.post("/agreements", json={"user_email": TENANT}, headers=auth(TENANT))

    assert response.status_code == 400


def test_listing_requires_admin(client, auth, make_user):
    make_user("m@x.com", role="member")

    assert client.get("/agreements", headers=auth("m@x.com")).status_code == 403


def test_status_update_validates_id_and_existence(client, auth, make_user):
    make_user("boss@x.com", role="admin")
    admin = auth("boss@x.com")

    bad = client.patch("/agreements/not-an-id/status", json={"status": "checked"}, headers=admin)
    missing = client.patch("/agreements/65f000000000000000000000/status", json={"status": "checked"}, headers=admin)
    no_status = client.patch("/agreements/65f000000000000000000000/status", json={}, headers=admin)

    assert bad.status_code == 400
    assert missing.status_code == 404
    assert no_status.status_code == 400


def test_applications_are_refused_until_ready(app, auth):
    client = TestClient(app)

    response = client.post("/agreements", json=_application(), headers=auth(TENANT))

    assert response.status_code == 503
