from averon.models import Invitation, Profile

from tests.factories import auth_headers, make_profile


def test_issue_list_redeem_round(client, db, org):
    resp = client.post(
        "/invitations",
        json={"email": "Fresh.Teacher@example.com", "role": "teacher", "school_id": org.s1},
        headers=auth_headers(org.school_admin),
    )
    assert resp.status_code == 200, resp.text
    body = resp.json()
    token = body["token"]
    assert body["invite_url"] == f"http://testserver/invite/{token}"
    assert body["school_id"] == org.s1
    assert body["district_id"] == org.d1

    listed = client.get("/invitations", headers=auth_headers(org.school_admin))
    assert listed.status_code == 200
    items = listed.json()
    assert [i["email"] for i in items] == ["fresh.teacher@example.com"]
    assert items[0]["status"] == "pending"
    assert "token" not in items[0]
    assert token not in listed.text

    newcomer = make_profile(db, "fresh.teacher@example.com")
    redeemed = client.post("/invitations/redeem", json={"token": token}, headers=auth_headers(newcomer))
    assert redeemed.status_code == 200, redeemed.text
    assert redeemed.json() == {"role": "teacher", "district_id": org.d1, "school_id": org.s1}

    again = client.post("/invitations/redeem", json={"token": token}, headers=auth_headers(newcomer))
    assert again.status_code == 400
    assert again.json()["code"] == "INVITE_ALREADY_USED"
    assert again.json()["kind"] == "not_found_or_expired"

    db.expire_all()
    assert db.get(Profile, newcomer.id).role == "teacher"
    listed = client.get("/invitations", headers=auth_headers(org.school_admin)).json()
    assert listed[0]["status"] == "redeemed"


def test_issue_requires_authentication(client, org):
    resp = client.post("/invitations", json={"email": "a@example.com", "role": "student", "school_id": org.s1})
    assert resp.status_code == 401
    body = resp.json()
    assert body["kind"] == "unauthenticated"
    assert resp.headers.get("WWW-Authenticate") == "Bearer"

    bad = client.get("/invitations", headers={"Authorization": "Bearer not-a-jwt"})
    assert bad.status_code == 401


def test_issue_forbidden_outside_scope(client, db, org):
    resp = client.post(
        "/invitations",
        json={"email": "a@example.com", "role": "teacher", "school_id": org.s3},
        headers=auth_headers(org.district_admin),
    )
    assert resp.status_code == 403
    body = resp.json()
    assert body["code"] == "OUTSIDE_ACTOR_DISTRICT"
    assert body["detail"]["kind"] == "forbidden"
    assert db.query(Invitation).count() == 0


def test_school_admin_cannot_invite_district_admin(client, org):
    resp = client.post(
        "/invitations",
        json={"email": "boss@example.com", "role": "district_admin", "district_id": org.d1},
        headers=auth_headers(org.school_admin),
    )
    assert resp.status_code == 403
    assert resp.json()["message"] == "Only full admins may invite district admins"


def test_request_body_validation_is_400(client, org):
    resp = client.post("/invitations", json={"role": "teacher"}, headers=auth_headers(org.full_admin))
    assert resp.status_code == 400
    body = resp.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert body["kind"] == "validation"
    assert body["detail"]["errors"]


def test_redeem_email_mismatch_is_403(client, db, org):
    issued = client.post(
        "/invitations",
        json={"email": "right@example.com", "role": "student", "school_id": org.s1},
        headers=auth_headers(org.full_admin),
    ).json()

    wrong = make_profile(db, "wrong@example.com")
    resp = client.post("/invitations/redeem", json={"token": issued["token"]}, headers=auth_headers(wrong))
    assert resp.status_code == 403
    assert resp.json()["code"] == "INVITE_EMAIL_MISMATCH"


def test_redeem_malformed_token_is_400(client, org):
    resp = client.post("/invitations/redeem", json={"token": "nope"}, headers=auth_headers(org.teacher))
    assert resp.status_code == 400
    assert resp.json()["code"] == "INVITE_BAD_TOKEN"


def test_teacher_cannot_list(client, org):
    resp = client.get("/invitations", headers=auth_headers(org.teacher))
    assert resp.status_code == 403


def test_revoke_endpoint(client, db, org):
    issued = client.post(
        "/invitations",
        json={"email": "soon.gone@example.com", "role": "student", "school_id": org.s1},
        headers=auth_headers(org.district_admin),
    ).json()

    resp = client.post(f"/invitations/{issued['id']}/revoke", headers=auth_headers(org.district_admin))
    assert resp.status_code == 200
    assert resp.json()["status"] == "revoked"

    invitee = make_profile(db, "soon.gone@example.com")
    redeem = client.post("/invitations/redeem", json={"token": issued["token"]}, headers=auth_headers(invitee))
    assert redeem.status_code == 400
    assert redeem.json()["code"] == "INVITE_REVOKED"

    missing = client.post("/invitations/999999/revoke", headers=auth_headers(org.full_admin))
    assert missing.status_code == 400
