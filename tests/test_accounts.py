PASSWORD = "password123"


def test_signup_creates_pending_account(client):
    r = client.post("/api/auth/signup", json={
        "email": "NewDonor@donormatch.org",
        "password": "longenough",
        "full_name": "New Donor",
        "user_type": "investor",
    })
    assert r.status_code == 201
    token = r.json()["access_token"]

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    body = me.json()
    assert body["email"] == "newdonor@donormatch.org"
    assert body["verification_status"] == "pending"
    assert body["role"] == "investor"


def test_signup_rejects_admin_and_duplicates(client):
    r = client.post("/api/auth/signup", json={
        "email": "sneaky@donormatch.org", "password": "longenough", "user_type": "admin",
    })
    assert r.status_code == 422

    payload = {"email": "twice@donormatch.org", "password": "longenough", "user_type": "institution"}
    assert client.post("/api/auth/signup", json=payload).status_code == 201
    assert client.post("/api/auth/signup", json=payload).status_code == 409


def test_signup_rejects_short_password(client):
    r = client.post("/api/auth/signup", json={
        "email": "short@donormatch.org", "password": "short", "user_type": "investor",
    })
    assert r.status_code == 422


def test_login(client, make_account):
    account = make_account("institution")

    r = client.post("/api/auth/login", json={"email": account.email, "password": PASSWORD})
    assert r.status_code == 200
    assert r.json()["token_type"] == "bearer"

    r = client.post("/api/auth/login", json={"email": account.email, "password": "wrong-password"})
    assert r.status_code == 401


def test_me_requires_token(client):
    assert client.get("/api/auth/me").status_code in (401, 403)
    r = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-token"})
    assert r.status_code == 401


def test_profile_update_cannot_touch_verification(client, make_account):
    account = make_account("investor", status="pending")

    r = client.put("/api/profiles/me", headers=account.headers, json={
        "full_name": "Renamed",
        "phone": "+254 700 000 000",
        "verification_status": "verified",
    })
    assert r.status_code == 200
    body = r.json()
    assert body["full_name"] == "Renamed"
    assert body["verification_status"] == "pending"


def test_profile_visibility(client, make_account):
    investor = make_account("investor")
    institution = make_account("institution")
    admin = make_account("admin", register=False)

    assert client.get(f"/api/profiles/{investor.id}", headers=investor.headers).status_code == 200
    assert client.get(f"/api/profiles/{investor.id}", headers=institution.headers).status_code == 404
    assert client.get(f"/api/profiles/{investor.id}", headers=admin.headers).status_code == 200


def test_change_password(client, make_account):
    account = make_account("investor")

    r = client.put("/api/auth/change-password", headers=account.headers, json={
        "current_password": "nope-nope", "new_password": "brand-new-pass",
    })
    assert r.status_code == 400

    r = client.put("/api/auth/change-password", headers=account.headers, json={
        "current_password": PASSWORD, "new_password": "brand-new-pass",
    })
    assert r.status_code == 200
    r = client.post("/api/auth/login", json={"email": account.email, "password": "brand-new-pass"})
    assert r.status_code == 200
