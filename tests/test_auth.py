import pytest

from run import create_app

# ---------- Fixtures ----------
@pytest.fixture(params=["memory", "substitute"])
def app(request):
    overrides = {"mongodb_uri": "", "session_secret": "test-secret"}
    if request.param == "memory":
        overrides["use_substitute"] = False
    app = create_app(overrides)
    app.testing = True
    yield app
    app.config["DATABASE"].disconnect()

@pytest.fixture
def client(app):
    # no "with" block: a preserved request context would leak g (and the
    # loaded user) into requests made by a second client
    return app.test_client()

def login(client, username="admin", password="admin123"):
    return client.post("/api/auth/login", json={"username": username, "password": password})

# ---------- Login / logout ----------
def test_login_returns_user_and_token(client):
    resp = login(client)
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["username"] == "admin"
    assert body["isAdmin"] is True
    assert body["token"]
    assert "password" not in body
    cookies = resp.headers.getlist("Set-Cookie")
    token_cookie = [c for c in cookies if c.startswith("token=")]
    assert token_cookie and "HttpOnly" in token_cookie[0]

def test_login_wrong_password(client):
    resp = login(client, password="wrong")
    assert resp.status_code == 401
    assert resp.get_json() == {"message": "Invalid credentials"}

def test_me_requires_identity(client):
    resp = client.get("/api/auth/me")
    assert resp.status_code == 401
    assert resp.get_json()["message"] == "Authentication required"

def test_session_identity_and_logout(client):
    login(client)
    assert client.get("/api/auth/me").get_json()["isAdmin"] is True
    assert client.post("/api/auth/logout").status_code == 200
    assert client.get("/api/auth/me").status_code == 401

def test_session_cookie_is_revoked_on_logout(app, client):
    login(client)
    sid = client.get_cookie("session").value
    before = app.test_client()
    before.set_cookie("session", sid)
    assert before.get("/api/auth/me").get_json()["username"] == "admin"

    client.post("/api/auth/logout")
    replay = app.test_client()
    replay.set_cookie("session", sid)
    resp = replay.get("/api/auth/me")
    assert resp.status_code == 401
    assert replay.get("/api/admin/stats").status_code == 401

def test_login_issues_a_new_session_id(client):
    login(client)
    first = client.get_cookie("session").value
    login(client)
    assert client.get_cookie("session").value != first

def test_register_ignores_admin_flag(client):
    resp = client.post("/api/auth/register",
                       json={"username": "mallory", "password": "secret1", "isAdmin": True})
    assert resp.status_code == 201
    assert resp.get_json()["isAdmin"] is False
    assert client.get("/api/admin/stats").status_code == 403

def test_register_validation(client):
    resp = client.post("/api/auth/register", json={"username": "x", "password": "secret1"})
    assert resp.status_code == 400
    resp = client.post("/api/auth/register", json=["not", "an", "object"])
    assert resp.status_code == 400

# ---------- Bearer tokens ----------
def test_bearer_token_identity(app, client):
    token = login(client).get_json()["token"]
    other = app.test_client()
    resp = other.get("/api/admin/stats", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 200
    assert resp.get_json()["animeCount"] == 4

@pytest.mark.parametrize("token", ["garbage", "a.b.c", ""])
def test_bad_token_is_anonymous(app, token):
    c = app.test_client()
    resp = c.get("/api/admin/stats", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401
    assert resp.get_json() == {"message": "Authentication required"}

def test_tampered_token_is_anonymous(app, client):
    token = login(client).get_json()["token"]
    other = app.test_client()
    resp = other.get("/api/auth/me", headers={"Authorization": f"Bearer {token[:-2]}xx"})
    assert resp.status_code == 401

def test_token_flag_is_not_trusted_after_demotion(app, client):
    login(client)
    bob = client.post("/api/admin/users",
                      json={"username": "bob", "password": "secret1", "isAdmin": True}).get_json()
    c = app.test_client()
    token = login(c, "bob", "secret1").get_json()["token"]
    client.patch(f"/api/admin/users/{bob['id']}/admin", json={"isAdmin": False})
    c = app.test_client()
    resp = c.get("/api/admin/stats", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 403
    assert resp.get_json() == {"message": "Admin access required"}

# ---------- Gate ----------
def test_admin_routes_need_admin(client):
    assert client.get("/api/admin/users").status_code == 401
    client.post("/api/auth/register", json={"username": "plain", "password": "secret1"})
    resp = client.get("/api/admin/users")
    assert resp.status_code == 403
    assert resp.get_json()["message"] == "Admin access required"

def test_catalog_is_public(client):
    assert client.get("/api/animes").status_code == 200
    assert len(client.get("/api/genres").get_json()) == 15
