import pytest

from run import create_app

ANIME = {
    "title": "A",
    "description": "Scenario anime",
    "coverImage": "https://example.com/a.jpg",
    "releaseYear": 2024,
    "status": "Ongoing",
    "type": "TV",
}

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
def admin_client(app):
    c = app.test_client()
    assert c.post("/api/auth/login", json={"username": "admin", "password": "admin123"}).status_code == 200
    return c

def admin_id(client):
    return client.get("/api/auth/me").get_json()["id"]

# ---------- Accounts ----------
def test_alice_promotion_and_last_admin(app, admin_client):
    alice = app.test_client()
    resp = alice.post("/api/auth/register", json={"username": "alice", "password": "secret1"})
    assert resp.status_code == 201
    me = alice.get("/api/auth/me").get_json()
    assert me["isAdmin"] is False

    resp = admin_client.patch(f"/api/admin/users/{me['id']}/admin", json={"isAdmin": True})
    assert resp.status_code == 200
    assert alice.get("/api/auth/me").get_json()["isAdmin"] is True

    # two admins: deleting the bootstrap admin succeeds
    resp = alice.delete(f"/api/admin/users/{admin_id(admin_client)}")
    assert resp.status_code == 200
    # one admin left: rejected, and the invariant still holds
    resp = alice.delete(f"/api/admin/users/{me['id']}")
    assert resp.status_code == 400
    assert resp.get_json() == {"message": "Cannot delete the last admin user"}
    resp = alice.patch(f"/api/admin/users/{me['id']}/admin", json={"isAdmin": False})
    assert resp.status_code == 400
    assert resp.get_json() == {"message": "Cannot remove admin rights from the last admin user"}
    users = alice.get("/api/admin/users").get_json()
    assert [u["username"] for u in users if u["isAdmin"]] == ["alice"]

def test_create_user_with_string_flag(app, admin_client):
    resp = admin_client.post("/api/admin/users",
                             json={"username": "carol", "password": "secret1", "isAdmin": "true"})
    assert resp.status_code == 201
    assert resp.get_json()["isAdmin"] is True
    carol = app.test_client()
    carol.post("/api/auth/login", json={"username": "carol", "password": "secret1"})
    me = carol.get("/api/auth/me").get_json()
    assert me["isAdmin"] is True
    assert carol.get("/api/admin/stats").status_code == 200

def test_duplicate_user_conflict(admin_client):
    resp = admin_client.post("/api/admin/users", json={"username": "admin", "password": "secret1"})
    assert resp.status_code == 409

def test_set_admin_requires_flag(admin_client):
    resp = admin_client.patch(f"/api/admin/users/{admin_id(admin_client)}/admin", json={})
    assert resp.status_code == 400

def test_invalid_and_missing_ids(admin_client):
    resp = admin_client.delete("/api/admin/users/not-an-id")
    assert resp.status_code == 400
    assert resp.get_json() == {"message": "Invalid user ID format"}
    assert admin_client.delete("/api/admin/animes/999").status_code == 404
    assert admin_client.get("/api/animes/xyz").status_code == 400
    assert admin_client.get("/api/animes/999").status_code == 404

# ---------- Catalog ----------
def test_title_a_episode_scenario(admin_client):
    resp = admin_client.post("/api/admin/animes", json=ANIME)
    assert resp.status_code == 201
    anime = resp.get_json()

    ep = {"animeId": anime["id"], "title": "Pilot", "number": 1, "videoUrl": "https://example.com/1.mp4"}
    resp = admin_client.post("/api/admin/episodes", json=ep)
    assert resp.status_code == 201
    episode = resp.get_json()
    assert episode["animeId"] == anime["id"]

    resp = admin_client.post("/api/admin/episodes", json=dict(ep, title="Pilot again"))
    assert resp.status_code == 409
    episodes = admin_client.get(f"/api/animes/{anime['id']}/episodes").get_json()
    assert [e["title"] for e in episodes] == ["Pilot"]

    assert admin_client.delete(f"/api/admin/animes/{anime['id']}").status_code == 200
    assert admin_client.get(f"/api/episodes/{episode['id']}").status_code == 404
    assert admin_client.get(f"/api/animes/{anime['id']}").status_code == 404

def test_anime_genre_links(admin_client):
    anime = admin_client.post("/api/admin/animes", json=ANIME).get_json()
    genre = admin_client.post("/api/admin/genres", json={"name": "Isekai"}).get_json()
    assert admin_client.post("/api/admin/genres", json={"name": "Isekai"}).status_code == 409

    url = f"/api/admin/animes/{anime['id']}/genres/{genre['id']}"
    assert admin_client.post(url).status_code == 201
    assert admin_client.post(url).status_code == 409
    detail = admin_client.get(f"/api/animes/{anime['id']}").get_json()
    assert [g["name"] for g in detail["genres"]] == ["Isekai"]
    listed = admin_client.get(f"/api/animes?genre={genre['id']}").get_json()
    assert [a["title"] for a in listed] == ["A"]

    assert admin_client.delete(f"/api/admin/genres/{genre['id']}").status_code == 200
    assert admin_client.get(f"/api/animes/{anime['id']}/genres").get_json() == []
    assert admin_client.delete(url).status_code == 404

def test_anime_update(admin_client):
    anime = admin_client.post("/api/admin/animes", json=ANIME).get_json()
    resp = admin_client.patch(f"/api/admin/animes/{anime['id']}", json={"status": "completed", "episodes": 12})
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "Completed"
    assert resp.get_json()["episodes"] == 12
    resp = admin_client.patch(f"/api/admin/animes/{anime['id']}", json={"type": "Podcast"})
    assert resp.status_code == 400

def test_stats_and_public_lists(admin_client):
    stats = admin_client.get("/api/admin/stats").get_json()
    assert stats == {"animeCount": 4, "episodeCount": 7, "genreCount": 15, "userCount": 1}
    assert len(admin_client.get("/api/trending").get_json()) == 4
    recent = admin_client.get("/api/recently-added").get_json()
    assert recent[0]["episode"]["releaseDate"] >= recent[-1]["episode"]["releaseDate"]
    assert "genres" in recent[0]["anime"]
    assert admin_client.get("/api/search?q=alchemist").get_json()[0]["studio"] == "Bones"
    assert admin_client.get("/api/search").status_code == 400

# ---------- Favorites ----------
def test_favorites_flow(app, admin_client):
    fan = app.test_client()
    assert fan.get("/api/favorites").status_code == 401
    fan.post("/api/auth/register", json={"username": "fan", "password": "secret1"})
    anime_id = fan.get("/api/animes").get_json()[0]["id"]

    resp = fan.post("/api/favorites", json={"animeId": anime_id})
    assert resp.status_code == 201
    assert resp.get_json()["genres"]
    resp = fan.post("/api/favorites", json={"animeId": anime_id})
    assert resp.status_code == 409
    assert resp.get_json() == {"message": "Anime already in favorites"}
    assert [a["id"] for a in fan.get("/api/favorites").get_json()] == [anime_id]

    assert fan.delete(f"/api/favorites/{anime_id}").status_code == 200
    assert fan.delete(f"/api/favorites/{anime_id}").status_code == 404
    assert fan.post("/api/favorites", json={}).status_code == 400
