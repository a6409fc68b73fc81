import threading

import mongomock
import pytest

from animeverse.models import Episode, Genre, User
from animeverse.normalize import NativeId, SequentialId, parse_identifier
from animeverse.repo import InMemoryRepo, MongoRepo, Rejected
from animeverse.seed import ANIMES, EPISODES, GENRES, seed

# ---------- Fixtures ----------
def make_mongo_repo():
    db = mongomock.MongoClient()["animeverse_test"]
    repo = MongoRepo(db)
    repo.ensure_indexes()
    repo.record_legacy_ids(seed(repo))
    return repo

@pytest.fixture(params=["memory", "mongo"])
def repo(request):
    if request.param == "memory":
        return InMemoryRepo()
    return make_mongo_repo()

@pytest.fixture
def mongo_repo():
    return make_mongo_repo()

def key(repo, kind, raw):
    return repo.key_for(kind, parse_identifier(raw))

def first_anime_key(repo):
    return key(repo, "animes", repo.list_animes()[0].id)

def admin_key(repo):
    return key(repo, "users", repo.get_user_by_username("admin").id)

def new_episode(anime_key, number, title="Ep"):
    return Episode(id=None, anime_id=anime_key, title=title, number=number,
                   video_url="https://example.com/v.mp4")

# ---------- Baseline ----------
def test_seed_counts(repo):
    assert repo.count("users") == 1
    assert repo.count("genres") == len(GENRES)
    assert repo.count("animes") == len(ANIMES)
    assert repo.count("episodes") == len(EPISODES)
    assert repo.count_admins() == 1

def test_episodes_sorted_by_number(repo):
    eps = repo.episodes_for_anime(first_anime_key(repo))
    assert [e.number for e in eps] == [1, 2, 3]

# ---------- Users ----------
def test_duplicate_username_conflicts(repo):
    assert repo.create_user(User(id=None, username="admin", password="x")) is Rejected.CONFLICT

def test_verify_password(repo):
    admin = repo.get_user_by_username("admin")
    assert repo.verify_password(admin, "admin123")
    assert not repo.verify_password(admin, "wrong")

def test_mongo_stores_password_hash(mongo_repo):
    admin = mongo_repo.get_user_by_username("admin")
    assert admin.password != "admin123"

def test_last_admin_cannot_be_demoted_or_deleted(repo):
    k = admin_key(repo)
    assert repo.update_user_admin(k, False) is Rejected.LAST_ADMIN
    assert repo.delete_user(k) is Rejected.LAST_ADMIN
    assert repo.count_admins() == 1

def test_demote_allowed_with_second_admin(repo):
    other = repo.create_user(User(id=None, username="second", password="secret1", is_admin=True))
    assert repo.count_admins() == 2
    updated = repo.update_user_admin(admin_key(repo), "false")
    assert updated.is_admin is False
    assert repo.update_user_admin(key(repo, "users", other.id), False) is Rejected.LAST_ADMIN

def test_string_flag_counts_as_admin(mongo_repo):
    mongo_repo.db.users.insert_one({"username": "legacy", "password": "x", "is_admin": "true"})
    assert mongo_repo.count_admins() == 2
    assert mongo_repo.get_user_by_username("legacy").is_admin is True

def test_concurrent_admin_deletes_keep_one_admin(repo, monkeypatch):
    bob = repo.create_user(User(id=None, username="bob", password="secret1", is_admin=True))
    keys = [admin_key(repo), key(repo, "users", bob.id)]
    count_admins = repo.count_admins
    # both callers meet here unless the guard serializes them
    gate = threading.Barrier(2, timeout=0.5)

    def paused_count(*args):
        try:
            gate.wait()
        except threading.BrokenBarrierError:
            pass
        return count_admins(*args)

    monkeypatch.setattr(repo, "count_admins", paused_count)
    results = []
    threads = [threading.Thread(target=lambda k=k: results.append(repo.delete_user(k))) for k in keys]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1
    assert results.count(Rejected.LAST_ADMIN) == 1
    assert count_admins() == 1

def test_concurrent_demotions_keep_one_admin(repo, monkeypatch):
    bob = repo.create_user(User(id=None, username="bob", password="secret1", is_admin=True))
    keys = [admin_key(repo), key(repo, "users", bob.id)]
    count_admins = repo.count_admins
    gate = threading.Barrier(2, timeout=0.5)

    def paused_count(*args):
        try:
            gate.wait()
        except threading.BrokenBarrierError:
            pass
        return count_admins(*args)

    monkeypatch.setattr(repo, "count_admins", paused_count)
    results = []
    threads = [threading.Thread(target=lambda k=k: results.append(repo.update_user_admin(k, False)))
               for k in keys]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert Rejected.LAST_ADMIN in results
    assert count_admins() == 1

def test_update_missing_user_returns_none(repo):
    assert repo.update_user_admin(key(repo, "users", 999), True) is None
    assert repo.delete_user(key(repo, "users", 999)) is False

def test_delete_user_removes_favorites(repo):
    u = repo.create_user(User(id=None, username="carol", password="secret1"))
    uk = key(repo, "users", u.id)
    repo.add_favorite(uk, first_anime_key(repo))
    assert repo.delete_user(uk) is True
    assert repo.count("favorites") == 0

# ---------- Animes / cascades ----------
def test_delete_anime_cascades(repo):
    u = repo.create_user(User(id=None, username="dave", password="secret1"))
    ak = first_anime_key(repo)
    repo.add_favorite(key(repo, "users", u.id), ak)
    links_before = repo.count("anime_genres")
    own_links = len(repo.genres_for_anime(ak))

    assert repo.delete_anime(ak) is True
    assert repo.get_anime(ak) is None
    assert repo.episodes_for_anime(ak) == []
    assert repo.genres_for_anime(ak) == []
    assert repo.count("anime_genres") == links_before - own_links
    assert repo.count("favorites") == 0
    assert repo.count("episodes") == len(EPISODES) - 3
    assert repo.delete_anime(ak) is False

def test_children_of_a_deleted_anime_are_refused(repo):
    u = repo.create_user(User(id=None, username="frank", password="secret1"))
    uk = key(repo, "users", u.id)
    ak = first_anime_key(repo)
    gk = key(repo, "genres", repo.list_genres()[-1].id)
    episodes, links = repo.count("episodes"), repo.count("anime_genres")
    assert repo.delete_anime(ak) is True

    assert repo.create_episode(new_episode(ak, 99)) is None
    assert repo.add_genre_to_anime(ak, gk) is None
    assert repo.add_favorite(uk, ak) is None
    assert repo.count("episodes") == episodes - 3
    assert repo.count("anime_genres") < links
    assert repo.episodes_for_anime(ak) == []
    assert repo.genres_for_anime(ak) == []
    assert repo.favorites_for_user(uk) == []

def test_moving_an_episode_to_a_deleted_anime_is_refused(repo):
    animes = repo.list_animes()
    src, gone = key(repo, "animes", animes[0].id), key(repo, "animes", animes[3].id)
    ek = key(repo, "episodes", repo.episodes_for_anime(src)[0].id)
    repo.delete_anime(gone)
    assert repo.update_episode(ek, {"anime_id": gone}) is None
    assert repo.episodes_for_anime(gone) == []
    assert ek in [key(repo, "episodes", e.id) for e in repo.episodes_for_anime(src)]

def test_link_to_deleted_genre_is_refused(repo):
    ak = first_anime_key(repo)
    g = repo.create_genre(Genre(id=None, name="Isekai"))
    gk = key(repo, "genres", g.id)
    assert repo.delete_genre(gk) is True
    assert repo.add_genre_to_anime(ak, gk) is None
    assert repo.animes_for_genre(gk) == []

def test_update_anime_sets_fields(repo):
    ak = first_anime_key(repo)
    before = repo.get_anime(ak)
    updated = repo.update_anime(ak, {"title": "Renamed", "episodes": None})
    assert updated.title == "Renamed"
    assert updated.episodes is None
    assert updated.updated_at >= before.updated_at

def test_search_is_case_insensitive_and_literal(repo):
    assert [a.title for a in repo.search_animes("TITAN")] == ["Attack on Titan"]
    assert repo.search_animes("(") == []

# ---------- Genres ----------
def test_duplicate_genre_conflicts(repo):
    assert repo.create_genre(Genre(id=None, name="Action")) is Rejected.CONFLICT
    g = repo.create_genre(Genre(id=None, name="Isekai"))
    assert repo.update_genre(key(repo, "genres", g.id), "Drama") is Rejected.CONFLICT

def test_delete_genre_removes_links(repo):
    action = next(g for g in repo.list_genres() if g.name == "Action")
    gk = key(repo, "genres", action.id)
    assert len(repo.animes_for_genre(gk)) == 4
    assert repo.delete_genre(gk) is True
    ak = first_anime_key(repo)
    assert "Action" not in [g.name for g in repo.genres_for_anime(ak)]

def test_duplicate_link_conflicts(repo):
    ak = first_anime_key(repo)
    gk = key(repo, "genres", repo.genres_for_anime(ak)[0].id)
    assert repo.add_genre_to_anime(ak, gk) is Rejected.CONFLICT
    assert repo.remove_genre_from_anime(ak, gk) is True
    assert repo.remove_genre_from_anime(ak, gk) is False

# ---------- Episodes ----------
def test_duplicate_episode_number_conflicts(repo):
    ak = first_anime_key(repo)
    assert repo.create_episode(new_episode(ak, 1)) is Rejected.CONFLICT
    e = repo.create_episode(new_episode(ak, 10))
    assert e.number == 10
    assert repo.update_episode(key(repo, "episodes", e.id), {"number": 2}) is Rejected.CONFLICT

def test_same_number_on_other_anime_is_fine(repo):
    other = key(repo, "animes", repo.list_animes()[3].id)
    assert repo.create_episode(new_episode(other, 1)).number == 1

# ---------- Favorites ----------
def test_duplicate_favorite_conflicts(repo):
    u = repo.create_user(User(id=None, username="erin", password="secret1"))
    uk = key(repo, "users", u.id)
    ak = first_anime_key(repo)
    assert repo.add_favorite(uk, ak) is not Rejected.CONFLICT
    assert repo.add_favorite(uk, ak) is Rejected.CONFLICT
    assert len(repo.favorites_for_user(uk)) == 1
    assert repo.remove_favorite(uk, ak) is True
    assert repo.remove_favorite(uk, ak) is False

# ---------- Identifiers ----------
def test_memory_has_no_native_keys():
    repo = InMemoryRepo(seed=False)
    assert repo.key_for("animes", NativeId("0" * 24)) is None
    assert repo.key_for("animes", SequentialId(2)) == 2

def test_legacy_alias_maps_sequential_ids(mongo_repo):
    second = mongo_repo.list_animes()[1]
    assert str(mongo_repo.key_for("animes", SequentialId(2))) == second.id
    admin = mongo_repo.get_user_by_username("admin")
    assert str(mongo_repo.key_for("users", SequentialId(1))) == admin.id

def test_positional_fallback_only_for_catalog(mongo_repo):
    mongo_repo.db.legacy_ids.delete_many({})
    first = mongo_repo.list_animes()[0]
    assert str(mongo_repo.key_for("animes", SequentialId(1))) == first.id
    assert mongo_repo.key_for("animes", SequentialId(99)) is None
    assert mongo_repo.key_for("animes", SequentialId(0)) is None
    assert mongo_repo.key_for("users", SequentialId(1)) is None
