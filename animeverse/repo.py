# animeverse/repo.py
import enum
import hmac
import logging
import re
import threading
from contextlib import ExitStack, contextmanager
from dataclasses import fields, replace
from typing import Any, Callable, Dict, List, Optional, Union

from bson import ObjectId
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.security import check_password_hash, generate_password_hash

from animeverse.models import Anime, AnimeGenre, Episode, Favorite, Genre, User, now_iso
from animeverse.normalize import Identifier, NativeId, SequentialId, normalize_bool
from animeverse.seed import seed as seed_baseline

logger = logging.getLogger(__name__)

class Rejected(enum.Enum):
    """Expected negative write outcomes. Returned, not raised."""
    CONFLICT = "conflict"
    LAST_ADMIN = "last_admin"

# kinds whose legacy numeric ids may be bridged by position
CATALOG_KINDS = ("animes", "genres", "episodes")

def _columns(cls) -> List[str]:
    return [f.name for f in fields(cls) if f.name != "id"]

ANIME_COLUMNS = _columns(Anime)
EPISODE_COLUMNS = _columns(Episode)

def _s(session) -> Dict[str, Any]:
    # only pass session= when there is one; the substitute client rejects it
    return {"session": session} if session is not None else {}

# --- MongoDB repo ---
class MongoRepo:
    """Document-store backend. Entity ids are ObjectId hex strings."""
    kind = "mongo"
    # serializes last-admin checks when there are no transactions (one per process)
    _admin_lock = threading.Lock()

    def __init__(self, db, transactions: bool = False):
        self.db = db
        self.transactions = transactions

    def ensure_indexes(self) -> None:
        self.db.users.create_index("username", unique=True)
        self.db.genres.create_index("name", unique=True)
        self.db.episodes.create_index([("anime_id", ASCENDING), ("number", ASCENDING)], unique=True)
        self.db.anime_genres.create_index([("anime_id", ASCENDING), ("genre_id", ASCENDING)], unique=True)
        self.db.favorites.create_index([("user_id", ASCENDING), ("anime_id", ASCENDING)], unique=True)
        self.db.legacy_ids.create_index([("kind", ASCENDING), ("legacy_id", ASCENDING)], unique=True)

    def _run(self, op: Callable[[Any], Any]) -> Any:
        """Run op inside a multi-document transaction when the deployment has them."""
        if not self.transactions:
            return op(None)
        with self.db.client.start_session() as session:
            return session.with_transaction(op)

    def _run_admin_guarded(self, op: Callable[[Any], Any]) -> Any:
        """Count-then-write on admins: a transaction, or the process-wide admin lock."""
        if self.transactions:
            return self._run(op)
        with MongoRepo._admin_lock:
            return op(None)

    # -- identifiers --
    def key_for(self, kind: str, ident: Identifier) -> Optional[ObjectId]:
        if isinstance(ident, NativeId):
            return ObjectId(ident.value)
        if isinstance(ident, SequentialId):
            return self._bridge_legacy(kind, ident.value)
        return None

    def _bridge_legacy(self, kind: str, number: int) -> Optional[ObjectId]:
        """
        Map a numeric id from the in-memory era onto a document.
        The alias table is authoritative. Catalog kinds then fall back to the
        n-th document in _id order, which is best effort only: it silently
        points elsewhere once documents are deleted or inserted out of order.
        """
        alias = self.db.legacy_ids.find_one({"kind": kind, "legacy_id": number})
        if alias:
            return alias["target"]
        if kind not in CATALOG_KINDS or number < 1:
            return None
        docs = list(self.db[kind].find({}, {"_id": 1}).sort("_id", ASCENDING).skip(number - 1).limit(1))
        if not docs:
            return None
        logger.warning("Mapped legacy %s id %s to %s by position", kind, number, docs[0]["_id"])
        return docs[0]["_id"]

    def record_legacy_ids(self, created: Dict[str, List[Any]]) -> None:
        for kind, ids in created.items():
            for n, oid in enumerate(ids, start=1):
                self.db.legacy_ids.update_one({"kind": kind, "legacy_id": n},
                                              {"$set": {"target": ObjectId(oid)}}, upsert=True)

    def count(self, kind: str) -> int:
        return self.db[kind].count_documents({})

    def _exists(self, kind: str, key) -> bool:
        return self.db[kind].find_one({"_id": key}, {"_id": 1}) is not None

    # -- document translation --
    @staticmethod
    def _user(doc) -> Optional[User]:
        if doc is None:
            return None
        return User(id=str(doc["_id"]), username=doc["username"], email=doc.get("email") or "",
                    password=doc.get("password") or "", is_admin=normalize_bool(doc.get("is_admin")),
                    created_at=doc.get("created_at") or now_iso())

    @staticmethod
    def _anime(doc) -> Optional[Anime]:
        if doc is None:
            return None
        return Anime(id=str(doc["_id"]), **{c: doc.get(c) for c in ANIME_COLUMNS})

    @staticmethod
    def _genre(doc) -> Optional[Genre]:
        return Genre(id=str(doc["_id"]), name=doc["name"]) if doc else None

    @staticmethod
    def _episode(doc) -> Optional[Episode]:
        if doc is None:
            return None
        data = {c: doc.get(c) for c in EPISODE_COLUMNS}
        data["anime_id"] = str(data["anime_id"])
        return Episode(id=str(doc["_id"]), **data)

    # -- Users --
    def create_user(self, user: User) -> Union[User, Rejected]:
        doc = {
            "username": user.username,
            "email": user.email,
            "password": generate_password_hash(user.password),
            "is_admin": normalize_bool(user.is_admin),
            "created_at": user.created_at,
        }
        try:
            res = self.db.users.insert_one(doc)
        except DuplicateKeyError:
            return Rejected.CONFLICT
        return self._user(dict(doc, _id=res.inserted_id))

    def get_user(self, key) -> Optional[User]:
        return self._user(self.db.users.find_one({"_id": key}))

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._user(self.db.users.find_one({"username": username}))

    def list_users(self) -> List[User]:
        return [self._user(d) for d in self.db.users.find().sort("_id", ASCENDING)]

    def count_admins(self, session=None) -> int:
        # stored flags are not trusted to be real booleans
        return sum(1 for d in self.db.users.find({}, {"is_admin": 1}, **_s(session))
                   if normalize_bool(d.get("is_admin")))

    def update_user_admin(self, key, is_admin: Any) -> Union[User, Rejected, None]:
        flag = normalize_bool(is_admin)

        def op(session):
            doc = self.db.users.find_one({"_id": key}, **_s(session))
            if doc is None:
                return None
            if not flag and normalize_bool(doc.get("is_admin")) and self.count_admins(session) <= 1:
                return Rejected.LAST_ADMIN
            self.db.users.update_one({"_id": key}, {"$set": {"is_admin": flag}}, **_s(session))
            doc["is_admin"] = flag
            return self._user(doc)

        return self._run_admin_guarded(op)

    def delete_user(self, key) -> Union[bool, Rejected]:
        def op(session):
            doc = self.db.users.find_one({"_id": key}, **_s(session))
            if doc is None:
                return False
            if normalize_bool(doc.get("is_admin")) and self.count_admins(session) <= 1:
                return Rejected.LAST_ADMIN
            self.db.favorites.delete_many({"user_id": key}, **_s(session))
            return self.db.users.delete_one({"_id": key}, **_s(session)).deleted_count == 1

        return self._run_admin_guarded(op)

    def verify_password(self, user: User, secret: str) -> bool:
        return check_password_hash(user.password, secret)

    # -- Animes --
    def create_anime(self, anime: Anime) -> Anime:
        doc = {c: getattr(anime, c) for c in ANIME_COLUMNS}
        res = self.db.animes.insert_one(doc)
        return replace(anime, id=str(res.inserted_id))

    def get_anime(self, key) -> Optional[Anime]:
        return self._anime(self.db.animes.find_one({"_id": key}))

    def list_animes(self) -> List[Anime]:
        return [self._anime(d) for d in self.db.animes.find().sort("_id", ASCENDING)]

    def search_animes(self, q: str) -> List[Anime]:
        pattern = {"$regex": re.escape(q), "$options": "i"}
        cur = self.db.animes.find({"$or": [{"title": pattern}, {"description": pattern}]})
        return [self._anime(d) for d in cur.sort("_id", ASCENDING)]

    def update_anime(self, key, changes: Dict[str, Any]) -> Optional[Anime]:
        changes = dict(changes, updated_at=now_iso())
        doc = self.db.animes.find_one_and_update({"_id": key}, {"$set": changes},
                                                 return_document=ReturnDocument.AFTER)
        return self._anime(doc)

    def delete_anime(self, key) -> bool:
        def op(session):
            if self.db.animes.find_one({"_id": key}, {"_id": 1}, **_s(session)) is None:
                return False
            # children first: a failure part way leaves the anime in place and the
            # delete can be retried, instead of orphaning episodes and links
            try:
                self.db.anime_genres.delete_many({"anime_id": key}, **_s(session))
                self.db.episodes.delete_many({"anime_id": key}, **_s(session))
                self.db.favorites.delete_many({"anime_id": key}, **_s(session))
            except PyMongoError:
                if session is None:
                    logger.error("Cascade for anime %s failed part way; some children may already be gone", key)
                raise
            return self.db.animes.delete_one({"_id": key}, **_s(session)).deleted_count == 1

        return self._run(op)

    # -- Genres --
    def create_genre(self, genre: Genre) -> Union[Genre, Rejected]:
        try:
            res = self.db.genres.insert_one({"name": genre.name})
        except DuplicateKeyError:
            return Rejected.CONFLICT
        return Genre(id=str(res.inserted_id), name=genre.name)

    def get_genre(self, key) -> Optional[Genre]:
        return self._genre(self.db.genres.find_one({"_id": key}))

    def list_genres(self) -> List[Genre]:
        return [self._genre(d) for d in self.db.genres.find().sort("_id", ASCENDING)]

    def update_genre(self, key, name: str) -> Union[Genre, Rejected, None]:
        try:
            doc = self.db.genres.find_one_and_update({"_id": key}, {"$set": {"name": name}},
                                                     return_document=ReturnDocument.AFTER)
        except DuplicateKeyError:
            return Rejected.CONFLICT
        return self._genre(doc)

    def delete_genre(self, key) -> bool:
        def op(session):
            if self.db.genres.find_one({"_id": key}, {"_id": 1}, **_s(session)) is None:
                return False
            self.db.anime_genres.delete_many({"genre_id": key}, **_s(session))
            return self.db.genres.delete_one({"_id": key}, **_s(session)).deleted_count == 1

        return self._run(op)

    # -- Anime <-> Genre links --
    def genres_for_anime(self, anime_key) -> List[Genre]:
        ids = [l["genre_id"] for l in self.db.anime_genres.find({"anime_id": ObjectId(anime_key)})]
        if not ids:
            return []
        return [self._genre(d) for d in self.db.genres.find({"_id": {"$in": ids}}).sort("_id", ASCENDING)]

    def animes_for_genre(self, genre_key) -> List[Anime]:
        ids = [l["anime_id"] for l in self.db.anime_genres.find({"genre_id": ObjectId(genre_key)})]
        if not ids:
            return []
        return [self._anime(d) for d in self.db.animes.find({"_id": {"$in": ids}}).sort("_id", ASCENDING)]

    def add_genre_to_anime(self, anime_key, genre_key) -> Union[AnimeGenre, Rejected, None]:
        doc = {"anime_id": ObjectId(anime_key), "genre_id": ObjectId(genre_key)}
        if not self._exists("animes", doc["anime_id"]) or not self._exists("genres", doc["genre_id"]):
            return None
        try:
            res = self.db.anime_genres.insert_one(doc)
        except DuplicateKeyError:
            return Rejected.CONFLICT
        return AnimeGenre(id=str(res.inserted_id), anime_id=str(doc["anime_id"]), genre_id=str(doc["genre_id"]))

    def remove_genre_from_anime(self, anime_key, genre_key) -> bool:
        res = self.db.anime_genres.delete_one({"anime_id": ObjectId(anime_key), "genre_id": ObjectId(genre_key)})
        return res.deleted_count == 1

    # -- Episodes --
    def create_episode(self, ep: Episode) -> Union[Episode, Rejected, None]:
        doc = {c: getattr(ep, c) for c in EPISODE_COLUMNS}
        doc["anime_id"] = ObjectId(ep.anime_id)
        if not self._exists("animes", doc["anime_id"]):
            return None
        try:
            res = self.db.episodes.insert_one(doc)
        except DuplicateKeyError:
            return Rejected.CONFLICT
        return self._episode(dict(doc, _id=res.inserted_id))

    def get_episode(self, key) -> Optional[Episode]:
        return self._episode(self.db.episodes.find_one({"_id": key}))

    def list_episodes(self) -> List[Episode]:
        return [self._episode(d) for d in self.db.episodes.find().sort("_id", ASCENDING)]

    def episodes_for_anime(self, anime_key) -> List[Episode]:
        cur = self.db.episodes.find({"anime_id": ObjectId(anime_key)}).sort("number", ASCENDING)
        return [self._episode(d) for d in cur]

    def update_episode(self, key, changes: Dict[str, Any]) -> Union[Episode, Rejected, None]:
        changes = dict(changes)
        if "anime_id" in changes:
            changes["anime_id"] = ObjectId(changes["anime_id"])
            if not self._exists("animes", changes["anime_id"]):
                return None
        try:
            doc = self.db.episodes.find_one_and_update({"_id": key}, {"$set": changes},
                                                       return_document=ReturnDocument.AFTER)
        except DuplicateKeyError:
            return Rejected.CONFLICT
        return self._episode(doc)

    def delete_episode(self, key) -> bool:
        return self.db.episodes.delete_one({"_id": key}).deleted_count == 1

    # -- Favorites --
    def favorites_for_user(self, user_key) -> List[Favorite]:
        cur = self.db.favorites.find({"user_id": ObjectId(user_key)}).sort("_id", ASCENDING)
        return [Favorite(id=str(d["_id"]), user_id=str(d["user_id"]), anime_id=str(d["anime_id"]),
                         created_at=d.get("created_at") or now_iso()) for d in cur]

    def add_favorite(self, user_key, anime_key) -> Union[Favorite, Rejected, None]:
        fav = Favorite(id=None, user_id=ObjectId(user_key), anime_id=ObjectId(anime_key))
        if not self._exists("users", fav.user_id) or not self._exists("animes", fav.anime_id):
            return None
        try:
            res = self.db.favorites.insert_one({"user_id": fav.user_id, "anime_id": fav.anime_id,
                                                "created_at": fav.created_at})
        except DuplicateKeyError:
            return Rejected.CONFLICT
        return replace(fav, id=str(res.inserted_id), user_id=str(fav.user_id), anime_id=str(fav.anime_id))

    def remove_favorite(self, user_key, anime_key) -> bool:
        res = self.db.favorites.delete_one({"user_id": ObjectId(user_key), "anime_id": ObjectId(anime_key)})
        return res.deleted_count == 1

# --- In-memory repo (fallback when the document store is unavailable) ---
class InMemoryRepo:
    """
    Process-local backend keyed by sequential integers.
    Passwords are compared in plaintext here: this store only ever holds the
    baseline dataset and whatever was created while the database was down.
    Each map has its own lock; multi-map operations take them in _LOCK_ORDER.
    """
    kind = "memory"
    _LOCK_ORDER = ("users", "animes", "genres", "anime_genres", "episodes", "favorites")

    def __init__(self, seed: bool = True, admin_password: str = "admin123"):
        self._users: Dict[int, User] = {}
        self._animes: Dict[int, Anime] = {}
        self._genres: Dict[int, Genre] = {}
        self._anime_genres: Dict[int, AnimeGenre] = {}
        self._episodes: Dict[int, Episode] = {}
        self._favorites: Dict[int, Favorite] = {}
        self._next = {k: 1 for k in self._LOCK_ORDER}
        self._locks = {k: threading.RLock() for k in self._LOCK_ORDER}
        if seed:
            seed_baseline(self, admin_password)

    @contextmanager
    def _locked(self, *names: str):
        with ExitStack() as stack:
            for name in self._LOCK_ORDER:
                if name in names:
                    stack.enter_context(self._locks[name])
            yield

    # helper to assign id; callers hold the kind's lock
    def _assign(self, kind: str) -> int:
        nid = self._next[kind]
        self._next[kind] += 1
        return nid

    def key_for(self, kind: str, ident: Identifier) -> Optional[int]:
        return ident.value if isinstance(ident, SequentialId) else None

    def count(self, kind: str) -> int:
        return len(getattr(self, "_" + kind))

    # Users
    def create_user(self, user: User) -> Union[User, Rejected]:
        with self._locked("users"):
            if any(u.username == user.username for u in self._users.values()):
                return Rejected.CONFLICT
            u = replace(user, id=self._assign("users"), is_admin=normalize_bool(user.is_admin))
            self._users[u.id] = u
            return u

    def get_user(self, key) -> Optional[User]:
        return self._users.get(key)

    def get_user_by_username(self, username: str) -> Optional[User]:
        for u in list(self._users.values()):
            if u.username == username:
                return u
        return None

    def list_users(self) -> List[User]:
        return list(self._users.values())

    def count_admins(self) -> int:
        return sum(1 for u in list(self._users.values()) if normalize_bool(u.is_admin))

    def update_user_admin(self, key, is_admin: Any) -> Union[User, Rejected, None]:
        flag = normalize_bool(is_admin)
        with self._locked("users"):
            u = self._users.get(key)
            if u is None:
                return None
            if not flag and normalize_bool(u.is_admin) and self.count_admins() <= 1:
                return Rejected.LAST_ADMIN
            u = replace(u, is_admin=flag)
            self._users[key] = u
            return u

    def delete_user(self, key) -> Union[bool, Rejected]:
        with self._locked("users", "favorites"):
            u = self._users.get(key)
            if u is None:
                return False
            if normalize_bool(u.is_admin) and self.count_admins() <= 1:
                return Rejected.LAST_ADMIN
            for fid, f in list(self._favorites.items()):
                if f.user_id == key:
                    self._favorites.pop(fid)
            self._users.pop(key)
            return True

    def verify_password(self, user: User, secret: str) -> bool:
        return hmac.compare_digest(user.password.encode("utf-8"), secret.encode("utf-8"))

    # Animes
    def create_anime(self, anime: Anime) -> Anime:
        with self._locked("animes"):
            a = replace(anime, id=self._assign("animes"))
            self._animes[a.id] = a
            return a

    def get_anime(self, key) -> Optional[Anime]:
        return self._animes.get(key)

    def list_animes(self) -> List[Anime]:
        return list(self._animes.values())

    def search_animes(self, q: str) -> List[Anime]:
        ql = q.lower()
        return [a for a in self.list_animes()
                if ql in a.title.lower() or ql in (a.description or "").lower()]

    def update_anime(self, key, changes: Dict[str, Any]) -> Optional[Anime]:
        with self._locked("animes"):
            a = self._animes.get(key)
            if a is None:
                return None
            a = replace(a, updated_at=now_iso(), **changes)
            self._animes[key] = a
            return a

    def delete_anime(self, key) -> bool:
        with self._locked("animes", "anime_genres", "episodes", "favorites"):
            if key not in self._animes:
                return False
            for table in (self._anime_genres, self._episodes, self._favorites):
                for rid, row in list(table.items()):
                    if row.anime_id == key:
                        table.pop(rid)
            self._animes.pop(key)
            return True

    # Genres
    def create_genre(self, genre: Genre) -> Union[Genre, Rejected]:
        with self._locked("genres"):
            if any(g.name == genre.name for g in self._genres.values()):
                return Rejected.CONFLICT
            g = replace(genre, id=self._assign("genres"))
            self._genres[g.id] = g
            return g

    def get_genre(self, key) -> Optional[Genre]:
        return self._genres.get(key)

    def list_genres(self) -> List[Genre]:
        return list(self._genres.values())

    def update_genre(self, key, name: str) -> Union[Genre, Rejected, None]:
        with self._locked("genres"):
            g = self._genres.get(key)
            if g is None:
                return None
            if any(o.name == name and o.id != key for o in self._genres.values()):
                return Rejected.CONFLICT
            g = replace(g, name=name)
            self._genres[key] = g
            return g

    def delete_genre(self, key) -> bool:
        with self._locked("genres", "anime_genres"):
            if key not in self._genres:
                return False
            for lid, link in list(self._anime_genres.items()):
                if link.genre_id == key:
                    self._anime_genres.pop(lid)
            self._genres.pop(key)
            return True

    # Anime <-> Genre links
    def genres_for_anime(self, anime_key) -> List[Genre]:
        ids = [l.genre_id for l in list(self._anime_genres.values()) if l.anime_id == anime_key]
        return [self._genres[i] for i in ids if i in self._genres]

    def animes_for_genre(self, genre_key) -> List[Anime]:
        ids = [l.anime_id for l in list(self._anime_genres.values()) if l.genre_id == genre_key]
        return [self._animes[i] for i in ids if i in self._animes]

    def add_genre_to_anime(self, anime_key, genre_key) -> Union[AnimeGenre, Rejected, None]:
        with self._locked("animes", "genres", "anime_genres"):
            if anime_key not in self._animes or genre_key not in self._genres:
                return None
            if any(l.anime_id == anime_key and l.genre_id == genre_key for l in self._anime_genres.values()):
                return Rejected.CONFLICT
            link = AnimeGenre(id=self._assign("anime_genres"), anime_id=anime_key, genre_id=genre_key)
            self._anime_genres[link.id] = link
            return link

    def remove_genre_from_anime(self, anime_key, genre_key) -> bool:
        with self._locked("anime_genres"):
            for lid, l in list(self._anime_genres.items()):
                if l.anime_id == anime_key and l.genre_id == genre_key:
                    self._anime_genres.pop(lid)
                    return True
            return False

    # Episodes
    def _number_taken(self, anime_key, number: int, exclude=None) -> bool:
        return any(e.anime_id == anime_key and e.number == number and e.id != exclude
                   for e in self._episodes.values())

    def create_episode(self, ep: Episode) -> Union[Episode, Rejected, None]:
        with self._locked("animes", "episodes"):
            if ep.anime_id not in self._animes:
                return None
            if self._number_taken(ep.anime_id, ep.number):
                return Rejected.CONFLICT
            e = replace(ep, id=self._assign("episodes"))
            self._episodes[e.id] = e
            return e

    def get_episode(self, key) -> Optional[Episode]:
        return self._episodes.get(key)

    def list_episodes(self) -> List[Episode]:
        return list(self._episodes.values())

    def episodes_for_anime(self, anime_key) -> List[Episode]:
        res = [e for e in list(self._episodes.values()) if e.anime_id == anime_key]
        return sorted(res, key=lambda e: e.number)

    def update_episode(self, key, changes: Dict[str, Any]) -> Union[Episode, Rejected, None]:
        with self._locked("animes", "episodes"):
            e = self._episodes.get(key)
            if e is None:
                return None
            updated = replace(e, **changes)
            if updated.anime_id not in self._animes:
                return None
            if self._number_taken(updated.anime_id, updated.number, exclude=key):
                return Rejected.CONFLICT
            self._episodes[key] = updated
            return updated

    def delete_episode(self, key) -> bool:
        with self._locked("episodes"):
            return self._episodes.pop(key, None) is not None

    # Favorites
    def favorites_for_user(self, user_key) -> List[Favorite]:
        return [f for f in list(self._favorites.values()) if f.user_id == user_key]

    def add_favorite(self, user_key, anime_key) -> Union[Favorite, Rejected, None]:
        with self._locked("users", "animes", "favorites"):
            if user_key not in self._users or anime_key not in self._animes:
                return None
            if any(f.user_id == user_key and f.anime_id == anime_key for f in self._favorites.values()):
                return Rejected.CONFLICT
            fav = Favorite(id=self._assign("favorites"), user_id=user_key, anime_id=anime_key)
            self._favorites[fav.id] = fav
            return fav

    def remove_favorite(self, user_key, anime_key) -> bool:
        with self._locked("favorites"):
            for fid, f in list(self._favorites.items()):
                if f.user_id == user_key and f.anime_id == anime_key:
                    self._favorites.pop(fid)
                    return True
            return False
