# animeverse/service.py
import logging
import re
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pymongo.errors import PyMongoError

from animeverse.models import ANIME_STATUSES, ANIME_TYPES, Anime, Episode, Genre, User, now_iso
from animeverse.normalize import InvalidId, normalize_bool, parse_identifier
from animeverse.repo import Rejected
from animeverse.store import Store

logger = logging.getLogger(__name__)

# Exceptions
class ValidationError(Exception):
    """Raised when input or business validation fails."""
    pass

class InvalidIdentifierError(ValidationError):
    """Raised when an id matches neither the ObjectId nor the sequential format."""
    pass

class NotFoundError(Exception):
    """Raised when an entity is not found."""
    pass

class ConflictError(Exception):
    """Raised when a unique key (name, number, pair) is already taken."""
    pass

class LastAdminError(Exception):
    """Raised when an operation would leave no administrator."""
    pass

class AuthenticationError(Exception):
    pass

class AuthorizationError(Exception):
    pass

_GETTERS = {"users": "get_user", "animes": "get_anime", "genres": "get_genre", "episodes": "get_episode"}
_LABELS = {"users": "User", "animes": "Anime", "genres": "Genre", "episodes": "Episode"}

# request body key -> entity attribute
ANIME_INPUT = {
    "title": "title", "description": "description", "coverImage": "cover_image",
    "bannerImage": "banner_image", "releaseYear": "release_year", "status": "status",
    "type": "type", "episodes": "episodes", "rating": "rating", "studio": "studio",
}
ANIME_REQUIRED = ("title", "description", "cover_image", "release_year", "status", "type")
EPISODE_INPUT = {
    "title": "title", "number": "number", "description": "description",
    "thumbnail": "thumbnail", "videoUrl": "video_url", "duration": "duration",
    "releaseDate": "release_date",
}
EPISODE_REQUIRED = ("title", "number", "video_url")

_STATUS_LOOKUP = {s.lower(): s for s in ANIME_STATUSES}
_TYPE_LOOKUP = {t.lower(): t for t in ANIME_TYPES}
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

def _int_value(value: Any, name: str, minimum: int = 0) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or value < minimum:
        raise ValidationError(f"{name} must be an integer >= {minimum}")
    return value

def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value).strip()

def _date_value(value: Any) -> str:
    if not isinstance(value, str):
        raise ValidationError("releaseDate must be an ISO date string")
    try:
        return datetime.fromisoformat(value.strip().replace("Z", "+00:00")).isoformat()
    except ValueError:
        raise ValidationError("releaseDate must be an ISO date string")

class AnimeService:
    """
    Business logic for the catalog, accounts and favorites.
    Every operation resolves its repository from the Store once and does all
    of its reads and writes against that one backend.
    """

    def __init__(self, store: Store):
        self.store = store
        logger.debug("AnimeService initialized (live=%s)", store.live)

    # ---- identifiers ----
    def _key(self, repo, kind: str, raw: Any):
        """Backend key for raw, None if it cannot exist there. Malformed ids raise."""
        ident = parse_identifier(raw)
        if isinstance(ident, InvalidId):
            logger.debug("Rejected malformed %s id %r", kind, raw)
            raise InvalidIdentifierError(f"Invalid {_LABELS[kind].lower()} ID format")
        return repo.key_for(kind, ident)

    def _load(self, repo, kind: str, raw: Any) -> Tuple[Any, Any]:
        key = self._key(repo, kind, raw)
        found = getattr(repo, _GETTERS[kind])(key) if key is not None else None
        if found is None:
            raise NotFoundError(f"{_LABELS[kind]} not found")
        return key, found

    # ---- Accounts ----
    def _validate_account(self, username: Any, password: Any, email: Any) -> Tuple[str, str, str]:
        if not isinstance(username, str) or not 3 <= len(username.strip()) <= 20:
            raise ValidationError("username must be 3-20 characters")
        if not isinstance(password, str) or len(password) < 6:
            raise ValidationError("password must be at least 6 characters")
        username = username.strip()
        if email in (None, ""):
            email = f"{username}@example.com"
        if not isinstance(email, str) or not EMAIL_RE.match(email.strip()):
            raise ValidationError("Please provide a valid email")
        return username, password, email.strip()

    def _create_account(self, username, password, email, is_admin: bool) -> User:
        username, password, email = self._validate_account(username, password, email)
        repo = self.store.resolve()
        created = repo.create_user(User(id=None, username=username, email=email,
                                        password=password, is_admin=is_admin))
        if created is Rejected.CONFLICT:
            logger.info("create user: username %s already exists", username)
            raise ConflictError("Username already exists")
        logger.info("User registered in %s storage: %s (admin=%s)", repo.kind, created.username,
                    created.is_admin)
        return created

    def register(self, username: str, password: str, email: Optional[str] = None) -> User:
        """Self-service sign-up. Never grants admin rights."""
        return self._create_account(username, password, email, is_admin=False)

    def create_user(self, username: str, password: str, email: Optional[str] = None,
                    is_admin: Any = False) -> User:
        """Admin-created account; the flag may arrive as any JSON value."""
        return self._create_account(username, password, email, is_admin=normalize_bool(is_admin))

    def authenticate(self, username: Any, password: Any) -> User:
        """Check credentials against the live backend. Failures are uniform."""
        if not isinstance(username, str) or not isinstance(password, str):
            raise AuthenticationError("Invalid credentials")
        repo = self.store.resolve()
        user = repo.get_user_by_username(username.strip())
        if user is None or not repo.verify_password(user, password):
            logger.info("Failed login for %r via %s storage", username, repo.kind)
            raise AuthenticationError("Invalid credentials")
        user = replace(user, is_admin=normalize_bool(user.is_admin))
        logger.info("Login - %s (admin=%s) via %s storage", user.username, user.is_admin, repo.kind)
        return user

    def load_identity(self, raw_id: Any) -> Optional[User]:
        """
        Restore an account from a session or token id.

        While the document store is live it alone answers; an id it does not
        know is anonymous. The in-memory store is consulted only when the
        document store is down or the lookup itself fails.
        """
        ident = parse_identifier(raw_id)
        if isinstance(ident, InvalidId):
            return None
        persistent = self.store.persistent()
        if persistent is not None:
            try:
                return self._identity(persistent, ident)
            except PyMongoError as e:
                logger.warning("User lookup for %s in %s storage failed: %s", raw_id, persistent.kind, e)
        return self._identity(self.store.memory, ident)

    @staticmethod
    def _identity(repo, ident) -> Optional[User]:
        key = repo.key_for("users", ident)
        user = repo.get_user(key) if key is not None else None
        if user is None:
            return None
        return replace(user, is_admin=normalize_bool(user.is_admin))

    def list_users(self) -> List[User]:
        return self.store.resolve().list_users()

    def get_user(self, user_id: Any) -> User:
        """Get a user by id or raise NotFoundError."""
        return self._load(self.store.resolve(), "users", user_id)[1]

    def set_admin(self, user_id: Any, is_admin: Any) -> User:
        """Grant or revoke admin rights; the last admin cannot be demoted."""
        flag = normalize_bool(is_admin)
        repo = self.store.resolve()
        key = self._key(repo, "users", user_id)
        result = repo.update_user_admin(key, flag) if key is not None else None
        if result is None:
            raise NotFoundError("User not found")
        if result is Rejected.LAST_ADMIN:
            logger.warning("Refused to demote the last admin (user %s)", user_id)
            raise LastAdminError("Cannot remove admin rights from the last admin user")
        logger.info("Updated admin status of user %s to %s", user_id, flag)
        return result

    def delete_user(self, user_id: Any) -> None:
        repo = self.store.resolve()
        key = self._key(repo, "users", user_id)
        result = repo.delete_user(key) if key is not None else False
        if result is Rejected.LAST_ADMIN:
            logger.warning("Refused to delete the last admin (user %s)", user_id)
            raise LastAdminError("Cannot delete the last admin user")
        if not result:
            raise NotFoundError("User not found")
        logger.info("Deleted user id=%s from %s storage", user_id, repo.kind)

    # ---- Animes ----
    def _anime_fields(self, data: Dict[str, Any], partial: bool) -> Dict[str, Any]:
        if not isinstance(data, dict):
            raise ValidationError("Invalid anime data")
        out = {ANIME_INPUT[k]: v for k, v in data.items() if k in ANIME_INPUT}
        if not partial:
            missing = [k for k in ANIME_REQUIRED if out.get(k) in (None, "")]
            if missing:
                raise ValidationError("Invalid anime data: missing " + ", ".join(missing))
        for k in ("title", "description", "cover_image"):
            if k in out:
                if not isinstance(out[k], str) or not out[k].strip():
                    raise ValidationError(f"{k} required")
                out[k] = out[k].strip()
        if "release_year" in out:
            out["release_year"] = _int_value(out["release_year"], "releaseYear")
        if "status" in out:
            status = _STATUS_LOOKUP.get(str(out["status"]).lower())
            if status is None:
                raise ValidationError("status must be one of " + ", ".join(ANIME_STATUSES))
            out["status"] = status
        if "type" in out:
            kind = _TYPE_LOOKUP.get(str(out["type"]).lower())
            if kind is None:
                raise ValidationError("type must be one of " + ", ".join(ANIME_TYPES))
            out["type"] = kind
        if "episodes" in out:
            out["episodes"] = None if out["episodes"] in (None, "") else _int_value(out["episodes"], "episodes")
        for k in ("banner_image", "rating", "studio"):
            if k in out:
                out[k] = _optional_str(out[k])
        return out

    def list_animes(self, genre_id: Any = None) -> List[Anime]:
        repo = self.store.resolve()
        if genre_id is None:
            return repo.list_animes()
        key, _ = self._load(repo, "genres", genre_id)
        return repo.animes_for_genre(key)

    def get_anime(self, anime_id: Any) -> Anime:
        return self._load(self.store.resolve(), "animes", anime_id)[1]

    def get_anime_with_genres(self, anime_id: Any) -> Tuple[Anime, List[Genre]]:
        repo = self.store.resolve()
        key, anime = self._load(repo, "animes", anime_id)
        return anime, repo.genres_for_anime(key)

    def create_anime(self, data: Dict[str, Any]) -> Anime:
        fields = self._anime_fields(data, partial=False)
        repo = self.store.resolve()
        created = repo.create_anime(Anime(id=None, **fields))
        logger.info("Created anime id=%s title=%s in %s storage", created.id, created.title, repo.kind)
        return created

    def update_anime(self, anime_id: Any, data: Dict[str, Any]) -> Anime:
        fields = self._anime_fields(data, partial=True)
        repo = self.store.resolve()
        key = self._key(repo, "animes", anime_id)
        updated = repo.update_anime(key, fields) if key is not None else None
        if updated is None:
            raise NotFoundError("Anime not found")
        logger.info("Updated anime id=%s fields=%s", anime_id, sorted(fields))
        return updated

    def delete_anime(self, anime_id: Any) -> None:
        """Delete an anime with its episodes, genre links and favorites."""
        repo = self.store.resolve()
        key = self._key(repo, "animes", anime_id)
        if key is None or not repo.delete_anime(key):
            raise NotFoundError("Anime not found")
        logger.info("Deleted anime id=%s (with episodes and links) from %s storage", anime_id, repo.kind)

    def search(self, q: Optional[str]) -> List[Anime]:
        if not q or not q.strip():
            raise ValidationError("Search query is required")
        return self.store.resolve().search_animes(q.strip())

    def trending(self, limit: int = 6) -> List[Anime]:
        # newest first until there is real view data
        return list(reversed(self.store.resolve().list_animes()))[:limit]

    def top_rated(self, limit: int = 6) -> List[Anime]:
        def score(a: Anime) -> float:
            try:
                return float(a.rating)
            except (TypeError, ValueError):
                return 0.0
        rated = [a for a in self.store.resolve().list_animes() if a.rating]
        return sorted(rated, key=score, reverse=True)[:limit]

    def recently_added(self, limit: int = 4) -> List[Tuple[Anime, List[Genre], Episode]]:
        """Latest episodes by release date, each with its anime and genres."""
        repo = self.store.resolve()
        episodes = sorted(repo.list_episodes(), key=lambda e: e.release_date or "", reverse=True)
        out = []
        for e in episodes:
            key = self._key(repo, "animes", e.anime_id)
            anime = repo.get_anime(key) if key is not None else None
            if anime is not None:
                out.append((anime, repo.genres_for_anime(key), e))
            if len(out) == limit:
                break
        return out

    # ---- Genres ----
    def _genre_name(self, name: Any) -> str:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("genre name required")
        return name.strip()

    def list_genres(self) -> List[Genre]:
        return self.store.resolve().list_genres()

    def get_genre(self, genre_id: Any) -> Genre:
        return self._load(self.store.resolve(), "genres", genre_id)[1]

    def create_genre(self, name: Any) -> Genre:
        name = self._genre_name(name)
        repo = self.store.resolve()
        created = repo.create_genre(Genre(id=None, name=name))
        if created is Rejected.CONFLICT:
            raise ConflictError("Genre already exists")
        logger.info("Created genre id=%s name=%s", created.id, created.name)
        return created

    def update_genre(self, genre_id: Any, name: Any) -> Genre:
        name = self._genre_name(name)
        repo = self.store.resolve()
        key = self._key(repo, "genres", genre_id)
        updated = repo.update_genre(key, name) if key is not None else None
        if updated is None:
            raise NotFoundError("Genre not found")
        if updated is Rejected.CONFLICT:
            raise ConflictError("Genre already exists")
        logger.info("Updated genre id=%s", genre_id)
        return updated

    def delete_genre(self, genre_id: Any) -> None:
        repo = self.store.resolve()
        key = self._key(repo, "genres", genre_id)
        if key is None or not repo.delete_genre(key):
            raise NotFoundError("Genre not found")
        logger.info("Deleted genre id=%s (with anime links)", genre_id)

    def genres_for_anime(self, anime_id: Any) -> List[Genre]:
        return self.get_anime_with_genres(anime_id)[1]

    def add_genre_to_anime(self, anime_id: Any, genre_id: Any):
        repo = self.store.resolve()
        anime_key, _ = self._load(repo, "animes", anime_id)
        genre_key, _ = self._load(repo, "genres", genre_id)
        link = repo.add_genre_to_anime(anime_key, genre_key)
        if link is None:
            # removed after it was loaded
            raise NotFoundError("Anime or genre not found")
        if link is Rejected.CONFLICT:
            raise ConflictError("This genre is already added to the anime")
        logger.info("Added genre %s to anime %s", genre_id, anime_id)
        return link

    def remove_genre_from_anime(self, anime_id: Any, genre_id: Any) -> None:
        repo = self.store.resolve()
        anime_key = self._key(repo, "animes", anime_id)
        genre_key = self._key(repo, "genres", genre_id)
        if anime_key is None or genre_key is None or not repo.remove_genre_from_anime(anime_key, genre_key):
            raise NotFoundError("Anime-Genre relationship not found")
        logger.info("Removed genre %s from anime %s", genre_id, anime_id)

    # ---- Episodes ----
    def _episode_fields(self, data: Dict[str, Any], partial: bool) -> Dict[str, Any]:
        if not isinstance(data, dict):
            raise ValidationError("Invalid episode data")
        out = {EPISODE_INPUT[k]: v for k, v in data.items() if k in EPISODE_INPUT}
        if not partial:
            missing = [k for k in EPISODE_REQUIRED if out.get(k) in (None, "")]
            if missing:
                raise ValidationError("Invalid episode data: missing " + ", ".join(missing))
        for k in ("title", "video_url"):
            if k in out:
                if not isinstance(out[k], str) or not out[k].strip():
                    raise ValidationError(f"{k} required")
                out[k] = out[k].strip()
        if "number" in out:
            out["number"] = _int_value(out["number"], "number", minimum=1)
        for k in ("description", "thumbnail", "duration"):
            if k in out:
                out[k] = _optional_str(out[k])
        if out.get("release_date") not in (None, ""):
            out["release_date"] = _date_value(out["release_date"])
        else:
            out.pop("release_date", None)
        return out

    def get_episode(self, episode_id: Any) -> Episode:
        return self._load(self.store.resolve(), "episodes", episode_id)[1]

    def get_episode_with_anime(self, episode_id: Any) -> Tuple[Episode, Optional[Anime]]:
        repo = self.store.resolve()
        _, episode = self._load(repo, "episodes", episode_id)
        anime_key = self._key(repo, "animes", episode.anime_id)
        return episode, repo.get_anime(anime_key) if anime_key is not None else None

    def episodes_for_anime(self, anime_id: Any) -> List[Episode]:
        repo = self.store.resolve()
        key, _ = self._load(repo, "animes", anime_id)
        return repo.episodes_for_anime(key)

    def create_episode(self, data: Dict[str, Any]) -> Episode:
        fields = self._episode_fields(data, partial=False)
        if data.get("animeId") in (None, ""):
            raise ValidationError("animeId required")
        repo = self.store.resolve()
        anime_key, anime = self._load(repo, "animes", data["animeId"])
        fields.setdefault("release_date", now_iso())
        created = repo.create_episode(Episode(id=None, anime_id=anime_key, **fields))
        if created is None:
            raise NotFoundError("Anime not found")
        if created is Rejected.CONFLICT:
            logger.info("Episode %s already exists for anime %s", fields["number"], anime.id)
            raise ConflictError(f"Episode {fields['number']} already exists for this anime")
        logger.info("Created episode %s (%s) for anime %s", created.number, created.title, anime.title)
        return created

    def update_episode(self, episode_id: Any, data: Dict[str, Any]) -> Episode:
        fields = self._episode_fields(data, partial=True)
        repo = self.store.resolve()
        key, _ = self._load(repo, "episodes", episode_id)
        if data.get("animeId") not in (None, ""):
            fields["anime_id"], _ = self._load(repo, "animes", data["animeId"])
        updated = repo.update_episode(key, fields)
        if updated is None:
            raise NotFoundError("Episode not found")
        if updated is Rejected.CONFLICT:
            raise ConflictError("An episode with this number already exists for this anime")
        logger.info("Updated episode id=%s", episode_id)
        return updated

    def delete_episode(self, episode_id: Any) -> None:
        repo = self.store.resolve()
        key = self._key(repo, "episodes", episode_id)
        if key is None or not repo.delete_episode(key):
            raise NotFoundError("Episode not found")
        logger.info("Deleted episode id=%s", episode_id)

    # ---- Favorites ----
    def _owner_key(self, repo, user: User):
        key = self._key(repo, "users", user.id)
        if key is None or repo.get_user(key) is None:
            # the account lives in the other backend; the caller must sign in again
            raise AuthenticationError("Authentication required")
        return key

    def list_favorites(self, user: User) -> List[Tuple[Anime, List[Genre]]]:
        repo = self.store.resolve()
        owner = self._owner_key(repo, user)
        out = []
        for fav in repo.favorites_for_user(owner):
            key = self._key(repo, "animes", fav.anime_id)
            anime = repo.get_anime(key) if key is not None else None
            if anime is not None:
                out.append((anime, repo.genres_for_anime(key)))
        return out

    def add_favorite(self, user: User, anime_id: Any) -> Tuple[Anime, List[Genre]]:
        if anime_id in (None, ""):
            raise ValidationError("Anime ID is required")
        repo = self.store.resolve()
        owner = self._owner_key(repo, user)
        key, anime = self._load(repo, "animes", anime_id)
        fav = repo.add_favorite(owner, key)
        if fav is None:
            raise NotFoundError("Anime not found")
        if fav is Rejected.CONFLICT:
            raise ConflictError("Anime already in favorites")
        logger.info("User %s added anime %s to favorites", user.username, anime.id)
        return anime, repo.genres_for_anime(key)

    def remove_favorite(self, user: User, anime_id: Any) -> None:
        repo = self.store.resolve()
        owner = self._owner_key(repo, user)
        key = self._key(repo, "animes", anime_id)
        if key is None or not repo.remove_favorite(owner, key):
            raise NotFoundError("Favorite not found")
        logger.info("User %s removed anime %s from favorites", user.username, anime_id)

    # ---- Dashboard ----
    def stats(self) -> Dict[str, int]:
        repo = self.store.resolve()
        return {
            "animeCount": repo.count("animes"),
            "episodeCount": repo.count("episodes"),
            "genreCount": repo.count("genres"),
            "userCount": repo.count("users"),
        }
