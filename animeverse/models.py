# animeverse/models.py
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from animeverse.normalize import normalize_bool

def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

ANIME_STATUSES = ("Ongoing", "Completed", "Announced", "Cancelled")
ANIME_TYPES = ("TV", "TV Series", "Movie", "OVA", "Special", "ONA")

# Entity ids are ints in the in-memory backend and ObjectId hex strings in the
# persistent one; both are emitted as-is under the public "id" key.

@dataclass
class User:
    id: Any
    username: str
    email: str = ""
    password: str = ""  # hash (persistent) or plaintext (in-memory); never emitted
    is_admin: bool = False
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "isAdmin": normalize_bool(self.is_admin),
            "createdAt": self.created_at,
        }

@dataclass
class Genre:
    id: Any
    name: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name}

@dataclass
class Anime:
    id: Any
    title: str
    description: str
    cover_image: str
    release_year: int
    status: str
    type: str
    banner_image: Optional[str] = None
    episodes: Optional[int] = None  # None -> unknown / ongoing
    rating: Optional[str] = None
    studio: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    def to_dict(self, genres: Optional[List[Genre]] = None) -> Dict[str, Any]:
        out = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "coverImage": self.cover_image,
            "bannerImage": self.banner_image,
            "releaseYear": self.release_year,
            "status": self.status,
            "type": self.type,
            "episodes": self.episodes,
            "rating": self.rating,
            "studio": self.studio,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if genres is not None:
            out["genres"] = [g.to_dict() for g in genres]
        return out

@dataclass
class AnimeGenre:
    id: Any
    anime_id: Any
    genre_id: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "animeId": self.anime_id, "genreId": self.genre_id}

@dataclass
class Episode:
    id: Any
    anime_id: Any
    title: str
    number: int
    video_url: str
    description: Optional[str] = None
    thumbnail: Optional[str] = None
    duration: Optional[str] = None
    release_date: str = field(default_factory=now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "animeId": self.anime_id,
            "title": self.title,
            "number": self.number,
            "description": self.description,
            "thumbnail": self.thumbnail,
            "videoUrl": self.video_url,
            "duration": self.duration,
            "releaseDate": self.release_date,
        }

@dataclass
class Favorite:
    id: Any
    user_id: Any
    anime_id: Any
    created_at: str = field(default_factory=now_iso)
