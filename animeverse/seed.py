# animeverse/seed.py
"""Baseline catalog loaded into a fresh in-memory store or substitute database."""
import logging
from typing import Any, Dict, List

from animeverse.models import Anime, Episode, Genre, User

logger = logging.getLogger(__name__)

ADMIN_USERNAME = "admin"
ADMIN_EMAIL = "admin@animeverse.com"

GENRES = [
    "Action", "Adventure", "Comedy", "Drama", "Fantasy", "Horror", "Mecha",
    "Romance", "School", "Sci-Fi", "Slice of Life", "Sports", "Supernatural",
    "Mystery", "Psychological",
]

ANIMES = [
    {
        "title": "Demon Slayer: Kimetsu no Yaiba",
        "description": "Tanjiro sets out to become a demon slayer to avenge his family "
                       "and cure his sister after they are viciously attacked by demons.",
        "cover_image": "https://images.unsplash.com/photo-1578632767115-351597cf2477?w=800&h=1200",
        "banner_image": "https://images.unsplash.com/photo-1578632767115-351597cf2477?w=1920&h=1080",
        "release_year": 2019, "status": "Ongoing", "type": "TV Series",
        "episodes": 26, "rating": "4.9", "studio": "ufotable",
        "genres": ["Action", "Adventure", "Fantasy", "Supernatural"],
    },
    {
        "title": "Attack on Titan",
        "description": "Humanity survives behind enormous walls, hunted by titans that "
                       "devour people for reasons no one understands.",
        "cover_image": "https://images.unsplash.com/photo-1541562232579-512a21360020?w=800&h=1200",
        "banner_image": "https://images.unsplash.com/photo-1541562232579-512a21360020?w=1920&h=1080",
        "release_year": 2013, "status": "Completed", "type": "TV Series",
        "episodes": 87, "rating": "4.9", "studio": "Wit Studio, MAPPA",
        "genres": ["Action", "Drama", "Fantasy", "Mystery"],
    },
    {
        "title": "My Hero Academia",
        "description": "In a world where most people have superpowers, a boy born "
                       "without one still dreams of becoming a hero.",
        "cover_image": "https://images.unsplash.com/photo-1612174301807-304a2a873648?w=800&h=1200",
        "banner_image": "https://images.unsplash.com/photo-1612174301807-304a2a873648?w=1920&h=1080",
        "release_year": 2016, "status": "Ongoing", "type": "TV Series",
        "episodes": 113, "rating": "4.7", "studio": "Bones",
        "genres": ["Action", "Adventure", "Supernatural", "School"],
    },
    {
        "title": "Fullmetal Alchemist: Brotherhood",
        "description": "Two brothers search for a Philosopher's Stone after an attempt "
                       "to revive their mother leaves them in damaged physical forms.",
        "cover_image": "https://images.unsplash.com/photo-1559981421-3e0c0d156f6a?w=800&h=1200",
        "banner_image": "https://images.unsplash.com/photo-1559981421-3e0c0d156f6a?w=1920&h=1080",
        "release_year": 2009, "status": "Completed", "type": "TV Series",
        "episodes": 64, "rating": "4.9", "studio": "Bones",
        "genres": ["Action", "Adventure", "Drama", "Fantasy"],
    },
]

# anime is the 1-based position in ANIMES
EPISODES = [
    {"anime": 1, "number": 1, "title": "Cruelty", "release_date": "2023-05-01"},
    {"anime": 1, "number": 2, "title": "Trainer of the Final Selection", "release_date": "2023-05-08"},
    {"anime": 1, "number": 3, "title": "Sabito and Makomo", "release_date": "2023-05-15"},
    {"anime": 2, "number": 1, "title": "To You, 2000 Years From Now", "release_date": "2023-06-01"},
    {"anime": 2, "number": 2, "title": "That Day: The Fall of Shiganshina", "release_date": "2023-06-08"},
    {"anime": 3, "number": 1, "title": "Izuku Midoriya: Origin", "release_date": "2023-07-01"},
    {"anime": 3, "number": 2, "title": "What It Takes to Be a Hero", "release_date": "2023-07-08"},
]

def _slug(title: str) -> str:
    return "".join(c if c.isalnum() else "-" for c in title.lower()).strip("-")

def seed(repo, admin_password: str = "admin123") -> Dict[str, List[Any]]:
    """
    Populate an empty repository with the baseline dataset.
    Returns the created ids per kind, in creation order, so callers can map
    sequential positions (1, 2, ...) onto them.
    """
    created: Dict[str, List[Any]] = {"users": [], "genres": [], "animes": [], "episodes": []}

    admin = repo.create_user(User(id=None, username=ADMIN_USERNAME, email=ADMIN_EMAIL,
                                  password=admin_password, is_admin=True))
    created["users"].append(admin.id)

    genre_ids = {}
    for name in GENRES:
        g = repo.create_genre(Genre(id=None, name=name))
        genre_ids[name] = g.id
        created["genres"].append(g.id)

    anime_ids = []
    for data in ANIMES:
        fields = {k: v for k, v in data.items() if k != "genres"}
        a = repo.create_anime(Anime(id=None, **fields))
        anime_ids.append(a.id)
        created["animes"].append(a.id)
        for name in data["genres"]:
            if name in genre_ids:
                repo.add_genre_to_anime(a.id, genre_ids[name])

    for data in EPISODES:
        anime = ANIMES[data["anime"] - 1]
        e = repo.create_episode(Episode(
            id=None,
            anime_id=anime_ids[data["anime"] - 1],
            title=data["title"],
            number=data["number"],
            description=None,
            video_url=f"https://example.com/videos/{_slug(anime['title'])}-{data['number']}.mp4",
            duration="24:00",
            release_date=data["release_date"],
        ))
        created["episodes"].append(e.id)

    logger.info("Seeded %s with %d genres, %d animes, %d episodes",
                type(repo).__name__, len(created["genres"]), len(created["animes"]),
                len(created["episodes"]))
    return created
