# animeverse/web.py
import logging
from typing import Any, Dict

from flask import Blueprint, current_app, jsonify, request, session
from flask_login import current_user, login_required, login_user, logout_user
from pymongo.errors import PyMongoError
from werkzeug.exceptions import HTTPException

from animeverse.auth import TOKEN_COOKIE, TOKEN_MAX_AGE, Identity, issue_token, require_admin
from animeverse.models import User
from animeverse.service import (
    AnimeService, AuthenticationError, AuthorizationError, ConflictError,
    LastAdminError, NotFoundError, ValidationError,
)

logger = logging.getLogger(__name__)

api_bp = Blueprint("api", __name__, url_prefix="/api")
auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")
favorites_bp = Blueprint("favorites", __name__, url_prefix="/api/favorites")
admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")
admin_bp.before_request(require_admin)

def register_routes(app, service: AnimeService):
    """
    Register blueprints and ensure SERVICE is in app.config.
    Call this once during app creation (run.create_app does this).
    """
    if "SERVICE" not in app.config:
        app.config["SERVICE"] = service
    for bp in (api_bp, auth_bp, favorites_bp, admin_bp):
        app.register_blueprint(bp)
    logger.debug("Registered blueprints and injected SERVICE")

def _message(text: str, status: int):
    return jsonify({"message": text}), status

def register_error_handlers(app):
    """Centralized JSON handlers for service exceptions."""
    @app.errorhandler(ValidationError)
    def handle_validation_error(e):
        # InvalidIdentifierError lands here too
        logger.warning("%s: %s", type(e).__name__, e)
        return _message(str(e), 400)

    @app.errorhandler(NotFoundError)
    def handle_not_found(e):
        logger.info("NotFoundError: %s", e)
        return _message(str(e), 404)

    @app.errorhandler(ConflictError)
    def handle_conflict(e):
        logger.info("ConflictError: %s", e)
        return _message(str(e), 409)

    @app.errorhandler(LastAdminError)
    def handle_last_admin(e):
        return _message(str(e), 400)

    @app.errorhandler(AuthenticationError)
    def handle_unauthenticated(e):
        return _message(str(e), 401)

    @app.errorhandler(AuthorizationError)
    def handle_forbidden(e):
        return _message(str(e), 403)

    @app.errorhandler(HTTPException)
    def handle_http(e):
        return _message(e.description, e.code)

    @app.errorhandler(PyMongoError)
    def handle_db_error(e):
        logger.error("Database error on %s %s: %s", request.method, request.path, e)
        return _message("Internal server error", 500)

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return _message("Internal server error", 500)

# helper to get service instance
def current_service() -> AnimeService:
    return current_app.config["SERVICE"]

def _body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data

# -----------------------
# Catalog
# -----------------------
@api_bp.route("/genres")
def genres():
    return jsonify([g.to_dict() for g in current_service().list_genres()])

@api_bp.route("/genres/<genre_id>/animes")
def genre_animes(genre_id: str):
    return jsonify([a.to_dict() for a in current_service().list_animes(genre_id)])

@api_bp.route("/animes")
def animes():
    genre = request.args.get("genre") or None
    return jsonify([a.to_dict() for a in current_service().list_animes(genre)])

@api_bp.route("/animes/<anime_id>")
def anime_detail(anime_id: str):
    anime, genres = current_service().get_anime_with_genres(anime_id)
    return jsonify(anime.to_dict(genres))

@api_bp.route("/animes/<anime_id>/genres")
def anime_genres(anime_id: str):
    return jsonify([g.to_dict() for g in current_service().genres_for_anime(anime_id)])

@api_bp.route("/animes/<anime_id>/episodes")
def anime_episodes(anime_id: str):
    return jsonify([e.to_dict() for e in current_service().episodes_for_anime(anime_id)])

@api_bp.route("/episodes/<episode_id>")
def episode_detail(episode_id: str):
    episode, anime = current_service().get_episode_with_anime(episode_id)
    return jsonify({"episode": episode.to_dict(), "anime": anime.to_dict() if anime else None})

@api_bp.route("/search")
def search():
    return jsonify([a.to_dict() for a in current_service().search(request.args.get("q"))])

@api_bp.route("/trending")
def trending():
    return jsonify([a.to_dict() for a in current_service().trending()])

@api_bp.route("/top-rated")
def top_rated():
    return jsonify([a.to_dict() for a in current_service().top_rated()])

@api_bp.route("/recently-added")
def recently_added():
    rows = current_service().recently_added()
    return jsonify([{"anime": a.to_dict(genres), "episode": e.to_dict()} for a, genres, e in rows])

# -----------------------
# Auth
# -----------------------
def _signed_in(user: User, status: int = 200):
    """Start a session and hand out a token for the same account."""
    # fresh session id on every sign-in
    current_app.session_interface.regenerate(session)
    login_user(Identity(user))
    session.permanent = True
    token = issue_token(user)
    resp = jsonify(dict(user.to_dict(), token=token))
    resp.status_code = status
    resp.set_cookie(TOKEN_COOKIE, token, max_age=TOKEN_MAX_AGE, httponly=True, samesite="Lax",
                    secure=current_app.config.get("SESSION_COOKIE_SECURE", False))
    return resp

@auth_bp.route("/register", methods=["POST"])
def register():
    data = _body()
    # any privilege flag in the body is ignored
    user = current_service().register(data.get("username"), data.get("password"), data.get("email"))
    return _signed_in(user, 201)

@auth_bp.route("/login", methods=["POST"])
def login():
    data = _body()
    user = current_service().authenticate(data.get("username"), data.get("password"))
    return _signed_in(user)

@auth_bp.route("/logout", methods=["POST"])
def logout():
    if current_user.is_authenticated:
        logger.info("Logout - %s", current_user.user.username)
    logout_user()
    # an emptied session drops its server-side record
    session.clear()
    resp = jsonify({"message": "Logged out successfully"})
    resp.delete_cookie(TOKEN_COOKIE)
    return resp

@auth_bp.route("/me")
@login_required
def me():
    return jsonify(current_user.user.to_dict())

# -----------------------
# Favorites
# -----------------------
@favorites_bp.route("", methods=["GET"])
@login_required
def favorites():
    rows = current_service().list_favorites(current_user.user)
    return jsonify([a.to_dict(genres) for a, genres in rows])

@favorites_bp.route("", methods=["POST"])
@login_required
def favorite_add():
    anime, genres = current_service().add_favorite(current_user.user, _body().get("animeId"))
    return jsonify(anime.to_dict(genres)), 201

@favorites_bp.route("/<anime_id>", methods=["DELETE"])
@login_required
def favorite_remove(anime_id: str):
    current_service().remove_favorite(current_user.user, anime_id)
    return jsonify({"message": "Removed from favorites"})

# -----------------------
# Admin
# -----------------------
@admin_bp.route("/stats")
def stats():
    return jsonify(current_service().stats())

@admin_bp.route("/users", methods=["GET"])
def users():
    return jsonify([u.to_dict() for u in current_service().list_users()])

@admin_bp.route("/users", methods=["POST"])
def user_new():
    data = _body()
    user = current_service().create_user(data.get("username"), data.get("password"),
                                         data.get("email"), data.get("isAdmin", False))
    return jsonify(user.to_dict()), 201

@admin_bp.route("/users/<user_id>/admin", methods=["PATCH"])
def user_set_admin(user_id: str):
    data = _body()
    if "isAdmin" not in data:
        raise ValidationError("isAdmin is required")
    user = current_service().set_admin(user_id, data["isAdmin"])
    return jsonify(user.to_dict())

@admin_bp.route("/users/<user_id>", methods=["DELETE"])
def user_delete(user_id: str):
    current_service().delete_user(user_id)
    return jsonify({"message": "User deleted successfully"})

@admin_bp.route("/animes", methods=["POST"])
def anime_new():
    return jsonify(current_service().create_anime(_body()).to_dict()), 201

@admin_bp.route("/animes/<anime_id>", methods=["PATCH"])
def anime_edit(anime_id: str):
    return jsonify(current_service().update_anime(anime_id, _body()).to_dict())

@admin_bp.route("/animes/<anime_id>", methods=["DELETE"])
def anime_delete(anime_id: str):
    current_service().delete_anime(anime_id)
    return jsonify({"message": "Anime deleted successfully"})

@admin_bp.route("/genres", methods=["POST"])
def genre_new():
    return jsonify(current_service().create_genre(_body().get("name")).to_dict()), 201

@admin_bp.route("/genres/<genre_id>", methods=["PATCH"])
def genre_edit(genre_id: str):
    return jsonify(current_service().update_genre(genre_id, _body().get("name")).to_dict())

@admin_bp.route("/genres/<genre_id>", methods=["DELETE"])
def genre_delete(genre_id: str):
    current_service().delete_genre(genre_id)
    return jsonify({"message": "Genre deleted successfully"})

@admin_bp.route("/animes/<anime_id>/genres/<genre_id>", methods=["POST"])
def anime_genre_add(anime_id: str, genre_id: str):
    return jsonify(current_service().add_genre_to_anime(anime_id, genre_id).to_dict()), 201

@admin_bp.route("/animes/<anime_id>/genres/<genre_id>", methods=["DELETE"])
def anime_genre_remove(anime_id: str, genre_id: str):
    current_service().remove_genre_from_anime(anime_id, genre_id)
    return jsonify({"message": "Genre removed from anime successfully"})

@admin_bp.route("/episodes", methods=["POST"])
def episode_new():
    return jsonify(current_service().create_episode(_body()).to_dict()), 201

@admin_bp.route("/episodes/<episode_id>", methods=["PATCH"])
def episode_edit(episode_id: str):
    return jsonify(current_service().update_episode(episode_id, _body()).to_dict())

@admin_bp.route("/episodes/<episode_id>", methods=["DELETE"])
def episode_delete(episode_id: str):
    current_service().delete_episode(episode_id)
    return jsonify({"message": "Episode deleted successfully"})
