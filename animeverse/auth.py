# animeverse/auth.py
"""
Identity for API callers.

Flask-Login resolves the caller from the server-side session first and from a
signed bearer token second (``Authorization: Bearer`` or the ``token``
cookie). Either way the account record is loaded again for the request, so
the admin flag that guards ``/api/admin`` is always the stored one and never
the copy captured at login time.
"""
import logging
from datetime import timedelta
from typing import Any, Optional

from flask import current_app, jsonify, request
from flask_login import LoginManager, UserMixin, current_user
from itsdangerous import BadSignature, URLSafeTimedSerializer

from animeverse.models import User
from animeverse.normalize import normalize_bool
from animeverse.service import AnimeService, AuthenticationError, AuthorizationError

logger = logging.getLogger(__name__)

TOKEN_COOKIE = "token"
TOKEN_SALT = "animeverse-auth-token"
SESSION_LIFETIME = timedelta(days=7)
TOKEN_MAX_AGE = int(SESSION_LIFETIME.total_seconds())

class Identity(UserMixin):
    """The authenticated account as Flask-Login sees it."""

    def __init__(self, user: User):
        self.user = user

    def get_id(self) -> str:
        return str(self.user.id)

    @property
    def is_admin(self) -> bool:
        return normalize_bool(self.user.is_admin)

def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(current_app.config["TOKEN_SECRET"], salt=TOKEN_SALT)

def issue_token(user: User) -> str:
    return _serializer().dumps({"userId": str(user.id), "isAdmin": normalize_bool(user.is_admin)})

def verify_token(token: str) -> Optional[dict]:
    """Payload of a valid token, None for anything expired, tampered or malformed."""
    try:
        payload = _serializer().loads(token, max_age=TOKEN_MAX_AGE)
    except BadSignature as e:
        logger.info("Rejected bearer token: %s", type(e).__name__)
        return None
    return payload if isinstance(payload, dict) else None

def _bearer_token() -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return request.cookies.get(TOKEN_COOKIE) or None

def init_auth(app, service: AnimeService) -> LoginManager:
    login_manager = LoginManager()
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_session_user(user_id: Any) -> Optional[Identity]:
        user = service.load_identity(user_id)
        return Identity(user) if user is not None else None

    @login_manager.request_loader
    def load_token_user(req) -> Optional[Identity]:
        token = _bearer_token()
        if not token:
            return None
        payload = verify_token(token)
        if payload is None:
            return None
        # the embedded flag is only informational; the record decides
        user = service.load_identity(payload.get("userId"))
        return Identity(user) if user is not None else None

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"message": "Authentication required"}), 401

    logger.debug("Login manager initialized")
    return login_manager

def require_admin() -> None:
    """before_request hook for admin-only blueprints."""
    if not current_user.is_authenticated:
        raise AuthenticationError("Authentication required")
    if current_user.is_admin is not True:
        logger.info("Admin access denied for %s on %s", current_user.user.username, request.path)
        raise AuthorizationError("Admin access required")
