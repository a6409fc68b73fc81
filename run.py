import json
import logging
import os
import secrets

from cachelib import SimpleCache
from flask import Flask
from flask_session import Session

from animeverse.auth import SESSION_LIFETIME, init_auth
from animeverse.db import Database
from animeverse.repo import InMemoryRepo
from animeverse.service import AnimeService
from animeverse.store import Store
from animeverse.web import register_error_handlers, register_routes

DEFAULT_CFG = {
    "mongodb_uri": "",
    "mongodb_user": "",
    "mongodb_password": "",
    "mongodb_db_name": "animeverse",
    "use_substitute": True,
    "session_secret": "",
    "token_secret": "",
    "admin_password": "admin123",
    "session_cache_threshold": 10000,
    "debug": True,
    "host": "127.0.0.1",
    "port": 5000,
    "logging_level": "INFO"
}

# environment variable -> config key
ENV_KEYS = {
    "MONGODB_URI": "mongodb_uri",
    "MONGODB_USER": "mongodb_user",
    "MONGODB_PASSWORD": "mongodb_password",
    "MONGODB_DB_NAME": "mongodb_db_name",
    "SESSION_SECRET": "session_secret",
    "TOKEN_SECRET": "token_secret",
    "ADMIN_PASSWORD": "admin_password",
    "LOGGING_LEVEL": "logging_level",
}

SECRET_KEYS = ("mongodb_password", "session_secret", "token_secret", "admin_password")

def load_config(path="config.json"):
    merged = DEFAULT_CFG.copy()
    if not os.path.exists(path):
        print("config.json not found, using defaults")
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                merged.update(json.load(f))
        except (OSError, ValueError) as e:
            print("Failed to read config.json:", e, "(using defaults)")
    for env, key in ENV_KEYS.items():
        if os.environ.get(env):
            merged[key] = os.environ[env]
    return merged

cfg = load_config()

def configure_logging(level_name: str, debug: bool = False):
    level = getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # quieter werkzeug when not debugging
    logging.getLogger("werkzeug").setLevel(logging.WARNING if not debug else logging.INFO)

def create_app(overrides=None):
    conf = dict(cfg, **(overrides or {}))
    configure_logging(conf.get("logging_level", "INFO"), conf.get("debug", False))
    logger = logging.getLogger(__name__)
    logger.info("Starting app with config: %s", {k: v for k, v in conf.items() if k not in SECRET_KEYS})

    app = Flask(__name__)
    secret = conf.get("session_secret")
    if not secret:
        logger.warning("SESSION_SECRET not set; using a random key, sessions will not survive a restart")
        secret = secrets.token_hex(32)
    app.secret_key = secret
    app.config["TOKEN_SECRET"] = conf.get("token_secret") or secret
    app.config["PERMANENT_SESSION_LIFETIME"] = SESSION_LIFETIME
    app.config["SESSION_COOKIE_HTTPONLY"] = True
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
    # session records live server-side so logout revokes the cookie
    app.config["SESSION_TYPE"] = "cachelib"
    app.config["SESSION_CACHELIB"] = SimpleCache(threshold=int(conf.get("session_cache_threshold", 10000)),
                                                 default_timeout=int(SESSION_LIFETIME.total_seconds()))
    Session(app)

    database = Database(conf.get("mongodb_uri"), conf.get("mongodb_db_name", "animeverse"),
                        conf.get("mongodb_user") or None, conf.get("mongodb_password") or None,
                        use_substitute=conf.get("use_substitute", True),
                        admin_password=conf.get("admin_password", "admin123"))
    database.connect()
    memory = InMemoryRepo(admin_password=conf.get("admin_password", "admin123"))
    service = AnimeService(Store(database, memory))
    app.config["SERVICE"] = service
    app.config["DATABASE"] = database

    init_auth(app, service)
    register_routes(app, service)
    register_error_handlers(app)
    return app

if __name__ == "__main__":
    app = create_app()
    app.run(host=cfg.get("host", "127.0.0.1"), port=cfg.get("port", 5000), debug=cfg.get("debug", True))
