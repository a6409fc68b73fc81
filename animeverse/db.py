# animeverse/db.py
"""
Connection supervision for the document store.

``Database.connect()`` tries the configured MongoDB first. When that fails the
process keeps running: a disposable in-process substitute is provisioned and
seeded instead, and if even that fails the live flag stays down and requests
are served from the in-memory repository. After a successful connect the
driver's heartbeat events keep the live flag in step with the server.
"""
import logging
import re
import threading
from typing import Any, Optional
from urllib.parse import quote_plus

import mongomock
from pymongo import MongoClient, monitoring
from pymongo.errors import PyMongoError

from animeverse.models import User
from animeverse.repo import MongoRepo, Rejected
from animeverse.seed import ADMIN_EMAIL, ADMIN_USERNAME, seed

logger = logging.getLogger(__name__)

def mask_uri(uri: str) -> str:
    return re.sub(r"//[^@/]*@", "//****:****@", uri)

def build_uri(uri: str, user: Optional[str] = None, password: Optional[str] = None) -> str:
    """Insert credentials into a URI that does not carry its own."""
    if user and password and "@" not in uri:
        scheme, sep, rest = uri.partition("//")
        if sep:
            return f"{scheme}//{quote_plus(user)}:{quote_plus(password)}@{rest}"
    return uri

class _HeartbeatListener(monitoring.ServerHeartbeatListener):
    def __init__(self, database: "Database"):
        self._database = database

    def started(self, event):
        pass

    def succeeded(self, event):
        self._database.on_heartbeat(True)

    def failed(self, event):
        self._database.on_heartbeat(False, event.reply)

class Database:
    def __init__(self, uri: Optional[str], db_name: str = "animeverse",
                 user: Optional[str] = None, password: Optional[str] = None, *,
                 server_selection_timeout_ms: int = 5000,
                 connect_timeout_ms: int = 10000,
                 socket_timeout_ms: int = 30000,
                 max_pool_size: int = 50,
                 use_substitute: bool = True,
                 admin_password: str = "admin123"):
        self.uri = uri or ""
        self.db_name = db_name
        self.user = user
        self.password = password
        self.timeouts = {
            "serverSelectionTimeoutMS": server_selection_timeout_ms,
            "connectTimeoutMS": connect_timeout_ms,
            "socketTimeoutMS": socket_timeout_ms,
        }
        self.max_pool_size = max_pool_size
        self.use_substitute = use_substitute
        self.admin_password = admin_password

        self.client: Any = None
        self.db: Any = None
        self.substitute = False
        self.transactions = False
        self._live = threading.Event()
        self._watching = False
        self._lock = threading.Lock()

    @property
    def live(self) -> bool:
        return self._live.is_set()

    def connect(self) -> bool:
        """Connect, falling back to the substitute. Returns the live flag."""
        with self._lock:
            if self.live:
                logger.info("MongoDB already connected")
                return True
            if self.uri:
                try:
                    self._connect_external()
                    return True
                except PyMongoError as e:
                    logger.warning("External MongoDB connection error: %s", e)
                    self._close_client()
            else:
                logger.info("No MongoDB URI configured")

            if not self.use_substitute:
                logger.warning("Starting without MongoDB; serving from in-memory storage")
                return False
            logger.info("Falling back to in-process MongoDB substitute")
            try:
                self._connect_substitute()
            except Exception:
                # connectivity problems degrade service, they never stop the process
                logger.exception("Failed to start MongoDB substitute; serving from in-memory storage")
                self._close_client()
                return False
            return True

    def _connect_external(self) -> None:
        uri = build_uri(self.uri, self.user, self.password)
        logger.info("Connecting to MongoDB at %s", mask_uri(uri))
        self.client = MongoClient(uri, maxPoolSize=self.max_pool_size,
                                  event_listeners=[_HeartbeatListener(self)], **self.timeouts)
        self.client.admin.command("ping")
        self.db = self.client.get_default_database(self.db_name)
        self.transactions = self.client.topology_description.topology_type_name in (
            "ReplicaSetWithPrimary", "Sharded")
        self.substitute = False

        repo = MongoRepo(self.db, self.transactions)
        try:
            repo.ensure_indexes()
        except PyMongoError as e:
            logger.error("Could not create unique indexes, duplicates will not be rejected: %s", e)
        self._ensure_admin(repo)

        self._watching = True
        self._live.set()
        logger.info("Successfully connected to external MongoDB (transactions=%s)", self.transactions)

    def _connect_substitute(self) -> None:
        client = mongomock.MongoClient()
        db = client[self.db_name]
        repo = MongoRepo(db)
        repo.ensure_indexes()
        created = seed(repo, self.admin_password)
        repo.record_legacy_ids(created)

        self.client, self.db = client, db
        self.substitute = True
        self.transactions = False
        self._live.set()
        logger.info("Connected to MongoDB substitute database %r", self.db_name)

    def _ensure_admin(self, repo: MongoRepo) -> None:
        if repo.count_admins() > 0:
            logger.info("Admin user already exists in MongoDB")
            return
        admin = repo.create_user(User(id=None, username=ADMIN_USERNAME, email=ADMIN_EMAIL,
                                      password=self.admin_password, is_admin=True))
        if admin is Rejected.CONFLICT:
            logger.error("No admin account exists and username %r is taken by a regular user",
                         ADMIN_USERNAME)
        else:
            logger.info("Admin user created in MongoDB: %s (ID: %s)", admin.username, admin.id)

    def on_heartbeat(self, ok: bool, error: Any = None) -> None:
        """Driver callback; flips the live flag on state changes only."""
        if not self._watching:
            return
        if ok and not self._live.is_set():
            logger.info("MongoDB reachable again")
            self._live.set()
        elif not ok and self._live.is_set():
            logger.warning("MongoDB heartbeat failed (%s); serving from in-memory storage", error)
            self._live.clear()

    def _close_client(self) -> None:
        if self.client is not None:
            try:
                self.client.close()
            except PyMongoError as e:
                logger.warning("MongoDB close error: %s", e)
        self.client = None
        self.db = None

    def disconnect(self) -> None:
        with self._lock:
            self._watching = False
            self._live.clear()
            if self.client is None:
                return
            self._close_client()
            logger.info("Disconnected from MongoDB")
