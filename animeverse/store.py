# animeverse/store.py
from typing import Optional, Union

from animeverse.db import Database
from animeverse.repo import InMemoryRepo, MongoRepo

class Store:
    """
    Chooses the repository that answers a request.
    Callers resolve once per logical operation and keep using the returned
    repo, so a read and the write that follows it never land on different
    backends even if the live flag changes in between.
    """

    def __init__(self, database: Optional[Database], memory: InMemoryRepo):
        self.database = database
        self.memory = memory
        self._mongo: Optional[MongoRepo] = None

    @property
    def live(self) -> bool:
        return self.database is not None and self.database.live

    def persistent(self) -> Optional[MongoRepo]:
        """Repo over the active database object, or None when there is none."""
        db = self.database.db if self.live else None
        if db is None:
            return None
        repo = self._mongo
        if repo is None or repo.db is not db:
            # the active database changes when connect() falls back to the substitute
            repo = self._mongo = MongoRepo(db, transactions=self.database.transactions)
        return repo

    def resolve(self) -> Union[MongoRepo, InMemoryRepo]:
        return self.persistent() or self.memory
