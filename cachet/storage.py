# cachet/storage.py
#
# Challenge store: login challenges, their one-time key binding, and the users
# that completed a login.
#
# Two backends share one contract:
#   - InMemoryStore: dicts behind a process lock (single worker / tests)
#   - SqlStore:      SQLAlchemy; the bind is a conditional UPDATE inside one
#                    transaction, so it is atomic across workers and nodes.
#                    In-memory sqlite (one shared connection) runs one
#                    transaction at a time and suits a single process only
#
# Binding rules (both backends):
#   - bound_pubkey goes from None to a key exactly once, never changes after
#   - an expired challenge can no longer be bound or looked up as pending

import logging
import secrets
import threading
import time
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterator, Optional

from sqlalchemy import exc as sa_exc
from sqlalchemy import text
from sqlalchemy.pool import StaticPool

from .db import Base, ChallengeRow, UserRow, make_engine, make_session_factory

logger = logging.getLogger(__name__)

CHALLENGE_BYTES = 32
DEFAULT_CHALLENGE_TTL_SECONDS = 300
MEMORY_URL = "memory://"


class StoreUnavailable(Exception):
    """Persistence failed; the request may be retried."""


class ChallengeState(str, Enum):
    PENDING = "pending"
    BOUND = "bound"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"


class BindResult(str, Enum):
    BOUND = "bound"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ALREADY_BOUND = "already_bound"


@dataclass
class Challenge:
    id: bytes
    created_at: int
    bound_pubkey: Optional[bytes] = None

    def is_expired(self, ttl_seconds: int, now: int) -> bool:
        return now >= self.created_at + ttl_seconds


@dataclass(frozen=True)
class Lookup:
    state: ChallengeState
    pubkey: Optional[bytes] = None

    @property
    def is_bound(self) -> bool:
        return self.state == ChallengeState.BOUND


@dataclass(frozen=True)
class User:
    pubkey: bytes
    created_at: int


def new_challenge_id() -> bytes:
    # 256 bits from the OS CSPRNG; collisions are not retried
    return secrets.token_bytes(CHALLENGE_BYTES)


def _lookup_of(ch: Optional[Challenge], ttl_seconds: int, now: int) -> Lookup:
    if ch is None:
        return Lookup(ChallengeState.NOT_FOUND)
    if ch.is_expired(ttl_seconds, now):
        return Lookup(ChallengeState.EXPIRED)
    if ch.bound_pubkey is None:
        return Lookup(ChallengeState.PENDING)
    return Lookup(ChallengeState.BOUND, ch.bound_pubkey)


# -----------------------------------------------------------------------------
# In-memory backend
# -----------------------------------------------------------------------------
class InMemoryStore:
    def __init__(
        self,
        ttl_seconds: int = DEFAULT_CHALLENGE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = int(ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self.challenges: Dict[bytes, Challenge] = {}
        self.users: Dict[bytes, User] = {}

    def _now(self) -> int:
        return int(self._clock())

    def create(self) -> bytes:
        challenge_id = new_challenge_id()
        with self._lock:
            self.challenges[challenge_id] = Challenge(id=challenge_id, created_at=self._now())
        return challenge_id

    def try_bind(self, challenge_id: bytes, pubkey: bytes) -> BindResult:
        with self._lock:
            ch = self.challenges.get(challenge_id)
            if ch is None:
                return BindResult.NOT_FOUND
            if ch.is_expired(self.ttl_seconds, self._now()):
                return BindResult.EXPIRED
            if ch.bound_pubkey is not None:
                return BindResult.ALREADY_BOUND
            ch.bound_pubkey = bytes(pubkey)
            return BindResult.BOUND

    def lookup(self, challenge_id: bytes) -> Lookup:
        with self._lock:
            return _lookup_of(self.challenges.get(challenge_id), self.ttl_seconds, self._now())

    def purge_expired(self) -> int:
        now = self._now()
        with self._lock:
            dead = [k for k, ch in self.challenges.items() if ch.is_expired(self.ttl_seconds, now)]
            for k in dead:
                self.challenges.pop(k, None)
        return len(dead)

    def upsert_user(self, pubkey: bytes) -> bool:
        pubkey = bytes(pubkey)
        with self._lock:
            if pubkey in self.users:
                return False
            self.users[pubkey] = User(pubkey=pubkey, created_at=self._now())
            return True

    def get_user(self, pubkey: bytes) -> Optional[User]:
        with self._lock:
            return self.users.get(bytes(pubkey))

    def close(self) -> None:
        pass


# -----------------------------------------------------------------------------
# SQL backend
# -----------------------------------------------------------------------------
@contextmanager
def _storage_errors() -> Iterator[None]:
    try:
        yield
    except sa_exc.SQLAlchemyError as e:
        logger.error("storage error: %s", e)
        raise StoreUnavailable(str(e)) from e


class SqlStore:
    def __init__(
        self,
        database_url: str,
        ttl_seconds: int = DEFAULT_CHALLENGE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = int(ttl_seconds)
        self._clock = clock
        self.engine = make_engine(database_url)
        self._sessions = make_session_factory(self.engine)
        # in-memory sqlite: every thread shares one connection, one transaction at a time
        self._serial = threading.Lock() if isinstance(self.engine.pool, StaticPool) else None

    def _exclusive(self):
        return self._serial if self._serial is not None else nullcontext()

    def _now(self) -> int:
        return int(self._clock())

    def init_schema(self) -> None:
        """Create tables and prove the database is reachable (boot-time check)."""
        with self._exclusive(), _storage_errors():
            Base.metadata.create_all(bind=self.engine)
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))

    def create(self) -> bytes:
        challenge_id = new_challenge_id()
        with self._exclusive(), _storage_errors(), self._sessions.begin() as db:
            db.add(ChallengeRow(id=challenge_id, created_at=self._now()))
        return challenge_id

    def try_bind(self, challenge_id: bytes, pubkey: bytes) -> BindResult:
        now = self._now()
        with self._exclusive(), _storage_errors(), self._sessions.begin() as db:
            row = db.get(ChallengeRow, challenge_id, with_for_update=True)
            if row is None:
                return BindResult.NOT_FOUND
            if now >= row.created_at + self.ttl_seconds:
                return BindResult.EXPIRED
            if row.bound_pubkey is not None:
                return BindResult.ALREADY_BOUND

            # The WHERE clause is the real guard: a concurrent binder that
            # committed after our read leaves zero rows to update.
            updated = (
                db.query(ChallengeRow)
                .filter(ChallengeRow.id == challenge_id, ChallengeRow.bound_pubkey.is_(None))
                .update({ChallengeRow.bound_pubkey: bytes(pubkey)}, synchronize_session=False)
            )
            if updated != 1:
                return BindResult.ALREADY_BOUND
            return BindResult.BOUND

    def lookup(self, challenge_id: bytes) -> Lookup:
        with self._exclusive(), _storage_errors(), self._sessions() as db:
            row = db.get(ChallengeRow, challenge_id)
            ch = None
            if row is not None:
                ch = Challenge(id=row.id, created_at=row.created_at, bound_pubkey=row.bound_pubkey)
        return _lookup_of(ch, self.ttl_seconds, self._now())

    def purge_expired(self) -> int:
        cutoff = self._now() - self.ttl_seconds
        with self._exclusive(), _storage_errors(), self._sessions.begin() as db:
            return (
                db.query(ChallengeRow)
                .filter(ChallengeRow.created_at <= cutoff)
                .delete(synchronize_session=False)
            )

    def upsert_user(self, pubkey: bytes) -> bool:
        pubkey = bytes(pubkey)
        with self._exclusive(), _storage_errors(), self._sessions() as db:
            if db.get(UserRow, pubkey) is not None:
                return False
            db.add(UserRow(pubkey=pubkey, created_at=self._now()))
            try:
                db.commit()
            except sa_exc.IntegrityError:
                # another request inserted the same key first
                db.rollback()
                return False
            return True

    def get_user(self, pubkey: bytes) -> Optional[User]:
        with self._exclusive(), _storage_errors(), self._sessions() as db:
            row = db.get(UserRow, bytes(pubkey))
            if row is None:
                return None
            return User(pubkey=row.pubkey, created_at=row.created_at)

    def close(self) -> None:
        self.engine.dispose()


def build_store(database_url: str, ttl_seconds: int):
    """Pick a backend from DATABASE_URL; SQL backends are checked at boot."""
    if database_url == MEMORY_URL:
        logger.warning("using in-memory challenge store (single worker only)")
        return InMemoryStore(ttl_seconds=ttl_seconds)

    store = SqlStore(database_url, ttl_seconds=ttl_seconds)
    store.init_schema()
    return store
