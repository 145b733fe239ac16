# tma_auth/storage.py
#
# Identity store: durable mapping platform_user_id -> local identity record.
#
# The only binding contract is upsert_by_platform_id():
#   - no record         -> create it with the given username
#   - username differs  -> update it (None vs "x" counts as different)
#   - username equal    -> return unchanged, no write
#
# At most one record per platform_user_id. The uniqueness constraint is the
# source of truth; a conflicting insert means "someone else just created it"
# and is resolved by re-reading, never surfaced as an error.
import logging
import sqlite3
import threading
import time
from collections import Counter
from dataclasses import dataclass
from typing import Dict, Optional

from .errors import StoreError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdentityRecord:
    local_id: int
    platform_user_id: int
    username: Optional[str]
    created_at: int
    updated_at: int

    def public_view(self):
        return {
            "id": self.local_id,
            "telegram_id": self.platform_user_id,
            "username": self.username,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class IdentityStore:
    """
    Base class for identity stores.

    stats counts what each upsert actually did: "created", "updated",
    "unchanged".
    """

    def __init__(self):
        self.stats: Counter = Counter()
        self._stats_lock = threading.Lock()

    def upsert_by_platform_id(self, platform_user_id: int, username: Optional[str]) -> IdentityRecord:
        raise NotImplementedError

    def get_by_platform_id(self, platform_user_id: int) -> Optional[IdentityRecord]:
        raise NotImplementedError

    def get_by_local_id(self, local_id: int) -> Optional[IdentityRecord]:
        raise NotImplementedError

    def _record(self, outcome: str, rec: IdentityRecord) -> IdentityRecord:
        with self._stats_lock:
            self.stats[outcome] += 1
        if outcome == "unchanged":
            logger.debug("identity unchanged: local_id=%s telegram_id=%s", rec.local_id, rec.platform_user_id)
        else:
            logger.info("identity %s: local_id=%s telegram_id=%s", outcome, rec.local_id, rec.platform_user_id)
        return rec


# -----------------------------------------------------------------------------
# In-memory store
# -----------------------------------------------------------------------------
class _DuplicateKey(Exception):
    pass


class InMemoryIdentityStore(IdentityStore):
    """
    Process-local store. The dict keyed by platform_user_id plays the role of
    a unique index: _insert() refuses a second row for the same key, exactly
    like a UNIQUE constraint would, and upsert() re-reads on conflict.
    """

    def __init__(self):
        super().__init__()
        self.records: Dict[int, IdentityRecord] = {}
        self._by_local_id: Dict[int, IdentityRecord] = {}
        self._next_id = 1
        self._index_lock = threading.Lock()

    def get_by_platform_id(self, platform_user_id: int) -> Optional[IdentityRecord]:
        return self.records.get(platform_user_id)

    def get_by_local_id(self, local_id: int) -> Optional[IdentityRecord]:
        return self._by_local_id.get(local_id)

    def _insert(self, platform_user_id: int, username: Optional[str]) -> IdentityRecord:
        with self._index_lock:
            if platform_user_id in self.records:
                raise _DuplicateKey(platform_user_id)
            now = int(time.time())
            rec = IdentityRecord(
                local_id=self._next_id,
                platform_user_id=platform_user_id,
                username=username,
                created_at=now,
                updated_at=now,
            )
            self._next_id += 1
            self.records[platform_user_id] = rec
            self._by_local_id[rec.local_id] = rec
            return rec

    def _set_username(self, platform_user_id: int, username: Optional[str]) -> tuple[IdentityRecord, bool]:
        # compare-and-set: only write when the stored value still differs
        with self._index_lock:
            rec = self.records[platform_user_id]
            if rec.username == username:
                return rec, False
            rec = IdentityRecord(
                local_id=rec.local_id,
                platform_user_id=rec.platform_user_id,
                username=username,
                created_at=rec.created_at,
                updated_at=int(time.time()),
            )
            self.records[platform_user_id] = rec
            self._by_local_id[rec.local_id] = rec
            return rec, True

    def upsert_by_platform_id(self, platform_user_id: int, username: Optional[str]) -> IdentityRecord:
        existing = self.records.get(platform_user_id)
        if existing is None:
            try:
                return self._record("created", self._insert(platform_user_id, username))
            except _DuplicateKey:
                logger.debug("insert conflict for telegram_id=%s, re-reading", platform_user_id)

        rec, written = self._set_username(platform_user_id, username)
        return self._record("updated" if written else "unchanged", rec)


# -----------------------------------------------------------------------------
# SQLite store
# -----------------------------------------------------------------------------
SCHEMA = """
CREATE TABLE IF NOT EXISTS identities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    platform_user_id INTEGER NOT NULL UNIQUE,
    username TEXT,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
)
"""

_COLUMNS = "id, platform_user_id, username, created_at, updated_at"


def _row_to_record(row) -> IdentityRecord:
    return IdentityRecord(
        local_id=row[0],
        platform_user_id=row[1],
        username=row[2],
        created_at=row[3],
        updated_at=row[4],
    )


class SqliteIdentityStore(IdentityStore):
    """
    SQLite-backed store. One connection per call; each upsert runs in a
    single BEGIN IMMEDIATE transaction, which takes the database write lock
    up front so the insert/update/select sequence is serialized per database.
    """

    def __init__(self, path: str, timeout: float = 30.0):
        super().__init__()
        self.path = str(path)
        self.timeout = timeout
        self.init_schema()

    def _connect(self) -> sqlite3.Connection:
        # isolation_level=None: we issue BEGIN/COMMIT ourselves
        return sqlite3.connect(self.path, timeout=self.timeout, isolation_level=None)

    def init_schema(self) -> None:
        try:
            conn = self._connect()
            try:
                conn.execute(SCHEMA)
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StoreError(f"cannot initialize identity store: {e}") from e

    def _fetch_one(self, where: str, value: int) -> Optional[IdentityRecord]:
        try:
            conn = self._connect()
            try:
                row = conn.execute(f"SELECT {_COLUMNS} FROM identities WHERE {where} = ?", (value,)).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StoreError(f"identity lookup failed: {e}") from e
        return _row_to_record(row) if row else None

    def get_by_platform_id(self, platform_user_id: int) -> Optional[IdentityRecord]:
        return self._fetch_one("platform_user_id", platform_user_id)

    def get_by_local_id(self, local_id: int) -> Optional[IdentityRecord]:
        return self._fetch_one("id", local_id)

    def upsert_by_platform_id(self, platform_user_id: int, username: Optional[str]) -> IdentityRecord:
        now = int(time.time())
        try:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    cur = conn.execute(
                        "INSERT INTO identities (platform_user_id, username, created_at, updated_at) "
                        "VALUES (?, ?, ?, ?) ON CONFLICT(platform_user_id) DO NOTHING",
                        (platform_user_id, username, now, now),
                    )
                    if cur.rowcount == 1:
                        outcome = "created"
                    else:
                        cur = conn.execute(
                            "UPDATE identities SET username = ?, updated_at = ? "
                            "WHERE platform_user_id = ? AND username IS NOT ?",
                            (username, now, platform_user_id, username),
                        )
                        outcome = "updated" if cur.rowcount == 1 else "unchanged"

                    row = conn.execute(
                        f"SELECT {_COLUMNS} FROM identities WHERE platform_user_id = ?",
                        (platform_user_id,),
                    ).fetchone()
                    conn.execute("COMMIT")
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error("identity upsert failed for telegram_id=%s: %s", platform_user_id, e)
            raise StoreError(f"identity upsert failed: {e}") from e

        if row is None:
            raise StoreError(f"identity for telegram_id={platform_user_id} vanished inside transaction")
        return self._record(outcome, _row_to_record(row))
