"""
Post storage.

Two interchangeable backends implement the same four-operation contract
(create / get / list / delete):

* ``MemoryStore`` keeps everything in a dict guarded by a reader-writer lock.
* ``SqliteStore`` keeps everything in a SQLite file.

Pick one with ``open_store()``; callers only ever see ``Store``.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import closing, contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

log = logging.getLogger(__name__)

INVALID_ID = 0
MAX_ID = 2**63 - 1  # SQLite INTEGER ceiling
BACKENDS = ("memory", "sqlite")


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


################################################################################
# Post
################################################################################
@dataclass(frozen=True)
class Post:
    id: int
    title: str
    content: str
    created_at: datetime


def _newest_first(posts) -> list[Post]:
    # id breaks ties between posts stamped within the same clock tick
    return sorted(posts, key=lambda p: (p.created_at, p.id), reverse=True)


################################################################################
# Reader-writer lock
################################################################################
class RWLock:
    """
    Many readers *or* one writer.

    Writer-preferring: once a writer is waiting, new readers queue behind it.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if not self._readers:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


################################################################################
# Store contract
################################################################################
class Store(ABC):
    """Authoritative collection of posts, safe for concurrent callers."""

    @abstractmethod
    def create(self, title: str, content: str) -> int:
        """Insert a post stamped with the current time; return its new id."""

    @abstractmethod
    def get(self, post_id: int) -> Post | None:
        """Return the post, or None if there is no such id."""

    @abstractmethod
    def list(self) -> list[Post]:
        """Every post, newest first."""

    @abstractmethod
    def delete(self, post_id: int) -> bool:
        """Remove a post. Returns True if it existed."""

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.close()


################################################################################
# In-memory backend
################################################################################
class MemoryStore(Store):
    def __init__(self) -> None:
        self._lock = RWLock()
        self._posts: dict[int, Post] = {}
        self._last_id = 0

    def create(self, title: str, content: str) -> int:
        with self._lock.write_locked():
            self._last_id += 1
            post = Post(self._last_id, title, content, utc_now())
            self._posts[post.id] = post
        return post.id

    def get(self, post_id: int) -> Post | None:
        with self._lock.read_locked():
            return self._posts.get(post_id)

    def list(self) -> list[Post]:
        with self._lock.read_locked():
            snapshot = list(self._posts.values())
        return _newest_first(snapshot)

    def delete(self, post_id: int) -> bool:
        with self._lock.write_locked():
            return self._posts.pop(post_id, None) is not None


################################################################################
# SQLite backend
################################################################################
SCHEMA = """
CREATE TABLE IF NOT EXISTS post (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,   -- never recycled
    title       TEXT NOT NULL,
    content     TEXT NOT NULL,
    created_at  TEXT NOT NULL                        -- ISO-8601, UTC, µs
);

CREATE INDEX IF NOT EXISTS idx_post_created ON post(created_at);
"""

_COLUMNS = "id, title, content, created_at"


def _to_post(row: sqlite3.Row) -> Post:
    return Post(
        id=row["id"],
        title=row["title"],
        content=row["content"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


class SqliteStore(Store):
    """
    Posts in a SQLite file.

    Every call opens its own short-lived connection, so one instance can be
    shared by all request threads; SQLite serialises the writers.

    Storage errors are logged and degraded to a failure value
    (``INVALID_ID`` / ``None`` / ``[]`` / ``False``) instead of raised.
    """

    def __init__(self, database: str | Path, *, timeout: float = 5.0) -> None:
        self.database = str(database)
        self.timeout = timeout
        self.init_schema()

    def _connect(self) -> sqlite3.Connection:
        db = sqlite3.connect(self.database, timeout=self.timeout)
        db.row_factory = sqlite3.Row
        return db

    def init_schema(self) -> None:
        with closing(self._connect()) as db:
            db.executescript(SCHEMA)
            db.commit()

    def create(self, title: str, content: str) -> int:
        try:
            with closing(self._connect()) as db, db:
                # stamp under the write lock so id order == created_at order
                db.execute("BEGIN IMMEDIATE")
                created_at = utc_now().isoformat(timespec="microseconds")
                cur = db.execute(
                    "INSERT INTO post (title, content, created_at) VALUES (?,?,?)",
                    (title, content, created_at),
                )
                return cur.lastrowid or INVALID_ID
        except sqlite3.Error:
            log.exception("Error creating post")
            return INVALID_ID

    def get(self, post_id: int) -> Post | None:
        if not 0 < post_id <= MAX_ID:
            return None
        try:
            with closing(self._connect()) as db:
                row = db.execute(
                    f"SELECT {_COLUMNS} FROM post WHERE id=?", (post_id,)
                ).fetchone()
        except sqlite3.Error:
            log.exception("Error fetching post %s", post_id)
            return None
        return _to_post(row) if row else None

    def list(self) -> list[Post]:
        try:
            with closing(self._connect()) as db:
                rows = db.execute(
                    f"SELECT {_COLUMNS} FROM post ORDER BY created_at DESC, id DESC"
                ).fetchall()
        except sqlite3.Error:
            log.exception("Error listing posts")
            return []

        posts = []
        for row in rows:
            try:
                posts.append(_to_post(row))
            except ValueError:
                log.error("Skipping post %s: bad created_at %r", row["id"], row["created_at"])
        return posts

    def delete(self, post_id: int) -> bool:
        if not 0 < post_id <= MAX_ID:
            return False
        try:
            with closing(self._connect()) as db, db:
                cur = db.execute("DELETE FROM post WHERE id=?", (post_id,))
                return cur.rowcount > 0
        except sqlite3.Error:
            log.exception("Error deleting post %s", post_id)
            return False


################################################################################
# Factory
################################################################################
def open_store(
    backend: str = "memory",
    database: str | Path | None = None,
    *,
    timeout: float = 5.0,
) -> Store:
    """Build the store named by *backend* (``memory`` or ``sqlite``)."""
    backend = (backend or "").strip().lower()
    if backend == "memory":
        return MemoryStore()
    if backend == "sqlite":
        if not database:
            raise ValueError("sqlite backend needs a database path")
        return SqliteStore(database, timeout=timeout)
    raise ValueError(f"Unknown store backend {backend!r} (expected one of {BACKENDS})")
