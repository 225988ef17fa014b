"""
tests/test_store.py
"""
from __future__ import annotations

import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

from minblog.store import (
    INVALID_ID,
    MemoryStore,
    RWLock,
    SqliteStore,
    open_store,
)


# ───────────────────────── contract (both backends) ───────────────────
def test_scenario_create_list_delete(store):
    assert store.create("Hello", "World") == 1
    assert store.create("Second", "Post") == 2
    assert [p.id for p in store.list()] == [2, 1]

    assert store.delete(1) is True
    assert [p.id for p in store.list()] == [2]
    assert store.get(1) is None


def test_ids_strictly_increasing(store):
    ids = [store.create(f"t{i}", "body") for i in range(20)]
    assert ids == sorted(set(ids))
    assert all(i > 0 for i in ids)


def test_get_returns_exact_post(store, monkeypatch):
    from minblog import store as store_mod

    # real clock, so the bounds below mean something
    monkeypatch.setattr(store_mod, "utc_now", lambda: datetime.now(timezone.utc))

    before = datetime.now(timezone.utc)
    pid = store.create("Title *raw*", "<b>verbatim</b>\n  spaces ")
    after = datetime.now(timezone.utc)

    post = store.get(pid)
    assert post is not None
    assert post.id == pid
    assert post.title == "Title *raw*"
    assert post.content == "<b>verbatim</b>\n  spaces "
    assert before <= post.created_at <= after
    assert post.created_at.tzinfo is not None


def test_get_missing(store):
    assert store.get(12345) is None


@pytest.mark.parametrize("post_id", [0, -1, 2**63, 10**20])
def test_out_of_range_ids_are_absent(store, post_id):
    store.create("only", "one")
    assert store.get(post_id) is None
    assert store.delete(post_id) is False
    assert len(store.list()) == 1


def test_list_newest_first(store):
    a = store.create("A", "a")
    b = store.create("B", "b")
    c = store.create("C", "c")
    posts = store.list()
    assert [p.id for p in posts] == [c, b, a]
    assert posts[0].created_at > posts[1].created_at > posts[2].created_at


def test_delete_missing_leaves_collection(store):
    store.create("keep", "me")
    before = store.list()
    assert store.delete(999) is False
    assert store.list() == before


def test_deleted_id_never_reused(store):
    first = store.create("one", "1")
    second = store.create("two", "2")
    assert store.delete(second) is True
    third = store.create("three", "3")

    assert third > second
    assert second not in {p.id for p in store.list()}
    assert store.delete(second) is False
    assert store.get(first).title == "one"


def test_posts_are_immutable(store):
    post = store.get(store.create("frozen", "x"))
    with pytest.raises(AttributeError):
        post.title = "changed"


def test_concurrent_creates_no_lost_updates(store):
    n = 64
    with ThreadPoolExecutor(max_workers=16) as pool:
        ids = list(pool.map(lambda i: store.create(f"p{i}", "body"), range(n)))

    assert len(set(ids)) == n
    assert INVALID_ID not in ids
    assert len(store.list()) == n


def test_concurrent_creates_list_in_id_order(store):
    with ThreadPoolExecutor(max_workers=16) as pool:
        list(pool.map(lambda i: store.create(f"p{i}", "body"), range(48)))

    posts = store.list()
    assert [p.id for p in posts] == sorted((p.id for p in posts), reverse=True)
    stamps = [p.created_at for p in posts]
    assert stamps == sorted(stamps, reverse=True)


# ───────────────────────── memory backend ─────────────────────────────
def test_memory_list_ties_broken_by_id(monkeypatch):
    from minblog import store as store_mod

    same = datetime(2030, 1, 1, tzinfo=timezone.utc)
    monkeypatch.setattr(store_mod, "utc_now", lambda: same)

    s = MemoryStore()
    ids = [s.create(str(i), "x") for i in range(5)]
    assert [p.id for p in s.list()] == ids[::-1]


def test_rwlock_readers_share_writers_exclude():
    lock = RWLock()
    inside = threading.Barrier(2, timeout=2)

    # two readers can hold the lock at the same time
    def reader():
        with lock.read_locked():
            inside.wait()

    threads = [threading.Thread(target=reader) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)
    assert not inside.broken

    # a writer waits for the reader to leave
    order: list[str] = []
    lock.acquire_read()
    writer = threading.Thread(
        target=lambda: (lock.acquire_write(), order.append("write"), lock.release_write())
    )
    writer.start()
    writer.join(timeout=0.2)
    assert writer.is_alive()
    order.append("read-done")
    lock.release_read()
    writer.join(timeout=5)
    assert order == ["read-done", "write"]


# ───────────────────────── sqlite backend ─────────────────────────────
def test_sqlite_survives_reopen(db_path):
    with SqliteStore(db_path) as s:
        pid = s.create("persist", "me")

    with SqliteStore(db_path) as s:
        assert s.get(pid).title == "persist"
        assert s.create("next", "one") > pid


def test_sqlite_list_ties_broken_by_id(db_path, monkeypatch):
    from minblog import store as store_mod

    same = datetime(2030, 1, 1, tzinfo=timezone.utc)
    monkeypatch.setattr(store_mod, "utc_now", lambda: same)

    s = SqliteStore(db_path)
    ids = [s.create(str(i), "x") for i in range(5)]
    assert [p.id for p in s.list()] == ids[::-1]


def test_sqlite_failures_are_logged_not_raised(db_path, monkeypatch, caplog):
    s = SqliteStore(db_path)
    pid = s.create("there", "already")

    def _boom():
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(s, "_connect", _boom)

    with caplog.at_level("ERROR", logger="minblog.store"):
        assert s.create("lost", "post") == INVALID_ID
        assert s.get(pid) is None
        assert s.list() == []
        assert s.delete(pid) is False

    messages = [r.getMessage() for r in caplog.records]
    assert "Error creating post" in messages
    assert "Error listing posts" in messages
    assert f"Error deleting post {pid}" in messages


# ───────────────────────── factory ────────────────────────────────────
def test_open_store_picks_backend(db_path):
    assert isinstance(open_store("memory"), MemoryStore)
    assert isinstance(open_store("SQLite", db_path), SqliteStore)


@pytest.mark.parametrize(
    "backend, database",
    [
        ("redis", None),
        ("", None),
        ("sqlite", None),       # sqlite needs a path
    ],
)
def test_open_store_rejects_bad_config(backend, database):
    with pytest.raises(ValueError):
        open_store(backend, database)
