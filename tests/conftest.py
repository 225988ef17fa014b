"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
from pathlib import Path
from typing import Generator

import pytest
from flask import Flask
from flask.testing import FlaskClient
from pytest import MonkeyPatch

from minblog.blog import create_app
from minblog.store import Store, open_store

ADMIN = ("writer", "password123")
CSRF = "test-token"          # shared constant so the token matches the session


@pytest.fixture(autouse=True, scope="session")
def _fake_clock():
    """
    Patch minblog.store.utc_now for the whole test session so every call
    returns an ever-increasing timestamp.  No need for time.sleep().
    """
    from minblog import store  # import here to avoid early import

    counter = itertools.count()         # 0, 1, 2, …

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)
    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(store, "utc_now", _fake_now)

    yield                               # tests run here

    mp.undo()                           # clean up at session end


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "test.sqlite3"


@pytest.fixture(params=["memory", "sqlite"])
def store(request, db_path: Path) -> Generator[Store, None, None]:
    """Every store test runs once per backend."""
    with open_store(request.param, db_path) as s:
        yield s


@pytest.fixture
def app(db_path: Path) -> Flask:
    """A fresh app on its own SQLite file for every test."""
    return create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret",
            "STORE_BACKEND": "sqlite",
            "DATABASE": str(db_path),
            "ADMIN_USERNAME": ADMIN[0],
            "ADMIN_PASSWORD": ADMIN[1],
            "ADMIN_RATE_LIMIT": 10_000,
        }
    )


@pytest.fixture
def client(app: Flask) -> Generator[FlaskClient, None, None]:
    """
    Yields:
        `flask.testing.FlaskClient`
    """
    with app.test_client() as client:
        with app.app_context():
            yield client
