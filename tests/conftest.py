"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient

from activitylog import store as store_mod
from activitylog.app import TOKEN_COOKIE, app, init_store

TOKEN = "test-secret-token"

# 2025-01-15 12:00 in Los Angeles (PST, UTC-8)
BASE = _dt.datetime(2025, 1, 15, 20, 0, tzinfo=_dt.timezone.utc)


class FakeClock:
    """Stand-in for store.utc_now(); only moves when told to."""

    def __init__(self, start: _dt.datetime) -> None:
        self.now = start

    def __call__(self) -> _dt.datetime:
        return self.now

    def set(self, when: _dt.datetime) -> None:
        self.now = when

    def advance(self, **delta) -> None:
        self.now += _dt.timedelta(**delta)


@pytest.fixture(autouse=True)
def clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    fake = FakeClock(BASE)
    monkeypatch.setattr(store_mod, "utc_now", fake)
    return fake


@pytest.fixture(params=["json", "sqlite"])
def backend(request) -> str:
    return request.param


@pytest.fixture(autouse=True)
def _configure_app(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, request):
    """
    Point the app at a brand-new store for every test.  Tests that do not
    ask for ``backend`` run against SQLite.
    """
    backend = (
        request.getfixturevalue("backend")
        if "backend" in request.fixturenames
        else "sqlite"
    )
    for key, value in {
        "TESTING": True,
        "APP_TOKEN": TOKEN,
        "STORE_BACKEND": backend,
        "DB_PATH": str(tmp_path / "activity.db"),
        "DATA_FILE": str(tmp_path / "activities.json"),
        "DATABASE_URL": None,
        "TIMEZONE": "America/Los_Angeles",
        "SITE_NAME": "Dexo Activity",
    }.items():
        monkeypatch.setitem(app.config, key, value)
    monkeypatch.delitem(app.extensions, "activity_store", raising=False)
    init_store()
    yield
    app.extensions.pop("activity_store", None)


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """Anonymous test client."""
    with app.test_client() as c:
        yield c


@pytest.fixture
def auth_client() -> Generator[FlaskClient, None, None]:
    """Test client that already carries the auth cookie."""
    with app.test_client() as c:
        c.set_cookie(TOKEN_COOKIE, TOKEN)
        yield c
