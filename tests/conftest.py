"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
import os
import tempfile
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

# keep .secret_key / .env out of the source tree, and never talk to R2
os.environ.setdefault("JOTTER_DATA_DIR", tempfile.mkdtemp(prefix="jotter-test-"))
for _k in ("R2_ACCOUNT_ID", "R2_ACCESS_KEY_ID", "R2_SECRET_ACCESS_KEY", "R2_BUCKET"):
    os.environ.pop(_k, None)

# The single-file app lives here:
from jotter import journal  # noqa: E402
from jotter.journal import app, init_state  # noqa: E402

EDITOR_KEY = "editor-key-for-tests"
VIEWER_KEY = "viewer-key-for-tests"


@pytest.fixture(autouse=True)
def _configure_app(tmp_path: Path) -> None:
    """
    Point every file at a per-test temp dir and rebuild the in-process
    state, so each test starts with an empty journal and no sessions.
    """
    app.config.update(
        TESTING=True,
        EDITOR_KEY=EDITOR_KEY,
        VIEWER_KEY=VIEWER_KEY,
        POSTS_FILE=str(tmp_path / "posts.json"),
        SESSIONS_FILE=str(tmp_path / "sessions.json"),
        UPLOAD_DIR=str(tmp_path / "uploads"),
        SESSION_COOKIE_SECURE=False,
    )
    init_state()


_ip_counter = itertools.count(1)


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    A test client with its own REMOTE_ADDR, so the login rate limit
    (keyed by IP) never bleeds between tests.
    """
    n = next(_ip_counter)
    with app.test_client() as c:
        c.environ_base["REMOTE_ADDR"] = f"10.0.{n // 250}.{n % 250 + 1}"
        yield c


def login(client: FlaskClient, key: str, *, remember: bool = False):
    """POST /api/login; on success send the CSRF token on every later request."""
    rv = client.post("/api/login", json={"key": key, "remember": remember})
    if rv.status_code == 200:
        client.environ_base["HTTP_X_CSRFTOKEN"] = rv.get_json()["csrf"]
    return rv


@pytest.fixture
def editor(client: FlaskClient) -> FlaskClient:
    assert login(client, EDITOR_KEY).status_code == 200
    return client


@pytest.fixture
def viewer(client: FlaskClient) -> FlaskClient:
    assert login(client, VIEWER_KEY).status_code == 200
    return client


class FakeSocket:
    """Stands in for a connected WebSocket on the broadcaster."""

    def __init__(self, *, connected: bool = True):
        self.connected = connected
        self.sent: list[str] = []

    def send(self, data: str) -> None:
        self.sent.append(data)


class BrokenSocket(FakeSocket):
    def send(self, data: str) -> None:
        raise ConnectionResetError("peer went away")


@pytest.fixture(autouse=True, scope="session")
def _fast_clock():
    """
    Patch jotter.journal.utc_now for the whole test session so every call
    returns an ever-increasing timestamp.  No need for time.sleep().
    """
    counter = itertools.count()         # 0, 1, 2, …

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)
    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(journal, "utc_now", _fake_now)

    yield                               # tests run here

    mp.undo()                           # clean up at session end
