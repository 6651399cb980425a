#!/usr/bin/env python3
"""
A single-file personal journal with a live feed.

One editor posts, a handful of viewers read, and everyone who has the page
open gets new posts pushed over a WebSocket.
"""

from __future__ import annotations

import json
import mimetypes
import os
import secrets
import tempfile
import threading
import uuid
import warnings
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict
from urllib.parse import urlparse
from zoneinfo import ZoneInfo

import boto3
import click
from botocore.exceptions import BotoCoreError, ClientError
from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning
from bs4.element import PreformattedString
from flask import (
    Flask,
    Response,
    render_template_string,
    request,
    send_from_directory,
    session,
    url_for,
)
from flask_sock import Sock
from simple_websocket import ConnectionClosed
from werkzeug.exceptions import RequestEntityTooLarge
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.utils import secure_filename

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DATA_DIR = Path(os.environ.get("JOTTER_DATA_DIR") or ROOT)
DATA_DIR.mkdir(parents=True, exist_ok=True)

ENV_FILE = DATA_DIR / ".env"
SECRET_FILE = DATA_DIR / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)
KEY_LEN = 24

DOC_VERSION = 1
PAGE_DEFAULT = 10
POST_MAX_CHARS = 2000
SANITIZE_PASSES = 4
# tags whose *content* is dropped along with the tag itself
NOISE_TAGS = ["script", "style", "iframe", "object", "embed", "noscript", "template"]

REMEMBER_FOR = timedelta(days=30)
SESSION_IDLE_TIMEOUT = timedelta(hours=12)
TOUCH_EVERY = timedelta(minutes=5)  # idle-window write granularity
RECONNECT_MS = 3000

UPLOAD_MAX_BYTES = 5 * 1024 * 1024  # 5 MB per image
UPLOAD_FORM_SLACK = 64 * 1024  # multipart boundaries + headers
IMAGE_MIMES = {
    "image/png",
    "image/jpeg",
    "image/webp",
    "image/gif",
    "image/avif",
    "image/bmp",
}
IMAGE_EXTENSIONS = ("jpeg", "jpg", "gif", "png", "webp", "avif", "bmp")
IMAGE_HOSTS = ("pbs.twimg.com",)

R2_ENV_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
    "R2_PUBLIC_BASE",
    "R2_ENDPOINT",
)
R2_REQUIRED_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
)

try:
    __version__ = version("jotter")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# Environment
################################################################################
def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


def _write_env_file(env: dict[str, str]) -> None:
    if env:
        lines = [f"{k}={v}" for k, v in sorted(env.items()) if v]
        ENV_FILE.write_text("\n".join(lines) + "\n")
    elif ENV_FILE.exists():
        ENV_FILE.write_text("")
    try:
        ENV_FILE.chmod(0o600)
    except OSError:
        pass


def merge_env(updates: dict[str, str]) -> dict[str, str]:
    """Merge *updates* into both the process env and the .env file."""
    env = _read_env_file()
    changed = False
    for k, v in updates.items():
        if not v:
            continue
        if env.get(k) != v:
            env[k] = v
            changed = True
        if os.environ.get(k) != v:
            os.environ[k] = v
    if changed:
        _write_env_file(env)
    return env


def env_value(key: str, default: str | None = None) -> str | None:
    """Process env first, then the .env file next to the data."""
    return os.environ.get(key) or _read_env_file().get(key) or default


################################################################################
# App
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=SECRET_KEY,
    EDITOR_KEY=env_value("JOTTER_EDITOR_KEY"),
    VIEWER_KEY=env_value("JOTTER_VIEWER_KEY"),
    POSTS_FILE=env_value("JOTTER_POSTS_FILE", str(DATA_DIR / "posts.json")),
    SESSIONS_FILE=env_value("JOTTER_SESSIONS_FILE", str(DATA_DIR / "sessions.json")),
    UPLOAD_DIR=env_value("JOTTER_UPLOAD_DIR", str(DATA_DIR / "uploads")),
    DISPLAY_TZ=env_value("JOTTER_TZ", "UTC"),
    PAGE_SIZE=PAGE_DEFAULT,
    POST_MAX_CHARS=POST_MAX_CHARS,
    IMAGE_EXTENSIONS=IMAGE_EXTENSIONS,
    IMAGE_HOSTS=IMAGE_HOSTS,
    IMAGE_MIMES=IMAGE_MIMES,
    UPLOAD_MAX_BYTES=UPLOAD_MAX_BYTES,
    MAX_CONTENT_LENGTH=UPLOAD_MAX_BYTES + UPLOAD_FORM_SLACK,
    LOGIN_RATE_LIMIT=(5, 60),
    PERMANENT_SESSION_LIFETIME=REMEMBER_FOR,
    SESSION_IDLE_TIMEOUT=SESSION_IDLE_TIMEOUT,
    SESSION_COOKIE_SAMESITE="Lax",  # blocks most CSRF on simple links
    SESSION_COOKIE_HTTPONLY=True,  # mitigate XSS → cookie theft
    SESSION_COOKIE_SECURE=os.environ.get("JOTTER_INSECURE_COOKIES") != "1",
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)
sock = Sock(app)

# a bare URL is a perfectly good post, not a file name
warnings.filterwarnings("ignore", category=MarkupResemblesLocatorWarning)


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def display_date(dt: datetime) -> str:
    """`Oct 19, 2026` in the configured display zone."""
    name = app.config.get("DISPLAY_TZ") or "UTC"
    local = dt.astimezone(timezone.utc if name == "UTC" else ZoneInfo(name))
    return f"{local:%b} {local.day}, {local.year}"


################################################################################
# Errors
################################################################################
class JournalError(Exception):
    """Base for every error the API reports as ``{"ok": false, ...}``."""

    status = 400
    message = "Request failed."

    def __init__(self, message: str | None = None):
        self.message = message or type(self).message
        super().__init__(self.message)

    @property
    def code(self) -> str:
        return type(self).__name__


class InvalidCredential(JournalError):
    status = 401
    message = "Invalid key."


class Unauthorized(JournalError):
    status = 401
    message = "Please log in."


class Forbidden(JournalError):
    status = 403
    message = "You don't have permission to do that."


class ValidationError(JournalError):
    status = 400
    message = "Invalid input."


class PayloadTooLarge(JournalError):
    status = 413
    message = f"File too large ({UPLOAD_MAX_BYTES // (1024 * 1024)} MB max)."


class BadFile(JournalError):
    status = 400
    message = "Only image uploads are allowed."


class UploadFailed(JournalError):
    status = 502
    message = "Upload failed."


class PersistenceFailure(JournalError):
    status = 500
    message = "Could not save; nothing was published."


################################################################################
# Content helpers
################################################################################
def _is_markup_string(node) -> bool:
    # comments, doctypes, CDATA, processing instructions
    return isinstance(node, PreformattedString)


def _has_markup(text: str) -> bool:
    soup = BeautifulSoup(text, "html.parser")
    return soup.find() is not None or soup.find(string=_is_markup_string) is not None


def sanitize_text(raw: str | None) -> str:
    """
    Reduce *raw* to plain text.

    Tags are dropped (script-like ones together with their content) and
    entities are decoded.  Decoding can surface new tags
    (``&lt;script&gt;``), so the text is re-parsed until nothing that
    parses as markup is left.
    """
    text = raw or ""
    for _ in range(SANITIZE_PASSES):
        soup = BeautifulSoup(text, "html.parser")
        for tag in soup.find_all(NOISE_TAGS):
            tag.decompose()
        for node in soup.find_all(string=_is_markup_string):
            node.extract()
        text = soup.get_text()
        if not _has_markup(text):
            return text.strip()
    raise ValidationError("Post text could not be cleaned.")


def _parse_url(url: str):
    """``urlparse`` or ``None``; bracketed hosts like ``http://[oops`` raise."""
    try:
        return urlparse(url)
    except ValueError:
        return None


def is_image_url(url: str) -> bool:
    parsed = _parse_url(url)
    if parsed is None:
        return False
    host = (parsed.hostname or "").lower()
    hosts = app.config.get("IMAGE_HOSTS") or ()
    if host and any(host == h or host.endswith("." + h) for h in hosts):
        return True
    last = parsed.path.rsplit("/", 1)[-1]
    if "." not in last:
        return False
    ext = last.rsplit(".", 1)[-1].lower()
    return ext in (app.config.get("IMAGE_EXTENSIONS") or ())


def post_kind(text: str) -> str:
    """`image`, `link` or `text` – how the client should show a post."""
    url = (text or "").strip()
    if not url or any(ch.isspace() for ch in url):
        return "text"
    parsed = _parse_url(url)
    if parsed is None:
        return "text"
    if parsed.scheme in {"http", "https"} and parsed.netloc:
        return "image" if is_image_url(url) else "link"
    if url.startswith("/uploads/") and is_image_url(url):
        return "image"
    return "text"


################################################################################
# Posts
################################################################################
@dataclass(frozen=True)
class Post:
    text: str
    created_at: datetime

    @property
    def timestamp(self) -> str:
        return display_date(self.created_at)

    def to_record(self) -> dict:
        return {
            "text": self.text,
            "timestamp": self.timestamp,
            "isoTimestamp": self.created_at.isoformat(),
        }

    @classmethod
    def from_record(cls, rec: dict) -> Post:
        iso = str(rec["isoTimestamp"]).replace("Z", "+00:00")
        created = datetime.fromisoformat(iso)
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return cls(text=str(rec["text"]), created_at=created)


def post_json(post: Post) -> dict:
    return {**post.to_record(), "kind": post_kind(post.text)}


class JsonDocument:
    """A JSON file that is always read whole and replaced atomically."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def read(self):
        """Parsed content, or ``None`` when the file does not exist."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            raise PersistenceFailure(f"Could not read {self.path}.") from exc
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise PersistenceFailure(f"{self.path} is not valid JSON.") from exc

    def write(self, data) -> None:
        tmp = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, ensure_ascii=False, indent=2)
            os.replace(tmp, self.path)
        except (OSError, TypeError, ValueError) as exc:
            if tmp:
                Path(tmp).unlink(missing_ok=True)
            raise PersistenceFailure() from exc


def decode_posts(data) -> list[Post]:
    """
    Accept the versioned document or a bare list (the unversioned layout
    written before ``version`` existed).  Anything else is refused rather
    than read as empty, because the next flush would overwrite it.
    """
    if isinstance(data, list):
        app.logger.warning("posts file has no version; upgrading on next write")
        records = data
    elif isinstance(data, dict):
        ver = data.get("version")
        if not isinstance(ver, int) or ver > DOC_VERSION:
            raise PersistenceFailure(f"Unsupported posts file version: {ver!r}.")
        records = data.get("posts") or []
    else:
        raise PersistenceFailure("Posts file has an unexpected layout.")

    try:
        return [Post.from_record(rec) for rec in records]
    except (KeyError, TypeError, ValueError) as exc:
        raise PersistenceFailure("Posts file holds a malformed post.") from exc


class PostStore:
    """
    Newest-first posts, cached in memory and mirrored to a JSON document.

    The cache is what reads see.  ``append`` is serialised by a lock and
    only returns once the document has been rewritten; if that fails the
    post is taken out of the cache again and the error propagates.
    """

    def __init__(self, document: JsonDocument):
        self._document = document
        self._posts: list[Post] = []
        self._lock = threading.Lock()

    def load(self) -> None:
        data = self._document.read()
        posts = [] if data is None else decode_posts(data)
        with self._lock:
            self._posts = posts
        app.logger.info("loaded %d posts from %s", len(posts), self._document.path)

    def flush(self) -> None:
        self._document.write(
            {"version": DOC_VERSION, "posts": [p.to_record() for p in self._posts]}
        )

    def append(
        self,
        text: str | None,
        *,
        max_chars: int | None = None,
        on_commit=None,
    ) -> Post:
        """
        Sanitize, stamp and persist one post.  ``on_commit(post)`` runs after
        the flush and before the lock is released, so its side effects
        happen in append order.
        """
        clean = sanitize_text(text)
        if not clean:
            raise ValidationError("Post text is empty.")
        if max_chars and len(clean) > max_chars:
            raise ValidationError(f"Post text is longer than {max_chars} characters.")

        with self._lock:
            now = utc_now()
            if self._posts and self._posts[0].created_at > now:
                now = self._posts[0].created_at  # clock stepped back
            post = Post(text=clean, created_at=now)
            self._posts.insert(0, post)
            try:
                self.flush()
            except PersistenceFailure:
                del self._posts[0]
                app.logger.exception(
                    "flush to %s failed; post dropped", self._document.path
                )
                raise
            if on_commit is not None:
                on_commit(post)
        return post

    def list(self) -> list[Post]:
        return self._posts.copy()


################################################################################
# Pagination
################################################################################
@dataclass(frozen=True)
class PageWindow:
    items: list
    page: int
    has_older: bool
    has_newer: bool
    total_pages: int


def paginate(all_posts, requested_page: int, page_size: int = PAGE_DEFAULT) -> PageWindow:
    total = len(all_posts)
    pages = (total + page_size - 1) // page_size
    page = min(max(requested_page, 1), max(pages, 1))
    start = (page - 1) * page_size
    end = start + page_size
    return PageWindow(
        items=list(all_posts[start:end]),
        page=page,
        has_older=end < total,  # newest first: older = further down
        has_newer=page > 1,
        total_pages=pages,
    )


def parse_page(raw) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return 1


################################################################################
# Authentication
################################################################################
class Role(str, Enum):
    NONE = "none"
    VIEWER = "viewer"
    EDITOR = "editor"


def _matches(given: bytes, secret: str | None) -> bool:
    return bool(given and secret) and secrets.compare_digest(given, secret.encode())


def classify(credential: str | None) -> Role:
    given = (credential or "").encode()
    if _matches(given, app.config.get("EDITOR_KEY")):
        return Role.EDITOR
    if _matches(given, app.config.get("VIEWER_KEY")):
        return Role.VIEWER
    return Role.NONE


@dataclass(frozen=True)
class Session:
    sid: str | None = None
    role: Role = Role.NONE
    remember: bool = False

    @property
    def logged_in(self) -> bool:
        return self.role is not Role.NONE


ANONYMOUS = Session()


def require_session(sess: Session) -> Session:
    if not sess.logged_in:
        raise Unauthorized()
    return sess


def require_editor(sess: Session) -> Session:
    require_session(sess)
    if sess.role is not Role.EDITOR:
        raise Forbidden()
    return sess


class SessionRegistry:
    """
    Server-side session records, so that logging out revokes the cookie
    instead of merely forgetting it client-side.

    Remembered sessions live for ``remember_for``.  The rest expire after
    ``idle_timeout`` without a request; ``touch`` slides that window and
    writes it through once it has moved by ``TOUCH_EVERY`` or more.
    """

    def __init__(
        self,
        document: JsonDocument,
        *,
        remember_for: timedelta = REMEMBER_FOR,
        idle_timeout: timedelta = SESSION_IDLE_TIMEOUT,
    ):
        self._document = document
        self._records: dict[str, dict] = {}
        self._lock = threading.Lock()
        self.remember_for = remember_for
        self.idle_timeout = idle_timeout

    def load(self) -> None:
        try:
            data = self._document.read() or {}
            records = data.get("sessions") or {}
            if not isinstance(records, dict):
                raise TypeError("sessions must be an object")
            now = utc_now()
            live = {
                sid: rec
                for sid, rec in records.items()
                if datetime.fromisoformat(rec["expires"]) > now
            }
        except (PersistenceFailure, AttributeError, KeyError, TypeError, ValueError):
            app.logger.warning(
                "unreadable sessions file %s; everyone logs in again",
                self._document.path,
            )
            live = {}
        with self._lock:
            self._records = live

    def _flush(self) -> None:
        try:
            self._document.write({"version": DOC_VERSION, "sessions": self._records})
        except PersistenceFailure as exc:
            raise PersistenceFailure("Could not save the session; try again.") from exc

    def _prune(self, now: datetime) -> None:
        for sid in [
            s
            for s, rec in self._records.items()
            if datetime.fromisoformat(rec["expires"]) <= now
        ]:
            del self._records[sid]

    def create(self, role: Role, *, remember: bool) -> Session:
        sid = secrets.token_urlsafe(32)
        now = utc_now()
        ttl = self.remember_for if remember else self.idle_timeout
        rec = {
            "role": role.value,
            "remember": remember,
            "expires": (now + ttl).isoformat(),
        }
        with self._lock:
            self._prune(now)
            self._records[sid] = rec
            try:
                self._flush()
            except PersistenceFailure:
                del self._records[sid]
                app.logger.exception("could not persist new session")
                raise
        return Session(sid=sid, role=role, remember=remember)

    def get(self, sid: str | None) -> Session:
        rec = self._records.get(sid) if sid else None
        if rec is None or datetime.fromisoformat(rec["expires"]) <= utc_now():
            return ANONYMOUS
        return Session(sid=sid, role=Role(rec["role"]), remember=rec["remember"])

    def touch(self, sid: str) -> None:
        now = utc_now()
        with self._lock:
            rec = self._records.get(sid)
            if rec is None or rec["remember"]:
                return
            old = rec["expires"]
            expires = datetime.fromisoformat(old)
            if expires <= now or now + self.idle_timeout - expires < TOUCH_EVERY:
                return
            rec["expires"] = (now + self.idle_timeout).isoformat()
            try:
                self._flush()
            except PersistenceFailure:
                rec["expires"] = old
                app.logger.warning("could not extend session; keeping old expiry")

    def destroy(self, sid: str | None) -> None:
        if not sid:
            return
        with self._lock:
            rec = self._records.pop(sid, None)
            if rec is None:
                return
            try:
                self._flush()
            except PersistenceFailure:
                self._records[sid] = rec
                app.logger.exception("could not persist logout")
                raise


def rate_limit(max_requests: int | None = None, window: int | None = None):
    """Per-IP sliding window; falls back to ``LOGIN_RATE_LIMIT``."""
    hits: DefaultDict[str, deque] = defaultdict(deque)
    lock = threading.Lock()

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            limit, span = app.config["LOGIN_RATE_LIMIT"]
            limit = max_requests or limit
            span = window or span
            now = time()
            ip = client_ip()

            with lock:
                # forget IPs whose newest hit is outside the window
                stale = [k for k, q in hits.items() if not q or now - q[-1] > span]
                for k in stale:
                    del hits[k]

                dq = hits[ip]
                while dq and now - dq[0] > span:
                    dq.popleft()

                if len(dq) >= limit:
                    retry_after = int(span - (now - dq[0]))
                    return Response(
                        "Too many requests – try again later.",
                        status=429,
                        headers={"Retry-After": str(retry_after)},
                    )

                dq.append(now)
            return view(*args, **kwargs)

        wrapped.hits = hits
        return wrapped

    return decorator



def client_ip() -> str:
    """Return best-effort client IP after ProxyFix."""
    return (
        request.access_route[0] if request.access_route else request.remote_addr
    ) or "unknown"


################################################################################
# Live updates
################################################################################
class Broadcaster:
    """
    Registry of connected live clients.

    ``publish`` is fire-and-forget: every subscriber gets a message at most
    once, closed sockets are skipped, and a failed send only drops that
    subscriber.  Nothing is queued for clients that connect later.

    Fan-out is serialised: a socket never sees two frames written at once,
    and every subscriber sees messages in the same order.
    """

    def __init__(self):
        self._subscribers: set = set()
        self._lock = threading.Lock()
        self._publish_lock = threading.Lock()

    def subscribe(self, ws) -> int:
        with self._lock:
            self._subscribers.add(ws)
            return len(self._subscribers)

    def unsubscribe(self, ws) -> int:
        with self._lock:
            self._subscribers.discard(ws)
            return len(self._subscribers)

    def count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def send(self, ws, payload: str) -> bool:
        """Push one frame to one client; ``False`` if skipped or dropped."""
        if not getattr(ws, "connected", True):
            return False
        try:
            ws.send(payload)
        except Exception as exc:  # one bad socket must not fail the write
            app.logger.warning("dropping live client after failed send: %s", exc)
            self.unsubscribe(ws)
            return False
        return True

    def publish(self, message: dict) -> int:
        payload = json.dumps(message, ensure_ascii=False)
        with self._publish_lock:
            with self._lock:
                targets = list(self._subscribers)

            app.logger.info(
                "broadcasting %s to %d clients", message.get("type"), len(targets)
            )
            return sum(self.send(ws, payload) for ws in targets)


################################################################################
# Process state
################################################################################
_state_lock = threading.Lock()


def init_state() -> dict:
    """(Re)build the store, the session registry and the broadcaster."""
    store = PostStore(JsonDocument(app.config["POSTS_FILE"]))
    store.load()
    sessions = SessionRegistry(
        JsonDocument(app.config["SESSIONS_FILE"]),
        remember_for=app.config["PERMANENT_SESSION_LIFETIME"],
        idle_timeout=app.config["SESSION_IDLE_TIMEOUT"],
    )
    sessions.load()
    state = {"posts": store, "sessions": sessions, "live": Broadcaster()}
    app.extensions["jotter"] = state
    return state


def _state() -> dict:
    state = app.extensions.get("jotter")
    if state is None:
        with _state_lock:
            state = app.extensions.get("jotter") or init_state()
    return state


def get_store() -> PostStore:
    return _state()["posts"]


def get_sessions() -> SessionRegistry:
    return _state()["sessions"]


def get_broadcaster() -> Broadcaster:
    return _state()["live"]


################################################################################
# Session lifecycle
################################################################################
def current_session() -> Session:
    return get_sessions().get(session.get("sid"))


def current_role() -> Role:
    return current_session().role


def login(credential: str | None, *, remember: bool) -> Session:
    role = classify(credential)
    if role is Role.NONE:
        raise InvalidCredential()

    registry = get_sessions()
    registry.destroy(session.get("sid"))  # a fresh login never upgrades
    sess = registry.create(role, remember=remember)

    session.clear()
    session.permanent = remember
    session["sid"] = sess.sid
    session["csrf"] = secrets.token_hex(16)
    return sess


def logout() -> None:
    # revoke first; a failed write leaves both the cookie and the record
    get_sessions().destroy(session.get("sid"))
    session.clear()


################################################################################
# Uploads
################################################################################
def r2_config() -> dict[str, str]:
    env_file = _read_env_file()
    cfg = {k: (os.environ.get(k) or env_file.get(k) or "").strip() for k in R2_ENV_KEYS}
    return {k: v for k, v in cfg.items() if v}


def r2_is_configured(cfg: dict[str, str] | None = None) -> bool:
    cfg = cfg or r2_config()
    return all(cfg.get(k) for k in R2_REQUIRED_KEYS)


def _r2_client(cfg: dict[str, str]):
    endpoint = (
        cfg.get("R2_ENDPOINT")
        or f"https://{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com"
    )
    return boto3.client(
        "s3",
        endpoint_url=endpoint,
        region_name="auto",
        aws_access_key_id=cfg["R2_ACCESS_KEY_ID"],
        aws_secret_access_key=cfg["R2_SECRET_ACCESS_KEY"],
    )


def r2_object_url(cfg: dict[str, str], key: str) -> str:
    base = cfg.get("R2_PUBLIC_BASE")
    if base:
        base = base.rstrip("/")
        return f"{base}/{key.lstrip('/')}"
    return f"https://{cfg['R2_BUCKET']}.{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com/{key.lstrip('/')}"


def _upload_size(f) -> int:
    f.stream.seek(0, os.SEEK_END)
    size = f.stream.tell()
    f.stream.seek(0)
    return size


def save_upload(f) -> str:
    """Validate and store one uploaded image, return its public URL."""
    if f is None or not f.filename:
        raise BadFile("No file received.")

    mime = (f.mimetype or "").lower()
    if mime not in app.config["IMAGE_MIMES"]:
        raise BadFile()
    if _upload_size(f) > app.config["UPLOAD_MAX_BYTES"]:
        raise PayloadTooLarge()

    ext = Path(secure_filename(f.filename)).suffix.lower()
    if not ext:
        ext = mimetypes.guess_extension(mime) or ""
    name = f"{utc_now():%Y%m%d%H%M%S}-{uuid.uuid4().hex}{ext}"

    cfg = r2_config()
    if r2_is_configured(cfg):
        key = f"uploads/{name}"
        try:
            _r2_client(cfg).upload_fileobj(
                f.stream,
                cfg["R2_BUCKET"],
                key,
                ExtraArgs={"ContentType": mime},
            )
        except (BotoCoreError, ClientError) as exc:
            app.logger.exception("R2 upload failed")
            raise UploadFailed("Upload failed – check R2 credentials.") from exc
        return r2_object_url(cfg, key)

    upload_dir = Path(app.config["UPLOAD_DIR"])
    try:
        upload_dir.mkdir(parents=True, exist_ok=True)
        f.save(upload_dir / name)
    except OSError as exc:
        app.logger.exception("writing upload to %s failed", upload_dir)
        raise UploadFailed() from exc
    return url_for("uploaded_file", name=name)


################################################################################
# Request hooks
################################################################################
SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


@app.before_request
def keep_session_alive():
    sid = session.get("sid")
    if sid:
        get_sessions().touch(sid)


@app.before_request
def csrf_protect():
    # ➊ read-only verbs ⇒ always allowed
    if request.method in SAFE_METHODS or request.endpoint == "api_login":
        return

    # ➋ no session yet ⇒ nothing to forge
    if not session.get("sid"):
        return

    # ➌ header first so a huge multipart body is not parsed just for this
    token = session.get("csrf", "")
    sent = request.headers.get("X-CSRFToken") or request.form.get("csrf", "")
    if not token or not secrets.compare_digest(token, sent):
        raise Forbidden("Missing or invalid CSRF token.")


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            "Permissions-Policy": "interest-cohort=()",
        }
    )
    return resp


################################################################################
# API
################################################################################
def _payload() -> dict:
    if request.is_json:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}
    return request.form.to_dict()


def _truthy(val) -> bool:
    if isinstance(val, bool):
        return val
    return str(val or "").strip().lower() in {"1", "true", "on", "yes"}


@app.route("/api/login", methods=["POST"])
@rate_limit()
def api_login():
    data = _payload()
    credential = data.get("key") or data.get("apiKey") or ""
    remember = _truthy(data.get("remember", data.get("rememberMe")))
    try:
        sess = login(str(credential), remember=remember)
    except InvalidCredential:
        app.logger.warning("failed login from %s", client_ip())
        raise

    app.logger.info("%s logged in (remember=%s)", sess.role.value, remember)
    return {"ok": True, "role": sess.role.value, "csrf": session["csrf"]}


@app.route("/api/logout", methods=["POST"])
def api_logout():
    sess = require_session(current_session())
    logout()
    app.logger.info("%s logged out", sess.role.value)
    return {"ok": True}


@app.route("/api/session")
def api_session():
    sess = current_session()
    return {
        "loggedIn": sess.logged_in,
        "role": sess.role.value if sess.logged_in else None,
        "csrf": session.get("csrf") if sess.logged_in else None,
    }


@app.route("/api/posts", methods=["GET"])
def api_posts():
    sess = require_session(current_session())
    window = paginate(
        get_store().list(),
        parse_page(request.args.get("page")),
        app.config["PAGE_SIZE"],
    )
    return {
        "items": [post_json(p) for p in window.items],
        "page": window.page,
        "hasOlder": window.has_older,
        "hasNewer": window.has_newer,
        "isEdit": sess.role is Role.EDITOR,
        "role": sess.role.value,
    }


@app.route("/api/posts", methods=["POST"])
def api_create_post():
    require_editor(current_session())
    text = _payload().get("text")
    if not isinstance(text, str):
        raise ValidationError("Post text is required.")

    def announce(post: Post) -> None:
        get_broadcaster().publish({"type": "post", "post": post_json(post)})

    post = get_store().append(
        text, max_chars=app.config["POST_MAX_CHARS"], on_commit=announce
    )
    app.logger.info("new post at %s", post.created_at.isoformat())
    body = post_json(post)
    return {"ok": True, "post": body}, 201


@app.route("/api/upload", methods=["POST"])
def api_upload():
    require_editor(current_session())
    url = save_upload(request.files.get("image"))
    return {"ok": True, "url": url}, 201


@app.route("/uploads/<path:name>")
def uploaded_file(name):
    return send_from_directory(app.config["UPLOAD_DIR"], name)


def live(ws):
    """One live client: auth check, then park on receive until it goes away."""
    if not current_session().logged_in:
        ws.close(reason=1008, message="Please log in.")
        return

    hub = get_broadcaster()
    app.logger.info("live client connected (%d live)", hub.subscribe(ws))
    try:
        while True:
            ws.receive()  # nothing is expected from clients; blocks until close
    except ConnectionClosed:
        pass
    finally:
        app.logger.info("live client disconnected (%d live)", hub.unsubscribe(ws))


# registered by hand: the Sock.route decorator returns None
sock.route("/ws")(live)


################################################################################
# Errors → JSON
################################################################################
@app.errorhandler(JournalError)
def journal_error(exc: JournalError):
    return {"ok": False, "error": exc.code, "message": exc.message}, exc.status


@app.errorhandler(RequestEntityTooLarge)
def too_large(exc):
    return journal_error(PayloadTooLarge())


@app.errorhandler(404)
def not_found(exc):
    return {"ok": False, "error": "NotFound", "message": "Not found."}, 404


@app.errorhandler(500)
def internal_error(exc):
    """
    Generic 500 for production.  With debug on, Flask bypasses this and
    the Werkzeug debugger shows the traceback instead.
    """
    return {
        "ok": False,
        "error": "InternalError",
        "message": "Something went wrong on our side.",
    }, 500


################################################################################
# Index page
################################################################################
@app.route("/")
def index():
    return render_template_string(
        TEMPL_INDEX,
        title="jotter",
        reconnect_ms=RECONNECT_MS,
        version=__version__,
    )


TEMPL_INDEX = """<!doctype html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width,initial-scale=1">
<title>{{ title }}</title>
<style>
  body{font-family:system-ui,sans-serif;max-width:40rem;margin:2rem auto;padding:0 1rem;}
  article{border-bottom:1px solid #ddd;padding:.8rem 0;}
  article img{max-width:100%;}
  time{display:block;color:#888;font-size:.8em;margin-top:.3rem;}
  nav{display:flex;justify-content:space-between;margin-top:1rem;}
  form{display:flex;gap:.5rem;margin-bottom:1rem;}
  input[type=text],input[type=password]{flex:1;}
</style>
</head>
<body>
<main id="app"></main>
<footer><small>jotter {{ version }}</small></footer>
<script>
const RECONNECT_MS = {{ reconnect_ms }};
const app = document.getElementById("app");
let page = parseInt(new URLSearchParams(location.search).get("page") || "1", 10);
let csrf = null;

const el = (tag, props = {}, ...kids) => {
  const node = Object.assign(document.createElement(tag), props);
  kids.forEach(k => node.append(k));
  return node;
};
const post = (url, body, isForm = false) => fetch(url, {
  method: "POST",
  headers: Object.assign({"X-CSRFToken": csrf || ""},
                         isForm ? {} : {"Content-Type": "application/json"}),
  body: isForm ? body : JSON.stringify(body),
});

function renderPost(p) {
  let content;
  if (p.kind === "image") {
    content = el("a", {href: p.text, target: "_blank"},
                 el("img", {src: p.text, loading: "lazy", alt: ""}));
  } else if (p.kind === "link") {
    content = el("a", {href: p.text, target: "_blank", textContent: p.text});
  } else {
    content = el("div", {textContent: p.text});
  }
  return el("article", {}, content,
            el("time", {dateTime: p.isoTimestamp, textContent: p.timestamp}));
}

function renderLogin() {
  const key = el("input", {type: "password", placeholder: "If you have a key, enter it here.", required: true});
  const remember = el("input", {type: "checkbox", checked: true});
  const form = el("form", {}, key, el("label", {}, remember, " keep space open"),
                  el("button", {type: "submit", textContent: "Open"}));
  form.onsubmit = async e => {
    e.preventDefault();
    const res = await fetch("/api/login", {
      method: "POST", headers: {"Content-Type": "application/json"},
      body: JSON.stringify({key: key.value, remember: remember.checked}),
    });
    if (res.ok) location.reload(); else alert("Invalid key");
  };
  app.replaceChildren(el("h1", {textContent: "Space closed"}), form);
}

function renderComposer() {
  const input = el("input", {type: "text", placeholder: "What's on your mind?", required: true});
  const form = el("form", {id: "composer"}, input, el("button", {type: "submit", textContent: "Share"}));
  form.onsubmit = async e => {
    e.preventDefault();
    const res = await post("/api/posts", {text: input.value});
    if (res.ok) input.value = "";
    else input.placeholder = (await res.json()).message;
  };
  input.onpaste = async e => {
    const item = [...e.clipboardData.items].find(i => i.type.startsWith("image"));
    if (!item) return;
    e.preventDefault();
    const data = new FormData();
    data.append("image", item.getAsFile());
    const res = await post("/api/upload", data, true);
    const body = await res.json();
    if (res.ok) input.value = new URL(body.url, location.origin).href;
    else input.placeholder = body.message;
  };
  return form;
}

async function loadPage(n) {
  const res = await fetch(`/api/posts?page=${n}`);
  if (res.status === 401) return renderLogin();
  const data = await res.json();
  page = data.page;
  const feed = el("section", {id: "feed"}, ...data.items.map(renderPost));
  const nav = el("nav");
  if (data.hasNewer) nav.append(el("button", {textContent: "Newer", onclick: () => go(page - 1)}));
  nav.append(el("span"));
  if (data.hasOlder) nav.append(el("button", {textContent: "Older", onclick: () => go(page + 1)}));
  const logoutBtn = el("button", {textContent: "Log out", onclick: async () => {
    await post("/api/logout", {});
    location.reload();
  }});
  app.replaceChildren(...(data.isEdit ? [renderComposer()] : []), feed, nav, logoutBtn);
}

function go(n) {
  history.pushState({page: n}, "", `/?page=${n}`);
  loadPage(n);
}

function connect(isReconnect = false) {
  const ws = new WebSocket(`${location.protocol === "https:" ? "wss" : "ws"}://${location.host}/ws`);
  ws.onopen = () => { if (isReconnect && page === 1) loadPage(1); };
  ws.onmessage = e => {
    const msg = JSON.parse(e.data);
    const feed = document.getElementById("feed");
    if (msg.type === "post" && page === 1 && feed) feed.prepend(renderPost(msg.post));
  };
  ws.onclose = () => setTimeout(() => connect(true), RECONNECT_MS);
}

(async () => {
  const sess = await (await fetch("/api/session")).json();
  if (!sess.loggedIn) return renderLogin();
  csrf = sess.csrf;
  await loadPage(page);
  connect();
})();
window.onpopstate = e => loadPage((e.state && e.state.page) || 1);
</script>
</body>
</html>
"""


################################################################################
# CLI
################################################################################
@app.cli.command("keygen")
@click.option("--force", is_flag=True, help="Replace keys that are already set.")
def cli_keygen(force: bool):
    """Generate the editor and viewer keys and store them in .env."""
    if not force and (app.config.get("EDITOR_KEY") or app.config.get("VIEWER_KEY")):
        click.secho("Keys are already configured; pass --force to replace them.", fg="yellow")
        return

    editor = secrets.token_urlsafe(KEY_LEN)
    viewer = secrets.token_urlsafe(KEY_LEN)
    merge_env({"JOTTER_EDITOR_KEY": editor, "JOTTER_VIEWER_KEY": viewer})
    app.config.update(EDITOR_KEY=editor, VIEWER_KEY=viewer)

    click.secho("\n✅  Keys generated.", fg="green")
    click.echo(f"\nEditor key (read + write):\n\n{editor}\n")
    click.echo(f"Viewer key (read only):\n\n{viewer}\n")


@app.cli.command("post")
@click.argument("text")
def cli_post(text: str):
    """Append a post from the shell (not pushed to live clients)."""
    try:
        post = get_store().append(text, max_chars=app.config["POST_MAX_CHARS"])
    except JournalError as exc:
        raise click.ClickException(exc.message) from exc
    click.echo(f"Posted ({post.timestamp}): {post.text}")
