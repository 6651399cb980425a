import datetime as dt

import pytest

from jotter import journal
from jotter.journal import (
    Post,
    ValidationError,
    app,
    display_date,
    is_image_url,
    post_json,
    post_kind,
    sanitize_text,
)


# ──────────────────────────────────────────────────────────────
# sanitize_text
# ──────────────────────────────────────────────────────────────
@pytest.mark.parametrize("raw, clean", [
    ("hello <script>alert(1)</script>", "hello"),
    ("<b>bold</b> move", "bold move"),
    ("Tom &amp; Jerry", "Tom & Jerry"),
    ("a < b and c > d", "a < b and c > d"),
    ("<!-- hidden -->visible", "visible"),
    ("<p onclick=\"x()\">click</p>", "click"),
    ("<iframe src=\"https://evil\">fallback</iframe>kept", "kept"),
    ("  padded  ", "padded"),
    ("https://example.com/a.png", "https://example.com/a.png"),
])
def test_sanitize_text(raw, clean):
    assert sanitize_text(raw) == clean


def test_sanitize_entity_encoded_script_does_not_survive():
    # decoding entities surfaces a real tag → second pass removes it
    raw = "<b>&lt;script&gt;alert(1)&lt;/script&gt;</b>ok"
    assert sanitize_text(raw) == "ok"


def test_sanitize_never_returns_markup():
    out = sanitize_text("&lt;img src=x onerror=alert(1)&gt;hi")
    assert "<img" not in out
    assert out.endswith("hi")


def test_sanitize_gives_up_on_pathological_nesting(monkeypatch):
    monkeypatch.setattr(journal, "SANITIZE_PASSES", 1)
    with pytest.raises(ValidationError):
        sanitize_text("&lt;b&gt;x&lt;/b&gt;")


def test_sanitize_none():
    assert sanitize_text(None) == ""


# ──────────────────────────────────────────────────────────────
# image / link detection
# ──────────────────────────────────────────────────────────────
@pytest.mark.parametrize("text, kind", [
    ("https://example.com/cat.PNG", "image"),
    ("https://example.com/cat.webp?size=large", "image"),
    ("https://pbs.twimg.com/media/AbC?format=jpg", "image"),
    ("https://example.com/article", "link"),
    ("http://example.com/archive.tar.gz", "link"),
    ("/uploads/20990101000000-abc.jpg", "image"),
    ("/uploads/notes.txt", "text"),
    ("ftp://example.com/cat.png", "text"),
    ("see https://example.com/cat.png", "text"),
    ("just some words", "text"),
    ("http://[oops", "text"),                # urlparse raises on this
    ("https://[::1/cat.png", "text"),
])
def test_post_kind(text, kind):
    assert post_kind(text) == kind


def test_is_image_url_tolerates_broken_brackets():
    assert is_image_url("http://[oops") is False


def test_image_allow_list_is_configurable(monkeypatch):
    url = "https://example.com/picture.heic"
    assert not is_image_url(url)
    monkeypatch.setitem(app.config, "IMAGE_EXTENSIONS", ("heic",))
    assert is_image_url(url)


def test_image_hosts_are_configurable(monkeypatch):
    url = "https://img.example.org/abc"
    assert post_kind(url) == "link"
    monkeypatch.setitem(app.config, "IMAGE_HOSTS", ("example.org",))
    assert post_kind(url) == "image"         # subdomains count


# ──────────────────────────────────────────────────────────────
# dates
# ──────────────────────────────────────────────────────────────
def test_display_date_utc():
    when = dt.datetime(2026, 10, 19, 23, 30, tzinfo=dt.timezone.utc)
    assert display_date(when) == "Oct 19, 2026"


def test_display_date_other_zone(monkeypatch):
    monkeypatch.setitem(app.config, "DISPLAY_TZ", "Asia/Tokyo")
    when = dt.datetime(2026, 10, 19, 23, 30, tzinfo=dt.timezone.utc)
    assert display_date(when) == "Oct 20, 2026"


def test_post_json_shape():
    post = Post(
        text="https://example.com/x.gif",
        created_at=dt.datetime(2026, 1, 2, 3, 4, 5, tzinfo=dt.timezone.utc),
    )
    assert post_json(post) == {
        "text": "https://example.com/x.gif",
        "timestamp": "Jan 2, 2026",
        "isoTimestamp": "2026-01-02T03:04:05+00:00",
        "kind": "image",
    }
