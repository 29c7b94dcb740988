import datetime as _dt
import threading
import time

import pytest

import activitylog.app as web
from activitylog.app import (
    date_tab_label,
    format_relative,
    highlight,
    parse_limit,
    parse_offset,
    short_date,
)

UTC = _dt.timezone.utc
NOW = _dt.datetime(2025, 3, 20, 18, 0, tzinfo=UTC)


# ──────────────────────────────────────────────────────────────
# relative time
# ──────────────────────────────────────────────────────────────
@pytest.mark.parametrize("delta, expected", [
    (_dt.timedelta(seconds=0),            "just now"),
    (_dt.timedelta(seconds=59),           "just now"),
    (_dt.timedelta(seconds=-30),          "just now"),   # clock skew
    (_dt.timedelta(minutes=1),            "1m ago"),
    (_dt.timedelta(minutes=59, seconds=59), "59m ago"),
    (_dt.timedelta(hours=1),              "1h ago"),
    (_dt.timedelta(hours=23, minutes=59), "23h ago"),
    (_dt.timedelta(days=1),               "1d ago"),
    (_dt.timedelta(days=6, hours=23),     "6d ago"),
])
def test_format_relative(delta, expected):
    assert format_relative(NOW - delta, NOW) == expected


def test_format_relative_falls_back_to_local_date():
    # 2025-03-01 06:00 UTC is still Feb 28 in Los Angeles
    ts = _dt.datetime(2025, 3, 1, 6, 0, tzinfo=UTC)
    assert format_relative(ts, NOW) == "Feb 28"


def test_format_relative_uses_clock(clock):
    clock.set(NOW)
    assert format_relative(NOW - _dt.timedelta(minutes=5)) == "5m ago"


def test_short_date_ignores_locale():
    assert short_date(_dt.date(2025, 12, 3)) == "Dec 3"


# ──────────────────────────────────────────────────────────────
# date tabs
# ──────────────────────────────────────────────────────────────
@pytest.mark.parametrize("day, expected", [
    ("2025-03-20", "Today"),
    ("2025-03-19", "Yesterday"),
    ("2025-03-18", "Mar 18"),
    ("2024-12-31", "Dec 31"),
    ("garbage",    "garbage"),
    ("20250320",   "20250320"),
])
def test_date_tab_label(day, expected):
    assert date_tab_label(day, _dt.date(2025, 3, 20)) == expected


def test_date_tab_label_across_month():
    assert date_tab_label("2025-02-28", _dt.date(2025, 3, 1)) == "Yesterday"


# ──────────────────────────────────────────────────────────────
# highlighting
# ──────────────────────────────────────────────────────────────
def test_highlight_marks_every_hit():
    html = str(highlight("Run, run, RUN!", "run"))
    assert html == "<mark>Run</mark>, <mark>run</mark>, <mark>RUN</mark>!"


def test_highlight_escapes_regex_metacharacters():
    html = str(highlight("cost (est.) $5.00 vs 5x00", "$5.00"))
    assert html == "cost (est.) <mark>$5.00</mark> vs 5x00"
    assert str(highlight("a+b", "(")) == "a+b"


def test_highlight_never_splits_entities():
    assert str(highlight("Tom & Jerry", "amp")) == "Tom &amp; Jerry"
    assert str(highlight("Tom & Jerry", "&")) == "Tom <mark>&amp;</mark> Jerry"


def test_highlight_without_term_only_escapes():
    assert str(highlight("<i>hi</i>", "")) == "&lt;i&gt;hi&lt;/i&gt;"
    assert str(highlight("<i>hi</i>", "   ")) == "&lt;i&gt;hi&lt;/i&gt;"
    assert str(highlight(None, "x")) == ""


def test_highlight_folds_case_like_search():
    assert str(highlight("Straße", "strasse")) == "<mark>Straße</mark>"
    assert str(highlight("STRASSE am Straße", "straße")) == (
        "<mark>STRASSE</mark> am <mark>Straße</mark>"
    )


# ──────────────────────────────────────────────────────────────
# query-string coercion
# ──────────────────────────────────────────────────────────────
@pytest.mark.parametrize("raw, expected", [
    (None,    web.LIMIT_DEFAULT),
    ("",      web.LIMIT_DEFAULT),
    ("spam",  web.LIMIT_DEFAULT),
    ("0",     web.LIMIT_DEFAULT),
    ("1",     1),
    ("-3",    1),
    ("200",   200),
    ("10000", web.LIMIT_MAX),
])
def test_parse_limit(raw, expected):
    assert parse_limit(raw) == expected


@pytest.mark.parametrize("raw, expected", [
    (None, 0), ("", 0), ("x", 0), ("-1", 0), ("25", 25),
])
def test_parse_offset(raw, expected):
    assert parse_offset(raw) == expected


def test_tz_name_falls_back(monkeypatch):
    monkeypatch.setitem(web.app.config, "TIMEZONE", "Mars/Olympus_Mons")
    assert web.tz_name() == "America/Los_Angeles"
    monkeypatch.setitem(web.app.config, "TIMEZONE", "Europe/Berlin")
    assert web.tz_name() == "Europe/Berlin"


# ──────────────────────────────────────────────────────────────
# store access
# ──────────────────────────────────────────────────────────────
def test_get_store_builds_one_store_under_threads(monkeypatch):
    monkeypatch.setitem(web.app.config, "STORE_BACKEND", "json")
    monkeypatch.delitem(web.app.extensions, "activity_store")
    built = []
    real_open = web.open_store

    def slow_open(*args, **kwargs):
        time.sleep(0.05)
        store = real_open(*args, **kwargs)
        built.append(store)
        return store

    monkeypatch.setattr(web, "open_store", slow_open)
    gate = threading.Barrier(8)
    seen = []

    def worker():
        gate.wait()
        seen.append(web.get_store())

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(built) == 1
    assert all(s is built[0] for s in seen) and len(seen) == 8
