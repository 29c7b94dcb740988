#!/usr/bin/env python3
"""
A single-token personal activity log.
"""

import logging
import os
import secrets
import sys
import threading
from datetime import date, datetime, timedelta
from functools import wraps
from pathlib import Path
from zoneinfo import ZoneInfo, available_timezones

import click
from flask import (
    Flask,
    Response,
    jsonify,
    redirect,
    render_template_string,
    request,
    send_from_directory,
    url_for,
)
from markupsafe import Markup, escape
from werkzeug.middleware.proxy_fix import ProxyFix

from activitylog import store as _store
from activitylog.store import (
    DEFAULT_TZ,
    ActivityFilter,
    ActivityStore,
    StoreError,
    open_store,
    parse_day,
    pick_backend,
)

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
PUBLIC_DIR = ROOT / "public"

TOKEN_COOKIE = "app_token"
TOKEN_LEN = 32
COOKIE_MAX_AGE = 365 * 24 * 60 * 60  # one year

LIMIT_DEFAULT = 50
LIMIT_MAX = 200
PAGE_LIMIT = 100  # HTML timeline, no paging controls

SITE_NAME_DFLT = "Dexo Activity"
MONTHS = (
    "Jan",
    "Feb",
    "Mar",
    "Apr",
    "May",
    "Jun",
    "Jul",
    "Aug",
    "Sep",
    "Oct",
    "Nov",
    "Dec",
)

################################################################################
# App + configuration
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    APP_TOKEN=os.environ.get("APP_TOKEN", ""),
    PORT=int(os.environ.get("PORT", "3000")),
    STORE_BACKEND=pick_backend(
        os.environ.get("STORE_BACKEND"),
        data_file=os.environ.get("DATA_FILE"),
        database_url=os.environ.get("DATABASE_URL"),
    ),
    DB_PATH=os.environ.get("DB_PATH", "activity.db"),
    DATA_FILE=os.environ.get("DATA_FILE", "activities.json"),
    DATABASE_URL=os.environ.get("DATABASE_URL"),
    TIMEZONE=os.environ.get("TIMEZONE", DEFAULT_TZ),
    SITE_NAME=os.environ.get("SITE_NAME", SITE_NAME_DFLT),
    PUBLIC_DIR=os.environ.get("PUBLIC_DIR", str(PUBLIC_DIR)),
    AVATAR=os.environ.get("AVATAR", "avatar.svg"),
    COOKIE_SECURE=os.environ.get("COOKIE_SECURE", "0") == "1",
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


def tz_name() -> str:
    tz = app.config.get("TIMEZONE") or DEFAULT_TZ
    return tz if tz in available_timezones() else DEFAULT_TZ


def site_name() -> str:
    return app.config.get("SITE_NAME") or SITE_NAME_DFLT


###############################################################################
# Store access
###############################################################################
def init_store() -> ActivityStore:
    """Build the configured backend, create its schema and remember it."""
    cfg = app.config
    store = open_store(
        cfg["STORE_BACKEND"],
        db_path=cfg["DB_PATH"],
        data_file=cfg["DATA_FILE"],
        database_url=cfg["DATABASE_URL"],
        tz=tz_name(),
    )
    store.init()
    app.extensions["activity_store"] = store
    return store


_store_lock = threading.Lock()


def get_store() -> ActivityStore:
    store = app.extensions.get("activity_store")
    if store is None:
        with _store_lock:
            store = app.extensions.get("activity_store") or init_store()
    return store


# -------------------------------------------------------------------------
# Formatting helpers (pure)
# -------------------------------------------------------------------------
def short_date(d: date) -> str:
    """``date(2025, 1, 5)`` → ``'Jan 5'``, independent of the process locale."""
    return f"{MONTHS[d.month - 1]} {d.day}"


def format_relative(ts: datetime, now: datetime | None = None) -> str:
    now = now or _store.utc_now()
    minutes = int((now - ts).total_seconds() // 60)
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    days = hours // 24
    if days < 7:
        return f"{days}d ago"
    return short_date(ts.astimezone(ZoneInfo(tz_name())).date())


def date_tab_label(day: str, today: date) -> str:
    d = parse_day(day)
    if d is None:
        return day
    if d == today:
        return "Today"
    if d == today - timedelta(days=1):
        return "Yesterday"
    return short_date(d)


def highlight(text: str | None, term: str | None) -> Markup:
    """
    Escape *text* and wrap every case-insensitive hit of *term* in <mark>.
    Matching runs on the raw text so an entity like ``&amp;`` is never split,
    and folds case the same way the stores do (``strasse`` hits ``Straße``).
    """
    if not text:
        return Markup("")
    term = (term or "").strip()
    if not term:
        return escape(text)
    folded, origin = _fold_map(text)
    needle = term.casefold()
    out, pos = [], 0
    at = folded.find(needle)
    while at != -1:
        start, end = origin[at], origin[at + len(needle) - 1] + 1
        if start >= pos:
            out.append(escape(text[pos:start]))
            out.append(Markup("<mark>%s</mark>") % text[start:end])
            pos = end
        at = folded.find(needle, at + len(needle))
    out.append(escape(text[pos:]))
    return Markup("").join(out)


def _fold_map(text: str) -> tuple[str, list[int]]:
    """Casefolded *text* plus, per folded char, the index it came from."""
    folded, origin = [], []
    for i, ch in enumerate(text):
        f = ch.casefold()
        folded.append(f)
        origin.extend([i] * len(f))
    return "".join(folded), origin


def local_today() -> date:
    return _store.utc_now().astimezone(ZoneInfo(tz_name())).date()


def parse_limit(raw: str | None) -> int:
    """Missing, junk or 0 → default; anything else clamped to [1, LIMIT_MAX]."""
    try:
        n = int(raw)
    except (TypeError, ValueError):
        return LIMIT_DEFAULT
    if n == 0:
        return LIMIT_DEFAULT
    return max(1, min(n, LIMIT_MAX))


def parse_offset(raw: str | None) -> int:
    try:
        return max(int(raw), 0)
    except (TypeError, ValueError):
        return 0


app.jinja_env.globals.update(
    {
        "highlight": highlight,
        "format_relative": format_relative,
        "date_tab_label": date_tab_label,
        "site_name": site_name,
    }
)

###############################################################################
# Templates
###############################################################################


def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<head>
<title>{{ title or site_name() }}</title>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta name="robots" content="noindex, nofollow">
<style>
*{box-sizing:border-box}
body{font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,sans-serif;background:#0d1117;color:#c9d1d9;margin:0;padding:0;line-height:1.5}
.container{max-width:600px;margin:0 auto;padding:20px}
header{border-bottom:1px solid #21262d;padding-bottom:16px;margin-bottom:20px}
.header-top{display:flex;align-items:center;gap:12px}
.avatar{width:48px;height:48px;border-radius:50%;object-fit:cover;border:2px solid #30363d}
.header-text h1{margin:0;font-size:1.3rem}
.header-text p{margin:2px 0 0;color:#8b949e;font-size:.85rem}
.search-box{margin-top:16px}
.search-box input{width:100%;padding:10px 16px;border:1px solid #30363d;border-radius:24px;background:#161b22;color:#c9d1d9;font-size:.95rem;outline:none;transition:border-color .2s}
.search-box input:focus{border-color:#58a6ff}
.search-box input::placeholder{color:#6e7681}
.date-tabs{display:flex;gap:8px;margin-top:16px;overflow-x:auto;padding-bottom:4px;-webkit-overflow-scrolling:touch}
.date-tabs::-webkit-scrollbar{height:4px}
.date-tabs::-webkit-scrollbar-thumb{background:#30363d;border-radius:2px}
.date-tab{padding:6px 14px;border-radius:20px;background:#21262d;color:#8b949e;text-decoration:none;font-size:.85rem;white-space:nowrap;transition:all .15s;border:1px solid transparent}
.date-tab:hover{background:#30363d;color:#c9d1d9}
.date-tab.active{background:#58a6ff;color:#0d1117;font-weight:500}
.date-tab.all{border:1px solid #30363d;background:transparent}
.date-tab.all.active{background:#58a6ff;border-color:#58a6ff}
.activity{padding:16px 0;border-bottom:1px solid #21262d}
.activity:last-child{border-bottom:none}
.activity-content{font-size:1rem;margin-bottom:8px}
.activity-meta{font-size:.8rem;color:#8b949e;display:flex;gap:12px;align-items:center}
.category{background:#21262d;padding:2px 8px;border-radius:12px;font-size:.75rem}
.has-details{cursor:pointer}
.has-details:hover .activity-content{color:#58a6ff}
.details-badge{background:#1f6feb;color:white;padding:2px 6px;border-radius:8px;font-size:.7rem;cursor:pointer}
.activity-details{display:none;margin-top:12px;padding:12px;background:#161b22;border-radius:8px;font-size:.9rem;white-space:pre-wrap;border-left:3px solid #1f6feb}
.activity-details.show{display:block}
.empty{text-align:center;padding:40px;color:#8b949e}
.search-results{color:#8b949e;font-size:.85rem;margin-bottom:12px}
mark{background:#634d00;color:#f0e68c;padding:0 2px;border-radius:2px}
.lock{display:flex;flex-direction:column;align-items:center;justify-content:center;height:100vh;text-align:center}
.lock h1{font-size:3rem;margin:0}
.lock p{color:#8b949e}
</style>
</head>
<body>
"""

TEMPL_EPILOG = """
</body>
</html>
"""

TEMPL_LOCK = wrap("""
<div class="lock">
  <h1>🔒</h1>
  <p>Private activity log</p>
</div>
""")

TEMPL_INDEX = wrap("""
<div class="container">
  <header>
    <div class="header-top">
      <img src="{{ url_for('public', filename=avatar) }}" alt="{{ title }}" class="avatar">
      <div class="header-text">
        <h1>{{ title }}</h1>
        <p>What I've been up to</p>
      </div>
    </div>
    <div class="search-box">
      <form method="GET" action="{{ url_for('index') }}">
        <input type="text" name="q" placeholder="Search activities..."
               value="{{ search }}" autocomplete="off">
        {% if selected %}<input type="hidden" name="date" value="{{ selected }}">{% endif %}
      </form>
    </div>
    <nav class="date-tabs">
      <a href="{{ url_for('index', q=search or None) }}"
         class="date-tab all{% if not selected %} active{% endif %}">All</a>
      {% for d in days %}
      <a href="{{ url_for('index', date=d, q=search or None) }}"
         class="date-tab{% if selected == d %} active{% endif %}">{{ date_tab_label(d, today) }}</a>
      {% endfor %}
    </nav>
  </header>
  <main>
    {% if search %}
    <div class="search-results">{{ rows|length }} result{{ '' if rows|length == 1 else 's' }} for "{{ search }}"</div>
    {% endif %}
    {% if not rows %}
    <div class="empty">
      {%- if search %}No matching activities
      {%- elif selected %}No activities on this day
      {%- else %}No activities yet{% endif -%}
    </div>
    {% endif %}
    {% for a in rows %}
    <article class="activity{% if a.details %} has-details{% endif %}"
             {% if a.details %}data-details="details-{{ a.id }}"{% endif %}>
      <div class="activity-content">{{ highlight(a.content, search) }}</div>
      <div class="activity-meta">
        <span class="category">{{ a.category }}</span>
        <time datetime="{{ a.created_at.isoformat() }}">{{ format_relative(a.created_at, now) }}</time>
        {% if a.details %}<span class="details-badge">+ details</span>{% endif %}
      </div>
      {% if a.details %}
      <div class="activity-details" id="details-{{ a.id }}">{{ a.details }}</div>
      {% endif %}
    </article>
    {% endfor %}
  </main>
</div>
<script>
document.querySelectorAll('.has-details').forEach(card => {
    card.addEventListener('click', () => {
        const el = document.getElementById(card.dataset.details);
        if (el) el.classList.toggle('show');
    });
});
</script>
""")

TEMPL_404 = wrap("""
<div class="container">
  <h2>Page not found</h2>
  <p>The URL you asked for doesn’t exist.
     <a href="{{ url_for('index') }}" style="color:#58a6ff;">Back to the timeline</a>.</p>
</div>
""")

TEMPL_500 = wrap("""
<div class="container">
  <h2>Internal Server Error</h2>
  <p>Something broke on our side. Please try again in a minute.</p>
</div>
""")

###############################################################################
# Authentication
###############################################################################
def _token_matches(candidate: str | None) -> bool:
    secret = app.config.get("APP_TOKEN") or ""
    if not secret or not candidate:
        return False  # unset secret ➜ nobody gets in
    return secrets.compare_digest(candidate.encode(), secret.encode())


def is_authorized() -> bool:
    """Cookie first, then ``Authorization: Bearer <token>``."""
    if _token_matches(request.cookies.get(TOKEN_COOKIE)):
        return True
    scheme, _, value = request.headers.get("Authorization", "").partition(" ")
    return scheme == "Bearer" and _token_matches(value)


def token_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not is_authorized():
            return render_template_string(TEMPL_LOCK, title=site_name()), 401
        return view(*args, **kwargs)

    return wrapped


@app.route("/auth")
def auth():
    token = request.args.get("token", "")
    if not _token_matches(token):
        app.logger.warning("Rejected token exchange from %s", request.remote_addr)
        return Response("Invalid token", status=401, mimetype="text/plain")

    resp = redirect(url_for("index"))
    resp.set_cookie(
        TOKEN_COOKIE,
        token,
        max_age=COOKIE_MAX_AGE,
        path="/",
        httponly=True,
        samesite="Strict",
        secure=app.config["COOKIE_SECURE"],
    )
    return resp


###############################################################################
# Resources
###############################################################################
@app.route("/public/<path:filename>")
def public(filename):
    return send_from_directory(app.config["PUBLIC_DIR"], filename, max_age=86400)


@app.route("/robots.txt")
def robots():
    return Response("User-agent: *\nDisallow: /\n", mimetype="text/plain")


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


###############################################################################
# Timeline
###############################################################################
@app.route("/")
@token_required
def index():
    search = request.args.get("q", "").strip()
    selected = request.args.get("date", "").strip()
    store = get_store()

    try:
        days = store.distinct_days()
    except StoreError:
        app.logger.exception("Date query failed")
        days = []

    rows = store.query(ActivityFilter(search, selected), limit=PAGE_LIMIT)

    return render_template_string(
        TEMPL_INDEX,
        rows=rows,
        search=search,
        selected=selected,
        days=days,
        today=local_today(),
        now=_store.utc_now(),
        avatar=app.config["AVATAR"],
        title=site_name(),
    )


###############################################################################
# JSON API
###############################################################################
@app.route("/api/activities", methods=["GET"])
@token_required
def list_activities():
    flt = ActivityFilter(request.args.get("q", ""), request.args.get("date", ""))
    rows = get_store().query(
        flt,
        limit=parse_limit(request.args.get("limit")),
        offset=parse_offset(request.args.get("offset")),
    )
    return jsonify([a.to_dict() for a in rows])


@app.route("/api/activities/<int:activity_id>")
@token_required
def get_activity(activity_id):
    activity = get_store().get(activity_id)
    if activity is None:
        return {"error": "Not found"}, 404
    return activity.to_dict()


@app.route("/api/activities", methods=["POST"])
def create_activity():
    # JSON 401, not the lock page
    if not is_authorized():
        return {"error": "Unauthorized"}, 401

    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = request.form

    content = payload.get("content")
    if not isinstance(content, str) or not content.strip():
        return {"error": "Content required"}, 400

    category, details = payload.get("category"), payload.get("details")
    for name, value in (("category", category), ("details", details)):
        if value is not None and not isinstance(value, str):
            return {"error": f"{name.capitalize()} must be a string"}, 400

    activity = get_store().add(content, category, details)
    app.logger.info("Logged activity #%s [%s]", activity.id, activity.category)
    return activity.to_dict()


###############################################################################
# Error pages
###############################################################################
def _wants_json() -> bool:
    return request.path.startswith("/api/")


@app.errorhandler(StoreError)
def store_error(exc):
    """Backend failures never leak details to the caller."""
    app.logger.error(
        "Database error on %s %s", request.method, request.path, exc_info=exc
    )
    if _wants_json():
        return {"error": "Database error"}, 500
    return Response("Database error", status=500, mimetype="text/plain")


@app.errorhandler(404)
def not_found(exc):
    if _wants_json():
        return {"error": "Not found"}, 404
    return render_template_string(TEMPL_404, title=site_name()), 404


@app.errorhandler(500)
def internal_error(exc):
    if _wants_json():
        return {"error": "Internal error"}, 500
    return render_template_string(TEMPL_500, title=site_name()), 500


###############################################################################
# CLI
###############################################################################
@app.cli.command("init-db")
def cli_init_db():
    """Create the activity table (or JSON file) if it is missing."""
    try:
        store = init_store()
    except StoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.secho(f"\n✅  {store.backend} store ready.", fg="green")


@app.cli.command("add")
@click.argument("content")
@click.option("--category", default=None, help="Short label (default: general)")
@click.option("--details", default=None, help="Longer free-text note")
def cli_add(content: str, category: str | None, details: str | None):
    """Log an activity from the shell."""
    try:
        activity = get_store().add(content, category, details)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="CONTENT") from exc
    except StoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"#{activity.id} [{activity.category}] {activity.content}")


@app.cli.command("token")
def cli_token():
    """Print a fresh random secret for APP_TOKEN."""
    token = secrets.token_urlsafe(TOKEN_LEN)
    click.secho("\n🔑  Fresh app token generated.\n", fg="yellow")
    click.echo(f"{token}\n")
    click.echo("Export it as APP_TOKEN, then open /auth?token=<token> once.")


###############################################################################
# main
###############################################################################
def main() -> None:
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        store = init_store()
    except StoreError as exc:
        app.logger.error("Failed to initialize database: %s", exc)
        sys.exit(1)

    if not app.config["APP_TOKEN"]:
        app.logger.warning("APP_TOKEN is not set; every request will be refused")
    app.logger.info(
        "%s running on port %d (%s store)",
        site_name(),
        app.config["PORT"],
        store.backend,
    )
    app.run(host="0.0.0.0", port=app.config["PORT"])


if __name__ == "__main__":
    main()
