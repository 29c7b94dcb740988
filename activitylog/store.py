"""
Storage backends for the activity log.

Every backend exposes the same five operations (``init``, ``add``,
``query``, ``get``, ``distinct_days``) and translates an
:class:`ActivityFilter` into whatever its engine understands.
"""

import json
import logging
import os
import sqlite3
import tempfile
import threading
from contextlib import closing
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

import psycopg
from psycopg.rows import dict_row

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "general"
DEFAULT_TZ = "America/Los_Angeles"
DAYS_DEFAULT = 14

BACKENDS = ("json", "sqlite", "postgres")


class StoreError(Exception):
    """Any failure while talking to the storage backend."""


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    # fixed width so ISO strings sort the same way the datetimes do
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value) -> datetime:
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_day(value: str | None) -> date | None:
    """``'2025-01-15'`` → date, anything else → None.

    Only the extended ``YYYY-MM-DD`` form counts; ``20250115`` or
    ``2025-W03-3`` parse on newer Pythons but are rejected here.
    """
    if not value:
        return None
    value = value.strip()
    try:
        d = date.fromisoformat(value)
    except ValueError:
        return None
    return d if d.isoformat() == value else None


################################################################################
# Records + filters
################################################################################
@dataclass(frozen=True)
class Activity:
    id: int
    content: str
    category: str
    details: str | None
    created_at: datetime

    @classmethod
    def from_row(cls, row) -> "Activity":
        return cls(
            id=int(row["id"]),
            content=row["content"],
            category=row["category"] or DEFAULT_CATEGORY,
            details=row["details"] or None,
            created_at=_parse_ts(row["created_at"]),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "content": self.content,
            "category": self.category,
            "details": self.details,
            "created_at": _iso(self.created_at),
        }

    def local_day(self, tz: ZoneInfo) -> str:
        return self.created_at.astimezone(tz).date().isoformat()


@dataclass(frozen=True)
class ActivityFilter:
    """
    Optional search term + optional calendar day, AND-ed together.

    A blank search means "no search filter", not "match the empty string".
    A day that does not parse can never match anything.
    """

    search: str = ""
    date: str = ""

    @property
    def term(self) -> str:
        return (self.search or "").strip()

    @property
    def day(self) -> str:
        return (self.date or "").strip()

    @property
    def impossible(self) -> bool:
        return bool(self.day) and parse_day(self.day) is None

    def matches(self, activity: Activity, tz: ZoneInfo) -> bool:
        """In-process predicate, used by backends without a query engine."""
        if self.impossible:
            return False
        if self.day and activity.local_day(tz) != self.day:
            return False
        term = self.term.casefold()
        if term and not (
            term in activity.content.casefold()
            or term in activity.category.casefold()
        ):
            return False
        return True


def _like_pattern(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


################################################################################
# Base class
################################################################################
class ActivityStore:
    """Common front for every backend; subclasses fill in the ``_`` hooks."""

    backend = ""

    def __init__(self, *, tz: str = DEFAULT_TZ):
        self.tz = ZoneInfo(tz)

    def init(self) -> None:
        raise NotImplementedError

    def add(
        self, content: str, category: str | None = None, details: str | None = None
    ) -> Activity:
        content = (content or "").strip()
        if not content:
            raise ValueError("content must not be empty")
        return self._insert(
            content, (category or "").strip() or DEFAULT_CATEGORY, details or None
        )

    def query(
        self,
        flt: ActivityFilter | None = None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Activity]:
        flt = flt or ActivityFilter()
        if flt.impossible:
            return []
        return self._select(flt, limit=limit, offset=offset)

    def get(self, activity_id: int) -> Activity | None:
        raise NotImplementedError

    def distinct_days(self, limit: int = DAYS_DEFAULT) -> list[str]:
        raise NotImplementedError

    def _insert(self, content: str, category: str, details: str | None) -> Activity:
        raise NotImplementedError

    def _select(self, flt: ActivityFilter, *, limit: int, offset: int):
        raise NotImplementedError


################################################################################
# JSON file
################################################################################
class JsonFileStore(ActivityStore):
    """
    Whole record set lives in memory and is rewritten to *path* on every
    insert.  Writers are serialised by a lock and the rewrite goes through a
    temp file + ``os.replace`` so a crash never leaves half a file behind.
    """

    backend = "json"

    def __init__(self, path, *, tz: str = DEFAULT_TZ):
        super().__init__(tz=tz)
        self.path = Path(path)
        self._lock = threading.Lock()
        self._records: list[Activity] = []

    def init(self) -> None:
        with self._lock:
            try:
                if self.path.exists():
                    raw = json.loads(self.path.read_text(encoding="utf-8") or "[]")
                    if not isinstance(raw, list):
                        raise StoreError(f"{self.path}: expected a JSON array")
                    self._records = [Activity.from_row(r) for r in raw]
                else:
                    self.path.parent.mkdir(parents=True, exist_ok=True)
                    self._records = []
                    self._write()
            except (OSError, ValueError, KeyError, TypeError) as exc:
                raise StoreError(f"cannot load {self.path}: {exc}") from exc
        logger.info("JSON store ready at %s (%d records)", self.path, len(self._records))

    def _write(self) -> None:
        payload = json.dumps(
            [a.to_dict() for a in self._records], ensure_ascii=False, indent=1
        )
        fd, tmp = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
            os.replace(tmp, self.path)
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _insert(self, content, category, details):
        with self._lock:
            next_id = max((a.id for a in self._records), default=0) + 1
            activity = Activity(next_id, content, category, details, utc_now())
            self._records.append(activity)
            try:
                self._write()
            except OSError as exc:
                self._records.pop()
                raise StoreError(f"cannot write {self.path}: {exc}") from exc
        return activity

    def _snapshot(self) -> list[Activity]:
        with self._lock:
            rows = list(self._records)
        rows.sort(key=lambda a: (a.created_at, a.id), reverse=True)
        return rows

    def _select(self, flt, *, limit, offset):
        hits = [a for a in self._snapshot() if flt.matches(a, self.tz)]
        return hits[offset : offset + limit]

    def get(self, activity_id):
        with self._lock:
            return next((a for a in self._records if a.id == activity_id), None)

    def distinct_days(self, limit=DAYS_DEFAULT):
        days = sorted({a.local_day(self.tz) for a in self._snapshot()}, reverse=True)
        return days[:limit]


################################################################################
# SQLite
################################################################################
SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS activity_logs (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    content     TEXT NOT NULL,
    category    TEXT NOT NULL DEFAULT 'general',
    details     TEXT,
    created_at  TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_activity_logs_created_at
    ON activity_logs(created_at DESC);
"""


class SqliteStore(ActivityStore):
    """
    Timestamps are stored as fixed-width UTC ISO strings.  Day bucketing
    and case-insensitive search run through Python functions registered on
    each connection, so the results agree with :class:`JsonFileStore`.
    """

    backend = "sqlite"

    def __init__(self, path, *, tz: str = DEFAULT_TZ):
        super().__init__(tz=tz)
        self.path = str(path)

    def _local_day(self, iso: str | None) -> str | None:
        if not iso:
            return None
        return _parse_ts(iso).astimezone(self.tz).date().isoformat()

    @staticmethod
    def _icontains(haystack: str | None, needle: str | None) -> int:
        if haystack is None or not needle:
            return 0
        return int(needle.casefold() in haystack.casefold())

    def _connect(self) -> sqlite3.Connection:
        db = sqlite3.connect(self.path)
        db.row_factory = sqlite3.Row
        db.create_function("local_day", 1, self._local_day, deterministic=True)
        db.create_function("icontains", 2, self._icontains, deterministic=True)
        return db

    def init(self) -> None:
        try:
            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            with closing(self._connect()) as db:
                db.executescript(SQLITE_SCHEMA)
                ensure_details_column(db)
                db.commit()
        except (sqlite3.Error, OSError) as exc:
            raise StoreError(f"cannot initialise {self.path}: {exc}") from exc
        logger.info("SQLite store ready at %s", self.path)

    def _where(self, flt: ActivityFilter) -> tuple[str, list]:
        clauses, params = [], []
        if flt.day:
            clauses.append("local_day(created_at) = ?")
            params.append(flt.day)
        if flt.term:
            clauses.append("(icontains(content, ?) OR icontains(category, ?))")
            params.extend([flt.term, flt.term])
        return (" WHERE " + " AND ".join(clauses) if clauses else ""), params

    def _insert(self, content, category, details):
        created = _iso(utc_now())
        try:
            with closing(self._connect()) as db:
                cur = db.execute(
                    """INSERT INTO activity_logs (content, category, details, created_at)
                            VALUES (?,?,?,?)""",
                    (content, category, details, created),
                )
                db.commit()
                row = db.execute(
                    "SELECT * FROM activity_logs WHERE id=?", (cur.lastrowid,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        return Activity.from_row(row)

    def _select(self, flt, *, limit, offset):
        where, params = self._where(flt)
        sql = (
            f"SELECT * FROM activity_logs{where}"
            " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
        )
        try:
            with closing(self._connect()) as db:
                rows = db.execute(sql, (*params, limit, offset)).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        return [Activity.from_row(r) for r in rows]

    def get(self, activity_id):
        try:
            with closing(self._connect()) as db:
                row = db.execute(
                    "SELECT * FROM activity_logs WHERE id=?", (activity_id,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        return Activity.from_row(row) if row else None

    def distinct_days(self, limit=DAYS_DEFAULT):
        try:
            with closing(self._connect()) as db:
                rows = db.execute(
                    """SELECT DISTINCT local_day(created_at) AS day
                         FROM activity_logs
                        ORDER BY day DESC
                        LIMIT ?""",
                    (limit,),
                ).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        return [r["day"] for r in rows]


def ensure_details_column(db) -> None:
    """Add activity_logs.details if it does not exist (older DBs)."""
    cols = {row["name"] for row in db.execute("PRAGMA table_info(activity_logs)")}
    if "details" not in cols:
        db.execute("ALTER TABLE activity_logs ADD COLUMN details TEXT")
        logger.info("Added missing details column to activity_logs")


################################################################################
# PostgreSQL
################################################################################
POSTGRES_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS activity_logs (
        id          BIGSERIAL PRIMARY KEY,
        content     TEXT NOT NULL,
        category    VARCHAR(50) DEFAULT 'general',
        details     TEXT,
        created_at  TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    "ALTER TABLE activity_logs ADD COLUMN IF NOT EXISTS details TEXT",
    """
    CREATE INDEX IF NOT EXISTS idx_activity_logs_created_at
        ON activity_logs(created_at DESC)
    """,
)


class PostgresStore(ActivityStore):
    """Remote store; day bucketing happens in SQL via ``AT TIME ZONE``."""

    backend = "postgres"

    def __init__(self, conninfo: str, *, tz: str = DEFAULT_TZ):
        super().__init__(tz=tz)
        if not conninfo:
            raise StoreError("DATABASE_URL is not set")
        self.conninfo = conninfo

    def _connect(self):
        # commits on clean exit, rolls back on error
        return psycopg.connect(self.conninfo, row_factory=dict_row)

    def init(self) -> None:
        try:
            with self._connect() as conn:
                for stmt in POSTGRES_SCHEMA:
                    conn.execute(stmt)
        except psycopg.Error as exc:
            raise StoreError(f"cannot initialise database: {exc}") from exc
        logger.info("Postgres store ready")

    def _where(self, flt: ActivityFilter) -> tuple[str, list]:
        clauses, params = [], []
        if flt.day:
            clauses.append("DATE(created_at AT TIME ZONE %s) = %s")
            params.extend([self.tz.key, flt.day])
        if flt.term:
            clauses.append("(content ILIKE %s OR category ILIKE %s)")
            pattern = _like_pattern(flt.term)
            params.extend([pattern, pattern])
        return (" WHERE " + " AND ".join(clauses) if clauses else ""), params

    def _insert(self, content, category, details):
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """INSERT INTO activity_logs (content, category, details, created_at)
                            VALUES (%s, %s, %s, %s)
                         RETURNING *""",
                    (content, category, details, utc_now()),
                ).fetchone()
        except psycopg.Error as exc:
            raise StoreError(str(exc)) from exc
        return Activity.from_row(row)

    def _select(self, flt, *, limit, offset):
        where, params = self._where(flt)
        sql = (
            f"SELECT * FROM activity_logs{where}"
            " ORDER BY created_at DESC, id DESC LIMIT %s OFFSET %s"
        )
        try:
            with self._connect() as conn:
                rows = conn.execute(sql, (*params, limit, offset)).fetchall()
        except psycopg.Error as exc:
            raise StoreError(str(exc)) from exc
        return [Activity.from_row(r) for r in rows]

    def get(self, activity_id):
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM activity_logs WHERE id = %s", (activity_id,)
                ).fetchone()
        except psycopg.Error as exc:
            raise StoreError(str(exc)) from exc
        return Activity.from_row(row) if row else None

    def distinct_days(self, limit=DAYS_DEFAULT):
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    """SELECT DISTINCT DATE(created_at AT TIME ZONE %s) AS day
                         FROM activity_logs
                        ORDER BY day DESC
                        LIMIT %s""",
                    (self.tz.key, limit),
                ).fetchall()
        except psycopg.Error as exc:
            raise StoreError(str(exc)) from exc
        return [r["day"].isoformat() for r in rows]


################################################################################
# Factory
################################################################################
def pick_backend(
    backend: str | None = None,
    *,
    data_file: str | None = None,
    database_url: str | None = None,
) -> str:
    """Explicit choice wins; otherwise infer from which location is set."""
    if backend:
        return backend.strip().lower()
    if database_url:
        return "postgres"
    if data_file:
        return "json"
    return "sqlite"


def open_store(
    backend: str,
    *,
    db_path: str = "activity.db",
    data_file: str = "activities.json",
    database_url: str | None = None,
    tz: str = DEFAULT_TZ,
) -> ActivityStore:
    if backend == "json":
        return JsonFileStore(data_file, tz=tz)
    if backend == "sqlite":
        return SqliteStore(db_path, tz=tz)
    if backend == "postgres":
        return PostgresStore(database_url or "", tz=tz)
    raise StoreError(f"unknown store backend {backend!r}; pick one of {BACKENDS}")
