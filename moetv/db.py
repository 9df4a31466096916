from __future__ import annotations

import re
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Sequence, Tuple
from urllib.parse import urlparse

from moetv.schema import get_schema_sql


def _debug(msg: str) -> None:
    print(f"[db] {msg}")


def _detect_dialect(dsn: str) -> str:
    """'postgres' for postgres:// URLs, otherwise 'sqlite' (file path or sqlite:///)."""
    scheme = urlparse((dsn or "").strip()).scheme.lower()
    return "postgres" if scheme in ("postgres", "postgresql") else "sqlite"


# Quoted literals are matched first so a '?' inside them is left alone.
_PLACEHOLDER_RE = re.compile(r"('(?:[^']|'')*'|\"(?:[^\"]|\"\")*\")|\?")


def _qmark_to_pct(sql: str) -> str:
    """Rewrite sqlite `?` placeholders as psycopg2 `%s`."""
    return _PLACEHOLDER_RE.sub(lambda m: m.group(1) or "%s", sql)


class PGConnection:
    """psycopg2 connection with the subset of the sqlite3 API this package uses.

    `execute` accepts `?` placeholders and returns the (dict-row) cursor.
    """

    dialect = "postgres"

    def __init__(self, conn: Any):
        self._conn = conn

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> Any:
        cur = self._conn.cursor()
        cur.execute(_qmark_to_pct(sql), tuple(params or ()))
        return cur

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    def close(self) -> None:
        self._conn.close()


def _open(dsn: str, dialect: str) -> Any:
    if dialect == "postgres":
        try:
            import psycopg2
            import psycopg2.extras
        except ImportError as e:
            raise RuntimeError("Postgres DSN given but psycopg2 is missing; install moetv[postgres]") from e
        return PGConnection(psycopg2.connect(dsn, cursor_factory=psycopg2.extras.RealDictCursor))

    if dsn.lower().startswith("sqlite:///"):
        dsn = dsn[len("sqlite:///") :]
    Path(dsn).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(dsn, timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    # API workers and cron scripts may share one file.
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA busy_timeout=5000;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


@contextmanager
def connect(db_dsn: str) -> Iterator[Any]:
    """Open a connection for one unit of work.

    Commits when the `with` block exits normally and rolls back if it raises,
    so a subscription row and the user projection it implies land together or
    not at all. Rows support `row["col"]` on both backends (sqlite3.Row or
    psycopg2 RealDictCursor).
    """
    dsn = (db_dsn or "").strip()
    conn = _open(dsn, _detect_dialect(dsn))
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db(db_dsn: str) -> None:
    """Create missing tables and indexes (idempotent)."""
    dialect = _detect_dialect(db_dsn)
    _debug(f"init_db dialect={dialect} dsn={db_dsn}")
    with connect(db_dsn) as conn:
        ddl = get_schema_sql(dialect)
        if dialect == "postgres":
            # Serialise concurrent startups.
            conn.execute("SELECT pg_advisory_lock(7301);")
            try:
                _exec_schema(conn, ddl, dialect=dialect)
            finally:
                conn.execute("SELECT pg_advisory_unlock(7301);")
        else:
            _exec_schema(conn, ddl, dialect=dialect)


def _exec_schema(conn: Any, ddl: str, *, dialect: str) -> None:
    if dialect == "sqlite":
        conn.executescript(ddl)
        return
    # The schema has no ';' inside literals, so a plain split is enough.
    for stmt in filter(None, (s.strip() for s in ddl.split(";"))):
        conn.execute(stmt)


def page_bounds(page: int, limit: int) -> Tuple[int, int, int]:
    """Clamp (page, limit) and return (page, limit, offset)."""
    p = max(1, int(page or 1))
    lim = max(1, min(100, int(limit or 10)))
    return p, lim, (p - 1) * lim


def pagination(page: int, limit: int, total: int) -> dict:
    return {
        "page": page,
        "limit": limit,
        "total": int(total),
        "totalPages": (int(total) + limit - 1) // limit,
    }


def as_bool(v: Any) -> bool:
    """SQLite/Postgres integer flag -> bool (NULL is False)."""
    return bool(int(v or 0))


# Use as `col LIKE ? ESCAPE '\'` with `contains_pattern(text)`.
LIKE_ESCAPE = "ESCAPE '\\'"


def contains_pattern(text: str) -> str:
    """Substring LIKE pattern with `%`, `_` and `\\` in `text` matched literally."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"
