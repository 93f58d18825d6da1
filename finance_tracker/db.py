import os
import sqlite3
from pathlib import Path
from urllib.parse import urlparse

try:
    import psycopg
    from psycopg.rows import tuple_row
except ImportError:  # pragma: no cover - dependency optional for sqlite-only environments
    psycopg = None
    tuple_row = None


DRIVER_ERRORS = (sqlite3.Error,) if psycopg is None else (sqlite3.Error, psycopg.Error)


class PostgresRow:
    """Name/position addressable row, mirroring ``sqlite3.Row`` for psycopg tuples."""

    def __init__(self, columns, values):
        self._columns = tuple(columns)
        self._values = tuple(values)
        self._lookup = {name: idx for idx, name in enumerate(self._columns)}

    def __getitem__(self, key):
        if isinstance(key, str):
            return self._values[self._lookup[key]]
        return self._values[key]

    def __iter__(self):
        return iter(self._values)

    def __len__(self):
        return len(self._values)

    def keys(self):
        return list(self._columns)


def row_to_dict(row):
    if row is None:
        return None
    return {key: row[key] for key in row.keys()}


class LedgerCursor:
    def __init__(self, cursor):
        self._cursor = cursor

    @property
    def rowcount(self):
        return getattr(self._cursor, "rowcount", -1)

    @property
    def lastrowid(self):
        return getattr(self._cursor, "lastrowid", None)

    def fetchone(self):
        return self._wrap(self._cursor.fetchone())

    def fetchall(self):
        return [self._wrap(row) for row in self._cursor.fetchall()]

    def _wrap(self, row):
        if row is None or isinstance(row, sqlite3.Row):
            return row
        columns = [getattr(col, "name", None) or col[0] for col in (self._cursor.description or [])]
        return PostgresRow(columns, row)


class LedgerConnection:
    """Connection wrapper that lets sqlite-flavoured SQL run on either backend."""

    def __init__(self, conn, backend):
        self._conn = conn
        self.backend = backend

    def execute(self, sql, params=None):
        if self.backend == "postgres":
            sql = qmark_to_format(sql)
        return LedgerCursor(self._conn.execute(sql, tuple(params or ())))

    def insert(self, sql, params=None):
        """Run an INSERT and return the new row id."""
        if self.backend == "postgres":
            row = self.execute(f"{sql.rstrip()} RETURNING id", params).fetchone()
            return row["id"]
        return self.execute(sql, params).lastrowid

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def is_postgres_url(value):
    return bool(value) and value.startswith(("postgresql://", "postgres://"))


def qmark_to_format(sql):
    # Literals in this codebase never contain "?" or "%", so a plain split is enough.
    return "%s".join(sql.split("?"))


def parse_database_config(database_path=None):
    db_url = os.environ.get("DATABASE_URL", "").strip()
    if is_postgres_url(db_url):
        return {
            "backend": "postgres",
            "database_url": db_url,
            "database_name": urlparse(db_url).path.lstrip("/") or "postgres",
            "database_path": database_path,
        }

    return {
        "backend": "sqlite",
        "database_url": None,
        "database_name": Path(database_path).name if database_path else "sqlite",
        "database_path": database_path,
    }


def connect_db(config):
    if config["backend"] == "postgres":
        if psycopg is None:
            raise RuntimeError("psycopg is required when DATABASE_URL points to Postgres")
        conn = psycopg.connect(config["database_url"], row_factory=tuple_row)
        return LedgerConnection(conn, backend="postgres")

    db_path = config["database_path"]
    if db_path:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 5000")
    return LedgerConnection(conn, backend="sqlite")
