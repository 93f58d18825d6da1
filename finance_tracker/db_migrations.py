import argparse
import json
from datetime import datetime

from .db import connect_db, parse_database_config


REQUIRED_TABLES = {
    "users": {
        "columns": {"id", "external_id", "email", "provider", "created_at", "last_login_at"},
        "indexes": {"uq_users_external_id"},
    },
    "categories": {
        "columns": {"id", "name", "emoji", "color", "type"},
        "indexes": set(),
    },
    "transactions": {
        "columns": {"id", "user_id", "amount", "description", "category", "type", "date", "created_at"},
        "indexes": {"idx_transactions_user_date", "idx_transactions_duplicate_lookup"},
    },
    "import_staging": {
        "columns": {"id", "import_id", "user_id", "created_at", "row_json"},
        "indexes": {"idx_import_staging_import_id", "idx_import_staging_created_at"},
    },
}

# name, emoji, color, applies to
SEED_CATEGORIES = [
    ("Bills", "🧾", "#ef4444", "expense"),
    ("Entertainment", "🎬", "#a855f7", "expense"),
    ("Food", "🍔", "#f97316", "expense"),
    ("Freelance", "💻", "#14b8a6", "income"),
    ("Health", "💊", "#ec4899", "expense"),
    ("Housing", "🏠", "#78716c", "expense"),
    ("Investments", "📈", "#22c55e", "both"),
    ("Other", "📦", "#6b7280", "both"),
    ("Other Income", "💰", "#84cc16", "income"),
    ("Salary", "💼", "#10b981", "income"),
    ("Shopping", "🛍️", "#eab308", "expense"),
    ("Transfer", "🔁", "#3b82f6", "both"),
    ("Transport", "🚌", "#0ea5e9", "expense"),
]


def backend_name(conn):
    return getattr(conn, "backend", "sqlite")


def table_exists(conn, name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM information_schema.tables WHERE table_schema = current_schema() AND table_name = ?",
            (name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='table' AND name = ?", (name,)).fetchone()
    return row is not None


def index_exists(conn, index_name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM pg_indexes WHERE schemaname = current_schema() AND indexname = ?",
            (index_name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='index' AND name = ?", (index_name,)).fetchone()
    return row is not None


def get_table_columns(conn, table):
    if backend_name(conn) == "postgres":
        rows = conn.execute(
            "SELECT column_name FROM information_schema.columns WHERE table_schema = current_schema() AND table_name = ?",
            (table,),
        ).fetchall()
        return {row[0] for row in rows}

    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def create_index_if_missing(conn, index_name, create_sql):
    if not index_exists(conn, index_name):
        conn.execute(create_sql)


def ensure_table(conn, create_sql):
    if backend_name(conn) == "postgres":
        create_sql = create_sql.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "BIGSERIAL PRIMARY KEY")
        # Postgres REAL is float4; amounts are compared against float8 parameters.
        create_sql = create_sql.replace(" REAL ", " DOUBLE PRECISION ")
    conn.execute(create_sql)


def migration_001(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            external_id TEXT NOT NULL,
            email TEXT,
            provider TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            last_login_at TEXT
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS categories (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT UNIQUE NOT NULL,
            emoji TEXT NOT NULL DEFAULT '',
            color TEXT NOT NULL DEFAULT '#6b7280',
            type TEXT NOT NULL DEFAULT 'both' CHECK(type IN ('income', 'expense', 'both'))
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            amount REAL NOT NULL CHECK(amount > 0),
            description TEXT NOT NULL DEFAULT '',
            category TEXT NOT NULL DEFAULT 'Other',
            type TEXT NOT NULL CHECK(type IN ('income', 'expense')),
            date TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users (id)
        )
        """,
    )


def migration_002(conn):
    create_index_if_missing(
        conn,
        "uq_users_external_id",
        "CREATE UNIQUE INDEX uq_users_external_id ON users(external_id)",
    )
    create_index_if_missing(
        conn,
        "idx_transactions_user_date",
        "CREATE INDEX idx_transactions_user_date ON transactions(user_id, date)",
    )
    # Lookup index only; duplicates stay legal so manual entries can repeat.
    create_index_if_missing(
        conn,
        "idx_transactions_duplicate_lookup",
        "CREATE INDEX idx_transactions_duplicate_lookup ON transactions(user_id, date, amount, description)",
    )


def migration_003(conn):
    existing = {row[0] for row in conn.execute("SELECT name FROM categories").fetchall()}
    for name, emoji, color, category_type in SEED_CATEGORIES:
        if name in existing:
            continue
        conn.execute(
            "INSERT INTO categories (name, emoji, color, type) VALUES (?, ?, ?, ?)",
            (name, emoji, color, category_type),
        )


def migration_004(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS import_staging (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            import_id TEXT NOT NULL,
            user_id INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            row_json TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users (id)
        )
        """,
    )
    create_index_if_missing(
        conn,
        "idx_import_staging_import_id",
        "CREATE INDEX idx_import_staging_import_id ON import_staging(import_id)",
    )
    create_index_if_missing(
        conn,
        "idx_import_staging_created_at",
        "CREATE INDEX idx_import_staging_created_at ON import_staging(created_at)",
    )


MIGRATIONS = [
    (1, migration_001),
    (2, migration_002),
    (3, migration_003),
    (4, migration_004),
]


def _ensure_schema_version_table(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )


def current_schema_version(conn):
    _ensure_schema_version_table(conn)
    row = conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
    return int(row[0] or 0)


def validate_required_schema(conn):
    health = inspect_db_health(conn)
    if health["missing_tables"] or any(health["missing_columns"].values()):
        raise RuntimeError(
            "Schema invariants failed after migrations. "
            f"Missing tables={health['missing_tables']}, missing columns={health['missing_columns']}"
        )


def _run_migrations(conn):
    _ensure_schema_version_table(conn)
    applied_versions = {row[0] for row in conn.execute("SELECT version FROM schema_version").fetchall()}

    for version, migration_fn in MIGRATIONS:
        if version in applied_versions:
            continue
        try:
            migration_fn(conn)
            conn.execute(
                "INSERT INTO schema_version(version, applied_at) VALUES (?, ?)",
                (version, datetime.utcnow().isoformat(timespec="seconds") + "Z"),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    validate_required_schema(conn)


def apply_migrations(db_or_config_or_path):
    if hasattr(db_or_config_or_path, "execute"):
        _run_migrations(db_or_config_or_path)
        return

    config = db_or_config_or_path if isinstance(db_or_config_or_path, dict) else parse_database_config(db_or_config_or_path)
    conn = connect_db(config)
    try:
        _run_migrations(conn)
    finally:
        conn.close()


def inspect_db_health(conn):
    _ensure_schema_version_table(conn)
    missing_tables = []
    missing_columns = {}
    missing_indexes = []

    for table_name, table_spec in REQUIRED_TABLES.items():
        if not table_exists(conn, table_name):
            missing_tables.append(table_name)
            missing_columns[table_name] = sorted(table_spec["columns"])
            missing_indexes.extend(sorted(table_spec["indexes"]))
            continue

        table_cols = get_table_columns(conn, table_name)
        missing_columns[table_name] = sorted(col for col in table_spec["columns"] if col not in table_cols)
        missing_indexes.extend(idx for idx in sorted(table_spec["indexes"]) if not index_exists(conn, idx))

    return {
        "ok": not missing_tables and not any(missing_columns.values()) and not missing_indexes,
        "schema_version": current_schema_version(conn),
        "missing_tables": missing_tables,
        "missing_columns": missing_columns,
        "missing_indexes": sorted(set(missing_indexes)),
    }


def get_db_health(db_config_or_path):
    config = db_config_or_path if isinstance(db_config_or_path, dict) else parse_database_config(db_config_or_path)
    conn = connect_db(config)
    try:
        return inspect_db_health(conn)
    finally:
        conn.close()


def main():
    parser = argparse.ArgumentParser(description="Apply finance tracker migrations and report schema health")
    parser.add_argument("db_path", help="Path to SQLite DB file (ignored when DATABASE_URL points to Postgres)")
    parser.add_argument("--check-only", action="store_true", help="Report health without migrating")
    args = parser.parse_args()
    if not args.check_only:
        apply_migrations(args.db_path)
    print(json.dumps(get_db_health(args.db_path), indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
