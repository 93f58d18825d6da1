"""SQL-backed store for transactions, categories, users and staged imports.

Every write commits on its own, so a caller driving several writes in a row
(the statement importer does one insert per row) keeps whatever succeeded
before a later failure.
"""

import json
from datetime import datetime, timedelta

from .db import DRIVER_ERRORS, row_to_dict

TRANSACTION_TYPES = ("income", "expense")
TRANSACTION_COLUMNS = "id, user_id, amount, description, category, type, date, created_at"


class LedgerStoreError(RuntimeError):
    """Raised when the database rejects a ledger read or write."""


class LedgerStore:
    def __init__(self, db):
        self.db = db

    def _fail(self, action, exc):
        try:
            self.db.rollback()
        except DRIVER_ERRORS:
            pass
        raise LedgerStoreError(f"Failed to {action}: {exc}") from exc

    # Transactions

    def transaction_exists(self, user_id, date, amount, description):
        try:
            row = self.db.execute(
                """
                SELECT id FROM transactions
                WHERE user_id = ? AND date = ? AND amount = ? AND description = ?
                LIMIT 1
                """,
                (user_id, date, amount, description),
            ).fetchone()
        except DRIVER_ERRORS as exc:
            self._fail("check for an existing transaction", exc)
        return row is not None

    def insert_transaction(self, user_id, amount, description, category, type, date):
        if type not in TRANSACTION_TYPES:
            raise LedgerStoreError(f"Unknown transaction type: {type!r}")
        try:
            transaction_id = self.db.insert(
                """
                INSERT INTO transactions (user_id, amount, description, category, type, date)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (user_id, amount, description, category, type, date),
            )
            self.db.commit()
        except DRIVER_ERRORS as exc:
            self._fail("save transaction", exc)
        return transaction_id

    def list_transactions(self, user_id, type=None, limit=100):
        where_sql = "user_id = ?"
        params = [user_id]
        if type in TRANSACTION_TYPES:
            where_sql += " AND type = ?"
            params.append(type)
        params.append(limit)
        try:
            rows = self.db.execute(
                f"""
                SELECT {TRANSACTION_COLUMNS}
                FROM transactions
                WHERE {where_sql}
                ORDER BY date DESC, id DESC
                LIMIT ?
                """,
                params,
            ).fetchall()
        except DRIVER_ERRORS as exc:
            self._fail("load transactions", exc)
        return [row_to_dict(row) for row in rows]

    def delete_transaction(self, user_id, transaction_id):
        try:
            result = self.db.execute(
                "DELETE FROM transactions WHERE id = ? AND user_id = ?",
                (transaction_id, user_id),
            )
            self.db.commit()
        except DRIVER_ERRORS as exc:
            self._fail("delete transaction", exc)
        return result.rowcount > 0

    def account_totals(self, user_id, start=None, end=None):
        where_sql = "user_id = ?"
        params = [user_id]
        if start:
            where_sql += " AND date >= ?"
            params.append(start)
        if end:
            where_sql += " AND date <= ?"
            params.append(end)
        try:
            row = self.db.execute(
                f"""
                SELECT
                    COALESCE(SUM(CASE WHEN type = 'income' THEN amount ELSE 0 END), 0) AS income,
                    COALESCE(SUM(CASE WHEN type = 'expense' THEN amount ELSE 0 END), 0) AS expenses,
                    COUNT(*) AS count
                FROM transactions
                WHERE {where_sql}
                """,
                params,
            ).fetchone()
        except DRIVER_ERRORS as exc:
            self._fail("compute account totals", exc)
        income = round(float(row["income"]), 2)
        expenses = round(float(row["expenses"]), 2)
        return {
            "income": income,
            "expenses": expenses,
            "balance": round(income - expenses, 2),
            "count": int(row["count"]),
        }

    def category_breakdown(self, user_id, type="expense", limit=None):
        params = [user_id, type]
        limit_sql = ""
        if limit:
            limit_sql = "LIMIT ?"
            params.append(limit)
        try:
            rows = self.db.execute(
                f"""
                SELECT t.category AS category,
                       COALESCE(c.emoji, '') AS emoji,
                       COALESCE(c.color, '#6b7280') AS color,
                       SUM(t.amount) AS total,
                       COUNT(*) AS count
                FROM transactions t
                LEFT JOIN categories c ON c.name = t.category
                WHERE t.user_id = ? AND t.type = ?
                GROUP BY t.category, c.emoji, c.color
                ORDER BY total DESC, t.category ASC
                {limit_sql}
                """,
                params,
            ).fetchall()
        except DRIVER_ERRORS as exc:
            self._fail("compute category breakdown", exc)
        breakdown = []
        for row in rows:
            item = row_to_dict(row)
            item["total"] = round(float(item["total"]), 2)
            breakdown.append(item)
        return breakdown

    # Categories

    def list_categories(self, type=None):
        try:
            if type in TRANSACTION_TYPES:
                rows = self.db.execute(
                    "SELECT id, name, emoji, color, type FROM categories WHERE type IN (?, 'both') ORDER BY name",
                    (type,),
                ).fetchall()
            else:
                rows = self.db.execute("SELECT id, name, emoji, color, type FROM categories ORDER BY name").fetchall()
        except DRIVER_ERRORS as exc:
            self._fail("load categories", exc)
        return [row_to_dict(row) for row in rows]

    def get_category(self, name):
        try:
            row = self.db.execute(
                "SELECT id, name, emoji, color, type FROM categories WHERE name = ?", (name,)
            ).fetchone()
        except DRIVER_ERRORS as exc:
            self._fail("load category", exc)
        return row_to_dict(row)

    # Users

    def upsert_user(self, external_id, email, provider):
        now = datetime.utcnow().isoformat(timespec="seconds")
        try:
            existing = self.db.execute("SELECT id FROM users WHERE external_id = ?", (external_id,)).fetchone()
            if existing is None:
                user_id = self.db.insert(
                    "INSERT INTO users (external_id, email, provider, last_login_at) VALUES (?, ?, ?, ?)",
                    (external_id, email, provider, now),
                )
            else:
                user_id = existing["id"]
                self.db.execute(
                    "UPDATE users SET email = ?, provider = COALESCE(?, provider), last_login_at = ? WHERE id = ?",
                    (email, provider or None, now, user_id),
                )
            self.db.commit()
        except DRIVER_ERRORS as exc:
            self._fail("save user", exc)
        return self.get_user(user_id)

    def get_user(self, user_id):
        try:
            row = self.db.execute(
                "SELECT id, external_id, email, provider, created_at, last_login_at FROM users WHERE id = ?",
                (user_id,),
            ).fetchone()
        except DRIVER_ERRORS as exc:
            self._fail("load user", exc)
        return row_to_dict(row)

    # Import staging

    def stage_import_rows(self, import_id, user_id, rows):
        created_at = datetime.utcnow().isoformat()
        try:
            for row in rows:
                self.db.execute(
                    "INSERT INTO import_staging (import_id, user_id, created_at, row_json) VALUES (?, ?, ?, ?)",
                    (import_id, user_id, created_at, json.dumps(row)),
                )
            self.db.commit()
        except DRIVER_ERRORS as exc:
            self._fail("stage import rows", exc)

    def get_staged_import_rows(self, import_id, user_id):
        try:
            records = self.db.execute(
                "SELECT row_json FROM import_staging WHERE import_id = ? AND user_id = ? ORDER BY id ASC",
                (import_id, user_id),
            ).fetchall()
        except DRIVER_ERRORS as exc:
            self._fail("load staged import rows", exc)
        return [json.loads(record["row_json"]) for record in records]

    def clear_import_staging(self, import_id, user_id):
        try:
            self.db.execute("DELETE FROM import_staging WHERE import_id = ? AND user_id = ?", (import_id, user_id))
            self.db.commit()
        except DRIVER_ERRORS as exc:
            self._fail("clear staged import rows", exc)

    def cleanup_expired_import_staging(self, max_age_hours=24):
        cutoff = (datetime.utcnow() - timedelta(hours=max_age_hours)).isoformat()
        try:
            self.db.execute("DELETE FROM import_staging WHERE created_at < ?", (cutoff,))
            self.db.commit()
        except DRIVER_ERRORS as exc:
            self._fail("expire staged import rows", exc)
