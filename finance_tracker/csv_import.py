"""Midata-style bank statement import.

A statement is semicolon-delimited text whose first line names the columns::

    Date;Type;Merchant/Description;Debit/Credit;Balance
    05/03/2024;CARD PAYMENT;TESCO STORES;-£12.50;£1,230.10

Rows are parsed into dicts, classified into candidate transactions, checked
against the ledger for an identical existing record and inserted one at a
time. A bad row is counted and skipped; it never aborts the rest of the file.
"""

import logging
import math
import re
from dataclasses import asdict, dataclass, field

from .ledger_store import LedgerStoreError

logger = logging.getLogger(__name__)

FIELD_SEPARATOR = ";"
FOOTER_MARKERS = ["Arranged overdraft limit"]

DATE_FIELD = "Date"
TYPE_FIELD = "Type"
DESCRIPTION_FIELD = "Merchant/Description"
AMOUNT_FIELD = "Debit/Credit"
BALANCE_FIELD = "Balance"

UNKNOWN_DESCRIPTION = "Unknown"
DEFAULT_CATEGORY = "Other"

AMOUNT_NOISE = re.compile(r"[^0-9.\-]")
NUMBER_PREFIX = re.compile(r"^[-+]?(\d+\.?\d*|\.\d+)")

# (type substring, expense category, income category); checked in order.
# "PAYMENTS" can never match because "PAYMENT" is tested first.
TYPE_RULES = [
    ("PAYMENT", "Shopping", "Other Income"),
    ("INTEREST", "Investments", "Investments"),
    ("TRANSFER", "Transfer", "Transfer"),
    ("PAYMENTS", "Bills", "Bills"),
]
DESCRIPTION_RULES = [
    ("Food", ["grocery", "food"]),
    ("Transport", ["uber", "transport"]),
]

STATEMENT_ENCODINGS = ["utf-8-sig", "utf-8", "cp1252", "latin-1"]


class RowClassificationError(ValueError):
    """Raised when a statement row cannot become a transaction."""


@dataclass
class CandidateTransaction:
    user_id: int
    amount: float
    description: str
    category: str
    type: str
    date: str

    def as_insert_kwargs(self):
        return asdict(self)


@dataclass
class ImportSummary:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    duplicates: int = 0

    def as_message(self):
        return (
            f"IMPORT COMPLETE: {self.succeeded} imported, {self.failed} failed, "
            f"{self.duplicates} duplicates skipped"
        )


@dataclass
class ImportResult:
    summary: ImportSummary
    transactions: list = field(default_factory=list)


def decode_statement_bytes(file_bytes):
    for encoding in STATEMENT_ENCODINGS:
        try:
            return file_bytes.decode(encoding)
        except UnicodeDecodeError:
            continue
    return None


def is_statement_line(line, header_width):
    if not line.strip():
        return False
    if any(marker in line for marker in FOOTER_MARKERS):
        return False
    return len(line.split(FIELD_SEPARATOR)) >= header_width


def parse_statement(text):
    """Parse statement text into one dict per data line, keyed by header name.

    Blank lines, footer lines and lines with fewer fields than the header are
    dropped without error. Empty values are left out of the row dict.
    """
    lines = (text or "").split("\n")
    headers = [name.strip() for name in lines[0].split(FIELD_SEPARATOR)]

    rows = []
    for line in lines[1:]:
        if not is_statement_line(line, len(headers)):
            continue
        values = [value.strip() for value in line.split(FIELD_SEPARATOR)]
        rows.append({header: value for header, value in zip(headers, values) if value})
    return rows


def parse_signed_amount(text):
    """Return ``(magnitude, is_expense)`` for a statement amount like ``-£1,234.50``.

    Everything but digits, ``.`` and ``-`` is stripped first, then the longest
    leading number is read; any ``-`` marks the amount as a debit.
    """
    cleaned = AMOUNT_NOISE.sub("", text or "")
    is_expense = "-" in cleaned
    match = NUMBER_PREFIX.match(cleaned)
    if match is None:
        return math.nan, is_expense
    return abs(float(match.group(0))), is_expense


def normalize_statement_date(value):
    """Turn ``DD/MM/YYYY`` into ``YYYY-MM-DD``; the calendar is not checked."""
    parts = (value or "").split("/")
    if len(parts) < 3:
        raise RowClassificationError(f"Unrecognised statement date: {value!r}")
    day, month, year = parts[:3]
    return f"{year}-{month.zfill(2)}-{day.zfill(2)}"


def categorize_row(row_type, description, is_expense):
    row_type = row_type or ""
    for marker, expense_category, income_category in TYPE_RULES:
        if marker in row_type:
            return expense_category if is_expense else income_category

    lowered = description.lower()
    for category, keywords in DESCRIPTION_RULES:
        if any(keyword in lowered for keyword in keywords):
            return category
    return DEFAULT_CATEGORY


def classify_row(row, user_id):
    amount, is_expense = parse_signed_amount(row.get(AMOUNT_FIELD, ""))
    if math.isnan(amount) or amount <= 0:
        raise RowClassificationError(f"Invalid amount: {row.get(AMOUNT_FIELD)!r}")

    date = normalize_statement_date(row.get(DATE_FIELD))
    description = row.get(DESCRIPTION_FIELD) or row.get(TYPE_FIELD) or UNKNOWN_DESCRIPTION
    return CandidateTransaction(
        user_id=user_id,
        amount=amount,
        description=description,
        category=categorize_row(row.get(TYPE_FIELD), description, is_expense),
        type="expense" if is_expense else "income",
        date=date,
    )


def is_duplicate(store, candidate):
    return store.transaction_exists(candidate.user_id, candidate.date, candidate.amount, candidate.description)


def import_row(store, row, user_id):
    """Process one row; returns ``"succeeded"``, ``"duplicate"`` or ``"failed"``."""
    try:
        candidate = classify_row(row, user_id)
    except RowClassificationError as exc:
        logger.info("Skipping statement row: %s", exc)
        return "failed"

    if is_duplicate(store, candidate):
        return "duplicate"

    try:
        store.insert_transaction(**candidate.as_insert_kwargs())
    except LedgerStoreError as exc:
        logger.warning("Error importing transaction: %s", exc)
        return "failed"
    return "succeeded"


def import_statement_rows(store, rows, user_id, reload_limit=100):
    """Import parsed rows one at a time and return the counts.

    The user's most recent ``reload_limit`` transactions come back with the
    summary; pass ``None`` to skip that reload.
    """
    summary = ImportSummary(total=len(rows))
    for index, row in enumerate(rows):
        try:
            outcome = import_row(store, row, user_id)
        except Exception:
            logger.exception("Error processing statement row %d", index)
            outcome = "failed"

        if outcome == "succeeded":
            summary.succeeded += 1
        elif outcome == "duplicate":
            summary.duplicates += 1
        else:
            summary.failed += 1

    logger.info(
        "Statement import for user_id=%s: total=%d succeeded=%d failed=%d duplicates=%d",
        user_id,
        summary.total,
        summary.succeeded,
        summary.failed,
        summary.duplicates,
    )
    if reload_limit is None:
        return ImportResult(summary=summary)
    try:
        transactions = store.list_transactions(user_id, limit=reload_limit)
    except LedgerStoreError as exc:
        logger.warning("Could not reload transactions after import for user_id=%s: %s", user_id, exc)
        transactions = []
    return ImportResult(summary=summary, transactions=transactions)
