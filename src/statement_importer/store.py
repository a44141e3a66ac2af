"""Persistent storage for accounts, transactions, imports and recurring patterns.

``TransactionStore`` is the interface the pipeline depends on;
``SQLiteStore`` implements it on a single SQLite file. Dates are stored as
ISO-8601 text and money as decimal text, so values round-trip exactly.

Idempotency lives in the schema rather than in application locks:
- transactions are inserted with ``INSERT OR IGNORE`` against the primary
  key and ``UNIQUE(user_id, account_id, external_id)``;
- recurring patterns are upserted on ``UNIQUE(user_id, merchant_name,
  frequency)``; an update keeps the stored ``first_date`` and ``category``.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Sequence
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Protocol

from statement_importer.models import INCOME, Account, ImportRecord, RecurringPattern, Transaction

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    id          TEXT PRIMARY KEY,
    user_id     TEXT NOT NULL,
    name        TEXT NOT NULL,
    type        TEXT NOT NULL,
    institution TEXT NOT NULL,
    mask        TEXT,
    balance     TEXT NOT NULL DEFAULT '0'
);

CREATE TABLE IF NOT EXISTS transactions (
    id                  TEXT PRIMARY KEY,
    user_id             TEXT NOT NULL,
    account_id          TEXT NOT NULL,
    date                TEXT NOT NULL,
    amount              TEXT NOT NULL,
    type                TEXT NOT NULL,
    description         TEXT NOT NULL,
    merchant            TEXT,
    category            TEXT NOT NULL,
    external_id         TEXT,
    import_id           TEXT,
    category_confidence INTEGER NOT NULL,
    category_source     TEXT NOT NULL,
    UNIQUE (user_id, account_id, external_id)
);
CREATE INDEX IF NOT EXISTS idx_transactions_user_date ON transactions (user_id, date);

CREATE TABLE IF NOT EXISTS statement_imports (
    id                    TEXT PRIMARY KEY,
    user_id               TEXT NOT NULL,
    file_name             TEXT NOT NULL,
    file_format           TEXT NOT NULL,
    status                TEXT NOT NULL,
    account_id            TEXT,
    detected_institution  TEXT,
    detected_account_type TEXT,
    detected_account_name TEXT,
    detected_account_mask TEXT,
    transactions_found    INTEGER NOT NULL DEFAULT 0,
    transactions_imported INTEGER NOT NULL DEFAULT 0,
    duplicates_skipped    INTEGER NOT NULL DEFAULT 0,
    error_message         TEXT,
    created_at            TEXT,
    completed_at          TEXT
);

CREATE TABLE IF NOT EXISTS recurring_transactions (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id            TEXT NOT NULL,
    merchant_name      TEXT NOT NULL,
    frequency          TEXT NOT NULL,
    average_amount     TEXT NOT NULL,
    last_amount        TEXT NOT NULL,
    first_date         TEXT NOT NULL,
    last_date          TEXT NOT NULL,
    next_expected_date TEXT NOT NULL,
    transaction_ids    TEXT NOT NULL,
    category           TEXT NOT NULL,
    status             TEXT NOT NULL,
    description        TEXT NOT NULL,
    type               TEXT NOT NULL,
    UNIQUE (user_id, merchant_name, frequency)
);
"""

_IMPORT_COLUMNS = (
    "user_id", "file_name", "file_format", "status", "account_id",
    "detected_institution", "detected_account_type", "detected_account_name",
    "detected_account_mask", "transactions_found", "transactions_imported",
    "duplicates_skipped", "error_message", "created_at", "completed_at",
)


class TransactionStore(Protocol):
    """Storage operations used by the import pipeline and the detector."""

    def create_import(self, record: ImportRecord) -> None: ...

    def get_import(self, user_id: str, import_id: str) -> ImportRecord | None: ...

    def update_import(self, import_id: str, **fields) -> None: ...

    def list_accounts(self, user_id: str) -> list[Account]: ...

    def get_account(self, user_id: str, account_id: str) -> Account | None: ...

    def create_account(self, account: Account) -> None: ...

    def adjust_account_balance(self, account_id: str, delta: Decimal) -> None: ...

    def find_transactions(
        self, user_id: str, start: date, end: date, account_id: str | None = None
    ) -> list[Transaction]: ...

    def transaction_history(self, user_id: str) -> list[Transaction]: ...

    def insert_transactions(self, transactions: Sequence[Transaction]) -> int: ...

    def import_transactions(
        self, account_id: str, transactions: Sequence[Transaction]
    ) -> list[Transaction]: ...

    def delete_import(self, user_id: str, import_id: str) -> int: ...

    def upsert_recurring(self, user_id: str, pattern: RecurringPattern) -> None: ...

    def list_recurring(self, user_id: str) -> list[RecurringPattern]: ...


class SQLiteStore:
    """SQLite-backed :class:`TransactionStore`.

    Args:
        path: Database file; created with the schema if missing. ``":memory:"``
            gives a throwaway database.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = str(path)
        self.conn = sqlite3.connect(self.path)
        self.conn.row_factory = sqlite3.Row
        self.conn.executescript(_SCHEMA)

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> SQLiteStore:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # -- imports ------------------------------------------------------------

    def create_import(self, record: ImportRecord) -> None:
        created_at = record.created_at or datetime.now()
        with self.conn:
            self.conn.execute(
                """INSERT INTO statement_imports
                   (id, user_id, file_name, file_format, status, account_id,
                    detected_institution, detected_account_type, detected_account_name,
                    detected_account_mask, transactions_found, transactions_imported,
                    duplicates_skipped, error_message, created_at, completed_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    record.id, record.user_id, record.file_name, record.file_format,
                    record.status, record.account_id, record.detected_institution,
                    record.detected_account_type, record.detected_account_name,
                    record.detected_account_mask, record.transactions_found,
                    record.transactions_imported, record.duplicates_skipped,
                    record.error_message, _iso(created_at), _iso(record.completed_at),
                ),
            )

    def get_import(self, user_id: str, import_id: str) -> ImportRecord | None:
        row = self.conn.execute(
            "SELECT * FROM statement_imports WHERE id = ? AND user_id = ?",
            (import_id, user_id),
        ).fetchone()
        if row is None:
            return None
        values = dict(row)
        values["created_at"] = _parse_datetime(values["created_at"])
        values["completed_at"] = _parse_datetime(values["completed_at"])
        return ImportRecord(**values)

    def update_import(self, import_id: str, **fields) -> None:
        """Set the given columns of one import record.

        Raises:
            ValueError: If a field is not an import column.
        """
        unknown = set(fields) - set(_IMPORT_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown import fields: {', '.join(sorted(unknown))}")
        if not fields:
            return
        assignments = ", ".join(f"{name} = ?" for name in fields)
        values = [_iso(v) if isinstance(v, datetime) else v for v in fields.values()]
        with self.conn:
            self.conn.execute(
                f"UPDATE statement_imports SET {assignments} WHERE id = ?",
                (*values, import_id),
            )

    # -- accounts -----------------------------------------------------------

    def list_accounts(self, user_id: str) -> list[Account]:
        rows = self.conn.execute(
            "SELECT * FROM accounts WHERE user_id = ? ORDER BY rowid", (user_id,)
        ).fetchall()
        return [_row_to_account(row) for row in rows]

    def get_account(self, user_id: str, account_id: str) -> Account | None:
        row = self.conn.execute(
            "SELECT * FROM accounts WHERE id = ? AND user_id = ?", (account_id, user_id)
        ).fetchone()
        return _row_to_account(row) if row else None

    def create_account(self, account: Account) -> None:
        with self.conn:
            self.conn.execute(
                """INSERT INTO accounts (id, user_id, name, type, institution, mask, balance)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    account.id, account.user_id, account.name, account.type,
                    account.institution, account.mask, str(account.balance),
                ),
            )

    def adjust_account_balance(self, account_id: str, delta: Decimal) -> None:
        with self.conn:
            self._adjust_balance(account_id, delta)

    # -- transactions -------------------------------------------------------

    def find_transactions(
        self, user_id: str, start: date, end: date, account_id: str | None = None
    ) -> list[Transaction]:
        query = "SELECT * FROM transactions WHERE user_id = ? AND date >= ? AND date <= ?"
        params: list = [user_id, start.isoformat(), end.isoformat()]
        if account_id is not None:
            query += " AND account_id = ?"
            params.append(account_id)
        rows = self.conn.execute(query + " ORDER BY date, rowid", params).fetchall()
        return [_row_to_transaction(row) for row in rows]

    def transaction_history(self, user_id: str) -> list[Transaction]:
        rows = self.conn.execute(
            "SELECT * FROM transactions WHERE user_id = ? ORDER BY date, rowid", (user_id,)
        ).fetchall()
        return [_row_to_transaction(row) for row in rows]

    def insert_transactions(self, transactions: Sequence[Transaction]) -> int:
        """Insert transactions, skipping rows that already exist.

        Returns:
            The number of rows actually inserted.
        """
        with self.conn:
            inserted = self._insert_rows(transactions)
        return len(inserted)

    def import_transactions(
        self, account_id: str, transactions: Sequence[Transaction]
    ) -> list[Transaction]:
        """Insert transactions and move *account_id*'s balance by the stored ones.

        Both happen in one database transaction. Rows skipped as already
        stored leave the balance alone.

        Returns:
            The transactions actually inserted.

        Raises:
            KeyError: If the account does not exist; nothing is written.
        """
        with self.conn:
            inserted = self._insert_rows(transactions)
            if inserted:
                self._adjust_balance(account_id, balance_change(inserted))
        return inserted

    def delete_import(self, user_id: str, import_id: str) -> int:
        """Delete an import record and every transaction it created.

        Balance changes made by those transactions are reversed on their
        accounts. Everything happens in one database transaction.

        Returns:
            The number of transactions deleted.
        """
        with self.conn:
            rows = self.conn.execute(
                "SELECT * FROM transactions WHERE import_id = ? AND user_id = ?",
                (import_id, user_id),
            ).fetchall()
            by_account: dict[str, list[Transaction]] = {}
            for row in rows:
                txn = _row_to_transaction(row)
                by_account.setdefault(txn.account_id, []).append(txn)

            self.conn.execute(
                "DELETE FROM transactions WHERE import_id = ? AND user_id = ?",
                (import_id, user_id),
            )
            for account_id, txns in by_account.items():
                self._adjust_balance(account_id, -balance_change(txns))
            self.conn.execute(
                "DELETE FROM statement_imports WHERE id = ? AND user_id = ?",
                (import_id, user_id),
            )
        return len(rows)

    def _insert_rows(self, transactions: Sequence[Transaction]) -> list[Transaction]:
        inserted: list[Transaction] = []
        for t in transactions:
            cursor = self.conn.execute(
                """INSERT OR IGNORE INTO transactions
                   (id, user_id, account_id, date, amount, type, description, merchant,
                    category, external_id, import_id, category_confidence, category_source)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    t.id, t.user_id, t.account_id, t.date.isoformat(), str(t.amount),
                    t.type, t.description, t.merchant, t.category, t.external_id,
                    t.import_id, t.category_confidence, t.category_source,
                ),
            )
            if cursor.rowcount == 1:
                inserted.append(t)
        if len(inserted) < len(transactions):
            logger.info("Skipped %d already-stored transaction(s)", len(transactions) - len(inserted))
        return inserted

    def _adjust_balance(self, account_id: str, delta: Decimal) -> None:
        row = self.conn.execute(
            "SELECT balance FROM accounts WHERE id = ?", (account_id,)
        ).fetchone()
        if row is None:
            raise KeyError(f"Unknown account {account_id!r}")
        balance = Decimal(row["balance"]) + delta
        self.conn.execute(
            "UPDATE accounts SET balance = ? WHERE id = ?", (str(balance), account_id)
        )

    # -- recurring patterns -------------------------------------------------

    def upsert_recurring(self, user_id: str, pattern: RecurringPattern) -> None:
        with self.conn:
            self.conn.execute(
                """INSERT INTO recurring_transactions
                   (user_id, merchant_name, frequency, average_amount, last_amount,
                    first_date, last_date, next_expected_date, transaction_ids,
                    category, status, description, type)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT (user_id, merchant_name, frequency) DO UPDATE SET
                       average_amount = excluded.average_amount,
                       last_amount = excluded.last_amount,
                       last_date = excluded.last_date,
                       next_expected_date = excluded.next_expected_date,
                       transaction_ids = excluded.transaction_ids,
                       status = excluded.status,
                       description = excluded.description,
                       type = excluded.type""",
                (
                    user_id, pattern.merchant_name, pattern.frequency,
                    str(pattern.average_amount), str(pattern.last_amount),
                    pattern.first_date.isoformat(), pattern.last_date.isoformat(),
                    pattern.next_expected_date.isoformat(), json.dumps(pattern.transaction_ids),
                    pattern.category, pattern.status, pattern.description, pattern.type,
                ),
            )

    def list_recurring(self, user_id: str) -> list[RecurringPattern]:
        rows = self.conn.execute(
            "SELECT * FROM recurring_transactions WHERE user_id = ? ORDER BY merchant_name, frequency",
            (user_id,),
        ).fetchall()
        return [
            RecurringPattern(
                merchant_name=row["merchant_name"],
                frequency=row["frequency"],
                average_amount=Decimal(row["average_amount"]),
                last_amount=Decimal(row["last_amount"]),
                first_date=date.fromisoformat(row["first_date"]),
                last_date=date.fromisoformat(row["last_date"]),
                next_expected_date=date.fromisoformat(row["next_expected_date"]),
                transaction_ids=json.loads(row["transaction_ids"]),
                category=row["category"],
                status=row["status"],
                description=row["description"],
                type=row["type"],
            )
            for row in rows
        ]


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------


def balance_change(transactions: Sequence[Transaction]) -> Decimal:
    """Net effect of *transactions* on an account balance: income adds, the rest subtracts."""
    return sum((t.amount if t.type == INCOME else -t.amount for t in transactions), Decimal("0"))


def _row_to_account(row: sqlite3.Row) -> Account:
    return Account(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        type=row["type"],
        institution=row["institution"],
        mask=row["mask"],
        balance=Decimal(row["balance"]),
    )


def _row_to_transaction(row: sqlite3.Row) -> Transaction:
    return Transaction(
        id=row["id"],
        user_id=row["user_id"],
        account_id=row["account_id"],
        date=date.fromisoformat(row["date"]),
        amount=Decimal(row["amount"]),
        type=row["type"],
        description=row["description"],
        merchant=row["merchant"],
        category=row["category"],
        external_id=row["external_id"],
        import_id=row["import_id"],
        category_confidence=row["category_confidence"],
        category_source=row["category_source"],
    )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat(timespec="seconds") if value else None


def _parse_datetime(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None
