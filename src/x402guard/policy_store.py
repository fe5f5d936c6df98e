"""
Durable policy state for guarded accounts.

State is persisted in SQLite. Mutations run inside a ``unit_of_work`` opened
with BEGIN IMMEDIATE, so a check and the spend it authorizes commit or roll
back together. ``account_lock`` serializes operations on one account across
threads and processes while leaving other accounts free to proceed.
"""

from __future__ import annotations

import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from .account import GuardedAccount, PendingPayment
from .errors import AccountNotFoundError, InvalidPaymentIdError
from .storage import (
    ensure_private_dir,
    ensure_private_file,
    exclusive_lock,
    safe_child_path,
)


DEFAULT_GUARD_DIR = Path.home() / ".x402guard"
DB_FILENAME = "guard.sqlite3"


class StoreSession:
    """Row-level operations on one open connection."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    # ----- accounts -----

    def insert_account(self, account: GuardedAccount) -> None:
        self.conn.execute(
            """
            INSERT INTO guarded_accounts (
                account_id, owner, agent, max_per_transaction, daily_limit,
                approval_threshold, daily_spent, total_spent, last_reset_day,
                allow_all_endpoints, pending_count, created_at, last_updated
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                account.account_id,
                account.owner,
                account.agent,
                account.max_per_transaction,
                account.daily_limit,
                account.approval_threshold,
                account.daily_spent,
                account.total_spent,
                account.last_reset_day,
                int(account.allow_all_endpoints),
                account.pending_count,
                account.created_at,
                account.created_at,
            ),
        )

    def load_account(self, account_id: str) -> GuardedAccount:
        row = self.conn.execute(
            "SELECT * FROM guarded_accounts WHERE account_id = ?",
            (account_id,),
        ).fetchone()
        if row is None:
            raise AccountNotFoundError(account_id)
        return _row_to_account(row)

    def update_policy(
        self,
        account_id: str,
        max_per_transaction: int,
        daily_limit: int,
        approval_threshold: int,
    ) -> None:
        self.conn.execute(
            """
            UPDATE guarded_accounts
            SET max_per_transaction = ?, daily_limit = ?, approval_threshold = ?,
                last_updated = ?
            WHERE account_id = ?
            """,
            (max_per_transaction, daily_limit, approval_threshold, int(time.time()), account_id),
        )

    def update_agent(self, account_id: str, agent: str) -> None:
        self.conn.execute(
            "UPDATE guarded_accounts SET agent = ?, last_updated = ? WHERE account_id = ?",
            (agent, int(time.time()), account_id),
        )

    def update_allow_all(self, account_id: str, allow_all: bool) -> None:
        self.conn.execute(
            """
            UPDATE guarded_accounts SET allow_all_endpoints = ?, last_updated = ?
            WHERE account_id = ?
            """,
            (int(allow_all), int(time.time()), account_id),
        )

    def apply_spend(self, account_id: str, amount: int, today: int) -> int:
        """Apply the day reset, add ``amount`` to both counters, return daily_spent."""
        self.conn.execute(
            """
            UPDATE guarded_accounts
            SET daily_spent = (CASE WHEN last_reset_day = ? THEN daily_spent ELSE 0 END) + ?,
                last_reset_day = ?,
                total_spent = total_spent + ?,
                last_updated = ?
            WHERE account_id = ?
            """,
            (today, amount, today, amount, int(time.time()), account_id),
        )
        row = self.conn.execute(
            "SELECT daily_spent FROM guarded_accounts WHERE account_id = ?",
            (account_id,),
        ).fetchone()
        if row is None:
            raise AccountNotFoundError(account_id)
        return row["daily_spent"]

    def account_ids(self, owner: Optional[str] = None) -> list[str]:
        if owner is None:
            rows = self.conn.execute(
                "SELECT account_id FROM guarded_accounts ORDER BY created_at ASC, rowid ASC"
            ).fetchall()
        else:
            rows = self.conn.execute(
                """
                SELECT account_id FROM guarded_accounts WHERE owner = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (owner,),
            ).fetchall()
        return [r["account_id"] for r in rows]

    def count_accounts(self, owner: Optional[str] = None) -> int:
        if owner is None:
            row = self.conn.execute("SELECT COUNT(*) AS n FROM guarded_accounts").fetchone()
        else:
            row = self.conn.execute(
                "SELECT COUNT(*) AS n FROM guarded_accounts WHERE owner = ?",
                (owner,),
            ).fetchone()
        return row["n"]

    # ----- endpoint allowlist -----

    def set_endpoint(self, account_id: str, endpoint_id: str, allowed: bool) -> None:
        self.conn.execute(
            """
            INSERT INTO allowed_endpoints (account_id, endpoint_id, allowed, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (account_id, endpoint_id)
            DO UPDATE SET allowed = excluded.allowed, updated_at = excluded.updated_at
            """,
            (account_id, endpoint_id, int(allowed), int(time.time())),
        )

    def is_endpoint_allowed(self, account_id: str, endpoint_id: str) -> bool:
        row = self.conn.execute(
            """
            SELECT allowed FROM allowed_endpoints
            WHERE account_id = ? AND endpoint_id = ?
            """,
            (account_id, endpoint_id),
        ).fetchone()
        return bool(row["allowed"]) if row else False

    def list_endpoints(self, account_id: str) -> list[str]:
        rows = self.conn.execute(
            """
            SELECT endpoint_id FROM allowed_endpoints
            WHERE account_id = ? AND allowed = 1
            ORDER BY updated_at ASC, endpoint_id ASC
            """,
            (account_id,),
        ).fetchall()
        return [r["endpoint_id"] for r in rows]

    # ----- pending payments -----

    def append_pending(
        self,
        account_id: str,
        to: str,
        amount: int,
        endpoint_id: str,
        created_at: int,
        expiry: int,
    ) -> PendingPayment:
        account = self.load_account(account_id)
        payment_id = account.pending_count
        self.conn.execute(
            """
            INSERT INTO pending_payments (
                account_id, payment_id, to_address, amount, endpoint_id,
                created_at, expiry, executed, rejected
            ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, 0)
            """,
            (account_id, payment_id, to, amount, endpoint_id, created_at, expiry),
        )
        self.conn.execute(
            """
            UPDATE guarded_accounts SET pending_count = pending_count + 1, last_updated = ?
            WHERE account_id = ?
            """,
            (int(time.time()), account_id),
        )
        return PendingPayment(
            payment_id=payment_id,
            account_id=account_id,
            to=to,
            amount=amount,
            endpoint_id=endpoint_id,
            created_at=created_at,
            expiry=expiry,
        )

    def load_pending(self, account_id: str, payment_id: int) -> PendingPayment:
        row = self.conn.execute(
            "SELECT * FROM pending_payments WHERE account_id = ? AND payment_id = ?",
            (account_id, payment_id),
        ).fetchone()
        if row is None:
            raise InvalidPaymentIdError(payment_id)
        return _row_to_pending(row)

    def mark_pending(
        self,
        account_id: str,
        payment_id: int,
        *,
        executed: bool = False,
        rejected: bool = False,
    ) -> None:
        if executed == rejected:
            raise ValueError("Exactly one of executed/rejected must be set")
        cursor = self.conn.execute(
            """
            UPDATE pending_payments SET executed = ?, rejected = ?
            WHERE account_id = ? AND payment_id = ? AND executed = 0 AND rejected = 0
            """,
            (int(executed), int(rejected), account_id, payment_id),
        )
        if cursor.rowcount != 1:
            raise RuntimeError(f"Pending payment {payment_id} changed state concurrently")

    def list_pending(self, account_id: str) -> list[PendingPayment]:
        rows = self.conn.execute(
            """
            SELECT * FROM pending_payments WHERE account_id = ?
            ORDER BY payment_id ASC
            """,
            (account_id,),
        ).fetchall()
        return [_row_to_pending(r) for r in rows]


class PolicyStore:
    """
    SQLite-backed store of guarded accounts, allowlists and approval queues.

    One database holds every account; all statements are keyed by account id.
    """

    def __init__(self, guard_dir: Optional[Path] = None):
        self.guard_dir = guard_dir or DEFAULT_GUARD_DIR
        ensure_private_dir(self.guard_dir)
        self.db_path = self.guard_dir / DB_FILENAME
        self.lock_dir = self.guard_dir / "locks"
        ensure_private_dir(self.lock_dir)
        self._init_db()
        ensure_private_file(self.db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS guarded_accounts (
                    account_id TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    agent TEXT NOT NULL,
                    max_per_transaction INTEGER NOT NULL,
                    daily_limit INTEGER NOT NULL,
                    approval_threshold INTEGER NOT NULL,
                    daily_spent INTEGER NOT NULL DEFAULT 0,
                    total_spent INTEGER NOT NULL DEFAULT 0,
                    last_reset_day INTEGER NOT NULL DEFAULT 0,
                    allow_all_endpoints INTEGER NOT NULL DEFAULT 0,
                    pending_count INTEGER NOT NULL DEFAULT 0,
                    created_at INTEGER NOT NULL,
                    last_updated INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_guarded_accounts_owner
                ON guarded_accounts (owner)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS allowed_endpoints (
                    account_id TEXT NOT NULL,
                    endpoint_id TEXT NOT NULL,
                    allowed INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    PRIMARY KEY (account_id, endpoint_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pending_payments (
                    account_id TEXT NOT NULL,
                    payment_id INTEGER NOT NULL,
                    to_address TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    endpoint_id TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    expiry INTEGER NOT NULL,
                    executed INTEGER NOT NULL DEFAULT 0,
                    rejected INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (account_id, payment_id),
                    CHECK (NOT (executed = 1 AND rejected = 1))
                )
                """
            )
        finally:
            conn.close()

    @contextmanager
    def account_lock(self, account_id: str) -> Iterator[None]:
        """Serialize all mutating operations on one account."""
        lock_path = safe_child_path(self.lock_dir, account_id, ".lock")
        with exclusive_lock(lock_path):
            yield

    @contextmanager
    def unit_of_work(self) -> Iterator[StoreSession]:
        """Open a write transaction; commit on success, roll back on any error."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield StoreSession(conn)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def snapshot(self) -> Iterator[StoreSession]:
        """Read-only session; each statement sees committed state."""
        conn = self._connect()
        try:
            yield StoreSession(conn)
        finally:
            conn.close()

    def get_account(self, account_id: str) -> GuardedAccount:
        with self.snapshot() as session:
            return session.load_account(account_id)

    def get_pending(self, account_id: str, payment_id: int) -> PendingPayment:
        with self.snapshot() as session:
            session.load_account(account_id)
            return session.load_pending(account_id, payment_id)

    def list_pending(self, account_id: str) -> list[PendingPayment]:
        with self.snapshot() as session:
            session.load_account(account_id)
            return session.list_pending(account_id)

    def is_endpoint_allowed(self, account_id: str, endpoint_id: str) -> bool:
        with self.snapshot() as session:
            return session.is_endpoint_allowed(account_id, endpoint_id)

    def list_endpoints(self, account_id: str) -> list[str]:
        with self.snapshot() as session:
            return session.list_endpoints(account_id)

    def account_ids(self, owner: Optional[str] = None) -> list[str]:
        with self.snapshot() as session:
            return session.account_ids(owner)


def _row_to_account(row: sqlite3.Row) -> GuardedAccount:
    return GuardedAccount(
        account_id=row["account_id"],
        owner=row["owner"],
        agent=row["agent"],
        max_per_transaction=row["max_per_transaction"],
        daily_limit=row["daily_limit"],
        approval_threshold=row["approval_threshold"],
        daily_spent=row["daily_spent"],
        total_spent=row["total_spent"],
        last_reset_day=row["last_reset_day"],
        allow_all_endpoints=bool(row["allow_all_endpoints"]),
        pending_count=row["pending_count"],
        created_at=row["created_at"],
    )


def _row_to_pending(row: sqlite3.Row) -> PendingPayment:
    return PendingPayment(
        payment_id=row["payment_id"],
        account_id=row["account_id"],
        to=row["to_address"],
        amount=row["amount"],
        endpoint_id=row["endpoint_id"],
        created_at=row["created_at"],
        expiry=row["expiry"],
        executed=bool(row["executed"]),
        rejected=bool(row["rejected"]),
    )
