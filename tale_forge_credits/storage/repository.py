"""
Repository pattern for data access.

Holds account balances, the append-only transaction ledger and the usage
windows behind daily limits. Every mutation runs inside a single
``BEGIN IMMEDIATE`` transaction and is committed before the call returns.
"""

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from ..core.errors import AccountNotFound, InsufficientFunds, StoreUnavailable
from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    Account,
    AppliedTransaction,
    SubscriptionTier,
    Transaction,
    TransactionReason,
    UsageWindow,
)

logger = logging.getLogger(__name__)

_TRANSACTION_COLUMNS = (
    "transaction_id, user_id, amount, reason, reference_id, "
    "balance_after, created_at, metadata, id"
)
_ACCOUNT_COLUMNS = (
    "user_id, current_balance, subscription_tier, seed_balance, "
    "created_at, updated_at"
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_db_time(value: datetime) -> str:
    """Serialize a timestamp so lexical order matches chronological order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db_time(value: str) -> datetime:
    return datetime.fromisoformat(value)


@contextmanager
def _write_transaction(db_path: str) -> Iterator[sqlite3.Connection]:
    """Open a connection holding the database write lock until exit."""
    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    except sqlite3.OperationalError as e:
        raise StoreUnavailable(f"Credit store write failed: {e}", e) from e
    finally:
        conn.close()


@contextmanager
def _read_connection(db_path: str, snapshot: bool = False) -> Iterator[sqlite3.Connection]:
    """Open a read connection; ``snapshot`` keeps every query on one read transaction."""
    conn = get_connection(db_path)
    try:
        if snapshot:
            conn.execute("BEGIN")
        yield conn
    except sqlite3.OperationalError as e:
        raise StoreUnavailable(f"Credit store read failed: {e}", e) from e
    finally:
        conn.close()


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the account, ledger and usage window tables if they don't exist.

    The ledger is append-only: no UPDATE or DELETE is ever issued against
    ``credit_transaction``. The unique constraint over
    ``(user_id, reference_id, reason)`` is what makes charges idempotent.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS credit_account (
                user_id TEXT PRIMARY KEY,
                current_balance INTEGER NOT NULL CHECK (current_balance >= 0),
                subscription_tier TEXT NOT NULL DEFAULT 'free',
                seed_balance INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS credit_transaction (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                transaction_id TEXT NOT NULL UNIQUE,
                user_id TEXT NOT NULL REFERENCES credit_account (user_id),
                amount INTEGER NOT NULL CHECK (amount != 0),
                reason TEXT NOT NULL,
                reference_id TEXT NOT NULL,
                balance_after INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                metadata TEXT NOT NULL DEFAULT '{}',
                UNIQUE (user_id, reference_id, reason)
            );

            CREATE INDEX IF NOT EXISTS idx_credit_transaction_user_created
                ON credit_transaction (user_id, created_at, id);

            CREATE TABLE IF NOT EXISTS usage_window (
                user_id TEXT NOT NULL,
                feature TEXT NOT NULL,
                count INTEGER NOT NULL CHECK (count >= 0),
                window_start TEXT NOT NULL,
                PRIMARY KEY (user_id, feature)
            );

            CREATE TABLE IF NOT EXISTS usage_reference (
                user_id TEXT NOT NULL,
                feature TEXT NOT NULL,
                reference_id TEXT NOT NULL,
                window_start TEXT NOT NULL,
                PRIMARY KEY (user_id, feature, reference_id)
            );
        """)
    finally:
        conn.close()


def _row_to_account(row: Tuple) -> Account:
    return Account(
        user_id=row[0],
        current_balance=row[1],
        subscription_tier=SubscriptionTier(row[2]),
        seed_balance=row[3],
        created_at=_from_db_time(row[4]),
        updated_at=_from_db_time(row[5])
    )


def _row_to_transaction(row: Tuple) -> Transaction:
    return Transaction(
        transaction_id=row[0],
        user_id=row[1],
        amount=row[2],
        reason=TransactionReason(row[3]),
        reference_id=row[4],
        balance_after=row[5],
        created_at=_from_db_time(row[6]),
        metadata=json.loads(row[7]) if row[7] else {}
    )


class BalanceStore:
    """Durable home for balances and the transaction ledger.

    Each call opens its own connection, so a store instance is safe to share
    between threads. Writers are serialized by SQLite's write lock, taken at
    the start of every mutating transaction.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        clock: Callable[[], datetime] = utcnow
    ):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file
            clock: Source of ``created_at``/``updated_at`` timestamps
        """
        self.db_path = db_path
        self._clock = clock

    def initialize_schema(self) -> None:
        initialize_schema(self.db_path)

    def create_account(
        self,
        user_id: str,
        tier: SubscriptionTier = SubscriptionTier.FREE,
        seed_balance: int = 0
    ) -> Account:
        """Create an account seeded with ``seed_balance`` credits.

        Registering an existing user returns the stored account unchanged.

        Raises:
            ValueError: If user_id is empty or seed_balance is negative
        """
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required and cannot be empty")
        if seed_balance < 0:
            raise ValueError("seed_balance cannot be negative")

        now = _to_db_time(self._clock())
        with _write_transaction(self.db_path) as conn:
            cursor = conn.execute(f"""
                INSERT OR IGNORE INTO credit_account ({_ACCOUNT_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?)
            """, (user_id, seed_balance, tier.value, seed_balance, now, now))
            if cursor.rowcount:
                logger.info(
                    "Opened credit account user_id=%s tier=%s seed=%d",
                    user_id, tier.value, seed_balance
                )
            return self._select_account(conn, user_id)

    def get_account(self, user_id: str) -> Account:
        """Fetch an account.

        Raises:
            AccountNotFound: If the user has no account
        """
        with _read_connection(self.db_path) as conn:
            return self._select_account(conn, user_id)

    def get_balance(self, user_id: str) -> int:
        """Fetch the current balance of an account.

        Raises:
            AccountNotFound: If the user has no account
        """
        return self.get_account(user_id).current_balance

    def list_accounts(self) -> List[Account]:
        with _read_connection(self.db_path) as conn:
            cursor = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM credit_account ORDER BY user_id"
            )
            return [_row_to_account(row) for row in cursor.fetchall()]

    def set_subscription_tier(self, user_id: str, tier: SubscriptionTier) -> Account:
        """Move an account to another subscription tier.

        Raises:
            AccountNotFound: If the user has no account
        """
        with _write_transaction(self.db_path) as conn:
            cursor = conn.execute("""
                UPDATE credit_account SET subscription_tier = ?, updated_at = ?
                WHERE user_id = ?
            """, (tier.value, _to_db_time(self._clock()), user_id))
            if cursor.rowcount == 0:
                raise AccountNotFound(user_id)
            logger.info("Subscription tier for %s set to %s", user_id, tier.value)
            return self._select_account(conn, user_id)

    def apply_transaction(
        self,
        user_id: str,
        amount: int,
        reason: Union[TransactionReason, str],
        reference_id: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AppliedTransaction:
        """Atomically apply a signed amount to a balance and record it.

        If ``(user_id, reference_id, reason)`` was already applied, the prior
        result is returned with ``replayed=True`` and nothing is written.

        Args:
            user_id: Account to mutate
            amount: Signed credit amount, negative for spends
            reason: Ledger reason tag
            reference_id: Idempotency key, usually an artifact or event id
            metadata: Free-form diagnostic payload stored with the row

        Returns:
            The new balance and the id of the ledger transaction

        Raises:
            ValueError: If amount is zero or reference_id is empty
            AccountNotFound: If the user has no account
            InsufficientFunds: If a debit would take the balance below zero
            StoreUnavailable: If the database could not complete the write
        """
        if amount == 0:
            raise ValueError("amount must be non-zero")
        if not reference_id:
            raise ValueError("reference_id is required for idempotency")
        reason = TransactionReason(reason)

        try:
            with _write_transaction(self.db_path) as conn:
                existing = self._select_transaction(conn, user_id, reference_id, reason)
                if existing is not None:
                    return self._replay(existing, amount)

                balance = self._select_account(conn, user_id).current_balance
                new_balance = balance + amount
                if new_balance < 0:
                    raise InsufficientFunds(user_id, balance, amount)

                now = _to_db_time(self._clock())
                transaction_id = uuid.uuid4().hex
                conn.execute("""
                    UPDATE credit_account SET current_balance = ?, updated_at = ?
                    WHERE user_id = ?
                """, (new_balance, now, user_id))
                conn.execute("""
                    INSERT INTO credit_transaction
                    (transaction_id, user_id, amount, reason, reference_id,
                     balance_after, created_at, metadata)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    transaction_id,
                    user_id,
                    amount,
                    reason.value,
                    reference_id,
                    new_balance,
                    now,
                    json.dumps(metadata or {}, default=str)
                ))
        except sqlite3.IntegrityError:
            existing = self.find_transaction(user_id, reference_id, reason)
            if existing is None:
                raise
            return self._replay(existing, amount)

        logger.debug(
            "Applied %+d credits to %s (%s, ref=%s), balance now %d",
            amount, user_id, reason.value, reference_id, new_balance
        )
        return AppliedTransaction(new_balance=new_balance, transaction_id=transaction_id)

    def find_transaction(
        self,
        user_id: str,
        reference_id: str,
        reason: Union[TransactionReason, str]
    ) -> Optional[Transaction]:
        with _read_connection(self.db_path) as conn:
            return self._select_transaction(
                conn, user_id, reference_id, TransactionReason(reason)
            )

    def list_transactions(
        self,
        user_id: str,
        reason: Optional[TransactionReason] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        page_size: int = 100
    ) -> Iterator[Transaction]:
        """Iterate over a user's transactions, newest first.

        Pages are fetched lazily with keyset pagination, so the sequence stays
        consistent while new rows are appended. Calling again starts over.

        Args:
            user_id: Account whose ledger to read
            reason: Optional filter for a single reason tag
            since: Optional inclusive lower bound on ``created_at``
            until: Optional exclusive upper bound on ``created_at``
            page_size: Rows fetched per database round trip
        """
        if page_size <= 0:
            raise ValueError("page_size must be > 0")

        cursor: Optional[Tuple[str, int]] = None
        while True:
            rows = self._fetch_transaction_page(
                user_id, reason, since, until, page_size, cursor
            )
            for row in rows:
                yield _row_to_transaction(row)
            if len(rows) < page_size:
                return
            cursor = (rows[-1][6], rows[-1][8])

    def _fetch_transaction_page(
        self,
        user_id: str,
        reason: Optional[TransactionReason],
        since: Optional[datetime],
        until: Optional[datetime],
        limit: int,
        cursor: Optional[Tuple[str, int]]
    ) -> List[Tuple]:
        query = f"SELECT {_TRANSACTION_COLUMNS} FROM credit_transaction"
        conditions = ["user_id = ?"]
        params: List[Any] = [user_id]

        if reason is not None:
            conditions.append("reason = ?")
            params.append(TransactionReason(reason).value)
        if since is not None:
            conditions.append("created_at >= ?")
            params.append(_to_db_time(since))
        if until is not None:
            conditions.append("created_at < ?")
            params.append(_to_db_time(until))
        if cursor is not None:
            conditions.append("(created_at < ? OR (created_at = ? AND id < ?))")
            params.extend([cursor[0], cursor[0], cursor[1]])

        query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        with _read_connection(self.db_path) as conn:
            return conn.execute(query, params).fetchall()

    def ledger_total(self, user_id: str) -> int:
        """Sum of all transaction amounts recorded for a user."""
        with _read_connection(self.db_path) as conn:
            return self._select_ledger_total(conn, user_id)

    def account_with_ledger_total(self, user_id: str) -> Tuple[Account, int]:
        """Read an account and its ledger sum from the same snapshot.

        Raises:
            AccountNotFound: If the user has no account
        """
        with _read_connection(self.db_path, snapshot=True) as conn:
            account = self._select_account(conn, user_id)
            return account, self._select_ledger_total(conn, user_id)

    @staticmethod
    def _select_account(conn: sqlite3.Connection, user_id: str) -> Account:
        row = conn.execute(
            f"SELECT {_ACCOUNT_COLUMNS} FROM credit_account WHERE user_id = ?",
            (user_id,)
        ).fetchone()
        if row is None:
            raise AccountNotFound(user_id)
        return _row_to_account(row)

    @staticmethod
    def _select_ledger_total(conn: sqlite3.Connection, user_id: str) -> int:
        row = conn.execute(
            "SELECT COALESCE(SUM(amount), 0) FROM credit_transaction WHERE user_id = ?",
            (user_id,)
        ).fetchone()
        return int(row[0])

    @staticmethod
    def _select_transaction(
        conn: sqlite3.Connection,
        user_id: str,
        reference_id: str,
        reason: TransactionReason
    ) -> Optional[Transaction]:
        row = conn.execute(f"""
            SELECT {_TRANSACTION_COLUMNS} FROM credit_transaction
            WHERE user_id = ? AND reference_id = ? AND reason = ?
        """, (user_id, reference_id, reason.value)).fetchone()
        return _row_to_transaction(row) if row else None

    @staticmethod
    def _replay(existing: Transaction, amount: int) -> AppliedTransaction:
        if existing.amount != amount:
            logger.warning(
                "Replayed reference %s for %s with amount %+d, ledger has %+d",
                existing.reference_id, existing.user_id, amount, existing.amount
            )
        else:
            logger.info(
                "Replayed reference %s for %s (%s)",
                existing.reference_id, existing.user_id, existing.reason.value
            )
        return AppliedTransaction(
            new_balance=existing.balance_after,
            transaction_id=existing.transaction_id,
            replayed=True
        )


class UsageWindowStore:
    """Persistence for per-user, per-feature usage windows.

    Uses counted with a reference id are remembered for the lifetime of the
    window, so a retried request holds the same slot instead of a new one.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get_window(self, user_id: str, feature: str) -> Optional[UsageWindow]:
        with _read_connection(self.db_path) as conn:
            return self._select_window(conn, user_id, feature)

    def is_counted(
        self,
        user_id: str,
        feature: str,
        reference_id: str,
        now: datetime,
        period: timedelta
    ) -> bool:
        """Whether ``reference_id`` already holds a slot in the window current at ``now``."""
        with _read_connection(self.db_path) as conn:
            stored = self._select_window(conn, user_id, feature)
            if stored is None:
                return False
            return self._reference_counted(conn, stored.rolled(now, period), reference_id)

    def consume(
        self,
        user_id: str,
        feature: str,
        limit: int,
        now: datetime,
        period: timedelta,
        reference_id: Optional[str] = None
    ) -> Tuple[UsageWindow, bool]:
        """Count one use if the window has room, atomically.

        The window is rolled over first when ``period`` has elapsed since it
        started. A full window is returned unchanged and nothing is written.
        A ``reference_id`` already counted in the current window is not
        counted again and reports success.

        Returns:
            The window after the attempt and whether the use holds a slot
        """
        with _write_transaction(self.db_path) as conn:
            stored = self._select_window(conn, user_id, feature)
            if stored is None:
                window = UsageWindow(user_id=user_id, feature=feature, count=0, window_start=now)
            else:
                window = stored.rolled(now, period)
                if window.window_start != stored.window_start:
                    conn.execute(
                        "DELETE FROM usage_reference WHERE user_id = ? AND feature = ?",
                        (user_id, feature)
                    )

            if reference_id is not None and self._reference_counted(conn, window, reference_id):
                return window, True

            if window.count >= limit:
                return window, False

            updated = replace(window, count=window.count + 1)
            window_start = _to_db_time(updated.window_start)
            conn.execute("""
                INSERT INTO usage_window (user_id, feature, count, window_start)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (user_id, feature) DO UPDATE SET
                    count = excluded.count,
                    window_start = excluded.window_start
            """, (user_id, feature, updated.count, window_start))
            if reference_id is not None:
                conn.execute("""
                    INSERT OR REPLACE INTO usage_reference
                    (user_id, feature, reference_id, window_start)
                    VALUES (?, ?, ?, ?)
                """, (user_id, feature, reference_id, window_start))
            return updated, True

    @staticmethod
    def _select_window(
        conn: sqlite3.Connection,
        user_id: str,
        feature: str
    ) -> Optional[UsageWindow]:
        row = conn.execute("""
            SELECT count, window_start FROM usage_window
            WHERE user_id = ? AND feature = ?
        """, (user_id, feature)).fetchone()
        if row is None:
            return None
        return UsageWindow(
            user_id=user_id,
            feature=feature,
            count=row[0],
            window_start=_from_db_time(row[1])
        )

    @staticmethod
    def _reference_counted(
        conn: sqlite3.Connection,
        window: UsageWindow,
        reference_id: str
    ) -> bool:
        row = conn.execute("""
            SELECT window_start FROM usage_reference
            WHERE user_id = ? AND feature = ? AND reference_id = ?
        """, (window.user_id, window.feature, reference_id)).fetchone()
        return row is not None and row[0] == _to_db_time(window.window_start)
