"""
Async Account Store Module

Provides the async account store interface and its implementations: an
in-memory store for tests and single-process use, a durable SQLite store, and
production async PostgreSQL using asyncpg.

Every store exposes one mutation, atomic_adjust(), which checks the credit
limit against the post-transaction balance and writes the new balance together
with the transaction record as a single indivisible unit.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional
from datetime import datetime, timezone
from pathlib import Path
import asyncio
import sqlite3
import threading

import asyncpg

from .config import LedgerConfig, get_config
from .errors import AccountMissingError, ConstraintViolationError, StorageUnavailableError
from .logging_config import get_logger
from .migrations import MIGRATION_LOCK_ID, MIGRATION_TABLE, MigrationManager
from .models import (
    STATEMENT_SIZE, Account, BalanceResult, StatementSnapshot,
    TransactionKind, TransactionRecord
)


logger = get_logger("ledger.storage")


def _check_delta(delta: int) -> None:
    if delta == 0:
        raise ValueError("delta must be non-zero")


class AccountStoreInterface(ABC):
    """Abstract interface for async account stores"""

    async def initialize(self) -> None:
        """Open connections and apply schema (default no-op)"""
        pass

    async def close(self) -> None:
        """Release connections (default no-op)"""
        pass

    async def __aenter__(self) -> 'AccountStoreInterface':
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @abstractmethod
    async def atomic_adjust(self, account_id: int, delta: int, description: str) -> BalanceResult:
        """
        Apply a signed delta to an account and append its transaction record.

        Raises AccountMissingError when the account does not exist and
        ConstraintViolationError when balance + delta + credit_limit < 0. In
        both cases nothing is written.
        """
        pass

    @abstractmethod
    async def get_account(self, account_id: int) -> Optional[Account]:
        """Load the current account row"""
        pass

    @abstractmethod
    async def get_statement(self, account_id: int, limit: int = STATEMENT_SIZE) -> StatementSnapshot:
        """Account state plus its newest transactions, newest first"""
        pass

    @abstractmethod
    async def provision_accounts(self, accounts: Iterable[Account]) -> None:
        """Insert accounts that do not exist yet; existing rows are left alone"""
        pass

    @abstractmethod
    async def reset(self) -> None:
        """Zero every balance and clear the transaction log"""
        pass


class AsyncInMemoryAccountStore(AccountStoreInterface):
    """
    Process-local store. Each account has its own asyncio.Lock held across
    read-check-write, so it is only correct for a single service instance.
    """

    def __init__(self):
        self._accounts: Dict[int, Account] = {}
        self._transactions: Dict[int, List[TransactionRecord]] = {}
        self._locks: Dict[int, asyncio.Lock] = {}

    async def atomic_adjust(self, account_id: int, delta: int, description: str) -> BalanceResult:
        _check_delta(delta)
        lock = self._locks.get(account_id)
        if lock is None:
            raise AccountMissingError(account_id)

        async with lock:
            account = self._accounts[account_id]
            if not account.can_apply(delta):
                raise ConstraintViolationError(account_id)

            record = TransactionRecord(
                account_id=account_id,
                amount=abs(delta),
                kind=TransactionKind.from_delta(delta),
                description=description,
                occurred_at=datetime.now(timezone.utc)
            )
            # No await between these two writes
            account.balance += delta
            self._transactions[account_id].append(record)
            return BalanceResult(balance=account.balance, credit_limit=account.credit_limit)

    async def get_account(self, account_id: int) -> Optional[Account]:
        account = self._accounts.get(account_id)
        if account is None:
            return None
        return Account(id=account.id, credit_limit=account.credit_limit, balance=account.balance)

    async def get_statement(self, account_id: int, limit: int = STATEMENT_SIZE) -> StatementSnapshot:
        account = self._accounts.get(account_id)
        if account is None:
            raise AccountMissingError(account_id)

        recent = self._transactions[account_id][-limit:] if limit > 0 else []
        return StatementSnapshot(
            current_balance=account.balance,
            credit_limit=account.credit_limit,
            recent_transactions=list(reversed(recent))
        )

    async def provision_accounts(self, accounts: Iterable[Account]) -> None:
        for account in accounts:
            if account.id in self._accounts:
                continue
            self._accounts[account.id] = Account(
                id=account.id, credit_limit=account.credit_limit, balance=account.balance
            )
            self._transactions[account.id] = []
            self._locks[account.id] = asyncio.Lock()

    async def reset(self) -> None:
        for account_id, account in self._accounts.items():
            async with self._locks[account_id]:
                account.balance = 0
                self._transactions[account_id] = []


SQLITE_ADJUST = """
    UPDATE accounts
    SET balance = balance + ?
    WHERE id = ? AND balance + ? + credit_limit >= 0
"""

SQLITE_INSERT_TRANSACTION = """
    INSERT INTO transactions (account_id, amount, kind, description, occurred_at)
    VALUES (?, ?, ?, ?, ?)
"""

SQLITE_STATEMENT = """
    SELECT
        a.credit_limit AS credit_limit,
        a.balance AS balance,
        t.amount AS amount,
        t.kind AS kind,
        t.description AS description,
        t.occurred_at AS occurred_at
    FROM accounts a
    LEFT JOIN transactions t ON t.account_id = a.id
    WHERE a.id = ?
    ORDER BY t.id DESC
    LIMIT ?
"""


class AsyncSQLiteAccountStore(AccountStoreInterface):
    """
    Durable store on a SQLite file. Blocking sqlite3 calls run in a worker
    thread. Each adjustment takes the database write lock with BEGIN IMMEDIATE,
    so separate connections and processes sharing the file are serialized by
    SQLite itself.
    """

    def __init__(self, db_path: str = ":memory:", busy_timeout: float = 5.0):
        self.db_path = str(db_path)
        self.busy_timeout = busy_timeout
        self._writer: Optional[sqlite3.Connection] = None
        self._reader: Optional[sqlite3.Connection] = None
        self._write_lock = threading.Lock()
        self._read_lock = threading.Lock()

    @property
    def _is_memory(self) -> bool:
        return self.db_path == ":memory:"

    def _connect(self) -> sqlite3.Connection:
        # isolation_level=None: transactions are issued explicitly
        connection = sqlite3.connect(
            self.db_path,
            timeout=self.busy_timeout,
            isolation_level=None,
            check_same_thread=False
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.Error as e:
            logger.error(f"SQLite operation {func.__name__} failed: {e}")
            raise StorageUnavailableError(f"SQLite error: {e}") from e

    def _writer_connection(self) -> sqlite3.Connection:
        if self._writer is None:
            raise RuntimeError("Store not initialized. Call initialize() first.")
        return self._writer

    def _initialize_sync(self) -> None:
        if not self._is_memory:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._writer = self._connect()
        if not self._is_memory:
            self._writer.execute("PRAGMA journal_mode = WAL")
            self._writer.execute("PRAGMA synchronous = NORMAL")
            # WAL readers never wait for the writer
            self._reader = self._connect()
        self._migrate_sync()

    def _migrate_sync(self) -> None:
        conn = self._writer
        with self._write_lock:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(f"""
                    CREATE TABLE IF NOT EXISTS {MIGRATION_TABLE} (
                        version INTEGER PRIMARY KEY,
                        name TEXT NOT NULL,
                        applied_at TEXT NOT NULL
                    )
                """)
                applied = [row["version"] for row in conn.execute(f"SELECT version FROM {MIGRATION_TABLE}")]
                manager = MigrationManager()
                pending = manager.get_pending_migrations(applied)
                for migration in pending:
                    for statement in migration.statements("sqlite"):
                        conn.execute(statement)
                    conn.execute(
                        f"INSERT INTO {MIGRATION_TABLE} (version, name, applied_at) VALUES (?, ?, ?)",
                        (migration.version, migration.name, datetime.now(timezone.utc).isoformat())
                    )
                    logger.info(f"Applied {migration}")
                if pending:
                    logger.info(f"SQLite schema at version {manager.get_latest_version()}")
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    async def initialize(self) -> None:
        """Open connections and apply pending migrations"""
        if self._writer is not None:
            return
        await self._run(self._initialize_sync)

    def _close_sync(self) -> None:
        with self._write_lock, self._read_lock:
            for connection in (self._reader, self._writer):
                if connection is not None:
                    connection.close()
            self._reader = None
            self._writer = None

    async def close(self) -> None:
        await asyncio.to_thread(self._close_sync)

    def _adjust_sync(self, account_id: int, delta: int, description: str) -> BalanceResult:
        with self._write_lock:
            conn = self._writer_connection()
            conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = conn.execute(SQLITE_ADJUST, (delta, account_id, delta))
                if cursor.rowcount == 0:
                    exists = conn.execute("SELECT 1 FROM accounts WHERE id = ?", (account_id,)).fetchone()
                    if exists is None:
                        raise AccountMissingError(account_id)
                    raise ConstraintViolationError(account_id)

                row = conn.execute(
                    "SELECT balance, credit_limit FROM accounts WHERE id = ?", (account_id,)
                ).fetchone()
                conn.execute(SQLITE_INSERT_TRANSACTION, (
                    account_id,
                    abs(delta),
                    TransactionKind.from_delta(delta).value,
                    description,
                    datetime.now(timezone.utc).isoformat()
                ))
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            return BalanceResult(balance=row["balance"], credit_limit=row["credit_limit"])

    async def atomic_adjust(self, account_id: int, delta: int, description: str) -> BalanceResult:
        _check_delta(delta)
        return await self._run(self._adjust_sync, account_id, delta, description)

    def _read_sync(self, query: str, params: tuple) -> List[sqlite3.Row]:
        if self._reader is not None:
            with self._read_lock:
                return self._reader.execute(query, params).fetchall()
        with self._write_lock:
            return self._writer_connection().execute(query, params).fetchall()

    async def get_account(self, account_id: int) -> Optional[Account]:
        rows = await self._run(
            self._read_sync, "SELECT id, credit_limit, balance FROM accounts WHERE id = ?", (account_id,)
        )
        if not rows:
            return None
        row = rows[0]
        return Account(id=row["id"], credit_limit=row["credit_limit"], balance=row["balance"])

    async def get_statement(self, account_id: int, limit: int = STATEMENT_SIZE) -> StatementSnapshot:
        # One SELECT is one read transaction, so the balance and the
        # transaction rows come from the same commit
        rows = await self._run(self._read_sync, SQLITE_STATEMENT, (account_id, max(limit, 1)))
        if not rows:
            raise AccountMissingError(account_id)

        first = rows[0]
        transactions = []
        if limit > 0:
            for row in rows:
                if row["amount"] is None:
                    continue
                transactions.append(TransactionRecord(
                    account_id=account_id,
                    amount=row["amount"],
                    kind=TransactionKind(row["kind"]),
                    description=row["description"],
                    occurred_at=datetime.fromisoformat(row["occurred_at"])
                ))

        return StatementSnapshot(
            current_balance=first["balance"],
            credit_limit=first["credit_limit"],
            recent_transactions=transactions
        )

    def _provision_sync(self, accounts: List[Account]) -> None:
        with self._write_lock:
            conn = self._writer_connection()
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.executemany(
                    "INSERT OR IGNORE INTO accounts (id, credit_limit, balance) VALUES (?, ?, ?)",
                    [(a.id, a.credit_limit, a.balance) for a in accounts]
                )
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    async def provision_accounts(self, accounts: Iterable[Account]) -> None:
        await self._run(self._provision_sync, list(accounts))

    def _reset_sync(self) -> None:
        with self._write_lock:
            conn = self._writer_connection()
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute("DELETE FROM transactions")
                conn.execute("UPDATE accounts SET balance = 0")
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    async def reset(self) -> None:
        await self._run(self._reset_sync)


# The whole adjustment is a single statement. The UPDATE's WHERE clause is
# re-evaluated against the latest committed row when it waits on a
# concurrent writer, and the INSERT only sees a row if the UPDATE matched.
POSTGRES_ADJUST = """
    WITH updated AS (
        UPDATE accounts
        SET balance = balance + $2
        WHERE id = $1 AND balance + $2 + credit_limit >= 0
        RETURNING balance, credit_limit
    ),
    inserted AS (
        INSERT INTO transactions (account_id, amount, kind, description)
        SELECT $1::integer, $3::integer, $4::char(1), $5::varchar FROM updated
    )
    SELECT
        EXISTS (SELECT 1 FROM accounts WHERE id = $1) AS found,
        (SELECT balance FROM updated) AS balance,
        (SELECT credit_limit FROM updated) AS credit_limit
"""

POSTGRES_STATEMENT = """
    SELECT
        a.credit_limit AS credit_limit,
        a.balance AS balance,
        t.amount AS amount,
        t.kind AS kind,
        t.description AS description,
        t.occurred_at AS occurred_at
    FROM accounts a
    LEFT JOIN transactions t ON t.account_id = a.id
    WHERE a.id = $1
    ORDER BY t.id DESC NULLS LAST
    LIMIT $2
"""


class AsyncPostgreSQLAccountStore(AccountStoreInterface):
    """True async PostgreSQL using asyncpg"""

    def __init__(self, connection_string: str, min_size: int = 2, pool_size: int = 10,
                 command_timeout: float = 30.0):
        self.connection_string = connection_string
        self.min_size = min_size
        self.pool_size = pool_size
        self.command_timeout = command_timeout
        self.pool = None

    async def initialize(self) -> None:
        """Create connection pool and apply migrations. Call on app startup"""
        if self.pool is not None:
            return
        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_size,
                max_size=self.pool_size,
                command_timeout=self.command_timeout
            )
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"Could not connect to PostgreSQL: {e}")
            raise StorageUnavailableError(f"PostgreSQL unavailable: {e}") from e
        await self._migrate()

    async def close(self) -> None:
        """Close pool. Call on app shutdown"""
        if self.pool:
            await self.pool.close()
            self.pool = None

    def _require_pool(self):
        if not self.pool:
            raise RuntimeError("Pool not initialized. Call initialize() first.")
        return self.pool

    async def _guarded(self, coro):
        try:
            return await coro
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
            logger.error(f"PostgreSQL operation failed: {e}")
            raise StorageUnavailableError(f"PostgreSQL error: {e}") from e

    async def _migrate(self) -> None:
        async def run():
            async with self._require_pool().acquire() as conn:
                async with conn.transaction():
                    await conn.execute("SELECT pg_advisory_xact_lock($1)", MIGRATION_LOCK_ID)
                    await conn.execute(f"""
                        CREATE TABLE IF NOT EXISTS {MIGRATION_TABLE} (
                            version INTEGER PRIMARY KEY,
                            name TEXT NOT NULL,
                            applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                        )
                    """)
                    rows = await conn.fetch(f"SELECT version FROM {MIGRATION_TABLE}")
                    applied = [row["version"] for row in rows]
                    manager = MigrationManager()
                    pending = manager.get_pending_migrations(applied)
                    for migration in pending:
                        for statement in migration.statements("postgresql"):
                            await conn.execute(statement)
                        await conn.execute(
                            f"INSERT INTO {MIGRATION_TABLE} (version, name) VALUES ($1, $2)",
                            migration.version, migration.name
                        )
                        logger.info(f"Applied {migration}")
                    if pending:
                        logger.info(f"PostgreSQL schema at version {manager.get_latest_version()}")

        await self._guarded(run())

    async def atomic_adjust(self, account_id: int, delta: int, description: str) -> BalanceResult:
        _check_delta(delta)
        pool = self._require_pool()
        row = await self._guarded(pool.fetchrow(
            POSTGRES_ADJUST,
            account_id,
            delta,
            abs(delta),
            TransactionKind.from_delta(delta).value,
            description
        ))
        if not row["found"]:
            raise AccountMissingError(account_id)
        if row["balance"] is None:
            raise ConstraintViolationError(account_id)
        return BalanceResult(balance=row["balance"], credit_limit=row["credit_limit"])

    async def get_account(self, account_id: int) -> Optional[Account]:
        pool = self._require_pool()
        row = await self._guarded(pool.fetchrow(
            "SELECT id, credit_limit, balance FROM accounts WHERE id = $1", account_id
        ))
        if row is None:
            return None
        return Account(id=row["id"], credit_limit=row["credit_limit"], balance=row["balance"])

    async def get_statement(self, account_id: int, limit: int = STATEMENT_SIZE) -> StatementSnapshot:
        pool = self._require_pool()
        rows = await self._guarded(pool.fetch(POSTGRES_STATEMENT, account_id, max(limit, 1)))
        if not rows:
            raise AccountMissingError(account_id)

        first = rows[0]
        transactions = []
        if limit > 0:
            transactions = [
                TransactionRecord(
                    account_id=account_id,
                    amount=row["amount"],
                    kind=TransactionKind(row["kind"]),
                    description=row["description"],
                    occurred_at=row["occurred_at"]
                )
                for row in rows if row["amount"] is not None
            ]

        return StatementSnapshot(
            current_balance=first["balance"],
            credit_limit=first["credit_limit"],
            recent_transactions=transactions
        )

    async def provision_accounts(self, accounts: Iterable[Account]) -> None:
        pool = self._require_pool()
        await self._guarded(pool.executemany(
            """
            INSERT INTO accounts (id, credit_limit, balance)
            VALUES ($1, $2, $3)
            ON CONFLICT (id) DO NOTHING
            """,
            [(a.id, a.credit_limit, a.balance) for a in accounts]
        ))

    async def reset(self) -> None:
        async def run():
            async with self._require_pool().acquire() as conn:
                async with conn.transaction():
                    await conn.execute("TRUNCATE transactions")
                    await conn.execute("UPDATE accounts SET balance = 0")

        await self._guarded(run())


def create_account_store(config: Optional[LedgerConfig] = None) -> AccountStoreInterface:
    """Factory function to create the configured account store"""
    if config is None:
        config = get_config()

    storage_type = config.storage_type.lower()
    if storage_type == "postgresql":
        return AsyncPostgreSQLAccountStore(
            config.database_url,
            min_size=config.database_pool_min_size,
            pool_size=config.database_pool_size,
            command_timeout=config.database_command_timeout
        )
    if storage_type == "sqlite":
        return AsyncSQLiteAccountStore(config.sqlite_path, busy_timeout=config.sqlite_busy_timeout)
    if storage_type == "memory":
        return AsyncInMemoryAccountStore()
    raise ValueError(f"Unknown storage type: {config.storage_type}")
