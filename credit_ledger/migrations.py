"""
Database Migration System

Versioned schema definitions for the SQL-backed account stores, plus the
pre-provisioned account set. Each store applies pending migrations from
initialize() and records them in schema_migrations.
"""

from dataclasses import dataclass, field
from typing import Iterable, List

from .models import Account


MIGRATION_TABLE = "schema_migrations"

# Key for pg_advisory_xact_lock so concurrent instances migrate one at a time
MIGRATION_LOCK_ID = 0x1ED6E5

# Accounts provisioned for the service. Balances start at zero.
SEED_ACCOUNTS = [
    Account(id=1, credit_limit=100000),
    Account(id=2, credit_limit=80000),
    Account(id=3, credit_limit=1000000),
    Account(id=4, credit_limit=10000000),
    Account(id=5, credit_limit=500000),
]


@dataclass
class Migration:
    """A single schema change, written once per SQL dialect"""
    version: int
    name: str
    sqlite: List[str] = field(default_factory=list)
    postgresql: List[str] = field(default_factory=list)
    
    def statements(self, backend: str) -> List[str]:
        if backend == "sqlite":
            return self.sqlite
        if backend == "postgresql":
            return self.postgresql
        raise ValueError(f"Unknown migration backend: {backend}")
    
    def __str__(self) -> str:
        return f"Migration v{self.version:03d}: {self.name}"


MIGRATIONS = [
    Migration(
        1, "Create accounts table",
        sqlite=["""
            CREATE TABLE IF NOT EXISTS accounts (
                id INTEGER PRIMARY KEY,
                credit_limit INTEGER NOT NULL CHECK (credit_limit >= 0),
                balance INTEGER NOT NULL DEFAULT 0,
                CHECK (balance + credit_limit >= 0)
            )
        """],
        postgresql=["""
            CREATE TABLE IF NOT EXISTS accounts (
                id INTEGER PRIMARY KEY,
                credit_limit INTEGER NOT NULL CHECK (credit_limit >= 0),
                balance INTEGER NOT NULL DEFAULT 0,
                CONSTRAINT balance_within_limit CHECK (balance + credit_limit >= 0)
            )
        """],
    ),
    Migration(
        2, "Create transactions log",
        sqlite=[
            """
            CREATE TABLE IF NOT EXISTS transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                account_id INTEGER NOT NULL REFERENCES accounts (id),
                amount INTEGER NOT NULL CHECK (amount > 0),
                kind TEXT NOT NULL CHECK (kind IN ('c', 'd')),
                description TEXT NOT NULL,
                occurred_at TEXT NOT NULL
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_transactions_account_recent
            ON transactions (account_id, id DESC)
            """,
        ],
        postgresql=[
            """
            CREATE TABLE IF NOT EXISTS transactions (
                id BIGSERIAL PRIMARY KEY,
                account_id INTEGER NOT NULL REFERENCES accounts (id),
                amount INTEGER NOT NULL CHECK (amount > 0),
                kind CHAR(1) NOT NULL CHECK (kind IN ('c', 'd')),
                description VARCHAR(10) NOT NULL,
                occurred_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_transactions_account_recent
            ON transactions (account_id, id DESC)
            """,
        ],
    ),
]


class MigrationManager:
    """Tracks which migrations a store still has to apply"""
    
    def __init__(self, migrations: Iterable[Migration] = None):
        self.migrations: List[Migration] = sorted(
            migrations if migrations is not None else MIGRATIONS,
            key=lambda m: m.version
        )
        versions = [m.version for m in self.migrations]
        if len(versions) != len(set(versions)):
            raise ValueError("Duplicate migration versions")
    
    def get_pending_migrations(self, applied_versions: Iterable[int]) -> List[Migration]:
        """Migrations not yet recorded as applied, in version order"""
        applied = set(applied_versions)
        return [m for m in self.migrations if m.version not in applied]
    
    def get_latest_version(self) -> int:
        return self.migrations[-1].version if self.migrations else 0
