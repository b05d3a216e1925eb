"""
Tests for Async Account Stores

Exercises the in-memory and SQLite stores through the same contract:
atomic adjustment, credit-limit rejection, statements, provisioning and
reset. PostgreSQL tests run only when a server is reachable.
"""

import asyncio
import logging
import os

import pytest
import pytest_asyncio

from credit_ledger.async_storage import (
    AsyncInMemoryAccountStore,
    AsyncPostgreSQLAccountStore,
    AsyncSQLiteAccountStore,
    create_account_store
)
from credit_ledger.config import LedgerConfig
from credit_ledger.errors import (
    AccountMissingError, ConstraintViolationError, StorageUnavailableError
)
from credit_ledger.migrations import MigrationManager
from credit_ledger.models import Account, BalanceResult, TransactionKind


ACCOUNTS = [
    Account(id=1, credit_limit=1000),
    Account(id=2, credit_limit=100, balance=-100),
    Account(id=3, credit_limit=0),
]


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def store(request, tmp_path):
    """Provisioned store for each local backend"""
    if request.param == "memory":
        store = AsyncInMemoryAccountStore()
    else:
        store = AsyncSQLiteAccountStore(str(tmp_path / "ledger.db"))
    await store.initialize()
    await store.provision_accounts(ACCOUNTS)
    yield store
    await store.close()


class TestAtomicAdjust:
    """The conditional balance update shared by every backend"""

    @pytest.mark.asyncio
    async def test_credit_and_debit(self, store):
        result = await store.atomic_adjust(1, 500, "dep")
        assert result == BalanceResult(balance=500, credit_limit=1000)

        result = await store.atomic_adjust(1, -1200, "wd")
        assert result == BalanceResult(balance=-700, credit_limit=1000)

    @pytest.mark.asyncio
    async def test_check_uses_post_transaction_balance(self, store):
        """Landing exactly on -credit_limit is allowed, one past it is not"""
        result = await store.atomic_adjust(1, -1000, "edge")
        assert result.balance == -1000

        with pytest.raises(ConstraintViolationError):
            await store.atomic_adjust(1, -1, "over")

    @pytest.mark.asyncio
    async def test_zero_limit_account(self, store):
        with pytest.raises(ConstraintViolationError):
            await store.atomic_adjust(3, -1, "nope")

        await store.atomic_adjust(3, 10, "in")
        result = await store.atomic_adjust(3, -10, "out")
        assert result.balance == 0

    @pytest.mark.asyncio
    async def test_rejection_writes_nothing(self, store):
        with pytest.raises(ConstraintViolationError):
            await store.atomic_adjust(2, -1, "over")

        account = await store.get_account(2)
        assert account.balance == -100
        statement = await store.get_statement(2)
        assert statement.recent_transactions == []

    @pytest.mark.asyncio
    async def test_missing_account(self, store):
        with pytest.raises(AccountMissingError) as exc_info:
            await store.atomic_adjust(404, 10, "ghost")
        assert exc_info.value.account_id == 404

    @pytest.mark.asyncio
    async def test_zero_delta_is_a_programming_error(self, store):
        with pytest.raises(ValueError):
            await store.atomic_adjust(1, 0, "zero")

    @pytest.mark.asyncio
    async def test_record_holds_magnitude_and_kind(self, store):
        await store.atomic_adjust(1, -250, "rent")

        statement = await store.get_statement(1)
        record = statement.recent_transactions[0]
        assert record.account_id == 1
        assert record.amount == 250
        assert record.kind is TransactionKind.DEBIT
        assert record.description == "rent"
        assert record.occurred_at is not None

    @pytest.mark.asyncio
    async def test_concurrent_debits(self, store):
        """No lost updates and no over-admission under contention"""
        results = await asyncio.gather(
            *(store.atomic_adjust(1, -100, f"d{i}") for i in range(14)),
            return_exceptions=True
        )

        admitted = [r for r in results if isinstance(r, BalanceResult)]
        rejected = [r for r in results if isinstance(r, ConstraintViolationError)]
        assert len(admitted) == 10
        assert len(rejected) == 4
        # Each admitted write saw the cumulative effect of the earlier ones
        assert sorted(r.balance for r in admitted) == list(range(-1000, 0, 100))

        account = await store.get_account(1)
        assert account.balance == -1000


class TestStatements:
    """Statement reads"""

    @pytest.mark.asyncio
    async def test_newest_first_and_capped(self, store):
        for i in range(12):
            await store.atomic_adjust(1, i + 1, f"t{i}")

        statement = await store.get_statement(1)

        assert statement.current_balance == sum(range(1, 13))
        assert statement.credit_limit == 1000
        assert [t.description for t in statement.recent_transactions] == [
            f"t{i}" for i in range(11, 1, -1)
        ]

    @pytest.mark.asyncio
    async def test_custom_limit(self, store):
        for i in range(5):
            await store.atomic_adjust(1, 1, f"t{i}")

        statement = await store.get_statement(1, limit=2)
        assert [t.description for t in statement.recent_transactions] == ["t4", "t3"]

        statement = await store.get_statement(1, limit=0)
        assert statement.recent_transactions == []
        assert statement.current_balance == 5

    @pytest.mark.asyncio
    async def test_statement_is_scoped_to_account(self, store):
        await store.atomic_adjust(1, 10, "mine")
        await store.atomic_adjust(3, 20, "theirs")

        statement = await store.get_statement(1)
        assert [t.description for t in statement.recent_transactions] == ["mine"]

    @pytest.mark.asyncio
    async def test_missing_account(self, store):
        with pytest.raises(AccountMissingError):
            await store.get_statement(404)


class TestProvisioning:
    """Seeding and maintenance helpers"""

    @pytest.mark.asyncio
    async def test_provision_is_insert_if_absent(self, store):
        await store.atomic_adjust(1, 300, "dep")
        await store.provision_accounts([Account(id=1, credit_limit=5), Account(id=7, credit_limit=70)])

        existing = await store.get_account(1)
        assert existing == Account(id=1, credit_limit=1000, balance=300)
        added = await store.get_account(7)
        assert added == Account(id=7, credit_limit=70, balance=0)

    @pytest.mark.asyncio
    async def test_reset(self, store):
        await store.atomic_adjust(1, -400, "wd")
        await store.reset()

        account = await store.get_account(1)
        assert account.balance == 0
        statement = await store.get_statement(1)
        assert statement.recent_transactions == []

    @pytest.mark.asyncio
    async def test_get_missing_account(self, store):
        assert await store.get_account(404) is None


class TestSQLiteDurability:
    """Behaviour specific to the file-backed store"""

    @pytest.mark.asyncio
    async def test_state_survives_reopen(self, tmp_path):
        path = str(tmp_path / "durable.db")

        async with AsyncSQLiteAccountStore(path) as store:
            await store.provision_accounts([Account(id=1, credit_limit=100)])
            await store.atomic_adjust(1, -40, "wd")

        async with AsyncSQLiteAccountStore(path) as store:
            statement = await store.get_statement(1)
            assert statement.current_balance == -40
            assert [t.description for t in statement.recent_transactions] == ["wd"]

    @pytest.mark.asyncio
    async def test_two_instances_share_the_invariant(self, tmp_path):
        """Separate connections on one file are serialized by the database"""
        path = str(tmp_path / "shared.db")
        first = AsyncSQLiteAccountStore(path)
        second = AsyncSQLiteAccountStore(path)
        await first.initialize()
        await second.initialize()
        try:
            await first.provision_accounts([Account(id=1, credit_limit=1000)])

            calls = []
            for i in range(16):
                instance = first if i % 2 == 0 else second
                calls.append(instance.atomic_adjust(1, -100, f"d{i}"))
            results = await asyncio.gather(*calls, return_exceptions=True)

            admitted = [r for r in results if isinstance(r, BalanceResult)]
            assert len(admitted) == 10
            assert all(isinstance(r, (BalanceResult, ConstraintViolationError)) for r in results)

            account = await second.get_account(1)
            assert account.balance == -1000
        finally:
            await first.close()
            await second.close()

    @pytest.mark.asyncio
    async def test_migrations_recorded_once(self, tmp_path):
        path = str(tmp_path / "migrated.db")
        async with AsyncSQLiteAccountStore(path):
            pass
        async with AsyncSQLiteAccountStore(path) as store:
            rows = await store._run(store._read_sync, "SELECT version FROM schema_migrations", ())
            assert [row["version"] for row in rows] == [
                m.version for m in MigrationManager().migrations
            ]

    @pytest.mark.asyncio
    async def test_failed_commit_is_rolled_back(self, tmp_path):
        """A COMMIT that fails leaves no open transaction behind"""
        async with AsyncSQLiteAccountStore(str(tmp_path / "commit.db")) as store:
            await store.provision_accounts([Account(id=1, credit_limit=100)])
            # Deferred foreign keys are only checked at COMMIT
            store._writer.executescript("""
                CREATE TABLE parents (id INTEGER PRIMARY KEY);
                CREATE TABLE audit (
                    parent_id INTEGER REFERENCES parents (id) DEFERRABLE INITIALLY DEFERRED
                );
                CREATE TRIGGER audit_fail AFTER INSERT ON transactions
                WHEN NEW.description = 'fail'
                BEGIN
                    INSERT INTO audit (parent_id) VALUES (999);
                END;
            """)

            with pytest.raises(StorageUnavailableError):
                await store.atomic_adjust(1, 10, "fail")

            assert not store._writer.in_transaction
            result = await store.atomic_adjust(1, 5, "ok")
            assert result.balance == 5
            statement = await store.get_statement(1)
            assert [t.description for t in statement.recent_transactions] == ["ok"]

    @pytest.mark.asyncio
    async def test_migration_logs_schema_version(self, tmp_path, caplog):
        path = str(tmp_path / "versioned.db")
        with caplog.at_level(logging.INFO, logger="ledger.storage"):
            async with AsyncSQLiteAccountStore(path):
                pass
        latest = MigrationManager().get_latest_version()
        assert f"SQLite schema at version {latest}" in caplog.text

        caplog.clear()
        with caplog.at_level(logging.INFO, logger="ledger.storage"):
            async with AsyncSQLiteAccountStore(path):
                pass
        assert "schema at version" not in caplog.text

    @pytest.mark.asyncio
    async def test_unopenable_database_is_storage_error(self, tmp_path):
        """Driver errors surface as StorageUnavailableError"""
        store = AsyncSQLiteAccountStore(str(tmp_path))
        with pytest.raises(StorageUnavailableError):
            await store.initialize()

    @pytest.mark.asyncio
    async def test_in_memory_database(self):
        async with AsyncSQLiteAccountStore(":memory:") as store:
            await store.provision_accounts([Account(id=1, credit_limit=10)])
            result = await store.atomic_adjust(1, -10, "all")
            assert result.balance == -10


class TestAsyncPostgreSQLAccountStore:
    """PostgreSQL store tests (skipped when no server is available)"""

    @pytest_asyncio.fixture
    async def postgresql_store(self):
        """Create PostgreSQL store (skip if not available)"""
        url = os.getenv("LEDGER_TEST_DATABASE_URL", "postgresql://localhost/test_ledger")
        store = AsyncPostgreSQLAccountStore(url, pool_size=20)
        try:
            await store.initialize()
        except Exception:
            pytest.skip("PostgreSQL not available for testing")
        await store.provision_accounts([Account(id=9001, credit_limit=1000)])
        await store.reset()
        yield store
        await store.close()

    @pytest.mark.asyncio
    async def test_postgresql_adjust_and_statement(self, postgresql_store):
        await postgresql_store.atomic_adjust(9001, 100, "dep")
        await postgresql_store.atomic_adjust(9001, -50, "wd")
        await postgresql_store.atomic_adjust(9001, 10, "x")

        statement = await postgresql_store.get_statement(9001)
        assert statement.current_balance == 60
        assert [t.description for t in statement.recent_transactions] == ["x", "wd", "dep"]

    @pytest.mark.asyncio
    async def test_postgresql_rejections(self, postgresql_store):
        with pytest.raises(ConstraintViolationError):
            await postgresql_store.atomic_adjust(9001, -1001, "over")
        with pytest.raises(AccountMissingError):
            await postgresql_store.atomic_adjust(65000, 1, "ghost")

        statement = await postgresql_store.get_statement(9001)
        assert statement.current_balance == 0
        assert statement.recent_transactions == []

    @pytest.mark.asyncio
    async def test_postgresql_concurrent_debits(self, postgresql_store):
        results = await asyncio.gather(
            *(postgresql_store.atomic_adjust(9001, -100, f"d{i}") for i in range(20)),
            return_exceptions=True
        )

        admitted = [r for r in results if isinstance(r, BalanceResult)]
        assert len(admitted) == 10
        account = await postgresql_store.get_account(9001)
        assert account.balance == -1000


class TestStoreFactory:
    """Test the create_account_store factory function"""

    def test_create_memory_store(self):
        store = create_account_store(LedgerConfig(storage_type="memory"))
        assert isinstance(store, AsyncInMemoryAccountStore)

    def test_create_sqlite_store(self, tmp_path):
        path = str(tmp_path / "factory.db")
        store = create_account_store(LedgerConfig(storage_type="sqlite", sqlite_path=path))
        assert isinstance(store, AsyncSQLiteAccountStore)
        assert store.db_path == path

    def test_create_postgresql_store(self):
        config = LedgerConfig(
            storage_type="PostgreSQL",
            database_url="postgresql://db/ledger",
            database_pool_size=7
        )
        store = create_account_store(config)
        assert isinstance(store, AsyncPostgreSQLAccountStore)
        assert store.connection_string == "postgresql://db/ledger"
        assert store.pool_size == 7
        assert store.pool is None

    def test_unknown_storage_type(self):
        with pytest.raises(ValueError):
            create_account_store(LedgerConfig(storage_type="redis"))
