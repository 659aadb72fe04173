"""Tests for bank sync orchestration and app wiring."""

import asyncio
from uuid import uuid4

import pytest

from caretracker.audit import AuditLogger
from caretracker.ingestion import TransactionIngestor
from caretracker.models.audit import AuditEventType
from caretracker.models.transaction import LinkedAccount
from caretracker.orchestrator import SyncFlow, create_app_components
from caretracker.services.storage import DependencyError, InMemoryStore, NotFoundError


USER_ID = "user-123"


class FakeSource:
    """Returns canned rows per account; raises for accounts listed in failing."""

    def __init__(self, rows_by_account: dict, failing: tuple = ()):
        self.rows_by_account = rows_by_account
        self.failing = set(failing)
        self.calls = []

    async def fetch_transactions(self, account, days):
        self.calls.append((account.account_name, days))
        if account.account_name in self.failing:
            raise ConnectionError("ITEM_LOGIN_REQUIRED")
        return self.rows_by_account.get(account.account_name, [])


class UnavailableStore(InMemoryStore):
    """Store whose transaction writes fail as if the backend were down."""

    async def insert_transaction(self, transaction):
        raise DependencyError("sheets unavailable")


def add_account(store: InMemoryStore, name: str, token: str = "access-ref", **fields) -> LinkedAccount:
    account = LinkedAccount(user_id=USER_ID, account_name=name, access_token_ref=token, **fields)
    return asyncio.run(store.save_account(account))


@pytest.fixture
def make_flow(store, ingestor, audit_logger):
    def make(source) -> SyncFlow:
        return SyncFlow(store, ingestor, source, audit_logger=audit_logger)
    return make


class TestSyncFlow:
    """Tests for SyncFlow.sync_user."""

    def test_syncs_active_accounts(self, store, make_flow, raw_row):
        """Test that each account's rows are ingested and tagged."""
        checking = add_account(store, "Checking")
        source = FakeSource({"Checking": [raw_row(), raw_row()]})

        summary = asyncio.run(make_flow(source).sync_user(USER_ID))

        assert summary.synced_count == 1
        assert summary.totals.inserted == 2
        assert all(tx.linked_account_id == checking.id for tx in store.transactions.values())
        assert store.accounts[checking.id].last_sync_at is not None

    def test_skips_accounts_without_token(self, store, make_flow, raw_row):
        """Test that an account with no access token is not fetched."""
        add_account(store, "Checking")
        add_account(store, "Unlinked card", token=None)
        source = FakeSource({"Checking": [raw_row()], "Unlinked card": [raw_row()]})

        summary = asyncio.run(make_flow(source).sync_user(USER_ID))

        assert [c[0] for c in source.calls] == ["Checking"]
        assert [a.status for a in summary.accounts] == ["synced", "skipped"]
        assert summary.totals.inserted == 1

    def test_failing_account_does_not_stop_others(self, store, make_flow, raw_row):
        """Test that one provider error is recorded and the rest continue."""
        broken = add_account(store, "Broken")
        add_account(store, "Checking")
        source = FakeSource({"Checking": [raw_row()]}, failing=("Broken",))

        summary = asyncio.run(make_flow(source).sync_user(USER_ID))

        assert summary.failed_count == 1
        assert summary.synced_count == 1
        assert summary.totals.inserted == 1
        assert store.accounts[broken.id].last_sync_at is None
        failed = [a for a in summary.accounts if a.status == "failed"]
        assert failed[0].error_message == "ITEM_LOGIN_REQUIRED"
        event_types = [e.event_type for e in store.events]
        assert AuditEventType.EXTERNAL_SERVICE_ERROR in event_types
        assert AuditEventType.ACCOUNT_SYNC_FAILED in event_types

    def test_store_outage_aborts_sync(self, raw_row):
        """Test that an unavailable transaction store ends the whole run."""
        store = UnavailableStore()
        audit = AuditLogger(store)
        add_account(store, "Checking")
        add_account(store, "Savings")
        source = FakeSource({"Checking": [raw_row()], "Savings": [raw_row()]})
        flow = SyncFlow(store, TransactionIngestor(store, audit_logger=audit), source, audit_logger=audit)

        with pytest.raises(DependencyError):
            asyncio.run(flow.sync_user(USER_ID))

        assert len(source.calls) == 1
        event_types = [e.event_type for e in store.events]
        assert AuditEventType.SYSTEM_ERROR in event_types
        assert AuditEventType.ACCOUNT_SYNC_FAILED not in event_types

    def test_inactive_accounts_are_ignored(self, store, make_flow, raw_row):
        """Test that deactivated accounts are not synced."""
        add_account(store, "Old card", is_active=False)
        source = FakeSource({"Old card": [raw_row()]})

        summary = asyncio.run(make_flow(source).sync_user(USER_ID))

        assert summary.accounts == []
        assert source.calls == []

    def test_days_default_and_override(self, store, make_flow):
        """Test the requested history window."""
        add_account(store, "Checking")
        source = FakeSource({})
        flow = make_flow(source)

        asyncio.run(flow.sync_user(USER_ID))
        asyncio.run(flow.sync_user(USER_ID, days=90))

        assert [c[1] for c in source.calls] == [30, 90]

    def test_resync_is_idempotent(self, store, make_flow, raw_row):
        """Test that syncing the same rows twice inserts once."""
        add_account(store, "Checking")
        source = FakeSource({"Checking": [raw_row(), raw_row()]})
        flow = make_flow(source)

        asyncio.run(flow.sync_user(USER_ID))
        second = asyncio.run(flow.sync_user(USER_ID))

        assert second.totals.inserted == 0
        assert second.totals.updated == 2
        assert len(store.transactions) == 2

    def test_sync_events_share_correlation_id(self, store, make_flow, raw_row):
        """Test that one run's events are correlated."""
        add_account(store, "Checking")
        summary = asyncio.run(make_flow(FakeSource({"Checking": [raw_row()]})).sync_user(USER_ID))

        correlated = [e for e in store.events if e.correlation_id == summary.correlation_id]

        assert {e.event_type for e in correlated} >= {
            AuditEventType.SYNC_STARTED,
            AuditEventType.ACCOUNT_SYNCED,
        }


class TestDeactivateAccount:
    """Tests for SyncFlow.deactivate_account."""

    def test_deactivate(self, store, make_flow):
        """Test that the account is marked inactive with a reason."""
        account = add_account(store, "Checking")

        saved = asyncio.run(make_flow(FakeSource({})).deactivate_account(
            USER_ID, account.id, "ITEM_LOGIN_REQUIRED"
        ))

        assert saved.is_active is False
        assert store.accounts[account.id].error_message == "ITEM_LOGIN_REQUIRED"
        assert store.events[-1].event_type == AuditEventType.ACCOUNT_DEACTIVATED

    def test_deactivate_unknown(self, make_flow):
        """Test that an unknown account raises NotFoundError."""
        with pytest.raises(NotFoundError):
            asyncio.run(make_flow(FakeSource({})).deactivate_account(USER_ID, uuid4(), "x"))


class TestCreateAppComponents:
    """Tests for create_app_components."""

    def test_in_memory(self):
        """Test wiring without Google Sheets."""
        components = create_app_components(use_storage=False)

        assert isinstance(components.transaction_store, InMemoryStore)
        assert components.expense_store is components.transaction_store
        assert components.sync_flow is None
        assert components.sheets_client is None

    def test_falls_back_without_sheets_config(self, monkeypatch):
        """Test that missing Sheets settings fall back to memory."""
        monkeypatch.delenv("GOOGLE_SHEETS_CREDENTIALS_PATH", raising=False)
        monkeypatch.delenv("GOOGLE_SHEETS_SPREADSHEET_ID", raising=False)

        components = create_app_components(use_storage=True)

        assert isinstance(components.transaction_store, InMemoryStore)
        assert components.sheets_client is None

    def test_with_source_builds_sync_flow(self):
        """Test that a transaction source enables bank sync."""
        components = create_app_components(use_storage=False, transaction_source=FakeSource({}))
        assert isinstance(components.sync_flow, SyncFlow)

    def test_full_flow(self, raw_row):
        """Test sync, triage and dashboard on one set of components."""
        source = FakeSource({"Checking": [
            raw_row(transaction_id="tx1"),
            raw_row(transaction_id="tx2", name="TRADER JOES #552", merchant_name="Trader Joe's"),
        ]})
        components = create_app_components(use_storage=False, transaction_source=source)
        asyncio.run(components.account_store.save_account(
            LinkedAccount(user_id=USER_ID, account_name="Checking", access_token_ref="ref")
        ))

        async def scenario():
            await components.sync_flow.sync_user(USER_ID)
            engine = components.triage_engine(USER_ID)
            await engine.load()
            while not engine.is_complete:
                if engine.current.is_potential_medical:
                    await engine.keep(engine.current)
                else:
                    await engine.skip(engine.current)
            return await components.expense_service.get_stats(USER_ID)

        stats = asyncio.run(scenario())

        assert stats.total == 1
        assert stats.kept == 1
        assert stats.deductible == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
