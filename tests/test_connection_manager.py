"""Tests for BankConnectionManager against the fake bank and an in-memory database."""

import asyncio
import gc
from datetime import datetime, timedelta, UTC
from decimal import Decimal

import pytest
from pydantic import ValidationError

from backend.app import models
from backend.app.bank_integration.exceptions import BankErrorCode, BankIntegrationError
from backend.app.bank_integration.schemas import AuthTokenBundle, CSVImportConfig, SyncOptions
from backend.app.bank_integration.service import RefreshLocks

from tests.fakes import ob_account, ob_transaction


BANK = "test-bank"


def connect(vault, user, access="access-0", refresh="refresh-0", age=timedelta(0), expires_in=3600):
    """Store credentials as if the user had connected `age` ago."""
    vault.store(
        user.id, BANK, "Test Bank",
        AuthTokenBundle(
            access_token=access,
            refresh_token=refresh,
            expires_in=expires_in,
            obtained_at=datetime.now(UTC) - age
        )
    )


def stored_transactions(db_session):
    return db_session.query(models.Transaction).order_by(models.Transaction.id).all()


class TestConnectionFlow:

    def test_initiate_persists_state(self, manager, db_session, user):
        result = manager.initiate_connection(user.id, BANK)

        assert result["state"] in result["auth_url"]
        oauth_state = db_session.query(models.OAuthState).filter_by(state_token=result["state"]).one()
        assert oauth_state.user_id == user.id
        assert oauth_state.bank_code == BANK
        assert manager.resolve_state(result["state"]) == (user.id, BANK)

    def test_initiate_unknown_bank(self, manager, user):
        with pytest.raises(BankIntegrationError) as exc_info:
            manager.initiate_connection(user.id, "unknown-bank")
        assert exc_info.value.code == BankErrorCode.BANK_NOT_SUPPORTED.value

    async def test_complete_connection(self, manager, vault, db_session, user, fake_bank):
        state = manager.initiate_connection(user.id, BANK)["state"]

        result = await manager.complete_connection(user.id, BANK, "auth-code", state)

        assert result.success
        assert result.connection_status == "active"
        assert result.accounts_found == 1
        assert result.transactions_found == 3
        assert result.initial_sync.success
        assert result.initial_sync.transactions_imported == 3

        record = vault.get_record(user.id, BANK)
        assert record.account_identifier == "40400112345678"
        assert record.metadata["account_count"] == 1
        assert record.metadata["api_version"] == "3.1"
        assert record.last_sync is not None

        account = db_session.query(models.Account).one()
        assert account.institution_name == BANK
        assert account.account_name == "Main Account"
        assert account.api_connected
        assert account.balance == Decimal("1520.40")

        log = db_session.query(models.BankSyncLog).one()
        assert log.sync_type == models.BankSyncType.OAUTH_CONNECT
        assert log.sync_status == models.BankSyncStatus.SUCCESS
        assert manager.resolve_state(state) is None

    async def test_state_cannot_be_reused(self, manager, user):
        state = manager.initiate_connection(user.id, BANK)["state"]
        await manager.complete_connection(user.id, BANK, "auth-code", state)

        again = await manager.complete_connection(user.id, BANK, "auth-code", state)

        assert not again.success
        assert again.error_code == BankErrorCode.INVALID_STATE.value

    async def test_state_belongs_to_user(self, manager, vault, user, other_user, fake_bank):
        state = manager.initiate_connection(user.id, BANK)["state"]

        result = await manager.complete_connection(other_user.id, BANK, "auth-code", state)

        assert result.error_code == BankErrorCode.INVALID_STATE.value
        assert fake_bank.requests == []
        assert vault.get_record(other_user.id, BANK) is None

    async def test_expired_state(self, manager, db_session, user):
        state = manager.initiate_connection(user.id, BANK)["state"]
        oauth_state = db_session.query(models.OAuthState).filter_by(state_token=state).one()
        oauth_state.expires_at = datetime.now(UTC) - timedelta(minutes=1)
        db_session.commit()

        result = await manager.complete_connection(user.id, BANK, "auth-code", state)

        assert result.error_code == BankErrorCode.INVALID_STATE.value
        assert "expired" in result.error

    async def test_nothing_stored_when_connection_test_fails(self, manager, vault, db_session, user, fake_bank):
        fake_bank.test_status = 401
        state = manager.initiate_connection(user.id, BANK)["state"]

        result = await manager.complete_connection(user.id, BANK, "auth-code", state)

        assert not result.success
        assert result.error_code == BankErrorCode.CONNECTION_TEST_FAILED.value
        assert vault.get_record(user.id, BANK) is None
        assert db_session.query(models.Account).count() == 0

    async def test_nothing_stored_when_code_exchange_fails(self, manager, vault, user, fake_bank):
        fake_bank.token_status = 400
        state = manager.initiate_connection(user.id, BANK)["state"]

        result = await manager.complete_connection(user.id, BANK, "bad-code", state)

        assert result.error_code == "invalid_grant"
        assert "Please reconnect Test Bank" in result.error
        assert vault.get_record(user.id, BANK) is None

    async def test_disconnect_when_revocation_fails(self, manager, vault, user, fake_bank):
        connect(vault, user)
        fake_bank.revoke_status = 503

        removed = await manager.disconnect_bank(user.id, BANK)

        assert removed is True
        assert vault.get_record(user.id, BANK) is None
        assert fake_bank.paths().count("/token/revoke") == 2

    async def test_disconnect_with_unreadable_credentials(self, manager, vault, db_session, user, fake_bank):
        connect(vault, user)
        row = db_session.query(models.BankConnection).one()
        row.encrypted_credentials = "garbage"
        db_session.commit()

        assert await manager.disconnect_bank(user.id, BANK) is True
        assert fake_bank.requests == []
        assert vault.get_record(user.id, BANK) is None

    async def test_disconnect_without_connection(self, manager, user):
        assert await manager.disconnect_bank(user.id, BANK) is False


class TestSync:

    async def test_sync_imports_and_deduplicates(self, manager, vault, db_session, user):
        connect(vault, user)

        first = await manager.sync_bank_data(user.id, BANK)
        second = await manager.sync_bank_data(user.id, BANK)

        assert first.success and not first.partial
        assert first.accounts_imported == 1
        assert first.transactions_imported == 3
        assert second.transactions_imported == 0
        assert second.duplicates_skipped == 3

        transactions = stored_transactions(db_session)
        assert [t.external_id for t in transactions] == ["tx-1", "tx-2", "tx-3"]
        assert [t.category for t in transactions] == ["food", "income", "transport"]
        assert transactions[0].amount == Decimal("-12.50")
        assert transactions[0].source == models.TransactionSource.BANK_SYNC
        assert db_session.query(models.Account).count() == 1

    async def test_partial_failure(self, manager, vault, db_session, user, fake_bank):
        fake_bank.accounts = [ob_account("acc-1"), ob_account("acc-2"), ob_account("acc-3")]
        fake_bank.transactions = {
            account_id: [ob_transaction(f"{account_id}-tx", "5.00", account_id=account_id)]
            for account_id in ("acc-1", "acc-2", "acc-3")
        }
        fake_bank.failing_transaction_accounts.add("acc-2")
        connect(vault, user)

        result = await manager.sync_bank_data(user.id, BANK)

        assert result.success
        assert result.partial
        assert result.transactions_imported == 2
        assert len(result.errors) == 1
        assert "acc-2" in result.errors[0]

        record = vault.get_record(user.id, BANK)
        assert record.connection_status == "active"
        assert "acc-2" in record.error_message

        log = db_session.query(models.BankSyncLog).one()
        assert log.sync_status == models.BankSyncStatus.PARTIAL

    async def test_all_accounts_failing(self, manager, vault, user, fake_bank):
        fake_bank.failing_transaction_accounts.add("acc-1")
        connect(vault, user)

        result = await manager.sync_bank_data(user.id, BANK)

        assert not result.success
        assert result.error_code == BankErrorCode.SYNC_FAILED.value
        assert vault.get_record(user.id, BANK).connection_status == "error"

    async def test_account_listing_failure_marks_error(self, manager, vault, user, fake_bank):
        fake_bank.accounts_status = 401
        connect(vault, user)

        result = await manager.sync_bank_data(user.id, BANK)

        assert not result.success
        record = vault.get_record(user.id, BANK)
        assert record.connection_status == "error"
        assert record.error_message

    async def test_error_connection_recovers(self, manager, vault, user):
        connect(vault, user)
        vault.update_connection_status(user.id, BANK, "error", error_message="Bank unavailable")

        result = await manager.sync_bank_data(user.id, BANK)

        assert result.success
        record = vault.get_record(user.id, BANK)
        assert record.connection_status == "active"
        assert record.error_message is None

    async def test_no_credentials(self, manager, db_session, user):
        result = await manager.sync_bank_data(user.id, BANK)

        assert result.error_code == BankErrorCode.NO_CREDENTIALS.value
        log = db_session.query(models.BankSyncLog).one()
        assert log.sync_status == models.BankSyncStatus.FAILED
        assert log.error_code == BankErrorCode.NO_CREDENTIALS.value

    async def test_expired_connection_is_not_synced(self, manager, vault, user, fake_bank):
        connect(vault, user)
        vault.update_connection_status(user.id, BANK, "expired")

        result = await manager.sync_bank_data(user.id, BANK)

        assert result.error_code == BankErrorCode.TOKEN_EXPIRED.value
        assert fake_bank.requests == []

    async def test_account_filter(self, manager, vault, db_session, user, fake_bank):
        fake_bank.accounts = [ob_account("acc-1"), ob_account("acc-2")]
        fake_bank.transactions["acc-2"] = [ob_transaction("other", "1.00", account_id="acc-2")]
        connect(vault, user)

        result = await manager.sync_bank_data(user.id, BANK, SyncOptions(account_ids=["acc-2"]))

        assert result.accounts_imported == 1
        assert [t.external_id for t in stored_transactions(db_session)] == ["other"]

    async def test_scheduled_sync_respects_interval(self, manager, vault, user, fake_bank):
        connect(vault, user)
        await manager.sync_bank_data(user.id, BANK)
        fake_bank.requests.clear()

        scheduled = await manager.sync_bank_data(user.id, BANK, SyncOptions(sync_type="scheduled"))
        forced = await manager.sync_bank_data(user.id, BANK, SyncOptions(sync_type="scheduled", force=True))

        assert scheduled.skipped
        assert not forced.skipped
        assert fake_bank.resource_requests()

    async def test_cancelled_sync_keeps_status(self, manager, vault, user, fake_bank):
        connect(vault, user)
        cancel = asyncio.Event()
        cancel.set()

        result = await manager.sync_bank_data(user.id, BANK, SyncOptions(cancel_event=cancel))

        assert result.error_code == BankErrorCode.CANCELLED.value
        assert vault.get_record(user.id, BANK).connection_status == "active"

    async def test_status_change_during_sync_is_kept(self, manager, vault, user, mocker):
        connect(vault, user)
        fetch = manager.registry.sync_account_data

        async def expire_midway(*args, **kwargs):
            response = await fetch(*args, **kwargs)
            vault.update_connection_status(user.id, BANK, "expired", error_message="Consent withdrawn")
            return response

        mocker.patch.object(manager.registry, "sync_account_data", side_effect=expire_midway)

        result = await manager.sync_bank_data(user.id, BANK)

        assert result.success
        assert result.transactions_imported == 3
        record = vault.get_record(user.id, BANK)
        assert record.connection_status == "expired"
        assert record.error_message == "Consent withdrawn"

    async def test_sync_all_banks_skips_unsyncable(self, manager, vault, user, fake_bank):
        connect(vault, user)
        vault.store(
            user.id, "old-bank", "Old Bank",
            AuthTokenBundle(access_token="x", refresh_token="y")
        )
        vault.update_connection_status(user.id, "old-bank", "revoked")

        summaries = await manager.sync_all_banks(user.id)

        assert [s.bank_code for s in summaries] == [BANK]
        assert summaries[0].result.transactions_imported == 3

    async def test_connection_statuses(self, manager, vault, user):
        connect(vault, user)
        await manager.sync_bank_data(user.id, BANK)

        [status] = manager.get_connection_statuses(user.id)

        assert status.bank_code == BANK
        assert status.connected
        assert status.total_accounts == 1
        assert status.total_transactions == 3
        assert status.next_sync_scheduled is not None


class TestTokenRefresh:

    async def test_stale_token_is_refreshed_first(self, manager, vault, user, fake_bank):
        connect(vault, user, age=timedelta(minutes=58))

        result = await manager.sync_bank_data(user.id, BANK)

        assert result.success
        assert fake_bank.refresh_calls == 1
        assert fake_bank.requests[0].url.path == "/token"
        assert all(r.headers["Authorization"] == "Bearer access-1" for r in fake_bank.resource_requests())

        credentials = vault.retrieve(user.id, BANK)
        assert credentials.tokens.access_token == "access-1"
        assert credentials.tokens.refresh_token == "refresh-1"

    async def test_refresh_failure_expires_connection(self, manager, vault, user, fake_bank):
        connect(vault, user, age=timedelta(hours=2))
        fake_bank.refresh_status = 400

        result = await manager.sync_bank_data(user.id, BANK)

        assert not result.success
        assert result.error_code == BankErrorCode.TOKEN_REFRESH_FAILED.value
        assert fake_bank.resource_requests() == []

        record = vault.get_record(user.id, BANK)
        assert record.connection_status == "expired"
        assert "reconnect" in record.error_message.lower()

    async def test_expired_token_without_refresh_token(self, manager, vault, user, fake_bank):
        connect(vault, user, refresh=None, age=timedelta(hours=2))

        result = await manager.sync_bank_data(user.id, BANK)

        assert result.error_code == BankErrorCode.TOKEN_EXPIRED.value
        assert fake_bank.requests == []
        assert vault.get_record(user.id, BANK).connection_status == "expired"

    async def test_stale_token_without_refresh_token_is_used(self, manager, vault, user, fake_bank):
        connect(vault, user, refresh=None, age=timedelta(minutes=58))

        result = await manager.sync_bank_data(user.id, BANK)

        assert result.success
        assert fake_bank.refresh_calls == 0

    async def test_concurrent_syncs_refresh_once(self, manager, vault, user, fake_bank):
        connect(vault, user, age=timedelta(minutes=58))

        results = await asyncio.gather(
            manager.sync_bank_data(user.id, BANK),
            manager.sync_bank_data(user.id, BANK),
        )

        assert all(r.success for r in results)
        assert fake_bank.refresh_calls == 1
        assert sum(r.transactions_imported for r in results) == 3

    async def test_concurrent_refresh_failure_is_reported_once(self, manager, vault, user, fake_bank):
        connect(vault, user, age=timedelta(hours=2))
        fake_bank.refresh_status = 400

        results = await asyncio.gather(
            manager.sync_bank_data(user.id, BANK),
            manager.sync_bank_data(user.id, BANK),
        )

        assert fake_bank.refresh_calls == 1
        assert {r.error_code for r in results} == {
            BankErrorCode.TOKEN_REFRESH_FAILED.value, BankErrorCode.TOKEN_EXPIRED.value
        }
        assert fake_bank.resource_requests() == []
        assert vault.get_record(user.id, BANK).connection_status == "expired"

    def test_refresh_locks_are_released(self):
        locks = RefreshLocks()

        lock = locks.get(1, BANK)
        assert locks.get(1, BANK) is lock
        assert locks.get(2, BANK) is not lock
        assert len(locks) == 1

        del lock
        gc.collect()
        assert len(locks) == 0


class TestCsvImport:

    CONTENT = (
        "Date,Description,Amount\n"
        "15/01/2024,Tesco Supermarket,-45.20\n"
        "15/01/2024,Tesco Supermarket,-45.20\n"
        "16/01/2024,Salary,2000.00\n"
        "bad,row,1\n"
    )

    def test_reimport_is_idempotent(self, manager, db_session, user, csv_account):
        first = manager.import_csv(user.id, self.CONTENT, CSVImportConfig(), csv_account)
        second = manager.import_csv(user.id, self.CONTENT, CSVImportConfig(), csv_account)

        assert first.successful_imports == 3
        assert first.failed_imports == 1
        assert first.duplicates == 0
        assert second.successful_imports == 0
        assert second.duplicates == 3

        transactions = stored_transactions(db_session)
        assert len(transactions) == 3
        assert all(t.source == models.TransactionSource.CSV_IMPORT for t in transactions)
        assert transactions[0].category == "food"

    def test_foreign_account_is_rejected(self, manager, other_user, csv_account):
        with pytest.raises(BankIntegrationError) as exc_info:
            manager.import_csv(other_user.id, self.CONTENT, None, csv_account)
        assert exc_info.value.code == BankErrorCode.ACCOUNT_NOT_FOUND_OR_UNAUTHORIZED.value

    def test_unparseable_file_imports_nothing(self, manager, db_session, user, csv_account):
        result = manager.import_csv(user.id, "Date,Amount\n15/01/2024,1.00\n", None, csv_account)

        assert not result.success
        assert result.errors[0].code == BankErrorCode.MISSING_REQUIRED_COLUMN.value
        assert stored_transactions(db_session) == []


def test_statuses_are_isolated_per_user(manager, vault, user, other_user):
    connect(vault, user)
    assert manager.get_connection_statuses(other_user.id) == []
    assert len(manager.get_connection_statuses(user.id)) == 1


class TestSyncOptions:

    def test_sync_type_is_validated(self):
        with pytest.raises(ValidationError):
            SyncOptions(sync_type="bogus")

    def test_sync_type_from_string(self):
        assert SyncOptions(sync_type="scheduled").sync_type is models.BankSyncType.SCHEDULED
        assert SyncOptions().sync_type is models.BankSyncType.MANUAL
