"""
Bank Connection Manager

Main orchestration service that handles:
- OAuth connection lifecycle (initiate, complete, disconnect)
- Token refresh before data requests
- Account and transaction synchronization
- CSV statement import
- Sync logging and connection status
"""

import asyncio
import logging
import weakref
from functools import lru_cache
from datetime import datetime, timedelta, UTC
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.app.models import BankSyncLog, BankSyncStatus, BankSyncType, OAuthState, TransactionSource
from backend.config import get_settings

from .categorization import Categorizer, KeywordCategorizer
from .csv_import import CSVImportService
from .deduplication import TransactionDeduplicator
from .exceptions import BankErrorCode, BankIntegrationError, CredentialDecryptionError, InvalidOAuthStateError
from .encryption import TokenEncryption
from .registry import BankAdapterRegistry, build_registry
from .schemas import (
    AccountSyncData, AuthTokenBundle, BankSyncSummary, CSVImportConfig, CSVImportResult,
    ConnectionCompleteResult, ConnectionStatusInfo, ConnectionSyncResult, CredentialRecord,
    NormalizedTransaction, StoredCredentials, SyncOptions
)
from .sql_stores import SQLAccountStore, SQLCredentialStore, SQLTransactionStore
from .state import ConnectionPhase, InvalidTransitionError, can_sync
from .stores import AccountStore, TransactionStore
from .vault import CredentialVault


logger = logging.getLogger(__name__)

ACCOUNT_SUBTYPE_MAP = {
    "CurrentAccount": "current",
    "Savings": "savings",
    "CreditCard": "credit",
    "ChargeCard": "credit",
    "Loan": "loan",
    "Mortgage": "loan",
}

OPEN_BANKING_API_VERSION = "3.1"


class RefreshLocks:
    """
    One asyncio.Lock per (user_id, bank_code).

    Entries are dropped once no task holds or awaits the lock.
    """

    def __init__(self):
        self._locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()

    def get(self, user_id: int, bank_code: str) -> asyncio.Lock:
        key = (user_id, bank_code)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


# Shared by every manager in the process so concurrent requests serialize
REFRESH_LOCKS = RefreshLocks()


def map_account_type(subtype: Optional[str]) -> str:
    return ACCOUNT_SUBTYPE_MAP.get(subtype or "", "current")


class BankConnectionManager:
    """
    Main service for bank connections.

    Provides high-level operations for:
    - Connecting and disconnecting banks
    - Syncing one or all banks for a user
    - Importing CSV statements into an owned account
    - Reporting connection status
    """

    def __init__(
        self,
        db: Session,
        registry: BankAdapterRegistry,
        vault: CredentialVault,
        account_store: Optional[AccountStore] = None,
        transaction_store: Optional[TransactionStore] = None,
        categorizer: Optional[Categorizer] = None,
        csv_service: Optional[CSVImportService] = None,
        refresh_locks: Optional[RefreshLocks] = None,
        refresh_window_seconds: int = 300,
        days_back: int = 90,
        transaction_limit: int = 1000,
        oauth_state_ttl_minutes: int = 10
    ):
        """
        Initialize manager.

        Args:
            db: SQLAlchemy session (sync logs, OAuth states, default stores)
            registry: Bank adapters
            vault: Credential vault
            account_store: Account persistence (defaults to SQL)
            transaction_store: Transaction persistence (defaults to SQL)
            categorizer: Category rule for transactions without one
        """
        self.db = db
        self.registry = registry
        self.vault = vault
        self.accounts = account_store or SQLAccountStore(db)
        self.transactions = transaction_store or SQLTransactionStore(db)
        self.categorizer = categorizer or KeywordCategorizer()
        self.csv_service = csv_service or CSVImportService(categorizer=self.categorizer)
        self.refresh_locks = refresh_locks or REFRESH_LOCKS
        self.refresh_window_seconds = refresh_window_seconds
        self.days_back = days_back
        self.transaction_limit = transaction_limit
        self.oauth_state_ttl = timedelta(minutes=oauth_state_ttl_minutes)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def get_available_banks(self) -> List[Dict]:
        return self.registry.list()

    def initiate_connection(self, user_id: int, bank_code: str) -> Dict[str, str]:
        """
        Start OAuth authorization for a bank.

        Persists the CSRF state so complete_connection can verify it.

        Returns:
            {'auth_url': str, 'state': str}

        Raises:
            BankIntegrationError: BANK_NOT_SUPPORTED
        """
        response = self.registry.initiate_connection(bank_code)
        if not response.success:
            raise BankIntegrationError(response.error_code, response.error_message)

        auth_url = response.data["auth_url"]
        # The state handed back is the one actually embedded in the URL
        state = parse_qs(urlparse(auth_url).query).get("state", [response.data["state"]])[0]

        oauth_state = OAuthState(
            state_token=state,
            user_id=user_id,
            bank_code=bank_code,
            expires_at=datetime.now(UTC) + self.oauth_state_ttl
        )
        self.db.add(oauth_state)
        self.db.commit()

        logger.info(f"Started authorization for user {user_id} at {bank_code}")
        return {'auth_url': auth_url, 'state': state}

    def resolve_state(self, state: str) -> Optional[Tuple[int, str]]:
        """(user_id, bank_code) of a pending authorization, for redirect callbacks."""
        oauth_state = self.db.query(OAuthState).filter(
            OAuthState.state_token == state,
            OAuthState.used_at.is_(None)
        ).first()
        if not oauth_state:
            return None
        return oauth_state.user_id, oauth_state.bank_code

    def _consume_state(self, user_id: int, bank_code: str, state: str):
        """
        Mark a pending authorization state as used.

        Raises:
            InvalidOAuthStateError: Unknown, mismatched, used or expired state
        """
        oauth_state = self.db.query(OAuthState).filter(
            OAuthState.state_token == state
        ).first()

        if not oauth_state or oauth_state.user_id != user_id or oauth_state.bank_code != bank_code:
            raise InvalidOAuthStateError("Invalid state token")

        if oauth_state.used_at:
            raise InvalidOAuthStateError("State token already used")

        expires_at = oauth_state.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        if expires_at < datetime.now(UTC):
            raise InvalidOAuthStateError("State token expired")

        oauth_state.used_at = datetime.now(UTC)
        self.db.commit()

    async def complete_connection(
        self,
        user_id: int,
        bank_code: str,
        auth_code: str,
        state: str,
        customer_ip: Optional[str] = None
    ) -> ConnectionCompleteResult:
        """
        Finish authorization and import initial data.

        Steps: verify state, exchange code, test the token, size the
        connection, store credentials, run the first full sync. Nothing is
        stored unless the token has been exchanged and tested.
        """
        adapter = self.registry.get(bank_code)
        if not adapter:
            return self._complete_failed(
                bank_code, BankErrorCode.BANK_NOT_SUPPORTED, f"Bank {bank_code} is not supported"
            )

        try:
            self._consume_state(user_id, bank_code, state)
        except InvalidOAuthStateError as e:
            logger.warning(f"Rejected authorization callback for user {user_id} at {bank_code}: {e.message}")
            return self._complete_failed(bank_code, e.code, e.message)

        token_response = await self.registry.complete_connection(bank_code, auth_code)
        if not token_response.success:
            return self._complete_failed(
                bank_code,
                token_response.error_code,
                f"Authorization with {adapter.bank_name} failed: {token_response.error_message}. "
                f"Please reconnect {adapter.bank_name}."
            )
        tokens: AuthTokenBundle = token_response.data

        test_response = await self.registry.test_connection(bank_code, tokens.access_token)
        if not test_response.success:
            return self._complete_failed(
                bank_code,
                BankErrorCode.CONNECTION_TEST_FAILED,
                f"Connection test with {adapter.bank_name} failed: {test_response.error_message}"
            )

        sizing = await self.registry.sync_account_data(
            bank_code,
            tokens.access_token,
            days_back=self.days_back,
            limit=self.transaction_limit,
            customer_ip=customer_ip
        )
        if not sizing.success:
            return self._complete_failed(
                bank_code,
                sizing.error_code,
                f"Could not read accounts from {adapter.bank_name}: {sizing.error_message}"
            )
        sizing_data: AccountSyncData = sizing.data

        self.vault.store(
            user_id,
            bank_code,
            adapter.bank_name,
            tokens,
            client_id=adapter.config.client_id,
            client_secret=adapter.config.client_secret,
            account_identifier=self._account_identifier(sizing_data),
            metadata={
                'account_count': len(sizing_data.accounts),
                'last_transaction_count': len(sizing_data.transactions),
                'api_version': OPEN_BANKING_API_VERSION,
            }
        )

        initial_sync = await self.sync_bank_data(
            user_id,
            bank_code,
            SyncOptions(force=True, customer_ip=customer_ip, sync_type=BankSyncType.OAUTH_CONNECT)
        )

        record = self.vault.get_record(user_id, bank_code)
        return ConnectionCompleteResult(
            success=True,
            bank_code=bank_code,
            connection_status=record.connection_status if record else None,
            accounts_found=len(sizing_data.accounts),
            transactions_found=len(sizing_data.transactions),
            initial_sync=initial_sync
        )

    @staticmethod
    def _complete_failed(bank_code: str, code, message: str) -> ConnectionCompleteResult:
        code_str = code.value if isinstance(code, BankErrorCode) else code
        return ConnectionCompleteResult(
            success=False,
            bank_code=bank_code,
            error_code=code_str,
            error=message
        )

    @staticmethod
    def _account_identifier(data: AccountSyncData) -> Optional[str]:
        for account in data.accounts:
            for ident in account.identifications:
                if ident.get("identification"):
                    return ident["identification"]
        return data.accounts[0].external_id if data.accounts else None

    async def disconnect_bank(self, user_id: int, bank_code: str) -> bool:
        """
        Disconnect a bank.

        Remote revocation is best effort; local credentials are always
        deleted afterwards.

        Returns:
            True if a stored connection was removed
        """
        try:
            credentials = self.vault.retrieve(user_id, bank_code)
            if credentials:
                response = await self.registry.disconnect(bank_code, credentials.tokens.access_token)
                if not response.success:
                    logger.warning(
                        f"Token revocation at {bank_code} failed for user {user_id}: {response.error_message}"
                    )
        except CredentialDecryptionError as e:
            logger.warning(f"Skipping remote revocation at {bank_code} for user {user_id}: {e.message}")

        return self.vault.revoke(user_id, bank_code)

    def get_connection_statuses(self, user_id: int) -> List[ConnectionStatusInfo]:
        statuses = []
        for record in self.vault.list_connections(user_id):
            total_accounts, total_transactions = self.accounts.institution_totals(user_id, record.bank_code)
            statuses.append(ConnectionStatusInfo(
                bank_code=record.bank_code,
                bank_name=record.bank_name,
                connected=record.connection_status == ConnectionPhase.ACTIVE.value,
                status=record.connection_status,
                last_sync=record.last_sync,
                error_message=record.error_message,
                next_sync_scheduled=record.next_sync_scheduled,
                total_accounts=total_accounts,
                total_transactions=total_transactions
            ))
        return statuses

    # ------------------------------------------------------------------
    # Synchronization
    # ------------------------------------------------------------------

    async def sync_bank_data(
        self,
        user_id: int,
        bank_code: str,
        options: Optional[SyncOptions] = None
    ) -> ConnectionSyncResult:
        """
        Sync accounts and transactions for one bank.

        Main workflow:
        1. Load credentials and check the connection may sync
        2. Refresh the token if it is inside the refresh window
        3. Fetch accounts, balances and transactions
        4. Upsert accounts, insert unseen transactions
        5. Update connection status and write a sync log

        Per-account failures do not fail the sync; they are returned in
        errors with partial=True.
        """
        options = options or SyncOptions()
        started_at = datetime.now(UTC)

        sync_log = BankSyncLog(
            user_id=user_id,
            bank_code=bank_code,
            sync_type=options.sync_type,
            sync_status=BankSyncStatus.FAILED,
            started_at=started_at
        )
        self.db.add(sync_log)
        self.db.commit()

        record = self.vault.get_record(user_id, bank_code)
        if record is None:
            return self._sync_failed(
                sync_log, BankErrorCode.NO_CREDENTIALS,
                f"No credentials found for {bank_code}. Please connect the bank first."
            )

        if not can_sync(record.connection_status):
            return self._sync_failed(
                sync_log,
                BankErrorCode.TOKEN_EXPIRED if record.connection_status == "expired" else BankErrorCode.CREDENTIALS_REVOKED,
                f"Connection to {record.bank_name} is {record.connection_status}. Please reconnect {record.bank_name}."
            )

        if self._recently_synced(record, options):
            logger.info(f"Skipping {bank_code} for user {user_id}: next sync at {record.next_sync_scheduled}")
            self._finish_log(sync_log, BankSyncStatus.SUCCESS)
            return ConnectionSyncResult(success=True, skipped=True, last_sync_time=record.last_sync)

        try:
            credentials = self.vault.retrieve(user_id, bank_code)
        except CredentialDecryptionError as e:
            return self._sync_failed(
                sync_log, BankErrorCode.CREDENTIALS_REVOKED,
                f"{e.message}. Please reconnect {record.bank_name}."
            )

        try:
            access_token = await self._fresh_access_token(user_id, bank_code, record.bank_name, credentials)
        except BankIntegrationError as e:
            return self._sync_failed(sync_log, e.code, e.message)

        fetch = await self.registry.sync_account_data(
            bank_code,
            access_token,
            days_back=options.days_back or self.days_back,
            limit=self.transaction_limit,
            customer_ip=options.customer_ip,
            cancel_event=options.cancel_event
        )
        if not fetch.success:
            if fetch.error_code != BankErrorCode.CANCELLED.value:
                self._set_status(user_id, bank_code, "error", error_message=fetch.error_message)
            return self._sync_failed(sync_log, fetch.error_code, fetch.error_message)

        data: AccountSyncData = fetch.data
        sync_log.transactions_fetched = len(data.transactions)

        try:
            accounts_imported, imported, duplicates, last_balance = self._import_account_data(
                user_id, bank_code, data, options.account_ids
            )
        except (SQLAlchemyError, ValueError) as e:
            self.db.rollback()
            logger.error(f"Importing data from {bank_code} for user {user_id} failed: {e}")
            self._set_status(user_id, bank_code, "error", error_message=str(e))
            return self._sync_failed(sync_log, BankErrorCode.SYNC_FAILED, str(e))

        errors = [e.summary() for e in data.errors]
        failed_accounts = {e.account_external_id for e in data.errors if e.stage == "transactions"}
        if data.accounts and len(failed_accounts) >= len(data.accounts):
            message = "; ".join(errors)
            self._set_status(user_id, bank_code, "error", error_message=message)
            return self._sync_failed(sync_log, BankErrorCode.SYNC_FAILED, message, errors=errors)

        metadata: Dict[str, Any] = {
            'account_count': len(data.accounts),
            'last_transaction_count': imported,
            'api_version': OPEN_BANKING_API_VERSION,
        }
        if last_balance is not None:
            metadata['last_balance'] = str(last_balance)

        updated = self._set_status(
            user_id,
            bank_code,
            "active",
            error_message="; ".join(errors) if errors else None,
            metadata=metadata
        )

        sync_log.accounts_synced = accounts_imported
        sync_log.transactions_imported = imported
        sync_log.transactions_duplicate = duplicates
        if errors:
            sync_log.error_message = "; ".join(errors)
        self._finish_log(sync_log, BankSyncStatus.PARTIAL if errors else BankSyncStatus.SUCCESS)

        logger.info(
            f"Synced {bank_code} for user {user_id}: {accounts_imported} accounts, "
            f"{imported} new transactions, {duplicates} duplicates, {len(errors)} errors"
        )

        return ConnectionSyncResult(
            success=True,
            partial=bool(errors),
            accounts_imported=accounts_imported,
            transactions_imported=imported,
            duplicates_skipped=duplicates,
            errors=errors,
            last_sync_time=updated.last_sync if updated else datetime.now(UTC)
        )

    async def sync_all_banks(self, user_id: int, options: Optional[SyncOptions] = None) -> List[BankSyncSummary]:
        """Sync every syncable connection in turn; one failure never stops the rest."""
        options = options or SyncOptions()
        summaries = []
        for record in self.vault.list_connections(user_id):
            if not can_sync(record.connection_status):
                continue
            if options.cancel_event is not None and options.cancel_event.is_set():
                break
            try:
                result = await self.sync_bank_data(user_id, record.bank_code, options)
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"Sync of {record.bank_code} for user {user_id} crashed: {e}")
                result = ConnectionSyncResult(
                    success=False, error_code=BankErrorCode.SYNC_FAILED.value, errors=[str(e)]
                )
            summaries.append(BankSyncSummary(bank_code=record.bank_code, result=result))
        return summaries

    def _set_status(
        self,
        user_id: int,
        bank_code: str,
        status: str,
        error_message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[CredentialRecord]:
        try:
            return self.vault.update_connection_status(
                user_id, bank_code, status, error_message=error_message, metadata=metadata
            )
        except InvalidTransitionError as e:
            # Another request moved the connection on while this sync ran
            logger.warning(f"Not updating {bank_code} for user {user_id}: {e}")
            return None

    def _recently_synced(self, record: CredentialRecord, options: SyncOptions) -> bool:
        if options.force or options.sync_type != BankSyncType.SCHEDULED:
            return False
        if record.next_sync_scheduled is None:
            return False
        return record.next_sync_scheduled > datetime.now(UTC)

    async def _fresh_access_token(
        self,
        user_id: int,
        bank_code: str,
        bank_name: str,
        credentials: StoredCredentials
    ) -> str:
        """
        Return an access token that is not stale, refreshing it if needed.

        Refresh is serialized per (user, bank); a waiter re-reads the vault
        and uses the token another task already refreshed.

        Raises:
            BankIntegrationError: TOKEN_EXPIRED / TOKEN_REFRESH_FAILED; the
                connection is marked 'expired' and no data is requested
        """
        tokens = credentials.tokens
        if not tokens.is_stale(window_seconds=self.refresh_window_seconds):
            return tokens.access_token

        async with self.refresh_locks.get(user_id, bank_code):
            record = self.vault.get_record(user_id, bank_code)
            if record is not None and not can_sync(record.connection_status):
                raise BankIntegrationError(
                    BankErrorCode.TOKEN_EXPIRED,
                    f"Access to {bank_name} has expired. Please reconnect {bank_name}."
                )
            current = self.vault.retrieve(user_id, bank_code)
            if current is None:
                raise BankIntegrationError(
                    BankErrorCode.NO_CREDENTIALS,
                    f"No credentials found for {bank_code}. Please connect the bank first."
                )
            tokens = current.tokens
            if not tokens.is_stale(window_seconds=self.refresh_window_seconds):
                return tokens.access_token

            if not tokens.refresh_token:
                if not tokens.is_expired():
                    # Still usable for now; nothing to refresh it with
                    return tokens.access_token
                message = f"Access to {bank_name} has expired. Please reconnect {bank_name}."
                self._set_status(user_id, bank_code, "expired", error_message=message)
                raise BankIntegrationError(BankErrorCode.TOKEN_EXPIRED, message)

            logger.info(f"Refreshing token for user {user_id} at {bank_code}")
            response = await self.registry.refresh_token(bank_code, tokens.refresh_token)
            if not response.success:
                message = f"Could not refresh access to {bank_name}: {response.error_message}. Please reconnect {bank_name}."
                logger.warning(message)
                self._set_status(user_id, bank_code, "expired", error_message=message)
                raise BankIntegrationError(BankErrorCode.TOKEN_REFRESH_FAILED, message)

            self.vault.update_credentials(user_id, bank_code, response.data)
            return response.data.access_token

    def _import_account_data(
        self,
        user_id: int,
        bank_code: str,
        data: AccountSyncData,
        account_ids: Optional[List[str]] = None
    ) -> Tuple[int, int, int, Optional[Decimal]]:
        """
        Upsert accounts and insert unseen transactions.

        Returns:
            (accounts imported, transactions imported, duplicates skipped,
             total of latest balances or None)
        """
        wanted = set(account_ids) if account_ids else None
        accounts_imported = 0
        imported = 0
        duplicates = 0
        balance_total: Optional[Decimal] = None

        for account in data.accounts:
            if wanted is not None and account.external_id not in wanted:
                continue

            fields: Dict[str, Any] = {
                'account_type': map_account_type(account.account_subtype),
                'currency': account.currency,
                'external_account_id': account.external_id,
                'api_connected': True,
            }
            balances = data.balances.get(account.external_id) or []
            if balances:
                fields['balance'] = balances[0].amount
                balance_total = (balance_total or Decimal("0")) + balances[0].amount

            account_id, _ = self.accounts.upsert(user_id, bank_code, account.display_name, **fields)
            accounts_imported += 1

            new_count, dup_count = self._insert_transactions(
                account_id, data.transactions_for(account.external_id), TransactionSource.BANK_SYNC
            )
            imported += new_count
            duplicates += dup_count

        return accounts_imported, imported, duplicates, balance_total

    def _insert_transactions(
        self,
        account_id: int,
        transactions: List[NormalizedTransaction],
        source: TransactionSource
    ) -> Tuple[int, int]:
        for tx in transactions:
            if tx.category is None:
                tx.category = self.categorizer(tx.description, tx.amount)

        existing = self.transactions.existing_external_ids(account_id, [t.external_id for t in transactions])
        fresh, skipped = TransactionDeduplicator.filter_new(transactions, existing)
        inserted, rejected = self.transactions.insert_many(account_id, fresh, source.value)
        return inserted, skipped + rejected

    def _finish_log(self, sync_log: BankSyncLog, status: BankSyncStatus, error_code: Optional[str] = None):
        completed_at = datetime.now(UTC)
        started_at = sync_log.started_at
        if started_at.tzinfo is None:
            started_at = started_at.replace(tzinfo=UTC)
        sync_log.sync_status = status
        sync_log.error_code = error_code
        sync_log.completed_at = completed_at
        sync_log.duration_seconds = int((completed_at - started_at).total_seconds())
        self.db.commit()

    def _sync_failed(
        self,
        sync_log: BankSyncLog,
        code,
        message: str,
        errors: Optional[List[str]] = None
    ) -> ConnectionSyncResult:
        code_str = code.value if isinstance(code, BankErrorCode) else code
        sync_log.error_message = message
        self._finish_log(sync_log, BankSyncStatus.FAILED, error_code=code_str)
        logger.warning(f"Sync of {sync_log.bank_code} for user {sync_log.user_id} failed: {message}")
        return ConnectionSyncResult(
            success=False,
            error_code=code_str,
            errors=errors or [message]
        )

    # ------------------------------------------------------------------
    # CSV
    # ------------------------------------------------------------------

    def import_csv(
        self,
        user_id: int,
        csv_content: str,
        config: Optional[CSVImportConfig],
        account_id: int
    ) -> CSVImportResult:
        """
        Parse a CSV statement and import it into one of the user's accounts.

        Raises:
            BankIntegrationError: ACCOUNT_NOT_FOUND_OR_UNAUTHORIZED
        """
        if not self.accounts.is_owned_by(account_id, user_id):
            raise BankIntegrationError(
                BankErrorCode.ACCOUNT_NOT_FOUND_OR_UNAUTHORIZED,
                f"Account {account_id} not found"
            )

        result = self.csv_service.parse_csv(csv_content, config)
        if not result.transactions:
            return result

        inserted, duplicates = self._insert_transactions(
            account_id, result.transactions, TransactionSource.CSV_IMPORT
        )
        logger.info(
            f"CSV import into account {account_id}: {inserted} new, {duplicates} duplicates, "
            f"{result.failed_imports} rejected rows"
        )
        return result.model_copy(update={
            'successful_imports': inserted,
            'duplicates': duplicates,
        })


@lru_cache()
def get_registry() -> BankAdapterRegistry:
    return build_registry(get_settings())


@lru_cache()
def get_encryption() -> TokenEncryption:
    return TokenEncryption(get_settings().credential_encryption_key)


def create_connection_manager(db: Session) -> BankConnectionManager:
    """Manager for one request, sharing the process-wide registry and key."""
    settings = get_settings()
    vault = CredentialVault(
        SQLCredentialStore(db),
        get_encryption(),
        sync_interval_hours=settings.sync_interval_hours
    )
    return BankConnectionManager(
        db,
        get_registry(),
        vault,
        refresh_window_seconds=settings.token_refresh_window_seconds,
        days_back=settings.sync_days_back,
        transaction_limit=settings.sync_transaction_limit,
        oauth_state_ttl_minutes=settings.oauth_state_ttl_minutes,
        csv_service=CSVImportService(
            max_file_size=settings.csv_max_file_size_bytes,
            max_rows=settings.csv_max_rows
        )
    )
