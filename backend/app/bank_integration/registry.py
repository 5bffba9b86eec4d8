"""
Bank Adapter Registry

Maps bank codes to adapter instances and dispatches protocol operations.
Also runs the per-bank data pull used by synchronization: accounts first,
then balances and transactions one account at a time.
"""

import asyncio
import logging
from datetime import date, timedelta
from typing import Callable, Dict, List, Optional

from .client import BankApiClient
from .exceptions import BankErrorCode
from .providers.base import BaseBankAdapter
from .providers.open_banking import OpenBankingAdapter
from .rate_limiter import SlidingWindowRateLimiter
from .schemas import AccountSyncData, AccountSyncError, BankApiResponse, ConnectionConfig


logger = logging.getLogger(__name__)


ClientFactory = Callable[[ConnectionConfig], BankApiClient]


class BankAdapterRegistry:
    """
    Holds one adapter per bank code.

    The adapter map is only written by register(); lookups do not lock.
    """

    def __init__(
        self,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        client_factory: Optional[ClientFactory] = None,
        default_customer_ip: Optional[str] = None
    ):
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self._client_factory = client_factory or self._default_client
        self.default_customer_ip = default_customer_ip
        self._adapters: Dict[str, BaseBankAdapter] = {}

    def _default_client(self, config: ConnectionConfig) -> BankApiClient:
        return BankApiClient(config.base_url, rate_limiter=self.rate_limiter)

    def register(self, config: ConnectionConfig) -> BaseBankAdapter:
        """
        Create and register the adapter for config.bank_code.

        Raises:
            ValueError: If the protocol is not supported
        """
        client = self._client_factory(config)
        if config.protocol == "open_banking":
            adapter = OpenBankingAdapter(config, client, default_customer_ip=self.default_customer_ip)
        else:
            raise ValueError(f"Unsupported protocol: {config.protocol}")

        if config.bank_code in self._adapters:
            logger.info(f"Replacing adapter for bank {config.bank_code}")
        self._adapters[config.bank_code] = adapter
        return adapter

    def get(self, bank_code: str) -> Optional[BaseBankAdapter]:
        return self._adapters.get(bank_code)

    def list(self) -> List[Dict]:
        """Registered banks, without any client secrets."""
        return [
            {
                'code': adapter.bank_code,
                'name': adapter.bank_name,
                'is_production': adapter.is_production
            }
            for adapter in self._adapters.values()
        ]

    def _unsupported(self, bank_code: str) -> BankApiResponse:
        return BankApiResponse.fail(
            BankErrorCode.BANK_NOT_SUPPORTED,
            f"Bank {bank_code} is not supported"
        )

    def initiate_connection(self, bank_code: str, state: Optional[str] = None) -> BankApiResponse:
        adapter = self.get(bank_code)
        if not adapter:
            return self._unsupported(bank_code)
        return adapter.authenticate(state)

    async def complete_connection(self, bank_code: str, auth_code: str) -> BankApiResponse:
        adapter = self.get(bank_code)
        if not adapter:
            return self._unsupported(bank_code)
        return await adapter.exchange_code_for_tokens(auth_code)

    async def refresh_token(self, bank_code: str, refresh_token: str) -> BankApiResponse:
        adapter = self.get(bank_code)
        if not adapter:
            return self._unsupported(bank_code)
        return await adapter.refresh_token(refresh_token)

    async def test_connection(self, bank_code: str, access_token: str) -> BankApiResponse:
        adapter = self.get(bank_code)
        if not adapter:
            return self._unsupported(bank_code)
        return await adapter.test_connection(access_token)

    async def disconnect(self, bank_code: str, access_token: str) -> BankApiResponse:
        adapter = self.get(bank_code)
        if not adapter:
            return self._unsupported(bank_code)
        return await adapter.disconnect(access_token)

    async def sync_account_data(
        self,
        bank_code: str,
        access_token: str,
        days_back: int = 90,
        limit: int = 1000,
        customer_ip: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> BankApiResponse:
        """
        Pull accounts, balances and recent transactions for one bank.

        Accounts are processed sequentially. A failure for one account is
        recorded in AccountSyncData.errors and the remaining accounts are
        still fetched. Only a failure to list accounts fails the call.

        Returns:
            BankApiResponse whose data is AccountSyncData
        """
        adapter = self.get(bank_code)
        if not adapter:
            return self._unsupported(bank_code)

        accounts_response = await adapter.get_accounts(
            access_token, customer_ip=customer_ip, cancel_event=cancel_event
        )
        if not accounts_response.success:
            logger.error(f"Could not list accounts for {bank_code}: {accounts_response.error_message}")
            return accounts_response

        to_date = date.today()
        from_date = to_date - timedelta(days=days_back)
        result = AccountSyncData(accounts=accounts_response.data)

        for account in result.accounts:
            if cancel_event is not None and cancel_event.is_set():
                return BankApiResponse.fail(BankErrorCode.CANCELLED, "Sync cancelled")

            balances_response = await adapter.get_account_balances(
                access_token, account.external_id,
                customer_ip=customer_ip, cancel_event=cancel_event
            )
            if balances_response.success:
                result.balances[account.external_id] = balances_response.data
            else:
                result.errors.append(AccountSyncError(
                    account_external_id=account.external_id,
                    stage="balances",
                    code=balances_response.error_code,
                    message=balances_response.error_message
                ))

            transactions_response = await adapter.get_transactions(
                access_token,
                account.external_id,
                from_date=from_date,
                to_date=to_date,
                limit=limit,
                customer_ip=customer_ip,
                cancel_event=cancel_event
            )
            if transactions_response.success:
                result.transactions.extend(transactions_response.data)
            else:
                logger.warning(
                    f"Transactions for account {account.external_id} at {bank_code} failed: "
                    f"{transactions_response.error_message}"
                )
                result.errors.append(AccountSyncError(
                    account_external_id=account.external_id,
                    stage="transactions",
                    code=transactions_response.error_code,
                    message=transactions_response.error_message
                ))

        return BankApiResponse.ok(result)


def build_registry(settings) -> BankAdapterRegistry:
    """Registry wired from Settings, with the sandbox bank when enabled."""
    rate_limiter = SlidingWindowRateLimiter(
        max_requests=settings.bank_api_rate_limit_requests,
        window_seconds=settings.bank_api_rate_limit_window_seconds
    )

    def client_factory(config: ConnectionConfig) -> BankApiClient:
        return BankApiClient(
            config.base_url,
            rate_limiter=rate_limiter,
            timeout=settings.bank_api_timeout_seconds,
            retries=settings.bank_api_retries,
            retry_delay=settings.bank_api_retry_delay_seconds
        )

    registry = BankAdapterRegistry(
        rate_limiter=rate_limiter,
        client_factory=client_factory,
        default_customer_ip=settings.bank_api_customer_ip
    )

    if settings.test_bank_enabled:
        registry.register(ConnectionConfig(
            bank_code=settings.test_bank_code,
            bank_name=settings.test_bank_name,
            base_url=settings.test_bank_base_url,
            authorize_url=settings.test_bank_authorize_url,
            token_url=settings.test_bank_token_url,
            client_id=settings.test_bank_client_id,
            client_secret=settings.test_bank_client_secret or None,
            scopes=settings.test_bank_scopes,
            redirect_uri=settings.oauth_redirect_uri,
            is_production=False
        ))

    return registry
