"""
Abstract base class for bank adapters

Defines the common interface that every bank protocol adapter must implement.
All methods return BankApiResponse so callers never have to catch transport
exceptions.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import date
from typing import Optional

from ..client import BankApiClient
from ..schemas import AuthTokenBundle, BankApiResponse, ConnectionConfig


class BaseBankAdapter(ABC):
    """
    Abstract base class for bank adapters.

    One adapter instance exists per bank code. It owns the bank's
    ConnectionConfig and a BankApiClient bound to the bank's base URL.
    """

    def __init__(self, config: ConnectionConfig, client: BankApiClient):
        """
        Initialize adapter with static bank configuration.

        Args:
            config: ConnectionConfig for this bank
            client: Protocol client bound to config.base_url
        """
        self.config = config
        self.client = client

    @property
    def bank_code(self) -> str:
        return self.config.bank_code

    @property
    def bank_name(self) -> str:
        return self.config.bank_name

    @property
    def is_production(self) -> bool:
        return self.config.is_production

    @abstractmethod
    def authenticate(self, state: Optional[str] = None) -> BankApiResponse:
        """
        Build the authorization URL the user is sent to.

        Args:
            state: CSRF token; generated when omitted

        Returns:
            BankApiResponse whose data is {'auth_url': str, 'state': str}
        """
        pass

    @abstractmethod
    async def exchange_code_for_tokens(self, code: str) -> BankApiResponse:
        """
        Exchange authorization code for tokens.

        Args:
            code: Authorization code from OAuth callback

        Returns:
            BankApiResponse whose data is an AuthTokenBundle
        """
        pass

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> BankApiResponse:
        """
        Obtain a new token bundle using a refresh token.

        Returns:
            BankApiResponse whose data is an AuthTokenBundle
        """
        pass

    @abstractmethod
    async def get_accounts(
        self,
        access_token: str,
        customer_ip: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> BankApiResponse:
        """Data: list of NormalizedAccount."""
        pass

    @abstractmethod
    async def get_account_balances(
        self,
        access_token: str,
        account_id: str,
        customer_ip: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> BankApiResponse:
        """Data: list of NormalizedBalance."""
        pass

    @abstractmethod
    async def get_transactions(
        self,
        access_token: str,
        account_id: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        customer_ip: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> BankApiResponse:
        """
        Fetch transactions for an account within date range.

        Args:
            access_token: Valid OAuth access token
            account_id: Account identifier from the bank
            from_date: Start date (inclusive)
            to_date: End date (inclusive)
            limit: Maximum number of records to return
            offset: Records to skip

        Returns:
            BankApiResponse whose data is a list of NormalizedTransaction
        """
        pass

    @abstractmethod
    async def test_connection(self, access_token: str) -> BankApiResponse:
        """Data: True if the token is accepted by the bank."""
        pass

    @abstractmethod
    async def disconnect(self, access_token: str) -> BankApiResponse:
        """
        Revoke access token at the bank.

        Returns:
            BankApiResponse whose data is True on successful revocation
        """
        pass

    def rate_limit_key(self, operation: str, access_token: Optional[str] = None) -> str:
        """Limiter key scoped to this bank, the operation and the token prefix."""
        suffix = access_token[:8] if access_token else "anon"
        return f"{self.bank_code}:{operation}:{suffix}"
