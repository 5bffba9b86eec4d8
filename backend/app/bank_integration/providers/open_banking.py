"""
Open Banking (UK v3.1 AISP) Adapter

Standard OAuth2 authorization-code flow against the bank's authorization
server, then FAPI-style account information requests.

Documentation: https://openbankinguk.github.io/read-write-api-site3/v3.1.10/
"""

import asyncio
import logging
import secrets
import uuid
from datetime import date, datetime, UTC
from decimal import Decimal, InvalidOperation
from email.utils import format_datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from .base import BaseBankAdapter
from ..client import BankApiClient
from ..deduplication import TransactionDeduplicator
from ..exceptions import BankErrorCode
from ..schemas import (
    AuthTokenBundle, BankApiResponse, ConnectionConfig, NormalizedAccount,
    NormalizedBalance, NormalizedTransaction
)


logger = logging.getLogger(__name__)

# Pages followed via Links.Next before giving up
MAX_TRANSACTION_PAGES = 20


class OpenBankingAdapter(BaseBankAdapter):
    """
    Open Banking AISP integration.

    Special requirements:
    - x-fapi-* headers on every resource request
    - Token endpoint takes form-encoded bodies
    - Transactions are paginated with Links.Next
    """

    def __init__(
        self,
        config: ConnectionConfig,
        client: BankApiClient,
        default_customer_ip: Optional[str] = None
    ):
        super().__init__(config, client)
        self.default_customer_ip = default_customer_ip

    def _endpoint(self, path: str) -> str:
        return f"{self.config.api_prefix.rstrip('/')}/{path.lstrip('/')}"

    def _auth_headers(self, access_token: str, customer_ip: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "x-fapi-auth-date": format_datetime(datetime.now(UTC), usegmt=True),
            "x-fapi-interaction-id": str(uuid.uuid4()),
        }
        ip = customer_ip or self.default_customer_ip
        if ip:
            headers["x-fapi-customer-ip-address"] = ip
        return headers

    # ------------------------------------------------------------------
    # OAuth2
    # ------------------------------------------------------------------

    def authenticate(self, state: Optional[str] = None) -> BankApiResponse:
        state = state or secrets.token_urlsafe(32)
        params = {
            "response_type": "code",
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "scope": " ".join(self.config.scopes),
            "state": state,
        }
        auth_url = f"{self.config.authorize_url}?{urlencode(params)}"
        return BankApiResponse.ok({"auth_url": auth_url, "state": state})

    async def exchange_code_for_tokens(self, code: str) -> BankApiResponse:
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.config.redirect_uri,
            "client_id": self.config.client_id,
        }
        if self.config.client_secret:
            form["client_secret"] = self.config.client_secret

        response = await self.client.execute(
            self.config.token_url,
            method="POST",
            data=form,
            rate_limit_key=self.rate_limit_key("token-exchange")
        )
        if not response.success:
            return response

        return self._token_bundle_from(response)

    async def refresh_token(self, refresh_token: str) -> BankApiResponse:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.config.client_id,
        }
        if self.config.client_secret:
            form["client_secret"] = self.config.client_secret

        response = await self.client.execute(
            self.config.token_url,
            method="POST",
            data=form,
            rate_limit_key=self.rate_limit_key("token-refresh", refresh_token)
        )
        if not response.success:
            return BankApiResponse.fail(
                BankErrorCode.TOKEN_REFRESH_FAILED,
                response.error_message or "Token refresh failed",
                protocol_code=response.error_code
            )

        # Keep the previous refresh token when the server does not rotate it
        return self._token_bundle_from(response, fallback_refresh_token=refresh_token)

    def _token_bundle_from(
        self,
        response: BankApiResponse,
        fallback_refresh_token: Optional[str] = None
    ) -> BankApiResponse:
        payload = response.data if isinstance(response.data, dict) else {}
        access_token = payload.get("access_token")
        if not access_token:
            logger.error(f"Token response from {self.bank_code} has no access_token")
            return BankApiResponse.fail(
                BankErrorCode.INVALID_TOKEN_RESPONSE,
                "Token response did not contain an access token"
            )

        try:
            expires_in = int(payload.get("expires_in") or 3600)
        except (TypeError, ValueError):
            expires_in = 3600

        bundle = AuthTokenBundle(
            access_token=access_token,
            refresh_token=payload.get("refresh_token") or fallback_refresh_token,
            token_type=payload.get("token_type") or "Bearer",
            expires_in=expires_in,
            scope=payload.get("scope"),
            obtained_at=datetime.now(UTC)
        )
        return BankApiResponse.ok(bundle, rate_limit=response.rate_limit)

    # ------------------------------------------------------------------
    # Account information
    # ------------------------------------------------------------------

    async def get_accounts(
        self,
        access_token: str,
        customer_ip: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> BankApiResponse:
        response = await self.client.execute(
            self._endpoint("accounts"),
            headers=self._auth_headers(access_token, customer_ip),
            rate_limit_key=self.rate_limit_key("accounts", access_token),
            cancel_event=cancel_event
        )
        if not response.success:
            return response

        raw_accounts = self._data_list(response.data, "Account")
        accounts = [self._normalize_account(a) for a in raw_accounts if a.get("AccountId")]
        return BankApiResponse.ok(accounts, rate_limit=response.rate_limit)

    async def get_account_balances(
        self,
        access_token: str,
        account_id: str,
        customer_ip: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> BankApiResponse:
        response = await self.client.execute(
            self._endpoint(f"accounts/{account_id}/balances"),
            headers=self._auth_headers(access_token, customer_ip),
            rate_limit_key=self.rate_limit_key("balances", access_token),
            cancel_event=cancel_event
        )
        if not response.success:
            return response

        balances = []
        for raw in self._data_list(response.data, "Balance"):
            balance = self._normalize_balance(raw, account_id)
            if balance is not None:
                balances.append(balance)
        return BankApiResponse.ok(balances, rate_limit=response.rate_limit)

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
        Fetch booked transactions, following Links.Next pagination.

        Stops when limit records are collected, when there is no next page,
        or after MAX_TRANSACTION_PAGES pages.
        """
        params: Dict[str, Any] = {}
        if from_date:
            params["fromBookingDateTime"] = f"{from_date.isoformat()}T00:00:00"
        if to_date:
            params["toBookingDateTime"] = f"{to_date.isoformat()}T23:59:59"
        if limit:
            params["limit"] = limit
        if offset:
            params["offset"] = offset

        endpoint = self._endpoint(f"accounts/{account_id}/transactions")
        transactions: List[NormalizedTransaction] = []
        rate_limit = None
        page_count = 0

        while endpoint and page_count < MAX_TRANSACTION_PAGES:
            response = await self.client.execute(
                endpoint,
                headers=self._auth_headers(access_token, customer_ip),
                params=params or None,
                rate_limit_key=self.rate_limit_key("transactions", access_token),
                cancel_event=cancel_event
            )
            if not response.success:
                return response

            rate_limit = response.rate_limit
            page_count += 1

            for raw in self._data_list(response.data, "Transaction"):
                tx = self._normalize_transaction(raw, account_id)
                if tx is not None:
                    transactions.append(tx)

            if limit and len(transactions) >= limit:
                transactions = transactions[:limit]
                break

            endpoint = self._next_link(response.data)
            # Next links already carry their query string
            params = {}

        if page_count >= MAX_TRANSACTION_PAGES and endpoint:
            logger.warning(
                f"Stopped paginating transactions for account {account_id} after {page_count} pages"
            )

        logger.info(f"Fetched {len(transactions)} transactions for account {account_id} from {self.bank_code}")
        return BankApiResponse.ok(transactions, rate_limit=rate_limit)

    async def test_connection(self, access_token: str) -> BankApiResponse:
        response = await self.client.execute(
            self._endpoint("accounts"),
            method="HEAD",
            headers=self._auth_headers(access_token),
            rate_limit_key=self.rate_limit_key("test-connection", access_token)
        )
        if not response.success:
            return response
        return BankApiResponse.ok(True, rate_limit=response.rate_limit)

    async def disconnect(self, access_token: str) -> BankApiResponse:
        response = await self.client.execute(
            self.config.token_revoke_url,
            method="POST",
            headers={"Authorization": f"Bearer {access_token}"},
            data={"token": access_token, "token_type_hint": "access_token"},
            rate_limit_key=self.rate_limit_key("disconnect", access_token)
        )
        if not response.success:
            return response
        return BankApiResponse.ok(True, rate_limit=response.rate_limit)

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    @staticmethod
    def _data_list(payload: Any, key: str) -> List[Dict[str, Any]]:
        if not isinstance(payload, dict):
            return []
        items = (payload.get("Data") or {}).get(key) or []
        return [item for item in items if isinstance(item, dict)]

    @staticmethod
    def _next_link(payload: Any) -> Optional[str]:
        if not isinstance(payload, dict):
            return None
        links = payload.get("Links") or {}
        return links.get("Next") or None

    @staticmethod
    def _parse_amount(value: Any) -> Optional[Decimal]:
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, TypeError, ValueError):
            return None
        return amount if amount.is_finite() else None

    @staticmethod
    def _signed(amount: Decimal, indicator: Optional[str]) -> Decimal:
        if indicator == "Credit":
            return abs(amount)
        return -abs(amount)

    @staticmethod
    def _parse_date(value: Optional[str]) -> Optional[date]:
        """Booking date from an ISO datetime; the time part is dropped."""
        if not value:
            return None
        try:
            return date.fromisoformat(value.split("T")[0])
        except ValueError:
            return None

    def _normalize_account(self, raw: Dict[str, Any]) -> NormalizedAccount:
        identifications = []
        for ident in raw.get("Account") or []:
            if isinstance(ident, dict) and ident.get("Identification"):
                identifications.append({
                    "scheme": ident.get("SchemeName", ""),
                    "identification": ident["Identification"],
                    "name": ident.get("Name") or "",
                })

        servicer = raw.get("Servicer")
        return NormalizedAccount(
            external_id=raw["AccountId"],
            currency=raw.get("Currency") or "GBP",
            account_type=raw.get("AccountType") or "Personal",
            account_subtype=raw.get("AccountSubType") or "CurrentAccount",
            nickname=raw.get("Nickname"),
            servicer=servicer.get("Identification") if isinstance(servicer, dict) else None,
            identifications=identifications
        )

    def _normalize_balance(self, raw: Dict[str, Any], account_id: str) -> Optional[NormalizedBalance]:
        amount_block = raw.get("Amount") or {}
        amount = self._parse_amount(amount_block.get("Amount"))
        if amount is None:
            logger.warning(f"Skipping balance without a valid amount for account {account_id}")
            return None

        as_of = None
        if raw.get("DateTime"):
            try:
                as_of = datetime.fromisoformat(raw["DateTime"].replace("Z", "+00:00"))
            except ValueError:
                as_of = None

        return NormalizedBalance(
            account_external_id=raw.get("AccountId") or account_id,
            amount=self._signed(amount, raw.get("CreditDebitIndicator")),
            currency=amount_block.get("Currency") or "GBP",
            balance_type=raw.get("Type") or "InterimAvailable",
            as_of=as_of
        )

    def _normalize_transaction(self, raw: Dict[str, Any], account_id: str) -> Optional[NormalizedTransaction]:
        """
        Convert one OB transaction into a NormalizedTransaction.

        Credit -> positive amount / income, Debit -> negative / expense.
        Returns None for records without a usable amount or booking date.
        """
        amount_block = raw.get("Amount") or {}
        amount = self._parse_amount(amount_block.get("Amount"))
        booking_date = self._parse_date(raw.get("BookingDateTime"))
        if amount is None or booking_date is None:
            logger.warning(f"Skipping malformed transaction {raw.get('TransactionId')} for account {account_id}")
            return None

        is_credit = raw.get("CreditDebitIndicator") == "Credit"
        amount = abs(amount) if is_credit else -abs(amount)
        description = raw.get("TransactionInformation") or "Unknown transaction"

        external_id = raw.get("TransactionId")
        if not external_id:
            # Banks may omit TransactionId for pending items; derive a stable one
            external_id = "ob-" + TransactionDeduplicator.generate_hash(
                booking_date, amount, description, raw.get("TransactionReference") or account_id
            )

        balance_after = None
        balance_block = raw.get("Balance")
        if isinstance(balance_block, dict):
            balance_amount = self._parse_amount((balance_block.get("Amount") or {}).get("Amount"))
            if balance_amount is not None:
                balance_after = self._signed(balance_amount, balance_block.get("CreditDebitIndicator", "Credit"))

        merchant = (raw.get("MerchantDetails") or {}).get("MerchantName")

        return NormalizedTransaction(
            external_id=external_id,
            amount=amount,
            currency=amount_block.get("Currency") or "GBP",
            description=description,
            transaction_date=booking_date,
            type="income" if is_credit else "expense",
            merchant=merchant,
            location=raw.get("AddressLine"),
            balance_after=balance_after,
            account_external_id=raw.get("AccountId") or account_id
        )
