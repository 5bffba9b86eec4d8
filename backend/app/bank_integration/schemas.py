"""
Bank Integration Schemas

Pydantic models passed between the protocol client, adapters, registry,
vault, CSV importer and connection manager.
"""

import asyncio
from datetime import date, datetime, timedelta, UTC
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator

from backend.app.models import BankSyncType

from .exceptions import BankErrorCode


def utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# ---------------------------------------------------------------------------
# Configuration and credentials
# ---------------------------------------------------------------------------

class ConnectionConfig(BaseModel):
    """Static per-bank settings, loaded once at registration."""
    bank_code: str
    bank_name: str
    base_url: str
    authorize_url: str
    token_url: str
    revoke_url: Optional[str] = None
    client_id: str
    client_secret: Optional[str] = None
    scopes: List[str] = Field(default_factory=lambda: ["accounts"])
    redirect_uri: str
    is_production: bool = False
    api_prefix: str = "/open-banking/v3.1/aisp"
    protocol: str = "open_banking"

    class Config:
        frozen = True

    @property
    def token_revoke_url(self) -> str:
        return self.revoke_url or f"{self.base_url.rstrip('/')}/token/revoke"


class AuthTokenBundle(BaseModel):
    """
    OAuth2 tokens for one (user, bank) connection.

    expires_at is derived from obtained_at + expires_in. A bundle is
    "stale" once it is inside the refresh window before expiry.
    """
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_in: int = 3600
    scope: Optional[str] = None
    obtained_at: datetime = Field(default_factory=utcnow)

    @field_validator("obtained_at")
    @classmethod
    def _obtained_at_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @property
    def expires_at(self) -> datetime:
        return self.obtained_at + timedelta(seconds=self.expires_in)

    def is_stale(self, now: Optional[datetime] = None, window_seconds: int = 300) -> bool:
        now = _as_utc(now) or utcnow()
        return now >= self.expires_at - timedelta(seconds=window_seconds)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = _as_utc(now) or utcnow()
        return now >= self.expires_at


class StoredCredentials(BaseModel):
    """Decrypted payload of a credential record."""
    bank_code: str
    user_id: int
    tokens: AuthTokenBundle
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    stored_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Normalized bank data
# ---------------------------------------------------------------------------

class NormalizedAccount(BaseModel):
    external_id: str
    currency: str = "GBP"
    account_type: str = "Personal"
    account_subtype: str = "CurrentAccount"
    nickname: Optional[str] = None
    servicer: Optional[str] = None
    identifications: List[Dict[str, str]] = Field(default_factory=list)

    @property
    def display_name(self) -> str:
        return self.nickname or self.external_id


class NormalizedBalance(BaseModel):
    account_external_id: str
    amount: Decimal
    currency: str = "GBP"
    balance_type: str = "InterimAvailable"
    as_of: Optional[datetime] = None


class NormalizedTransaction(BaseModel):
    """A transaction in canonical form. Positive amounts are inflows."""
    external_id: str
    amount: Decimal
    currency: str = "GBP"
    description: str
    transaction_date: date
    type: str
    merchant: Optional[str] = None
    location: Optional[str] = None
    balance_after: Optional[Decimal] = None
    category: Optional[str] = None
    account_external_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Protocol envelopes
# ---------------------------------------------------------------------------

class BankApiError(BaseModel):
    code: str
    message: str
    detail: Dict[str, Any] = Field(default_factory=dict)


class RateLimitInfo(BaseModel):
    limit: int
    remaining: int
    reset: int


class BankApiResponse(BaseModel):
    """Result of any client or adapter call: either data or an error."""
    success: bool
    data: Any = None
    error: Optional[BankApiError] = None
    rate_limit: Optional[RateLimitInfo] = None

    @classmethod
    def ok(cls, data: Any = None, rate_limit: Optional[RateLimitInfo] = None) -> "BankApiResponse":
        return cls(success=True, data=data, rate_limit=rate_limit)

    @classmethod
    def fail(
        cls,
        code: Union[BankErrorCode, str],
        message: str,
        **detail: Any
    ) -> "BankApiResponse":
        code_str = code.value if isinstance(code, BankErrorCode) else str(code)
        return cls(
            success=False,
            error=BankApiError(code=code_str, message=message, detail=detail)
        )

    @property
    def error_code(self) -> Optional[str]:
        return self.error.code if self.error else None

    @property
    def error_message(self) -> Optional[str]:
        return self.error.message if self.error else None


# ---------------------------------------------------------------------------
# Synchronization
# ---------------------------------------------------------------------------

class SyncOptions(BaseModel):
    force: bool = False
    days_back: Optional[int] = None
    account_ids: Optional[List[str]] = None
    customer_ip: Optional[str] = None
    sync_type: BankSyncType = BankSyncType.MANUAL
    cancel_event: Optional[asyncio.Event] = None

    class Config:
        arbitrary_types_allowed = True


class AccountSyncError(BaseModel):
    account_external_id: str
    stage: str
    code: str
    message: str

    def summary(self) -> str:
        return f"Account {self.account_external_id} ({self.stage}): {self.message}"


class AccountSyncData(BaseModel):
    """Everything fetched for one bank in one sync pass."""
    accounts: List[NormalizedAccount] = Field(default_factory=list)
    balances: Dict[str, List[NormalizedBalance]] = Field(default_factory=dict)
    transactions: List[NormalizedTransaction] = Field(default_factory=list)
    errors: List[AccountSyncError] = Field(default_factory=list)

    def transactions_for(self, account_external_id: str) -> List[NormalizedTransaction]:
        return [t for t in self.transactions if t.account_external_id == account_external_id]

    @property
    def failed_account_ids(self) -> List[str]:
        return [e.account_external_id for e in self.errors]


class ConnectionSyncResult(BaseModel):
    success: bool
    partial: bool = False
    accounts_imported: int = 0
    transactions_imported: int = 0
    duplicates_skipped: int = 0
    errors: List[str] = Field(default_factory=list)
    error_code: Optional[str] = None
    skipped: bool = False
    last_sync_time: Optional[datetime] = None


class BankSyncSummary(BaseModel):
    bank_code: str
    result: ConnectionSyncResult


class ConnectionCompleteResult(BaseModel):
    """Outcome of finishing an OAuth authorization."""
    success: bool
    bank_code: str
    connection_status: Optional[str] = None
    accounts_found: int = 0
    transactions_found: int = 0
    error_code: Optional[str] = None
    error: Optional[str] = None
    initial_sync: Optional[ConnectionSyncResult] = None


class ConnectionStatusInfo(BaseModel):
    bank_code: str
    bank_name: str
    connected: bool
    status: str
    last_sync: Optional[datetime] = None
    error_message: Optional[str] = None
    next_sync_scheduled: Optional[datetime] = None
    total_accounts: int = 0
    total_transactions: int = 0


# ---------------------------------------------------------------------------
# CSV import
# ---------------------------------------------------------------------------

class CSVImportConfig(BaseModel):
    """
    Column mapping for a CSV file. Columns are header names when
    has_headers is set, otherwise zero-based column indices.
    """
    date_column: Union[str, int] = "Date"
    amount_column: Union[str, int] = "Amount"
    description_column: Union[str, int] = "Description"
    category_column: Optional[Union[str, int]] = "Category"
    balance_column: Optional[Union[str, int]] = "Balance"
    date_format: str = "DD/MM/YYYY"
    has_headers: bool = True
    delimiter: str = ","
    currency: str = "GBP"

    @field_validator("delimiter")
    @classmethod
    def _single_char_delimiter(cls, value: str) -> str:
        if len(value) != 1:
            raise ValueError("Delimiter must be a single character")
        return value


class CSVRowIssue(BaseModel):
    row: int
    error: str
    code: str = BankErrorCode.ROW_PARSE_ERROR.value


class CSVImportResult(BaseModel):
    success: bool
    total_rows: int = 0
    successful_imports: int = 0
    failed_imports: int = 0
    duplicates: int = 0
    errors: List[CSVRowIssue] = Field(default_factory=list)
    transactions: List[NormalizedTransaction] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class CredentialRecord(BaseModel):
    """A stored credential row; the token payload stays encrypted."""
    user_id: int
    bank_code: str
    bank_name: str
    account_identifier: Optional[str] = None
    encrypted_credentials: str
    connection_status: str = "active"
    last_sync: Optional[datetime] = None
    next_sync_scheduled: Optional[datetime] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        from_attributes = True

    @field_validator("last_sync", "next_sync_scheduled")
    @classmethod
    def _sync_times_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)
