from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime


class TokenData(BaseModel):
    user_id: Optional[int] = None


class BankInfo(BaseModel):
    code: str
    name: str
    is_production: bool


class BankConnectionCreate(BaseModel):
    bank_code: str


class OAuthInitiateResponse(BaseModel):
    authorization_url: str
    state_token: str


class SyncParams(BaseModel):
    force: bool = False
    days_back: Optional[int] = Field(None, ge=1, le=730)
    account_ids: Optional[List[str]] = None


class SyncResponse(BaseModel):
    status: str
    accounts_imported: int
    transactions_imported: int
    duplicates: int
    errors: List[str] = []
    message: Optional[str] = None
    last_sync_time: Optional[datetime] = None


class BankSyncResponse(SyncResponse):
    bank_code: str


class ConnectionStatus(BaseModel):
    bank_code: str
    bank_name: str
    connected: bool
    status: str
    last_sync: Optional[datetime] = None
    error_message: Optional[str] = None
    next_sync_scheduled: Optional[datetime] = None
    total_accounts: int = 0
    total_transactions: int = 0

    class Config:
        from_attributes = True


class CSVRowError(BaseModel):
    row: int
    error: str


class CSVImportResponse(BaseModel):
    success: bool
    total_rows: int
    imported: int
    failed: int
    duplicates: int
    errors: List[CSVRowError] = []


class BankSyncLog(BaseModel):
    id: int
    bank_code: str
    sync_type: str
    sync_status: str
    accounts_synced: int
    transactions_fetched: int
    transactions_imported: int
    transactions_duplicate: int
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None

    class Config:
        from_attributes = True
