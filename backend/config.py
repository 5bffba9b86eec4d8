from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List


class Settings(BaseSettings):
    database_url: str = "sqlite:///./banking.db"
    secret_key: str
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 30

    # Key for encrypting stored bank credentials (Fernet key or passphrase)
    credential_encryption_key: str

    # Bank integration settings
    frontend_url: str = "http://localhost:3000"
    app_url: str = "http://localhost:8000"

    # Protocol client
    bank_api_timeout_seconds: float = 30.0
    bank_api_retries: int = 3
    bank_api_retry_delay_seconds: float = 1.0
    bank_api_rate_limit_requests: int = 10
    bank_api_rate_limit_window_seconds: float = 60.0
    bank_api_customer_ip: str = "127.0.0.1"

    # Synchronization
    token_refresh_window_seconds: int = 300
    sync_days_back: int = 90
    sync_transaction_limit: int = 1000
    sync_interval_hours: int = 24
    oauth_state_ttl_minutes: int = 10

    # CSV import
    csv_max_file_size_bytes: int = 10 * 1024 * 1024
    csv_max_rows: int = 10000

    # Sandbox bank registered at startup
    test_bank_enabled: bool = True
    test_bank_code: str = "test-bank"
    test_bank_name: str = "Test Bank (Sandbox)"
    test_bank_base_url: str = "https://ob19-rs1.o3bank.co.uk:4501"
    test_bank_authorize_url: str = "https://ob19-auth1.o3bank.co.uk:4101/auth"
    test_bank_token_url: str = "https://ob19-auth1.o3bank.co.uk:4101/token"
    test_bank_client_id: str = ""
    test_bank_client_secret: str = ""
    test_bank_scopes: List[str] = ["accounts", "payments"]

    # Logging
    log_level: str = "INFO"
    log_to_file: bool = False
    log_file_path: str = "logs/banking.log"

    class Config:
        env_file = ".env"

    @property
    def oauth_redirect_uri(self) -> str:
        return f"{self.app_url.rstrip('/')}/api/bank-connections/oauth/callback"


@lru_cache()
def get_settings():
    return Settings()
