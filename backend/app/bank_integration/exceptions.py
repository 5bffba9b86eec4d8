"""
Bank Integration Errors

Error codes shared by the protocol client, adapters, vault, connection
manager and CSV importer. Codes reported by a bank's own API are passed
through verbatim as plain strings.
"""

import enum
from typing import Optional


class BankErrorCode(str, enum.Enum):
    # Transport / protocol client
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    TIMEOUT = "TIMEOUT"
    REQUEST_FAILED = "REQUEST_FAILED"
    HTTP_ERROR = "HTTP_ERROR"
    CANCELLED = "CANCELLED"

    # Adapters / registry
    BANK_NOT_SUPPORTED = "BANK_NOT_SUPPORTED"
    INVALID_STATE = "INVALID_STATE"
    INVALID_TOKEN_RESPONSE = "INVALID_TOKEN_RESPONSE"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_REFRESH_FAILED = "TOKEN_REFRESH_FAILED"
    CONNECTION_TEST_FAILED = "CONNECTION_TEST_FAILED"
    SYNC_FAILED = "SYNC_FAILED"

    # Credentials
    NO_CREDENTIALS = "NO_CREDENTIALS"
    CREDENTIALS_REVOKED = "CREDENTIALS_REVOKED"

    # Records
    ACCOUNT_NOT_FOUND_OR_UNAUTHORIZED = "ACCOUNT_NOT_FOUND_OR_UNAUTHORIZED"

    # CSV import
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    ROW_LIMIT_EXCEEDED = "ROW_LIMIT_EXCEEDED"
    MISSING_REQUIRED_COLUMN = "MISSING_REQUIRED_COLUMN"
    EMPTY_FILE = "EMPTY_FILE"
    ROW_PARSE_ERROR = "ROW_PARSE_ERROR"


class BankIntegrationError(Exception):
    """Base error carrying a machine readable code."""

    def __init__(self, code, message: str, detail: Optional[dict] = None):
        super().__init__(message)
        self.code = code.value if isinstance(code, BankErrorCode) else str(code)
        self.message = message
        self.detail = detail or {}

    def __str__(self):
        return f"{self.code}: {self.message}"


class CredentialDecryptionError(BankIntegrationError):
    """Stored credentials could not be decrypted and have been marked revoked."""

    def __init__(self, message: str = "Stored credentials could not be decrypted"):
        super().__init__(BankErrorCode.CREDENTIALS_REVOKED, message)


class CSVRowError(BankIntegrationError):
    """A single CSV row failed to parse."""

    def __init__(self, message: str):
        super().__init__(BankErrorCode.ROW_PARSE_ERROR, message)


class InvalidOAuthStateError(BankIntegrationError):
    def __init__(self, message: str = "Invalid or expired authorization state"):
        super().__init__(BankErrorCode.INVALID_STATE, message)
