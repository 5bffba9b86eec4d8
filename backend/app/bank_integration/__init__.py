"""
Bank Integration Module

Open Banking connectivity, encrypted credential storage, account and
transaction synchronization, and CSV statement import.
"""

from .service import BankConnectionManager, create_connection_manager
from .registry import BankAdapterRegistry
from .vault import CredentialVault
from .encryption import TokenEncryption
from .csv_import import CSVImportService
from .deduplication import TransactionDeduplicator

__all__ = [
    'BankConnectionManager', 'create_connection_manager', 'BankAdapterRegistry',
    'CredentialVault', 'TokenEncryption', 'CSVImportService', 'TransactionDeduplicator'
]
