"""
Record store contracts

The connection manager and credential vault only talk to persistence
through these interfaces. sql_stores.py provides the SQLAlchemy versions.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .schemas import CredentialRecord, NormalizedTransaction


class AccountStore(ABC):

    @abstractmethod
    def upsert(
        self,
        user_id: int,
        institution_name: str,
        account_name: str,
        **fields: Any
    ) -> Tuple[int, bool]:
        """
        Insert or update the account identified by
        (user_id, institution_name, account_name).

        Returns:
            (account id, True if created)
        """

    @abstractmethod
    def is_owned_by(self, account_id: int, user_id: int) -> bool:
        pass

    @abstractmethod
    def institution_totals(self, user_id: int, institution_name: str) -> Tuple[int, int]:
        """(account count, transaction count) for one institution."""


class TransactionStore(ABC):

    @abstractmethod
    def existing_external_ids(self, account_id: int, external_ids: Iterable[str]) -> Set[str]:
        pass

    @abstractmethod
    def insert_many(
        self,
        account_id: int,
        transactions: List[NormalizedTransaction],
        source: str
    ) -> Tuple[int, int]:
        """
        Insert transactions into an account.

        Returns:
            (inserted count, count rejected as duplicates by the store)
        """


class CredentialStore(ABC):

    @abstractmethod
    def get(self, user_id: int, bank_code: str) -> Optional[CredentialRecord]:
        pass

    @abstractmethod
    def list_for_user(self, user_id: int) -> List[CredentialRecord]:
        pass

    @abstractmethod
    def save(self, record: CredentialRecord) -> CredentialRecord:
        """Create or fully replace the record for (user_id, bank_code)."""

    @abstractmethod
    def update(self, user_id: int, bank_code: str, **fields: Any) -> Optional[CredentialRecord]:
        pass

    @abstractmethod
    def delete(self, user_id: int, bank_code: str) -> bool:
        pass


def merge_metadata(current: Optional[Dict[str, Any]], extra: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    merged = dict(current or {})
    merged.update(extra or {})
    return merged
