"""
Transaction Deduplication Module

Every stored transaction carries an external_id that is unique within its
account:
1. Bank transactions use the bank's TransactionId
2. Rows without one (CSV imports, pending bank items) get a hash-derived id
"""

import hashlib
from collections import Counter
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from .schemas import NormalizedTransaction


CSV_EXTERNAL_ID_PREFIX = "csv-import-"


class TransactionDeduplicator:
    """
    Handle transaction deduplication across multiple sources.

    Prevents importing the same transaction multiple times from:
    - Repeated bank syncs of overlapping date ranges
    - Re-uploading the same CSV file
    """

    @staticmethod
    def generate_hash(
        transaction_date: date,
        amount: Decimal,
        description: str,
        reference: Optional[str] = None
    ) -> str:
        """
        Generate deduplication hash from transaction attributes.

        Uses MD5 for speed (not security). Hash is deterministic so
        same transaction always generates same hash.

        Args:
            transaction_date: Transaction date
            amount: Transaction amount
            description: Transaction description
            reference: Optional reference number

        Returns:
            32-character hex MD5 hash

        Example:
            >>> TransactionDeduplicator.generate_hash(
            ...     date(2024, 1, 15), Decimal("-12.50"), "Coffee Shop"
            ... ) == TransactionDeduplicator.generate_hash(
            ...     date(2024, 1, 15), Decimal("-12.5"), "  coffee shop "
            ... )
            True
        """
        date_str = transaction_date.isoformat()
        amount_str = f"{amount:.2f}"
        desc_normalized = description.strip().lower()[:200]
        ref_normalized = (reference or '').strip().lower()[:100]

        hash_input = f"{date_str}|{amount_str}|{desc_normalized}|{ref_normalized}"

        return hashlib.md5(hash_input.encode()).hexdigest()

    @classmethod
    def csv_external_id(
        cls,
        transaction_date: date,
        amount: Decimal,
        description: str,
        occurrence: int = 1
    ) -> str:
        """
        External id for a CSV row.

        The n-th identical row (n >= 2) within one file folds its
        occurrence number into the hash, so genuine repeats in a file are
        kept while re-uploading the same file yields the same ids.
        """
        reference = None if occurrence <= 1 else f"occurrence-{occurrence}"
        return CSV_EXTERNAL_ID_PREFIX + cls.generate_hash(
            transaction_date, amount, description, reference
        )

    @classmethod
    def assign_csv_external_ids(cls, transactions: List[NormalizedTransaction]) -> List[NormalizedTransaction]:
        """Give each CSV transaction its deterministic external id, in file order."""
        seen: Counter = Counter()
        for tx in transactions:
            key = cls.generate_hash(tx.transaction_date, tx.amount, tx.description)
            seen[key] += 1
            tx.external_id = cls.csv_external_id(
                tx.transaction_date, tx.amount, tx.description, seen[key]
            )
        return transactions

    @staticmethod
    def filter_new(
        transactions: Iterable[NormalizedTransaction],
        existing_ids: Iterable[str]
    ) -> Tuple[List[NormalizedTransaction], int]:
        """
        Drop transactions whose external_id is already stored, or repeated
        earlier in the same batch.

        Returns:
            (new transactions, number of duplicates skipped)
        """
        known = set(existing_ids)
        fresh = []
        duplicates = 0
        for tx in transactions:
            if tx.external_id in known:
                duplicates += 1
                continue
            known.add(tx.external_id)
            fresh.append(tx)
        return fresh, duplicates
