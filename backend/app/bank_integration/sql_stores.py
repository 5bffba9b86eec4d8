"""
SQLAlchemy implementations of the record store contracts.
"""

import logging
from typing import Any, Iterable, List, Optional, Set, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.app.models import (
    Account, AccountType, BankConnection, BankConnectionStatus, Transaction,
    TransactionSource, TransactionType
)

from .schemas import CredentialRecord, NormalizedTransaction
from .stores import AccountStore, CredentialStore, TransactionStore


logger = logging.getLogger(__name__)


class SQLAccountStore(AccountStore):

    def __init__(self, db: Session):
        self.db = db

    def upsert(self, user_id: int, institution_name: str, account_name: str, **fields: Any) -> Tuple[int, bool]:
        account = self.db.query(Account).filter(
            Account.user_id == user_id,
            Account.institution_name == institution_name,
            Account.account_name == account_name
        ).first()

        if "account_type" in fields and not isinstance(fields["account_type"], AccountType):
            fields["account_type"] = AccountType(fields["account_type"])

        created = account is None
        if created:
            account = Account(
                user_id=user_id,
                institution_name=institution_name,
                account_name=account_name
            )
            self.db.add(account)

        for key, value in fields.items():
            setattr(account, key, value)

        self.db.commit()
        self.db.refresh(account)
        return account.id, created

    def is_owned_by(self, account_id: int, user_id: int) -> bool:
        return self.db.query(Account.id).filter(
            Account.id == account_id,
            Account.user_id == user_id
        ).first() is not None

    def institution_totals(self, user_id: int, institution_name: str) -> Tuple[int, int]:
        account_ids = [
            row.id for row in self.db.query(Account.id).filter(
                Account.user_id == user_id,
                Account.institution_name == institution_name
            ).all()
        ]
        if not account_ids:
            return 0, 0
        transaction_count = self.db.query(func.count(Transaction.id)).filter(
            Transaction.account_id.in_(account_ids)
        ).scalar()
        return len(account_ids), transaction_count or 0


class SQLTransactionStore(TransactionStore):

    def __init__(self, db: Session):
        self.db = db

    def existing_external_ids(self, account_id: int, external_ids: Iterable[str]) -> Set[str]:
        ids = list(set(external_ids))
        if not ids:
            return set()
        rows = self.db.query(Transaction.external_id).filter(
            Transaction.account_id == account_id,
            Transaction.external_id.in_(ids)
        ).all()
        return {row.external_id for row in rows}

    def _to_row(self, account_id: int, tx: NormalizedTransaction, source: str) -> Transaction:
        return Transaction(
            account_id=account_id,
            amount=tx.amount,
            currency=tx.currency,
            description=tx.description[:500],
            category=tx.category,
            date=tx.transaction_date,
            type=TransactionType(tx.type),
            merchant=tx.merchant,
            location=tx.location,
            balance_after=tx.balance_after,
            external_id=tx.external_id,
            source=TransactionSource(source)
        )

    def insert_many(self, account_id: int, transactions: List[NormalizedTransaction], source: str) -> Tuple[int, int]:
        if not transactions:
            return 0, 0

        try:
            self.db.add_all([self._to_row(account_id, tx, source) for tx in transactions])
            self.db.commit()
            return len(transactions), 0
        except IntegrityError:
            # Another writer got there first; fall back to row-by-row
            self.db.rollback()
            logger.warning(f"Batch insert for account {account_id} hit a duplicate, retrying row by row")

        inserted = 0
        duplicates = 0
        for tx in transactions:
            try:
                self.db.add(self._to_row(account_id, tx, source))
                self.db.commit()
                inserted += 1
            except IntegrityError:
                self.db.rollback()
                duplicates += 1
        return inserted, duplicates


class SQLCredentialStore(CredentialStore):

    def __init__(self, db: Session):
        self.db = db

    def _find(self, user_id: int, bank_code: str) -> Optional[BankConnection]:
        return self.db.query(BankConnection).filter(
            BankConnection.user_id == user_id,
            BankConnection.bank_code == bank_code
        ).first()

    @staticmethod
    def _to_record(row: BankConnection) -> CredentialRecord:
        return CredentialRecord(
            user_id=row.user_id,
            bank_code=row.bank_code,
            bank_name=row.bank_name,
            account_identifier=row.account_identifier,
            encrypted_credentials=row.encrypted_credentials,
            connection_status=BankConnectionStatus(row.connection_status).value,
            last_sync=row.last_sync,
            next_sync_scheduled=row.next_sync_scheduled,
            error_message=row.error_message,
            metadata=row.connection_metadata or {}
        )

    def get(self, user_id: int, bank_code: str) -> Optional[CredentialRecord]:
        row = self._find(user_id, bank_code)
        return self._to_record(row) if row else None

    def list_for_user(self, user_id: int) -> List[CredentialRecord]:
        rows = self.db.query(BankConnection).filter(
            BankConnection.user_id == user_id
        ).order_by(BankConnection.bank_code).all()
        return [self._to_record(row) for row in rows]

    def save(self, record: CredentialRecord) -> CredentialRecord:
        row = self._find(record.user_id, record.bank_code)
        if row is None:
            row = BankConnection(user_id=record.user_id, bank_code=record.bank_code)
            self.db.add(row)

        row.bank_name = record.bank_name
        row.account_identifier = record.account_identifier
        row.encrypted_credentials = record.encrypted_credentials
        row.connection_status = BankConnectionStatus(record.connection_status)
        row.last_sync = record.last_sync
        row.next_sync_scheduled = record.next_sync_scheduled
        row.error_message = record.error_message
        row.connection_metadata = dict(record.metadata)

        self.db.commit()
        self.db.refresh(row)
        return self._to_record(row)

    def update(self, user_id: int, bank_code: str, **fields: Any) -> Optional[CredentialRecord]:
        row = self._find(user_id, bank_code)
        if row is None:
            return None

        for key, value in fields.items():
            if key == "connection_status":
                value = BankConnectionStatus(value)
            elif key == "metadata":
                key = "connection_metadata"
                value = dict(value or {})
            setattr(row, key, value)

        self.db.commit()
        self.db.refresh(row)
        return self._to_record(row)

    def delete(self, user_id: int, bank_code: str) -> bool:
        row = self._find(user_id, bank_code)
        if row is None:
            return False
        self.db.delete(row)
        self.db.commit()
        return True
