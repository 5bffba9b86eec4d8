from sqlalchemy import Column, Integer, String, Boolean, DateTime, Date, DECIMAL, Text, ForeignKey, JSON, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum
from backend.database import Base


class AccountType(str, enum.Enum):
    SAVINGS = "savings"
    CURRENT = "current"
    INVESTMENT = "investment"
    CREDIT = "credit"
    LOAN = "loan"


class TransactionType(str, enum.Enum):
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"


class TransactionSource(str, enum.Enum):
    MANUAL = "manual"
    BANK_SYNC = "bank_sync"
    CSV_IMPORT = "csv_import"


class BankConnectionStatus(str, enum.Enum):
    ACTIVE = "active"
    ERROR = "error"
    EXPIRED = "expired"
    REVOKED = "revoked"


class BankSyncType(str, enum.Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    OAUTH_CONNECT = "oauth_connect"


class BankSyncStatus(str, enum.Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    accounts = relationship("Account", back_populates="user", cascade="all, delete-orphan")
    bank_connections = relationship("BankConnection", back_populates="user", cascade="all, delete-orphan")


class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (
        UniqueConstraint("user_id", "institution_name", "account_name", name="uq_account_institution_name"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    institution_name = Column(String(255), nullable=False)
    account_name = Column(String(255), nullable=False)
    account_type = Column(SQLEnum(AccountType), nullable=False, default=AccountType.CURRENT)
    external_account_id = Column(String(255), nullable=True)
    balance = Column(DECIMAL(15, 2), default=0)
    currency = Column(String(3), default="GBP")
    api_connected = Column(Boolean, default=False)
    last_updated = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="accounts")
    transactions = relationship("Transaction", back_populates="account", cascade="all, delete-orphan")


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("account_id", "external_id", name="uq_transaction_account_external_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    amount = Column(DECIMAL(15, 2), nullable=False)
    currency = Column(String(3), default="GBP")
    description = Column(String(500), nullable=False)
    category = Column(String(100), nullable=True)
    date = Column(Date, nullable=False)
    type = Column(SQLEnum(TransactionType), nullable=False)
    merchant = Column(String(255), nullable=True)
    location = Column(String(255), nullable=True)
    balance_after = Column(DECIMAL(15, 2), nullable=True)
    external_id = Column(String(255), nullable=True)
    source = Column(SQLEnum(TransactionSource), default=TransactionSource.MANUAL)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    account = relationship("Account", back_populates="transactions")


class BankConnection(Base):
    """Credential record: one per (user, bank). Tokens are stored encrypted."""
    __tablename__ = "bank_connections"
    __table_args__ = (
        UniqueConstraint("user_id", "bank_code", name="uq_bank_connection_user_bank"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    bank_code = Column(String(50), nullable=False)
    bank_name = Column(String(255), nullable=False)
    account_identifier = Column(String(255), nullable=True)

    # Encrypted JSON payload (tokens + client credentials)
    encrypted_credentials = Column(Text, nullable=False)

    # Connection status
    connection_status = Column(SQLEnum(BankConnectionStatus), nullable=False, default=BankConnectionStatus.ACTIVE)
    error_message = Column(Text, nullable=True)

    # Sync bookkeeping
    last_sync = Column(DateTime(timezone=True), nullable=True)
    next_sync_scheduled = Column(DateTime(timezone=True), nullable=True)
    connection_metadata = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="bank_connections")


class BankSyncLog(Base):
    __tablename__ = "bank_sync_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    bank_code = Column(String(50), nullable=False)

    # Sync operation
    sync_type = Column(SQLEnum(BankSyncType), nullable=False)
    sync_status = Column(SQLEnum(BankSyncStatus), nullable=False)

    # Results
    accounts_synced = Column(Integer, default=0)
    transactions_fetched = Column(Integer, default=0)
    transactions_imported = Column(Integer, default=0)
    transactions_duplicate = Column(Integer, default=0)

    # Error handling
    error_message = Column(Text, nullable=True)
    error_code = Column(String(50), nullable=True)

    # Timing
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_seconds = Column(Integer, nullable=True)


class OAuthState(Base):
    __tablename__ = "oauth_states"

    id = Column(Integer, primary_key=True, index=True)
    state_token = Column(String(128), unique=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    bank_code = Column(String(50), nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User")
