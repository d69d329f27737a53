from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import uuid4

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Boolean,
    Date,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)

TransactionType = Literal["expense", "income", "transfer"]
ImportJobStatus = Literal["pending", "processing", "completed", "failed"]

CREDIT_ACCOUNT_TYPES = frozenset({"credit", "credit card", "credit_card"})


def new_id() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""

    pass


class PlaidConnection(Base):
    """A linked Plaid item: access token plus the transactions sync cursor."""

    __tablename__ = "plaid_connections"

    item_id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    institution_id: Mapped[str | None] = mapped_column(String, nullable=True)
    institution_name: Mapped[str | None] = mapped_column(String, nullable=True)
    transactions_cursor: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    # Relationships
    accounts: Mapped[list[Account]] = relationship(
        "Account", back_populates="plaid_connection"
    )


class Account(Base):
    """A local account, optionally linked to one Plaid account of an item."""

    __tablename__ = "accounts"

    account_id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    type: Mapped[str] = mapped_column(String, nullable=False)  # checking, credit, ...
    plaid_item_id: Mapped[str | None] = mapped_column(
        String,
        ForeignKey("plaid_connections.item_id", ondelete="SET NULL"),
        nullable=True,
    )
    plaid_account_id: Mapped[str | None] = mapped_column(String, nullable=True)
    is_connected: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("TRUE")
    )
    sync_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("TRUE")
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    # Relationships
    plaid_connection: Mapped[PlaidConnection | None] = relationship(
        "PlaidConnection", back_populates="accounts"
    )


class LedgerTransaction(Base):
    """Local ledger transaction. `amount` is a magnitude; `type` is the sign."""

    __tablename__ = "transactions"

    transaction_id: Mapped[str] = mapped_column(
        String, primary_key=True, default=new_id
    )
    account_id: Mapped[str] = mapped_column(
        String, ForeignKey("accounts.account_id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    posted_at: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    type: Mapped[str] = mapped_column(String, nullable=False)
    category_id: Mapped[str | None] = mapped_column(String, nullable=True)
    suggested_category_id: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)  # encrypted
    provider_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )


class TransactionSync(Base):
    """Dedup ledger: one row per provider transaction id ever materialized."""

    __tablename__ = "transaction_syncs"
    __table_args__ = (
        UniqueConstraint(
            "plaid_transaction_id", name="uq_transaction_syncs_plaid_transaction_id"
        ),
    )

    sync_id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    account_id: Mapped[str] = mapped_column(
        String, ForeignKey("accounts.account_id", ondelete="CASCADE"), nullable=False
    )
    plaid_transaction_id: Mapped[str] = mapped_column(String, nullable=False)
    transaction_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(
        String, nullable=False, server_default=text("'synced'")
    )
    sync_date: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )


class ImportJob(Base):
    """Durable progress row for one sync run, polled by the UI."""

    __tablename__ = "import_jobs"

    job_id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    account_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("accounts.account_id", ondelete="CASCADE"), nullable=True
    )
    type: Mapped[str] = mapped_column(String, nullable=False)  # "plaid_sync"
    status: Mapped[str] = mapped_column(
        String, nullable=False, server_default=text("'pending'")
    )
    progress: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    total_items: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    processed_items: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    synced_items: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    skipped_items: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    error_items: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    next_retry_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    job_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )


@dataclass
class SyncRecordInsert:
    record: TransactionSync
    created: bool  # False when another writer already owned the external id
