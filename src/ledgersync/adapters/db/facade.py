from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import create_engine, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ledgersync.adapters.crypto.descriptions import DescriptionCipher
from ledgersync.adapters.db.models import (
    Account,
    Base,
    ImportJob,
    LedgerTransaction,
    PlaidConnection,
    SyncRecordInsert,
    TransactionSync,
    new_id,
)

# Columns a caller may patch through update_transaction
MUTABLE_TRANSACTION_FIELDS = (
    "posted_at",
    "amount",
    "type",
    "category_id",
    "suggested_category_id",
    "description",
    "provider_metadata",
)

IMPORT_JOB_PROGRESS_FIELDS = (
    "status",
    "progress",
    "total_items",
    "processed_items",
    "synced_items",
    "skipped_items",
    "error_items",
    "error_message",
    "retry_count",
    "next_retry_at",
    "completed_at",
)


class DB:
    """Database service layer providing ORM models and helper methods."""

    def __init__(self, url: str, *, cipher: DescriptionCipher | None = None) -> None:
        """Initialize database connection.

        Args:
            url: Database URL (e.g., "sqlite:///ledgersync.db")
            cipher: Encrypts transaction descriptions at rest; plain text if None
        """
        self._url = url
        self._engine = create_engine(url, echo=False)
        self._session_factory = sessionmaker(bind=self._engine, class_=Session)
        self._cipher = cipher or DescriptionCipher()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context manager for database sessions."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_all(self) -> None:
        """Create all tables that do not exist yet."""
        Base.metadata.create_all(self._engine)

    # Connections and accounts -------------------------------------------

    def save_plaid_connection(
        self,
        *,
        item_id: str,
        user_id: str,
        access_token: str,
        institution_id: str | None = None,
        institution_name: str | None = None,
    ) -> PlaidConnection:
        """Save or update a Plaid connection, leaving its cursor untouched."""
        with self.session() as session:  # type: Session
            conn = session.query(PlaidConnection).filter_by(item_id=item_id).first()
            if conn is None:
                conn = PlaidConnection(
                    item_id=item_id,
                    user_id=user_id,
                    access_token=access_token,
                    institution_id=institution_id,
                    institution_name=institution_name,
                )
                session.add(conn)
            else:
                conn.access_token = access_token
                conn.institution_id = institution_id
                conn.institution_name = institution_name
                conn.updated_at = datetime.now()
            session.flush()
            session.refresh(conn)
            session.expunge(conn)
            return conn

    def get_plaid_connection(self, item_id: str) -> PlaidConnection | None:
        with self.session() as session:  # type: Session
            conn = session.query(PlaidConnection).filter_by(item_id=item_id).first()
            if conn:
                session.expunge(conn)
            return conn

    def create_account(
        self,
        *,
        user_id: str,
        name: str,
        type: str,
        plaid_item_id: str | None = None,
        plaid_account_id: str | None = None,
        account_id: str | None = None,
    ) -> Account:
        with self.session() as session:  # type: Session
            account = Account(
                account_id=account_id or new_id(),
                user_id=user_id,
                name=name,
                type=type,
                plaid_item_id=plaid_item_id,
                plaid_account_id=plaid_account_id,
            )
            session.add(account)
            session.flush()
            session.refresh(account)
            session.expunge(account)
            return account

    def get_account(self, account_id: str) -> Account | None:
        with self.session() as session:  # type: Session
            account = session.query(Account).filter_by(account_id=account_id).first()
            if account:
                session.expunge(account)
            return account

    def list_accounts_for_item(self, item_id: str) -> list[Account]:
        """Connected, sync-enabled accounts linked to a Plaid item."""
        with self.session() as session:  # type: Session
            accounts = (
                session.query(Account)
                .filter(
                    Account.plaid_item_id == item_id,
                    Account.plaid_account_id.is_not(None),
                    Account.is_connected,
                    Account.sync_enabled,
                )
                .order_by(Account.created_at, Account.account_id)
                .all()
            )
            for account in accounts:
                session.expunge(account)
            return accounts

    def list_syncable_accounts(self, user_id: str) -> list[Account]:
        """Connected, sync-enabled, Plaid-linked accounts of one user."""
        with self.session() as session:  # type: Session
            accounts = (
                session.query(Account)
                .filter(
                    Account.user_id == user_id,
                    Account.plaid_item_id.is_not(None),
                    Account.plaid_account_id.is_not(None),
                    Account.is_connected,
                    Account.sync_enabled,
                )
                .order_by(Account.created_at, Account.account_id)
                .all()
            )
            for account in accounts:
                session.expunge(account)
            return accounts

    def mark_account_synced(self, account_id: str, synced_at: datetime) -> None:
        with self.session() as session:  # type: Session
            session.execute(
                update(Account)
                .where(Account.account_id == account_id)
                .values(last_synced_at=synced_at, updated_at=datetime.now())
            )

    # Sync cursor --------------------------------------------------------

    def get_transactions_cursor(self, item_id: str) -> str | None:
        with self.session() as session:  # type: Session
            conn = session.query(PlaidConnection).filter_by(item_id=item_id).first()
            return conn.transactions_cursor if conn else None

    def compare_and_set_cursor(
        self,
        item_id: str,
        *,
        expected: str | None,
        new: str,
    ) -> bool:
        """Store `new` only if the stored cursor still equals `expected`.

        Returns:
            True when the row was updated, False when another writer moved
            the cursor first (or the connection does not exist).
        """
        if expected is None:
            matches_expected = PlaidConnection.transactions_cursor.is_(None)
        else:
            matches_expected = PlaidConnection.transactions_cursor == expected

        with self.session() as session:  # type: Session
            result = session.execute(
                update(PlaidConnection)
                .where(PlaidConnection.item_id == item_id, matches_expected)
                .values(transactions_cursor=new, updated_at=datetime.now())
            )
            return result.rowcount == 1

    # Sync records (dedup ledger) ----------------------------------------

    def load_sync_map(self, account_id: str) -> dict[str, str | None]:
        """External id -> local transaction id for every record of an account."""
        with self.session() as session:  # type: Session
            rows = (
                session.query(
                    TransactionSync.plaid_transaction_id,
                    TransactionSync.transaction_id,
                )
                .filter(TransactionSync.account_id == account_id)
                .all()
            )
            return {external_id: txn_id for external_id, txn_id in rows}

    def find_sync_record(
        self,
        *,
        plaid_transaction_id: str,
        account_id: str,
    ) -> TransactionSync | None:
        with self.session() as session:  # type: Session
            record = (
                session.query(TransactionSync)
                .filter(
                    TransactionSync.plaid_transaction_id == plaid_transaction_id,
                    TransactionSync.account_id == account_id,
                )
                .first()
            )
            if record:
                session.expunge(record)
            return record

    def find_sync_records(
        self,
        *,
        account_id: str,
        plaid_transaction_ids: Iterable[str],
    ) -> list[TransactionSync]:
        ids = list(plaid_transaction_ids)
        if not ids:
            return []
        with self.session() as session:  # type: Session
            records = (
                session.query(TransactionSync)
                .filter(
                    TransactionSync.account_id == account_id,
                    TransactionSync.plaid_transaction_id.in_(ids),
                )
                .all()
            )
            for record in records:
                session.expunge(record)
            return records

    def insert_sync_record(
        self,
        *,
        account_id: str,
        plaid_transaction_id: str,
        transaction_id: str,
    ) -> SyncRecordInsert:
        """Insert the dedup row, treating a unique conflict as a lost race.

        Uses INSERT ... ON CONFLICT DO NOTHING on SQLite and PostgreSQL; other
        dialects fall back to catching the IntegrityError. Either way the row
        that owns `plaid_transaction_id` afterwards is returned.
        """
        values: dict[str, Any] = {
            "sync_id": new_id(),
            "account_id": account_id,
            "plaid_transaction_id": plaid_transaction_id,
            "transaction_id": transaction_id,
            "status": "synced",
            "sync_date": datetime.now(),
        }
        try:
            with self.session() as session:  # type: Session
                created = self._insert_ignoring_conflict(session, values)
                record = (
                    session.query(TransactionSync)
                    .filter_by(plaid_transaction_id=plaid_transaction_id)
                    .one()
                )
                session.expunge(record)
                return SyncRecordInsert(record=record, created=created)
        except IntegrityError as e:
            if not _is_unique_violation(e):
                raise

        with self.session() as session:  # type: Session
            record = (
                session.query(TransactionSync)
                .filter_by(plaid_transaction_id=plaid_transaction_id)
                .one()
            )
            session.expunge(record)
            return SyncRecordInsert(record=record, created=False)

    def _insert_ignoring_conflict(
        self, session: Session, values: dict[str, Any]
    ) -> bool:
        dialect = session.get_bind().dialect.name
        if dialect in ("sqlite", "postgresql"):
            insert_fn = sqlite_insert if dialect == "sqlite" else pg_insert
            stmt = (
                insert_fn(TransactionSync)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["plaid_transaction_id"])
            )
            return session.execute(stmt).rowcount == 1

        try:
            with session.begin_nested():
                session.add(TransactionSync(**values))
                session.flush()
        except IntegrityError as e:
            if not _is_unique_violation(e):
                raise
            return False
        return True

    def touch_sync_record(self, plaid_transaction_id: str) -> None:
        with self.session() as session:  # type: Session
            session.execute(
                update(TransactionSync)
                .where(TransactionSync.plaid_transaction_id == plaid_transaction_id)
                .values(sync_date=datetime.now())
            )

    def delete_sync_record(self, plaid_transaction_id: str) -> int:
        with self.session() as session:  # type: Session
            return (
                session.query(TransactionSync)
                .filter(TransactionSync.plaid_transaction_id == plaid_transaction_id)
                .delete(synchronize_session=False)
            )

    # Transaction store ---------------------------------------------------

    def create_transaction(
        self,
        data: dict[str, Any],
        acting_user_id: str,
    ) -> LedgerTransaction:
        """Create a ledger transaction on behalf of `acting_user_id`.

        Args:
            data: Fields: account_id, posted_at, amount, type, and optional
                description, category_id, suggested_category_id,
                provider_metadata
            acting_user_id: Owner of the account; server-driven writes pass
                the account owner instead of an interactive session user

        Raises:
            PermissionError: If the account does not belong to acting_user_id
            ValueError: If the amount is negative or the type is unknown
        """
        amount = Decimal(data["amount"])
        if amount < 0:
            raise ValueError(f"Transaction amount must be non-negative, got {amount}")
        if data["type"] not in ("expense", "income", "transfer"):
            raise ValueError(f"Unknown transaction type: {data['type']!r}")

        with self.session() as session:  # type: Session
            account = (
                session.query(Account).filter_by(account_id=data["account_id"]).first()
            )
            if account is None:
                raise ValueError(f"Account {data['account_id']} not found")
            if account.user_id != acting_user_id:
                raise PermissionError(
                    f"User {acting_user_id} cannot write to account "
                    f"{account.account_id}"
                )

            transaction = LedgerTransaction(
                transaction_id=new_id(),
                account_id=account.account_id,
                user_id=account.user_id,
                posted_at=data["posted_at"],
                amount=amount,
                type=data["type"],
                category_id=data.get("category_id"),
                suggested_category_id=data.get("suggested_category_id"),
                description=self._cipher.encrypt(data.get("description")),
                provider_metadata=data.get("provider_metadata"),
            )
            session.add(transaction)
            session.flush()
            session.refresh(transaction)
            session.expunge(transaction)
            transaction.description = self._cipher.decrypt(transaction.description)
            return transaction

    def update_transaction(self, transaction_id: str, patch: dict[str, Any]) -> None:
        """Apply a partial update; unknown keys are rejected.

        Raises:
            ValueError: If the transaction does not exist or a key is not mutable
        """
        unknown = set(patch) - set(MUTABLE_TRANSACTION_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        values = dict(patch)
        if "description" in values:
            values["description"] = self._cipher.encrypt(values["description"])
        if "amount" in values:
            values["amount"] = Decimal(values["amount"])
        values["updated_at"] = datetime.now()

        with self.session() as session:  # type: Session
            result = session.execute(
                update(LedgerTransaction)
                .where(LedgerTransaction.transaction_id == transaction_id)
                .values(**values)
            )
            if result.rowcount == 0:
                raise ValueError(f"Transaction {transaction_id} not found")

    def delete_transaction(self, transaction_id: str) -> bool:
        with self.session() as session:  # type: Session
            deleted = (
                session.query(LedgerTransaction)
                .filter(LedgerTransaction.transaction_id == transaction_id)
                .delete(synchronize_session=False)
            )
            return deleted > 0

    def get_transaction(self, transaction_id: str) -> LedgerTransaction | None:
        """Fetch a transaction with its description decrypted."""
        with self.session() as session:  # type: Session
            transaction = (
                session.query(LedgerTransaction)
                .filter_by(transaction_id=transaction_id)
                .first()
            )
            if transaction is None:
                return None
            session.expunge(transaction)
        transaction.description = self._cipher.decrypt(transaction.description)
        return transaction

    def list_transactions(self, account_id: str) -> list[LedgerTransaction]:
        with self.session() as session:  # type: Session
            transactions = (
                session.query(LedgerTransaction)
                .filter(LedgerTransaction.account_id == account_id)
                .order_by(LedgerTransaction.posted_at, LedgerTransaction.transaction_id)
                .all()
            )
            for txn in transactions:
                session.expunge(txn)
        for txn in transactions:
            txn.description = self._cipher.decrypt(txn.description)
        return transactions

    def get_stored_description(self, transaction_id: str) -> str | None:
        """Raw description column value, as written to disk."""
        with self.session() as session:  # type: Session
            transaction = (
                session.query(LedgerTransaction)
                .filter_by(transaction_id=transaction_id)
                .first()
            )
            return transaction.description if transaction else None

    # Import jobs ----------------------------------------------------------

    def create_import_job(
        self,
        *,
        user_id: str,
        account_id: str | None,
        type: str = "plaid_sync",
        job_metadata: dict[str, Any] | None = None,
    ) -> ImportJob:
        now = datetime.now()
        with self.session() as session:  # type: Session
            job = ImportJob(
                job_id=new_id(),
                user_id=user_id,
                account_id=account_id,
                type=type,
                status="pending",
                job_metadata=job_metadata,
                created_at=now,
                updated_at=now,
            )
            session.add(job)
            session.flush()
            session.refresh(job)
            session.expunge(job)
            return job

    def get_import_job(self, job_id: str) -> ImportJob | None:
        with self.session() as session:  # type: Session
            job = session.query(ImportJob).filter_by(job_id=job_id).first()
            if job:
                session.expunge(job)
            return job

    def update_import_job(self, job_id: str, **fields: Any) -> None:
        unknown = set(fields) - set(IMPORT_JOB_PROGRESS_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update import job fields: {sorted(unknown)}")
        with self.session() as session:  # type: Session
            session.execute(
                update(ImportJob)
                .where(ImportJob.job_id == job_id)
                .values(**fields, updated_at=datetime.now())
            )

    def list_runnable_import_jobs(
        self, *, now: datetime, limit: int
    ) -> list[ImportJob]:
        """Pending jobs plus failed jobs whose retry time has come, oldest first."""
        with self.session() as session:  # type: Session
            jobs = (
                session.query(ImportJob)
                .filter(
                    (ImportJob.status == "pending")
                    | (
                        (ImportJob.status == "failed")
                        & ImportJob.next_retry_at.is_not(None)
                        & (ImportJob.next_retry_at <= now)
                    )
                )
                .order_by(ImportJob.created_at, ImportJob.job_id)
                .limit(limit)
                .all()
            )
            for job in jobs:
                session.expunge(job)
            return jobs


def _is_unique_violation(error: IntegrityError) -> bool:
    """True for unique-constraint violations (SQLSTATE 23505 or SQLite text)."""
    orig = error.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate == "23505":
        return True
    message = str(orig).lower()
    return "unique" in message or "duplicate" in message
