from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
import time
from typing import Any, Protocol

import loguru
from loguru import logger

from ledgersync.adapters.db.facade import DB
from ledgersync.adapters.db.models import Account, PlaidConnection
from ledgersync.core.config import SyncConfig
from ledgersync.infra.clients.plaid import (
    MutationDuringPaginationError,
    PlaidClientError,
    TransactionsSyncPage,
)
from ledgersync.models.transaction import (
    ProviderRecord,
    ProviderTransaction,
    record_field,
)
from ledgersync.tools.sync.classification import classify
from ledgersync.tools.sync.cursor_store import CursorStore
from ledgersync.tools.sync.progress import ProgressTracker
from ledgersync.tools.sync.writer import DedupGuard, TransactionWriter


class TransactionsSource(Protocol):
    """The incremental-pull endpoint the orchestrator depends on."""

    def sync_transactions(
        self,
        access_token: str,
        *,
        cursor: str | None = None,
        count: int = 500,
    ) -> TransactionsSyncPage: ...


class SyncError(Exception):
    """A sync aborted. Provider failures keep the provider's code and type."""

    def __init__(
        self,
        message: str,
        *,
        error_code: str | None = None,
        error_type: str | None = None,
        display_message: str | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.error_type = error_type
        self.display_message = display_message

    @property
    def is_provider_error(self) -> bool:
        return self.error_code is not None or self.error_type is not None

    @classmethod
    def from_provider(cls, error: PlaidClientError) -> SyncError:
        reason = error.display_message or str(error)
        if error.error_code:
            message = f"Plaid error {error.error_code}: {reason}"
        else:
            message = f"Plaid request failed: {reason}"
        return cls(
            message,
            error_code=error.error_code,
            error_type=error.error_type,
            display_message=error.display_message,
        )


@dataclass
class SyncSummary:
    """Aggregate outcome of one sync run."""

    synced: int = 0
    skipped: int = 0
    errors: int = 0
    total_processed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "synced": self.synced,
            "skipped": self.skipped,
            "errors": self.errors,
            "totalProcessed": self.total_processed,
        }


@dataclass
class MultiAccountSyncSummary:
    """Totals across the accounts of one item or one user."""

    accounts: int = 0
    synced: int = 0
    skipped: int = 0
    errors: int = 0
    total_processed: int = 0
    failed_accounts: list[str] = field(default_factory=list)

    def add(self, summary: SyncSummary) -> None:
        self.synced += summary.synced
        self.skipped += summary.skipped
        self.errors += summary.errors
        self.total_processed += summary.total_processed


@dataclass
class AccumulatedTransactions:
    """Accumulated changes from every page of one clean pagination pass."""

    added: list[ProviderRecord]
    modified: list[ProviderRecord]
    removed: list[str]  # provider transaction ids
    start_cursor: str | None
    final_cursor: str | None
    pages_fetched: int
    restarts: int = 0


class SyncToolLogger:
    """Handles all logging for SyncOrchestrator with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def fetch_start(self, cursor: str | None) -> None:
        """Log start of page fetch from Plaid."""
        cursor_label = cursor or "initial"
        self._logger.bind(cursor=cursor_label).debug(
            "Fetching transactions from Plaid (cursor: {})", cursor_label
        )

    def fetch_complete(
        self, added_count: int, modified_count: int, removed_count: int, page_num: int
    ) -> None:
        """Log completion of page fetch."""
        self._logger.bind(
            added=added_count,
            modified=modified_count,
            removed=removed_count,
            page=page_num,
        ).info(
            "Plaid fetch complete: {} added, {} modified, {} removed (page {})",
            added_count,
            modified_count,
            removed_count,
            page_num,
        )

    def fetch_summary(self, accumulated: AccumulatedTransactions) -> None:
        """Log summary of all fetched pages."""
        self._logger.bind(
            total_added=len(accumulated.added),
            total_modified=len(accumulated.modified),
            total_removed=len(accumulated.removed),
            pages=accumulated.pages_fetched,
            restarts=accumulated.restarts,
        ).info(
            "Total fetched: {} added, {} modified, {} removed across {} pages",
            len(accumulated.added),
            len(accumulated.modified),
            len(accumulated.removed),
            accumulated.pages_fetched,
        )

    def mutation_restart(self, restart: int, cursor: str | None) -> None:
        """Log restart after TRANSACTIONS_SYNC_MUTATION_DURING_PAGINATION."""
        self._logger.bind(restart=restart, cursor=cursor or "initial").warning(
            "Mutation during pagination, restarting from original cursor (restart {})",
            restart,
        )

    def apply_start(
        self, account_id: str, added_count: int, modified_count: int, removed_count: int
    ) -> None:
        self._logger.bind(
            account_id=account_id,
            added=added_count,
            modified=modified_count,
            removed=removed_count,
        ).info(
            "Applying {} added, {} modified, {} removed for account {}",
            added_count,
            modified_count,
            removed_count,
            account_id,
        )

    def batch_complete(self, batch_num: int, processed: int, total: int) -> None:
        self._logger.bind(batch=batch_num, processed=processed, total=total).debug(
            "Batch {} complete ({}/{} processed)", batch_num, processed, total
        )

    def record_failed(self, external_id: str, phase: str, error: Exception) -> None:
        self._logger.bind(external_id=external_id, phase=phase).opt(
            exception=error
        ).error("Error syncing {} transaction {}: {}", phase, external_id, error)

    def cursor_advanced(self, item_id: str, advanced: bool) -> None:
        self._logger.bind(item_id=item_id, advanced=advanced).debug(
            "Cursor for item {} {}", item_id, "advanced" if advanced else "unchanged"
        )

    def sync_complete(self, account_id: str, summary: SyncSummary) -> None:
        self._logger.bind(account_id=account_id, **summary.to_dict()).info(
            "Sync complete for account {}: {} synced, {} skipped, {} errors",
            account_id,
            summary.synced,
            summary.skipped,
            summary.errors,
        )

    def account_failed(self, account_id: str, error: SyncError) -> None:
        self._logger.bind(
            account_id=account_id, error_code=error.error_code
        ).error("Error syncing account {}: {}", account_id, error)


class SyncOrchestrator:
    """
    Pulls the Plaid transactions feed for a connection and reconciles it into
    the local ledger.

    States: Pulling -> Applying -> Advancing -> Done, with Pulling -> Pulling
    when the provider reports a mutation during pagination.
    """

    def __init__(
        self,
        db: DB,
        plaid_client: TransactionsSource,
        *,
        writer: TransactionWriter | None = None,
        config: SyncConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            db: Database facade
            plaid_client: Source of /transactions/sync pages
            writer: Transaction writer (defaults to one without suggestions)
            config: Batch size, delay, page size and cursor commit mode
            sleep: Called between batches with the delay in seconds
            clock: Timestamp source for lastSyncedAt
        """
        self._db = db
        self._plaid_client = plaid_client
        self._writer = writer or TransactionWriter(db)
        self._config = config or SyncConfig()
        self._sleep = sleep
        self._clock = clock
        self._cursors = CursorStore(db)
        self._logger = SyncToolLogger()

    # Entry points ---------------------------------------------------------

    def sync(
        self,
        connection_id: str,
        local_account_id: str,
        external_account_id: str,
        *,
        job_id: str | None = None,
    ) -> SyncSummary:
        """
        Sync one local account from its Plaid connection.

        Args:
            connection_id: Plaid item id owning the cursor and access token
            local_account_id: Ledger account to write into
            external_account_id: Plaid account id whose records are applied
            job_id: Optional ImportJob to report progress to

        Returns:
            SyncSummary of the requested account

        Raises:
            SyncError: On any provider error other than a mutation during
                pagination, or when the connection/account cannot be loaded
        """
        connection, account = self._load(connection_id, local_account_id)
        # The cursor is item-wide: other linked accounts take their share too
        targets = [(account, external_account_id)]
        targets.extend(
            (sibling, sibling.plaid_account_id or "")
            for sibling in self._db.list_accounts_for_item(connection.item_id)
            if sibling.account_id != account.account_id
        )
        summaries = self._run(
            connection, targets, job_id, job_account_id=account.account_id
        )
        return summaries[0]

    def sync_account(
        self, account_id: str, *, job_id: str | None = None
    ) -> SyncSummary:
        """Sync an account using the Plaid ids stored on it."""
        account = self._db.get_account(account_id)
        if account is None:
            raise SyncError(f"Account {account_id} not found")
        if not account.plaid_item_id or not account.plaid_account_id:
            raise SyncError(f"Account {account_id} is not linked to Plaid")
        return self.sync(
            account.plaid_item_id,
            account.account_id,
            account.plaid_account_id,
            job_id=job_id,
        )

    def sync_item(self, item_id: str) -> MultiAccountSyncSummary:
        """Sync every linked account of an item from a single feed pull."""
        connection = self._db.get_plaid_connection(item_id)
        if connection is None:
            raise SyncError(f"Plaid connection {item_id} not found")
        accounts = self._db.list_accounts_for_item(item_id)
        result = MultiAccountSyncSummary(accounts=len(accounts))
        if not accounts:
            return result

        targets = [(a, a.plaid_account_id or "") for a in accounts]
        for summary in self._run(connection, targets, None):
            result.add(summary)
        return result

    def sync_user_accounts(self, user_id: str) -> MultiAccountSyncSummary:
        """Sync all of a user's linked accounts, item by item.

        A fatal error on one item is counted as one error per account of that
        item and does not stop the remaining items.
        """
        accounts = self._db.list_syncable_accounts(user_id)
        result = MultiAccountSyncSummary(accounts=len(accounts))

        by_item: dict[str, list[Account]] = {}
        for account in accounts:
            by_item.setdefault(account.plaid_item_id or "", []).append(account)

        for item_id, item_accounts in by_item.items():
            connection = self._db.get_plaid_connection(item_id)
            if connection is None:
                continue
            targets = [(a, a.plaid_account_id or "") for a in item_accounts]
            try:
                for summary in self._run(connection, targets, None):
                    result.add(summary)
            except SyncError as e:
                for account in item_accounts:
                    self._logger.account_failed(account.account_id, e)
                    result.failed_accounts.append(account.account_id)
                    result.errors += 1
        return result

    # State machine --------------------------------------------------------

    def _load(
        self, connection_id: str, account_id: str
    ) -> tuple[PlaidConnection, Account]:
        connection = self._db.get_plaid_connection(connection_id)
        if connection is None:
            raise SyncError(f"Plaid connection {connection_id} not found")
        account = self._db.get_account(account_id)
        if account is None:
            raise SyncError(f"Account {account_id} not found")
        return connection, account

    def _run(
        self,
        connection: PlaidConnection,
        targets: Sequence[tuple[Account, str]],
        job_id: str | None,
        *,
        job_account_id: str | None = None,
    ) -> list[SyncSummary]:
        stored_cursor = self._cursors.load(connection.item_id)
        try:
            accumulated = self._fetch_all_pages(connection, stored_cursor)
        except PlaidClientError as e:
            raise SyncError.from_provider(e) from e
        except Exception as e:
            raise SyncError(f"Failed to fetch transactions: {e}") from e

        summaries: list[SyncSummary] = []
        for account, external_account_id in targets:
            account_job = job_id if account.account_id == job_account_id else None
            try:
                summary = self._apply(
                    account, external_account_id, accumulated, account_job
                )
            except SyncError:
                raise
            except Exception as e:
                raise SyncError(f"Failed to sync transactions: {e}") from e
            summaries.append(summary)

        if self._config.cursor_commit == "apply":
            advanced = self._cursors.advance(
                connection.item_id, expected=stored_cursor, new=accumulated.final_cursor
            )
            self._logger.cursor_advanced(connection.item_id, advanced)
        return summaries

    def _fetch_all_pages(
        self,
        connection: PlaidConnection,
        stored_cursor: str | None,
    ) -> AccumulatedTransactions:
        """
        Fetch all available pages, restarting on mutation during pagination.

        The restart point is the cursor in effect when the provider first
        reported has_more in this sync (falling back to the stored cursor).
        """
        current_cursor = stored_cursor
        persisted_cursor = stored_cursor
        original_cursor: str | None = None
        original_captured = False

        added_all: list[ProviderRecord] = []
        modified_all: list[ProviderRecord] = []
        removed_all: list[str] = []
        pages_fetched = 0
        restarts = 0

        while True:
            try:
                self._logger.fetch_start(current_cursor)
                page = self._plaid_client.sync_transactions(
                    connection.access_token,
                    cursor=current_cursor,
                    count=self._config.page_size,
                )
            except MutationDuringPaginationError:
                restarts += 1
                added_all = []
                modified_all = []
                removed_all = []
                pages_fetched = 0
                current_cursor = original_cursor if original_captured else stored_cursor
                self._logger.mutation_restart(restarts, current_cursor)
                continue

            added_all.extend(page.added)
            modified_all.extend(page.modified)
            removed_all.extend(r.transaction_id for r in page.removed)
            pages_fetched += 1
            self._logger.fetch_complete(
                len(page.added), len(page.modified), len(page.removed), pages_fetched
            )

            if page.has_more and not original_captured:
                original_cursor = current_cursor
                original_captured = True

            page_start = current_cursor
            current_cursor = page.next_cursor or current_cursor

            if (
                self._config.cursor_commit == "page"
                and restarts == 0
                and current_cursor != persisted_cursor
            ):
                if self._cursors.advance(
                    connection.item_id, expected=persisted_cursor, new=current_cursor
                ):
                    persisted_cursor = current_cursor

            if not page.has_more:
                break
            if current_cursor == page_start:
                raise PlaidClientError(
                    "Plaid reported more pages without advancing the cursor"
                )

        if self._config.cursor_commit == "page" and current_cursor != persisted_cursor:
            self._cursors.advance(
                connection.item_id, expected=persisted_cursor, new=current_cursor
            )

        accumulated = AccumulatedTransactions(
            added=added_all,
            modified=modified_all,
            removed=removed_all,
            start_cursor=stored_cursor,
            final_cursor=current_cursor,
            pages_fetched=pages_fetched,
            restarts=restarts,
        )
        self._logger.fetch_summary(accumulated)
        return accumulated

    def _apply(
        self,
        account: Account,
        external_account_id: str,
        accumulated: AccumulatedTransactions,
        job_id: str | None,
    ) -> SyncSummary:
        added = [
            t
            for t in accumulated.added
            if record_field(t, "account_id") == external_account_id
        ]
        modified = [
            t
            for t in accumulated.modified
            if record_field(t, "account_id") == external_account_id
        ]
        self._logger.apply_start(
            account.account_id, len(added), len(modified), len(accumulated.removed)
        )

        progress = ProgressTracker(self._db, job_id)
        progress.set_total(len(added) + len(modified))
        guard = DedupGuard.for_account(self._db, account.account_id)

        self._apply_added(account, added, guard, progress)
        self._apply_modified(account, modified, guard, progress)
        self._apply_removed(account, accumulated.removed, guard, progress)
        snap = progress.flush()

        self._db.mark_account_synced(account.account_id, self._clock())

        summary = SyncSummary(
            synced=snap.synced,
            skipped=snap.skipped,
            errors=snap.errors,
            total_processed=snap.processed,
        )
        self._logger.sync_complete(account.account_id, summary)
        return summary

    def _apply_added(
        self,
        account: Account,
        added: list[ProviderRecord],
        guard: DedupGuard,
        progress: ProgressTracker,
    ) -> None:
        batch_size = self._config.batch_size
        for start in range(0, len(added), batch_size):
            for record in added[start : start + batch_size]:
                self._materialize(account, record, guard, progress, phase="added")

            snap = progress.flush()
            self._logger.batch_complete(
                start // batch_size + 1, snap.processed, snap.total
            )
            if start + batch_size < len(added) and self._config.batch_delay_seconds > 0:
                self._sleep(self._config.batch_delay_seconds)

    def _apply_modified(
        self,
        account: Account,
        modified: list[ProviderRecord],
        guard: DedupGuard,
        progress: ProgressTracker,
    ) -> None:
        batch_size = self._config.batch_size
        for start in range(0, len(modified), batch_size):
            for record in modified[start : start + batch_size]:
                external_id = _external_id(record)
                hit = guard.check(external_id)
                if hit is None or hit.transaction_id is None:
                    self._materialize(
                        account, record, guard, progress, phase="modified"
                    )
                    continue
                try:
                    txn = ProviderTransaction.from_record(record)
                    classification = classify(txn, account.type)
                    self._writer.update_existing(
                        hit.transaction_id, txn, classification
                    )
                except Exception as e:
                    self._logger.record_failed(external_id, "modified", e)
                    progress.record_error()
                else:
                    progress.record_synced()
            progress.flush()

    def _apply_removed(
        self,
        account: Account,
        removed_ids: list[str],
        guard: DedupGuard,
        progress: ProgressTracker,
    ) -> None:
        records = self._db.find_sync_records(
            account_id=account.account_id, plaid_transaction_ids=removed_ids
        )
        for record in records:
            try:
                self._writer.remove(record, guard)
            except Exception as e:
                self._logger.record_failed(record.plaid_transaction_id, "removed", e)
                progress.record_error()

    def _materialize(
        self,
        account: Account,
        record: ProviderRecord,
        guard: DedupGuard,
        progress: ProgressTracker,
        *,
        phase: str,
    ) -> None:
        try:
            txn = ProviderTransaction.from_record(record)
            classification = classify(txn, account.type)
            result = self._writer.materialize(account, txn, classification, guard)
        except Exception as e:
            self._logger.record_failed(_external_id(record), phase, e)
            progress.record_error()
            return

        if result.was_newly_created:
            progress.record_synced()
        else:
            progress.record_skipped()


def _external_id(record: ProviderRecord) -> str:
    return str(record_field(record, "transaction_id") or "")


def summarize(summary: SyncSummary | MultiAccountSyncSummary) -> dict[str, Any]:
    """JSON-friendly view of a summary for CLI and job results."""
    if isinstance(summary, SyncSummary):
        return summary.to_dict()
    return {
        "accounts": summary.accounts,
        "synced": summary.synced,
        "skipped": summary.skipped,
        "errors": summary.errors,
        "totalProcessed": summary.total_processed,
        "failedAccounts": list(summary.failed_accounts),
    }
