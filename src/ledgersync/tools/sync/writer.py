"""Idempotent materialization of provider records into the ledger.

At most one ledger transaction exists per provider transaction id. The
guarantee is layered, cheapest check first:

1. in-run map of external id -> transaction id seeded from the account's
   sync records,
2. point lookup of the sync record for (external id, account),
3. the sync record insert itself, which ignores unique conflicts; a writer
   that loses that race deletes its own transaction and adopts the winner's.

The sync record is written last so that it only ever points at a fully
formed transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Literal, Protocol

import loguru
from loguru import logger

from ledgersync.adapters.db.facade import DB
from ledgersync.adapters.db.models import Account, TransactionSync, TransactionType
from ledgersync.models.transaction import ProviderTransaction
from ledgersync.tools.sync.classification import Classification

DedupLayer = Literal["memory", "ledger", "upsert"]


@dataclass(frozen=True, slots=True)
class CategorySuggestion:
    category_id: str
    confidence: float
    subcategory_id: str | None = None


class CategorySuggester(Protocol):
    """Black-box category scorer; may return None or raise."""

    def suggest_category(
        self,
        user_id: str,
        description: str,
        amount: Decimal,
        type: TransactionType,
    ) -> CategorySuggestion | None: ...


class NullCategorySuggester:
    """Suggester used when no scoring model is wired in."""

    def suggest_category(
        self,
        user_id: str,
        description: str,
        amount: Decimal,
        type: TransactionType,
    ) -> CategorySuggestion | None:
        return None


@dataclass(frozen=True, slots=True)
class DedupHit:
    transaction_id: str | None
    layer: DedupLayer


@dataclass(frozen=True, slots=True)
class MaterializeResult:
    transaction_id: str | None
    was_newly_created: bool
    dedup_layer: DedupLayer | None = None


class DedupGuard:
    """Layers 1 and 2 of the at-most-once check for one account."""

    def __init__(
        self,
        db: DB,
        account_id: str,
        seen: dict[str, str | None] | None = None,
    ) -> None:
        self._db = db
        self._account_id = account_id
        self._seen: dict[str, str | None] = dict(seen or {})

    @classmethod
    def for_account(cls, db: DB, account_id: str) -> DedupGuard:
        """Guard seeded with every sync record the account already has."""
        return cls(db, account_id, db.load_sync_map(account_id))

    @property
    def account_id(self) -> str:
        return self._account_id

    def known(self, external_id: str) -> bool:
        return external_id in self._seen

    def local_id(self, external_id: str) -> str | None:
        return self._seen.get(external_id)

    def check(self, external_id: str) -> DedupHit | None:
        if external_id in self._seen:
            return DedupHit(self._seen[external_id], "memory")

        record = self._db.find_sync_record(
            plaid_transaction_id=external_id, account_id=self._account_id
        )
        if record is not None:
            self._seen[external_id] = record.transaction_id
            return DedupHit(record.transaction_id, "ledger")
        return None

    def remember(self, external_id: str, transaction_id: str | None) -> None:
        self._seen[external_id] = transaction_id

    def forget(self, external_id: str) -> None:
        self._seen.pop(external_id, None)


class TransactionWriterLogger:
    """Handles all logging for TransactionWriter with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def duplicate_skipped(self, external_id: str, layer: DedupLayer) -> None:
        self._logger.bind(external_id=external_id, layer=layer).debug(
            "Skipping already materialized transaction {} (found in {})",
            external_id,
            layer,
        )

    def race_lost(self, external_id: str, winner_id: str | None) -> None:
        self._logger.bind(external_id=external_id, winner=winner_id).warning(
            "Sync record for {} already written by a concurrent sync; reusing {}",
            external_id,
            winner_id,
        )

    def suggestion_failed(self, external_id: str, error: Exception) -> None:
        self._logger.bind(external_id=external_id).warning(
            "Category suggestion failed for {}: {}", external_id, error
        )

    def created(self, external_id: str, transaction_id: str, txn_type: str) -> None:
        self._logger.bind(
            external_id=external_id, transaction_id=transaction_id, type=txn_type
        ).debug(
            "Created {} transaction {} for {}", txn_type, transaction_id, external_id
        )


class TransactionWriter:
    """Writes ledger transactions and their sync records for one account."""

    def __init__(
        self,
        db: DB,
        suggester: CategorySuggester | None = None,
        writer_logger: TransactionWriterLogger | None = None,
    ) -> None:
        self._db = db
        self._suggester = suggester or NullCategorySuggester()
        self._logger = writer_logger or TransactionWriterLogger()

    def materialize(
        self,
        account: Account,
        record: ProviderTransaction,
        classification: Classification,
        guard: DedupGuard,
    ) -> MaterializeResult:
        """Create the ledger transaction for `record` unless one already exists.

        Write order: transaction, then metadata and suggestion, then the sync
        record. A crash part-way leaves an orphan transaction, never a sync
        record without its transaction.
        """
        external_id = record.transaction_id
        hit = guard.check(external_id)
        if hit is not None:
            self._logger.duplicate_skipped(external_id, hit.layer)
            return MaterializeResult(hit.transaction_id, False, hit.layer)

        transaction = self._db.create_transaction(
            {
                "account_id": account.account_id,
                "posted_at": classification.posted_at,
                "amount": classification.amount,
                "type": classification.type,
                "description": classification.description,
            },
            acting_user_id=account.user_id,
        )

        suggestion = self._suggest(account.user_id, external_id, classification)
        patch: dict[str, Any] = {
            "provider_metadata": build_metadata(record, classification, suggestion),
        }
        if suggestion is not None:
            patch["suggested_category_id"] = suggestion.category_id
        self._db.update_transaction(transaction.transaction_id, patch)

        outcome = self._db.insert_sync_record(
            account_id=account.account_id,
            plaid_transaction_id=external_id,
            transaction_id=transaction.transaction_id,
        )
        if not outcome.created:
            winner_id = outcome.record.transaction_id
            self._logger.race_lost(external_id, winner_id)
            self._db.delete_transaction(transaction.transaction_id)
            guard.remember(external_id, winner_id)
            return MaterializeResult(winner_id, False, "upsert")

        guard.remember(external_id, transaction.transaction_id)
        self._logger.created(
            external_id, transaction.transaction_id, classification.type
        )
        return MaterializeResult(transaction.transaction_id, True, None)

    def update_existing(
        self,
        transaction_id: str,
        record: ProviderTransaction,
        classification: Classification,
    ) -> None:
        """Rewrite a materialized transaction after the provider modified it.

        The category suggestion made at creation time is carried over.
        """
        metadata = build_metadata(record, classification, None)
        existing = self._db.get_transaction(transaction_id)
        previous = (existing.provider_metadata if existing else None) or {}
        if "categorySuggestion" in previous:
            metadata["categorySuggestion"] = previous["categorySuggestion"]

        self._db.update_transaction(
            transaction_id,
            {
                "posted_at": classification.posted_at,
                "amount": classification.amount,
                "type": classification.type,
                "description": classification.description,
                "provider_metadata": metadata,
            },
        )
        self._db.touch_sync_record(record.transaction_id)

    def remove(self, record: TransactionSync, guard: DedupGuard) -> None:
        """Delete a removed record's transaction, then its sync record."""
        if record.transaction_id is not None:
            self._db.delete_transaction(record.transaction_id)
        self._db.delete_sync_record(record.plaid_transaction_id)
        guard.forget(record.plaid_transaction_id)

    def _suggest(
        self,
        user_id: str,
        external_id: str,
        classification: Classification,
    ) -> CategorySuggestion | None:
        try:
            return self._suggester.suggest_category(
                user_id,
                classification.description,
                classification.amount,
                classification.type,
            )
        except Exception as e:
            self._logger.suggestion_failed(external_id, e)
            return None


def build_metadata(
    record: ProviderTransaction,
    classification: Classification,
    suggestion: CategorySuggestion | None,
) -> dict[str, Any]:
    """Provider fields plus the classification trail, JSON-serializable."""
    metadata = record.to_metadata()
    metadata["classification"] = {
        "rule": classification.matched_rule,
        "type": classification.type,
        "isTransfer": classification.is_transfer,
    }
    if record.legacy_fields:
        metadata["legacyFields"] = list(record.legacy_fields)
    if suggestion is not None:
        metadata["categorySuggestion"] = {
            "categoryId": suggestion.category_id,
            "subcategoryId": suggestion.subcategory_id,
            "confidence": suggestion.confidence,
        }
    return metadata
