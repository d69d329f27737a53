"""Plaid webhook routing."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import loguru
from loguru import logger

from ledgersync.tools.sync.sync_tool import MultiAccountSyncSummary

TRANSACTIONS_WEBHOOK = "TRANSACTIONS"

SYNC_TRIGGER_CODES = frozenset(
    {
        "INITIAL_UPDATE",
        "HISTORICAL_UPDATE",
        "DEFAULT_UPDATE",
        "SYNC_UPDATES_AVAILABLE",
    }
)
TRANSACTIONS_REMOVED = "TRANSACTIONS_REMOVED"


class ItemSyncer(Protocol):
    def sync_item(self, item_id: str) -> MultiAccountSyncSummary: ...


@dataclass(frozen=True, slots=True)
class WebhookOutcome:
    handled: bool
    summary: MultiAccountSyncSummary | None = None
    error: str | None = None


class WebhookLogger:
    """Handles all logging for WebhookDispatcher with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def received(self, webhook_type: str, webhook_code: str, item_id: str) -> None:
        self._logger.bind(type=webhook_type, code=webhook_code, item_id=item_id).info(
            "Received {} webhook {} for item {}", webhook_type, webhook_code, item_id
        )

    def removed(self, item_id: str) -> None:
        self._logger.bind(item_id=item_id).info(
            "Transactions removed for item {}; applied on next sync", item_id
        )

    def ignored(self, webhook_type: str, webhook_code: str) -> None:
        self._logger.bind(type=webhook_type, code=webhook_code).debug(
            "Ignoring webhook {}/{}", webhook_type, webhook_code
        )

    def sync_failed(self, item_id: str, error: Exception) -> None:
        self._logger.bind(item_id=item_id).opt(exception=error).error(
            "Webhook-triggered sync failed for item {}: {}", item_id, error
        )


class WebhookDispatcher:
    """Maps transaction webhooks onto item syncs.

    Sync failures are logged and reported in the outcome, never raised, so a
    webhook endpoint can always acknowledge delivery.
    """

    def __init__(
        self,
        syncer: ItemSyncer,
        webhook_logger: WebhookLogger | None = None,
    ) -> None:
        self._syncer = syncer
        self._logger = webhook_logger or WebhookLogger()

    def handle(
        self, webhook_type: str, webhook_code: str, item_id: str
    ) -> WebhookOutcome:
        self._logger.received(webhook_type, webhook_code, item_id)

        if webhook_type != TRANSACTIONS_WEBHOOK:
            self._logger.ignored(webhook_type, webhook_code)
            return WebhookOutcome(handled=False)

        if webhook_code == TRANSACTIONS_REMOVED:
            self._logger.removed(item_id)
            return WebhookOutcome(handled=True)

        if webhook_code not in SYNC_TRIGGER_CODES:
            self._logger.ignored(webhook_type, webhook_code)
            return WebhookOutcome(handled=False)

        try:
            summary = self._syncer.sync_item(item_id)
        except Exception as e:
            self._logger.sync_failed(item_id, e)
            return WebhookOutcome(handled=True, error=str(e))
        return WebhookOutcome(handled=True, summary=summary)
