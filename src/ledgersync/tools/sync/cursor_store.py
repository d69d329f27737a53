"""Per-connection pagination cursor persistence."""

from __future__ import annotations

import loguru
from loguru import logger

from ledgersync.adapters.db.facade import DB


class CursorStore:
    """Reads and compare-and-set advances the cursor of one Plaid item."""

    def __init__(self, db: DB, logger_instance: loguru.Logger = logger) -> None:
        self._db = db
        self._logger = logger_instance

    def load(self, item_id: str) -> str | None:
        """Stored cursor, or None when the item has never been synced."""
        return self._db.get_transactions_cursor(item_id)

    def advance(self, item_id: str, *, expected: str | None, new: str | None) -> bool:
        """Move the cursor from `expected` to `new`.

        Returns False without writing when another sync already moved the
        cursor; that run's writes are covered by dedup, so losing is safe.
        """
        if not new or new == expected:
            return False
        advanced = self._db.compare_and_set_cursor(item_id, expected=expected, new=new)
        if not advanced:
            self._logger.bind(item_id=item_id).warning(
                "Cursor for item {} moved by a concurrent sync; not overwriting",
                item_id,
            )
        return advanced
