"""Incremental ImportJob counters for one sync run."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


class ImportJobWriter(Protocol):
    def update_import_job(self, job_id: str, **fields: object) -> None: ...


@dataclass(frozen=True, slots=True)
class ProgressSnapshot:
    total: int
    processed: int
    synced: int
    skipped: int
    errors: int

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 100
        return min(100, round(self.processed / self.total * 100))


class ProgressTracker:
    """Counts outcomes and periodically flushes them to the ImportJob row.

    `processed` is derived from the three outcome counters, so
    processed == synced + skipped + errors holds at every point.
    """

    def __init__(self, db: ImportJobWriter, job_id: str | None = None) -> None:
        self._db = db
        self._job_id = job_id
        self._total = 0
        self._synced = 0
        self._skipped = 0
        self._errors = 0

    @property
    def job_id(self) -> str | None:
        return self._job_id

    @property
    def processed(self) -> int:
        return self._synced + self._skipped + self._errors

    def set_total(self, total: int) -> None:
        self._total = total
        if self._job_id is not None:
            self._db.update_import_job(self._job_id, total_items=total)

    def record_synced(self) -> None:
        self._synced += 1

    def record_skipped(self) -> None:
        self._skipped += 1

    def record_error(self) -> None:
        self._errors += 1

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            total=self._total,
            processed=self.processed,
            synced=self._synced,
            skipped=self._skipped,
            errors=self._errors,
        )

    def flush(self) -> ProgressSnapshot:
        """Persist current counters to the job row (no-op without a job)."""
        snap = self.snapshot()
        if self._job_id is not None:
            self._db.update_import_job(
                self._job_id,
                progress=snap.percent,
                processed_items=snap.processed,
                synced_items=snap.synced,
                skipped_items=snap.skipped,
                error_items=snap.errors,
            )
        return snap
