"""Background processing of queued import jobs."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

import loguru
from loguru import logger

from ledgersync.adapters.db.facade import DB
from ledgersync.adapters.db.models import ImportJob
from ledgersync.tools.sync.sync_tool import SyncOrchestrator, SyncSummary

MAX_JOBS_PER_RUN = 5
MAX_RETRIES = 3
RETRY_DELAY_BASE = timedelta(seconds=60)

PLAID_SYNC_JOB = "plaid_sync"


class ImportJobError(Exception):
    """A job could not be run with the data it was queued with."""


@dataclass(frozen=True, slots=True)
class ImportJobResult:
    job_id: str
    summary: SyncSummary | None = None
    error: str | None = None
    retry_count: int = 0
    will_retry: bool = False

    @property
    def succeeded(self) -> bool:
        return self.error is None


def retry_delay(retry_count: int) -> timedelta:
    """Exponential backoff: 1, 2, 4 ... minutes for retry 1, 2, 3 ..."""
    return RETRY_DELAY_BASE * (2 ** (retry_count - 1))


class ImportJobLogger:
    """Handles all logging for ImportJobRunner with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def no_jobs(self) -> None:
        self._logger.debug("No pending import jobs")

    def job_start(self, job: ImportJob) -> None:
        self._logger.bind(job_id=job.job_id, type=job.type, retry=job.retry_count).info(
            "Processing import job {} ({})", job.job_id, job.type
        )

    def job_complete(self, job_id: str, summary: SyncSummary) -> None:
        self._logger.bind(job_id=job_id, **summary.to_dict()).info(
            "Import job {} completed: {} synced, {} skipped, {} errors",
            job_id,
            summary.synced,
            summary.skipped,
            summary.errors,
        )

    def unknown_type(self, job_id: str, job_type: str) -> None:
        self._logger.bind(job_id=job_id, type=job_type).warning(
            "Unknown import job type {} for job {}", job_type, job_id
        )

    def job_failed(
        self, job_id: str, error: Exception, retry_count: int, will_retry: bool
    ) -> None:
        self._logger.bind(
            job_id=job_id, retry_count=retry_count, will_retry=will_retry
        ).opt(exception=error).error(
            "Import job {} failed (attempt {}): {}", job_id, retry_count, error
        )


class ImportJobRunner:
    """Claims runnable ImportJobs and drives them through the sync orchestrator."""

    def __init__(
        self,
        db: DB,
        orchestrator: SyncOrchestrator,
        *,
        max_jobs: int = MAX_JOBS_PER_RUN,
        max_retries: int = MAX_RETRIES,
        clock: Callable[[], datetime] = datetime.now,
        job_logger: ImportJobLogger | None = None,
    ) -> None:
        self._db = db
        self._orchestrator = orchestrator
        self._max_jobs = max_jobs
        self._max_retries = max_retries
        self._clock = clock
        self._logger = job_logger or ImportJobLogger()

    def enqueue_plaid_sync(self, account_id: str) -> ImportJob:
        """Queue a pending sync job for a Plaid-linked account.

        The access token is never copied into the job; it is read from the
        connection when the job runs.

        Raises:
            ImportJobError: If the account does not exist or is not linked
        """
        account = self._db.get_account(account_id)
        if account is None:
            raise ImportJobError(f"Account {account_id} not found")
        if not account.plaid_item_id or not account.plaid_account_id:
            raise ImportJobError(f"Account {account_id} is not linked to Plaid")
        return self._db.create_import_job(
            user_id=account.user_id,
            account_id=account.account_id,
            type=PLAID_SYNC_JOB,
            job_metadata={
                "plaid_account_id": account.plaid_account_id,
                "item_id": account.plaid_item_id,
            },
        )

    def process_pending(self, now: datetime | None = None) -> list[ImportJobResult]:
        """Run pending jobs and failed jobs whose retry time has come.

        Args:
            now: Reference time for retry eligibility and backoff

        Returns:
            One result per claimed job, in claim order
        """
        now = now or self._clock()
        jobs = self._db.list_runnable_import_jobs(now=now, limit=self._max_jobs)
        if not jobs:
            self._logger.no_jobs()
            return []

        return [self._process(job, now) for job in jobs]

    def _process(self, job: ImportJob, now: datetime) -> ImportJobResult:
        self._logger.job_start(job)
        self._db.update_import_job(job.job_id, status="processing")

        if job.type != PLAID_SYNC_JOB:
            message = f"Unknown job type: {job.type}"
            self._logger.unknown_type(job.job_id, job.type)
            self._db.update_import_job(
                job.job_id, status="failed", error_message=message, next_retry_at=None
            )
            return ImportJobResult(
                job.job_id, error=message, retry_count=job.retry_count
            )

        try:
            summary = self._run_plaid_sync(job)
        except Exception as e:
            return self._fail(job, e, now)

        self._db.update_import_job(
            job.job_id,
            status="completed",
            progress=100,
            processed_items=summary.total_processed,
            synced_items=summary.synced,
            skipped_items=summary.skipped,
            error_items=summary.errors,
            error_message=None,
            next_retry_at=None,
            completed_at=self._clock(),
        )
        self._logger.job_complete(job.job_id, summary)
        return ImportJobResult(job.job_id, summary=summary, retry_count=job.retry_count)

    def _run_plaid_sync(self, job: ImportJob) -> SyncSummary:
        metadata = job.job_metadata or {}
        plaid_account_id = metadata.get("plaid_account_id")
        item_id = metadata.get("item_id")
        if not plaid_account_id or not item_id:
            raise ImportJobError("Missing plaid_account_id or item_id in job metadata")
        if not job.account_id:
            raise ImportJobError("Missing account_id on job")

        connection = self._db.get_plaid_connection(item_id)
        if connection is None or not connection.access_token:
            raise ImportJobError("Access token not found for Plaid connection")

        return self._orchestrator.sync(
            item_id, job.account_id, plaid_account_id, job_id=job.job_id
        )

    def _fail(self, job: ImportJob, error: Exception, now: datetime) -> ImportJobResult:
        retry_count = (job.retry_count or 0) + 1
        will_retry = retry_count < self._max_retries
        next_retry_at = now + retry_delay(retry_count) if will_retry else None

        self._logger.job_failed(job.job_id, error, retry_count, will_retry)
        self._db.update_import_job(
            job.job_id,
            status="failed",
            error_message=str(error) or "Unknown error",
            retry_count=retry_count,
            next_retry_at=next_retry_at,
        )
        return ImportJobResult(
            job.job_id,
            error=str(error) or "Unknown error",
            retry_count=retry_count,
            will_retry=will_retry,
        )
