from __future__ import annotations

import json
from pathlib import Path
import sys
from typing import Any

from dotenv import load_dotenv
from loguru import logger
from pydantic import ValidationError
import typer

from ledgersync.adapters.crypto.descriptions import DescriptionCipher
from ledgersync.adapters.db.facade import DB
from ledgersync.core.config import ConfigError, SyncConfig, load_sync_config_from_env
from ledgersync.infra.clients.plaid import PlaidClient
from ledgersync.jobs.import_jobs import ImportJobError, ImportJobRunner
from ledgersync.models.transaction import ProviderTransaction, record_field
from ledgersync.tools.sync.classification import ClassificationError, classify
from ledgersync.tools.sync.sync_tool import SyncError, SyncOrchestrator, summarize

# Load environment variables from .env
load_dotenv(override=False)

app = typer.Typer(help="ledgersync: Plaid transaction sync and classification.")

jobs_app = typer.Typer(help="Queue and process background import jobs.")
app.add_typer(jobs_app, name="jobs")


def _configure_logging(level: str) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        format="{time:YYYY-MM-DD HH:mm:ss} [{level}] {name}: {message}",
        level=level,
    )


def _load_config() -> SyncConfig:
    try:
        config = load_sync_config_from_env()
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=2) from e
    _configure_logging(config.log_level)
    return config


def _build_db(config: SyncConfig) -> DB:
    return DB(config.database_url, cipher=DescriptionCipher(config.encryption_key))


def _build_orchestrator(config: SyncConfig, db: DB) -> SyncOrchestrator:
    return SyncOrchestrator(db, PlaidClient.from_env(), config=config)


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


def _fail_sync(error: SyncError) -> None:
    if error.is_provider_error:
        typer.echo(f"Sync failed (Plaid {error.error_code}): {error}", err=True)
    else:
        typer.echo(f"Sync failed: {error}", err=True)
    raise typer.Exit(code=1)


@app.command("init-db")
def init_db() -> None:
    """Create the database tables."""
    config = _load_config()
    _build_db(config).create_all()
    typer.echo(f"Initialized database at {config.database_url}")


@app.command("sync")
def sync_cmd(
    account_id: str | None = typer.Option(None, help="Ledger account to sync"),
    item_id: str | None = typer.Option(
        None, help="Plaid item whose accounts should all be synced"
    ),
    user_id: str | None = typer.Option(
        None, help="User whose linked accounts should all be synced"
    ),
) -> None:
    """Sync transactions from Plaid into the ledger."""
    selected = [v for v in (account_id, item_id, user_id) if v]
    if len(selected) != 1:
        typer.echo("Pass exactly one of --account-id, --item-id, --user-id", err=True)
        raise typer.Exit(code=2)

    config = _load_config()
    db = _build_db(config)
    orchestrator = _build_orchestrator(config, db)
    try:
        if account_id:
            summary = orchestrator.sync_account(account_id)
        elif item_id:
            summary = orchestrator.sync_item(item_id)
        else:
            summary = orchestrator.sync_user_accounts(user_id or "")
    except SyncError as e:
        _fail_sync(e)
        return
    _echo_json(summarize(summary))


@jobs_app.command("enqueue")
def jobs_enqueue_cmd(
    account_id: str = typer.Option(..., help="Ledger account to queue a sync for"),
) -> None:
    """Queue a background Plaid sync for an account."""
    config = _load_config()
    db = _build_db(config)
    runner = ImportJobRunner(db, _build_orchestrator(config, db))
    try:
        job = runner.enqueue_plaid_sync(account_id)
    except ImportJobError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1) from e
    _echo_json({"jobId": job.job_id, "status": job.status})


@jobs_app.command("process")
def jobs_process_cmd() -> None:
    """Process pending and retry-ready import jobs."""
    config = _load_config()
    db = _build_db(config)
    runner = ImportJobRunner(db, _build_orchestrator(config, db))
    results = runner.process_pending()

    payload: list[dict[str, Any]] = []
    for result in results:
        entry: dict[str, Any] = {"jobId": result.job_id}
        if result.summary is not None:
            entry.update(result.summary.to_dict())
        if result.error is not None:
            entry.update(
                error=result.error,
                retryCount=result.retry_count,
                willRetry=result.will_retry,
            )
        payload.append(entry)
    _echo_json({"processed": len(results), "results": payload})


@app.command("classify")
def classify_cmd(
    json_path: Path = typer.Option(
        ...,
        "--json",
        exists=True,
        dir_okay=False,
        help="Provider transaction(s) as JSON",
    ),
    account_type: str = typer.Option("checking", help="Account type, e.g. credit"),
) -> None:
    """Classify provider transactions without touching the database."""
    raw = json.loads(json_path.read_text())
    records = raw if isinstance(raw, list) else [raw]

    output: list[dict[str, Any]] = []
    for data in records:
        try:
            record = ProviderTransaction.parse(data)
        except ValidationError as e:
            transaction_id = (
                record_field(data, "transaction_id") if isinstance(data, dict) else None
            )
            output.append({"transactionId": transaction_id, "error": str(e)})
            continue
        try:
            result = classify(record, account_type)
        except ClassificationError as e:
            output.append({"transactionId": record.transaction_id, "error": str(e)})
            continue
        output.append(
            {
                "transactionId": record.transaction_id,
                "type": result.type,
                "isTransfer": result.is_transfer,
                "amount": str(result.amount),
                "date": result.posted_at.isoformat(),
                "description": result.description,
                "rule": result.matched_rule,
            }
        )
    _echo_json(output)


def main() -> None:
    app()
