from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

import pytest

from factories import make_record, seed_linked_account
from ledgersync.adapters.db.facade import DB
from ledgersync.core.config import SyncConfig
from ledgersync.infra.clients.plaid import (
    MUTATION_DURING_PAGINATION,
    MutationDuringPaginationError,
    PlaidClient,
    PlaidClientError,
    TransactionsSyncPage,
)
from ledgersync.models.transaction import ProviderTransaction, RemovedTransaction
from ledgersync.tools.sync.sync_tool import SyncError, SyncOrchestrator

FIXED_NOW = datetime(2024, 3, 10, 12, 0, 0)

# Helper functions


def create_page(
    *,
    added: list[ProviderTransaction] | None = None,
    modified: list[ProviderTransaction] | None = None,
    removed_ids: list[str] | None = None,
    next_cursor: str | None = None,
    has_more: bool = False,
) -> TransactionsSyncPage:
    """Create one /transactions/sync page."""
    return TransactionsSyncPage(
        added=added or [],
        modified=modified or [],
        removed=[RemovedTransaction(transaction_id=i) for i in removed_ids or []],
        next_cursor=next_cursor,
        has_more=has_more,
    )


def create_records(count: int, *, prefix: str = "txn") -> list[ProviderTransaction]:
    return [
        make_record(transaction_id=f"{prefix}_{i}", amount=-(i + 1.0), name=f"Txn {i}")
        for i in range(count)
    ]


def mutation_error() -> MutationDuringPaginationError:
    return MutationDuringPaginationError(
        "Plaid API error (400)", error_code=MUTATION_DURING_PAGINATION
    )


class MockPlaidClient:
    """Mock PlaidClient replaying a scripted sequence of pages and errors."""

    def __init__(self, responses: list[TransactionsSyncPage | Exception]) -> None:
        self._responses = list(responses)
        self.cursors_used: list[str | None] = []
        self.access_tokens: list[str] = []

    def sync_transactions(
        self,
        access_token: str,
        *,
        cursor: str | None = None,
        count: int = 500,
    ) -> TransactionsSyncPage:
        self.cursors_used.append(cursor)
        self.access_tokens.append(access_token)
        if not self._responses:
            return create_page(next_cursor=cursor)
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class StubTransportPlaidClient(PlaidClient):
    """Real PlaidClient parsing a canned /transactions/sync body."""

    def __init__(self, response: dict[str, Any]) -> None:
        super().__init__(client_id="client", secret="secret")
        self._response = response

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        return self._response


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def create_orchestrator(
    db: DB,
    client: MockPlaidClient,
    *,
    config: SyncConfig | None = None,
    sleep: RecordingSleep | None = None,
) -> SyncOrchestrator:
    return SyncOrchestrator(
        db,
        client,
        config=config or SyncConfig(batch_delay_seconds=0),
        sleep=sleep or RecordingSleep(),
        clock=lambda: FIXED_NOW,
    )


# Tests


def test_initial_sync_materializes_all_added(db: DB) -> None:
    # helper setup
    _, account = seed_linked_account(db)
    client = MockPlaidClient([create_page(added=create_records(3), next_cursor="c1")])
    orchestrator = create_orchestrator(db, client)

    # act
    summary = orchestrator.sync("item_1", account.account_id, "plaid_acc_1")

    # assert
    assert summary.to_dict() == {
        "synced": 3,
        "skipped": 0,
        "errors": 0,
        "totalProcessed": 3,
    }
    assert client.cursors_used == [None]
    assert client.access_tokens == ["access-item_1"]
    assert db.get_transactions_cursor("item_1") == "c1"
    assert len(db.list_transactions(account.account_id)) == 3
    refreshed = db.get_account(account.account_id)
    assert refreshed is not None
    assert refreshed.last_synced_at == FIXED_NOW


def test_second_run_is_idempotent(db: DB) -> None:
    # helper setup
    _, account = seed_linked_account(db)
    records = create_records(4)
    client = MockPlaidClient(
        [
            create_page(added=records, next_cursor="c1"),
            create_page(added=records, next_cursor="c2"),
        ]
    )
    orchestrator = create_orchestrator(db, client)
    first = orchestrator.sync("item_1", account.account_id, "plaid_acc_1")
    ids_after_first = {t.transaction_id for t in db.list_transactions(account.account_id)}

    # act
    second = orchestrator.sync("item_1", account.account_id, "plaid_acc_1")

    # assert
    assert second.synced == 0
    assert second.skipped == first.synced
    assert {t.transaction_id for t in db.list_transactions(account.account_id)} == (
        ids_after_first
    )
    assert client.cursors_used == [None, "c1"]
    assert db.get_transactions_cursor("item_1") == "c2"


def test_mutation_during_pagination_restarts_from_original_cursor(db: DB) -> None:
    # helper setup
    _, account = seed_linked_account(db)
    page_one = create_page(
        added=create_records(2, prefix="p1"), next_cursor="c1", has_more=True
    )
    client = MockPlaidClient(
        [
            page_one,
            mutation_error(),
            page_one,
            create_page(
                added=create_records(2, prefix="p2"), next_cursor="c2", has_more=True
            ),
            create_page(added=create_records(1, prefix="p3"), next_cursor="c3"),
        ]
    )
    orchestrator = create_orchestrator(db, client)

    # act
    summary = orchestrator.sync("item_1", account.account_id, "plaid_acc_1")

    # assert
    assert client.cursors_used == [None, "c1", None, "c1", "c2"]
    assert summary.total_processed == 5
    assert summary.synced == 5
    assert summary.skipped == 0
    assert len(db.list_transactions(account.account_id)) == 5
    assert db.get_transactions_cursor("item_1") == "c3"


def test_mutation_restart_uses_stored_cursor_before_has_more(db: DB) -> None:
    # helper setup
    _, account = seed_linked_account(db, cursor="c0")
    client = MockPlaidClient(
        [
            mutation_error(),
            create_page(added=create_records(1), next_cursor="c1"),
        ]
    )
    orchestrator = create_orchestrator(db, client)

    # act
    summary = orchestrator.sync("item_1", account.account_id, "plaid_acc_1")

    # assert
    assert client.cursors_used == ["c0", "c0"]
    assert summary.synced == 1
    assert db.get_transactions_cursor("item_1") == "c1"


def test_added_then_removed_leaves_nothing_behind(db: DB) -> None:
    # helper setup
    _, account = seed_linked_account(db)
    record = make_record(transaction_id="gone_1")
    client = MockPlaidClient(
        [
            create_page(added=[record], next_cursor="c1"),
            create_page(removed_ids=["gone_1"], next_cursor="c2"),
        ]
    )
    orchestrator = create_orchestrator(db, client)
    orchestrator.sync("item_1", account.account_id, "plaid_acc_1")

    # act
    summary = orchestrator.sync("item_1", account.account_id, "plaid_acc_1")

    # assert
    assert summary.errors == 0
    assert db.list_transactions(account.account_id) == []
    assert (
        db.find_sync_record(plaid_transaction_id="gone_1", account_id=account.account_id)
        is None
    )


def test_removal_only_touches_the_owning_account(db: DB) -> None:
    # helper setup
    _, checking = seed_linked_account(db)
    _, savings = seed_linked_account(
        db, account_id="acc_2", plaid_account_id="plaid_acc_2", account_type="savings"
    )
    checking_record = make_record(transaction_id="chk_1")
    savings_record = make_record(transaction_id="sav_1", account_id="plaid_acc_2")
    client = MockPlaidClient(
        [
            create_page(added=[checking_record, savings_record], next_cursor="c1"),
            create_page(removed_ids=["sav_1"], next_cursor="c2"),
        ]
    )
    orchestrator = create_orchestrator(db, client)
    orchestrator.sync("item_1", savings.account_id, "plaid_acc_2")

    # act
    orchestrator.sync("item_1", checking.account_id, "plaid_acc_1")

    # assert
    assert db.list_transactions(savings.account_id) == []
    assert len(db.list_transactions(checking.account_id)) == 1


def test_single_account_sync_applies_pull_to_sibling_accounts(db: DB) -> None:
    # helper setup
    _, checking = seed_linked_account(db)
    _, savings = seed_linked_account(
        db, account_id="acc_2", plaid_account_id="plaid_acc_2", account_type="savings"
    )
    page = create_page(
        added=[
            make_record(transaction_id="a1"),
            make_record(transaction_id="b1", account_id="plaid_acc_2"),
        ],
        next_cursor="c1",
    )
    client = MockPlaidClient([page])
    orchestrator = create_orchestrator(db, client)

    # act
    summary = orchestrator.sync("item_1", checking.account_id, "plaid_acc_1")
    orchestrator.sync("item_1", savings.account_id, "plaid_acc_2")

    # assert
    assert summary.synced == 1
    assert summary.total_processed == 1
    assert client.cursors_used == [None, "c1"]
    assert db.get_transactions_cursor("item_1") == "c1"
    assert len(db.list_transactions(checking.account_id)) == 1
    assert len(db.list_transactions(savings.account_id)) == 1


def test_records_for_other_accounts_are_filtered_out(db: DB) -> None:
    # helper setup
    _, account = seed_linked_account(db)
    ours = create_records(2)
    theirs = [make_record(transaction_id="other_1", account_id="plaid_acc_9")]
    client = MockPlaidClient([create_page(added=ours + theirs, next_cursor="c1")])
    orchestrator = create_orchestrator(db, client)

    # act
    summary = orchestrator.sync("item_1", account.account_id, "plaid_acc_1")

    # assert
    assert summary.total_processed == 2
    assert len(db.list_transactions(account.account_id)) == 2


def test_added_processed_in_batches_with_delay(db: DB) -> None:
    # helper setup
    _, account = seed_linked_account(db)
    job = db.create_import_job(user_id="user_1", account_id=account.account_id)
    client = MockPlaidClient([create_page(added=create_records(5), next_cursor="c1")])
    sleep = RecordingSleep()
    orchestrator = create_orchestrator(
        db,
        client,
        config=SyncConfig(batch_size=2, batch_delay_seconds=0.25),
        sleep=sleep,
    )

    # act
    summary = orchestrator.sync(
        "item_1", account.account_id, "plaid_acc_1", job_id=job.job_id
    )

    # assert
    assert sleep.calls == [0.25, 0.25]
    assert summary.synced == 5
    stored_job = db.get_import_job(job.job_id)
    assert stored_job is not None
    assert stored_job.total_items == 5
    assert stored_job.processed_items == 5
    assert stored_job.synced_items == 5
    assert stored_job.progress == 100
    assert (
        stored_job.processed_items
        == stored_job.synced_items + stored_job.skipped_items + stored_job.error_items
    )


def test_modified_record_updates_in_place(db: DB) -> None:
    # helper setup
    _, account = seed_linked_account(db)
    original = make_record(transaction_id="m_1", amount=-10.0, name="Pending")
    updated = make_record(transaction_id="m_1", amount=-10.75, name="Posted")
    client = MockPlaidClient(
        [
            create_page(added=[original], next_cursor="c1"),
            create_page(modified=[updated], next_cursor="c2"),
        ]
    )
    orchestrator = create_orchestrator(db, client)
    orchestrator.sync("item_1", account.account_id, "plaid_acc_1")

    # act
    summary = orchestrator.sync("item_1", account.account_id, "plaid_acc_1")

    # assert
    assert summary.synced == 1
    transactions = db.list_transactions(account.account_id)
    assert len(transactions) == 1
    assert transactions[0].amount == Decimal("10.75")
    assert transactions[0].description == "Posted"


def test_modified_record_without_prior_sync_is_created(db: DB) -> None:
    # helper setup
    _, account = seed_linked_account(db)
    client = MockPlaidClient(
        [create_page(modified=[make_record(transaction_id="late_1")], next_cursor="c1")]
    )
    orchestrator = create_orchestrator(db, client)

    # act
    summary = orchestrator.sync("item_1", account.account_id, "plaid_acc_1")

    # assert
    assert summary.synced == 1
    assert len(db.list_transactions(account.account_id)) == 1


def test_bad_record_counts_as_error_and_sync_continues(db: DB) -> None:
    # helper setup
    _, account = seed_linked_account(db)
    records = create_records(2) + [make_record(transaction_id="bad", date="not-a-date")]
    client = MockPlaidClient([create_page(added=records, next_cursor="c1")])
    orchestrator = create_orchestrator(db, client)

    # act
    summary = orchestrator.sync("item_1", account.account_id, "plaid_acc_1")

    # assert
    assert summary.synced == 2
    assert summary.errors == 1
    assert summary.total_processed == 3
    assert db.get_transactions_cursor("item_1") == "c1"


def test_malformed_provider_record_is_counted_per_record(db: DB) -> None:
    # helper setup
    _, account = seed_linked_account(db)
    response = {
        "added": [
            {
                "transaction_id": "good_1",
                "account_id": "plaid_acc_1",
                "amount": -4.5,
                "date": "2024-03-05",
                "name": "Coffee",
            },
            {
                "transaction_id": "null_date",
                "account_id": "plaid_acc_1",
                "amount": -2.0,
                "date": None,
            },
        ],
        "next_cursor": "c1",
        "has_more": False,
    }
    client = StubTransportPlaidClient(response)
    orchestrator = SyncOrchestrator(
        db, client, config=SyncConfig(batch_delay_seconds=0), clock=lambda: FIXED_NOW
    )

    # act
    summary = orchestrator.sync("item_1", account.account_id, "plaid_acc_1")

    # assert
    assert summary.synced == 1
    assert summary.errors == 1
    assert summary.total_processed == 2
    assert db.get_transactions_cursor("item_1") == "c1"


def test_unparseable_page_is_wrapped_in_sync_error(db: DB) -> None:
    # helper setup
    _, account = seed_linked_account(db, cursor="c0")
    client = StubTransportPlaidClient({"removed": [{"account_id": "x"}]})
    orchestrator = SyncOrchestrator(db, client, config=SyncConfig())

    # act / assert
    with pytest.raises(SyncError, match="Failed to fetch transactions") as exc_info:
        orchestrator.sync("item_1", account.account_id, "plaid_acc_1")
    assert exc_info.value.is_provider_error is False
    assert db.get_transactions_cursor("item_1") == "c0"


def test_provider_error_aborts_with_code(db: DB) -> None:
    # helper setup
    _, account = seed_linked_account(db, cursor="c0")
    client = MockPlaidClient(
        [
            PlaidClientError(
                "Plaid API error (400)",
                error_code="ITEM_LOGIN_REQUIRED",
                error_type="ITEM_ERROR",
                status_code=400,
                display_message="Please re-link your bank",
            )
        ]
    )
    orchestrator = create_orchestrator(db, client)

    # act
    with pytest.raises(SyncError) as exc_info:
        orchestrator.sync("item_1", account.account_id, "plaid_acc_1")

    # assert
    error = exc_info.value
    assert error.is_provider_error is True
    assert error.error_code == "ITEM_LOGIN_REQUIRED"
    assert error.error_type == "ITEM_ERROR"
    assert "Please re-link your bank" in str(error)
    assert db.get_transactions_cursor("item_1") == "c0"
    assert db.list_transactions(account.account_id) == []


def test_unknown_connection_is_a_generic_sync_error(db: DB) -> None:
    # helper setup
    orchestrator = create_orchestrator(db, MockPlaidClient([]))

    # act
    with pytest.raises(SyncError) as exc_info:
        orchestrator.sync("missing_item", "acc_1", "plaid_acc_1")

    # assert
    assert exc_info.value.is_provider_error is False


@pytest.mark.parametrize(
    ("cursor_commit", "expected_cursor"),
    [("page", "c1"), ("apply", None)],
)
def test_cursor_commit_mode_on_failure_after_first_page(
    db: DB, cursor_commit: str, expected_cursor: str | None
) -> None:
    # helper setup
    _, account = seed_linked_account(db)
    client = MockPlaidClient(
        [
            create_page(added=create_records(1), next_cursor="c1", has_more=True),
            PlaidClientError("boom", error_code="INTERNAL_SERVER_ERROR"),
        ]
    )
    orchestrator = create_orchestrator(
        db,
        client,
        config=SyncConfig(batch_delay_seconds=0, cursor_commit=cursor_commit),  # type: ignore[arg-type]
    )

    # act
    with pytest.raises(SyncError):
        orchestrator.sync("item_1", account.account_id, "plaid_acc_1")

    # assert
    assert db.get_transactions_cursor("item_1") == expected_cursor


def test_page_commit_mode_persists_final_cursor(db: DB) -> None:
    # helper setup
    _, account = seed_linked_account(db)
    client = MockPlaidClient(
        [
            create_page(added=create_records(1, prefix="a"), next_cursor="c1", has_more=True),
            create_page(added=create_records(1, prefix="b"), next_cursor="c2"),
        ]
    )
    orchestrator = create_orchestrator(
        db, client, config=SyncConfig(batch_delay_seconds=0, cursor_commit="page")
    )

    # act
    summary = orchestrator.sync("item_1", account.account_id, "plaid_acc_1")

    # assert
    assert summary.synced == 2
    assert db.get_transactions_cursor("item_1") == "c2"


def test_sync_account_resolves_plaid_ids(db: DB) -> None:
    # helper setup
    _, account = seed_linked_account(db, account_type="credit")
    purchase = make_record(amount=42.17, name="Store")
    client = MockPlaidClient([create_page(added=[purchase], next_cursor="c1")])
    orchestrator = create_orchestrator(db, client)

    # act
    summary = orchestrator.sync_account(account.account_id)

    # assert
    assert summary.synced == 1
    [stored] = db.list_transactions(account.account_id)
    assert stored.type == "expense"


def test_sync_account_rejects_unlinked_account(db: DB) -> None:
    # helper setup
    manual = db.create_account(user_id="user_1", name="Cash", type="cash")
    orchestrator = create_orchestrator(db, MockPlaidClient([]))

    # act / assert
    with pytest.raises(SyncError):
        orchestrator.sync_account(manual.account_id)


def test_sync_item_pulls_once_for_all_accounts(db: DB) -> None:
    # helper setup
    _, checking = seed_linked_account(db)
    _, card = seed_linked_account(
        db, account_id="acc_2", plaid_account_id="plaid_acc_2", account_type="credit"
    )
    records = [
        make_record(transaction_id="chk_1", account_id="plaid_acc_1"),
        make_record(transaction_id="card_1", account_id="plaid_acc_2"),
        make_record(transaction_id="card_2", account_id="plaid_acc_2"),
    ]
    client = MockPlaidClient([create_page(added=records, next_cursor="c1")])
    orchestrator = create_orchestrator(db, client)

    # act
    result = orchestrator.sync_item("item_1")

    # assert
    assert client.cursors_used == [None]
    assert result.accounts == 2
    assert result.synced == 3
    assert len(db.list_transactions(checking.account_id)) == 1
    assert len(db.list_transactions(card.account_id)) == 2
    assert db.get_transactions_cursor("item_1") == "c1"


def test_sync_user_accounts_continues_after_failed_item(db: DB) -> None:
    # helper setup
    seed_linked_account(db, item_id="item_bad", account_id="acc_bad", plaid_account_id="pa_bad")
    seed_linked_account(db, item_id="item_ok", account_id="acc_ok", plaid_account_id="pa_ok")
    client = MockPlaidClient(
        [
            PlaidClientError("expired", error_code="ITEM_LOGIN_REQUIRED"),
            create_page(
                added=[make_record(transaction_id="ok_1", account_id="pa_ok")],
                next_cursor="c1",
            ),
        ]
    )
    orchestrator = create_orchestrator(db, client)

    # act
    result = orchestrator.sync_user_accounts("user_1")

    # assert
    assert result.accounts == 2
    assert result.failed_accounts == ["acc_bad"]
    assert result.errors == 1
    assert result.synced == 1
