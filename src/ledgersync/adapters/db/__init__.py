from ledgersync.adapters.db.facade import DB
from ledgersync.adapters.db.models import (
    Account,
    Base,
    ImportJob,
    LedgerTransaction,
    PlaidConnection,
    TransactionSync,
)

__all__ = [
    "DB",
    "Account",
    "Base",
    "ImportJob",
    "LedgerTransaction",
    "PlaidConnection",
    "TransactionSync",
]
