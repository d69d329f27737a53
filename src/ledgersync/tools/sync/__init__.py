from ledgersync.tools.sync.classification import (
    Classification,
    ClassificationError,
    classify,
)
from ledgersync.tools.sync.cursor_store import CursorStore
from ledgersync.tools.sync.progress import ProgressSnapshot, ProgressTracker
from ledgersync.tools.sync.sync_tool import (
    MultiAccountSyncSummary,
    SyncError,
    SyncOrchestrator,
    SyncSummary,
)
from ledgersync.tools.sync.writer import (
    CategorySuggestion,
    DedupGuard,
    MaterializeResult,
    TransactionWriter,
)

__all__ = [
    "CategorySuggestion",
    "Classification",
    "ClassificationError",
    "CursorStore",
    "DedupGuard",
    "MaterializeResult",
    "MultiAccountSyncSummary",
    "ProgressSnapshot",
    "ProgressTracker",
    "SyncError",
    "SyncOrchestrator",
    "SyncSummary",
    "TransactionWriter",
    "classify",
]
