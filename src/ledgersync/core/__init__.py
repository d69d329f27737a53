from ledgersync.core.config import (
    ConfigError,
    CursorCommitMode,
    SyncConfig,
    load_sync_config_from_env,
)

__all__ = [
    "ConfigError",
    "CursorCommitMode",
    "SyncConfig",
    "load_sync_config_from_env",
]
