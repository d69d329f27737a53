from ledgersync.models.transaction import (
    LEGACY_FIELD_ALIASES,
    ProviderTransaction,
    RemovedTransaction,
    normalize_legacy_fields,
)

__all__ = [
    "LEGACY_FIELD_ALIASES",
    "ProviderTransaction",
    "RemovedTransaction",
    "normalize_legacy_fields",
]
