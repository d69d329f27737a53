"""Provider transaction feed synchronization and classification."""

__version__ = "0.1.0"
