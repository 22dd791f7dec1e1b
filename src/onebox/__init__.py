"""OneBox mailbox synchronization and ingestion engine."""

__version__ = "0.1.0"
