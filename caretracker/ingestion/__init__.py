"""Transaction ingestion package."""

from caretracker.ingestion.ingestor import PROVIDER_FIELDS, TransactionIngestor

__all__ = ["PROVIDER_FIELDS", "TransactionIngestor"]
