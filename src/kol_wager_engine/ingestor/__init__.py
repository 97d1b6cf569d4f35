"""Data ingestion layer - Enhanced transaction webhook events and history backfill."""

from kol_wager_engine.ingestor.backfill import BackfillReport, HistoryBackfill, HistoryClient, HistoryFetchError
from kol_wager_engine.ingestor.models import MalformedEventError, TransactionEvent
from kol_wager_engine.ingestor.webhook import EventIngestor, IngestReport

__all__ = [
    "BackfillReport",
    "EventIngestor",
    "HistoryBackfill",
    "HistoryClient",
    "HistoryFetchError",
    "IngestReport",
    "MalformedEventError",
    "TransactionEvent",
]
