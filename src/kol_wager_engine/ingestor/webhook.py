"""Webhook ingestion of enhanced transaction events.

Each delivered payload is parsed, stored once by signature and linked to
every tracked wallet it mentions. Re-delivery of the same payload is a no-op
apart from refreshing the stored copy.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from kol_wager_engine.ingestor.models import MalformedEventError, TransactionEvent
from kol_wager_engine.storage.repos import TrackedWalletRepository, TxEventDTO, TxEventRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

DEFAULT_LOOKUP_CHUNK_SIZE = 500


@dataclass
class IngestReport:
    """Outcome of one ingestion batch."""

    received: int = 0
    stored: int = 0
    skipped: int = 0
    links: int = 0
    errors: list[str] = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"received={self.received} stored={self.stored} "
            f"skipped={self.skipped} links={self.links}"
        )


class EventIngestor:
    """Stores webhook events and links them to tracked wallets."""

    def __init__(self, session: AsyncSession, *, chunk_size: int = DEFAULT_LOOKUP_CHUNK_SIZE) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self._events = TxEventRepository(session)
        self._wallets = TrackedWalletRepository(session)
        self._chunk_size = chunk_size

    async def _tracked_among(self, addresses: set[str]) -> set[str]:
        ordered = sorted(addresses)
        tracked: set[str] = set()
        for start in range(0, len(ordered), self._chunk_size):
            tracked |= await self._wallets.filter_tracked(ordered[start : start + self._chunk_size])
        return tracked

    async def ingest(self, payloads: Iterable[object], *, also_link: Iterable[str] = ()) -> IngestReport:
        """Parse, store and link a batch of payloads.

        Malformed payloads are counted as skipped; the batch continues.
        ``also_link`` wallets are linked to every stored event, whether or
        not the payload mentions them.
        """
        extra = set(also_link)
        report = IngestReport()
        for payload in payloads:
            report.received += 1
            try:
                event = TransactionEvent.from_payload(payload)
            except MalformedEventError as e:
                report.skipped += 1
                report.errors.append(str(e))
                logger.warning("Skipping malformed event #%d: %s", report.received, e)
                continue

            await self._events.upsert(
                TxEventDTO(
                    signature=event.signature,
                    raw=event.raw,
                    block_time=event.timestamp,
                    slot=event.slot,
                    type=event.type,
                    source=event.source,
                )
            )
            report.stored += 1

            tracked = await self._tracked_among(event.mentioned_wallets()) | extra
            if tracked:
                report.links += await self._events.link_wallets(event.signature, tracked)
            logger.debug("Stored %s linked to %d tracked wallet(s)", event.signature, len(tracked))

        logger.info("Ingestion finished: %s", report.summary())
        return report
