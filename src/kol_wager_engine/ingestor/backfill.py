"""Backfill of enhanced transactions from the per-address history API.

Webhooks only deliver events from the moment a wallet is registered. The
backfill walks each tracked wallet's history newest-first, one page at a
time, and feeds the matching events through the same ingestion path as the
webhook so both sources store and link events identically.

A run is bounded three ways: a wallet page (``after`` cursor plus
``wallet_limit``), a page cap per wallet, and the batch budget. The report
says where to resume.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx

from kol_wager_engine.budget import BatchBudget
from kol_wager_engine.ingestor.webhook import EventIngestor
from kol_wager_engine.storage.database import DatabaseManager
from kol_wager_engine.storage.repos import TrackedWalletRepository

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api-mainnet.helius-rpc.com"
DEFAULT_TIMEOUT_SECONDS = 20.0

MAX_PAGE_SIZE = 100
MAX_PAGES_PER_WALLET = 50
DEFAULT_PAGES_PER_WALLET = 10
DEFAULT_WALLET_LIMIT = 10
DEFAULT_DAYS = 1.0
DEFAULT_TRANSACTION_TYPES = ("SWAP", "SWAP_EXACT_OUT", "SWAP_WITH_PRICE_IMPACT")


class HistoryFetchError(Exception):
    """Raised when a history page cannot be fetched or decoded."""


class HistoryClient:
    """GET ``/v0/addresses/{wallet}/transactions`` with cursor paging."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        if not api_key:
            raise ValueError("api_key is required")
        self._http = http
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds

    async def fetch_page(self, wallet: str, *, limit: int, before: str | None = None) -> list[dict[str, Any]]:
        """One page of finalized transactions, newest first.

        Raises:
            HistoryFetchError: On transport errors, non-2xx responses or
                undecodable bodies.
        """
        params = {
            "api-key": self._api_key,
            "limit": str(limit),
            "commitment": "finalized",
            "order": "desc",
        }
        if before:
            params["before"] = before
        url = f"{self._base_url}/v0/addresses/{quote(wallet, safe='')}/transactions"
        try:
            response = await self._http.get(url, params=params, timeout=self._timeout)
        except httpx.HTTPError as e:
            raise HistoryFetchError(f"Transaction history request for {wallet} failed: {e}") from e
        if response.is_error:
            raise HistoryFetchError(
                f"Transaction history failed ({response.status_code}): {response.text[:500]}"
            )
        try:
            payload = response.json()
        except ValueError as e:
            raise HistoryFetchError(f"Transaction history for {wallet} is not JSON") from e
        if not isinstance(payload, list):
            return []
        return [tx for tx in payload if isinstance(tx, dict)]


@dataclass
class BackfillReport:
    days: float
    cutoff: datetime
    wallets: list[str] = field(default_factory=list)
    processed_wallets: int = 0
    pages: int = 0
    stored: int = 0
    links: int = 0
    skipped: int = 0
    next_after: str | None = None
    exhausted: bool = False
    stopped_early: bool = False

    def summary(self) -> str:
        return (
            f"wallets={self.processed_wallets}/{len(self.wallets)} pages={self.pages} "
            f"stored={self.stored} links={self.links} skipped={self.skipped}"
        )


def _timestamp(tx: dict[str, Any]) -> float | None:
    value = tx.get("timestamp")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if math.isfinite(value) else None


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


class HistoryBackfill:
    """Backfills recent history for tracked wallets."""

    def __init__(
        self,
        db: DatabaseManager,
        client: HistoryClient,
        *,
        page_size: int = MAX_PAGE_SIZE,
        max_pages_per_wallet: int = DEFAULT_PAGES_PER_WALLET,
        transaction_types: Sequence[str] | None = DEFAULT_TRANSACTION_TYPES,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._db = db
        self._client = client
        self._page_size = _clamp(page_size, 1, MAX_PAGE_SIZE)
        self._max_pages = _clamp(max_pages_per_wallet, 1, MAX_PAGES_PER_WALLET)
        # None or empty accepts every type.
        self._types = frozenset(t.strip() for t in transaction_types or () if t.strip())
        self._now = now

    async def _select_wallets(
        self, wallets: Sequence[str] | None, after: str | None, wallet_limit: int
    ) -> list[str]:
        async with self._db.get_async_session() as session:
            repo = TrackedWalletRepository(session)
            if wallets:
                tracked = await repo.filter_tracked(w.strip() for w in wallets if w.strip())
                return sorted(tracked)
            return await repo.list_tracked_page(after=after, limit=wallet_limit)

    def _wanted(self, tx: dict[str, Any], cutoff_epoch: float) -> bool:
        if not isinstance(tx.get("signature"), str) or not tx["signature"]:
            return False
        ts = _timestamp(tx)
        if ts is not None and ts < cutoff_epoch:
            return False
        tx_type = tx.get("type")
        return not (self._types and isinstance(tx_type, str) and tx_type and tx_type not in self._types)

    async def run(
        self,
        *,
        days: float = DEFAULT_DAYS,
        wallets: Sequence[str] | None = None,
        after: str | None = None,
        wallet_limit: int = DEFAULT_WALLET_LIMIT,
        budget: BatchBudget | None = None,
    ) -> BackfillReport:
        """Backfill ``days`` of history for one page of wallets.

        Explicit ``wallets`` are restricted to tracked ones and processed in
        a single run; otherwise the next ``wallet_limit`` tracked wallets
        after ``after`` are processed.

        Raises:
            HistoryFetchError: If a history page cannot be fetched. Pages
                stored before the failure stay stored.
        """
        if not math.isfinite(days) or days <= 0:
            days = DEFAULT_DAYS
        wallet_limit = max(1, wallet_limit)
        budget = budget or BatchBudget.unlimited()
        cutoff = self._now() - timedelta(days=days)
        cutoff_epoch = cutoff.timestamp()

        selected = await self._select_wallets(wallets, after, wallet_limit)
        report = BackfillReport(days=days, cutoff=cutoff, wallets=selected)
        if not selected:
            report.exhausted = True
            logger.info("Backfill: no tracked wallets to process")
            return report

        for wallet in selected:
            if budget.exhausted():
                report.stopped_early = True
                break
            await self._backfill_wallet(wallet, cutoff_epoch, report, budget)
            report.processed_wallets += 1

        if wallets:
            report.exhausted = True
        else:
            if report.processed_wallets:
                report.next_after = selected[report.processed_wallets - 1]
            else:
                report.next_after = after
            report.exhausted = report.processed_wallets >= len(selected) and len(selected) < wallet_limit

        logger.info("Backfill finished: %s (next_after=%s)", report.summary(), report.next_after)
        return report

    async def _backfill_wallet(
        self, wallet: str, cutoff_epoch: float, report: BackfillReport, budget: BatchBudget
    ) -> None:
        before: str | None = None
        for _ in range(self._max_pages):
            if budget.exhausted():
                report.stopped_early = True
                return
            page = await self._client.fetch_page(wallet, limit=self._page_size, before=before)
            if not page:
                return
            report.pages += 1

            timestamps = [ts for ts in (_timestamp(tx) for tx in page) if ts is not None]
            wanted = [tx for tx in page if self._wanted(tx, cutoff_epoch)]
            if wanted:
                async with self._db.get_async_session() as session:
                    ingested = await EventIngestor(session).ingest(wanted, also_link=[wallet])
                report.stored += ingested.stored
                report.links += ingested.links
                report.skipped += ingested.skipped

            last = page[-1].get("signature")
            before = last if isinstance(last, str) and last else None
            if timestamps and min(timestamps) < cutoff_epoch:
                return
            if before is None:
                return
        logger.debug("Backfill of %s stopped at the page limit", wallet)
