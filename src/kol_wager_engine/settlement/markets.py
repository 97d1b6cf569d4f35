"""Market lifecycle: opening the next round and closing due markets.

Markets move ``open → closed → settled``. ``MarketLifecycle.bootstrap`` opens
one market per tracked KOL for the next close of each window, and
``MarketLifecycle.close_due`` stops trading on markets whose close time has
passed so the resolver can settle them.

Market ids are derived from (window, close time, KOL), so re-running a
bootstrap for the same round never creates duplicates.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from kol_wager_engine.settlement.funding import select_funding_wallet
from kol_wager_engine.settlement.safety import EmergencyHalt
from kol_wager_engine.storage.database import DatabaseManager
from kol_wager_engine.storage.repos import (
    MARKET_OPEN,
    MarketDTO,
    MarketRepository,
    TrackedWalletRepository,
    to_utc,
)

logger = logging.getLogger(__name__)

WINDOW_KEYS = ("daily", "weekly", "monthly")
DEFAULT_BOOTSTRAP_LIMIT = 200
DEFAULT_CLOSE_LIMIT = 1000
CLOSE_SAMPLE_SIZE = 5


def resolve_window_keys(window_keys: Sequence[str] | None) -> list[str]:
    """Known window keys to act on; ``None``, empty or "all" means every window.

    Raises:
        ValueError: If a key is not a known window.
    """
    keys = [k.strip().lower() for k in window_keys or () if k.strip()]
    if not keys or "all" in keys:
        return list(WINDOW_KEYS)
    unknown = sorted(set(keys) - set(WINDOW_KEYS))
    if unknown:
        raise ValueError(f"Unknown window key(s): {', '.join(unknown)}")
    return list(dict.fromkeys(keys))


def next_window_close(window_key: str, now: datetime) -> datetime:
    """Next close strictly after ``now``.

    daily closes at the next UTC midnight, weekly on the next Monday 00:00 UTC
    and monthly on the first of the next month.
    """
    now = to_utc(now)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if window_key == "daily":
        return midnight + timedelta(days=1)
    if window_key == "weekly":
        return midnight + timedelta(days=(7 - now.weekday()) % 7 or 7)
    if window_key == "monthly":
        first = midnight.replace(day=1)
        if first.month == 12:
            return first.replace(year=first.year + 1, month=1)
        return first.replace(month=first.month + 1)
    raise ValueError(f"Unknown window key: {window_key}")


def market_id_for(window_key: str, closes_at: datetime, kol_wallet_address: str) -> str:
    seed = f"{window_key}::{to_utc(closes_at).isoformat()}::{kol_wallet_address}"
    return "mkt-" + hashlib.sha256(seed.encode("utf-8")).hexdigest()[:32]


def escrow_for_round(window_key: str, closes_at: datetime, addresses: Sequence[str]) -> str | None:
    """Every market of a round shares one escrow wallet, rotated per round."""
    if not addresses:
        return None
    return select_funding_wallet(f"{window_key}::{to_utc(closes_at).isoformat()}", addresses)


@dataclass
class BootstrappedRound:
    window_key: str
    closes_at: datetime
    escrow_wallet_address: str | None
    count: int = 0
    created: int = 0


@dataclass
class BootstrapReport:
    dry_run: bool
    rounds: list[BootstrappedRound] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(r.count for r in self.rounds)

    @property
    def created(self) -> int:
        return sum(r.created for r in self.rounds)


@dataclass
class CloseReport:
    dry_run: bool
    closes_before: datetime
    closed_count: int = 0
    by_window: dict[str, int] = field(default_factory=dict)
    sample: list[MarketDTO] = field(default_factory=list)


class MarketLifecycle:
    """Opens and closes wager markets."""

    def __init__(
        self,
        db: DatabaseManager,
        *,
        escrow_addresses: Sequence[str] = (),
        halt: EmergencyHalt | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._db = db
        self._escrow_addresses = list(escrow_addresses)
        self._halt = halt
        self._now = now

    async def bootstrap(
        self,
        *,
        window_keys: Sequence[str] | None = None,
        closes_at: datetime | None = None,
        limit: int = DEFAULT_BOOTSTRAP_LIMIT,
        dry_run: bool = False,
    ) -> BootstrapReport:
        """Open a market per tracked KOL for the next round of each window.

        ``closes_at`` overrides the computed close time for every window.

        Raises:
            ValueError: If a window key is unknown.
        """
        keys = resolve_window_keys(window_keys)
        now = self._now()
        report = BootstrapReport(dry_run=dry_run)
        async with self._db.get_async_session() as session:
            tracked = await TrackedWalletRepository(session).list_tracked_as_of(now, limit=max(1, limit))
            markets = MarketRepository(session)
            for window_key in keys:
                close = to_utc(closes_at) if closes_at is not None else next_window_close(window_key, now)
                escrow = escrow_for_round(window_key, close, self._escrow_addresses)
                round_ = BootstrappedRound(window_key, close, escrow, count=len(tracked))
                report.rounds.append(round_)
                if dry_run:
                    continue
                for wallet in tracked:
                    inserted = await markets.insert_if_absent(
                        MarketDTO(
                            id=market_id_for(window_key, close, wallet.wallet_address),
                            window_key=window_key,
                            window_end=close,
                            kol_wallet_address=wallet.wallet_address,
                            status=MARKET_OPEN,
                            escrow_wallet_address=escrow,
                        ),
                        now=now,
                    )
                    round_.created += int(inserted)
                logger.info(
                    "Opened %d of %d %s market(s) closing %s",
                    round_.created,
                    round_.count,
                    window_key,
                    close.isoformat(),
                )
        return report

    async def close_due(
        self,
        *,
        window_keys: Sequence[str] | None = None,
        closes_before: datetime | None = None,
        limit: int = DEFAULT_CLOSE_LIMIT,
        dry_run: bool = False,
    ) -> CloseReport:
        """Close open markets whose window ended at or before ``closes_before`` (default now).

        Raises:
            EmergencyHaltError: If the halt switch is on.
            ValueError: If a window key is unknown.
        """
        if self._halt is not None:
            await self._halt.ensure_inactive()

        keys = resolve_window_keys(window_keys)
        cutoff = to_utc(closes_before) if closes_before is not None else self._now()
        report = CloseReport(dry_run=dry_run, closes_before=cutoff)
        async with self._db.get_async_session() as session:
            repo = MarketRepository(session)
            due = await repo.list_due_open(window_keys=keys, closes_before=cutoff, limit=max(1, limit))
            if not due:
                logger.info("No markets to close before %s", cutoff.isoformat())
                return report
            closed = len(due) if dry_run else await repo.close_open([m.id for m in due])

        report.closed_count = closed
        for market in due:
            report.by_window[market.window_key] = report.by_window.get(market.window_key, 0) + 1
        report.sample = due[:CLOSE_SAMPLE_SIZE]
        logger.info("Closed %d market(s) (dry_run=%s): %s", report.closed_count, dry_run, report.by_window)
        return report
