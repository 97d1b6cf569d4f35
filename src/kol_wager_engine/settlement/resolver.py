"""Market settlement against frozen leaderboard snapshots.

Markets ask "will KOL X finish the window in the top N?". All unsettled
markets sharing a ``(window_key, window_end)`` are resolved together against
the one frozen snapshot for that window, in a single transaction.

Retries are idempotent: the settlement nonce is derived from the window and
the snapshot hash, and every market update is conditional on the market
still being unsettled. A window whose nonce is already applied is resumed:
markets left over by an earlier partial run (a page limit, a budget, a market
created afterwards) are settled with the same nonce and snapshot.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from kol_wager_engine.analytics.eligibility import EligibilityConfigProvider
from kol_wager_engine.analytics.snapshot import (
    WINDOW_LENGTHS,
    RankedEntry,
    Snapshot,
    SnapshotService,
    SolPriceSource,
    UnknownWindowError,
)
from kol_wager_engine.budget import BatchBudget, BatchProgress
from kol_wager_engine.settlement.safety import EmergencyHalt
from kol_wager_engine.storage.database import DatabaseManager
from kol_wager_engine.storage.repos import MarketDTO, MarketRepository, MarketResolution, as_utc, to_utc

logger = logging.getLogger(__name__)

DEFAULT_TOP_N = 3
DEFAULT_MARKET_LIMIT = 500

OUTCOME_YES = "yes"
OUTCOME_NO = "no"

GROUP_SETTLED = "settled"
GROUP_SKIPPED = "skipped"
GROUP_DRY_RUN = "dry_run"

DUPLICATE_NONCE_REASON = "Settlement already processed (duplicate nonce)"
RESUMED_REASON = "Resumed a partially applied settlement"


def settlement_nonce_for(window_key: str, window_end: datetime, snapshot_hash: str) -> str:
    """Deterministic nonce for settling one window against one snapshot."""
    end = to_utc(window_end)
    seed = f"{window_key}::{end.isoformat()}::{snapshot_hash}"
    return hashlib.sha256(seed.encode()).hexdigest()[:16]


def resolve_outcome(entry: RankedEntry | None, *, top_n: int) -> str:
    """``yes`` iff the KOL is ranked, eligible and within the top N."""
    if entry is None or not entry.is_eligible:
        return OUTCOME_NO
    return OUTCOME_YES if entry.rank <= top_n else OUTCOME_NO


def compute_settlement_hash(outcomes: Iterable[tuple[str, str, int | None]]) -> str:
    """sha256 over ``[{"id", "o", "r"}]`` sorted by market id, first 32 hex chars."""
    payload = [{"id": market_id, "o": outcome, "r": rank} for market_id, outcome, rank in sorted(outcomes)]
    data = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(data.encode()).hexdigest()[:32]


def resolve_markets(
    markets: Sequence[MarketDTO],
    snapshot: Snapshot,
    *,
    top_n: int,
    settlement_nonce: str,
    settled_at: datetime,
) -> dict[str, MarketResolution]:
    """Resolve every market of one window against its snapshot. Pure."""
    decided: dict[str, tuple[str, RankedEntry | None]] = {}
    for market in markets:
        entry = snapshot.entry_for(market.kol_wallet_address)
        decided[market.id] = (resolve_outcome(entry, top_n=top_n), entry)

    settlement_hash = compute_settlement_hash(
        (market_id, outcome, entry.rank if entry else None) for market_id, (outcome, entry) in decided.items()
    )
    return {
        market_id: MarketResolution(
            resolved_outcome=outcome,
            resolved_rank=entry.rank if entry else None,
            resolved_profit_lamports=entry.profit_lamports if entry else None,
            resolved_profit_usd=entry.profit_usd if entry else None,
            snapshot_hash=snapshot.content_hash,
            settlement_hash=settlement_hash,
            settlement_nonce=settlement_nonce,
            settled_at=settled_at,
        )
        for market_id, (outcome, entry) in decided.items()
    }


def group_by_window(markets: Iterable[MarketDTO]) -> dict[tuple[str, datetime], list[MarketDTO]]:
    """Group markets by ``(window_key, window_end)``, earliest window first."""
    groups: dict[tuple[str, datetime], list[MarketDTO]] = {}
    for market in markets:
        groups.setdefault((market.window_key, to_utc(market.window_end)), []).append(market)
    return dict(sorted(groups.items(), key=lambda item: (item[0][1], item[0][0])))


@dataclass
class GroupSettlement:
    """Outcome of settling one window group."""

    window_key: str
    window_end: datetime
    status: str
    snapshot_hash: str
    settlement_nonce: str
    settlement_hash: str | None = None
    market_ids: list[str] = field(default_factory=list)
    settled_market_ids: list[str] = field(default_factory=list)
    lost_race_market_ids: list[str] = field(default_factory=list)
    winners: list[str] = field(default_factory=list)
    disqualified_count: int = 0
    resolutions: dict[str, MarketResolution] = field(default_factory=dict)
    reason: str | None = None

    @property
    def label(self) -> str:
        return f"{self.window_key}@{self.window_end.isoformat()}"


@dataclass
class SettlementReport:
    dry_run: bool
    top_n: int
    closes_before: datetime
    groups: list[GroupSettlement] = field(default_factory=list)
    progress: BatchProgress = field(default_factory=lambda: BatchProgress(total=0))

    @property
    def settled_count(self) -> int:
        return sum(len(g.settled_market_ids) for g in self.groups)


class SettlementService:
    """Settles unsettled markets whose window has closed.

    Example:
        ```python
        service = SettlementService(db, config_provider=provider, price_source=feed, halt=halt)
        report = await service.settle(window_keys=["daily"], budget=BatchBudget(50))
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        *,
        config_provider: EligibilityConfigProvider,
        price_source: SolPriceSource,
        halt: EmergencyHalt | None = None,
        top_n: int = DEFAULT_TOP_N,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._db = db
        self._config_provider = config_provider
        self._price_source = price_source
        self._halt = halt
        self._top_n = top_n
        self._now = now

    async def settle(
        self,
        *,
        window_keys: Sequence[str] | None = None,
        closes_before: datetime | None = None,
        limit: int = DEFAULT_MARKET_LIMIT,
        top_n: int | None = None,
        dry_run: bool = False,
        settlement_nonce: str | None = None,
        budget: BatchBudget | None = None,
    ) -> SettlementReport:
        """Settle every unsettled market of a closed window.

        Raises:
            EmergencyHaltError: If the halt switch is on.
            UnknownWindowError: If a window key is not recognised.
            SnapshotIntegrityError: If a stored snapshot fails its hash check.
        """
        if self._halt is not None:
            await self._halt.ensure_inactive()

        keys = tuple(window_keys) if window_keys else tuple(WINDOW_LENGTHS)
        unknown = [k for k in keys if k not in WINDOW_LENGTHS]
        if unknown:
            raise UnknownWindowError(f"Unknown window(s): {', '.join(unknown)}")

        top_n = top_n if top_n and top_n > 0 else self._top_n
        cutoff = as_utc(closes_before) or self._now()
        budget = budget or BatchBudget.unlimited()

        async with self._db.get_async_session() as session:
            markets = await MarketRepository(session).list_unsettled(
                window_keys=keys, closes_before=cutoff, limit=limit
            )
        groups = group_by_window(markets)

        report = SettlementReport(
            dry_run=dry_run,
            top_n=top_n,
            closes_before=cutoff,
            progress=BatchProgress(total=len(groups)),
        )
        for (window_key, window_end), group in groups.items():
            if budget.exhausted():
                report.progress.stop(f"{window_key}@{window_end.isoformat()}")
                break
            result = await self._settle_group(
                window_key,
                window_end,
                group,
                top_n=top_n,
                dry_run=dry_run,
                settlement_nonce=settlement_nonce,
            )
            report.groups.append(result)
            report.progress.processed += 1
            if result.status == GROUP_SKIPPED:
                report.progress.skipped.append(result.label)

        logger.info(
            "Settlement %s: %d market(s) settled, %s",
            "dry run" if dry_run else "run",
            report.settled_count,
            report.progress.summary(),
        )
        return report

    async def _settle_group(
        self,
        window_key: str,
        window_end: datetime,
        markets: list[MarketDTO],
        *,
        top_n: int,
        dry_run: bool,
        settlement_nonce: str | None,
    ) -> GroupSettlement:
        async with self._db.get_async_session() as session:
            snapshots = SnapshotService(
                session,
                config_provider=self._config_provider,
                price_source=self._price_source,
            )
            snapshot = await snapshots.get_or_create(window_key, window_end, persist=not dry_run)
            nonce = settlement_nonce or settlement_nonce_for(window_key, window_end, snapshot.content_hash)
            resolutions = resolve_markets(
                markets,
                snapshot,
                top_n=top_n,
                settlement_nonce=nonce,
                settled_at=self._now(),
            )
            result = GroupSettlement(
                window_key=window_key,
                window_end=window_end,
                status=GROUP_DRY_RUN if dry_run else GROUP_SETTLED,
                snapshot_hash=snapshot.content_hash,
                settlement_nonce=nonce,
                settlement_hash=next(iter(resolutions.values())).settlement_hash if resolutions else None,
                market_ids=[m.id for m in markets],
                winners=[e.wallet for e in snapshot.entries if e.is_eligible][:top_n],
                disqualified_count=sum(1 for e in snapshot.entries if not e.is_eligible),
                resolutions=resolutions,
            )
            if dry_run:
                return result

            repo = MarketRepository(session)
            resumed = await repo.nonce_applied(nonce, window_key=window_key, window_end=window_end)
            if resumed:
                logger.info("Settlement %s already applied to %s, settling the remainder", nonce, result.label)

            for market in markets:
                if await repo.apply_settlement(market.id, resolutions[market.id]):
                    result.settled_market_ids.append(market.id)
                else:
                    logger.debug("Market %s settled concurrently, skipping", market.id)
                    result.lost_race_market_ids.append(market.id)

            if resumed:
                if result.settled_market_ids:
                    result.reason = RESUMED_REASON
                else:
                    result.status = GROUP_SKIPPED
                    result.reason = DUPLICATE_NONCE_REASON
                    return result

        logger.info(
            "Settled %d of %d market(s) for %s against snapshot %s",
            len(result.settled_market_ids),
            len(markets),
            result.label,
            snapshot.content_hash,
        )
        return result
