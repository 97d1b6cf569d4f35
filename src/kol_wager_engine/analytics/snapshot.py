"""Leaderboard snapshots: ranking tracked wallets over a window.

``build_snapshot`` is pure. Given the same wallets, events, config, price and
creation time it always yields the same entries and ``content_hash``, which
is what makes a persisted snapshot auditable later.

``SnapshotService`` adds persistence: the first snapshot stored for a
``(window_key, window_end)`` pair is frozen and reused on every retry.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Protocol

from kol_wager_engine.analytics.classifier import is_trade_like
from kol_wager_engine.analytics.eligibility import (
    EligibilityConfig,
    EligibilityConfigProvider,
    WalletWindowStats,
    evaluate_eligibility,
)
from kol_wager_engine.analytics.ledger import TradeLeg, compute_realized_pnl, extract_trade_leg
from kol_wager_engine.analytics.transfers import counterparties, is_self_transfer
from kol_wager_engine.config import LAMPORTS_PER_SOL
from kol_wager_engine.ingestor.models import MalformedEventError, TransactionEvent
from kol_wager_engine.storage.repos import (
    SnapshotRecordDTO,
    SnapshotRepository,
    TrackedWalletDTO,
    TrackedWalletRepository,
    TxEventRepository,
    as_utc,
    to_utc,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

WINDOW_LENGTHS: dict[str, timedelta] = {
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
    "monthly": timedelta(days=30),
}

MAX_TRACKED_WALLETS = 500
MAX_WINDOW_EVENTS = 50_000

USD_QUANT = Decimal("0.000001")

WalletEvent = tuple[str, TransactionEvent]


class SnapshotError(Exception):
    """Base exception for snapshot errors."""


class SnapshotIntegrityError(SnapshotError):
    """Raised when a snapshot's entries do not match its content hash."""


class UnknownWindowError(SnapshotError, ValueError):
    """Raised for a window key outside WINDOW_LENGTHS."""


class SolPriceSource(Protocol):
    async def get_sol_price_usd(self) -> Decimal: ...


@dataclass(frozen=True)
class RankedEntry:
    """One wallet's standing in one window."""

    wallet: str
    rank: int
    profit_lamports: int
    profit_sol: Decimal
    profit_usd: Decimal
    wins: int
    losses: int
    tx_count: int
    volume_lamports: int
    unique_counterparties: int
    is_eligible: bool
    disqualification_reasons: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "wallet": self.wallet,
            "rank": self.rank,
            "profit_lamports": self.profit_lamports,
            "profit_sol": str(self.profit_sol),
            "profit_usd": str(self.profit_usd),
            "wins": self.wins,
            "losses": self.losses,
            "tx_count": self.tx_count,
            "volume_lamports": self.volume_lamports,
            "unique_counterparties": self.unique_counterparties,
            "is_eligible": self.is_eligible,
            "disqualification_reasons": list(self.disqualification_reasons),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RankedEntry:
        return cls(
            wallet=data["wallet"],
            rank=int(data["rank"]),
            profit_lamports=int(data["profit_lamports"]),
            profit_sol=Decimal(str(data["profit_sol"])),
            profit_usd=Decimal(str(data["profit_usd"])),
            wins=int(data.get("wins", 0)),
            losses=int(data.get("losses", 0)),
            tx_count=int(data.get("tx_count", 0)),
            volume_lamports=int(data.get("volume_lamports", 0)),
            unique_counterparties=int(data.get("unique_counterparties", 0)),
            is_eligible=bool(data["is_eligible"]),
            disqualification_reasons=tuple(data.get("disqualification_reasons") or ()),
        )


@dataclass(frozen=True)
class Snapshot:
    """Frozen ranking for one (window_key, window_end)."""

    window_key: str
    window_end: datetime
    created_at: datetime
    content_hash: str
    sol_price_usd: Decimal
    entries: tuple[RankedEntry, ...] = field(default_factory=tuple)

    def entry_for(self, wallet: str) -> RankedEntry | None:
        return next((e for e in self.entries if e.wallet == wallet), None)

    def to_record(self) -> SnapshotRecordDTO:
        return SnapshotRecordDTO(
            window_key=self.window_key,
            window_end=self.window_end,
            content_hash=self.content_hash,
            sol_price_usd=self.sol_price_usd,
            entries=[e.to_dict() for e in self.entries],
            created_at=self.created_at,
        )

    @classmethod
    def from_record(cls, record: SnapshotRecordDTO) -> Snapshot:
        return cls(
            window_key=record.window_key,
            window_end=record.window_end,
            created_at=record.created_at,
            content_hash=record.content_hash,
            sol_price_usd=record.sol_price_usd,
            entries=tuple(RankedEntry.from_dict(e) for e in record.entries),
        )


def compute_content_hash(entries: Iterable[RankedEntry]) -> str:
    """sha256 over (wallet, rank, profit) tuples, canonical JSON, first 32 hex chars."""
    payload = [{"w": e.wallet, "r": e.rank, "p": e.profit_lamports} for e in entries]
    data = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(data.encode()).hexdigest()[:32]


def verify_snapshot_hash(snapshot: Snapshot) -> None:
    """Raise SnapshotIntegrityError if the entries no longer match the hash."""
    computed = compute_content_hash(snapshot.entries)
    if computed != snapshot.content_hash:
        raise SnapshotIntegrityError(
            f"Snapshot {snapshot.window_key}@{snapshot.window_end.isoformat()} hash mismatch: "
            f"stored={snapshot.content_hash} computed={computed}"
        )


def window_bounds(window_key: str, window_end: datetime) -> tuple[datetime, datetime]:
    try:
        length = WINDOW_LENGTHS[window_key]
    except KeyError:
        raise UnknownWindowError(f"Unknown window: {window_key!r}") from None
    end = to_utc(window_end)
    return end - length, end


def _rank_key(entry: RankedEntry) -> tuple[bool, int, int, str]:
    return (not entry.is_eligible, -entry.profit_lamports, -entry.wins, entry.wallet)


def build_snapshot(
    window_key: str,
    window_end: datetime,
    wallets: Sequence[TrackedWalletDTO],
    events: Iterable[WalletEvent],
    *,
    config: EligibilityConfig,
    sol_price_usd: Decimal,
    created_at: datetime,
    apply_eligibility: bool = True,
) -> Snapshot:
    """Rank ``wallets`` by realized profit over the window ending at ``window_end``.

    Args:
        window_key: One of WINDOW_LENGTHS.
        window_end: Exclusive end of the window.
        wallets: Tracked wallets to rank; wallets without events rank with zero profit.
        events: (wallet, event) pairs; pairs outside the window or for
            untracked wallets are ignored, duplicates by signature are dropped.
        config: Eligibility thresholds.
        sol_price_usd: Reference price used for stablecoin legs and USD profit.
        created_at: Snapshot creation time (part of the record, not the hash).
        apply_eligibility: When False every wallet is eligible.

    Returns:
        The ranked snapshot with its content hash.
    """
    start, end = window_bounds(window_key, window_end)
    tracked = {w.wallet_address: w for w in wallets}

    by_wallet: dict[str, dict[str, TransactionEvent]] = {address: {} for address in tracked}
    for wallet, event in events:
        bucket = by_wallet.get(wallet)
        if bucket is None or event.signature in bucket:
            continue
        if event.timestamp is None or not (start <= event.timestamp < end):
            continue
        bucket[event.signature] = event

    entries: list[RankedEntry] = []
    for address, wallet in tracked.items():
        wallet_events = list(by_wallet[address].values())

        legs: list[TradeLeg] = []
        peers: set[str] = set()
        self_transfers = 0
        for event in wallet_events:
            peers |= counterparties(event, address)
            if is_self_transfer(event, address):
                self_transfers += 1
            if not is_trade_like(event, address):
                continue
            leg = extract_trade_leg(event, address, sol_price_usd=sol_price_usd)
            if leg is not None:
                legs.append(leg)

        pnl = compute_realized_pnl(legs)

        reasons: list[str] = []
        if apply_eligibility:
            stats = WalletWindowStats(
                wallet=address,
                tx_count=len(wallet_events),
                self_transfer_count=self_transfers,
                unique_counterparties=len(peers),
                volume_lamports=pnl.volume_lamports,
                wallet_created_at=wallet.wallet_created_at,
                tracked_from=wallet.tracked_from,
            )
            reasons = evaluate_eligibility(stats, config, window_end=end)

        profit_sol = Decimal(pnl.realized_lamports) / LAMPORTS_PER_SOL
        entries.append(
            RankedEntry(
                wallet=address,
                rank=0,
                profit_lamports=pnl.realized_lamports,
                profit_sol=profit_sol,
                profit_usd=(profit_sol * sol_price_usd).quantize(USD_QUANT),
                wins=pnl.wins,
                losses=pnl.losses,
                tx_count=pnl.tx_count,
                volume_lamports=pnl.volume_lamports,
                unique_counterparties=len(peers),
                is_eligible=not reasons,
                disqualification_reasons=tuple(reasons),
            )
        )

    entries.sort(key=_rank_key)
    ranked = tuple(
        replace(e, rank=i) for i, e in enumerate(entries, start=1)
    )
    return Snapshot(
        window_key=window_key,
        window_end=end,
        created_at=to_utc(created_at),
        content_hash=compute_content_hash(ranked),
        sol_price_usd=sol_price_usd,
        entries=ranked,
    )


@dataclass(frozen=True)
class SnapshotAudit:
    """Stored snapshot compared with a recomputation from current inputs."""

    window_key: str
    window_end: datetime
    stored_hash: str
    recomputed_hash: str
    changed_wallets: tuple[str, ...] = ()

    @property
    def matches(self) -> bool:
        return self.stored_hash == self.recomputed_hash


class SnapshotService:
    """Loads inputs, freezes snapshots and audits them against the store."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        config_provider: EligibilityConfigProvider,
        price_source: SolPriceSource,
    ) -> None:
        self._wallets = TrackedWalletRepository(session)
        self._events = TxEventRepository(session)
        self._snapshots = SnapshotRepository(session)
        self._config_provider = config_provider
        self._price_source = price_source

    async def load_inputs(
        self, window_key: str, window_end: datetime
    ) -> tuple[list[TrackedWalletDTO], list[WalletEvent]]:
        start, end = window_bounds(window_key, window_end)
        wallets = await self._wallets.list_tracked_as_of(end, limit=MAX_TRACKED_WALLETS)
        if not wallets:
            return [], []

        linked = await self._events.list_linked_in_window(
            start=start,
            end=end,
            wallets=[w.wallet_address for w in wallets],
            limit=MAX_WINDOW_EVENTS,
        )
        if len(linked) >= MAX_WINDOW_EVENTS:
            logger.warning("Window %s@%s hit the %d event limit", window_key, end.isoformat(), MAX_WINDOW_EVENTS)

        parsed: dict[str, TransactionEvent] = {}
        pairs: list[WalletEvent] = []
        for row in linked:
            event = parsed.get(row.event.signature)
            if event is None:
                try:
                    event = TransactionEvent.from_payload(row.event.raw)
                except MalformedEventError as e:
                    logger.warning("Skipping stored event %s: %s", row.event.signature, e)
                    continue
                if event.timestamp is None and row.event.block_time is not None:
                    event = _with_timestamp(event, row.event.block_time)
                parsed[row.event.signature] = event
            pairs.append((row.wallet_address, event))
        return wallets, pairs

    async def get(self, window_key: str, window_end: datetime) -> Snapshot | None:
        """Return the stored snapshot for the window, verified, if any."""
        record = await self._snapshots.get(window_key, window_end)
        if record is None:
            return None
        snapshot = Snapshot.from_record(record)
        verify_snapshot_hash(snapshot)
        return snapshot

    async def compute(
        self,
        window_key: str,
        window_end: datetime,
        *,
        created_at: datetime | None = None,
        sol_price_usd: Decimal | None = None,
        apply_eligibility: bool = True,
    ) -> Snapshot:
        wallets, events = await self.load_inputs(window_key, window_end)
        config = await self._config_provider.get()
        price = sol_price_usd if sol_price_usd is not None else await self._price_source.get_sol_price_usd()
        return build_snapshot(
            window_key,
            window_end,
            wallets,
            events,
            config=config,
            sol_price_usd=price,
            created_at=created_at or datetime.now(UTC),
            apply_eligibility=apply_eligibility,
        )

    async def get_or_create(
        self,
        window_key: str,
        window_end: datetime,
        *,
        persist: bool = True,
        apply_eligibility: bool = True,
    ) -> Snapshot:
        """Return the frozen snapshot for the window, creating it if absent.

        When two callers race, both insert with "do nothing on conflict" and
        re-read, so both return the winner's row.
        """
        existing = await self.get(window_key, window_end)
        if existing is not None:
            return existing

        snapshot = await self.compute(window_key, window_end, apply_eligibility=apply_eligibility)
        if not persist:
            return snapshot

        inserted = await self._snapshots.insert_if_absent(snapshot.to_record())
        if inserted:
            logger.info(
                "Froze %s snapshot at %s: %d wallets, hash %s",
                window_key,
                snapshot.window_end.isoformat(),
                len(snapshot.entries),
                snapshot.content_hash,
            )
        stored = await self.get(window_key, window_end)
        if stored is None:
            raise SnapshotError(f"Snapshot {window_key}@{snapshot.window_end.isoformat()} vanished after insert")
        return stored

    async def audit(self, window_key: str, window_end: datetime) -> SnapshotAudit | None:
        """Recompute the stored snapshot from current inputs.

        Raises:
            SnapshotIntegrityError: If the stored record fails its own hash check.
        """
        stored = await self.get(window_key, window_end)
        if stored is None:
            return None
        recomputed = await self.compute(
            window_key,
            window_end,
            created_at=stored.created_at,
            sol_price_usd=stored.sol_price_usd,
        )
        before = {e.wallet: (e.rank, e.profit_lamports) for e in stored.entries}
        after = {e.wallet: (e.rank, e.profit_lamports) for e in recomputed.entries}
        changed = tuple(sorted(w for w in before.keys() | after.keys() if before.get(w) != after.get(w)))
        audit = SnapshotAudit(
            window_key=window_key,
            window_end=stored.window_end,
            stored_hash=stored.content_hash,
            recomputed_hash=recomputed.content_hash,
            changed_wallets=changed,
        )
        if not audit.matches:
            logger.warning(
                "Snapshot %s@%s differs from current data for %d wallet(s)",
                window_key,
                stored.window_end.isoformat(),
                len(changed),
            )
        return audit


def _with_timestamp(event: TransactionEvent, block_time: datetime) -> TransactionEvent:
    return replace(event, timestamp=as_utc(block_time))
