"""Tests for market settlement against frozen snapshots."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from kol_wager_engine.analytics.eligibility import EligibilityConfigProvider
from kol_wager_engine.analytics.snapshot import RankedEntry, SnapshotService, UnknownWindowError
from kol_wager_engine.budget import BatchBudget
from kol_wager_engine.ingestor.webhook import EventIngestor
from kol_wager_engine.settlement.resolver import (
    DUPLICATE_NONCE_REASON,
    GROUP_DRY_RUN,
    GROUP_SETTLED,
    GROUP_SKIPPED,
    OUTCOME_NO,
    OUTCOME_YES,
    RESUMED_REASON,
    SettlementService,
    compute_settlement_hash,
    group_by_window,
    resolve_outcome,
    settlement_nonce_for,
)
from kol_wager_engine.settlement.safety import EmergencyHalt, EmergencyHaltError
from kol_wager_engine.storage.database import DatabaseManager
from kol_wager_engine.storage.repos import MarketDTO, MarketRepository, TrackedWalletDTO, TrackedWalletRepository

WINDOW_END = datetime(2026, 10, 19, tzinfo=UTC)
NOW = WINDOW_END + timedelta(minutes=5)

WALLET_A = "WalletA111111111111111111111111111111111111"
WALLET_B = "WalletB111111111111111111111111111111111111"
WALLET_C = "WalletC111111111111111111111111111111111111"
UNTRACKED = "Untracked1111111111111111111111111111111111"


def create_entry(rank: int = 1, *, eligible: bool = True) -> RankedEntry:
    return RankedEntry(
        wallet=WALLET_A,
        rank=rank,
        profit_lamports=1,
        profit_sol=Decimal("0.000000001"),
        profit_usd=Decimal("0"),
        wins=1,
        losses=0,
        tx_count=2,
        volume_lamports=2,
        unique_counterparties=1,
        is_eligible=eligible,
    )


def create_market(market_id: str, kol: str, *, window_key: str = "daily", window_end: datetime = WINDOW_END) -> MarketDTO:
    return MarketDTO(id=market_id, window_key=window_key, window_end=window_end, kol_wallet_address=kol)


@pytest.fixture
async def seeded(db: DatabaseManager, round_trip) -> DatabaseManager:
    """Daily window where B ranks first, A second and C third."""
    async with db.get_async_session() as session:
        wallets = TrackedWalletRepository(session)
        for address in (WALLET_A, WALLET_B, WALLET_C):
            await wallets.upsert(TrackedWalletDTO(address, tracked_from=WINDOW_END - timedelta(days=90)))
        await EventIngestor(session).ingest(
            round_trip(WALLET_A, "2") + round_trip(WALLET_B, "4") + round_trip(WALLET_C, "1")
        )
        markets = MarketRepository(session)
        for market in (
            create_market("mkt-a", WALLET_A),
            create_market("mkt-c", WALLET_C),
            create_market("mkt-x", UNTRACKED),
        ):
            await markets.insert(market)
    return db


@pytest.fixture
def service(seeded: DatabaseManager, price_source) -> SettlementService:
    return SettlementService(
        seeded,
        config_provider=EligibilityConfigProvider(AsyncMock(return_value=None)),
        price_source=price_source,
        halt=EmergencyHalt(seeded),
        top_n=2,
        now=lambda: NOW,
    )


async def load_market(db: DatabaseManager, market_id: str) -> MarketDTO:
    async with db.get_async_session() as session:
        market = await MarketRepository(session).get(market_id)
    assert market is not None
    return market


class TestResolveOutcome:
    def test_top_n_is_inclusive(self) -> None:
        assert resolve_outcome(create_entry(3), top_n=3) == OUTCOME_YES
        assert resolve_outcome(create_entry(4), top_n=3) == OUTCOME_NO

    def test_missing_or_ineligible_is_no(self) -> None:
        assert resolve_outcome(None, top_n=3) == OUTCOME_NO
        assert resolve_outcome(create_entry(1, eligible=False), top_n=3) == OUTCOME_NO


class TestSettlementHashing:
    def test_nonce_is_deterministic(self) -> None:
        nonce = settlement_nonce_for("daily", WINDOW_END, "h" * 32)

        assert nonce == settlement_nonce_for("daily", WINDOW_END.astimezone(), "h" * 32)
        assert len(nonce) == 16
        assert nonce != settlement_nonce_for("weekly", WINDOW_END, "h" * 32)
        assert nonce != settlement_nonce_for("daily", WINDOW_END, "g" * 32)

    def test_settlement_hash_ignores_order(self) -> None:
        outcomes = [("m-2", "no", None), ("m-1", "yes", 1)]
        assert compute_settlement_hash(outcomes) == compute_settlement_hash(reversed(outcomes))
        assert len(compute_settlement_hash(outcomes)) == 32

    def test_group_by_window_earliest_first(self) -> None:
        later = WINDOW_END + timedelta(days=1)
        groups = group_by_window(
            [
                create_market("m-1", WALLET_A, window_end=later),
                create_market("m-2", WALLET_A),
                create_market("m-3", WALLET_B, window_key="weekly"),
                create_market("m-4", WALLET_B),
            ]
        )

        assert list(groups) == [("daily", WINDOW_END), ("weekly", WINDOW_END), ("daily", later)]
        assert [m.id for m in groups[("daily", WINDOW_END)]] == ["m-2", "m-4"]

    def test_naive_window_end_is_utc(self) -> None:
        naive = WINDOW_END.replace(tzinfo=None)

        assert settlement_nonce_for("daily", naive, "h" * 32) == settlement_nonce_for("daily", WINDOW_END, "h" * 32)
        assert list(group_by_window([create_market("m-1", WALLET_A, window_end=naive)])) == [("daily", WINDOW_END)]


class TestSettlementService:
    @pytest.mark.asyncio
    async def test_settles_window_group(self, service: SettlementService, seeded: DatabaseManager) -> None:
        report = await service.settle(window_keys=["daily"])

        assert report.settled_count == 3
        (group,) = report.groups
        assert group.status == GROUP_SETTLED
        assert group.winners == [WALLET_B, WALLET_A]
        assert group.settlement_nonce == settlement_nonce_for("daily", WINDOW_END, group.snapshot_hash)

        a = await load_market(seeded, "mkt-a")
        c = await load_market(seeded, "mkt-c")
        x = await load_market(seeded, "mkt-x")
        assert (a.status, a.resolved_outcome, a.resolved_rank) == ("settled", OUTCOME_YES, 2)
        assert a.resolved_profit_lamports == 2_000_000_000
        assert (c.resolved_outcome, c.resolved_rank) == (OUTCOME_NO, 3)
        assert (x.resolved_outcome, x.resolved_rank) == (OUTCOME_NO, None)
        assert a.settlement_hash == c.settlement_hash == group.settlement_hash
        assert a.snapshot_hash == group.snapshot_hash
        assert a.settled_at == NOW

    @pytest.mark.asyncio
    async def test_late_market_joins_applied_settlement(
        self, service: SettlementService, seeded: DatabaseManager
    ) -> None:
        first = await service.settle(window_keys=["daily"])
        async with seeded.get_async_session() as session:
            await MarketRepository(session).insert(create_market("mkt-late", WALLET_B))

        report = await service.settle(window_keys=["daily"])

        (group,) = report.groups
        assert group.status == GROUP_SETTLED
        assert group.reason == RESUMED_REASON
        assert group.settled_market_ids == ["mkt-late"]
        late = await load_market(seeded, "mkt-late")
        assert (late.resolved_outcome, late.resolved_rank) == (OUTCOME_YES, 1)
        assert late.settlement_nonce == first.groups[0].settlement_nonce
        assert late.snapshot_hash == first.groups[0].snapshot_hash

    @pytest.mark.asyncio
    async def test_page_limit_leftovers_settle_next_run(
        self, service: SettlementService, seeded: DatabaseManager
    ) -> None:
        first = await service.settle(window_keys=["daily"], limit=2)
        second = await service.settle(window_keys=["daily"], limit=2)

        assert first.groups[0].settled_market_ids == ["mkt-a", "mkt-c"]
        assert second.groups[0].status == GROUP_SETTLED
        assert second.groups[0].settled_market_ids == ["mkt-x"]
        x = await load_market(seeded, "mkt-x")
        assert x.settled_at == NOW
        assert x.settlement_nonce == first.groups[0].settlement_nonce

    @pytest.mark.asyncio
    async def test_nothing_left_reports_duplicate_nonce(
        self, service: SettlementService, seeded: DatabaseManager, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        await service.settle(window_keys=["daily"], limit=2)
        monkeypatch.setattr(MarketRepository, "apply_settlement", AsyncMock(return_value=False))

        report = await service.settle(window_keys=["daily"])

        (group,) = report.groups
        assert group.status == GROUP_SKIPPED
        assert group.reason == DUPLICATE_NONCE_REASON
        assert group.lost_race_market_ids == ["mkt-x"]
        assert report.progress.skipped == [group.label]

    @pytest.mark.asyncio
    async def test_rerun_finds_nothing(self, service: SettlementService) -> None:
        await service.settle(window_keys=["daily"])
        report = await service.settle(window_keys=["daily"])

        assert report.groups == []
        assert report.settled_count == 0

    @pytest.mark.asyncio
    async def test_window_not_closed(self, service: SettlementService) -> None:
        report = await service.settle(window_keys=["daily"], closes_before=WINDOW_END - timedelta(seconds=1))
        assert report.groups == []

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(
        self, service: SettlementService, seeded: DatabaseManager, price_source
    ) -> None:
        report = await service.settle(window_keys=["daily"], dry_run=True)

        (group,) = report.groups
        assert group.status == GROUP_DRY_RUN
        assert group.resolutions["mkt-a"].resolved_outcome == OUTCOME_YES
        assert report.settled_count == 0
        assert (await load_market(seeded, "mkt-a")).settled_at is None
        async with seeded.get_async_session() as session:
            snapshots = SnapshotService(
                session,
                config_provider=EligibilityConfigProvider(AsyncMock(return_value=None)),
                price_source=price_source,
            )
            assert await snapshots.get("daily", WINDOW_END) is None

    @pytest.mark.asyncio
    async def test_explicit_nonce_and_top_n(self, service: SettlementService, seeded: DatabaseManager) -> None:
        report = await service.settle(window_keys=["daily"], settlement_nonce="manual-1", top_n=3)

        assert report.top_n == 3
        c = await load_market(seeded, "mkt-c")
        assert c.resolved_outcome == OUTCOME_YES
        assert c.settlement_nonce == "manual-1"

    @pytest.mark.asyncio
    async def test_refuses_while_halted(self, service: SettlementService, seeded: DatabaseManager) -> None:
        await EmergencyHalt(seeded).activate("incident")

        with pytest.raises(EmergencyHaltError, match="incident"):
            await service.settle(window_keys=["daily"])
        assert (await load_market(seeded, "mkt-a")).settled_at is None

    @pytest.mark.asyncio
    async def test_unknown_window(self, service: SettlementService) -> None:
        with pytest.raises(UnknownWindowError):
            await service.settle(window_keys=["hourly"])

    @pytest.mark.asyncio
    async def test_exhausted_budget_stops_before_first_group(self, service: SettlementService) -> None:
        report = await service.settle(window_keys=["daily"], budget=BatchBudget(0))

        assert report.groups == []
        assert report.progress.stopped_early
        assert report.progress.resume_from == f"daily@{WINDOW_END.isoformat()}"
