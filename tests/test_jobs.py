"""Tests for the engine's job wiring."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from kol_wager_engine.config import Settings, clear_settings_cache
from kol_wager_engine.jobs import Engine, EngineNotStartedError
from kol_wager_engine.settlement.resolver import GROUP_DRY_RUN, GROUP_SETTLED
from kol_wager_engine.settlement.safety import EmergencyHaltError
from kol_wager_engine.storage.repos import (
    MarketDTO,
    MarketRepository,
    OrderDTO,
    OrderRepository,
    TrackedWalletDTO,
    TrackedWalletRepository,
)

SOL = 1_000_000_000
WINDOW_END = datetime(2026, 10, 19, tzinfo=UTC)

WALLET_A = "WalletA111111111111111111111111111111111111"
WALLET_B = "WalletB111111111111111111111111111111111111"


@pytest.fixture
def settings(monkeypatch: pytest.MonkeyPatch) -> Settings:
    for name in (
        "REDIS_URL",
        "ESCROW_WALLET_ADDRESSES",
        "ESCROW_WALLET_1_ADDRESS",
        "ESCROW_WALLET_1_SECRET_KEY",
        "PM_ESCROW_WALLET_ADDRESS",
        "DRY_RUN",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    clear_settings_cache()
    return Settings()


async def seed(engine: Engine, round_trip) -> None:
    await engine.init_db()
    async with engine.db.get_async_session() as session:
        wallets = TrackedWalletRepository(session)
        for address in (WALLET_A, WALLET_B):
            await wallets.upsert(TrackedWalletDTO(address, tracked_from=WINDOW_END - timedelta(days=90)))
        await MarketRepository(session).insert(
            MarketDTO(id="mkt-a", window_key="daily", window_end=WINDOW_END, kol_wallet_address=WALLET_A)
        )
        orders = OrderRepository(session)
        await orders.insert(OrderDTO("o-1", "mkt-a", "User1", "yes", deposit_lamports=SOL, deposit_signature="d1"))
        await orders.insert(OrderDTO("o-2", "mkt-a", "User2", "no", deposit_lamports=SOL, deposit_signature="d2"))
    report = await engine.ingest(round_trip(WALLET_A, "2") + round_trip(WALLET_B, "4"))
    assert report.stored == 4


# ============================================================================
# Lifecycle
# ============================================================================


class TestEngineLifecycle:
    def test_components_require_start(self, settings: Settings) -> None:
        engine = Engine(settings)

        with pytest.raises(EngineNotStartedError):
            _ = engine.db
        with pytest.raises(EngineNotStartedError):
            _ = engine.rpc
        with pytest.raises(EngineNotStartedError):
            _ = engine.price_feed

    def test_dry_run_override(self, settings: Settings) -> None:
        assert Engine(settings).dry_run is False
        assert Engine(settings, dry_run=True).dry_run is True

    @pytest.mark.asyncio
    async def test_context_manager_starts_and_closes(self, settings: Settings) -> None:
        async with Engine(settings) as engine:
            assert engine.db is not None
            assert engine.rpc.policy.endpoints == settings.solana.endpoints
            assert engine.fees is not None
            assert engine.eligibility is not None

        with pytest.raises(EngineNotStartedError):
            _ = engine.db

    def test_budget_uses_deadline(self, settings: Settings) -> None:
        assert not Engine(settings).budget().exhausted()


# ============================================================================
# Jobs
# ============================================================================


class TestEngineJobs:
    @pytest.mark.asyncio
    async def test_snapshot_settle_and_plan(self, settings: Settings, round_trip, price_source) -> None:
        async with Engine(settings) as engine:
            engine._price_feed = price_source
            await seed(engine, round_trip)

            snapshot = await engine.snapshot("daily", WINDOW_END)
            assert [e.wallet for e in snapshot.entries] == [WALLET_B, WALLET_A]

            report = await engine.settle(window_keys=["daily"], closes_before=WINDOW_END + timedelta(minutes=1))
            (group,) = report.groups
            assert group.status == GROUP_SETTLED
            assert group.snapshot_hash == snapshot.content_hash
            assert group.settled_market_ids == ["mkt-a"]

            plan = await engine.plan_payouts("mkt-a")
            assert plan.outcome == "yes"
            assert plan.fee_lamports == 50_000_000
            assert [(w.destination, w.amount_lamports) for w in plan.winners] == [("User1", 1_950_000_000)]
            assert price_source.calls == 1

            audit = await engine.audit_snapshot("daily", WINDOW_END)
            assert audit is not None
            assert audit.matches

    @pytest.mark.asyncio
    async def test_dry_run_settles_nothing(self, settings: Settings, round_trip, price_source) -> None:
        async with Engine(settings, dry_run=True) as engine:
            engine._price_feed = price_source
            await seed(engine, round_trip)

            report = await engine.settle(closes_before=WINDOW_END + timedelta(minutes=1))
            assert [g.status for g in report.groups] == [GROUP_DRY_RUN]

            again = await engine.settle(closes_before=WINDOW_END + timedelta(minutes=1))
            assert [g.status for g in again.groups] == [GROUP_DRY_RUN]

    @pytest.mark.asyncio
    async def test_halt_blocks_settlement(self, settings: Settings, round_trip, price_source) -> None:
        async with Engine(settings) as engine:
            engine._price_feed = price_source
            await seed(engine, round_trip)
            await engine.halt_switch().activate("maintenance")

            with pytest.raises(EmergencyHaltError):
                await engine.settle(closes_before=WINDOW_END + timedelta(minutes=1))

    @pytest.mark.asyncio
    async def test_fund_moving_jobs_require_escrow(self, settings: Settings) -> None:
        async with Engine(settings) as engine:
            await engine.init_db()

            with pytest.raises(ValueError, match="ESCROW_WALLET"):
                await engine.pay_market("mkt-a")
            with pytest.raises(ValueError, match="ESCROW_WALLET"):
                await engine.process_withdrawals()

    @pytest.mark.asyncio
    async def test_actions_verify_deposits_against_escrow(
        self, settings: Settings, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("ESCROW_WALLET_ADDRESSES", "EscrowOne,EscrowTwo")
        async with Engine(Settings()) as engine:
            assert engine.actions()._escrow_addresses == ["EscrowOne", "EscrowTwo"]

        monkeypatch.setenv("PM_ESCROW_WALLET_ADDRESS", "EscrowPm")
        async with Engine(Settings()) as engine:
            actions = engine.actions()
            assert actions._escrow_addresses == ["EscrowPm"]
            assert actions._require_nonce is False
