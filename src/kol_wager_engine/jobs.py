"""Job wiring for the engine.

``Engine`` builds every component from ``Settings`` (database, Redis, Solana
RPC, price feed, config providers, escrow wallets) and exposes one coroutine
per batch job. Escrow keys are loaded only by jobs that move funds.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from typing import Any

import httpx
from redis.asyncio import Redis

from kol_wager_engine.analytics.eligibility import (
    ANTI_MANIPULATION_CONFIG_KEY,
    EligibilityConfig,
    EligibilityConfigProvider,
    system_config_loader,
)
from kol_wager_engine.analytics.snapshot import Snapshot, SnapshotAudit, SnapshotService
from kol_wager_engine.budget import BatchBudget
from kol_wager_engine.chain.keys import load_escrow_wallets
from kol_wager_engine.chain.rpc import SolanaRpc, create_rpc_from_settings
from kol_wager_engine.config import Settings, get_settings
from kol_wager_engine.exchange.actions import SignedActionService
from kol_wager_engine.ingestor.backfill import (
    DEFAULT_TRANSACTION_TYPES,
    BackfillReport,
    HistoryBackfill,
    HistoryClient,
)
from kol_wager_engine.ingestor.webhook import EventIngestor, IngestReport
from kol_wager_engine.pricing.reference_price import ReferencePriceFeed, default_providers
from kol_wager_engine.settlement.funding import FundingSelector
from kol_wager_engine.settlement.markets import BootstrapReport, CloseReport, MarketLifecycle
from kol_wager_engine.settlement.payouts import (
    FEE_CONFIG_KEY,
    FeeConfig,
    FeeConfigProvider,
    PayoutBatchResult,
    PayoutPlan,
    PayoutProcessor,
    PayoutService,
    RequestCreation,
)
from kol_wager_engine.settlement.resolver import SettlementReport, SettlementService
from kol_wager_engine.settlement.safety import EmergencyHalt, EscrowAuditLog
from kol_wager_engine.settlement.withdrawals import WithdrawalBatchResult, WithdrawalProcessor
from kol_wager_engine.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


class EngineNotStartedError(RuntimeError):
    """Raised when a job runs before ``Engine.start()``."""


class Engine:
    """Owns long-lived clients and runs batch jobs.

    Example:
        ```python
        async with Engine() as engine:
            report = await engine.settle(window_keys=["daily"])
        ```
    """

    def __init__(self, settings: Settings | None = None, *, dry_run: bool | None = None) -> None:
        self._settings = settings or get_settings()
        self._dry_run = dry_run if dry_run is not None else self._settings.dry_run

        self._db: DatabaseManager | None = None
        self._redis: Redis | None = None
        self._http: httpx.AsyncClient | None = None
        self._rpc: SolanaRpc | None = None
        self._price_feed: ReferencePriceFeed | None = None
        self._eligibility: EligibilityConfigProvider | None = None
        self._fees: FeeConfigProvider | None = None

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    @property
    def db(self) -> DatabaseManager:
        if self._db is None:
            raise EngineNotStartedError("Engine not started")
        return self._db

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            raise EngineNotStartedError("Engine not started")
        return self._http

    @property
    def rpc(self) -> SolanaRpc:
        if self._rpc is None:
            raise EngineNotStartedError("Engine not started")
        return self._rpc

    @property
    def price_feed(self) -> ReferencePriceFeed:
        if self._price_feed is None:
            raise EngineNotStartedError("Engine not started")
        return self._price_feed

    @property
    def eligibility(self) -> EligibilityConfigProvider:
        if self._eligibility is None:
            raise EngineNotStartedError("Engine not started")
        return self._eligibility

    @property
    def fees(self) -> FeeConfigProvider:
        if self._fees is None:
            raise EngineNotStartedError("Engine not started")
        return self._fees

    async def start(self) -> None:
        settings = self._settings
        logger.debug("Initializing database manager...")
        self._db = DatabaseManager(settings.database.url)

        if settings.redis.url:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(settings.redis.url)

        self._http = httpx.AsyncClient()
        self._rpc = create_rpc_from_settings(
            settings.solana.endpoints,
            max_attempts=settings.solana.max_retries,
            backoff_seconds=settings.solana.retry_delay_seconds,
            commitment=settings.solana.commitment,
            redis=self._redis,
            tx_cache_ttl_seconds=settings.solana.tx_cache_ttl_seconds,
        )
        self._price_feed = ReferencePriceFeed(
            self._http,
            providers=default_providers(settings.price.coingecko_url, settings.price.jupiter_url),
            redis=self._redis,
            cache_ttl_seconds=settings.price.cache_ttl_seconds,
            fallback_usd=settings.price.fallback_usd,
            timeout_seconds=settings.price.request_timeout_seconds,
        )
        self._eligibility = EligibilityConfigProvider(
            system_config_loader(self._db, ANTI_MANIPULATION_CONFIG_KEY),
            defaults=EligibilityConfig.from_settings(settings.eligibility),
            ttl_seconds=settings.eligibility.config_ttl_seconds,
        )
        self._fees = FeeConfigProvider(
            system_config_loader(self._db, FEE_CONFIG_KEY),
            defaults=FeeConfig.from_settings(settings.settlement),
        )
        logger.info("Engine started (dry_run=%s)", self._dry_run)

    async def close(self) -> None:
        if self._rpc is not None:
            await self._rpc.close()
            self._rpc = None
        if self._http is not None:
            await self._http.aclose()
            self._http = None
        if self._db is not None:
            await self._db.dispose_async()
            self._db = None
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        logger.debug("Resources cleaned up")

    async def __aenter__(self) -> Engine:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def budget(self) -> BatchBudget:
        return BatchBudget(self._settings.settlement.batch_deadline_seconds)

    def halt_switch(self) -> EmergencyHalt:
        return EmergencyHalt(self.db)

    def actions(self) -> SignedActionService:
        """Signed user actions; deposits are verified against the escrow wallets."""
        escrow = self._settings.escrow
        if escrow.pm_wallet_address:
            addresses = [escrow.pm_wallet_address]
        else:
            addresses = [address for address, _ in escrow.configured_wallets()]
        return SignedActionService(
            self.db,
            halt=self.halt_switch(),
            rpc=self.rpc,
            escrow_addresses=addresses,
            require_nonce=self._settings.exchange.require_nonce,
            max_skew_seconds=self._settings.exchange.signature_max_skew_seconds,
        )

    def _funding(self, *, restrict_to: str | None = None) -> FundingSelector:
        wallets = load_escrow_wallets(self._settings.escrow)
        return FundingSelector(self.rpc, wallets, restrict_to=restrict_to)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def init_db(self) -> None:
        await self.db.init_schema_async()

    async def ingest(self, payloads: Iterable[object]) -> IngestReport:
        async with self.db.get_async_session() as session:
            return await EventIngestor(session).ingest(payloads)

    async def snapshot(self, window_key: str, window_end: datetime, *, dry_run: bool | None = None) -> Snapshot:
        persist = not (self._dry_run if dry_run is None else dry_run)
        async with self.db.get_async_session() as session:
            service = SnapshotService(session, config_provider=self.eligibility, price_source=self.price_feed)
            return await service.get_or_create(window_key, window_end, persist=persist)

    async def audit_snapshot(self, window_key: str, window_end: datetime) -> SnapshotAudit | None:
        async with self.db.get_async_session() as session:
            service = SnapshotService(session, config_provider=self.eligibility, price_source=self.price_feed)
            return await service.audit(window_key, window_end)

    async def settle(
        self,
        *,
        window_keys: list[str] | None = None,
        closes_before: datetime | None = None,
        settlement_nonce: str | None = None,
        top_n: int | None = None,
    ) -> SettlementReport:
        service = SettlementService(
            self.db,
            config_provider=self.eligibility,
            price_source=self.price_feed,
            halt=self.halt_switch(),
            top_n=self._settings.settlement.top_n,
        )
        return await service.settle(
            window_keys=window_keys,
            closes_before=closes_before,
            limit=self._settings.settlement.max_markets,
            top_n=top_n,
            dry_run=self._dry_run,
            settlement_nonce=settlement_nonce,
            budget=self.budget(),
        )

    async def plan_payouts(self, market_id: str) -> PayoutPlan:
        async with self.db.get_async_session() as session:
            return await PayoutService(session, fee_config=self.fees).plan(market_id)

    async def create_payouts(self, market_id: str) -> RequestCreation:
        async with self.db.get_async_session() as session:
            return await PayoutService(session, fee_config=self.fees).create_requests(market_id)

    async def pay_market(self, market_id: str) -> PayoutBatchResult:
        """Create the market's payout requests and send the pending ones."""
        self._settings.validate_requirements(command="payout")
        await self.create_payouts(market_id)
        processor = PayoutProcessor(
            self.db,
            self.rpc,
            self._funding(),
            audit=EscrowAuditLog(self.db),
            halt=self.halt_switch(),
        )
        pending = await processor.pending_for_market(market_id, limit=self._settings.settlement.max_payouts)
        return await processor.process(pending, budget=self.budget())

    async def reconcile_payouts(self) -> PayoutBatchResult:
        processor = PayoutProcessor(
            self.db,
            self.rpc,
            FundingSelector(self.rpc, []),
            audit=EscrowAuditLog(self.db),
        )
        stale_after = timedelta(seconds=self._settings.settlement.reconcile_after_seconds)
        return await processor.reconcile(stale_after)

    async def process_withdrawals(self, *, limit: int = 25) -> WithdrawalBatchResult:
        self._settings.validate_requirements(command="withdrawals")
        processor = WithdrawalProcessor(
            self.db,
            self.rpc,
            self._funding(restrict_to=self._settings.escrow.pm_wallet_address),
            audit=EscrowAuditLog(self.db),
            halt=self.halt_switch(),
        )
        return await processor.process(limit=limit, dry_run=self._dry_run, budget=self.budget())

    async def backfill(
        self,
        *,
        days: float = 1.0,
        wallets: Sequence[str] | None = None,
        after: str | None = None,
        wallet_limit: int = 10,
        transaction_types: Sequence[str] | None = None,
    ) -> BackfillReport:
        """Backfill recent history for a page of tracked wallets."""
        self._settings.validate_requirements(command="backfill")
        history = self._settings.history
        api_key = history.api_key.get_secret_value() if history.api_key else ""
        client = HistoryClient(
            self.http,
            api_key=api_key,
            base_url=history.base_url,
            timeout_seconds=history.request_timeout_seconds,
        )
        service = HistoryBackfill(
            self.db,
            client,
            max_pages_per_wallet=history.max_pages_per_wallet,
            transaction_types=DEFAULT_TRANSACTION_TYPES if transaction_types is None else transaction_types,
        )
        return await service.run(
            days=days, wallets=wallets, after=after, wallet_limit=wallet_limit, budget=self.budget()
        )

    def markets(self) -> MarketLifecycle:
        escrow = self._settings.escrow
        addresses = [address for address, _ in escrow.configured_wallets()]
        return MarketLifecycle(self.db, escrow_addresses=addresses, halt=self.halt_switch())

    async def bootstrap_markets(
        self,
        *,
        window_keys: Sequence[str] | None = None,
        closes_at: datetime | None = None,
    ) -> BootstrapReport:
        return await self.markets().bootstrap(window_keys=window_keys, closes_at=closes_at, dry_run=self._dry_run)

    async def close_markets(
        self,
        *,
        window_keys: Sequence[str] | None = None,
        closes_before: datetime | None = None,
        limit: int = 1000,
    ) -> CloseReport:
        return await self.markets().close_due(
            window_keys=window_keys, closes_before=closes_before, limit=limit, dry_run=self._dry_run
        )
