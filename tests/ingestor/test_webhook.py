"""Tests for webhook event ingestion."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from kol_wager_engine.ingestor.webhook import EventIngestor
from kol_wager_engine.storage.models import TxEventModel, TxEventWalletModel
from kol_wager_engine.storage.repos import TrackedWalletDTO, TrackedWalletRepository, TxEventRepository

KOL = "KolWallet1111111111111111111111111111111111"
OTHER_KOL = "KolWallet2222222222222222222222222222222222"
STRANGER = "Stranger111111111111111111111111111111111111"


@pytest.fixture
async def tracked(async_session: AsyncSession) -> None:
    repo = TrackedWalletRepository(async_session)
    since = datetime(2026, 1, 1, tzinfo=UTC)
    await repo.upsert(TrackedWalletDTO(wallet_address=KOL, tracked_from=since))
    await repo.upsert(TrackedWalletDTO(wallet_address=OTHER_KOL, tracked_from=since))


class TestEventIngestor:
    @pytest.mark.asyncio
    async def test_stores_and_links_tracked_wallets(
        self, async_session: AsyncSession, tracked: None, create_swap_payload
    ) -> None:
        ts = datetime(2026, 10, 18, 12, tzinfo=UTC)
        payload = create_swap_payload(signature="sig-1", wallet=KOL, timestamp=ts, lamports=-1_000_000, tokens=10)
        payload["nativeTransfers"] = [{"fromUserAccount": KOL, "toUserAccount": OTHER_KOL, "amount": 1}]

        report = await EventIngestor(async_session).ingest([payload])

        assert report.received == 1
        assert report.stored == 1
        assert report.links == 2
        stored = await TxEventRepository(async_session).get("sig-1")
        assert stored is not None
        assert stored.block_time == ts
        assert stored.type == "SWAP"
        assert stored.raw["signature"] == "sig-1"

    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(
        self, async_session: AsyncSession, tracked: None, create_swap_payload
    ) -> None:
        ts = datetime(2026, 10, 18, 12, tzinfo=UTC)
        payload = create_swap_payload(signature="sig-1", wallet=KOL, timestamp=ts, lamports=-1_000_000, tokens=10)
        ingestor = EventIngestor(async_session)

        await ingestor.ingest([payload])
        second = await ingestor.ingest([payload])

        assert second.stored == 1
        assert second.links == 0
        events = await async_session.scalar(select(func.count()).select_from(TxEventModel))
        links = await async_session.scalar(select(func.count()).select_from(TxEventWalletModel))
        assert events == 1
        assert links == 1

    @pytest.mark.asyncio
    async def test_untracked_event_stored_without_links(
        self, async_session: AsyncSession, tracked: None, create_swap_payload
    ) -> None:
        payload = create_swap_payload(
            signature="sig-2",
            wallet=STRANGER,
            timestamp=datetime(2026, 10, 18, tzinfo=UTC) + timedelta(hours=1),
            lamports=-5,
            tokens=1,
        )

        report = await EventIngestor(async_session).ingest([payload])

        assert report.stored == 1
        assert report.links == 0

    @pytest.mark.asyncio
    async def test_malformed_payloads_are_skipped(self, async_session: AsyncSession, tracked: None) -> None:
        report = await EventIngestor(async_session).ingest([{"no": "signature"}, "junk", {"signature": "ok"}])

        assert report.received == 3
        assert report.skipped == 2
        assert report.stored == 1
        assert len(report.errors) == 2

    @pytest.mark.asyncio
    async def test_junk_numbers_do_not_abort_the_batch(self, async_session: AsyncSession, tracked: None) -> None:
        payloads = [
            {"signature": "junk-1", "timestamp": 1_760_832_000, "slot": "n/a", "fee": "unknown"},
            {"signature": "junk-2", "accountData": [{"account": KOL, "nativeBalanceChange": "Infinity"}]},
            {"signature": "good", "slot": 7, "nativeTransfers": [{"fromUserAccount": KOL, "toUserAccount": STRANGER, "amount": 1}]},
        ]

        report = await EventIngestor(async_session).ingest(payloads)

        assert (report.received, report.stored, report.skipped) == (3, 3, 0)
        junk = await TxEventRepository(async_session).get("junk-1")
        assert junk is not None
        assert junk.slot is None
        good = await TxEventRepository(async_session).get("good")
        assert good is not None
        assert good.slot == 7

    @pytest.mark.asyncio
    async def test_lookup_is_chunked(self, async_session: AsyncSession, tracked: None) -> None:
        payload = {
            "signature": "sig-3",
            "nativeTransfers": [
                {"fromUserAccount": KOL, "toUserAccount": STRANGER, "amount": 1},
                {"fromUserAccount": OTHER_KOL, "toUserAccount": STRANGER, "amount": 1},
            ],
        }

        report = await EventIngestor(async_session, chunk_size=1).ingest([payload])

        assert report.links == 2

    @pytest.mark.asyncio
    async def test_also_link_adds_wallets_the_payload_does_not_mention(
        self, async_session: AsyncSession, tracked: None
    ) -> None:
        report = await EventIngestor(async_session).ingest([{"signature": "sig-4"}], also_link=[KOL])

        assert report.links == 1
        links = await async_session.execute(
            select(TxEventWalletModel.wallet_address).where(TxEventWalletModel.signature == "sig-4")
        )
        assert links.scalars().all() == [KOL]

    def test_rejects_bad_chunk_size(self) -> None:
        with pytest.raises(ValueError):
            EventIngestor(MagicMock(), chunk_size=0)
