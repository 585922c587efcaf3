"""
Background renewal loop tests.

Ticks are driven directly with a fake clock; start/stop is exercised with a
tiny interval and mocked collaborators.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from returnsdesk.models.marketplace_credential import DeactivationReason
from returnsdesk.workers.token_renewal import (
    RENEWAL_WINDOW,
    RenewalOutcome,
    RenewalStats,
    TokenRenewalLoop,
)

# Seeded at T0 with expires_in=21600, so the stored expiry is T0 + 21300s
SEEDED_EXPIRY = timedelta(seconds=21300)


@pytest.fixture
def renewal_loop(manager, store, clock):
    return TokenRenewalLoop(manager, store, interval_seconds=60, clock=clock)


class TestTick:

    @pytest.mark.asyncio
    async def test_skips_without_active_credential(self, renewal_loop, fake_ml):
        assert await renewal_loop.tick() == RenewalOutcome.SKIPPED
        assert fake_ml.requests == []

    @pytest.mark.asyncio
    async def test_not_due_far_from_expiry(self, renewal_loop, active_credential, fake_ml):
        assert await renewal_loop.tick() == RenewalOutcome.NOT_DUE
        assert fake_ml.requests == []

    @pytest.mark.asyncio
    async def test_refreshes_inside_window(self, renewal_loop, store, active_credential, clock, fake_ml):
        clock.advance(seconds=SEEDED_EXPIRY.total_seconds() - 120)

        assert await renewal_loop.tick() == RenewalOutcome.REFRESHED

        assert len(fake_ml.token_requests("refresh_token")) == 1
        assert store.get_active().access_token == "test-access-1"

        # The refreshed token is far from expiry again
        assert await renewal_loop.tick() == RenewalOutcome.NOT_DUE

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "remaining",
        [RENEWAL_WINDOW, timedelta(0)],
        ids=["window_edge", "expiry_edge"],
    )
    async def test_window_is_exclusive(self, renewal_loop, active_credential, clock, fake_ml, remaining):
        clock.advance(seconds=(SEEDED_EXPIRY - remaining).total_seconds())

        assert await renewal_loop.tick() == RenewalOutcome.NOT_DUE
        assert fake_ml.token_requests() == []

    @pytest.mark.asyncio
    async def test_refreshes_just_inside_window(self, renewal_loop, active_credential, clock, fake_ml):
        clock.advance(seconds=(SEEDED_EXPIRY - RENEWAL_WINDOW).total_seconds() + 1)

        assert await renewal_loop.tick() == RenewalOutcome.REFRESHED
        assert len(fake_ml.token_requests("refresh_token")) == 1

    @pytest.mark.asyncio
    async def test_already_expired_is_left_for_on_demand_refresh(
        self, renewal_loop, active_credential, clock, fake_ml
    ):
        clock.advance(seconds=SEEDED_EXPIRY.total_seconds() + 30)

        assert await renewal_loop.tick() == RenewalOutcome.NOT_DUE
        assert fake_ml.requests == []

    @pytest.mark.asyncio
    async def test_rejected_refresh_is_reported(self, renewal_loop, store, active_credential, clock, fake_ml):
        fake_ml.token_responses.append((400, {"error": "invalid_grant"}))
        clock.advance(seconds=SEEDED_EXPIRY.total_seconds() - 60)

        assert await renewal_loop.tick() == RenewalOutcome.FAILED

        credential = store.get(active_credential)
        assert credential.is_active is False
        assert credential.deactivation_reason == DeactivationReason.REFRESH_FAILED.value

        # Nothing left to renew
        assert await renewal_loop.tick() == RenewalOutcome.SKIPPED

    @pytest.mark.asyncio
    async def test_transient_failure_keeps_credential(
        self, renewal_loop, store, active_credential, clock, fake_ml
    ):
        fake_ml.token_responses.append((503, {"message": "unavailable"}))
        clock.advance(seconds=SEEDED_EXPIRY.total_seconds() - 60)

        assert await renewal_loop.tick() == RenewalOutcome.FAILED
        assert store.get(active_credential).is_active is True

        # Next tick tries again
        assert await renewal_loop.tick() == RenewalOutcome.REFRESHED

    @pytest.mark.asyncio
    async def test_store_failure_is_contained(self, manager, clock):
        store = MagicMock()
        store.get_active.side_effect = RuntimeError("db down")
        loop = TokenRenewalLoop(manager, store, clock=clock)

        assert await loop.tick() == RenewalOutcome.FAILED


class TestLoopLifecycle:

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        store = MagicMock()
        store.get_active.return_value = None
        loop = TokenRenewalLoop(AsyncMock(), store, interval_seconds=0.01)

        loop.start()
        assert loop.is_running is True
        await asyncio.sleep(0.05)
        await loop.stop()

        assert loop.is_running is False
        assert loop.stats.ticks >= 1
        assert loop.stats.skipped == loop.stats.ticks

    @pytest.mark.asyncio
    async def test_survives_failing_ticks(self):
        store = MagicMock()
        store.get_active.side_effect = RuntimeError("db down")
        loop = TokenRenewalLoop(AsyncMock(), store, interval_seconds=0.01)

        loop.start()
        await asyncio.sleep(0.05)
        assert loop.is_running is True
        await loop.stop()

        assert loop.stats.failures >= 2

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        store = MagicMock()
        store.get_active.return_value = None
        loop = TokenRenewalLoop(AsyncMock(), store, interval_seconds=10)

        first = loop.start()
        second = loop.start()

        assert first is second
        await loop.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        loop = TokenRenewalLoop(AsyncMock(), MagicMock())

        await loop.stop()

        assert loop.is_running is False


class TestRenewalStats:

    def test_record(self):
        stats = RenewalStats()
        for outcome in (
            RenewalOutcome.REFRESHED,
            RenewalOutcome.SKIPPED,
            RenewalOutcome.NOT_DUE,
            RenewalOutcome.FAILED,
            RenewalOutcome.FAILED,
        ):
            stats.record(outcome)

        summary = stats.to_dict()
        assert summary["ticks"] == 5
        assert summary["refreshed"] == 1
        assert summary["skipped"] == 1
        assert summary["not_due"] == 1
        assert summary["failures"] == 2
