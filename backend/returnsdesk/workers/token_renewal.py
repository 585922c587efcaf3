"""
Background renewal loop for the active Mercado Libre credential.

Keeps the access token fresh independent of request traffic, so the first
API call after a quiet period does not pay for a synchronous refresh.

FLOW (every interval, 60 seconds by default):
1. Load the active credential set; no-op if there is none or no recorded expiry
2. If 0 < (token_expires_at - now) < 5 minutes, force a refresh through the
   lifecycle manager (same deactivation path as request-triggered refreshes)
3. If the expiry has already passed, skip; the next request refreshes on demand

CONSTRAINTS:
- Runs inside the API process as an asyncio task (started from the app lifespan)
- A failing tick is logged and counted; the loop keeps running

Usage:
    loop = TokenRenewalLoop(manager, store)
    loop.start()
    ...
    await loop.stop()
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from returnsdesk.credentials.errors import NotConfiguredError

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 60

# Refresh once the margin-adjusted expiry is this close
RENEWAL_WINDOW = timedelta(minutes=5)


class RenewalOutcome(str, enum.Enum):
    """Result of one renewal tick."""
    SKIPPED = "skipped"  # No active credential or no recorded expiry
    NOT_DUE = "not_due"
    REFRESHED = "refreshed"
    FAILED = "failed"


@dataclass
class RenewalStats:
    """Cumulative statistics for the loop's lifetime."""

    ticks: int = 0
    refreshed: int = 0
    skipped: int = 0
    not_due: int = 0
    failures: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def record(self, outcome: RenewalOutcome) -> None:
        self.ticks += 1
        if outcome == RenewalOutcome.REFRESHED:
            self.refreshed += 1
        elif outcome == RenewalOutcome.SKIPPED:
            self.skipped += 1
        elif outcome == RenewalOutcome.NOT_DUE:
            self.not_due += 1
        else:
            self.failures += 1

    def to_dict(self) -> dict:
        uptime = (datetime.now(timezone.utc) - self.started_at).total_seconds()
        return {
            "ticks": self.ticks,
            "refreshed": self.refreshed,
            "skipped": self.skipped,
            "not_due": self.not_due,
            "failures": self.failures,
            "uptime_seconds": round(uptime, 2),
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenRenewalLoop:
    """Periodic proactive refresh of the active credential's token."""

    def __init__(
        self,
        manager,
        store,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.manager = manager
        self.store = store
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self.stats = RenewalStats()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> RenewalOutcome:
        """
        Run one renewal check.

        Never raises: failures are logged and reported as FAILED. Any
        deactivation has already happened inside the lifecycle manager.
        """
        try:
            credential = self.store.get_active()
        except Exception:
            logger.exception("renewal.load_failed")
            return RenewalOutcome.FAILED

        if credential is None or credential.token_expires_at is None:
            return RenewalOutcome.SKIPPED

        time_until_expiry = credential.token_expires_at - self._clock()
        if not (timedelta(0) < time_until_expiry < RENEWAL_WINDOW):
            return RenewalOutcome.NOT_DUE

        logger.info(
            "renewal.refreshing",
            extra={
                "credential_id": credential.id,
                "seconds_until_expiry": int(time_until_expiry.total_seconds()),
            },
        )
        try:
            await self.manager.get_valid_access_token(force_refresh=True)
        except NotConfiguredError:
            # Deactivated between the read and the refresh
            return RenewalOutcome.SKIPPED
        except Exception:
            logger.exception(
                "renewal.refresh_failed",
                extra={"credential_id": credential.id},
            )
            return RenewalOutcome.FAILED

        return RenewalOutcome.REFRESHED

    async def run(self) -> None:
        """Tick until stop() is called."""
        self._shutdown_event = asyncio.Event()
        logger.info(
            "Token renewal loop starting",
            extra={"interval_seconds": self.interval_seconds},
        )

        while not self._shutdown_event.is_set():
            outcome = await self.tick()
            self.stats.record(outcome)
            if outcome == RenewalOutcome.REFRESHED:
                logger.info("renewal.tick_completed", extra=self.stats.to_dict())

            # Sleep until next tick or shutdown
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.interval_seconds,
                )
            except asyncio.TimeoutError:
                pass

        logger.info("Token renewal loop stopped", extra=self.stats.to_dict())

    def start(self) -> asyncio.Task:
        """Schedule the loop on the running event loop."""
        if self.is_running:
            return self._task
        self._task = asyncio.create_task(self.run(), name="token-renewal")
        return self._task

    async def stop(self) -> None:
        """Signal shutdown and wait for the current tick to finish."""
        if self._task is None:
            return
        if self._shutdown_event is not None:
            self._shutdown_event.set()
        else:
            self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
