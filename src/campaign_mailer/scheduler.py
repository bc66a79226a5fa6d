# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Periodic scheduler tick and background loop.

Each tick:

1. finds scheduled campaigns whose ``scheduled_for`` has passed and claims
   each with a conditional ``scheduled -> sending`` update (a lost claim is
   skipped);
2. dispatches the claimed campaigns together with every ``sending``
   campaign this process is not already dispatching, which resumes walks
   paused by an unreachable transport or interrupted by a crash.

Campaigns of different tenants run concurrently; the dispatch engine
serializes campaigns of the same tenant.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Callable

from .campaign_db import CampaignDb
from .dispatch import DispatchEngine, DispatchResult
from .errors import CampaignMailerError, CampaignStateError
from .logger import get_logger
from .state import CampaignStateMachine, CampaignStatus

logger = get_logger("scheduler")


class CampaignScheduler:
    """Drives scheduled campaigns into dispatch.

    Args:
        tick_interval: Seconds between ticks of the background loop.
        test_mode: The loop only ticks on explicit wake-ups (run_now()).
        start_active: Whether the loop ticks before activate() is called.
    """

    def __init__(
        self,
        db: CampaignDb,
        engine: DispatchEngine,
        state: CampaignStateMachine | None = None,
        *,
        tick_interval: float = 60.0,
        test_mode: bool = False,
        start_active: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.engine = engine
        self.state = state or CampaignStateMachine(db)
        self._test_mode = bool(test_mode)
        self._interval = math.inf if self._test_mode else max(0.0, float(tick_interval))
        self._active = start_active
        self._clock = clock
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._dispatches: set[asyncio.Task] = set()

    @property
    def active(self) -> bool:
        return self._active

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def suspend(self) -> None:
        self._active = False
        logger.info("Scheduler suspended")

    def activate(self) -> None:
        self._active = True
        self._wake_event.set()
        logger.info("Scheduler activated")

    def run_now(self) -> None:
        """Wake the loop for an immediate tick."""
        self._wake_event.set()

    async def tick(self, now_ts: int | None = None) -> list[DispatchResult]:
        """Claim due campaigns and dispatch them plus resumable ones."""
        now = int(self._clock()) if now_ts is None else int(now_ts)
        claimed: list[int] = []
        for campaign in await self.db.campaigns.due_scheduled(now):
            try:
                won = await self.state.start_sending(campaign["id"], now)
            except CampaignStateError as exc:
                logger.debug("Skipping campaign %s: %s", campaign["id"], exc)
                continue
            if won:
                logger.info("Campaign %s reached its scheduled time", campaign["id"])
                claimed.append(campaign["id"])

        resumable = [
            c["id"]
            for c in await self.db.campaigns.list_by_status(CampaignStatus.SENDING.value)
            if c["id"] not in claimed and not self.engine.is_dispatching(c["id"])
        ]
        if resumable:
            logger.info("Resuming %d campaign(s) in sending", len(resumable))
        return await self._dispatch_all(claimed + resumable)

    async def recover(self) -> list[DispatchResult]:
        """Resume every campaign left in ``sending`` (e.g. after a restart)."""
        sending = await self.db.campaigns.list_by_status(CampaignStatus.SENDING.value)
        if sending:
            logger.info("Recovering %d campaign(s) left in sending", len(sending))
        return await self._dispatch_all([c["id"] for c in sending])

    async def _dispatch_all(self, campaign_ids: list[int]) -> list[DispatchResult]:
        if not campaign_ids:
            return []
        outcomes = await asyncio.gather(
            *(self.engine.dispatch(campaign_id) for campaign_id in campaign_ids),
            return_exceptions=True,
        )
        results: list[DispatchResult] = []
        for campaign_id, outcome in zip(campaign_ids, outcomes):
            if isinstance(outcome, CampaignMailerError):
                logger.warning("Campaign %s not dispatched: %s", campaign_id, outcome)
            elif isinstance(outcome, BaseException):
                logger.error("Dispatch of campaign %s aborted: %s", campaign_id, outcome, exc_info=outcome)
            else:
                results.append(outcome)
        return results

    def dispatch_in_background(self, campaign_id: int) -> asyncio.Task:
        """Start dispatching one campaign without waiting (send-now)."""
        task = asyncio.create_task(self._dispatch_all([campaign_id]), name=f"dispatch-{campaign_id}")
        self._dispatches.add(task)
        task.add_done_callback(self._dispatches.discard)
        return task

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Start the background loop."""
        self._stop.clear()
        self.engine.resume()
        self._task = asyncio.create_task(self._loop(), name="campaign-scheduler-loop")

    async def stop(self) -> None:
        """Stop the loop; running dispatches finish their in-flight sends."""
        self._stop.set()
        self._wake_event.set()
        self.engine.stop()
        await asyncio.gather(
            *(task for task in [self._task, *self._dispatches] if task),
            return_exceptions=True,
        )
        self._task = None

    async def _loop(self) -> None:
        logger.debug("Scheduler loop started (interval=%s)", self._interval)
        first_iteration = True
        while not self._stop.is_set():
            if first_iteration and self._test_mode:
                logger.info("First iteration in test mode, waiting for wakeup")
                await self._wait_for_wakeup(self._interval)
            first_iteration = False
            if self._stop.is_set():
                break
            if self._active:
                try:
                    await self.tick()
                except Exception as exc:  # pragma: no cover - store outage
                    logger.exception("Unhandled error in scheduler tick: %s", exc)
            await self._wait_for_wakeup(self._interval)

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Pause the loop while allowing external wake-ups via 'run now'."""
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(timeout):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        if timeout <= 0:
            await asyncio.sleep(0)
            return
        try:
            async with asyncio.timeout(timeout):
                await self._wake_event.wait()
        except TimeoutError:
            return
        self._wake_event.clear()
