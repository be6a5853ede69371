from __future__ import annotations

import asyncio
import enum
import logging
from time import monotonic
from typing import Any, Awaitable, Callable, Optional

from .twitch_api import AuthFailure, RateLimited, Transient

logger = logging.getLogger("autoswap.scheduler")

CycleFn = Callable[[], Awaitable[None]]


class SchedulerState(str, enum.Enum):
    STOPPED = "stopped"
    RUNNING = "running"


class PollScheduler:
    def __init__(
        self,
        cycle: CycleFn,
        *,
        interval_seconds: float = 60.0,
        min_spacing_seconds: float = 5.0,
        rate_limit_retry_seconds: float = 120.0,
        transient_retry_seconds: float = 60.0,
        clock: Callable[[], float] = monotonic,
    ):
        self._cycle = cycle
        self.interval_seconds = max(min_spacing_seconds, interval_seconds)
        self.min_spacing_seconds = min_spacing_seconds
        self.rate_limit_retry_seconds = rate_limit_retry_seconds
        self.transient_retry_seconds = transient_retry_seconds
        self._clock = clock
        self.state = SchedulerState.STOPPED
        self.stop_reason = "stopped"
        self.enabled = True
        self.has_credentials = False
        self.idle_state = "active"
        self.auth_blocked = False
        self.last_error = ""
        self.last_cycle_started: Optional[float] = None
        self.cycles_run = 0
        self._in_flight = False
        self._timer_task: Optional[asyncio.Task[None]] = None
        self._retry_task: Optional[asyncio.Task[None]] = None
        self._cycle_task: Optional[asyncio.Task[bool]] = None

    def configure(self, *, interval_seconds: float, has_credentials: bool) -> bool:
        interval = max(self.min_spacing_seconds, interval_seconds)
        changed = interval != self.interval_seconds or has_credentials != self.has_credentials
        self.interval_seconds = interval
        self.has_credentials = has_credentials
        return changed

    def clear_auth_block(self) -> None:
        self.auth_blocked = False

    def _gate(self) -> Optional[str]:
        if not self.enabled:
            return "disabled"
        if self.idle_state in {"idle", "locked"}:
            return "idle"
        if not self.has_credentials:
            return "unconfigured"
        if self.auth_blocked:
            return "auth_failure"
        return None

    async def start(self) -> bool:
        if self.state is SchedulerState.RUNNING:
            return True
        blocked = self._gate()
        if blocked:
            self.stop_reason = blocked
            logger.info("Polling not started: %s", blocked)
            return False
        self._cancel_retry()
        self.state = SchedulerState.RUNNING
        self.stop_reason = ""
        self._timer_task = asyncio.create_task(self._run_timer(), name="autoswap-poll-timer")
        logger.info("Polling started (interval %.0fs)", self.interval_seconds)
        return True

    async def stop(self, reason: str = "stopped") -> None:
        self._cancel_retry()
        await self._halt(reason)

    async def wait_idle(self) -> None:
        task = self._cycle_task
        if task and not task.done() and task is not asyncio.current_task():
            await asyncio.gather(task, return_exceptions=True)

    async def restart(self) -> bool:
        await self.stop("restarting")
        return await self.start()

    async def set_idle_state(self, state: str) -> None:
        self.idle_state = state
        if state in {"idle", "locked"}:
            if self.state is SchedulerState.RUNNING:
                logger.info("Host is %s; pausing polling", state)
            await self._halt("idle")
        else:
            await self.start()

    async def _run_timer(self) -> None:
        while True:
            # A cycle in progress finishes even if the timer is torn down meanwhile.
            self._cycle_task = asyncio.ensure_future(self.trigger("timer"))
            await asyncio.shield(self._cycle_task)
            if self._timer_task is not asyncio.current_task():
                return
            await asyncio.sleep(self.interval_seconds)

    async def force(self) -> bool:
        if not self.has_credentials:
            logger.info("Forced poll ignored: no Twitch credentials configured")
            return False
        return await self.trigger("forced")

    async def trigger(self, source: str) -> bool:
        if self._in_flight:
            logger.debug("Poll (%s) skipped: a cycle is already running", source)
            return False
        now = self._clock()
        if self.last_cycle_started is not None and now - self.last_cycle_started < self.min_spacing_seconds:
            logger.debug("Poll (%s) skipped: within %.0fs of the previous cycle", source, self.min_spacing_seconds)
            return False

        self._in_flight = True
        self.last_cycle_started = now
        try:
            await self._cycle()
            self.last_error = ""
        except AuthFailure as err:
            self.last_error = str(err)
            self.auth_blocked = True
            logger.error("Twitch authorization failed; polling stopped until settings change: %s", err)
            await self._halt("auth_failure")
        except RateLimited as err:
            self.last_error = str(err)
            delay = err.retry_after or self.rate_limit_retry_seconds
            logger.warning("Rate limit exhausted; polling paused for %.0fs", delay)
            await self._halt("rate_limited", retry_after=delay)
        except Transient as err:
            self.last_error = str(err)
            logger.warning("Twitch unreachable; polling paused for %.0fs: %s", self.transient_retry_seconds, err)
            await self._halt("transient", retry_after=self.transient_retry_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as err:
            self.last_error = f"{type(err).__name__}: {err}"
            logger.exception("Poll cycle failed; remaining steps skipped")
        finally:
            self._in_flight = False
            self.cycles_run += 1
        return True

    async def _halt(self, reason: str, retry_after: Optional[float] = None) -> None:
        self.state = SchedulerState.STOPPED
        self.stop_reason = reason
        task = self._timer_task
        self._timer_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if retry_after is not None:
            self._cancel_retry()
            self._retry_task = asyncio.create_task(self._deferred_start(retry_after), name="autoswap-poll-retry")

    async def _deferred_start(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._retry_task = None
        await self.start()

    def _cancel_retry(self) -> None:
        task = self._retry_task
        self._retry_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    @property
    def retry_pending(self) -> bool:
        return self._retry_task is not None and not self._retry_task.done()

    def describe(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "reason": self.stop_reason if self.state is SchedulerState.STOPPED else "",
            "interval_seconds": self.interval_seconds,
            "idle_state": self.idle_state,
            "retry_pending": self.retry_pending,
            "last_error": self.last_error,
            "cycles_run": self.cycles_run,
        }
