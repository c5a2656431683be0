"""
Lifecycle Guard - pairs every created unit with its stop-and-cleanup.

The guard is the launch handle returned by the orchestrator. Whatever way
the caller leaves it (normal wait, cancellation, ``async with`` exit, or
simply dropping the reference) the unit is killed, stopped and unloaded.
"""

from __future__ import annotations

import asyncio
from typing import Optional, Set

import structlog

from sdrun.domain.errors import ControlBusError
from sdrun.domain.outcome import ExitOutcome
from sdrun.kernel.bus.session import ControlBus
from sdrun.runtime.completion_monitor import CompletionMonitor, PendingWait

logger = structlog.get_logger()

# Finalizer cleanups of guards built without an owner task set.
_orphan_cleanups: Set[asyncio.Task] = set()


async def cleanup_unit(
    bus: ControlBus,
    monitor: CompletionMonitor,
    unit_name: str,
    timeout: Optional[float] = None,
) -> bool:
    """Best-effort teardown of one unit. Failures are logged, never raised.

    Returns:
        True if the service manager acknowledged every cleanup step
    """
    if monitor.is_pending(unit_name):
        monitor.abandon(unit_name)
    try:
        await asyncio.wait_for(bus.stop_and_cleanup(unit_name), timeout)
    except asyncio.TimeoutError:
        logger.warning("unit_cleanup_timed_out", unit=unit_name, timeout=timeout)
        return False
    except ControlBusError as e:
        logger.warning(
            "unit_cleanup_failed",
            unit=unit_name,
            error_type=type(e).__name__,
            error=str(e),
        )
        return False
    logger.debug("unit_cleaned_up", unit=unit_name)
    return True


class LaunchGuard:
    """Handle for one started transient unit.

    Usage:
        async with await orchestrator.start(spec) as launch:
            outcome = await launch.wait()
    """

    def __init__(
        self,
        pending: PendingWait,
        monitor: CompletionMonitor,
        bus: ControlBus,
        *,
        cleanup_timeout: Optional[float] = 5.0,
        background: Optional[Set[asyncio.Task]] = None,
    ):
        self.pending = pending
        self.monitor = monitor
        self.bus = bus
        self.cleanup_timeout = cleanup_timeout
        # Owner's task set; a dropped guard's cleanup is recorded there.
        self._background = background if background is not None else _orphan_cleanups

        self._loop = asyncio.get_running_loop()
        self._outcome: Optional[ExitOutcome] = None
        self._cleanup_task: Optional[asyncio.Task] = None

    @property
    def unit_name(self) -> str:
        return self.pending.unit_name

    @property
    def job_path(self) -> Optional[str]:
        return self.pending.job_path

    @property
    def outcome(self) -> Optional[ExitOutcome]:
        return self._outcome

    @property
    def released(self) -> bool:
        return self._cleanup_task is not None

    async def wait(self) -> ExitOutcome:
        """Wait for the terminal outcome, then clean the unit up.

        Cancelling this call abandons the launch: the unit is killed and
        unloaded in the background and the cancellation propagates.
        """
        if self._outcome is not None:
            return self._outcome
        if self.released:
            raise RuntimeError(f"launch {self.unit_name} was already released")

        try:
            outcome = await self.monitor.wait(self.pending)
        except asyncio.CancelledError:
            logger.info("launch_wait_cancelled", unit=self.unit_name)
            self.monitor.abandon(self.unit_name)
            self._schedule_release()
            raise

        self._outcome = outcome
        await self.release()
        return outcome

    async def release(self) -> None:
        """Idempotent stop-and-cleanup; shielded from the caller's cancellation."""
        self._schedule_release()
        await asyncio.shield(self._cleanup_task)

    def _schedule_release(self) -> asyncio.Task:
        if self._cleanup_task is None:
            self._cleanup_task = self._loop.create_task(
                cleanup_unit(self.bus, self.monitor, self.unit_name, self.cleanup_timeout)
            )
        return self._cleanup_task

    async def __aenter__(self) -> "LaunchGuard":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()

    def __del__(self):
        loop = getattr(self, "_loop", None)
        if loop is None or self._cleanup_task is not None or loop.is_closed():
            return
        bus, monitor, name, timeout = self.bus, self.monitor, self.unit_name, self.cleanup_timeout
        tasks = self._background

        def _spawn():
            task = asyncio.ensure_future(cleanup_unit(bus, monitor, name, timeout))
            tasks.add(task)
            task.add_done_callback(tasks.discard)

        logger.warning("launch_guard_dropped", unit=name)
        loop.call_soon_threadsafe(_spawn)

    def __repr__(self) -> str:
        state = "released" if self.released else self.pending.state.value
        return f"LaunchGuard(unit={self.unit_name!r}, state={state})"
