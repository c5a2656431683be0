"""
Completion Monitor - correlates lifecycle events with pending launches.

Each launch walks ``CREATED -> AWAITING_EVENT -> RESOLVED``. The entry is
registered before ``StartTransientUnit`` is issued, so events that beat the
start reply still find it; the event consumer task is the only place that
resolves entries.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional, Set

import structlog

from sdrun.domain.errors import ConnectionLostError, ControlBusError, UnitNotFoundError
from sdrun.domain.outcome import ExitOutcome, FailureReason
from sdrun.kernel.bus.events import (
    BusEvent,
    ConnectionLostEvent,
    JobRemovedEvent,
    UnitPropertiesChangedEvent,
)
from sdrun.kernel.bus.session import ControlBus
from sdrun.kernel.units.naming import unit_object_path

logger = structlog.get_logger()

# siginfo si_code values reported in ExecMainCode
CLD_EXITED = 1
CLD_KILLED = 2
CLD_DUMPED = 3

TERMINAL_STATES = frozenset({"inactive", "failed"})

# Exit statuses systemd itself uses when it fails to set up the process.
SETUP_EXIT_CODES: Dict[int, str] = {
    200: "CHDIR",
    201: "NICE",
    202: "FDS",
    203: "EXEC",
    204: "MEMORY",
    205: "LIMITS",
    206: "OOM_ADJUST",
    207: "SIGNAL_MASK",
    208: "STDIN",
    209: "STDOUT",
    210: "CHROOT",
    211: "IOPRIO",
    212: "TIMERSLACK",
    213: "SECUREBITS",
    214: "SETSCHEDULER",
    215: "CPUAFFINITY",
    216: "GROUP",
    217: "USER",
    218: "CAPABILITIES",
    219: "CGROUP",
    220: "SETSID",
    221: "CONFIRM",
    222: "STDERR",
    224: "PAM",
    225: "NETWORK",
    226: "NAMESPACE",
    227: "NO_NEW_PRIVILEGES",
    228: "SECCOMP",
    229: "SELINUX_CONTEXT",
    230: "PERSONALITY",
    231: "APPARMOR_PROFILE",
    232: "ADDRESS_FAMILIES",
    233: "RUNTIME_DIRECTORY",
    235: "CHOWN",
    236: "SMACK_PROCESS_LABEL",
    237: "KEYRING",
    238: "STATE_DIRECTORY",
    239: "CACHE_DIRECTORY",
    240: "LOGS_DIRECTORY",
    241: "CONFIGURATION_DIRECTORY",
    242: "NUMA_POLICY",
    243: "CREDENTIALS",
}


class LaunchState(str, Enum):
    CREATED = "created"
    AWAITING_EVENT = "awaiting_event"
    RESOLVED = "resolved"


@dataclass
class PendingWait:
    """Correlation entry for one outstanding launch."""

    unit_name: str
    unit_path: str
    future: "asyncio.Future[ExitOutcome]"
    job_path: Optional[str] = None
    state: LaunchState = LaunchState.CREATED
    properties: Dict[str, Any] = field(default_factory=dict)
    job_done: bool = False
    final_read_done: bool = False

    @property
    def resolved(self) -> bool:
        return self.state == LaunchState.RESOLVED


def _wall_time_us(props: Dict[str, Any]) -> Optional[int]:
    started = props.get("InactiveExitTimestampMonotonic") or 0
    ended = props.get("InactiveEnterTimestampMonotonic") or 0
    if started and ended and ended >= started:
        return int(ended - started)
    return None


def derive_outcome(unit_name: str, props: Dict[str, Any]) -> Optional[ExitOutcome]:
    """Turn a terminal property set into an outcome.

    Returns None while ``ActiveState`` is not terminal. A terminal unit whose
    ``ExecMainCode`` is still 0 never got its main process running.
    """
    if props.get("ActiveState") not in TERMINAL_STATES:
        return None

    code = int(props.get("ExecMainCode") or 0)
    status = int(props.get("ExecMainStatus") or 0)
    host_result = props.get("Result") or None
    extra = {"host_result": host_result, "wall_time_us": _wall_time_us(props)}

    if code == CLD_EXITED:
        if status in SETUP_EXIT_CODES:
            return ExitOutcome.orchestrator_failure(
                unit_name,
                FailureReason.START_FAILED,
                f"process setup failed: {SETUP_EXIT_CODES[status]} (status {status})",
                **extra,
            )
        return ExitOutcome.exited(unit_name, status, **extra)

    if code in (CLD_KILLED, CLD_DUMPED):
        return ExitOutcome.signaled(
            unit_name, status, core_dumped=code == CLD_DUMPED, **extra
        )

    if code == 0:
        return ExitOutcome.orchestrator_failure(
            unit_name,
            FailureReason.START_FAILED,
            f"unit went {props.get('ActiveState')} without running its process "
            f"(result: {host_result or 'unknown'})",
            **extra,
        )

    return ExitOutcome.orchestrator_failure(
        unit_name,
        FailureReason.START_FAILED,
        f"unexpected ExecMainCode {code} (status {status})",
        **extra,
    )


class CompletionMonitor:
    """Owns the PendingWait table and the single event consumer."""

    def __init__(self, bus: ControlBus):
        self.bus = bus
        self._pending: Dict[str, PendingWait] = {}
        self._by_path: Dict[str, str] = {}
        self._consumer: Optional[asyncio.Task] = None
        self._reads: Set[asyncio.Task] = set()
        self._lost_reason: Optional[str] = None
        self._closed = False

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, unit_name: str) -> bool:
        return unit_name in self._pending

    def start(self) -> None:
        """Attach to the session's event stream. Call once, after connect."""
        if self._consumer is not None:
            return
        self._consumer = asyncio.ensure_future(self._consume(self.bus.subscribe()))

    # ------------------------------------------------------------------
    # Table management
    # ------------------------------------------------------------------

    def register(self, unit_name: str) -> PendingWait:
        """Create the PendingWait for a launch about to be started.

        Raises:
            ConnectionLostError: the event stream is already gone
            RuntimeError: the monitor is shut down or the name is taken
        """
        if self._lost_reason is not None:
            raise ConnectionLostError(f"control bus lost: {self._lost_reason}")
        if self._closed:
            raise RuntimeError("completion monitor is shut down")
        if unit_name in self._pending:
            raise RuntimeError(f"unit {unit_name} already has a pending wait")

        loop = asyncio.get_running_loop()
        pending = PendingWait(
            unit_name=unit_name,
            unit_path=unit_object_path(unit_name),
            future=loop.create_future(),
        )
        self._pending[unit_name] = pending
        self._by_path[pending.unit_path] = unit_name
        return pending

    def attach_job(self, unit_name: str, job_path: str) -> None:
        """Record the start job once ``StartTransientUnit`` replied."""
        pending = self._pending.get(unit_name)
        if pending is None:
            # Resolved before the reply came back.
            return
        if pending.job_path is None:
            pending.job_path = job_path
        pending.state = LaunchState.AWAITING_EVENT
        logger.debug("launch_awaiting_event", unit=unit_name, job=job_path)

    def discard(self, unit_name: str) -> None:
        """Drop the entry of a launch whose start request failed."""
        pending = self._remove(unit_name)
        if pending is not None and not pending.future.done():
            pending.future.cancel()

    def abandon(self, unit_name: str) -> None:
        """The caller stopped waiting; forget the entry without resolving it."""
        pending = self._remove(unit_name)
        if pending is None:
            return
        if not pending.future.done():
            pending.future.cancel()
        logger.info("launch_abandoned", unit=unit_name, state=pending.state.value)

    async def wait(self, pending: PendingWait) -> ExitOutcome:
        return await pending.future

    async def shutdown(self) -> None:
        """Resolve everything still pending with SHUTDOWN and stop consuming."""
        self._closed = True
        for name in list(self._pending):
            self._resolve_failure(name, FailureReason.SHUTDOWN, "orchestrator shut down")

        tasks = list(self._reads)
        if self._consumer is not None:
            tasks.append(self._consumer)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._reads.clear()

    # ------------------------------------------------------------------
    # Event consumption
    # ------------------------------------------------------------------

    async def _consume(self, events: AsyncIterator[BusEvent]) -> None:
        reason = "event stream ended"
        try:
            async for event in events:
                if isinstance(event, ConnectionLostEvent):
                    reason = event.reason or "connection closed"
                    break
                self._dispatch(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("event_consumer_failed", error=str(e))
            reason = f"event consumer failed: {e}"
            self._fail_all(reason)
            raise
        self._fail_all(reason)

    def _fail_all(self, reason: str) -> None:
        self._lost_reason = reason
        if self._pending:
            logger.warning(
                "pending_launches_lost", count=len(self._pending), reason=reason
            )
        for name in list(self._pending):
            self._resolve_failure(name, FailureReason.CONNECTION_LOST, reason)

    def _dispatch(self, event: BusEvent) -> None:
        if isinstance(event, JobRemovedEvent):
            self._on_job_removed(event)
        elif isinstance(event, UnitPropertiesChangedEvent):
            self._on_properties_changed(event)

    def _on_job_removed(self, event: JobRemovedEvent) -> None:
        pending = self._pending.get(event.unit_name)
        if pending is None or pending.job_done:
            return
        if pending.job_path is None:
            # Start reply not seen yet: the first job of a fresh name is ours.
            pending.job_path = event.job_path
        elif pending.job_path != event.job_path:
            return

        logger.debug(
            "start_job_removed",
            unit=event.unit_name,
            job=event.job_path,
            result=event.result,
        )
        if event.result != "done":
            self._resolve(
                pending,
                ExitOutcome.orchestrator_failure(
                    pending.unit_name,
                    FailureReason.START_FAILED,
                    f"start job {event.result}",
                    host_result=pending.properties.get("Result") or None,
                ),
            )
            return

        pending.job_done = True
        task = asyncio.ensure_future(self._read_final(pending))
        self._reads.add(task)
        task.add_done_callback(self._reads.discard)

    def _on_properties_changed(self, event: UnitPropertiesChangedEvent) -> None:
        name = self._by_path.get(event.unit_path)
        if name is None:
            return
        pending = self._pending[name]
        pending.properties.update(event.changed)
        for key in event.invalidated:
            pending.properties.pop(key, None)
        self._evaluate(pending)

    def _evaluate(self, pending: PendingWait) -> None:
        props = pending.properties
        if props.get("ActiveState") not in TERMINAL_STATES:
            return
        # Without a main exit code, only trust the state once the final read ran.
        if not props.get("ExecMainCode") and not pending.final_read_done:
            return
        outcome = derive_outcome(pending.unit_name, props)
        if outcome is not None:
            self._resolve(pending, outcome)

    async def _read_final(self, pending: PendingWait) -> None:
        name = pending.unit_name
        try:
            props = await self.bus.get_unit_properties(name)
        except UnitNotFoundError:
            if not pending.resolved:
                pending.final_read_done = True
                self._evaluate(pending)
            if not pending.resolved:
                self._resolve(
                    pending,
                    ExitOutcome.orchestrator_failure(
                        name,
                        FailureReason.START_FAILED,
                        "unit unloaded before its exit status was read",
                    ),
                )
            return
        except ConnectionLostError as e:
            self._resolve_failure(name, FailureReason.CONNECTION_LOST, str(e))
            return
        except ControlBusError as e:
            # Keep waiting on property changes.
            logger.warning("final_property_read_failed", unit=name, error=str(e))
            pending.final_read_done = True
            self._evaluate(pending)
            return

        if pending.resolved or self._pending.get(name) is not pending:
            return
        pending.properties.update(props)
        pending.final_read_done = True
        self._evaluate(pending)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _remove(self, unit_name: str) -> Optional[PendingWait]:
        pending = self._pending.pop(unit_name, None)
        if pending is not None:
            self._by_path.pop(pending.unit_path, None)
        return pending

    def _resolve(self, pending: PendingWait, outcome: ExitOutcome) -> None:
        if self._pending.get(pending.unit_name) is not pending:
            return
        self._remove(pending.unit_name)
        pending.state = LaunchState.RESOLVED
        if pending.future.done():
            return
        pending.future.set_result(outcome)
        logger.info(
            "launch_resolved",
            unit=pending.unit_name,
            kind=outcome.kind.name,
            exit_code=outcome.exit_code,
            signal=outcome.signal,
            reason=outcome.reason.value if outcome.reason else None,
            host_result=outcome.host_result,
        )

    def _resolve_failure(self, unit_name: str, reason: FailureReason, detail: str) -> None:
        pending = self._pending.get(unit_name)
        if pending is None:
            return
        self._resolve(
            pending,
            ExitOutcome.orchestrator_failure(unit_name, reason, detail),
        )
