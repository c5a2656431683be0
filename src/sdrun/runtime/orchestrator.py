"""
Transient Unit Orchestrator - the public launch API.

Pipeline per launch:
    build_spec -> CapabilityGate.translate -> UnitNamer.generate
    -> CompletionMonitor.register -> create_and_start -> LaunchGuard

Everything before ``create_and_start`` is local: invalid or unsupported
requests fail without touching the bus.
"""

from __future__ import annotations

import asyncio
import weakref
from typing import Any, Optional, Set

import structlog

from sdrun.config import settings
from sdrun.domain.capability import CapabilityLevel
from sdrun.domain.errors import ControlBusError
from sdrun.domain.outcome import ExitOutcome
from sdrun.domain.units import BusTarget, UnitSpec
from sdrun.kernel.bus.session import ControlBus, ControlBusSession
from sdrun.kernel.units.capability_gate import CapabilityGate
from sdrun.kernel.units.naming import UnitNamer
from sdrun.kernel.units.spec_builder import build_spec
from sdrun.runtime.completion_monitor import CompletionMonitor
from sdrun.runtime.lifecycle_guard import LaunchGuard, cleanup_unit

logger = structlog.get_logger()


class TransientUnitOrchestrator:
    """Runs processes as transient systemd units and reports their outcome.

    Usage:
        async with TransientUnitOrchestrator(bus=BusTarget.SESSION) as orch:
            outcome = await orch.run(UnitSpec("/bin/true"))
    """

    def __init__(
        self,
        capability_level: "CapabilityLevel | str | None" = None,
        *,
        unified_cgroup: Optional[bool] = None,
        bus: "BusTarget | str | None" = None,
        bus_address: Optional[str] = None,
        unit_prefix: Optional[str] = None,
        start_mode: Optional[str] = None,
        cleanup_timeout: Optional[float] = None,
        session: Optional[ControlBus] = None,
    ):
        """Initialize the orchestrator.

        Args:
            capability_level: host feature level, defaults to settings
            unified_cgroup: host runs the unified cgroup hierarchy
            bus: system or per-user service manager
            bus_address: explicit bus address, overrides ``bus``
            unit_prefix: prefix of generated unit names
            start_mode: job mode for the start request
            cleanup_timeout: upper bound of one teardown, in seconds
            session: pre-built control bus (tests inject a fake here)
        """
        bus_target = BusTarget(bus if bus is not None else settings.bus)
        self.gate = CapabilityGate(
            capability_level if capability_level is not None else settings.capability_level,
            unified_cgroup=(
                unified_cgroup if unified_cgroup is not None else settings.unified_cgroup
            ),
            bus=bus_target,
        )
        self.session: ControlBus = session or ControlBusSession(
            bus_target,
            bus_address=bus_address if bus_address is not None else settings.bus_address,
            start_mode=start_mode or settings.start_mode,
        )
        self.monitor = CompletionMonitor(self.session)
        self.namer = UnitNamer(
            unit_prefix or settings.unit_prefix,
            in_use=self._name_in_use,
        )
        self.cleanup_timeout = (
            cleanup_timeout if cleanup_timeout is not None
            else settings.cleanup_timeout_seconds
        )

        self._guards: "weakref.WeakSet[LaunchGuard]" = weakref.WeakSet()
        self._background_cleanups: Set[asyncio.Task] = set()
        self._connect_lock = asyncio.Lock()
        self._connected = False
        self._closed = False

    @property
    def capability_level(self) -> CapabilityLevel:
        return self.gate.level

    @property
    def live_launches(self) -> int:
        return sum(1 for guard in self._guards if not guard.released)

    def _name_in_use(self, name: str) -> bool:
        return self.monitor.is_pending(name) or self.session.is_tracking(name)

    async def connect(self) -> "TransientUnitOrchestrator":
        """Connect the control bus and start consuming lifecycle events."""
        async with self._connect_lock:
            if self._closed:
                raise RuntimeError("orchestrator is closed")
            if not self._connected:
                await self.session.connect()
                self.monitor.start()
                self._connected = True
                logger.info(
                    "orchestrator_connected",
                    capability_level=self.gate.level.value,
                    bus=self.gate.bus.value,
                )
        return self

    async def start(self, spec: UnitSpec, **overrides: Any) -> LaunchGuard:
        """Validate, translate and start ``spec`` as a fresh transient unit.

        Returns:
            The guard owning the unit; await ``guard.wait()`` for the outcome

        Raises:
            InvalidSpecError: the request failed local validation
            UnsupportedLimitError: the host level cannot honour a setting
            ControlBusError: the service manager refused or the bus is gone
        """
        spec = build_spec(spec, **overrides)
        properties = self.gate.translate(spec)

        if not self._connected:
            await self.connect()
        if self._closed:
            raise RuntimeError("orchestrator is closed")

        name = self.namer.generate()
        pending = self.monitor.register(name)
        try:
            job_path = await self.session.create_and_start(name, properties)
        except asyncio.CancelledError:
            # The request may already have reached the manager.
            self._cleanup_in_background(name)
            raise
        except ControlBusError as e:
            self.monitor.discard(name)
            logger.warning(
                "launch_start_failed",
                unit=name,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise
        except Exception:
            self.monitor.discard(name)
            logger.exception("launch_start_crashed", unit=name)
            raise

        self.monitor.attach_job(name, job_path)
        guard = LaunchGuard(
            pending,
            self.monitor,
            self.session,
            cleanup_timeout=self.cleanup_timeout,
            background=self._background_cleanups,
        )
        self._guards.add(guard)
        logger.info("launch_started", unit=name, job=job_path, executable=spec.executable)
        return guard

    async def wait(self, handle: LaunchGuard) -> ExitOutcome:
        return await handle.wait()

    async def run(self, spec: UnitSpec, **overrides: Any) -> ExitOutcome:
        """Start, wait and clean up in one call."""
        guard = await self.start(spec, **overrides)
        async with guard:
            return await guard.wait()

    def _cleanup_in_background(self, name: str) -> None:
        task = asyncio.ensure_future(
            cleanup_unit(self.session, self.monitor, name, self.cleanup_timeout)
        )
        self._background_cleanups.add(task)
        task.add_done_callback(self._background_cleanups.discard)

    async def aclose(self) -> None:
        """Fail pending waits with SHUTDOWN, tear down every unit, disconnect."""
        if self._closed:
            return
        self._closed = True

        await self.monitor.shutdown()
        guards = [guard for guard in self._guards]
        if guards:
            logger.info("releasing_launches", count=len(guards))
            await asyncio.gather(*(guard.release() for guard in guards))
        # Finalizers of dropped guards schedule their cleanup via call_soon.
        await asyncio.sleep(0)
        while self._background_cleanups:
            await asyncio.gather(*list(self._background_cleanups))
        if self._connected:
            await self.session.close()
        logger.info("orchestrator_closed")

    async def __aenter__(self) -> "TransientUnitOrchestrator":
        return await self.connect()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
