"""Control-Bus Session - the one D-Bus connection to the service manager.

Owns exactly one ``dbus_fast`` connection. Request issuers may call into it
concurrently; lifecycle signals are funnelled into a single shared event
stream that exactly one consumer (the completion monitor) drains.

Signals are demultiplexed by payload, not filtered per launch: the match
rules and ``Manager.Subscribe`` are installed once at connect time, so no
event can fire before someone is listening for it.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence

import structlog
from dbus_fast import BusType, Message, MessageType, Variant
from dbus_fast.aio import MessageBus
from dbus_fast.errors import AuthError, InvalidAddressError

from sdrun.domain.errors import (
    ConnectionLostError,
    ControlBusError,
    NameCollisionError,
    PermissionDeniedError,
    RemoteRejectedError,
    UnitNotFoundError,
)
from sdrun.domain.units import BusTarget
from sdrun.kernel.bus.events import (
    SERVICE_INTERFACE,
    UNIT_INTERFACE,
    BusEvent,
    ConnectionLostEvent,
    JobRemovedEvent,
    UnitPropertiesChangedEvent,
)
from sdrun.kernel.units.capability_gate import UnitProperty
from sdrun.kernel.units.naming import UNIT_PATH_PREFIX, unit_object_path

logger = structlog.get_logger()

SYSTEMD_SERVICE = "org.freedesktop.systemd1"
SYSTEMD_PATH = "/org/freedesktop/systemd1"
MANAGER_INTERFACE = "org.freedesktop.systemd1.Manager"
PROPERTIES_INTERFACE = "org.freedesktop.DBus.Properties"

DBUS_SERVICE = "org.freedesktop.DBus"
DBUS_PATH = "/org/freedesktop/DBus"
DBUS_INTERFACE = "org.freedesktop.DBus"

MATCH_RULES = (
    "type='signal',sender='org.freedesktop.systemd1',"
    "path='/org/freedesktop/systemd1',"
    "interface='org.freedesktop.systemd1.Manager',member='JobRemoved'",
    "type='signal',sender='org.freedesktop.systemd1',"
    "path_namespace='/org/freedesktop/systemd1/unit',"
    "interface='org.freedesktop.DBus.Properties',member='PropertiesChanged'",
)

_NAME_COLLISION_ERRORS = frozenset({
    "org.freedesktop.systemd1.UnitExists",
})
_PERMISSION_ERRORS = frozenset({
    "org.freedesktop.DBus.Error.AccessDenied",
    "org.freedesktop.DBus.Error.AuthFailed",
    "org.freedesktop.DBus.Error.InteractiveAuthorizationRequired",
})
_CONNECTION_ERRORS = frozenset({
    "org.freedesktop.DBus.Error.Disconnected",
    "org.freedesktop.DBus.Error.NoReply",
    "org.freedesktop.DBus.Error.NoServer",
    "org.freedesktop.DBus.Error.ServiceUnknown",
    "org.freedesktop.DBus.Error.Timeout",
})
_NOT_FOUND_ERRORS = frozenset({
    "org.freedesktop.systemd1.NoSuchUnit",
    "org.freedesktop.DBus.Error.UnknownObject",
})
# Cleanup targets that are already gone are not failures.
_BENIGN_CLEANUP_ERRORS = _NOT_FOUND_ERRORS | frozenset({
    "org.freedesktop.systemd1.NoSuchProcess",
    "org.freedesktop.systemd1.NotReferenced",
})


def map_dbus_error(error_name: str, detail: str = "") -> ControlBusError:
    """Map a D-Bus error reply onto the orchestrator error taxonomy."""
    if error_name in _NAME_COLLISION_ERRORS:
        return NameCollisionError(detail or error_name)
    if error_name in _PERMISSION_ERRORS:
        return PermissionDeniedError(detail or error_name)
    if error_name in _CONNECTION_ERRORS:
        return ConnectionLostError(detail or error_name)
    if error_name in _NOT_FOUND_ERRORS:
        return UnitNotFoundError(error_name, detail)
    return RemoteRejectedError(error_name, detail)


def unwrap_variants(values: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: value.value if isinstance(value, Variant) else value
        for key, value in values.items()
    }


def parse_signal(message: Message) -> Optional[BusEvent]:
    """Translate a raw signal into a lifecycle event, or None if unrelated."""
    if message.message_type != MessageType.SIGNAL:
        return None

    if message.interface == MANAGER_INTERFACE and message.member == "JobRemoved":
        job_id, job_path, unit_name, result = message.body
        return JobRemovedEvent(
            job_id=int(job_id),
            job_path=str(job_path),
            unit_name=str(unit_name),
            result=str(result),
        )

    if (
        message.interface == PROPERTIES_INTERFACE
        and message.member == "PropertiesChanged"
        and (message.path or "").startswith(UNIT_PATH_PREFIX)
    ):
        interface, changed, invalidated = message.body
        if interface not in (UNIT_INTERFACE, SERVICE_INTERFACE):
            return None
        return UnitPropertiesChangedEvent(
            unit_path=message.path,
            interface=interface,
            changed=unwrap_variants(changed),
            invalidated=tuple(invalidated),
        )

    return None


class ControlBus(Protocol):
    """What the completion monitor and orchestrator need from a session."""

    @property
    def connected(self) -> bool: ...

    async def connect(self) -> "ControlBus": ...

    def is_tracking(self, name: str) -> bool: ...

    async def create_and_start(
        self, name: str, properties: Sequence[UnitProperty]
    ) -> str: ...

    def subscribe(self) -> AsyncIterator[BusEvent]: ...

    async def get_unit_properties(self, name: str) -> Dict[str, Any]: ...

    async def stop_and_cleanup(self, name: str) -> None: ...

    async def close(self) -> None: ...


class ControlBusSession:
    """The single shared connection to systemd's manager interface.

    Usage:
        session = await ControlBusSession(BusTarget.SESSION).connect()
        job = await session.create_and_start(name, properties)
        async for event in session.subscribe():
            ...
    """

    def __init__(
        self,
        bus: BusTarget = BusTarget.SYSTEM,
        *,
        bus_address: Optional[str] = None,
        start_mode: str = "fail",
    ):
        """Initialize the session.

        Args:
            bus: system-wide or per-user service manager
            bus_address: explicit D-Bus address, overrides ``bus``
            start_mode: job mode passed to ``StartTransientUnit``
        """
        self.bus_target = BusTarget(bus)
        self.bus_address = bus_address
        self.start_mode = start_mode

        self._bus: Optional[MessageBus] = None
        self._events: "asyncio.Queue[BusEvent]" = asyncio.Queue()
        self._subscribed = False
        self._lost = False
        self._watcher: Optional[asyncio.Task] = None
        # unit name -> whether AddRef was requested for it
        self._live_units: Dict[str, bool] = {}

    @property
    def connected(self) -> bool:
        return self._bus is not None and self._bus.connected and not self._lost

    def is_tracking(self, name: str) -> bool:
        return name in self._live_units

    async def connect(self) -> "ControlBusSession":
        """Open the connection, install match rules and subscribe.

        Raises:
            ConnectionLostError: the bus is unreachable
            PermissionDeniedError: the bus refused authentication
        """
        if self._bus is not None:
            return self

        bus_type = (
            BusType.SYSTEM if self.bus_target == BusTarget.SYSTEM else BusType.SESSION
        )
        try:
            self._bus = await MessageBus(
                bus_address=self.bus_address, bus_type=bus_type
            ).connect()
        except AuthError as e:
            raise PermissionDeniedError(f"bus authentication failed: {e}") from e
        except (OSError, InvalidAddressError) as e:
            raise ConnectionLostError(
                f"cannot connect to the {self.bus_target.value} bus: {e}"
            ) from e

        self._bus.add_message_handler(self._on_message)
        for rule in MATCH_RULES:
            await self._call(DBUS_SERVICE, DBUS_PATH, DBUS_INTERFACE, "AddMatch", "s", [rule])
        await self._call_manager("Subscribe")

        self._watcher = asyncio.ensure_future(self._watch_disconnect())
        logger.info(
            "control_bus_connected",
            bus=self.bus_target.value,
            unique_name=self._bus.unique_name,
        )
        return self

    async def close(self) -> None:
        """Drop the connection; the event stream ends with ConnectionLostEvent."""
        bus = self._bus
        if bus is None or self._lost:
            return
        bus.disconnect()
        if self._watcher is not None:
            await self._watcher

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def create_and_start(
        self,
        name: str,
        properties: Sequence[UnitProperty],
    ) -> str:
        """Create the transient unit and start it immediately.

        Returns:
            Object path of the start job

        Raises:
            NameCollisionError: the name already denotes a live unit
            PermissionDeniedError: the caller lacks rights
            ConnectionLostError: the bus is unreachable
            RemoteRejectedError: any other refusal
        """
        body = [
            name,
            self.start_mode,
            [[prop.name, Variant(prop.signature, prop.value)] for prop in properties],
            [],
        ]
        reply = await self._call_manager(
            "StartTransientUnit", "ssa(sv)a(sa(sv))", body
        )
        job_path = str(reply.body[0])
        self._live_units[name] = any(
            prop.name == "AddRef" and prop.value for prop in properties
        )
        logger.debug("transient_unit_started", unit=name, job=job_path)
        return job_path

    async def get_unit_properties(self, name: str) -> Dict[str, Any]:
        """Read the unit's Unit and Service property sets once."""
        path = unit_object_path(name)
        merged: Dict[str, Any] = {}
        for interface in (UNIT_INTERFACE, SERVICE_INTERFACE):
            reply = await self._call(
                SYSTEMD_SERVICE, path, PROPERTIES_INTERFACE, "GetAll", "s", [interface]
            )
            merged.update(unwrap_variants(reply.body[0]))
        return merged

    async def stop_and_cleanup(self, name: str) -> None:
        """Kill, stop and unload the unit. Safe to call on a unit that is gone.

        Raises:
            ControlBusError: a step failed for a reason other than the unit
                (or its processes) no longer existing
        """
        add_ref = self._live_units.get(name, False)
        steps = [
            ("KillUnit", "ssi", [name, "all", int(signal.SIGKILL)]),
            ("StopUnit", "ss", [name, "replace"]),
            ("ResetFailedUnit", "s", [name]),
        ]
        if add_ref:
            steps.append(("UnrefUnit", "s", [name]))

        try:
            for member, signature, body in steps:
                try:
                    await self._call_manager(member, signature, body)
                except RemoteRejectedError as e:
                    if e.error_name not in _BENIGN_CLEANUP_ERRORS:
                        raise
                    logger.debug(
                        "cleanup_step_skipped", unit=name, step=member, error=e.error_name
                    )
        finally:
            self._live_units.pop(name, None)

    # ------------------------------------------------------------------
    # Event stream
    # ------------------------------------------------------------------

    def subscribe(self) -> AsyncIterator[BusEvent]:
        """The shared, non-restartable lifecycle event stream."""
        if self._subscribed:
            raise RuntimeError("the control bus event stream has a consumer already")
        self._subscribed = True
        return self._iter_events()

    async def _iter_events(self) -> AsyncIterator[BusEvent]:
        while True:
            event = await self._events.get()
            yield event
            if isinstance(event, ConnectionLostEvent):
                return

    def _on_message(self, message: Message) -> None:
        try:
            event = parse_signal(message)
        except (TypeError, ValueError) as e:
            logger.warning(
                "malformed_signal_ignored",
                member=message.member,
                path=message.path,
                error=str(e),
            )
            return
        if event is not None:
            self._events.put_nowait(event)

    async def _watch_disconnect(self) -> None:
        reason = "closed"
        try:
            await self._bus.wait_for_disconnect()
        except Exception as e:  # the error that tore the connection down
            reason = f"{type(e).__name__}: {e}"
        self._lost = True
        logger.warning("control_bus_disconnected", bus=self.bus_target.value, reason=reason)
        self._events.put_nowait(ConnectionLostEvent(reason=reason))

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _call_manager(
        self,
        member: str,
        signature: str = "",
        body: Optional[List[Any]] = None,
    ) -> Message:
        return await self._call(
            SYSTEMD_SERVICE, SYSTEMD_PATH, MANAGER_INTERFACE, member, signature, body
        )

    async def _call(
        self,
        destination: str,
        path: str,
        interface: str,
        member: str,
        signature: str = "",
        body: Optional[List[Any]] = None,
    ) -> Message:
        if self._bus is None or self._lost:
            raise ConnectionLostError("control bus is not connected")

        message = Message(
            destination=destination,
            path=path,
            interface=interface,
            member=member,
            signature=signature,
            body=body or [],
        )
        try:
            reply = await self._bus.call(message)
        except (EOFError, OSError) as e:
            raise ConnectionLostError(f"{member}: {e}") from e
        except Exception as e:
            if not self._bus.connected:
                raise ConnectionLostError(f"{member}: {e}") from e
            raise

        if reply is None:
            raise ConnectionLostError(f"{member}: connection closed before reply")
        if reply.message_type == MessageType.ERROR:
            detail = ""
            if reply.body and isinstance(reply.body[0], str):
                detail = reply.body[0]
            raise map_dbus_error(reply.error_name or "", detail)
        return reply
