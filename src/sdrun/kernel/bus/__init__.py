"""D-Bus control session and lifecycle events."""

from sdrun.kernel.bus.events import (
    SERVICE_INTERFACE,
    UNIT_INTERFACE,
    BusEvent,
    ConnectionLostEvent,
    JobRemovedEvent,
    UnitPropertiesChangedEvent,
)
from sdrun.kernel.bus.session import ControlBus, ControlBusSession, map_dbus_error, parse_signal

__all__ = [
    "ControlBus",
    "ControlBusSession",
    "map_dbus_error",
    "parse_signal",
    "BusEvent",
    "JobRemovedEvent",
    "UnitPropertiesChangedEvent",
    "ConnectionLostEvent",
    "UNIT_INTERFACE",
    "SERVICE_INTERFACE",
]
