"""Lifecycle events delivered on the shared subscription stream."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union

UNIT_INTERFACE = "org.freedesktop.systemd1.Unit"
SERVICE_INTERFACE = "org.freedesktop.systemd1.Service"


@dataclass(frozen=True)
class JobRemovedEvent:
    """``Manager.JobRemoved``: a queued job finished.

    ``result`` is one of ``done``, ``canceled``, ``timeout``, ``failed``,
    ``dependency``, ``skipped``.
    """

    job_id: int
    job_path: str
    unit_name: str
    result: str


@dataclass(frozen=True)
class UnitPropertiesChangedEvent:
    """``PropertiesChanged`` on a unit object, values already unwrapped."""

    unit_path: str
    interface: str
    changed: Dict[str, Any] = field(default_factory=dict)
    invalidated: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ConnectionLostEvent:
    """Terminal event: the bus connection is gone, the stream ends."""

    reason: Optional[str] = None


BusEvent = Union[JobRemovedEvent, UnitPropertiesChangedEvent, ConnectionLostEvent]
