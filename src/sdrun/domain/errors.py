"""Domain errors."""

from __future__ import annotations

from typing import Optional


class SdRunError(Exception):
    """Base error."""
    pass


class InvalidSpecError(SdRunError):
    """Launch request failed local validation; no I/O was attempted."""
    pass


class UnsupportedLimitError(SdRunError):
    """A requested limit is not legal at the configured capability level."""

    def __init__(self, limit_kind: str, required: str, message: Optional[str] = None):
        self.limit_kind = limit_kind
        self.required = required
        super().__init__(
            message or f"{limit_kind} requires capability {required}"
        )


class ControlBusError(SdRunError):
    """Control bus request failed."""
    pass


class NameCollisionError(ControlBusError):
    """The unit name already denotes a live unit."""
    pass


class PermissionDeniedError(ControlBusError):
    """Caller lacks the rights for the requested unit operation."""
    pass


class ConnectionLostError(ControlBusError):
    """The control bus is unreachable or the connection dropped."""
    pass


class RemoteRejectedError(ControlBusError):
    """Any other protocol-level refusal, carrying the host's detail."""

    def __init__(self, error_name: str, detail: str = ""):
        self.error_name = error_name
        self.detail = detail
        super().__init__(f"{error_name}: {detail}" if detail else error_name)


class UnitNotFoundError(RemoteRejectedError):
    """The unit (or its object) no longer exists on the host."""
    pass
