from __future__ import annotations


class FluxaError(Exception):
    """Base class for errors raised by fluxa."""


class ConfigurationError(FluxaError):
    """Invalid or incomplete configuration. Fatal at startup."""


class NotificationError(FluxaError):
    """An alert could not be delivered by a notification transport."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
