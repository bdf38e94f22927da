"""Exceptions raised by gateways and mapped to error replies by the router."""

from typing import Any


class BridgeError(Exception):
    """Base class for failures reported back to the client as an error message."""

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class CallerError(BridgeError):
    """The request was malformed; no backend call was attempted."""


class BackendError(BridgeError):
    """A backend call failed and the operation does not fall back to mock data."""


class StorageError(BridgeError):
    """Writing or reading an uploaded file failed."""
