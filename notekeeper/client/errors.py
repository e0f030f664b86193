from __future__ import annotations

from typing import Optional


class ClientError(Exception):
    """Base class for failures surfaced by the notekeeper client."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class APIError(ClientError):
    """The server answered with an error envelope."""

    def __init__(self, status: int, code: str, message: str, details: Optional[object] = None):
        super().__init__(message)
        self.status = status
        self.code = code
        self.details = details

    def __repr__(self) -> str:
        return f"APIError(status={self.status}, code={self.code!r}, message={self.message!r})"


class TransportError(ClientError):
    """The request never produced an HTTP response (DNS, connect, timeout)."""


class StorageError(ClientError):
    """Secure credential storage could not be read or written."""


__all__ = ["ClientError", "APIError", "TransportError", "StorageError"]
