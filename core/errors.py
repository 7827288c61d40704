from __future__ import annotations

from typing import Optional


class BridgeError(Exception):
    """Base class for bridge failures surfaced to callers."""


class AssistantAPIError(BridgeError):
    """The assistant server answered with a non-success status."""

    def __init__(self, status: int, message: str, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.path = path

    def __str__(self) -> str:
        if self.path:
            return f"{self.message} (status={self.status}, path={self.path})"
        return f"{self.message} (status={self.status})"


class SessionProvisionError(BridgeError):
    """Session creation returned no usable id."""
