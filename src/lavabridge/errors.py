"""Exceptions reported on node and player signals."""

from __future__ import annotations

from typing import Any, Optional

__all__ = [
    "LinkError",
    "ParseError",
    "SerializeError",
    "ConnectionFailure",
]


class LinkError(RuntimeError):
    """Base error for the node link."""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.__cause__ = cause
        self.cause = cause


class ParseError(LinkError):
    """Raised when an inbound frame is not valid JSON."""

    def __init__(
        self, message: str, *, frame: Any = None, cause: Optional[BaseException] = None
    ):
        super().__init__(message, cause=cause)
        self.frame = frame


class SerializeError(LinkError):
    """Raised when an outbound payload cannot be encoded."""

    def __init__(
        self,
        message: str,
        *,
        payload: Any = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message, cause=cause)
        self.payload = payload


class ConnectionFailure(LinkError):
    """Raised when connecting to a node fails for a non-transient reason."""

    def __init__(
        self, message: str, *, host: str, cause: Optional[BaseException] = None
    ):
        super().__init__(message, cause=cause)
        self.host = host

