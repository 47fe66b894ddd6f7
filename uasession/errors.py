# uasession/errors.py
"""
Exception taxonomy for the session layer.

Every public operation either returns a well-formed result or raises one of
these. Batch operations raise an AggregateFailure subclass that keeps the
per-element failures so callers can tell which elements went wrong.
"""

from __future__ import annotations

from typing import Any

from asyncua.ua import status_codes

__all__ = [
    "UaSessionError",
    "ConfigurationError",
    "NoActiveSession",
    "ServiceFault",
    "SessionLost",
    "AggregateFailure",
    "RegistrationFailure",
    "BatchFailure",
    "TypeResolutionError",
    "UnsupportedType",
    "NoEncodingFound",
    "TypeNotFound",
    "UnknownEncoding",
]


class UaSessionError(Exception):
    """Base class for all session-layer errors."""


class ConfigurationError(UaSessionError):
    """Client configuration or application identity is missing or invalid."""


class NoActiveSession(UaSessionError):
    """Operation attempted while disconnected or while a reconnect is in progress."""


class SessionLost(UaSessionError):
    """The reconnect window elapsed without re-establishing the session."""


class ServiceFault(UaSessionError):
    """The server answered a service call with a bad status code."""

    def __init__(self, status_code: int, message: str = ""):
        self.status_code = int(status_code)
        self.status_name = status_name(self.status_code)
        text = f"{self.status_name} (0x{self.status_code:08X})"
        if message:
            text = f"{message}: {text}"
        super().__init__(text)


class AggregateFailure(UaSessionError):
    """Several elements of one batch failed.

    Attributes:
        failures: (key, exception) pairs, one per failed element. The key is
            whatever identifies the element to the caller (node id, index).
    """

    def __init__(self, message: str, failures: list[tuple[Any, Exception]]):
        self.failures = list(failures)
        detail = ", ".join(f"{key}: {exc}" for key, exc in self.failures)
        super().__init__(f"{message} [{detail}]" if detail else message)

    @property
    def keys(self) -> list[Any]:
        """Keys of the elements that failed, in batch order."""
        return [key for key, _ in self.failures]


class RegistrationFailure(AggregateFailure):
    """Some identifiers could not be registered with the server."""


class BatchFailure(AggregateFailure):
    """Some elements of a read, write, call, browse or decode batch failed."""


class TypeResolutionError(UaSessionError):
    """Base class for custom data type resolution errors."""


class UnsupportedType(TypeResolutionError):
    """The node is not a variable, so it has no data type to resolve."""


class NoEncodingFound(TypeResolutionError):
    """The data type has no binary, XML or JSON encoding node."""


class TypeNotFound(TypeResolutionError):
    """No type descriptor is known for the resolved type name."""


class UnknownEncoding(TypeResolutionError):
    """An extension object carries an encoding tag that cannot be decoded."""


def status_name(status_code: int) -> str:
    """Symbolic name of a status code, e.g. ``BadSessionIdInvalid``."""
    name, _doc = status_codes.get_name_and_doc(status_code)
    return name
