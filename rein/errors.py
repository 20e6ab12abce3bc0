"""Exception types and error serialization."""

from __future__ import annotations

import traceback
from typing import Any


class ProtocolViolation(RuntimeError):
    """The model stream referenced state that cannot exist.

    Raised while folding a stream part, e.g. a text delta with no open
    text part. Fatal for the turn being folded.
    """


class ReservedAbortReasonError(ValueError):
    """abort() was called with the reason reserved for steering."""


class ProviderError(RuntimeError):
    """The model backend failed (HTTP error or in-stream error event)."""

    def __init__(self, message: str, *, status_code: int | None = None, error_type: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_type = error_type


def serialize_error(error: BaseException | Any, _depth: int = 0) -> dict[str, Any]:
    """Convert an exception into a JSON-safe mapping.

    Follows ``__cause__`` (or ``__context__``) a few levels deep. Non-exception
    values are wrapped so tool code raising odd objects still serializes.
    """
    if not isinstance(error, BaseException):
        return {"name": type(error).__name__, "message": str(error)}

    data: dict[str, Any] = {
        "name": type(error).__name__,
        "message": str(error),
        "stack": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
    }
    for attr in ("status_code", "error_type"):
        value = getattr(error, attr, None)
        if value is not None:
            data[attr] = value

    cause = error.__cause__ or error.__context__
    if cause is not None and _depth < 5:
        data["cause"] = serialize_error(cause, _depth + 1)
    return data
