"""Per-turn cancellation tokens with tagged cancel reasons.

Steering reuses the ordinary cancellation path, but its reason is a
distinct variant rather than a magic string, so no caller-supplied abort
reason can ever be mistaken for a steering request.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import StrEnum


class CancelKind(StrEnum):
    EXTERNAL = "external"
    STEER = "steer"


@dataclass(frozen=True)
class CancelReason:
    kind: CancelKind
    message: str | None = None

    @classmethod
    def external(cls, message: str | None = None) -> "CancelReason":
        return cls(CancelKind.EXTERNAL, message)

    @property
    def is_steer(self) -> bool:
        return self.kind is CancelKind.STEER


STEER_CANCEL = CancelReason(CancelKind.STEER)


class CancellationToken:
    """Cancellation signal for one model call and the tools it runs."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: CancelReason | None = None

    def cancel(self, reason: CancelReason | None = None) -> bool:
        """Cancel with ``reason``. Returns False if already cancelled (first reason wins)."""
        if self._event.is_set():
            return False
        self._reason = reason or CancelReason.external()
        self._event.set()
        return True

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> CancelReason | None:
        return self._reason

    async def wait(self) -> CancelReason | None:
        await self._event.wait()
        return self._reason
