"""Logging helpers for agents.

Every agent logs through an AgentLogger so records carry the agent id,
both as a message prefix and as ``record.agent_id`` for handlers that
want structured output.
"""

from __future__ import annotations

import logging
from collections.abc import MutableMapping
from typing import Any

from rein.config import Settings

LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"


class AgentLogger(logging.LoggerAdapter):
    """LoggerAdapter that tags records with the owning agent id."""

    def __init__(self, logger: logging.Logger, agent_id: str) -> None:
        super().__init__(logger, {"agent_id": agent_id})

    @property
    def agent_id(self) -> str:
        return self.extra["agent_id"]

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("agent_id", self.agent_id)
        kwargs["extra"] = extra
        return f"[{self.agent_id}] {msg}", kwargs


def configure_logging(settings: Settings) -> None:
    """Configure root logging from settings."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
