"""Pending prompt queues for steering and follow-up input."""

from __future__ import annotations

from rein.schemas import DequeueMode, Prompt


class PromptQueue:
    """Ordered queue of prompts waiting for the run-loop.

    Callers push; only the run-loop dequeues. Pushed prompts are copied so
    later changes on the caller's side have no effect.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._items: list[Prompt] = []

    def push(self, prompt: Prompt) -> None:
        self._items.append(Prompt.coerce(prompt))

    def dequeue(self, mode: DequeueMode) -> list[Prompt]:
        """Remove the oldest prompt (FIFO) or all prompts in order (ALL)."""
        if mode == DequeueMode.FIFO:
            return [self._items.pop(0)] if self._items else []
        items, self._items = self._items, []
        return items

    def requeue(self, prompts: list[Prompt]) -> None:
        """Put dequeued prompts back at the front, keeping their order."""
        self._items[:0] = prompts

    def clear(self) -> None:
        self._items = []

    def snapshot(self) -> tuple[Prompt, ...]:
        return tuple(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def __repr__(self) -> str:
        return f"PromptQueue({self.name!r}, size={len(self._items)})"
