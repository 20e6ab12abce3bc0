"""Tests for PromptQueue dequeue policies and copy-on-push."""

from rein.queues import PromptQueue
from rein.schemas import DequeueMode, Prompt


def _queue(*texts: str) -> PromptQueue:
    queue = PromptQueue("steering")
    for text in texts:
        queue.push(Prompt(text=text))
    return queue


class TestPromptQueue:
    def test_fifo_takes_oldest(self):
        queue = _queue("a", "b", "c")
        assert [p.text for p in queue.dequeue(DequeueMode.FIFO)] == ["a"]
        assert len(queue) == 2

    def test_all_drains_in_order(self):
        queue = _queue("a", "b", "c")
        assert [p.text for p in queue.dequeue(DequeueMode.ALL)] == ["a", "b", "c"]
        assert not queue

    def test_dequeue_empty(self):
        queue = PromptQueue("follow-up")
        assert queue.dequeue(DequeueMode.FIFO) == []
        assert queue.dequeue(DequeueMode.ALL) == []

    def test_push_copies_prompt(self):
        queue = PromptQueue("steering")
        original = Prompt(messages=({"role": "user", "content": "hi"},))
        queue.push(original)
        assert queue.snapshot()[0] == original
        assert queue.snapshot()[0] is not original

    def test_requeue_goes_to_front(self):
        queue = _queue("a", "b", "c")
        taken = queue.dequeue(DequeueMode.ALL)[:2]
        queue.push(Prompt(text="d"))
        queue.requeue(taken)
        assert [p.text for p in queue.snapshot()] == ["a", "b", "d"]

    def test_clear(self):
        queue = _queue("a", "b")
        queue.clear()
        assert len(queue) == 0
        assert queue.snapshot() == ()

    def test_repr(self):
        assert repr(_queue("a")) == "PromptQueue('steering', size=1)"
