"""tests/unit/test_command_queue.py — CommandQueue ordering and failure handling."""

from cvline.core.exceptions import PipeBusy, PipeWriteError
from cvline.supervisor.command_queue import CommandQueue


def make_queue(*commands: str) -> CommandQueue:
    q = CommandQueue()
    for c in commands:
        q.enqueue(c)
    return q


class TestCommandQueue:
    def test_drain_fifo_order(self):
        q = make_queue("a", "b", "c")
        written = []
        assert q.drain(written.append) == 3
        assert written == ["a", "b", "c"]
        assert len(q) == 0
        assert not q

    def test_drain_empty_is_noop(self):
        written = []
        assert CommandQueue().drain(written.append) == 0
        assert written == []

    def test_failure_keeps_failed_and_remaining(self):
        q = make_queue("a", "b", "c")
        written = []

        def writer(cmd):
            if cmd == "b":
                raise PipeWriteError("fifo not open")
            written.append(cmd)

        assert q.drain(writer) == 1
        assert written == ["a"]
        assert q.pending() == ["b", "c"]

    def test_retry_after_failure_delivers_exactly_once(self):
        q = make_queue("a", "b")
        fail = {"on": True}
        written = []

        def writer(cmd):
            if fail["on"]:
                raise PipeWriteError("down")
            written.append(cmd)

        q.drain(writer)
        fail["on"] = False
        q.drain(writer)
        q.drain(writer)
        assert written == ["a", "b"]

    def test_pending_is_a_copy(self):
        q = make_queue("a")
        q.pending().append("b")
        assert q.pending() == ["a"]

    def test_busy_pipe_pauses_drain(self):
        q = make_queue("a", "b")

        def busy(command):
            raise PipeBusy("full")

        assert q.drain(busy) == 0
        assert q.pending() == ["a", "b"]
