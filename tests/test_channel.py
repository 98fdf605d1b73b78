"""Reliable channel and timeout guard tests -- scripted byte streams."""

import threading
import time
from unittest.mock import patch

import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from pli import (
    write_all,
    read_exact,
    build_frame,
    TimeoutGuard,
    TimeoutAction,
    ChannelError,
    IncompleteTransfer,
    TransferTimeout,
    Status,
    RETRY,
    SETTLE_DELAY,
)


class ChunkedStream:
    """Accepts at most ``limit`` bytes per write and returns reads in ``limit`` chunks."""

    def __init__(self, limit, incoming=b""):
        self.limit = limit
        self.written = bytearray()
        self.incoming = bytearray(incoming)
        self.calls = 0

    def write(self, data):
        self.calls += 1
        accepted = bytes(data[:self.limit])
        self.written += accepted
        return len(accepted)

    def read(self, size):
        self.calls += 1
        chunk = bytes(self.incoming[:min(size, self.limit)])
        del self.incoming[:len(chunk)]
        return chunk


class ScriptedStream:
    """Write/read results follow a script; an int is a write count."""

    def __init__(self, script):
        self.script = list(script)
        self.calls = 0

    def write(self, data):
        self.calls += 1
        return self.script.pop(0)

    def read(self, size):
        self.calls += 1
        return self.script.pop(0)


class StuckStream:
    """Never moves a byte."""

    def __init__(self):
        self.calls = 0

    def write(self, data):
        self.calls += 1
        return 0

    def read(self, size):
        self.calls += 1
        return b""


class BrokenStream:
    def __init__(self):
        self.calls = 0

    def write(self, data):
        self.calls += 1
        raise OSError(5, "Input/output error")

    def read(self, size):
        self.calls += 1
        raise OSError(5, "Input/output error")


class SlowStream:
    """Blocks on read until cancelled or ``delay`` passes."""

    def __init__(self, delay, data=b""):
        self.delay = delay
        self.data = data
        self.cancelled = threading.Event()

    def read(self, size):
        if self.cancelled.wait(self.delay):
            return b""
        return self.data[:size]

    def cancel_read(self):
        self.cancelled.set()


FRAME = build_frame(0x14, 0x32)


# ---------------------------------------------------------------------------
# write_all
# ---------------------------------------------------------------------------

class TestWriteAll:

    def test_single_write(self):
        stream = ChunkedStream(limit=4)
        write_all(stream, FRAME, settle=0)
        assert bytes(stream.written) == FRAME
        assert stream.calls == 1

    def test_partial_writes_accumulate(self):
        """A stream taking N-1 bytes per call still gets the whole frame, in order."""
        stream = ChunkedStream(limit=3)
        write_all(stream, FRAME, settle=0)
        assert bytes(stream.written) == FRAME
        assert stream.calls == 2

    def test_one_byte_at_a_time(self):
        stream = ChunkedStream(limit=1)
        write_all(stream, FRAME, settle=0)
        assert bytes(stream.written) == FRAME
        assert stream.calls == 4

    def test_stalls_within_budget(self):
        stream = ScriptedStream([0, None, 2, 0, 2])
        write_all(stream, FRAME, settle=0)
        assert stream.calls == 5

    def test_no_progress_is_incomplete_transfer(self):
        stream = StuckStream()
        with pytest.raises(IncompleteTransfer):
            write_all(stream, FRAME, settle=0)
        assert stream.calls == RETRY + 1

    def test_os_error_not_retried(self):
        stream = BrokenStream()
        with pytest.raises(ChannelError, match="Could not write command"):
            write_all(stream, FRAME, settle=0)
        assert stream.calls == 1

    def test_settle_delay_after_write(self):
        stream = ChunkedStream(limit=4)
        with patch("pli.time.sleep") as sleep:
            write_all(stream, FRAME)
        sleep.assert_called_once_with(SETTLE_DELAY)

    def test_no_settle_delay_after_failure(self):
        with patch("pli.time.sleep") as sleep:
            with pytest.raises(IncompleteTransfer):
                write_all(StuckStream(), FRAME)
        sleep.assert_not_called()


# ---------------------------------------------------------------------------
# read_exact
# ---------------------------------------------------------------------------

class TestReadExact:

    def test_full_read(self):
        stream = ChunkedStream(limit=2, incoming=b"\xC8\x42")
        assert read_exact(stream, 2) == b"\xC8\x42"

    def test_partial_reads_accumulate(self):
        stream = ChunkedStream(limit=1, incoming=b"\xC8\x42")
        assert read_exact(stream, 2) == b"\xC8\x42"
        assert stream.calls == 2

    def test_stalls_within_budget(self):
        stream = ScriptedStream([b"", b"\xC8", b"", b"", b"\x07"])
        assert read_exact(stream, 2) == b"\xC8\x07"

    def test_no_progress_is_incomplete_transfer(self):
        stream = StuckStream()
        with pytest.raises(IncompleteTransfer, match="complete response"):
            read_exact(stream, 2)
        assert stream.calls == RETRY + 1

    def test_os_error_not_retried(self):
        stream = BrokenStream()
        with pytest.raises(ChannelError, match="Could not read response"):
            read_exact(stream, 2)
        assert stream.calls == 1

    def test_timeout_cancels_pending_read(self):
        stream = SlowStream(delay=2.0)
        start = time.monotonic()
        with pytest.raises(TransferTimeout):
            read_exact(stream, 2, wait=0.05)
        assert stream.cancelled.is_set()
        assert time.monotonic() - start < 1.0

    def test_timeout_without_cancel_support(self):
        class Sluggish:
            def read(self, size):
                time.sleep(0.1)
                return b""

        with pytest.raises(TransferTimeout):
            read_exact(Sluggish(), 2, wait=0.02)

    def test_transport_errors_report_communication_status(self):
        assert TransferTimeout("x").status is Status.COMMUNICATION_ERROR
        assert IncompleteTransfer("x").status is Status.COMMUNICATION_ERROR
        assert ChannelError("x").status is Status.COMMUNICATION_ERROR


# ---------------------------------------------------------------------------
# TimeoutGuard
# ---------------------------------------------------------------------------

class TestTimeoutGuard:

    def test_disarmed_after_success(self):
        fired = []
        with TimeoutGuard(0.05, "late", on_expire=lambda: fired.append(1)) as guard:
            assert guard.armed
        assert not guard.armed
        time.sleep(0.1)
        assert not guard.expired
        assert fired == []

    def test_disarmed_after_error(self):
        fired = []
        guard = TimeoutGuard(0.05, "late", on_expire=lambda: fired.append(1))
        with pytest.raises(RuntimeError):
            with guard:
                raise RuntimeError("boom")
        assert not guard.armed
        time.sleep(0.1)
        assert fired == []

    def test_earlier_call_does_not_affect_later_one(self):
        """A short deadline from one transfer never reaches the next transfer."""
        fast = ChunkedStream(limit=2, incoming=b"\xC8\x01")
        assert read_exact(fast, 2, wait=0.05) == b"\xC8\x01"

        slow = SlowStream(delay=0.15, data=b"\xC8\x02")
        assert read_exact(slow, 2, wait=1.0) == b"\xC8\x02"
        assert not slow.cancelled.is_set()

    def test_fail_action_raises_transfer_timeout(self):
        with TimeoutGuard(0.01, "Timeout while reading response.") as guard:
            time.sleep(0.05)
            with pytest.raises(TransferTimeout, match="reading response"):
                guard.check()

    def test_exit_action_leaves_process(self, capsys):
        with TimeoutGuard(0.01, "Timeout while waiting for lock.",
                          action=TimeoutAction.EXIT) as guard:
            time.sleep(0.05)
            with pytest.raises(SystemExit) as exc:
                guard.check()
        assert exc.value.code == Status.LOCAL_ERROR
        assert "Timeout while waiting for lock." in capsys.readouterr().err

    def test_exit_waits_for_running_expiry(self):
        """Cancelling pending I/O has finished by the time the guarded block is left."""
        started = threading.Event()
        done = []

        def slow_cancel():
            started.set()
            time.sleep(0.1)
            done.append(1)

        with TimeoutGuard(0.01, "late", on_expire=slow_cancel):
            assert started.wait(1.0)
        assert done == [1]

    def test_no_expiry_after_exit(self):
        fired = []
        guard = TimeoutGuard(5, "late", on_expire=lambda: fired.append(1))
        with guard:
            pass
        guard._fire()
        assert fired == []
        assert not guard.expired

    def test_check_before_deadline_is_noop(self):
        with TimeoutGuard(5, "late") as guard:
            guard.check()
        assert not guard.expired

    def test_reusable(self):
        guard = TimeoutGuard(0.01, "late")
        with guard:
            time.sleep(0.05)
        assert guard.expired
        with guard:
            assert not guard.expired
