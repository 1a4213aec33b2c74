"""
Tests for ChunkBuffer and the Pipe byte pump.

Pipes are exercised with plain os.pipe() pairs standing in for role stdout/stdin.
"""

import os
import select

import pytest

from radiowatch.pipeline.chunk_buffer import ChunkBuffer
from radiowatch.pipeline.events import OutputObserved
from radiowatch.pipeline.pipe import Pipe
from radiowatch.roles import Role
from radiowatch.tests.contracts._watchdog_harness import wait_until


class TestChunkBuffer:

    def test_fifo_order(self):
        buf = ChunkBuffer(100)
        buf.push(b"abc")
        buf.push(b"def")
        assert buf.peek() == b"abc"
        buf.consume(3)
        assert buf.peek() == b"def"
        assert len(buf) == 3

    def test_partial_consume(self):
        buf = ChunkBuffer(100)
        buf.push(b"abcdef")
        buf.consume(2)
        assert buf.peek() == b"cdef"
        assert len(buf) == 4

    def test_drops_oldest_when_full(self):
        buf = ChunkBuffer(10)
        buf.push(b"aaaa")
        buf.push(b"bbbb")
        buf.push(b"cccc")
        assert buf.peek() == b"bbbb"
        stats = buf.stats()
        assert stats.buffered_bytes == 8
        assert stats.dropped_bytes == 4
        assert stats.chunks == 2

    def test_oversized_chunk_keeps_newest_tail(self):
        buf = ChunkBuffer(4)
        buf.push(b"0123456789")
        assert buf.peek() == b"6789"
        assert buf.stats().dropped_bytes == 6

    def test_rejects_empty_chunk_and_bad_capacity(self):
        with pytest.raises(ValueError):
            ChunkBuffer(0)
        with pytest.raises(ValueError):
            ChunkBuffer(10).push(b"")

    def test_clear(self):
        buf = ChunkBuffer(10)
        buf.push(b"abc")
        buf.clear()
        assert buf.is_empty()
        assert buf.peek() is None


def _read_available(fd, expected, timeout=2.0):
    """Read from fd until expected bytes arrived or timeout."""
    received = bytearray()

    def _poll():
        ready, _, _ = select.select([fd], [], [], 0.05)
        if ready:
            received.extend(os.read(fd, 65536))
        return len(received) >= expected

    wait_until(_poll, timeout=timeout, interval=0)
    return bytes(received)


@pytest.fixture
def os_pipes():
    """Two (read_file, write_fd) style pipe pairs: source and sink."""
    opened = []

    def _make():
        r, w = os.pipe()
        opened.extend([r, w])
        return r, w

    yield _make
    for fd in opened:
        try:
            os.close(fd)
        except OSError:
            pass


class TestPipePump:

    def test_bytes_flow_from_source_to_sink(self, thread_leak_guard, os_pipes):
        src_r, src_w = os_pipes()
        sink_r, sink_w = os_pipes()
        posted = []
        pipe = Pipe("DECODE->TRANSCODE", Role.DECODE, Role.TRANSCODE, post=posted.append)
        pipe.start()
        try:
            pipe.attach_source(os.fdopen(src_r, "rb", buffering=0, closefd=False), 1)
            pipe.attach_sink(os.fdopen(sink_w, "wb", buffering=0, closefd=False), 1)
            os.write(src_w, b"hello radio")
            assert _read_available(sink_r, 11) == b"hello radio"
            assert wait_until(lambda: posted)
            assert posted == [OutputObserved(Role.DECODE, 1)]
            assert pipe.bytes_read == 11
        finally:
            pipe.stop()

    def test_first_output_reported_once_per_generation(self, thread_leak_guard, os_pipes):
        src_r, src_w = os_pipes()
        posted = []
        pipe = Pipe("FORWARD->discard", Role.FORWARD, None, post=posted.append)
        pipe.start()
        try:
            source = os.fdopen(src_r, "rb", buffering=0, closefd=False)
            pipe.attach_source(source, 1)
            os.write(src_w, b"a")
            assert wait_until(lambda: pipe.bytes_read == 1)
            os.write(src_w, b"b")
            assert wait_until(lambda: pipe.bytes_read == 2)
            pipe.detach_source()
            pipe.attach_source(source, 2)
            os.write(src_w, b"c")
            assert wait_until(lambda: len(posted) == 2)
            assert posted == [OutputObserved(Role.FORWARD, 1), OutputObserved(Role.FORWARD, 2)]
        finally:
            pipe.stop()

    def test_detached_sink_buffers_until_reattached(self, thread_leak_guard, os_pipes):
        src_r, src_w = os_pipes()
        sink_r, sink_w = os_pipes()
        pipe = Pipe("DECODE->TRANSCODE", Role.DECODE, Role.TRANSCODE, post=lambda e: None)
        pipe.start()
        try:
            pipe.attach_source(os.fdopen(src_r, "rb", buffering=0, closefd=False), 1)
            os.write(src_w, b"x" * 5000)
            assert wait_until(lambda: pipe.backlog_stats().buffered_bytes == 5000)

            generation = pipe.generation
            pipe.attach_sink(os.fdopen(sink_w, "wb", buffering=0, closefd=False), 7)
            assert _read_available(sink_r, 5000) == b"x" * 5000
            pipe.detach_sink()
            assert pipe.generation == generation + 1
            assert not pipe.sink_attached
        finally:
            pipe.stop()

    def test_source_eof_stops_reading(self, thread_leak_guard, os_pipes):
        src_r, src_w = os_pipes()
        pipe = Pipe("DECODE->TRANSCODE", Role.DECODE, Role.TRANSCODE, post=lambda e: None)
        pipe.start()
        try:
            pipe.attach_source(os.fdopen(src_r, "rb", buffering=0, closefd=False), 1)
            os.close(src_w)
            assert wait_until(lambda: not pipe.source_attached)
        finally:
            pipe.stop()

    def test_broken_sink_is_dropped(self, thread_leak_guard, os_pipes):
        src_r, src_w = os_pipes()
        sink_r, sink_w = os_pipes()
        pipe = Pipe("DECODE->TRANSCODE", Role.DECODE, Role.TRANSCODE, post=lambda e: None)
        pipe.start()
        try:
            pipe.attach_source(os.fdopen(src_r, "rb", buffering=0, closefd=False), 1)
            pipe.attach_sink(os.fdopen(sink_w, "wb", buffering=0, closefd=False), 1)
            os.close(sink_r)
            os.write(src_w, b"data")
            assert wait_until(lambda: not pipe.sink_attached)
            assert pipe.is_alive()
        finally:
            pipe.stop()

    def test_discard_pipe_has_no_sink(self):
        pipe = Pipe("FORWARD->discard", Role.FORWARD, None, post=lambda e: None)
        try:
            with open(os.devnull, "wb") as devnull:
                with pytest.raises(RuntimeError):
                    pipe.attach_sink(devnull, 1)
        finally:
            pipe.stop()
