"""
Bounded byte-chunk buffer used as a pipe backlog.

When a downstream role is restarting (or momentarily slower than its
producer), the pipe keeps draining the upstream role into this buffer so the
producer never blocks on a full OS pipe. When the byte budget is exceeded the
oldest chunks are dropped to keep latency bounded.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from typing import Optional


@dataclass
class ChunkBufferStats:
    """
    Statistics for ChunkBuffer.

    Attributes:
        capacity_bytes: Maximum number of bytes the buffer holds
        buffered_bytes: Bytes currently waiting to be delivered
        chunks: Number of chunks currently buffered
        dropped_bytes: Total bytes discarded because the buffer was full
    """
    capacity_bytes: int
    buffered_bytes: int
    chunks: int
    dropped_bytes: int


class ChunkBuffer:
    """
    Thread-safe FIFO of byte chunks with a byte budget.

    push() never blocks; when the budget is exceeded the oldest chunks are
    discarded (not the new one). peek()/consume() allow partial writes: the
    writer peeks the head chunk, writes what the sink accepts and consumes
    exactly that many bytes.
    """

    def __init__(self, capacity_bytes: int) -> None:
        if capacity_bytes <= 0:
            raise ValueError(f"ChunkBuffer capacity must be > 0, got {capacity_bytes}")
        self._capacity = capacity_bytes
        self._chunks: deque[bytes] = deque()
        self._size = 0
        self._lock = threading.Lock()
        self._total_dropped = 0

    def push(self, chunk: bytes) -> None:
        if not chunk:
            raise ValueError("Cannot push empty chunk")
        with self._lock:
            if len(chunk) > self._capacity:
                # Keep only the newest tail of an oversized chunk
                self._total_dropped += len(chunk) - self._capacity
                chunk = chunk[-self._capacity:]
            self._chunks.append(bytes(chunk))
            self._size += len(chunk)
            while self._size > self._capacity:
                dropped = self._chunks.popleft()
                self._size -= len(dropped)
                self._total_dropped += len(dropped)

    def peek(self) -> Optional[bytes]:
        """Return the oldest chunk without removing it, or None if empty."""
        with self._lock:
            return self._chunks[0] if self._chunks else None

    def consume(self, count: int) -> None:
        """Remove count bytes from the front of the buffer."""
        with self._lock:
            while count > 0 and self._chunks:
                head = self._chunks[0]
                if len(head) <= count:
                    self._chunks.popleft()
                    self._size -= len(head)
                    count -= len(head)
                else:
                    self._chunks[0] = head[count:]
                    self._size -= count
                    count = 0

    def clear(self) -> None:
        with self._lock:
            self._chunks.clear()
            self._size = 0

    def stats(self) -> ChunkBufferStats:
        with self._lock:
            return ChunkBufferStats(
                capacity_bytes=self._capacity,
                buffered_bytes=self._size,
                chunks=len(self._chunks),
                dropped_bytes=self._total_dropped,
            )

    def __len__(self) -> int:
        with self._lock:
            return self._size

    def is_empty(self) -> bool:
        with self._lock:
            return self._size == 0

    @property
    def capacity(self) -> int:
        return self._capacity
