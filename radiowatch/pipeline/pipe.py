"""
Byte pump between two pipeline roles.

The watchdog sits between every pair of roles: a Pipe reads the upstream
role's stdout and writes the downstream role's stdin. Because the watchdog
owns both ends, either side can be restarted without the other noticing:

- while the sink is detached (downstream restarting) the source keeps being
  drained into a bounded backlog, so a live upstream never blocks on a full
  OS pipe
- while the source is detached (upstream restarting) whatever is left in the
  backlog is still delivered

Attaching and detaching are commands executed by the pump thread itself, so
the pump never selects on a file descriptor that has been handed back.
"""

from __future__ import annotations

import logging
import os
import queue
import select
import threading
from typing import Any, BinaryIO, Callable, Optional, Tuple

from radiowatch.pipeline.chunk_buffer import ChunkBuffer
from radiowatch.pipeline.events import OutputObserved
from radiowatch.pipeline.stream_monitor import StreamMonitor
from radiowatch.roles import Role

logger = logging.getLogger(__name__)

# Read up to 64KB per select wakeup
READ_SIZE = 64 * 1024

# How long attach/detach waits for the pump thread to apply the change
COMMAND_TIMEOUT_SEC = 2.0


class Pipe(threading.Thread):
    """
    Pump thread for one link of the pipeline.

    Attributes:
        pipe_name: e.g. "DECODE->TRANSCODE"
        source_role: Role whose stdout is read
        sink_role: Role whose stdin is written, or None for a discard sink
        generation: Pipe segment counter, incremented on every detach
    """

    def __init__(
        self,
        pipe_name: str,
        source_role: Role,
        sink_role: Optional[Role],
        post: Callable[[Any], None],
        monitor: Optional[StreamMonitor] = None,
        backlog_bytes: int = 1024 * 1024,
        read_size: int = READ_SIZE,
        poll_interval: float = 0.1,
    ) -> None:
        super().__init__(name=f"Pipe[{pipe_name}]", daemon=True)
        self.pipe_name = pipe_name
        self.source_role = source_role
        self.sink_role = sink_role
        self.monitor = monitor
        self._post = post
        self._read_size = read_size
        self._poll_interval = poll_interval
        self._discard = sink_role is None
        self._backlog = ChunkBuffer(backlog_bytes)

        self._commands: "queue.Queue[Tuple[Callable[[], None], threading.Event]]" = queue.Queue()
        self._shutdown_event = threading.Event()
        self._wake_r, self._wake_w = os.pipe()
        os.set_blocking(self._wake_r, False)
        os.set_blocking(self._wake_w, False)

        # Owned by the pump thread once it runs
        self._source_fd: Optional[int] = None
        self._source_generation: Optional[int] = None
        self._first_output_sent = False
        self._sink_fd: Optional[int] = None
        self._sink_generation: Optional[int] = None

        self.generation = 0
        self.bytes_read = 0
        self.bytes_written = 0

    # ------------------------------------------------------------------
    # Attach / detach (called from the orchestrator thread)
    # ------------------------------------------------------------------

    def attach_source(self, stream: BinaryIO, generation: int) -> None:
        fd = stream.fileno()
        self._submit(lambda: self._do_attach_source(fd, generation))

    def detach_source(self) -> None:
        self._submit(self._do_detach_source)

    def attach_sink(self, stream: BinaryIO, generation: int) -> None:
        if self._discard:
            raise RuntimeError(f"{self.pipe_name} is a discard pipe and has no sink")
        fd = stream.fileno()
        self._submit(lambda: self._do_attach_sink(fd, generation))

    def detach_sink(self) -> None:
        self._submit(self._do_detach_sink)

    @property
    def source_attached(self) -> bool:
        return self._source_fd is not None

    @property
    def sink_attached(self) -> bool:
        return self._sink_fd is not None

    def _submit(self, command: Callable[[], None]) -> None:
        if not self.is_alive():
            command()
            return
        done = threading.Event()
        self._commands.put((command, done))
        self._wake()
        if not done.wait(timeout=COMMAND_TIMEOUT_SEC):
            logger.warning(f"[{self.pipe_name}] pump thread did not apply command within timeout")

    def _wake(self) -> None:
        try:
            os.write(self._wake_w, b"\0")
        except (BlockingIOError, OSError):
            pass

    def _apply_commands(self) -> None:
        while True:
            try:
                command, done = self._commands.get_nowait()
            except queue.Empty:
                return
            try:
                command()
            finally:
                done.set()

    def _do_attach_source(self, fd: int, generation: int) -> None:
        self._source_fd = fd
        self._source_generation = generation
        self._first_output_sent = False
        logger.debug(f"[{self.pipe_name}] source attached ({self.source_role.label} gen {generation})")

    def _do_detach_source(self) -> None:
        if self._source_generation is not None:
            logger.debug(f"[{self.pipe_name}] source detached")
        self._source_fd = None
        self._source_generation = None
        self.generation += 1

    def _do_attach_sink(self, fd: int, generation: int) -> None:
        os.set_blocking(fd, False)
        self._sink_fd = fd
        self._sink_generation = generation
        pending = len(self._backlog)
        logger.debug(
            f"[{self.pipe_name}] sink attached ({self.sink_role.label} gen {generation}, "
            f"{pending} bytes pending)"
        )

    def _do_detach_sink(self) -> None:
        if self._sink_generation is not None:
            logger.debug(f"[{self.pipe_name}] sink detached")
        self._sink_fd = None
        self._sink_generation = None
        self.generation += 1

    # ------------------------------------------------------------------
    # Pump loop
    # ------------------------------------------------------------------

    def run(self) -> None:
        logger.debug(f"[{self.pipe_name}] pump started")
        try:
            while not self._shutdown_event.is_set():
                self._apply_commands()
                self.pump_once()
        except Exception as e:
            logger.error(f"[{self.pipe_name}] unexpected error in pump: {e}", exc_info=True)
        finally:
            # Release anybody still waiting on a command
            self._apply_commands()
            logger.debug(f"[{self.pipe_name}] pump stopped")

    def pump_once(self) -> None:
        """One select round: read what the source has, write what the sink accepts."""
        readers = [self._wake_r]
        if self._source_fd is not None:
            readers.append(self._source_fd)
        writers = []
        if self._sink_fd is not None and not self._backlog.is_empty():
            writers.append(self._sink_fd)

        try:
            readable, writable, _ = select.select(readers, writers, [], self._poll_interval)
        except (OSError, ValueError) as e:
            logger.warning(f"[{self.pipe_name}] select error: {e}")
            self._shutdown_event.wait(self._poll_interval)
            return

        if self._wake_r in readable:
            self._drain_wakeups()
        if self._source_fd is not None and self._source_fd in readable:
            self._read_source()
        if self._sink_fd is not None:
            self._flush_sink(self._sink_fd in writable)

    def _drain_wakeups(self) -> None:
        try:
            while os.read(self._wake_r, 512):
                pass
        except (BlockingIOError, OSError):
            pass

    def _read_source(self) -> None:
        try:
            data = os.read(self._source_fd, self._read_size)
        except BlockingIOError:
            return
        except OSError as e:
            logger.warning(f"[{self.pipe_name}] read error: {e}")
            self._source_fd = None
            return

        if not data:
            # The reaper reports the exit; stop selecting on a dead stream
            logger.debug(f"[{self.pipe_name}] source EOF ({self.source_role.label} closed stdout)")
            self._source_fd = None
            return

        self.bytes_read += len(data)
        if self.monitor is not None:
            self.monitor.observe(len(data))
        if not self._first_output_sent:
            self._first_output_sent = True
            self._post(OutputObserved(self.source_role, self._source_generation))
        if not self._discard:
            self._backlog.push(data)

    def _flush_sink(self, writable: bool) -> None:
        written = 0
        if writable:
            while True:
                chunk = self._backlog.peek()
                if chunk is None:
                    break
                try:
                    n = os.write(self._sink_fd, chunk)
                except BlockingIOError:
                    break
                except BrokenPipeError:
                    # Downstream closed its input (usually: it is exiting)
                    logger.info(f"[{self.pipe_name}] {self.sink_role.label} closed its input")
                    self._sink_fd = None
                    return
                except OSError as e:
                    logger.warning(f"[{self.pipe_name}] write error: {e}")
                    self._sink_fd = None
                    return
                self._backlog.consume(n)
                written += n
                self.bytes_written += n
                if n < len(chunk):
                    break
        if self.monitor is not None:
            self.monitor.observe_delivery(written, pending=not self._backlog.is_empty())

    # ------------------------------------------------------------------
    # Lifecycle / status
    # ------------------------------------------------------------------

    def stop(self, timeout: float = 2.0) -> None:
        self._shutdown_event.set()
        self._wake()
        if self.is_alive():
            self.join(timeout=timeout)
            if self.is_alive():
                logger.warning(f"[{self.pipe_name}] pump did not stop within timeout")
                return
        for fd in (self._wake_r, self._wake_w):
            try:
                os.close(fd)
            except OSError:
                pass

    def backlog_stats(self):
        return self._backlog.stats()

    def to_dict(self) -> dict:
        stats = self._backlog.stats()
        return {
            "pipe": self.pipe_name,
            "generation": self.generation,
            "source_attached": self.source_attached,
            "sink_attached": self.sink_attached,
            "bytes_read": self.bytes_read,
            "bytes_written": self.bytes_written,
            "backlog_bytes": stats.buffered_bytes,
            "dropped_bytes": stats.dropped_bytes,
        }
