"""Running pipeline handles for DBack.

A :class:`ProcessHandle` is what a transport session hands back after
starting a pipeline: a byte source (export) or sink (import), an independent
stderr stream, a single terminal :meth:`~ProcessHandle.wait`, and an
idempotent :meth:`~ProcessHandle.close`.

Thread-safety:
- ``close()`` may be called from any thread to cancel; it unblocks reads and
  writes in progress on the handle's streams.
- Every pipe a handle exposes must be serviced.  :class:`StreamDrain` reads
  one to EOF on a daemon thread so a chatty stderr cannot fill its buffer
  and stall the process.
"""

from __future__ import annotations

import abc
import logging
import os
import signal
import subprocess
import threading
from dataclasses import dataclass
from typing import BinaryIO

import paramiko

logger = logging.getLogger(__name__)

DRAIN_CHUNK = 32 * 1024
DRAIN_TAIL_LIMIT = 64 * 1024  # diagnostics kept per drained stream

# ---------------------------------------------------------------------------
# Exit outcome
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExitOutcome:
    """Terminal status of a pipeline.

    ``exit_code`` is ``-1`` when the process disappeared without reporting a
    status (channel closed, killed by a signal).
    """

    exit_code: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0


# ---------------------------------------------------------------------------
# StreamDrain
# ---------------------------------------------------------------------------


class StreamDrain:
    """Reads a stream to EOF on a daemon thread, keeping the last bytes seen."""

    def __init__(self, stream: BinaryIO, name: str = "drain", limit: int = DRAIN_TAIL_LIMIT) -> None:
        self._stream = stream
        self._limit = limit
        self._buffer = bytearray()
        self._lock = threading.Lock()
        self.total_bytes = 0
        self.error: Exception | None = None
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> "StreamDrain":
        self._thread.start()
        return self

    def _run(self) -> None:
        try:
            while True:
                chunk = self._stream.read(DRAIN_CHUNK)
                if not chunk:
                    break
                with self._lock:
                    self.total_bytes += len(chunk)
                    self._buffer.extend(chunk)
                    overflow = len(self._buffer) - self._limit
                    if overflow > 0:
                        del self._buffer[:overflow]
        except (OSError, ValueError, paramiko.SSHException) as exc:
            # Stream closed underneath us (cancel/close); keep what we have.
            self.error = exc
            logger.debug("Drain %s stopped: %s", self._thread.name, exc)

    def join(self, timeout: float | None = None) -> None:
        if self._thread.is_alive():
            self._thread.join(timeout)

    @property
    def running(self) -> bool:
        """True until the stream hits EOF or fails."""
        return self._thread.is_alive()

    @property
    def data(self) -> bytes:
        with self._lock:
            return bytes(self._buffer)

    def text(self) -> str:
        """Captured tail decoded as UTF-8 (undecodable bytes replaced)."""
        return self.data.decode("utf-8", errors="replace")


# ---------------------------------------------------------------------------
# Handles
# ---------------------------------------------------------------------------


class ProcessHandle(abc.ABC):
    """A started pipeline with its stdio streams."""

    stdin: BinaryIO | None = None
    stdout: BinaryIO | None = None
    stderr: BinaryIO | None = None

    def __init__(self) -> None:
        self._closed = False
        self._close_lock = threading.Lock()

    @abc.abstractmethod
    def close_stdin(self) -> None:
        """Signal end-of-input to the process."""

    @abc.abstractmethod
    def wait(self) -> ExitOutcome:
        """Block until the process exits and return its outcome."""

    @abc.abstractmethod
    def poll(self) -> ExitOutcome | None:
        """Return the outcome if the process has exited, else None."""

    @abc.abstractmethod
    def _release(self) -> None:
        """Release OS resources; called at most once by :meth:`close`."""

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Release the handle's resources.  Safe to call repeatedly."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._release()

    def __enter__(self) -> "ProcessHandle":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class ChannelProcess(ProcessHandle):
    """A pipeline running on a paramiko channel."""

    def __init__(self, channel: paramiko.Channel, want_stdin: bool, bufsize: int = -1) -> None:
        super().__init__()
        self._channel = channel
        self.stdout = channel.makefile("rb", bufsize)
        self.stderr = channel.makefile_stderr("rb", bufsize)
        self.stdin = channel.makefile_stdin("wb", bufsize) if want_stdin else None

    def close_stdin(self) -> None:
        if self.stdin is not None:
            try:
                self.stdin.flush()
            finally:
                self._channel.shutdown_write()

    def wait(self) -> ExitOutcome:
        return ExitOutcome(self._channel.recv_exit_status())

    def poll(self) -> ExitOutcome | None:
        if self._channel.exit_status_ready():
            return self.wait()
        return None

    def _release(self) -> None:
        # Closing the channel wakes any thread blocked on its buffers.
        try:
            self._channel.close()
        except (OSError, paramiko.SSHException) as exc:
            logger.debug("Error closing channel: %s", exc)


class LocalProcess(ProcessHandle):
    """A pipeline running as a local child process."""

    def __init__(self, proc: subprocess.Popen) -> None:
        super().__init__()
        self._proc = proc
        self.stdin = proc.stdin
        self.stdout = proc.stdout
        self.stderr = proc.stderr

    def close_stdin(self) -> None:
        if self.stdin is not None and not self.stdin.closed:
            self.stdin.close()

    def wait(self) -> ExitOutcome:
        returncode = self._proc.wait()
        # Negative return codes mean "killed by signal".
        return ExitOutcome(returncode if returncode >= 0 else -1)

    def poll(self) -> ExitOutcome | None:
        if self._proc.poll() is None:
            return None
        return self.wait()

    def _release(self) -> None:
        if self._proc.poll() is None:
            logger.debug("Killing local process group %d", self._proc.pid)
            # The child leads its own session; kill the whole pipeline so no
            # stage keeps a pipe open.
            try:
                os.killpg(self._proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
        # Pipes are left to the reader threads, which see EOF once the child
        # is gone; closing them here could race a blocked read.
        self._proc.wait()
        if self.stdin is not None and not self.stdin.closed:
            try:
                self.stdin.close()
            except OSError:
                pass
