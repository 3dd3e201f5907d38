"""Transfer orchestration for DBack.

Drives one backup (export) or restore (import) from start to finish:

    IDLE → CONNECTING → PIPELINE_BUILT → STREAMING → DRAINING → SUCCEEDED | FAILED

- The stdout/stdin copy runs on the calling thread; stderr (and stdout on
  import) drain on daemon threads for the life of the process.
- Exports write to ``<dest>.tmp`` and are renamed into place only after the
  pipeline exits 0; any failure removes the partial file.
- A nonzero exit fails the transfer even when every byte was copied.
- :meth:`TransferOrchestrator.cancel` closes the running process from any
  thread and the in-flight copy ends with :exc:`TransferCancelled`.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import asdict, dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import BinaryIO, Callable, Optional

import paramiko
import urllib3

from dback.commands import (
    build_export_pipeline,
    build_health_check,
    build_import_pipeline,
    mask_secrets,
)
from dback.connection import DEFAULT_TIMEOUT, LocalConnection, SSHConnection
from dback.errors import (
    CommandStartError,
    DBackError,
    ProfileError,
    RemoteExitError,
    StreamCopyError,
    TransferCancelled,
)
from dback.models import ConnectionProfile, TransferDirection, TransportKind
from dback.process import ProcessHandle, StreamDrain
from dback.progress import CHUNK_SIZE, ProgressCallback, ProgressStream
from dback.relay import DEFAULT_TIMEOUT as RELAY_TIMEOUT
from dback.relay import RelayClient
from dback.utils.path_helpers import build_export_filename, human_readable_size

logger = logging.getLogger(__name__)

DRAIN_JOIN_TIMEOUT = 5.0  # seconds to wait for drains after the process exits

_STREAM_ERRORS = (OSError, ValueError, paramiko.SSHException, urllib3.exceptions.HTTPError)

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TransferState(Enum):
    """Lifecycle state of a transfer."""

    IDLE = auto()
    CONNECTING = auto()
    PIPELINE_BUILT = auto()
    STREAMING = auto()
    DRAINING = auto()
    SUCCEEDED = auto()
    FAILED = auto()

    @property
    def finalized(self) -> bool:
        return self in (TransferState.SUCCEEDED, TransferState.FAILED)


class EventKind(Enum):
    """Kinds of structured events emitted for the activity log."""

    START = "start"
    SUCCESS = "success"
    FAILURE = "failure"


# ---------------------------------------------------------------------------
# Events and results
# ---------------------------------------------------------------------------


@dataclass
class TransferEvent:
    """A structured start/success/failure record for one transfer."""

    kind: EventKind
    direction: TransferDirection
    profile_name: str
    detail: str
    local_path: str | None = None
    bytes_transferred: int = 0
    stage: str | None = None
    error: str | None = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        record = asdict(self)
        record["kind"] = self.kind.value
        record["direction"] = self.direction.name.lower()
        return record


@dataclass
class TransferResult:
    """Terminal outcome of one transfer."""

    direction: TransferDirection
    profile_name: str
    local_path: str | None = None
    state: TransferState = TransferState.IDLE
    bytes_transferred: int = 0
    total_bytes: int | None = None
    exit_code: int | None = None
    stderr: str = ""
    error: DBackError | None = None
    start_time: float | None = None
    end_time: float | None = None

    @property
    def succeeded(self) -> bool:
        return self.state is TransferState.SUCCEEDED

    @property
    def failed_stage(self) -> str | None:
        """Stage name of the error, or None on success."""
        return self.error.stage if self.error is not None else None

    @property
    def progress_fraction(self) -> float | None:
        """Fraction transferred (0.0 – 1.0), or None when the total is unknown."""
        if self.total_bytes is None:
            return None
        if self.total_bytes <= 0:
            return 1.0
        return min(1.0, self.bytes_transferred / self.total_bytes)

    @property
    def speed_mbps(self) -> float:
        """Average transfer speed in MB/s, or 0 if not yet started."""
        if self.start_time is None or self.bytes_transferred == 0:
            return 0.0
        elapsed = (self.end_time or time.monotonic()) - self.start_time
        if elapsed <= 0:
            return 0.0
        return (self.bytes_transferred / elapsed) / (1024 * 1024)


StateChangeCallback = Callable[[TransferState, Optional[str]], None]
EventCallback = Callable[[TransferEvent], None]
ConnectionFactory = Callable[[ConnectionProfile, bool], object]


class _CancellableReader:
    """File wrapper whose ``read`` raises once the transfer is cancelled."""

    def __init__(self, stream: BinaryIO, cancel_event: threading.Event) -> None:
        self._stream = stream
        self._cancel_event = cancel_event

    def read(self, size: int = -1) -> bytes:
        if self._cancel_event.is_set():
            raise TransferCancelled("Transfer cancelled")
        return self._stream.read(size)

    def __getattr__(self, name: str):
        return getattr(self._stream, name)


# ---------------------------------------------------------------------------
# TransferOrchestrator
# ---------------------------------------------------------------------------


class TransferOrchestrator:
    """Runs exactly one export or import for a profile.

    Instances are single-use: create a new one for every transfer.
    """

    def __init__(
        self,
        profile: ConnectionProfile,
        connection_factory: ConnectionFactory | None = None,
        chunk_size: int = CHUNK_SIZE,
        connect_timeout: float = DEFAULT_TIMEOUT,
        strict_host_keys: bool = True,
        relay_timeout: float = RELAY_TIMEOUT,
        on_progress: ProgressCallback | None = None,
        on_state_change: StateChangeCallback | None = None,
        on_event: EventCallback | None = None,
    ) -> None:
        """Initialise the orchestrator (does NOT connect yet).

        Args:
            profile: Target to back up or restore.
            connection_factory: Called as ``factory(profile, restore_local)``
                to build an unconnected session.  Defaults to
                :class:`SSHConnection` (or :class:`LocalConnection` for
                restores to localhost).
            chunk_size: Bytes per read/write in the copy loop.
            connect_timeout: SSH connection timeout in seconds.
            strict_host_keys: Reject hosts missing from known_hosts.
            relay_timeout: HTTP timeout for relay profiles.
            on_progress: Called with ``(bytes_so_far, total_or_None)`` after
                every chunk, on the copying thread.
            on_state_change: Called with ``(new_state, optional_message)``.
            on_event: Called with a :class:`TransferEvent` on start,
                success and failure.
        """
        self.profile = profile
        self.chunk_size = chunk_size
        self.connect_timeout = connect_timeout
        self.strict_host_keys = strict_host_keys
        self.relay_timeout = relay_timeout
        self.on_progress = on_progress
        self.on_state_change = on_state_change
        self.on_event = on_event
        self._connection_factory = connection_factory

        self._state = TransferState.IDLE
        self._lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._used = False
        self._connection = None
        self._handle: ProcessHandle | None = None
        self._relay: RelayClient | None = None

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    @property
    def state(self) -> TransferState:
        """Current transfer state (thread-safe read)."""
        with self._lock:
            return self._state

    def _set_state(self, new_state: TransferState, message: str | None = None) -> None:
        with self._lock:
            self._state = new_state
        logger.debug(
            "Transfer state → %s%s",
            new_state.name,
            f" ({message})" if message else "",
        )
        if self.on_state_change:
            try:
                self.on_state_change(new_state, message)
            except Exception:
                logger.exception("Exception in on_state_change callback")

    def _emit(self, event: TransferEvent) -> None:
        log = logger.error if event.kind is EventKind.FAILURE else logger.info
        log("%s %s [%s]: %s", event.direction.name.title(), event.kind.value,
            event.profile_name, event.detail if event.error is None else event.error)
        if self.on_event:
            try:
                self.on_event(event)
            except Exception:
                logger.exception("Exception in on_event callback")

    def _claim(self) -> None:
        with self._lock:
            if self._used:
                raise RuntimeError("TransferOrchestrator instances are single-use")
            self._used = True

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Cancel the transfer from any thread.

        Closes the running process (or HTTP response) so blocked reads and
        writes return; the transfer then finalises as FAILED with
        :exc:`TransferCancelled`.
        """
        if self.state.finalized:
            return
        logger.info("Cancelling transfer for %s", self.profile.name)
        self._cancel_event.set()
        self._teardown()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def export(
        self,
        dest_dir: str | os.PathLike[str] | None = None,
        dest_path: str | os.PathLike[str] | None = None,
    ) -> TransferResult:
        """Dump the profile's database into a local compressed file.

        The file is *dest_path* when given, otherwise a timestamped name
        inside *dest_dir* (default: current directory).

        Returns:
            A :class:`TransferResult`; inspect ``succeeded`` and ``error``.

        Raises:
            RuntimeError: If this orchestrator already ran a transfer.
        """
        self._claim()
        profile = self.profile
        if dest_path is None:
            dest_path = Path(dest_dir or ".") / build_export_filename(profile)
        dest = Path(dest_path)
        tmp = dest.with_name(dest.name + ".tmp")

        result = TransferResult(TransferDirection.EXPORT, profile.name, local_path=str(dest))
        result.start_time = time.monotonic()
        self._emit(TransferEvent(
            EventKind.START, TransferDirection.EXPORT, profile.name,
            f"Starting export for DB: {profile.db_name or profile.engine.value} on {self._target()}",
            local_path=str(dest),
        ))

        try:
            profile.ensure_valid(TransferDirection.EXPORT)
            try:
                dest.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise StreamCopyError(f"Could not create {dest.parent}: {exc}") from exc
            if profile.transport is TransportKind.RELAY:
                self._export_relay(result, tmp)
            else:
                self._export_shell(result, tmp)
            self._check_cancelled()
            try:
                os.replace(tmp, dest)
            except OSError as exc:
                raise StreamCopyError(f"Could not finalise {dest}: {exc}") from exc
        except Exception as exc:
            self._remove_partial(tmp)
            self._fail(result, exc)
        else:
            self._succeed(result, f"Export completed successfully: {dest}")
        finally:
            self._teardown()
            result.end_time = time.monotonic()
        return result

    def import_(
        self,
        source_path: str | os.PathLike[str],
        restore_local: bool = False,
    ) -> TransferResult:
        """Restore the profile's database from a local compressed file.

        With *restore_local* the restore pipeline runs on this machine
        instead of the profile's remote host.

        Returns:
            A :class:`TransferResult`; inspect ``succeeded`` and ``error``.

        Raises:
            RuntimeError: If this orchestrator already ran a transfer.
        """
        self._claim()
        profile = self.profile
        source = Path(source_path)
        result = TransferResult(TransferDirection.IMPORT, profile.name, local_path=str(source))
        result.start_time = time.monotonic()
        target = "localhost" if restore_local else self._target()
        self._emit(TransferEvent(
            EventKind.START, TransferDirection.IMPORT, profile.name,
            f"Starting import for DB: {profile.db_name or profile.engine.value} on {target}",
            local_path=str(source),
        ))

        try:
            profile.ensure_valid(TransferDirection.IMPORT, local=restore_local)
            try:
                infile = open(source, "rb")
            except OSError as exc:
                raise StreamCopyError(f"Could not open {source}: {exc}") from exc
            with infile:
                result.total_bytes = os.fstat(infile.fileno()).st_size
                if profile.transport is TransportKind.RELAY and not restore_local:
                    self._import_relay(result, infile)
                else:
                    self._import_shell(result, infile, restore_local)
            self._check_cancelled()
        except Exception as exc:
            self._fail(result, exc)
        else:
            self._succeed(result, f"Import completed successfully: {source}")
        finally:
            self._teardown()
            result.end_time = time.monotonic()
        return result

    # ------------------------------------------------------------------
    # Shell transfers
    # ------------------------------------------------------------------

    def _export_shell(self, result: TransferResult, tmp: Path) -> None:
        connection = self._connect(restore_local=False)

        pipeline = build_export_pipeline(self.profile)
        self._set_state(TransferState.PIPELINE_BUILT)
        logger.debug("Export pipeline: %s", mask_secrets(pipeline, self.profile))

        handle = self._start(connection.start_streaming_out, pipeline)
        self._set_state(TransferState.STREAMING)
        stderr_drain = StreamDrain(handle.stderr, name="stderr-drain").start()

        try:
            out = open(tmp, "wb")
        except OSError as exc:
            raise StreamCopyError(f"Local file creation failed for {tmp}: {exc}") from exc
        with out:
            source = ProgressStream(handle.stdout, observer=self.on_progress)
            self._pump(source, out, result, local_source=False)

        self._set_state(TransferState.DRAINING)
        outcome = handle.wait()
        stderr_drain.join(DRAIN_JOIN_TIMEOUT)
        result.exit_code = outcome.exit_code
        result.stderr = stderr_drain.text()
        self._check_cancelled()
        if not outcome.success:
            raise RemoteExitError("Remote export command failed", outcome.exit_code, result.stderr)

    def _import_shell(self, result: TransferResult, infile: BinaryIO, restore_local: bool) -> None:
        connection = self._connect(restore_local=restore_local)

        pipeline = build_import_pipeline(self.profile)
        self._set_state(TransferState.PIPELINE_BUILT)
        logger.debug("Import pipeline: %s", mask_secrets(pipeline, self.profile))

        handle = self._start(connection.start_streaming_in, pipeline)
        self._set_state(TransferState.STREAMING)
        stderr_drain = StreamDrain(handle.stderr, name="stderr-drain").start()
        # Restore tools chatter on stdout too (psql echoes every statement).
        stdout_drain = StreamDrain(handle.stdout, name="stdout-drain").start() if handle.stdout else None

        source = ProgressStream(infile, total=result.total_bytes, observer=self.on_progress)
        try:
            self._pump(source, handle.stdin, result, local_source=True)
            try:
                handle.close_stdin()
            except _STREAM_ERRORS as exc:
                raise StreamCopyError(f"Could not close remote input: {exc}") from exc
        except StreamCopyError:
            # A consumer that died early breaks the pipe; report its exit
            # status and stderr instead of the bare write error.
            stderr_drain.join(DRAIN_JOIN_TIMEOUT)
            # stderr at EOF means the pipeline is exiting; otherwise only peek.
            outcome = handle.poll() if stderr_drain.running else handle.wait()
            if outcome is not None and not outcome.success and not self.cancelled:
                result.exit_code = outcome.exit_code
                result.stderr = stderr_drain.text()
                raise RemoteExitError(
                    "Remote import command failed", outcome.exit_code, result.stderr
                )
            raise

        self._set_state(TransferState.DRAINING)
        outcome = handle.wait()
        stderr_drain.join(DRAIN_JOIN_TIMEOUT)
        if stdout_drain is not None:
            stdout_drain.join(DRAIN_JOIN_TIMEOUT)
        result.exit_code = outcome.exit_code
        result.stderr = stderr_drain.text()
        self._check_cancelled()
        if not outcome.success:
            raise RemoteExitError("Remote import command failed", outcome.exit_code, result.stderr)

    # ------------------------------------------------------------------
    # Relay transfers
    # ------------------------------------------------------------------

    def _export_relay(self, result: TransferResult, tmp: Path) -> None:
        self._set_state(TransferState.CONNECTING)
        relay = RelayClient.from_profile(self.profile, timeout=self.relay_timeout)
        with self._lock:
            self._relay = relay
        # The relay agent builds its own command.
        self._set_state(TransferState.PIPELINE_BUILT)
        body, length = relay.open_export()
        result.total_bytes = length
        self._set_state(TransferState.STREAMING)
        try:
            out = open(tmp, "wb")
        except OSError as exc:
            raise StreamCopyError(f"Local file creation failed for {tmp}: {exc}") from exc
        with out:
            source = ProgressStream(body, total=length, observer=self.on_progress)
            self._pump(source, out, result, local_source=False)
        self._set_state(TransferState.DRAINING)
        if length is not None and result.bytes_transferred != length:
            raise StreamCopyError(
                f"Relay export truncated: got {result.bytes_transferred} of {length} bytes"
            )

    def _import_relay(self, result: TransferResult, infile: BinaryIO) -> None:
        self._set_state(TransferState.CONNECTING)
        relay = RelayClient.from_profile(self.profile, timeout=self.relay_timeout)
        with self._lock:
            self._relay = relay
        self._set_state(TransferState.PIPELINE_BUILT)
        self._set_state(TransferState.STREAMING)
        source = ProgressStream(
            _CancellableReader(infile, self._cancel_event),
            total=result.total_bytes,
            observer=self.on_progress,
        )
        try:
            relay.upload(source, result.total_bytes or 0)
        finally:
            result.bytes_transferred = source.transferred
        self._set_state(TransferState.DRAINING)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _target(self) -> str:
        if self.profile.transport is TransportKind.RELAY:
            return self.profile.relay_url
        return self.profile.host

    def _connect(self, restore_local: bool):
        self._set_state(TransferState.CONNECTING)
        if self._connection_factory is not None:
            connection = self._connection_factory(self.profile, restore_local)
        elif restore_local:
            connection = LocalConnection()
        else:
            connection = SSHConnection.from_profile(
                self.profile,
                timeout=self.connect_timeout,
                strict_host_keys=self.strict_host_keys,
            )
        with self._lock:
            self._connection = connection
        connection.connect()
        if self._cancel_event.is_set():
            # cancel() ran while connect() was blocking and found nothing to close.
            connection.disconnect()
            raise TransferCancelled("Transfer cancelled")
        return connection

    def _start(self, starter: Callable[[str], ProcessHandle], pipeline: str) -> ProcessHandle:
        self._check_cancelled()
        handle = starter(pipeline)
        with self._lock:
            self._handle = handle
        # cancel() may have run between the check above and registration.
        if self._cancel_event.is_set():
            handle.close()
            raise TransferCancelled("Transfer cancelled")
        return handle

    def _pump(self, src: ProgressStream, dst, result: TransferResult, local_source: bool) -> None:
        """Copy *src* into *dst* until EOF, keeping ``result.bytes_transferred`` current."""
        read_side = "reading local file" if local_source else "reading remote stream"
        write_side = "writing remote stream" if local_source else "writing local file"
        while True:
            self._check_cancelled()
            try:
                chunk = src.read(self.chunk_size)
            except TransferCancelled:
                raise
            except _STREAM_ERRORS as exc:
                raise StreamCopyError(f"Failed {read_side}: {exc}") from exc
            if not chunk:
                break
            try:
                dst.write(chunk)
            except _STREAM_ERRORS as exc:
                raise StreamCopyError(f"Failed {write_side}: {exc}") from exc
            result.bytes_transferred = src.transferred
        result.bytes_transferred = src.transferred

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise TransferCancelled("Transfer cancelled")

    def _teardown(self) -> None:
        """Release the process, session and relay response.  Idempotent."""
        with self._lock:
            handle, self._handle = self._handle, None
            connection, self._connection = self._connection, None
            relay, self._relay = self._relay, None
        if handle is not None:
            handle.close()
        if connection is not None:
            connection.disconnect()
        if relay is not None:
            relay.close()

    def _remove_partial(self, path: Path) -> None:
        try:
            path.unlink()
            logger.info("Removed partial export %s", path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not remove partial export %s: %s", path, exc)

    def _succeed(self, result: TransferResult, detail: str) -> None:
        result.state = TransferState.SUCCEEDED
        self._set_state(TransferState.SUCCEEDED)
        self._emit(TransferEvent(
            EventKind.SUCCESS, result.direction, result.profile_name,
            f"{detail} ({human_readable_size(result.bytes_transferred)})",
            local_path=result.local_path,
            bytes_transferred=result.bytes_transferred,
        ))

    def _fail(self, result: TransferResult, exc: Exception) -> None:
        if self._cancel_event.is_set() and not isinstance(exc, TransferCancelled):
            logger.debug("Error after cancel: %s", exc)
            error: DBackError = TransferCancelled("Transfer cancelled")
            error.__cause__ = exc
        elif isinstance(exc, DBackError):
            error = exc
        else:
            logger.exception("Unexpected error during %s", result.direction.name.lower())
            error = DBackError(f"Unexpected error: {exc}")
            error.__cause__ = exc

        result.error = error
        result.state = TransferState.FAILED
        self._set_state(TransferState.FAILED, str(error))
        self._emit(TransferEvent(
            EventKind.FAILURE, result.direction, result.profile_name,
            _failure_detail(error),
            local_path=result.local_path,
            bytes_transferred=result.bytes_transferred,
            stage=error.stage,
            error=str(error),
        ))


def _failure_detail(error: DBackError) -> str:
    if isinstance(error, ProfileError):
        return "Profile is incomplete"
    if isinstance(error, TransferCancelled):
        return "Transfer cancelled"
    if isinstance(error, CommandStartError):
        return "Command failed to start"
    if isinstance(error, RemoteExitError):
        return "Remote command failed"
    if isinstance(error, StreamCopyError):
        return "Stream copy failed"
    if error.stage == "connect":
        return "Connection failed"
    return "Transfer failed"


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


def check_database(
    profile: ConnectionProfile,
    connection=None,
    connect_timeout: float = DEFAULT_TIMEOUT,
    strict_host_keys: bool = True,
) -> tuple[bool, str]:
    """Run the engine's health-check command and return ``(ok, output)``.

    *connection* may be an already-connected session; otherwise one is
    opened for the profile and closed afterwards.

    Raises:
        ProfileError: For relay profiles, which have no shell to run it in.
        ConnectionError: If the host cannot be reached.
        CommandStartError: If the command cannot be started.
    """
    if profile.transport is TransportKind.RELAY:
        raise ProfileError(["health checks need direct shell access"])

    command = build_health_check(profile)
    logger.info("Checking %s on %s", profile.engine.value, profile.host)
    logger.debug("Health check: %s", mask_secrets(command, profile))

    owned = connection is None
    if owned:
        connection = SSHConnection.from_profile(
            profile, timeout=connect_timeout, strict_host_keys=strict_host_keys
        )
        connection.connect()
    try:
        stdout, stderr, exit_code = connection.execute_command(command)
    finally:
        if owned:
            connection.disconnect()

    output = (stdout + stderr).strip()
    if exit_code != 0:
        logger.warning("Health check for %s failed (exit %d)", profile.name, exit_code)
    return exit_code == 0, output
