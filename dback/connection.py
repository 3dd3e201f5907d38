"""Transport sessions for DBack.

A session starts a shell pipeline and returns a :class:`ProcessHandle`.
:class:`SSHConnection` runs it on a remote host over paramiko;
:class:`LocalConnection` runs it as a child process for restores to
localhost.  Both serve exactly one transfer: a second ``start_streaming_*``
call raises :exc:`CommandStartError`.
"""

from __future__ import annotations

import logging
import os
import shutil
import socket
import subprocess
import threading
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Optional

import paramiko

from dback.errors import CommandStartError, ConnectionError, UnknownHostError
from dback.models import AuthMethod, ConnectionProfile
from dback.process import ChannelProcess, LocalProcess, ProcessHandle

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

StateChangeCallback = Callable[["ConnectionState", Optional[str]], None]

DEFAULT_TIMEOUT = 10.0  # seconds, connection establishment only
_KEEPALIVE_INTERVAL = 30  # seconds
_COMMAND_TIMEOUT = 30  # seconds, for short execute_command() calls

# ---------------------------------------------------------------------------
# Host-key policy
# ---------------------------------------------------------------------------


class _CapturingPolicy(paramiko.MissingHostKeyPolicy):
    """Raises UnknownHostError with fingerprint info instead of silently rejecting."""

    def missing_host_key(
        self,
        client: paramiko.SSHClient,
        hostname: str,
        key: paramiko.PKey,
    ) -> None:
        """Capture fingerprint and raise :exc:`UnknownHostError`."""
        raw = key.get_fingerprint()
        fingerprint = ":".join(f"{b:02x}" for b in raw)
        raise UnknownHostError(
            f"Host '{hostname}' is not in known_hosts.\n"
            f"Key type: {key.get_name()}\n"
            f"Fingerprint (MD5): {fingerprint}",
            hostname=hostname,
            key_type=key.get_name(),
            fingerprint=fingerprint,
            key=key,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _known_hosts_path() -> Path:
    return Path.home() / ".ssh" / "known_hosts"


def _close_client_safely(client: paramiko.SSHClient) -> None:
    """Close *client*, logging instead of raising on cleanup noise."""
    try:
        client.close()
    except Exception as exc:
        logger.debug("Ignoring error while closing SSH client: %s", exc)


def _claim_session(session: "SSHConnection | LocalConnection") -> None:
    """Reserve *session*'s single transfer slot under its lock.

    Raises:
        CommandStartError: If a transfer was already started on it.
    """
    with session._lock:
        if session._claimed:
            raise CommandStartError(
                "A transfer already ran on this session; open a new one"
            )
        session._claimed = True


def accept_host_key(hostname: str, key: paramiko.PKey) -> None:
    """Append *key* for *hostname* to ``~/.ssh/known_hosts`` and save.

    Creates the file and ``.ssh/`` directory if they do not exist.
    """
    known_hosts_path = _known_hosts_path()
    known_hosts_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    host_keys = paramiko.HostKeys(str(known_hosts_path)) if known_hosts_path.exists() else paramiko.HostKeys()
    host_keys.add(hostname, key.get_name(), key)
    host_keys.save(str(known_hosts_path))
    logger.info("Saved host key for %s to known_hosts", hostname)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class ConnectionState(Enum):
    """States for the SSH connection lifecycle."""

    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    ERROR = auto()


# ---------------------------------------------------------------------------
# SSHConnection
# ---------------------------------------------------------------------------


class SSHConnection:
    """A single authenticated SSH session to the database host.

    Thread-safety:
    - ``_lock`` protects state transitions and the one-transfer guard.
    - ``disconnect()`` may be called from another thread to cancel; it
      closes the transport, which unblocks any channel I/O in progress.
    """

    def __init__(
        self,
        host: str,
        port: int = 22,
        username: str = "root",
        auth_method: AuthMethod = AuthMethod.PASSWORD,
        password: str | None = None,
        key_path: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        strict_host_keys: bool = True,
        on_state_change: StateChangeCallback | None = None,
    ) -> None:
        """Initialise connection parameters (does NOT connect yet).

        Args:
            host: Hostname or IP of the database host.
            port: SSH port (default 22).
            username: SSH username.
            auth_method: Password or private-key authentication.
            password: SSH password (password auth) or key passphrase.
            key_path: Path to private key file (key auth).
            timeout: Connection timeout in seconds.
            strict_host_keys: Reject hosts missing from known_hosts.  When
                False, unknown keys are accepted and added for this session.
            on_state_change: Callback invoked on every state transition.
                Called with ``(new_state, optional_message)``.
        """
        self.host = host
        self.port = port
        self.username = username
        self.auth_method = auth_method
        self.key_path = key_path
        self.timeout = timeout
        self.strict_host_keys = strict_host_keys
        self._password = password
        self._on_state_change = on_state_change

        self._client: paramiko.SSHClient | None = None
        self._state = ConnectionState.DISCONNECTED
        self._lock = threading.Lock()
        self._handle: ProcessHandle | None = None
        self._claimed = False

    @classmethod
    def from_profile(cls, profile: ConnectionProfile, **kwargs) -> "SSHConnection":
        """Build an unconnected session for *profile*'s shell endpoint."""
        return cls(
            host=profile.host,
            port=profile.port,
            username=profile.ssh_user,
            auth_method=profile.auth_method,
            password=profile.ssh_password or None,
            key_path=profile.key_path or None,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        """Current connection state (thread-safe read)."""
        with self._lock:
            return self._state

    def _set_state(self, new_state: ConnectionState, message: str | None = None) -> None:
        """Update state and fire the state-change callback (must hold lock)."""
        self._state = new_state
        logger.debug(
            "Connection state → %s%s",
            new_state.name,
            f" ({message})" if message else "",
        )
        if self._on_state_change:
            try:
                self._on_state_change(new_state, message)
            except Exception:
                logger.exception("Exception in on_state_change callback")

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """Establish the SSH connection.

        Raises:
            UnknownHostError: Host key is unknown or has changed.
            ConnectionError: Unreachable host, timeout or rejected credentials.
        """
        with self._lock:
            if self._state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
                logger.debug("connect() called but already %s", self._state.name)
                return
            self._set_state(ConnectionState.CONNECTING)

        try:
            self._do_connect()
        except ConnectionError as exc:
            with self._lock:
                self._set_state(ConnectionState.ERROR, str(exc))
            raise

    def _do_connect(self) -> None:
        """Internal connection logic — called without holding the lock."""
        logger.info("Connecting to %s@%s:%d", self.username, self.host, self.port)

        key_file: Path | None = None
        if self.auth_method is AuthMethod.KEY_FILE:
            key_file = Path(self.key_path or "").expanduser()
            if not key_file.is_file() or not os.access(key_file, os.R_OK):
                raise ConnectionError(
                    f"Private key {self.key_path!r} is missing or unreadable"
                )

        client = paramiko.SSHClient()
        known_hosts_path = _known_hosts_path()
        if known_hosts_path.exists():
            client.load_host_keys(str(known_hosts_path))

        if self.strict_host_keys:
            client.set_missing_host_key_policy(_CapturingPolicy())
        else:
            logger.warning("Host key checking disabled for %s", self.host)
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        connect_kwargs: dict = {
            "hostname": self.host,
            "port": self.port,
            "username": self.username,
            "timeout": self.timeout,
            "banner_timeout": self.timeout,
            "auth_timeout": self.timeout,
            "allow_agent": self.auth_method is AuthMethod.KEY_FILE,
            "look_for_keys": False,
        }
        if key_file is not None:
            connect_kwargs["key_filename"] = str(key_file)
            if self._password:
                connect_kwargs["passphrase"] = self._password
        else:
            connect_kwargs["password"] = self._password or ""

        try:
            client.connect(**connect_kwargs)
        except UnknownHostError:
            _close_client_safely(client)
            raise
        except paramiko.BadHostKeyException as exc:
            _close_client_safely(client)
            raise UnknownHostError(
                f"Host key mismatch for {self.host} — check ~/.ssh/known_hosts",
                hostname=self.host,
            ) from exc
        except paramiko.AuthenticationException as exc:
            _close_client_safely(client)
            raise ConnectionError(
                f"Authentication failed for {self.username}@{self.host}: {exc}"
            ) from exc
        except (paramiko.SSHException, socket.timeout, OSError) as exc:
            _close_client_safely(client)
            raise ConnectionError(
                f"Could not reach {self.host}:{self.port}: {exc}"
            ) from exc

        # Large window so big dumps don't stall waiting for ACKs, and no
        # automatic rekeying pausing a long stream.
        transport = client.get_transport()
        if transport:
            transport.set_keepalive(_KEEPALIVE_INTERVAL)
            transport.default_window_size = 64 * 1024 * 1024  # 64 MB
            transport.packetizer.REKEY_BYTES = pow(2, 40)
            transport.packetizer.REKEY_TIME = pow(2, 40)

        with self._lock:
            self._client = client
            self._set_state(ConnectionState.CONNECTED)
        logger.info("Connected to %s", self.host)

    def disconnect(self) -> None:
        """Close any running pipeline and the SSH connection.  Idempotent."""
        with self._lock:
            handle, self._handle = self._handle, None
            client, self._client = self._client, None
            if self._state is not ConnectionState.DISCONNECTED:
                self._set_state(ConnectionState.DISCONNECTED)
        if handle is not None:
            handle.close()
        if client is not None:
            _close_client_safely(client)
            logger.info("Disconnected from %s", self.host)

    close = disconnect

    def __enter__(self) -> "SSHConnection":
        self.connect()
        return self

    def __exit__(self, *exc_info) -> None:
        self.disconnect()

    # ------------------------------------------------------------------
    # Pipelines
    # ------------------------------------------------------------------

    def _get_transport(self) -> paramiko.Transport:
        """Return the live transport.

        Raises:
            CommandStartError: If not currently connected.
        """
        with self._lock:
            if self._client is None or self._state != ConnectionState.CONNECTED:
                raise CommandStartError(
                    f"Not connected to {self.host} (state: {self._state.name})"
                )
            transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            raise CommandStartError("SSH transport unavailable")
        return transport

    def _start(self, pipeline: str, want_stdin: bool) -> ProcessHandle:
        transport = self._get_transport()
        _claim_session(self)
        try:
            channel = transport.open_session(timeout=self.timeout)
            channel.exec_command(pipeline)
        except (paramiko.SSHException, OSError) as exc:
            raise CommandStartError(f"Could not start remote command: {exc}") from exc

        handle = ChannelProcess(channel, want_stdin=want_stdin)
        with self._lock:
            self._handle = handle
        return handle

    def start_streaming_out(self, pipeline: str) -> ProcessHandle:
        """Start *pipeline* and return a handle whose ``stdout`` carries its output."""
        return self._start(pipeline, want_stdin=False)

    def start_streaming_in(self, pipeline: str) -> ProcessHandle:
        """Start *pipeline* and return a handle whose ``stdin`` feeds it."""
        return self._start(pipeline, want_stdin=True)

    def execute_command(self, command: str) -> tuple[str, str, int]:
        """Execute *command* on the remote host and return (stdout, stderr, exit_code).

        Raises:
            CommandStartError: If not connected or the command cannot start.
        """
        transport = self._get_transport()
        try:
            channel = transport.open_session(timeout=self.timeout)
            channel.settimeout(_COMMAND_TIMEOUT)
            channel.exec_command(command)
            stdout = channel.makefile("rb")
            stderr = channel.makefile_stderr("rb")
            out = stdout.read()
            err = stderr.read()
            exit_code = channel.recv_exit_status()
        except (paramiko.SSHException, socket.timeout, OSError) as exc:
            logger.error("exec_command failed on %s: %s", self.host, exc)
            raise CommandStartError(f"Could not run remote command: {exc}") from exc
        return (
            out.decode("utf-8", errors="replace"),
            err.decode("utf-8", errors="replace"),
            exit_code,
        )


# ---------------------------------------------------------------------------
# LocalConnection
# ---------------------------------------------------------------------------


class LocalConnection:
    """Runs pipelines on this machine through ``bash -c``.

    Used for restores to localhost, where no remote transport is involved.
    """

    def __init__(self, shell: str = "bash") -> None:
        self.shell = shell
        self.host = "localhost"
        self._shell_path: str | None = None
        self._handle: ProcessHandle | None = None
        self._claimed = False
        self._lock = threading.Lock()

    def connect(self) -> None:
        """Resolve the shell binary.

        Raises:
            ConnectionError: If the shell is not on ``PATH``.
        """
        path = shutil.which(self.shell)
        if path is None:
            raise ConnectionError(f"Local shell {self.shell!r} not found on PATH")
        self._shell_path = path
        logger.debug("Local shell resolved to %s", path)

    def disconnect(self) -> None:
        with self._lock:
            handle, self._handle = self._handle, None
        if handle is not None:
            handle.close()

    close = disconnect

    def __enter__(self) -> "LocalConnection":
        self.connect()
        return self

    def __exit__(self, *exc_info) -> None:
        self.disconnect()

    def _popen(self, command: str, stdin, stdout) -> subprocess.Popen:
        return subprocess.Popen(
            [self._shell_path or self.shell, "-c", command],
            stdin=stdin,
            stdout=stdout,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )

    def _start(self, pipeline: str, want_stdin: bool) -> ProcessHandle:
        _claim_session(self)
        try:
            proc = self._popen(
                pipeline,
                stdin=subprocess.PIPE if want_stdin else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
            )
        except OSError as exc:
            raise CommandStartError(f"Could not start local command: {exc}") from exc

        handle = LocalProcess(proc)
        with self._lock:
            self._handle = handle
        logger.debug("Started local pipeline (pid %d)", proc.pid)
        return handle

    def start_streaming_out(self, pipeline: str) -> ProcessHandle:
        """Start *pipeline* locally; read its output from ``stdout``."""
        return self._start(pipeline, want_stdin=False)

    def start_streaming_in(self, pipeline: str) -> ProcessHandle:
        """Start *pipeline* locally; feed it through ``stdin``."""
        return self._start(pipeline, want_stdin=True)

    def execute_command(self, command: str) -> tuple[str, str, int]:
        """Run *command* locally and return (stdout, stderr, exit_code)."""
        try:
            proc = self._popen(command, stdin=subprocess.DEVNULL, stdout=subprocess.PIPE)
            out, err = proc.communicate(timeout=_COMMAND_TIMEOUT)
        except subprocess.TimeoutExpired as exc:
            proc.kill()
            proc.communicate()
            raise CommandStartError(f"Local command timed out after {_COMMAND_TIMEOUT}s") from exc
        except OSError as exc:
            raise CommandStartError(f"Could not run local command: {exc}") from exc
        return (
            out.decode("utf-8", errors="replace"),
            err.decode("utf-8", errors="replace"),
            proc.returncode,
        )
