"""Exception taxonomy for DBack.

Every failure surfaced by a transfer maps to exactly one of these classes so
callers can tell "could not reach host" apart from "reached host but the dump
tool failed" and from "transferred fine but the local disk write failed".
Nothing here is retried internally.
"""

from __future__ import annotations


class DBackError(Exception):
    """Base class for all DBack errors.

    ``stage`` names the transfer stage that failed (``"connect"``,
    ``"start"``, ``"stream"``, ``"exit"``...) and is used in diagnostics.
    """

    stage = "transfer"

    def __init__(self, message: str, stage: str | None = None) -> None:
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class ProfileError(DBackError, ValueError):
    """Raised when a ConnectionProfile is missing fields required for an operation."""

    stage = "validate"

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        super().__init__("Invalid profile: " + "; ".join(self.problems))


class ConnectionError(DBackError):  # noqa: A001  (shadows built-in intentionally)
    """Raised when the endpoint is unreachable or rejects authentication."""

    stage = "connect"


class UnknownHostError(ConnectionError):
    """Raised when the remote host key is not in known_hosts (or has changed).

    Carries the fingerprint and key so the caller can prompt the user and
    optionally save it via :func:`dback.connection.accept_host_key`.
    """

    def __init__(
        self,
        message: str,
        hostname: str = "",
        key_type: str = "",
        fingerprint: str = "",
        key=None,
    ) -> None:
        """Initialise with optional host-key metadata."""
        super().__init__(message)
        self.hostname = hostname
        self.key_type = key_type
        self.fingerprint = fingerprint
        self.key = key


class CommandStartError(DBackError):
    """Raised when a session cannot allocate stdio or launch the pipeline."""

    stage = "start"


class StreamCopyError(DBackError):
    """Raised on local file I/O failure or a broken pipe mid-transfer."""

    stage = "stream"


class TransferCancelled(StreamCopyError):
    """Raised when the caller cancels a transfer before it finalises."""

    stage = "cancelled"


class RemoteExitError(DBackError):
    """Raised when the pipeline exits nonzero; carries captured stderr."""

    stage = "exit"

    def __init__(self, message: str, exit_code: int, stderr: str = "") -> None:
        self.exit_code = exit_code
        self.stderr = stderr
        detail = f"{message} (exit code {exit_code})"
        if stderr.strip():
            detail += f": {stderr.strip()}"
        super().__init__(detail)


class RelayError(RemoteExitError):
    """Raised when the HTTP relay answers with a non-200 status.

    ``exit_code`` holds the HTTP status code and ``stderr`` the response body.
    """

    stage = "relay"
