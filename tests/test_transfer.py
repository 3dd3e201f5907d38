"""Tests for dback/transfer.py — TransferOrchestrator.

Most tests drive the orchestrator through in-memory fakes of the session
and process handle.  ``TestLocalPipelines`` runs real ``bash`` pipelines
with stub database tools to cover deadlock, cancellation and exit-status
behaviour end to end.
"""

from __future__ import annotations

import gzip
import io
import threading
import time
from pathlib import Path

import pytest

from dback.connection import LocalConnection
from dback.errors import (
    CommandStartError,
    ConnectionError,
    ProfileError,
    RemoteExitError,
    StreamCopyError,
    TransferCancelled,
)
from dback.models import Engine, TransportKind
from dback.process import ExitOutcome, ProcessHandle
from dback.transfer import EventKind, TransferOrchestrator, TransferState, check_database


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class BrokenSink(io.RawIOBase):
    """A writable stream whose consumer has gone away."""

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:
        raise BrokenPipeError(32, "Broken pipe")


class BlockingSource(io.RawIOBase):
    """Returns one chunk, then blocks until :meth:`release` is called."""

    def __init__(self, first: bytes) -> None:
        self._first = first
        self._released = threading.Event()

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        if self._first:
            data, self._first = self._first, b""
            return data
        self._released.wait(10)
        return b""

    def release(self) -> None:
        self._released.set()


class FakeHandle(ProcessHandle):
    """In-memory stand-in for a started pipeline."""

    def __init__(
        self,
        stdout: bytes | io.RawIOBase = b"",
        stderr: bytes = b"",
        exit_code: int = 0,
        stdin: io.IOBase | None = None,
    ) -> None:
        super().__init__()
        self.stdout = io.BytesIO(stdout) if isinstance(stdout, bytes) else stdout
        self.stderr = io.BytesIO(stderr)
        self.stdin = stdin
        self.exit_code = exit_code
        self.stdin_closed = False
        self.released = False

    def close_stdin(self) -> None:
        self.stdin_closed = True

    def wait(self) -> ExitOutcome:
        return ExitOutcome(self.exit_code)

    def poll(self) -> ExitOutcome | None:
        return ExitOutcome(self.exit_code)

    def _release(self) -> None:
        self.released = True
        if isinstance(self.stdout, BlockingSource):
            self.stdout.release()


class FakeConnection:
    """Records pipelines and hands back a prepared :class:`FakeHandle`."""

    def __init__(
        self,
        handle: FakeHandle | None = None,
        connect_error: Exception | None = None,
        start_error: Exception | None = None,
        on_connect=None,
    ) -> None:
        self.handle = handle or FakeHandle()
        self.connect_error = connect_error
        self.start_error = start_error
        self.on_connect = on_connect
        self.pipelines: list[str] = []
        self.connected = False
        self.disconnected = False

    def connect(self) -> None:
        if self.on_connect:
            self.on_connect()
        if self.connect_error:
            raise self.connect_error
        self.connected = True

    def disconnect(self) -> None:
        self.disconnected = True

    def _start(self, pipeline: str) -> FakeHandle:
        self.pipelines.append(pipeline)
        if self.start_error:
            raise self.start_error
        return self.handle

    start_streaming_out = _start
    start_streaming_in = _start


@pytest.fixture()
def profile(make_profile):
    return make_profile()


def _orchestrator(profile, connection, calls: list | None = None, **kwargs) -> TransferOrchestrator:
    def factory(p, restore_local):
        if calls is not None:
            calls.append(restore_local)
        return connection

    return TransferOrchestrator(profile, connection_factory=factory, **kwargs)


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


class TestExport:
    def test_success_writes_file_and_renames(self, profile, tmp_path: Path) -> None:
        payload = gzip.compress(b"CREATE TABLE t ();\n" * 5000)
        conn = FakeConnection(FakeHandle(stdout=payload))
        dest = tmp_path / "out.sql.gz"

        result = _orchestrator(profile, conn, chunk_size=4096).export(dest_path=dest)

        assert result.succeeded
        assert result.error is None
        assert dest.read_bytes() == payload
        assert not (tmp_path / "out.sql.gz.tmp").exists()
        assert result.bytes_transferred == len(payload)
        assert result.exit_code == 0
        assert conn.pipelines[0].startswith("set -o pipefail; PGPASSWORD=")
        assert conn.handle.released
        assert conn.disconnected

    def test_default_name_in_dest_dir(self, profile, tmp_path: Path) -> None:
        conn = FakeConnection(FakeHandle(stdout=b"dump"))

        result = _orchestrator(profile, conn).export(dest_dir=tmp_path)

        assert result.succeeded
        files = list(tmp_path.glob("prod_orders_*.sql.gz"))
        assert [str(f) for f in files] == [result.local_path]

    def test_state_sequence(self, profile, tmp_path: Path) -> None:
        states: list[TransferState] = []
        orchestrator = _orchestrator(
            profile, FakeConnection(FakeHandle(stdout=b"x")),
            on_state_change=lambda state, message: states.append(state),
        )

        orchestrator.export(dest_path=tmp_path / "out.gz")

        assert states == [
            TransferState.CONNECTING,
            TransferState.PIPELINE_BUILT,
            TransferState.STREAMING,
            TransferState.DRAINING,
            TransferState.SUCCEEDED,
        ]
        assert orchestrator.state is TransferState.SUCCEEDED

    def test_events_start_and_success(self, profile, tmp_path: Path) -> None:
        events = []
        orchestrator = _orchestrator(profile, FakeConnection(FakeHandle(stdout=b"x")), on_event=events.append)

        orchestrator.export(dest_path=tmp_path / "out.gz")

        assert [e.kind for e in events] == [EventKind.START, EventKind.SUCCESS]
        record = events[1].to_dict()
        assert record["kind"] == "success"
        assert record["direction"] == "export"
        assert record["bytes_transferred"] == 1

    def test_progress_is_monotonic(self, profile, tmp_path: Path) -> None:
        seen: list[int] = []
        payload = b"z" * 100_000
        orchestrator = _orchestrator(
            profile, FakeConnection(FakeHandle(stdout=payload)),
            chunk_size=1000, on_progress=lambda n, total: seen.append(n),
        )

        orchestrator.export(dest_path=tmp_path / "out.gz")

        assert seen == sorted(seen)
        assert seen[-1] == len(payload)

    def test_nonzero_exit_fails_and_removes_partial(self, profile, tmp_path: Path) -> None:
        handle = FakeHandle(
            stdout=b"partial dump",
            stderr=b"pg_dump: error: connection to server failed\n",
            exit_code=1,
        )
        events = []
        dest = tmp_path / "out.sql.gz"

        result = _orchestrator(profile, FakeConnection(handle), on_event=events.append).export(dest_path=dest)

        assert not result.succeeded
        assert isinstance(result.error, RemoteExitError)
        assert result.failed_stage == "exit"
        assert result.error.exit_code == 1
        assert "connection to server failed" in str(result.error)
        assert "connection to server failed" in result.stderr
        assert not dest.exists()
        assert not (tmp_path / "out.sql.gz.tmp").exists()
        assert events[-1].kind is EventKind.FAILURE
        assert events[-1].stage == "exit"

    def test_connection_failure(self, profile, tmp_path: Path) -> None:
        conn = FakeConnection(connect_error=ConnectionError("Could not reach db.example.com:22"))

        result = _orchestrator(profile, conn).export(dest_path=tmp_path / "out.gz")

        assert result.failed_stage == "connect"
        assert conn.pipelines == []
        assert list(tmp_path.iterdir()) == []

    def test_start_failure(self, profile, tmp_path: Path) -> None:
        conn = FakeConnection(start_error=CommandStartError("no session"))

        result = _orchestrator(profile, conn).export(dest_path=tmp_path / "out.gz")

        assert result.failed_stage == "start"
        assert conn.disconnected

    def test_invalid_profile_never_connects(self, make_profile, tmp_path: Path) -> None:
        calls: list = []

        result = _orchestrator(make_profile(db_name=""), FakeConnection(), calls).export(dest_path=tmp_path / "x")

        assert isinstance(result.error, ProfileError)
        assert result.failed_stage == "validate"
        assert calls == []

    def test_local_write_failure(self, profile, tmp_path: Path) -> None:
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")

        result = _orchestrator(profile, FakeConnection(FakeHandle(stdout=b"x"))).export(
            dest_path=blocker / "out.gz"
        )

        assert isinstance(result.error, StreamCopyError)
        assert result.failed_stage == "stream"

    def test_orchestrator_is_single_use(self, profile, tmp_path: Path) -> None:
        orchestrator = _orchestrator(profile, FakeConnection(FakeHandle(stdout=b"x")))
        orchestrator.export(dest_path=tmp_path / "a.gz")
        with pytest.raises(RuntimeError):
            orchestrator.export(dest_path=tmp_path / "b.gz")


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


class TestImport:
    @pytest.fixture()
    def dump_file(self, tmp_path: Path) -> Path:
        path = tmp_path / "dump.sql.gz"
        path.write_bytes(gzip.compress(b"INSERT INTO t VALUES (1);\n" * 3000))
        return path

    def test_success_streams_whole_file(self, profile, dump_file: Path) -> None:
        sink = io.BytesIO()
        conn = FakeConnection(FakeHandle(stdin=sink))
        calls: list = []

        result = _orchestrator(profile, conn, calls, chunk_size=512).import_(dump_file)

        assert result.succeeded
        assert sink.getvalue() == dump_file.read_bytes()
        assert conn.handle.stdin_closed
        assert result.total_bytes == dump_file.stat().st_size
        assert result.progress_fraction == 1.0
        assert calls == [False]
        assert "| PGPASSWORD='s3cret' psql" in conn.pipelines[0]

    def test_restore_local_uses_local_session(self, make_profile, dump_file: Path) -> None:
        # Relay and SSH fields are irrelevant when restoring locally.
        profile = make_profile(transport=TransportKind.RELAY, host="", ssh_user="")
        calls: list = []

        result = _orchestrator(profile, FakeConnection(FakeHandle(stdin=io.BytesIO())), calls).import_(
            dump_file, restore_local=True
        )

        assert result.succeeded
        assert calls == [True]

    def test_nonzero_exit_after_full_copy_fails(self, profile, dump_file: Path) -> None:
        handle = FakeHandle(stdin=io.BytesIO(), stderr=b"ERROR:  relation \"t\" does not exist", exit_code=3)

        result = _orchestrator(profile, FakeConnection(handle)).import_(dump_file)

        assert isinstance(result.error, RemoteExitError)
        assert result.error.exit_code == 3
        assert "does not exist" in str(result.error)

    def test_broken_pipe_reports_exit_status(self, profile, dump_file: Path) -> None:
        handle = FakeHandle(stdin=BrokenSink(), stderr=b"ERROR 1045 (28000): Access denied", exit_code=1)

        result = _orchestrator(profile, FakeConnection(handle)).import_(dump_file)

        assert isinstance(result.error, RemoteExitError)
        assert result.failed_stage == "exit"
        assert "Access denied" in result.stderr

    def test_broken_pipe_with_clean_exit_is_stream_error(self, profile, dump_file: Path) -> None:
        handle = FakeHandle(stdin=BrokenSink(), exit_code=0)

        result = _orchestrator(profile, FakeConnection(handle)).import_(dump_file)

        assert type(result.error) is StreamCopyError
        assert "writing remote stream" in str(result.error)

    def test_missing_source_file(self, profile, tmp_path: Path) -> None:
        calls: list = []

        result = _orchestrator(profile, FakeConnection(), calls).import_(tmp_path / "missing.sql.gz")

        assert result.failed_stage == "stream"
        assert calls == []

    def test_empty_source_file(self, profile, tmp_path: Path) -> None:
        empty = tmp_path / "empty.sql.gz"
        empty.write_bytes(b"")
        handle = FakeHandle(stdin=io.BytesIO())

        result = _orchestrator(profile, FakeConnection(handle)).import_(empty)

        assert result.succeeded
        assert result.bytes_transferred == 0
        assert handle.stdin_closed


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancel:
    def test_cancel_mid_stream(self, profile, tmp_path: Path) -> None:
        handle = FakeHandle(stdout=BlockingSource(b"a" * 1024))
        conn = FakeConnection(handle)
        holder: dict = {}

        def on_progress(transferred: int, total) -> None:
            holder["orchestrator"].cancel()

        orchestrator = _orchestrator(profile, conn, on_progress=on_progress)
        holder["orchestrator"] = orchestrator
        dest = tmp_path / "out.gz"

        result = orchestrator.export(dest_path=dest)

        assert isinstance(result.error, TransferCancelled)
        assert result.failed_stage == "cancelled"
        assert orchestrator.cancelled
        assert handle.released
        assert conn.disconnected
        assert not dest.exists()
        assert not (tmp_path / "out.gz.tmp").exists()

    def test_cancel_during_connect(self, profile, tmp_path: Path) -> None:
        holder: dict = {}
        conn = FakeConnection(on_connect=lambda: holder["orchestrator"].cancel())
        orchestrator = _orchestrator(profile, conn)
        holder["orchestrator"] = orchestrator

        result = orchestrator.export(dest_path=tmp_path / "out.gz")

        assert isinstance(result.error, TransferCancelled)
        assert conn.pipelines == []
        assert conn.disconnected

    def test_cancel_after_success_is_noop(self, profile, tmp_path: Path) -> None:
        orchestrator = _orchestrator(profile, FakeConnection(FakeHandle(stdout=b"x")))
        result = orchestrator.export(dest_path=tmp_path / "out.gz")

        orchestrator.cancel()

        assert result.succeeded
        assert not orchestrator.cancelled


# ---------------------------------------------------------------------------
# Real local pipelines
# ---------------------------------------------------------------------------


class TestLocalPipelines:
    @pytest.fixture()
    def local_env(self, stub_shell, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("PATH", str(stub_shell.bin_dir))
        return stub_shell

    @staticmethod
    def _local_factory(profile, restore_local):
        return LocalConnection()

    def _run_export(self, orchestrator: TransferOrchestrator, dest: Path, timeout: float = 60):
        box: dict = {}
        worker = threading.Thread(target=lambda: box.update(result=orchestrator.export(dest_path=dest)))
        worker.start()
        worker.join(timeout)
        assert not worker.is_alive(), "export did not finish"
        return box["result"]

    def test_chatty_stderr_does_not_deadlock(self, profile, local_env, tmp_path: Path) -> None:
        """Megabytes on both stderr and stdout, far beyond any pipe buffer."""
        local_env.stub("pg_dump", "head -c 1048576 /dev/zero >&2; head -c 1048576 /dev/zero")
        orchestrator = TransferOrchestrator(profile, connection_factory=self._local_factory)
        dest = tmp_path / "out.sql.gz"

        result = self._run_export(orchestrator, dest)

        assert result.succeeded, result.error
        assert gzip.decompress(dest.read_bytes()) == b"\0" * 1048576
        assert 0 < len(result.stderr) <= 64 * 1024

    def test_failing_dump_leaves_no_file(self, profile, local_env, tmp_path: Path) -> None:
        local_env.stub("pg_dump", "head -c 100000 /dev/zero; echo 'pg_dump: error: boom' >&2; exit 2")
        dest = tmp_path / "out.sql.gz"

        result = self._run_export(TransferOrchestrator(profile, connection_factory=self._local_factory), dest)

        assert isinstance(result.error, RemoteExitError)
        assert result.exit_code == 2
        assert "boom" in result.stderr
        assert not dest.exists()
        assert not (tmp_path / "out.sql.gz.tmp").exists()

    def test_cancel_from_another_thread(self, profile, local_env, tmp_path: Path) -> None:
        local_env.stub("pg_dump", "head -c 1048576 /dev/urandom; sleep 30")
        started = threading.Event()
        orchestrator = TransferOrchestrator(
            profile,
            connection_factory=self._local_factory,
            on_progress=lambda n, total: started.set(),
        )
        dest = tmp_path / "out.sql.gz"
        box: dict = {}
        worker = threading.Thread(target=lambda: box.update(result=orchestrator.export(dest_path=dest)))
        worker.start()
        assert started.wait(20), "no data arrived"

        began = time.monotonic()
        orchestrator.cancel()
        worker.join(10)

        assert not worker.is_alive()
        assert time.monotonic() - began < 10
        assert isinstance(box["result"].error, TransferCancelled)
        assert not dest.exists()
        assert not (tmp_path / "out.sql.gz.tmp").exists()

    def test_local_restore(self, make_profile, local_env, tmp_path: Path) -> None:
        captured = tmp_path / "restored.sql"
        local_env.stub("mysql", f"cat > {captured}")
        plain = b"INSERT INTO t VALUES (1);\n" * 20000
        source = tmp_path / "dump.sql.gz"
        source.write_bytes(gzip.compress(plain))
        profile = make_profile(engine=Engine.MYSQL)

        result = TransferOrchestrator(profile).import_(source, restore_local=True)

        assert result.succeeded, result.error
        assert captured.read_bytes() == plain

    def test_local_restore_failure_reports_exit(self, make_profile, local_env, tmp_path: Path) -> None:
        local_env.stub("mysql", "echo 'ERROR 1045 (28000): Access denied' >&2; exit 1")
        source = tmp_path / "dump.sql.gz"
        source.write_bytes(gzip.compress(b"INSERT INTO t VALUES (1);\n" * 200000))

        result = TransferOrchestrator(make_profile(engine=Engine.MYSQL)).import_(source, restore_local=True)

        assert isinstance(result.error, RemoteExitError)
        assert result.exit_code == 1
        assert "Access denied" in result.stderr


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


class TestCheckDatabase:
    def test_reports_success_and_output(self, profile) -> None:
        class Session:
            def execute_command(self, command: str):
                self.command = command
                return "127.0.0.1:5432 - accepting connections\n", "", 0

        session = Session()
        ok, output = check_database(profile, connection=session)

        assert ok
        assert output == "127.0.0.1:5432 - accepting connections"
        assert session.command.startswith("PGPASSWORD='s3cret' pg_isready")

    def test_reports_failure(self, profile) -> None:
        class Session:
            def execute_command(self, command: str):
                return "", "no response", 2

        assert check_database(profile, connection=Session()) == (False, "no response")

    def test_relay_profile_rejected(self, make_profile) -> None:
        profile = make_profile(transport=TransportKind.RELAY, relay_url="https://x", relay_key="k")
        with pytest.raises(ProfileError):
            check_database(profile)
