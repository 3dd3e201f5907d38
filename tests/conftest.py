"""Shared fixtures: profiles, an in-memory keyring and a stub-tool shell."""

from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path
from typing import Callable

import keyring
import keyring.errors
import pytest

from dback.models import ConnectionProfile, Engine, Topology

BASH = shutil.which("bash")
GZIP = shutil.which("gzip")

# Real tools linked into the restricted PATH used by shell-level tests.
_PASSTHROUGH_TOOLS = ("bash", "sh", "gzip", "gunzip", "cat", "head", "sleep", "printf", "env")


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_profile() -> Callable[..., ConnectionProfile]:
    """Return a factory for valid SSH profiles; keyword args override fields."""

    def _make(**overrides) -> ConnectionProfile:
        values = dict(
            name="prod",
            host="db.example.com",
            ssh_user="deploy",
            ssh_password="ssh-secret",
            engine=Engine.POSTGRESQL,
            db_host="127.0.0.1",
            db_user="app",
            db_password="s3cret",
            db_name="orders",
            topology=Topology.NATIVE,
        )
        values.update(overrides)
        return ConnectionProfile(**values)

    return _make


# ---------------------------------------------------------------------------
# Keyring
# ---------------------------------------------------------------------------


@pytest.fixture()
def fake_keyring(monkeypatch: pytest.MonkeyPatch) -> dict[tuple[str, str], str]:
    """Replace the keyring API with a dict keyed by ``(service, account)``."""
    store: dict[tuple[str, str], str] = {}

    def set_password(service: str, account: str, value: str) -> None:
        store[(service, account)] = value

    def get_password(service: str, account: str) -> str | None:
        return store.get((service, account))

    def delete_password(service: str, account: str) -> None:
        if (service, account) not in store:
            raise keyring.errors.PasswordDeleteError("not found")
        del store[(service, account)]

    monkeypatch.setattr(keyring, "set_password", set_password)
    monkeypatch.setattr(keyring, "get_password", get_password)
    monkeypatch.setattr(keyring, "delete_password", delete_password)
    return store


# ---------------------------------------------------------------------------
# Stub shell environment
# ---------------------------------------------------------------------------


class StubShell:
    """A directory of real and stub executables used as the only ``PATH``.

    Stub scripts stand in for database tools so pipelines can run end to
    end without a database server.
    """

    def __init__(self, bin_dir: Path) -> None:
        self.bin_dir = bin_dir
        self.bin_dir.mkdir()
        for tool in _PASSTHROUGH_TOOLS:
            self.link(tool)

    def link(self, tool: str) -> bool:
        """Symlink the real *tool* into the bin dir; False if unavailable."""
        real = shutil.which(tool)
        if real is None:
            return False
        target = self.bin_dir / tool
        if not target.exists():
            target.symlink_to(real)
        return True

    def stub(self, name: str, body: str) -> Path:
        """Write an executable ``sh`` script called *name*."""
        path = self.bin_dir / name
        path.write_text(f"#!{shutil.which('sh')}\n{body}\n", encoding="utf-8")
        path.chmod(0o755)
        return path

    @property
    def env(self) -> dict[str, str]:
        return {"PATH": str(self.bin_dir), "HOME": os.environ.get("HOME", "/")}

    def run(self, command: str, stdin: bytes = b"", timeout: float = 30) -> subprocess.CompletedProcess:
        """Run *command* with ``bash -c`` under the restricted ``PATH``."""
        return subprocess.run(
            [BASH, "-c", command],
            input=stdin,
            capture_output=True,
            env=self.env,
            timeout=timeout,
        )


@pytest.fixture()
def stub_shell(tmp_path: Path) -> StubShell:
    """Return a :class:`StubShell` rooted in a temporary directory."""
    if BASH is None or GZIP is None:
        pytest.skip("bash and gzip are required for pipeline tests")
    return StubShell(tmp_path / "bin")
