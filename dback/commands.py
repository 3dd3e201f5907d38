"""Shell pipeline construction for DBack.

Every function here is pure: it maps a :class:`ConnectionProfile` to a shell
command string and performs no I/O.  Profile values are untrusted, so every
token derived from them goes through :func:`shell_quote`, the single escaping
primitive used across the module.

Export pipelines look like::

    set -o pipefail; <dump command> | { <compressor selection>; }

and import pipelines like::

    set -o pipefail; { <decompressor selection>; } | <restore command>

The compressor is picked by the remote shell at run time: ``zstd`` when it is
on ``PATH``, otherwise ``gzip``.
"""

from __future__ import annotations

import logging
from typing import Callable, NamedTuple

from dback.models import ConnectionProfile, Engine, SECRET_FIELDS

logger = logging.getLogger(__name__)

CommandBuilder = Callable[[ConnectionProfile], str]

COMPRESS_CMD = "if command -v zstd >/dev/null 2>&1; then zstd -q -c; else gzip -c; fi"
# zstd -d also reads gzip streams on most builds; gunzip is the second chance.
DECOMPRESS_CMD = (
    "if command -v zstd >/dev/null 2>&1; "
    "then zstd -q -d -c 2>/dev/null || gunzip -c; "
    "else gunzip -c; fi"
)

COUCHDB_CONFIG = "/opt/couchdb/etc/local.ini"
COUCHDB_NATIVE_DATA_DIR = "/var/lib/couchdb"
COUCHDB_CONTAINER_DATA_DIR = "/opt/couchdb/data"

MASK = "'***'"


def shell_quote(value: object) -> str:
    """Quote *value* so a POSIX shell reads it back as exactly one literal word.

    The value is wrapped in single quotes and every embedded ``'`` becomes
    ``'\\''`` (close quote, escaped quote, reopen quote).  Nothing else is
    special inside single quotes, so ``"``, ``$``, backticks, backslashes and
    whitespace all survive untouched.
    """
    return "'" + str(value).replace("'", "'\\''") + "'"


def _docker_exec(profile: ConnectionProfile, *options: str, interactive: bool = False) -> str:
    """Return the ``docker exec`` prefix addressing the profile's container."""
    parts = ["docker", "exec"]
    if interactive:
        parts.append("-i")
    parts.extend(options)
    parts.append(shell_quote(profile.container_id))
    return " ".join(parts)


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------


def _pg_command(profile: ConnectionProfile, tool: str, interactive: bool, with_db: bool = True) -> str:
    auth_env = f"PGPASSWORD={shell_quote(profile.db_password)}"
    args = f"-U {shell_quote(profile.db_user)}"
    if with_db:
        args += f" {shell_quote(profile.db_name)}"

    if profile.in_container:
        # Inside the container the server is reached over its local socket.
        prefix = _docker_exec(profile, "-e", auth_env, interactive=interactive)
        return f"{prefix} {tool} {args}"

    host_args = f"-h {shell_quote(profile.db_host)} -p {shell_quote(profile.effective_db_port)}"
    return f"{auth_env} {tool} {host_args} {args}"


def _pg_export(profile: ConnectionProfile) -> str:
    return _pg_command(profile, "pg_dump", interactive=False)


def _pg_import(profile: ConnectionProfile) -> str:
    return _pg_command(profile, "psql", interactive=True)


def _pg_health(profile: ConnectionProfile) -> str:
    return _pg_command(profile, "pg_isready", interactive=False, with_db=False)


# ---------------------------------------------------------------------------
# MySQL / MariaDB
# ---------------------------------------------------------------------------


def _mysql_command(
    profile: ConnectionProfile,
    tool: str,
    interactive: bool,
    extra: str = "",
    trailing: str | None = None,
) -> str:
    auth_args = f"-u {shell_quote(profile.db_user)}"
    # No space after -p: the client takes the rest of the word as the password.
    # A bare -p would make the client prompt, so leave it out when empty.
    if profile.db_password:
        auth_args += f" -p{shell_quote(profile.db_password)}"
    tail = trailing if trailing is not None else shell_quote(profile.db_name)
    args = " ".join(part for part in (auth_args, extra, tail) if part)

    if profile.in_container:
        return f"{_docker_exec(profile, interactive=interactive)} {tool} {args}"

    host_args = f"-h {shell_quote(profile.db_host)} -P {shell_quote(profile.effective_db_port)}"
    return f"{tool} {host_args} {args}"


def _mysql_export(profile: ConnectionProfile) -> str:
    return _mysql_command(
        profile,
        "mysqldump",
        interactive=False,
        extra="--single-transaction --routines --triggers",
    )


def _mysql_import(profile: ConnectionProfile) -> str:
    return _mysql_command(profile, "mysql", interactive=True)


def _mysql_health(profile: ConnectionProfile) -> str:
    return _mysql_command(profile, "mysqladmin", interactive=False, trailing="ping")


# ---------------------------------------------------------------------------
# CouchDB
# ---------------------------------------------------------------------------
#
# CouchDB has no streaming dump tool, so the data directory itself is
# archived.  This is a privileged, non-atomic sequence: a failure between
# stop and start can leave the service stopped.


def _couch_export(profile: ConnectionProfile) -> str:
    if profile.in_container:
        container = shell_quote(profile.container_id)
        mount_format = shell_quote(
            "{{ range .Mounts }}{{ if eq .Destination \"%s\" }}{{ .Destination }}{{ end }}{{ end }}"
            % COUCHDB_CONTAINER_DATA_DIR
        )
        return (
            f"( DATA_DIR=$(docker inspect --format {mount_format} {container} 2>/dev/null); "
            f"if [ -z \"$DATA_DIR\" ]; then DATA_DIR={COUCHDB_CONTAINER_DATA_DIR}; fi; "
            f"docker exec {container} tar cf - \"$DATA_DIR\" )"
        )
    return (
        "( DATA_DIR=$(sed -n 's/^[[:space:]]*database_dir[[:space:]]*=[[:space:]]*//p' "
        f"{COUCHDB_CONFIG} 2>/dev/null | head -n 1); "
        f"if [ -z \"$DATA_DIR\" ]; then DATA_DIR={COUCHDB_NATIVE_DATA_DIR}; fi; "
        "sudo -n systemctl stop couchdb >&2; "
        "tar cf - \"$DATA_DIR\"; rc=$?; "
        "sudo -n systemctl start couchdb >&2; "
        "exit $rc )"
    )


def _couch_import(profile: ConnectionProfile) -> str:
    if profile.in_container:
        container = shell_quote(profile.container_id)
        return (
            f"( docker exec -i {container} tar xf - -C /; rc=$?; "
            f"docker restart {container} >&2; exit $rc )"
        )
    return (
        "( sudo -n systemctl stop couchdb >&2; "
        "tar xf - -C /; rc=$?; "
        "sudo -n systemctl start couchdb >&2; "
        "exit $rc )"
    )


def _couch_health(profile: ConnectionProfile) -> str:
    credentials = shell_quote(f"{profile.db_user}:{profile.db_password}")
    host = "127.0.0.1" if profile.in_container else profile.db_host
    url = shell_quote(f"http://{host}:{profile.effective_db_port}/")
    cmd = f"curl -s -f -u {credentials} {url}"
    if profile.in_container:
        return f"{_docker_exec(profile)} {cmd}"
    return cmd


# ---------------------------------------------------------------------------
# Dispatch table
# ---------------------------------------------------------------------------


class EngineCommands(NamedTuple):
    """Producer, consumer and health-check builders for one engine."""

    export: CommandBuilder
    import_: CommandBuilder
    health_check: CommandBuilder


_MYSQL_COMMANDS = EngineCommands(_mysql_export, _mysql_import, _mysql_health)

ENGINE_COMMANDS: dict[Engine, EngineCommands] = {
    Engine.MYSQL: _MYSQL_COMMANDS,
    Engine.MARIADB: _MYSQL_COMMANDS,
    Engine.POSTGRESQL: EngineCommands(_pg_export, _pg_import, _pg_health),
    Engine.COUCHDB: EngineCommands(_couch_export, _couch_import, _couch_health),
}


def build_export_pipeline(profile: ConnectionProfile) -> str:
    """Return the dump pipeline for *profile*, compressed on the remote side.

    ``pipefail`` makes a failing dump fail the whole pipeline even though
    the compressor exits 0.
    """
    producer = ENGINE_COMMANDS[profile.engine].export(profile)
    return f"set -o pipefail; {producer} | {{ {COMPRESS_CMD}; }}"


def build_import_pipeline(profile: ConnectionProfile) -> str:
    """Return the restore pipeline for *profile*, reading compressed stdin."""
    consumer = ENGINE_COMMANDS[profile.engine].import_(profile)
    return f"set -o pipefail; {{ {DECOMPRESS_CMD}; }} | {consumer}"


def build_health_check(profile: ConnectionProfile) -> str:
    """Return a command that exits 0 when the database answers."""
    return ENGINE_COMMANDS[profile.engine].health_check(profile)


def mask_secrets(command: str, profile: ConnectionProfile) -> str:
    """Return *command* with the profile's quoted secrets replaced for logging."""
    masked = command
    for name in SECRET_FIELDS:
        secret = getattr(profile, name)
        if secret:
            masked = masked.replace(shell_quote(secret), MASK)
    if profile.db_password:
        masked = masked.replace(
            shell_quote(f"{profile.db_user}:{profile.db_password}"), MASK
        )
    return masked
