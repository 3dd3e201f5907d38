"""DBack — command-line entry point.

Configures logging, loads settings and profiles, and runs one command::

    python main.py profiles list
    python main.py export prod-db --dest ~/backups
    python main.py import prod-db ~/backups/prod-db_orders_01_03_2024_09_05_07.sql.gz
    python main.py import prod-db dump.sql.gz --local
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from datetime import datetime
from pathlib import Path

from dback.config import ConfigManager
from dback.connection import SSHConnection, accept_host_key
from dback.errors import DBackError, UnknownHostError
from dback.models import ConnectionProfile
from dback.transfer import TransferOrchestrator, TransferResult, check_database
from dback.utils.path_helpers import human_readable_size, normalize_local_path

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
_DATE_FORMAT = "%H:%M:%S"

log = logging.getLogger("dback")


def _configure_logging(verbose: bool) -> None:
    """Set up root logging to stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    # Quieten noisy third-party loggers
    logging.getLogger("paramiko").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_profile(config: ConfigManager, name: str) -> ConnectionProfile:
    profile = config.load_profile(name)
    if profile is None:
        raise SystemExit(f"No profile named {name!r}")
    return profile


def _print_progress(transferred: int, total: int | None) -> None:
    if total:
        pct = 100.0 * transferred / total
        sys.stderr.write(f"\r{human_readable_size(transferred)} / {human_readable_size(total)} ({pct:.1f}%)")
    else:
        sys.stderr.write(f"\r{human_readable_size(transferred)}")
    sys.stderr.flush()


def _orchestrator(config: ConfigManager, profile: ConnectionProfile, args) -> TransferOrchestrator:
    return TransferOrchestrator(
        profile,
        chunk_size=int(config.get("transfer_chunk_size")),
        connect_timeout=float(config.get("ssh_timeout")),
        strict_host_keys=bool(config.get("strict_host_key_checking")) and not args.insecure,
        relay_timeout=float(config.get("relay_timeout")),
        on_progress=None if args.quiet else _print_progress,
        on_event=config.append_history,
    )


def _run_transfer(orchestrator: TransferOrchestrator, action, *action_args) -> TransferResult:
    """Run *action* on a worker thread so Ctrl-C can cancel it cleanly."""
    box: dict[str, TransferResult] = {}
    worker = threading.Thread(
        target=lambda: box.update(result=action(*action_args)),
        name="transfer",
        daemon=True,
    )
    worker.start()
    try:
        while worker.is_alive():
            worker.join(0.2)
    except KeyboardInterrupt:
        log.warning("Interrupted — cancelling transfer")
        orchestrator.cancel()
        worker.join()
    return box["result"]


def _report(result: TransferResult) -> int:
    sys.stderr.write("\n")
    if result.succeeded:
        print(
            f"{result.direction.name.title()} succeeded: {result.local_path} "
            f"({human_readable_size(result.bytes_transferred)}, {result.speed_mbps:.2f} MB/s)"
        )
        return 0
    print(f"{result.direction.name.title()} failed at stage '{result.failed_stage}': {result.error}",
          file=sys.stderr)
    if isinstance(result.error, UnknownHostError):
        print("Run 'trust-host' for this profile after verifying the fingerprint.", file=sys.stderr)
    return 1


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_profiles(config: ConfigManager, args) -> int:
    if args.profiles_action == "list":
        for record in config.get_profiles():
            target = record.get("relay_url") or f"{record.get('ssh_user', '')}@{record.get('host', '')}"
            print(f"{record['name']:<24} {record.get('engine', ''):<11} {target}")
        return 0
    if args.profiles_action == "show":
        record = config.get_profile(args.name)
        if record is None:
            print(f"No profile named {args.name!r}", file=sys.stderr)
            return 1
        print(json.dumps(record, indent=2))
        return 0
    if args.profiles_action == "add":
        record = json.loads(Path(args.file).read_text(encoding="utf-8"))
        profile = ConnectionProfile.from_dict(record)
        problems = profile.validate()
        for problem in problems:
            log.warning("Profile %s: %s", profile.name, problem)
        config.save_profile(profile)
        print(f"Saved profile {profile.name!r}")
        return 0
    if args.profiles_action == "delete":
        return 0 if config.delete_profile(args.name) else 1
    return 2


def cmd_export(config: ConfigManager, args) -> int:
    profile = _load_profile(config, args.profile)
    orchestrator = _orchestrator(config, profile, args)
    if args.output:
        result = _run_transfer(orchestrator, orchestrator.export, None, normalize_local_path(args.output))
    else:
        dest_dir = normalize_local_path(args.dest or config.get("export_dir"))
        result = _run_transfer(orchestrator, orchestrator.export, dest_dir)
    return _report(result)


def cmd_import(config: ConfigManager, args) -> int:
    profile = _load_profile(config, args.profile)
    orchestrator = _orchestrator(config, profile, args)
    result = _run_transfer(
        orchestrator, orchestrator.import_, normalize_local_path(args.file), args.local
    )
    return _report(result)


def cmd_check(config: ConfigManager, args) -> int:
    profile = _load_profile(config, args.profile)
    ok, output = check_database(
        profile,
        connect_timeout=float(config.get("ssh_timeout")),
        strict_host_keys=bool(config.get("strict_host_key_checking")) and not args.insecure,
    )
    print(output)
    print("Database reachable" if ok else "Database check FAILED")
    return 0 if ok else 1


def cmd_trust_host(config: ConfigManager, args) -> int:
    profile = _load_profile(config, args.profile)
    connection = SSHConnection.from_profile(profile, timeout=float(config.get("ssh_timeout")))
    try:
        connection.connect()
    except UnknownHostError as exc:
        if exc.key is None:
            # Changed key: never overwrite silently.
            print(str(exc), file=sys.stderr)
            return 1
        print(str(exc))
        if not args.yes and input("Trust this host? [y/N] ").strip().lower() != "y":
            return 1
        accept_host_key(exc.hostname, exc.key)
        return 0
    finally:
        connection.disconnect()
    print(f"{profile.host} is already trusted")
    return 0


def cmd_history(config: ConfigManager, args) -> int:
    if args.clear:
        config.clear_history()
        print("History cleared")
        return 0
    entries = config.get_history()
    if args.limit:
        entries = entries[-args.limit:]
    for entry in entries:
        when = datetime.fromtimestamp(entry.get("timestamp", 0)).strftime("%Y-%m-%d %H:%M:%S")
        line = f"[{when}] {entry.get('direction', '')} {entry.get('kind', '')}: {entry.get('detail', '')}"
        if entry.get("error"):
            line += f" — {entry['error']}"
        print(line)
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dback", description="Database backup and restore over SSH.")
    parser.add_argument("--config-dir", type=Path, help="settings directory (default ~/.dback)")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="no progress output")
    parser.add_argument("--insecure", action="store_true", help="accept unknown SSH host keys")
    sub = parser.add_subparsers(dest="command", required=True)

    profiles = sub.add_parser("profiles", help="manage saved profiles")
    profiles_sub = profiles.add_subparsers(dest="profiles_action", required=True)
    profiles_sub.add_parser("list")
    show = profiles_sub.add_parser("show")
    show.add_argument("name")
    add = profiles_sub.add_parser("add", help="add or replace a profile from a JSON file")
    add.add_argument("file")
    delete = profiles_sub.add_parser("delete")
    delete.add_argument("name")
    profiles.set_defaults(func=cmd_profiles)

    export = sub.add_parser("export", help="dump a database to a local file")
    export.add_argument("profile")
    export.add_argument("--dest", help="destination directory")
    export.add_argument("-o", "--output", help="exact output file path")
    export.set_defaults(func=cmd_export)

    restore = sub.add_parser("import", help="restore a database from a local file")
    restore.add_argument("profile")
    restore.add_argument("file")
    restore.add_argument("--local", action="store_true", help="restore to this machine")
    restore.set_defaults(func=cmd_import)

    check = sub.add_parser("check", help="test database connectivity")
    check.add_argument("profile")
    check.set_defaults(func=cmd_check)

    trust = sub.add_parser("trust-host", help="save the profile host's SSH key")
    trust.add_argument("profile")
    trust.add_argument("-y", "--yes", action="store_true", help="do not prompt")
    trust.set_defaults(func=cmd_trust_host)

    history = sub.add_parser("history", help="show recent transfers")
    history.add_argument("--limit", type=int, default=20)
    history.add_argument("--clear", action="store_true", help="delete all recorded transfers")
    history.set_defaults(func=cmd_history)
    return parser


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and run DBack."""
    args = _build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    config = ConfigManager(base_dir=args.config_dir)
    try:
        return args.func(config, args)
    except DBackError as exc:
        log.error("%s failed at stage '%s': %s", args.command, exc.stage, exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
