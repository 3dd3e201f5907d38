"""Connection profile model for DBack.

A :class:`ConnectionProfile` is an explicit, serialisable value describing
one backup target: how to reach the machine, which database engine runs
there, and whether it runs natively or inside a container.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields
from enum import Enum, auto
from typing import Any

from dback.errors import ProfileError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TransportKind(Enum):
    """How the target machine is reached."""

    SSH = "ssh"
    RELAY = "relay"


class AuthMethod(Enum):
    """SSH authentication method."""

    PASSWORD = "Password"
    KEY_FILE = "Key File"


class Engine(Enum):
    """Supported database engines."""

    MYSQL = "MySQL"
    MARIADB = "MariaDB"
    POSTGRESQL = "PostgreSQL"
    COUCHDB = "CouchDB"

    @property
    def default_port(self) -> str:
        """Default server port for the engine."""
        return _DEFAULT_PORTS[self]

    @property
    def archive_suffix(self) -> str:
        """File suffix used for exported archives of this engine."""
        return ".tar.gz" if self is Engine.COUCHDB else ".sql.gz"


_DEFAULT_PORTS = {
    Engine.MYSQL: "3306",
    Engine.MARIADB: "3306",
    Engine.POSTGRESQL: "5432",
    Engine.COUCHDB: "5984",
}


class Topology(Enum):
    """Whether the database runs natively on the host or in a container."""

    NATIVE = "native"
    CONTAINER = "container"


class TransferDirection(Enum):
    """Direction of a database transfer."""

    EXPORT = auto()
    IMPORT = auto()


SECRET_FIELDS = ("ssh_password", "db_password", "relay_key")

# ---------------------------------------------------------------------------
# ConnectionProfile
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConnectionProfile:
    """One saved backup target.

    Only the fields relevant to ``transport``, ``auth_method`` and
    ``topology`` are meaningful; the others are carried but ignored.
    Secret fields are excluded from ``repr`` so profiles can be logged.
    """

    name: str = ""
    transport: TransportKind = TransportKind.SSH

    # Shell endpoint
    host: str = ""
    port: int = 22
    ssh_user: str = ""
    auth_method: AuthMethod = AuthMethod.PASSWORD
    ssh_password: str = field(default="", repr=False)
    key_path: str = ""

    # Database descriptor
    engine: Engine = Engine.MYSQL
    db_host: str = "127.0.0.1"
    db_port: str = ""
    db_user: str = ""
    db_password: str = field(default="", repr=False)
    db_name: str = ""

    # Execution topology
    topology: Topology = Topology.NATIVE
    container_id: str = ""

    # Relay transport
    relay_url: str = ""
    relay_key: str = field(default="", repr=False)

    @property
    def in_container(self) -> bool:
        """True when commands must be wrapped in ``docker exec``."""
        return self.topology is Topology.CONTAINER

    @property
    def effective_db_port(self) -> str:
        """``db_port`` or the engine default when unset."""
        return self.db_port or self.engine.default_port

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(
        self,
        direction: TransferDirection | None = None,
        local: bool = False,
    ) -> list[str]:
        """Return a list of human-readable problems (empty when valid).

        *direction* is accepted for symmetry with the transfer API; both
        directions currently need the same fields.  With *local* the
        pipeline runs on this machine, so the shell endpoint and relay
        fields are not checked.
        """
        problems: list[str] = []

        if self.transport is TransportKind.RELAY and not local:
            if not self.relay_url:
                problems.append("relay URL is required for the relay transport")
            if not self.relay_key:
                problems.append("relay key is required for the relay transport")
            return problems

        if not local:
            if not self.host:
                problems.append("SSH host is required")
            if not self.ssh_user:
                problems.append("SSH user is required")
            if not 0 < int(self.port) < 65536:
                problems.append(f"SSH port out of range: {self.port}")
            if self.auth_method is AuthMethod.KEY_FILE and not self.key_path:
                problems.append("private key path is required for key-file authentication")

        if self.in_container and not self.container_id:
            problems.append("container ID is required for container topology")
        if self.engine is not Engine.COUCHDB:
            if not self.db_name:
                problems.append("target database name is required")
            if not self.db_user:
                problems.append("database user is required")
            if not self.in_container and not self.db_host:
                problems.append("database host is required for native topology")
        return problems

    def ensure_valid(
        self,
        direction: TransferDirection | None = None,
        local: bool = False,
    ) -> None:
        """Raise :exc:`ProfileError` if :meth:`validate` reports any problem."""
        problems = self.validate(direction, local=local)
        if problems:
            raise ProfileError(problems)

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    def to_dict(self, include_secrets: bool = True) -> dict[str, Any]:
        """Return a flat JSON-compatible record of this profile."""
        record = asdict(self)
        for key, value in record.items():
            if isinstance(value, Enum):
                record[key] = value.value
        if not include_secrets:
            for key in SECRET_FIELDS:
                record.pop(key, None)
        return record

    @classmethod
    def from_dict(cls, record: dict[str, Any]) -> "ConnectionProfile":
        """Build a profile from a flat record, ignoring unknown keys.

        Accepts the legacy ``is_docker`` boolean as an alias for
        ``topology``.

        Raises:
            ValueError: If an enum field holds an unknown value.
        """
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in record.items() if k in known and v is not None}

        if "topology" not in data and record.get("is_docker"):
            data["topology"] = Topology.CONTAINER

        for key, enum_type in _ENUM_FIELDS.items():
            if key in data and not isinstance(data[key], enum_type):
                data[key] = enum_type(data[key])
        if "port" in data:
            data["port"] = int(data["port"])
        if "db_port" in data:
            data["db_port"] = str(data["db_port"])

        unknown = set(record) - known - {"is_docker"}
        if unknown:
            logger.debug("Ignoring unknown profile keys: %s", sorted(unknown))
        return cls(**data)


_ENUM_FIELDS = {
    "transport": TransportKind,
    "auth_method": AuthMethod,
    "engine": Engine,
    "topology": Topology,
}
