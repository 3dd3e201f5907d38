"""DBack — database backup and restore over SSH.

Builds engine-specific dump/restore pipelines, runs them on the database
host (or locally), and streams the compressed result to and from local
files.
"""

from __future__ import annotations

from dback.models import ConnectionProfile, Engine, Topology, TransferDirection, TransportKind
from dback.transfer import TransferOrchestrator, TransferResult, TransferState

__version__ = "0.1.0"

__all__ = [
    "ConnectionProfile",
    "Engine",
    "Topology",
    "TransferDirection",
    "TransferOrchestrator",
    "TransferResult",
    "TransferState",
    "TransportKind",
]
