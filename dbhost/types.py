# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the dbhost project

"""Common types and data structures shared across dbhost components."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable


class Platform(str, Enum):
    """Host operating systems binaries are published for."""

    DARWIN = "darwin"
    LINUX = "linux"
    WIN32 = "win32"


class Arch(str, Enum):
    """CPU architectures binaries are published for."""

    ARM64 = "arm64"
    X64 = "x64"


class ProgressStage(str, Enum):
    """Stages reported to progress observers."""

    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    VERIFYING = "verifying"
    CACHED = "cached"
    STARTING = "starting"


class ContainerStatus(str, Enum):
    """Lifecycle states of a managed container.

    Only CREATED, RUNNING and STOPPED are written to disk. STARTING and
    STOPPING exist while an operation is in flight; ERROR marks a stop
    that could not terminate every process.
    """

    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


PERSISTED_STATUSES = frozenset(
    {ContainerStatus.CREATED, ContainerStatus.RUNNING, ContainerStatus.STOPPED}
)


@dataclass(frozen=True)
class ProgressEvent:
    """One-way notification emitted during provisioning and startup."""

    stage: ProgressStage
    message: str


ProgressCallback = Callable[[ProgressEvent], Any]


@dataclass(frozen=True)
class InstalledBinary:
    """A verified binary tree on disk.

    Attributes:
        engine: Engine name (e.g. "redis").
        version: Canonical full version.
        platform: Host platform the tree was built for.
        arch: Architecture the tree was built for.
        install_path: Directory holding the extracted tree.
    """

    engine: str
    version: str
    platform: Platform
    arch: Arch
    install_path: Path

    @property
    def key(self) -> tuple[str, str, Platform, Arch]:
        return (self.engine, self.version, self.platform, self.arch)


@dataclass
class ContainerRecord:
    """Durable state of one managed engine instance.

    Attributes:
        name: Unique container name.
        engine: Engine name.
        version: Canonical engine version.
        port: Primary (client-facing) port.
        auxiliary_ports: Internal ports keyed by role, e.g. ``{"backend": 54320}``.
            Persisted on first allocation and reused afterwards.
        backend_version: Version of the dependency engine for composite engines.
        binary_path: Install directory of the server binaries.
        status: Last persisted lifecycle status.
        pid: Process identity of the primary process while running.
        data_dir: Engine data directory.
        created_at: Creation timestamp (epoch seconds).
    """

    name: str
    engine: str
    version: str
    port: int
    auxiliary_ports: dict[str, int] = field(default_factory=dict)
    backend_version: str | None = None
    binary_path: str | None = None
    status: ContainerStatus = ContainerStatus.CREATED
    pid: int | None = None
    data_dir: str | None = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        status = self.status
        if status not in PERSISTED_STATUSES:
            # transient states are never written
            status = ContainerStatus.STOPPED
        return {
            "name": self.name,
            "engine": self.engine,
            "version": self.version,
            "port": self.port,
            "auxiliary_ports": dict(self.auxiliary_ports),
            "backend_version": self.backend_version,
            "binary_path": self.binary_path,
            "status": status.value,
            "pid": self.pid,
            "data_dir": self.data_dir,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContainerRecord:
        """Deserialize from dictionary."""
        data = data.copy()
        if isinstance(data.get("status"), str):
            data["status"] = ContainerStatus(data["status"])
        data["auxiliary_ports"] = {
            str(key): int(value) for key, value in (data.get("auxiliary_ports") or {}).items()
        }
        known = set(cls.__dataclass_fields__)
        return cls(**{key: value for key, value in data.items() if key in known})


@dataclass(frozen=True)
class Endpoint:
    """Connection details returned by a successful start."""

    host: str
    port: int
    connection_string: str
    auxiliary_ports: dict[str, int] = field(default_factory=dict)
