# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the dbhost project

"""Configuration and on-disk layout for dbhost."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from .types import Arch, Platform

DEFAULT_REGISTRY_URL = "https://registry.layerbase.host"
DEFAULT_FALLBACK_REGISTRY_URL = "https://github.com/robertjbass/hostdb/releases/download"
DEFAULT_RELEASES_URLS = (
    "https://registry.layerbase.host/releases.json",
    "https://raw.githubusercontent.com/robertjbass/hostdb/main/releases.json",
)


def _default_home() -> Path:
    return Path.home() / ".dbhost"


@dataclass
class DbHostConfig:
    """Configuration for provisioning and lifecycle management.

    Attributes:
        home: Root directory for binaries and container state.
        registry_url: Base URL binary archives are downloaded from.
        releases_urls: Release metadata documents, tried in order.
        releases_cache_ttl: Seconds a fetched release document stays valid.
        releases_timeout: Timeout for fetching release metadata (seconds).
        download_timeout: Upper bound for a whole archive download (seconds).
        download_stall_timeout: Longest tolerated gap between received chunks.
        verify_timeout: Timeout for ``--version`` verification (seconds).
        poll_interval: Fixed interval between readiness polls (seconds).
        ready_timeout: Default per-stage readiness timeout (seconds).
        daemon_settle_delay: Pause after a self-daemonizing launcher exits.
        launcher_timeout: Timeout for a self-daemonizing launcher to exit.
        shutdown_timeout: Timeout for graceful shutdown commands (seconds).
        stop_grace_period: Wait between SIGTERM and SIGKILL (seconds).
        auto_download: Download missing binaries on start instead of failing.
        start_retries: Start attempts when the primary port is taken.
        metadata: Additional configuration.
    """

    home: Path = field(default_factory=_default_home)
    registry_url: str = DEFAULT_REGISTRY_URL
    releases_urls: tuple[str, ...] = DEFAULT_RELEASES_URLS
    releases_cache_ttl: float = 300.0
    releases_timeout: float = 5.0
    download_timeout: float = 300.0
    download_stall_timeout: float = 60.0
    verify_timeout: float = 30.0
    poll_interval: float = 0.5
    ready_timeout: float = 30.0
    daemon_settle_delay: float = 0.5
    launcher_timeout: float = 60.0
    shutdown_timeout: float = 10.0
    stop_grace_period: float = 2.0
    auto_download: bool = True
    start_retries: int = 3
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.home = Path(self.home).expanduser()
        self.releases_urls = tuple(self.releases_urls)

    @property
    def paths(self) -> Paths:
        return Paths(self.home)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["home"] = str(self.home)
        data["releases_urls"] = list(self.releases_urls)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DbHostConfig:
        """Deserialize from dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})

    @classmethod
    def from_yaml(cls, path: str | Path) -> DbHostConfig:
        """Load configuration from YAML file."""
        import yaml

        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> DbHostConfig:
        """Create configuration from ``DBHOST_*`` environment variables."""
        env = os.environ if environ is None else environ
        config = cls()
        if env.get("DBHOST_HOME"):
            config.home = Path(env["DBHOST_HOME"]).expanduser()
        if env.get("DBHOST_REGISTRY_URL"):
            config.registry_url = env["DBHOST_REGISTRY_URL"].rstrip("/")
        if env.get("DBHOST_AUTO_DOWNLOAD"):
            config.auto_download = env["DBHOST_AUTO_DOWNLOAD"].lower() not in {"0", "false", "no"}
        return config

    @classmethod
    def default(cls) -> DbHostConfig:
        """Create default configuration."""
        return cls.from_env()


class Paths:
    """Directory layout under the dbhost home.

    ``bin/{engine}-{version}-{platform}-{arch}`` holds installed binaries,
    ``containers/{engine}/{name}`` holds per-container state.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    @property
    def bin(self) -> Path:
        return self.root / "bin"

    @property
    def containers(self) -> Path:
        return self.root / "containers"

    def binary_path(self, engine: str, version: str, platform: Platform, arch: Arch) -> Path:
        return self.bin / f"{engine}-{version}-{platform.value}-{arch.value}"

    def temp_path(self, engine: str, version: str, platform: Platform, arch: Arch) -> Path:
        return self.bin / f"temp-{engine}-{version}-{platform.value}-{arch.value}"

    def container_path(self, engine: str, name: str) -> Path:
        return self.containers / engine / name

    def container_config(self, engine: str, name: str) -> Path:
        return self.container_path(engine, name) / "container.json"

    def data_path(self, engine: str, name: str) -> Path:
        return self.container_path(engine, name) / "data"

    def logs_path(self, engine: str, name: str) -> Path:
        return self.container_path(engine, name) / "logs"
