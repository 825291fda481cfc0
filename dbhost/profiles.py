# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the dbhost project

"""Engine profiles.

A profile is a plain value describing everything provisioning needs to know
about an engine: which executable names to look for, how to read the
version it reports, which version aliases exist and which ports it uses.
There is one generic provisioner; engines differ only by profile.

Example:
    >>> from dbhost.profiles import get_profile
    >>> get_profile("redis").resolver.resolve("7")
    '7.4.7'
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from functools import cached_property
from typing import Callable

from .errors import UnknownEngineError
from .types import Arch, Platform
from .versions import SEMVER_GRAMMAR, VersionResolver

logger = logging.getLogger(__name__)

ALL_PLATFORMS = frozenset(
    {"darwin-arm64", "darwin-x64", "linux-arm64", "linux-x64", "win32-x64"}
)
UNIX_PLATFORMS = ALL_PLATFORMS - {"win32-x64"}


def _identity(version: str) -> str:
    return version


@dataclass(frozen=True)
class EngineProfile:
    """Static description of one engine.

    Attributes:
        name: Engine name used in paths and URLs (e.g. "mariadb").
        display_name: Human readable name.
        server_binaries: Server executable names in priority order; the first
            one present wins (covers renamed forks such as mariadbd/mysqld).
        version_table: Alias to canonical version mapping.
        version_pattern: Regex whose first group captures the version printed
            by ``<server> --version``.
        default_port: Preferred primary port.
        port_range: Half-open primary port range scanned when the default is busy.
        client_tools: Companion tools shipped in ``bin/``.
        connection_scheme: URL scheme for connection strings.
        version_grammar: Regex a fully qualified version matches.
        version_args: Arguments that make the server print its version.
        reported_version: Maps a canonical version to the version the binary
            itself reports (composite backends embed their base version).
        archive_roots: Directory names an archive may wrap its payload in;
            ``{root}`` and ``{root}-*`` are both flattened.
        platforms: "platform-arch" pairs binaries are published for.
        backend_engine: Dependency engine for composite engines.
        default_backend_version: Backend version used when a container does not pin one.
        verify_version: False for engines whose server cannot print a version.
    """

    name: str
    display_name: str
    server_binaries: tuple[str, ...]
    version_table: dict[str, str]
    version_pattern: str
    default_port: int
    port_range: tuple[int, int]
    client_tools: tuple[str, ...] = ()
    connection_scheme: str = ""
    version_grammar: str = SEMVER_GRAMMAR
    version_args: tuple[str, ...] = ("--version",)
    reported_version: Callable[[str], str] = _identity
    archive_roots: tuple[str, ...] = ()
    platforms: frozenset[str] = ALL_PLATFORMS
    backend_engine: str | None = None
    default_backend_version: str | None = None
    verify_version: bool = True
    metadata: dict[str, str] = field(default_factory=dict)

    @cached_property
    def resolver(self) -> VersionResolver:
        return VersionResolver(self.name, self.version_table, self.version_grammar)

    @property
    def default_version(self) -> str:
        return self.resolver.latest() or ""

    @property
    def is_composite(self) -> bool:
        return self.backend_engine is not None

    def wrapper_dir_names(self) -> tuple[str, ...]:
        return self.archive_roots or (self.name,)

    def parse_version(self, output: str) -> str | None:
        match = re.search(self.version_pattern, output)
        return match.group(1) if match else None

    def supports(self, platform: Platform, arch: Arch) -> bool:
        return f"{platform.value}-{arch.value}" in self.platforms


_PROFILES: dict[str, EngineProfile] = {}


def register_profile(profile: EngineProfile) -> EngineProfile:
    """Register (or replace) an engine profile."""
    if profile.name in _PROFILES:
        logger.debug("Replacing engine profile %s", profile.name)
    _PROFILES[profile.name] = profile
    return profile


def unregister_profile(name: str) -> None:
    _PROFILES.pop(name, None)


def get_profile(name: str) -> EngineProfile:
    try:
        return _PROFILES[name]
    except KeyError:
        raise UnknownEngineError(name, list_profiles()) from None


def list_profiles() -> list[str]:
    return sorted(_PROFILES)


# ---------------------------------------------------------------------------
# Built-in engines
# ---------------------------------------------------------------------------

POSTGRESQL = register_profile(
    EngineProfile(
        name="postgresql",
        display_name="PostgreSQL",
        server_binaries=("postgres",),
        version_table={
            "14": "14.20.0",
            "15": "15.15.0",
            "16": "16.11.0",
            "17": "17.7.0",
            "18": "18.1.0",
        },
        version_pattern=r"postgres \(PostgreSQL\) ([\d.]+)",
        default_port=5432,
        port_range=(5432, 5500),
        client_tools=("psql", "pg_ctl", "initdb", "pg_isready", "pg_dump", "pg_restore"),
        connection_scheme="postgresql",
    )
)

REDIS = register_profile(
    EngineProfile(
        name="redis",
        display_name="Redis",
        server_binaries=("redis-server",),
        version_table={
            "7": "7.4.7",
            "8": "8.4.0",
            "7.4": "7.4.7",
            "8.4": "8.4.0",
            "7.4.7": "7.4.7",
            "8.4.0": "8.4.0",
        },
        version_pattern=r"v=(\d+\.\d+\.\d+)",
        default_port=6379,
        port_range=(6379, 6400),
        client_tools=("redis-cli",),
        connection_scheme="redis",
    )
)

VALKEY = register_profile(
    EngineProfile(
        name="valkey",
        display_name="Valkey",
        server_binaries=("valkey-server",),
        version_table={
            "8": "8.0.6",
            "9": "9.0.1",
            "8.0": "8.0.6",
            "9.0": "9.0.1",
            "8.0.6": "8.0.6",
            "9.0.1": "9.0.1",
        },
        version_pattern=r"v=(\d+\.\d+\.\d+)",
        default_port=6379,
        port_range=(6379, 6400),
        client_tools=("valkey-cli",),
        connection_scheme="redis",
    )
)

MONGODB = register_profile(
    EngineProfile(
        name="mongodb",
        display_name="MongoDB",
        server_binaries=("mongod",),
        version_table={
            "7.0": "7.0.28",
            "8.0": "8.0.17",
            "8.2": "8.2.3",
        },
        version_pattern=r"db version v(\d+\.\d+\.\d+)",
        default_port=27017,
        port_range=(27017, 27100),
        client_tools=("mongosh", "mongodump", "mongorestore"),
        connection_scheme="mongodb",
    )
)

MARIADB = register_profile(
    EngineProfile(
        name="mariadb",
        display_name="MariaDB",
        server_binaries=("mariadbd", "mysqld"),
        version_table={
            "11.8": "11.8.5",
        },
        version_pattern=r"Ver\s+([\d.]+)",
        default_port=3307,
        port_range=(3307, 3400),
        client_tools=("mariadb", "mariadb-admin", "mariadb-install-db", "mariadb-dump"),
        connection_scheme="mysql",
    )
)

MEILISEARCH = register_profile(
    EngineProfile(
        name="meilisearch",
        display_name="Meilisearch",
        server_binaries=("meilisearch",),
        version_table={
            "1": "1.33.1",
            "1.33": "1.33.1",
            "1.33.1": "1.33.1",
        },
        version_pattern=r"(?:meilisearch\s+)?v?(\d+\.\d+\.\d+)",
        default_port=7700,
        port_range=(7700, 7800),
        connection_scheme="http",
    )
)

DOCUMENTDB = register_profile(
    EngineProfile(
        name="postgresql-documentdb",
        display_name="PostgreSQL (DocumentDB)",
        server_binaries=("postgres",),
        version_table={
            "17": "17-0.107.0",
            "17-0.107.0": "17-0.107.0",
        },
        version_grammar=r"\d+-\d+\.\d+\.\d+",
        version_pattern=r"PostgreSQL[)\s]+([\d.]+)",
        reported_version=lambda version: version.split("-", 1)[0],
        archive_roots=("postgresql-documentdb", "postgresql"),
        default_port=54320,
        port_range=(54320, 54400),
        client_tools=("psql", "pg_ctl", "initdb", "pg_isready"),
        connection_scheme="postgresql",
        platforms=UNIX_PLATFORMS,
    )
)

FERRETDB = register_profile(
    EngineProfile(
        name="ferretdb",
        display_name="FerretDB",
        server_binaries=("ferretdb",),
        version_table={
            "2": "2.7.0",
            "2.7": "2.7.0",
            "2.7.0": "2.7.0",
        },
        version_pattern=r"v?(\d+\.\d+\.\d+)",
        default_port=27017,
        port_range=(27017, 27100),
        connection_scheme="mongodb",
        platforms=UNIX_PLATFORMS,
        backend_engine="postgresql-documentdb",
        default_backend_version="17-0.107.0",
    )
)
