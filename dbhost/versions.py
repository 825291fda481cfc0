# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the dbhost project

"""Version alias resolution.

Resolution is pure and never raises. An alias the table cannot resolve is
returned unchanged so the failure surfaces later, at download time, as a
precise "not found" error from the registry.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping

logger = logging.getLogger(__name__)

SEMVER_GRAMMAR = r"\d+\.\d+\.\d+"
_MAJOR_RE = re.compile(r"^\d+$")
_NUMBER_RE = re.compile(r"\d+")


def version_key(version: str) -> tuple[int, ...]:
    """Numeric sort key, so that "7.10.0" sorts after "7.9.3"."""
    return tuple(int(part) for part in _NUMBER_RE.findall(version))


def major_of(version: str) -> str:
    return re.split(r"[.\-]", version, maxsplit=1)[0]


def normalize_trailing_zeros(version: str) -> str:
    """Strip trailing ``.0`` segments: "8.0.0" and "8.0" both become "8"."""
    parts = version.split(".")
    while len(parts) > 1 and parts[-1] == "0":
        parts.pop()
    return ".".join(parts)


class VersionResolver:
    """Map user-facing aliases ("17", "8.0") to canonical versions.

    Args:
        engine: Engine name used in diagnostics.
        table: Alias to full version mapping.
        grammar: Regular expression a fully qualified version matches.
    """

    def __init__(
        self,
        engine: str,
        table: Mapping[str, str],
        grammar: str = SEMVER_GRAMMAR,
    ) -> None:
        self.engine = engine
        self.table = dict(table)
        self._grammar = re.compile(rf"^{grammar}$")

    def is_full(self, version: str) -> bool:
        return bool(self._grammar.match(version))

    def resolve(self, alias: str) -> str:
        alias = alias.strip()
        mapped = self.table.get(alias)
        if mapped:
            return mapped

        if _MAJOR_RE.match(alias):
            candidates = [v for v in self.table.values() if major_of(v) == alias]
            if candidates:
                return max(candidates, key=version_key)

        if self.is_full(alias):
            return alias

        logger.debug(
            "%s version '%s' not in version table, it may not be available for download",
            self.engine,
            alias,
        )
        return alias

    def major_versions(self) -> list[str]:
        majors = {major_of(v) for v in self.table.values()}
        return sorted(majors, key=version_key)

    def latest(self) -> str | None:
        if not self.table:
            return None
        return max(self.table.values(), key=version_key)
