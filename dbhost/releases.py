# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the dbhost project

"""Release metadata lookup.

The registry publishes a ``releases.json`` document listing, per engine and
version, the archive URL and checksum for every platform. Failing to fetch
or find an entry is never fatal: the download URL is then built from the
registry's naming convention and any mistake surfaces as a 404 at download
time.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

import aiohttp

from .config import DEFAULT_FALLBACK_REGISTRY_URL, DbHostConfig
from .platforms import archive_extension
from .types import Arch, Platform

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReleaseAsset:
    """Where to fetch one archive from.

    Attributes:
        url: Primary download URL.
        sha256: Expected archive checksum when the registry publishes one.
        mirrors: Alternative URLs tried, in order, when the primary fails
            with a 404, a 5xx or a connection error.
    """

    url: str
    sha256: str | None = None
    mirrors: tuple[str, ...] = ()

    @property
    def urls(self) -> tuple[str, ...]:
        return (self.url, *self.mirrors)


@dataclass
class ReleasesCache:
    """A fetched release document and the time it was fetched."""

    data: dict[str, Any]
    fetched_at: float

    def is_fresh(self, ttl: float, now: float) -> bool:
        return now - self.fetched_at < ttl


def build_archive_url(
    base_url: str,
    engine: str,
    version: str,
    platform: Platform,
    arch: Arch,
) -> str:
    """Build ``{base}/{engine}-{version}/{engine}-{version}-{platform}-{arch}.{ext}``."""
    ext = archive_extension(platform)
    tag = f"{engine}-{version}"
    return f"{base_url.rstrip('/')}/{tag}/{tag}-{platform.value}-{arch.value}.{ext}"


class ReleaseRegistry:
    """Resolve download URLs for (engine, version, platform, arch).

    Args:
        config: dbhost configuration (registry URLs, timeouts, cache TTL).
        ttl: Override for the release document cache lifetime (seconds).
        fallback_base_url: Mirror base URL tried after the primary registry.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        config: DbHostConfig | None = None,
        *,
        ttl: float | None = None,
        fallback_base_url: str = DEFAULT_FALLBACK_REGISTRY_URL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or DbHostConfig.default()
        self.ttl = self.config.releases_cache_ttl if ttl is None else ttl
        self.fallback_base_url = fallback_base_url
        self._clock = clock
        self._cache: ReleasesCache | None = None
        self._lock = asyncio.Lock()

    @property
    def cache(self) -> ReleasesCache | None:
        return self._cache

    def invalidate(self) -> None:
        self._cache = None

    async def fetch_releases(self) -> dict[str, Any]:
        """Return the release document, fetching it when the cache is stale.

        Raises:
            aiohttp.ClientError or asyncio.TimeoutError when every source fails.
        """
        async with self._lock:
            now = self._clock()
            if self._cache is not None and self._cache.is_fresh(self.ttl, now):
                return self._cache.data

            last_error: BaseException | None = None
            timeout = aiohttp.ClientTimeout(total=self.config.releases_timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                for url in self.config.releases_urls:
                    try:
                        async with session.get(url) as response:
                            response.raise_for_status()
                            data = await response.json(content_type=None)
                    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                        logger.debug("Failed to fetch releases from %s: %s", url, e)
                        last_error = e
                        continue
                    self._cache = ReleasesCache(data=data, fetched_at=self._clock())
                    return data

            if last_error is None:
                raise ValueError("No release metadata sources configured")
            raise last_error

    async def resolve(
        self,
        engine: str,
        version: str,
        platform: Platform,
        arch: Arch,
    ) -> ReleaseAsset:
        """Return the archive location, never raising on metadata failures."""
        conventional = build_archive_url(self.config.registry_url, engine, version, platform, arch)
        mirror = build_archive_url(self.fallback_base_url, engine, version, platform, arch)
        mirrors = (mirror,) if mirror != conventional else ()

        try:
            data = await self.fetch_releases()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.debug("Release metadata unavailable, using URL convention: %s", e)
            return ReleaseAsset(url=conventional, mirrors=mirrors)

        entry = self._lookup(data, engine, version, platform, arch)
        if entry is None or not entry.get("url"):
            logger.debug(
                "No release entry for %s %s %s-%s, using URL convention",
                engine,
                version,
                platform.value,
                arch.value,
            )
            return ReleaseAsset(url=conventional, mirrors=mirrors)

        url = entry["url"]
        return ReleaseAsset(
            url=url,
            sha256=entry.get("sha256") or None,
            mirrors=tuple(u for u in (conventional, mirror) if u != url),
        )

    @staticmethod
    def _lookup(
        data: dict[str, Any],
        engine: str,
        version: str,
        platform: Platform,
        arch: Arch,
    ) -> dict[str, Any] | None:
        try:
            release = data["databases"][engine][version]
            return release["platforms"][f"{platform.value}-{arch.value}"]
        except (KeyError, TypeError):
            return None

    async def available_versions(self, engine: str) -> list[str]:
        """Versions the registry lists for an engine (empty when unreachable)."""
        try:
            data = await self.fetch_releases()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.debug("Could not list %s versions: %s", engine, e)
            return []
        releases = (data.get("databases") or {}).get(engine) or {}
        return sorted(releases)
