# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the dbhost project

"""Binary provisioning.

One provisioner serves every engine; the differences between engines live in
their ``EngineProfile``. An installed tree is either complete and verified or
absent: downloads happen in a temporary directory and any failure removes
the partially populated target.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import os
import shutil
from pathlib import Path

import aiohttp

from .config import DbHostConfig
from .errors import (
    DownloadFailedError,
    ExtractionFailedError,
    NotInstalledError,
    VerificationFailedError,
)
from .events import ProgressChannel, as_channel
from .locks import KeyedLocks
from .platforms import archive_extension, executable_suffix
from .profiles import EngineProfile, get_profile, list_profiles
from .releases import ReleaseAsset, ReleaseRegistry
from .types import Arch, InstalledBinary, Platform, ProgressCallback, ProgressStage
from .versions import normalize_trailing_zeros

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024

# Extension-less files that ship next to binaries in flat archives.
_NON_BINARY_NAMES = frozenset(
    {
        "authors",
        "changelog",
        "contributing",
        "copying",
        "dockerfile",
        "history",
        "install",
        "licence",
        "license",
        "makefile",
        "manifest",
        "news",
        "notice",
        "readme",
        "thanks",
        "todo",
        "version",
    }
)
_METADATA_SUFFIXES = (".json", ".conf", ".yaml", ".yml", ".xml", ".txt", ".md")


def versions_match(expected: str, reported: str) -> bool:
    """Return True when a reported binary version satisfies the expected one.

    Exact equality after dropping trailing ``.0`` segments, otherwise the
    leading major.minor segments must agree ("8.0" accepts "8.0.4", a
    bare "17" accepts any "17.x").
    """
    if normalize_trailing_zeros(expected) == normalize_trailing_zeros(reported):
        return True
    expected_parts = expected.split(".")
    reported_parts = reported.split(".")
    n = min(2, len(expected_parts))
    return expected_parts[:n] == reported_parts[:n]


def _is_flat_executable(entry: Path) -> bool:
    name = entry.name
    if name.endswith((".exe", ".dll")):
        return True
    if not entry.is_file() or name.startswith(".") or name.endswith(_METADATA_SUFFIXES):
        return False
    return name.lower() not in _NON_BINARY_NAMES and "." not in name


class BinaryProvisioner:
    """Download, verify and manage engine binary trees under ``<home>/bin``.

    Args:
        config: dbhost configuration.
        registry: Release lookup used to find archive URLs.
        progress: Default progress channel (or callback) for events.
    """

    def __init__(
        self,
        config: DbHostConfig | None = None,
        *,
        registry: ReleaseRegistry | None = None,
        progress: ProgressChannel | ProgressCallback | None = None,
    ) -> None:
        self.config = config or DbHostConfig.default()
        self.registry = registry or ReleaseRegistry(self.config)
        self.progress = as_channel(progress)
        self._locks = KeyedLocks()

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------
    def resolve_version(self, engine: str, version: str) -> str:
        return get_profile(engine).resolver.resolve(version)

    def install_path(self, engine: str, version: str, platform: Platform, arch: Arch) -> Path:
        full_version = self.resolve_version(engine, version)
        return self.config.paths.binary_path(engine, full_version, platform, arch)

    def _server_candidates(
        self,
        profile: EngineProfile,
        install_path: Path,
        platform: Platform,
    ) -> list[Path]:
        suffix = executable_suffix(platform)
        return [install_path / "bin" / f"{name}{suffix}" for name in profile.server_binaries]

    def find_server_binary(
        self,
        engine: str,
        version: str,
        platform: Platform,
        arch: Arch,
    ) -> Path:
        """Return the first existing server executable candidate.

        Raises:
            NotInstalledError: listing every path that was tried.
        """
        profile = get_profile(engine)
        install_path = self.install_path(engine, version, platform, arch)
        candidates = self._server_candidates(profile, install_path, platform)
        for candidate in candidates:
            if candidate.is_file():
                return candidate
        raise NotInstalledError(
            engine,
            self.resolve_version(engine, version),
            attempted=candidates,
        )

    def get_binary_executable(
        self,
        engine: str,
        version: str,
        platform: Platform,
        arch: Arch,
        tool: str,
    ) -> Path:
        """Return the path of a client tool shipped with an installed version."""
        install_path = self.install_path(engine, version, platform, arch)
        path = install_path / "bin" / f"{tool}{executable_suffix(platform)}"
        if not path.is_file():
            raise NotInstalledError(
                engine,
                self.resolve_version(engine, version),
                attempted=[path],
            )
        return path

    def is_installed(self, engine: str, version: str, platform: Platform, arch: Arch) -> bool:
        try:
            self.find_server_binary(engine, version, platform, arch)
        except NotInstalledError:
            return False
        return True

    def list_installed(self, engine: str | None = None) -> list[InstalledBinary]:
        """Scan ``<home>/bin`` for installed trees of registered engines."""
        bin_dir = self.config.paths.bin
        if not bin_dir.is_dir():
            return []

        # longest first so "postgresql-documentdb" wins over "postgresql"
        engines = sorted(list_profiles(), key=len, reverse=True)
        installed: list[InstalledBinary] = []
        for entry in sorted(bin_dir.iterdir()):
            if not entry.is_dir() or entry.name.startswith("temp-"):
                continue
            parsed = self._parse_install_dir(entry, engines)
            if parsed is None:
                logger.debug("Skipping unrecognised binary directory %s", entry)
                continue
            if engine is None or parsed.engine == engine:
                installed.append(parsed)
        return installed

    @staticmethod
    def _parse_install_dir(entry: Path, engines: list[str]) -> InstalledBinary | None:
        # versions may contain dashes, so platform and arch are read from the right
        parts = entry.name.rsplit("-", 2)
        if len(parts) != 3:
            return None
        prefix, platform_name, arch_name = parts
        try:
            platform = Platform(platform_name)
            arch = Arch(arch_name)
        except ValueError:
            return None
        for name in engines:
            if prefix.startswith(f"{name}-") and len(prefix) > len(name) + 1:
                return InstalledBinary(
                    engine=name,
                    version=prefix[len(name) + 1 :],
                    platform=platform,
                    arch=arch,
                    install_path=entry,
                )
        return None

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------
    async def ensure_installed(
        self,
        engine: str,
        version: str,
        platform: Platform,
        arch: Arch,
        on_progress: ProgressChannel | ProgressCallback | None = None,
    ) -> Path:
        """Return the install path, downloading the binaries when missing."""
        profile = get_profile(engine)
        full_version = profile.resolver.resolve(version)
        channel = self.progress if on_progress is None else as_channel(on_progress)
        key = (engine, full_version, platform, arch)

        async with self._locks.hold(key):
            if self.is_installed(engine, full_version, platform, arch):
                channel.publish(
                    ProgressStage.CACHED,
                    f"Using cached {profile.display_name} {full_version} binaries",
                )
                return self.install_path(engine, full_version, platform, arch)
            return await self.download(engine, full_version, platform, arch, on_progress=channel)

    async def download(
        self,
        engine: str,
        version: str,
        platform: Platform,
        arch: Arch,
        on_progress: ProgressChannel | ProgressCallback | None = None,
    ) -> Path:
        """Download, extract and verify one engine version.

        Raises:
            DownloadFailedError: fetch failed (status, stall or checksum).
            ExtractionFailedError: the host extraction tool failed.
            VerificationFailedError: the extracted server is unusable.
        """
        profile = get_profile(engine)
        full_version = profile.resolver.resolve(version)
        channel = self.progress if on_progress is None else as_channel(on_progress)
        paths = self.config.paths
        target = paths.binary_path(engine, full_version, platform, arch)
        temp_dir = paths.temp_path(engine, full_version, platform, arch)
        archive = temp_dir / f"{engine}.{archive_extension(platform)}"

        asset = await self.registry.resolve(engine, full_version, platform, arch)

        shutil.rmtree(temp_dir, ignore_errors=True)
        temp_dir.mkdir(parents=True)
        target.mkdir(parents=True, exist_ok=True)
        success = False
        try:
            channel.publish(
                ProgressStage.DOWNLOADING,
                f"Downloading {profile.display_name} {full_version} binaries...",
            )
            url = await self._fetch_archive(asset, archive, profile, full_version)

            channel.publish(ProgressStage.EXTRACTING, "Extracting binaries...")
            extract_dir = temp_dir / "extract"
            extract_dir.mkdir()
            await self._extract(archive, extract_dir, platform, url)
            self._move_extracted_entries(profile, extract_dir, target)
            if platform is not Platform.WIN32:
                self._make_executable(target / "bin")

            channel.publish(ProgressStage.VERIFYING, "Verifying binaries...")
            await self.verify(engine, full_version, platform, arch)
            success = True
            logger.info("Installed %s %s at %s", engine, full_version, target)
            return target
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)
            if not success:
                logger.debug("Removing incomplete install at %s", target)
                shutil.rmtree(target, ignore_errors=True)

    async def _fetch_archive(
        self,
        asset: ReleaseAsset,
        archive: Path,
        profile: EngineProfile,
        version: str,
    ) -> str:
        errors: list[DownloadFailedError] = []
        for url in asset.urls:
            try:
                await self._stream_to_file(url, archive, profile, version)
            except DownloadFailedError as e:
                # timeouts are never retried; 404, 5xx and connection errors are
                if e.timed_out or not (e.status is None or e.status == 404 or e.status >= 500):
                    raise
                logger.debug("Download from %s failed, trying next source: %s", url, e.message)
                errors.append(e)
                continue
            self._check_checksum(archive, asset.sha256, url)
            return url
        raise next((e for e in errors if e.status is not None), errors[0])

    async def _stream_to_file(
        self,
        url: str,
        archive: Path,
        profile: EngineProfile,
        version: str,
    ) -> None:
        timeout = aiohttp.ClientTimeout(
            total=self.config.download_timeout,
            sock_read=self.config.download_stall_timeout,
        )
        logger.debug("Fetching %s", url)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url) as response:
                    if response.status == 404:
                        raise DownloadFailedError(
                            f"{profile.display_name} {version} binaries not found (404). "
                            "This version may have been removed from the registry.",
                            url=url,
                            status=404,
                            remediation=(
                                "Supported versions: "
                                + ", ".join(profile.resolver.major_versions())
                            ),
                        )
                    if response.status != 200:
                        raise DownloadFailedError(
                            f"Failed to download binaries: {response.status} {response.reason}",
                            url=url,
                            status=response.status,
                        )
                    with open(archive, "wb") as f:
                        async for chunk in response.content.iter_chunked(_CHUNK_SIZE):
                            f.write(chunk)
        except asyncio.TimeoutError as e:
            raise DownloadFailedError(
                f"Download timed out after {self.config.download_timeout:.0f}s",
                url=url,
                timed_out=True,
                remediation="Check your network connection and try again.",
            ) from e
        except aiohttp.ClientError as e:
            raise DownloadFailedError(
                f"Failed to download binaries: {e}",
                url=url,
                remediation="Check your network connection and try again.",
            ) from e

    @staticmethod
    def _check_checksum(archive: Path, expected: str | None, url: str) -> None:
        if not expected:
            return
        digest = hashlib.sha256()
        with open(archive, "rb") as f:
            for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
                digest.update(chunk)
        actual = digest.hexdigest()
        if actual.lower() != expected.lower():
            raise DownloadFailedError(
                f"Checksum mismatch for {archive.name}: expected {expected}, got {actual}",
                url=url,
                remediation="The download may be corrupt; run the download again.",
            )

    async def _extract(
        self,
        archive: Path,
        extract_dir: Path,
        platform: Platform,
        url: str,
    ) -> None:
        if platform is Platform.WIN32:
            script = (
                f"Expand-Archive -LiteralPath '{archive}' "
                f"-DestinationPath '{extract_dir}' -Force"
            )
            encoded = base64.b64encode(script.encode("utf-16le")).decode("ascii")
            command = ["powershell", "-NoProfile", "-EncodedCommand", encoded]
        else:
            command = ["tar", "-xzf", str(archive), "-C", str(extract_dir)]

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ExtractionFailedError(
                f"Could not run {command[0]}",
                url=url,
                stderr=str(e),
            ) from e
        _, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise ExtractionFailedError(
                f"Failed to extract {archive.name} (exit {proc.returncode})",
                url=url,
                stderr=stderr.decode(errors="replace"),
            )

    @staticmethod
    def _move_extracted_entries(profile: EngineProfile, extract_dir: Path, target: Path) -> None:
        """Normalise the extracted layout to ``target/bin/...``.

        Archives either wrap their payload in an ``{engine}`` or
        ``{engine}-*`` directory or not; the payload either has a ``bin/``
        directory or is flat, in which case executables are moved into
        ``bin/`` and everything else stays at the top level. Top-level
        siblings of the wrapper land at the top level of ``target``.
        """
        roots = profile.wrapper_dir_names()
        entries = sorted(extract_dir.iterdir())
        wrapper = next(
            (
                e
                for e in entries
                if e.is_dir() and any(e.name == r or e.name.startswith(f"{r}-") for r in roots)
            ),
            None,
        )
        source_entries = sorted(wrapper.iterdir()) if wrapper else entries
        siblings = [e for e in entries if e != wrapper] if wrapper else []

        if any(e.is_dir() and e.name == "bin" for e in source_entries):
            for entry in source_entries:
                shutil.move(str(entry), str(target / entry.name))
        else:
            bin_dir = target / "bin"
            bin_dir.mkdir(parents=True, exist_ok=True)
            for entry in source_entries:
                dest = bin_dir if _is_flat_executable(entry) else target
                shutil.move(str(entry), str(dest / entry.name))

        for entry in siblings:
            if (target / entry.name).exists():
                logger.debug("Skipping %s: the wrapped payload has the same entry", entry.name)
                continue
            shutil.move(str(entry), str(target / entry.name))

    @staticmethod
    def _make_executable(bin_dir: Path) -> None:
        if not bin_dir.is_dir():
            return
        for entry in bin_dir.iterdir():
            if entry.is_file():
                os.chmod(entry, 0o755)

    async def verify(self, engine: str, version: str, platform: Platform, arch: Arch) -> bool:
        """Run the server's version command and compare against ``version``.

        Raises:
            VerificationFailedError: binary missing, not runnable, unparsable
                output or a version mismatch.
        """
        profile = get_profile(engine)
        full_version = profile.resolver.resolve(version)
        expected = profile.reported_version(full_version)
        install_path = self.install_path(engine, full_version, platform, arch)
        try:
            server = self.find_server_binary(engine, full_version, platform, arch)
        except NotInstalledError as e:
            raise VerificationFailedError(
                f"{profile.display_name} server binary not found under {install_path / 'bin'}",
                expected=expected,
            ) from e

        if not profile.verify_version:
            return True

        try:
            proc = await asyncio.create_subprocess_exec(
                str(server),
                *profile.version_args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(install_path),
            )
        except OSError as e:
            raise VerificationFailedError(
                f"Failed to run {server}: {e}",
                expected=expected,
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.config.verify_timeout
            )
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise VerificationFailedError(
                f"{server.name} {' '.join(profile.version_args)} timed out "
                f"after {self.config.verify_timeout:.0f}s",
                expected=expected,
            ) from e

        output = stdout.decode(errors="replace")
        if stderr.strip():
            logger.debug("%s version stderr: %s", server.name, stderr.decode(errors="replace"))
        if proc.returncode != 0:
            raise VerificationFailedError(
                f"{server.name} exited with code {proc.returncode}: "
                f"{stderr.decode(errors='replace').strip() or output.strip()}",
                expected=expected,
            )

        reported = profile.parse_version(output) or profile.parse_version(
            stderr.decode(errors="replace")
        )
        if reported is None:
            raise VerificationFailedError(
                f"Could not parse {profile.display_name} version from: {output.strip()!r}",
                expected=expected,
            )
        if not versions_match(expected, reported):
            raise VerificationFailedError(
                f"Version mismatch: expected {expected}, got {reported}",
                expected=expected,
                reported=reported,
            )
        logger.debug("Verified %s %s (reported %s)", engine, full_version, reported)
        return True

    def delete(self, engine: str, version: str, platform: Platform, arch: Arch) -> None:
        """Remove an installed tree; absent trees are ignored."""
        target = self.install_path(engine, version, platform, arch)
        if target.exists():
            shutil.rmtree(target)
            logger.info("Deleted %s binaries at %s", engine, target)


__all__ = [
    "BinaryProvisioner",
    "versions_match",
]
