# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the dbhost project

"""Host platform detection."""

from __future__ import annotations

import platform as _platform
import sys

from .types import Arch, Platform

_MACHINE_ALIASES = {
    "x86_64": Arch.X64,
    "amd64": Arch.X64,
    "x64": Arch.X64,
    "arm64": Arch.ARM64,
    "aarch64": Arch.ARM64,
}


def detect_platform() -> Platform:
    if sys.platform.startswith("win"):
        return Platform.WIN32
    if sys.platform == "darwin":
        return Platform.DARWIN
    return Platform.LINUX


def detect_arch() -> Arch:
    machine = _platform.machine().lower()
    try:
        return _MACHINE_ALIASES[machine]
    except KeyError:
        raise RuntimeError(f"Unsupported CPU architecture: {machine}") from None


def host() -> tuple[Platform, Arch]:
    """Return the (platform, arch) pair of the running interpreter."""
    return detect_platform(), detect_arch()


def executable_suffix(platform: Platform) -> str:
    return ".exe" if platform is Platform.WIN32 else ""


def archive_extension(platform: Platform) -> str:
    return "zip" if platform is Platform.WIN32 else "tar.gz"
