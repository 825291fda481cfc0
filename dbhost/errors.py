# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the dbhost project

"""Typed failures reported by dbhost.

Every error carries an optional remediation line telling the user what to
run or where to look next. Readiness probes never raise; a container that
is already running is not an error either.
"""

from __future__ import annotations

from pathlib import Path


class DbHostError(Exception):
    """Base class for all dbhost failures."""

    def __init__(self, message: str, *, remediation: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.remediation = remediation

    def __str__(self) -> str:
        if self.remediation:
            return f"{self.message}\n  {self.remediation}"
        return self.message


class UnknownEngineError(DbHostError, KeyError):
    """Raised when no engine profile is registered under a name."""

    def __init__(self, engine: str, available: list[str]) -> None:
        super().__init__(
            f"Engine '{engine}' is not supported. Available: {', '.join(available)}",
        )
        self.engine = engine


class NotInstalledError(DbHostError):
    """Server binaries for an engine version are missing."""

    def __init__(
        self,
        engine: str,
        version: str,
        *,
        attempted: list[Path] | None = None,
    ) -> None:
        message = f"{engine} {version} is not installed"
        if attempted:
            message += " (looked for: " + ", ".join(str(path) for path in attempted) + ")"
        super().__init__(message, remediation=f"Run: dbhost engines download {engine} {version}")
        self.engine = engine
        self.version = version
        self.attempted = list(attempted or [])


class DownloadFailedError(DbHostError):
    """Fetching a binary archive failed.

    Attributes:
        status: HTTP status code when the server answered, else None.
        timed_out: True when the transfer stalled past its timeout.
    """

    def __init__(
        self,
        message: str,
        *,
        url: str,
        status: int | None = None,
        timed_out: bool = False,
        remediation: str | None = None,
    ) -> None:
        super().__init__(message, remediation=remediation)
        self.url = url
        self.status = status
        self.timed_out = timed_out

    @property
    def not_found(self) -> bool:
        return self.status == 404


class ExtractionFailedError(DownloadFailedError):
    """The host extraction tool rejected a downloaded archive."""

    def __init__(self, message: str, *, url: str, stderr: str = "") -> None:
        super().__init__(
            f"{message}: {stderr.strip()}" if stderr.strip() else message,
            url=url,
            remediation="The archive may be corrupt; run the download again.",
        )
        self.stderr = stderr


class VerificationFailedError(DbHostError):
    """An extracted binary does not run or reports the wrong version."""

    def __init__(
        self,
        message: str,
        *,
        expected: str | None = None,
        reported: str | None = None,
    ) -> None:
        super().__init__(
            message,
            remediation="Delete the installed version and download it again.",
        )
        self.expected = expected
        self.reported = reported


class PortExhaustedError(DbHostError):
    """No free TCP port exists in the requested range."""

    def __init__(self, start: int, end: int) -> None:
        super().__init__(
            f"No available ports in range {start}-{end - 1}",
            remediation="Free a port in that range or stop other local servers.",
        )
        self.start = start
        self.end = end


class ReadinessTimeoutError(DbHostError):
    """A process was spawned but never became reachable."""

    def __init__(
        self,
        stage: str,
        timeout: float,
        *,
        log_path: Path | None = None,
        log_tail: str = "",
        reason: str | None = None,
    ) -> None:
        message = reason or f"{stage} did not become ready within {timeout:.1f}s"
        if log_tail:
            message += f"\nRecent log output:\n{log_tail}"
        super().__init__(
            message,
            remediation=f"Check logs at: {log_path}" if log_path else None,
        )
        self.stage = stage
        self.timeout = timeout
        self.log_path = log_path
        self.log_tail = log_tail


class ProcessControlFailedError(DbHostError):
    """Spawning or signalling an OS process failed."""


class PortConflictError(ProcessControlFailedError):
    """An engine exited because its port was taken after allocation."""

    def __init__(self, stage: str, port: int | None, detail: str = "") -> None:
        message = f"{stage} could not bind port {port}: address already in use"
        if detail:
            message += f"\n{detail}"
        super().__init__(message, remediation="Retry the start; a new port will be chosen.")
        self.stage = stage
        self.port = port


class ContainerNotFoundError(DbHostError, KeyError):
    """No container record exists under a name."""

    def __init__(self, name: str) -> None:
        super().__init__(
            f"Container '{name}' not found",
            remediation="Run: dbhost list",
        )
        self.name = name


class ContainerExistsError(DbHostError):
    """A container with the requested name already exists."""

    def __init__(self, name: str) -> None:
        super().__init__(
            f"Container '{name}' already exists",
            remediation=f"Choose another name or run: dbhost delete {name}",
        )
        self.name = name
