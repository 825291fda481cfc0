# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the dbhost project

"""Process supervision for engine stages.

Two spawn disciplines exist. DETACHED processes are launched in a new
session with their output redirected to a log file and the supervisor writes
the pid side file. SELF_DAEMONIZING launchers (``pg_ctl start``,
``redis-server`` with ``daemonize yes``) fork the real server and exit 0;
the server writes its own pid file.

Stopping tries the engine's graceful shutdown command first and escalates to
SIGTERM and then SIGKILL. A process that is already gone counts as stopped.
"""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import sys
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import psutil

from .config import DbHostConfig
from .errors import PortConflictError, ProcessControlFailedError
from .readiness import check_command, check_http, check_port

logger = logging.getLogger(__name__)

PORT_CONFLICT_PATTERNS = (
    "Address already in use",
    "Failed listening on port",
    "could not bind",
    "port is already in use",
)


class SpawnDiscipline(str, Enum):
    """How a stage's server process comes into existence."""

    DETACHED = "detached"
    SELF_DAEMONIZING = "self_daemonizing"


class ReadinessKind(str, Enum):
    """Protocol used to decide a stage is ready."""

    TCP = "tcp"
    COMMAND = "command"
    HTTP = "http"


@dataclass
class ReadinessCheck:
    """Readiness criterion of a stage.

    Attributes:
        kind: Probe type.
        port: Port for TCP probes.
        command: Client command for COMMAND probes (e.g. ``redis-cli ... PING``).
        expect: Substring the command output must contain.
        url: URL for HTTP probes.
        timeout: Per-stage readiness timeout; None uses the configured default.
    """

    kind: ReadinessKind = ReadinessKind.TCP
    port: int | None = None
    command: list[str] = field(default_factory=list)
    expect: str | None = None
    url: str | None = None
    timeout: float | None = None

    @classmethod
    def tcp(cls, port: int, timeout: float | None = None) -> ReadinessCheck:
        return cls(kind=ReadinessKind.TCP, port=port, timeout=timeout)

    @classmethod
    def run(
        cls,
        command: list[str],
        expect: str | None = None,
        timeout: float | None = None,
    ) -> ReadinessCheck:
        return cls(kind=ReadinessKind.COMMAND, command=command, expect=expect, timeout=timeout)

    @classmethod
    def http(cls, url: str, timeout: float | None = None) -> ReadinessCheck:
        return cls(kind=ReadinessKind.HTTP, url=url, timeout=timeout)


@dataclass
class ProcessSpec:
    """Everything needed to start, probe and stop one stage process.

    Attributes:
        name: Stage name used in logs and errors ("server", "backend", "proxy").
        command: Server (or launcher) command line.
        pid_file: Identity side file. Written by the supervisor for DETACHED
            stages, by the engine itself for SELF_DAEMONIZING stages.
        log_path: File the engine logs to.
        port: Port the stage listens on.
        discipline: Spawn discipline.
        readiness: Readiness criterion; None falls back to a TCP probe on ``port``.
        stop_command: Graceful shutdown command, tried before signals.
        cwd: Working directory for the process.
        env: Environment overrides.
    """

    name: str
    command: list[str]
    pid_file: Path
    log_path: Path
    port: int | None = None
    discipline: SpawnDiscipline = SpawnDiscipline.DETACHED
    readiness: ReadinessCheck | None = None
    stop_command: list[str] | None = None
    cwd: Path | None = None
    env: dict[str, str] = field(default_factory=dict)


class ProcessSupervisor:
    """Spawn, probe and stop the process of a single stage.

    Args:
        config: dbhost configuration (timeouts, grace periods).
    """

    def __init__(self, config: DbHostConfig | None = None) -> None:
        self.config = config or DbHostConfig.default()
        self._children: dict[int, subprocess.Popen] = {}

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------
    async def start(self, spec: ProcessSpec) -> int | None:
        """Start a stage and return its process identity.

        For SELF_DAEMONIZING stages the identity comes from the engine's pid
        file and may be None when the engine has not written it yet.

        Raises:
            PortConflictError: the engine reported its port as taken.
            ProcessControlFailedError: spawn failed, the launcher exited
                non-zero, or the pid file names a live process.
        """
        if self.is_alive(spec):
            pid = self.read_pid(spec)
            raise ProcessControlFailedError(
                f"{spec.name} is already running with PID {pid}",
                remediation=f"Stop PID {pid} before starting {spec.name} again.",
            )
        spec.log_path.parent.mkdir(parents=True, exist_ok=True)
        spec.pid_file.parent.mkdir(parents=True, exist_ok=True)
        if spec.discipline is SpawnDiscipline.SELF_DAEMONIZING:
            return await self._start_self_daemonizing(spec)
        return self._start_detached(spec)

    def _environment(self, spec: ProcessSpec) -> dict[str, str]:
        env = os.environ.copy()
        env.update(spec.env)
        return env

    def _start_detached(self, spec: ProcessSpec) -> int:
        logger.info("Spawning %s: %s", spec.name, " ".join(spec.command))
        kwargs: dict = {}
        if sys.platform.startswith("win"):
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True

        with open(spec.log_path, "ab") as log:
            try:
                process = subprocess.Popen(
                    spec.command,
                    cwd=str(spec.cwd) if spec.cwd else None,
                    env=self._environment(spec),
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    close_fds=True,
                    **kwargs,
                )
            except OSError as e:
                logger.exception("Failed to spawn %s", spec.name)
                raise ProcessControlFailedError(
                    f"Failed to spawn {spec.name}: {e}",
                    remediation=f"Check that {spec.command[0]} exists and is executable.",
                ) from e

        self._children[process.pid] = process
        spec.pid_file.write_text(f"{process.pid}\n")
        logger.debug("%s registered with PID %d", spec.name, process.pid)
        return process.pid

    async def _start_self_daemonizing(self, spec: ProcessSpec) -> int | None:
        logger.info("Launching %s: %s", spec.name, " ".join(spec.command))
        try:
            launcher = await asyncio.create_subprocess_exec(
                *spec.command,
                cwd=str(spec.cwd) if spec.cwd else None,
                env=self._environment(spec),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            logger.exception("Failed to launch %s", spec.name)
            raise ProcessControlFailedError(f"Failed to launch {spec.name}: {e}") from e

        try:
            output, _ = await asyncio.wait_for(
                launcher.communicate(), timeout=self.config.launcher_timeout
            )
        except asyncio.TimeoutError as e:
            launcher.kill()
            await launcher.wait()
            raise ProcessControlFailedError(
                f"{spec.name} launcher did not exit within {self.config.launcher_timeout:.0f}s",
                remediation=f"Check logs at: {spec.log_path}",
            ) from e

        text = output.decode(errors="replace").strip()
        if text:
            logger.debug("%s launcher output: %s", spec.name, text)
        if launcher.returncode != 0:
            conflict = self._find_conflict(text) or self.detect_port_conflict(spec)
            if conflict:
                raise PortConflictError(spec.name, spec.port, conflict)
            raise ProcessControlFailedError(
                f"{spec.name} launcher exited with code {launcher.returncode}"
                + (f": {text}" if text else ""),
                remediation=f"Check logs at: {spec.log_path}",
            )

        await asyncio.sleep(self.config.daemon_settle_delay)
        conflict = self.detect_port_conflict(spec)
        if conflict:
            raise PortConflictError(spec.name, spec.port, conflict)
        return self.read_pid(spec)

    # ------------------------------------------------------------------
    # Identity helpers
    # ------------------------------------------------------------------
    def read_pid(self, spec: ProcessSpec) -> int | None:
        """Return the pid recorded in the stage's pid file (first line)."""
        try:
            first_line = spec.pid_file.read_text().splitlines()[0]
            return int(first_line.strip())
        except (OSError, IndexError, ValueError):
            return None

    def _get_process(self, pid: int | None) -> psutil.Process | None:
        if pid is None or pid <= 0:
            return None
        try:
            process = psutil.Process(pid)
        except psutil.Error:
            return None
        return process

    def _is_alive(self, process: psutil.Process) -> bool:
        try:
            if process.status() == psutil.STATUS_ZOMBIE:
                self._reap(process)
                return False
            return process.is_running()
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            return True

    def _reap(self, process: psutil.Process) -> None:
        child = self._children.pop(process.pid, None)
        if child is not None:
            child.poll()
            return
        try:
            process.wait(timeout=0)
        except psutil.Error:
            pass

    def is_alive(self, spec: ProcessSpec) -> bool:
        """Identity check only: pid file present and that process alive."""
        process = self._get_process(self.read_pid(spec))
        return process is not None and self._is_alive(process)

    async def is_running(self, spec: ProcessSpec) -> bool:
        """Protocol check when possible, process identity otherwise."""
        check = spec.readiness
        if check is not None and check.kind is ReadinessKind.COMMAND and check.command:
            return await check_command(check.command, expect=check.expect)
        if check is not None and check.kind is ReadinessKind.HTTP and check.url:
            return await check_http(check.url)
        port = (check.port if check is not None else None) or spec.port
        if port is not None:
            return await check_port(port)
        return self.is_alive(spec)

    def log_tail(self, spec: ProcessSpec, limit: int = 20) -> str:
        try:
            with open(spec.log_path, errors="replace") as f:
                return "".join(deque(f, maxlen=limit)).rstrip()
        except OSError:
            return ""

    @staticmethod
    def _find_conflict(text: str) -> str | None:
        for line in text.splitlines():
            if any(pattern in line for pattern in PORT_CONFLICT_PATTERNS):
                return line.strip()
        return None

    def detect_port_conflict(self, spec: ProcessSpec) -> str | None:
        """Return the log line reporting a port conflict, if any."""
        return self._find_conflict(self.log_tail(spec, limit=50))

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------
    async def stop(self, spec: ProcessSpec) -> None:
        """Stop a stage: graceful command, then SIGTERM, then SIGKILL.

        Raises:
            ProcessControlFailedError: the process survived SIGKILL.
        """
        pid = self.read_pid(spec)
        process = self._get_process(pid)
        if process is None:
            logger.info("%s already stopped", spec.name)

        if spec.stop_command:
            await self._run_stop_command(spec)
            if process is not None and await self._wait_gone(
                process, self.config.shutdown_timeout
            ):
                logger.info("%s stopped gracefully", spec.name)
                process = None

        if process is not None and self._is_alive(process):
            await self._terminate_process(spec, process)

        if pid is not None:
            self._children.pop(pid, None)
        try:
            spec.pid_file.unlink()
        except FileNotFoundError:
            pass

    async def _run_stop_command(self, spec: ProcessSpec) -> None:
        assert spec.stop_command is not None
        logger.debug("Stopping %s: %s", spec.name, " ".join(spec.stop_command))
        try:
            proc = await asyncio.create_subprocess_exec(
                *spec.stop_command,
                cwd=str(spec.cwd) if spec.cwd else None,
                env=self._environment(spec),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            logger.warning("Graceful shutdown of %s could not run: %s", spec.name, e)
            return
        try:
            output, _ = await asyncio.wait_for(
                proc.communicate(), timeout=self.config.shutdown_timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning(
                "Graceful shutdown of %s timed out after %.1fs",
                spec.name,
                self.config.shutdown_timeout,
            )
            return
        if proc.returncode != 0:
            logger.debug(
                "Graceful shutdown of %s exited %d: %s",
                spec.name,
                proc.returncode,
                output.decode(errors="replace").strip(),
            )

    async def _wait_gone(self, process: psutil.Process, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while self._is_alive(process):
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(0.1)
        return True

    async def _terminate_process(self, spec: ProcessSpec, process: psutil.Process) -> None:
        grace = self.config.stop_grace_period
        try:
            process.terminate()
        except psutil.NoSuchProcess:
            return
        except psutil.Error as e:
            raise ProcessControlFailedError(
                f"Failed to signal {spec.name} (PID {process.pid}): {e}"
            ) from e
        if await self._wait_gone(process, grace):
            logger.info("%s (PID %d) stopped", spec.name, process.pid)
            return

        logger.warning(
            "%s (PID %d) did not stop in %.1fs; force killing",
            spec.name,
            process.pid,
            grace,
        )
        try:
            process.kill()
        except psutil.NoSuchProcess:
            return
        except psutil.Error as e:
            logger.error("Failed to kill %s (PID %d): %s", spec.name, process.pid, e)
            raise ProcessControlFailedError(
                f"Failed to kill {spec.name} (PID {process.pid}): {e}",
                remediation=f"Kill PID {process.pid} manually.",
            ) from e
        if not await self._wait_gone(process, 5.0):
            raise ProcessControlFailedError(
                f"{spec.name} (PID {process.pid}) survived SIGKILL",
                remediation=f"Kill PID {process.pid} manually.",
            )
