# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the dbhost project

"""Readiness probes.

Probes poll at a fixed interval until success or timeout and report the
outcome as a boolean; they never raise. The single-shot ``check_*``
functions back ``ProcessSupervisor.is_running``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence

import aiohttp

logger = logging.getLogger(__name__)

LOCALHOST = "127.0.0.1"
DEFAULT_POLL_INTERVAL = 0.5
DEFAULT_CHECK_TIMEOUT = 2.0


async def check_port(
    port: int,
    host: str = LOCALHOST,
    timeout: float = DEFAULT_CHECK_TIMEOUT,
) -> bool:
    """Return True when a TCP connection to ``host:port`` succeeds."""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def check_command(
    command: Sequence[str],
    *,
    expect: str | None = None,
    timeout: float = DEFAULT_CHECK_TIMEOUT,
    cwd: str | None = None,
) -> bool:
    """Run a command once; succeed on exit 0 (and ``expect`` in its output)."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=cwd,
        )
    except OSError as e:
        logger.debug("Readiness command %s could not run: %s", command[0], e)
        return False

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return False

    if proc.returncode != 0:
        return False
    if expect is not None:
        return expect in stdout.decode(errors="replace")
    return True


async def check_http(url: str, timeout: float = DEFAULT_CHECK_TIMEOUT) -> bool:
    """Return True when GET ``url`` answers with a 2xx status."""
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.get(url) as response:
                return 200 <= response.status < 300
    except asyncio.TimeoutError:
        logger.debug("Health check %s timed out", url)
        return False
    except aiohttp.ClientError as e:
        logger.debug("Health check %s failed: %s", url, e)
        return False


async def _poll(
    check: Callable[[], Awaitable[bool]],
    timeout: float,
    interval: float,
    what: str,
) -> bool:
    deadline = time.monotonic() + timeout
    attempts = 0
    while True:
        attempts += 1
        if await check():
            logger.debug("%s ready after %d attempt(s)", what, attempts)
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            logger.debug("%s not ready within %.1fs", what, timeout)
            return False
        await asyncio.sleep(min(interval, remaining))


class ReadinessProbe:
    """Wait for a freshly spawned process to accept work.

    Args:
        interval: Fixed delay between attempts (seconds).
        host: Address TCP probes connect to.
    """

    def __init__(self, interval: float = DEFAULT_POLL_INTERVAL, host: str = LOCALHOST) -> None:
        self.interval = interval
        self.host = host

    async def wait_for_port(self, port: int, timeout: float) -> bool:
        return await _poll(
            lambda: check_port(port, self.host, min(DEFAULT_CHECK_TIMEOUT, timeout)),
            timeout,
            self.interval,
            f"port {port}",
        )

    async def wait_for_protocol_ready(
        self,
        command: Sequence[str],
        timeout: float,
        expect: str | None = None,
    ) -> bool:
        """Poll an engine client command, e.g. ``redis-cli PING`` expecting PONG."""
        return await _poll(
            lambda: check_command(command, expect=expect, timeout=min(5.0, timeout)),
            timeout,
            self.interval,
            " ".join(command[:2]),
        )

    async def wait_for_http(self, url: str, timeout: float) -> bool:
        return await _poll(
            lambda: check_http(url, min(DEFAULT_CHECK_TIMEOUT, timeout)),
            timeout,
            self.interval,
            url,
        )
