# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the dbhost project

"""Shared helpers for dbhost tests: fake engines, archives, free ports."""

import asyncio
import io
import os
import signal
import socket
import sys
import tarfile
import textwrap
import time
from pathlib import Path

import psutil
import pytest

REGISTRY = "https://registry.test"
MIRROR = "https://mirror.test"
RELEASES_URL = f"{REGISTRY}/releases.json"

posix_only = pytest.mark.skipif(sys.platform.startswith("win"), reason="POSIX process model")

# A tiny TCP server standing in for a database engine.
FAKE_SERVER = textwrap.dedent(
    """\
    import argparse
    import signal
    import socket
    import sys

    parser = argparse.ArgumentParser()
    parser.add_argument("--port", type=int, required=True)
    parser.add_argument("--ignore-term", action="store_true")
    parser.add_argument("--no-listen", action="store_true")
    args, _ = parser.parse_known_args()

    if args.ignore_term:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind(("127.0.0.1", args.port))
    except OSError:
        print(f"Failed listening on port {args.port}: Address already in use", flush=True)
        sys.exit(1)

    if args.no_listen:
        signal.pause()

    sock.listen(16)
    print(f"ready on {args.port}", flush=True)
    while True:
        conn, _ = sock.accept()
        data = conn.recv(64)
        conn.close()
        if data.startswith(b"SHUTDOWN"):
            print("graceful shutdown", flush=True)
            sys.exit(0)
    """
)

# Forks the fake server into its own session, records its pid and exits.
FAKE_LAUNCHER = textwrap.dedent(
    """\
    import argparse
    import subprocess
    import sys

    parser = argparse.ArgumentParser()
    parser.add_argument("--server", required=True)
    parser.add_argument("--port", required=True)
    parser.add_argument("--pidfile", required=True)
    parser.add_argument("--log", required=True)
    parser.add_argument("--fail", action="store_true")
    args = parser.parse_args()

    if args.fail:
        print("launcher refused to start", flush=True)
        sys.exit(3)

    with open(args.log, "ab") as log:
        proc = subprocess.Popen(
            [sys.executable, args.server, "--port", args.port],
            stdin=subprocess.DEVNULL,
            stdout=log,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    with open(args.pidfile, "w") as f:
        f.write(f"{proc.pid}\\n")
    """
)


def free_port() -> int:
    """Return a port that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def version_script(version_line: str, exec_server: Path | None = None) -> str:
    """Shell script answering ``--version`` and otherwise running the fake server."""
    lines = [
        "#!/bin/sh",
        'if [ "$1" = "--version" ]; then',
        f'  echo "{version_line}"',
        "  exit 0",
        "fi",
    ]
    if exec_server is not None:
        lines.append(f'exec "{sys.executable}" "{exec_server}" "$@"')
    return "\n".join(lines) + "\n"


def make_archive(files: dict[str, str]) -> bytes:
    """Build a tar.gz archive from ``{relative path: content}``."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, content in files.items():
            data = content.encode()
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def stage_pids(port: int) -> list[int]:
    """PIDs of live processes started with ``--port <port>``."""
    pids = []
    for proc in psutil.process_iter(["cmdline", "status"]):
        if proc.info["status"] == psutil.STATUS_ZOMBIE:
            continue
        cmdline = proc.info["cmdline"] or []
        if any(a == "--port" and b == str(port) for a, b in zip(cmdline, cmdline[1:])):
            pids.append(proc.pid)
    return pids


async def kill_stage(pid: int, port: int, timeout: float = 5.0) -> None:
    """SIGKILL ``pid`` and wait until nothing accepts on ``port``."""
    os.kill(pid, signal.SIGKILL)
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            with socket.create_connection(("127.0.0.1", port), timeout=0.2):
                pass
        except OSError:
            return
        await asyncio.sleep(0.05)
    raise AssertionError(f"port {port} still accepting after killing PID {pid}")
