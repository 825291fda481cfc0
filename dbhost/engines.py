# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the dbhost project

"""Launch plans for the built-in engines.

A plan builder turns a container record plus its resolved binaries into an
``EnginePlan``. Engines without a dedicated builder get a single detached
stage running ``<server> --port <port>`` with a TCP readiness check.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from .errors import ProcessControlFailedError
from .orchestrator import PRIMARY, EnginePlan, PortMap, Stage
from .platforms import executable_suffix
from .profiles import get_profile
from .supervisor import ProcessSpec, ReadinessCheck, SpawnDiscipline
from .types import ContainerRecord, Platform

logger = logging.getLogger(__name__)

LOCALHOST = "127.0.0.1"
TOOL_TIMEOUT = 120.0

REDIS_CONF = """\
# generated by dbhost
port {port}
bind 127.0.0.1
dir {data_dir}
daemonize {daemonize}
logfile {log_file}
pidfile {pid_file}

save 900 1
save 300 10
save 60 10000
dbfilename dump.rdb
appendonly no
"""

_CONNECTION_TEMPLATES = {
    "postgresql": "postgresql://postgres@{host}:{port}/postgres",
    "mariadb": "mysql://root@{host}:{port}",
}


@dataclass
class LaunchEnv:
    """Resolved inputs of a plan builder.

    Attributes:
        record: Container being launched.
        container_dir: ``containers/{engine}/{name}``.
        install_path: Install directory of the engine binaries.
        server: Server executable inside ``install_path``.
        platform: Host platform.
        backend_install_path: Install directory of the backend engine
            (composite engines only).
        ready_timeout: Per-stage readiness timeout override.
    """

    record: ContainerRecord
    container_dir: Path
    install_path: Path
    server: Path
    platform: Platform
    backend_install_path: Path | None = None
    ready_timeout: float | None = None

    @property
    def data_dir(self) -> Path:
        if self.record.data_dir:
            return Path(self.record.data_dir)
        return self.container_dir / "data"

    @property
    def logs_dir(self) -> Path:
        return self.container_dir / "logs"

    def tool(self, *names: str, install_path: Path | None = None) -> str:
        """Path of the first existing tool among ``names`` (the first name if none exists)."""
        bin_dir = (install_path or self.install_path) / "bin"
        suffix = executable_suffix(self.platform)
        candidates = [bin_dir / f"{name}{suffix}" for name in names]
        for candidate in candidates:
            if candidate.exists():
                return str(candidate)
        return str(candidates[0])


PlanBuilder = Callable[[LaunchEnv], EnginePlan]
_PLAN_BUILDERS: dict[str, PlanBuilder] = {}


def register_plan_builder(*engines: str) -> Callable[[PlanBuilder], PlanBuilder]:
    """Decorator registering a plan builder for one or more engines."""

    def decorator(builder: PlanBuilder) -> PlanBuilder:
        for engine in engines:
            _PLAN_BUILDERS[engine] = builder
        return builder

    return decorator


def build_plan(env: LaunchEnv) -> EnginePlan:
    builder = _PLAN_BUILDERS.get(env.record.engine, generic_plan)
    return builder(env)


def connection_string(record: ContainerRecord, host: str = LOCALHOST) -> str:
    template = _CONNECTION_TEMPLATES.get(record.engine)
    if template is None:
        scheme = get_profile(record.engine).connection_scheme
        template = f"{scheme}://{{host}}:{{port}}" if scheme else "{host}:{port}"
    return template.format(host=host, port=record.port)


async def run_tool(
    command: Sequence[str],
    *,
    what: str,
    tolerate: Sequence[str] = (),
    timeout: float = TOOL_TIMEOUT,
    cwd: Path | None = None,
) -> str:
    """Run a short-lived engine tool and return its output.

    A non-zero exit whose output contains one of ``tolerate`` (e.g.
    "already exists") counts as success.

    Raises:
        ProcessControlFailedError: the tool failed or timed out.
    """
    logger.debug("Running %s: %s", what, " ".join(command))
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=str(cwd) if cwd else None,
        )
    except OSError as e:
        raise ProcessControlFailedError(f"Failed to run {what}: {e}") from e

    try:
        output, _ = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError as e:
        proc.kill()
        await proc.wait()
        raise ProcessControlFailedError(f"{what} timed out after {timeout:.0f}s") from e

    text = output.decode(errors="replace")
    if proc.returncode != 0:
        if any(marker in text for marker in tolerate):
            logger.debug("%s: %s", what, text.strip())
            return text
        raise ProcessControlFailedError(f"{what} failed (exit {proc.returncode}): {text.strip()}")
    return text


# ---------------------------------------------------------------------------
# Generic
# ---------------------------------------------------------------------------


def generic_plan(env: LaunchEnv) -> EnginePlan:
    engine = env.record.engine

    def build(ports: PortMap) -> ProcessSpec:
        port = ports[PRIMARY]
        return ProcessSpec(
            name=engine,
            command=[str(env.server), "--port", str(port)],
            pid_file=env.container_dir / f"{engine}.pid",
            log_path=env.logs_dir / f"{engine}.log",
            port=port,
            readiness=ReadinessCheck.tcp(port, env.ready_timeout),
            cwd=env.container_dir,
        )

    async def prepare(spec: ProcessSpec) -> None:
        env.data_dir.mkdir(parents=True, exist_ok=True)

    return EnginePlan(engine=engine, stages=[Stage(engine, build, prepare=prepare)])


# ---------------------------------------------------------------------------
# Redis / Valkey
# ---------------------------------------------------------------------------


@register_plan_builder("redis", "valkey")
def redis_plan(env: LaunchEnv) -> EnginePlan:
    engine = env.record.engine
    cli = env.tool(f"{engine}-cli")
    conf = env.container_dir / f"{engine}.conf"
    pid_file = env.container_dir / f"{engine}.pid"
    log_file = env.logs_dir / f"{engine}.log"
    # no native daemonize on Windows
    daemonize = env.platform is not Platform.WIN32

    def build(ports: PortMap) -> ProcessSpec:
        port = ports[PRIMARY]
        base = [cli, "-h", LOCALHOST, "-p", str(port)]
        return ProcessSpec(
            name=f"{engine}-server",
            command=[str(env.server), str(conf)],
            pid_file=pid_file,
            log_path=log_file,
            port=port,
            discipline=(
                SpawnDiscipline.SELF_DAEMONIZING if daemonize else SpawnDiscipline.DETACHED
            ),
            readiness=ReadinessCheck.run([*base, "PING"], expect="PONG", timeout=env.ready_timeout),
            stop_command=[*base, "SHUTDOWN", "SAVE"],
            cwd=env.container_dir,
        )

    async def prepare(spec: ProcessSpec) -> None:
        env.data_dir.mkdir(parents=True, exist_ok=True)
        env.logs_dir.mkdir(parents=True, exist_ok=True)
        conf.write_text(
            REDIS_CONF.format(
                port=spec.port,
                data_dir=env.data_dir.as_posix(),
                daemonize="yes" if daemonize else "no",
                log_file=log_file.as_posix() if daemonize else '""',
                pid_file=pid_file.as_posix(),
            )
        )

    return EnginePlan(engine=engine, stages=[Stage(f"{engine}-server", build, prepare=prepare)])


# ---------------------------------------------------------------------------
# PostgreSQL family
# ---------------------------------------------------------------------------


def _postgres_stage(
    env: LaunchEnv,
    *,
    name: str,
    install_path: Path,
    data_dir: Path,
    port_role: str | None = None,
    port_range: tuple[int, int] | None = None,
    configure: Callable[[], None] | None = None,
) -> Stage:
    pg_ctl = env.tool("pg_ctl", install_path=install_path)
    initdb = env.tool("initdb", install_path=install_path)
    pg_isready = env.tool("pg_isready", install_path=install_path)
    log_file = env.logs_dir / f"{name}.log"

    def build(ports: PortMap) -> ProcessSpec:
        port = ports[port_role or PRIMARY]
        return ProcessSpec(
            name=name,
            command=[
                pg_ctl,
                "start",
                "-D",
                str(data_dir),
                "-l",
                str(log_file),
                "-w",
                "-o",
                f"-p {port} -h {LOCALHOST}",
            ],
            pid_file=data_dir / "postmaster.pid",
            log_path=log_file,
            port=port,
            discipline=SpawnDiscipline.SELF_DAEMONIZING,
            readiness=ReadinessCheck.run(
                [pg_isready, "-h", LOCALHOST, "-p", str(port)],
                timeout=env.ready_timeout,
            ),
            stop_command=[pg_ctl, "stop", "-D", str(data_dir), "-m", "fast", "-w"],
            cwd=env.container_dir,
        )

    async def prepare(spec: ProcessSpec) -> None:
        env.logs_dir.mkdir(parents=True, exist_ok=True)
        if (data_dir / "PG_VERSION").exists():
            return
        await run_tool(
            [
                initdb,
                "-D",
                str(data_dir),
                "-U",
                "postgres",
                "--auth=trust",
                "--encoding=UTF8",
                "--locale=C",
            ],
            what="initdb",
        )
        logger.info("Initialized PostgreSQL data directory %s", data_dir)
        if configure is not None:
            configure()

    return Stage(name, build, port_role=port_role, port_range=port_range, prepare=prepare)


@register_plan_builder("postgresql", "postgresql-documentdb")
def postgresql_plan(env: LaunchEnv) -> EnginePlan:
    stage = _postgres_stage(
        env,
        name="postgres",
        install_path=env.install_path,
        data_dir=env.data_dir,
    )
    return EnginePlan(engine=env.record.engine, stages=[stage])


# ---------------------------------------------------------------------------
# MariaDB
# ---------------------------------------------------------------------------


@register_plan_builder("mariadb")
def mariadb_plan(env: LaunchEnv) -> EnginePlan:
    admin = env.tool("mariadb-admin", "mysqladmin")
    install_db = env.tool("mariadb-install-db", "mysql_install_db")
    data_dir = env.data_dir
    socket_path = env.container_dir / "mysql.sock"

    def build(ports: PortMap) -> ProcessSpec:
        port = ports[PRIMARY]
        command = [
            str(env.server),
            "--no-defaults",
            f"--basedir={env.install_path}",
            f"--datadir={data_dir}",
            f"--port={port}",
            f"--bind-address={LOCALHOST}",
            f"--pid-file={data_dir / 'mariadbd.pid'}",
        ]
        if env.platform is not Platform.WIN32:
            command.append(f"--socket={socket_path}")
        base = [admin, f"--host={LOCALHOST}", f"--port={port}", "--user=root"]
        return ProcessSpec(
            name="mariadbd",
            command=command,
            pid_file=env.container_dir / "mariadb.pid",
            log_path=env.logs_dir / "mariadb.log",
            port=port,
            readiness=ReadinessCheck.run(
                [*base, "ping"], expect="alive", timeout=env.ready_timeout
            ),
            stop_command=[*base, "shutdown"],
            cwd=env.container_dir,
        )

    async def prepare(spec: ProcessSpec) -> None:
        if (data_dir / "mysql").is_dir():
            return
        data_dir.mkdir(parents=True, exist_ok=True)
        await run_tool(
            [
                install_db,
                "--no-defaults",
                f"--basedir={env.install_path}",
                f"--datadir={data_dir}",
                "--auth-root-authentication-method=normal",
                "--skip-test-db",
            ],
            what="mariadb-install-db",
            cwd=env.install_path,
        )
        logger.info("Initialized MariaDB data directory %s", data_dir)

    return EnginePlan(engine="mariadb", stages=[Stage("mariadbd", build, prepare=prepare)])


# ---------------------------------------------------------------------------
# MongoDB / Meilisearch
# ---------------------------------------------------------------------------


@register_plan_builder("mongodb")
def mongodb_plan(env: LaunchEnv) -> EnginePlan:
    def build(ports: PortMap) -> ProcessSpec:
        port = ports[PRIMARY]
        return ProcessSpec(
            name="mongod",
            command=[
                str(env.server),
                "--dbpath",
                str(env.data_dir),
                "--port",
                str(port),
                "--bind_ip",
                LOCALHOST,
            ],
            pid_file=env.container_dir / "mongod.pid",
            log_path=env.logs_dir / "mongodb.log",
            port=port,
            readiness=ReadinessCheck.tcp(port, env.ready_timeout),
            cwd=env.container_dir,
        )

    async def prepare(spec: ProcessSpec) -> None:
        env.data_dir.mkdir(parents=True, exist_ok=True)

    return EnginePlan(engine="mongodb", stages=[Stage("mongod", build, prepare=prepare)])


@register_plan_builder("meilisearch")
def meilisearch_plan(env: LaunchEnv) -> EnginePlan:
    def build(ports: PortMap) -> ProcessSpec:
        port = ports[PRIMARY]
        return ProcessSpec(
            name="meilisearch",
            command=[
                str(env.server),
                "--http-addr",
                f"{LOCALHOST}:{port}",
                "--db-path",
                str(env.data_dir),
                "--env",
                "development",
                "--no-analytics",
            ],
            pid_file=env.container_dir / "meilisearch.pid",
            log_path=env.logs_dir / "meilisearch.log",
            port=port,
            readiness=ReadinessCheck.http(f"http://{LOCALHOST}:{port}/health", env.ready_timeout),
            cwd=env.container_dir,
        )

    async def prepare(spec: ProcessSpec) -> None:
        env.data_dir.mkdir(parents=True, exist_ok=True)

    return EnginePlan(engine="meilisearch", stages=[Stage("meilisearch", build, prepare=prepare)])


# ---------------------------------------------------------------------------
# FerretDB (proxy) on PostgreSQL with DocumentDB (backend)
# ---------------------------------------------------------------------------


@register_plan_builder("ferretdb")
def ferretdb_plan(env: LaunchEnv) -> EnginePlan:
    if env.backend_install_path is None:
        raise ValueError("ferretdb requires the postgresql-documentdb backend binaries")
    backend_path = env.backend_install_path
    backend_profile = get_profile(get_profile("ferretdb").backend_engine or "postgresql-documentdb")
    pg_data = env.container_dir / "pg_data"
    psql = env.tool("psql", install_path=backend_path)

    def configure_backend() -> None:
        # the bundled sample preloads the DocumentDB libraries
        sample = backend_path / "share" / "postgresql.conf.sample"
        if not sample.is_file():
            logger.debug("No bundled postgresql.conf.sample at %s", sample)
            return
        content = re.sub(
            r"cron\.database_name\s*=\s*'[^']*'",
            "cron.database_name = 'ferretdb'",
            sample.read_text(),
        )
        (pg_data / "postgresql.conf").write_text(content)

    backend = _postgres_stage(
        env,
        name="backend",
        install_path=backend_path,
        data_dir=pg_data,
        port_role="backend",
        port_range=backend_profile.port_range,
        configure=configure_backend,
    )

    def build_proxy(ports: PortMap) -> ProcessSpec:
        port = ports[PRIMARY]
        return ProcessSpec(
            name="proxy",
            command=[
                str(env.server),
                "--listen-addr",
                f"{LOCALHOST}:{port}",
                "--postgresql-url",
                f"postgres://postgres@{LOCALHOST}:{ports['backend']}/ferretdb",
                "--state-dir",
                str(env.container_dir),
            ],
            pid_file=env.container_dir / "ferretdb.pid",
            log_path=env.logs_dir / "ferretdb.log",
            port=port,
            readiness=ReadinessCheck.tcp(port, env.ready_timeout),
            cwd=env.container_dir,
        )

    async def create_database(ports: PortMap) -> None:
        await run_tool(
            [
                psql,
                "-h",
                LOCALHOST,
                "-p",
                str(ports["backend"]),
                "-U",
                "postgres",
                "-d",
                "postgres",
                "-c",
                "CREATE DATABASE ferretdb WITH ENCODING 'UTF8';",
            ],
            what="create ferretdb database",
            tolerate=("already exists",),
        )

    async def create_extension(ports: PortMap) -> None:
        await run_tool(
            [
                psql,
                "-h",
                LOCALHOST,
                "-p",
                str(ports["backend"]),
                "-U",
                "postgres",
                "-d",
                "ferretdb",
                "-c",
                "CREATE EXTENSION IF NOT EXISTS documentdb CASCADE;",
            ],
            what="create documentdb extension",
            tolerate=("already exists",),
        )

    return EnginePlan(
        engine="ferretdb",
        stages=[backend, Stage("proxy", build_proxy)],
        initializers=[create_database, create_extension],
    )
