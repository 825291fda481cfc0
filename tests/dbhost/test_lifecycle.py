# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the dbhost project

"""End-to-end lifecycle tests against fake engines installed on disk."""

import dataclasses
import logging
import os
import socket
from pathlib import Path

import pytest
from helpers import free_port, kill_stage, posix_only, stage_pids, version_script

from dbhost import engines
from dbhost.config import DbHostConfig
from dbhost.engines import LaunchEnv, register_plan_builder
from dbhost.errors import (
    ContainerExistsError,
    ContainerNotFoundError,
    DbHostError,
    NotInstalledError,
    UnknownEngineError,
)
from dbhost.lifecycle import ContainerLifecycleManager
from dbhost.orchestrator import PRIMARY, EnginePlan, Stage
from dbhost.profiles import EngineProfile, register_profile, unregister_profile
from dbhost.readiness import check_port
from dbhost.supervisor import ProcessSpec, ReadinessCheck
from dbhost.types import Arch, ContainerStatus, Platform, ProgressStage


def _install(config: DbHostConfig, engine: str, version: str, binary: str, fake_server: Path):
    bin_dir = config.paths.binary_path(engine, version, Platform.LINUX, Arch.X64) / "bin"
    bin_dir.mkdir(parents=True, exist_ok=True)
    server = bin_dir / binary
    server.write_text(version_script(f"{engine} v{version}", exec_server=fake_server))
    os.chmod(server, 0o755)
    return server


def _manager(config: DbHostConfig) -> ContainerLifecycleManager:
    return ContainerLifecycleManager(config, platform=Platform.LINUX, arch=Arch.X64)


def _stage_pid(config: DbHostConfig, stage: str) -> int:
    pid_file = config.paths.container_path("acme-stack", "stack") / f"{stage}.pid"
    return int(pid_file.read_text().strip())


@pytest.fixture
def installed_acme(config: DbHostConfig, acme_profile, fake_server: Path):
    _install(config, "acme-db", "9.1.2", "acme-server", fake_server)
    return acme_profile


@pytest.fixture
def stack_profile(config: DbHostConfig, installed_acme, fake_server: Path):
    """A composite engine: an acme-db backend behind an acme-stack proxy."""
    base = free_port()
    profile = register_profile(
        EngineProfile(
            name="acme-stack",
            display_name="Acme Stack",
            server_binaries=("acme-stack",),
            version_table={"1": "1.0.0"},
            version_pattern=r"acme-stack v(\d+\.\d+\.\d+)",
            default_port=base,
            port_range=(base, base + 50),
            connection_scheme="acme",
            backend_engine="acme-db",
            default_backend_version="9.1.2",
        )
    )
    _install(config, "acme-stack", "1.0.0", "acme-stack", fake_server)

    @register_plan_builder("acme-stack")
    def stack_plan(env: LaunchEnv) -> EnginePlan:
        backend_server = env.backend_install_path / "bin" / "acme-server"

        def build_backend(ports):
            return ProcessSpec(
                name="backend",
                command=[str(backend_server), "--port", str(ports["backend"])],
                pid_file=env.container_dir / "backend.pid",
                log_path=env.logs_dir / "backend.log",
                port=ports["backend"],
                readiness=ReadinessCheck.tcp(ports["backend"]),
            )

        def build_proxy(ports):
            return ProcessSpec(
                name="proxy",
                command=[str(env.server), "--port", str(ports[PRIMARY])],
                pid_file=env.container_dir / "proxy.pid",
                log_path=env.logs_dir / "proxy.log",
                port=ports[PRIMARY],
            )

        backend_base = installed_acme.port_range[0] + 20
        return EnginePlan(
            engine="acme-stack",
            stages=[
                Stage(
                    "backend",
                    build_backend,
                    port_role="backend",
                    port_range=(backend_base, backend_base + 30),
                ),
                Stage("proxy", build_proxy),
            ],
        )

    yield profile
    engines._PLAN_BUILDERS.pop("acme-stack", None)
    unregister_profile("acme-stack")


@pytest.mark.asyncio
class TestCreate:
    """Test container record creation."""

    async def test_create_defaults(self, config: DbHostConfig, acme_profile):
        manager = _manager(config)

        record = await manager.create("app", "acme-db")

        assert record.version == "9.1.2"
        assert record.port == acme_profile.default_port
        assert record.status is ContainerStatus.CREATED
        assert record.data_dir == str(config.paths.data_path("acme-db", "app"))
        assert manager.get("app") == record
        assert manager.allocator.reserved_ports == set()
        assert await manager.status("app") is ContainerStatus.CREATED

    async def test_version_alias(self, config: DbHostConfig, acme_profile):
        record = await _manager(config).create("app", "acme-db", "8")
        assert record.version == "8.4.0"

    async def test_invalid_names(self, config: DbHostConfig, acme_profile):
        manager = _manager(config)
        for name in ("1app", "my app", "", "app!"):
            with pytest.raises(ValueError, match="Invalid container name"):
                await manager.create(name, "acme-db")

    async def test_duplicate_name(self, config: DbHostConfig, acme_profile):
        manager = _manager(config)
        await manager.create("app", "acme-db")
        with pytest.raises(ContainerExistsError):
            await manager.create("app", "redis")

    async def test_unknown_engine(self, config: DbHostConfig):
        with pytest.raises(UnknownEngineError):
            await _manager(config).create("app", "nosuchdb")

    async def test_unsupported_platform(self, config: DbHostConfig):
        manager = ContainerLifecycleManager(config, platform=Platform.WIN32, arch=Arch.X64)
        with pytest.raises(DbHostError, match="not available for win32-x64"):
            await manager.create("docs", "ferretdb")

    async def test_composite_pins_backend_version(self, config: DbHostConfig):
        record = await _manager(config).create("docs", "ferretdb")
        assert record.version == "2.7.0"
        assert record.backend_version == "17-0.107.0"

    async def test_port_owned_by_other_container_skipped(
        self, config: DbHostConfig, acme_profile
    ):
        """Test that a stopped container's port is not handed out twice."""
        manager = _manager(config)
        first = await manager.create("one", "acme-db")
        second = await manager.create("two", "acme-db")
        assert first.port != second.port

    async def test_busy_default_port(self, config: DbHostConfig, acme_profile):
        manager = _manager(config)
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(("127.0.0.1", acme_profile.default_port))
            record = await manager.create("app", "acme-db")
        assert record.port != acme_profile.default_port
        assert acme_profile.port_range[0] <= record.port < acme_profile.port_range[1]

    async def test_explicit_port(self, config: DbHostConfig, acme_profile):
        record = await _manager(config).create("app", "acme-db", port=12345)
        assert record.port == 12345


@posix_only
@pytest.mark.asyncio
class TestStartStop:
    """Test start, stop and delete against a fake engine."""

    async def test_full_lifecycle(self, config: DbHostConfig, installed_acme):
        manager = _manager(config)
        await manager.create("app", "acme-db")
        events = []

        endpoint = await manager.start("app", on_progress=events.append)

        assert endpoint.host == "127.0.0.1"
        assert endpoint.connection_string == f"acme://127.0.0.1:{endpoint.port}"
        assert [e.stage for e in events] == [ProgressStage.CACHED, ProgressStage.STARTING]
        record = manager.get("app")
        assert record.status is ContainerStatus.RUNNING
        assert record.pid is not None
        assert record.binary_path == str(
            config.paths.binary_path("acme-db", "9.1.2", Platform.LINUX, Arch.X64)
        )
        assert await manager.status("app") is ContainerStatus.RUNNING

        # idempotent: no new process, no new events
        events.clear()
        again = await manager.start("app", on_progress=events.append)
        assert again == endpoint
        assert events == []
        assert manager.get("app").pid == record.pid

        await manager.stop("app")

        assert not await check_port(endpoint.port)
        assert manager.get("app").status is ContainerStatus.STOPPED
        assert manager.get("app").pid is None
        assert await manager.status("app") is ContainerStatus.STOPPED
        listed = await manager.list()
        assert [(r.name, r.status) for r in listed] == [("app", ContainerStatus.STOPPED)]

    async def test_delete_running_container(self, config: DbHostConfig, installed_acme):
        manager = _manager(config)
        await manager.create("app", "acme-db")
        endpoint = await manager.start("app")

        await manager.delete("app")

        assert not await check_port(endpoint.port)
        assert not config.paths.container_path("acme-db", "app").exists()
        assert config.paths.binary_path("acme-db", "9.1.2", Platform.LINUX, Arch.X64).exists()
        with pytest.raises(ContainerNotFoundError):
            await manager.status("app")

    async def test_missing_binaries_without_auto_download(
        self, config: DbHostConfig, acme_profile
    ):
        manager = _manager(dataclasses.replace(config, auto_download=False))
        await manager.create("app", "acme-db")

        with pytest.raises(NotInstalledError) as exc_info:
            await manager.start("app")

        assert exc_info.value.remediation == "Run: dbhost engines download acme-db 9.1.2"
        assert await manager.status("app") is ContainerStatus.CREATED

    async def test_primary_port_taken_after_create(self, config: DbHostConfig, installed_acme):
        """Test that a start retries on a new port when the recorded one is taken."""
        manager = _manager(dataclasses.replace(config, ready_timeout=1.5))
        record = await manager.create("app", "acme-db")

        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(("127.0.0.1", record.port))
            endpoint = await manager.start("app")
            try:
                assert endpoint.port != record.port
                assert manager.get("app").port == endpoint.port
                assert await check_port(endpoint.port)
            finally:
                await manager.stop("app")

    async def test_composite_ports_are_stable(self, config: DbHostConfig, stack_profile):
        """Test that a composite engine keeps its backend port across restarts."""
        manager = _manager(config)
        record = await manager.create("stack", "acme-stack")
        assert record.backend_version == "9.1.2"

        first = await manager.start("stack")
        try:
            backend_port = first.auxiliary_ports["backend"]
            assert await check_port(backend_port)
            assert manager.get("stack").auxiliary_ports == {"backend": backend_port}

            again = await manager.start("stack")
            assert again == first
        finally:
            await manager.stop("stack")

        assert not await check_port(backend_port)
        assert not await check_port(first.port)

        second = await manager.start("stack")
        try:
            assert second.port == first.port
            assert second.auxiliary_ports == first.auxiliary_ports
        finally:
            await manager.stop("stack")

    async def test_start_after_proxy_crash(
        self, config: DbHostConfig, stack_profile, caplog: pytest.LogCaptureFixture
    ):
        """Test that a restart after a proxy crash keeps the one live backend."""
        manager = _manager(config)
        await manager.create("stack", "acme-stack")
        endpoint = await manager.start("stack")
        backend_port = endpoint.auxiliary_ports["backend"]
        backend_pid = _stage_pid(config, "backend")
        try:
            await kill_stage(_stage_pid(config, "proxy"), endpoint.port)
            assert await manager.status("stack") is ContainerStatus.STOPPED

            caplog.clear()
            with caplog.at_level(logging.INFO, logger="dbhost"):
                again = await manager.start("stack")

            assert again == endpoint
            assert sum("Spawning backend" in r.getMessage() for r in caplog.records) == 0
            assert stage_pids(backend_port) == [backend_pid]
            assert stage_pids(endpoint.port) == [_stage_pid(config, "proxy")]
            assert manager.get("stack").pid == _stage_pid(config, "proxy")
        finally:
            await manager.stop("stack")

        assert stage_pids(backend_port) == []
        assert stage_pids(endpoint.port) == []

    async def test_start_after_backend_crash(self, config: DbHostConfig, stack_profile):
        """Test that a respawned backend brings a fresh proxy with it."""
        manager = _manager(config)
        await manager.create("stack", "acme-stack")
        endpoint = await manager.start("stack")
        backend_port = endpoint.auxiliary_ports["backend"]
        proxy_pid = _stage_pid(config, "proxy")
        try:
            await kill_stage(_stage_pid(config, "backend"), backend_port)
            # the proxy still answers, but the container is not whole
            assert await manager.status("stack") is ContainerStatus.RUNNING

            again = await manager.start("stack")

            assert again == endpoint
            assert stage_pids(backend_port) == [_stage_pid(config, "backend")]
            assert stage_pids(endpoint.port) == [_stage_pid(config, "proxy")]
            assert _stage_pid(config, "proxy") != proxy_pid
        finally:
            await manager.stop("stack")

        assert stage_pids(backend_port) == []
        assert stage_pids(endpoint.port) == []

    @pytest.mark.parametrize("crashed", ["proxy", "backend"])
    async def test_delete_after_partial_crash(
        self, config: DbHostConfig, stack_profile, crashed: str
    ):
        """Test that delete stops the stage that survived a crash of the other."""
        manager = _manager(config)
        await manager.create("stack", "acme-stack")
        endpoint = await manager.start("stack")
        ports = {"proxy": endpoint.port, "backend": endpoint.auxiliary_ports["backend"]}

        await kill_stage(_stage_pid(config, crashed), ports[crashed])
        await manager.delete("stack")

        assert stage_pids(ports["proxy"]) == []
        assert stage_pids(ports["backend"]) == []
        assert not config.paths.container_path("acme-stack", "stack").exists()

    async def test_locks_released(self, config: DbHostConfig, installed_acme):
        manager = _manager(config)
        await manager.create("app", "acme-db")
        await manager.start("app")
        await manager.stop("app")

        assert len(manager._locks) == 0
        assert len(manager.provisioner._locks) == 0

    async def test_stop_unknown_container(self, config: DbHostConfig):
        with pytest.raises(ContainerNotFoundError):
            await _manager(config).stop("ghost")
