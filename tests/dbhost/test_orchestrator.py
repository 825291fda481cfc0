# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the dbhost project

"""Tests for ordered multi-stage startup and rollback."""

import socket
import sys
from pathlib import Path

import pytest
from helpers import free_port, kill_stage, posix_only, stage_pids

from dbhost.config import DbHostConfig
from dbhost.errors import PortConflictError, ProcessControlFailedError, ReadinessTimeoutError
from dbhost.orchestrator import PRIMARY, CompositeOrchestrator, EnginePlan, Stage, StageContext
from dbhost.readiness import check_port
from dbhost.supervisor import ProcessSpec, ProcessSupervisor, ReadinessCheck
from dbhost.types import ContainerRecord, ProgressStage


def _server_stage(
    tmp_path: Path,
    server: Path,
    name: str,
    role: str,
    *extra: str,
    timeout: float | None = None,
):
    def build(ports: dict[str, int]) -> ProcessSpec:
        port = ports[role]
        return ProcessSpec(
            name=name,
            command=[sys.executable, str(server), "--port", str(port), *extra],
            pid_file=tmp_path / "run" / f"{name}.pid",
            log_path=tmp_path / "logs" / f"{name}.log",
            port=port,
            readiness=ReadinessCheck.tcp(port, timeout=timeout),
        )

    return build


def _composite_plan(
    tmp_path: Path,
    server: Path,
    *proxy_extra: str,
    proxy_timeout: float | None = None,
) -> EnginePlan:
    base = free_port()
    return EnginePlan(
        engine="acme-db",
        stages=[
            Stage(
                "backend",
                _server_stage(tmp_path, server, "backend", "backend"),
                port_role="backend",
                port_range=(base, base + 50),
            ),
            Stage(
                "proxy",
                _server_stage(
                    tmp_path, server, "proxy", PRIMARY, *proxy_extra, timeout=proxy_timeout
                ),
            ),
        ],
    )


class PortStore:
    """Collects persisted auxiliary ports into the record."""

    def __init__(self, record: ContainerRecord) -> None:
        self.record = record
        self.calls: list[dict[str, int]] = []

    async def __call__(self, ports: dict[str, int]) -> None:
        self.calls.append(ports)
        self.record.auxiliary_ports.update(ports)


@pytest.fixture
def record() -> ContainerRecord:
    return ContainerRecord(name="docs", engine="acme-db", version="9.1.2", port=free_port())


@pytest.fixture
def orchestrator(config: DbHostConfig) -> CompositeOrchestrator:
    return CompositeOrchestrator(config)


@posix_only
@pytest.mark.asyncio
class TestCompositeOrchestrator:
    """Test stage ordering, port persistence and rollback."""

    async def test_start_and_stop_in_order(
        self,
        orchestrator: CompositeOrchestrator,
        record: ContainerRecord,
        tmp_path: Path,
        fake_server: Path,
    ):
        """Test that the backend starts first and the proxy stops first."""
        plan = _composite_plan(tmp_path, fake_server)
        persist = PortStore(record)
        events = []
        ctx = StageContext(record, persist_ports=persist)
        ctx.progress.subscribe(events.append)

        assert not await orchestrator.is_running(plan, ctx)
        assert orchestrator.primary_pid(plan, ctx) is None

        new_ports = await orchestrator.start(plan, ctx)

        backend_port = new_ports["backend"]
        assert persist.calls == [{"backend": backend_port}]
        assert record.auxiliary_ports == {"backend": backend_port}
        assert [e.stage for e in events] == [ProgressStage.STARTING, ProgressStage.STARTING]
        assert [e.message for e in events] == ["Starting backend...", "Starting proxy..."]
        assert await check_port(backend_port)
        assert await orchestrator.is_running(plan, ctx)
        assert orchestrator.primary_pid(plan, ctx) is not None
        assert orchestrator.allocator.reserved_ports == set()

        await orchestrator.stop(plan, ctx)

        assert not await check_port(backend_port)
        assert not await check_port(record.port)
        assert not await orchestrator.is_running(plan, ctx)

    async def test_auxiliary_port_reused(
        self,
        orchestrator: CompositeOrchestrator,
        record: ContainerRecord,
        tmp_path: Path,
        fake_server: Path,
    ):
        """Test that a second start reuses the persisted backend port."""
        plan = _composite_plan(tmp_path, fake_server)
        persist = PortStore(record)
        ctx = StageContext(record, persist_ports=persist)

        first = await orchestrator.start(plan, ctx)
        await orchestrator.stop(plan, ctx)
        second = await orchestrator.start(plan, ctx)
        try:
            assert second == {}
            assert len(persist.calls) == 1
            assert record.auxiliary_ports == first
        finally:
            await orchestrator.stop(plan, ctx)

    async def test_live_dependency_kept_after_proxy_crash(
        self,
        orchestrator: CompositeOrchestrator,
        record: ContainerRecord,
        tmp_path: Path,
        fake_server: Path,
    ):
        """Test that restarting after a proxy crash keeps the running backend."""
        plan = _composite_plan(tmp_path, fake_server)
        ctx = StageContext(record, persist_ports=PortStore(record))
        supervisor = orchestrator.supervisor

        await orchestrator.start(plan, ctx)
        try:
            backend_port = record.auxiliary_ports["backend"]
            backend = plan.stages[0].build(ctx.port_map())
            backend_pid = supervisor.read_pid(backend)
            proxy_pid = orchestrator.primary_pid(plan, ctx)

            await kill_stage(proxy_pid, record.port)
            assert not await orchestrator.all_running(plan, ctx)
            assert await orchestrator.running_stages(plan, ctx) == ["backend"]

            await orchestrator.start(plan, ctx)

            new_proxy_pid = orchestrator.primary_pid(plan, ctx)
            assert supervisor.read_pid(backend) == backend_pid
            assert new_proxy_pid != proxy_pid
            assert stage_pids(backend_port) == [backend_pid]
            assert stage_pids(record.port) == [new_proxy_pid]
            assert await orchestrator.all_running(plan, ctx)
        finally:
            await orchestrator.stop(plan, ctx)

        assert stage_pids(backend_port) == []
        assert stage_pids(record.port) == []

    async def test_dependents_restart_with_dependency(
        self,
        orchestrator: CompositeOrchestrator,
        record: ContainerRecord,
        tmp_path: Path,
        fake_server: Path,
    ):
        """Test that a respawned backend also restarts the live proxy."""
        plan = _composite_plan(tmp_path, fake_server)
        ctx = StageContext(record, persist_ports=PortStore(record))
        supervisor = orchestrator.supervisor

        await orchestrator.start(plan, ctx)
        try:
            backend_port = record.auxiliary_ports["backend"]
            backend = plan.stages[0].build(ctx.port_map())
            backend_pid = supervisor.read_pid(backend)
            proxy_pid = orchestrator.primary_pid(plan, ctx)

            await kill_stage(backend_pid, backend_port)
            assert await orchestrator.running_stages(plan, ctx) == ["proxy"]

            await orchestrator.start(plan, ctx)

            new_backend_pid = supervisor.read_pid(backend)
            new_proxy_pid = orchestrator.primary_pid(plan, ctx)
            assert new_backend_pid != backend_pid
            assert new_proxy_pid != proxy_pid
            assert record.auxiliary_ports == {"backend": backend_port}
            assert stage_pids(backend_port) == [new_backend_pid]
            assert stage_pids(record.port) == [new_proxy_pid]
        finally:
            await orchestrator.stop(plan, ctx)

        assert stage_pids(backend_port) == []
        assert stage_pids(record.port) == []

    async def test_rollback_on_readiness_timeout(
        self,
        orchestrator: CompositeOrchestrator,
        record: ContainerRecord,
        tmp_path: Path,
        fake_server: Path,
    ):
        """Test that a proxy that never gets ready tears the backend down."""
        plan = _composite_plan(tmp_path, fake_server, "--no-listen", proxy_timeout=1.0)
        persist = PortStore(record)
        ctx = StageContext(record, persist_ports=persist)
        backend_ports = []
        plan.stages[0].prepare = _remember_port(backend_ports)

        with pytest.raises(ReadinessTimeoutError) as exc_info:
            await orchestrator.start(plan, ctx)

        assert exc_info.value.stage == "proxy"
        assert exc_info.value.log_path == tmp_path / "logs" / "proxy.log"
        assert persist.calls == []
        assert record.auxiliary_ports == {}
        assert not await check_port(backend_ports[0])
        assert not (tmp_path / "run" / "backend.pid").exists()
        assert not (tmp_path / "run" / "proxy.pid").exists()
        assert orchestrator.allocator.reserved_ports == set()

    async def test_port_conflict_detected_from_log(
        self,
        orchestrator: CompositeOrchestrator,
        record: ContainerRecord,
        tmp_path: Path,
        fake_server: Path,
    ):
        """Test that a proxy failing to bind is reported as a port conflict."""
        plan = _composite_plan(tmp_path, fake_server, proxy_timeout=1.0)
        ctx = StageContext(record)

        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(("127.0.0.1", record.port))
            with pytest.raises(PortConflictError) as exc_info:
                await orchestrator.start(plan, ctx)

        assert exc_info.value.port == record.port
        assert exc_info.value.stage == "proxy"
        assert not (tmp_path / "run" / "backend.pid").exists()

    async def test_initializers_run_after_all_stages(
        self,
        orchestrator: CompositeOrchestrator,
        record: ContainerRecord,
        tmp_path: Path,
        fake_server: Path,
    ):
        plan = _composite_plan(tmp_path, fake_server)
        seen = []

        async def init(ports):
            seen.append(dict(ports))
            assert await check_port(ports[PRIMARY])

        plan.initializers.append(init)
        ctx = StageContext(record)

        new_ports = await orchestrator.start(plan, ctx)
        try:
            assert seen == [{PRIMARY: record.port, "backend": new_ports["backend"]}]
        finally:
            record.auxiliary_ports.update(new_ports)
            await orchestrator.stop(plan, ctx)

    async def test_failing_initializer_rolls_back(
        self,
        orchestrator: CompositeOrchestrator,
        record: ContainerRecord,
        tmp_path: Path,
        fake_server: Path,
    ):
        plan = _composite_plan(tmp_path, fake_server)

        async def init(ports):
            raise ProcessControlFailedError("CREATE DATABASE failed")

        plan.initializers.append(init)

        with pytest.raises(ProcessControlFailedError, match="CREATE DATABASE"):
            await orchestrator.start(plan, StageContext(record))

        assert not await check_port(record.port)
        assert not (tmp_path / "run" / "proxy.pid").exists()


def _remember_port(seen: list[int]):
    async def prepare(spec: ProcessSpec) -> None:
        seen.append(spec.port)

    return prepare


class RecordingSupervisor(ProcessSupervisor):
    """Supervisor whose stop records order and fails for one stage."""

    def __init__(self, config: DbHostConfig, fail: str) -> None:
        super().__init__(config)
        self.fail = fail
        self.stopped: list[str] = []

    async def stop(self, spec: ProcessSpec) -> None:
        self.stopped.append(spec.name)
        if spec.name == self.fail:
            raise ProcessControlFailedError(f"{spec.name} survived SIGKILL")


@pytest.mark.asyncio
async def test_stop_continues_past_failure(
    config: DbHostConfig, record: ContainerRecord, tmp_path: Path
):
    """Test that every stage is stopped and the first failure is raised."""
    supervisor = RecordingSupervisor(config, fail="proxy")
    orchestrator = CompositeOrchestrator(config, supervisor=supervisor)
    plan = _composite_plan(tmp_path, tmp_path / "unused.py")
    record.auxiliary_ports["backend"] = free_port()

    with pytest.raises(ProcessControlFailedError, match="proxy survived"):
        await orchestrator.stop(plan, StageContext(record))

    assert supervisor.stopped == ["proxy", "backend"]


def test_specs_skip_unallocated_stages(
    config: DbHostConfig, record: ContainerRecord, tmp_path: Path
):
    orchestrator = CompositeOrchestrator(config)
    plan = _composite_plan(tmp_path, tmp_path / "unused.py")

    specs = orchestrator.specs(plan, StageContext(record))

    assert [s.name for s in specs] == ["proxy"]
    assert plan.primary.name == "proxy"
