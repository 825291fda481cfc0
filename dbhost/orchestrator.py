# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the dbhost project

"""Ordered multi-stage startup with rollback.

Every engine is started through a launch plan: a list of stages in
dependency order plus one-time initializers. Single-process engines are
one-stage plans. Composite engines (a proxy in front of a backend) get the
backend started and ready before the proxy, and stopped after it.

Example:
    >>> ports = await orchestrator.start(plan, ctx)
    >>> ports
    {'backend': 54320}
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .config import DbHostConfig
from .errors import PortConflictError, ReadinessTimeoutError
from .events import ProgressChannel
from .ports import PortAllocator
from .readiness import ReadinessProbe
from .supervisor import ProcessSpec, ProcessSupervisor, ReadinessCheck, ReadinessKind
from .types import ContainerRecord, ProgressStage

logger = logging.getLogger(__name__)

PRIMARY = "primary"

PortMap = dict[str, int]
Initializer = Callable[[PortMap], Awaitable[None]]


@dataclass
class Stage:
    """One process of a launch plan.

    Attributes:
        name: Stage name ("server", "backend", "proxy").
        build: Builds the stage's ``ProcessSpec`` from the port map, which
            holds the primary port under ``"primary"`` and auxiliary ports
            under their role.
        port_role: Auxiliary port role this stage listens on; None when the
            stage uses the primary port.
        port_range: Half-open range the auxiliary port is allocated from.
        prepare: Hook run before spawning (initdb, config generation).
    """

    name: str
    build: Callable[[PortMap], ProcessSpec]
    port_role: str | None = None
    port_range: tuple[int, int] | None = None
    prepare: Callable[[ProcessSpec], Awaitable[None]] | None = None


@dataclass
class EnginePlan:
    """Stages in dependency order and initializers run once all are ready."""

    engine: str
    stages: list[Stage]
    initializers: list[Initializer] = field(default_factory=list)

    @property
    def primary(self) -> Stage:
        return self.stages[-1]


@dataclass
class StageContext:
    """Per-container inputs of an orchestrator run.

    Attributes:
        record: The container being started or stopped.
        progress: Channel receiving ``starting`` events.
        persist_ports: Called once with newly allocated auxiliary ports.
        exclude_ports: Ports owned by other containers, never allocated.
    """

    record: ContainerRecord
    progress: ProgressChannel = field(default_factory=ProgressChannel)
    persist_ports: Callable[[PortMap], Any] | None = None
    exclude_ports: set[int] = field(default_factory=set)

    def port_map(self) -> PortMap:
        return {PRIMARY: self.record.port, **self.record.auxiliary_ports}


class CompositeOrchestrator:
    """Start and stop launch plans stage by stage.

    Args:
        config: dbhost configuration.
        supervisor: Process supervisor for individual stages.
        probe: Readiness probe.
        allocator: Port allocator for auxiliary ports.
    """

    def __init__(
        self,
        config: DbHostConfig | None = None,
        *,
        supervisor: ProcessSupervisor | None = None,
        probe: ReadinessProbe | None = None,
        allocator: PortAllocator | None = None,
    ) -> None:
        self.config = config or DbHostConfig.default()
        self.supervisor = supervisor or ProcessSupervisor(self.config)
        self.probe = probe or ReadinessProbe(self.config.poll_interval)
        self.allocator = allocator or PortAllocator()

    def specs(self, plan: EnginePlan, ctx: StageContext) -> list[ProcessSpec]:
        """Specs of the stages whose ports are known, in start order."""
        ports = ctx.port_map()
        return [
            stage.build(ports)
            for stage in plan.stages
            if stage.port_role is None or stage.port_role in ports
        ]

    async def start(self, plan: EnginePlan, ctx: StageContext) -> PortMap:
        """Start every stage of ``plan`` and return newly allocated auxiliary ports.

        A stage whose process is still alive is kept as long as every stage
        before it was kept too; once a dependency has been (re)spawned, live
        dependents are restarted. On any failure the stages already started
        are stopped in reverse order and the original error is re-raised.
        """
        ports = ctx.port_map()
        new_ports: PortMap = {}
        started: list[ProcessSpec] = []
        reuse = True
        try:
            for stage in plan.stages:
                if stage.port_role is not None and stage.port_role not in ports:
                    if stage.port_range is None:
                        raise ValueError(
                            f"Stage {stage.name} has no port range for {stage.port_role}"
                        )
                    port = self.allocator.allocate(
                        *stage.port_range,
                        exclude=ctx.exclude_ports | set(ports.values()),
                    )
                    ports[stage.port_role] = port
                    new_ports[stage.port_role] = port
                    logger.debug(
                        "Allocated %s port %d for %s", stage.port_role, port, ctx.record.name
                    )

                spec = stage.build(ports)
                if self.supervisor.is_alive(spec):
                    if reuse:
                        logger.info(
                            "%s of %s is already running (PID %s), keeping it",
                            stage.name,
                            ctx.record.name,
                            self.supervisor.read_pid(spec),
                        )
                        started.append(spec)
                        await self._wait_ready(spec)
                        continue
                    logger.info(
                        "Restarting %s of %s after its dependencies restarted",
                        stage.name,
                        ctx.record.name,
                    )
                    await self.supervisor.stop(spec)
                reuse = False

                if stage.prepare is not None:
                    await stage.prepare(spec)

                ctx.progress.publish(ProgressStage.STARTING, f"Starting {stage.name}...")
                # a failed spawn may still have left a process behind
                started.append(spec)
                await self.supervisor.start(spec)
                await self._wait_ready(spec)

            for initializer in plan.initializers:
                await initializer(ports)
        except Exception:
            logger.exception("Failed to start %s, rolling back", ctx.record.name)
            await self._rollback(started)
            raise
        finally:
            for port in new_ports.values():
                self.allocator.release(port)

        if new_ports and ctx.persist_ports is not None:
            result = ctx.persist_ports(dict(new_ports))
            if inspect.isawaitable(result):
                await result
        logger.info("%s started (%s)", ctx.record.name, ", ".join(s.name for s in plan.stages))
        return new_ports

    async def _wait_ready(self, spec: ProcessSpec) -> None:
        check = spec.readiness or ReadinessCheck.tcp(spec.port)
        timeout = check.timeout or self.config.ready_timeout
        if check.kind is ReadinessKind.COMMAND:
            ready = await self.probe.wait_for_protocol_ready(check.command, timeout, check.expect)
        elif check.kind is ReadinessKind.HTTP:
            ready = await self.probe.wait_for_http(check.url, timeout)
        else:
            ready = await self.probe.wait_for_port(check.port or spec.port, timeout)
        if ready:
            return

        conflict = self.supervisor.detect_port_conflict(spec)
        if conflict:
            raise PortConflictError(spec.name, spec.port, conflict)
        raise ReadinessTimeoutError(
            spec.name,
            timeout,
            log_path=spec.log_path,
            log_tail=self.supervisor.log_tail(spec),
        )

    async def _rollback(self, started: list[ProcessSpec]) -> None:
        for spec in reversed(started):
            try:
                await self.supervisor.stop(spec)
            except Exception as e:
                logger.warning("Rollback: failed to stop %s: %s", spec.name, e)

    async def stop(self, plan: EnginePlan, ctx: StageContext) -> None:
        """Stop stages in reverse order, raising the first failure at the end."""
        first_error: Exception | None = None
        for spec in reversed(self.specs(plan, ctx)):
            try:
                await self.supervisor.stop(spec)
            except Exception as e:
                logger.warning("Failed to stop %s of %s: %s", spec.name, ctx.record.name, e)
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error
        logger.info("%s stopped", ctx.record.name)

    @staticmethod
    def _ports_known(plan: EnginePlan, ports: PortMap) -> bool:
        # a stage whose port was never allocated was never started
        return all(s.port_role is None or s.port_role in ports for s in plan.stages)

    async def is_running(self, plan: EnginePlan, ctx: StageContext) -> bool:
        ports = ctx.port_map()
        if not self._ports_known(plan, ports):
            return False
        return await self.supervisor.is_running(plan.primary.build(ports))

    async def all_running(self, plan: EnginePlan, ctx: StageContext) -> bool:
        """True when every stage answers its protocol check."""
        if not self._ports_known(plan, ctx.port_map()):
            return False
        for spec in self.specs(plan, ctx):
            if not await self.supervisor.is_running(spec):
                return False
        return True

    async def running_stages(self, plan: EnginePlan, ctx: StageContext) -> list[str]:
        """Names of the stages that are alive or answer their protocol check."""
        running = []
        for spec in self.specs(plan, ctx):
            if self.supervisor.is_alive(spec) or await self.supervisor.is_running(spec):
                running.append(spec.name)
        return running

    def primary_pid(self, plan: EnginePlan, ctx: StageContext) -> int | None:
        ports = ctx.port_map()
        if not self._ports_known(plan, ports):
            return None
        return self.supervisor.read_pid(plan.primary.build(ports))
