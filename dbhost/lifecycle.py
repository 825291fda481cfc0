# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the dbhost project

"""Container lifecycle management.

``ContainerLifecycleManager`` is the public entry point: it creates container
records, makes sure binaries are installed, runs launch plans through the
orchestrator and keeps the persisted record in step with the processes.

State machine per container::

    created/stopped --start--> starting --ok--> running
    starting --fail--> stopped (after rollback)
    running --stop--> stopping --> stopped (or error when a stage survives)
    any --delete--> gone (binaries untouched)
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from .config import DbHostConfig
from .engines import LOCALHOST, LaunchEnv, build_plan, connection_string
from .errors import ContainerExistsError, DbHostError, NotInstalledError, PortConflictError
from .events import ProgressChannel, as_channel
from .locks import KeyedLocks
from .orchestrator import CompositeOrchestrator, EnginePlan, PortMap, StageContext
from .platforms import host
from .ports import PortAllocator
from .profiles import get_profile
from .provisioner import BinaryProvisioner
from .store import ContainerStore
from .types import (
    Arch,
    ContainerRecord,
    ContainerStatus,
    Endpoint,
    Platform,
    ProgressCallback,
)

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]*$")


class ContainerLifecycleManager:
    """Create, start, stop and delete local engine containers.

    Args:
        config: dbhost configuration.
        provisioner: Binary provisioner; built from ``config`` when omitted.
        orchestrator: Launch plan orchestrator; built from ``config`` when omitted.
        platform: Target platform, the host's by default.
        arch: Target architecture, the host's by default.
    """

    def __init__(
        self,
        config: DbHostConfig | None = None,
        *,
        provisioner: BinaryProvisioner | None = None,
        orchestrator: CompositeOrchestrator | None = None,
        platform: Platform | None = None,
        arch: Arch | None = None,
    ) -> None:
        self.config = config or DbHostConfig.default()
        self.provisioner = provisioner or BinaryProvisioner(self.config)
        self.orchestrator = orchestrator or CompositeOrchestrator(self.config)
        self.store = ContainerStore(self.config.paths)
        if platform is None or arch is None:
            host_platform, host_arch = host()
            platform = platform or host_platform
            arch = arch or host_arch
        self.platform = platform
        self.arch = arch
        self._locks = KeyedLocks()
        self._transient: dict[str, ContainerStatus] = {}

    @property
    def allocator(self) -> PortAllocator:
        return self.orchestrator.allocator

    def _lock(self, name: str):
        return self._locks.hold(name)

    def _ports_of_others(self, name: str) -> set[int]:
        ports: set[int] = set()
        for record in self.store.list():
            if record.name != name:
                ports.add(record.port)
                ports.update(record.auxiliary_ports.values())
        return ports

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------
    async def create(
        self,
        name: str,
        engine: str,
        version: str | None = None,
        *,
        port: int | None = None,
        backend_version: str | None = None,
    ) -> ContainerRecord:
        """Persist a new container record in the ``created`` state.

        Raises:
            ValueError: invalid container name.
            UnknownEngineError: no profile for ``engine``.
            ContainerExistsError: the name is taken.
        """
        if not _NAME_RE.match(name):
            raise ValueError(
                f"Invalid container name '{name}': must start with a letter and "
                "contain only letters, digits, hyphens and underscores"
            )
        profile = get_profile(engine)
        if not profile.supports(self.platform, self.arch):
            raise DbHostError(
                f"{profile.display_name} is not available for "
                f"{self.platform.value}-{self.arch.value}"
            )

        async with self._lock(name):
            if self.store.exists(name):
                raise ContainerExistsError(name)

            full_version = profile.resolver.resolve(version or profile.default_version)
            if profile.backend_engine is not None:
                backend_profile = get_profile(profile.backend_engine)
                backend_version = backend_profile.resolver.resolve(
                    backend_version
                    or profile.default_backend_version
                    or backend_profile.default_version
                )

            if port is None:
                port = self.allocator.find_primary_port(
                    profile.default_port,
                    profile.port_range,
                    exclude=self._ports_of_others(name),
                )
                reserved = True
            else:
                reserved = False

            try:
                record = ContainerRecord(
                    name=name,
                    engine=engine,
                    version=full_version,
                    port=port,
                    backend_version=backend_version,
                    data_dir=str(self.config.paths.data_path(engine, name)),
                )
                self.store.save(record)
            finally:
                if reserved:
                    self.allocator.release(port)

        logger.info("Created container %s (%s %s, port %d)", name, engine, full_version, port)
        return record

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------
    def _launch_env(self, record: ContainerRecord) -> LaunchEnv:
        profile = get_profile(record.engine)
        install_path = self.provisioner.install_path(
            record.engine, record.version, self.platform, self.arch
        )
        backend_install = None
        if profile.backend_engine is not None:
            backend_install = self.provisioner.install_path(
                profile.backend_engine,
                record.backend_version or profile.default_backend_version or "",
                self.platform,
                self.arch,
            )
        try:
            server = self.provisioner.find_server_binary(
                record.engine, record.version, self.platform, self.arch
            )
        except NotInstalledError as e:
            # not installed yet; the path is only used once binaries exist
            server = e.attempted[0] if e.attempted else install_path / "bin" / record.engine
        return LaunchEnv(
            record=record,
            container_dir=self.store.container_dir(record),
            install_path=install_path,
            server=server,
            platform=self.platform,
            backend_install_path=backend_install,
        )

    def _plan(self, record: ContainerRecord) -> EnginePlan:
        return build_plan(self._launch_env(record))

    def _context(
        self,
        record: ContainerRecord,
        progress: ProgressChannel | None = None,
    ) -> StageContext:
        def persist_ports(ports: PortMap) -> None:
            record.auxiliary_ports.update(ports)
            self.store.save(record)
            logger.debug("Persisted auxiliary ports %s for %s", ports, record.name)

        return StageContext(
            record=record,
            progress=progress or ProgressChannel(),
            persist_ports=persist_ports,
            exclude_ports=self._ports_of_others(record.name),
        )

    async def _ensure_binaries(
        self,
        record: ContainerRecord,
        channel: ProgressChannel,
    ) -> Path:
        profile = get_profile(record.engine)
        required = [(record.engine, record.version)]
        if profile.backend_engine is not None:
            required.insert(
                0,
                (
                    profile.backend_engine,
                    record.backend_version or profile.default_backend_version or "",
                ),
            )

        for engine, version in required:
            if self.config.auto_download:
                await self.provisioner.ensure_installed(
                    engine, version, self.platform, self.arch, on_progress=channel
                )
            else:
                # raises NotInstalledError naming the download command
                self.provisioner.find_server_binary(engine, version, self.platform, self.arch)

        return self.provisioner.install_path(
            record.engine, record.version, self.platform, self.arch
        )

    def endpoint(self, record: ContainerRecord) -> Endpoint:
        return Endpoint(
            host=LOCALHOST,
            port=record.port,
            connection_string=connection_string(record),
            auxiliary_ports=dict(record.auxiliary_ports),
        )

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------
    async def start(
        self,
        name: str,
        on_progress: ProgressChannel | ProgressCallback | None = None,
    ) -> Endpoint:
        """Start a container and return its endpoint.

        Starting a container whose stages are all running returns its
        endpoint without side effects; stages that survived a crash of
        another stage are kept. When the primary port was taken since
        creation, the start is retried on a fresh port.
        """
        channel = as_channel(on_progress)
        async with self._lock(name):
            record = self.store.load(name)
            if await self.orchestrator.all_running(self._plan(record), self._context(record)):
                logger.info("Container %s already running on port %d", name, record.port)
                return self.endpoint(record)

            self._transient[name] = ContainerStatus.STARTING
            try:
                install_path = await self._ensure_binaries(record, channel)
                await self._start_with_retry(record, channel)
            finally:
                self._transient.pop(name, None)

            ctx = self._context(record, channel)
            plan = self._plan(record)
            record.status = ContainerStatus.RUNNING
            record.pid = self.orchestrator.primary_pid(plan, ctx)
            record.binary_path = str(install_path)
            self.store.save(record)
            logger.info("Container %s running on port %d", name, record.port)
            return self.endpoint(record)

    async def _start_with_retry(self, record: ContainerRecord, channel: ProgressChannel) -> None:
        profile = get_profile(record.engine)
        attempts = max(1, self.config.start_retries)
        for attempt in range(1, attempts + 1):
            plan = self._plan(record)
            ctx = self._context(record, channel)
            try:
                await self.orchestrator.start(plan, ctx)
                return
            except PortConflictError as e:
                if e.port != record.port or attempt == attempts:
                    raise
                new_port = self.allocator.find_primary_port(
                    profile.default_port,
                    profile.port_range,
                    exclude=ctx.exclude_ports | {record.port},
                )
                self.allocator.release(new_port)
                logger.warning(
                    "Port %d for %s is taken, retrying on port %d (attempt %d/%d)",
                    record.port,
                    record.name,
                    new_port,
                    attempt + 1,
                    attempts,
                )
                record.port = new_port
                self.store.save(record)

    async def stop(self, name: str) -> None:
        """Stop every process of a container.

        Raises:
            ContainerNotFoundError: unknown container.
            ProcessControlFailedError: a process survived SIGKILL; the
                container reports ``error`` until the next successful stop.
        """
        async with self._lock(name):
            record = self.store.load(name)
            await self._stop(record)

    async def _stop(self, record: ContainerRecord) -> None:
        self._transient[record.name] = ContainerStatus.STOPPING
        try:
            await self.orchestrator.stop(self._plan(record), self._context(record))
        except Exception:
            self._transient[record.name] = ContainerStatus.ERROR
            raise
        self._transient.pop(record.name, None)
        record.status = ContainerStatus.STOPPED
        record.pid = None
        self.store.save(record)

    async def delete(self, name: str) -> None:
        """Stop whatever stage of the container is running, then remove its directory."""
        async with self._lock(name):
            record = self.store.load(name)
            plan = self._plan(record)
            if await self.orchestrator.running_stages(plan, self._context(record)):
                await self._stop(record)
            self.store.remove(name)
            self._transient.pop(name, None)
        logger.info("Deleted container %s", name)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get(self, name: str) -> ContainerRecord:
        return self.store.load(name)

    async def status(self, name: str) -> ContainerStatus:
        """Live status: in-flight transient state, else a protocol check."""
        if name in self._transient:
            return self._transient[name]
        record = self.store.load(name)
        return await self._observed_status(record)

    async def _observed_status(self, record: ContainerRecord) -> ContainerStatus:
        if await self.orchestrator.is_running(self._plan(record), self._context(record)):
            return ContainerStatus.RUNNING
        if record.status is ContainerStatus.CREATED:
            return ContainerStatus.CREATED
        return ContainerStatus.STOPPED

    async def list(self) -> list[ContainerRecord]:
        """All container records with their observed status."""
        records = self.store.list()
        for record in records:
            record.status = self._transient.get(record.name) or await self._observed_status(record)
        return records
