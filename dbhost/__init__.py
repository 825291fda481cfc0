# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the dbhost project

"""
dbhost - local database engines without a container runtime.

dbhost provisions, starts, stops and tears down database and search engine
instances on a developer machine:
- Binary provisioning (download, extract, verify) per platform
- Version alias resolution ("17" -> "17.7.0")
- Ordered multi-process startup with rollback for composite engines
- Port allocation, readiness probing and signal escalation on stop
"""

from .config import DbHostConfig, Paths
from .engines import LaunchEnv, build_plan, connection_string, register_plan_builder

# Import error taxonomy
from .errors import (
    ContainerExistsError,
    ContainerNotFoundError,
    DbHostError,
    DownloadFailedError,
    ExtractionFailedError,
    NotInstalledError,
    PortConflictError,
    PortExhaustedError,
    ProcessControlFailedError,
    ReadinessTimeoutError,
    UnknownEngineError,
    VerificationFailedError,
)
from .events import ProgressChannel

# Import lifecycle management
from .lifecycle import ContainerLifecycleManager
from .orchestrator import CompositeOrchestrator, EnginePlan, Stage, StageContext
from .ports import PortAllocator
from .profiles import EngineProfile, get_profile, list_profiles, register_profile
from .provisioner import BinaryProvisioner
from .readiness import ReadinessProbe
from .releases import ReleaseAsset, ReleaseRegistry, ReleasesCache
from .store import ContainerStore
from .supervisor import (
    ProcessSpec,
    ProcessSupervisor,
    ReadinessCheck,
    ReadinessKind,
    SpawnDiscipline,
)

# Import types
from .types import (
    Arch,
    ContainerRecord,
    ContainerStatus,
    Endpoint,
    InstalledBinary,
    Platform,
    ProgressEvent,
    ProgressStage,
)
from .versions import VersionResolver

__version__ = "0.1.0"

__all__ = [
    # Configuration
    "DbHostConfig",
    "Paths",
    # Types
    "Arch",
    "ContainerRecord",
    "ContainerStatus",
    "Endpoint",
    "InstalledBinary",
    "Platform",
    "ProgressEvent",
    "ProgressStage",
    # Errors
    "ContainerExistsError",
    "ContainerNotFoundError",
    "DbHostError",
    "DownloadFailedError",
    "ExtractionFailedError",
    "NotInstalledError",
    "PortConflictError",
    "PortExhaustedError",
    "ProcessControlFailedError",
    "ReadinessTimeoutError",
    "UnknownEngineError",
    "VerificationFailedError",
    # Provisioning
    "BinaryProvisioner",
    "EngineProfile",
    "ReleaseAsset",
    "ReleaseRegistry",
    "ReleasesCache",
    "VersionResolver",
    "get_profile",
    "list_profiles",
    "register_profile",
    # Processes
    "CompositeOrchestrator",
    "EnginePlan",
    "LaunchEnv",
    "PortAllocator",
    "ProcessSpec",
    "ProcessSupervisor",
    "ProgressChannel",
    "ReadinessCheck",
    "ReadinessKind",
    "ReadinessProbe",
    "SpawnDiscipline",
    "Stage",
    "StageContext",
    "build_plan",
    "connection_string",
    "register_plan_builder",
    # Lifecycle
    "ContainerLifecycleManager",
    "ContainerStore",
]
