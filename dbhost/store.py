# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the dbhost project

"""Durable container records.

Each container owns ``containers/{engine}/{name}/`` holding its
``container.json`` record, data directory and logs.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from dataclasses import fields
from pathlib import Path
from typing import Any

from .config import Paths
from .errors import ContainerNotFoundError
from .types import ContainerRecord

logger = logging.getLogger(__name__)


class ContainerStore:
    """JSON persistence of ``ContainerRecord`` values."""

    def __init__(self, paths: Paths) -> None:
        self.paths = paths

    def container_dir(self, record: ContainerRecord) -> Path:
        return self.paths.container_path(record.engine, record.name)

    def _find(self, name: str) -> Path | None:
        root = self.paths.containers
        if not root.is_dir():
            return None
        for engine_dir in sorted(root.iterdir()):
            candidate = engine_dir / name / "container.json"
            if candidate.is_file():
                return candidate
        return None

    def exists(self, name: str) -> bool:
        return self._find(name) is not None

    def load(self, name: str) -> ContainerRecord:
        path = self._find(name)
        if path is None:
            raise ContainerNotFoundError(name)
        with open(path) as f:
            return ContainerRecord.from_dict(json.load(f))

    def save(self, record: ContainerRecord) -> None:
        """Write the record atomically (temp file in the same directory, then replace)."""
        path = self.paths.container_config(record.engine, record.name)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".container-", suffix=".json", dir=path.parent)
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(record.to_dict(), f, indent=2)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        logger.debug("Saved container %s (%s)", record.name, record.status.value)

    def update(self, name: str, **changes: Any) -> ContainerRecord:
        known = {f.name for f in fields(ContainerRecord)}
        unknown = set(changes) - known
        if unknown:
            raise TypeError(f"Unknown container fields: {', '.join(sorted(unknown))}")
        record = self.load(name)
        for key, value in changes.items():
            setattr(record, key, value)
        self.save(record)
        return record

    def list(self, engine: str | None = None) -> list[ContainerRecord]:
        root = self.paths.containers
        if not root.is_dir():
            return []
        records: list[ContainerRecord] = []
        for path in sorted(root.glob("*/*/container.json")):
            try:
                with open(path) as f:
                    record = ContainerRecord.from_dict(json.load(f))
            except (OSError, ValueError, TypeError, KeyError) as e:
                logger.debug("Skipping unreadable container record %s: %s", path, e)
                continue
            if engine is None or record.engine == engine:
                records.append(record)
        return records

    def remove(self, name: str) -> None:
        path = self._find(name)
        if path is None:
            raise ContainerNotFoundError(name)
        shutil.rmtree(path.parent)
        logger.info("Removed container directory %s", path.parent)
