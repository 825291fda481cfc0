# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the dbhost project

"""Progress notification channel.

Provisioning and orchestration publish ``ProgressEvent`` values here;
observers (a CLI spinner, tests) subscribe. Delivery is fire-and-forget:
publishers never wait on observers and an observer failure never reaches
the publisher.
"""

from __future__ import annotations

import asyncio
import inspect
import logging

from .types import ProgressCallback, ProgressEvent, ProgressStage

logger = logging.getLogger(__name__)


class ProgressChannel:
    """Fan-out of progress events to subscribed observers."""

    def __init__(self, *observers: ProgressCallback | None) -> None:
        self._observers: list[ProgressCallback] = [obs for obs in observers if obs is not None]
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, observer: ProgressCallback) -> None:
        self._observers.append(observer)

    def unsubscribe(self, observer: ProgressCallback) -> None:
        try:
            self._observers.remove(observer)
        except ValueError:
            pass

    def publish(self, stage: ProgressStage, message: str) -> ProgressEvent:
        event = ProgressEvent(stage=stage, message=message)
        logger.debug("progress [%s] %s", stage.value, message)
        for observer in list(self._observers):
            try:
                result = observer(event)
            except Exception as e:
                logger.warning("Progress observer %r failed: %s", observer, e)
                continue
            if inspect.isawaitable(result):
                self._schedule(result)
        return event

    def _schedule(self, awaitable) -> None:
        try:
            task = asyncio.ensure_future(awaitable)
        except RuntimeError:
            # no running loop; drop the notification
            logger.debug("Dropping async progress notification outside event loop")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        self._pending.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Async progress observer failed: %s", task.exception())


def as_channel(progress: ProgressChannel | ProgressCallback | None) -> ProgressChannel:
    """Wrap a bare callback (or nothing) into a channel."""
    if isinstance(progress, ProgressChannel):
        return progress
    return ProgressChannel(progress)
