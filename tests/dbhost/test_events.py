# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the dbhost project

"""Tests for the progress channel."""

import asyncio

import pytest

from dbhost.events import ProgressChannel, as_channel
from dbhost.types import ProgressEvent, ProgressStage


class TestProgressChannel:
    """Test fan-out and observer isolation."""

    def test_publish_fans_out(self):
        first, second = [], []
        channel = ProgressChannel(first.append, None)
        channel.subscribe(second.append)

        event = channel.publish(ProgressStage.DOWNLOADING, "Downloading...")

        assert event == ProgressEvent(ProgressStage.DOWNLOADING, "Downloading...")
        assert first == [event]
        assert second == [event]

    def test_failing_observer_is_isolated(self):
        seen = []

        def broken(event):
            raise RuntimeError("observer bug")

        channel = ProgressChannel(broken, seen.append)
        channel.publish(ProgressStage.EXTRACTING, "Extracting binaries...")

        assert [e.stage for e in seen] == [ProgressStage.EXTRACTING]

    def test_unsubscribe(self):
        seen = []
        channel = ProgressChannel(seen.append)
        channel.unsubscribe(seen.append)
        channel.unsubscribe(seen.append)

        channel.publish(ProgressStage.CACHED, "cached")

        assert seen == []

    def test_async_observer_outside_loop_is_dropped(self):
        async def observer(event):
            raise AssertionError("never awaited")

        ProgressChannel(observer).publish(ProgressStage.STARTING, "Starting...")

    def test_as_channel(self):
        channel = ProgressChannel()
        assert as_channel(channel) is channel
        assert isinstance(as_channel(None), ProgressChannel)


@pytest.mark.asyncio
async def test_async_observer_does_not_block_publisher():
    """Test that publish returns before a slow async observer finishes."""
    release = asyncio.Event()
    seen = []

    async def slow(event):
        await release.wait()
        seen.append(event)

    channel = ProgressChannel(slow)
    channel.publish(ProgressStage.VERIFYING, "Verifying binaries...")
    assert seen == []

    release.set()
    for _ in range(5):
        await asyncio.sleep(0)
    assert [e.stage for e in seen] == [ProgressStage.VERIFYING]
