# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the dbhost project

"""pytest configuration for dbhost tests."""

import logging
import sys
from pathlib import Path

import pytest
from aioresponses import aioresponses

# Configure logging
logging.basicConfig(level=logging.INFO)

# Set up path for dbhost imports
root = Path(__file__).parent.parent.parent
if str(root) not in sys.path:
    sys.path.insert(0, str(root))

from dbhost.config import DbHostConfig  # noqa: E402
from dbhost.profiles import EngineProfile, register_profile, unregister_profile  # noqa: E402
from helpers import FAKE_LAUNCHER, FAKE_SERVER, REGISTRY, RELEASES_URL, free_port  # noqa: E402


@pytest.fixture
def mock_aiohttp():
    """Fixture providing mocked aiohttp responses."""
    with aioresponses() as m:
        yield m


@pytest.fixture
def config(tmp_path: Path) -> DbHostConfig:
    """Fast configuration rooted in a temporary home."""
    return DbHostConfig(
        home=tmp_path / "home",
        registry_url=REGISTRY,
        releases_urls=(RELEASES_URL,),
        poll_interval=0.05,
        ready_timeout=5.0,
        daemon_settle_delay=0.2,
        launcher_timeout=10.0,
        shutdown_timeout=3.0,
        stop_grace_period=1.0,
        verify_timeout=5.0,
    )


@pytest.fixture
def fake_server(tmp_path: Path) -> Path:
    path = tmp_path / "fake_server.py"
    path.write_text(FAKE_SERVER)
    return path


@pytest.fixture
def fake_launcher(tmp_path: Path) -> Path:
    path = tmp_path / "fake_launcher.py"
    path.write_text(FAKE_LAUNCHER)
    return path


@pytest.fixture
def acme_profile():
    """A registered engine that only exists in tests."""
    base = free_port()
    profile = register_profile(
        EngineProfile(
            name="acme-db",
            display_name="Acme DB",
            server_binaries=("acme-server", "acmed"),
            version_table={"9": "9.1.2", "9.1": "9.1.2", "8": "8.4.0"},
            version_pattern=r"acme-db v(\d+\.\d+\.\d+)",
            default_port=base,
            port_range=(base, base + 50),
            client_tools=("acme-cli",),
            connection_scheme="acme",
        )
    )
    yield profile
    unregister_profile("acme-db")
