"""
Pytest configuration and shared fixtures for device-register tests.
"""

import random
import shutil
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, Mock

import pytest

from src.device_register.identity.identity_store import LocalIdentityStore
from src.device_register.identity.node_id_store import NodeIdStore
from src.device_register.registration.workflow import RegistrationWorkflow


@pytest.fixture
def temp_dir():
    """A scratch directory removed after the test."""
    directory = tempfile.mkdtemp(prefix="device_register_test_")
    yield Path(directory)
    shutil.rmtree(directory, ignore_errors=True)


@pytest.fixture
def node_id_store(temp_dir):
    """Node id store backed by a file in the scratch directory."""
    return NodeIdStore(str(temp_dir / "salt" / "minion_id"))


@pytest.fixture
def identity_store(temp_dir):
    """Identity store backed by a file in the scratch directory."""
    return LocalIdentityStore(str(temp_dir / "cacophony" / "device.yaml"))


@pytest.fixture
def registrar():
    """A device API client double."""
    mock_registrar = Mock()
    mock_registrar.register = AsyncMock(return_value=42)
    mock_registrar.login = AsyncMock()
    return mock_registrar


@pytest.fixture
def telemetry_flush():
    """A flush double that records calls."""
    mock_flush = Mock()
    mock_flush.flush = AsyncMock()
    return mock_flush


@pytest.fixture
def sleep():
    """Replacement for asyncio.sleep that returns immediately."""
    return AsyncMock()


@pytest.fixture
def workflow(
    identity_store, node_id_store, registrar, telemetry_flush, sleep
):  # pylint: disable=redefined-outer-name,too-many-arguments
    """Workflow wired to real file stores and a fake API."""
    return RegistrationWorkflow(
        identity_store=identity_store,
        node_id_store=node_id_store,
        registrar=registrar,
        telemetry_flush=telemetry_flush,
        random_source=random.Random(1234),
        sleep=sleep,
    )
