"""
Pytest configuration and fixtures for the CarChat voice core.

Only external collaborators (model backends, recognizers, the realtime
socket, audio hardware) are replaced, and always by the in-memory
implementations the package ships or the fakes in ``testing_utilities``.
"""

import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pytest

from carchat.core.audio_io import (
    AudioSessionManager,
    InMemoryAudioPlayer,
    OutputMode,
    SimulatedAudioHardware,
)
from carchat.core.config import Config, Environment
from carchat.core.stores import InMemoryCredentialStore, InMemorySettingsStore


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config() -> Config:
    """Create test configuration."""
    return Config(environment=Environment.TESTING)


@pytest.fixture
def settings() -> InMemorySettingsStore:
    return InMemorySettingsStore()


@pytest.fixture
def credentials() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


@pytest.fixture
def hardware() -> SimulatedAudioHardware:
    return SimulatedAudioHardware()


@pytest.fixture
def session_manager(hardware: SimulatedAudioHardware) -> AudioSessionManager:
    """Session manager in speakerphone mode with a short route re-check."""
    return AudioSessionManager(hardware, OutputMode.SPEAKERPHONE, recheck_delay=0.01)


@pytest.fixture
def player() -> InMemoryAudioPlayer:
    return InMemoryAudioPlayer()
