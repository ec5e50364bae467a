"""共通フィクスチャ"""

import tempfile
from pathlib import Path

import pytest

from fakes import ManualClock, SyncEnvironment


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def temp_dir():
    with tempfile.TemporaryDirectory() as directory:
        yield Path(directory)


@pytest.fixture
async def env(temp_dir, clock):
    """初期化済みの同期環境"""
    environment = SyncEnvironment(temp_dir, clock)
    await environment.initialize()
    yield environment
    await environment.engine.stop()
