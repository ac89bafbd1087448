from __future__ import annotations

import logging
from pathlib import Path

import pytest

from kurento_recorder.config import ManagerConfig
from tests.fakes import FakeMediaServer

KURENTO_URL = "ws://kms.test:8888/kurento"


@pytest.fixture
def fake_server() -> FakeMediaServer:
    server = FakeMediaServer()
    server.is_open = True
    return server


@pytest.fixture
def manager_config(tmp_path: Path) -> ManagerConfig:
    return ManagerConfig(
        kurento_url=KURENTO_URL,
        reconnect=False,
        reconnect_base_delay_ms=1,
        reconnect_max_delay_ms=4,
        temp_dir=str(tmp_path / "recordings"),
    )


@pytest.fixture(autouse=True)
def reset_package_logger() -> None:
    logging.getLogger("kurento_recorder").setLevel(logging.NOTSET)
