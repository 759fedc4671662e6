"""Fixtures for engine API tests."""

from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest
from fastapi.testclient import TestClient
from smartimport_core import SmartImportService
from smartimport_core.settings import Settings, StorageSettings
from smartimport_engine.main import create_app


@pytest.fixture()
def service(tmp_path: Path) -> Iterator[SmartImportService]:
    svc = SmartImportService(Settings(storage=StorageSettings(data_root=tmp_path / "data")))
    yield svc
    svc.close()


@pytest.fixture()
def client(service: SmartImportService) -> TestClient:
    return TestClient(create_app(service=service))
