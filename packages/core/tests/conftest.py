"""Shared fixtures for core tests."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Iterator

import pytest
from smartimport_core import SmartImportService
from smartimport_core.settings import Settings, StorageSettings
from smartimport_schemas import (
    CreatePasteSessionRequest,
    CreateUploadSessionRequest,
    ImportSession,
)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(storage=StorageSettings(data_root=tmp_path / "data"))


@pytest.fixture()
def service(settings: Settings) -> Iterator[SmartImportService]:
    svc = SmartImportService(settings)
    yield svc
    svc.close()


@pytest.fixture()
def paste(service: SmartImportService) -> Callable[..., ImportSession]:
    def _paste(text: str, owner: str = "ana") -> ImportSession:
        session = service.create_paste_session(
            CreatePasteSessionRequest(owner=owner, text=text)
        )
        assert service.wait(session.id, timeout=10)
        return service.get_session(session.id)

    return _paste


@pytest.fixture()
def upload(service: SmartImportService) -> Callable[..., ImportSession]:
    def _upload(content: str, owner: str = "ana", file_format: str = "csv") -> ImportSession:
        session = service.create_upload_session(
            CreateUploadSessionRequest(
                owner=owner,
                file_name=f"extract.{file_format}",
                file_format=file_format,
                content=content,
            )
        )
        assert service.wait(session.id, timeout=10)
        return service.get_session(session.id)

    return _upload
