"""FastAPI application entrypoint for Smart Import."""

from __future__ import annotations

import logging
import threading
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from smartimport_core import (
    DecodeError,
    InvalidTransition,
    RecordNotFound,
    RecordValidationError,
    RuleImmutable,
    RuleNotFound,
    SessionNotFound,
    Settings,
    SmartImportError,
    SmartImportService,
    StorageFailure,
    load_settings,
)
from smartimport_schemas import (
    CreatePasteSessionRequest,
    CreateUploadSessionRequest,
    DeleteSessionResponse,
    FeedbackRequest,
    FeedbackResponse,
    FinalizeRequest,
    FinalizeResult,
    ImportSession,
    Rule,
    RuleCreateRequest,
    RuleKind,
    RuleListResponse,
    RuleUpdateRequest,
    StagedRecordsResponse,
)

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

router = APIRouter(tags=["engine"])

_STATUS_BY_ERROR: list[tuple[type[SmartImportError], int]] = [
    (SessionNotFound, 404),
    (RecordNotFound, 404),
    (RuleNotFound, 404),
    (RuleImmutable, 403),
    (InvalidTransition, 409),
    (StorageFailure, 503),
    (DecodeError, 422),
    (RecordValidationError, 422),
]


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging for the engine process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _http_error(exc: SmartImportError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    logger.error("Unmapped pipeline error: %s", exc)
    return HTTPException(status_code=500, detail=str(exc))


_service_lock = threading.Lock()


def get_service(request: Request) -> SmartImportService:
    """Return the app's service, building it on first use."""
    app = request.app
    with _service_lock:
        if app.state.service is None:
            app.state.service = SmartImportService(app.state.settings)
        return app.state.service


@router.post("/sessions/upload", response_model=ImportSession, status_code=202)
def create_upload_session(
    payload: CreateUploadSessionRequest,
    service: SmartImportService = Depends(get_service),
) -> ImportSession:
    """Record an uploaded file and start processing it in the background."""
    return service.create_upload_session(payload)


@router.post("/sessions/paste", response_model=ImportSession, status_code=202)
def create_paste_session(
    payload: CreatePasteSessionRequest,
    service: SmartImportService = Depends(get_service),
) -> ImportSession:
    """Record pasted text and start processing it in the background."""
    return service.create_paste_session(payload)


@router.get("/sessions/{session_id}", response_model=ImportSession)
def get_session_status(
    session_id: str,
    service: SmartImportService = Depends(get_service),
) -> ImportSession:
    try:
        return service.get_session(session_id)
    except SmartImportError as exc:
        raise _http_error(exc) from exc


@router.get("/sessions/{session_id}/records", response_model=StagedRecordsResponse)
def list_staged_records(
    session_id: str,
    service: SmartImportService = Depends(get_service),
) -> StagedRecordsResponse:
    try:
        records = service.list_records(session_id)
    except SmartImportError as exc:
        raise _http_error(exc) from exc
    return StagedRecordsResponse(session_id=session_id, records=records)


@router.post(
    "/sessions/{session_id}/records/{sequence}/feedback",
    response_model=FeedbackResponse,
)
def submit_feedback(
    session_id: str,
    sequence: int,
    payload: FeedbackRequest,
    service: SmartImportService = Depends(get_service),
) -> FeedbackResponse:
    try:
        return service.submit_feedback(session_id, sequence, payload)
    except SmartImportError as exc:
        raise _http_error(exc) from exc


@router.post("/sessions/{session_id}/finalize", response_model=FinalizeResult)
def finalize_session(
    session_id: str,
    payload: FinalizeRequest,
    service: SmartImportService = Depends(get_service),
) -> FinalizeResult:
    """Commit approved records; rejected records are reported, not raised."""
    try:
        return service.finalize(session_id, payload)
    except SmartImportError as exc:
        raise _http_error(exc) from exc


@router.delete("/sessions/{session_id}", response_model=DeleteSessionResponse)
def delete_session(
    session_id: str,
    service: SmartImportService = Depends(get_service),
) -> DeleteSessionResponse:
    return service.delete_session(session_id)


@router.get("/rules", response_model=RuleListResponse)
def list_rules(
    owner: Optional[str] = None,
    kind: Optional[RuleKind] = None,
    service: SmartImportService = Depends(get_service),
) -> RuleListResponse:
    return RuleListResponse(rules=service.list_rules(owner, kind))


@router.post("/rules", response_model=Rule, status_code=201)
def create_rule(
    payload: RuleCreateRequest,
    service: SmartImportService = Depends(get_service),
) -> Rule:
    return service.create_rule(payload)


@router.patch("/rules/{rule_id}", response_model=Rule)
def update_rule(
    rule_id: int,
    payload: RuleUpdateRequest,
    service: SmartImportService = Depends(get_service),
) -> Rule:
    try:
        return service.update_rule(rule_id, payload)
    except SmartImportError as exc:
        raise _http_error(exc) from exc


@router.delete("/rules/{rule_id}", status_code=204)
def delete_rule(
    rule_id: int,
    service: SmartImportService = Depends(get_service),
) -> Response:
    try:
        service.delete_rule(rule_id)
    except SmartImportError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


def create_app(
    settings: Settings | None = None,
    service: SmartImportService | None = None,
) -> FastAPI:
    """Build and configure the FastAPI application."""
    resolved = settings or (service.settings if service else load_settings())
    setup_logging(resolved.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        if app.state.service is not None:
            app.state.service.close()

    app = FastAPI(title="Smart Import Engine", version="0.1.0", lifespan=lifespan)
    app.state.settings = resolved
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["system"])  # pragma: no cover - trivial
    def healthcheck() -> dict[str, bool]:
        return {"ok": True}

    app.include_router(router)

    return app


app = create_app()


def run() -> None:  # pragma: no cover - manual entrypoint
    """Run the development server with uvicorn."""
    import uvicorn

    uvicorn.run(
        "smartimport_engine.main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
    )


if __name__ == "__main__":  # pragma: no cover - manual entrypoint
    run()
