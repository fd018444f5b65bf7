"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, HTTPException, Request, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from snaplabel.api.schemas import (
    AcceptedResponse,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
    PredictionResponse,
)
from snaplabel.errors import NormalizationError, PipelineBusyError
from snaplabel.ml.preprocessing import RawImage
from snaplabel.pipeline.controller import Failed, Outcome, Reported, ReportedNone, format_outcome

if TYPE_CHECKING:
    from snaplabel.api.board import PredictionBoard
    from snaplabel.config import Settings
    from snaplabel.ml.inference import InferenceEngine
    from snaplabel.ml.model_manager import ModelSource
    from snaplabel.pipeline.controller import PipelineController

router = APIRouter(prefix="/api/v1")

_FAILURE_STATUS: dict[str, int] = {
    "NormalizationError": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "ModelUnavailableError": status.HTTP_503_SERVICE_UNAVAILABLE,
    "InferenceExecutionError": status.HTTP_500_INTERNAL_SERVER_ERROR,
}

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_409_CONFLICT: {"model": ErrorResponse},
    status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
    status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_controller(request: Request) -> PipelineController:
    controller: PipelineController = request.app.state.controller
    return controller


def _get_board(request: Request) -> PredictionBoard:
    board: PredictionBoard = request.app.state.board
    return board


def _get_engine(request: Request) -> InferenceEngine:
    engine: InferenceEngine = request.app.state.engine
    return engine


def _prediction(outcome: Outcome | None, *, busy: bool, message: str) -> PredictionResponse:
    if isinstance(outcome, Reported):
        return PredictionResponse(
            busy=busy,
            message=message,
            outcome="reported",
            label=outcome.candidate.label,
            confidence=outcome.candidate.confidence,
        )
    if isinstance(outcome, ReportedNone):
        return PredictionResponse(busy=busy, message=message, outcome="none")
    if isinstance(outcome, Failed):
        return PredictionResponse(busy=busy, message=message, outcome="failed", error_kind=outcome.error_kind)
    return PredictionResponse(busy=busy, message=message)


async def _read_image(file: UploadFile, controller: PipelineController, settings: Settings) -> RawImage:
    if controller.busy:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A classification is already in progress")

    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Upload exceeds {settings.max_file_size} bytes",
        )
    try:
        return await run_in_threadpool(RawImage.from_bytes, data, settings.max_image_pixels)
    except NormalizationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc


@router.post(
    "/images",
    response_model=AcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=_ERROR_RESPONSES,
    summary="Submit an image for classification",
)
async def submit_image(request: Request, file: UploadFile) -> JSONResponse:
    """Start classifying an uploaded image; poll /prediction for the outcome."""
    controller = _get_controller(request)
    raw = await _read_image(file, controller, _get_settings(request))
    try:
        controller.submit(raw)
    except PipelineBusyError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=AcceptedResponse().model_dump())


@router.post(
    "/classify-image",
    response_model=PredictionResponse,
    responses={
        **_ERROR_RESPONSES,
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify an image and wait for the result",
)
async def classify_image(request: Request, file: UploadFile) -> JSONResponse:
    """Classify an uploaded image and return the top label."""
    controller = _get_controller(request)
    board = _get_board(request)
    raw = await _read_image(file, controller, _get_settings(request))

    pending = board.expect()
    try:
        controller.submit(raw)
    except PipelineBusyError as exc:
        board.discard(pending)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    outcome = await pending
    if isinstance(outcome, Failed):
        return JSONResponse(
            status_code=_FAILURE_STATUS.get(outcome.error_kind, status.HTTP_500_INTERNAL_SERVER_ERROR),
            content={"detail": outcome.message},
        )
    response = _prediction(outcome, busy=controller.busy, message=format_outcome(outcome))
    return JSONResponse(status_code=status.HTTP_200_OK, content=response.model_dump())


@router.get(
    "/prediction",
    response_model=PredictionResponse,
    summary="Latest classification notification",
)
async def latest_prediction(request: Request) -> PredictionResponse:
    """Return the busy flag and the latest outcome message."""
    board = _get_board(request)
    return _prediction(board.outcome, busy=board.busy, message=board.message)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    engine = _get_engine(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        model_loaded=engine.model_loaded,
        busy=_get_controller(request).busy,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List the configured model",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return the configured model and whether it is loaded."""
    engine = _get_engine(request)
    source: ModelSource = request.app.state.model_source

    if engine.model_loaded:
        model_status = "active"
    elif engine.load_error is not None:
        model_status = "unavailable"
    else:
        model_status = "available"

    return ModelsResponse(
        models=[
            ModelInfo(
                name=source.name,
                status=model_status,
                source=source.origin,
                detail=engine.load_error,
            )
        ]
    )
