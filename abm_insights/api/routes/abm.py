"""API endpoints for creating and inspecting ABM research runs."""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from abm_insights.models.insights import AbmRunDetail, AbmRunRequest, AbmRunResponse
from abm_insights.services.abm.errors import AbmError, RunFailedError, RunNotFoundError
from abm_insights.services.abm.runner import AbmRunner, get_abm_runner

router = APIRouter()
logger = logging.getLogger(__name__)

_RUN_NOT_FOUND = {"error": "Run not found"}


@router.post("/abm", response_model=AbmRunResponse)
def create_run(
    payload: AbmRunRequest,
    runner: AbmRunner = Depends(get_abm_runner),
):
    """Scrape, research and generate insights for one company."""
    try:
        return runner.create_run(payload.company, payload.domain, notify=payload.send_via_n8n)
    except RunFailedError as exc:
        logger.error("abm.api_error", extra={"run_id": str(exc.run_id), "code": exc.code})
        return JSONResponse(
            status_code=_map_error_code(exc.code),
            content={
                "error": "Failed to process ABM request",
                "details": str(exc),
                "run_id": str(exc.run_id),
            },
        )
    except AbmError as exc:
        logger.error("abm.api_error", extra={"company": payload.company, "code": exc.code})
        return JSONResponse(
            status_code=_map_error_code(exc.code),
            content={"error": "Failed to process ABM request", "details": str(exc)},
        )


@router.get("/abm", response_model=AbmRunDetail)
def get_run_by_query(
    run_id: str | None = Query(None, description="Identifier returned by POST /api/abm."),
    runner: AbmRunner = Depends(get_abm_runner),
):
    """Fetch a stored run by query parameter."""
    if not run_id:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "run_id parameter required"},
        )
    return _lookup(runner, run_id)


@router.get("/abm/{run_id}", response_model=AbmRunDetail)
def get_run(run_id: str, runner: AbmRunner = Depends(get_abm_runner)):
    """Fetch a stored run by path parameter."""
    return _lookup(runner, run_id)


def _lookup(runner: AbmRunner, raw_run_id: str):
    try:
        parsed = UUID(raw_run_id)
    except ValueError:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=_RUN_NOT_FOUND)
    try:
        return runner.get_run(parsed)
    except RunNotFoundError:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=_RUN_NOT_FOUND)
    except AbmError as exc:
        logger.error("abm.api_error", extra={"run_id": raw_run_id, "code": exc.code})
        return JSONResponse(
            status_code=_map_error_code(exc.code),
            content={"error": "Failed to load run", "details": str(exc)},
        )


def _map_error_code(code: str) -> int:
    if code == "422_INVALID_REQUEST":
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if code == "404_RUN_NOT_FOUND":
        return status.HTTP_404_NOT_FOUND
    if code == "409_RUN_ALREADY_FINALIZED":
        return status.HTTP_409_CONFLICT
    if code == "503_SIMILARITY_UNAVAILABLE":
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR
