"""API endpoints for running connectors."""

import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_coordinator, get_registry
from connectors import ConnectorRegistry
from database import get_db
from errors import run_error_status
from models import ConnectorRun
from schemas import (
    ApiResponse,
    ConnectorInfo,
    ConnectorResultSchema,
    ConnectorRunData,
    RunAllData,
    RunInfo,
    wire_status,
)
from services.run_coordinator import RunCoordinator

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/connectors", response_model=ApiResponse[list[ConnectorInfo]])
async def list_connectors(
    registry: ConnectorRegistry = Depends(get_registry),
    coordinator: RunCoordinator = Depends(get_coordinator),
):
    """List configured connectors with their latest run."""
    runs = coordinator.runs()
    connectors = []
    for info in registry.list_all():
        run = runs.get(info["id"])
        connectors.append(
            ConnectorInfo(
                **info,
                running=coordinator.is_running(info["id"]),
                last_run=RunInfo.model_validate(run) if run else None,
            )
        )
    return ApiResponse(data=connectors)


@router.get("/connectors/runs", response_model=ApiResponse[list[RunInfo]])
async def list_runs(
    db: AsyncSession = Depends(get_db),
    connector_id: str | None = None,
    limit: int = Query(50, ge=1, le=500),
):
    """Persisted run history, newest first."""
    query = select(ConnectorRun)
    if connector_id is not None:
        query = query.where(ConnectorRun.connector_id == connector_id)
    query = query.order_by(ConnectorRun.started_at.desc(), ConnectorRun.id.desc()).limit(limit)

    result = await db.execute(query)
    runs = result.scalars().all()
    return ApiResponse(data=[RunInfo.model_validate(r) for r in runs])


@router.post("/connectors/run-all", response_model=ApiResponse[RunAllData])
async def run_all_connectors(
    coordinator: RunCoordinator = Depends(get_coordinator),
):
    """Run every connector and report each outcome.

    Individual connector failures never fail the request.
    """
    results = await coordinator.run_all()
    return ApiResponse(
        data=RunAllData(
            results={
                connector_id: ConnectorResultSchema(
                    status=wire_status(result.status),
                    processed=result.processed if result.succeeded else None,
                    message=result.message,
                    error_kind=result.error_kind,
                )
                for connector_id, result in results.items()
            }
        )
    )


@router.post("/connectors/run/{connector_id}", response_model=ApiResponse[ConnectorRunData])
async def run_connector(
    connector_id: str,
    coordinator: RunCoordinator = Depends(get_coordinator),
):
    """Run a single connector and wait for it to finish."""
    run = await coordinator.run_one(connector_id)

    if run.error:
        return JSONResponse(
            status_code=run_error_status(run.error_kind),
            content=ApiResponse(success=False, error=run.error).model_dump(),
        )

    return ApiResponse(
        data=ConnectorRunData(
            processed=run.processed_count,
            connector=connector_id,
            updated=run.updated_count,
            skipped=run.skipped_count,
        )
    )
