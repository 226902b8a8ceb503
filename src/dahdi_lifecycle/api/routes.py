# src/dahdi_lifecycle/api/routes.py

import asyncio
from fastapi import APIRouter, Depends, HTTPException, Request, status
from typing import List

from .models import (
    DeviceModel,
    LifecycleReportModel,
    ReconciliationModel,
    SystemStatusModel,
)
from ..core.interfaces import DiscoveryToolError, Intent
from ..core.orchestrator import LifecycleOrchestrator
from ..utils.logger import DAHDILogger

logger = DAHDILogger().get_logger(__name__)

BUSY_DETAIL = "A lifecycle operation is already in progress"

router = APIRouter(
    prefix="",
    tags=["lifecycle"],
    responses={
        status.HTTP_500_INTERNAL_SERVER_ERROR: {
            "description": "Internal server error",
            "content": {
                "application/json": {
                    "example": {"detail": "Internal server error"}
                }
            }
        }
    }
)

def get_orchestrator(request: Request) -> LifecycleOrchestrator:
    """FastAPI dependency returning the orchestrator of this application"""
    return request.app.state.orchestrator

def get_lifecycle_lock(request: Request) -> asyncio.Lock:
    """FastAPI dependency returning the lock serializing lifecycle requests"""
    return request.app.state.lifecycle_lock

@router.get(
    "/lifecycle/status",
    response_model=SystemStatusModel,
    summary="Get observed lifecycle status",
    description="""
    Observes the host without changing it:
    - RUNNING when the base DAHDI module is loaded, UNLOADED otherwise
    - DAHDI modules currently loaded
    - Whether the PBX console answers and has the channel driver loaded
    """,
    tags=["status"]
)
async def get_status(orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)) -> SystemStatusModel:
    current = await orchestrator.status()
    return SystemStatusModel(**current.to_dict())

@router.post(
    "/lifecycle/{intent}",
    response_model=LifecycleReportModel,
    summary="Run a lifecycle request",
    description="""
    Runs stop, start, restart or restart-light to completion and returns the
    final report. A request that ends in FAILED still returns 200; inspect
    `succeeded` and `failed_phase`.

    Only one request runs at a time; a concurrent request gets 409.
    """,
    responses={
        409: {
            "description": "Another lifecycle request is running",
            "content": {
                "application/json": {
                    "example": {"detail": BUSY_DETAIL}
                }
            }
        }
    }
)
async def run_lifecycle(
    intent: Intent,
    force: bool = False,
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
    lock: asyncio.Lock = Depends(get_lifecycle_lock),
) -> LifecycleReportModel:
    if lock.locked():
        logger.warning("lifecycle_request_rejected", intent=intent.value, reason="busy")
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=BUSY_DETAIL)
    async with lock:
        report = await orchestrator.run(intent, force=force)
    return LifecycleReportModel(**report.to_dict())

@router.get(
    "/hardware",
    response_model=List[DeviceModel],
    summary="List telephony hardware",
    tags=["status"]
)
async def get_hardware(orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)) -> List[DeviceModel]:
    try:
        devices = await orchestrator.discovery.discover()
    except DiscoveryToolError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return [
        DeviceModel(
            bus_address=d.bus_address,
            driver_candidates=d.driver_candidates,
            vendor_product=d.vendor_product,
            description=d.description,
            driver_loaded=d.driver_loaded,
            span=d.span,
        )
        for d in devices
    ]

@router.get(
    "/reconcile",
    response_model=ReconciliationModel,
    summary="Preview configuration drift",
    description="""
    Discovers hardware, resolves span assignments and diffs the generated
    channel configuration against the active one without installing anything.
    """,
    tags=["status"]
)
async def get_reconcile(
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
    lock: asyncio.Lock = Depends(get_lifecycle_lock),
) -> ReconciliationModel:
    if lock.locked():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=BUSY_DETAIL)
    async with lock:
        result = await orchestrator.preview()
    return ReconciliationModel(
        classification=result.classification,
        delta=[str(line) for line in result.delta],
        warnings=result.warnings,
        skipped=result.skipped,
        installed=result.installed,
    )
