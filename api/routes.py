"""Trigger, stats and reader endpoints (single entities and cache-first lists)."""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from lifecycle.models import JobStatus
from sync.errors import ReconciliationInProgress, ReconciliationPartialFailure
from sync.reconciler import ReconcileResult
from sync.services import SyncServices

from .auth import require_cron_secret
from .errors import EntityNotFoundError
from .read_policy import CachedReadService
from .schemas import ManualSyncBody

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

MANUAL_SYNC_USAGE = {
    "endpoint": "POST /api/sync/manual",
    "auth": "Authorization: Bearer <CRON_SECRET>",
    "body": {
        "type": "job | profile | escrow | proposal | all",
        "id": "generic identifier (job id, wallet or escrow address)",
        "jobId": "job id (job, proposal, optional for escrow)",
        "escrowAddress": "escrow contract address (escrow)",
        "freelancerAddress": "freelancer wallet (profile, proposal)",
        "fromBlock": "first block of the event scan (all)",
    },
    "examples": [
        {"type": "job", "jobId": 7},
        {"type": "escrow", "escrowAddress": "0x...", "jobId": 7},
        {"type": "proposal", "jobId": 7, "freelancerAddress": "0x..."},
        {"type": "all", "fromBlock": 12000000},
    ],
}


def get_services(request: Request) -> SyncServices:
    return request.app.state.services


def get_read_service(request: Request) -> CachedReadService:
    return request.app.state.read_service


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/cron/reconcile", dependencies=[Depends(require_cron_secret)])
async def cron_reconcile(
    contract: Optional[str] = None,
    services: SyncServices = Depends(get_services),
):
    started = time.monotonic()
    scheduler = services.scheduler
    if contract is not None:
        if contract not in services.config.tracked_contracts:
            raise HTTPException(status_code=400, detail=f"unknown contract {contract!r}")
        try:
            outcomes: List[Any] = [await scheduler.reconcile(contract)]
        except ReconciliationPartialFailure as e:
            outcomes = [e]
    else:
        outcomes = await scheduler.reconcile_all()

    results = [o for o in outcomes if isinstance(o, ReconcileResult)]
    failures = [o for o in outcomes if isinstance(o, ReconciliationPartialFailure)]
    busy = [o for o in outcomes if isinstance(o, ReconciliationInProgress)]
    if busy and len(busy) == len(outcomes):
        raise busy[0]
    duration = int((time.monotonic() - started) * 1000)
    contracts: List[Dict[str, Any]] = [r.to_dict() for r in results] + [
        {"contractName": f.contract_name, "error": f.message, "syncStatus": f.sync_status} for f in failures
    ] + [
        {"contractName": b.contract_name, "skipped": b.message} for b in busy
    ]

    if failures:
        logger.error(f"[api] reconcile failed for {[f.contract_name for f in failures]}")
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "Reconciliation failed",
                "details": "; ".join(str(f) for f in failures),
                "contracts": contracts,
                "timestamp": _now_iso(),
            },
        )

    return {
        "success": True,
        "lastSyncedBlock": min(r.last_synced_block for r in results) if results else None,
        "currentBlock": max(r.current_block for r in results) if results else None,
        "duration": duration,
        "timestamp": _now_iso(),
        "contracts": contracts,
    }


@router.post("/sync/manual", dependencies=[Depends(require_cron_secret)])
async def manual_sync(body: ManualSyncBody, services: SyncServices = Depends(get_services)):
    request = body.to_request()
    try:
        request.validate()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    summary = await services.manual.run(request)
    return {"success": True, **summary, "timestamp": _now_iso()}


@router.get("/sync/manual")
async def manual_sync_usage():
    return MANUAL_SYNC_USAGE


@router.get("/cache/stats")
async def cache_stats(services: SyncServices = Depends(get_services)):
    config = services.config
    return {
        "success": True,
        "cache": services.store.reader().stats(),
        "policy": {
            "enabled": config.enable_db_cache,
            "ttl_ms": config.cache_ttl_ms,
            "stale_grace_ms": config.stale_grace_ms,
        },
        "rpc": services.router.get_status(),
        "timestamp": _now_iso(),
    }


@router.get("/jobs/{job_id}")
async def get_job(job_id: int, service: CachedReadService = Depends(get_read_service)):
    result = await service.get_job(job_id)
    if result is None:
        raise EntityNotFoundError(f"job {job_id} not found")
    return {"success": True, **result.to_dict()}


@router.get("/escrows/{address}")
async def get_escrow(address: str, service: CachedReadService = Depends(get_read_service)):
    result = await service.get_escrow(address)
    if result is None:
        raise EntityNotFoundError(f"escrow {address} not found")
    return {"success": True, **result.to_dict()}


@router.get("/jobs")
async def list_jobs(
    status: Optional[int] = Query(default=None, ge=0),
    client: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    service: CachedReadService = Depends(get_read_service),
):
    try:
        job_status = JobStatus(status) if status is not None else None
    except ValueError:
        raise HTTPException(status_code=400, detail=f"unknown job status {status}")
    result = await service.list_jobs(status=job_status, client=client, limit=limit, offset=offset)
    return {"success": True, **result.to_dict()}


@router.get("/jobs/{job_id}/proposals")
async def list_job_proposals(job_id: int, service: CachedReadService = Depends(get_read_service)):
    result = await service.list_job_proposals(job_id)
    return {"success": True, **result.to_dict()}


@router.get("/jobs/{job_id}/escrow")
async def get_job_escrow(job_id: int, service: CachedReadService = Depends(get_read_service)):
    result = await service.get_job_escrow(job_id)
    if result is None:
        raise EntityNotFoundError(f"job {job_id} has no escrow")
    return {"success": True, **result.to_dict()}


@router.get("/freelancers/{address}/proposals")
async def list_freelancer_proposals(address: str, service: CachedReadService = Depends(get_read_service)):
    result = await service.list_freelancer_proposals(address)
    return {"success": True, **result.to_dict()}


@router.get("/escrows/{address}/deliveries")
async def list_deliveries(address: str, service: CachedReadService = Depends(get_read_service)):
    result = await service.get_escrow(address)
    if result is None:
        raise EntityNotFoundError(f"escrow {address} not found")
    deliveries = sorted(result.entity.to_dict()["delivery_history"], key=lambda d: d["version"])
    return {
        "success": True,
        "escrow_address": result.entity.address,
        "deliveries": deliveries,
        "count": len(deliveries),
        "source": result.source,
        "synced_at": result.synced_at,
    }


@router.get("/profiles")
async def list_profiles(
    active: Optional[bool] = None,
    limit: Optional[int] = Query(default=None, ge=1, le=200),
    service: CachedReadService = Depends(get_read_service),
):
    result = await service.list_profiles(is_active=active, limit=limit)
    return {"success": True, **result.to_dict()}
