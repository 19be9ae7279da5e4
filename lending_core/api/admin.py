"""
Operational endpoints for administrators
"""

from dataclasses import asdict
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends

from .dependencies import get_system, require_admin
from ..system import LendingSystem
from ..workflow_policy import Actor


router = APIRouter()


@router.post("/sweeps/overdue")
async def run_overdue_sweep(
    now: Optional[datetime] = None,
    actor: Actor = Depends(require_admin),
    system: LendingSystem = Depends(get_system)
):
    """Run the overdue sweep immediately"""
    return system.sweeper.run(now).to_dict()


@router.post("/notifications/process")
async def process_notifications(
    limit: int = 100,
    actor: Actor = Depends(require_admin),
    system: LendingSystem = Depends(get_system)
):
    """Deliver notification jobs that are due"""
    return asdict(system.notifications.process_due(limit=limit))


@router.get("/scheduler")
async def scheduler_status(
    actor: Actor = Depends(require_admin),
    system: LendingSystem = Depends(get_system)
):
    last = system.scheduler.last_result
    worker = system.notification_worker
    return {
        "running": system.scheduler.is_running,
        "last_result": last.to_dict() if last else None,
        "notifications": {
            "running": worker.is_running,
            "last_result": asdict(worker.last_result) if worker.last_result else None,
        },
    }
