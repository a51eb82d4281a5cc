"""Scheduler trigger.

Production runs the sweep from cron via the `escrow-sweep` command; this
endpoint lets an operator kick a run by hand.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from marketplace_escrow.api.deps import get_actor_id, get_release_scheduler
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.schemas.escrow import SweepResponse
from marketplace_escrow.services.release_scheduler import ReleaseScheduler

router = APIRouter(prefix="/api/v1/scheduler", tags=["Scheduler"])
logger = get_logger(__name__)


@router.post("/run", response_model=SweepResponse, summary="Run the scheduler once")
async def run_scheduler(
    actor_id: str = Depends(get_actor_id),
    scheduler: ReleaseScheduler = Depends(get_release_scheduler),
) -> SweepResponse:
    logger.info("api.scheduler_triggered", by=actor_id)
    return SweepResponse(**(await scheduler.run_all()))
