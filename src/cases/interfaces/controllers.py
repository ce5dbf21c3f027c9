"""
Case Engine Controllers (API Routes)
====================================

FastAPI routes for inspecting and driving the sweep jobs.

Controllers are thin - they delegate to the engine's scheduler.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Request

from cases.application import JobStatusResponse, SweepReportResponse
from cases.container import CaseEngine
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/jobs", tags=["Jobs"])


# ========== Example payloads for Swagger ==========

SWEEP_REPORT_EXAMPLE = {
    "sweep": "sla_breach",
    "started_at": "2024-01-15T10:00:00+00:00",
    "finished_at": "2024-01-15T10:00:00.120000+00:00",
    "duration_ms": 120,
    "selected": 3,
    "processed": 3,
    "skipped": 0,
    "failed": 0,
    "timed_out": False,
    "error": None,
    "details": {}
}

JOB_STATUS_EXAMPLE = {
    "name": "sla_breach",
    "description": "Mark overdue cases",
    "trigger": "interval[0:05:00]",
    "paused": False,
    "next_run_time": "2024-01-15T10:05:00+00:00",
    "runs": 12,
    "last_error": None,
    "last_report": SWEEP_REPORT_EXAMPLE
}


# ========== Dependencies ==========

def get_engine(request: Request) -> CaseEngine:
    """Engine built by the application lifespan."""
    return request.app.state.engine


# ========== Route Handlers ==========

@router.get(
    "",
    response_model=List[JobStatusResponse],
    summary="List sweep jobs",
    responses={
        200: {
            "description": "Status of every registered job",
            "content": {"application/json": {"example": [JOB_STATUS_EXAMPLE]}}
        }
    }
)
async def list_jobs(engine: CaseEngine = Depends(get_engine)) -> List[JobStatusResponse]:
    return [JobStatusResponse(**job) for job in engine.scheduler.jobs_status()]


@router.post(
    "/{name}/run",
    response_model=Optional[SweepReportResponse],
    summary="Run a job now",
    description="""
    Run a sweep immediately, outside its schedule.

    Waits for an in-flight run of the same job first. Returns the sweep
    report, or `null` if the run failed outright.

    **Jobs**: `sla_breach`, `escalation`, `workload_reconciliation`, `daily_digest`, `liveness`
    """,
    responses={
        200: {
            "description": "Sweep report",
            "content": {"application/json": {"example": SWEEP_REPORT_EXAMPLE}}
        },
        404: {"description": "Unknown job"}
    }
)
async def run_job(name: str, engine: CaseEngine = Depends(get_engine)) -> Optional[SweepReportResponse]:
    report = await engine.scheduler.run_job_now(name)
    if report is None:
        return None
    return SweepReportResponse(**report.to_dict())


@router.post("/{name}/pause", summary="Pause a job", responses={404: {"description": "Unknown job"}})
async def pause_job(name: str, engine: CaseEngine = Depends(get_engine)) -> dict:
    """Stop scheduling a job until resumed. Manual runs still work."""
    engine.scheduler.pause_job(name)
    return {"job": name, "paused": True}


@router.post("/{name}/resume", summary="Resume a job", responses={404: {"description": "Unknown job"}})
async def resume_job(name: str, engine: CaseEngine = Depends(get_engine)) -> dict:
    engine.scheduler.resume_job(name)
    return {"job": name, "paused": False}
