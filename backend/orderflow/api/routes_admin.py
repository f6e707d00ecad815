from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from orderflow.api.deps import get_container
from orderflow.container import Container

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.get("/jobs", summary="Enforcement job status")
def list_jobs(c: Container = Depends(get_container)):
    return [job.status() for job in c.jobs.values()]


@router.post("/jobs/{name}/run", summary="Run one scan of a job now")
def run_job(name: str, c: Container = Depends(get_container)):
    job = c.get_job(name)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Unknown job {name}")
    return job.run_once().to_dict()


@router.get("/recovery-stats", summary="Abandoned cart recovery funnel")
def recovery_stats(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    c: Container = Depends(get_container),
):
    return c.recovery.get_recovery_stats(start, end)
