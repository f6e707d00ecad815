from fastapi import APIRouter, Depends
from sqlalchemy import text

from orderflow.api.deps import get_container
from orderflow.container import Container

router = APIRouter()


@router.get("/health", tags=["health"])
def health(c: Container = Depends(get_container)):
    db_ok = False
    try:
        with c.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            db_ok = True
    except Exception:
        db_ok = False

    return {
        "status": "ok" if db_ok else "degraded",
        "db": db_ok,
        "jobs": {name: job.state.value for name, job in c.jobs.items()},
    }
