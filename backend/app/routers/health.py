from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session, text

from app.db import get_session
from app.models.job import BackgroundJobRead

router = APIRouter(prefix="/api", tags=["health"])

logger = logging.getLogger(__name__)


@router.get("/health")
async def health(request: Request, session: Session = Depends(get_session)):
    db_status = "ok"
    try:
        session.exec(text("SELECT 1"))
    except Exception as exc:
        db_status = f"error: {exc}"

    # Queue depth per state, straight from the job table
    queues_status: dict | str = "unavailable"
    dead_letters: list[dict] = []
    queue = getattr(request.app.state, "queue", None)
    if queue is not None:
        try:
            queues_status = queue.stats()
            dead_letters = [
                BackgroundJobRead.model_validate(row).model_dump(mode="json")
                for row in queue.list_dead_letter(limit=10)
            ]
        except Exception:
            logger.exception("Could not read queue stats")
            queues_status = "error"

    workers_status = [
        pool.stats() for pool in getattr(request.app.state, "worker_pools", [])
    ]

    is_healthy = db_status == "ok" and queues_status != "error"

    return {
        "status": "healthy" if is_healthy else "unhealthy",
        "service": "jobtracker-backend",
        "version": "0.1.0",
        "checks": {
            "database": db_status,
            "queues": queues_status,
            "workers": workers_status,
            "dead_letters": dead_letters,
        },
    }


@router.get("/health/ready")
async def readiness(session: Session = Depends(get_session)):
    try:
        session.exec(text("SELECT 1"))
    except Exception as exc:
        return JSONResponse(
            status_code=503,
            content={
                "status": "not ready",
                "service": "jobtracker-backend",
                "error": str(exc),
            },
        )

    return {
        "status": "ready",
        "service": "jobtracker-backend",
    }
