from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException

from abm_insights.config import settings
from abm_insights.core.database import check_database_health, vector_store_status

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("")
def health_check():
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
    }


@router.get("/ready")
def readiness_check():
    """Readiness: the run store answers and the insight store can hold embeddings."""
    if not check_database_health():
        raise HTTPException(status_code=503, detail="Database is not available")

    vector_store = vector_store_status()
    if vector_store == "unavailable":
        raise HTTPException(status_code=503, detail="Vector store is not available")
    if vector_store == "unranked":
        logger.warning("abm.health.similarity_unavailable", extra={"mode": settings.abm_mode})

    return {
        "status": "ready",
        "version": settings.app_version,
        "environment": settings.environment,
        "mode": settings.abm_mode,
        "database": "connected" if settings.database_url else "not configured",
        "vector_store": vector_store,
    }
