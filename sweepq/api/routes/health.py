"""Health check endpoints for the sweepq API.

- /health - Service health and version
- /health/db - Database connection pool health
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter

from sweepq.config import APP_VERSION
from sweepq.infrastructure.database import get_pool_stats

router = APIRouter(tags=["health"])


@router.get("/health")
def health_check() -> dict[str, Any]:
    return {
        "status": "healthy",
        "service": "sweepq",
        "version": APP_VERSION,
        "timestamp": datetime.now(UTC).isoformat(),
    }


@router.get("/health/db")
def database_health() -> dict[str, Any]:
    """Connection pool health. Reports degraded above 80% pool usage."""
    stats = get_pool_stats()
    return {
        "status": "degraded" if stats["usage_percent"] > 80 else "healthy",
        "pool": stats,
    }
