"""FastAPI server for sweepq user settings"""

from __future__ import annotations

import os

from fastapi import FastAPI

from sweepq.api.routes.health import router as health_router
from sweepq.api.routes.settings import router as settings_router
from sweepq.api.routes.settings import set_meter, set_resolver, set_user_repositories
from sweepq.classification.resolver import RuleResolver
from sweepq.config import APP_VERSION
from sweepq.infrastructure.database import init_database, validate_schema
from sweepq.infrastructure.token_meter import TokenUsageMeter
from sweepq.observability.logging import get_logger
from sweepq.observability.telemetry import log_event
from sweepq.storage.user_repository import UserRepository, UserSettingsRepository

logger = get_logger(__name__)


def create_app(
    resolver: RuleResolver | None = None,
    meter: TokenUsageMeter | None = None,
) -> FastAPI:
    """
    Build the API application

    Pass the engine's resolver to share its policy cache; writes through the
    API then invalidate the cache the engine reads.

    Side Effects:
        - Creates the database schema if missing (idempotent)
        - Injects route dependencies
    """
    init_database()
    validate_schema()

    app = FastAPI(title="sweepq API", version=APP_VERSION)

    set_resolver(resolver or RuleResolver())
    set_meter(meter or TokenUsageMeter())
    set_user_repositories(UserRepository(), UserSettingsRepository())

    app.include_router(health_router)
    app.include_router(settings_router)

    log_event("api.startup", service="sweepq", version=APP_VERSION)
    return app


def main() -> None:
    import uvicorn

    host = os.getenv("SWEEPQ_API_HOST", "127.0.0.1")
    port = int(os.getenv("SWEEPQ_API_PORT", "8000"))
    logger.info("Starting sweepq API on %s:%d", host, port)
    uvicorn.run(create_app(), host=host, port=port)


if __name__ == "__main__":
    main()
