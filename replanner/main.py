"""
Replanner - Main Application
Delay detection + AI reschedule proposals + proposal lifecycle
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from replanner.api import reschedule
from replanner.config import settings
from replanner.db import create_db_and_tables
from replanner.services.completion_client import CompletionClient
from replanner.services.proposal_store import SqlProposalStore
from replanner.services.reschedule_service import RescheduleService
from replanner.services.schedule_store import SqlScheduleStore

logger = logging.getLogger("replanner")


def configure_logging() -> None:
    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s %(message)s")
    logger.setLevel(settings.log_level.upper())


def create_app(service: Optional[RescheduleService] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        if service is None:
            await create_db_and_tables()
            app.state.reschedule_service = RescheduleService(
                SqlScheduleStore(),
                SqlProposalStore(),
                CompletionClient(settings),
            )
        logger.info(
            "replanner_started",
            extra={"env": settings.env, "ai_available": app.state.reschedule_service.completion_client.is_available()},
        )

        yield

        # let pending activity-log writes finish
        await app.state.reschedule_service.background.drain()
        logger.info("replanner_stopped")

    app = FastAPI(
        title="Replanner",
        description="Detects delayed tasks and proposes minimal-disruption reschedules.",
        version="1.0.0",
        lifespan=lifespan,
    )
    if service is not None:
        app.state.reschedule_service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    app.include_router(reschedule.router)
    return app


app = create_app()


def run(host: str = "0.0.0.0", port: int = 8000, reload: bool = False) -> None:
    uvicorn.run("replanner.main:app", host=host, port=port, reload=reload, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run(reload=settings.env == "dev")
