"""
Extraction Trigger API - FastAPI Application

Endpoints:
- POST /api/extraction/trigger - Run (or resume) an extraction now
- GET /api/extraction/status - Whether a run is active, plus the checkpoint
- POST /api/extraction/reset - Discard the checkpoint (409 while a run is active)
- GET /health - Health check

Every coordinator of the same checkpoint takes one file lock, so a manual
trigger and a scheduled run (in this or another process) never execute at
the same time: the second caller gets 409.
"""

import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from apps.extractor.scheduler import ExtractionScheduler
from utils.config import settings
from utils.errors import ExtractionBusyError, ExtractionFailedError, PipelineError
from utils.schemas import TriggerResponse

logger = logging.getLogger(__name__)


def _respond(status_code: int, body: TriggerResponse) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json", exclude_none=True))


def create_app(scheduler: Optional[ExtractionScheduler] = None) -> FastAPI:
    """Build the API around ``scheduler`` (one built from settings if omitted)."""
    app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION)
    app.state.scheduler = scheduler or ExtractionScheduler()

    @app.post("/api/extraction/trigger", response_model=TriggerResponse)
    async def trigger_extraction() -> JSONResponse:
        logger.info("Manual extraction trigger received")

        try:
            result = await app.state.scheduler.execute_extraction()
        except ExtractionFailedError as e:
            return _respond(500, TriggerResponse(
                status="error",
                message=f"Extraction failed at offset {e.offset}: {e.cause}",
            ))
        except (PipelineError, OSError) as e:
            return _respond(500, TriggerResponse(status="error", message=f"Extraction failed: {e}"))

        if result is None:
            return _respond(409, TriggerResponse(
                status="busy",
                message="Extraction already in progress, try again later",
            ))

        return _respond(200, TriggerResponse(
            status="success",
            message=(
                f"Extraction completed: {result.state.records_processed} records "
                f"written to {result.batch_path}"
            ),
            state=result.state.to_json_dict(),
        ))

    @app.get("/api/extraction/status", response_model=TriggerResponse)
    async def extraction_status() -> JSONResponse:
        status = app.state.scheduler.coordinator.status()

        if status["running"]:
            body = TriggerResponse(status="busy", message="Extraction is currently running", state=status["state"])
        else:
            body = TriggerResponse(status="available", message="Extraction service is ready", state=status["state"])
        return _respond(200, body)

    @app.post("/api/extraction/reset", response_model=TriggerResponse)
    async def reset_extraction() -> JSONResponse:
        logger.info("Extraction reset requested")

        try:
            app.state.scheduler.coordinator.reset()
        except ExtractionBusyError:
            return _respond(409, TriggerResponse(
                status="busy",
                message="Cannot reset while an extraction is running",
            ))

        return _respond(200, TriggerResponse(
            status="success",
            message="Extraction checkpoint discarded; the next run starts a new batch",
        ))

    @app.get("/health")
    async def health() -> dict:
        return {
            "status": "ok",
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
        }

    return app
