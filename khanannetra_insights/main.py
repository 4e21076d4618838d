"""
FastAPI application for the KhananNetra insights service.
"""

import logging
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from .config import Settings, load_settings
from .models.schemas import ErrorResponse
from .routers import insights
from .services.status_poller import AnalysisPollingError

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="KhananNetra Insights API",
        description="Normalization and derived metrics for mining analysis results",
        version="1.0.0",
    )

    @app.exception_handler(AnalysisPollingError)
    async def polling_error_handler(request: Request, exc: AnalysisPollingError):
        logger.error(f"❌ Analysis backend error on {request.url.path}: {exc}")
        body = ErrorResponse(
            error="analysis_backend_error",
            message=str(exc),
            details={"status_code": exc.status_code} if exc.status_code else None,
        )
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content=body.model_dump(mode="json"),
        )

    @app.get("/health")
    async def health():
        return {"status": "ok", "analysis_api": settings.api_base_url}

    app.include_router(insights.router, prefix="/api/v1/insights", tags=["insights"])

    logger.info("✅ Insights API ready")
    return app


app = create_app()
