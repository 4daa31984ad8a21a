import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Any

import uvicorn
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .. import __version__
from ..bias_mitigation.detection_system import BiasDetectionCoordinator
from ..config.logging_config import configure_logging
from ..config.settings import settings, AnonymizationLevel
from ..utils.helpers import utc_timestamp

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    'ConsentError': status.HTTP_403_FORBIDDEN,
    'ModelNotFoundError': status.HTTP_404_NOT_FOUND,
    'InsufficientDataError': status.HTTP_400_BAD_REQUEST,
    'InvalidImportError': status.HTTP_400_BAD_REQUEST,
    'ValueError': status.HTTP_400_BAD_REQUEST,
    'TypeError': status.HTTP_400_BAD_REQUEST,
}


# Pydantic models for request/response
class ProcessingOptionsRequest(BaseModel):
    anonymize: bool = True
    removeIdentifiers: bool = True
    preserveContext: bool = True


class AnalyzeRequest(BaseModel):
    text: str
    contentType: str = "text/plain"
    predictions: Optional[List[float]] = None
    attributes: Optional[Dict[str, List[Any]]] = None
    options: Optional[ProcessingOptionsRequest] = None


class RecommendationsRequest(BaseModel):
    analysisResult: Dict[str, Any]


class SettingsUpdateRequest(BaseModel):
    dataRetentionDays: Optional[int] = Field(default=None, ge=1)
    anonymizationLevel: Optional[AnonymizationLevel] = None
    consentStatus: Optional[bool] = None
    disparateImpactThreshold: Optional[float] = Field(default=None, gt=0, le=1)
    confidenceThreshold: Optional[float] = Field(default=None, gt=0, lt=1)


def raise_for_failure(result: Dict[str, Any]) -> Dict[str, Any]:
    """Map a coordinator failure report onto an HTTP error."""
    if result.get('success', True):
        return result
    raise HTTPException(
        status_code=ERROR_STATUS_CODES.get(result.get('errorType'), status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail=result.get('error', 'Request failed')
    )


def get_coordinator(request: Request) -> BiasDetectionCoordinator:
    return request.app.state.coordinator


def create_app(coordinator: Optional[BiasDetectionCoordinator] = None) -> FastAPI:
    """
    Build the REST application around a coordinator.

    Args:
        coordinator: Coordinator to serve; built from settings at startup when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan management."""
        configure_logging()
        logger.info("Starting fairscan API...")

        app.state.coordinator = coordinator or BiasDetectionCoordinator.from_settings()
        await app.state.coordinator.initialize()

        yield

        logger.info("Shutting down fairscan API...")

    app = FastAPI(
        title="fairscan API",
        description="Bias detection and mitigation for content and model predictions",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        current = get_coordinator(request)
        return {
            "status": "healthy",
            "timestamp": utc_timestamp(),
            "version": __version__,
            "components": {
                "modelInitialized": current.initialized,
                "modelId": current.model_id,
                "consentRecorded": current.preprocessor.has_consent
            }
        }

    @app.post("/analyze")
    async def analyze_content(payload: AnalyzeRequest, request: Request):
        """Analyze content, optionally with a prediction batch."""
        content = payload.model_dump(exclude={'options'}, exclude_none=True)
        options = payload.options.model_dump() if payload.options else None
        result = await get_coordinator(request).analyze_content(content, options)
        return raise_for_failure(result)

    @app.post("/recommendations")
    async def get_recommendations(payload: RecommendationsRequest, request: Request):
        """Flatten an analysis report into recommendation strings."""
        return {"recommendations": get_coordinator(request).get_recommendations(payload.analysisResult)}

    @app.get("/settings")
    async def get_settings(request: Request):
        return {"success": True, "settings": get_coordinator(request).get_settings()}

    @app.put("/settings")
    async def update_settings(payload: SettingsUpdateRequest, request: Request):
        """Update privacy settings and sensitivity thresholds."""
        updates = payload.model_dump(exclude_none=True, mode='json')
        result = await get_coordinator(request).update_settings(updates)
        return raise_for_failure(result)

    @app.get("/models/{model_id}/history")
    async def get_model_history(model_id: str, request: Request):
        """Version and performance history of a model."""
        return raise_for_failure(get_coordinator(request).get_model_history(model_id))

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request, exc):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "detail": exc.detail, "timestamp": utc_timestamp()}
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request, exc):
        logger.error(f"Unexpected error: {exc}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "detail": "Internal server error", "timestamp": utc_timestamp()}
        )

    return app


app = create_app()


def main():
    """Run the FastAPI application."""
    uvicorn.run(
        "fairscan.api.api:app",
        host=settings.server_host,
        port=settings.server_port,
        log_level=settings.log_level.value.lower()
    )


if __name__ == "__main__":
    main()
