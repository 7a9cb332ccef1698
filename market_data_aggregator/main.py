"""
Main FastAPI application for Market Data Aggregator Service.
Builds the aggregator at startup and manages its background tasks.
"""

import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.endpoints import AggregatorFailure
from .api.endpoints import router as api_router
from .api.schemas import ErrorResponse
from .core.clock import SystemClock
from .core.config import Settings, get_settings
from .core.logging_config import create_logger, setup_logging
from .services.data_aggregator import MarketDataAggregator
from .services.http_fetcher import HttpFetcher

logger = create_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    aggregator: Optional[MarketDataAggregator] = None,
    run_background_tasks: bool = True
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        settings: Application settings, read from the environment when omitted
        aggregator: Prebuilt aggregator; when omitted one is built at startup
        run_background_tasks: Whether to start the poll and cleanup loops
    """
    settings = settings or (aggregator.settings if aggregator else get_settings())
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Lifespan context manager for FastAPI application.
        Handles startup and shutdown of background services.
        """
        # Startup
        logger.info("Starting Market Data Aggregator Service", extra={
            "version": settings.app_version,
            "debug": settings.debug
        })

        fetcher: Optional[HttpFetcher] = None
        service = aggregator
        if service is None:
            fetcher = HttpFetcher(
                total_timeout=settings.request_timeout,
                attempt_timeout=settings.request_attempt_timeout
            )
            await fetcher.connect()
            service = MarketDataAggregator(settings, fetcher, SystemClock())

        app.state.aggregator = service
        app.state.started_at = datetime.now(timezone.utc)

        try:
            if run_background_tasks:
                await service.start_background_tasks()
            logger.info("Market Data Aggregator Service started successfully")
        except Exception as e:
            logger.error("Failed to start Market Data Aggregator Service", extra={
                "error": str(e)
            })
            raise

        yield  # Application is running

        # Shutdown
        logger.info("Shutting down Market Data Aggregator Service")
        await service.shutdown()
        if fetcher is not None:
            await fetcher.disconnect()
        logger.info("Market Data Aggregator Service shutdown completed")

    app = FastAPI(
        title=settings.app_name,
        description="Multi-provider market data aggregation service with cascading fallback",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else ["http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    # Request logging middleware
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all HTTP requests and responses."""
        start_time = time.time()

        logger.info("Request received", extra={
            "method": request.method,
            "path": request.url.path,
            "client_ip": request.client.host if request.client else None,
            "user_agent": request.headers.get("user-agent")
        })

        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.time() - start_time
            logger.error("Request failed", extra={
                "method": request.method,
                "path": request.url.path,
                "error": str(e),
                "process_time": round(process_time, 4)
            })
            return JSONResponse(
                status_code=500,
                content=ErrorResponse(
                    error="Internal server error",
                    error_code="INTERNAL_ERROR"
                ).model_dump(mode="json")
            )

        process_time = time.time() - start_time
        logger.info("Request completed", extra={
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "process_time": round(process_time, 4)
        })

        # Add process time header
        response.headers["X-Process-Time"] = str(process_time)
        return response

    # Exception handlers
    @app.exception_handler(AggregatorFailure)
    async def aggregator_failure_handler(request: Request, exc: AggregatorFailure):
        """Render a public failure as a structured error response."""
        failure = exc.failure
        logger.info("Request answered with failure", extra={
            "path": request.url.path,
            "failure": failure.kind.value,
            "symbol": failure.symbol
        })
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=failure.reason,
                error_code=failure.kind.value.upper(),
                details={
                    "symbol": failure.symbol,
                    "providers_attempted": [provider.value for provider in failure.providers_attempted]
                }
            ).model_dump(mode="json")
        )

    @app.exception_handler(404)
    async def not_found_handler(request: Request, exc):
        """Handle 404 errors with structured response."""
        return JSONResponse(
            status_code=404,
            content=ErrorResponse(
                error="Endpoint not found",
                error_code="NOT_FOUND",
                details={
                    "path": request.url.path,
                    "method": request.method
                }
            ).model_dump(mode="json")
        )

    # Include API routes
    app.include_router(api_router, tags=["Market Data API"])

    # Root endpoint
    @app.get("/", include_in_schema=False)
    async def root():
        """Root endpoint with service information."""
        return {
            "service": settings.app_name,
            "version": settings.app_version,
            "status": "running",
            "docs_url": "/docs" if settings.debug else "disabled",
            "timestamp": datetime.now(timezone.utc)
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    # Run the application
    uvicorn.run(
        "market_data_aggregator.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
        access_log=True
    )
