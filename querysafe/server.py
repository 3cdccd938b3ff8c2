from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator

from fastapi import FastAPI, HTTPException, Response
from fastapi.exceptions import RequestValidationError
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from querysafe.api.v1 import api_router
from querysafe.config import Environment, settings
from querysafe.dependencies.pipeline import build_container, close_container
from querysafe.exceptions import QuerySafeBaseError
from querysafe.exceptions.handlers import (
    generic_exception_handler,
    http_exception_handler,
    querysafe_exception_handler,
    validation_exception_handler,
)
from querysafe.llm_config import llm_config
from querysafe.logging import configure_logging, get_logger
from querysafe.middlewares import (
    GlobalRateLimitMiddleware,
    LoggingMiddleware,
    MetricsMiddleware,
    SecurityHeadersMiddleware,
    configure_cors,
)
from querysafe.observability import (
    init_observability,
    instrument_app,
    shutdown_observability,
)

# Configure logging before anything else
configure_logging()
logger = get_logger(__name__)


def global_rate_limit_enabled() -> bool:
    return settings.RATE_LIMIT_GLOBAL_MIDDLEWARE or settings.ENVIRONMENT == Environment.PRODUCTION


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    logger.info("Starting QuerySafe Service", version=settings.APP_VERSION)

    try:
        init_observability()
        instrument_app(fastapi_app)

        # Generation is disabled without an LLM; execution still works
        try:
            llm_config.configure_llm()
        except Exception as e:
            logger.error("Failed to configure LLM", error=str(e))
            logger.warning("Application starting without SQL generation")

        services = build_container()
        fastapi_app.state.services = services
        if global_rate_limit_enabled():
            fastapi_app.state.rate_limiter = services.rate_limiter
        services.lifecycle.start_sweeper()

        logger.info("Application startup completed")
        yield

    except Exception as e:
        logger.error("Failed to start application", error=str(e), exc_info=True)
        raise

    finally:
        logger.info("Shutting down QuerySafe Service")

        try:
            shutdown_observability()
        except Exception as e:
            logger.error("Error shutting down observability", error=str(e))

        services = getattr(fastapi_app.state, "services", None)
        if services is not None:
            try:
                await close_container(services)
            except Exception as e:
                logger.error("Error closing services", error=str(e))


def create_app() -> FastAPI:
    """Create FastAPI application with all configurations."""
    fastapi_app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Validated, rate-limited SQL execution and generation against user databases",
        lifespan=lifespan,
        debug=settings.DEBUG,
    )
    fastapi_app.state.rate_limiter = None

    # Add CORS middleware (first for preflight handling)
    configure_cors(fastapi_app)

    fastapi_app.add_middleware(SecurityHeadersMiddleware)

    # Global per-IP tier; passes through when no limiter is installed
    fastapi_app.add_middleware(GlobalRateLimitMiddleware)

    fastapi_app.add_middleware(MetricsMiddleware)

    # Add logging middleware (last for complete request/response logging)
    fastapi_app.add_middleware(LoggingMiddleware)

    fastapi_app.add_exception_handler(QuerySafeBaseError, querysafe_exception_handler)  # type: ignore
    fastapi_app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore
    fastapi_app.add_exception_handler(HTTPException, http_exception_handler)  # type: ignore
    fastapi_app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore
    fastapi_app.add_exception_handler(Exception, generic_exception_handler)  # type: ignore

    @fastapi_app.get("/health", tags=["Health"])
    async def health_check():
        """Health check endpoint."""
        services = getattr(fastapi_app.state, "services", None)
        return {
            "status": "healthy",
            "service": settings.OTEL_SERVICE_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "llmConfigured": llm_config.is_configured,
            "cachedAdapters": len(services.lifecycle) if services is not None else 0,
        }

    @fastapi_app.get("/metrics", tags=["Monitoring"])
    async def metrics_endpoint():
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    fastapi_app.include_router(api_router, prefix="/api")

    logger.info("FastAPI application created")
    return fastapi_app


app = create_app()
