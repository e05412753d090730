"""
Referral Stream API
Main FastAPI application for streaming referral generation
"""
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

from referral_api.routers import action_plan, chat, referrals, support
from referral_api.services.config import Settings
from referral_api.services.errors import CompletionError
from referral_api.services.llm import LLMService
from referral_api.utils.logging import setup_logging

# Load settings
settings = Settings()

# Configure structured logging
setup_logging(settings.LOG_LEVEL, json_logs=settings.ENVIRONMENT != "development")
logger = structlog.get_logger()

# Metrics
request_counter = Counter(
    'referral_requests_total',
    'Total number of requests',
    ['method', 'endpoint', 'status']
)
request_duration = Histogram(
    'referral_request_duration_seconds',
    'Request duration',
    ['method', 'endpoint']
)
active_connections = Gauge(
    'referral_active_connections',
    'Number of active connections'
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    # Startup
    logger.info("Starting Referral Stream API",
                version=settings.API_VERSION,
                environment=settings.ENVIRONMENT)

    llm_service = LLMService(settings)

    # Setup OpenTelemetry if enabled
    if settings.OTEL_ENABLED:
        provider = TracerProvider(resource=Resource.create({"service.name": settings.OTEL_SERVICE_NAME}))
        otlp_exporter = OTLPSpanExporter(
            endpoint=settings.OTEL_ENDPOINT,
            insecure=True
        )
        provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
        trace.set_tracer_provider(provider)

        # Instrument FastAPI
        FastAPIInstrumentor.instrument_app(app)

    # Set services in app state
    app.state.settings = settings
    app.state.llm_service = llm_service

    if not settings.OPENAI_API_KEY:
        logger.warning("OPENAI_API_KEY is not set; completion calls will be rejected upstream")

    logger.info("API initialization complete")

    yield

    # Shutdown
    logger.info("Shutting down Referral Stream API")
    await llm_service.close()
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Referral Stream API",
    description="Streaming referral resources and action plans for case managers",
    version=settings.API_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.ENVIRONMENT == "development" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT == "development" else None,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Stream-Format"],
)


# Middleware for request tracking
@app.middleware("http")
async def track_requests(request: Request, call_next):
    """Track request metrics and add request ID"""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

    active_connections.inc()
    start_time = time.time()

    # Add request ID to logger context
    structlog.contextvars.bind_contextvars(request_id=request_id)

    try:
        response = await call_next(request)

        # For streams this measures time to headers, not the whole body
        duration = time.time() - start_time
        request_counter.labels(
            method=request.method,
            endpoint=request.url.path,
            status=response.status_code
        ).inc()
        request_duration.labels(
            method=request.method,
            endpoint=request.url.path
        ).observe(duration)

        response.headers["X-Request-ID"] = request_id

        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration=duration
        )

        return response

    except Exception as e:
        logger.error(
            "Request failed",
            method=request.method,
            path=request.url.path,
            error=str(e)
        )
        request_counter.labels(
            method=request.method,
            endpoint=request.url.path,
            status=500
        ).inc()
        raise

    finally:
        active_connections.dec()
        structlog.contextvars.unbind_contextvars("request_id")


# Include routers
app.include_router(referrals.router, prefix="/api/v1")
app.include_router(action_plan.router, prefix="/api/v1")
app.include_router(chat.router, prefix="/api/v1")
app.include_router(support.router, prefix="/api/v1")


# Health check endpoints
@app.get("/health")
async def health_check():
    """Basic health check"""
    return {"status": "healthy", "version": settings.API_VERSION}


@app.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness probe - checks if the completion service is configured"""
    checks = {
        "api": "healthy",
        "completion_service": "healthy" if request.app.state.settings.OPENAI_API_KEY else "unconfigured",
    }

    if all(v == "healthy" for v in checks.values()):
        return {"status": "ready", "checks": checks}
    return JSONResponse(
        status_code=503,
        content={"status": "not ready", "checks": checks}
    )


@app.get("/health/live")
async def liveness_check():
    """Liveness probe - checks if the application is running"""
    return {"status": "alive"}


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "name": "Referral Stream API",
        "version": settings.API_VERSION,
        "environment": settings.ENVIRONMENT,
        "docs": "/docs" if settings.ENVIRONMENT == "development" else None,
        "health": "/health",
        "metrics": "/metrics"
    }


# Error handlers
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions"""
    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        path=request.url.path
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail, "status_code": exc.status_code}
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies are client errors"""
    errors = exc.errors()
    message = "Invalid request body"
    if errors:
        location = ".".join(str(part) for part in errors[0].get("loc", ()) if part != "body")
        message = f"Invalid request body: {location} {errors[0].get('msg', '')}".strip()
    logger.warning("Request validation failed", path=request.url.path, error=message)
    return JSONResponse(
        status_code=400,
        content={"error": message, "status_code": 400}
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    """Handle validation errors"""
    logger.error("Validation error", error=str(exc), path=request.url.path)
    return JSONResponse(
        status_code=400,
        content={"error": str(exc), "message": str(exc), "status_code": 400}
    )


@app.exception_handler(CompletionError)
async def completion_error_handler(request: Request, exc: CompletionError):
    """Upstream generation failures before any body was sent"""
    logger.error(
        "Completion error",
        error=str(exc),
        upstream_status=exc.status_code,
        path=request.url.path
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "Sorry, we couldn't generate a response right now. Please try again.",
            "status_code": 500
        }
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions"""
    logger.error(
        "Unhandled exception",
        error=str(exc),
        path=request.url.path,
        exc_info=True
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "status_code": 500,
            "request_id": request.headers.get("X-Request-ID")
        }
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "referral_api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.ENVIRONMENT == "development",
        log_config=None,  # Use structlog instead
        access_log=False,  # Handled by middleware
    )
