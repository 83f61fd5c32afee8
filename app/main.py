"""
Certificate Issuance Service - Main Application
FastAPI Entry Point with APScheduler for status polling and maintenance
"""

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import structlog

from app.config import settings
from app.database import init_db
from app.exceptions import CertificateServiceError, ValidationError
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.routers import certificates_router, registry_router
from app.scheduler import start_scheduler, stop_scheduler
from app.services.monitoring.error_tracking import init_sentry
from app.services.monitoring.logging import setup_logging

# Structured Logging Setup
setup_logging()
init_sentry()
logger = structlog.get_logger()

# FastAPI App
app = FastAPI(
    title="Certificate Issuance Service",
    description="Issues digital insurance certificates from registry policy data through the attestation authority",
    version="1.0.0",
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url="/redoc" if settings.environment == "development" else None,
)

app.add_middleware(CorrelationIdMiddleware)

# APScheduler instance (set on startup)
scheduler = None

# Register routers
app.include_router(certificates_router)
app.include_router(registry_router)


@app.exception_handler(CertificateServiceError)
async def certificate_error_handler(request: Request, exc: CertificateServiceError):
    """Every service error becomes {"error": {code, message, retryable, details}}"""
    log = logger.error if exc.http_status >= 500 else logger.info
    log(
        "request_failed",
        path=request.url.path,
        code=exc.code,
        http_status=exc.http_status,
        retryable=exc.retryable,
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    # 422 is reserved for idempotency key reuse
    error = ValidationError(details={"errors": jsonable_encoder(exc.errors())})
    return JSONResponse(status_code=error.http_status, content=error.to_dict())


@app.on_event("startup")
async def startup_event():
    """Application Startup"""
    global scheduler
    logger.info("startup", environment=settings.environment)

    # Initialize database connection
    init_db()
    logger.info("database_initialized")

    # Start background jobs (skipped in testing)
    scheduler = start_scheduler(settings.environment)


@app.on_event("shutdown")
async def shutdown_event():
    """Application Shutdown"""
    logger.info("shutdown")
    stop_scheduler(scheduler)


@app.get("/")
async def root():
    """Root Endpoint"""
    return {
        "message": "Certificate Issuance API",
        "version": "1.0.0",
        "status": "running"
    }


@app.get("/health")
def health_check():
    """
    Health Check Endpoint
    Reports scheduler, database and circuit breaker state
    """
    from app.database import SessionLocal
    from app.services.maintenance import MaintenanceService
    from app.services.monitoring.circuit_breakers import get_issuer_breaker, get_registry_breaker

    health_status = {
        "status": "healthy",
        "environment": settings.environment,
        "services": {
            "api": "running",
            "scheduler": "running" if scheduler is not None and scheduler.running else "stopped",
            "registry_circuit": get_registry_breaker().current_state,
            "issuer_circuit": get_issuer_breaker().current_state,
        }
    }

    if SessionLocal is not None:
        try:
            health_status["certificates"] = MaintenanceService(SessionLocal).summary()
            health_status["services"]["database"] = "connected"
        except Exception as e:
            logger.warning("health_database_check_failed", error=str(e))
            health_status["services"]["database"] = "unavailable"
            health_status["status"] = "degraded"
    else:
        health_status["services"]["database"] = "not_configured"

    return JSONResponse(
        content=health_status,
        status_code=200
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development"
    )
