"""
Orders Microservice
Order lifecycle, payment reconciliation, coupons and shipment tracking
"""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import subprocess
import os
import sys

# Add shared modules to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../../"))

from shared.core import ServiceHealth, HealthStatus, setup_logging, RequestLoggingMiddleware, get_logger
from app.api.routes import router as orders_router
from app.api.payments import router as payments_router
from app.api.shipping import router as shipping_router
from app.api.coupons import router as coupons_router
from app.api.deps import get_carrier, get_gateway
from app.domain.errors import OrderError
from app.infrastructure.db import engine, init_models

# Service configuration
SERVICE_NAME = "orders-service"
SERVICE_VERSION = os.getenv("SERVICE_VERSION", "1.0.0")
SERVICE_DESCRIPTION = "Order lifecycle and payment reconciliation microservice"

# Setup structured logging
setup_logging(
    service_name=SERVICE_NAME,
    level=os.getenv("LOG_LEVEL", "INFO")
)

logger = get_logger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle management"""
    logger.info(f"Starting {SERVICE_NAME} version {SERVICE_VERSION}")

    # Startup
    try:
        # Run database migrations
        logger.info("Running database migrations")
        result = subprocess.run(
            ["alembic", "upgrade", "head"],
            cwd=os.path.join(os.path.dirname(__file__), ".."),
            capture_output=True,
            text=True,
            check=False
        )
        if result.returncode != 0:
            logger.warning(f"Migration output: {result.stderr}")
        else:
            logger.info("Database migrations completed")
    except Exception as e:
        logger.error(f"Migration error: {e}")

    # Initialize database models
    try:
        init_models()
        logger.info("Database models initialized")
    except Exception as e:
        logger.error(f"Failed to initialize database models: {e}")
        raise

    logger.info(f"{SERVICE_NAME} started successfully")

    yield

    # Shutdown
    logger.info(f"Shutting down {SERVICE_NAME}")

# Create FastAPI application
app = FastAPI(
    title=SERVICE_NAME,
    description=SERVICE_DESCRIPTION,
    version=SERVICE_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)

@app.exception_handler(OrderError)
async def order_error_handler(request: Request, exc: OrderError):
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        f"{request.method} {request.url.path} failed: {exc.code}",
        extra={'extra_fields': {'code': exc.code, 'status_code': exc.status_code}},
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": {"details": {}, **exc.to_dict()}},
    )

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "error": {
                "code": "validation_error",
                "message": "Request body is invalid",
                "details": {"fields": [
                    {"field": ".".join(str(p) for p in err["loc"][1:]), "message": err["msg"]}
                    for err in exc.errors()
                ]},
            },
        },
    )

def _credential_cache_check():
    cached = get_gateway().status()
    return {"status": HealthStatus.PASS.value, "componentType": "cache", **cached}

def _carrier_config_check():
    carrier_status = get_carrier().status()
    return {
        "status": HealthStatus.PASS.value if carrier_status.get("configured") else HealthStatus.WARN.value,
        "componentType": "component",
        **carrier_status,
    }

# Initialize health checks
health_service = ServiceHealth(SERVICE_NAME, SERVICE_VERSION)
health_service.register_database(engine)
health_service.register_check("gateway:credentials", _credential_cache_check)
health_service.register_check("carrier:configuration", _carrier_config_check)
health_router = health_service.create_health_router()
app.include_router(health_router)

# Include business logic routes
app.include_router(orders_router)
app.include_router(payments_router)
app.include_router(shipping_router)
app.include_router(coupons_router)

@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "status": "running",
        "docs": "/api/docs"
    }

@app.get("/info")
async def info():
    """Service information endpoint"""
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "description": SERVICE_DESCRIPTION,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "endpoints": {
            "health": "/health",
            "ready": "/health/ready",
            "live": "/health/live",
            "metrics": "/metrics",
            "docs": "/api/docs"
        }
    }
