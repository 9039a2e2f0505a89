"""
FastAPI main application.

Entry point for the Dynamic Position Manager service.
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from app.config import settings, get_settings
from app.config.database import connect_to_mongodb, close_mongodb_connection
from app.core.responses import error_json_response
from app.modules.dynamic_positions.services import build_services
from app.shared.exceptions import AppException
from app.utils.logger import get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Connects to MongoDB and constructs every dynamic position service once;
    routes reach them through app.state.
    """
    # Startup
    logger.info("Starting application...")
    current_settings = get_settings()

    try:
        db = await connect_to_mongodb()

        services = build_services(db, current_settings)
        await services.store.ensure_indexes()
        await services.store.get_monitoring_state()

        app.state.services = services
        app.state.orchestrator = services.orchestrator
        app.state.planner = services.planner
        app.state.order_cleaner = services.order_cleaner

        if current_settings.AUTO_START_MONITORING:
            await services.orchestrator.start()

        logger.info("Application started successfully")
    except Exception as e:
        logger.error(f"Failed to start application: {str(e)}")
        raise

    yield

    # Shutdown
    logger.info("Shutting down application...")

    try:
        await app.state.services.shutdown()
        await close_mongodb_connection()

        logger.info("Application shut down successfully")
    except Exception as e:
        logger.error(f"Error during shutdown: {str(e)}")


# API Description
API_DESCRIPTION = """
Manages leveraged futures positions opened from trade recommendations:
multi-tier take-profit execution with rollback, fill detection, and
dynamic stop-loss relocation (break-even, then trailing).

All responses use the envelope `{status_code, message, data, error}`.
"""

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME if settings else "Dynamic Position Manager",
    version=settings.APP_VERSION if settings else "1.0.0",
    description=API_DESCRIPTION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS if settings else ["http://localhost:3000", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    """Map uncaught application errors onto the response envelope."""
    logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    return error_json_response(
        status_code=exc.status_code,
        message="Request failed",
        error_code=exc.code,
        error_message=exc.message
    )


# Include routers
from app.modules.dynamic_positions.router import router as dynamic_positions_router

app.include_router(dynamic_positions_router, prefix="/api/v1")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "app": settings.APP_NAME if settings else "Dynamic Position Manager",
        "version": settings.APP_VERSION if settings else "1.0.0",
        "status": "running"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "app": settings.APP_NAME if settings else "Dynamic Position Manager",
        "version": settings.APP_VERSION if settings else "1.0.0"
    }
