"""Main FastAPI application for the Minerva sensor monitoring service."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from admin_auth import ensure_initial_admin
from config import settings
from database import Base, SessionLocal, engine
from routers import alerts as alerts_router
from routers import auth as auth_router
from routers import critical_devices as critical_devices_router
from routers import devices as devices_router
from routers import milesight as milesight_router
from routers import telemetry as telemetry_router
from routers import user_management as user_management_router
from routers import webhooks as webhooks_router
from scheduler import job_scheduler

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    # Startup
    logger.info(f"Starting {settings.app_name}...")

    # Create database tables
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created/verified")
    except Exception as e:
        logger.error(f"Failed to create database tables: {e}")

    # Seed the first administrator
    db = SessionLocal()
    try:
        admin = ensure_initial_admin(db)
        if admin:
            logger.info(f"Initial admin user created: {admin.email}")
    except Exception as e:
        logger.error(f"Failed to create initial admin user: {e}", exc_info=True)
    finally:
        db.close()

    # Start background jobs (token refresh, critical monitor, backfill, config poll)
    if settings.scheduler_enabled:
        try:
            job_scheduler.start()
            logger.info("Job scheduler started")
        except Exception as e:
            logger.warning(f"Failed to start job scheduler: {e}. Continuing without background jobs...")

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.app_name}...")
    job_scheduler.stop()


# Create FastAPI application
app = FastAPI(
    title=f"{settings.app_name} API",
    description="""
    Temperature and humidity monitoring for Milesight sensors:
    - Milesight device management with a local device cache
    - Webhook and console telemetry ingestion
    - Critical device offline monitoring
    - Per-channel temperature alerts by email

    ## Authentication
    - JWT tokens for API access, roles admin, manager and employee
    """,
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.cors_origins.split(",") if origin.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
for module in (
    auth_router,
    user_management_router,
    milesight_router,
    webhooks_router,
    devices_router,
    critical_devices_router,
    alerts_router,
    telemetry_router,
):
    app.include_router(module.router, prefix=settings.api_v1_prefix)


@app.get("/")
def root():
    return {"name": settings.app_name, "docs": "/docs"}


@app.get("/health")
def health():
    """Liveness probe with the state of the background jobs."""
    return {
        "status": "ok",
        "scheduler": [
            {
                "name": job.name,
                "cron": job.cron,
                "last_run_at": job.last_run_at,
                "next_run_at": job.next_run_at,
            }
            for job in job_scheduler.jobs
        ],
    }
