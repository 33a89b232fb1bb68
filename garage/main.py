"""
Main FastAPI application for the garage appointment scheduler.
Booking, the 24-hour modification rule, reminders and loyalty points.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from garage.bootstrap import Services, build_services, close_services, create_database
from garage.config import Settings, settings
from garage.exceptions import register_exception_handlers
from garage.routes import appointments, health, loyalty, reminders
from garage.services.redis_client import create_redis

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def create_app(app_settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """Build the application.

    With ``services`` given (tests), the lifespan leaves them alone; otherwise it
    builds them from ``app_settings`` on startup and closes them on shutdown.
    """
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown tasks."""
        owned = None
        # Startup
        if getattr(app.state, "services", None) is None:
            database = create_database(app_settings)
            await database.create_all()
            redis_client = await create_redis(app_settings.REDIS_URL)
            owned = build_services(app_settings, database, redis_client=redis_client)
            app.state.services = owned
            logger.info(f"{app_settings.GARAGE_NAME} scheduler started ({app_settings.APP_ENV})")

        yield

        # Shutdown
        if owned is not None:
            await close_services(owned)
            app.state.services = None

    app = FastAPI(
        title="Garage Appointment Scheduler",
        description="Appointment booking, modification rules, reminders and loyalty points",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    # Register routes
    app.include_router(health.router, prefix="/api/v1", tags=["health"])
    app.include_router(appointments.router, prefix="/api/v1/appointments", tags=["appointments"])
    app.include_router(loyalty.router, prefix="/api/v1/loyalty", tags=["loyalty"])
    app.include_router(reminders.router, prefix="/api/v1/internal", tags=["internal"])

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": "Garage Appointment Scheduler",
            "garage": app_settings.GARAGE_NAME,
            "version": "1.0.0",
            "status": "running",
        }

    return app


configure_logging(settings.LOG_LEVEL)
app = create_app()
