"""
Survey Relay - FastAPI Application Entry Point

Issues survey links in the clinic, resolves them for respondents, and keeps
the clinic's local database in sync with answers staged on the public relay.
"""

from contextlib import asynccontextmanager
from typing import Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.config import settings
from core.logging import setup_logging, log_request_middleware
from core.database import create_tables
from core.redis import close_redis
from api.deps import Services, build_services
from api.v1 import sessions, survey, responses, templates
from schemas.survey import SyncChange

# Setup logging
logger = setup_logging()


def log_change(change: SyncChange) -> None:
    logger.info(
        "Survey data changed",
        response_id=change.response_id,
        session_id=change.session_id,
        template_id=change.template_id,
    )


def create_app(services: Optional[Services] = None, start_sync: bool = True) -> FastAPI:
    """Build the application for the configured deployment profile."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events."""
        # Startup
        logger.info("Starting Survey Relay application...", profile=settings.DEPLOYMENT_PROFILE)

        if app.state.services is None:
            app.state.services = build_services()
        services = app.state.services
        services.notifier.add_listener(log_change)

        scheduler = AsyncIOScheduler()
        if services.lifecycle is not None and settings.ENV == "development":
            await create_tables()
            logger.info("Database tables created (development mode)")

        if start_sync and services.runner is not None:
            await services.runner.ensure_running()
            if settings.SYNC_RESWEEP_SECONDS > 0:
                scheduler.add_job(
                    services.runner.tick,
                    trigger=IntervalTrigger(seconds=settings.SYNC_RESWEEP_SECONDS),
                    id="relay_resweep",
                    name="Relay resweep",
                    replace_existing=True,
                    max_instances=1,
                    coalesce=True,
                )
                scheduler.start()
                logger.info("Relay resweep scheduler started", interval=settings.SYNC_RESWEEP_SECONDS)

        yield

        # Shutdown
        logger.info("Shutting down Survey Relay application...")
        if scheduler.running:
            scheduler.shutdown(wait=False)
        if services.runner is not None:
            await services.runner.shutdown()
        services.notifier.remove_listener(log_change)
        await close_redis()

    app = FastAPI(
        title="Survey Relay API",
        description="Patient survey links with local-first storage and relay sync",
        version=settings.VERSION,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        openapi_url="/openapi.json" if settings.DEBUG else None,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if settings.DEBUG:
        app.middleware("http")(log_request_middleware)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle validation exceptions."""
        logger.error(
            f"Validation Exception: {exc.errors()} | "
            f"Path: {request.url.path} | "
            f"Method: {request.method}"
        )
        user_message = exc.errors()[0].get("msg", "Invalid input data")

        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "success": False,
                "message": user_message,
                "detail": jsonable_errors(exc),
            }
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        log = logger.error if exc.status_code >= 500 else logger.info
        log(
            f"HTTP Exception: {exc.detail} | "
            f"Path: {request.url.path} | "
            f"Method: {request.method}"
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "message": exc.detail,
                "detail": str(exc)
            }
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception(
            f"Server Exception: {exc} | "
            f"Path: {request.url.path} | "
            f"Method: {request.method}"
        )
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "message": "Internal server error",
                "detail": str(exc)
            }
        )

    @app.get("/health")
    async def health(request: Request):
        services = request.app.state.services
        runner = services.runner if services is not None else None
        return {
            "status": "ok",
            "profile": settings.DEPLOYMENT_PROFILE,
            "sync_running": bool(runner and runner.running),
            "sync_restarts": runner.restarts if runner else 0,
        }

    # Include API routers
    app.include_router(survey.router, prefix="/api/v1/survey", tags=["Survey"])
    app.include_router(sessions.router, prefix="/api/v1/sessions", tags=["Sessions"])
    app.include_router(responses.router, prefix="/api/v1/responses", tags=["Responses"])
    app.include_router(templates.router, prefix="/api/v1/templates", tags=["Templates"])

    return app


def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx can carry the raw exception object
    return [{k: v for k, v in error.items() if k != "ctx"} for error in exc.errors()]


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )
