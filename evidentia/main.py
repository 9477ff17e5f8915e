"""Evidentia - Main Application Entry Point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from evidentia.api.v1 import router as api_v1_router
from evidentia.config import Settings, get_settings
from evidentia.enrichment.summarizer import create_summarizer
from evidentia.exceptions import setup_exception_handlers
from evidentia.intake.pipeline import AnalysisPipeline
from evidentia.parsers.loader import CustomParserLoader
from evidentia.parsers.registry import ParserRegistry
from evidentia.websocket import AnalysisNotifier, ConnectionManager

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    app_settings: Settings = app.state.settings
    logger.info("Starting %s v%s", app_settings.app_name, app_settings.app_version)

    await app.state.registry.initialize()

    yield

    logger.info("Shutting down %s", app_settings.app_name)
    await app.state.pipeline.shutdown()
    await app.state.registry.drain()


def create_app(app_settings: Settings | None = None) -> FastAPI:
    """Build the application and the services it owns."""
    app_settings = app_settings or settings

    app = FastAPI(
        title=app_settings.app_name,
        description="Forensic log intake, parsing and indicator analysis",
        version=app_settings.app_version,
        docs_url="/docs" if app_settings.debug else None,
        redoc_url="/redoc" if app_settings.debug else None,
        openapi_url="/openapi.json" if app_settings.debug else "/api/openapi.json",
        lifespan=lifespan,
    )

    connection_manager = ConnectionManager()
    registry = ParserRegistry(loader=CustomParserLoader(app_settings.custom_parser_timeout_seconds))
    pipeline = AnalysisPipeline(
        app_settings,
        registry,
        summarizer=create_summarizer(app_settings),
        notifier=AnalysisNotifier(connection_manager),
    )

    app.state.settings = app_settings
    app.state.connection_manager = connection_manager
    app.state.registry = registry
    app.state.pipeline = pipeline

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    setup_exception_handlers(app)

    app.include_router(api_v1_router, prefix="/api/v1")

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "app": app_settings.app_name,
            "version": app_settings.app_version,
            "running_analyses": pipeline.running_count,
            "websocket_connections": connection_manager.get_connection_count(),
        }

    return app


app = create_app()
