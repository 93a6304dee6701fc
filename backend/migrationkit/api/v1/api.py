import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, FastAPI

from logconfig.logger import asyncio_exception_handler, get_logger, get_context_filter
from migrationkit import __version__
from migrationkit.api.v1.jit_routes import router as jit_router
from migrationkit.core.factory import create_jit_service
from migrationkit.core.settings import MigrationSettings, get_settings
from migrationkit.services.jit.jit_migration_service import JitMigrationService
from migrationkit.services.telemetry.telemetry_service import LoggingTelemetryService

logger = get_logger()
context_filter = get_context_filter()

API_PREFIX = "/api"

api_router = APIRouter()
api_router.include_router(jit_router)


def create_app(
    settings: Optional[MigrationSettings] = None,
    jit_service: Optional[JitMigrationService] = None,
) -> FastAPI:
    """
    Build the JIT host application.

    A prebuilt ``jit_service`` skips wiring from settings. Configuration
    errors (missing private key, missing source credentials) are raised
    during startup so the host never serves with a broken pipeline.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        context_filter.set_context(request_id="startup", user_id="system")
        asyncio.get_running_loop().set_exception_handler(asyncio_exception_handler)
        service = jit_service
        if service is None:
            service = await create_jit_service(settings, LoggingTelemetryService())
        await service.warm_up()
        app.state.jit_service = service
        logger.info("Application startup: JIT authentication service ready")
        context_filter.clear_context()
        try:
            yield
        finally:
            await service.close()
            logger.info("Application shutdown: JIT authentication service stopped")

    app = FastAPI(
        title="Identity Migration JIT Authentication",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.include_router(api_router, prefix=API_PREFIX)

    @app.get("/")
    async def root():
        return {"message": "Identity Migration JIT Authentication"}

    return app
