"""
FastAPI dependencies for the JIT authentication endpoint.
"""

from fastapi import HTTPException, Request, status

from logconfig.logger import get_logger
from migrationkit.services.jit.jit_migration_service import JitMigrationService

logger = get_logger()


def get_jit_service(request: Request) -> JitMigrationService:
    """The service built during application startup."""
    service = getattr(request.app.state, "jit_service", None)
    if service is None:
        logger.error("JIT service requested before application startup completed")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service not ready")
    return service
