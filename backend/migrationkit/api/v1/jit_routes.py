"""
JIT authentication endpoint.

The directory service calls ``POST`` on every password submit for a user
still flagged for migration, and ``GET`` when the extension is registered.
Every POST is answered with HTTP 200 and an action document, including
malformed requests, which get a ``Block`` action.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from logconfig.logger import get_logger
from migrationkit.dependencies.jit import get_jit_service
from migrationkit.schemas.jit import PasswordSubmitResponse
from migrationkit.services.jit.jit_migration_service import JitMigrationService

logger = get_logger()
router = APIRouter(prefix="/jit-authentication", tags=["JIT Authentication"])

READY_MESSAGE = "JIT Authentication Endpoint - Ready"


@router.get("", response_class=PlainTextResponse)
async def endpoint_ready(request: Request) -> str:
    """Liveness ping used when the authentication extension is registered."""
    forwarded_for = request.headers.get("x-forwarded-for", "unknown")
    logger.info(f"[JIT] Endpoint validation GET | RemoteIP: {forwarded_for}")
    return READY_MESSAGE


@router.post("")
async def password_submit(
    request: Request,
    jit_service: JitMigrationService = Depends(get_jit_service),
) -> JSONResponse:
    """
    Handle an ``onPasswordSubmit`` event.

    The raw body is handed to the service so JSON errors become a ``Block``
    action instead of a 422.
    """
    body = await request.body()
    logger.info(f"[JIT] Password submit received | BodyLength: {len(body)}")

    result = await jit_service.handle(body)
    content: Dict[str, Any] = PasswordSubmitResponse.from_result(result).to_wire()
    return JSONResponse(status_code=200, content=content)
