"""
Just-in-time password migration for users signing in to the target tenant
for the first time.

Each request runs a fixed sequence and stops at the first failing step:
parse, decrypt, reverse the UPN transform, validate against the source
tenant, check target password complexity. Every failure is a ``Block``
action; nothing raised inside the pipeline reaches the caller.
"""

import asyncio
import json
import time
import uuid
from typing import Any, Dict, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from logconfig.logger import get_logger, get_context_filter
from migrationkit.core.security import validate_password_complexity
from migrationkit.core.settings import MigrationSettings
from migrationkit.exceptions.jit_exceptions import (
    CredentialValidationError,
    DecryptionError,
    PayloadParseError,
)
from migrationkit.models.jit import JitMigrationResult
from migrationkit.schemas.jit import PasswordSubmitEvent
from migrationkit.services.jit.credential_decryptor import CredentialDecryptor
from migrationkit.services.jit.credential_validator import LegacyCredentialValidator
from migrationkit.services.jit.nonce_cache import NonceCache
from migrationkit.services.telemetry.telemetry_service import TelemetryService
from migrationkit.utils.upn import transform_upn_for_source

logger = get_logger()
context_filter = get_context_filter()

GENERIC_ERROR_MESSAGE = "An error occurred during authentication. Please try again later."


def _block_invalid_request(nonce: Optional[str] = None) -> JitMigrationResult:
    return JitMigrationResult.block("Invalid Request", "Required authentication information is missing.", nonce)


class JitMigrationService:
    """
    Decides the outcome of one password-submit event.

    The service never writes to the target tenant: ``MigratePassword`` asks
    the caller to adopt the submitted password and clear the migration flag.
    """

    def __init__(
        self,
        settings: MigrationSettings,
        decryptor: Optional[CredentialDecryptor],
        validator: Optional[LegacyCredentialValidator],
        telemetry: TelemetryService,
        nonce_cache: Optional[NonceCache] = None,
    ):
        self.settings = settings
        self.options = settings.jit
        self.decryptor = decryptor
        self.validator = validator
        self.telemetry = telemetry
        self.nonce_cache = nonce_cache
        self.source_domain = settings.source.tenant_domain
        self.password_policy = settings.target.password_policy
        self.test_mode = self._resolve_test_mode()

        if self.nonce_cache is None and self.options.nonce_replay_window_seconds > 0:
            self.nonce_cache = NonceCache(self.options.nonce_replay_window_seconds, self.options.nonce_cache_size)

    def _resolve_test_mode(self) -> bool:
        if not self.options.test_mode:
            return False
        if not self.settings.is_test_environment:
            logger.critical(
                f"jit.test_mode is enabled in environment '{self.settings.app_env}'. "
                "Refusing to bypass source credential validation; test mode is ignored."
            )
            self.telemetry.track_event("JIT.TestModeRefused", {"environment": self.settings.app_env})
            return False
        logger.warning("JIT test mode is ON: source credential validation is skipped for every request")
        return True

    async def warm_up(self) -> None:
        if self.decryptor is not None:
            await self.decryptor.warm_up()

    async def close(self) -> None:
        if self.validator is not None:
            await self.validator.close()

    @staticmethod
    def parse_event(payload: Union[bytes, str, Dict[str, Any]]) -> PasswordSubmitEvent:
        try:
            if isinstance(payload, (bytes, str)):
                payload = json.loads(payload)
            if not isinstance(payload, dict):
                raise PayloadParseError("Authentication event is not a JSON object")
            event = PasswordSubmitEvent.model_validate(payload)
        except (ValueError, PydanticValidationError) as e:
            raise PayloadParseError(f"Invalid authentication event payload: {type(e).__name__}") from e
        if event.data is None:
            raise PayloadParseError("Authentication event has no data object")
        return event

    async def handle(
        self,
        payload: Union[bytes, str, Dict[str, Any]],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> JitMigrationResult:
        """Entry point for the HTTP surface. Always returns a result."""
        request_id = str(uuid.uuid4())
        start = time.monotonic()

        try:
            event = self.parse_event(payload)
        except PayloadParseError as e:
            logger.warning(f"[JIT] Invalid payload | RequestId: {request_id} | {e.message}")
            self.telemetry.track_event("JIT.InvalidPayload", {"request_id": request_id})
            return JitMigrationResult.block("Invalid Request", "The authentication request is malformed.")

        correlation_id = event.correlation_id or request_id
        context_filter.set_context(correlation_id=correlation_id, request_id=request_id)
        try:
            result = await self.authenticate(event, correlation_id, start, cancel_event)
        except Exception as e:
            logger.exception(f"[JIT] Unexpected error | CorrelationId: {correlation_id}: {e}")
            self.telemetry.track_exception(e, {"correlation_id": correlation_id})
            result = JitMigrationResult.block("System Error", GENERIC_ERROR_MESSAGE)
        finally:
            context_filter.clear_context()

        duration_ms = (time.monotonic() - start) * 1000
        self.telemetry.track_metric("JIT.DurationMs", duration_ms, {"action": result.action.value})
        logger.info(
            f"[JIT] Completed | Action: {result.action.value} | Duration: {duration_ms:.0f}ms | "
            f"Nonce: {'yes' if result.nonce else 'no'} | CorrelationId: {correlation_id}"
        )
        return result

    async def _extract_password(
        self, event: PasswordSubmitEvent, correlation_id: str
    ) -> Tuple[Optional[str], Optional[str]]:
        data = event.data
        if data.encrypted_password_context:
            if self.decryptor is None:
                raise DecryptionError("No decryptor configured for encrypted password context", correlation_id=correlation_id)
            context = await self.decryptor.decrypt(data.encrypted_password_context, correlation_id)
            return context.password, context.nonce
        if data.password_context is not None:
            return data.password_context.user_password, data.password_context.nonce
        return None, None

    async def authenticate(
        self,
        event: PasswordSubmitEvent,
        correlation_id: str,
        start: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> JitMigrationResult:
        start = start if start is not None else time.monotonic()
        deadline = start + self.options.timeout_seconds
        user = event.user
        user_id = user.id if user else None
        target_upn = user.user_principal_name if user else None

        # Step 1: required fields, before any external call.
        if not user_id:
            logger.warning(f"[JIT] Missing user id | CorrelationId: {correlation_id}")
            return _block_invalid_request()

        # Step 2: password, decrypting the envelope when present.
        try:
            password, nonce = await self._extract_password(event, correlation_id)
        except DecryptionError as e:
            logger.error(f"[JIT] Decryption failed | CorrelationId: {correlation_id} | {e.message}")
            self.telemetry.track_event("JIT.DecryptionFailed", {"correlation_id": correlation_id})
            return JitMigrationResult.block("Decryption Error", "Unable to process authentication request.")

        if not password:
            logger.warning(f"[JIT] Missing password | UserId: {user_id} | CorrelationId: {correlation_id}")
            return _block_invalid_request(nonce)

        if nonce and self.nonce_cache is not None and not self.nonce_cache.check_and_add(nonce):
            logger.warning(f"[JIT] Replayed nonce rejected | UserId: {user_id} | CorrelationId: {correlation_id}")
            self.telemetry.track_event("JIT.NonceReplay", {"correlation_id": correlation_id})
            return JitMigrationResult.block(
                "Invalid Request", "The authentication request has already been processed.", nonce
            )

        self.telemetry.track_event(
            "JIT.Started", {"user_id": user_id, "user_principal_name": target_upn, "correlation_id": correlation_id}
        )

        # Step 3: reverse the import-time UPN transform.
        try:
            source_upn = transform_upn_for_source(target_upn, self.source_domain)
        except ValueError as e:
            logger.warning(f"[JIT] Cannot derive source UPN from '{target_upn}': {e} | CorrelationId: {correlation_id}")
            return JitMigrationResult.block(
                "Configuration Error", "Unable to validate credentials. Please contact support.", nonce
            )
        logger.info(f"[JIT] UPN {target_upn} -> {source_upn} | CorrelationId: {correlation_id}")

        if cancel_event is not None and cancel_event.is_set():
            logger.warning(f"[JIT] Request cancelled before validation | CorrelationId: {correlation_id}")
            return self._timeout_block(nonce)

        # Step 4: legacy credential validation inside the soft timeout.
        if self.test_mode:
            logger.warning(f"[JIT] [TEST MODE] Skipping source credential validation | UPN: {source_upn}")
        else:
            valid = await self._validate_within_budget(source_upn, password, deadline, correlation_id)
            if valid is None:
                return self._timeout_block(nonce)
            if not valid:
                self.telemetry.track_event(
                    "JIT.ValidationFailed", {"correlation_id": correlation_id, "reason": "InvalidCredentials"}
                )
                return JitMigrationResult.block(
                    "Authentication Failed", "The credentials you provided are incorrect.", nonce
                )

        # Step 5: the submitted password is about to be adopted verbatim.
        complexity = validate_password_complexity(password, self.password_policy)
        if not complexity.is_valid:
            logger.warning(
                f"[JIT] Password complexity not met ({len(complexity.errors)} rule(s)) | "
                f"UserId: {user_id} | CorrelationId: {correlation_id}"
            )
            self.telemetry.track_event(
                "JIT.ValidationFailed", {"correlation_id": correlation_id, "reason": "PasswordComplexity"}
            )
            return JitMigrationResult.block(
                "Password Requirements Not Met",
                "Your password does not meet the required complexity standards.",
                nonce,
            )

        logger.info(f"[JIT] Returning MigratePassword | UserId: {user_id} | CorrelationId: {correlation_id}")
        self.telemetry.track_event("JIT.MigrationCompleted", {"user_id": user_id, "correlation_id": correlation_id})
        return JitMigrationResult.migrate_password(nonce)

    async def _validate_within_budget(
        self, source_upn: str, password: str, deadline: float, correlation_id: str
    ) -> Optional[bool]:
        """Validation outcome, or None when the soft timeout ran out."""
        if self.validator is None:
            raise CredentialValidationError("No credential validator configured", correlation_id=correlation_id)

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            logger.warning(f"[JIT] Soft timeout reached before validation | CorrelationId: {correlation_id}")
            return None
        try:
            return await asyncio.wait_for(self.validator.validate(source_upn, password), timeout=remaining)
        except asyncio.TimeoutError:
            logger.warning(
                f"[JIT] Source validation exceeded {self.options.timeout_seconds}s soft timeout | "
                f"CorrelationId: {correlation_id}"
            )
            self.telemetry.track_event("JIT.Timeout", {"correlation_id": correlation_id})
            return None
        except CredentialValidationError as e:
            logger.error(f"[JIT] Source validation unavailable: {e.message} | CorrelationId: {correlation_id}")
            self.telemetry.track_exception(e, {"correlation_id": correlation_id})
            return False

    @staticmethod
    def _timeout_block(nonce: Optional[str]) -> JitMigrationResult:
        return JitMigrationResult.block(
            "Authentication Timeout",
            "Authentication is taking longer than expected. Please try again.",
            nonce,
        )
