"""
Throttle-aware directory API client.

Every call takes the next credential from the pool and runs through the
shared retry pipeline. Batch creates are split into wire batches of at most
twenty sub-requests regardless of the caller's chunk size.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import parse_qsl, urlsplit

import httpx
from azure.core.exceptions import ClientAuthenticationError, ServiceRequestError, ServiceResponseError

from logconfig.logger import get_logger
from migrationkit.exceptions.directory_exceptions import (
    DirectoryError,
    DirectoryTransportError,
    error_for_status,
)
from migrationkit.models.batch_result import BatchResult
from migrationkit.models.user_profile import UserProfile
from migrationkit.services.directory.credential_pool import CredentialPool
from migrationkit.services.directory.retry_manager import RetryManager
from migrationkit.services.telemetry.telemetry_service import TelemetryService

logger = get_logger()

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
MAX_BATCH_REQUESTS = 20
CONFLICT_CODE = "ObjectConflict"
CONFLICT_PHRASES = ("userPrincipalName already exists", "Another object with the same value")


@dataclass
class UserPage:
    """One page of a user listing."""
    items: List[UserProfile] = field(default_factory=list)
    next_page_token: Optional[str] = None


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a ``Retry-After`` header given in seconds or as an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def extract_skip_token(next_link: Optional[str]) -> Optional[str]:
    """Pull the ``$skiptoken`` continuation value out of an ``@odata.nextLink``."""
    if not next_link:
        return None
    for key, value in parse_qsl(urlsplit(next_link).query, keep_blank_values=True):
        if key.lower() == "$skiptoken":
            return value or None
    return None


def _error_fields(body: Any) -> Dict[str, Any]:
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return body["error"]
    return {}


def is_duplicate_conflict(status_code: int, body: Any) -> bool:
    """
    Decide whether a failed create means the user already exists.

    The structured ``ObjectConflict`` code is checked first; older responses
    that only carry the conflict in their message text are matched by phrase.
    """
    if status_code not in (400, 409):
        return False

    error = _error_fields(body)
    codes = {error.get("code")}
    codes.update(d.get("code") for d in error.get("details") or [] if isinstance(d, dict))
    if CONFLICT_CODE in codes:
        return True

    text = body if isinstance(body, str) else json.dumps(body)
    return CONFLICT_CODE in text and any(phrase in text for phrase in CONFLICT_PHRASES)


def _escape_odata(value: str) -> str:
    return value.replace("'", "''")


class DirectoryClient:
    """Directory API client with multi-credential rotation."""

    def __init__(
        self,
        credential_pool: CredentialPool,
        retry_manager: Optional[RetryManager] = None,
        telemetry: Optional[TelemetryService] = None,
        base_url: str = GRAPH_BASE_URL,
        http_client: Optional[httpx.AsyncClient] = None,
        name: str = "directory",
    ):
        self.credential_pool = credential_pool
        self.retry_manager = retry_manager or RetryManager(telemetry=telemetry)
        self.telemetry = telemetry
        self.name = name
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(60.0, connect=10.0),
            headers={"Accept": "application/json"},
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def _count(self, name: str, value: int = 1) -> None:
        if self.telemetry is not None and value:
            self.telemetry.increment_counter(name, value)

    async def _acquire_token(self, index: int, operation: str) -> str:
        """
        Token for the credential at ``index``. Network failures on the token
        endpoint surface as ``DirectoryTransportError``, rejected credentials
        as a 401 ``DirectoryError``.
        """
        credential = self.credential_pool.get(index)
        try:
            return await credential.get_token()
        except DirectoryError:
            raise
        except ClientAuthenticationError as e:
            raise DirectoryError(
                f"{operation}: token acquisition failed for app {credential.client_id}: {e}",
                status_code=401,
                operation=operation,
                original_exception=e,
            ) from e
        except (OSError, httpx.TransportError, ServiceRequestError, ServiceResponseError) as e:
            raise DirectoryTransportError(
                f"{operation}: token request for app {credential.client_id} failed: {e.__class__.__name__}: {e}",
                operation=operation,
                original_exception=e,
            ) from e

    async def _send(
        self,
        method: str,
        url: str,
        operation: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Any] = None,
    ) -> httpx.Response:
        """Single attempt: authenticate, send, and map failures to exceptions."""
        index = self.credential_pool.next_index()
        token = await self._acquire_token(index, operation)
        headers = {"Authorization": f"Bearer {token}"}

        try:
            response = await self._client.request(method, url, params=params, json=json_body, headers=headers)
        except httpx.TransportError as e:
            raise DirectoryTransportError(
                f"{operation}: {e.__class__.__name__}: {e}",
                operation=operation,
                original_exception=e,
            ) from e

        if response.is_success:
            return response

        retry_after = parse_retry_after(response.headers.get("Retry-After"))
        if response.status_code == 429:
            self.credential_pool.report_throttled(index, retry_after)

        try:
            body = response.json()
        except ValueError:
            body = response.text
        error = _error_fields(body)
        message = error.get("message") or (body if isinstance(body, str) else "") or response.reason_phrase
        raise error_for_status(
            response.status_code,
            f"{operation} failed with HTTP {response.status_code}: {message}",
            service_error_code=error.get("code"),
            retry_after=retry_after,
            operation=operation,
        )

    async def _call(
        self,
        method: str,
        url: str,
        operation: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Any] = None,
    ) -> httpx.Response:
        return await self.retry_manager.execute_with_retry(
            lambda: self._send(method, url, operation, params=params, json_body=json_body),
            operation_name=f"{self.name}.{operation}",
        )

    async def list_users(
        self,
        page_size: int = 100,
        select: Optional[str] = None,
        filter: Optional[str] = None,
        page_token: Optional[str] = None,
    ) -> UserPage:
        """Fetch one page of users; loop until ``next_page_token`` is None."""
        params: Dict[str, Any] = {"$top": page_size}
        if select:
            params["$select"] = select
        if filter:
            params["$filter"] = filter
        if page_token:
            params["$skiptoken"] = page_token

        response = await self._call("GET", "/users", "list_users", params=params)
        payload = response.json()
        users = [UserProfile.model_validate(item) for item in payload.get("value", [])]
        self._count("GraphClient.GetUsers", len(users))
        return UserPage(items=users, next_page_token=extract_skip_token(payload.get("@odata.nextLink")))

    @staticmethod
    def _create_payload(profile: UserProfile) -> Dict[str, Any]:
        payload = profile.to_directory_payload()
        payload["userType"] = "Member"
        return payload

    async def create_user(self, profile: UserProfile) -> UserProfile:
        response = await self._call("POST", "/users", "create_user", json_body=self._create_payload(profile))
        self._count("GraphClient.UserCreated")
        return UserProfile.model_validate(response.json())

    async def create_users_batch(self, profiles: Sequence[UserProfile]) -> BatchResult:
        """
        Create users with the ``$batch`` endpoint.

        Duplicates are recorded as skipped; a wire batch that fails outright
        marks every profile in it as failed and the next wire batch still runs.
        """
        result = BatchResult()
        for start in range(0, len(profiles), MAX_BATCH_REQUESTS):
            chunk = list(profiles[start:start + MAX_BATCH_REQUESTS])
            result.merge(await self._create_wire_batch(chunk))
        return result

    async def _create_wire_batch(self, chunk: List[UserProfile]) -> BatchResult:
        result = BatchResult(total_items=len(chunk))
        requests = [
            {
                "id": str(position + 1),
                "method": "POST",
                "url": "/users",
                "headers": {"Content-Type": "application/json"},
                "body": self._create_payload(profile),
            }
            for position, profile in enumerate(chunk)
        ]

        try:
            response = await self._call("POST", "/$batch", "create_users_batch", json_body={"requests": requests})
        except DirectoryError as e:
            logger.error(f"Batch create failed for {len(chunk)} users: {e.message}")
            if e.status_code == 429:
                result.was_throttled = True
                result.retry_after_seconds = e.retry_after
            for position, profile in enumerate(chunk):
                result.record_failure(position, profile.user_principal_name or profile.id, e.message, e.status_code)
            return result

        responses = {str(item.get("id")): item for item in response.json().get("responses", [])}

        for position, profile in enumerate(chunk):
            upn = profile.user_principal_name
            sub = responses.get(str(position + 1))
            if sub is None:
                result.record_failure(position, upn or profile.id, "No response for batch request", None)
                continue

            status = int(sub.get("status", 500))
            body = sub.get("body")
            if 200 <= status < 300:
                result.record_success(position, body.get("id") if isinstance(body, dict) else None)
            elif is_duplicate_conflict(status, body):
                result.record_duplicate(profile)
                logger.info(f"User {upn} already exists, skipping (request {position + 1})")
            else:
                message = _error_fields(body).get("message") or json.dumps(body)
                if status == 429:
                    result.was_throttled = True
                    hint = parse_retry_after((sub.get("headers") or {}).get("Retry-After"))
                    if hint is not None:
                        result.retry_after_seconds = max(result.retry_after_seconds or 0.0, hint)
                result.record_failure(position, upn or profile.id, message, status)
                logger.warning(f"User creation failed (UPN: {upn}, status: {status}): {message}")

        logger.info(
            f"Batch completed: {result.success_count} succeeded, "
            f"{result.skipped_count} skipped (duplicates), {result.failure_count} failed"
        )
        self._count("GraphClient.UserCreatedBatch", result.success_count)
        return result

    async def update_user(self, user_id: str, fields: Dict[str, Any]) -> None:
        await self._call("PATCH", f"/users/{user_id}", "update_user", json_body=fields)
        self._count("GraphClient.UserUpdated")

    async def get_user_by_id(self, user_id: str, select: Optional[str] = None) -> Optional[UserProfile]:
        params = {"$select": select} if select else None
        try:
            response = await self._call("GET", f"/users/{user_id}", "get_user_by_id", params=params)
        except DirectoryError as e:
            if e.status_code == 404:
                return None
            raise
        return UserProfile.model_validate(response.json())

    async def find_user_by_extension_attribute(self, name: str, value: str) -> Optional[UserProfile]:
        """First user whose attribute equals ``value``; undefined which one if several match."""
        page = await self.list_users(page_size=1, filter=f"{name} eq '{_escape_odata(value)}'")
        return page.items[0] if page.items else None

    async def find_user_by_upn(self, upn: str, select: Optional[str] = None) -> Optional[UserProfile]:
        page = await self.list_users(
            page_size=1, select=select, filter=f"userPrincipalName eq '{_escape_odata(upn)}'"
        )
        return page.items[0] if page.items else None

    async def set_password(self, user_id: str, password: str, force_change: bool = False) -> None:
        body = {
            "passwordProfile": {
                "password": password,
                "forceChangePasswordNextSignIn": force_change,
            }
        }
        await self._call("PATCH", f"/users/{user_id}", "set_password", json_body=body)
        self._count("GraphClient.PasswordSet")
