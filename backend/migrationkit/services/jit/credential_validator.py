"""
Validates a legacy username/password against the source tenant.

Uses the resource-owner password grant directly against the source tenant's
token endpoint, so source-side user-flow policies are not involved. Only a
yes/no answer is kept; the issued token is discarded.
"""

from typing import Optional

import httpx

from logconfig.logger import get_logger
from migrationkit.exceptions.jit_exceptions import CredentialValidationError

logger = get_logger()

DEFAULT_AUTHORITY_HOST = "https://login.microsoftonline.com"


class LegacyCredentialValidator:
    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        authority_host: str = DEFAULT_AUTHORITY_HOST,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_endpoint = f"{authority_host.rstrip('/')}/{tenant_id}/oauth2/v2.0/token"
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def validate(self, username: str, password: str) -> bool:
        """
        True only on a 2xx token response. Any other status is a failed
        credential; the response body is logged for operators and never
        returned.

        Raises:
            CredentialValidationError: the token endpoint could not be reached.
        """
        form = {
            "client_id": self.client_id,
            "scope": "openid",
            "grant_type": "password",
            "username": username,
            "password": password,
            "NCA": "1",
            "client_secret": self.client_secret,
        }
        logger.debug(f"Validating credentials for {username} via password grant")

        try:
            response = await self.http_client.post(self.token_endpoint, data=form)
        except httpx.TransportError as e:
            raise CredentialValidationError(
                f"Token endpoint unreachable: {type(e).__name__}",
                original_exception=e,
            ) from e

        if response.is_success:
            logger.info(f"Credential validation succeeded for {username}")
            return True

        logger.warning(
            f"Credential validation failed for {username}: HTTP {response.status_code} - {response.text[:500]}"
        )
        return False

    async def close(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()
