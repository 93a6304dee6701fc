"""
Opens the encrypted password context sent with a password-submit event.

The envelope is a compact JWE addressed to the service's RSA key. Its
plaintext is a compact JWS signed with ``alg: none`` whose claims carry
``user-password`` and ``nonce``.
"""

import json
from dataclasses import dataclass
from typing import Optional

from jose import jwe, jws
from jose.exceptions import JOSEError

from logconfig.logger import get_logger
from migrationkit.core.settings import JitOptions
from migrationkit.exceptions.base_exceptions import ConfigurationError
from migrationkit.exceptions.jit_exceptions import DecryptionError
from migrationkit.services.secrets.cached_secret import CachedSecret
from migrationkit.services.secrets.secret_provider import SecretProvider

logger = get_logger()

PASSWORD_CLAIM = "user-password"
NONCE_CLAIM = "nonce"


@dataclass(frozen=True)
class PasswordContext:
    password: Optional[str]
    nonce: Optional[str]

    def __repr__(self) -> str:
        return f"PasswordContext(password={'***' if self.password else None}, nonce={self.nonce!r})"


def build_private_key_cache(options: JitOptions, secret_provider: Optional[SecretProvider] = None) -> CachedSecret:
    """
    Private key source: the inline key when configured, otherwise the secret
    store. A key that can come from neither is a startup error.
    """
    if options.inline_rsa_private_key:
        # Inline keys from environment files usually arrive with escaped newlines.
        inline_key = options.inline_rsa_private_key.replace("\\n", "\n")

        async def load_inline() -> str:
            return inline_key

        return CachedSecret("jit-rsa-private-key", load_inline, enabled=options.cache_private_key)

    if not options.use_key_vault:
        raise ConfigurationError(
            "JIT private key is not configured: set jit.inline_rsa_private_key or enable jit.use_key_vault",
            config_key="jit.inline_rsa_private_key",
        )
    if secret_provider is None:
        raise ConfigurationError(
            "JIT is configured to read its private key from the secret store, but no secret store is available",
            config_key="jit.use_key_vault",
        )

    async def load_from_store() -> str:
        logger.info(f"Loading JIT private key '{options.rsa_key_name}' from {secret_provider.provider_name}")
        return await secret_provider.get_secret(options.rsa_key_name)

    return CachedSecret("jit-rsa-private-key", load_from_store, enabled=options.cache_private_key)


class CredentialDecryptor:
    def __init__(self, private_key: CachedSecret):
        self.private_key = private_key

    async def warm_up(self) -> None:
        """Load the private key ahead of the first request."""
        await self.private_key.get_or_load()

    async def decrypt(self, envelope: str, correlation_id: Optional[str] = None) -> PasswordContext:
        if not envelope:
            raise DecryptionError("Encrypted password context is empty", correlation_id=correlation_id)

        private_key_pem = await self.private_key.get_or_load()
        if not private_key_pem:
            raise DecryptionError("RSA private key is not available", correlation_id=correlation_id)

        try:
            inner = jwe.decrypt(envelope, private_key_pem)
            if not inner:
                raise DecryptionError("Envelope decrypted to an empty payload", correlation_id=correlation_id)

            inner = inner.strip()
            # Some senders put the claims JSON directly inside the JWE.
            claims_raw = inner if inner.startswith(b"{") else jws.get_unverified_claims(inner)
            claims = json.loads(claims_raw)
        except DecryptionError:
            raise
        except (JOSEError, ValueError, TypeError) as e:
            raise DecryptionError(
                f"Failed to decrypt password context: {type(e).__name__}",
                correlation_id=correlation_id,
                original_exception=e,
            ) from e

        if not isinstance(claims, dict):
            raise DecryptionError("Decrypted password context is not a JSON object", correlation_id=correlation_id)

        context = PasswordContext(password=claims.get(PASSWORD_CLAIM), nonce=claims.get(NONCE_CLAIM))
        logger.debug(
            f"Password context decrypted | password: {'present' if context.password else 'missing'} | "
            f"nonce: {'present' if context.nonce else 'missing'}"
        )
        return context
