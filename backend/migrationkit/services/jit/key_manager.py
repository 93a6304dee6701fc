"""
RSA key handling for the encrypted password envelope.

The directory service encrypts the submitted password with the public key
registered on the custom authentication extension; this module produces and
checks that key material.
"""

import base64
import hashlib
import json
import secrets
from typing import Dict, Tuple

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from logconfig.logger import get_logger

logger = get_logger()

SUPPORTED_KEY_SIZES = (2048, 4096)

_OAEP = padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA256()), algorithm=hashes.SHA256(), label=None)


def _b64url_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


class RsaKeyManager:
    """Generate, export and check the JIT envelope key pair."""

    @staticmethod
    def generate_key_pair(key_size: int = 2048) -> Tuple[str, str]:
        """Returns ``(private_pem, public_pem)``; the private key is PKCS8, unencrypted."""
        if key_size not in SUPPORTED_KEY_SIZES:
            raise ValueError(f"Unsupported RSA key size {key_size}; use one of {SUPPORTED_KEY_SIZES}")

        private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("ascii")
        public_pem = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")
        logger.info(f"Generated {key_size}-bit RSA key pair")
        return private_pem, public_pem

    @staticmethod
    def load_private_key(private_pem: str) -> rsa.RSAPrivateKey:
        key = serialization.load_pem_private_key(private_pem.encode("ascii"), password=None)
        if not isinstance(key, rsa.RSAPrivateKey):
            raise ValueError("Private key is not an RSA key")
        return key

    @staticmethod
    def load_public_key(public_pem: str) -> rsa.RSAPublicKey:
        key = serialization.load_pem_public_key(public_pem.encode("ascii"))
        if not isinstance(key, rsa.RSAPublicKey):
            raise ValueError("Public key is not an RSA key")
        return key

    @classmethod
    def export_public_key_pem(cls, private_pem: str) -> str:
        return cls.load_private_key(private_pem).public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")

    @classmethod
    def export_public_key_jwk(cls, public_pem: str) -> Dict[str, str]:
        """
        JWK for registration on the authentication extension.

        The key id is derived from the modulus so re-exporting the same key
        yields the same ``kid``.
        """
        numbers = cls.load_public_key(public_pem).public_numbers()
        n = _b64url_uint(numbers.n)
        return {
            "kty": "RSA",
            "use": "enc",
            "alg": "RSA-OAEP-256",
            "kid": hashlib.sha256(n.encode("ascii")).hexdigest()[:16],
            "n": n,
            "e": _b64url_uint(numbers.e),
        }

    @classmethod
    def export_public_key_jwk_json(cls, public_pem: str) -> str:
        return json.dumps(cls.export_public_key_jwk(public_pem), indent=2)

    @classmethod
    def validate_key_pair(cls, private_pem: str, public_pem: str) -> bool:
        """Round-trip a random sample through RSA-OAEP(SHA-256)."""
        try:
            private_key = cls.load_private_key(private_pem)
            public_key = cls.load_public_key(public_pem)
            sample = secrets.token_bytes(32)
            return private_key.decrypt(public_key.encrypt(sample, _OAEP), _OAEP) == sample
        except (ValueError, TypeError, InvalidKey) as e:
            logger.warning(f"RSA key pair validation failed: {e}")
            return False
