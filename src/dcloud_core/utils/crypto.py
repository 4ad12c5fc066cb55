"""Cryptographic utilities."""

import hashlib
import hmac
import secrets

from cryptography.fernet import Fernet


def generate_hex_secret(length: int = 32) -> str:
    """Random hex string of ``2 * length`` characters."""
    return secrets.token_hex(length)


def derive_hash_salt(name: str, domain_suffix: str) -> str:
    """Per-tenant hash salt for the shared host.

    Derived from the tenant name and its domain so two tenants never share
    a salt, and recreating a tenant yields the same value.
    """
    digest = hashlib.sha256(f"{name}.{domain_suffix}".encode()).hexdigest()
    return f"{name}-{digest}"


def sign_payload(body: bytes, secret: str) -> str:
    """HMAC-SHA256 signature header value for a webhook body."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(body: bytes, secret: str, signature: str) -> bool:
    """Constant-time check of a signature produced by sign_payload()."""
    return hmac.compare_digest(sign_payload(body, secret), signature)


class TokenEncryption:
    """Fernet-based encryption for credentials stored in metadata records.

    Uses symmetric encryption to protect secrets at rest.
    """

    PREFIX = "enc:"

    def __init__(self, key: str | bytes) -> None:
        """Initialize token encryption.

        Args:
            key: Fernet-compatible key (32 bytes, URL-safe base64 encoded)
        """
        if isinstance(key, str):
            key = key.encode()
        self.fernet = Fernet(key)

    def encrypt(self, token: str) -> str:
        """Encrypt a token, returning a prefixed URL-safe base64 string."""
        encrypted = self.fernet.encrypt(token.encode())
        return self.PREFIX + encrypted.decode()

    def decrypt(self, encrypted: str) -> str:
        """Decrypt a value produced by encrypt(). Plain values pass through."""
        if not encrypted.startswith(self.PREFIX):
            return encrypted
        decrypted = self.fernet.decrypt(encrypted[len(self.PREFIX):].encode())
        return decrypted.decode()
