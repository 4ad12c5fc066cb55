"""Input validation utilities."""

import re

from dcloud_core.exceptions import InvalidInputError

# Tenant names double as directory, database suffix and subdomain label
TENANT_NAME_RE = re.compile(r"^[a-z0-9_-]+$")

# Access tokens issued by the control plane: fixed prefix + 54 hex chars
ACCESS_TOKEN_RE = re.compile(r"^space_tok_[0-9a-fA-F]{54}$")

DOMAIN_RE = re.compile(r"^(?=.{1,253}$)([a-zA-Z0-9_]([a-zA-Z0-9_-]{0,61}[a-zA-Z0-9_])?\.)*[a-zA-Z0-9_-]{1,63}$")

# MySQL identifiers are limited to 64 characters
MAX_DATABASE_NAME = 64


def validate_tenant_name(value: str, name: str = "tenant name", prefix: str = "") -> str:
    """Validate a tenant name.

    Args:
        value: The proposed name
        name: Name of the field for error messages
        prefix: Database prefix the name will be joined with

    Returns:
        The validated name

    Raises:
        InvalidInputError: If the name is invalid
    """
    if not value:
        raise InvalidInputError(f"{name} cannot be empty")

    if not TENANT_NAME_RE.match(value):
        raise InvalidInputError(
            f"Invalid {name} '{value}': only lowercase letters, numbers, "
            "hyphens and underscores are allowed"
        )

    if len(prefix) + len(value) > MAX_DATABASE_NAME:
        raise InvalidInputError(f"{name} '{value}' is too long for a database name")

    return value


def validate_access_token(value: str) -> str:
    """Validate an access token's format (not its authenticity)."""
    if not value or not ACCESS_TOKEN_RE.match(value):
        raise InvalidInputError("Invalid access token: expected 'space_tok_' followed by 54 hex characters")
    return value


def validate_domain(value: str) -> str:
    """Validate a hostname used as a routing key."""
    if not value or not DOMAIN_RE.match(value):
        raise InvalidInputError(f"Invalid domain: {value!r}")
    return value


def trusted_host_pattern(domain: str) -> str:
    """Anchored regex matching exactly one host."""
    return "^" + re.escape(domain) + "$"
