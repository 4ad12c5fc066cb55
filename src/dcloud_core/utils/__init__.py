"""Utility modules."""

from dcloud_core.utils.crypto import TokenEncryption
from dcloud_core.utils.retry import RetryPolicy, poll_until, retry_async
from dcloud_core.utils.validation import (
    validate_access_token,
    validate_domain,
    validate_tenant_name,
)

__all__ = [
    "RetryPolicy",
    "TokenEncryption",
    "poll_until",
    "retry_async",
    "validate_access_token",
    "validate_domain",
    "validate_tenant_name",
]
