"""Control-plane webhook delivery.

At-least-once: a payload is posted up to ``webhook.attempts`` times with
exponential backoff. Exhausting the attempts never fails the operation that
triggered the notification; the caller gets a result carrying the statement
an operator must run by hand instead.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any

import httpx

from dcloud_core.config import WebhookConfig
from dcloud_core.models import HostingTier, utc_now
from dcloud_core.observability import get_logger
from dcloud_core.provisioning.tiers import HOSTING_TIERS, remediation_sql
from dcloud_core.utils.crypto import sign_payload
from dcloud_core.utils.retry import RetryPolicy, Sleep, retry_async

logger = get_logger(__name__)


@dataclass
class NotificationResult:
    """Outcome of one notification."""

    delivered: bool
    attempts: int = 0
    status_code: int | None = None
    skipped: bool = False
    remediation: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "delivered": self.delivered,
            "attempts": self.attempts,
            "status_code": self.status_code,
            "skipped": self.skipped,
            "remediation": self.remediation,
        }


def encode_payload(payload: dict[str, Any]) -> bytes:
    """Exact bytes that are signed and sent."""
    return json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()


class ControlPlaneNotifier:
    """Posts signed JSON payloads to the control plane."""

    def __init__(
        self,
        config: WebhookConfig,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = config
        self.transport = transport
        self.sleep = sleep

    @property
    def policy(self) -> RetryPolicy:
        return RetryPolicy(
            attempts=self.config.attempts,
            base_delay=self.config.base_delay_seconds,
            factor=self.config.backoff_factor,
        )

    def headers(self, body: bytes) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.secret:
            headers["X-Signature"] = sign_payload(body, self.config.secret)
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        return headers

    async def _post(self, url: str, body: bytes) -> httpx.Response:
        async with httpx.AsyncClient(
            timeout=self.config.timeout_seconds,
            transport=self.transport,
        ) as client:
            return await client.post(url, content=body, headers=self.headers(body))

    async def deliver(
        self,
        url: str | None,
        payload: dict[str, Any],
        *,
        require_success_flag: bool = False,
        remediation: str | None = None,
    ) -> NotificationResult:
        """Post ``payload`` with retries.

        Args:
            url: Endpoint; None skips delivery
            payload: JSON payload
            require_success_flag: Also require ``{"success": true}`` in the
                response body
            remediation: Manual statement reported if delivery fails

        Returns:
            NotificationResult. Never raises for delivery failures.
        """
        if not url:
            logger.debug("Webhook not configured, skipping", context={"type": payload.get("type")})
            return NotificationResult(delivered=False, skipped=True)

        body = encode_payload(payload)
        attempts = self.policy.attempts

        def _accepted(response: httpx.Response) -> bool:
            if not response.is_success:
                return False
            if not require_success_flag:
                return True
            try:
                return response.json().get("success") is True
            except (ValueError, AttributeError):
                return False

        def _failed(attempt: int, response: httpx.Response | None, error: BaseException | None) -> None:
            context: dict[str, Any] = {"url": url, "attempt": f"{attempt}/{attempts}"}
            if response is not None:
                context["status_code"] = response.status_code
                context["body"] = response.text[:200]
            if attempt < attempts:
                context["retry_in_s"] = self.policy.delay_for(attempt)
            logger.warning("Webhook attempt failed", context=context, error=error)

        outcome = await retry_async(
            lambda: self._post(url, body),
            self.policy,
            is_success=_accepted,
            retry_on=(httpx.HTTPError,),
            on_failure=_failed,
            sleep=self.sleep,
        )
        status_code = outcome.value.status_code if outcome.value is not None else None

        if outcome.succeeded:
            logger.info(
                "Webhook delivered",
                context={"type": payload.get("type"), "attempts": outcome.attempts},
            )
            return NotificationResult(delivered=True, attempts=outcome.attempts, status_code=status_code)

        logger.warning(
            f"Webhook not delivered after {outcome.attempts} attempts",
            context={"url": url, "type": payload.get("type")},
        )
        if remediation:
            logger.warning("Manual remediation required, run against the control plane database:")
            logger.warning(remediation)
        return NotificationResult(
            delivered=False,
            attempts=outcome.attempts,
            status_code=status_code,
            remediation=remediation,
        )

    async def send_event(
        self,
        event_type: str,
        status: str,
        space_name: str,
        message: str = "",
        **extra: Any,
    ) -> NotificationResult:
        """Lifecycle event (e.g. ``site_creation`` / ``completed``). Any 2xx counts."""
        payload = {
            "type": event_type,
            "status": status,
            "spaceName": space_name,
            "message": message,
            "timestamp": utc_now(),
            **extra,
        }
        return await self.deliver(self.config.url, payload)

    async def notify_completion(self, tier: HostingTier, payload: dict[str, Any]) -> NotificationResult:
        """Migration completion. Requires 2xx and ``{"success": true}``.

        ``payload`` carries ``machineName`` and the tier-specific identifiers
        (``dropletId``/``dropletIp``/``siteUrl`` or ``projectId``/``projectUrl``).
        """
        tier_config = HOSTING_TIERS[tier]
        body = {
            "type": f"{tier_config.hosting_type}_provisioned",
            "status": "completed",
            "provider": tier_config.provider,
            "timestamp": utc_now(),
            **payload,
        }
        return await self.deliver(
            self.config.completion_url or self.config.url,
            body,
            require_success_flag=True,
            remediation=remediation_sql(tier, payload.get("machineName", ""), payload),
        )
