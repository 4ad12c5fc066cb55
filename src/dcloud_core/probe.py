"""HTTP reachability probes."""

import asyncio
from typing import Any

import httpx

from dcloud_core.observability import get_logger
from dcloud_core.utils.retry import RetryPolicy, Sleep, retry_async

logger = get_logger(__name__)


class EndpointProbe:
    """Checks that a tenant endpoint answers over HTTP."""

    def __init__(
        self,
        timeout: float = 10.0,
        verify_tls: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.timeout = timeout
        self.verify_tls = verify_tls
        self.transport = transport
        self.sleep = sleep

    def _client(self, **kwargs: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            verify=self.verify_tls,
            follow_redirects=True,
            transport=self.transport,
            **kwargs,
        )

    async def status(self, url: str, host: str | None = None) -> int | None:
        """HTTP status for ``url``, or None if the request failed outright.

        ``host`` overrides the Host header, for probing an address the
        tenant domain does not resolve to yet.
        """
        headers = {"Host": host} if host else None
        try:
            async with self._client() as client:
                response = await client.get(url, headers=headers)
                return response.status_code
        except httpx.HTTPError as e:
            logger.debug("Probe request failed", context={"url": url, "error": str(e)})
            return None

    async def wait_until_up(
        self,
        url: str,
        attempts: int,
        interval: float,
        host: str | None = None,
    ) -> bool:
        """Probe up to ``attempts`` times, ``interval`` seconds apart."""
        if attempts < 1:
            return True

        def _failed(attempt: int, status: int | None, error: BaseException | None) -> None:
            logger.debug(
                f"Probe {attempt}/{attempts} not ready",
                context={"url": url, "status": status},
            )

        outcome = await retry_async(
            lambda: self.status(url, host=host),
            RetryPolicy.fixed(attempts, interval),
            is_success=lambda status: status is not None and status < 400,
            on_failure=_failed,
            sleep=self.sleep,
        )
        return outcome.succeeded
