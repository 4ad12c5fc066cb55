"""Tests for control-plane webhook delivery."""

import json

import httpx
import pytest

from dcloud_core.config import WebhookConfig
from dcloud_core.models import HostingTier
from dcloud_core.notifier import ControlPlaneNotifier, encode_payload
from dcloud_core.utils.crypto import verify_signature

URL = "https://control.example.test/api/webhooks"


def notifier_with(handler, sleep, **config):
    return ControlPlaneNotifier(
        WebhookConfig(url=URL, **config),
        transport=httpx.MockTransport(handler),
        sleep=sleep,
    )


class TestControlPlaneNotifier:
    """Tests for ControlPlaneNotifier."""

    async def test_skipped_without_url(self, sleep):
        notifier = ControlPlaneNotifier(WebhookConfig(), sleep=sleep)
        result = await notifier.send_event("site_creation", "completed", "acme")
        assert result.skipped
        assert not result.delivered

    async def test_event_payload_and_signature(self, sleep):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(204)

        notifier = notifier_with(handler, sleep, secret="s3cret", token="tok")
        result = await notifier.send_event("site_creation", "completed", "acme", "done")

        assert result.delivered
        assert result.attempts == 1
        body = json.loads(seen[0].content)
        assert body["type"] == "site_creation"
        assert body["spaceName"] == "acme"
        assert verify_signature(seen[0].content, "s3cret", seen[0].headers["X-Signature"])
        assert seen[0].headers["Authorization"] == "Bearer tok"

    async def test_exhaustion_after_five_attempts(self, sleep):
        """Five attempts with 2, 4, 8, 16 second backoff, then a non-fatal result."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        result = await notifier_with(handler, sleep).send_event("site_creation", "failed", "acme")

        assert not result.delivered
        assert len(calls) == 5
        assert result.status_code == 503
        assert sleep.delays == [2, 4, 8, 16]

    async def test_transport_errors_are_retried(self, sleep):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                raise httpx.ConnectError("refused")
            return httpx.Response(200)

        result = await notifier_with(handler, sleep).send_event("site_deletion", "completed", "acme")

        assert result.delivered
        assert result.attempts == 3

    async def test_completion_requires_success_flag(self, sleep):
        responses = iter([
            httpx.Response(200, json={"success": False}),
            httpx.Response(200, text="not json"),
            httpx.Response(200, json={"success": True}),
        ])
        notifier = notifier_with(lambda request: next(responses), sleep)

        result = await notifier.notify_completion(
            HostingTier.DEDICATED_VM,
            {"machineName": "acme", "dropletId": "42", "dropletIp": "203.0.113.7"},
        )

        assert result.delivered
        assert result.attempts == 3

    async def test_completion_failure_carries_remediation(self, sleep):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(500)

        result = await notifier_with(handler, sleep, completion_url="https://control.example.test/done").notify_completion(
            HostingTier.MANAGED_PLATFORM,
            {"machineName": "acme", "projectId": "abc123", "projectUrl": "https://main.example"},
        )

        assert not result.delivered
        assert seen[0]["type"] == "growth_provisioned"
        assert seen[0]["provider"] == "upsun"
        assert result.remediation == (
            "UPDATE spaces SET hosting_type='growth', growth_project_id='abc123', "
            "growth_project_name='', growth_region='', drupal_site_url='https://main.example' "
            "WHERE machine_name='acme';"
        )

    def test_payload_encoding_is_canonical(self):
        assert encode_payload({"b": 1, "a": "x"}) == b'{"a":"x","b":1}'
