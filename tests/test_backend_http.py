"""
Tests for the HTTP generator and messaging provider clients.

Uses httpx.MockTransport; no network.
"""
import json

import httpx
import pytest
from tenacity import wait_none

from backend.generator import HttpIntelligenceGenerator, parse_drafts
from backend.messaging import HttpMessagingProvider
from config.settings import ServiceEndpointConfig
from core.errors import GeneratorError, ProviderError
from models.action_details import ActionType
from models.schemas import Opportunity, PipelineContext

from tests.factories import NOW


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url="https://svc.test", transport=httpx.MockTransport(handler))


@pytest.fixture
def context():
    return PipelineContext(
        opportunity=Opportunity(id="opp_acme", prospect_id="prospect_acme", stage_id="stage_discovery"),
        trigger="new EmailActivity",
        generated_at=NOW,
    )


@pytest.fixture
def no_retry_wait(monkeypatch):
    monkeypatch.setattr(HttpMessagingProvider._delete.retry, "wait", wait_none())


# ──────────────────────────────────────────────────────────────
#  Draft parsing
# ──────────────────────────────────────────────────────────────

class TestParseDrafts:
    def test_bare_list(self):
        drafts = parse_drafts([{"type": "CALL", "details": {"contact_email": "ravi@acme.test"}}])
        assert drafts[0].type == ActionType.CALL

    def test_envelope(self):
        drafts = parse_drafts({"actions": [
            {"type": "NO_ACTION", "details": {"reason": "Lost", "next_review_date": "2026-06-01"}},
        ]})
        assert drafts[0].details.next_review_date.isoformat() == "2026-06-01"

    def test_invalid_details_rejected(self):
        with pytest.raises(GeneratorError):
            parse_drafts([{"type": "EMAIL", "details": {"to": []}}])

    def test_non_list_rejected(self):
        with pytest.raises(GeneratorError):
            parse_drafts("no actions today")


# ──────────────────────────────────────────────────────────────
#  HttpIntelligenceGenerator
# ──────────────────────────────────────────────────────────────

class TestHttpGenerator:
    @pytest.mark.asyncio
    async def test_posts_context_and_parses_drafts(self, context):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"actions": [
                {"type": "EMAIL", "details": {"to": ["ravi@acme.test"], "subject": "Hi"}},
            ]})

        generator = HttpIntelligenceGenerator(ServiceEndpointConfig(base_url="https://svc.test"))
        generator.client = _client(handler)

        drafts = await generator.generate("opp_acme", context)

        assert seen["path"] == "/v1/opportunities/opp_acme/next-actions"
        assert seen["body"]["opportunity"]["id"] == "opp_acme"
        assert seen["body"]["trigger"] == "new EmailActivity"
        assert drafts[0].details.subject == "Hi"
        await generator.close()

    @pytest.mark.asyncio
    async def test_http_error_becomes_generator_error(self, context):
        generator = HttpIntelligenceGenerator(ServiceEndpointConfig(base_url="https://svc.test"))
        generator.client = _client(lambda request: httpx.Response(503, text="overloaded"))

        with pytest.raises(GeneratorError):
            await generator.generate("opp_acme", context)
        await generator.close()


# ──────────────────────────────────────────────────────────────
#  HttpMessagingProvider
# ──────────────────────────────────────────────────────────────

class TestHttpProvider:
    @pytest.mark.asyncio
    async def test_send_success(self):
        provider = HttpMessagingProvider(ServiceEndpointConfig(base_url="https://svc.test"))
        provider.client = _client(lambda request: httpx.Response(200, json={"message_id": "pm_1"}))

        result = await provider.send({"to": ["ravi@acme.test"]})

        assert result.success is True
        assert result.provider_message_id == "pm_1"
        await provider.close()

    @pytest.mark.asyncio
    async def test_send_rejection_is_not_success(self):
        provider = HttpMessagingProvider(ServiceEndpointConfig(base_url="https://svc.test"))
        provider.client = _client(lambda request: httpx.Response(422, text="bad recipient"))

        result = await provider.send({"to": ["nobody"]})

        assert result.success is False
        assert "422" in result.error
        await provider.close()

    @pytest.mark.asyncio
    async def test_send_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        provider = HttpMessagingProvider(ServiceEndpointConfig(base_url="https://svc.test"))
        provider.client = _client(handler)

        with pytest.raises(ProviderError):
            await provider.send({"to": ["ravi@acme.test"]})
        assert len(calls) == 1
        await provider.close()

    @pytest.mark.asyncio
    async def test_delete_missing_artifact_is_success(self):
        provider = HttpMessagingProvider(ServiceEndpointConfig(base_url="https://svc.test"))
        provider.client = _client(lambda request: httpx.Response(404))

        await provider.delete_scheduled_artifact("msg_1")
        await provider.close()

    @pytest.mark.asyncio
    async def test_delete_retried_then_raises(self, no_retry_wait):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            return httpx.Response(500)

        provider = HttpMessagingProvider(ServiceEndpointConfig(base_url="https://svc.test"))
        provider.client = _client(handler)

        with pytest.raises(ProviderError):
            await provider.delete_scheduled_artifact("msg_1")
        assert calls == ["/v1/scheduled/msg_1"] * 3
        await provider.close()
