"""
Messaging Provider — delivers outbound messages and owns provider-side artifacts.

send() is never retried here: a timeout can hide a delivered message, so the
scheduled send executor records the failure instead. delete_scheduled_artifact()
is idempotent and retried with backoff.
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import ServiceEndpointConfig, get_settings
from core.errors import ProviderError
from models.schemas import SendResult

logger = structlog.get_logger()


class MessagingProvider(abc.ABC):
    """Abstract base for outbound messaging providers."""

    @abc.abstractmethod
    async def send(self, payload: dict[str, Any]) -> SendResult:
        """Deliver one message. success=False is treated like an exception."""
        ...

    @abc.abstractmethod
    async def delete_scheduled_artifact(self, artifact_id: str) -> None:
        """Drop anything the provider staged for a scheduled message. Unknown ids are a no-op."""
        ...

    async def close(self) -> None:
        pass


class HttpMessagingProvider(MessagingProvider):
    """REST messaging provider."""

    def __init__(self, config: ServiceEndpointConfig = None):
        self.config = config or get_settings().messaging
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.api_key:
                headers["Authorization"] = f"Bearer {self.config.api_key}"
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout_seconds,
            )
        return self.client

    async def send(self, payload: dict[str, Any]) -> SendResult:
        client = await self._get_client()
        url = self.config.endpoints.get("send", "/v1/messages")
        try:
            response = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            raise ProviderError(f"Send request failed: {e}") from e

        if response.status_code >= 400:
            logger.warning("provider_send_rejected", status=response.status_code, body=response.text[:500])
            return SendResult(success=False, error=f"HTTP {response.status_code}: {response.text[:200]}")

        data = response.json() if response.content else {}
        return SendResult(
            success=bool(data.get("success", True)),
            provider_message_id=data.get("message_id") or data.get("id"),
            error=data.get("error"),
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception_type(httpx.HTTPError),
        reraise=True,
    )
    async def _delete(self, url: str) -> None:
        client = await self._get_client()
        response = await client.delete(url)
        if response.status_code == 404:
            return
        response.raise_for_status()

    async def delete_scheduled_artifact(self, artifact_id: str) -> None:
        url = self.config.endpoints.get("delete_artifact", "/v1/scheduled/{artifact_id}")
        try:
            await self._delete(url.replace("{artifact_id}", artifact_id))
        except httpx.HTTPError as e:
            raise ProviderError(f"Artifact delete failed for {artifact_id}: {e}") from e

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()
