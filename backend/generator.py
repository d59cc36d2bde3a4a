"""
Intelligence Generator — the external service that proposes next actions.

Given an opportunity and its current context, the generator returns an
ordered list of drafts. It is non-deterministic and may be slow; callers
treat any failure as transient and never retry within a pass.
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from config.settings import ServiceEndpointConfig, get_settings
from core.errors import GeneratorError
from models.schemas import PipelineContext, ProposedActionDraft

logger = structlog.get_logger()


class IntelligenceGenerator(abc.ABC):
    """Abstract base for next-action generators."""

    @abc.abstractmethod
    async def generate(self, opportunity_id: str, context: PipelineContext) -> list[ProposedActionDraft]:
        ...

    async def close(self) -> None:
        pass


def parse_drafts(payload: Any) -> list[ProposedActionDraft]:
    """Accept a bare list or a {"actions": [...]} envelope."""
    if isinstance(payload, dict):
        payload = payload.get("actions", payload.get("data", []))
    if not isinstance(payload, list):
        raise GeneratorError(f"Generator returned {type(payload).__name__}, expected a list of actions")
    try:
        return [ProposedActionDraft.model_validate(item) for item in payload]
    except ValidationError as e:
        raise GeneratorError(f"Generator returned an invalid action: {e.errors(include_url=False)}") from e


class HttpIntelligenceGenerator(IntelligenceGenerator):
    """Posts the pipeline context to a REST endpoint and parses the drafts."""

    def __init__(self, config: ServiceEndpointConfig = None):
        self.config = config or get_settings().generator
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

    async def generate(self, opportunity_id: str, context: PipelineContext) -> list[ProposedActionDraft]:
        client = await self._get_client()
        url = self.config.endpoints.get("generate", "/v1/opportunities/{opportunity_id}/next-actions")
        url = url.replace("{opportunity_id}", opportunity_id)
        try:
            response = await client.post(url, json=context.model_dump(mode="json"))
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("generator_request_failed", opportunity_id=opportunity_id, error=str(e))
            raise GeneratorError(f"Generator request failed: {e}") from e

        drafts = parse_drafts(payload)
        logger.info("generator_drafts_received", opportunity_id=opportunity_id, count=len(drafts))
        return drafts

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()
