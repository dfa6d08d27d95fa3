"""Retell REST client and agent payload mapping.

A Retell agent is two objects: a Retell LLM holding the prompt, and the
agent itself pointing at that LLM as its response engine.
"""

from typing import Any

import httpx

from control_plane.config import Settings, get_settings
from control_plane.db.models import AIAgent
from control_plane.integrations.base import ProviderClient, ProviderResponse
from control_plane.integrations.retry import RetryOptions

RETELL_BASE_URL = "https://api.retellai.com"


def build_retell_llm_payload(agent: AIAgent) -> dict[str, Any]:
    config = agent.config or {}
    model = config.get("model") or {}
    payload: dict[str, Any] = {
        "general_prompt": config.get("system_prompt", ""),
        "model": model.get("model", "gpt-4o"),
    }
    if config.get("first_message"):
        payload["begin_message"] = config["first_message"]
    if "temperature" in model:
        payload["model_temperature"] = model["temperature"]
    return payload


def build_retell_agent_payload(
    agent: AIAgent, llm_id: str, settings: Settings | None = None
) -> dict[str, Any]:
    settings = settings or get_settings()
    config = agent.config or {}
    voice = config.get("voice") or {}
    payload: dict[str, Any] = {
        "agent_name": agent.name,
        "response_engine": {"type": "retell-llm", "llm_id": llm_id},
        "voice_id": voice.get("voice_id", "11labs-Adrian"),
        "language": (config.get("transcriber") or {}).get("language", "en-US"),
        "webhook_url": f"{settings.public_api_url}/webhooks/retell",
    }
    if config.get("max_duration_seconds"):
        payload["max_call_duration_ms"] = int(config["max_duration_seconds"]) * 1000
    if config.get("voicemail_message"):
        payload["voicemail_message"] = config["voicemail_message"]
    return payload


class RetellClient(ProviderClient):
    provider_name = "Retell"

    def __init__(
        self,
        api_key: str,
        base_url: str = RETELL_BASE_URL,
        http_client: httpx.AsyncClient | None = None,
        retry: RetryOptions | None = None,
    ):
        super().__init__(api_key, base_url, http_client, retry)

    async def create_llm(self, payload: dict[str, Any]) -> ProviderResponse:
        return await self.request("POST", "/create-retell-llm", payload)

    async def update_llm(self, llm_id: str, payload: dict[str, Any]) -> ProviderResponse:
        return await self.request("PATCH", f"/update-retell-llm/{llm_id}", payload)

    async def delete_llm(self, llm_id: str) -> ProviderResponse:
        return await self.request("DELETE", f"/delete-retell-llm/{llm_id}")

    async def create_agent(self, payload: dict[str, Any]) -> ProviderResponse:
        return await self.request("POST", "/create-agent", payload)

    async def update_agent(self, agent_id: str, payload: dict[str, Any]) -> ProviderResponse:
        return await self.request("PATCH", f"/update-agent/{agent_id}", payload)

    async def delete_agent(self, agent_id: str) -> ProviderResponse:
        return await self.request("DELETE", f"/delete-agent/{agent_id}")

    async def create_phone_call(
        self,
        from_number: str,
        to_number: str,
        override_agent_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        dynamic_variables: dict[str, str] | None = None,
    ) -> ProviderResponse:
        """Start an outbound call from one of the account's numbers."""
        body: dict[str, Any] = {"from_number": from_number, "to_number": to_number}
        if override_agent_id:
            body["override_agent_id"] = override_agent_id
        if metadata:
            body["metadata"] = metadata
        if dynamic_variables:
            body["retell_llm_dynamic_variables"] = dynamic_variables
        return await self.request("POST", "/v2/create-phone-call", body)

    async def get_call(self, call_id: str) -> ProviderResponse:
        return await self.request("GET", f"/v2/get-call/{call_id}")
