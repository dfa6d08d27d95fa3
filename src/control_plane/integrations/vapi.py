"""VAPI REST client and assistant payload mapping.

https://docs.vapi.ai/api-reference
"""

from typing import Any

import httpx

from control_plane.config import Settings, get_settings
from control_plane.db.models import AIAgent
from control_plane.integrations.base import ProviderClient, ProviderResponse
from control_plane.integrations.retry import RetryOptions

VAPI_BASE_URL = "https://api.vapi.ai"
VAPI_NAME_MAX_LENGTH = 40


def _compact(payload: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in payload.items() if v is not None}


def vapi_webhook_url(settings: Settings | None = None) -> str:
    settings = settings or get_settings()
    return f"{settings.public_api_url}/webhooks/vapi"


def build_vapi_assistant_payload(
    agent: AIAgent, settings: Settings | None = None
) -> dict[str, Any]:
    """Map an agent's config onto a VAPI assistant body."""
    settings = settings or get_settings()
    config = agent.config or {}
    model = config.get("model") or {}
    voice = config.get("voice") or {}
    transcriber = config.get("transcriber") or {}

    return _compact(
        {
            "name": agent.name[:VAPI_NAME_MAX_LENGTH],
            "firstMessage": config.get("first_message"),
            "model": _compact(
                {
                    "provider": model.get("provider", "openai"),
                    "model": model.get("model", "gpt-4o"),
                    "temperature": model.get("temperature", 0.7),
                    "messages": [
                        {"role": "system", "content": config.get("system_prompt", "")}
                    ],
                }
            ),
            "voice": _compact(
                {
                    "provider": voice.get("provider", "11labs"),
                    "voiceId": voice.get("voice_id", "burt"),
                }
            ),
            "transcriber": _compact(
                {
                    "provider": transcriber.get("provider", "deepgram"),
                    "model": transcriber.get("model", "nova-2"),
                    "language": transcriber.get("language", "en"),
                }
            ),
            "endCallPhrases": config.get("end_call_phrases"),
            "endCallMessage": config.get("end_call_message"),
            "voicemailMessage": config.get("voicemail_message"),
            "maxDurationSeconds": config.get("max_duration_seconds"),
            "serverUrl": vapi_webhook_url(settings),
            "metadata": {
                "agent_id": str(agent.id),
                "workspace_id": str(agent.workspace_id),
            },
        }
    )


class VapiClient(ProviderClient):
    provider_name = "VAPI"

    def __init__(
        self,
        api_key: str,
        base_url: str = VAPI_BASE_URL,
        http_client: httpx.AsyncClient | None = None,
        retry: RetryOptions | None = None,
    ):
        super().__init__(api_key, base_url, http_client, retry)

    async def create_assistant(self, payload: dict[str, Any]) -> ProviderResponse:
        return await self.request("POST", "/assistant", payload)

    async def update_assistant(
        self, assistant_id: str, payload: dict[str, Any]
    ) -> ProviderResponse:
        return await self.request("PATCH", f"/assistant/{assistant_id}", payload)

    async def delete_assistant(self, assistant_id: str) -> ProviderResponse:
        return await self.request("DELETE", f"/assistant/{assistant_id}")

    async def create_call(
        self,
        assistant_id: str,
        phone_number_id: str,
        customer_number: str,
        customer_name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ProviderResponse:
        """Start an outbound phone call."""
        customer: dict[str, Any] = {"number": customer_number}
        if customer_name:
            customer["name"] = customer_name
        body: dict[str, Any] = {
            "assistantId": assistant_id,
            "phoneNumberId": phone_number_id,
            "customer": customer,
        }
        if metadata:
            body["metadata"] = metadata
        return await self.request("POST", "/call", body)

    async def get_call(self, call_id: str) -> ProviderResponse:
        return await self.request("GET", f"/call/{call_id}")

    async def get_assistant(self, assistant_id: str) -> ProviderResponse:
        return await self.request("GET", f"/assistant/{assistant_id}")

    # Phone numbers

    async def list_phone_numbers(self) -> ProviderResponse:
        return await self.request("GET", "/phone-number")

    async def get_phone_number(self, phone_number_id: str) -> ProviderResponse:
        return await self.request("GET", f"/phone-number/{phone_number_id}")

    async def create_free_phone_number(self, name: str | None = None) -> ProviderResponse:
        """Provision a free VAPI number (SIP only, no PSTN number)."""
        return await self.request(
            "POST", "/phone-number", _compact({"provider": "vapi", "name": name})
        )

    async def assign_phone_number(
        self, phone_number_id: str, assistant_id: str | None
    ) -> ProviderResponse:
        """Point a number at an assistant; None detaches it."""
        return await self.request(
            "PATCH", f"/phone-number/{phone_number_id}", {"assistantId": assistant_id}
        )


def vapi_sip_uri(phone_number: dict[str, Any]) -> str:
    """Free numbers carry no ``sipUri``; VAPI routes ``sip:{id}@sip.vapi.ai``."""
    return phone_number.get("sipUri") or f"sip:{phone_number['id']}@sip.vapi.ai"
