"""Shared HTTP plumbing for voice provider clients."""

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from control_plane.integrations.retry import RetryOptions, request_with_retry

logger = logging.getLogger("control-plane.providers")

DEFAULT_TIMEOUT_SECONDS = 30.0


@dataclass
class ProviderResponse:
    """Result of one provider API call."""

    success: bool
    data: Any = None
    error: str | None = None
    status_code: int | None = None


def _error_message(provider: str, response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        if isinstance(message, list):
            message = "; ".join(str(m) for m in message)
        if message:
            return str(message)
    return f"{provider} API error: {response.status_code} {response.reason_phrase}"


class ProviderClient:
    """Bearer-authenticated JSON client with retries."""

    provider_name = "provider"

    def __init__(
        self,
        api_key: str,
        base_url: str,
        http_client: httpx.AsyncClient | None = None,
        retry: RetryOptions | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._http_client = http_client
        self.retry = retry

    async def request(
        self, method: str, path: str, json: dict[str, Any] | None = None
    ) -> ProviderResponse:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        url = f"{self.base_url}{path}"
        try:
            if self._http_client is not None:
                response = await request_with_retry(
                    self._http_client, method, url, self.retry, json=json, headers=headers
                )
            else:
                async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT_SECONDS) as client:
                    response = await request_with_retry(
                        client, method, url, self.retry, json=json, headers=headers
                    )
        except httpx.HTTPError as e:
            logger.error(f"{self.provider_name} {method} {path} failed: {e}")
            return ProviderResponse(success=False, error=str(e) or type(e).__name__)

        if response.is_error:
            error = _error_message(self.provider_name, response)
            logger.warning(f"{self.provider_name} {method} {path} -> {response.status_code}: {error}")
            return ProviderResponse(
                success=False, error=error, status_code=response.status_code
            )

        data = response.json() if response.content else None
        return ProviderResponse(success=True, data=data, status_code=response.status_code)


def get_provider_http_client() -> httpx.AsyncClient | None:
    """Route dependency for the provider HTTP client.

    None means each client opens its own connection per request; tests
    override this to route provider traffic through a mock transport.
    """
    return None
