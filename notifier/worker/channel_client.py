from __future__ import annotations

from dataclasses import dataclass

import httpx


@dataclass(frozen=True, slots=True)
class ChannelResponse:
    status_code: int
    body: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class TelegramChannelClient:
    """Sends text to a Telegram chat through the Bot API ``sendMessage`` method."""

    def __init__(
        self,
        bot_token: str,
        *,
        api_base_url: str = "https://api.telegram.org",
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not bot_token:
            raise ValueError("bot_token is required")
        self._url = f"{api_base_url.rstrip('/')}/bot{bot_token}/sendMessage"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def send(self, channel_id: str, text: str) -> ChannelResponse:
        """Raises ``httpx.HTTPError`` on transport failure; HTTP errors come back as a response."""
        response = await self._client.post(self._url, json={"chat_id": channel_id, "text": text})
        return ChannelResponse(status_code=response.status_code, body=response.text[:500])

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
