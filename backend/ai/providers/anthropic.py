import httpx

from ai.providers.base import AIProvider, ProviderError


class AnthropicProvider(AIProvider):
    """Anthropic / Claude AI provider."""

    BASE_URL = "https://api.anthropic.com/v1/messages"
    DEFAULT_REASONING_MODEL = "claude-sonnet-4-20250514"
    DEFAULT_UTILITY_MODEL = "claude-haiku-4-5-20251001"

    def __init__(
        self,
        api_key: str,
        reasoning_model: str | None = None,
        utility_model: str | None = None,
    ):
        super().__init__(api_key, reasoning_model, utility_model)
        self._headers = {
            "x-api-key": self.api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }

    async def chat(
        self,
        messages: list[dict],
        model: str,
        system: str = "",
        max_tokens: int = 4096,
    ) -> dict:
        payload: dict = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": messages,
        }
        if system:
            payload["system"] = system

        async with httpx.AsyncClient(timeout=120) as client:
            resp = await client.post(self.BASE_URL, headers=self._headers, json=payload)
            if resp.status_code != 200:
                raise ProviderError(f"Anthropic API error: {resp.text}", status_code=resp.status_code)
            data = resp.json()

        content = ""
        for block in data.get("content", []):
            if block.get("type") == "text":
                content += block["text"]

        usage = data.get("usage", {})
        return {
            "content": content,
            "tokens_in": usage.get("input_tokens", 0),
            "tokens_out": usage.get("output_tokens", 0),
            "model": data.get("model", model),
        }
