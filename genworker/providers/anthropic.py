import math
import time
from typing import Dict

import httpx

from ..models import Quality, ToolType
from .base import (
    GenerationParams,
    GenerationResult,
    HttpProvider,
    ProviderCapabilities,
    http_failure,
    missing_key,
    network_failure,
)


class AnthropicScriptProvider(HttpProvider):
    """Script generation through the Messages API. Synchronous: the text comes back inline."""

    tool_type = ToolType.SCRIPT
    base_url = "https://api.anthropic.com/v1"
    key_env = "ANTHROPIC_API_KEY"
    capabilities = ProviderCapabilities(streaming=True, max_concurrent=20, requests_per_minute=50)

    def __init__(self, name: str, model: str, input_rate: float, output_rate: float, **kwargs):
        super().__init__(**kwargs)
        self.name = name
        self.model = model
        # US dollars per million tokens
        self.input_rate = input_rate
        self.output_rate = output_rate

    def headers(self) -> Dict[str, str]:
        return {"x-api-key": self.api_key, "anthropic-version": "2023-06-01"}

    async def generate(self, params: GenerationParams) -> GenerationResult:
        if not self.api_key:
            return missing_key(self.key_env)
        start = time.monotonic()
        max_tokens = 500 if params.quality == Quality.PREVIEW else 2000
        try:
            async with self.client(timeout=60.0) as client:
                resp = await client.post(
                    "/messages",
                    json={
                        "model": self.model,
                        "max_tokens": max_tokens,
                        "messages": [{"role": "user", "content": params.prompt}],
                    },
                )
        except httpx.HTTPError as e:
            return network_failure(e)
        if resp.status_code >= 300:
            return http_failure(resp)

        data = resp.json()
        text = "\n".join(c.get("text", "") for c in data.get("content", []) if c.get("type") == "text")
        usage = data.get("usage") or {}
        dollars = (usage.get("input_tokens", 0) * self.input_rate + usage.get("output_tokens", 0) * self.output_rate) / 1_000_000
        return GenerationResult(
            success=True,
            format="txt",
            duration_ms=int((time.monotonic() - start) * 1000),
            cost_cents=max(1, math.ceil(dollars * 100)),
            metadata={"text": text, "word_count": len(text.split()), "model": self.model, "tokens": usage},
        )
