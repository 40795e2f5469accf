import math
import time

import httpx

from ..models import Quality, ToolType
from .base import (
    GenerationParams,
    GenerationResult,
    HttpProvider,
    PollResult,
    ProviderCapabilities,
    http_failure,
    is_retryable_status,
    missing_key,
    network_failure,
)


class OpenAIProvider(HttpProvider):
    base_url = "https://api.openai.com/v1"
    key_env = "OPENAI_API_KEY"


class OpenAITTSProvider(OpenAIProvider):
    name = "openai-tts"
    tool_type = ToolType.VOICE
    capabilities = ProviderCapabilities(
        streaming=True, native_audio=True, max_duration=600, max_concurrent=10, requests_per_minute=50
    )

    async def generate(self, params: GenerationParams) -> GenerationResult:
        if not self.api_key:
            return missing_key(self.key_env)
        start = time.monotonic()
        model = "tts-1" if params.quality == Quality.PREVIEW else "tts-1-hd"
        voice = params.voice_id or "alloy"
        try:
            async with self.client(timeout=120.0) as client:
                resp = await client.post(
                    "/audio/speech",
                    json={"model": model, "input": params.prompt, "voice": voice, "response_format": "mp3"},
                )
        except httpx.HTTPError as e:
            return network_failure(e)
        if resp.status_code >= 300:
            return http_failure(resp)

        per_thousand = 2 if model == "tts-1" else 3
        return GenerationResult(
            success=True,
            result_bytes=resp.content,
            format="mp3",
            duration_ms=int((time.monotonic() - start) * 1000),
            cost_cents=math.ceil(len(params.prompt) / 1000) * per_thousand,
            metadata={"model": model, "voice": voice, "characters": len(params.prompt)},
        )


class SoraVideoProvider(OpenAIProvider):
    """Long-running video jobs: submit, then poll (or wait for the webhook) and download with auth."""

    tool_type = ToolType.VIDEO
    capabilities = ProviderCapabilities(
        webhooks=True,
        max_duration=20,
        max_resolution="1080p",
        supported_aspect_ratios=["16:9", "9:16", "1:1"],
        max_concurrent=5,
        requests_per_minute=25,
    )

    def __init__(self, name: str, model: str, cents_per_second_preview: int, cents_per_second_final: int, **kwargs):
        super().__init__(**kwargs)
        self.name = name
        self.model = model
        self.rates = {Quality.PREVIEW: cents_per_second_preview, Quality.FINAL: cents_per_second_final}

    async def generate(self, params: GenerationParams) -> GenerationResult:
        if not self.api_key:
            return missing_key(self.key_env)
        start = time.monotonic()
        size = "1280x720" if params.quality == Quality.PREVIEW else "1920x1080"
        seconds = int(params.duration or 8)
        try:
            async with self.client(timeout=30.0) as client:
                resp = await client.post(
                    "/videos",
                    json={"model": self.model, "prompt": params.prompt, "size": size, "seconds": seconds},
                    # vendor-side dedupe if a crash makes us resubmit
                    headers={"Idempotency-Key": f"{params.generation_id}:{params.quality.value}"},
                )
        except httpx.HTTPError as e:
            return network_failure(e)
        if resp.status_code >= 300:
            return http_failure(resp)

        data = resp.json()
        return GenerationResult(
            success=True,
            external_job_id=data.get("id"),
            format="mp4",
            duration_ms=int((time.monotonic() - start) * 1000),
            cost_cents=self.rates[Quality(params.quality)] * seconds,
            metadata={"model": self.model, "size": size, "seconds": seconds},
        )

    async def poll_status(self, external_job_id: str) -> PollResult:
        if not self.api_key:
            return PollResult(status="failed", error=f"{self.key_env} not set")
        try:
            async with self.client(timeout=15.0) as client:
                resp = await client.get(f"/videos/{external_job_id}")
        except httpx.HTTPError:
            # transient; the next poll tries again
            return PollResult(status="processing")
        if is_retryable_status(resp.status_code):
            return PollResult(status="processing")
        if resp.status_code >= 300:
            return PollResult(status="failed", error=f"Poll HTTP {resp.status_code}")

        data = resp.json()
        status = data.get("status")
        if status == "completed":
            return PollResult(status="completed", progress=100, result_url=f"{self.base_url}/videos/{external_job_id}/content")
        if status == "failed":
            return PollResult(status="failed", error=(data.get("error") or {}).get("message") or "Video generation failed")
        return PollResult(status="processing", progress=data.get("progress"))

    async def download_result(self, external_job_id: str) -> bytes:
        async with self.client(timeout=300.0) as client:
            resp = await client.get(f"/videos/{external_job_id}/content")
        resp.raise_for_status()
        return resp.content
