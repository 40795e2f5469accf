import math
import time
from typing import Dict

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

PREVIEW_MODEL = "kling-video/v2/turbo/image-to-video"
FINAL_MODEL = "kling-video/v2.5/pro/image-to-video"


class KlingImageToVideoProvider(HttpProvider):
    """Kling image-to-video through the fal.ai request queue. Async, poll-driven, no webhooks."""

    name = "kling-i2v"
    tool_type = ToolType.IMAGE_TO_VIDEO
    base_url = "https://queue.fal.run/fal-ai"
    key_env = "FAL_KEY"
    capabilities = ProviderCapabilities(
        max_duration=10,
        max_resolution="1080p",
        supported_aspect_ratios=["16:9", "9:16", "1:1"],
        max_concurrent=4,
        requests_per_minute=20,
    )

    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Key {self.api_key}"}

    async def generate(self, params: GenerationParams) -> GenerationResult:
        if not params.reference_image_url:
            return GenerationResult.failure("MISSING_INPUT", "Reference image URL is required for image-to-video")
        if not self.api_key:
            return missing_key(self.key_env)
        start = time.monotonic()
        model = PREVIEW_MODEL if params.quality == Quality.PREVIEW else FINAL_MODEL
        duration = params.duration or 5
        try:
            async with self.client(timeout=30.0) as client:
                resp = await client.post(
                    f"/{model}",
                    json={
                        "prompt": params.prompt,
                        "image_url": params.reference_image_url,
                        "duration": str(int(duration)),
                        "aspect_ratio": params.aspect_ratio or "16:9",
                    },
                )
        except httpx.HTTPError as e:
            return network_failure(e)
        if resp.status_code >= 300:
            return http_failure(resp)

        per_second = 5 if params.quality == Quality.PREVIEW else 10
        return GenerationResult(
            success=True,
            external_job_id=resp.json().get("request_id"),
            format="mp4",
            duration_ms=int((time.monotonic() - start) * 1000),
            cost_cents=math.ceil(duration * per_second),
            metadata={"model": model, "duration": duration},
        )

    async def poll_status(self, external_job_id: str) -> PollResult:
        if not self.api_key:
            return PollResult(status="failed", error=f"{self.key_env} not set")
        try:
            async with self.client(timeout=15.0) as client:
                resp = await client.get(f"/kling-video/requests/{external_job_id}/status")
                if is_retryable_status(resp.status_code):
                    return PollResult(status="processing")
                if resp.status_code >= 300:
                    return PollResult(status="failed", error=f"Poll HTTP {resp.status_code}")
                data = resp.json()
                status = data.get("status")
                if status == "COMPLETED":
                    out = await client.get(f"/kling-video/requests/{external_job_id}")
                    out.raise_for_status()
                    video = out.json().get("video") or {}
                    return PollResult(status="completed", progress=100, result_url=video.get("url"))
        except httpx.HTTPError:
            return PollResult(status="processing")

        if status == "FAILED":
            return PollResult(status="failed", error=data.get("error") or "Generation failed")
        if status == "IN_QUEUE":
            return PollResult(status="queued", progress=0)
        return PollResult(status="processing", progress=data.get("progress") or 50)
