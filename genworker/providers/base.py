import base64
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Literal, Optional

import httpx
from pydantic import BaseModel, Field

from ..models import Job, Quality, ToolType


class ProviderCapabilities(BaseModel):
    """Static, advisory description of what a vendor integration can do."""

    preview: bool = True
    final: bool = True
    batch_count: int = 1
    webhooks: bool = False
    streaming: bool = False
    native_audio: bool = False
    max_duration: Optional[float] = None
    max_resolution: Optional[str] = None
    supported_aspect_ratios: List[str] = Field(default_factory=list)
    max_concurrent: int = 5
    requests_per_minute: int = 30


class GenerationParams(BaseModel):
    generation_id: str
    prompt: str
    quality: Quality
    negative_prompt: Optional[str] = None
    aspect_ratio: Optional[str] = None
    duration: Optional[float] = None
    resolution: Optional[str] = None
    style: Optional[str] = None
    voice_id: Optional[str] = None
    language: Optional[str] = None
    reference_image_url: Optional[str] = None
    reference_video_url: Optional[str] = None
    reference_audio_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_job(cls, job: Job, quality: Quality) -> "GenerationParams":
        return cls(
            generation_id=job.id,
            prompt=job.prompt,
            quality=quality,
            negative_prompt=job.negative_prompt,
            aspect_ratio=job.aspect_ratio,
            duration=job.duration,
            resolution=job.resolution,
            style=job.style,
            voice_id=job.voice_id,
            language=job.language,
            reference_image_url=job.reference_image_url,
            reference_video_url=job.reference_video_url,
            reference_audio_url=job.reference_audio_url,
            metadata=dict(job.metadata),
        )


class ProviderError(BaseModel):
    code: str
    message: str
    retryable: bool = False


class GenerationResult(BaseModel):
    success: bool
    external_job_id: Optional[str] = None  # async vendors: work continues remotely
    result_url: Optional[str] = None
    result_base64: Optional[str] = None
    result_bytes: Optional[bytes] = None
    format: Optional[str] = None  # 'mp4', 'png', 'mp3', 'txt'
    duration_ms: Optional[int] = None
    cost_cents: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[ProviderError] = None

    @classmethod
    def failure(cls, code: str, message: str, retryable: bool = False) -> "GenerationResult":
        return cls(success=False, error=ProviderError(code=code, message=message, retryable=retryable))

    def inline_bytes(self) -> Optional[bytes]:
        if self.result_bytes is not None:
            return self.result_bytes
        if self.result_base64:
            return base64.b64decode(self.result_base64)
        return None

    @property
    def text(self) -> Optional[str]:
        return self.metadata.get("text")


class PollResult(BaseModel):
    status: Literal["queued", "processing", "completed", "failed"]
    progress: Optional[int] = None
    result_url: Optional[str] = None
    error: Optional[str] = None


class MediaProvider(ABC):
    """Contract every vendor integration satisfies.

    ``generate`` reports ordinary vendor errors as a failed :class:`GenerationResult`; it only raises
    for conditions nobody anticipated. ``poll_status`` and ``download_result`` are optional: sync-only
    vendors leave them alone and :attr:`can_poll` / :attr:`can_download` report False.
    Instances hold no per-job state and are shared across jobs.
    """

    name: str = ""
    tool_type: ToolType = ToolType.IMAGE
    capabilities: ProviderCapabilities = ProviderCapabilities()

    @abstractmethod
    async def generate(self, params: GenerationParams) -> GenerationResult:
        ...

    async def poll_status(self, external_job_id: str) -> PollResult:
        raise NotImplementedError

    async def download_result(self, external_job_id: str) -> bytes:
        raise NotImplementedError

    @property
    def can_poll(self) -> bool:
        return type(self).poll_status is not MediaProvider.poll_status

    @property
    def can_download(self) -> bool:
        return type(self).download_result is not MediaProvider.download_result

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


# ---------------------------------------------------------------------------
# HTTP helpers shared by the vendor integrations
# ---------------------------------------------------------------------------

def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    err = data.get("error") if isinstance(data, dict) else None
    if isinstance(err, dict) and err.get("message"):
        return str(err["message"])
    if isinstance(err, str):
        return err
    if isinstance(data, dict) and data.get("detail"):
        return str(data["detail"])
    return f"HTTP {response.status_code}"


def http_failure(response: httpx.Response) -> GenerationResult:
    return GenerationResult.failure(
        f"HTTP_{response.status_code}",
        error_message(response),
        retryable=is_retryable_status(response.status_code),
    )


def network_failure(exc: Exception) -> GenerationResult:
    return GenerationResult.failure("NETWORK", str(exc) or type(exc).__name__, retryable=True)


def missing_key(env_name: str) -> GenerationResult:
    return GenerationResult.failure("NO_API_KEY", f"{env_name} not set")


class HttpProvider(MediaProvider):
    """Base for vendors reached over HTTPS with a single API key."""

    base_url: str = ""
    key_env: str = ""

    def __init__(self, api_key: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._api_key = api_key
        self._transport = transport

    @property
    def api_key(self) -> str:
        return self._api_key or os.getenv(self.key_env, "")

    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers(),
            timeout=timeout,
            transport=self._transport,
        )
