import json

import httpx
import pytest

from genworker.engine import ExecutionEngine
from genworker.models import Job, Quality
from genworker.providers.anthropic import AnthropicScriptProvider
from genworker.providers.base import GenerationParams
from genworker.providers.kling import KlingImageToVideoProvider
from genworker.providers.openai import OpenAITTSProvider, SoraVideoProvider
from genworker.providers.registry import AdapterResolver, UnknownProviderError


def _params(**kw):
    kw.setdefault("generation_id", "gen-1")
    kw.setdefault("prompt", "a red fox in the snow")
    kw.setdefault("quality", Quality.PREVIEW)
    return GenerationParams(**kw)


def _transport(status=200, body=None, content=None, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if content is not None:
            return httpx.Response(status, content=content)
        return httpx.Response(status, json=body or {})

    return httpx.MockTransport(handler)


def _haiku(transport, api_key="test-key"):
    return AnthropicScriptProvider("anthropic-haiku", "claude-haiku", 1.0, 5.0, api_key=api_key, transport=transport)


@pytest.mark.anyio
async def test_anthropic_returns_script_text():
    seen = []
    body = {"content": [{"type": "text", "text": "Scene one. Fox runs."}], "usage": {"input_tokens": 20, "output_tokens": 40}}
    result = await _haiku(_transport(body=body, seen=seen)).generate(_params())

    assert result.success
    assert result.text == "Scene one. Fox runs."
    assert result.metadata["word_count"] == 4
    assert result.cost_cents == 1
    assert result.external_job_id is None
    assert seen[0].headers["x-api-key"] == "test-key"
    assert json.loads(seen[0].content)["max_tokens"] == 500


@pytest.mark.anyio
@pytest.mark.parametrize("status, retryable", [(429, True), (500, True), (503, True), (400, False), (401, False)])
async def test_http_status_classification(status, retryable):
    body = {"error": {"message": "vendor says no"}}
    result = await _haiku(_transport(status=status, body=body)).generate(_params())

    assert not result.success
    assert result.error.code == f"HTTP_{status}"
    assert result.error.retryable is retryable
    assert result.error.message == "vendor says no"


@pytest.mark.anyio
async def test_network_errors_are_retryable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    result = await _haiku(httpx.MockTransport(handler)).generate(_params())

    assert result.error.code == "NETWORK"
    assert result.error.retryable


@pytest.mark.anyio
async def test_missing_api_key_is_permanent(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    result = await _haiku(_transport(), api_key=None).generate(_params())

    assert result.error.code == "NO_API_KEY"
    assert not result.error.retryable


@pytest.mark.anyio
async def test_tts_returns_audio_bytes_and_char_cost():
    seen = []
    adapter = OpenAITTSProvider(api_key="k", transport=_transport(content=b"ID3audio", seen=seen))
    result = await adapter.generate(_params(prompt="x" * 1500, quality=Quality.FINAL, voice_id="nova"))

    assert result.inline_bytes() == b"ID3audio"
    assert result.format == "mp3"
    assert result.cost_cents == 6
    sent = json.loads(seen[0].content)
    assert sent["model"] == "tts-1-hd" and sent["voice"] == "nova"


@pytest.mark.anyio
async def test_sora_submission_returns_vendor_job_id():
    seen = []
    adapter = SoraVideoProvider("openai-sora-2", "sora-2", 10, 20, api_key="k", transport=_transport(body={"id": "video_123"}, seen=seen))
    result = await adapter.generate(_params(duration=4))

    assert result.external_job_id == "video_123"
    assert result.cost_cents == 40
    assert seen[0].headers["Idempotency-Key"] == "gen-1:preview"


@pytest.mark.anyio
async def test_sora_poll_states():
    adapter = SoraVideoProvider("openai-sora-2", "sora-2", 10, 20, api_key="k", transport=_transport(body={"status": "in_progress", "progress": 42}))
    polled = await adapter.poll_status("video_1")
    assert (polled.status, polled.progress) == ("processing", 42)

    adapter = SoraVideoProvider("openai-sora-2", "sora-2", 10, 20, api_key="k", transport=_transport(body={"status": "completed"}))
    polled = await adapter.poll_status("video_1")
    assert polled.status == "completed"
    assert polled.result_url.endswith("/videos/video_1/content")

    adapter = SoraVideoProvider("openai-sora-2", "sora-2", 10, 20, api_key="k", transport=_transport(body={"status": "failed", "error": {"message": "policy"}}))
    polled = await adapter.poll_status("video_1")
    assert (polled.status, polled.error) == ("failed", "policy")


@pytest.mark.anyio
async def test_sora_poll_network_error_keeps_polling():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    adapter = SoraVideoProvider("openai-sora-2", "sora-2", 10, 20, api_key="k", transport=httpx.MockTransport(handler))
    assert (await adapter.poll_status("video_1")).status == "processing"


@pytest.mark.anyio
@pytest.mark.parametrize("status, expected", [(429, "processing"), (502, "processing"), (404, "failed")])
async def test_poll_http_errors_only_fail_when_permanent(status, expected):
    sora = SoraVideoProvider("openai-sora-2", "sora-2", 10, 20, api_key="k", transport=_transport(status=status))
    assert (await sora.poll_status("video_1")).status == expected

    kling = KlingImageToVideoProvider(api_key="k", transport=_transport(status=status))
    assert (await kling.poll_status("req-1")).status == expected


@pytest.mark.anyio
async def test_kling_requires_reference_image():
    adapter = KlingImageToVideoProvider(api_key="k", transport=_transport())
    result = await adapter.generate(_params())

    assert result.error.code == "MISSING_INPUT"
    assert not result.error.retryable


@pytest.mark.anyio
async def test_kling_submission_and_completed_poll():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Key k"
        if request.method == "POST":
            return httpx.Response(200, json={"request_id": "req-1"})
        if request.url.path.endswith("/status"):
            return httpx.Response(200, json={"status": "COMPLETED"})
        return httpx.Response(200, json={"video": {"url": "https://fal.media/out.mp4"}})

    adapter = KlingImageToVideoProvider(api_key="k", transport=httpx.MockTransport(handler))
    result = await adapter.generate(_params(reference_image_url="https://img/1.png"))
    assert result.external_job_id == "req-1"
    assert result.cost_cents == 25

    polled = await adapter.poll_status("req-1")
    assert polled.status == "completed"
    assert polled.result_url == "https://fal.media/out.mp4"


def test_resolver_is_a_static_table():
    resolver = AdapterResolver()
    assert resolver.keys() == sorted([
        "anthropic-haiku", "anthropic-sonnet", "kling-i2v", "openai-sora-2", "openai-sora-2-pro", "openai-tts",
    ])
    assert resolver.resolve("openai-tts").name == "openai-tts"
    assert resolver.resolve("nope") is None
    resolver.validate(["openai-tts"])
    with pytest.raises(UnknownProviderError) as err:
        resolver.validate(["openai-tts", "nope"])
    assert err.value.keys == ["nope"]


def test_execution_path_selection():
    resolver = AdapterResolver()

    def job(tool_type):
        return Job(id="j", workspace_id="ws", type=tool_type, provider="x", created_at="2025-01-01T00:00:00+00:00")

    assert ExecutionEngine.is_async(job("video"), resolver.resolve("openai-sora-2"))
    assert ExecutionEngine.is_async(job("image-to-video"), resolver.resolve("kling-i2v"))
    assert not ExecutionEngine.is_async(job("script"), resolver.resolve("anthropic-haiku"))
    # a polling adapter asked for a non-video tool stays on the sync path
    assert not ExecutionEngine.is_async(job("image"), resolver.resolve("kling-i2v"))
