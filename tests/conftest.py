import json
from collections.abc import AsyncGenerator, Callable

import httpx
import pytest

from stream_gateway.api.v1.generate import get_relay
from stream_gateway.gateway.relay import GenerationRelay
from stream_gateway.gateway.upstream import GeminiUpstream
from stream_gateway.main import app

GATEWAY_URL = "http://test/api/v1/generate"


def gemini_chunk(text: str | None = None, finish_reason: str | None = None, usage: dict | None = None) -> dict:
    """One streamGenerateContent response object."""
    candidate: dict = {"content": {"role": "model", "parts": [{"text": text}] if text is not None else []}}
    if finish_reason:
        candidate["finishReason"] = finish_reason
    chunk: dict = {"candidates": [candidate], "modelVersion": "gemini-2.5-flash"}
    if usage:
        chunk["usageMetadata"] = usage
    return chunk


def sse_body(*chunks: dict) -> bytes:
    return "".join(f"data: {json.dumps(c)}\r\n\r\n" for c in chunks).encode("utf-8")


class FakeGemini:
    """Records upstream calls and answers them like the Gemini REST API."""

    def __init__(self):
        self.calls: list[httpx.Request] = []
        self.stream_chunks: list[dict] = [
            gemini_chunk("4", finish_reason="STOP", usage={"totalTokenCount": 7}),
        ]
        self.image_response: dict = {
            "candidates": [
                {
                    "content": {
                        "role": "model",
                        "parts": [{"inlineData": {"mimeType": "image/png", "data": "iVBORw0KGgo="}}],
                    },
                    "finishReason": "STOP",
                }
            ],
            "usageMetadata": {"totalTokenCount": 1290},
        }
        self.error: tuple[int, str] | None = None
        self.raw_stream: bytes | None = None
        # Per-call stream bodies, consumed before raw_stream/stream_chunks
        self.queued_streams: list[bytes] = []

    chunk = staticmethod(gemini_chunk)
    sse = staticmethod(sse_body)

    def payload(self, index: int = -1) -> dict:
        return json.loads(self.calls[index].content)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if self.error is not None:
            status, message = self.error
            return httpx.Response(status, json={"error": {"code": status, "message": message}})
        if request.url.path.endswith(":streamGenerateContent"):
            if self.queued_streams:
                body = self.queued_streams.pop(0)
            elif self.raw_stream is not None:
                body = self.raw_stream
            else:
                body = sse_body(*self.stream_chunks)
            return httpx.Response(200, content=body, headers={"Content-Type": "text/event-stream"})
        return httpx.Response(200, json=self.image_response)


@pytest.fixture
def fake_gemini() -> FakeGemini:
    return FakeGemini()


@pytest.fixture
def make_upstream(fake_gemini: FakeGemini) -> Callable[..., GeminiUpstream]:
    def _make(api_key: str = "test-key") -> GeminiUpstream:
        return GeminiUpstream(api_key=api_key, transport=httpx.MockTransport(fake_gemini.handler))

    return _make


@pytest.fixture
def gateway_app(make_upstream):
    """The FastAPI app with its upstream replaced by FakeGemini."""
    app.dependency_overrides[get_relay] = lambda: GenerationRelay(make_upstream())
    yield app
    app.dependency_overrides.pop(get_relay, None)


@pytest.fixture
async def client(gateway_app) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = httpx.ASGITransport(app=gateway_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def asgi_transport(gateway_app) -> httpx.ASGITransport:
    return httpx.ASGITransport(app=gateway_app)
