"""Upstream model adapter: Google Gemini ``generateContent`` over httpx.

Two call shapes:
  - ``generate``     one non-streaming call returning the full response
  - ``open_stream``  a ``streamGenerateContent?alt=sse`` call whose
                     response chunks are iterated as they arrive

HTTP failures are raised as typed UpstreamError subclasses carrying the
provider's status code, so retry classification never parses messages.
``open_stream`` raises before returning, i.e. before the gateway writes any
byte to its caller.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from stream_gateway.gateway.errors import UpstreamError, UpstreamFailure, error_from_status
from stream_gateway.gateway.types import GenerationRequest

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://generativelanguage.googleapis.com/v1beta"


class GeminiUpstream:
    """Gemini REST adapter holding the deployment-scoped API key."""

    def __init__(
        self,
        api_key: str,
        api_base: str = DEFAULT_API_BASE,
        timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _url(self, model: str, method: str) -> str:
        return f"{self.api_base}/models/{model}:{method}"

    def _check_key(self) -> None:
        if not self.api_key:
            raise UpstreamFailure("GEMINI_API_KEY is not configured", status_code=500)

    @staticmethod
    def build_payload(request: GenerationRequest) -> dict[str, Any]:
        """Translate a GenerationRequest into the Gemini request body."""
        payload: dict[str, Any] = {
            "contents": [turn.to_dict() for turn in request.turns],
        }
        if request.generation_config:
            payload["generationConfig"] = dict(request.generation_config)

        # System instruction (separate from contents in Gemini API)
        instruction = request.system_instruction
        if instruction:
            if isinstance(instruction, str):
                instruction = {"parts": [{"text": instruction}]}
            payload["systemInstruction"] = instruction
        return payload

    async def generate(self, request: GenerationRequest) -> dict[str, Any]:
        """Single non-streaming call. Returns the raw response object."""
        self._check_key()
        url = self._url(request.model_name, "generateContent")

        try:
            async with self._client() as client:
                resp = await client.post(
                    url,
                    json=self.build_payload(request),
                    params={"key": self.api_key},
                    headers={"Content-Type": "application/json"},
                )
        except httpx.TimeoutException as exc:
            raise UpstreamFailure(f"Gemini timeout after {self.timeout}s", status_code=504) from exc
        except httpx.HTTPError as exc:
            raise UpstreamFailure(f"Gemini request failed: {exc}", status_code=502) from exc

        if resp.status_code >= 400:
            raise _error_from_response(resp.status_code, resp.text)
        return resp.json()

    async def open_stream(self, request: GenerationRequest) -> GeminiStream:
        """Start a streaming call; raises if the upstream rejects it."""
        self._check_key()
        url = self._url(request.model_name, "streamGenerateContent")
        client = self._client()
        http_request = client.build_request(
            "POST",
            url,
            json=self.build_payload(request),
            params={"alt": "sse", "key": self.api_key},
            headers={"Content-Type": "application/json"},
        )

        try:
            resp = await client.send(http_request, stream=True)
        except httpx.TimeoutException as exc:
            await client.aclose()
            raise UpstreamFailure(f"Gemini timeout after {self.timeout}s", status_code=504) from exc
        except httpx.HTTPError as exc:
            await client.aclose()
            raise UpstreamFailure(f"Gemini request failed: {exc}", status_code=502) from exc

        if resp.status_code >= 400:
            body = await resp.aread()
            await resp.aclose()
            await client.aclose()
            raise _error_from_response(resp.status_code, body.decode("utf-8", errors="replace"))

        return GeminiStream(client, resp)


class GeminiStream:
    """Iterator over the response objects of a streaming Gemini call."""

    def __init__(self, client: httpx.AsyncClient, response: httpx.Response):
        self._client = client
        self._response = response

    async def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        async for line in self._response.aiter_lines():
            if not line.startswith("data:"):
                continue
            data = line[len("data:") :].strip()
            if not data:
                continue
            chunk = json.loads(data)
            if isinstance(chunk, dict) and "error" in chunk:
                error = chunk["error"] or {}
                raise error_from_status(int(error.get("code") or 500), error.get("message") or "Gemini stream error")
            yield chunk

    async def aclose(self) -> None:
        await self._response.aclose()
        await self._client.aclose()


def chunk_text(chunk: dict[str, Any]) -> str:
    """Text carried by one response chunk; non-text parts are skipped."""
    candidates = chunk.get("candidates") or []
    if not candidates:
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(p["text"] for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str))


def merge_stream_responses(chunks: list[dict[str, Any]]) -> dict[str, Any]:
    """Fold streamed chunks into one response object.

    Text parts of the first candidate are concatenated into a single part;
    non-text parts are kept in order. finishReason, safetyRatings,
    usageMetadata and modelVersion come from the latest chunk carrying them.
    """
    if not chunks:
        return {}

    merged: dict[str, Any] = {}
    text = ""
    other_parts: list[Any] = []
    candidate: dict[str, Any] = {}

    for chunk in chunks:
        for key in ("usageMetadata", "modelVersion", "responseId", "promptFeedback"):
            if key in chunk:
                merged[key] = chunk[key]

        candidates = chunk.get("candidates") or []
        if not candidates:
            continue
        current = candidates[0]
        for key in ("finishReason", "safetyRatings", "citationMetadata", "index"):
            if key in current:
                candidate[key] = current[key]
        content = current.get("content") or {}
        if "role" in content:
            candidate.setdefault("content", {})["role"] = content["role"]
        for part in content.get("parts") or []:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                text += part["text"]
            else:
                other_parts.append(part)

    if candidate or text or other_parts:
        parts = ([{"text": text}] if text else []) + other_parts
        content = candidate.setdefault("content", {})
        content.setdefault("role", "model")
        content["parts"] = parts
        merged["candidates"] = [candidate]
    return merged


def _error_from_response(status_code: int, body: str) -> UpstreamError:
    message = body
    try:
        data = json.loads(body)
    except ValueError:
        data = None
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        message = data["error"].get("message") or body
    logger.warning("Gemini returned %d: %s", status_code, message[:200])
    return error_from_status(status_code, f"[{status_code}] {message}")
