"""Inference relay: turns a submission into a streamed response body.

Flow for one call:
  1. ``parse_submission`` validates and normalizes the request body
  2. ``GenerationRelay.start`` opens the upstream call and reads it up to
     the first text fragment; any failure here is raised before a single
     byte is written
  3. the returned async iterator yields text chunks followed by the
     terminal envelope (protocol.encode_terminal)

Image modality → one non-streaming upstream call, zero chunks, envelope.
Text modality  → streaming call, each text fragment relayed as produced.

A failure after streaming has begun cannot change the status code; the
body simply ends without an envelope and the client falls back.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from stream_gateway.core.metrics import GATEWAY_REQUESTS, GATEWAY_STREAM_CHUNKS
from stream_gateway.gateway.errors import ClientInputError, UpstreamError, UpstreamFailure
from stream_gateway.gateway.normalizer import build_request
from stream_gateway.gateway.protocol import encode_terminal
from stream_gateway.gateway.types import GenerationRequest
from stream_gateway.gateway.upstream import GeminiStream, GeminiUpstream, chunk_text, merge_stream_responses

logger = logging.getLogger(__name__)


def parse_submission(body: Any, default_model: str | None = None) -> GenerationRequest:
    """Build a GenerationRequest from a submission body.

    Accepts ``{"data": {...}}`` or the bare object. ``systemInstruction``
    falls back to ``config.systemInstruction`` (moved out of the config).
    """
    if not isinstance(body, dict):
        raise ClientInputError("Request body must be a JSON object.")

    payload = body.get("data") if isinstance(body.get("data"), dict) else body

    contents = payload.get("contents")
    if not contents:
        raise ClientInputError("Missing contents payload.")

    config = payload.get("config") or {}
    if not isinstance(config, dict):
        raise ClientInputError("config must be a JSON object.")
    config = dict(config)

    system_instruction = payload.get("systemInstruction")
    if not system_instruction and config.get("systemInstruction"):
        system_instruction = config.pop("systemInstruction")

    return build_request(
        contents,
        model_name=payload.get("modelName") or default_model,
        config=config,
        system_instruction=system_instruction,
    )


class GenerationRelay:
    """Relays one upstream generation per the streaming envelope protocol."""

    def __init__(self, upstream: GeminiUpstream):
        self.upstream = upstream

    async def start(self, request: GenerationRequest) -> AsyncIterator[str]:
        """Open the upstream call and return the response body iterator.

        Raises UpstreamError if the call fails before any output exists.
        """
        if request.wants_image_output:
            response = await self.upstream.generate(request)
            logger.info("Image generation completed for %s", request.model_name)
            GATEWAY_REQUESTS.labels(modality="image", outcome="success").inc()
            return self._single_envelope(response)

        stream = await self.upstream.open_stream(request)
        logger.debug("Upstream stream opened for %s", request.model_name)
        events = stream.__aiter__()
        primed = await self._prime(stream, events, request.model_name)
        return self._relay_stream(stream, events, primed, request.model_name)

    async def _prime(
        self,
        stream: GeminiStream,
        events: AsyncIterator[dict[str, Any]],
        model_name: str,
    ) -> list[dict[str, Any]]:
        """Read upstream events up to the first text fragment.

        Nothing has been written to the caller yet, so an upstream error
        event found here is raised and still becomes an error status.
        """
        primed: list[dict[str, Any]] = []
        try:
            async for chunk in events:
                primed.append(chunk)
                if chunk_text(chunk):
                    break
        except UpstreamError:
            await stream.aclose()
            raise
        except (httpx.HTTPError, ValueError) as exc:
            await stream.aclose()
            raise UpstreamFailure(f"Gemini stream failed before output: {exc}", status_code=502) from exc

        logger.debug("Primed %d upstream events for %s", len(primed), model_name)
        return primed

    async def _single_envelope(self, response: dict[str, Any]) -> AsyncIterator[str]:
        yield encode_terminal(response, "")

    async def _relay_stream(
        self,
        stream: GeminiStream,
        events: AsyncIterator[dict[str, Any]],
        primed: list[dict[str, Any]],
        model_name: str,
    ) -> AsyncIterator[str]:
        chunks: list[dict[str, Any]] = []
        aggregated: list[str] = []

        async def replay() -> AsyncIterator[dict[str, Any]]:
            for chunk in primed:
                yield chunk
            async for chunk in events:
                yield chunk

        try:
            async for chunk in replay():
                chunks.append(chunk)
                text = chunk_text(chunk)
                if not text:
                    continue
                aggregated.append(text)
                GATEWAY_STREAM_CHUNKS.inc()
                yield text
        except (UpstreamError, httpx.HTTPError, ValueError) as exc:
            # Status line is already sent; end the body without an envelope.
            logger.error(
                "Upstream stream for %s failed after %d chunks: %s",
                model_name,
                len(aggregated),
                exc,
                extra={"model_name": model_name},
            )
            GATEWAY_REQUESTS.labels(modality="text", outcome="truncated").inc()
            return
        finally:
            await stream.aclose()

        GATEWAY_REQUESTS.labels(modality="text", outcome="success").inc()
        yield encode_terminal(merge_stream_responses(chunks), "".join(aggregated))
