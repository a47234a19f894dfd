"""Gateway Client: single entry point for every model-backed feature.

    invoke(request)
      └─ queue.add(                       # at most K calls in flight, FIFO
           retry.run(                     # 429/503 retried with backoff
             raw_call(request)))          # POST + incremental body read
      └─ decode terminal envelope         # protocol.StreamDecoder

The client never caches results; callers that need caching layer it in
front (see features.cached_caller).

Usage:
    client = GatewayClient("http://localhost:8000/api/v1/generate")
    result = await client.generate("2+2?", on_chunk=print)
    result.aggregated_text, result.structured_response
"""

from __future__ import annotations

import dataclasses
import json
import logging
from collections.abc import Callable, Mapping
from functools import lru_cache
from typing import Any

import httpx

from stream_gateway.core.config import settings
from stream_gateway.core.metrics import CLIENT_RETRIES
from stream_gateway.gateway.errors import ClientInputError, GatewayError, UpstreamFailure, error_from_status
from stream_gateway.gateway.normalizer import build_request, normalize_turns
from stream_gateway.gateway.protocol import StreamDecoder
from stream_gateway.gateway.queue_manager import TaskQueue
from stream_gateway.gateway.retry import RetryPolicy
from stream_gateway.gateway.types import GatewayResult, GenerationRequest, RetryAttempt

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], None]

# Gateway-side input rejections (bad body, bad method)
_CLIENT_INPUT_STATUSES = frozenset({400, 405, 422})


class GatewayClient:
    """Calls the inference gateway under a concurrency cap with retries."""

    def __init__(
        self,
        base_url: str,
        queue: TaskQueue | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Args:
            base_url: Full URL of the gateway generate endpoint
            queue: Shared TaskQueue (one per process in production)
            retry_policy: Backoff policy for transient failures
            timeout: Optional httpx timeout for one gateway call (none by default)
            transport: Optional httpx transport (tests, ASGI in-process)
        """
        self.base_url = base_url
        self.queue = queue or TaskQueue()
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self._transport = transport

    async def invoke(
        self,
        request: GenerationRequest,
        on_chunk: ChunkCallback | None = None,
    ) -> GatewayResult:
        """Run one generation and return its decoded result.

        ``on_chunk`` receives streamed text as it arrives (never the
        envelope). Text already delivered is not retracted on failure.
        """
        turns = normalize_turns(request.turns)
        if not turns:
            raise ClientInputError("Generation request has no turns.")
        request = dataclasses.replace(request, turns=tuple(turns))

        return await self.queue.add(
            lambda: self.retry_policy.run(
                lambda: self._raw_call(request, on_chunk),
                on_retry=self._record_retry,
            )
        )

    async def generate(
        self,
        contents: Any,
        *,
        model_name: str | None = None,
        config: Mapping[str, Any] | None = None,
        system_instruction: Any = None,
        on_chunk: ChunkCallback | None = None,
    ) -> GatewayResult:
        """Convenience wrapper: build the request from raw contents, then invoke."""
        request = build_request(
            contents,
            model_name=model_name,
            config=config,
            system_instruction=system_instruction,
        )
        return await self.invoke(request, on_chunk=on_chunk)

    async def _raw_call(self, request: GenerationRequest, on_chunk: ChunkCallback | None) -> GatewayResult:
        decoder = StreamDecoder()
        received = 0

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                async with client.stream("POST", self.base_url, json={"data": request.to_payload()}) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                        raise _error_from_response(resp)

                    async for piece in resp.aiter_text():
                        received += len(piece)
                        visible = decoder.feed(piece)
                        if visible and on_chunk is not None:
                            on_chunk(visible)
        except httpx.TransportError as exc:
            if not received:
                raise UpstreamFailure(f"Gateway unreachable: {exc}") from exc
            # Body cut off mid-stream: decode what arrived (missing-marker fallback)
            logger.warning("Gateway stream broke after %d chars: %s", received, exc)

        tail = decoder.flush()
        if tail and on_chunk is not None:
            on_chunk(tail)
        return decoder.result()

    @staticmethod
    def _record_retry(attempt: RetryAttempt, exc: BaseException) -> None:
        status = getattr(exc, "status_code", 0)
        CLIENT_RETRIES.labels(status=str(status)).inc()
        logger.warning(
            "Gateway call failed with %s, attempt %d in %.2fs",
            status,
            attempt.attempt_number,
            attempt.delay_before_attempt,
            extra={"attempt": attempt.attempt_number, "status_code": status},
        )


def _error_from_response(resp: httpx.Response) -> GatewayError:
    """Rebuild the gateway's failure as a typed error.

    The gateway's JSON error body may carry the upstream status in ``code``;
    it takes precedence over the HTTP status for classification.
    """
    text = resp.text
    if resp.status_code in _CLIENT_INPUT_STATUSES:
        return ClientInputError(f"Gateway rejected request ({resp.status_code}): {text}")

    status_code = resp.status_code
    message = text
    try:
        body = json.loads(text)
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = str(body.get("error") or text)
        if isinstance(body.get("code"), int) and body["code"] >= 400:
            status_code = body["code"]
    return error_from_status(status_code, f"Gateway error ({resp.status_code}): {message}")


@lru_cache(maxsize=1)
def get_default_client() -> GatewayClient:
    """Process-wide client; its queue lives for the process lifetime."""
    return GatewayClient(
        base_url=settings.gateway_url,
        queue=TaskQueue(max_concurrent=settings.client_max_concurrent),
        retry_policy=RetryPolicy(
            max_retries=settings.client_max_retries,
            base_delay=settings.client_retry_base_delay,
        ),
        timeout=settings.client_timeout_seconds,
    )
