"""Streaming Envelope Protocol: wire contract between gateway and client.

The response body is UTF-8 text:

    <chunk><chunk>...<chunk>\\n__END_GEMINI__{"response": {...}, "text": "..."}

Chunks are written verbatim as produced so callers can render them
incrementally. After the upstream call completes the gateway appends a
newline, END_MARKER and the JSON terminal envelope, then stops writing.

Generated text containing the literal END_MARKER breaks framing. There is
no escaping; the marker is chosen to be implausible in natural text.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from stream_gateway.gateway.errors import DecodeError, UpstreamFailure
from stream_gateway.gateway.types import GatewayResult

logger = logging.getLogger(__name__)

END_MARKER = "__END_GEMINI__"

# Longest tail that may still turn out to be "\n" + a partial END_MARKER
_HOLDBACK = len(END_MARKER) + 1


def encode_terminal(response: Any, text: str) -> str:
    """Serialize the terminal block appended after the streamed chunks."""
    envelope = json.dumps({"response": response, "text": text}, ensure_ascii=False)
    return f"\n{END_MARKER}{envelope}"


def decode_body(buffer: str) -> GatewayResult:
    """Decode a complete response body into a GatewayResult.

    Without END_MARKER the body is either a JSON error object (raised as
    UpstreamFailure) or partial text, returned with ``complete=False``.
    """
    parts = buffer.split(END_MARKER, 1)
    if len(parts) == 2:
        return _parse_envelope(parts[1])

    try:
        manual = json.loads(buffer)
    except ValueError:
        manual = None
    if isinstance(manual, dict) and manual.get("error"):
        raise UpstreamFailure(str(manual["error"]))

    logger.warning(
        "Gateway response missing end marker, returning %d chars of raw text",
        len(buffer),
        extra={"desync": True},
    )
    return GatewayResult(aggregated_text=buffer, structured_response={}, complete=False)


def _parse_envelope(raw: str) -> GatewayResult:
    try:
        envelope = json.loads(raw)
    except ValueError as exc:
        logger.error("Failed to parse terminal envelope JSON (%d chars)", len(raw))
        raise DecodeError("Failed to parse AI response.") from exc

    if not isinstance(envelope, dict):
        raise DecodeError("Terminal envelope is not a JSON object.")

    response = envelope.get("response")
    return GatewayResult(
        aggregated_text=envelope.get("text") or "",
        structured_response=response if isinstance(response, dict) else {},
    )


class StreamDecoder:
    """Incrementally separates visible text from the terminal envelope.

    Usage:
        decoder = StreamDecoder()
        async for piece in response.aiter_text():
            render(decoder.feed(piece))
        render(decoder.flush())
        result = decoder.result()
    """

    def __init__(self):
        self._buffer = ""
        self._emitted = 0
        self._terminated = False

    def feed(self, data: str) -> str:
        """Add received text; return the newly renderable part.

        The marker, its leading newline and the envelope are never returned.
        """
        self._buffer += data
        if self._terminated:
            return ""

        marker_at = self._buffer.find(END_MARKER, max(0, self._emitted - _HOLDBACK))
        if marker_at != -1:
            self._terminated = True
            visible_end = marker_at
            if visible_end > 0 and self._buffer[visible_end - 1] == "\n":
                visible_end -= 1
            return self._take(max(visible_end, self._emitted))

        return self._take(max(self._emitted, len(self._buffer) - _HOLDBACK))

    def flush(self) -> str:
        """Release text held back at the end of a body with no envelope."""
        if self._terminated:
            return ""
        return self._take(len(self._buffer))

    def result(self) -> GatewayResult:
        return decode_body(self._buffer)

    def _take(self, end: int) -> str:
        visible = self._buffer[self._emitted : end]
        self._emitted = end
        return visible
