"""Core types and DTOs for the streaming gateway."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

DEFAULT_MODEL = "gemini-2.5-flash"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TurnRole(str, Enum):
    """Author of a conversational turn."""

    USER = "user"
    MODEL = "model"


class TaskState(str, Enum):
    """Lifecycle of a task inside the TaskQueue."""

    PENDING = "pending"  # Waiting for a free slot
    ACTIVE = "active"  # Admitted under the concurrency cap
    DONE = "done"  # Settled (success or failure)


# ---------------------------------------------------------------------------
# Conversation content
# ---------------------------------------------------------------------------


def text_part(text: str) -> dict[str, Any]:
    """Build a text content part in upstream wire form."""
    return {"text": text}


def inline_part(mime_type: str, data: str) -> dict[str, Any]:
    """Build an inline binary part (base64 ``data``) in upstream wire form."""
    return {"inlineData": {"mimeType": mime_type, "data": data}}


@dataclass(frozen=True)
class Turn:
    """One attributed message in a conversation.

    Parts are kept in upstream wire form and are not validated here;
    the upstream model rejects malformed parts.
    """

    role: str = TurnRole.USER.value
    parts: tuple[Any, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Turn:
        parts = data.get("parts") or ()
        return cls(
            role=data.get("role") or TurnRole.USER.value,
            parts=tuple(parts) if isinstance(parts, (list, tuple)) else (parts,),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "parts": list(self.parts)}


# ---------------------------------------------------------------------------
# Raw caller input: tagged union resolved once at the boundary
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextInput:
    text: str


@dataclass(frozen=True)
class SingleTurnInput:
    turn: Turn


@dataclass(frozen=True)
class TurnListInput:
    turns: tuple[Turn, ...]


RawInput = Union[TextInput, SingleTurnInput, TurnListInput]


# ---------------------------------------------------------------------------
# Generation request: input to the gateway
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GenerationRequest:
    """A normalized request for one model generation.

    Built through ``normalizer.build_request`` so that ``turns`` is always
    the canonical tuple of Turn.
    """

    turns: tuple[Turn, ...]
    model_name: str = DEFAULT_MODEL
    generation_config: Mapping[str, Any] = field(default_factory=dict)
    system_instruction: Any = None

    @property
    def wants_image_output(self) -> bool:
        """True when the generation config asks for image output."""
        modalities = self.generation_config.get("responseModalities") or ()
        if isinstance(modalities, str):
            modalities = (modalities,)
        return any(str(m).upper() == "IMAGE" for m in modalities)

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the gateway submission body (inside ``data``)."""
        payload: dict[str, Any] = {
            "modelName": self.model_name,
            "contents": [turn.to_dict() for turn in self.turns],
        }
        if self.generation_config:
            payload["config"] = dict(self.generation_config)
        if self.system_instruction:
            payload["systemInstruction"] = self.system_instruction
        return payload


# ---------------------------------------------------------------------------
# Gateway result: output of the client
# ---------------------------------------------------------------------------


@dataclass
class GatewayResult:
    """Decoded outcome of one gateway call.

    ``complete`` is False when the terminal envelope never arrived and the
    result was recovered from the raw streamed text.
    """

    aggregated_text: str = ""
    structured_response: dict[str, Any] = field(default_factory=dict)
    complete: bool = True

    @property
    def total_tokens(self) -> int:
        """Token usage reported by the upstream model (0 when absent)."""
        usage = self.structured_response.get("usageMetadata") or {}
        return int(usage.get("totalTokenCount") or 0)

    def first_inline_image(self) -> str | None:
        """Return the first inline binary part as a data URL, if any."""
        for candidate in self.structured_response.get("candidates") or []:
            for part in (candidate.get("content") or {}).get("parts") or []:
                inline = part.get("inlineData") if isinstance(part, dict) else None
                if inline and inline.get("data"):
                    mime_type = inline.get("mimeType") or "image/png"
                    return f"data:{mime_type};base64,{inline['data']}"
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.aggregated_text,
            "response": self.structured_response,
            "complete": self.complete,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> GatewayResult:
        return cls(
            aggregated_text=data.get("text", ""),
            structured_response=dict(data.get("response") or {}),
            complete=data.get("complete", True),
        )


# ---------------------------------------------------------------------------
# Client orchestration state
# ---------------------------------------------------------------------------


@dataclass
class QueueTask:
    """One operation submitted to the TaskQueue."""

    operation: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    sequence: int = 0
    state: TaskState = TaskState.PENDING
    enqueued_at: float = 0.0  # time.monotonic()
    started_at: float | None = None
    completed_at: float | None = None


@dataclass(frozen=True)
class RetryAttempt:
    """A scheduled retry of a failed operation (not persisted)."""

    attempt_number: int  # 1-based number of the attempt about to run
    delay_before_attempt: float  # seconds
