"""Message Normalizer: canonicalizes caller input into ordered turns.

Caller input arrives in one of three shapes:
  - plain text            → one user turn with one text part
  - a single turn object  → wrapped in a one-element list
  - a list of turns       → passed through (each entry coerced to Turn)

The shape is resolved once, at the boundary, into the RawInput tagged
union; everything past the boundary only sees ``list[Turn]``.
Part contents are not validated; the upstream model rejects bad parts.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from stream_gateway.gateway.errors import ClientInputError
from stream_gateway.gateway.types import (
    DEFAULT_MODEL,
    GenerationRequest,
    RawInput,
    SingleTurnInput,
    TextInput,
    Turn,
    TurnListInput,
    text_part,
)

logger = logging.getLogger(__name__)


def classify_raw_input(value: Any) -> RawInput:
    """Resolve untyped caller input into the RawInput tagged union."""
    if isinstance(value, (TextInput, SingleTurnInput, TurnListInput)):
        return value
    if isinstance(value, str):
        return TextInput(value)
    if isinstance(value, Turn):
        return SingleTurnInput(value)
    if isinstance(value, Mapping):
        if "parts" not in value:
            raise ClientInputError("Contents object must expose 'parts'.")
        return SingleTurnInput(Turn.from_dict(value))
    if isinstance(value, (list, tuple)):
        return TurnListInput(tuple(_coerce_turn(item) for item in value))
    raise ClientInputError(f"Unsupported contents type: {type(value).__name__}")


def normalize_turns(value: Any) -> list[Turn]:
    """Return the canonical ordered list of turns for any accepted input.

    Idempotent: a list of Turn passes through unchanged.
    """
    raw = classify_raw_input(value)
    if isinstance(raw, TextInput):
        return [Turn(parts=(text_part(raw.text),))]
    if isinstance(raw, SingleTurnInput):
        return [raw.turn]
    return list(raw.turns)


def build_request(
    contents: Any,
    model_name: str | None = None,
    config: Mapping[str, Any] | None = None,
    system_instruction: Any = None,
) -> GenerationRequest:
    """Normalize caller input into an immutable GenerationRequest.

    Raises ClientInputError if no turns remain after normalization.
    """
    turns = normalize_turns(contents)
    if not turns:
        raise ClientInputError("Missing contents payload.")

    return GenerationRequest(
        turns=tuple(turns),
        model_name=model_name or DEFAULT_MODEL,
        generation_config=dict(config or {}),
        system_instruction=system_instruction,
    )


def _coerce_turn(item: Any) -> Turn:
    if isinstance(item, Turn):
        return item
    if isinstance(item, Mapping):
        return Turn.from_dict(item)
    raise ClientInputError(f"Unsupported turn entry: {type(item).__name__}")
