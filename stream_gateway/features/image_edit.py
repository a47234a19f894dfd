"""Image editing through the gateway's non-streaming image modality."""

from __future__ import annotations

from stream_gateway.core.sentry import report_error
from stream_gateway.gateway.client import GatewayClient
from stream_gateway.gateway.errors import GatewayError
from stream_gateway.gateway.types import DEFAULT_MODEL, inline_part, text_part


async def edit_image(
    client: GatewayClient,
    base64_image: str,
    mime_type: str,
    prompt: str,
    model_name: str = DEFAULT_MODEL,
) -> str:
    """Apply ``prompt`` to an image; returns the edited image as a data URL."""
    contents = {"parts": [inline_part(mime_type, base64_image), text_part(prompt)]}
    try:
        result = await client.generate(
            contents,
            model_name=model_name,
            config={"responseModalities": ["IMAGE"]},
        )
        image = result.first_inline_image()
        if image is None:
            raise GatewayError("AI did not return an image.")
        return image
    except GatewayError as exc:
        report_error(exc, function_name="edit_image", model_name=model_name)
        raise
