"""Generation endpoint: streams model output followed by the terminal envelope."""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse

from stream_gateway.core.config import settings
from stream_gateway.core.metrics import GATEWAY_REQUESTS
from stream_gateway.gateway.errors import ClientInputError, UpstreamError
from stream_gateway.gateway.relay import GenerationRelay, parse_submission
from stream_gateway.gateway.upstream import GeminiUpstream

logger = logging.getLogger(__name__)

router = APIRouter(tags=["generate"])

_CORS_HEADERS = {"Access-Control-Allow-Origin": "*"}
_PREFLIGHT_HEADERS = {
    **_CORS_HEADERS,
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}


def get_relay() -> GenerationRelay:
    """Relay bound to the deployment-scoped model credential."""
    upstream = GeminiUpstream(
        api_key=settings.gemini_api_key,
        api_base=settings.gemini_api_base,
        timeout=settings.upstream_timeout_seconds,
    )
    return GenerationRelay(upstream)


@router.options("/generate", include_in_schema=False)
async def negotiate_generate():
    return Response(status_code=204, headers=_PREFLIGHT_HEADERS)


@router.post("/generate")
async def submit_generate(request: Request, relay: GenerationRelay = Depends(get_relay)):
    try:
        body = await request.json()
    except ValueError:
        return PlainTextResponse("Request body must be valid JSON.", status_code=400, headers=_CORS_HEADERS)

    try:
        generation = parse_submission(body, default_model=settings.default_model)
    except ClientInputError as e:
        return PlainTextResponse(str(e), status_code=e.status_code, headers=_CORS_HEADERS)

    try:
        body_iter = await relay.start(generation)
    except UpstreamError as e:
        logger.error("Gateway upstream error for %s: %s", generation.model_name, e)
        modality = "image" if generation.wants_image_output else "text"
        GATEWAY_REQUESTS.labels(modality=modality, outcome="failed").inc()
        # 503 keeps transient upstream failures retryable; "code" carries the upstream status
        status_code = 503 if e.is_transient else 500
        return JSONResponse(
            status_code=status_code,
            content={"error": str(e) or "Gemini proxy failed", "code": e.status_code},
            headers=_CORS_HEADERS,
        )

    return StreamingResponse(body_iter, media_type="text/plain; charset=utf-8", headers=_CORS_HEADERS)


@router.api_route(
    "/generate",
    methods=["GET", "PUT", "PATCH", "DELETE", "HEAD"],
    include_in_schema=False,
)
async def reject_generate_method():
    return Response(status_code=405, headers={**_CORS_HEADERS, "Allow": "POST, OPTIONS"})
