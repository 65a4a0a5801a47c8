from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse, Response

from workflow_stream.api.responses import EventStreamResponse
from workflow_stream.relay import EventRelay
from workflow_stream.schemas.events import StreamRequest
from workflow_stream.settings import Settings

logger = logging.getLogger("workflow_stream.api")

router = APIRouter(prefix="/api", tags=["stream"])

# Prototype-friendly: any origin. Narrow this to the front end's domain when it is known.
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}

STREAM_MEDIA_TYPE = "text/event-stream; charset=utf-8"

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    # Best-effort hint to avoid buffering by some proxies
    "X-Accel-Buffering": "no",
    **CORS_HEADERS,
}


async def _read_prompt(request: Request) -> str:
    """
    Best-effort prompt extraction. A missing or malformed body is the same as an empty prompt.
    """
    try:
        raw = await request.body()
        body = json.loads(raw.decode("utf-8")) if raw.strip() else {}
        return StreamRequest.model_validate(body).prompt
    except Exception as e:
        logger.debug("unreadable stream request body (%s: %s); using empty prompt", type(e).__name__, e)
        return ""


@router.options("/stream", include_in_schema=False)
async def stream_preflight() -> Response:
    return Response(status_code=204, headers=CORS_HEADERS)


@router.post("/stream")
async def stream(request: Request) -> EventStreamResponse:
    """
    Run plan -> act -> reflect for `{"prompt": ...}` and stream progress (SSE).

    Emits:
      - event: ready (connection acknowledged, before any pipeline work)
      - event: progress (one per pipeline notification, forwarded verbatim)
      - event: final (aggregated run result; only on success)
      - event: error (best-effort `{message, name}`; only on failure)
      - event: done (always last)
    """
    prompt = await _read_prompt(request)
    relay: EventRelay = request.app.state.relay
    settings: Settings = request.app.state.settings
    return EventStreamResponse(
        relay,
        prompt,
        settings,
        media_type=STREAM_MEDIA_TYPE,
        headers=STREAM_HEADERS,
    )


@router.api_route("/stream", methods=["GET", "PUT", "PATCH", "DELETE"], include_in_schema=False)
async def stream_method_not_allowed() -> PlainTextResponse:
    return PlainTextResponse("Method Not Allowed", status_code=405)
