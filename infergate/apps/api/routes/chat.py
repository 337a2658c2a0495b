from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncGenerator

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from infergate.apps.api.deps import get_credential, get_orchestrator, get_request_id
from infergate.apps.api.errors import upstream_error_payload
from infergate.apps.api.schemas import ChatRequest, ChatResponse, ChatUsage, ErrorResponse
from infergate.core.errors import UpstreamError
from infergate.services.gateway import ChatCall, ChatReply, GatewayOrchestrator, GatewayStream


logger = logging.getLogger(__name__)
router = APIRouter(tags=["chat"])

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Content-Type": "text/event-stream",
    "Connection": "keep-alive",
}


def _wrap_payload(payload_type: str, request_id: str | None, data: dict) -> dict:
    # Always include the request identifier for traceability across streamed events.
    return {"type": payload_type, "request_id": request_id, "data": data}


def _sse_message(payload: dict) -> str:
    # SSE framing invariants: event name must be "message" and data must be a compact JSON line.
    data = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"event: message\ndata: {data}\n\n"


def _usage_body(reply: ChatReply) -> ChatUsage:
    return ChatUsage(
        tokens=reply.usage.tokens,
        cost=float(reply.usage.cost),
        monthly_total=reply.usage.monthly_total,
        monthly_limit=reply.usage.monthly_limit,
    )


def _to_call(payload: ChatRequest) -> ChatCall:
    return ChatCall(
        messages=[message.model_dump() for message in payload.messages],
        conversation_id=payload.conversation_id,
        tenant_id=payload.tenant_id,
        stream=payload.stream,
    )


async def _event_stream(
    stream: GatewayStream,
    http_request: Request,
    request_id: str | None,
) -> AsyncGenerator[str, None]:
    try:
        async for delta in stream:
            # Yield token deltas immediately to preserve streaming behavior.
            yield _sse_message(_wrap_payload("token.delta", request_id, {"delta": delta}))
            if await http_request.is_disconnected():
                logger.info("chat_stream_client_disconnected request_id=%s", request_id)
                return
    except UpstreamError as exc:
        # Headers are already sent; report the failure in-band and end the stream.
        yield _sse_message(_wrap_payload("error", request_id, upstream_error_payload(exc)))
        return
    finally:
        if not stream.finished:
            # Shield the close so a cancelled response task still releases the upstream connection.
            await asyncio.shield(stream.aclose())

    reply = stream.reply
    if reply is None:
        return
    yield _sse_message(
        _wrap_payload(
            "message.final",
            request_id,
            {"text": reply.message, "usage": _usage_body(reply).model_dump(by_alias=True)},
        )
    )


@router.post(
    "/chat",
    response_model=ChatResponse,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        504: {"model": ErrorResponse},
    },
)
async def chat(
    payload: ChatRequest,
    http_request: Request,
    credential: str | None = Depends(get_credential),
    request_id: str | None = Depends(get_request_id),
    orchestrator: GatewayOrchestrator = Depends(get_orchestrator),
):
    call = _to_call(payload)
    admission = await orchestrator.admit(credential, call, request_id=request_id)

    if not call.stream:
        reply = await orchestrator.complete(admission, call)
        return ChatResponse(message=reply.message, usage=_usage_body(reply))

    # Open upstream before committing to a 200 so provider rejections still map to status codes.
    stream = await orchestrator.open_stream(admission, call)
    return StreamingResponse(
        _event_stream(stream, http_request, request_id),
        headers=_SSE_HEADERS,
        media_type="text/event-stream",
    )
