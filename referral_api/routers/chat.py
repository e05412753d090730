"""
Chat endpoint streaming plain markdown
"""
from uuid import uuid4

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
import structlog

from referral_api.models.referral import ChatRequest
from referral_api.services.llm import CompletionOptions
from referral_api.services.multiplexer import STREAM_HEADERS
from referral_api.services.pipeline import open_text_stream
from referral_api.services.prompts import assemble_chat

logger = structlog.get_logger()

router = APIRouter(tags=["chat"])


@router.post("/chat")
async def chat_endpoint(request: ChatRequest, req: Request) -> StreamingResponse:
    """
    Answer a staff question with web search; the body is the raw token stream
    """
    request_id = req.headers.get("X-Request-ID", str(uuid4()))
    settings = req.app.state.settings

    prompt = assemble_chat(request.message, request.history, organization=settings.ORGANIZATION_NAME)

    logger.info(
        "Chat request received",
        request_id=request_id,
        message_length=len(request.message),
        history_turns=len(request.history),
    )

    options = CompletionOptions(
        model=settings.CHAT_MODEL,
        max_tokens=settings.CHAT_MAX_TOKENS,
        tools_enabled=True,
        reasoning_effort="low",
        search_context_size="low",
    )

    body = await open_text_stream(req.app.state.llm_service, prompt, options, endpoint="chat", request_id=request_id)
    return StreamingResponse(
        body,
        media_type="text/markdown",
        headers={**STREAM_HEADERS, "X-Stream-Format": "markdown", "X-Request-ID": request_id},
    )
