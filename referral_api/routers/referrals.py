"""
Referral generation endpoint with NDJSON streaming
"""
from functools import partial
from uuid import uuid4

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
import structlog

from referral_api.models.referral import ReferralRequest
from referral_api.services.llm import CompletionOptions
from referral_api.services.multiplexer import EventStreamResponse, STREAM_HEADERS
from referral_api.services.pipeline import open_text_stream, stream_referrals
from referral_api.services.prompts import assemble

logger = structlog.get_logger()

router = APIRouter(tags=["referrals"])


@router.post("/generate-referrals")
async def generate_referrals(request: ReferralRequest, req: Request):
    """
    Stream referral resources for a client description.

    First turns stream NDJSON events; follow-up turns stream the raw JSON
    document produced by the model.
    """
    request_id = req.headers.get("X-Request-ID", str(uuid4()))
    settings = req.app.state.settings
    llm_service = req.app.state.llm_service

    prompt = assemble(
        request.prompt,
        filters=request.filters,
        history=request.conversation_history,
        output_language=request.output_language or settings.DEFAULT_OUTPUT_LANGUAGE,
        is_follow_up=request.is_follow_up,
        organization=settings.ORGANIZATION_NAME,
    )

    logger.info(
        "Referral request received",
        request_id=request_id,
        prompt_length=len(request.prompt),
        is_follow_up=request.is_follow_up,
        history_turns=len(request.conversation_history),
        categories=request.filters.categories,
    )

    options = CompletionOptions(
        model=settings.REFERRAL_MODEL,
        max_tokens=settings.REFERRAL_MAX_TOKENS,
        tools_enabled=True,
        reasoning_effort=settings.REASONING_EFFORT,
        search_context_size=settings.SEARCH_CONTEXT_SIZE,
    )

    if request.is_follow_up:
        body = await open_text_stream(llm_service, prompt, options, endpoint="follow_up", request_id=request_id)
        return StreamingResponse(
            body,
            media_type="text/plain",
            headers={**STREAM_HEADERS, "X-Stream-Format": "json", "X-Request-ID": request_id},
        )

    return EventStreamResponse(
        partial(
            stream_referrals,
            llm=llm_service,
            prompt=prompt,
            options=options,
            required_fields=settings.RESOURCE_REQUIRED_FIELDS,
            request_id=request_id,
        ),
        headers={"X-Request-ID": request_id},
        stream="referrals",
    )
