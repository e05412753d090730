"""
Action plan endpoint for selected resources
"""
from functools import partial
from uuid import uuid4

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
import structlog

from referral_api.models.referral import ActionPlanRequest
from referral_api.services.errors import ValidationError
from referral_api.services.llm import CompletionOptions
from referral_api.services.multiplexer import EventStreamResponse, STREAM_HEADERS
from referral_api.services.pipeline import open_text_stream, stream_action_plan
from referral_api.services.prompts import assemble_resource_guide

logger = structlog.get_logger()

router = APIRouter(tags=["action-plan"])


@router.post("/generate-action-plan")
async def generate_action_plan(request: ActionPlanRequest, req: Request):
    """
    One resource streams bare markdown; several stream NDJSON slot events.
    The chosen format is announced in X-Stream-Format.
    """
    if not request.resources:
        raise ValidationError("Selected resources are required")

    request_id = req.headers.get("X-Request-ID", str(uuid4()))
    settings = req.app.state.settings
    llm_service = req.app.state.llm_service
    language = request.output_language or settings.DEFAULT_OUTPUT_LANGUAGE

    logger.info(
        "Action plan request received",
        request_id=request_id,
        resources=[r.number for r in request.resources],
        output_language=language,
    )

    options = CompletionOptions(
        model=settings.REFERRAL_MODEL,
        max_tokens=settings.ACTION_PLAN_MAX_TOKENS,
        tools_enabled=True,
        reasoning_effort=settings.REASONING_EFFORT,
        search_context_size="low",
    )

    if len(request.resources) == 1:
        prompt = assemble_resource_guide(request.resources[0], language)
        body = await open_text_stream(llm_service, prompt, options, endpoint="action_plan", request_id=request_id)
        return StreamingResponse(
            body,
            media_type="text/markdown",
            headers={**STREAM_HEADERS, "X-Stream-Format": "markdown", "X-Request-ID": request_id},
        )

    return EventStreamResponse(
        partial(
            stream_action_plan,
            llm=llm_service,
            resources=request.resources,
            options=options,
            output_language=language,
            emit_interval=settings.ACTION_PLAN_EMIT_INTERVAL,
            request_id=request_id,
        ),
        headers={"X-Request-ID": request_id},
        stream="action_plan",
    )
