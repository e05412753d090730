"""
Helper endpoints: prompt suggestions, refinement chips and report e-mail
"""
import re
from typing import List

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse
import structlog

from referral_api.models.referral import EmailReportRequest, SuggestionRequest
from referral_api.services.errors import CompletionError, ValidationError
from referral_api.services.llm import CompletionOptions
from referral_api.services.prompts import assemble_suggestions
from referral_api.services.refinement import (
    REFINEMENT_SUGGESTIONS,
    build_refined_prompt,
    detect_search_category,
    get_suggestions_for_search,
    is_prompt_vague,
)

logger = structlog.get_logger()

router = APIRouter(tags=["support"])

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


@router.post("/suggest-prompt-improvements")
async def suggest_prompt_improvements(request: SuggestionRequest, req: Request):
    """
    Ask the model what details are missing from a search prompt
    """
    if not request.prompt:
        raise ValidationError("Prompt is required")

    settings = req.app.state.settings
    prompt = assemble_suggestions(request.prompt)
    options = CompletionOptions(
        model=settings.SUGGESTION_MODEL,
        max_tokens=settings.SUGGESTION_MAX_TOKENS,
    )

    try:
        suggestions = await req.app.state.llm_service.generate(prompt, options)
    except CompletionError as e:
        logger.error("Suggestion generation failed", error=str(e))
        raise HTTPException(status_code=500, detail="Failed to generate suggestions")

    return {"suggestions": suggestions}


@router.get("/refinements")
async def refinements(
    prompt: str = "",
    selected: List[str] = Query(default=[]),
    manual: str = "",
):
    """
    Refinement chips from the static catalogue, plus the prompt that the
    selected chip ids and any manual rewrite produce. Unknown ids are ignored.
    """
    suggestions = get_suggestions_for_search(prompt)
    by_id = {s.id: s for s in REFINEMENT_SUGGESTIONS}
    chosen = [by_id[i] for i in selected if i in by_id]
    return {
        "vague": is_prompt_vague(prompt),
        "categories": detect_search_category(prompt),
        "suggestions": [s.model_dump() for s in suggestions],
        "refinedPrompt": build_refined_prompt(prompt, manual, chosen),
    }


@router.post("/email-pdf")
async def email_pdf(request: EmailReportRequest):
    """
    Accept a rendered report for e-mail delivery.

    Delivery is stubbed: the request is validated and logged only.
    """
    if not request.recipient_email or not request.html_content:
        return JSONResponse(status_code=400, content={"message": "Missing required fields"})

    if not EMAIL_PATTERN.match(request.recipient_email):
        return JSONResponse(status_code=400, content={"message": "Invalid email address"})

    logger.info(
        "Email report request received",
        recipient=request.recipient_email,
        html_length=len(request.html_content),
    )

    return {"success": True, "message": "Email sent successfully"}
