"""
Per-request streaming pipelines.

Each request runs in one task that owns its extractor, its seen set and its
multiplexer; nothing here is shared between requests.
"""
import asyncio
import time
from contextlib import AsyncExitStack
from typing import AsyncGenerator, Optional, Sequence

import structlog

from referral_api.models.referral import (
    CompleteEvent,
    ResourceRecord,
    ResourceSlotEvent,
    StatusEvent,
    SummaryDeltaEvent,
)
from referral_api.services.errors import CompletionError, ExtractionError, TransportError
from referral_api.services.extraction import IncrementalExtractor
from referral_api.services.llm import CompletionOptions, LLMService
from referral_api.services.multiplexer import EventMultiplexer
from referral_api.services.prompts import assemble_action_plan_summary, assemble_resource_guide
from referral_api.utils.metrics import (
    client_disconnects_counter,
    completion_errors_counter,
    extraction_errors_counter,
    stream_duration,
    track_first_token,
    track_resources,
)

logger = structlog.get_logger()

SEARCHING_MESSAGE = "Searching for resources that match your client's needs..."
ORGANIZING_MESSAGE = "Found results, organizing referrals..."
COMPLETION_FAILED_MESSAGE = "Sorry, we couldn't generate referrals right now. Please try again."
PARSE_FAILED_MESSAGE = "Failed to parse AI response. Please try again."
UNEXPECTED_MESSAGE = "An unexpected error occurred. Please try again."
ACTION_PLAN_FAILED_MESSAGE = "Sorry, we couldn't finish the action plan. Please try again."


async def stream_referrals(
    mux: EventMultiplexer,
    llm: LLMService,
    prompt: str,
    options: CompletionOptions,
    required_fields: Sequence[str] = ("number", "title"),
    request_id: Optional[str] = None,
) -> None:
    """
    Drive one referral completion into the multiplexer.

    Order on success: status*, resource* (metadata interleaved), metadata,
    followups, complete. Any failure ends with a single error event.
    """
    start_time = time.time()
    extractor = IncrementalExtractor(required_fields=required_fields)
    first_token_time = None

    try:
        await mux.write_event(StatusEvent(message=SEARCHING_MESSAGE))

        async with llm.stream(prompt, options) as tokens:
            async for chunk in tokens:
                if first_token_time is None:
                    first_token_time = time.time()
                    track_first_token("referrals", first_token_time - start_time)
                    if not extractor.seen:
                        await mux.write_event(StatusEvent(message=ORGANIZING_MESSAGE))

                for event in extractor.feed(chunk):
                    await mux.write_event(event)

        for event in extractor.finalize():
            await mux.write_event(event)

        track_resources(extractor.incremental_count, extractor.catch_up_count)
        logger.info(
            "Referral stream completed",
            request_id=request_id,
            resources=len(extractor.seen),
            incremental=extractor.incremental_count,
            catch_up=extractor.catch_up_count,
            incomplete=extractor.incomplete_count,
            total_time=time.time() - start_time,
        )

    except TransportError as e:
        client_disconnects_counter.labels(endpoint="referrals").inc()
        logger.warning("Referral stream aborted, client went away", request_id=request_id, error=str(e))

    except CompletionError as e:
        completion_errors_counter.labels(endpoint="referrals").inc()
        logger.error("Referral completion failed", request_id=request_id, error=str(e), cause=repr(e.cause))
        await mux.fail(COMPLETION_FAILED_MESSAGE)

    except ExtractionError as e:
        extraction_errors_counter.inc()
        logger.error(
            "Referral response was not valid JSON",
            request_id=request_id,
            error=str(e),
            raw_response=e.raw_response,
        )
        await mux.fail(PARSE_FAILED_MESSAGE)

    except Exception as e:
        logger.error("Referral stream failed", request_id=request_id, error=str(e), exc_info=True)
        await mux.fail(UNEXPECTED_MESSAGE)

    finally:
        stream_duration.labels(endpoint="referrals").observe(time.time() - start_time)


async def stream_action_plan(
    mux: EventMultiplexer,
    llm: LLMService,
    resources: Sequence[ResourceRecord],
    options: CompletionOptions,
    output_language: Optional[str] = None,
    emit_interval: float = 0.25,
    request_id: Optional[str] = None,
) -> None:
    """
    Stream a multi-resource action plan.

    The summary streams first as append-only deltas. Each resource guide is
    then generated in turn and re-sent whole as it grows, so a slot event
    always carries the complete current text for that slot.
    """
    start_time = time.time()
    loop = asyncio.get_running_loop()

    try:
        async with llm.stream(assemble_action_plan_summary(resources, output_language), options) as tokens:
            async for chunk in tokens:
                await mux.write_event(SummaryDeltaEvent(content=chunk))

        for index, resource in enumerate(resources):
            text = ""
            sent = ""
            last_emit = 0.0
            async with llm.stream(assemble_resource_guide(resource, output_language), options) as tokens:
                async for chunk in tokens:
                    text += chunk
                    now = loop.time()
                    if now - last_emit >= emit_interval:
                        await mux.write_event(ResourceSlotEvent(resource_index=index, content=text))
                        sent = text
                        last_emit = now
            if text != sent or not text:
                await mux.write_event(ResourceSlotEvent(resource_index=index, content=text))

        await mux.write_event(CompleteEvent())
        logger.info(
            "Action plan stream completed",
            request_id=request_id,
            resources=len(resources),
            total_time=time.time() - start_time,
        )

    except TransportError as e:
        client_disconnects_counter.labels(endpoint="action_plan").inc()
        logger.warning("Action plan stream aborted, client went away", request_id=request_id, error=str(e))

    except CompletionError as e:
        completion_errors_counter.labels(endpoint="action_plan").inc()
        logger.error("Action plan completion failed", request_id=request_id, error=str(e))
        await mux.fail(ACTION_PLAN_FAILED_MESSAGE)

    except Exception as e:
        logger.error("Action plan stream failed", request_id=request_id, error=str(e), exc_info=True)
        await mux.fail(UNEXPECTED_MESSAGE)

    finally:
        stream_duration.labels(endpoint="action_plan").observe(time.time() - start_time)


async def open_text_stream(
    llm: LLMService,
    prompt: str,
    options: CompletionOptions,
    endpoint: str,
    request_id: Optional[str] = None,
) -> AsyncGenerator[str, None]:
    """
    Prime a raw token stream before the response starts.

    The upstream call is opened and its first token awaited here, so an
    immediate failure raises CompletionError (and becomes an HTTP 500)
    instead of an empty 200 body. Returns a generator for StreamingResponse.
    """
    start_time = time.time()
    stack = AsyncExitStack()
    try:
        tokens = await stack.enter_async_context(llm.stream(prompt, options))
        iterator = tokens.__aiter__()
        try:
            first = await iterator.__anext__()
        except StopAsyncIteration:
            first = ""
    except BaseException:
        await stack.aclose()
        completion_errors_counter.labels(endpoint=endpoint).inc()
        raise

    track_first_token(endpoint, time.time() - start_time)

    async def relay() -> AsyncGenerator[str, None]:
        try:
            if first:
                yield first
            async for chunk in iterator:
                yield chunk
            logger.info("Text stream completed", endpoint=endpoint, request_id=request_id)
        except CompletionError as e:
            # Headers are already sent; the body simply ends early
            completion_errors_counter.labels(endpoint=endpoint).inc()
            logger.error("Text stream failed mid-response", endpoint=endpoint, request_id=request_id, error=str(e))
        finally:
            await stack.aclose()
            stream_duration.labels(endpoint=endpoint).observe(time.time() - start_time)

    return relay()
