"""
LLM service for streaming completions from the OpenAI Responses API
"""
import asyncio
import json
from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator, Dict, Literal, Optional
import httpx
import structlog
from pydantic import BaseModel

from referral_api.services.config import Settings
from referral_api.services.errors import CompletionError

logger = structlog.get_logger()

# The hosted API calls the largest search context "high"
SEARCH_CONTEXT_SIZES = {"low": "low", "medium": "medium", "large": "high"}


class CompletionOptions(BaseModel):
    """Per-call knobs for the completion service"""
    model: Optional[str] = None
    max_tokens: int = 2000
    tools_enabled: bool = False
    reasoning_effort: Optional[Literal["low", "medium"]] = None
    search_context_size: Literal["low", "medium", "large"] = "medium"
    timeout: Optional[float] = None


class LLMService:
    """Service for LLM generation with the hosted completion API"""

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.http_client = http_client or httpx.AsyncClient(
            base_url=settings.OPENAI_BASE_URL,
            timeout=httpx.Timeout(settings.REQUEST_TIMEOUT),
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.settings.OPENAI_API_KEY:
            headers["Authorization"] = f"Bearer {self.settings.OPENAI_API_KEY}"
        return headers

    def _build_payload(self, prompt: str, options: CompletionOptions, stream: bool) -> Dict:
        payload = {
            "model": options.model or self.settings.REFERRAL_MODEL,
            "input": prompt,
            "max_output_tokens": options.max_tokens,
            "stream": stream,
        }
        if options.tools_enabled:
            payload["tools"] = [{
                "type": "web_search",
                "search_context_size": SEARCH_CONTEXT_SIZES[options.search_context_size],
            }]
        if options.reasoning_effort:
            payload["reasoning"] = {"effort": options.reasoning_effort}
        if self.settings.TEMPERATURE is not None and not options.reasoning_effort:
            payload["temperature"] = self.settings.TEMPERATURE
        return payload

    @asynccontextmanager
    async def stream(self, prompt: str, options: CompletionOptions) -> AsyncGenerator[AsyncIterator[str], None]:
        """
        Open a streaming completion.

        Usage::

            async with llm.stream(prompt, options) as tokens:
                async for token in tokens:
                    ...

        Leaving the block closes the upstream connection, which is how a
        consumer cancels the generation. Every failure surfaces as
        CompletionError.
        """
        timeout = options.timeout or self.settings.COMPLETION_TIMEOUT
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        payload = self._build_payload(prompt, options, stream=True)

        try:
            async with self.http_client.stream(
                "POST",
                "/responses",
                json=payload,
                headers=self._headers(),
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    raise self._status_error(response.status_code, body.decode("utf-8", "replace"))

                yield self._iter_deltas(response, deadline)

        except CompletionError:
            raise
        except httpx.TimeoutException as e:
            logger.error("LLM request timed out", error=str(e))
            raise CompletionError("Completion request timed out", cause=e) from e
        except httpx.HTTPError as e:
            logger.error("LLM request failed", error=str(e))
            raise CompletionError("Completion request failed", cause=e) from e

    async def _iter_deltas(self, response: httpx.Response, deadline: float) -> AsyncGenerator[str, None]:
        """Yield text deltas from the SSE body until the response completes"""
        loop = asyncio.get_running_loop()
        lines = response.aiter_lines()

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise CompletionError("Completion stream exceeded its time budget")
            try:
                line = await asyncio.wait_for(lines.__anext__(), timeout=remaining)
            except StopAsyncIteration:
                return
            except (asyncio.TimeoutError, httpx.TimeoutException) as e:
                logger.error("LLM stream timed out")
                raise CompletionError("Completion stream exceeded its time budget", cause=e) from e
            except httpx.HTTPError as e:
                logger.error("LLM stream interrupted", error=str(e))
                raise CompletionError("Completion stream interrupted", cause=e) from e

            if not line.startswith("data: "):
                continue
            data = line[6:]
            if data == "[DONE]":
                return

            try:
                chunk = json.loads(data)
            except json.JSONDecodeError:
                continue

            event_type = chunk.get("type", "")
            if event_type == "response.output_text.delta":
                text = chunk.get("delta", "")
                if text:
                    yield text
            elif event_type in ("response.completed", "response.incomplete"):
                if event_type == "response.incomplete":
                    logger.warning(
                        "LLM response incomplete",
                        reason=(chunk.get("response") or {}).get("incomplete_details"),
                    )
                return
            elif event_type in ("error", "response.failed"):
                raise CompletionError(f"Completion failed: {self._event_error_message(chunk)}")

    @staticmethod
    def _event_error_message(chunk: Dict) -> str:
        error = chunk.get("error") or (chunk.get("response") or {}).get("error") or {}
        if isinstance(error, dict):
            return error.get("message") or error.get("code") or "unknown error"
        return str(error) or chunk.get("message", "unknown error")

    @staticmethod
    def _status_error(status_code: int, body: str) -> CompletionError:
        if status_code == 429:
            message = "Completion service rate limit exceeded"
        elif status_code == 400:
            message = "Completion service rejected the request"
        else:
            message = f"Completion service returned HTTP {status_code}"
        logger.error("LLM request failed", status=status_code, body=body[:500])
        return CompletionError(message, status_code=status_code)

    async def generate(self, prompt: str, options: CompletionOptions) -> str:
        """
        Generate complete response from LLM (non-streaming)
        """
        payload = self._build_payload(prompt, options, stream=False)

        try:
            response = await self.http_client.post(
                "/responses",
                json=payload,
                headers=self._headers(),
                timeout=options.timeout or self.settings.REQUEST_TIMEOUT,
            )
        except httpx.HTTPError as e:
            logger.error("LLM generation failed", error=str(e))
            raise CompletionError("Completion request failed", cause=e) from e

        if response.status_code >= 400:
            raise self._status_error(response.status_code, response.text)

        result = response.json()
        parts = []
        for item in result.get("output", []):
            if item.get("type") != "message":
                continue
            for content in item.get("content", []):
                if content.get("type") == "output_text":
                    parts.append(content.get("text", ""))

        return "".join(parts).strip()

    async def close(self):
        """Clean up resources"""
        await self.http_client.aclose()
