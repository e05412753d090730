"""
Async HTTP client for the referral service.

Drives the stream reducers from a live response body. Cancelling the
awaiting task (or leaving the ``chat`` iterator early) closes the
underlying connection, which the server observes as a disconnect.
"""
import asyncio
from typing import AsyncGenerator, Dict, List, Optional, Sequence, Union

import httpx
import structlog

from referral_api.client.action_plan import (
    MARKDOWN,
    ActionPlanReducer,
    MarkdownPlanReducer,
    choose_format,
)
from referral_api.client.reducer import (
    RETRY_MESSAGE,
    ConversationHistory,
    FollowUpCollector,
    ReferralStreamReducer,
)
from referral_api.models.referral import (
    ChatMessage,
    ReferralFilters,
    ResourceRecord,
    SessionProfile,
)

logger = structlog.get_logger()

API_PREFIX = "/api/v1"


class ReferralClient:
    """Thin wrapper over httpx.AsyncClient that owns the conversation history"""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        http_client: Optional[httpx.AsyncClient] = None,
        profile: Optional[SessionProfile] = None,
        timeout: float = 300.0,
    ):
        self.http_client = http_client or httpx.AsyncClient(base_url=base_url, timeout=httpx.Timeout(timeout))
        self.profile = profile or SessionProfile()
        self.history = ConversationHistory()

    def _history_payload(self) -> List[Dict]:
        return [
            {"prompt": entry.prompt, "response": entry.response.to_wire()}
            for entry in self.history.entries
        ]

    async def generate_referrals(
        self,
        prompt: str,
        user_prompt: Optional[str] = None,
        filters: Optional[ReferralFilters] = None,
        output_language: Optional[str] = None,
        reducer: Optional[ReferralStreamReducer] = None,
    ) -> ReferralStreamReducer:
        """
        Run one first-turn referral search. The reducer is returned in its
        terminal state; pass one in to observe intermediate updates.
        """
        reducer = reducer or ReferralStreamReducer(self.history)
        reducer.start(user_prompt or prompt, prompt)
        payload = {
            "prompt": prompt,
            "conversationHistory": self._history_payload(),
            "isFollowUp": False,
            "filters": (filters or ReferralFilters()).to_wire(),
        }
        if output_language:
            payload["outputLanguage"] = output_language

        await self._drive(f"{API_PREFIX}/generate-referrals", payload, reducer)
        return reducer

    async def ask_follow_up(self, question: str, filters: Optional[ReferralFilters] = None) -> FollowUpCollector:
        """Follow-up turn: the body is a raw JSON document, not NDJSON"""
        collector = FollowUpCollector(self.history)
        collector.start(question)
        payload = {
            "prompt": question,
            "conversationHistory": self._history_payload(),
            "isFollowUp": True,
            "filters": (filters or ReferralFilters()).to_wire(),
        }
        await self._drive(f"{API_PREFIX}/generate-referrals", payload, collector)
        return collector

    async def generate_action_plan(
        self,
        resources: Sequence[ResourceRecord],
        output_language: Optional[str] = None,
    ) -> Union[ActionPlanReducer, MarkdownPlanReducer]:
        payload = {"resources": [r.to_wire() for r in resources]}
        if output_language:
            payload["outputLanguage"] = output_language

        reducer = None
        try:
            async with self.http_client.stream("POST", f"{API_PREFIX}/generate-action-plan", json=payload) as response:
                if choose_format(response.headers, len(resources)) == MARKDOWN:
                    reducer = MarkdownPlanReducer()
                else:
                    reducer = ActionPlanReducer(len(resources))
                reducer.start()
                if response.status_code >= 400:
                    await response.aread()
                    logger.error("Action plan request failed", status=response.status_code)
                    reducer.fail(RETRY_MESSAGE)
                    return reducer
                try:
                    async for chunk in response.aiter_bytes():
                        reducer.feed(chunk)
                except asyncio.CancelledError:
                    reducer.cancel()
                    raise
                reducer.finish()
                return reducer
        except httpx.HTTPError as e:
            logger.error("Action plan request failed", error=str(e))
            if reducer is None:
                reducer = MarkdownPlanReducer() if len(resources) == 1 else ActionPlanReducer(len(resources))
                reducer.start()
            reducer.fail(RETRY_MESSAGE)
            return reducer

    async def chat(self, message: str, history: Optional[Sequence[ChatMessage]] = None) -> AsyncGenerator[str, None]:
        """Yield markdown text as it arrives"""
        payload = {
            "message": message,
            "history": [m.model_dump() for m in history or []],
        }
        async with self.http_client.stream("POST", f"{API_PREFIX}/chat", json=payload) as response:
            response.raise_for_status()
            async for text in response.aiter_text():
                yield text

    async def suggest(self, prompt: str) -> str:
        response = await self.http_client.post(f"{API_PREFIX}/suggest-prompt-improvements", json={"prompt": prompt})
        response.raise_for_status()
        return response.json()["suggestions"]

    async def refinements(self, prompt: str, selected: Sequence[str] = (), manual: str = "") -> Dict:
        params = {"prompt": prompt, "selected": list(selected), "manual": manual}
        response = await self.http_client.get(f"{API_PREFIX}/refinements", params=params)
        response.raise_for_status()
        return response.json()

    async def send_email_report(self, html_content: str, recipient_email: Optional[str] = None) -> Dict:
        """Recipient defaults to the signed-in case manager"""
        payload = {
            "htmlContent": html_content,
            "recipientEmail": recipient_email or self.profile.email,
        }
        response = await self.http_client.post(f"{API_PREFIX}/email-pdf", json=payload)
        return response.json()

    def reset(self) -> None:
        """Start a new search: forget the conversation"""
        self.history.reset()

    async def _drive(self, path: str, payload: Dict, reducer) -> None:
        try:
            async with self.http_client.stream("POST", path, json=payload) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    logger.error("Stream request rejected", path=path, status=response.status_code, body=body[:200])
                    reducer.fail(RETRY_MESSAGE)
                    return
                try:
                    async for chunk in response.aiter_bytes():
                        reducer.feed(chunk)
                except asyncio.CancelledError:
                    reducer.cancel()
                    raise
                reducer.finish()
        except httpx.HTTPError as e:
            logger.error("Stream request failed", path=path, error=str(e))
            reducer.fail(RETRY_MESSAGE)

    async def close(self):
        await self.http_client.aclose()
