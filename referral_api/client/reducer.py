"""
Client-side reducer for the referral NDJSON stream.

The reducer is fed raw response bytes and maintains what the UI shows: a
status line, an ordered de-duplicated resource list, the summary, follow-up
suggestions, and the committed conversation history.
"""
import codecs
import json
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

import structlog
from pydantic import ValidationError as ModelValidationError

from referral_api.client.lines import LineBuffer
from referral_api.models.referral import (
    CompleteEvent,
    ConversationEntry,
    ErrorEvent,
    FollowupsEvent,
    MetadataEvent,
    ReferralResponse,
    ResourceEvent,
    ResourceRecord,
    StatusEvent,
    stream_event_adapter,
)
from referral_api.services.extraction import strip_code_fences

logger = structlog.get_logger()

RETRY_MESSAGE = "We couldn't finish generating referrals. Please try again."
INCOMPLETE_MESSAGE = "The response ended before it was complete. Please try again."


class StreamState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETE = "complete"
    FAILED = "failed"


TERMINAL_STATES = (StreamState.COMPLETE, StreamState.FAILED)


class AppendOnceByKey:
    """
    Merge policy for discrete records: first sighting of a key wins and
    later sightings are no-ops. Items stay sorted by key.
    """

    def __init__(self, key: Callable[[ResourceRecord], int] = lambda r: r.number):
        self._key = key
        self._items: Dict[int, ResourceRecord] = {}

    def merge(self, item: ResourceRecord) -> bool:
        k = self._key(item)
        if k in self._items:
            return False
        self._items[k] = item
        return True

    def __contains__(self, key: int) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)

    def items(self) -> List[ResourceRecord]:
        return [self._items[k] for k in sorted(self._items)]

    def clear(self) -> None:
        self._items.clear()


class ConversationHistory:
    """Append-only list of completed turns"""

    def __init__(self):
        self._entries: List[ConversationEntry] = []

    def append(self, entry: ConversationEntry) -> None:
        self._entries.append(entry)

    @property
    def entries(self) -> List[ConversationEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def reset(self) -> None:
        self._entries = []


class ReferralStreamReducer:
    """
    State machine: idle -> connecting -> streaming -> complete | failed.

    Events after a terminal state are ignored. A line that is not valid JSON
    (or not a known event) is dropped with a warning.
    """

    def __init__(self, history: Optional[ConversationHistory] = None):
        self.history = history if history is not None else ConversationHistory()
        self._reset_turn()

    def _reset_turn(self) -> None:
        self.state = StreamState.IDLE
        self.status_message: Optional[str] = None
        self.resources = AppendOnceByKey()
        self.question = ""
        self.user_prompt = ""
        self.prompt = ""
        self.summary = ""
        self.followups: List[str] = []
        self.error: Optional[str] = None
        self.dropped_lines = 0
        self._lines = LineBuffer()

    # Transitions

    def start(self, user_prompt: str, prompt: Optional[str] = None) -> None:
        """Submit: the displayed question is always the user's own words"""
        self._reset_turn()
        self.state = StreamState.CONNECTING
        self.user_prompt = user_prompt
        self.prompt = prompt or user_prompt
        self.question = user_prompt

    def feed(self, chunk: Union[bytes, str]) -> None:
        if self.state in TERMINAL_STATES or self.state == StreamState.IDLE:
            return
        if self.state == StreamState.CONNECTING:
            self.state = StreamState.STREAMING
        for line in self._lines.feed(chunk):
            self.dispatch_line(line)
            if self.state in TERMINAL_STATES:
                return

    def finish(self) -> None:
        """End of body; a stream without a terminal event counts as failed"""
        if self.state in (StreamState.CONNECTING, StreamState.STREAMING):
            for line in self._lines.flush():
                self.dispatch_line(line)
        if self.state in (StreamState.CONNECTING, StreamState.STREAMING):
            logger.warning("Referral stream ended without a terminal event", resources=len(self.resources))
            self._fail(INCOMPLETE_MESSAGE)

    def cancel(self) -> None:
        """Abandon the current turn without committing anything"""
        if self.state in (StreamState.CONNECTING, StreamState.STREAMING):
            logger.info("Referral stream cancelled", resources=len(self.resources))
            self._reset_turn()

    def fail(self, message: str = RETRY_MESSAGE) -> None:
        if self.state not in TERMINAL_STATES:
            self._fail(message)

    def _fail(self, message: str) -> None:
        self.state = StreamState.FAILED
        self.error = message

    # Dispatch

    def dispatch_line(self, line: str) -> None:
        try:
            event = stream_event_adapter.validate_python(json.loads(line))
        except (json.JSONDecodeError, ModelValidationError) as e:
            self.dropped_lines += 1
            logger.warning("Dropping malformed stream line", line=line[:200], error=str(e))
            return
        self.dispatch(event)

    def dispatch(self, event) -> None:
        if self.state in TERMINAL_STATES:
            return
        if isinstance(event, StatusEvent):
            self.status_message = event.message
        elif isinstance(event, ResourceEvent):
            self.resources.merge(event.data)
        elif isinstance(event, MetadataEvent):
            # The question slot keeps the user's original input
            self.summary = event.data.summary
        elif isinstance(event, FollowupsEvent):
            self.followups = list(event.data)
        elif isinstance(event, ErrorEvent):
            logger.warning("Referral stream reported an error", error=event.error)
            self._fail(RETRY_MESSAGE)
        elif isinstance(event, CompleteEvent):
            self.state = StreamState.COMPLETE
            self.history.append(self._entry())

    def _entry(self) -> ConversationEntry:
        return ConversationEntry(
            prompt=self.prompt,
            user_prompt=self.user_prompt,
            response=ReferralResponse(
                question=self.question,
                summary=self.summary,
                resources=self.resources.items(),
                suggested_follow_ups=list(self.followups),
            ),
        )

    # Views

    @property
    def resource_list(self) -> List[ResourceRecord]:
        return self.resources.items()

    @property
    def has_partial_results(self) -> bool:
        """Resources stay visible and selectable even after a failure"""
        return len(self.resources) > 0

    @property
    def is_blocking_error(self) -> bool:
        return self.state == StreamState.FAILED and not self.has_partial_results


class FollowUpCollector:
    """
    Collects the raw JSON document streamed for a follow-up turn
    """

    def __init__(self, history: ConversationHistory):
        self.history = history
        self.state = StreamState.IDLE
        self.text = ""
        self.error: Optional[str] = None
        self.entry: Optional[ConversationEntry] = None
        self.user_prompt = ""
        self.prompt = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def start(self, user_prompt: str, prompt: Optional[str] = None) -> None:
        self.state = StreamState.CONNECTING
        self.text = ""
        self.error = None
        self.entry = None
        self.user_prompt = user_prompt
        self.prompt = prompt or user_prompt
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: Union[bytes, str]) -> None:
        if self.state not in (StreamState.CONNECTING, StreamState.STREAMING):
            return
        self.state = StreamState.STREAMING
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self.text += chunk

    def cancel(self) -> None:
        if self.state in (StreamState.CONNECTING, StreamState.STREAMING):
            self.state = StreamState.IDLE
            self.text = ""

    def fail(self, message: str = RETRY_MESSAGE) -> None:
        if self.state not in TERMINAL_STATES:
            self.state = StreamState.FAILED
            self.error = message

    def finish(self) -> Optional[ConversationEntry]:
        if self.state not in (StreamState.CONNECTING, StreamState.STREAMING):
            return self.entry
        self.text += self._decoder.decode(b"", final=True)
        try:
            document = json.loads(strip_code_fences(self.text))
            if not isinstance(document, dict):
                raise ValueError("expected a JSON object")
        except ValueError as e:
            logger.warning("Follow-up response was not valid JSON", error=str(e), raw=self.text[:200])
            self.fail("Failed to parse response. Please try again.")
            return None

        self.entry = ConversationEntry(
            prompt=self.prompt,
            user_prompt=self.user_prompt,
            response=ReferralResponse(
                question=self.user_prompt,
                summary=str(document.get("summary") or ""),
                content=str(document.get("content") or ""),
            ),
        )
        self.history.append(self.entry)
        self.state = StreamState.COMPLETE
        return self.entry
