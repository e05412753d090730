"""
Client-side reducers for the action plan endpoint.

Several resources arrive as NDJSON (summary deltas plus per-slot guides);
a single resource arrives as bare markdown. The server names the format in
the X-Stream-Format header; when that header is missing the client falls
back to the resource count.
"""
import codecs
import json
from typing import Dict, List, Mapping, Optional, Union

import structlog
from pydantic import ValidationError as ModelValidationError

from referral_api.client.lines import LineBuffer
from referral_api.client.reducer import RETRY_MESSAGE, INCOMPLETE_MESSAGE, StreamState, TERMINAL_STATES
from referral_api.models.referral import (
    CompleteEvent,
    ErrorEvent,
    ResourceSlotEvent,
    SummaryDeltaEvent,
    action_plan_event_adapter,
)

logger = structlog.get_logger()

FORMAT_HEADER = "X-Stream-Format"
NDJSON = "ndjson"
MARKDOWN = "markdown"


def choose_format(headers: Optional[Mapping[str, str]], resource_count: int) -> str:
    """Prefer the announced format; infer from the request otherwise"""
    if headers is not None:
        announced = headers.get(FORMAT_HEADER) or headers.get(FORMAT_HEADER.lower())
        if announced in (NDJSON, MARKDOWN):
            return announced
    return MARKDOWN if resource_count == 1 else NDJSON


class ReplaceBySlot:
    """
    Merge policy for a growing document per slot: every update carries the
    full current text and overwrites the slot.
    """

    def __init__(self):
        self._slots: Dict[int, str] = {}

    def put(self, index: int, content: str) -> None:
        self._slots[index] = content

    def get(self, index: int) -> Optional[str]:
        return self._slots.get(index)

    def __len__(self) -> int:
        return len(self._slots)

    def items(self) -> List[str]:
        return [self._slots[i] for i in sorted(self._slots)]


class ActionPlanReducer:
    """NDJSON variant: summary appends, resource slots replace"""

    def __init__(self, resource_count: int = 0):
        self.resource_count = resource_count
        self.state = StreamState.IDLE
        self.summary = ""
        self.slots = ReplaceBySlot()
        self.error: Optional[str] = None
        self.dropped_lines = 0
        self._lines = LineBuffer()

    def start(self) -> None:
        self.__init__(self.resource_count)
        self.state = StreamState.CONNECTING

    def feed(self, chunk: Union[bytes, str]) -> None:
        if self.state not in (StreamState.CONNECTING, StreamState.STREAMING):
            return
        self.state = StreamState.STREAMING
        for line in self._lines.feed(chunk):
            self.dispatch_line(line)

    def finish(self) -> None:
        if self.state in (StreamState.CONNECTING, StreamState.STREAMING):
            for line in self._lines.flush():
                self.dispatch_line(line)
        if self.state in (StreamState.CONNECTING, StreamState.STREAMING):
            self.fail(INCOMPLETE_MESSAGE)

    def cancel(self) -> None:
        if self.state in (StreamState.CONNECTING, StreamState.STREAMING):
            self.state = StreamState.IDLE

    def fail(self, message: str = RETRY_MESSAGE) -> None:
        if self.state not in TERMINAL_STATES:
            self.state = StreamState.FAILED
            self.error = message

    def dispatch_line(self, line: str) -> None:
        try:
            event = action_plan_event_adapter.validate_python(json.loads(line))
        except (json.JSONDecodeError, ModelValidationError) as e:
            self.dropped_lines += 1
            logger.warning("Dropping malformed action plan line", line=line[:200], error=str(e))
            return
        self.dispatch(event)

    def dispatch(self, event) -> None:
        if self.state in TERMINAL_STATES:
            return
        if isinstance(event, SummaryDeltaEvent):
            self.summary += event.content
        elif isinstance(event, ResourceSlotEvent):
            self.slots.put(event.resource_index, event.content)
        elif isinstance(event, ErrorEvent):
            logger.warning("Action plan stream reported an error", error=event.error)
            self.fail(RETRY_MESSAGE)
        elif isinstance(event, CompleteEvent):
            self.state = StreamState.COMPLETE

    @property
    def content(self) -> str:
        """Full plan as markdown: summary then each resource guide"""
        parts = [self.summary.strip()] if self.summary.strip() else []
        parts.extend(text.strip() for text in self.slots.items() if text.strip())
        return "\n\n".join(parts)


class MarkdownPlanReducer:
    """Single-resource variant: the body is the markdown itself"""

    def __init__(self):
        self.state = StreamState.IDLE
        self.text = ""
        self.error: Optional[str] = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def start(self) -> None:
        self.__init__()
        self.state = StreamState.CONNECTING

    def feed(self, chunk: Union[bytes, str]) -> None:
        if self.state not in (StreamState.CONNECTING, StreamState.STREAMING):
            return
        self.state = StreamState.STREAMING
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self.text += chunk

    def finish(self) -> None:
        if self.state in (StreamState.CONNECTING, StreamState.STREAMING):
            self.text += self._decoder.decode(b"", final=True)
            self.state = StreamState.COMPLETE

    def cancel(self) -> None:
        if self.state in (StreamState.CONNECTING, StreamState.STREAMING):
            self.state = StreamState.IDLE

    def fail(self, message: str = RETRY_MESSAGE) -> None:
        if self.state not in TERMINAL_STATES:
            self.state = StreamState.FAILED
            self.error = message

    @property
    def content(self) -> str:
        return self.text
