"""
Incremental extraction of referral data from a streaming JSON completion.

The completion is a single JSON document that only becomes valid once the
last token arrives. ``JsonStreamScanner`` is a restartable pull-parser that
walks the growing buffer once, carrying container depth, key context and
string/escape state across chunk boundaries, and hands back the raw text of
every object that closes inside the top-level ``resources`` array.
``IncrementalExtractor`` turns those into stream events and runs the
authoritative finalization pass when the stream ends.
"""
import codecs
import json
import re
from typing import Any, Dict, List, Optional, Sequence, Set, Union

import structlog
from pydantic import BaseModel

from referral_api.models.referral import (
    CompleteEvent,
    FollowupsEvent,
    Metadata,
    MetadataEvent,
    ResourceEvent,
    ResourceRecord,
)
from referral_api.services.errors import ExtractionError

logger = structlog.get_logger()

DEFAULT_REQUIRED_FIELDS = ("number", "title")

_LEADING_FENCE = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_TRAILING_FENCE = re.compile(r"\s*```\s*$")


def strip_code_fences(text: str) -> str:
    """Remove a leading ``` / ```json fence and a trailing ``` fence"""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = _LEADING_FENCE.sub("", cleaned, count=1)
        cleaned = _TRAILING_FENCE.sub("", cleaned, count=1)
    return cleaned.strip()


def _decode_string(raw: str) -> str:
    try:
        return json.loads(f'"{raw}"')
    except ValueError:
        return raw


class _Frame:
    __slots__ = ("kind", "key")

    def __init__(self, kind: str, key: Optional[str]):
        self.kind = kind
        self.key = key


class JsonStreamScanner:
    """
    Pull-parser over an append-only JSON text buffer.

    Text before the first ``{`` (code fences, stray prose) is skipped. After
    the top-level object closes the scanner stops consuming.
    """

    def __init__(self, array_key: str = "resources"):
        self.array_key = array_key
        self.text = ""
        self.fields: Dict[str, str] = {}
        self._pos = 0
        self._stack: List[_Frame] = []
        self._in_string = False
        self._escape = False
        self._string_start = 0
        self._last_string: Optional[str] = None
        self._pending_key: Optional[str] = None
        self._item_start: Optional[int] = None
        self.finished = False

    def _in_target_array(self) -> bool:
        return (
            len(self._stack) == 2
            and self._stack[1].kind == "["
            and self._stack[1].key == self.array_key
        )

    def feed(self, chunk: str) -> List[str]:
        """
        Append text and return raw JSON for every array item that closed
        """
        self.text += chunk
        completed = []
        text = self.text
        i = self._pos

        while i < len(text) and not self.finished:
            c = text[i]

            if self._in_string:
                if self._escape:
                    self._escape = False
                elif c == "\\":
                    self._escape = True
                elif c == '"':
                    self._in_string = False
                    self._on_string(text[self._string_start:i])
                i += 1
                continue

            if not self._stack:
                if c == "{":
                    self._stack.append(_Frame("{", None))
                i += 1
                continue

            top = self._stack[-1]
            if c == '"':
                self._in_string = True
                self._string_start = i + 1
            elif c == ":":
                if top.kind == "{":
                    self._pending_key = self._last_string
                self._last_string = None
            elif c == ",":
                self._pending_key = None
                self._last_string = None
            elif c in "{[":
                key = self._pending_key if top.kind == "{" else None
                if c == "{" and self._in_target_array():
                    self._item_start = i
                self._stack.append(_Frame(c, key))
                self._pending_key = None
                self._last_string = None
            elif c in "}]":
                self._stack.pop()
                if c == "}" and self._item_start is not None and self._in_target_array():
                    completed.append(text[self._item_start:i + 1])
                    self._item_start = None
                if not self._stack:
                    self.finished = True
                self._pending_key = None
                self._last_string = None
            i += 1

        self._pos = i
        return completed

    def _on_string(self, raw: str) -> None:
        top = self._stack[-1]
        if top.kind != "{":
            return
        if self._pending_key is not None:
            # String value: keep top-level scalars such as question/summary
            if len(self._stack) == 1:
                self.fields[self._pending_key] = _decode_string(raw)
            self._pending_key = None
        else:
            self._last_string = _decode_string(raw)


def validate_resource(candidate: Any, required_fields: Sequence[str] = DEFAULT_REQUIRED_FIELDS) -> Optional[ResourceRecord]:
    """
    Return a ResourceRecord when candidate carries an integral number, a
    non-empty title and every required field, else None.

    Descriptive fields never disqualify a resource: nulls stay empty and
    non-string values are turned into text by the model.
    """
    if not isinstance(candidate, dict):
        return None
    number = candidate.get("number")
    if isinstance(number, bool):
        return None
    if isinstance(number, float) and number.is_integer():
        candidate = {**candidate, "number": int(number)}
    elif not isinstance(number, int):
        return None
    title = candidate.get("title")
    if not isinstance(title, str) or not title.strip():
        return None
    for field in required_fields:
        value = candidate.get(field)
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
    try:
        return ResourceRecord.model_validate(candidate)
    except ValueError as e:
        logger.warning("Resource failed model validation", number=candidate.get("number"), error=str(e))
        return None


class IncrementalExtractor:
    """
    Request-scoped extraction state: buffer, seen numbers, metadata flag.

    ``feed`` is called with every upstream chunk and returns the events that
    became available; ``finalize`` is called once the upstream completes.
    """

    def __init__(self, required_fields: Sequence[str] = DEFAULT_REQUIRED_FIELDS):
        self.required_fields = tuple(required_fields)
        self.scanner = JsonStreamScanner()
        self.seen: Set[int] = set()
        self.metadata_sent = False
        self.incremental_count = 0
        self.catch_up_count = 0
        self.incomplete_count = 0
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def buffer(self) -> str:
        return self.scanner.text

    def feed(self, chunk: Union[str, bytes]) -> List[BaseModel]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        events: List[BaseModel] = []

        for raw in self.scanner.feed(chunk):
            try:
                candidate = json.loads(raw)
            except json.JSONDecodeError:
                # Retried by the finalization pass
                continue
            record = validate_resource(candidate, self.required_fields)
            if record is None or record.number in self.seen:
                continue
            self.seen.add(record.number)
            self.incremental_count += 1
            if not record.is_complete:
                self.incomplete_count += 1
            events.append(ResourceEvent(data=record))

        if not self.metadata_sent:
            fields = self.scanner.fields
            if "question" in fields and "summary" in fields:
                self.metadata_sent = True
                events.append(MetadataEvent(data=Metadata(question=fields["question"], summary=fields["summary"])))

        return events

    def parse_document(self) -> Dict[str, Any]:
        """Authoritative parse of the complete buffer"""
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self.scanner.text += tail
        cleaned = strip_code_fences(self.buffer)
        try:
            document = json.loads(cleaned)
        except json.JSONDecodeError as e:
            raise ExtractionError(f"Failed to parse AI response: {e.msg} at position {e.pos}", raw_response=self.buffer) from e
        if not isinstance(document, dict):
            raise ExtractionError("Failed to parse AI response: expected a JSON object", raw_response=self.buffer)
        return document

    def finalize(self) -> List[BaseModel]:
        """
        Catch-up pass: unseen resources, authoritative metadata, follow-ups,
        then complete. Raises ExtractionError when the document is invalid.
        """
        document = self.parse_document()
        events: List[BaseModel] = []

        resources = document.get("resources")
        if isinstance(resources, list):
            for candidate in resources:
                record = validate_resource(candidate, ())
                if record is None:
                    logger.warning("Skipping malformed resource in final document", candidate=str(candidate)[:200])
                    continue
                if record.number in self.seen:
                    continue
                self.seen.add(record.number)
                self.catch_up_count += 1
                if not record.is_complete:
                    self.incomplete_count += 1
                events.append(ResourceEvent(data=record))

        events.append(MetadataEvent(data=Metadata(
            question=_as_text(document.get("question")),
            summary=_as_text(document.get("summary")),
        )))

        followups = document.get("suggestedFollowUps")
        if isinstance(followups, list):
            events.append(FollowupsEvent(data=[str(item) for item in followups]))

        events.append(CompleteEvent())
        return events


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)
