"""
Data models for referral generation and the streaming wire protocol
"""
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base model using camelCase keys on the wire"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ResourceRecord(WireModel):
    """One referral item produced by the model"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    number: int
    title: str
    service: Optional[str] = None
    category: Optional[str] = None
    provider_type: Optional[str] = None
    why_it_fits: Optional[str] = None
    eligibility: Optional[str] = None
    services: Optional[str] = None
    support: Optional[str] = None
    contact: Optional[str] = None
    source: Optional[str] = None
    badge: Optional[str] = None
    class_date: Optional[str] = None

    @field_validator(
        "service", "category", "provider_type", "why_it_fits", "eligibility",
        "services", "support", "contact", "source", "badge", "class_date",
        mode="before",
    )
    @classmethod
    def as_text(cls, v):
        """Descriptive fields are display text; structured values are kept as JSON"""
        if v is None or isinstance(v, str):
            return v
        if isinstance(v, (dict, list)):
            return json.dumps(v, ensure_ascii=False)
        return str(v)

    @property
    def is_complete(self) -> bool:
        """Descriptive fields needed before a card can be rendered"""
        return all([self.title, self.service, self.category, self.provider_type])


# Referral stream events

class StatusEvent(BaseModel):
    type: Literal["status"] = "status"
    message: str


class ResourceEvent(BaseModel):
    type: Literal["resource"] = "resource"
    data: ResourceRecord


class Metadata(BaseModel):
    question: str = ""
    summary: str = ""


class MetadataEvent(BaseModel):
    type: Literal["metadata"] = "metadata"
    data: Metadata


class FollowupsEvent(BaseModel):
    type: Literal["followups"] = "followups"
    data: List[str]


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    error: str


class CompleteEvent(BaseModel):
    type: Literal["complete"] = "complete"


StreamEvent = Annotated[
    Union[StatusEvent, ResourceEvent, MetadataEvent, FollowupsEvent, ErrorEvent, CompleteEvent],
    Field(discriminator="type"),
]
stream_event_adapter = TypeAdapter(StreamEvent)


# Action plan stream events

class SummaryDeltaEvent(BaseModel):
    type: Literal["summary"] = "summary"
    content: str


class ResourceSlotEvent(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: Literal["resource"] = "resource"
    resource_index: int
    content: str


ActionPlanEvent = Annotated[
    Union[SummaryDeltaEvent, ResourceSlotEvent, CompleteEvent, ErrorEvent],
    Field(discriminator="type"),
]
action_plan_event_adapter = TypeAdapter(ActionPlanEvent)

TERMINAL_EVENT_TYPES = frozenset({"complete", "error"})


def encode_event(event: BaseModel) -> bytes:
    """Serialize one event as a single NDJSON line"""
    return (event.model_dump_json(by_alias=True, exclude_none=True) + "\n").encode("utf-8")


# Requests

class ReferralFilters(WireModel):
    """Structured filter set chosen in the UI"""
    resource_types: List[str] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)
    sub_categories: List[str] = Field(default_factory=list)
    location: Optional[str] = None
    locations: List[str] = Field(default_factory=list)
    age_groups: List[str] = Field(default_factory=list)
    income_ranges: List[str] = Field(default_factory=list)
    languages: List[str] = Field(default_factory=list)
    accessibility_needs: List[str] = Field(default_factory=list)


class ReferralResponse(WireModel):
    """Authoritative response body for one turn"""
    question: str = ""
    summary: str = ""
    resources: Optional[List[ResourceRecord]] = None
    suggested_follow_ups: Optional[List[str]] = None
    content: Optional[str] = None


class HistoryTurn(WireModel):
    """Prior turn sent back to the server for follow-up context"""
    prompt: str
    response: ReferralResponse = Field(default_factory=ReferralResponse)


class ReferralRequest(WireModel):
    # Presence and type of prompt are checked by the prompt assembler
    prompt: Any = None
    conversation_history: List[HistoryTurn] = Field(default_factory=list)
    is_follow_up: bool = False
    filters: ReferralFilters = Field(default_factory=ReferralFilters)
    output_language: Optional[str] = None


class ActionPlanRequest(WireModel):
    resources: List[ResourceRecord] = Field(default_factory=list)
    output_language: Optional[str] = None


class ChatMessage(BaseModel):
    # Any role other than "user" is rendered as the assistant
    role: str
    content: str


class ChatRequest(BaseModel):
    message: Any = None
    history: List[ChatMessage] = Field(default_factory=list)


class SuggestionRequest(BaseModel):
    prompt: Optional[str] = None


class EmailReportRequest(WireModel):
    html_content: Optional[str] = None
    recipient_email: Optional[str] = None


# Client-side conversation state

class ConversationEntry(WireModel):
    """One completed client turn; never mutated once appended"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    prompt: str
    user_prompt: str
    response: ReferralResponse
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SessionProfile(BaseModel):
    """Case manager identity, read once per session"""
    model_config = ConfigDict(frozen=True)

    name: str = ""
    email: str = ""

    @classmethod
    def load(cls, path: Union[str, Path]) -> "SessionProfile":
        """Load from a persisted JSON file; a missing file gives an anonymous profile"""
        path = Path(path)
        if not path.exists():
            return cls()
        return cls.model_validate(json.loads(path.read_text(encoding="utf-8")))

    @property
    def is_identified(self) -> bool:
        return bool(self.name and self.email)
