"""Records shared by the extractor, the two stores and the tool surface."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

Language = Literal["hebrew", "english", "mixed", "unknown"]
UrlPurpose = Literal["restaurant", "movie", "media", "location", "social", "general", "unknown"]
EntityType = Literal["person", "place", "activity", "time", "confirmation"]
MessageType = Literal[
    "text",
    "link",
    "scheduling",
    "question",
    "confirmation",
    "image",
    "video",
    "audio",
    "document",
    "location",
    "contact",
    "media",
]
ResultSource = Literal["vector", "database", "both"]
ToolStatus = Literal["ok", "empty", "invalid", "not_ready", "error"]

CONTENT_METADATA_LIMIT = 1000
SEARCHABLE_METADATA_LIMIT = 1500


def _values(entities: list["Entity"], kind: str) -> list[str]:
    return [e.value for e in entities if e.type == kind]


class ExtractedURL(BaseModel):
    url: str
    domain: str = ""
    purpose: UrlPurpose = "general"
    context_before: str = ""
    context_after: str = ""
    position: int = Field(default=0, ge=0, description="Character offset of the URL in the text")


class Entity(BaseModel):
    """One extracted entity. `data` carries the structured payload (parsed date, polarity...)."""

    model_config = ConfigDict(frozen=True)

    type: EntityType
    value: str
    data: dict[str, Any] | None = None


class SchedulingInfo(BaseModel):
    is_scheduling: bool = False
    participants: list[str] = Field(default_factory=list)
    locations: list[str] = Field(default_factory=list)
    activities: list[str] = Field(default_factory=list)
    time_references: list[str] = Field(default_factory=list)
    confirmations: list[str] = Field(default_factory=list)
    urgency: bool = False


class MeetingContext(BaseModel):
    is_meeting_related: bool = False
    has_confirmation: bool = False
    confidence: float = 0.1


class Extraction(BaseModel):
    """Everything the feature extractor derives from one message body."""

    urls: list[ExtractedURL] = Field(default_factory=list)
    entities: list[Entity] = Field(default_factory=list)
    scheduling: SchedulingInfo = Field(default_factory=SchedulingInfo)
    languages: list[Language] = Field(default_factory=lambda: ["unknown"])
    message_type: MessageType = "text"
    meeting: MeetingContext = Field(default_factory=MeetingContext)

    @property
    def people(self) -> list[str]:
        return _values(self.entities, "person")

    @property
    def places(self) -> list[str]:
        return _values(self.entities, "place")

    @property
    def activities(self) -> list[str]:
        return _values(self.entities, "activity")

    @property
    def times(self) -> list[str]:
        return _values(self.entities, "time")

    @property
    def confirmations(self) -> list[str]:
        return _values(self.entities, "confirmation")


class RawMessageEvent(BaseModel):
    """Normalized message as handed over by the transport (live listener, history fetch, export)."""

    id: str
    chat_id: str
    chat_name: str = ""
    is_group: bool = False
    sender_name: str = ""
    sender_number: str = ""
    body: str = ""
    timestamp: int = Field(description="Epoch milliseconds")
    from_me: bool = False
    media_type: str | None = None
    has_media: bool = False


class Message(BaseModel):
    """Enriched message as persisted in the lexical store."""

    model_config = ConfigDict(frozen=True)

    id: str
    chat_id: str
    chat_name: str = ""
    is_group_message: bool = False
    sender_name: str = ""
    sender_number: str = ""
    content: str
    searchable_text: str = ""
    timestamp: int
    message_type: MessageType = "text"
    languages: list[Language] = Field(default_factory=lambda: ["unknown"])
    is_from_me: bool = False
    deleted: bool = False
    urls: list[ExtractedURL] = Field(default_factory=list)
    entities: list[Entity] = Field(default_factory=list)
    scheduling: SchedulingInfo | None = None

    @property
    def people(self) -> list[str]:
        return _values(self.entities, "person")

    @property
    def places(self) -> list[str]:
        return _values(self.entities, "place")

    @property
    def activities(self) -> list[str]:
        return _values(self.entities, "activity")

    @property
    def times(self) -> list[str]:
        return _values(self.entities, "time")

    @property
    def has_scheduling(self) -> bool:
        return bool(self.scheduling and self.scheduling.is_scheduling)


class IndexPosition(BaseModel):
    """Opaque handle to a slot in the vector arena. Only valid until the next compaction."""

    model_config = ConfigDict(frozen=True)

    slot: int = Field(ge=0)


class EntityLists(BaseModel):
    people: list[str] = Field(default_factory=list)
    places: list[str] = Field(default_factory=list)
    activities: list[str] = Field(default_factory=list)
    times: list[str] = Field(default_factory=list)


class UrlMeta(BaseModel):
    url: str
    domain: str = ""
    purpose: UrlPurpose = "general"


class VectorMetadata(BaseModel):
    """Denormalized copy of the filterable message fields, stored beside each vector."""

    model_config = ConfigDict(frozen=True)

    message_id: str
    chat_id: str
    chat_name: str = ""
    is_group_message: bool = False
    sender_name: str = ""
    timestamp: int = 0
    is_from_me: bool = False
    content: str = ""
    searchable_text: str = ""
    languages: list[Language] = Field(default_factory=lambda: ["unknown"])
    message_type: MessageType = "text"
    has_urls: bool = False
    url_count: int = 0
    has_scheduling: bool = False
    deleted: bool = False
    position: IndexPosition | None = None
    entities: EntityLists = Field(default_factory=EntityLists)
    scheduling: SchedulingInfo | None = None
    urls: list[UrlMeta] = Field(default_factory=list)

    @classmethod
    def from_message(cls, message: Message) -> "VectorMetadata":
        return cls(
            message_id=message.id,
            chat_id=message.chat_id,
            chat_name=message.chat_name,
            is_group_message=message.is_group_message,
            sender_name=message.sender_name,
            timestamp=message.timestamp,
            is_from_me=message.is_from_me,
            content=message.content[:CONTENT_METADATA_LIMIT],
            searchable_text=message.searchable_text[:SEARCHABLE_METADATA_LIMIT],
            languages=list(message.languages),
            message_type=message.message_type,
            has_urls=bool(message.urls),
            url_count=len(message.urls),
            has_scheduling=message.has_scheduling,
            entities=EntityLists(
                people=message.people,
                places=message.places,
                activities=message.activities,
                times=message.times,
            ),
            scheduling=message.scheduling if message.has_scheduling else None,
            urls=[UrlMeta(url=u.url, domain=u.domain, purpose=u.purpose) for u in message.urls],
        )


class VectorHit(BaseModel):
    position: IndexPosition
    score: float
    metadata: VectorMetadata


class DateRange(BaseModel):
    """Inclusive [start, end] window in epoch milliseconds."""

    model_config = ConfigDict(frozen=True)

    start: int
    end: int
    label: str | None = None

    @model_validator(mode="after")
    def _ordered(self) -> "DateRange":
        if self.end < self.start:
            raise ValueError("date range end precedes start")
        return self

    def contains(self, timestamp: int) -> bool:
        return self.start <= timestamp <= self.end


class NormalizedQuery(BaseModel):
    raw_query: str = ""
    clean_query: str = ""
    sender_filter: str | None = None
    date_range: DateRange | None = None
    date_phrase: str | None = None
    url_filter: bool = False
    scheduling_filter: bool = False
    entities: list[Entity] = Field(default_factory=list)
    languages: list[Language] = Field(default_factory=lambda: ["unknown"])
    keywords: list[str] = Field(default_factory=list)

    def entity_values(self, kind: str) -> list[str]:
        return _values(self.entities, kind)


class MessageFilter(BaseModel):
    """Conjunctive lexical filter. Unset fields do not constrain the query."""

    text: str | None = None
    sender: str | None = None
    date_range: DateRange | None = None
    chat_id: str | None = None
    chat_name: str | None = None
    is_group: bool | None = None
    has_urls: bool | None = None
    has_scheduling: bool | None = None
    is_from_me: bool | None = None
    include_deleted: bool = False
    limit: int | None = Field(default=50, ge=1)


class VectorFilter(BaseModel):
    """Predicate applied to vector hits after the similarity scan."""

    sender: str | None = None
    date_range: DateRange | None = None
    chat_id: str | None = None
    is_group: bool | None = None
    has_urls: bool | None = None
    scheduling_only: bool = False
    is_from_me: bool | None = None
    people: list[str] = Field(default_factory=list)
    places: list[str] = Field(default_factory=list)
    activities: list[str] = Field(default_factory=list)

    def matches(self, meta: VectorMetadata) -> bool:
        if self.sender and self.sender.lower() not in meta.sender_name.lower():
            return False
        if self.date_range and not self.date_range.contains(meta.timestamp):
            return False
        if self.chat_id is not None and meta.chat_id != self.chat_id:
            return False
        if self.is_group is not None and meta.is_group_message != self.is_group:
            return False
        if self.has_urls is not None and meta.has_urls != self.has_urls:
            return False
        if self.scheduling_only and not meta.has_scheduling:
            return False
        if self.is_from_me is not None and meta.is_from_me != self.is_from_me:
            return False
        if self.people or self.places or self.activities:
            # A person also matches as sender or chat name.
            return (
                _overlaps(self.people, [*meta.entities.people, meta.sender_name, meta.chat_name])
                or _overlaps(self.places, meta.entities.places)
                or _overlaps(self.activities, meta.entities.activities)
            )
        return True


def _overlaps(wanted: list[str], present: list[str]) -> bool:
    return any(w.lower() in p.lower() for w in wanted for p in present)


class SearchResult(BaseModel):
    message_id: str
    chat_id: str
    chat_name: str = ""
    is_group_message: bool = False
    sender_name: str = ""
    is_from_me: bool = False
    timestamp: int
    content: str = ""
    urls: list[str] = Field(default_factory=list)
    relevance_score: float | None = None
    source: ResultSource = "database"
    message_type: MessageType = "text"
    has_scheduling: bool = False
    meeting_confidence: float | None = None

    @classmethod
    def from_message(cls, message: Message, **extra: Any) -> "SearchResult":
        return cls(
            message_id=message.id,
            chat_id=message.chat_id,
            chat_name=message.chat_name,
            is_group_message=message.is_group_message,
            sender_name=message.sender_name,
            is_from_me=message.is_from_me,
            timestamp=message.timestamp,
            content=message.content,
            urls=[u.url for u in message.urls],
            message_type=message.message_type,
            has_scheduling=message.has_scheduling,
            **extra,
        )

    @classmethod
    def from_metadata(cls, meta: VectorMetadata, **extra: Any) -> "SearchResult":
        return cls(
            message_id=meta.message_id,
            chat_id=meta.chat_id,
            chat_name=meta.chat_name,
            is_group_message=meta.is_group_message,
            sender_name=meta.sender_name,
            is_from_me=meta.is_from_me,
            timestamp=meta.timestamp,
            content=meta.content,
            urls=[u.url for u in meta.urls],
            message_type=meta.message_type,
            has_scheduling=meta.has_scheduling,
            **extra,
        )


class UrlResult(BaseModel):
    url: str
    domain: str = ""
    purpose: UrlPurpose = "general"
    context_before: str = ""
    context_after: str = ""
    message_id: str
    chat_name: str = ""
    sender_name: str = ""
    timestamp: int
    content: str = ""


class GroupSummary(BaseModel):
    chat_id: str
    chat_name: str
    message_count: int = 0
    participant_count: int = 0
    last_message_time: int | None = None


class IngestStats(BaseModel):
    total_messages: int = 0
    new_messages: int = 0
    skipped_messages: int = 0
    empty_messages: int = 0
    errors: int = 0
    dry_run: bool = False


class IndexStats(BaseModel):
    total_vectors: int = 0
    active_vectors: int = 0
    deleted_vectors: int = 0
    scheduling_messages: int = 0
    messages_with_urls: int = 0
    language_distribution: dict[str, int] = Field(default_factory=dict)
    dimension: int | None = None
    model_name: str | None = None


class ToolResponse(BaseModel):
    status: ToolStatus
    message: str
    results: list[dict[str, Any]] = Field(default_factory=list)
