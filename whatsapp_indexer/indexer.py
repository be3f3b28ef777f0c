"""
WhatsApp indexer: ingestion pipeline (extract -> lexical store + vector index)
and the query operations served by the tool surface.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Iterable, get_args

from whatsapp_indexer.config import IndexerConfig
from whatsapp_indexer.dates import Prefer, from_epoch_ms, resolve_date_query
from whatsapp_indexer.embeddings import EmbedFn, OllamaEmbeddingFunction
from whatsapp_indexer.errors import NotReadyError, PersistenceError, ValidationError
from whatsapp_indexer.extraction import build_searchable_text, detect_meeting_context, extract
from whatsapp_indexer.models import (
    DateRange,
    EntityLists,
    GroupSummary,
    IngestStats,
    Message,
    MessageFilter,
    RawMessageEvent,
    SearchResult,
    UrlPurpose,
    UrlResult,
    VectorFilter,
    VectorMetadata,
)
from whatsapp_indexer.normalizer import normalize
from whatsapp_indexer.ranking import merge
from whatsapp_indexer.store import MessageStore
from whatsapp_indexer.vector_index import VectorIndex, embedding_text

logger = logging.getLogger(__name__)

MESSAGE_TYPE_FILTERS = {"all": None, "sent": True, "received": False}
DAY_MS = 24 * 60 * 60 * 1000
URL_PURPOSES = set(get_args(UrlPurpose))
ENTITY_TYPES = {
    "people": "person",
    "person": "person",
    "places": "place",
    "place": "place",
    "activities": "activity",
    "activity": "activity",
    "times": "time",
    "time": "time",
}


def build_message(event: RawMessageEvent, context_chars: int = 50) -> Message | None:
    """Enrich a raw event. Returns None for empty content (never persisted)."""
    content = (event.body or "").strip()
    if not content:
        return None
    extraction = extract(
        content,
        media_type=event.media_type,
        has_media=event.has_media,
        now=from_epoch_ms(event.timestamp),
        context_chars=context_chars,
    )
    sender = "Me" if event.from_me else (event.sender_name or event.sender_number or "Unknown")
    return Message(
        id=event.id,
        chat_id=event.chat_id,
        chat_name=event.chat_name,
        is_group_message=event.is_group,
        sender_name=sender,
        sender_number=event.sender_number,
        content=content,
        searchable_text=build_searchable_text(content, extraction),
        timestamp=event.timestamp,
        message_type=extraction.message_type,
        languages=extraction.languages,
        is_from_me=event.from_me,
        urls=extraction.urls,
        entities=extraction.entities,
        scheduling=extraction.scheduling if extraction.scheduling.is_scheduling else None,
    )


def _with_meeting(message: Message, **extra: Any) -> SearchResult:
    confidence = detect_meeting_context(message.content).confidence
    return SearchResult.from_message(message, meeting_confidence=confidence, **extra)


def _check_limit(limit: int) -> int:
    if not isinstance(limit, int) or limit < 1:
        raise ValidationError(f"limit must be a positive integer, got {limit!r}")
    return limit


def _require_text(value: str | None, name: str) -> str:
    if not value or not value.strip():
        raise ValidationError(f"{name} is required")
    return value.strip()


def _names(value: str | list[str] | None) -> list[str]:
    """Comma separated names (or a list of them), blanks dropped."""
    if not value:
        return []
    parts = value.split(",") if isinstance(value, str) else value
    return [p.strip() for p in parts if p and p.strip()]


class WhatsAppIndexer:
    """
    Handle over the message store and vector index. Call init() before use;
    every operation raises NotReadyError until it has completed.
    """

    def __init__(
        self,
        config: IndexerConfig | None = None,
        *,
        store: MessageStore | None = None,
        index: VectorIndex | None = None,
        embed_fn: EmbedFn | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config or IndexerConfig.from_env()
        self.store = store or MessageStore(self.config.database_path)
        if index is None:
            index = VectorIndex(
                self.config.vector_store_path,
                embed_fn or OllamaEmbeddingFunction(self.config.embed),
                dimension=self.config.embed.dimension,
                overfetch=self.config.search_overfetch,
                threshold=self.config.similarity_threshold,
                compaction_threshold=self.config.compaction_threshold,
                autosave_every=self.config.vector_autosave_every,
                model_name=self.config.embed.model,
            )
        self.index = index
        self._clock = clock or datetime.now
        self._executor: ThreadPoolExecutor | None = None
        self._ready = False

    # --- lifecycle ------------------------------------------------------

    def init(self) -> "WhatsAppIndexer":
        self.store.init()
        self.index.load()
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="wa-search")
        self._ready = True
        logger.info(
            "Indexer ready: %d messages, %d vectors",
            self.store.count(),
            self.index.size,
        )
        return self

    def close(self) -> None:
        if not self._ready:
            return
        self._ready = False
        try:
            self.index.save()
        finally:
            if self._executor is not None:
                self._executor.shutdown(wait=True)
                self._executor = None

    def __enter__(self) -> "WhatsAppIndexer":
        return self.init()

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def ready(self) -> bool:
        return self._ready

    def _require_ready(self) -> None:
        if not self._ready:
            raise NotReadyError("Indexer is still loading; call init() first")

    def _now(self) -> datetime:
        return self._clock()

    def _resolve(self, phrase: str, prefer: Prefer = "past") -> DateRange:
        resolved = resolve_date_query(phrase, self._now(), prefer)
        if resolved is None:
            raise ValidationError(f"Could not understand the date {phrase!r}")
        return resolved

    # --- ingestion ------------------------------------------------------

    def _write(self, message: Message) -> None:
        metadata = VectorMetadata.from_message(message)
        vector = self.index.embed([embedding_text(metadata)])[0]
        self.store.save(message)
        self.index.soft_delete(message.id)
        self.index.add(vector, metadata)

    def ingest(self, event: RawMessageEvent) -> Message | None:
        """
        Enrich and persist one message. Re-ingesting an id overwrites the row
        and supersedes its previous vector. Empty messages are dropped.
        """
        self._require_ready()
        message = build_message(event, self.config.url_context_chars)
        if message is None:
            logger.debug("Skipping empty message %s", event.id)
            return None
        self._write(message)
        return message

    def ingest_edit(self, message_id: str, event: RawMessageEvent) -> Message | None:
        """Re-ingest under `message_id`. An edit that empties the message deletes it."""
        self._require_ready()
        if event.id != message_id:
            event = event.model_copy(update={"id": message_id})
        if not (event.body or "").strip():
            self.ingest_delete(message_id)
            return None
        return self.ingest(event)

    def ingest_delete(self, message_id: str) -> bool:
        """Soft-delete the vector and tag the lexical row; compacts when due."""
        self._require_ready()
        tagged = self.index.soft_delete(message_id)
        marked = self.store.mark_deleted(message_id)
        if self.config.auto_compact and self.index.needs_compaction():
            self.index.compact()
        return bool(tagged or marked)

    def ingest_batch(self, events: Iterable[RawMessageEvent], dry_run: bool = False) -> IngestStats:
        """
        Backfill history. Ids already stored (or seen earlier in the batch) are
        skipped. A dry run writes nothing but reports the same statistics.
        """
        self._require_ready()
        stats = IngestStats(dry_run=dry_run)
        seen: set[str] = set()
        with self.index.autosave_paused():
            for event in events:
                stats.total_messages += 1
                if event.id in seen or self.store.exists(event.id):
                    stats.skipped_messages += 1
                    continue
                seen.add(event.id)
                message = build_message(event, self.config.url_context_chars)
                if message is None:
                    stats.empty_messages += 1
                    continue
                stats.new_messages += 1
                if dry_run:
                    continue
                try:
                    self._write(message)
                except PersistenceError as e:
                    stats.errors += 1
                    logger.error("Failed to index message %s: %s", event.id, e)
        if not dry_run:
            self.index.save()
        logger.info(
            "Batch %s: %d total, %d new, %d skipped, %d empty, %d errors",
            "dry run" if dry_run else "ingested",
            stats.total_messages,
            stats.new_messages,
            stats.skipped_messages,
            stats.empty_messages,
            stats.errors,
        )
        return stats

    def compact(self, force: bool = False) -> bool:
        self._require_ready()
        return self.index.compact(force=force)

    # --- queries --------------------------------------------------------

    def search(self, query: str, limit: int = 10, message_type_filter: str = "all") -> list[SearchResult]:
        """Hybrid search: lexical and vector legs run concurrently, then merge."""
        self._require_ready()
        _check_limit(limit)
        query = _require_text(query, "query")
        if message_type_filter not in MESSAGE_TYPE_FILTERS:
            raise ValidationError(f"message_type_filter must be one of {sorted(MESSAGE_TYPE_FILTERS)}")
        is_from_me = MESSAGE_TYPE_FILTERS[message_type_filter]
        nq = normalize(query, self._now())
        logger.debug("Search %r -> %r", query, nq.clean_query)

        lexical_filter = MessageFilter(
            text=nq.clean_query or None,
            sender=nq.sender_filter,
            date_range=nq.date_range,
            has_urls=True if nq.url_filter else None,
            has_scheduling=True if nq.scheduling_filter else None,
            is_from_me=is_from_me,
            limit=limit * self.index.overfetch,
        )
        vector_filter = VectorFilter(
            sender=nq.sender_filter,
            date_range=nq.date_range,
            has_urls=True if nq.url_filter else None,
            scheduling_only=nq.scheduling_filter,
            is_from_me=is_from_me,
            people=nq.entity_values("person"),
        )
        entities = EntityLists(
            people=nq.entity_values("person"),
            places=nq.entity_values("place"),
            activities=nq.entity_values("activity"),
        )
        lexical = self._executor.submit(self.store.query, lexical_filter)
        vector = None
        if nq.clean_query:
            vector = self._executor.submit(self.index.search_text, nq.clean_query, limit, vector_filter, entities)
        vector_hits = vector.result() if vector is not None else []
        results = merge(vector_hits, lexical.result(), limit)
        return [
            r.model_copy(update={"meeting_confidence": detect_meeting_context(r.content).confidence})
            for r in results
        ]

    def find_person_conversations(
        self,
        person_name: str,
        date_range_query: str | None = None,
        limit: int = 20,
    ) -> list[SearchResult]:
        """Messages by or about a person across individual and group chats."""
        self._require_ready()
        name = _require_text(person_name, "person_name")
        _check_limit(limit)
        date_range = self._resolve(date_range_query) if date_range_query else None
        messages = self.store.get_by_sender_across_chats(name, date_range, limit)
        return [_with_meeting(m) for m in messages]

    def get_messages_by_date(
        self,
        date_query: str,
        sender_filter: str | None = None,
        limit: int = 100,
    ) -> list[SearchResult]:
        self._require_ready()
        date_range = self._resolve(_require_text(date_query, "date_query"))
        _check_limit(limit)
        messages = self.store.query(MessageFilter(date_range=date_range, sender=sender_filter, limit=limit))
        return [_with_meeting(m) for m in messages]

    def get_urls_by_sender(self, sender_name: str, limit: int = 20) -> list[UrlResult]:
        self._require_ready()
        _check_limit(limit)
        return self.store.get_urls_by_sender(_require_text(sender_name, "sender_name"), limit)

    def get_urls_by_purpose(self, purpose: str, limit: int = 20) -> list[UrlResult]:
        self._require_ready()
        _check_limit(limit)
        purpose = _require_text(purpose, "purpose").lower()
        if purpose not in URL_PURPOSES:
            raise ValidationError(f"purpose must be one of {sorted(URL_PURPOSES)}")
        return self.store.get_urls_by_purpose(purpose, limit)

    def search_by_entity(self, entity_type: str, entity_value: str, limit: int = 10) -> list[SearchResult]:
        """Messages mentioning an extracted person, place, activity or time."""
        self._require_ready()
        _check_limit(limit)
        kind = ENTITY_TYPES.get(_require_text(entity_type, "entity_type").lower())
        if kind is None:
            raise ValidationError(f"entity_type must be one of {sorted(set(ENTITY_TYPES.values()))}")
        messages = self.store.search_by_entity(kind, _require_text(entity_value, "entity_value"), limit)
        return [_with_meeting(m) for m in messages]

    def search_scheduling(
        self,
        query: str,
        participants: str | list[str] | None = None,
        activities: str | list[str] | None = None,
        time_period: str | None = "this week",
        limit: int = 10,
    ) -> list[SearchResult]:
        """
        Hybrid search restricted to scheduling messages in a period. Named
        participants or activities keep only messages that mention one of them.
        """
        self._require_ready()
        _check_limit(limit)
        nq = normalize(_require_text(query, "query"), self._now())
        date_range = self._resolve(time_period) if time_period else nq.date_range
        wanted = VectorFilter(
            date_range=date_range,
            scheduling_only=True,
            people=_names(participants),
            activities=_names(activities),
        )
        lexical = [
            m
            for m in self.store.query(
                MessageFilter(
                    text=nq.clean_query or None,
                    date_range=date_range,
                    has_scheduling=True,
                    limit=limit * self.index.overfetch,
                )
            )
            if wanted.matches(VectorMetadata.from_message(m))
        ]
        entities = EntityLists(
            people=wanted.people or nq.entity_values("person"),
            places=nq.entity_values("place"),
            activities=wanted.activities or nq.entity_values("activity"),
        )
        hits = self.index.search_text(nq.clean_query, limit, wanted, entities) if nq.clean_query else []
        return [
            r.model_copy(update={"meeting_confidence": detect_meeting_context(r.content).confidence})
            for r in merge(hits, lexical, limit)
        ]

    def find_schedule_with_person(self, person_name: str, time_period: str = "this week") -> list[SearchResult]:
        """
        Scheduling threads involving a person. Each message by or about the
        person in the period is widened to its conversation window in the same
        chat; threads holding a scheduling or meeting-related message are
        returned, oldest first.
        """
        self._require_ready()
        name = _require_text(person_name, "person_name")
        date_range = self._resolve(time_period or "this week")
        window_ms = self.config.context_window_minutes * 60 * 1000

        anchors = self.store.get_by_sender_across_chats(name, date_range, limit=None)
        by_chat: dict[str, dict[str, Message]] = {}
        for anchor in anchors:
            window = self.store.get_chat_window(anchor.chat_id, anchor.timestamp - window_ms, anchor.timestamp + window_ms)
            chat = by_chat.setdefault(anchor.chat_id, {})
            for m in [anchor, *window]:
                chat[m.id] = m

        selected: list[Message] = []
        for messages in by_chat.values():
            for thread in self._threads(sorted(messages.values(), key=lambda m: m.timestamp), window_ms):
                if any(m.has_scheduling or detect_meeting_context(m.content).is_meeting_related for m in thread):
                    selected.extend(thread)
        selected.sort(key=lambda m: m.timestamp)
        return [_with_meeting(m) for m in selected]

    @staticmethod
    def _threads(messages: list[Message], gap_ms: int) -> list[list[Message]]:
        threads: list[list[Message]] = []
        for m in messages:
            if threads and m.timestamp - threads[-1][-1].timestamp <= gap_ms:
                threads[-1].append(m)
            else:
                threads.append([m])
        return threads

    def check_plans_for_day(self, day: str) -> list[SearchResult]:
        """
        Scheduling messages sent on `day`, plus earlier scheduling messages
        (within the lookback) whose time references point at that day.
        """
        self._require_ready()
        target = self._resolve(_require_text(day, "day"), prefer="future")
        found: dict[str, Message] = {m.id: m for m in self.store.get_scheduling_messages(target, limit=None)}

        lookback_start = target.start - self.config.plans_lookback_days * DAY_MS
        if self.config.plans_lookback_days and lookback_start < target.start:
            earlier = self.store.get_scheduling_messages(DateRange(start=lookback_start, end=target.start - 1), limit=None)
            for m in earlier:
                if m.id not in found and self._refers_to(m, target):
                    found[m.id] = m
        return [_with_meeting(m) for m in sorted(found.values(), key=lambda m: m.timestamp)]

    @staticmethod
    def _refers_to(message: Message, target: DateRange) -> bool:
        refs = message.scheduling.time_references if message.scheduling else message.times
        sent_at = from_epoch_ms(message.timestamp)
        for ref in refs:
            resolved = resolve_date_query(ref, sent_at, prefer="future")
            if resolved and target.contains(resolved.start) and target.contains(resolved.end):
                return True
        return False

    def list_groups(self) -> list[GroupSummary]:
        self._require_ready()
        return self.store.list_groups()

    def get_group_messages(self, group_name: str, limit: int = 20) -> list[SearchResult]:
        self._require_ready()
        _check_limit(limit)
        messages = self.store.get_group_messages(_require_text(group_name, "group_name"), limit)
        return [_with_meeting(m) for m in messages]

    def search_in_group(self, group_name: str, query: str, limit: int = 10) -> list[SearchResult]:
        self._require_ready()
        _check_limit(limit)
        group = _require_text(group_name, "group_name")
        nq = normalize(_require_text(query, "query"), self._now())
        messages = self.store.search_in_group(group, nq.clean_query or query, limit)
        return [_with_meeting(m) for m in messages]

    def get_individual_messages(self, contact_name: str | None = None, limit: int = 20) -> list[SearchResult]:
        self._require_ready()
        _check_limit(limit)
        return [_with_meeting(m) for m in self.store.get_individual_messages(contact_name, limit)]

    def get_sent_messages(
        self,
        date_query: str | None = None,
        chat_filter: str | None = None,
        limit: int = 20,
    ) -> list[SearchResult]:
        self._require_ready()
        _check_limit(limit)
        date_range = self._resolve(date_query) if date_query else None
        messages = self.store.query(
            MessageFilter(is_from_me=True, date_range=date_range, chat_name=chat_filter, limit=limit)
        )
        return [_with_meeting(m) for m in messages]

    def get_received_messages(
        self,
        date_query: str | None = None,
        sender_filter: str | None = None,
        limit: int = 20,
    ) -> list[SearchResult]:
        self._require_ready()
        _check_limit(limit)
        date_range = self._resolve(date_query) if date_query else None
        messages = self.store.query(
            MessageFilter(is_from_me=False, date_range=date_range, sender=sender_filter, limit=limit)
        )
        return [_with_meeting(m) for m in messages]

    def status(self) -> dict[str, Any]:
        self._require_ready()
        last = self.store.last_message()
        return {
            "ready": True,
            "store": self.store.stats(),
            "index": self.index.stats().model_dump(),
            "last_message": SearchResult.from_message(last).model_dump() if last else None,
        }
