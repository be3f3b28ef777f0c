"""
Tool handlers over a WhatsAppIndexer.

Every handler returns a ToolResponse dict: status "ok" with formatted text and
result records, "empty" with a "No ... found" message, or "invalid" /
"not_ready" / "error" for failures. Handlers never raise.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Sequence

from pydantic import BaseModel

from whatsapp_indexer.errors import IndexerError, NotReadyError, ValidationError
from whatsapp_indexer.indexer import WhatsAppIndexer
from whatsapp_indexer.models import GroupSummary, SearchResult, ToolResponse, UrlResult

logger = logging.getLogger(__name__)

DATE_FORMAT = "%Y-%m-%d %H:%M"


def format_time(timestamp_ms: int | None) -> str:
    if timestamp_ms is None:
        return "unknown"
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime(DATE_FORMAT)


def format_result(r: SearchResult) -> str:
    kind = "[Group]" if r.is_group_message else "[Individual]"
    direction = "(sent)" if r.is_from_me else "(received)"
    marker = " [meeting]" if (r.meeting_confidence or 0) >= 0.7 else ""
    lines = [
        f"{kind} {r.chat_name or r.chat_id}{marker}",
        f"{format_time(r.timestamp)} - {r.sender_name} {direction}",
        f"Message: {r.content}",
    ]
    if r.urls:
        lines.append(f"URLs: {', '.join(r.urls)}")
    if r.relevance_score:
        lines.append(f"Relevance: {r.relevance_score:.3f} ({r.source})")
    return "\n".join(lines) + "\n---"


def format_url(u: UrlResult) -> str:
    return "\n".join(
        [
            f"{format_time(u.timestamp)} - {u.sender_name} in {u.chat_name}",
            f"URL: {u.url} ({u.purpose})",
            f"Message: {u.content}",
            "---",
        ]
    )


def format_group(g: GroupSummary) -> str:
    return "\n".join(
        [
            f"[Group] {g.chat_name}",
            f"Messages: {g.message_count}",
            f"Participants: {g.participant_count}",
            f"Last activity: {format_time(g.last_message_time)}",
            "---",
        ]
    )


def _quoted(label: str, value: str | None) -> str:
    return f' {label} "{value}"' if value else ""


class ToolHandlers:
    """One method per tool; registered on the MCP server as-is."""

    def __init__(self, indexer: WhatsAppIndexer):
        self.indexer = indexer

    def _respond(
        self,
        call: Callable[[], Sequence[BaseModel]],
        *,
        empty: str,
        found: str,
        fmt: Callable[[Any], str],
    ) -> dict[str, Any]:
        try:
            items = call()
        except ValidationError as e:
            return ToolResponse(status="invalid", message=f"Invalid request: {e}").model_dump()
        except NotReadyError as e:
            return ToolResponse(status="not_ready", message=f"Not ready: {e}").model_dump()
        except IndexerError as e:
            logger.error("Tool call failed: %s", e)
            return ToolResponse(status="error", message=f"Error: {e}").model_dump()
        if not items:
            return ToolResponse(status="empty", message=empty).model_dump()
        text = f"Found {len(items)} {found}\n\n" + "\n".join(fmt(i) for i in items)
        return ToolResponse(
            status="ok",
            message=text,
            results=[i.model_dump(mode="json") for i in items],
        ).model_dump()

    def whatsapp_status(self) -> dict[str, Any]:
        """Check whether the WhatsApp indexer is ready and how many messages it holds."""
        try:
            status = self.indexer.status()
        except NotReadyError as e:
            return ToolResponse(status="not_ready", message=f"Not ready: {e}").model_dump()
        except IndexerError as e:
            logger.error("Status check failed: %s", e)
            return ToolResponse(status="error", message=f"Error checking status: {e}").model_dump()
        store, index = status["store"], status["index"]
        lines = [
            "WhatsApp Indexer Status",
            "Status: Ready",
            f"Total messages: {store['live_messages']} ({store['deleted']} deleted)",
            f"Vectors: {index['active_vectors']} active / {index['total_vectors']} total",
        ]
        last = status["last_message"]
        if last:
            lines.append(f"Last message: {format_time(last['timestamp'])} from {last['sender_name']} in {last['chat_name']}")
        return ToolResponse(status="ok", message="\n".join(lines), results=[status]).model_dump()

    def search_messages(self, query: str, limit: int = 10, message_type: str = "all") -> dict[str, Any]:
        """Search WhatsApp messages (Hebrew or English) by meaning and keywords.

        Args:
            query: Free-text query; may name a sender ("from Dana"), a date ("yesterday", "אתמול") or ask for links
            limit: Maximum number of results (default: 10)
            message_type: "sent", "received" or "all"
        """
        return self._respond(
            lambda: self.indexer.search(query, limit, message_type),
            empty=f'No messages found for "{query}".',
            found=f'messages for "{query}":',
            fmt=format_result,
        )

    def find_person_conversations(self, person_name: str, date_range: str | None = None, limit: int = 20) -> dict[str, Any]:
        """Find conversations with or about a person across individual and group chats.

        Args:
            person_name: Name to look for as sender, in message text or chat name
            date_range: Optional period such as "last week" or "השבוע"
            limit: Maximum number of messages (default: 20)
        """
        return self._respond(
            lambda: self.indexer.find_person_conversations(person_name, date_range, limit),
            empty=f'No conversations found with "{person_name}"' + _quoted("in the time period", date_range) + ".",
            found=f'messages with "{person_name}":',
            fmt=format_result,
        )

    def get_sent_messages(self, date_query: str | None = None, chat_filter: str | None = None, limit: int = 20) -> dict[str, Any]:
        """List messages I sent, optionally for a date and chat."""
        return self._respond(
            lambda: self.indexer.get_sent_messages(date_query, chat_filter, limit),
            empty="No sent messages found matching your criteria.",
            found="sent messages:",
            fmt=format_result,
        )

    def get_received_messages(self, date_query: str | None = None, sender_filter: str | None = None, limit: int = 20) -> dict[str, Any]:
        """List messages I received, optionally for a date and sender."""
        return self._respond(
            lambda: self.indexer.get_received_messages(date_query, sender_filter, limit),
            empty="No received messages found matching your criteria.",
            found="received messages:",
            fmt=format_result,
        )

    def get_urls_by_sender(self, sender_name: str, limit: int = 20) -> dict[str, Any]:
        """List links shared by a sender, newest first."""
        return self._respond(
            lambda: self.indexer.get_urls_by_sender(sender_name, limit),
            empty=f'No URLs found from "{sender_name}".',
            found=f'URLs from "{sender_name}":',
            fmt=format_url,
        )

    def get_urls_by_purpose(self, purpose: str, limit: int = 20) -> dict[str, Any]:
        """List shared links by inferred purpose: restaurant, movie, media, location, social or general."""
        return self._respond(
            lambda: self.indexer.get_urls_by_purpose(purpose, limit),
            empty=f"No {purpose} URLs found.",
            found=f"{purpose} URLs:",
            fmt=format_url,
        )

    def search_by_entity(self, entity_type: str, entity_value: str, limit: int = 10) -> dict[str, Any]:
        """Find messages mentioning an extracted entity.

        Args:
            entity_type: "people", "places", "activities" or "times"
            entity_value: Entity to look for, e.g. "רוני" or "dinner"
            limit: Maximum number of results (default: 10)
        """
        return self._respond(
            lambda: self.indexer.search_by_entity(entity_type, entity_value, limit),
            empty=f'No messages found mentioning "{entity_value}".',
            found=f'messages mentioning "{entity_value}":',
            fmt=format_result,
        )

    def search_scheduling(
        self,
        query: str,
        participants: str | None = None,
        activities: str | None = None,
        time_period: str = "this week",
        limit: int = 10,
    ) -> dict[str, Any]:
        """Search plans and meetings.

        Args:
            query: What the plan is about
            participants: Comma separated people who should be involved
            activities: Comma separated activities, e.g. "dinner, movie"
            time_period: Period to look in (default: "this week")
            limit: Maximum number of results (default: 10)
        """
        return self._respond(
            lambda: self.indexer.search_scheduling(query, participants, activities, time_period, limit),
            empty=f'No scheduling messages found for "{query}" in {time_period}.',
            found=f'scheduling messages for "{query}":',
            fmt=format_result,
        )

    def get_messages_by_date(self, date_query: str, sender_name: str | None = None) -> dict[str, Any]:
        """Messages from a day or period ("yesterday", "last week", "אתמול", "March 3")."""
        return self._respond(
            lambda: self.indexer.get_messages_by_date(date_query, sender_name),
            empty=f'No messages found for "{date_query}"' + _quoted("from", sender_name) + ".",
            found=f'messages for "{date_query}":',
            fmt=format_result,
        )

    def find_schedule_with_person(self, person_name: str, time_period: str = "this week") -> dict[str, Any]:
        """Find plans and meetings arranged with a person, with the surrounding conversation.

        Args:
            person_name: Who the plans are with
            time_period: Period to look in (default: "this week")
        """
        return self._respond(
            lambda: self.indexer.find_schedule_with_person(person_name, time_period),
            empty=f"No scheduling messages found with {person_name} for {time_period}.",
            found=f"scheduling messages with {person_name}:",
            fmt=format_result,
        )

    def check_plans_for_day(self, day: str) -> dict[str, Any]:
        """Check what is planned for a day ("tomorrow", "Friday", "מחר")."""
        return self._respond(
            lambda: self.indexer.check_plans_for_day(day),
            empty=f"No plans found for {day}.",
            found=f"plans for {day}:",
            fmt=format_result,
        )

    def list_groups(self) -> dict[str, Any]:
        """List group chats with message and participant counts."""
        return self._respond(
            self.indexer.list_groups,
            empty="No groups found.",
            found="groups:",
            fmt=format_group,
        )

    def get_group_messages(self, group_name: str, limit: int = 20) -> dict[str, Any]:
        """Recent messages in a group chat."""
        return self._respond(
            lambda: self.indexer.get_group_messages(group_name, limit),
            empty=f'No messages found in group "{group_name}".',
            found=f'messages in group "{group_name}":',
            fmt=format_result,
        )

    def search_in_group(self, group_name: str, query: str, limit: int = 10) -> dict[str, Any]:
        """Search the messages of one group chat."""
        return self._respond(
            lambda: self.indexer.search_in_group(group_name, query, limit),
            empty=f'No messages found matching "{query}" in group "{group_name}".',
            found=f'messages matching "{query}" in group "{group_name}":',
            fmt=format_result,
        )

    def get_individual_messages(self, contact_name: str | None = None, limit: int = 20) -> dict[str, Any]:
        """Recent messages from one-to-one chats, optionally with one contact."""
        return self._respond(
            lambda: self.indexer.get_individual_messages(contact_name, limit),
            empty="No individual messages found" + _quoted("with", contact_name) + ".",
            found="individual messages:",
            fmt=format_result,
        )

    def all(self) -> list[Callable[..., dict[str, Any]]]:
        return [
            self.whatsapp_status,
            self.search_messages,
            self.find_person_conversations,
            self.get_sent_messages,
            self.get_received_messages,
            self.get_urls_by_sender,
            self.get_urls_by_purpose,
            self.search_by_entity,
            self.search_scheduling,
            self.get_messages_by_date,
            self.find_schedule_with_person,
            self.check_plans_for_day,
            self.list_groups,
            self.get_group_messages,
            self.search_in_group,
            self.get_individual_messages,
        ]
