"""SQLite message store: messages plus URL/entity/scheduling child rows and an FTS5 index."""

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

from whatsapp_indexer.errors import PersistenceError
from whatsapp_indexer.extraction import TOKEN
from whatsapp_indexer.models import (
    DateRange,
    Entity,
    ExtractedURL,
    GroupSummary,
    Message,
    MessageFilter,
    SchedulingInfo,
    UrlResult,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    chat_id TEXT NOT NULL,
    chat_name TEXT NOT NULL DEFAULT '',
    is_group_message INTEGER NOT NULL DEFAULT 0,
    sender_name TEXT NOT NULL DEFAULT '',
    sender_number TEXT NOT NULL DEFAULT '',
    content TEXT NOT NULL,
    searchable_text TEXT NOT NULL DEFAULT '',
    timestamp INTEGER NOT NULL,
    message_type TEXT NOT NULL DEFAULT 'text',
    languages TEXT NOT NULL DEFAULT '["unknown"]',
    has_urls INTEGER NOT NULL DEFAULT 0,
    has_scheduling INTEGER NOT NULL DEFAULT 0,
    is_from_me INTEGER NOT NULL DEFAULT 0,
    deleted INTEGER NOT NULL DEFAULT 0,
    created_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_timestamp ON messages(timestamp);
CREATE INDEX IF NOT EXISTS idx_messages_chat ON messages(chat_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_messages_sender ON messages(sender_name);

CREATE TABLE IF NOT EXISTS urls (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    message_id TEXT NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
    url TEXT NOT NULL,
    domain TEXT NOT NULL DEFAULT '',
    purpose TEXT NOT NULL DEFAULT 'general',
    context_before TEXT NOT NULL DEFAULT '',
    context_after TEXT NOT NULL DEFAULT '',
    position INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_urls_message ON urls(message_id);

CREATE TABLE IF NOT EXISTS entities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    message_id TEXT NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
    type TEXT NOT NULL,
    value TEXT NOT NULL,
    data TEXT
);
CREATE INDEX IF NOT EXISTS idx_entities_message ON entities(message_id);
CREATE INDEX IF NOT EXISTS idx_entities_type_value ON entities(type, value);

CREATE TABLE IF NOT EXISTS scheduling (
    message_id TEXT PRIMARY KEY REFERENCES messages(id) ON DELETE CASCADE,
    is_scheduling INTEGER NOT NULL DEFAULT 0,
    participants TEXT NOT NULL DEFAULT '[]',
    locations TEXT NOT NULL DEFAULT '[]',
    activities TEXT NOT NULL DEFAULT '[]',
    time_references TEXT NOT NULL DEFAULT '[]',
    confirmations TEXT NOT NULL DEFAULT '[]',
    urgency INTEGER NOT NULL DEFAULT 0
);

CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5(
    message_id UNINDEXED,
    content,
    searchable_text,
    sender_name
);
"""

UPSERT_MESSAGE = """
INSERT INTO messages (
    id, chat_id, chat_name, is_group_message, sender_name, sender_number, content,
    searchable_text, timestamp, message_type, languages, has_urls, has_scheduling,
    is_from_me, deleted, created_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    chat_id = excluded.chat_id,
    chat_name = excluded.chat_name,
    is_group_message = excluded.is_group_message,
    sender_name = excluded.sender_name,
    sender_number = excluded.sender_number,
    content = excluded.content,
    searchable_text = excluded.searchable_text,
    timestamp = excluded.timestamp,
    message_type = excluded.message_type,
    languages = excluded.languages,
    has_urls = excluded.has_urls,
    has_scheduling = excluded.has_scheduling,
    is_from_me = excluded.is_from_me,
    deleted = excluded.deleted
"""

_IN_CHUNK = 500


def _like(value: str) -> str:
    escaped = value.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _fts_query(text: str) -> str | None:
    tokens = [t for t in TOKEN.findall(text) if len(t) > 1]
    if not tokens:
        return None
    return " OR ".join('"' + t.replace('"', '""') + '"' for t in dict.fromkeys(tokens))


class MessageStore:
    """
    Lexical store keyed by message id. One connection per call; every public
    write runs in a single transaction, and sqlite3 failures surface as
    PersistenceError.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Commits on success, rolls back on exception. Closes the connection on exit.
        """
        try:
            conn = self._connect()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open message store at {self.db_path}: {e}") from e
        try:
            with conn:
                yield conn
        except sqlite3.Error as e:
            logger.error("Message store operation failed: %s", e)
            raise PersistenceError(f"Message store operation failed: {e}") from e
        finally:
            conn.close()

    def init(self) -> None:
        """Create the database file and schema if missing."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create {self.db_path.parent}: {e}") from e
        with self.transaction() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)
        logger.info("Message store ready at %s", self.db_path)

    # --- writes ---------------------------------------------------------

    def save(self, message: Message) -> None:
        """Upsert a message and replace its child rows atomically."""
        with self.transaction() as conn:
            conn.execute(
                UPSERT_MESSAGE,
                (
                    message.id,
                    message.chat_id,
                    message.chat_name,
                    int(message.is_group_message),
                    message.sender_name,
                    message.sender_number,
                    message.content,
                    message.searchable_text,
                    message.timestamp,
                    message.message_type,
                    json.dumps(message.languages),
                    int(bool(message.urls)),
                    int(message.has_scheduling),
                    int(message.is_from_me),
                    int(message.deleted),
                    int(time.time() * 1000),
                ),
            )
            self._replace_children(conn, message)

    def _replace_children(self, conn: sqlite3.Connection, message: Message) -> None:
        for table in ("urls", "entities", "scheduling", "messages_fts"):
            conn.execute(f"DELETE FROM {table} WHERE message_id = ?", (message.id,))
        conn.executemany(
            "INSERT INTO urls (message_id, url, domain, purpose, context_before, context_after, position)"
            " VALUES (?, ?, ?, ?, ?, ?, ?)",
            [
                (message.id, u.url, u.domain, u.purpose, u.context_before, u.context_after, u.position)
                for u in message.urls
            ],
        )
        conn.executemany(
            "INSERT INTO entities (message_id, type, value, data) VALUES (?, ?, ?, ?)",
            [
                (message.id, e.type, e.value, json.dumps(e.data, ensure_ascii=False) if e.data else None)
                for e in message.entities
            ],
        )
        if message.scheduling is not None:
            s = message.scheduling
            conn.execute(
                "INSERT INTO scheduling (message_id, is_scheduling, participants, locations, activities,"
                " time_references, confirmations, urgency) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    message.id,
                    int(s.is_scheduling),
                    json.dumps(s.participants, ensure_ascii=False),
                    json.dumps(s.locations, ensure_ascii=False),
                    json.dumps(s.activities, ensure_ascii=False),
                    json.dumps(s.time_references, ensure_ascii=False),
                    json.dumps(s.confirmations, ensure_ascii=False),
                    int(s.urgency),
                ),
            )
        conn.execute(
            "INSERT INTO messages_fts (message_id, content, searchable_text, sender_name) VALUES (?, ?, ?, ?)",
            (message.id, message.content, message.searchable_text, message.sender_name),
        )

    def mark_deleted(self, message_id: str) -> bool:
        """Tag the row deleted (it is kept for audit). Returns False if unknown."""
        with self.transaction() as conn:
            cur = conn.execute("UPDATE messages SET deleted = 1 WHERE id = ?", (message_id,))
            return cur.rowcount > 0

    # --- hydration ------------------------------------------------------

    def _hydrate(self, conn: sqlite3.Connection, rows: list[sqlite3.Row]) -> list[Message]:
        if not rows:
            return []
        ids = [r["id"] for r in rows]
        urls: dict[str, list[ExtractedURL]] = {}
        entities: dict[str, list[Entity]] = {}
        scheduling: dict[str, SchedulingInfo] = {}
        for start in range(0, len(ids), _IN_CHUNK):
            chunk = ids[start:start + _IN_CHUNK]
            marks = ",".join("?" * len(chunk))
            for r in conn.execute(f"SELECT * FROM urls WHERE message_id IN ({marks}) ORDER BY position", chunk):
                urls.setdefault(r["message_id"], []).append(
                    ExtractedURL(
                        url=r["url"],
                        domain=r["domain"],
                        purpose=r["purpose"],
                        context_before=r["context_before"],
                        context_after=r["context_after"],
                        position=r["position"],
                    )
                )
            for r in conn.execute(f"SELECT * FROM entities WHERE message_id IN ({marks}) ORDER BY id", chunk):
                entities.setdefault(r["message_id"], []).append(
                    Entity(type=r["type"], value=r["value"], data=json.loads(r["data"]) if r["data"] else None)
                )
            for r in conn.execute(f"SELECT * FROM scheduling WHERE message_id IN ({marks})", chunk):
                scheduling[r["message_id"]] = SchedulingInfo(
                    is_scheduling=bool(r["is_scheduling"]),
                    participants=json.loads(r["participants"]),
                    locations=json.loads(r["locations"]),
                    activities=json.loads(r["activities"]),
                    time_references=json.loads(r["time_references"]),
                    confirmations=json.loads(r["confirmations"]),
                    urgency=bool(r["urgency"]),
                )
        return [
            Message(
                id=r["id"],
                chat_id=r["chat_id"],
                chat_name=r["chat_name"],
                is_group_message=bool(r["is_group_message"]),
                sender_name=r["sender_name"],
                sender_number=r["sender_number"],
                content=r["content"],
                searchable_text=r["searchable_text"],
                timestamp=r["timestamp"],
                message_type=r["message_type"],
                languages=json.loads(r["languages"]),
                is_from_me=bool(r["is_from_me"]),
                deleted=bool(r["deleted"]),
                urls=urls.get(r["id"], []),
                entities=entities.get(r["id"], []),
                scheduling=scheduling.get(r["id"]),
            )
            for r in rows
        ]

    def _select(
        self,
        where: list[str],
        params: list[Any],
        *,
        limit: int | None = None,
        ascending: bool = False,
    ) -> list[Message]:
        sql = "SELECT m.* FROM messages m"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY m.timestamp " + ("ASC" if ascending else "DESC")
        if limit is not None:
            sql += " LIMIT ?"
            params = [*params, limit]
        with self.transaction() as conn:
            rows = conn.execute(sql, params).fetchall()
            return self._hydrate(conn, rows)

    # --- reads ----------------------------------------------------------

    def query(self, f: MessageFilter) -> list[Message]:
        """Conjunctive filter over the message table, newest first."""
        where: list[str] = []
        params: list[Any] = []
        if not f.include_deleted:
            where.append("m.deleted = 0")
        if f.sender:
            where.append("LOWER(m.sender_name) LIKE ? ESCAPE '\\'")
            params.append(_like(f.sender))
        if f.date_range:
            where.append("m.timestamp BETWEEN ? AND ?")
            params.extend([f.date_range.start, f.date_range.end])
        if f.chat_id is not None:
            where.append("m.chat_id = ?")
            params.append(f.chat_id)
        if f.chat_name:
            where.append("LOWER(m.chat_name) LIKE ? ESCAPE '\\'")
            params.append(_like(f.chat_name))
        for column, value in (
            ("is_group_message", f.is_group),
            ("has_urls", f.has_urls),
            ("has_scheduling", f.has_scheduling),
            ("is_from_me", f.is_from_me),
        ):
            if value is not None:
                where.append(f"m.{column} = ?")
                params.append(int(value))
        if f.text and f.text.strip():
            clauses = ["LOWER(m.content) LIKE ? ESCAPE '\\'", "LOWER(m.searchable_text) LIKE ? ESCAPE '\\'"]
            params.extend([_like(f.text.strip()), _like(f.text.strip())])
            fts = _fts_query(f.text)
            if fts:
                clauses.append("m.id IN (SELECT message_id FROM messages_fts WHERE messages_fts MATCH ?)")
                params.append(fts)
            where.append("(" + " OR ".join(clauses) + ")")
        return self._select(where, params, limit=f.limit)

    def get_by_sender_across_chats(
        self,
        name: str,
        date_range: DateRange | None = None,
        limit: int | None = 50,
    ) -> list[Message]:
        """
        Messages from individual and group chats whose sender, content or chat
        name mentions `name`. Group discussions about a person count too.
        """
        pattern = _like(name.strip())
        where = [
            "m.deleted = 0",
            "(LOWER(m.sender_name) LIKE ? ESCAPE '\\' OR LOWER(m.content) LIKE ? ESCAPE '\\'"
            " OR LOWER(m.chat_name) LIKE ? ESCAPE '\\')",
        ]
        params: list[Any] = [pattern, pattern, pattern]
        if date_range:
            where.append("m.timestamp BETWEEN ? AND ?")
            params.extend([date_range.start, date_range.end])
        return self._select(where, params, limit=limit)

    def get_chat_window(self, chat_id: str, start: int, end: int, include_deleted: bool = False) -> list[Message]:
        """Messages of one chat inside [start, end], oldest first."""
        where = ["m.chat_id = ?", "m.timestamp BETWEEN ? AND ?"]
        if not include_deleted:
            where.append("m.deleted = 0")
        return self._select(where, [chat_id, start, end], ascending=True)

    def get_group_messages(self, group_name: str, limit: int = 50, date_range: DateRange | None = None) -> list[Message]:
        return self.query(MessageFilter(chat_name=group_name, is_group=True, date_range=date_range, limit=limit))

    def search_in_group(self, group_name: str, text: str, limit: int = 20) -> list[Message]:
        return self.query(MessageFilter(chat_name=group_name, is_group=True, text=text, limit=limit))

    def get_individual_messages(self, contact_name: str | None = None, limit: int = 50) -> list[Message]:
        where = ["m.deleted = 0", "m.is_group_message = 0"]
        params: list[Any] = []
        if contact_name and contact_name.strip():
            where.append("(LOWER(m.chat_name) LIKE ? ESCAPE '\\' OR LOWER(m.sender_name) LIKE ? ESCAPE '\\')")
            params.extend([_like(contact_name.strip())] * 2)
        return self._select(where, params, limit=limit)

    def get_scheduling_messages(self, date_range: DateRange | None = None, limit: int | None = 100) -> list[Message]:
        return self.query(MessageFilter(has_scheduling=True, date_range=date_range, limit=limit))

    def search_by_entity(self, entity_type: str, value: str, limit: int = 50) -> list[Message]:
        where = [
            "m.deleted = 0",
            "m.id IN (SELECT message_id FROM entities WHERE type = ? AND LOWER(value) LIKE ? ESCAPE '\\')",
        ]
        return self._select(where, [entity_type, _like(value)], limit=limit)

    def exists(self, message_id: str) -> bool:
        with self.transaction() as conn:
            return conn.execute("SELECT 1 FROM messages WHERE id = ?", (message_id,)).fetchone() is not None

    def get(self, message_id: str) -> Message | None:
        """Fetch one message by id, deleted or not."""
        found = self._select(["m.id = ?"], [message_id], limit=1)
        return found[0] if found else None

    def _url_rows(self, where: str, params: list[Any], limit: int) -> list[UrlResult]:
        sql = (
            "SELECT u.*, m.chat_name, m.sender_name, m.timestamp, m.content FROM urls u"
            " JOIN messages m ON m.id = u.message_id"
            f" WHERE m.deleted = 0 AND {where} ORDER BY m.timestamp DESC, u.position LIMIT ?"
        )
        with self.transaction() as conn:
            rows = conn.execute(sql, [*params, limit]).fetchall()
        return [
            UrlResult(
                url=r["url"],
                domain=r["domain"],
                purpose=r["purpose"],
                context_before=r["context_before"],
                context_after=r["context_after"],
                message_id=r["message_id"],
                chat_name=r["chat_name"],
                sender_name=r["sender_name"],
                timestamp=r["timestamp"],
                content=r["content"],
            )
            for r in rows
        ]

    def get_urls_by_sender(self, sender_name: str, limit: int = 20) -> list[UrlResult]:
        return self._url_rows("LOWER(m.sender_name) LIKE ? ESCAPE '\\'", [_like(sender_name.strip())], limit)

    def get_urls_by_purpose(self, purpose: str, limit: int = 20) -> list[UrlResult]:
        return self._url_rows("u.purpose = ?", [purpose], limit)

    # --- aggregation ----------------------------------------------------

    def count(self, include_deleted: bool = False) -> int:
        sql = "SELECT COUNT(*) FROM messages" + ("" if include_deleted else " WHERE deleted = 0")
        with self.transaction() as conn:
            return conn.execute(sql).fetchone()[0]

    def last_message_time(self) -> int | None:
        with self.transaction() as conn:
            return conn.execute("SELECT MAX(timestamp) FROM messages WHERE deleted = 0").fetchone()[0]

    def last_message(self) -> Message | None:
        found = self._select(["m.deleted = 0"], [], limit=1)
        return found[0] if found else None

    def list_groups(self) -> list[GroupSummary]:
        sql = (
            "SELECT chat_id, MAX(chat_name) AS chat_name, COUNT(*) AS message_count,"
            " COUNT(DISTINCT sender_name) AS participant_count, MAX(timestamp) AS last_message_time"
            " FROM messages WHERE is_group_message = 1 AND deleted = 0"
            " GROUP BY chat_id ORDER BY last_message_time DESC"
        )
        with self.transaction() as conn:
            rows = conn.execute(sql).fetchall()
        return [
            GroupSummary(
                chat_id=r["chat_id"],
                chat_name=r["chat_name"],
                message_count=r["message_count"],
                participant_count=r["participant_count"],
                last_message_time=r["last_message_time"],
            )
            for r in rows
        ]

    def stats(self) -> dict[str, Any]:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total,"
                " COALESCE(SUM(deleted), 0) AS deleted,"
                " COALESCE(SUM(CASE WHEN deleted = 0 AND is_group_message = 1 THEN 1 ELSE 0 END), 0) AS group_messages,"
                " COALESCE(SUM(CASE WHEN deleted = 0 AND is_group_message = 0 THEN 1 ELSE 0 END), 0) AS individual_messages,"
                " COALESCE(SUM(CASE WHEN deleted = 0 AND has_scheduling = 1 THEN 1 ELSE 0 END), 0) AS scheduling_messages,"
                " COALESCE(SUM(CASE WHEN deleted = 0 AND is_from_me = 1 THEN 1 ELSE 0 END), 0) AS sent_messages,"
                " COUNT(DISTINCT chat_id) AS chats,"
                " MAX(CASE WHEN deleted = 0 THEN timestamp END) AS last_message_time"
                " FROM messages"
            ).fetchone()
            url_count = conn.execute("SELECT COUNT(*) FROM urls").fetchone()[0]
        stats = dict(row)
        stats["live_messages"] = stats["total"] - stats["deleted"]
        stats["urls"] = url_count
        return stats
