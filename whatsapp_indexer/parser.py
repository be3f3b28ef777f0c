"""Parse a WhatsApp chat export (ZIP or folder with the chat .txt) into RawMessageEvents."""

import hashlib
import logging
import re
import tempfile
import zipfile
from pathlib import Path
from typing import TypedDict

import dateparser

from whatsapp_indexer.dates import to_epoch_ms
from whatsapp_indexer.models import RawMessageEvent

logger = logging.getLogger(__name__)


class ExportLine(TypedDict):
    date: str
    author: str
    text: str
    media_file: str | None


# Android: "12/04/2024, 3:25 PM - Name: message"
# iOS:     "[12/04/2024, 3:25:33 PM] Name: message"
MSG_PATTERN = re.compile(
    r"^(?:\[(?P<bracket_date>[^\]]+)\]\s*|(?P<date>\d[^-–]*?)\s+[-–]\s+)(?P<author>[^:]+?):\s(?P<text>.*)$"
)
# Any line starting with a date is a new entry (system notices have no author).
DATE_PREFIX = re.compile(r"^\[?\d{1,4}[/.\-]\d{1,2}[/.\-]\d{1,4}")
# Media reference in message: <attached: filename> or similar
MEDIA_REF = re.compile(r"<[^>]*attached[^>]*:\s*([^>]+)>", re.IGNORECASE)
MEDIA_OMITTED = re.compile(r"<media omitted>|(?:image|video|audio|sticker|document|GIF) omitted", re.IGNORECASE)

MEDIA_EXTENSIONS = {
    "image": {".jpg", ".jpeg", ".png", ".gif", ".webp"},
    "audio": {".ogg", ".mp3", ".m4a", ".opus", ".wav"},
    "video": {".mp4", ".webm", ".mov", ".avi", ".3gp"},
}
CHAT_NAME_PREFIXES = ("WhatsApp Chat with ", "WhatsApp Chat - ", "WhatsApp Chat ")
_INVISIBLE = "‎‏﻿"


def _find_chat_file(folder: Path) -> Path | None:
    for name in ("_chat.txt", "chat.txt", "WhatsApp Chat.txt"):
        p = folder / name
        if p.is_file():
            return p
    for f in sorted(folder.iterdir()):
        if f.suffix.lower() == ".txt" and "chat" in f.name.lower():
            return f
    return None


def _parse_chat_line(line: str) -> ExportLine | None:
    m = MSG_PATTERN.match(line)
    if not m:
        return None
    date = m.group("bracket_date") or m.group("date")
    text = m.group("text").strip()
    media_ref = MEDIA_REF.search(text)
    media_file = media_ref.group(1).strip() if media_ref else None
    return {"date": date.strip(), "author": m.group("author").strip(), "text": text, "media_file": media_file}


def read_export_lines(chat_path: str | Path) -> list[ExportLine]:
    """Split the export into entries; continuation lines join the previous message."""
    path = Path(chat_path)
    if not path.is_file():
        return []
    entries: list[ExportLine] = []
    current: ExportLine | None = None
    for raw in path.read_text(encoding="utf-8", errors="replace").splitlines():
        line = raw.strip(_INVISIBLE).rstrip()
        parsed = _parse_chat_line(line)
        if parsed:
            current = parsed
            entries.append(parsed)
        elif DATE_PREFIX.match(line):
            current = None  # system notice ("X created group", encryption banner...)
        elif current is not None and line.strip():
            current["text"] = f"{current['text']}\n{line.strip()}"
    return entries


def _media_type(entry: ExportLine) -> str | None:
    if entry["media_file"]:
        ext = Path(entry["media_file"]).suffix.lower()
        for kind, extensions in MEDIA_EXTENSIONS.items():
            if ext in extensions:
                return kind
        return "document"
    m = MEDIA_OMITTED.search(entry["text"])
    if m:
        word = m.group(0).split()[0].lower().strip("<")
        return {"image": "image", "sticker": "sticker", "gif": "video", "video": "video", "audio": "audio",
                "document": "document"}.get(word, "media")
    return None


def chat_name_from_path(chat_file: Path, export_path: Path | None = None) -> str:
    for candidate in (chat_file.stem, export_path.stem if export_path else "", chat_file.parent.name):
        for prefix in CHAT_NAME_PREFIXES:
            if candidate.startswith(prefix):
                return candidate[len(prefix):].strip()
        if candidate and candidate.lower() not in ("_chat", "chat"):
            return candidate
    return "WhatsApp Chat"


def _message_id(chat_id: str, entry: ExportLine, occurrence: int) -> str:
    key = f"{chat_id}|{entry['date']}|{entry['author']}|{entry['text']}|{occurrence}"
    return "export_" + hashlib.sha1(key.encode("utf-8")).hexdigest()[:20]


def parse_chat(
    chat_path: str | Path,
    *,
    me: str | None = None,
    chat_name: str | None = None,
    date_order: str = "DMY",
) -> list[RawMessageEvent]:
    """
    Parse a chat .txt into events. `me` is the exporter's display name; their
    messages are marked from_me. A chat with more than two authors is a group.
    """
    path = Path(chat_path)
    entries = read_export_lines(path)
    if not entries:
        return []
    name = chat_name or chat_name_from_path(path)
    chat_id = "export_" + hashlib.sha1(name.encode("utf-8")).hexdigest()[:12]
    is_group = len({e["author"] for e in entries}) > 2
    settings = {"DATE_ORDER": date_order, "RETURN_AS_TIMEZONE_AWARE": False}

    events: list[RawMessageEvent] = []
    seen: dict[str, int] = {}
    for entry in entries:
        parsed = dateparser.parse(entry["date"], settings=settings)
        if parsed is None:
            logger.warning("Skipping export line with unparseable date %r", entry["date"])
            continue
        base = f"{entry['date']}|{entry['author']}|{entry['text']}"
        occurrence = seen.get(base, 0)
        seen[base] = occurrence + 1
        media_type = _media_type(entry)
        events.append(
            RawMessageEvent(
                id=_message_id(chat_id, entry, occurrence),
                chat_id=chat_id,
                chat_name=name,
                is_group=is_group,
                sender_name=entry["author"],
                body=entry["text"],
                timestamp=to_epoch_ms(parsed),
                from_me=bool(me) and entry["author"].lower() == me.lower(),
                media_type=media_type,
                has_media=media_type is not None,
            )
        )
    logger.info("Parsed %d messages from %s (%s)", len(events), path.name, name)
    return events


def load_export(
    export_path: str | Path,
    *,
    me: str | None = None,
    chat_name: str | None = None,
    date_order: str = "DMY",
) -> list[RawMessageEvent]:
    """
    Load a WhatsApp export from a ZIP, a folder or the chat .txt itself.
    A ZIP is extracted to a temporary directory that is removed afterwards.
    """
    path = Path(export_path).resolve()
    if path.is_file() and path.suffix.lower() == ".zip":
        with tempfile.TemporaryDirectory(prefix="wa_export_") as tmp:
            dest = Path(tmp)
            with zipfile.ZipFile(path, "r") as z:
                z.extractall(dest)
            chat_file = _find_chat_file(dest)
            if chat_file is None:
                for sub in dest.iterdir():
                    if sub.is_dir():
                        chat_file = _find_chat_file(sub)
                        if chat_file:
                            break
            if chat_file is None:
                return []
            name = chat_name or chat_name_from_path(chat_file, path)
            return parse_chat(chat_file, me=me, chat_name=name, date_order=date_order)
    if path.is_file():
        return parse_chat(path, me=me, chat_name=chat_name, date_order=date_order)
    if path.is_dir():
        chat_file = _find_chat_file(path)
        if chat_file:
            name = chat_name or chat_name_from_path(chat_file, path)
            return parse_chat(chat_file, me=me, chat_name=name, date_order=date_order)
    return []
