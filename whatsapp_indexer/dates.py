"""Relative and absolute date phrases (English + Hebrew) resolved to epoch-ms ranges.

All datetimes are naive local time. Weeks start on Monday.
"""

import calendar
import logging
import re
from datetime import date, datetime, time, timedelta
from typing import Literal, NamedTuple

import dateparser
from dateparser.search import search_dates

from whatsapp_indexer.models import DateRange

logger = logging.getLogger(__name__)

Prefer = Literal["past", "future"]

HEBREW_DATE_PHRASES = {
    "אתמול": "yesterday",
    "היום": "today",
    "הערב": "tonight",
    "מחר": "tomorrow",
    "מחרתיים": "in 2 days",
    "שלשום": "2 days ago",
    "לפני יומיים": "2 days ago",
    "לפני שלושה ימים": "3 days ago",
    "לפני ארבעה ימים": "4 days ago",
    "לפני חמישה ימים": "5 days ago",
    "לפני שבוע": "1 week ago",
    "השבוע": "this week",
    "השבוע שעבר": "last week",
    "השבוע הבא": "next week",
    "החודש": "this month",
    "חודש שעבר": "last month",
    "החודש שעבר": "last month",
    "החודש הבא": "next month",
    "השנה": "this year",
    "השנה שעברה": "last year",
    "יום ראשון": "sunday",
    "יום שני": "monday",
    "יום שלישי": "tuesday",
    "יום רביעי": "wednesday",
    "יום חמישי": "thursday",
    "יום שישי": "friday",
    "יום שבת": "saturday",
    "בשבת": "saturday",
}

# One-letter prepositions and conjunctions glued to the phrase: "ביום שישי", "ומחר".
HEBREW_PREFIXES = "בלוהמ"

# Longest first so "השבוע שעבר" wins over "השבוע".
_HEBREW_DATE_RE = [
    (re.compile(rf"(?<!\w)[{HEBREW_PREFIXES}]{{0,2}}{re.escape(phrase)}(?!\w)"), canonical)
    for phrase, canonical in sorted(HEBREW_DATE_PHRASES.items(), key=lambda kv: len(kv[0]), reverse=True)
]

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
NUMBER_WORDS = {
    "a": 1, "an": 1, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
}

_NUM = r"(?:\d{1,3}|an?|one|two|three|four|five|six|seven|eight|nine|ten)"
_WEEKDAY = "(?:" + "|".join(WEEKDAYS) + ")"

PERIOD_PATTERN = re.compile(
    r"\b(?:"
    r"(?P<day>today|tonight|yesterday|tomorrow)"
    rf"|(?P<ago_n>{_NUM})\s+(?P<ago_unit>days?|weeks?|months?)\s+ago"
    rf"|in\s+(?P<in_n>{_NUM})\s+(?P<in_unit>days?|weeks?)"
    rf"|(?:past|last)\s+(?P<span_n>{_NUM})\s+(?P<span_unit>days|weeks)"
    r"|(?P<rel>this|last|next|past)\s+(?P<rel_unit>week|month|year)"
    rf"|(?:(?P<wd_rel>last|next|this|on)\s+)?(?P<weekday>{_WEEKDAY})"
    r")\b",
    re.IGNORECASE,
)

# Only hand text to dateparser's search when it carries an explicit date.
_DATE_HINT = re.compile(
    r"\b(?:jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|june?|july?|aug(?:ust)?"
    r"|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)\b"
    r"|\b\d{1,2}[/.]\d{1,2}(?:[/.]\d{2,4})?\b"
    r"|\b\d{4}-\d{2}-\d{2}\b",
    re.IGNORECASE,
)


class DateMatch(NamedTuple):
    phrase: str
    start: int
    end: int
    date_range: DateRange


def to_epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def from_epoch_ms(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000)


def day_range(first: date, last: date | None = None, label: str | None = None) -> DateRange:
    """[start of `first`, end of `last`] (inclusive)."""
    last = last or first
    return DateRange(
        start=to_epoch_ms(datetime.combine(first, time.min)),
        end=to_epoch_ms(datetime.combine(last, time.max)),
        label=label,
    )


def substitute_hebrew_dates(text: str) -> str:
    """Replace Hebrew relative-date phrases with their canonical English form."""
    for pattern, canonical in _HEBREW_DATE_RE:
        text = pattern.sub(canonical, text)
    return text


def find_hebrew_date_phrases(text: str, now: datetime | None = None, prefer: Prefer = "past") -> list[DateMatch]:
    """Hebrew date phrases with their spans in the original (unsubstituted) text."""
    now = now or datetime.now()
    found: list[DateMatch] = []
    for pattern, canonical in _HEBREW_DATE_RE:
        for m in pattern.finditer(text):
            if any(m.start() < dm.end and dm.start < m.end() for dm in found):
                continue
            date_range = resolve_date_query(canonical, now, prefer)
            if date_range is not None:
                found.append(DateMatch(m.group(0), m.start(), m.end(), date_range))
    return sorted(found, key=lambda dm: dm.start)


def _number(token: str) -> int:
    token = token.lower()
    return NUMBER_WORDS[token] if token in NUMBER_WORDS else int(token)


def _week_start(day: date) -> date:
    return day - timedelta(days=day.weekday())


def _shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def _month_range(year: int, month: int, label: str) -> DateRange:
    last = calendar.monthrange(year, month)[1]
    return day_range(date(year, month, 1), date(year, month, last), label)


def _weekday_date(today: date, weekday: int, qualifier: str | None, prefer: Prefer) -> date:
    delta = weekday - today.weekday()
    if qualifier == "last":
        back = (today.weekday() - weekday) % 7 or 7
        return today - timedelta(days=back)
    if qualifier == "next":
        ahead = delta % 7 or 7
        return today + timedelta(days=ahead)
    if qualifier == "this":
        return _week_start(today) + timedelta(days=weekday)
    if prefer == "future":
        return today + timedelta(days=delta % 7)
    return today - timedelta(days=(-delta) % 7)


def _range_from_match(m: re.Match, now: datetime, prefer: Prefer) -> DateRange:
    today = now.date()
    label = m.group(0).lower()
    if m.group("day"):
        word = m.group("day").lower()
        offset = {"today": 0, "tonight": 0, "yesterday": -1, "tomorrow": 1}[word]
        return day_range(today + timedelta(days=offset), label=label)
    if m.group("ago_n"):
        n = _number(m.group("ago_n"))
        unit = m.group("ago_unit").lower()
        if unit.startswith("day"):
            return day_range(today - timedelta(days=n), label=label)
        if unit.startswith("week"):
            start = _week_start(today - timedelta(weeks=n))
            return day_range(start, start + timedelta(days=6), label)
        year, month = _shift_month(today.year, today.month, -n)
        return _month_range(year, month, label)
    if m.group("in_n"):
        n = _number(m.group("in_n"))
        if m.group("in_unit").lower().startswith("day"):
            return day_range(today + timedelta(days=n), label=label)
        start = _week_start(today + timedelta(weeks=n))
        return day_range(start, start + timedelta(days=6), label)
    if m.group("span_n"):
        n = _number(m.group("span_n"))
        days = n * 7 if m.group("span_unit").lower() == "weeks" else n
        return day_range(today - timedelta(days=days), today, label)
    if m.group("rel"):
        rel = m.group("rel").lower()
        unit = m.group("rel_unit").lower()
        if rel == "past":
            days = {"week": 7, "month": 30, "year": 365}[unit]
            return day_range(today - timedelta(days=days), today, label)
        step = {"this": 0, "last": -1, "next": 1}[rel]
        if unit == "week":
            start = _week_start(today) + timedelta(weeks=step)
            return day_range(start, start + timedelta(days=6), label)
        if unit == "month":
            year, month = _shift_month(today.year, today.month, step)
            return _month_range(year, month, label)
        year = today.year + step
        return day_range(date(year, 1, 1), date(year, 12, 31), label)
    weekday = WEEKDAYS.index(m.group("weekday").lower())
    qualifier = (m.group("wd_rel") or "").lower() or None
    if qualifier == "on":
        qualifier = None
    return day_range(_weekday_date(today, weekday, qualifier, prefer), label=label)


def _dateparser_settings(now: datetime, prefer: Prefer) -> dict:
    return {
        "RELATIVE_BASE": now,
        "PREFER_DATES_FROM": prefer,
        "RETURN_AS_TIMEZONE_AWARE": False,
    }


def resolve_date_query(phrase: str, now: datetime | None = None, prefer: Prefer = "past") -> DateRange | None:
    """
    Resolve a free-text date phrase ("yesterday", "last week", "אתמול", "March 3")
    to an inclusive day-aligned range. Returns None when nothing parses.
    """
    now = now or datetime.now()
    text = substitute_hebrew_dates((phrase or "").strip()).strip()
    if not text:
        return None
    m = PERIOD_PATTERN.fullmatch(text)
    if m:
        return _range_from_match(m, now, prefer)
    try:
        parsed = dateparser.parse(text, settings=_dateparser_settings(now, prefer))
    except Exception as e:
        logger.debug("dateparser failed on %r: %s", text, e)
        parsed = None
    if parsed is not None:
        return day_range(parsed.date(), label=text.lower())
    found = find_date_phrases(text, now, prefer)
    return found[0].date_range if found else None


def find_date_phrases(text: str, now: datetime | None = None, prefer: Prefer = "past") -> list[DateMatch]:
    """
    All recognized date phrases in `text` ordered by position. Canonical
    relative phrases first; explicit dates ("March 3", "12/05") via dateparser.
    Expects Hebrew phrases to be substituted already.
    """
    now = now or datetime.now()
    matches = [
        DateMatch(m.group(0), m.start(), m.end(), _range_from_match(m, now, prefer))
        for m in PERIOD_PATTERN.finditer(text)
    ]
    if _DATE_HINT.search(text):
        matches.extend(_search_explicit_dates(text, now, prefer, matches))
    return sorted(matches, key=lambda dm: dm.start)


def _search_explicit_dates(text: str, now: datetime, prefer: Prefer, taken: list[DateMatch]) -> list[DateMatch]:
    try:
        found = search_dates(text, languages=["en"], settings=_dateparser_settings(now, prefer)) or []
    except Exception as e:
        logger.debug("dateparser search failed on %r: %s", text, e)
        return []
    results: list[DateMatch] = []
    cursor = 0
    for substring, parsed in found:
        start = text.find(substring, cursor)
        if start < 0:
            continue
        end = start + len(substring)
        cursor = end
        if not _DATE_HINT.search(substring):
            continue
        if any(start < dm.end and dm.start < end for dm in taken + results):
            continue
        results.append(DateMatch(substring, start, end, day_range(parsed.date(), label=substring.lower())))
    return results
