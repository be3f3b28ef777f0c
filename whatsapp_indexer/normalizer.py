"""Turn a free-text Hebrew/English search query into structured filters."""

import logging
import re
from datetime import datetime

from whatsapp_indexer.dates import DateMatch, find_date_phrases, substitute_hebrew_dates
from whatsapp_indexer.extraction import (
    TOKEN,
    detect_languages,
    detect_scheduling_intent,
    extract_entities,
)
from whatsapp_indexer.models import NormalizedQuery

logger = logging.getLogger(__name__)

# English synonyms appended for Hebrew meeting vocabulary. Date words are
# handled by the date table and must not appear here.
MEETING_TERM_EXPANSIONS = {
    "נפגש": "meet meeting",
    "נפגשתי": "met meeting",
    "נפגשנו": "met meeting",
    "נפגשים": "meet meeting",
    "פגישה": "meeting appointment",
    "על האש": "barbecue bbq planned meeting",
    "תוכניות": "plans",
    "תוכנית": "plan",
    "בשעה": "time",
    "אצלי": "my place",
    "אצלך": "your place",
    "בקניון": "mall",
    "בבית קפה": "cafe coffee",
    "במסעדה": "restaurant",
    "מסעדה": "restaurant",
    "ארוחת ערב": "dinner",
    "ארוחת צהריים": "lunch",
    "קפה": "coffee",
    "מסיבה": "party",
    "יום הולדת": "birthday",
    "סרט": "movie",
    "כן": "yes",
    "בטח": "sure",
    "סבבה": "okay",
    "אוקיי": "okay",
}

SENDER_PATTERN = re.compile(r"(?<!\w)(?:from|sent by|by|מאת|עם|של)\s+(\w+)", re.IGNORECASE)
URL_WORDS = re.compile(r"(?<!\w)(?:urls?|links?|קישור|קישורים|לינק|לינקים)(?!\w)", re.IGNORECASE)
MAX_CLEAN_PASSES = 5


def _squash(text: str) -> str:
    return " ".join(text.split())


def expand_terms(text: str) -> str:
    """Append English synonyms for Hebrew meeting terms; never re-appends a token."""
    present = {t.lower() for t in TOKEN.findall(text)}
    extra: list[str] = []
    for hebrew, english in MEETING_TERM_EXPANSIONS.items():
        if hebrew not in text:
            continue
        for word in english.split():
            if word not in present:
                present.add(word)
                extra.append(word)
    return _squash(" ".join([text, *extra]))


def _strip_spans(text: str, spans: list[tuple[int, int]]) -> str:
    for start, end in sorted(spans, reverse=True):
        text = text[:start] + " " + text[end:]
    return text


def _strip_filters(text: str, now: datetime) -> tuple[str, list[DateMatch], list[re.Match]]:
    """One pass removing date phrases, sender clauses and URL words."""
    text = substitute_hebrew_dates(text)
    dates = find_date_phrases(text, now)
    text = _strip_spans(text, [(d.start, d.end) for d in dates])
    senders = list(SENDER_PATTERN.finditer(text))
    text = _strip_spans(text, [m.span() for m in senders])
    return _squash(URL_WORDS.sub(" ", text)), dates, senders


def _normalize(raw_query: str, now: datetime) -> NormalizedQuery:
    text, dates, senders = _strip_filters(raw_query, now)
    date_range = dates[0].date_range if dates else None
    sender = senders[0].group(1) if senders else None

    # Removing a phrase can join its neighbours into a new one ("next tomorrow
    # week"), so repeat until the cleaned query is a fixed point.
    clean = expand_terms(text)
    for _ in range(MAX_CLEAN_PASSES):
        again = expand_terms(_strip_filters(clean, now)[0])
        if again == clean:
            break
        clean = again
    keywords = list(dict.fromkeys(t.lower() for t in TOKEN.findall(clean) if len(t) > 2))

    return NormalizedQuery(
        raw_query=raw_query,
        clean_query=clean,
        sender_filter=sender,
        date_range=date_range,
        date_phrase=dates[0].phrase if dates else None,
        url_filter=bool(URL_WORDS.search(raw_query)),
        scheduling_filter=detect_scheduling_intent(text, now),
        entities=extract_entities(raw_query, now),
        languages=detect_languages(raw_query),
        keywords=keywords,
    )


def normalize(raw_query: str, now: datetime | None = None) -> NormalizedQuery:
    """
    Extract sender, date range, URL and scheduling filters plus entities from a
    query. Side-effect free and idempotent on `clean_query`; never raises.
    """
    raw_query = raw_query if isinstance(raw_query, str) else ""
    try:
        return _normalize(raw_query, now or datetime.now())
    except Exception as e:
        logger.warning("Query normalization failed for %r: %s", raw_query, e)
        return NormalizedQuery(
            raw_query=raw_query,
            clean_query=_squash(raw_query),
            languages=detect_languages(raw_query),
        )
