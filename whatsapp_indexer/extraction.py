"""
Text feature extraction for WhatsApp messages (Hebrew + English).

Lookup and heuristics only: URLs with context windows, entities, scheduling
intent, message type and languages. `extract()` never raises; a failure is
logged and yields a neutral Extraction.
"""

import logging
import re
from datetime import datetime
from functools import lru_cache
from urllib.parse import urlparse

from whatsapp_indexer.dates import find_date_phrases, find_hebrew_date_phrases, substitute_hebrew_dates
from whatsapp_indexer.models import (
    Entity,
    ExtractedURL,
    Extraction,
    Language,
    MeetingContext,
    MessageType,
    SchedulingInfo,
    UrlPurpose,
)

logger = logging.getLogger(__name__)

CONTEXT_CHARS = 50

HEBREW_CHARS = re.compile(r"[֐-׿]")
LATIN_CHARS = re.compile(r"[A-Za-z]")
TOKEN = re.compile(r"[\w']+")

# --- vocabularies -----------------------------------------------------------

SCHEDULING_KEYWORDS_HE = [
    "נפגש", "נפגשים", "נראה", "נתראה", "בואו", "תבוא", "תבואי", "אבוא",
    "מחר", "היום", "הערב", "בערב", "בבוקר", "אחר הצהריים", "בלילה",
    "ראשון", "שלישי", "רביעי", "חמישי", "שישי", "שבת",
    "פגישה", "ארוחה", "ארוחת ערב", "ארוחת צהריים", "קפה", "שתייה",
    "יום הולדת", "חגיגה", "מסיבה", "אירוע", "על האש",
    "באזור", "נגיע", "נסיעה", "נלך", "נבוא",
]
SCHEDULING_KEYWORDS_EN = [
    "meet", "meeting", "see you", "let's meet", "come", "go", "visit",
    "today", "tomorrow", "tonight", "morning", "afternoon", "evening", "night",
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
    "lunch", "dinner", "coffee", "drink", "meal",
    "birthday", "party", "celebration", "event",
    "appointment", "schedule", "plan", "calendar",
]

HEBREW_NAMES = ["רוני", "מיכאל", "עוז", "רועי", "שני", "יהב", "רותם", "איתי", "ארתור"]
RELATIONSHIP_TERMS_HE = ["אמא", "אבא", "אח", "אחות", "חבר", "חברה"]
RELATIONSHIP_TERMS_EN = ["mom", "dad", "brother", "sister", "friend"]

VENUES_HE = ["מסעדה", "בית קפה", "פאב", "בר", "קולנוע", "תיאטרון", "חדר כושר", "פארק", "חוף", "קניון"]
VENUES_EN = ["restaurant", "cafe", "pub", "bar", "cinema", "theater", "gym", "park", "beach", "mall"]
PLACE_NOUNS = {
    "Cafe", "Restaurant", "Bar", "Pub", "Park", "Beach", "Mall", "Street", "St",
    "Road", "Avenue", "Square", "Center", "Centre", "Market", "Hotel", "Station",
}
PLACE_PREPOSITIONS = ("at", "in", "to", "near")

ACTIVITIES_HE = [
    "ארוחה", "ארוחת ערב", "ארוחת צהריים", "ארוחת בוקר", "קפה", "שתייה",
    "פגישה", "ישיבה", "פגישת עבודה", "ראיון", "פגישת עסקים",
    "יום הולדת", "חגיגה", "מסיבה", "אירוע", "חתונה", "על האש",
    "סרט", "קולנוע", "הצגה", "תיאטרון", "קונצרט",
    "ספורט", "כושר", "ריצה", "שחייה", "טניס",
    "קניות", "שופינג", "קניון", "שוק",
    "טיול", "נסיעה", "חופשה", "נופש",
]
ACTIVITIES_EN = [
    "dinner", "lunch", "breakfast", "meal", "coffee", "drink", "drinks",
    "meeting", "appointment", "interview", "business meeting",
    "birthday", "party", "celebration", "event", "wedding", "barbecue", "bbq",
    "movie", "cinema", "theater", "show", "concert",
    "sport", "gym", "workout", "running", "swimming", "tennis",
    "shopping", "mall", "market",
    "trip", "travel", "vacation", "holiday",
]

HEBREW_TIME_WORDS = [
    "הערב", "בערב", "היום", "מחר", "מחרתיים", "השבוע", "השבוע הבא",
    "בבוקר", "בצהריים", "אחר הצהריים", "בלילה", "עכשיו", "אחר כך", "לאחר מכן",
    "אתמול", "שלשום", "יום ראשון", "יום שני", "יום שלישי", "יום רביעי", "יום חמישי",
    "יום שישי", "יום שבת", "שבת",
]
ENGLISH_TIME_WORDS = [
    "this morning", "this afternoon", "this evening", "this weekend", "next weekend",
    "morning", "afternoon", "evening", "noon", "midnight", "weekend", "later", "soon",
]
CLOCK_PATTERN = re.compile(r"\b(?:[01]?[0-9]|2[0-3]):[0-5][0-9](?:\s*(?:AM|PM|am|pm))?\b")
_HEBREW_DAY_PARTS = "בבוקר|בצהריים|אחר הצהריים|בערב|בלילה"
# "בשעה 8", "ב8", "ב-20:30", "8 בערב"
HEBREW_CLOCK_PATTERN = re.compile(
    rf"(?<!\w)(?:בשעה\s+|ב-?)(?P<at_hour>[01]?\d|2[0-3])(?::[0-5]\d)?(?:\s*(?:{_HEBREW_DAY_PARTS}))?(?![\w:])"
    rf"|(?<![\w:])(?P<hour>[01]?\d|2[0-3])(?::[0-5]\d)?\s*(?:{_HEBREW_DAY_PARTS})(?!\w)"
)

CONFIRMATIONS = {
    "positive": ["כן", "בסדר", "אוקיי", "טוב", "מעולה", "נהדר", "סגור", "yes", "ok", "okay", "sure", "great", "perfect", "done"],
    "negative": ["לא", "לא יכול", "לא אוכל", "אי אפשר", "no", "can't", "cannot", "unable", "impossible"],
    "maybe": ["אולי", "יכול להיות", "נראה לי", "אני חושב", "maybe", "perhaps", "might", "possibly"],
}

AVAILABILITY_PATTERNS = ["יכול", "אפשר", "זמין", "can you", "are you", "available", "free"]
QUESTION_WORDS = ["what", "when", "where", "how", "why", "מה", "מתי", "איפה", "איך", "למה"]
URGENCY_WORDS = ["דחוף", "מיידי", "עכשיו", "מהר", "בהקדם", "urgent", "asap", "immediately", "now", "quickly"]

MEETING_INDICATORS = ["על האש", "נפגש", "פגישה", "תוכניות", "מחר", "בשעה", "אצל", "meet", "meeting", "plans", "tomorrow", "bbq", "barbecue"]
MEETING_CONFIRMATIONS = ["כן", "בטח", "סבבה", "אוקיי", "יש", "yes", "sure", "ok", "okay"]

# Capitalized words that are not names.
CAPITALIZED_STOPWORDS = {
    "The", "This", "That", "These", "Those", "There", "Then", "Than", "What", "When", "Where",
    "Which", "Who", "Why", "How", "Let", "Lets", "Can", "Could", "Would", "Should", "Will",
    "Are", "Was", "Were", "Did", "Does", "Have", "Has", "Had", "Yes", "Yeah", "Sure", "Okay",
    "Thanks", "Thank", "Hey", "Hello", "Good", "Great", "Nice", "See", "You", "Your", "And",
    "But", "For", "Not", "Just", "Also", "Maybe", "Please", "Sorry", "Our", "Its", "All",
    "Any", "Some", "Now", "Today", "Tonight", "Tomorrow", "Yesterday", "Morning", "Evening",
    "Afternoon", "Night", "Weekend", "Meeting", "Dinner", "Lunch", "Breakfast", "Coffee",
    "Party", "Movie", "Check", "Here", "Come", "Going", "Meet", "Don", "Didn", "Can't",
    "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday",
    "January", "February", "March", "April", "May", "June", "July", "August",
    "September", "October", "November", "December",
}

HEBREW_LOCATIVE_STOPWORDS = {
    "בסדר", "בטח", "בבוקר", "בערב", "בלילה", "בצהריים", "בשעה", "בשבוע", "בשבת", "בדיוק",
    "ביחד", "בכלל", "בעוד", "בגלל", "בשביל", "בערך", "בבקשה", "ברור", "בוודאי", "בהקדם",
    "בואו", "בוא", "בואי", "בית", "בזמן", "בינתיים", "ביום", "בחודש", "בשנה", "באמת", "בטוח",
    "לאחר", "לפני", "לכן", "לגמרי", "לבד", "להיות", "לעשות", "לראות", "לבוא", "ללכת",
    "לדבר", "לאכול", "לשתות", "לנו", "לכם", "להם", "לך", "לי", "לו", "לה", "לילה", "למה",
    "לגבי", "לפעמים", "לדעתי", "לקחת", "לתת", "לשמוע", "לעדכן", "לחזור", "לצאת", "לקנות",
}

URL_PATTERN = re.compile(
    r"(?:https?://|www\.)[^\s<>\"']+"
    r"|(?<![@\w.])(?:[a-z0-9-]+\.)+"
    r"(?:com|net|org|io|co|il|me|ly|app|tv|gl|be|info|biz|edu|gov|uk|de|fr)\b(?:/[^\s<>\"']*)?",
    re.IGNORECASE,
)
URL_TRAILING = ".,;:!?)]}'\">"

PURPOSE_DOMAINS: list[tuple[UrlPurpose, list[str]]] = [
    ("movie", ["netflix.com", "imdb.com", "rottentomatoes.com"]),
    ("restaurant", ["wolt.com", "zomato.com", "tripadvisor.com", "tripadvisor.co.il", "opentable.com",
                    "10bis.co.il", "ontopo.com", "ontopo.co.il"]),
    ("media", ["youtube.com", "youtu.be", "spotify.com", "soundcloud.com"]),
    ("location", ["waze.com", "maps.google.com", "maps.app.goo.gl", "google.com/maps", "goo.gl/maps"]),
    ("social", ["facebook.com", "fb.com", "instagram.com", "twitter.com", "x.com", "tiktok.com", "linkedin.com"]),
]
PURPOSE_CONTEXT: list[tuple[UrlPurpose, list[str]]] = [
    ("restaurant", ["restaurant", "מסעדה", "eat", "אוכל", "dinner", "lunch", "ארוחה"]),
    ("movie", ["movie", "film", "סרט", "trailer"]),
    ("media", ["music", "song", "מוזיקה", "שיר", "video"]),
    ("location", ["location", "address", "כתובת", "מיקום", "directions"]),
]

MEDIA_TYPES: dict[str, MessageType] = {
    "image": "image",
    "sticker": "image",
    "video": "video",
    "gif": "video",
    "audio": "audio",
    "ptt": "audio",
    "voice": "audio",
    "document": "document",
    "location": "location",
    "live_location": "location",
    "contact": "contact",
    "vcard": "contact",
    "multi_vcard": "contact",
}


# --- matching helpers -------------------------------------------------------

@lru_cache(maxsize=None)
def _word_pattern(term: str) -> re.Pattern:
    return re.compile(rf"(?<![\w']){re.escape(term)}(?![\w'])", re.IGNORECASE)


def _contains(text: str, term: str) -> bool:
    """Hebrew terms match as substrings, Latin terms as whole words."""
    if HEBREW_CHARS.search(term):
        return term in text
    return _word_pattern(term).search(text) is not None


def _contains_token(text: str, term: str) -> bool:
    """Whole-token match in either script."""
    return _word_pattern(term).search(text) is not None


def _dedupe(entities: list[Entity]) -> list[Entity]:
    seen: dict[tuple[str, str], Entity] = {}
    for e in entities:
        seen.setdefault((e.type, e.value.lower()), e)
    return list(seen.values())


# --- languages --------------------------------------------------------------

def detect_languages(text: str) -> list[Language]:
    has_hebrew = bool(HEBREW_CHARS.search(text or ""))
    has_english = bool(LATIN_CHARS.search(text or ""))
    if has_hebrew and has_english:
        return ["mixed", "hebrew", "english"]
    if has_hebrew:
        return ["hebrew"]
    if has_english:
        return ["english"]
    return ["unknown"]


# --- URLs -------------------------------------------------------------------

def _url_host(url: str) -> tuple[str, str] | None:
    candidate = url if re.match(r"https?://", url, re.IGNORECASE) else f"http://{url}"
    try:
        parsed = urlparse(candidate)
        host = parsed.hostname
    except ValueError:
        return None
    if not host:
        return None
    if host.startswith("www."):
        host = host[4:]
    return host, parsed.path or ""


def classify_url(url: str, context: str = "") -> tuple[str, UrlPurpose]:
    """(domain, purpose): domain allow-list first, then context keywords."""
    parts = _url_host(url)
    if parts is None:
        return "", "unknown"
    host, path = parts
    for purpose, domains in PURPOSE_DOMAINS:
        for d in domains:
            if "/" in d:
                base, _, prefix = d.partition("/")
                if (host == base or host.endswith("." + base)) and path.startswith("/" + prefix):
                    return host, purpose
            elif host == d or host.endswith("." + d):
                return host, purpose
    lowered = context.lower()
    for purpose, words in PURPOSE_CONTEXT:
        if any(_contains(lowered, w) for w in words):
            return host, purpose
    return host, "general"


def extract_urls(text: str, context_chars: int = CONTEXT_CHARS) -> list[ExtractedURL]:
    urls = []
    for m in URL_PATTERN.finditer(text):
        url = m.group(0).rstrip(URL_TRAILING)
        if not url:
            continue
        start = m.start()
        end = start + len(url)
        before = text[max(0, start - context_chars):start]
        after = text[end:end + context_chars]
        domain, purpose = classify_url(url, f"{before} {after}")
        urls.append(
            ExtractedURL(
                url=url,
                domain=domain,
                purpose=purpose,
                context_before=before,
                context_after=after,
                position=start,
            )
        )
    return urls


# --- entities ---------------------------------------------------------------

def extract_places(text: str) -> list[str]:
    places: list[str] = []
    lowered = text.lower()
    for venue in VENUES_HE:
        if " " in venue:
            if venue in text:
                places.append(venue)
        elif re.search(rf"(?<!\w)[בלהומ]?{re.escape(venue)}(?!\w)", text):
            places.append(venue)
    places.extend(v for v in VENUES_EN if _contains(lowered, v))

    for m in re.finditer(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b", text):
        words = [w for w in m.group(0).split() if w not in CAPITALIZED_STOPWORDS or w in PLACE_NOUNS]
        if not words:
            continue
        preceding = text[:m.start()].rstrip().rsplit(None, 1)
        after_preposition = bool(preceding) and preceding[-1].lower() in PLACE_PREPOSITIONS
        if after_preposition or (len(words) > 1 and any(w in PLACE_NOUNS for w in words)):
            places.append(" ".join(words))

    for token in TOKEN.findall(text):
        if token[0] in "בל" and len(token) - 1 >= 3 and HEBREW_CHARS.match(token):
            if token in HEBREW_LOCATIVE_STOPWORDS or token in HEBREW_TIME_WORDS:
                continue
            places.append(token[1:])
    return list(dict.fromkeys(places))


def extract_people(text: str, places: list[str] | None = None) -> list[str]:
    people: list[str] = []
    for name in HEBREW_NAMES:
        for m in _word_pattern(name).finditer(text):
            # "יום שני" is Monday
            if name == "שני" and text[:m.start()].rstrip().endswith("יום"):
                continue
            people.append(name)
            break
    place_words = {w for p in places or [] for w in p.split()}
    for word in re.findall(r"\b[A-Z][a-z]+\b", text):
        if len(word) > 2 and word not in CAPITALIZED_STOPWORDS and word not in place_words:
            people.append(word)
    people.extend(t for t in RELATIONSHIP_TERMS_HE if _contains_token(text, t))
    people.extend(t for t in RELATIONSHIP_TERMS_EN if _contains(text, t))
    return list(dict.fromkeys(people))


def extract_activities(text: str) -> list[str]:
    lowered = text.lower()
    found = [a for a in ACTIVITIES_HE if a in text]
    found.extend(a for a in ACTIVITIES_EN if _contains(lowered, a))
    return list(dict.fromkeys(found))


def extract_times(text: str, now: datetime | None = None) -> list[Entity]:
    times: list[Entity] = []
    taken: list[tuple[int, int]] = []

    def free(start: int, end: int) -> bool:
        return not any(start < e and s < end for s, e in taken)

    for dm in find_date_phrases(text, now):
        kind = "absolute" if any(ch.isdigit() for ch in dm.phrase) and "ago" not in dm.phrase.lower() else "relative"
        start_day = datetime.fromtimestamp(dm.date_range.start / 1000).date().isoformat()
        times.append(Entity(type="time", value=dm.phrase, data={"kind": kind, "date": start_day}))
        taken.append((dm.start, dm.end))
    for dm in find_hebrew_date_phrases(text, now):
        if free(dm.start, dm.end):
            start_day = datetime.fromtimestamp(dm.date_range.start / 1000).date().isoformat()
            data = {"kind": "relative", "date": start_day, "canonical": substitute_hebrew_dates(dm.phrase)}
            times.append(Entity(type="time", value=dm.phrase, data=data))
            taken.append((dm.start, dm.end))
    for m in HEBREW_CLOCK_PATTERN.finditer(text):
        if free(m.start(), m.end()):
            hour = int(m.group("at_hour") or m.group("hour"))
            times.append(Entity(type="time", value=m.group(0), data={"kind": "clock", "hour": hour}))
            taken.append((m.start(), m.end()))
    for word in sorted(ENGLISH_TIME_WORDS, key=len, reverse=True):
        for m in _word_pattern(word).finditer(text):
            if free(m.start(), m.end()):
                times.append(Entity(type="time", value=m.group(0), data={"kind": "part_of_day"}))
                taken.append((m.start(), m.end()))
    for word in sorted(HEBREW_TIME_WORDS, key=len, reverse=True):
        for m in _word_pattern(word).finditer(text):
            if free(m.start(), m.end()):
                canonical = substitute_hebrew_dates(word)
                data = {"kind": "relative"}
                if canonical != word:
                    data["canonical"] = canonical
                times.append(Entity(type="time", value=word, data=data))
                taken.append((m.start(), m.end()))
    for m in CLOCK_PATTERN.finditer(text):
        if free(m.start(), m.end()):
            times.append(Entity(type="time", value=m.group(0), data={"kind": "clock"}))
            taken.append((m.start(), m.end()))
    return times


def extract_confirmations(text: str) -> list[Entity]:
    lowered = text.lower()
    found = []
    for polarity, terms in CONFIRMATIONS.items():
        for term in terms:
            hit = term in lowered if " " in term else _contains_token(lowered, term)
            if hit:
                found.append(Entity(type="confirmation", value=term, data={"polarity": polarity}))
    return found


def extract_entities(text: str, now: datetime | None = None) -> list[Entity]:
    places = extract_places(text)
    entities = [Entity(type="person", value=p) for p in extract_people(text, places)]
    entities.extend(Entity(type="place", value=p) for p in places)
    entities.extend(Entity(type="activity", value=a) for a in extract_activities(text))
    entities.extend(extract_times(text, now))
    entities.extend(extract_confirmations(text))
    return _dedupe(entities)


# --- scheduling -------------------------------------------------------------

def has_scheduling_keyword(text: str) -> bool:
    lowered = text.lower()
    return any(k in text for k in SCHEDULING_KEYWORDS_HE) or any(
        _contains(lowered, k) for k in SCHEDULING_KEYWORDS_EN
    )


def is_availability_question(text: str) -> bool:
    lowered = text.lower()
    return "?" in text or any(_contains(lowered, p) for p in AVAILABILITY_PATTERNS)


def detect_scheduling_intent(text: str, now: datetime | None = None) -> bool:
    if not text or not text.strip():
        return False
    if has_scheduling_keyword(text):
        return True
    return is_availability_question(text) and bool(extract_times(text, now))


def detect_urgency(text: str) -> bool:
    lowered = text.lower()
    return any(_contains(lowered, w) for w in URGENCY_WORDS)


def is_question(text: str) -> bool:
    if "?" in text:
        return True
    tokens = TOKEN.findall(text.lower())
    return bool(tokens) and tokens[0] in QUESTION_WORDS


def detect_meeting_context(text: str) -> MeetingContext:
    lowered = (text or "").lower()
    meeting = any(_contains(lowered, w) for w in MEETING_INDICATORS)
    confirmed = any(_contains_token(lowered, w) for w in MEETING_CONFIRMATIONS)
    if meeting and confirmed:
        confidence = 0.9
    elif meeting:
        confidence = 0.7
    else:
        confidence = 0.1
    return MeetingContext(is_meeting_related=meeting, has_confirmation=confirmed, confidence=confidence)


def classify_message_type(
    text: str,
    *,
    is_scheduling: bool,
    has_urls: bool,
    has_confirmation: bool,
    media_type: str | None = None,
    has_media: bool = False,
) -> MessageType:
    kind = (media_type or "").lower()
    if kind in MEDIA_TYPES and MEDIA_TYPES[kind] not in ("location", "contact"):
        return MEDIA_TYPES[kind]
    if has_media and kind not in MEDIA_TYPES:
        return "media"
    if kind in MEDIA_TYPES:
        return MEDIA_TYPES[kind]
    if is_scheduling:
        return "scheduling"
    if has_urls:
        return "link"
    if has_confirmation:
        return "confirmation"
    if is_question(text):
        return "question"
    return "text"


def build_searchable_text(content: str, extraction: Extraction) -> str:
    """Content plus extracted context, used for full-text search and re-embedding."""
    parts = [
        content,
        " ".join(extraction.people),
        " ".join(extraction.places),
        " ".join(extraction.activities),
        " ".join(extraction.times),
        " ".join(f"{u.context_before} {u.context_after} {u.purpose}" for u in extraction.urls),
    ]
    return " ".join(" ".join(p for p in parts if p and p.strip()).split())


def _extract(
    text: str,
    media_type: str | None,
    has_media: bool,
    now: datetime | None,
    context_chars: int,
) -> Extraction:
    urls = extract_urls(text, context_chars)
    entities = extract_entities(text, now)
    times = [e for e in entities if e.type == "time"]
    is_scheduling = has_scheduling_keyword(text) or (is_availability_question(text) and bool(times))
    scheduling = SchedulingInfo()
    extraction = Extraction(urls=urls, entities=entities, languages=detect_languages(text))
    if is_scheduling:
        scheduling = SchedulingInfo(
            is_scheduling=True,
            participants=extraction.people,
            locations=extraction.places,
            activities=extraction.activities,
            time_references=extraction.times,
            confirmations=extraction.confirmations,
            urgency=detect_urgency(text),
        )
    message_type = classify_message_type(
        text,
        is_scheduling=is_scheduling,
        has_urls=bool(urls),
        has_confirmation=bool(extraction.confirmations),
        media_type=media_type,
        has_media=has_media,
    )
    return extraction.model_copy(
        update={
            "scheduling": scheduling,
            "message_type": message_type,
            "meeting": detect_meeting_context(text),
        }
    )


def extract(
    text: str,
    media_type: str | None = None,
    has_media: bool = False,
    now: datetime | None = None,
    context_chars: int = CONTEXT_CHARS,
) -> Extraction:
    """
    Derive URLs, entities, scheduling info, languages and message type from a
    message body. Pure apart from logging; never raises.
    """
    try:
        return _extract(text or "", media_type, has_media, now, context_chars)
    except Exception as e:
        logger.warning("Feature extraction failed, returning neutral result: %s", e)
        return Extraction(languages=detect_languages(text if isinstance(text, str) else ""))
