"""Tests for the Hebrew/English feature extractor."""

import pytest

from conftest import NOW
from whatsapp_indexer.extraction import (
    build_searchable_text,
    classify_url,
    detect_languages,
    detect_meeting_context,
    detect_scheduling_intent,
    extract,
    extract_people,
    extract_places,
    extract_urls,
)


class TestDetectLanguages:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("שלום hello", ["mixed", "hebrew", "english"]),
            ("מה נשמע", ["hebrew"]),
            ("how are you", ["english"]),
            ("", ["unknown"]),
            ("123 :)", ["unknown"]),
        ],
    )
    def test_languages(self, text, expected):
        assert detect_languages(text) == expected

    def test_mixed_always_first(self):
        langs = detect_languages("ok נתראה tomorrow")
        assert langs[0] == "mixed"
        assert langs[1] in ("hebrew", "english")


class TestExtractUrls:
    @pytest.mark.parametrize(
        "prefix, suffix",
        [
            ("check this out ", " looks great"),
            ("תראה את זה ", " מה דעתך"),
            ("", ""),
            ("x" * 49 + " ", " " + "y" * 49),
        ],
    )
    def test_context_round_trip(self, prefix, suffix):
        url = "https://www.netflix.com/title/81234567"
        urls = extract_urls(prefix + url + suffix)
        assert len(urls) == 1
        assert urls[0].url == url
        assert urls[0].context_before == prefix
        assert urls[0].context_after == suffix
        assert urls[0].position == len(prefix)

    def test_context_is_capped(self):
        text = "a" * 80 + " https://example.com/page " + "b" * 80
        found = extract_urls(text, context_chars=50)[0]
        assert len(found.context_before) == 50
        assert len(found.context_after) == 50

    def test_trailing_punctuation_is_not_part_of_url(self):
        urls = extract_urls("see (https://example.com/a).")
        assert urls[0].url == "https://example.com/a"

    def test_bare_domain(self):
        urls = extract_urls("watch youtu.be/abc123 later")
        assert [u.url for u in urls] == ["youtu.be/abc123"]
        assert urls[0].purpose == "media"

    def test_email_is_not_a_url(self):
        assert extract_urls("mail me at dana@gmail.com") == []

    @pytest.mark.parametrize(
        "url, context, purpose",
        [
            ("https://www.netflix.com/title/1", "", "movie"),
            ("https://wolt.com/en/isr/tel-aviv", "", "restaurant"),
            ("https://open.spotify.com/track/1", "", "media"),
            ("https://www.google.com/maps/place/x", "", "location"),
            ("https://www.instagram.com/p/1", "", "social"),
            ("https://example.com/menu", "great place for dinner", "restaurant"),
            ("https://example.com/a", "מצאתי סרט טוב", "movie"),
            ("https://example.com/a", "nothing special", "general"),
        ],
    )
    def test_classify_url(self, url, context, purpose):
        domain, found = classify_url(url, context)
        assert found == purpose
        assert not domain.startswith("www.")


class TestEntities:
    def test_english_place_and_person(self):
        text = "Let's meet at Cafe Nero tomorrow with Dana"
        places = extract_places(text)
        assert "Cafe Nero" in places
        people = extract_people(text, places)
        assert "Dana" in people
        assert "Nero" not in people
        assert "Let" not in people

    def test_hebrew_person_and_venue(self):
        extraction = extract("נפגשים מחר בקניון עם רוני", now=NOW)
        assert "רוני" in extraction.people
        assert "קניון" in extraction.places
        assert "מחר" in extraction.times

    def test_monday_is_not_a_person(self):
        assert "שני" not in extract_people("נתראה ביום שני")

    def test_time_entities_carry_kind(self):
        extraction = extract("dinner tomorrow at 20:30?", now=NOW)
        kinds = {e.value: e.data["kind"] for e in extraction.entities if e.type == "time"}
        assert kinds["tomorrow"] == "relative"
        assert kinds["20:30"] == "clock"

    def test_hebrew_weekday_and_hour(self):
        extraction = extract("נפגשים ביום שישי בשעה 8", now=NOW)
        times = {e.value: e.data for e in extraction.entities if e.type == "time"}
        assert times["ביום שישי"]["kind"] == "relative"
        assert times["ביום שישי"]["canonical"] == "friday"
        assert times["בשעה 8"] == {"kind": "clock", "hour": 8}
        assert extraction.scheduling.time_references == ["ביום שישי", "בשעה 8"]

    @pytest.mark.parametrize(
        "text, value, hour",
        [
            ("ארוחה 8 בערב", "8 בערב", 8),
            ("ריצה 7 בבוקר", "7 בבוקר", 7),
            ("נתראה ב-20:30", "ב-20:30", 20),
            ("נתראה ב9", "ב9", 9),
        ],
    )
    def test_hebrew_clock_times(self, text, value, hour):
        clocks = [e for e in extract(text, now=NOW).entities if e.type == "time" and e.data["kind"] == "clock"]
        assert [(e.value, e.data["hour"]) for e in clocks] == [(value, hour)]

    def test_hebrew_yesterday_with_prefix(self):
        times = extract("ומאתמול לא שמעתי ממנו", now=NOW).times
        assert times == ["ומאתמול"]

    def test_confirmations_have_polarity(self):
        extraction = extract("yes, sounds great")
        polarity = {e.value: e.data["polarity"] for e in extraction.entities if e.type == "confirmation"}
        assert polarity["yes"] == "positive"

    def test_entities_are_deduplicated(self):
        extraction = extract("Dana and Dana")
        assert extraction.people.count("Dana") == 1


class TestScheduling:
    def test_hebrew_barbecue_question(self):
        extraction = extract("יש על האש מחר?", now=NOW)
        assert extraction.scheduling.is_scheduling
        assert extraction.message_type == "scheduling"
        assert "על האש" in extraction.scheduling.activities

    def test_availability_question_with_time(self):
        assert detect_scheduling_intent("are you free at 18:00?", NOW)

    def test_plain_chat_is_not_scheduling(self):
        assert not detect_scheduling_intent("haha that was funny")
        assert not detect_scheduling_intent("   ")

    def test_urgency(self):
        extraction = extract("meeting now, urgent!")
        assert extraction.scheduling.urgency

    @pytest.mark.parametrize(
        "text, confidence",
        [
            ("יש על האש מחר?", 0.9),
            ("meeting at the office", 0.7),
            ("hello there", 0.1),
        ],
    )
    def test_meeting_context(self, text, confidence):
        assert detect_meeting_context(text).confidence == confidence


class TestMessageType:
    @pytest.mark.parametrize(
        "text, media_type, expected",
        [
            ("see you tomorrow", "image", "image"),
            ("voice note", "ptt", "audio"),
            ("here", "live_location", "location"),
            ("dinner tomorrow? https://wolt.com/x", None, "scheduling"),
            ("look https://example.com/x", None, "link"),
            ("ok", None, "confirmation"),
            ("what's up?", None, "question"),
            ("haha funny", None, "text"),
        ],
    )
    def test_type_precedence(self, text, media_type, expected):
        assert extract(text, media_type=media_type, has_media=media_type is not None).message_type == expected

    def test_unknown_media_kind(self):
        assert extract("file", media_type="weird", has_media=True).message_type == "media"


class TestNeverRaises:
    @pytest.mark.parametrize("text", [None, "", "\x00\x01", "http://", "[[[(((", "a" * 2000])
    def test_total(self, text):
        extraction = extract(text)
        assert extraction.languages

    def test_searchable_text_includes_context(self):
        content = "dinner at Cafe Nero with Dana"
        extraction = extract(content)
        searchable = build_searchable_text(content, extraction)
        assert searchable.startswith(content)
        assert "dinner" in searchable
