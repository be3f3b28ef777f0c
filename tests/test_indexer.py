"""End-to-end behaviour of the indexer: ingestion, deletion, compaction and queries."""

import pytest

from conftest import make_event, ts
from whatsapp_indexer.errors import EmbeddingError, NotReadyError, ValidationError


def group_event(message_id, body, sender, minute, **kwargs):
    return make_event(
        message_id,
        body,
        timestamp=ts(13, 20, minute),
        chat_id="group-friends",
        chat_name="Friends",
        is_group=True,
        sender_name=sender,
        **kwargs,
    )


class TestIngestion:
    def test_reingest_supersedes_vector(self, indexer):
        event = make_event("m1", "pizza tonight?")
        indexer.ingest(event)
        indexer.ingest(event)
        entries = indexer.index.entries("m1")
        assert indexer.index.size == 2
        assert [e.deleted for e in entries] == [True, False]
        assert indexer.store.count() == 1

    def test_empty_message_is_dropped(self, indexer):
        assert indexer.ingest(make_event("m1", "   ")) is None
        assert indexer.store.count() == 0
        assert indexer.index.size == 0

    def test_sent_message_sender_is_me(self, indexer):
        message = indexer.ingest(make_event("m1", "on my way", from_me=True, sender_name="Dana"))
        assert message.sender_name == "Me"
        assert message.is_from_me

    def test_edit_replaces_content(self, indexer):
        indexer.ingest(make_event("m1", "pizza tonight?"))
        indexer.ingest_edit("m1", make_event("other-id", "sushi tonight?"))
        assert indexer.store.get("m1").content == "sushi tonight?"
        assert not indexer.store.exists("other-id")
        assert [e.deleted for e in indexer.index.entries("m1")] == [True, False]

    def test_edit_to_empty_deletes(self, make_indexer):
        indexer = make_indexer(auto_compact=False)
        indexer.ingest(make_event("m1", "pizza tonight?"))
        assert indexer.ingest_edit("m1", make_event("m1", "")) is None
        assert indexer.store.get("m1").deleted
        assert indexer.index.active_count() == 0

    def test_delete_unknown_message(self, indexer):
        assert indexer.ingest_delete("missing") is False

    def test_embedding_failure_writes_nothing(self, indexer, embedder):
        embedder.fail = True
        with pytest.raises(EmbeddingError):
            indexer.ingest(make_event("m1", "pizza tonight?"))
        assert not indexer.store.exists("m1")
        assert indexer.index.size == 0

    def test_state_survives_restart(self, make_indexer):
        first = make_indexer()
        first.ingest(make_event("m1", "pizza tonight?"))
        first.ingest(make_event("m2", "sushi tomorrow"))
        first.close()
        second = make_indexer()
        assert second.store.count() == 2
        assert second.index.size == 2
        assert [r.message_id for r in second.search("pizza")][0] == "m1"


class TestBatch:
    def events(self):
        return [
            make_event("h1", "dinner tomorrow?", timestamp=ts(10)),
            make_event("h2", "https://example.com/menu looks good", timestamp=ts(11)),
            make_event("h3", "", timestamp=ts(11)),
            make_event("h1", "dinner tomorrow?", timestamp=ts(10)),
            make_event("h4", "see you", timestamp=ts(12)),
        ]

    def test_dry_run_writes_nothing(self, indexer):
        stats = indexer.ingest_batch(self.events(), dry_run=True)
        assert stats.dry_run
        assert (stats.total_messages, stats.new_messages, stats.skipped_messages, stats.empty_messages) == (5, 3, 1, 1)
        assert indexer.store.count(include_deleted=True) == 0
        assert indexer.index.size == 0

    def test_live_run_reports_the_same(self, indexer):
        dry = indexer.ingest_batch(self.events(), dry_run=True)
        live = indexer.ingest_batch(self.events())
        assert live.model_dump(exclude={"dry_run"}) == dry.model_dump(exclude={"dry_run"})
        assert indexer.store.count() == 3
        assert indexer.index.size == 3

    def test_second_run_skips_everything(self, indexer):
        indexer.ingest_batch(self.events())
        again = indexer.ingest_batch(self.events())
        assert again.new_messages == 0
        assert again.skipped_messages == 4
        assert indexer.index.size == 3

    def test_errors_are_counted(self, indexer, embedder):
        embedder.fail = True
        stats = indexer.ingest_batch(self.events())
        assert stats.errors == 3
        assert indexer.store.count() == 0


class TestDeleteAndCompact:
    def ingest_ten(self, indexer):
        for i in range(10):
            indexer.ingest(make_event(f"m{i}", f"remember topic{i} notes", timestamp=ts(13, 10, i)))

    def test_deleted_messages_never_returned(self, make_indexer):
        indexer = make_indexer(auto_compact=False)
        self.ingest_ten(indexer)
        deleted = {"m2", "m5", "m7"}
        for message_id in deleted:
            assert indexer.ingest_delete(message_id)

        results = indexer.search("remember", limit=10)
        assert len(results) == 7
        assert not deleted & {r.message_id for r in results}
        for message_id in deleted:
            assert message_id not in {r.message_id for r in indexer.search(message_id.replace("m", "topic"))}

        assert indexer.index.needs_compaction()
        assert indexer.compact()
        assert indexer.index.size == 7
        assert [p.slot for p in indexer.index.positions()] == list(range(7))
        assert not deleted & {r.message_id for r in indexer.search("remember", limit=10)}
        assert indexer.store.count() == 7
        assert indexer.store.count(include_deleted=True) == 10

    def test_auto_compaction_after_threshold(self, make_indexer):
        indexer = make_indexer(auto_compact=True)
        self.ingest_ten(indexer)
        indexer.ingest_delete("m0")
        indexer.ingest_delete("m1")
        assert indexer.index.size == 10
        indexer.ingest_delete("m2")
        assert indexer.index.size == 7
        assert [p.slot for p in indexer.index.positions()] == list(range(7))


class TestQueries:
    def test_hebrew_meeting_round_trip(self, indexer):
        indexer.ingest(group_event("g1", "יש על האש מחר?", "Me", 0, from_me=True))
        indexer.ingest(group_event("g2", "כן", "Yahav", 4))
        indexer.ingest(group_event("g3", "אם יהיה שינוי אעדכן", "Yahav", 9))

        results = indexer.find_schedule_with_person("Yahav", "this week")
        assert [r.message_id for r in results] == ["g1", "g2", "g3"]
        first = indexer.store.get("g1")
        assert first.scheduling.is_scheduling
        assert results[0].has_scheduling
        assert results[0].meeting_confidence >= 0.7

    def test_schedule_ignores_unrelated_threads(self, indexer):
        indexer.ingest(make_event("d1", "how was the game", sender_name="Yahav", chat_name="Yahav", timestamp=ts(13, 9)))
        indexer.ingest(make_event("d2", "great fun", sender_name="Yahav", chat_name="Yahav", timestamp=ts(13, 9, 5)))
        assert indexer.find_schedule_with_person("Yahav", "this week") == []

    def test_schedule_respects_period(self, indexer):
        indexer.ingest(group_event("g1", "meeting tomorrow?", "Yahav", 0))
        assert indexer.find_schedule_with_person("Yahav", "last week") == []

    def test_search_with_sender_and_date(self, indexer):
        indexer.ingest(make_event("a", "pizza place https://wolt.com/p", sender_name="Dana", timestamp=ts(13)))
        indexer.ingest(make_event("b", "pizza again", sender_name="Roni", chat_name="Roni", chat_id="c2", timestamp=ts(13)))
        indexer.ingest(make_event("c", "pizza last month", sender_name="Dana", timestamp=ts(1)))

        assert {r.message_id for r in indexer.search("pizza")} == {"a", "b", "c"}
        assert [r.message_id for r in indexer.search("pizza from Dana yesterday")] == ["a"]
        assert [r.message_id for r in indexer.search("links from Dana")] == ["a"]

    def test_search_message_type_filter(self, indexer):
        indexer.ingest(make_event("in", "pizza?", sender_name="Dana"))
        indexer.ingest(make_event("out", "pizza!", from_me=True))
        assert [r.message_id for r in indexer.search("pizza", message_type_filter="sent")] == ["out"]
        assert [r.message_id for r in indexer.search("pizza", message_type_filter="received")] == ["in"]

    def test_search_sources(self, indexer):
        indexer.ingest(make_event("a", "pizza night"))
        result = indexer.search("pizza")[0]
        assert result.source == "both"
        assert result.relevance_score > 0

    @pytest.mark.parametrize(
        "call",
        [
            lambda ix: ix.search(""),
            lambda ix: ix.search("pizza", limit=0),
            lambda ix: ix.search("pizza", message_type_filter="spam"),
            lambda ix: ix.get_messages_by_date("qwertyuiop"),
            lambda ix: ix.find_person_conversations(" "),
            lambda ix: ix.find_schedule_with_person("Dana", "qwertyuiop"),
        ],
    )
    def test_invalid_arguments(self, indexer, call):
        with pytest.raises(ValidationError):
            call(indexer)

    def test_not_ready_before_init(self, make_indexer):
        indexer = make_indexer(init=False)
        assert not indexer.ready
        with pytest.raises(NotReadyError):
            indexer.search("pizza")
        with pytest.raises(NotReadyError):
            indexer.ingest(make_event("m1", "pizza"))

    def test_messages_by_date(self, indexer):
        indexer.ingest(make_event("y", "hello", timestamp=ts(13, 9)))
        indexer.ingest(make_event("t", "hello", timestamp=ts(14, 9)))
        assert [r.message_id for r in indexer.get_messages_by_date("yesterday")] == ["y"]
        assert [r.message_id for r in indexer.get_messages_by_date("אתמול")] == ["y"]
        assert {r.message_id for r in indexer.get_messages_by_date("this week")} == {"y", "t"}

    def test_person_conversations_across_chats(self, indexer):
        indexer.ingest(make_event("d", "hi", sender_name="Dana"))
        indexer.ingest(group_event("g", "did Dana answer?", "Roni", 0))
        indexer.ingest(group_event("x", "no idea", "Roni", 1))
        assert {r.message_id for r in indexer.find_person_conversations("dana")} == {"d", "g"}

    def test_plans_for_tomorrow(self, indexer):
        indexer.ingest(make_event("p1", "dinner tomorrow at 20:00?", timestamp=ts(14, 9)))
        indexer.ingest(make_event("p2", "lunch today?", timestamp=ts(14, 9, 30)))
        indexer.ingest(make_event("p3", "party on thursday!", timestamp=ts(15, 8)))
        assert [r.message_id for r in indexer.check_plans_for_day("tomorrow")] == ["p1", "p3"]
        assert [r.message_id for r in indexer.check_plans_for_day("מחר")] == ["p1", "p3"]

    def test_urls_by_sender(self, indexer):
        indexer.ingest(make_event("u", "trailer https://www.imdb.com/title/tt1", sender_name="Dana"))
        urls = indexer.get_urls_by_sender("Dana")
        assert [(u.url, u.purpose) for u in urls] == [("https://www.imdb.com/title/tt1", "movie")]

    def test_sent_and_received(self, indexer):
        indexer.ingest(make_event("in", "hello", chat_name="Work", chat_id="w"))
        indexer.ingest(make_event("out", "hi", from_me=True, chat_name="Work", chat_id="w"))
        assert [r.message_id for r in indexer.get_sent_messages(chat_filter="work")] == ["out"]
        assert [r.message_id for r in indexer.get_received_messages(sender_filter="dana")] == ["in"]

    def test_groups(self, indexer):
        indexer.ingest(group_event("g1", "beach on saturday", "Roni", 0))
        indexer.ingest(group_event("g2", "count me in", "Dana", 1))
        indexer.ingest(make_event("d1", "private", sender_name="Dana"))
        groups = indexer.list_groups()
        assert [(g.chat_name, g.message_count) for g in groups] == [("Friends", 2)]
        assert {r.message_id for r in indexer.get_group_messages("friends")} == {"g1", "g2"}
        assert [r.message_id for r in indexer.search_in_group("Friends", "beach")] == ["g1"]
        assert [r.message_id for r in indexer.get_individual_messages("Dana")] == ["d1"]

    def test_status(self, indexer):
        indexer.ingest(make_event("m1", "pizza"))
        status = indexer.status()
        assert status["ready"]
        assert status["store"]["live_messages"] == 1
        assert status["index"]["total_vectors"] == 1
        assert status["last_message"]["message_id"] == "m1"

    def test_hebrew_friday_plan(self, indexer):
        indexer.ingest(make_event("p", "ניפגש ביום שישי?", timestamp=ts(14, 9)))
        indexer.ingest(make_event("q", "מה קורה?", timestamp=ts(14, 10)))
        assert [r.message_id for r in indexer.check_plans_for_day("friday")] == ["p"]
        assert [r.message_id for r in indexer.check_plans_for_day("ביום שישי")] == ["p"]
        assert indexer.check_plans_for_day("thursday") == []

    def test_search_by_entity(self, indexer):
        indexer.ingest(make_event("e1", "נפגשים מחר בקניון עם רוני"))
        indexer.ingest(make_event("e2", "dinner tonight?"))
        assert [r.message_id for r in indexer.search_by_entity("people", "רוני")] == ["e1"]
        assert [r.message_id for r in indexer.search_by_entity("places", "קניון")] == ["e1"]
        assert [r.message_id for r in indexer.search_by_entity("activities", "DINNER")] == ["e2"]
        assert indexer.search_by_entity("people", "Nobody") == []

    def test_urls_by_purpose(self, indexer):
        indexer.ingest(make_event("u1", "trailer https://www.imdb.com/title/tt1", timestamp=ts(13, 9)))
        indexer.ingest(make_event("u2", "order from https://wolt.com/p", timestamp=ts(13, 10)))
        assert [u.message_id for u in indexer.get_urls_by_purpose("movie")] == ["u1"]
        assert [u.message_id for u in indexer.get_urls_by_purpose("Restaurant")] == ["u2"]
        assert indexer.get_urls_by_purpose("social") == []

    def test_search_scheduling(self, indexer):
        indexer.ingest(make_event("s1", "dinner with Roni on friday?", timestamp=ts(13, 9)))
        indexer.ingest(make_event("s2", "movie on friday?", timestamp=ts(13, 10)))
        indexer.ingest(make_event("s3", "dinner again?", timestamp=ts(1)))
        indexer.ingest(make_event("s4", "pizza recipe", timestamp=ts(13, 11)))

        assert [r.message_id for r in indexer.search_scheduling("dinner")] == ["s1"]
        assert [r.message_id for r in indexer.search_scheduling("friday", participants="Roni")] == ["s1"]
        assert [r.message_id for r in indexer.search_scheduling("friday", activities="movie")] == ["s2"]
        assert indexer.search_scheduling("dinner", time_period="last week") == []
        assert all(r.has_scheduling for r in indexer.search_scheduling("friday"))

    @pytest.mark.parametrize(
        "call",
        [
            lambda ix: ix.search_by_entity("colors", "red"),
            lambda ix: ix.search_by_entity("people", " "),
            lambda ix: ix.get_urls_by_purpose("spam"),
            lambda ix: ix.search_scheduling(""),
            lambda ix: ix.search_scheduling("dinner", time_period="qwertyuiop"),
        ],
    )
    def test_invalid_lookup_arguments(self, indexer, call):
        with pytest.raises(ValidationError):
            call(indexer)


class TestBatchAutosave:
    def count_saves(self, indexer, monkeypatch):
        saves = []
        original = indexer.index.save

        def counting_save():
            saves.append(1)
            original()

        monkeypatch.setattr(indexer.index, "save", counting_save)
        return saves

    def test_batch_saves_index_once(self, make_indexer, monkeypatch):
        indexer = make_indexer(vector_autosave_every=2)
        saves = self.count_saves(indexer, monkeypatch)
        events = [make_event(f"b{i}", f"note number {i}", timestamp=ts(13, 10, i)) for i in range(9)]
        assert indexer.ingest_batch(events).new_messages == 9
        assert len(saves) == 1
        assert indexer.index.size == 9

    def test_single_ingest_still_autosaves(self, make_indexer, monkeypatch):
        indexer = make_indexer(vector_autosave_every=2)
        saves = self.count_saves(indexer, monkeypatch)
        for i in range(4):
            indexer.ingest(make_event(f"m{i}", f"note number {i}"))
        assert len(saves) == 2
