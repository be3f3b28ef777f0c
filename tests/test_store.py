"""SQLite message store: upserts, child rows, lookups and transactions."""

import os
import shutil
import tempfile

import pytest

from conftest import make_event, ts
from whatsapp_indexer.errors import PersistenceError
from whatsapp_indexer.indexer import build_message
from whatsapp_indexer.models import DateRange, MessageFilter
from whatsapp_indexer.store import MessageStore


def message(message_id, body, **kwargs):
    return build_message(make_event(message_id, body, **kwargs))


class TestMessageStore:
    def setup_method(self):
        self.tmp = tempfile.mkdtemp(prefix="wa_store_test_")
        self.store = MessageStore(os.path.join(self.tmp, "db", "messages.db"))
        self.store.init()

    def teardown_method(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_init_creates_parent_directory(self):
        assert os.path.exists(os.path.join(self.tmp, "db", "messages.db"))
        # idempotent
        self.store.init()

    def test_save_and_get(self):
        self.store.save(message("m1", "dinner at Cafe Nero tomorrow? https://wolt.com/x"))
        stored = self.store.get("m1")
        assert stored.content.startswith("dinner")
        assert [u.url for u in stored.urls] == ["https://wolt.com/x"]
        assert stored.urls[0].purpose == "restaurant"
        assert stored.has_scheduling
        assert "Cafe Nero" in stored.places
        assert self.store.exists("m1")
        assert not self.store.exists("missing")
        assert self.store.get("missing") is None

    def test_upsert_replaces_children(self):
        self.store.save(message("m1", "see https://example.com/a and https://example.com/b"))
        self.store.save(message("m1", "just text now"))
        stored = self.store.get("m1")
        assert stored.content == "just text now"
        assert stored.urls == []
        assert self.store.count() == 1
        assert self.store.stats()["urls"] == 0

    def test_cross_chat_person_search(self):
        self.store.save(message("direct", "hey there", sender_name="Dana", chat_id="c1", chat_name="Dana"))
        self.store.save(
            message(
                "group",
                "did Dana confirm?",
                sender_name="Roni",
                chat_id="g1",
                chat_name="Friends",
                is_group=True,
            )
        )
        self.store.save(message("other", "unrelated", sender_name="Roni", chat_id="c2", chat_name="Roni"))
        found = {m.id for m in self.store.get_by_sender_across_chats("Dana")}
        assert found == {"direct", "group"}

    def test_person_search_respects_date_range(self):
        self.store.save(message("old", "hello", timestamp=ts(1)))
        self.store.save(message("new", "hello again", timestamp=ts(13)))
        window = DateRange(start=ts(10), end=ts(14))
        assert [m.id for m in self.store.get_by_sender_across_chats("dana", window)] == ["new"]

    def test_deleted_rows_are_kept_but_hidden(self):
        self.store.save(message("m1", "first"))
        self.store.save(message("m2", "second"))
        assert self.store.mark_deleted("m1")
        assert not self.store.mark_deleted("missing")
        assert self.store.count() == 1
        assert self.store.count(include_deleted=True) == 2
        assert self.store.get("m1").deleted
        assert [m.id for m in self.store.query(MessageFilter())] == ["m2"]
        assert {m.id for m in self.store.query(MessageFilter(include_deleted=True))} == {"m1", "m2"}

    def test_query_text_and_filters(self):
        self.store.save(message("m1", "pizza tonight?", timestamp=ts(13, 10)))
        self.store.save(message("m2", "pizza was great", timestamp=ts(13, 11), from_me=True))
        self.store.save(message("m3", "sushi please", timestamp=ts(13, 12)))
        assert [m.id for m in self.store.query(MessageFilter(text="pizza"))] == ["m2", "m1"]
        assert [m.id for m in self.store.query(MessageFilter(text="pizza", is_from_me=True))] == ["m2"]
        assert [m.id for m in self.store.query(MessageFilter(has_scheduling=True))] == ["m1"]
        assert len(self.store.query(MessageFilter(limit=1))) == 1

    def test_like_wildcards_are_literal(self):
        self.store.save(message("m1", "hello"))
        assert self.store.query(MessageFilter(sender="d_na")) == []
        assert [m.id for m in self.store.query(MessageFilter(sender="dana"))] == ["m1"]

    def test_chat_window_is_chronological(self):
        for i, minute in enumerate([0, 10, 50]):
            self.store.save(message(f"m{i}", f"msg {i}", timestamp=ts(13, 20, minute)))
        window = self.store.get_chat_window("chat-dana", ts(13, 19, 55), ts(13, 20, 30))
        assert [m.id for m in window] == ["m0", "m1"]

    def test_groups_and_individuals(self):
        self.store.save(message("g1", "hi all", chat_id="g", chat_name="Family", is_group=True, sender_name="Mom"))
        self.store.save(message("g2", "see you at the beach", chat_id="g", chat_name="Family", is_group=True, sender_name="Dana"))
        self.store.save(message("d1", "hi", chat_id="c", chat_name="Dana"))
        groups = self.store.list_groups()
        assert [(g.chat_name, g.message_count, g.participant_count) for g in groups] == [("Family", 2, 2)]
        assert {m.id for m in self.store.get_group_messages("family")} == {"g1", "g2"}
        assert [m.id for m in self.store.search_in_group("Family", "beach")] == ["g2"]
        assert [m.id for m in self.store.get_individual_messages("dana")] == ["d1"]

    def test_urls_by_sender_and_purpose(self):
        self.store.save(message("m1", "watch https://www.netflix.com/title/1 tonight", sender_name="Dana"))
        self.store.save(message("m2", "https://example.com/x", sender_name="Roni"))
        urls = self.store.get_urls_by_sender("dana")
        assert [u.url for u in urls] == ["https://www.netflix.com/title/1"]
        assert urls[0].context_before == "watch "
        assert [u.message_id for u in self.store.get_urls_by_purpose("movie")] == ["m1"]

    def test_search_by_entity(self):
        self.store.save(message("m1", "meet at Cafe Nero"))
        assert [m.id for m in self.store.search_by_entity("place", "nero")] == ["m1"]

    def test_failed_write_rolls_back(self, monkeypatch):
        def boom(conn, msg):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(self.store, "_replace_children", boom)
        with pytest.raises(RuntimeError):
            self.store.save(message("m1", "never stored"))
        monkeypatch.undo()
        assert not self.store.exists("m1")

    def test_sqlite_errors_become_persistence_errors(self):
        with pytest.raises(PersistenceError):
            with self.store.transaction() as conn:
                conn.execute("SELECT * FROM no_such_table")

    def test_stats(self):
        self.store.save(message("m1", "dinner tomorrow?", from_me=True))
        self.store.save(message("m2", "ok"))
        self.store.mark_deleted("m2")
        stats = self.store.stats()
        assert stats["total"] == 2
        assert stats["deleted"] == 1
        assert stats["live_messages"] == 1
        assert stats["scheduling_messages"] == 1
        assert stats["sent_messages"] == 1
        assert self.store.last_message().id == "m1"
        assert self.store.last_message_time() == ts(13)
