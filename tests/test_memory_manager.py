import tempfile
import unittest
from pathlib import Path

from manualqa.memory_manager import ConversationStore, provisional_title
from manualqa.models import Citation


class TestConversationStore(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self.tmp.name) / "conversations.sqlite"
        self.store = ConversationStore(self.db_path)
        self.conversation_id = self.store.create_conversation("u1", "Dive tables")

    def tearDown(self):
        self.store.close()
        self.tmp.cleanup()

    def test_messages_are_returned_oldest_first(self):
        for idx in range(5):
            self.store.append_message(self.conversation_id, "user", f"q{idx}")
        recent = self.store.recent_messages(self.conversation_id, 3)
        self.assertEqual([m.content for m in recent], ["q2", "q3", "q4"])

    def test_citations_round_trip(self):
        citation = Citation(
            document_id="d1",
            document_title="Navy Diving Manual",
            snippet="WARNING: ascend slowly",
            page_number=4,
            volume="VOLUME 2",
            chapter="CHAPTER 9",
        )
        self.store.append_message(self.conversation_id, "assistant", "answer", [citation])
        stored = self.store.recent_messages(self.conversation_id, 1)[0]
        self.assertEqual(stored.citations, (citation,))

    def test_title_update(self):
        self.store.set_title(self.conversation_id, "Air Decompression")
        self.assertEqual(self.store.get_conversation(self.conversation_id)["title"], "Air Decompression")

    def test_list_conversations_is_per_user(self):
        self.store.create_conversation("u2", "Other")
        self.assertEqual([c["id"] for c in self.store.list_conversations("u1")], [self.conversation_id])

    def test_search_log(self):
        self.store.log_search(user_id="u1", query="oxygen", search_type="fulltext", results_count=3, filters={"volume": "all"})
        entry = self.store.search_log_entries()[0]
        self.assertEqual(entry["query"], "oxygen")
        self.assertEqual(entry["filters"], {"volume": "all"})

    def test_data_survives_reopen(self):
        self.store.append_message(self.conversation_id, "user", "persisted")
        self.store.close()
        self.store = ConversationStore(self.db_path)
        self.assertEqual(self.store.count_messages(self.conversation_id), 1)

    def test_provisional_title(self):
        self.assertEqual(provisional_title("short question"), "short question")
        long_title = provisional_title("x" * 80)
        self.assertEqual(long_title, "x" * 50 + "...")


if __name__ == "__main__":
    unittest.main()
