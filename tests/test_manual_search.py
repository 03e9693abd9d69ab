import tempfile
import unittest
from pathlib import Path

from fakes import DIMS, FakeEmbeddings, bag_of_words_vector

from manualqa.chunker import content_hash
from manualqa.document_manager import DocumentStore
from manualqa.embeddings import EmbeddingClient
from manualqa.manual_search import ManualSearch, determine_content_type
from manualqa.memory_manager import ConversationStore
from manualqa.models import Chunk


def _chunk(seq: int, text: str, **kwargs) -> Chunk:
    return Chunk(seq=seq, text=text, page_number=seq, content_hash=content_hash(text), **kwargs)


class TestDetermineContentType(unittest.TestCase):
    def test_stored_flags_take_priority(self):
        self.assertEqual(determine_content_type(("NOTE", "WARNING"), "plain"), "warning")
        self.assertEqual(determine_content_type(["caution"], "plain"), "caution")

    def test_text_scan_when_no_flags(self):
        self.assertEqual(determine_content_type((), "Caution: hot surface"), "caution")
        self.assertEqual(determine_content_type(None, "a note without colon"), "text")


class TestManualSearch(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = DocumentStore(Path(self.tmp.name) / "knowledge.sqlite", embedding_dimensions=DIMS)
        self.conversations = ConversationStore(Path(self.tmp.name) / "conversations.sqlite")
        doc, _ = self.store.get_or_create_document("Navy Diving Manual")
        chunks = [
            _chunk(1, "WARNING: oxygen toxicity risk " + "o" * 400, volume="VOLUME 1", chapter="CHAPTER 2",
                   warning_flags=("WARNING",)),
            _chunk(2, "oxygen toxicity symptoms list", volume="VOLUME 2", chapter="CHAPTER 5"),
            _chunk(3, "oxygen toxicity treatment", volume="VOLUME 2", chapter="CHAPTER 5"),
            _chunk(4, "helmet care", volume="VOLUME 3", chapter="CHAPTER 8"),
        ]
        self.store.insert_chunks(doc.id, chunks, [bag_of_words_vector(c.text) for c in chunks])
        embedder = EmbeddingClient(FakeEmbeddings(), dimensions=DIMS, retry_delay_s=0.0)
        self.search = ManualSearch(self.store, embedder, self.conversations, similarity_threshold=0.3)

    def tearDown(self):
        self.store.close()
        self.conversations.close()
        self.tmp.cleanup()

    def test_fulltext_result_shape(self):
        page = self.search.search("oxygen toxicity", search_type="fulltext", page_size=10)
        self.assertEqual(page.total_count, 3)
        first = page.results[0]
        self.assertEqual(first["title"], "VOLUME 1 - CHAPTER 2")
        self.assertEqual(first["page"], "1")
        self.assertEqual(first["type"], "warning")
        self.assertEqual(first["relevanceScore"], 0.85)
        self.assertTrue(first["excerpt"].endswith("..."))
        self.assertEqual(len(first["excerpt"]), 303)

    def test_fulltext_filters_and_pagination(self):
        page = self.search.search("oxygen toxicity", volume_filter="VOLUME 2", page=2, page_size=1)
        self.assertEqual(page.total_count, 2)
        self.assertEqual(page.to_dict()["totalPages"], 2)
        self.assertEqual([r["page"] for r in page.results], ["3"])
        page = self.search.search("oxygen toxicity", safety_filter="WARNING", volume_filter="all")
        self.assertEqual([r["type"] for r in page.results], ["warning"])

    def test_semantic_search(self):
        page = self.search.search("oxygen toxicity treatment", search_type="semantic", page_size=5)
        self.assertEqual(page.results[0]["page"], "3")
        self.assertAlmostEqual(page.results[0]["relevanceScore"], 1.0, places=3)
        self.assertLessEqual(len(page.results), 5)

    def test_search_is_logged(self):
        self.search.search("oxygen", volume_filter="VOLUME 1", user_id="u9")
        entry = self.conversations.search_log_entries()[0]
        self.assertEqual(entry["search_type"], "fulltext")
        self.assertEqual(entry["filters"], {"volume": "VOLUME 1", "safety": "all"})
        self.assertEqual(entry["user_id"], "u9")

    def test_invalid_requests(self):
        with self.assertRaises(ValueError):
            self.search.search("  ")
        with self.assertRaises(ValueError):
            self.search.search("oxygen", search_type="fuzzy")


if __name__ == "__main__":
    unittest.main()
