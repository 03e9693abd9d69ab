import unittest

from manualqa.context_builder import build_context, extract_window
from manualqa.models import Chunk, ScoredChunk

PHRASE = "no-decompression limit"


def _scored(text: str, **kwargs) -> ScoredChunk:
    chunk = Chunk(seq=1, text=text, page_number=kwargs.pop("page_number", 4), content_hash="h", **kwargs)
    return ScoredChunk(chunk=chunk, score=1.0, source="keyword")


class TestExtractWindow(unittest.TestCase):
    def test_long_chunk_is_windowed_around_phrase(self):
        text = "a" * 2000 + PHRASE + "b" * (5000 - 2000 - len(PHRASE))
        window = extract_window(text, [PHRASE], 800)
        self.assertLessEqual(len(window), 1600 + len(PHRASE) + 6)
        self.assertIn(PHRASE, window)
        self.assertTrue(window.startswith("..."))
        self.assertTrue(window.endswith("..."))

    def test_match_is_case_insensitive(self):
        text = "x" * 1000 + "No-Decompression Limit" + "y" * 1000
        window = extract_window(text, [PHRASE], 100)
        self.assertIn("No-Decompression Limit", window)
        self.assertEqual(len(window), 100 + len(PHRASE) + 100 + 6)

    def test_offsets_hold_when_lowercasing_changes_length(self):
        # "\u0130".lower() is two code points long.
        text = "\u0130" * 900 + PHRASE + "z" * 900
        window = extract_window(text, [PHRASE], 50)
        self.assertIn(PHRASE, window)
        self.assertEqual(window, "..." + "\u0130" * 50 + PHRASE + "z" * 50 + "...")

    def test_no_ellipsis_when_window_covers_chunk(self):
        text = "short " + PHRASE + " text"
        self.assertEqual(extract_window(text, [PHRASE], 800), text)

    def test_chunk_without_phrase_is_kept_whole(self):
        text = "z" * 3000
        self.assertEqual(extract_window(text, [PHRASE], 800), text)

    def test_earliest_phrase_anchors_window(self):
        text = "c" * 50 + "second phrase" + "d" * 3000 + "first phrase"
        window = extract_window(text, ["first phrase", "second phrase"], 20)
        self.assertIn("second phrase", window)
        self.assertNotIn("first phrase", window)


class TestBuildContext(unittest.TestCase):
    def test_labels_and_separators(self):
        ranked = [
            _scored("WARNING: ascend at 30 fpm", volume="VOLUME 2", chapter="CHAPTER 9", warning_flags=("WARNING",)),
            _scored("Plain text", page_number=7),
        ]
        context = build_context(ranked, [])
        blocks = context.split("\n\n")
        self.assertEqual(len(blocks), 2)
        self.assertTrue(blocks[0].startswith("[VOLUME 2 - CHAPTER 9 - Page 4] [WARNING]\n"))
        self.assertTrue(blocks[1].startswith("[Unknown - Unknown - Page 7]\n"))

    def test_budget_stops_adding_chunks(self):
        ranked = [_scored("x" * 400) for _ in range(10)]
        context = build_context(ranked, [], max_chars=1000)
        self.assertLessEqual(len(context), 1000)
        self.assertEqual(len(context.split("\n\n")), 2)

    def test_empty_ranking_gives_empty_context(self):
        self.assertEqual(build_context([], ["anything"]), "")


if __name__ == "__main__":
    unittest.main()
