import unittest

from manualqa.chunker import (
    ScanState,
    StructureMarkers,
    chunk_pages,
    content_hash,
    detect_flags,
    estimate_tokens,
    scan_line,
)
from manualqa.models import PageText


class TestContentHash(unittest.TestCase):
    def test_hash_ignores_surrounding_whitespace(self):
        self.assertEqual(content_hash("  dive table  \n"), content_hash("dive table"))

    def test_hash_changes_with_text(self):
        self.assertNotEqual(content_hash("dive table"), content_hash("dive tables"))

    def test_hash_is_sha256_hex(self):
        self.assertEqual(
            content_hash("abc"),
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad",
        )

    def test_token_estimate(self):
        self.assertEqual(estimate_tokens("abcd"), 1)
        self.assertEqual(estimate_tokens("abcde"), 2)
        self.assertEqual(estimate_tokens(""), 0)


class TestScanState(unittest.TestCase):
    def test_markers_are_sticky_until_replaced(self):
        markers = StructureMarkers()
        markers = markers.advance("VOLUME II")
        markers = markers.advance("CHAPTER 9 Air Decompression")
        markers = markers.advance("ordinary text")
        self.assertEqual(markers.volume, "VOLUME II")
        self.assertEqual(markers.chapter, "CHAPTER 9 Air Decompression")
        markers = markers.advance("chapter 10 Surface Supplied")
        self.assertEqual(markers.chapter, "chapter 10 Surface Supplied")
        self.assertEqual(markers.volume, "VOLUME II")

    def test_flag_detection_is_case_insensitive_and_ordered(self):
        self.assertEqual(detect_flags("Note: check the caution and Warning"), ("WARNING", "CAUTION", "NOTE"))
        self.assertEqual(detect_flags("plain text"), ())

    def test_scan_line_closes_when_target_reached(self):
        state = ScanState()
        state, draft = scan_line(state, 1, "WARNING: short", target_chars=40)
        self.assertIsNone(draft)
        state, draft = scan_line(state, 2, "x" * 30, target_chars=40)
        self.assertIsNotNone(draft)
        self.assertEqual(draft.page_number, 2)
        self.assertEqual(draft.flags, ("WARNING",))
        self.assertEqual(state.lines, ())
        self.assertEqual(state.flags, ())
        self.assertEqual(state.length, 0)

    def test_state_is_not_mutated(self):
        state = ScanState()
        scan_line(state, 1, "CHAPTER 1", target_chars=1000)
        self.assertEqual(state.lines, ())
        self.assertEqual(state.markers.chapter, "")


class TestChunkPages(unittest.TestCase):
    def _pages(self):
        return [
            PageText(1, "VOLUME 1\nCHAPTER 1\nWARNING: do not exceed depth.\n" + "a" * 60),
            PageText(2, "\n".join("b" * 50 for _ in range(6))),
            PageText(3, "SECTION 3\n" + "\n".join("c" * 50 for _ in range(6))),
        ]

    def test_sequence_numbers_start_at_one_without_gaps(self):
        chunks = chunk_pages(self._pages(), target_chars=120)
        self.assertGreater(len(chunks), 2)
        self.assertEqual([c.seq for c in chunks], list(range(1, len(chunks) + 1)))

    def test_warning_flag_only_on_chunk_with_keyword(self):
        chunks = chunk_pages(self._pages(), target_chars=120)
        self.assertIn("WARNING", chunks[0].warning_flags)
        for chunk in chunks[1:]:
            self.assertNotIn("WARNING", chunk.warning_flags)

    def test_markers_carry_across_pages(self):
        chunks = chunk_pages(self._pages(), target_chars=120)
        last = chunks[-1]
        self.assertEqual(last.volume, "VOLUME 1")
        self.assertEqual(last.chapter, "CHAPTER 1")
        self.assertEqual(last.section_label, "SECTION 3")
        self.assertIsNone(chunks[0].section_label)

    def test_chunk_page_is_page_active_at_close(self):
        pages = [PageText(1, "a" * 30), PageText(2, "b" * 30)]
        chunks = chunk_pages(pages, target_chars=50)
        self.assertEqual(len(chunks), 1)
        self.assertEqual(chunks[0].page_number, 2)

    def test_trailing_partial_chunk_is_emitted(self):
        chunks = chunk_pages([PageText(1, "tail text")], target_chars=3500)
        self.assertEqual(len(chunks), 1)
        self.assertEqual(chunks[0].text, "tail text")
        self.assertEqual(chunks[0].content_hash, content_hash("tail text"))
        self.assertEqual(chunks[0].token_count, estimate_tokens("tail text"))

    def test_repeated_page_text_is_not_renumbered(self):
        pages = [PageText(1, "x" * 60), PageText(2, "x" * 60), PageText(3, "tail unique text")]
        chunks = chunk_pages(pages, target_chars=50)
        self.assertEqual([c.seq for c in chunks], [1, 2])
        self.assertEqual([c.page_number for c in chunks], [1, 3])
        self.assertEqual(len({c.content_hash for c in chunks}), 2)

    def test_blank_pages_produce_no_chunks(self):
        self.assertEqual(chunk_pages([PageText(1, ""), PageText(2, "\n\n")]), [])


if __name__ == "__main__":
    unittest.main()
