import unittest

from fakes import make_pdf

from manualqa.errors import ExtractionError
from manualqa.pdf_extractor import extract_pages, page_count


class TestPdfExtractor(unittest.TestCase):
    def test_pages_in_order_with_text(self):
        data = make_pdf([["CHAPTER 1", "first page"], ["second page"], ["third page"]])
        pages = list(extract_pages(data))
        self.assertEqual([p.page_number for p in pages], [1, 2, 3])
        self.assertIn("CHAPTER 1", pages[0].text)
        self.assertIn("second page", pages[1].text)
        self.assertEqual(page_count(data), 3)

    def test_page_without_text_layer_yields_empty_string(self):
        data = make_pdf([["has text"], []])
        pages = list(extract_pages(data))
        self.assertEqual(len(pages), 2)
        self.assertEqual(pages[1].text.strip(), "")

    def test_sequence_is_restartable(self):
        data = make_pdf([["a page"], ["b page"]])
        first = [p.text for p in extract_pages(data)]
        second = [p.text for p in extract_pages(data)]
        self.assertEqual(first, second)

    def test_empty_buffer_raises(self):
        with self.assertRaises(ExtractionError):
            list(extract_pages(b""))

    def test_non_pdf_buffer_raises(self):
        with self.assertRaises(ExtractionError):
            list(extract_pages(b"this is definitely not a pdf document"))


if __name__ == "__main__":
    unittest.main()
