import asyncio
import unittest

from fakes import FakeApiError
from langchain_core.language_models import FakeListChatModel
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from manualqa.errors import SynthesisError
from manualqa.models import ChatMessage, Chunk, ScoredChunk
from manualqa.synthesizer import AnswerSynthesizer, project_citations


class RecordingLLM:
    def __init__(self, reply: str = "Answer (Volume 2, Chapter 9, Page 4)"):
        self.reply = reply
        self.calls = []

    def invoke(self, messages):
        self.calls.append(messages)
        return AIMessage(content=self.reply)

    async def ainvoke(self, messages):
        return self.invoke(messages)


class FailingLLM:
    def __init__(self, exc: Exception):
        self.exc = exc

    def invoke(self, messages):
        raise self.exc

    async def ainvoke(self, messages):
        raise self.exc


def _ranked() -> list[ScoredChunk]:
    chunk = Chunk(
        seq=1,
        text="WARNING: " + "x" * 300,
        page_number=4,
        content_hash="h",
        volume="VOLUME 2",
        chapter="CHAPTER 9",
        section_label="SECTION 3",
        id="c1",
        document_id="d1",
    )
    return [ScoredChunk(chunk=chunk, score=150.0, source="keyword")]


class TestAnswerSynthesizer(unittest.TestCase):
    def test_message_layout(self):
        llm = RecordingLLM()
        history = [ChatMessage(role="user", content="first q"), ChatMessage(role="assistant", content="first a")]
        result = AnswerSynthesizer(llm).answer("CONTEXT BLOCK", history, "second q", _ranked())

        messages = llm.calls[0]
        self.assertIsInstance(messages[0], SystemMessage)
        self.assertIn("CONTEXT BLOCK", messages[0].content)
        self.assertIn("(Volume X, Chapter Y, Page Z)", messages[0].content)
        self.assertIn("WARNING", messages[0].content)
        self.assertIsInstance(messages[1], HumanMessage)
        self.assertIsInstance(messages[2], AIMessage)
        self.assertEqual(messages[-1].content, "second q")
        self.assertEqual(result.text, "Answer (Volume 2, Chapter 9, Page 4)")

    def test_citations_are_projected_from_ranking(self):
        citation = AnswerSynthesizer(RecordingLLM()).answer("ctx", [], "q", _ranked()).citations[0]
        self.assertEqual(len(citation.snippet), 200)
        self.assertEqual(citation.document_title, "VOLUME 2 - CHAPTER 9")
        self.assertEqual(citation.page_number, 4)
        self.assertEqual(citation.section_label, "SECTION 3")
        self.assertEqual(citation.document_id, "d1")

    def test_project_citations_prefers_document_title(self):
        chunk = Chunk(seq=1, text="t", page_number=1, content_hash="h", document_title="Navy Diving Manual")
        citations = project_citations([ScoredChunk(chunk=chunk, score=1.0, source="semantic")])
        self.assertEqual(citations[0].document_title, "Navy Diving Manual")

    def test_fake_chat_model(self):
        llm = FakeListChatModel(responses=["From the manual: ascend slowly."])
        result = AnswerSynthesizer(llm).answer("ctx", [], "q")
        self.assertEqual(result.text, "From the manual: ascend slowly.")

    def test_async_answer(self):
        result = asyncio.run(AnswerSynthesizer(RecordingLLM("async answer")).aanswer("ctx", [], "q", _ranked()))
        self.assertEqual(result.text, "async answer")
        self.assertEqual(len(result.citations), 1)

    def test_failure_classification(self):
        cases = {429: "rate_limit", 402: "payment_required", 401: "unauthorized", 503: "server_error"}
        for status, kind in cases.items():
            with self.subTest(status=status):
                with self.assertRaises(SynthesisError) as ctx:
                    AnswerSynthesizer(FailingLLM(FakeApiError(status))).answer("ctx", [], "q")
                self.assertEqual(ctx.exception.kind, kind)
                self.assertEqual(ctx.exception.status_code, status)

    def test_failure_without_status_is_server_error(self):
        with self.assertRaises(SynthesisError) as ctx:
            asyncio.run(AnswerSynthesizer(FailingLLM(ConnectionError("reset"))).aanswer("ctx", [], "q"))
        self.assertEqual(ctx.exception.kind, "server_error")
        self.assertEqual(ctx.exception.user_message, "Something went wrong. Please try again.")

    def test_user_messages_differ_by_kind(self):
        messages = {SynthesisError("x", kind=k).user_message for k in ("rate_limit", "payment_required", "unauthorized")}
        self.assertEqual(len(messages), 3)

    def test_generate_title(self):
        llm = RecordingLLM('"Decompression Table Basics"')
        self.assertEqual(AnswerSynthesizer(llm).generate_title("q", "a"), "Decompression Table Basics")

    def test_title_failure_is_not_fatal(self):
        synthesizer = AnswerSynthesizer(RecordingLLM(), title_llm=FailingLLM(FakeApiError(500)))
        self.assertIsNone(synthesizer.generate_title("q", "a"))


if __name__ == "__main__":
    unittest.main()
