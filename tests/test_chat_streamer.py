import asyncio
import tempfile
import unittest
from pathlib import Path

from _fakes import FakeEmbedder, FakeModel

from pdfama.chat_streamer import (
    ChatMode,
    ChatStreamer,
    GenerationState,
    PendingGeneration,
    build_direct_prompts,
    select_mode,
)
from pdfama.cancellation import CancellationToken
from pdfama.rag_pipeline import RagPipeline, collection_name_for
from pdfama.session_store import ChatTurn, DocumentSession, SessionStore
from pdfama.vector_store import VectorStore

URL = "https://example.com/doc.pdf"


class TestModeSelection(unittest.TestCase):
    def test_threshold(self):
        self.assertIs(select_mode("x" * 50000, 32000), ChatMode.RAG)
        self.assertIs(select_mode("x" * 1000, 32000), ChatMode.DIRECT)
        self.assertIs(select_mode("x" * 32000, 32000), ChatMode.DIRECT)
        self.assertIs(select_mode("x" * 32001), ChatMode.RAG)

    def test_direct_prompts_exclude_pending_question_and_normalize_roles(self):
        session = DocumentSession(
            url=URL,
            text="The sky is blue.",
            chat_history=[ChatTurn("user", "q1"), ChatTurn("model", "a1"), ChatTurn("user", "q2")],
        )
        prompts = build_direct_prompts(session)

        self.assertEqual(prompts[0].role, "system")
        self.assertIn("Here is the text: The sky is blue.", prompts[0].content)
        self.assertEqual(prompts[1:], [ChatTurn("user", "q1"), ChatTurn("assistant", "a1")])


class TestChatStreamer(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        self.sessions = SessionStore(db_path=root / "sessions.sqlite")
        self.vectors = VectorStore(db_path=root / "vectors.sqlite")
        self.embedder = FakeEmbedder()
        self.emitted = []

    def tearDown(self):
        self.sessions.close()
        self.vectors.close()
        self.temp_dir.cleanup()

    async def _emit(self, message):
        self.emitted.append(message)

    def _pipeline_for(self, session):
        collection = self.vectors.collection(collection_name_for(session.url))
        return RagPipeline(session.url, session.text, collection, self.embedder, on_status=self._status)

    async def _status(self, message):
        self.emitted.append(("status", message))

    def _streamer(self, model):
        return ChatStreamer(self.sessions, model, self._pipeline_for, self._emit)

    def _types(self):
        return [item.type if hasattr(item, "type") else item[0] for item in self.emitted]

    async def test_direct_answer_is_streamed_and_persisted(self):
        self.sessions.put(DocumentSession(url=URL, text="Short document about owls."))
        model = FakeModel()

        generation = await self._streamer(model).ask(URL, "What about owls?")

        self.assertIs(generation.state, GenerationState.COMPLETED)
        self.assertEqual(generation.output, "Hello, world")
        self.assertEqual(self._types(), ["ama-chunk", "ama-chunk", "ama-chunk", "ama-complete"])
        self.assertEqual([m.data.chunk for m in self.emitted[:3]], ["Hello", ", ", "world"])
        self.assertEqual(
            self.sessions.get(URL).chat_history,
            [ChatTurn("user", "What about owls?"), ChatTurn("assistant", "Hello, world")],
        )
        initial = model.sessions[0].initial_prompts
        self.assertEqual(len(initial), 1)
        self.assertIn("Short document about owls.", initial[0].content)
        self.assertEqual(model.prompts, ["What about owls?"])

    async def test_direct_mode_carries_prior_history(self):
        self.sessions.put(
            DocumentSession(
                url=URL,
                text="Short.",
                chat_history=[ChatTurn("user", "first"), ChatTurn("assistant", "reply")],
            )
        )
        model = FakeModel()

        await self._streamer(model).ask(URL, "second")

        initial = model.sessions[0].initial_prompts
        self.assertEqual(initial[1:], [ChatTurn("user", "first"), ChatTurn("assistant", "reply")])
        self.assertEqual(len(self.sessions.get(URL).chat_history), 4)

    async def test_rag_mode_retrieves_context_without_history(self):
        long_text = "\n\n".join(f"Section {i}: owls hunt at night in quiet forests." for i in range(800))
        self.assertGreater(len(long_text), 32000)
        self.sessions.put(
            DocumentSession(url=URL, text=long_text, is_rag=True, chat_history=[ChatTurn("user", "old")])
        )
        model = FakeModel()

        generation = await self._streamer(model).ask(URL, "When do owls hunt?")

        self.assertIs(generation.state, GenerationState.COMPLETED)
        self.assertEqual(self.emitted[0].type, "status-update")
        self.assertEqual(self.emitted[0].data.message, "Thinking...")
        self.assertIn(("status", "Chunking document..."), self.emitted)
        prompt = model.prompts[0]
        self.assertTrue(prompt.startswith('Based on the following text, answer the question: "When do owls hunt?"'))
        self.assertIn("owls hunt at night", prompt)
        initial = model.sessions[0].initial_prompts
        self.assertEqual([turn.role for turn in initial], ["system"])
        self.assertNotIn("old", initial[0].content)
        self.assertGreater(self.vectors.collection(collection_name_for(URL)).count(), 0)

    async def test_cancel_mid_stream_persists_no_partial_answer(self):
        self.sessions.put(DocumentSession(url=URL, text="Short."))
        model = FakeModel(deltas=["one", " two", " three"], pause_after=1)
        generation = PendingGeneration(url=URL, token=CancellationToken(URL))

        task = asyncio.create_task(self._streamer(model).ask(URL, "count", generation))
        await asyncio.wait_for(model.paused.wait(), timeout=5)
        generation.token.cancel()
        await asyncio.wait_for(task, timeout=5)

        self.assertIs(generation.state, GenerationState.CANCELLED)
        self.assertTrue(generation.done)
        self.assertEqual(self._types(), ["ama-chunk", "ama-terminated"])
        self.assertEqual(self.sessions.get(URL).chat_history, [ChatTurn("user", "count")])
        self.assertEqual(model.finished_streams, 0)

    async def test_cancel_before_start_changes_nothing(self):
        self.sessions.put(DocumentSession(url=URL, text="Short."))
        generation = PendingGeneration(url=URL)
        generation.token.cancel()

        await self._streamer(FakeModel()).ask(URL, "never asked", generation)

        self.assertIs(generation.state, GenerationState.CANCELLED)
        self.assertEqual(self._types(), ["ama-terminated"])
        self.assertEqual(self.sessions.get(URL).chat_history, [])

    async def test_model_failure_keeps_only_the_question(self):
        self.sessions.put(DocumentSession(url=URL, text="Short."))
        model = FakeModel(fail_after=1)

        generation = await self._streamer(model).ask(URL, "break please")

        self.assertIs(generation.state, GenerationState.FAILED)
        self.assertEqual(self._types(), ["ama-chunk", "error"])
        self.assertEqual(self.emitted[-1].data.message, "AI Error: model exploded")
        self.assertEqual(self.sessions.get(URL).chat_history, [ChatTurn("user", "break please")])

    async def test_unavailable_model_is_reported(self):
        self.sessions.put(DocumentSession(url=URL, text="Short."))
        model = FakeModel(status="downloadable")

        generation = await self._streamer(model).ask(URL, "hello?")

        self.assertIs(generation.state, GenerationState.FAILED)
        self.assertEqual(self.emitted[-1].data.message, "AI Error: AI model not available: downloadable")
        self.assertEqual(model.sessions, [])

    async def test_missing_session_is_reported(self):
        generation = await self._streamer(FakeModel()).ask("https://example.com/none.pdf", "hi")

        self.assertIs(generation.state, GenerationState.FAILED)
        self.assertEqual(self.emitted[-1].type, "error")
        self.assertEqual(self.emitted[-1].url, "https://example.com/none.pdf")
        self.assertEqual(self.emitted[-1].data.message, "AI Error: Session not found.")


if __name__ == "__main__":
    unittest.main()
