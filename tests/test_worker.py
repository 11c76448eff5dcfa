import asyncio
import os
import tempfile
import unittest

from pdfama.errors import TransientIOError
from pdfama.protocol import AmaChunk, AskQuestion, Component, ErrorMessage, InitChat, StatusUpdate, TerminateChat
from pdfama.rag_pipeline import STATUS_CHUNKING, collection_name_for
from pdfama.router import BUFFERED_STATUS, Router
from pdfama.session_store import UI_INITIALIZING_RAG, UI_PROCESSING, UI_READY, SessionStore
from pdfama.vector_store import VectorStore
from pdfama.worker import make_worker_factory

from _fakes import FakeEmbedder, FakeExtractor, FakeFetcher, FakeModel

DOC = "https://example.com/paper.pdf"
SHORT_TEXT = "Cats are small domesticated mammals."
LONG_TEXT = " ".join(["Owls hunt at night and sleep through the day."] * 12)


class _FailingFetcher:
    async def fetch(self, url: str) -> bytes:
        raise TransientIOError("Fetch failed: connection refused", {"url": url})


async def _drain(channel) -> list:
    return [await channel.receive() for _ in range(channel.pending())]


def _statuses(messages) -> list[str]:
    return [m.data.message for m in messages if isinstance(m, StatusUpdate)]


class _WorkerCase(unittest.IsolatedAsyncioTestCase):
    text = SHORT_TEXT
    token_limit = 200
    model_options: dict = {}

    async def asyncSetUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.sessions = SessionStore(os.path.join(self._tmp.name, "sessions.sqlite3"))
        self.vectors = VectorStore(os.path.join(self._tmp.name, "vectors.sqlite3"))
        self.embedder = FakeEmbedder()
        self.model = FakeModel(**self.model_options)
        self.fetcher = self.make_fetcher()
        self.extractor = FakeExtractor(self.text)
        self.router = Router(
            make_worker_factory(
                sessions=self.sessions,
                vectors=self.vectors,
                embedder=self.embedder,
                model=self.model,
                fetcher=self.fetcher,
                extractor=self.extractor,
                token_limit=self.token_limit,
                embedding_dimensions=None,
            )
        )
        self.sidebar = self.router.connect(Component.SIDEBAR)

    async def asyncTearDown(self):
        await self.router.close()
        self.sessions.close()
        self.vectors.close()
        self._tmp.cleanup()

    def make_fetcher(self):
        return FakeFetcher()

    async def settle(self) -> list:
        await self.router.worker.idle()
        return await _drain(self.sidebar)

    async def open_document(self) -> list:
        await self.router.activate_tab(1, DOC)
        return await self.settle()

    async def ask(self, question: str):
        await self.router.route(AskQuestion(url=DOC, data={"question": question}))


class TestDocumentProcessing(_WorkerCase):
    async def test_short_document_is_answered_directly(self):
        received = await self.open_document()

        self.assertEqual(received[0].type, "pdf-activated")
        self.assertEqual(_statuses(received), [UI_PROCESSING, UI_READY])
        self.assertIsInstance(received[-1], InitChat)
        self.assertEqual(received[-1].data.history, [])

        session = self.sessions.get(DOC)
        self.assertEqual(session.text, SHORT_TEXT)
        self.assertFalse(session.is_rag)
        self.assertEqual(session.ui_state, UI_READY)
        self.assertEqual(self.vectors.collection_names(), [])

    async def test_reopening_reuses_the_stored_session(self):
        await self.open_document()
        await self.ask("What are cats?")
        await self.settle()

        await self.router.activate_tab(2, "https://example.com/")
        received = await self.open_document()

        self.assertEqual(len(self.fetcher.calls), 1)
        self.assertEqual(self.extractor.calls, 1)
        self.assertEqual(_statuses(received), [UI_READY])
        history = received[-1].data.history
        self.assertEqual([(item.role, item.content) for item in history], [("user", "What are cats?"), ("assistant", "Hello, world")])


class TestFetchFailure(_WorkerCase):
    def make_fetcher(self):
        return _FailingFetcher()

    async def test_fetch_failure_is_reported(self):
        received = await self.open_document()

        errors = [m for m in received if isinstance(m, ErrorMessage)]
        self.assertEqual([m.data.message for m in errors], ["Fetch failed: connection refused"])
        self.assertFalse(any(isinstance(m, InitChat) for m in received))
        self.assertEqual(self.sessions.get(DOC).text, "")


class TestRagDocuments(_WorkerCase):
    text = LONG_TEXT
    token_limit = 100

    async def test_long_document_is_indexed_once(self):
        received = await self.open_document()

        statuses = _statuses(received)
        self.assertEqual(statuses[:3], [UI_PROCESSING, UI_INITIALIZING_RAG, STATUS_CHUNKING])
        self.assertEqual(statuses[-1], UI_READY)
        self.assertTrue(self.sessions.get(DOC).is_rag)
        collection = self.vectors.collection(collection_name_for(DOC))
        indexed = collection.count()
        self.assertGreater(indexed, 0)

        await self.router.activate_tab(2, "https://example.com/")
        await self.open_document()
        self.assertEqual(collection.count(), indexed)
        self.assertEqual(len(self.embedder.calls), indexed)

    async def test_rag_answers_are_grounded_on_retrieved_chunks(self):
        await self.open_document()
        await self.ask("When do owls hunt?")
        received = await self.settle()

        self.assertEqual(_statuses(received), ["Thinking..."])
        self.assertEqual(received[-1].type, "ama-complete")
        prompt = self.model.prompts[-1]
        self.assertTrue(prompt.startswith('Based on the following text, answer the question: "When do owls hunt?"'))
        self.assertIn("Owls hunt at night", prompt)


class TestQuestions(_WorkerCase):
    async def test_answer_streams_and_is_persisted(self):
        await self.open_document()
        await self.ask("What are cats?")
        received = await self.settle()

        self.assertEqual([m.data.chunk for m in received if isinstance(m, AmaChunk)], ["Hello", ", ", "world"])
        self.assertEqual(received[-1].type, "ama-complete")
        turns = self.sessions.get(DOC).chat_history
        self.assertEqual([(t.role, t.content) for t in turns], [("user", "What are cats?"), ("assistant", "Hello, world")])

    async def test_question_for_unknown_document_reports_error(self):
        await self.router.route(AskQuestion(url="https://example.com/missing.pdf", data={"question": "?"}))
        await self.router.activate_tab(1, "https://example.com/missing.pdf")
        received = await self.settle()

        errors = [m.data.message for m in received if isinstance(m, ErrorMessage)]
        self.assertIn("AI Error: Session not found.", errors)


class TestUnavailableModel(_WorkerCase):
    model_options = {"status": "unavailable"}

    async def test_unavailable_model_is_reported(self):
        await self.open_document()
        await self.ask("Anyone there?")
        received = await self.settle()

        errors = [m.data.message for m in received if isinstance(m, ErrorMessage)]
        self.assertEqual(errors, ["AI Error: AI model not available: unavailable"])
        self.assertEqual(self.model.prompts, [])


class TestInFlightGenerations(_WorkerCase):
    model_options = {"deltas": ("Hello", ", ", "world"), "pause_after": 1}

    async def _start_paused_answer(self):
        await self.open_document()
        await self.ask("What are cats?")
        await asyncio.wait_for(self.model.paused.wait(), timeout=5)

    async def test_terminate_stops_generation_without_persisting_reply(self):
        await self._start_paused_answer()

        await self.router.route(TerminateChat(url=DOC))
        received = await self.settle()

        self.assertEqual(received[-1].type, "ama-terminated")
        self.assertEqual([m.data.chunk for m in received if isinstance(m, AmaChunk)], ["Hello"])
        self.assertEqual(self.model.finished_streams, 0)
        turns = self.sessions.get(DOC).chat_history
        self.assertEqual([(t.role, t.content) for t in turns], [("user", "What are cats?")])
        self.assertEqual(self.router.worker.generations, {})

    async def test_second_question_is_rejected_while_answering(self):
        await self._start_paused_answer()

        await self.ask("And dogs?")
        await asyncio.sleep(0.01)
        self.model.resume.set()
        received = await self.settle()

        errors = [m.data.message for m in received if isinstance(m, ErrorMessage)]
        self.assertEqual(errors, ["AI Error: A response is already being generated for this document."])
        self.assertEqual(self.model.prompts, ["What are cats?"])
        self.assertEqual([m.type for m in received].count("ama-complete"), 1)

    async def test_processing_is_skipped_when_deactivated_while_queued(self):
        await self._start_paused_answer()
        leave = "https://example.com/"

        await self.router.activate_tab(2, leave)
        await self.router.activate_tab(1, DOC)
        await self.router.activate_tab(2, leave)
        await asyncio.sleep(0.01)
        self.model.resume.set()
        await self.settle()

        worker = self.router.worker
        self.assertNotIn(DOC, worker.active_documents)
        buffer = self.router.buffers[DOC]
        self.assertIsNone(buffer.init_chat)
        self.assertTrue(buffer.completed)

    async def test_background_answer_is_flushed_on_return(self):
        await self._start_paused_answer()
        await _drain(self.sidebar)

        await self.router.activate_tab(2, "https://example.com/")
        self.model.resume.set()
        await self.settle()
        self.assertIn(DOC, self.router.buffers)

        await self.router.activate_tab(1, DOC)
        flushed = await _drain(self.sidebar)

        self.assertEqual([m.type for m in flushed], ["pdf-activated", "ama-chunk", "status-update", "ama-complete-buffered"])
        self.assertEqual(flushed[1].data.chunk, ", world")
        self.assertEqual(flushed[2].data.message, BUFFERED_STATUS)
        self.assertEqual(_statuses(await self.settle()), [UI_READY])


if __name__ == "__main__":
    unittest.main()
