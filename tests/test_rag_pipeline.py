import tempfile
import unittest
from pathlib import Path

from _fakes import FakeEmbedder

from pdfama.errors import ModelUnavailableError, PartialIndexError
from pdfama.rag_pipeline import CONTEXT_SEPARATOR, STATUS_CHUNKING, STATUS_EMBEDDING, RagPipeline, collection_name_for
from pdfama.vector_store import VectorStore

URL = "https://example.com/papers/long.pdf"


def _paragraphs(count: int) -> str:
    return "\n\n".join(f"para{i:02d} abcdefghi" for i in range(count))


class TestRagPipeline(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = VectorStore(db_path=Path(self.temp_dir.name) / "vectors.sqlite")
        self.collection = self.store.collection(collection_name_for(URL))
        self.statuses: list[str] = []

    def tearDown(self):
        self.store.close()
        self.temp_dir.cleanup()

    async def _record_status(self, message: str):
        self.statuses.append(message)

    def _pipeline(self, text: str, embedder: FakeEmbedder, **kwargs) -> RagPipeline:
        return RagPipeline(URL, text, self.collection, embedder, on_status=self._record_status, **kwargs)

    async def test_init_indexes_every_chunk_with_progress(self):
        embedder = FakeEmbedder()
        pipeline = self._pipeline(_paragraphs(25), embedder, chunk_size=20, chunk_overlap=0)

        embedded = await pipeline.init()

        self.assertEqual(embedded, 25)
        self.assertEqual(self.collection.count(), 25)
        self.assertEqual(len(embedder.calls), 25)
        self.assertEqual(
            self.statuses,
            [STATUS_CHUNKING, STATUS_EMBEDDING, "Embedding... (10/25)", "Embedding... (20/25)"],
        )
        first = self.collection.query(await embedder.embed("para00 abcdefghi"), limit=1)[0]
        self.assertEqual(first.entry["documentId"], URL)
        self.assertEqual(first.entry["text"], "para00 abcdefghi")
        self.assertEqual(len(first.entry["embedding"]), FakeEmbedder.dimensions)

    async def test_init_is_idempotent(self):
        embedder = FakeEmbedder()
        pipeline = self._pipeline(_paragraphs(12), embedder, chunk_size=20, chunk_overlap=0)
        await pipeline.init()
        count_after_first = self.collection.count()
        calls_after_first = len(embedder.calls)

        again = await self._pipeline(_paragraphs(12), embedder, chunk_size=20, chunk_overlap=0).init()

        self.assertEqual(again, 0)
        self.assertEqual(self.collection.count(), count_after_first)
        self.assertEqual(len(embedder.calls), calls_after_first)

    async def test_default_configuration_uses_large_chunks(self):
        pipeline = self._pipeline("word " * 10, FakeEmbedder())
        self.assertEqual(pipeline.splitter.chunk_size, 1024)
        self.assertEqual(pipeline.splitter.chunk_overlap, 100)
        self.assertEqual(pipeline.top_k, 3)

    async def test_retrieve_returns_top_three_in_similarity_order(self):
        text = "\n\n".join(["apple apple apple", "banana banana", "cherry pie", "zzz zzz"])
        embedder = FakeEmbedder()
        pipeline = self._pipeline(text, embedder, chunk_size=18, chunk_overlap=0)
        self.assertEqual(await pipeline.init(), 4)

        context = await pipeline.retrieve("apple")

        parts = context.split(CONTEXT_SEPARATOR)
        self.assertEqual(len(parts), 3)
        self.assertEqual(parts[0], "apple apple apple")
        self.assertNotIn("zzz zzz", parts)

    async def test_embedder_failure_midway_leaves_partial_index(self):
        pipeline = self._pipeline(_paragraphs(8), FakeEmbedder(fail_after=5), chunk_size=20, chunk_overlap=0)

        with self.assertRaises(PartialIndexError) as ctx:
            await pipeline.init()

        self.assertEqual(ctx.exception.details["stored"], 5)
        self.assertEqual(ctx.exception.details["expected"], 8)
        self.assertEqual(self.collection.count(), 5)
        # A partial collection counts as indexed on the next run.
        self.assertEqual(await self._pipeline(_paragraphs(8), FakeEmbedder()).init(), 0)

    async def test_embedder_unavailable_before_first_chunk(self):
        pipeline = self._pipeline(_paragraphs(3), FakeEmbedder(fail_after=0), chunk_size=20, chunk_overlap=0)
        with self.assertRaises(ModelUnavailableError):
            await pipeline.init()
        self.assertEqual(self.collection.count(), 0)


class TestCollectionNames(unittest.TestCase):
    def test_names_are_deterministic_and_distinct(self):
        name = collection_name_for("https://a.com/x-y.pdf")
        self.assertEqual(name, collection_name_for("https://a.com/x-y.pdf"))
        self.assertTrue(name.startswith("vdb_httpsacomxypdf_"))
        self.assertNotEqual(name, collection_name_for("https://a.com/xy.pdf"))


if __name__ == "__main__":
    unittest.main()
