"""
Tests for the adapter lifecycle and capability interfaces.
"""

import asyncio
import unittest

from fakes import (
    FakeClassifier,
    FakeDetector,
    FakeGenerator,
    FakeRecognizer,
    FakeTextClassifier,
    KeywordEmbedder,
    DIMENSION,
)

from edge_inference.adapters.base import (
    AdapterState,
    Capability,
    iterate_blocking,
    message_dicts,
    supports,
)
from edge_inference.exceptions import InferenceError, InitializationError, NotReadyError
from edge_inference.models import ModelOrigin
from edge_inference.settings import GenerationParams


class TestLifecycle(unittest.TestCase):

    def test_initialize_is_idempotent(self):
        async def scenario():
            adapter = KeywordEmbedder()
            self.assertEqual(adapter.state, AdapterState.UNINITIALIZED)
            self.assertFalse(adapter.is_ready())
            await adapter.initialize()
            await adapter.initialize()
            self.assertTrue(adapter.is_ready())
            self.assertEqual(adapter.load_count, 1)

        asyncio.run(scenario())

    def test_concurrent_initialize_loads_once(self):
        async def scenario():
            adapter = KeywordEmbedder()
            await asyncio.gather(*(adapter.initialize() for _ in range(5)))
            self.assertEqual(adapter.load_count, 1)

        asyncio.run(scenario())

    def test_load_failure_wrapped_and_retryable(self):
        async def scenario():
            adapter = KeywordEmbedder()
            adapter.load_error = OSError("model file missing")
            with self.assertRaises(InitializationError) as ctx:
                await adapter.initialize()
            self.assertIsInstance(ctx.exception.cause, OSError)
            self.assertIsInstance(ctx.exception.__cause__, OSError)
            self.assertEqual(adapter.state, AdapterState.UNINITIALIZED)

            adapter.load_error = None
            await adapter.initialize()
            self.assertTrue(adapter.is_ready())

        asyncio.run(scenario())

    def test_operation_before_initialize(self):
        async def scenario():
            adapter = KeywordEmbedder()
            with self.assertRaises(NotReadyError):
                await adapter.embed("hello")

        asyncio.run(scenario())

    def test_dispose_is_terminal_and_idempotent(self):
        async def scenario():
            adapter = KeywordEmbedder()
            await adapter.initialize()
            await adapter.dispose()
            await adapter.dispose()
            self.assertEqual(adapter.state, AdapterState.DISPOSED)
            self.assertEqual(adapter.release_count, 1)
            with self.assertRaises(NotReadyError):
                await adapter.embed("hello")
            with self.assertRaises(InitializationError):
                await adapter.initialize()

        asyncio.run(scenario())

    def test_dispose_uninitialized_skips_release(self):
        async def scenario():
            adapter = KeywordEmbedder()
            await adapter.dispose()
            self.assertEqual(adapter.state, AdapterState.DISPOSED)
            self.assertEqual(adapter.release_count, 0)

        asyncio.run(scenario())


class TestCapabilities(unittest.TestCase):

    def test_supports(self):
        embedder = KeywordEmbedder()
        generator = FakeGenerator()
        self.assertTrue(supports(embedder, Capability.TEXT_EMBEDDING))
        self.assertFalse(supports(embedder, Capability.TEXT_GENERATION))
        self.assertEqual(generator.capabilities, frozenset({Capability.TEXT_GENERATION}))

    def test_embed_and_batch(self):
        async def scenario():
            adapter = KeywordEmbedder()
            await adapter.initialize()
            vector = await adapter.embed("semantic search")
            self.assertEqual(vector.dimension, DIMENSION)
            self.assertEqual(vector.model_id, "keyword-embedder")
            batch = await adapter.embed_batch(["pizza", "flutter"])
            self.assertEqual(len(batch), 2)
            self.assertEqual(await adapter.embed_batch([]), [])

        asyncio.run(scenario())

    def test_backend_failure_becomes_inference_error(self):
        async def scenario():
            adapter = KeywordEmbedder(fail=True)
            await adapter.initialize()
            with self.assertRaises(InferenceError) as ctx:
                await adapter.embed("x")
            self.assertEqual(ctx.exception.operation, "embed")
            self.assertIsInstance(ctx.exception.cause, RuntimeError)

        asyncio.run(scenario())

    def test_classify_ranks_and_thresholds(self):
        async def scenario():
            adapter = FakeClassifier()
            await adapter.initialize()
            result = await adapter.classify("cat.jpg", threshold=0.1)
            self.assertEqual([label.label for label in result.labels], ["cat", "dog"])
            self.assertEqual(result.model_id, "fake-classifier")

        asyncio.run(scenario())

    def test_classify_text_ranks_and_thresholds(self):
        async def scenario():
            adapter = FakeTextClassifier()
            await adapter.initialize()
            self.assertTrue(supports(adapter, Capability.TEXT_CLASSIFICATION))
            result = await adapter.classify_text("good but slow and broken", threshold=0.1)
            self.assertEqual([label.label for label in result.labels], ["negative", "positive"])
            self.assertAlmostEqual(result.top.score, 2 / 3)
            neutral = await adapter.classify_text("plain words")
            self.assertEqual(neutral.top.label, "neutral")

        asyncio.run(scenario())

    def test_detect_filters_threshold(self):
        async def scenario():
            adapter = FakeDetector()
            await adapter.initialize()
            objects = await adapter.detect(b"raw-bytes", threshold=0.5)
            self.assertEqual([obj.label for obj in objects], ["person"])

        asyncio.run(scenario())

    def test_recognize(self):
        async def scenario():
            adapter = FakeRecognizer()
            await adapter.initialize()
            result = await adapter.recognize("scan.png")
            self.assertEqual(result.text, "HELLO WORLD")

        asyncio.run(scenario())

    def test_generate_normalizes_messages(self):
        async def scenario():
            adapter = FakeGenerator(reply="hi there")
            await adapter.initialize()
            result = await adapter.generate([{"role": "user", "content": "hello"}])
            self.assertEqual(result.text, "hi there")
            self.assertEqual(adapter.calls, [[{"role": "user", "content": "hello"}]])

        asyncio.run(scenario())

    def test_stream_yields_chunks(self):
        async def scenario():
            adapter = FakeGenerator(reply="one two three")
            await adapter.initialize()
            chunks = [c async for c in adapter.stream([{"role": "user", "content": "go"}])]
            self.assertEqual("".join(chunks), "one two three")
            self.assertEqual(len(chunks), 3)

        asyncio.run(scenario())

    def test_stream_failure_wrapped(self):
        async def scenario():
            adapter = FakeGenerator(reply="one two three", fail_after=1)
            await adapter.initialize()
            received = []
            with self.assertRaises(InferenceError):
                async for chunk in adapter.stream([{"role": "user", "content": "go"}]):
                    received.append(chunk)
            self.assertEqual(received, ["one"])

        asyncio.run(scenario())

    def test_origin_from_descriptor(self):
        self.assertEqual(FakeGenerator(origin=ModelOrigin.CLOUD).origin, ModelOrigin.CLOUD)


class TestIterateBlocking(unittest.TestCase):

    def test_plain_iterable(self):
        async def scenario():
            return [item async for item in iterate_blocking(lambda: [1, 2, 3])]

        self.assertEqual(asyncio.run(scenario()), [1, 2, 3])

    def test_abandoned_generator_is_closed(self):
        state = {"closed": False}

        def produce():
            try:
                yield from range(10)
            finally:
                state["closed"] = True

        async def scenario():
            items = iterate_blocking(produce)
            self.assertEqual(await items.__anext__(), 0)
            self.assertFalse(state["closed"])
            await items.aclose()
            self.assertTrue(state["closed"])

        asyncio.run(scenario())


class TestMessageDicts(unittest.TestCase):

    def test_accepts_dicts_and_to_dict_objects(self):
        class Msg:
            def to_dict(self):
                return {"role": "assistant", "content": "ok"}

        self.assertEqual(
            message_dicts([{"role": "user", "content": "hi"}, Msg()]),
            [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "ok"}],
        )

    def test_generation_params_stop_string(self):
        self.assertEqual(GenerationParams(stop="###").stop, ["###"])


if __name__ == "__main__":
    unittest.main()
