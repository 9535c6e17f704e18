"""
Tests for the inference policy router.
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
)

from edge_inference.adapters.base import Capability
from edge_inference.exceptions import (
    CapabilityMismatchError,
    InferenceError,
    InferenceExhaustedError,
    InitializationError,
    NotFoundError,
)
from edge_inference.models import InferencePolicy, ModelOrigin
from edge_inference.registry import AdapterRegistry
from edge_inference.router import InferenceRouter

MESSAGES = [{"role": "user", "content": "hello"}]


async def make_router(*entries, policy=InferencePolicy.PREFER_ON_DEVICE):
    registry = AdapterRegistry()
    for logical_id, adapter in entries:
        await registry.register(logical_id, adapter)
    return InferenceRouter(registry, default_policy=policy)


class TestFallback(unittest.TestCase):
    """Policy fallback counts."""

    def test_prefer_on_device_falls_back_once(self):
        async def scenario():
            local = FakeGenerator("local", fail=True)
            cloud = FakeGenerator("cloud", reply="from cloud", origin=ModelOrigin.CLOUD)
            router = await make_router(("local", local), ("cloud", cloud))
            outcome = await router.generate(MESSAGES, policy=InferencePolicy.PREFER_ON_DEVICE)
            self.assertEqual(outcome.value.text, "from cloud")
            self.assertEqual(outcome.logical_id, "cloud")
            self.assertEqual(outcome.origin, ModelOrigin.CLOUD)
            self.assertTrue(outcome.fell_back)
            self.assertEqual(outcome.attempts, 2)
            self.assertEqual(len(local.calls), 1)
            self.assertEqual(len(cloud.calls), 1)

        asyncio.run(scenario())

    def test_on_device_only_never_falls_back(self):
        async def scenario():
            local = FakeGenerator("local", fail=True)
            cloud = FakeGenerator("cloud", origin=ModelOrigin.CLOUD)
            router = await make_router(("local", local), ("cloud", cloud))
            with self.assertRaises(InferenceError):
                await router.generate(MESSAGES, policy=InferencePolicy.ON_DEVICE_ONLY)
            self.assertEqual(len(local.calls), 1)
            self.assertEqual(cloud.calls, [])
            self.assertEqual(cloud.load_count, 0)

        asyncio.run(scenario())

    def test_prefer_cloud_success_no_fallback(self):
        async def scenario():
            local = FakeGenerator("local")
            cloud = FakeGenerator("cloud", reply="cloud answer", origin=ModelOrigin.CLOUD)
            router = await make_router(("local", local), ("cloud", cloud))
            outcome = await router.generate(MESSAGES, policy="prefer-cloud")
            self.assertEqual(outcome.value.text, "cloud answer")
            self.assertFalse(outcome.fell_back)
            self.assertEqual(outcome.attempts, 1)
            self.assertEqual(local.calls, [])

        asyncio.run(scenario())

    def test_both_fail_raises_exhausted(self):
        async def scenario():
            local = FakeGenerator("local", fail=True)
            cloud = FakeGenerator("cloud", fail=True, origin=ModelOrigin.CLOUD)
            router = await make_router(("local", local), ("cloud", cloud))
            with self.assertRaises(InferenceExhaustedError) as ctx:
                await router.generate(MESSAGES)
            error = ctx.exception
            self.assertEqual([c for c, _ in error.failures], ["local", "cloud"])
            self.assertTrue(all(isinstance(e, InferenceError) for e in error.errors))
            self.assertEqual(error.to_dict()["failures"][1]["candidate"], "cloud")

        asyncio.run(scenario())

    def test_initialization_failure_falls_back(self):
        async def scenario():
            local = FakeGenerator("local")
            local.load_error = OSError("weights missing")
            cloud = FakeGenerator("cloud", reply="ok", origin=ModelOrigin.CLOUD)
            router = await make_router(("local", local), ("cloud", cloud))
            outcome = await router.generate(MESSAGES)
            self.assertEqual(outcome.value.text, "ok")
            self.assertEqual(outcome.attempts, 2)

        asyncio.run(scenario())

    def test_missing_primary_uses_fallback_without_extra_attempt(self):
        async def scenario():
            cloud = FakeGenerator("cloud", reply="only cloud", origin=ModelOrigin.CLOUD)
            router = await make_router(("cloud", cloud))
            outcome = await router.generate(MESSAGES, policy=InferencePolicy.PREFER_ON_DEVICE)
            self.assertEqual(outcome.value.text, "only cloud")
            self.assertTrue(outcome.fell_back)
            self.assertEqual(outcome.attempts, 1)

        asyncio.run(scenario())

    def test_missing_primary_and_failing_fallback(self):
        async def scenario():
            cloud = FakeGenerator("cloud", fail=True, origin=ModelOrigin.CLOUD)
            router = await make_router(("cloud", cloud))
            with self.assertRaises(InferenceExhaustedError) as ctx:
                await router.generate(MESSAGES)
            self.assertIsInstance(ctx.exception.errors[0], NotFoundError)
            self.assertIsInstance(ctx.exception.errors[1], InferenceError)

        asyncio.run(scenario())

    def test_no_candidate_at_all(self):
        async def scenario():
            router = await make_router(("emb", KeywordEmbedder()))
            with self.assertRaises(NotFoundError) as ctx:
                await router.generate(MESSAGES)
            self.assertEqual(ctx.exception.kind, "capability")

        asyncio.run(scenario())

    def test_cloud_only_without_cloud_adapter(self):
        async def scenario():
            router = await make_router(("local", FakeGenerator("local")))
            with self.assertRaises(NotFoundError):
                await router.generate(MESSAGES, policy=InferencePolicy.CLOUD_ONLY)

        asyncio.run(scenario())

    def test_unexpected_errors_propagate_unchanged(self):
        async def scenario():
            cloud = FakeGenerator("cloud", origin=ModelOrigin.CLOUD)
            router = await make_router(("local", FakeGenerator("local")), ("cloud", cloud))

            async def operation(adapter):
                raise KeyError("caller bug")

            with self.assertRaises(KeyError):
                await router.route(Capability.TEXT_GENERATION, operation)
            self.assertEqual(cloud.load_count, 0)

        asyncio.run(scenario())


class TestSelection(unittest.TestCase):
    """Candidate selection within an origin."""

    def test_priority_then_registration_order(self):
        async def scenario():
            first = FakeGenerator("first", reply="first")
            second = FakeGenerator("second", reply="second")
            preferred = FakeGenerator("preferred", reply="preferred", priority=5)
            router = await make_router(("first", first), ("second", second))
            outcome = await router.generate(MESSAGES)
            self.assertEqual(outcome.logical_id, "first")

            await router.registry.register("preferred", preferred)
            outcome = await router.generate(MESSAGES)
            self.assertEqual(outcome.logical_id, "preferred")

        asyncio.run(scenario())

    def test_binding_overrides_selection(self):
        async def scenario():
            router = await make_router(
                ("a", FakeGenerator("a", priority=9)), ("b", FakeGenerator("b", reply="bound"))
            )
            router.bind(Capability.TEXT_GENERATION, ModelOrigin.ON_DEVICE, "b")
            outcome = await router.generate(MESSAGES, policy=InferencePolicy.ON_DEVICE_ONLY)
            self.assertEqual(outcome.value.text, "bound")
            router.unbind(Capability.TEXT_GENERATION, ModelOrigin.ON_DEVICE)
            outcome = await router.generate(MESSAGES, policy=InferencePolicy.ON_DEVICE_ONLY)
            self.assertEqual(outcome.logical_id, "a")

        asyncio.run(scenario())

    def test_binding_to_incompatible_adapter(self):
        async def scenario():
            router = await make_router(("emb", KeywordEmbedder()))
            router.bind(Capability.TEXT_GENERATION, ModelOrigin.ON_DEVICE, "emb")
            with self.assertRaises(CapabilityMismatchError):
                await router.generate(MESSAGES)

        asyncio.run(scenario())

    def test_binding_to_unregistered_id_counts_as_missing(self):
        async def scenario():
            cloud = FakeGenerator("cloud", reply="cloud", origin=ModelOrigin.CLOUD)
            router = await make_router(("cloud", cloud))
            router.bind(Capability.TEXT_GENERATION, ModelOrigin.ON_DEVICE, "ghost")
            outcome = await router.generate(MESSAGES)
            self.assertEqual(outcome.logical_id, "cloud")

        asyncio.run(scenario())

    def test_resolve_returns_first_candidate(self):
        async def scenario():
            local = FakeGenerator("local")
            cloud = FakeGenerator("cloud", origin=ModelOrigin.CLOUD)
            router = await make_router(("local", local), ("cloud", cloud))
            self.assertIs(await router.resolve(Capability.TEXT_GENERATION), local)
            self.assertIs(
                await router.resolve(Capability.TEXT_GENERATION, InferencePolicy.PREFER_CLOUD), cloud
            )
            # resolve never initializes
            self.assertEqual(local.load_count, 0)

        asyncio.run(scenario())

    def test_capability_pass_throughs(self):
        async def scenario():
            router = await make_router(
                ("emb", KeywordEmbedder()),
                ("cls", FakeClassifier()),
                ("det", FakeDetector()),
                ("ocr", FakeRecognizer(origin=ModelOrigin.CLOUD)),
            )
            vector = await router.embed("semantic search")
            self.assertEqual(vector.model_id, "keyword-embedder")
            self.assertEqual(len(await router.embed_batch(["a", "b"])), 2)
            self.assertEqual((await router.classify("img")).top.label, "cat")
            self.assertEqual(len(await router.detect("img", threshold=0.2)), 2)
            self.assertEqual((await router.recognize("img")).text, "HELLO WORLD")

        asyncio.run(scenario())


class TestStreaming(unittest.TestCase):
    """Routed streaming generation."""

    def test_stream_from_primary(self):
        async def scenario():
            router = await make_router(("local", FakeGenerator("local", reply="a b c")))
            stream = router.stream_generate(MESSAGES)
            chunks = [chunk async for chunk in stream]
            self.assertEqual("".join(chunks), "a b c")
            self.assertEqual(stream.logical_id, "local")
            self.assertEqual(stream.model, "local")
            self.assertFalse(stream.fell_back)

        asyncio.run(scenario())

    def test_stream_falls_back_before_first_chunk(self):
        async def scenario():
            local = FakeGenerator("local", fail=True)
            cloud = FakeGenerator("cloud", reply="x y", origin=ModelOrigin.CLOUD)
            router = await make_router(("local", local), ("cloud", cloud))
            stream = router.stream_generate(MESSAGES)
            chunks = [chunk async for chunk in stream]
            self.assertEqual("".join(chunks), "x y")
            self.assertTrue(stream.fell_back)
            self.assertEqual(stream.attempts, 2)
            self.assertEqual(stream.origin, ModelOrigin.CLOUD)

        asyncio.run(scenario())

    def test_stream_failure_after_first_chunk_propagates(self):
        async def scenario():
            local = FakeGenerator("local", reply="a b c", fail_after=1)
            cloud = FakeGenerator("cloud", origin=ModelOrigin.CLOUD)
            router = await make_router(("local", local), ("cloud", cloud))
            received = []
            with self.assertRaises(InferenceError):
                async for chunk in router.stream_generate(MESSAGES):
                    received.append(chunk)
            self.assertEqual(received, ["a"])
            self.assertEqual(cloud.calls, [])

        asyncio.run(scenario())

    def test_stream_aclose_closes_adapter_stream(self):
        async def scenario():
            local = FakeGenerator("local", reply="a b c")
            router = await make_router(("local", local))
            stream = router.stream_generate(MESSAGES)
            self.assertEqual(await stream.__anext__(), "a")
            await stream.aclose()
            self.assertTrue(local.stream_closed)

        asyncio.run(scenario())

    def test_aclose_from_another_task_while_read_pending(self):
        async def scenario():
            local = FakeGenerator("local", reply="a b c")
            local.gate = asyncio.Event()
            router = await make_router(("local", local))
            stream = router.stream_generate(MESSAGES)
            reader = asyncio.create_task(stream.__anext__())
            await asyncio.sleep(0.01)
            await stream.aclose()
            self.assertTrue(local.stream_closed)
            with self.assertRaises(StopAsyncIteration):
                await reader
            with self.assertRaises(StopAsyncIteration):
                await stream.__anext__()

        asyncio.run(scenario())


class TestTextClassification(unittest.TestCase):

    def test_routes_to_text_classifier(self):
        async def scenario():
            router = await make_router(("img", FakeClassifier()), ("txt", FakeTextClassifier()))
            result = await router.classify_text("I love it, great and fast", threshold=0.5)
            self.assertEqual([label.label for label in result.labels], ["positive"])
            self.assertEqual(result.model_id, "fake-text-classifier")

        asyncio.run(scenario())

    def test_falls_back_to_cloud(self):
        async def scenario():
            router = await make_router(
                ("local", FakeTextClassifier("local", fail=True)),
                ("cloud", FakeTextClassifier("cloud", origin=ModelOrigin.CLOUD)),
            )
            result = await router.classify_text("awful")
            self.assertEqual(result.top.label, "negative")
            self.assertEqual(result.model_id, "cloud")

        asyncio.run(scenario())

    def test_no_text_classifier_registered(self):
        async def scenario():
            router = await make_router(("img", FakeClassifier()))
            with self.assertRaises(NotFoundError) as ctx:
                await router.classify_text("good")
            self.assertEqual(ctx.exception.kind, "capability")

        asyncio.run(scenario())


if __name__ == "__main__":
    unittest.main()
