"""
Tests for the adapter registry.
"""

import asyncio
import unittest

from fakes import FakeGenerator, KeywordEmbedder

from edge_inference.adapters.base import AdapterState
from edge_inference.exceptions import (
    AdapterAlreadyRegisteredError,
    AdapterDisposalError,
    InitializationError,
    NotFoundError,
)
from edge_inference.registry import AdapterRegistry


class TestAdapterRegistry(unittest.TestCase):

    def test_register_and_resolve(self):
        async def scenario():
            registry = AdapterRegistry()
            adapter = KeywordEmbedder()
            await registry.register("emb", adapter)
            self.assertIs(await registry.resolve("emb"), adapter)
            self.assertIn("emb", registry)
            self.assertEqual(len(registry), 1)
            # resolve does not initialize
            self.assertEqual(adapter.state, AdapterState.UNINITIALIZED)

        asyncio.run(scenario())

    def test_resolve_missing(self):
        async def scenario():
            registry = AdapterRegistry()
            with self.assertRaises(NotFoundError) as ctx:
                await registry.resolve("ghost")
            self.assertEqual(ctx.exception.identifier, "ghost")

        asyncio.run(scenario())

    def test_duplicate_register_rejected(self):
        async def scenario():
            registry = AdapterRegistry()
            first = KeywordEmbedder()
            await registry.register("emb", first)
            with self.assertRaises(AdapterAlreadyRegisteredError):
                await registry.register("emb", KeywordEmbedder())
            self.assertIs(await registry.resolve("emb"), first)

        asyncio.run(scenario())

    def test_eager_register_initializes(self):
        async def scenario():
            registry = AdapterRegistry()
            adapter = KeywordEmbedder()
            await registry.register("emb", adapter, initialize=True)
            self.assertTrue(adapter.is_ready())

        asyncio.run(scenario())

    def test_eager_register_failure_keeps_entry(self):
        async def scenario():
            registry = AdapterRegistry()
            adapter = KeywordEmbedder()
            adapter.load_error = RuntimeError("no weights")
            with self.assertRaises(InitializationError):
                await registry.register("emb", adapter, initialize=True)
            self.assertIn("emb", registry)
            adapter.load_error = None
            self.assertIs(await registry.acquire("emb"), adapter)
            self.assertTrue(adapter.is_ready())

        asyncio.run(scenario())

    def test_acquire_initializes(self):
        async def scenario():
            registry = AdapterRegistry()
            adapter = FakeGenerator()
            await registry.register("gen", adapter)
            await registry.acquire("gen")
            await registry.acquire("gen")
            self.assertEqual(adapter.load_count, 1)

        asyncio.run(scenario())

    def test_replace_disposes_previous(self):
        async def scenario():
            registry = AdapterRegistry()
            old, new = FakeGenerator("old"), FakeGenerator("new")
            await registry.register("gen", old, initialize=True)
            await registry.register("other", KeywordEmbedder())
            previous = await registry.replace("gen", new)
            self.assertIs(previous, old)
            self.assertEqual(old.state, AdapterState.DISPOSED)
            self.assertIs(await registry.resolve("gen"), new)
            # Replacement counts as the newest registration
            self.assertEqual(registry.ids(), ["other", "gen"])

        asyncio.run(scenario())

    def test_replace_free_id(self):
        async def scenario():
            registry = AdapterRegistry()
            self.assertIsNone(await registry.replace("gen", FakeGenerator()))
            self.assertIn("gen", registry)

        asyncio.run(scenario())

    def test_replace_dispose_failure_still_installs(self):
        async def scenario():
            registry = AdapterRegistry()
            old, new = FakeGenerator("old"), FakeGenerator("new")
            old.release_error = RuntimeError("stuck handle")
            await registry.register("gen", old, initialize=True)
            with self.assertRaises(AdapterDisposalError) as ctx:
                await registry.replace("gen", new)
            self.assertEqual(ctx.exception.failures[0][0], "gen")
            self.assertIs(await registry.resolve("gen"), new)

        asyncio.run(scenario())

    def test_unregister(self):
        async def scenario():
            registry = AdapterRegistry()
            adapter = KeywordEmbedder()
            await registry.register("emb", adapter, initialize=True)
            await registry.unregister("emb")
            self.assertNotIn("emb", registry)
            self.assertEqual(adapter.state, AdapterState.DISPOSED)
            with self.assertRaises(NotFoundError):
                await registry.unregister("emb")

        asyncio.run(scenario())

    def test_unregister_all_disposes_every_adapter(self):
        async def scenario():
            registry = AdapterRegistry()
            failing, healthy = FakeGenerator("a"), KeywordEmbedder("b")
            failing.release_error = RuntimeError("boom")
            await registry.register("a", failing, initialize=True)
            await registry.register("b", healthy, initialize=True)
            with self.assertRaises(AdapterDisposalError) as ctx:
                await registry.unregister_all()
            self.assertEqual([logical_id for logical_id, _ in ctx.exception.failures], ["a"])
            self.assertEqual(healthy.state, AdapterState.DISPOSED)
            self.assertEqual(len(registry), 0)

        asyncio.run(scenario())

    def test_entries_in_registration_order(self):
        async def scenario():
            registry = AdapterRegistry()
            for name in ("c", "a", "b"):
                await registry.register(name, KeywordEmbedder(name))
            self.assertEqual([logical_id for logical_id, _ in await registry.entries()], ["c", "a", "b"])

        asyncio.run(scenario())


if __name__ == "__main__":
    unittest.main()
