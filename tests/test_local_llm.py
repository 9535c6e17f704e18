"""
Tests for the llama.cpp adapter with llama_cpp mocked out.
"""

import asyncio
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from edge_inference.adapters import local_llm
from edge_inference.adapters.base import Capability, supports
from edge_inference.adapters.local_llm import (
    LocalLlmAdapter,
    get_model_info,
    resolve_model_path,
)
from edge_inference.exceptions import InferenceError, InitializationError
from edge_inference.settings import GenerationParams


class TestModelInfo(unittest.TestCase):

    def test_families(self):
        cases = {
            "microsoft_Phi-4-mini-instruct-Q3_K_S.gguf": (128000, "chatml", "phi", "Q3_K_S"),
            "gemma-3-1b-it-Q8_0.gguf": (8192, "gemma", "gemma", "Q8_0"),
            "gemma-3n-E4B-it-Q4_K_M.gguf": (32768, "gemma", "gemma", "Q4_K_M"),
            "qwen2.5-7b-instruct-f16.gguf": (32768, "chatml", "qwen", "F16"),
            "mystery.gguf": (4096, None, "unknown", None),
        }
        for filename, (n_ctx, chat_format, family, quant) in cases.items():
            with self.subTest(filename=filename):
                info = get_model_info(f"/models/{filename}")
                self.assertEqual(info["n_ctx"], n_ctx)
                self.assertEqual(info["chat_format"], chat_format)
                self.assertEqual(info["family"], family)
                self.assertEqual(info["quantization"], quant)


class TestResolveModelPath(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.model = Path(self.tmp.name) / "phi.gguf"
        self.model.write_bytes(b"gguf")

    def test_env_wins(self):
        with patch.dict(os.environ, {"EDGE_INFERENCE_MODEL_PATH": str(self.model)}):
            self.assertEqual(resolve_model_path("/elsewhere.gguf"), str(self.model))

    def test_explicit_path(self):
        self.assertEqual(resolve_model_path(str(self.model)), str(self.model))

    def test_cache_dir_fallback(self):
        with patch.object(local_llm, "DEFAULT_CACHE_DIR", Path(self.tmp.name)), \
                patch.object(local_llm, "DEFAULT_MODELS", ["phi.gguf"]):
            self.assertEqual(resolve_model_path("/missing.gguf"), str(self.model))

    def test_nothing_found(self):
        with patch.object(local_llm, "DEFAULT_CACHE_DIR", Path(self.tmp.name) / "empty"):
            self.assertIsNone(resolve_model_path(None))


class TestLocalLlmAdapter(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.model_path = str(Path(self.tmp.name) / "gemma-3-1b-it-Q8_0.gguf")
        Path(self.model_path).write_bytes(b"gguf")

        self.llm = MagicMock()
        self.llm.create_chat_completion.side_effect = self._completion
        self.llm.embed.return_value = [0.1, 0.2, 0.3]
        self.llama_cls = MagicMock(return_value=self.llm)
        patcher = patch.multiple(local_llm, Llama=self.llama_cls, LLAMA_CPP_AVAILABLE=True)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _completion(self, messages, stream=False, **kwargs):
        if stream:
            return iter([
                {"choices": [{"delta": {"role": "assistant"}}]},
                {"choices": [{"delta": {"content": "Hel"}}]},
                {"choices": [{"delta": {"content": "lo"}}]},
            ])
        return {
            "choices": [{"message": {"content": "Hello"}, "finish_reason": "stop"}],
            "usage": {"total_tokens": 7},
        }

    def test_descriptor_from_filename(self):
        adapter = LocalLlmAdapter(model_path=self.model_path)
        self.assertEqual(adapter.model_id, "gemma-3-1b-it-Q8_0")
        self.assertEqual(adapter.descriptor.quantization_type, "Q8_0")
        self.assertFalse(self.llama_cls.called)

    def test_generate(self):
        async def scenario():
            adapter = LocalLlmAdapter(model_path=self.model_path, n_threads=2, top_p=0.9)
            await adapter.initialize()
            result = await adapter.generate(
                [{"role": "user", "content": "hi"}], GenerationParams(max_tokens=16, stop="###")
            )
            self.assertEqual(result.text, "Hello")
            self.assertEqual(result.tokens_used, 7)
            self.assertEqual(result.finish_reason, "stop")
            kwargs = self.llm.create_chat_completion.call_args.kwargs
            self.assertEqual(kwargs["max_tokens"], 16)
            self.assertEqual(kwargs["stop"], ["###"])
            self.assertEqual(kwargs["top_p"], 0.9)
            load_kwargs = self.llama_cls.call_args.kwargs
            self.assertEqual(load_kwargs["n_ctx"], 8192)
            self.assertEqual(load_kwargs["chat_format"], "gemma")
            self.assertEqual(load_kwargs["n_threads"], 2)
            self.assertEqual(adapter.model_info["family"], "gemma")

        asyncio.run(scenario())

    def test_stream(self):
        async def scenario():
            adapter = LocalLlmAdapter(model_path=self.model_path)
            await adapter.initialize()
            chunks = [c async for c in adapter.stream([{"role": "user", "content": "hi"}])]
            self.assertEqual(chunks, ["Hel", "lo"])

        asyncio.run(scenario())

    def test_embedding_mode(self):
        async def scenario():
            plain = LocalLlmAdapter(model_path=self.model_path)
            self.assertFalse(supports(plain, Capability.TEXT_EMBEDDING))
            await plain.initialize()
            with self.assertRaises(InferenceError):
                await plain.embed("x")

            embedding = LocalLlmAdapter(model_path=self.model_path, embedding=True)
            self.assertTrue(supports(embedding, Capability.TEXT_EMBEDDING))
            await embedding.initialize()
            vector = await embedding.embed("x")
            self.assertEqual(vector.values, (0.1, 0.2, 0.3))
            self.assertTrue(self.llama_cls.call_args.kwargs["embedding"])

        asyncio.run(scenario())

    def test_backend_error_is_wrapped(self):
        async def scenario():
            self.llm.create_chat_completion.side_effect = RuntimeError("ggml abort")
            adapter = LocalLlmAdapter(model_path=self.model_path)
            await adapter.initialize()
            with self.assertRaises(InferenceError) as ctx:
                await adapter.generate([{"role": "user", "content": "hi"}])
            self.assertIsInstance(ctx.exception.__cause__, RuntimeError)

        asyncio.run(scenario())

    def test_missing_library(self):
        async def scenario():
            with patch.object(local_llm, "LLAMA_CPP_AVAILABLE", False):
                adapter = LocalLlmAdapter(model_path=self.model_path)
                with self.assertRaises(InitializationError) as ctx:
                    await adapter.initialize()
                self.assertIn("llama-cpp-python not installed", str(ctx.exception))

        asyncio.run(scenario())

    def test_missing_model_file(self):
        async def scenario():
            with patch.object(local_llm, "DEFAULT_CACHE_DIR", Path(self.tmp.name) / "empty"):
                adapter = LocalLlmAdapter(model_path="/nowhere/model.gguf")
                with self.assertRaises(InitializationError):
                    await adapter.initialize()

        asyncio.run(scenario())

    def test_dispose_drops_model(self):
        async def scenario():
            adapter = LocalLlmAdapter(model_path=self.model_path)
            await adapter.initialize()
            await adapter.dispose()
            self.assertIsNone(adapter._llm)

        asyncio.run(scenario())


if __name__ == "__main__":
    unittest.main()
