"""
Cloud text generation and embeddings over OpenAI-compatible APIs.

OpenAIAdapter wraps the openai SDK (OpenAI, Azure OpenAI, or any
OpenAI-compatible server such as Ollama) behind the TextGenerator and
TextEmbedder interfaces. The SDK client is synchronous; every request runs in
the default executor.

Provider selection (provider="auto"):
1. OLLAMA_API_BASE set -> ollama
2. AZURE_OPENAI_API_KEY and AZURE_OPENAI_ENDPOINT set -> azure
3. otherwise -> openai

Example:
    >>> adapter = OpenAIAdapter(model="gpt-4o-mini", api_key=key)
    >>> await adapter.initialize()
    >>> result = await adapter.generate([{"role": "user", "content": "Hi"}])
"""

import logging
import os
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from ..exceptions import InitializationError
from ..models import GenerationResult, ModelDescriptor, ModelOrigin
from ..settings import GenerationParams
from .base import Capability, TextEmbedder, TextGenerator, iterate_blocking, run_blocking

logger = logging.getLogger(__name__)

PROVIDERS = ("auto", "openai", "azure", "ollama")


def detect_provider(provider: str = "auto") -> str:
    """Resolve 'auto' to a concrete provider from the environment."""
    provider = provider.lower()
    if provider not in PROVIDERS:
        raise ValueError(f"Invalid provider '{provider}'. Valid options: {list(PROVIDERS)}")
    if provider != "auto":
        return provider
    if os.getenv("OLLAMA_API_BASE"):
        return "ollama"
    if os.getenv("AZURE_OPENAI_API_KEY") and os.getenv("AZURE_OPENAI_ENDPOINT"):
        return "azure"
    return "openai"


class OpenAIAdapter(TextGenerator, TextEmbedder):
    """
    Cloud adapter for OpenAI-compatible chat and embedding endpoints.

    Args:
        model: Chat model (or Azure deployment) name.
        provider: auto | openai | azure | ollama.
        api_key: Credential, already resolved by the caller. None lets the
            SDK read its own environment variables.
        api_base: Override of the endpoint URL.
        embedding_model: Embedding model name. None disables embed().
        timeout: Request timeout in seconds.
        descriptor: Optional descriptor; derived from model when omitted.
        priority: Preference among cloud adapters.
    """

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        provider: str = "auto",
        api_key: Optional[str] = None,
        api_base: Optional[str] = None,
        embedding_model: Optional[str] = None,
        timeout: float = 300,
        descriptor: Optional[ModelDescriptor] = None,
        priority: int = 0,
    ):
        if descriptor is None:
            descriptor = ModelDescriptor(
                model_id=model,
                name=model,
                framework="openai",
                origin=ModelOrigin.CLOUD,
                priority=priority,
            )
        super().__init__(descriptor)
        self._model = model
        self._provider = provider
        self._api_key = api_key
        self._api_base = api_base
        self._embedding_model = embedding_model
        self._timeout = timeout
        self._client = None
        self._resolved_model = model
        self.provider: Optional[str] = None

    def provides(self, capability: Capability) -> bool:
        if capability is Capability.TEXT_EMBEDDING:
            return self._embedding_model is not None
        return True

    async def _load(self) -> None:
        try:
            from openai import AzureOpenAI, OpenAI
        except ImportError as exc:
            raise InitializationError(
                self.model_id,
                "OpenAI library not installed. Install with: pip install edge_inference[openai]",
                cause=exc,
            ) from exc

        provider = detect_provider(self._provider)
        if provider == "ollama":
            base_url = self._api_base or os.getenv("OLLAMA_API_BASE", "http://localhost:11434/v1")
            self._client = OpenAI(base_url=base_url, api_key="ollama", timeout=self._timeout)
            self._resolved_model = self._model
        elif provider == "azure":
            self._client = AzureOpenAI(
                api_key=self._api_key or os.getenv("AZURE_OPENAI_API_KEY"),
                azure_endpoint=self._api_base or os.getenv("AZURE_OPENAI_ENDPOINT"),
                api_version=os.getenv("OPENAI_API_VERSION", "2024-02-15-preview"),
                timeout=self._timeout,
            )
            self._resolved_model = os.getenv("AZURE_OPENAI_DEPLOYMENT", self._model)
        else:
            kwargs: Dict[str, Any] = {"timeout": self._timeout}
            if self._api_key:
                kwargs["api_key"] = self._api_key
            if self._api_base:
                kwargs["base_url"] = self._api_base
            self._client = OpenAI(**kwargs)
            self._resolved_model = self._model

        self.provider = provider
        logger.info(f"OpenAI adapter '{self.model_id}' using provider {provider}")

    async def _release(self) -> None:
        client, self._client = self._client, None
        if client is not None and hasattr(client, "close"):
            await run_blocking(client.close)

    async def _generate(
        self, messages: List[Dict[str, str]], params: GenerationParams
    ) -> GenerationResult:
        response = await run_blocking(
            self._client.chat.completions.create,
            model=self._resolved_model,
            messages=messages,
            max_tokens=params.max_tokens,
            temperature=params.temperature,
            stop=params.stop,
        )
        usage = response.usage.model_dump() if hasattr(response.usage, "model_dump") else {}
        return GenerationResult(
            text=response.choices[0].message.content or "",
            model=self._resolved_model,
            tokens_used=usage.get("total_tokens"),
            finish_reason=response.choices[0].finish_reason,
        )

    async def _stream(
        self, messages: List[Dict[str, str]], params: GenerationParams
    ) -> AsyncIterator[str]:
        client = self._client

        def start():
            return client.chat.completions.create(
                model=self._resolved_model,
                messages=messages,
                max_tokens=params.max_tokens,
                temperature=params.temperature,
                stop=params.stop,
                stream=True,
            )

        chunks = iterate_blocking(start)
        try:
            async for chunk in chunks:
                if chunk.choices and chunk.choices[0].delta.content:
                    yield chunk.choices[0].delta.content
        finally:
            await chunks.aclose()

    async def _embed(self, text: str) -> List[float]:
        return (await self._embed_batch([text]))[0]

    async def _embed_batch(self, texts: List[str]) -> List[Sequence[float]]:
        if self._embedding_model is None:
            raise RuntimeError(f"No embedding_model configured for '{self.model_id}'")
        response = await run_blocking(
            self._client.embeddings.create, model=self._embedding_model, input=texts
        )
        ordered = sorted(response.data, key=lambda item: item.index)
        return [item.embedding for item in ordered]


__all__ = ["OpenAIAdapter", "detect_provider", "PROVIDERS"]
