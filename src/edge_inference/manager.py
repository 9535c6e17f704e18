"""
InferenceManager: the single entry point of edge_inference.

Wires an AdapterRegistry, an InferenceRouter, named VectorSimilarityStores and
a RagOrchestrator together, either programmatically or from InferenceSettings
(usually loaded from YAML).

Example (programmatic):
    >>> async with InferenceManager(default_policy="prefer_on_device") as manager:
    ...     await manager.register_adapter("phi", LocalLlmAdapter(model_path="phi.gguf"))
    ...     await manager.register_adapter("gpt", OpenAIAdapter(model="gpt-4o-mini"))
    ...     store = await manager.create_vector_store("docs", embedder="phi")
    ...     await store.add_document("d1", "Vector stores enable semantic search.")
    ...     session = manager.create_chat_session(
    ...         ChatSessionConfig(retrieval=RetrievalConfig(store_id="docs"))
    ...     )
    ...     response = await manager.send_turn(session, "How does semantic search work?")

Example (settings):
    >>> settings = load_settings("edge_inference.yaml")
    >>> manager = await InferenceManager.from_settings(settings)
"""

import contextlib
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from .adapters.base import Capability, Message, ModelAdapter
from .adapters.factory import create_adapter
from .chat.orchestrator import ChatResponse, RagOrchestrator, TokenStream
from .chat.session import ChatMessage, ChatSession
from .embedding import EmbeddingVector
from .exceptions import AdapterDisposalError, ModelDownloadError, NotFoundError
from .model_cache import ModelCache
from .models import (
    ClassificationResult,
    DetectedObject,
    GenerationResult,
    ImageInput,
    InferencePolicy,
    ModelDescriptor,
    OcrResult,
)
from .registry import AdapterRegistry
from .router import InferenceRouter, PolicyLike, RoutedStream, RoutingOutcome
from .settings import ChatSessionConfig, GenerationParams, InferenceSettings
from .storage.records import MemoryRecordStore, RecordStore, SQLiteRecordStore
from .storage.vector_store import EmbeddingGenerator, VectorSimilarityStore

logger = logging.getLogger(__name__)

Prompt = Union[str, Sequence[Message]]


def parse_capability(value: Union[str, Capability]) -> Capability:
    """Accept 'text-embedding' / 'TEXT_EMBEDDING' spellings."""
    if isinstance(value, Capability):
        return value
    normalized = str(value).strip().lower().replace("-", "_")
    try:
        return Capability(normalized)
    except ValueError:
        valid = [c.value for c in Capability]
        raise ValueError(f"Invalid capability '{value}'. Valid options: {valid}")


class RoutedEmbedder:
    """
    Embedding generator backed by the router.

    Used by vector stores that name no embedder: every embedding follows the
    router's policy and fallback rules.
    """

    def __init__(self, router: InferenceRouter, policy: PolicyLike = None):
        self.router = router
        self.policy = policy

    async def embed(self, text: str) -> EmbeddingVector:
        return await self.router.embed(text, self.policy)

    async def embed_batch(self, texts: Sequence[str]) -> List[EmbeddingVector]:
        return await self.router.embed_batch(texts, self.policy)


class InferenceManager:
    """
    Facade over registry, router, vector stores and chat.

    Args:
        default_policy: Policy used by calls that pass none.
        chat_defaults: Session config used by create_chat_session() when none
            is given.
        model_cache: Manifest and cache directory of downloadable on-device
            models. Defaults to an empty manifest over the default directory.
    """

    def __init__(
        self,
        default_policy: Union[InferencePolicy, str] = InferencePolicy.PREFER_ON_DEVICE,
        chat_defaults: Optional[ChatSessionConfig] = None,
        model_cache: Optional[ModelCache] = None,
    ):
        self.registry = AdapterRegistry()
        self.router = InferenceRouter(self.registry, InferencePolicy.parse(default_policy))
        self.chat_defaults = chat_defaults or ChatSessionConfig()
        self.models = model_cache or ModelCache()
        self._stores: Dict[str, VectorSimilarityStore] = {}
        self.orchestrator = RagOrchestrator(self.router, self._stores)
        self._closed = False

    @property
    def default_policy(self) -> InferencePolicy:
        return self.router.default_policy

    @classmethod
    async def from_settings(cls, settings: InferenceSettings) -> "InferenceManager":
        """
        Build a manager from settings: adapters, bindings, then vector stores.

        Adapters marked eager are initialized immediately. If anything fails,
        what was built so far is shut down and the error propagates. An
        unreadable model manifest is only logged.
        """
        settings.apply_logging()
        manager = cls(
            default_policy=settings.policy,
            chat_defaults=settings.chat,
            model_cache=ModelCache(settings.models.cache_dir),
        )
        if settings.models.manifest:
            try:
                manager.models.load_manifest(settings.models.manifest)
            except (OSError, ValueError) as e:
                logger.warning(f"Could not load model manifest {settings.models.manifest}: {e}")
        try:
            for adapter_settings in settings.adapters:
                await manager.register_adapter(
                    adapter_settings.id,
                    create_adapter(adapter_settings),
                    initialize=adapter_settings.eager,
                )
            for binding in settings.bindings:
                manager.router.bind(parse_capability(binding.capability), binding.origin, binding.adapter)
            for store_settings in settings.vector_stores:
                records: Optional[RecordStore] = None
                if store_settings.path:
                    records = SQLiteRecordStore(store_settings.path, store_id=store_settings.id)
                await manager.create_vector_store(
                    store_settings.id, records=records, embedder=store_settings.embedder
                )
        except Exception:
            # Disposal failures are already logged by the registry
            with contextlib.suppress(AdapterDisposalError):
                await manager.shutdown()
            raise

        logger.info(
            f"InferenceManager ready: {len(manager.registry)} adapter(s), "
            f"{len(manager._stores)} vector store(s), policy={manager.default_policy.value}"
        )
        return manager

    # Adapters

    async def register_adapter(
        self, logical_id: str, adapter: ModelAdapter, initialize: bool = False
    ) -> None:
        await self.registry.register(logical_id, adapter, initialize=initialize)

    async def replace_adapter(self, logical_id: str, adapter: ModelAdapter) -> Optional[ModelAdapter]:
        return await self.registry.replace(logical_id, adapter)

    async def unregister_adapter(self, logical_id: str) -> None:
        await self.registry.unregister(logical_id)

    async def resolve(self, capability: Union[Capability, str], policy: PolicyLike = None) -> ModelAdapter:
        """Adapter that would serve capability first under policy."""
        return await self.router.resolve(parse_capability(capability), policy)

    async def list_adapters(self) -> List[Dict[str, Any]]:
        """Registered adapters with their descriptor and state."""
        return [
            {
                "id": logical_id,
                "state": adapter.state.value,
                "capabilities": sorted(c.value for c in adapter.capabilities),
                **adapter.descriptor.to_dict(),
            }
            for logical_id, adapter in await self.registry.entries()
        ]

    # Capability pass-throughs

    async def embed_text(self, text: str, policy: PolicyLike = None) -> EmbeddingVector:
        return await self.router.embed(text, policy)

    async def classify_image(
        self, image: ImageInput, threshold: float = 0.0, policy: PolicyLike = None
    ) -> ClassificationResult:
        return await self.router.classify(image, threshold, policy)

    async def classify_text(
        self, text: str, threshold: float = 0.0, policy: PolicyLike = None
    ) -> ClassificationResult:
        return await self.router.classify_text(text, threshold, policy)

    async def run_ocr(self, image: ImageInput, policy: PolicyLike = None) -> OcrResult:
        return await self.router.recognize(image, policy)

    async def detect_objects(
        self, image: ImageInput, threshold: float = 0.5, policy: PolicyLike = None
    ) -> List[DetectedObject]:
        return await self.router.detect(image, threshold, policy)

    def _messages(self, prompt: Prompt) -> List[Message]:
        if isinstance(prompt, str):
            return [ChatMessage.user(prompt)]
        return list(prompt)

    async def generate(
        self,
        prompt: Prompt,
        params: Optional[GenerationParams] = None,
        policy: PolicyLike = None,
    ) -> GenerationResult:
        """Routed one-shot generation from a string or a message list."""
        return (await self.router.generate(self._messages(prompt), params, policy)).value

    async def generate_with_outcome(
        self,
        prompt: Prompt,
        params: Optional[GenerationParams] = None,
        policy: PolicyLike = None,
    ) -> RoutingOutcome[GenerationResult]:
        return await self.router.generate(self._messages(prompt), params, policy)

    def stream_generate(
        self,
        prompt: Prompt,
        params: Optional[GenerationParams] = None,
        policy: PolicyLike = None,
    ) -> RoutedStream:
        return self.router.stream_generate(self._messages(prompt), params, policy)

    # On-device models

    async def download_model(self, model_id: str, force: bool = False) -> Path:
        """
        Download a manifest model into the model cache.

        Raises:
            NotFoundError: model_id is not in the manifest.
            ModelDownloadError: Fetch failed or the checksum did not match.
        """
        try:
            return await self.models.download(model_id, force=force)
        except ModelDownloadError:
            logger.exception(f"Failed to download model '{model_id}'")
            raise

    async def model_info(self, model_id: str) -> ModelDescriptor:
        """
        Descriptor of a registered adapter (by logical id) or, failing that,
        of a manifest model.
        """
        for logical_id, adapter in await self.registry.entries():
            if logical_id == model_id:
                return adapter.descriptor
        return self.models.info(model_id).to_descriptor()

    def downloaded_models(self) -> List[str]:
        return self.models.list_downloaded()

    def is_model_downloaded(self, model_id: str) -> bool:
        return self.models.is_downloaded(model_id)

    def model_path(self, model_id: str) -> Optional[Path]:
        return self.models.model_path(model_id)

    def delete_model(self, model_id: str) -> bool:
        return self.models.delete(model_id)

    # Vector stores

    async def create_vector_store(
        self,
        store_id: str,
        records: Optional[RecordStore] = None,
        embedding_generator: Optional[EmbeddingGenerator] = None,
        embedder: Optional[str] = None,
    ) -> VectorSimilarityStore:
        """
        Create, open and register a vector store.

        Args:
            store_id: Unique store id.
            records: Record substrate. Defaults to MemoryRecordStore.
            embedding_generator: Explicit embedding generator.
            embedder: Logical id of a registered embedding adapter, used when
                embedding_generator is not given. Without either, embeddings
                are routed by policy.

        Raises:
            ValueError: store_id is taken.
            NotFoundError: embedder is not registered.
        """
        if store_id in self._stores:
            raise ValueError(f"Vector store '{store_id}' already exists")
        if embedding_generator is None:
            if embedder is not None:
                embedding_generator = await self.registry.resolve(embedder)
            else:
                embedding_generator = RoutedEmbedder(self.router)
        store = VectorSimilarityStore(
            store_id,
            records=records if records is not None else MemoryRecordStore(),
            embedding_generator=embedding_generator,
        )
        return await self.register_vector_store(store)

    async def register_vector_store(self, store: VectorSimilarityStore) -> VectorSimilarityStore:
        """Register an existing store (opening it if needed)."""
        if store.store_id in self._stores:
            raise ValueError(f"Vector store '{store.store_id}' already exists")
        await store.open()
        self._stores[store.store_id] = store
        return store

    def vector_store(self, store_id: str) -> VectorSimilarityStore:
        store = self._stores.get(store_id)
        if store is None:
            raise NotFoundError(store_id, kind="vector store")
        return store

    def vector_stores(self) -> List[str]:
        return list(self._stores)

    async def remove_vector_store(self, store_id: str) -> None:
        store = self.vector_store(store_id)
        del self._stores[store_id]
        await store.close()

    # Chat

    def create_chat_session(
        self, config: Optional[ChatSessionConfig] = None, session_id: Optional[str] = None
    ) -> ChatSession:
        return self.orchestrator.create_session(config or self.chat_defaults, session_id)

    def chat_session(self, session_id: str) -> ChatSession:
        return self.orchestrator.get_session(session_id)

    async def send_turn(
        self,
        session: Union[ChatSession, str],
        message: str,
        stream: bool = False,
        policy: PolicyLike = None,
    ) -> Union[ChatResponse, TokenStream]:
        return await self.orchestrator.send_turn(session, message, stream=stream, policy=policy)

    async def close_session(self, session: Union[ChatSession, str]) -> None:
        await self.orchestrator.close_session(session)

    # Lifecycle

    async def shutdown(self) -> None:
        """
        Close sessions and stores, then dispose every adapter. Idempotent.

        A store that fails to close is logged and does not stop the others;
        adapters are disposed in every case.

        Raises:
            AdapterDisposalError: If any adapter failed to dispose (all are
                attempted and the registry is cleared regardless).
            Exception: The first store close failure, once adapters are
                disposed.
        """
        if self._closed:
            return
        self._closed = True
        store_error: Optional[Exception] = None
        try:
            await self.orchestrator.close_all()
            for store_id in list(self._stores):
                try:
                    await self._stores.pop(store_id).close()
                except Exception as exc:
                    logger.exception(f"Failed to close vector store '{store_id}'")
                    if store_error is None:
                        store_error = exc
        finally:
            await self.registry.unregister_all()
        if store_error is not None:
            raise store_error
        logger.info("InferenceManager shut down")

    async def __aenter__(self) -> "InferenceManager":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()


__all__ = ["InferenceManager", "RoutedEmbedder", "parse_capability"]
