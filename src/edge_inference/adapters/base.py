"""
Capability adapter contract.

Every backend (on-device runtime or cloud API) is wrapped in a ModelAdapter
subclass. The base class owns the lifecycle:

    UNINITIALIZED --initialize()--> READY --dispose()--> DISPOSED

DISPOSED is terminal. Capabilities are separate interfaces; a concrete
adapter subclasses the ones its backend supports:

    class LocalLlmAdapter(TextGenerator, TextEmbedder):
        async def _load(self): ...
        async def _generate(self, messages, params): ...

Subclasses implement the underscore hooks. The public methods enforce the
readiness check and wrap backend failures as InferenceError exactly once,
so callers (and the router) only ever see the error taxonomy.

Blocking SDK calls must go through run_blocking() / iterate_blocking() so the
event loop is never blocked by inference.
"""

import asyncio
import functools
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    Iterator,
    List,
    Optional,
    Sequence,
    TypeVar,
    Union,
)

from ..embedding import EmbeddingVector
from ..exceptions import (
    EdgeInferenceError,
    InferenceError,
    InitializationError,
    NotReadyError,
)
from ..models import (
    ClassificationResult,
    DetectedObject,
    GenerationResult,
    ImageInput,
    ModelDescriptor,
    ModelOrigin,
    OcrResult,
)
from ..settings import GenerationParams

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Chat messages in OpenAI format, or objects exposing to_dict() (ChatMessage)
Message = Union[Dict[str, str], Any]


class AdapterState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    DISPOSED = "disposed"


class Capability(str, Enum):
    """Inference capabilities an adapter may implement."""

    IMAGE_CLASSIFICATION = "image_classification"
    OBJECT_DETECTION = "object_detection"
    OCR = "ocr"
    TEXT_CLASSIFICATION = "text_classification"
    TEXT_EMBEDDING = "text_embedding"
    TEXT_GENERATION = "text_generation"


async def run_blocking(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking callable in the default executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))


async def iterate_blocking(factory: Callable[[], Iterable[T]]) -> AsyncIterator[T]:
    """
    Consume a blocking iterator from the default executor.

    Both the iterator construction (which usually issues the request) and
    every next() call run off the event loop. When iteration ends or is
    abandoned, the source's close() (an HTTP stream, a generator) is called
    in the executor as well, so the backend stops producing.
    """
    loop = asyncio.get_running_loop()
    source = await loop.run_in_executor(None, factory)
    iterator: Iterator[T] = iter(source)
    sentinel = object()
    try:
        while True:
            item = await loop.run_in_executor(None, next, iterator, sentinel)
            if item is sentinel:
                break
            yield item
    finally:
        close = getattr(source, "close", None) or getattr(iterator, "close", None)
        if close is not None:
            try:
                await run_blocking(close)
            except Exception as exc:
                logger.warning(f"Failed to close blocking stream: {exc}")


def message_dicts(messages: Sequence[Message]) -> List[Dict[str, str]]:
    """Normalize chat messages to OpenAI-format dicts."""
    result = []
    for message in messages:
        if hasattr(message, "to_dict"):
            message = message.to_dict()
        result.append({"role": str(message["role"]), "content": str(message["content"])})
    return result


class ModelAdapter(ABC):
    """
    Base class for every capability adapter.

    Args:
        descriptor: Describes the wrapped model (id, origin, priority...).

    Subclasses override _load() to acquire backend resources and _release()
    to free them. Both default to no-ops for backends without state.
    """

    def __init__(self, descriptor: ModelDescriptor):
        self.descriptor = descriptor
        self._state = AdapterState.UNINITIALIZED
        self._lifecycle_lock = asyncio.Lock()

    @property
    def model_id(self) -> str:
        return self.descriptor.model_id

    @property
    def origin(self) -> ModelOrigin:
        return self.descriptor.origin

    @property
    def state(self) -> AdapterState:
        return self._state

    @property
    def capabilities(self) -> FrozenSet[Capability]:
        return frozenset(cap for cap in Capability if supports(self, cap))

    def is_ready(self) -> bool:
        return self._state is AdapterState.READY

    def provides(self, capability: "Capability") -> bool:
        """Override to switch off an interface the loaded configuration lacks."""
        return True

    async def initialize(self) -> None:
        """
        Load the backend. Idempotent once READY.

        Concurrent callers wait on the same load. Any failure is raised as
        InitializationError and leaves the adapter UNINITIALIZED, so a later
        call may retry.

        Raises:
            InitializationError: If loading fails or the adapter was disposed.
        """
        if self._state is AdapterState.READY:
            return
        async with self._lifecycle_lock:
            if self._state is AdapterState.READY:
                return
            if self._state is AdapterState.DISPOSED:
                raise InitializationError(self.model_id, "adapter has been disposed")
            logger.info(f"Initializing model '{self.model_id}' ({self.descriptor.framework})")
            try:
                await self._load()
            except InitializationError:
                raise
            except Exception as exc:
                raise InitializationError(self.model_id, cause=exc) from exc
            self._state = AdapterState.READY
            logger.debug(f"Model '{self.model_id}' ready")

    async def dispose(self) -> None:
        """Release backend resources. Idempotent; DISPOSED is terminal."""
        if self._state is AdapterState.DISPOSED:
            return
        async with self._lifecycle_lock:
            if self._state is AdapterState.DISPOSED:
                return
            was_ready = self._state is AdapterState.READY
            self._state = AdapterState.DISPOSED
            if was_ready:
                logger.info(f"Disposing model '{self.model_id}'")
                await self._release()

    async def _load(self) -> None:
        """Acquire backend resources."""

    async def _release(self) -> None:
        """Release backend resources."""

    def _ensure_ready(self) -> None:
        if self._state is not AdapterState.READY:
            raise NotReadyError(self.model_id, self._state.value)

    async def _invoke(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        self._ensure_ready()
        try:
            return await call()
        except EdgeInferenceError:
            raise
        except Exception as exc:
            raise InferenceError(self.model_id, operation, cause=exc) from exc

    async def _invoke_stream(
        self, operation: str, factory: Callable[[], AsyncIterator[str]]
    ) -> AsyncIterator[str]:
        self._ensure_ready()
        stream = factory()
        try:
            async for chunk in stream:
                yield chunk
        except EdgeInferenceError:
            raise
        except Exception as exc:
            raise InferenceError(self.model_id, operation, cause=exc) from exc
        finally:
            # Release the backend stream now, not when it is garbage collected
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(model_id={self.model_id!r}, "
            f"origin={self.origin.value}, state={self._state.value})"
        )


class ImageClassifier(ModelAdapter):
    async def classify(self, image: ImageInput, threshold: float = 0.0) -> ClassificationResult:
        """Classify an image. Labels below threshold are dropped, the rest ranked."""
        result = await self._invoke("classify", lambda: self._classify(image, threshold))
        return ClassificationResult.ranked(
            list(result.labels),
            threshold=threshold,
            model_id=result.model_id or self.model_id,
            inference_time_ms=result.inference_time_ms,
        )

    @abstractmethod
    async def _classify(self, image: ImageInput, threshold: float) -> ClassificationResult:
        ...


class ObjectDetector(ModelAdapter):
    async def detect(self, image: ImageInput, threshold: float = 0.5) -> List[DetectedObject]:
        detected = await self._invoke("detect", lambda: self._detect(image, threshold))
        return [obj for obj in detected if obj.score >= threshold]

    @abstractmethod
    async def _detect(self, image: ImageInput, threshold: float) -> List[DetectedObject]:
        ...


class TextRecognizer(ModelAdapter):
    async def recognize(self, image: ImageInput) -> OcrResult:
        return await self._invoke("recognize", lambda: self._recognize(image))

    @abstractmethod
    async def _recognize(self, image: ImageInput) -> OcrResult:
        ...


class TextClassifier(ModelAdapter):
    async def classify_text(self, text: str, threshold: float = 0.0) -> ClassificationResult:
        """Label a text. Labels below threshold are dropped, the rest ranked."""
        result = await self._invoke("classify_text", lambda: self._classify_text(text, threshold))
        return ClassificationResult.ranked(
            list(result.labels),
            threshold=threshold,
            model_id=result.model_id or self.model_id,
            inference_time_ms=result.inference_time_ms,
        )

    @abstractmethod
    async def _classify_text(self, text: str, threshold: float) -> ClassificationResult:
        ...


class TextEmbedder(ModelAdapter):
    """Produces EmbeddingVectors; vectors from one adapter share a dimension."""

    async def embed(self, text: str) -> EmbeddingVector:
        values = await self._invoke("embed", lambda: self._embed(text))
        return self._as_vector(values)

    async def embed_batch(self, texts: Sequence[str]) -> List[EmbeddingVector]:
        texts = list(texts)
        if not texts:
            return []
        batch = await self._invoke("embed_batch", lambda: self._embed_batch(texts))
        return [self._as_vector(values) for values in batch]

    @abstractmethod
    async def _embed(self, text: str) -> Union[EmbeddingVector, Sequence[float]]:
        ...

    async def _embed_batch(
        self, texts: List[str]
    ) -> List[Union[EmbeddingVector, Sequence[float]]]:
        return [await self._embed(text) for text in texts]

    def _as_vector(self, values: Union[EmbeddingVector, Sequence[float]]) -> EmbeddingVector:
        if isinstance(values, EmbeddingVector):
            return values
        return EmbeddingVector(values=tuple(values), model_id=self.model_id)


class TextGenerator(ModelAdapter):
    """Chat-style text generation, blocking or streamed."""

    async def generate(
        self, messages: Sequence[Message], params: Optional[GenerationParams] = None
    ) -> GenerationResult:
        prepared = message_dicts(messages)
        params = params or GenerationParams()
        return await self._invoke("generate", lambda: self._generate(prepared, params))

    def stream(
        self, messages: Sequence[Message], params: Optional[GenerationParams] = None
    ) -> AsyncIterator[str]:
        """Yield generated text chunks as the backend produces them."""
        prepared = message_dicts(messages)
        params = params or GenerationParams()
        return self._invoke_stream("stream", lambda: self._stream(prepared, params))

    @abstractmethod
    async def _generate(
        self, messages: List[Dict[str, str]], params: GenerationParams
    ) -> GenerationResult:
        ...

    async def _stream(
        self, messages: List[Dict[str, str]], params: GenerationParams
    ) -> AsyncIterator[str]:
        # Backends without native streaming deliver one chunk
        result = await self._generate(messages, params)
        if result.text:
            yield result.text


CAPABILITY_INTERFACES = {
    Capability.IMAGE_CLASSIFICATION: ImageClassifier,
    Capability.OBJECT_DETECTION: ObjectDetector,
    Capability.OCR: TextRecognizer,
    Capability.TEXT_CLASSIFICATION: TextClassifier,
    Capability.TEXT_EMBEDDING: TextEmbedder,
    Capability.TEXT_GENERATION: TextGenerator,
}


def supports(adapter: ModelAdapter, capability: Capability) -> bool:
    """Return True if the adapter implements the capability's interface."""
    capability = Capability(capability)
    return isinstance(adapter, CAPABILITY_INTERFACES[capability]) and adapter.provides(capability)


__all__ = [
    "AdapterState",
    "Capability",
    "CAPABILITY_INTERFACES",
    "ModelAdapter",
    "ImageClassifier",
    "ObjectDetector",
    "TextRecognizer",
    "TextClassifier",
    "TextEmbedder",
    "TextGenerator",
    "Message",
    "message_dicts",
    "run_blocking",
    "iterate_blocking",
    "supports",
]
