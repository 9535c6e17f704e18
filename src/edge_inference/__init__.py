"""
edge_inference: adaptive on-device/cloud inference routing with RAG.
"""

__version__ = "0.1.0"

# Core exceptions (zero dependencies)
from .exceptions import (
    EdgeInferenceError,
    NotFoundError,
    NotReadyError,
    InitializationError,
    InferenceError,
    InferenceExhaustedError,
    StoreNotInitializedError,
    EmbeddingUnavailableError,
    SessionClosedError,
    AdapterAlreadyRegisteredError,
    AdapterDisposalError,
    CapabilityMismatchError,
    DimensionMismatchError,
    ModelDownloadError,
)

from .embedding import EmbeddingVector, cosine_similarity
from .models import (
    ModelDescriptor,
    ModelOrigin,
    InferencePolicy,
    ClassificationResult,
    DetectedObject,
    OcrResult,
    GenerationResult,
)
from .settings import (
    GenerationParams,
    RetrievalConfig,
    ChatSessionConfig,
    InferenceSettings,
    load_settings,
)

# Adapters and routing
from .adapters import (
    AdapterState,
    Capability,
    ModelAdapter,
    ImageClassifier,
    TextClassifier,
    ObjectDetector,
    TextRecognizer,
    TextEmbedder,
    TextGenerator,
    LocalLlmAdapter,
    OpenAIAdapter,
    Model2VecEmbeddingAdapter,
    create_adapter,
)
from .registry import AdapterRegistry
from .router import InferenceRouter, RoutingOutcome, RoutedStream

# Retrieval and chat
from .chunking import chunk_text
from .storage import (
    VectorSimilarityStore,
    VectorDocument,
    ScoredDocument,
    MemoryRecordStore,
    SQLiteRecordStore,
)
from .chat import ChatMessage, ChatRole, ChatSession, ChatResponse, TokenStream, RagOrchestrator

from .manager import InferenceManager

__all__ = [
    "__version__",
    "EdgeInferenceError",
    "NotFoundError",
    "NotReadyError",
    "InitializationError",
    "InferenceError",
    "InferenceExhaustedError",
    "StoreNotInitializedError",
    "EmbeddingUnavailableError",
    "SessionClosedError",
    "AdapterAlreadyRegisteredError",
    "AdapterDisposalError",
    "CapabilityMismatchError",
    "DimensionMismatchError",
    "ModelDownloadError",
    "EmbeddingVector",
    "cosine_similarity",
    "ModelDescriptor",
    "ModelOrigin",
    "InferencePolicy",
    "ClassificationResult",
    "DetectedObject",
    "OcrResult",
    "GenerationResult",
    "GenerationParams",
    "RetrievalConfig",
    "ChatSessionConfig",
    "InferenceSettings",
    "load_settings",
    "AdapterState",
    "Capability",
    "ModelAdapter",
    "ImageClassifier",
    "TextClassifier",
    "ObjectDetector",
    "TextRecognizer",
    "TextEmbedder",
    "TextGenerator",
    "LocalLlmAdapter",
    "OpenAIAdapter",
    "Model2VecEmbeddingAdapter",
    "create_adapter",
    "AdapterRegistry",
    "InferenceRouter",
    "RoutingOutcome",
    "RoutedStream",
    "chunk_text",
    "VectorSimilarityStore",
    "VectorDocument",
    "ScoredDocument",
    "MemoryRecordStore",
    "SQLiteRecordStore",
    "ChatMessage",
    "ChatRole",
    "ChatSession",
    "ChatResponse",
    "TokenStream",
    "RagOrchestrator",
    "InferenceManager",
]
