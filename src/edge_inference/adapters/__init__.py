"""
Capability adapters.

Base contract and capability interfaces live in base; concrete backends in
local_llm (llama.cpp), openai_chat (OpenAI-compatible APIs) and
model2vec_embedding. create_adapter() builds any of them from settings.
"""

from .base import (
    CAPABILITY_INTERFACES,
    AdapterState,
    Capability,
    ImageClassifier,
    ModelAdapter,
    ObjectDetector,
    TextClassifier,
    TextEmbedder,
    TextGenerator,
    TextRecognizer,
    supports,
)
from .factory import create_adapter
from .local_llm import LLAMA_CPP_AVAILABLE, LocalLlmAdapter
from .model2vec_embedding import Model2VecEmbeddingAdapter
from .openai_chat import OpenAIAdapter

__all__ = [
    "CAPABILITY_INTERFACES",
    "AdapterState",
    "Capability",
    "ImageClassifier",
    "ModelAdapter",
    "ObjectDetector",
    "TextClassifier",
    "TextEmbedder",
    "TextGenerator",
    "TextRecognizer",
    "supports",
    "create_adapter",
    "LLAMA_CPP_AVAILABLE",
    "LocalLlmAdapter",
    "Model2VecEmbeddingAdapter",
    "OpenAIAdapter",
]
