"""
On-device text generation and embeddings using llama-cpp-python.

LocalLlmAdapter runs GGUF models through llama.cpp. It implements the text
generation capability (blocking and streamed chat completion) and, when
loaded with embedding=True, the text embedding capability.

Features:
- OpenAI-compatible chat completion (generate, stream)
- Text embeddings (embed)
- Auto-detection of model configuration from the filename (Phi, Gemma, Qwen)
- Model path resolution from environment, explicit option and cache dir

Example:
    >>> from edge_inference.adapters.local_llm import LocalLlmAdapter
    >>> adapter = LocalLlmAdapter(model_path="./models/phi4-mini.gguf")
    >>> await adapter.initialize()
    >>> result = await adapter.generate([
    ...     {"role": "user", "content": "What is 2+2?"}
    ... ])
    >>> print(result.text)

Requirements:
    pip install 'edge_inference[llm-local]'
"""

import logging
import multiprocessing
import os
import re
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from ..exceptions import InitializationError
from ..model_cache import DEFAULT_CACHE_DIR
from ..models import GenerationResult, ModelDescriptor, ModelOrigin
from ..settings import GenerationParams
from .base import Capability, TextEmbedder, TextGenerator, iterate_blocking, run_blocking

logger = logging.getLogger(__name__)

# Try to import llama-cpp-python (optional dependency)
try:
    from llama_cpp import Llama

    LLAMA_CPP_AVAILABLE = True
except ImportError:
    LLAMA_CPP_AVAILABLE = False
    Llama = None  # type: ignore


ENV_MODEL_PATH = "EDGE_INFERENCE_MODEL_PATH"

# Default model filenames in order of preference
DEFAULT_MODELS = [
    "gemma-3-1b-it-Q8_0.gguf",  # Gemma 3 1B (ultra-lightweight, 8K ctx)
    "microsoft_Phi-4-mini-instruct-Q3_K_S.gguf",  # Phi-4-mini (128K ctx)
    "gemma-3n-E4B-it-Q4_K_M.gguf",  # Gemma 3n (larger, higher quality)
]

# Parameters accepted by create_chat_completion besides the sampling ones
CHAT_COMPLETION_OPTIONS = {
    "top_p",
    "top_k",
    "repeat_penalty",
    "presence_penalty",
    "frequency_penalty",
    "seed",
}

_QUANTIZATION_PATTERN = re.compile(r"(?:^|[-_.])((?:I?Q\d+(?:_[A-Z0-9]+)*)|F16|F32|BF16)(?=\.gguf$|[-_.])", re.I)


def get_model_info(model_path: str) -> Dict[str, Any]:
    """
    Get model-specific configuration based on filename.

    Auto-detects model family and returns optimal configuration
    for context size and chat format.

    Args:
        model_path: Path to the GGUF model file.

    Returns:
        Dictionary with keys:
        - n_ctx: Recommended context window size
        - chat_format: Chat template format (e.g., "chatml", "gemma")
        - family: Model family name ("phi", "gemma", "qwen", "unknown")
        - quantization: Quantization tag parsed from the filename, or None

    Example:
        >>> info = get_model_info("./models/Phi-4-mini-instruct-Q3_K_S.gguf")
        >>> info["n_ctx"], info["chat_format"], info["quantization"]
        (128000, 'chatml', 'Q3_K_S')
    """
    name = Path(model_path).name
    filename = name.lower()

    match = _QUANTIZATION_PATTERN.search(name)
    quantization = match.group(1).upper() if match else None

    if "phi" in filename:
        info = {"n_ctx": 128000, "chat_format": "chatml", "family": "phi"}
    elif "gemma-3-1b" in filename:
        info = {"n_ctx": 8192, "chat_format": "gemma", "family": "gemma"}
    elif "gemma" in filename:
        info = {"n_ctx": 32768, "chat_format": "gemma", "family": "gemma"}
    elif "qwen" in filename:
        info = {"n_ctx": 32768, "chat_format": "chatml", "family": "qwen"}
    else:
        info = {"n_ctx": 4096, "chat_format": None, "family": "unknown"}

    info["quantization"] = quantization
    return info


def resolve_model_path(model_path: Optional[str] = None) -> Optional[str]:
    """
    Resolve model path using priority order.

    Search order:
    1. EDGE_INFERENCE_MODEL_PATH environment variable (explicit override)
    2. The model_path argument (from adapter options)
    3. Default cache location (~/.cache/edge_inference/models/)

    Returns:
        Path to found model file, or None if no model found.
    """
    if env_path := os.environ.get(ENV_MODEL_PATH):
        if os.path.exists(env_path):
            logger.info(f"Using model from {ENV_MODEL_PATH}: {env_path}")
            return env_path
        logger.warning(f"{ENV_MODEL_PATH} set but file not found: {env_path}")

    if model_path:
        expanded = os.path.expandvars(os.path.expanduser(model_path))
        if os.path.exists(expanded):
            logger.info(f"Using model from settings: {expanded}")
            return expanded
        logger.warning(f"Configured model_path not found: {expanded}")

    for model_file in DEFAULT_MODELS:
        candidate = DEFAULT_CACHE_DIR / model_file
        if candidate.exists():
            logger.info(f"Using cached model: {candidate}")
            return str(candidate)

    logger.warning(f"No local model found. Set {ENV_MODEL_PATH} or download a model.")
    return None


class LocalLlmAdapter(TextGenerator, TextEmbedder):
    """
    On-device adapter backed by llama-cpp-python.

    The GGUF file is only located and loaded in initialize(); construction
    never touches the filesystem, so adapters can be registered before the
    model is downloaded.

    Args:
        model_path: GGUF file. Resolved with resolve_model_path().
        descriptor: Optional descriptor; derived from the file when omitted.
        n_ctx: Context window size (auto-detected if not specified).
        n_threads: CPU threads to use (default: all available).
        n_gpu_layers: GPU layers for acceleration (-1 = all, 0 = CPU only).
        chat_format: Chat template format (auto-detected if not specified).
        embedding: Enable embedding mode for embed().
        priority: Preference among on-device adapters.

    Raises:
        InitializationError (from initialize): llama-cpp-python missing, no
            model file found, or llama.cpp failed to load the file.
    """

    def __init__(
        self,
        model_path: Optional[str] = None,
        descriptor: Optional[ModelDescriptor] = None,
        n_ctx: Optional[int] = None,
        n_threads: Optional[int] = None,
        n_gpu_layers: int = -1,
        chat_format: Optional[str] = None,
        embedding: bool = False,
        priority: int = 0,
        **options: Any,
    ):
        if descriptor is None:
            stem = Path(model_path).stem if model_path else "local-llm"
            quantization = get_model_info(model_path)["quantization"] if model_path else None
            descriptor = ModelDescriptor(
                model_id=stem,
                name=stem,
                framework="llama.cpp",
                quantized=quantization is not None,
                quantization_type=quantization,
                origin=ModelOrigin.ON_DEVICE,
                priority=priority,
            )
        super().__init__(descriptor)
        self._requested_path = model_path
        self._n_ctx = n_ctx
        self._n_threads = n_threads
        self._n_gpu_layers = n_gpu_layers
        self._chat_format = chat_format
        self._embedding_mode = embedding
        unknown = set(options) - CHAT_COMPLETION_OPTIONS
        if unknown:
            logger.warning(f"Ignoring unsupported llama.cpp options: {sorted(unknown)}")
        self._options = {k: v for k, v in options.items() if k in CHAT_COMPLETION_OPTIONS}
        self._llm = None
        self._model_info: Dict[str, Any] = {}
        self.model_path: Optional[Path] = None

    def provides(self, capability: Capability) -> bool:
        if capability is Capability.TEXT_EMBEDDING:
            return self._embedding_mode
        return True

    @property
    def model_info(self) -> Dict[str, Any]:
        """Get auto-detected model information."""
        return self._model_info.copy()

    async def _load(self) -> None:
        if not LLAMA_CPP_AVAILABLE:
            raise InitializationError(
                self.model_id,
                "llama-cpp-python not installed. "
                "Install with: pip install edge_inference[llm-local]",
            )

        resolved = resolve_model_path(self._requested_path)
        if resolved is None:
            raise InitializationError(self.model_id, "no GGUF model file found")

        self.model_path = Path(resolved)
        model_info = get_model_info(resolved)

        n_ctx = self._n_ctx or model_info["n_ctx"]
        chat_format = self._chat_format or model_info["chat_format"]
        n_threads = self._n_threads or multiprocessing.cpu_count()
        if chat_format and not self._chat_format:
            logger.info(f"Auto-detected {model_info['family']} model, chat format: {chat_format}")

        logger.info(
            f"Loading model: {resolved} "
            f"(n_ctx={n_ctx}, n_threads={n_threads}, n_gpu_layers={self._n_gpu_layers})"
        )
        self._llm = await run_blocking(
            Llama,
            model_path=resolved,
            n_ctx=n_ctx,
            n_threads=n_threads,
            n_gpu_layers=self._n_gpu_layers,
            chat_format=chat_format,
            embedding=self._embedding_mode,
            verbose=False,
        )
        self._model_info = model_info

    async def _release(self) -> None:
        # llama-cpp-python frees the model when the last reference goes
        self._llm = None

    def _completion_kwargs(self, params: GenerationParams) -> Dict[str, Any]:
        kwargs = {
            "max_tokens": params.max_tokens,
            "temperature": params.temperature,
            "stop": params.stop,
        }
        kwargs.update(self._options)
        return kwargs

    async def _generate(
        self, messages: List[Dict[str, str]], params: GenerationParams
    ) -> GenerationResult:
        output = await run_blocking(
            self._llm.create_chat_completion,
            messages=messages,
            **self._completion_kwargs(params),
        )
        return GenerationResult(
            text=output["choices"][0]["message"]["content"] or "",
            model=self.model_id,
            tokens_used=output.get("usage", {}).get("total_tokens"),
            finish_reason=output["choices"][0].get("finish_reason"),
        )

    async def _stream(
        self, messages: List[Dict[str, str]], params: GenerationParams
    ) -> AsyncIterator[str]:
        kwargs = self._completion_kwargs(params)
        llm = self._llm

        def start():
            return llm.create_chat_completion(messages=messages, stream=True, **kwargs)

        outputs = iterate_blocking(start)
        try:
            async for output in outputs:
                delta = output["choices"][0].get("delta", {})
                if chunk := delta.get("content", ""):
                    yield chunk
        finally:
            await outputs.aclose()

    async def _embed(self, text: str) -> List[float]:
        if not self._embedding_mode:
            raise RuntimeError(
                "Model not loaded with embedding=True. "
                "Create the adapter with: LocalLlmAdapter(path, embedding=True)"
            )
        embedding = await run_blocking(self._llm.embed, text)
        return list(embedding)


__all__ = [
    "LocalLlmAdapter",
    "LLAMA_CPP_AVAILABLE",
    "DEFAULT_MODELS",
    "DEFAULT_CACHE_DIR",
    "ENV_MODEL_PATH",
    "get_model_info",
    "resolve_model_path",
]
