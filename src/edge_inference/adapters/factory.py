"""
Adapter factory.

Maps AdapterSettings to adapter instances:

    backend: local_llm   -> LocalLlmAdapter       (on-device)
    backend: openai      -> OpenAIAdapter         (cloud)
    backend: model2vec   -> Model2VecEmbeddingAdapter (on-device)
    backend: pkg.mod:Cls -> any ModelAdapter factory importable from a module

Custom factories are called as ``factory(descriptor=descriptor, **options)``
and must return a ModelAdapter.

Construction never loads a model; backends load in initialize().
"""

import importlib
import logging
import os
from typing import Any, Callable, Dict, Optional

from ..models import ModelDescriptor, ModelOrigin
from ..settings import AdapterSettings
from .base import ModelAdapter
from .local_llm import LocalLlmAdapter, get_model_info
from .model2vec_embedding import Model2VecEmbeddingAdapter
from .openai_chat import OpenAIAdapter

logger = logging.getLogger(__name__)

BUILTIN_BACKENDS = ("local_llm", "openai", "model2vec")

_DEFAULT_ORIGINS = {
    "local_llm": ModelOrigin.ON_DEVICE,
    "model2vec": ModelOrigin.ON_DEVICE,
    "openai": ModelOrigin.CLOUD,
}

_FRAMEWORKS = {
    "local_llm": "llama.cpp",
    "model2vec": "model2vec",
    "openai": "openai",
}


def load_factory(import_path: str) -> Callable[..., Any]:
    """
    Import ``package.module:attribute``.

    Raises:
        ValueError: If the path is malformed or cannot be imported.
    """
    module_path, sep, attribute = import_path.partition(":")
    if not sep or not module_path or not attribute:
        raise ValueError(
            f"Invalid adapter backend '{import_path}'. Use one of {list(BUILTIN_BACKENDS)} "
            "or 'package.module:ClassName'"
        )
    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        raise ValueError(f"Cannot import module '{module_path}': {e}") from e
    try:
        return getattr(module, attribute)
    except AttributeError as e:
        raise ValueError(f"Module '{module_path}' has no attribute '{attribute}'") from e


def build_descriptor(settings: AdapterSettings, **extra: Any) -> ModelDescriptor:
    """Descriptor from settings, with backend-derived defaults."""
    model_id = settings.model_id or settings.id
    origin = settings.origin or _DEFAULT_ORIGINS.get(settings.backend, ModelOrigin.ON_DEVICE)
    fields: Dict[str, Any] = {
        "model_id": model_id,
        "name": settings.name or model_id,
        "framework": _FRAMEWORKS.get(settings.backend, settings.backend.split(":")[0]),
        "origin": origin,
        "priority": settings.priority,
    }
    fields.update(extra)
    return ModelDescriptor(**fields)


def resolve_api_key(settings: AdapterSettings) -> Optional[str]:
    if not settings.api_key_env:
        return None
    value = os.environ.get(settings.api_key_env)
    if not value:
        logger.warning(
            f"Adapter '{settings.id}': environment variable {settings.api_key_env} is not set"
        )
    return value or None


def create_adapter(settings: AdapterSettings) -> ModelAdapter:
    """
    Create an adapter from settings.

    Args:
        settings: Declarative adapter configuration.

    Returns:
        An UNINITIALIZED adapter.

    Raises:
        ValueError: Unknown backend or invalid import path.
        TypeError: A custom factory returned something other than a ModelAdapter.

    Example:
        >>> adapter = create_adapter(AdapterSettings(
        ...     id="gpt", backend="openai", options={"model": "gpt-4o-mini"}
        ... ))
        >>> adapter.origin
        <ModelOrigin.CLOUD: 'cloud'>
    """
    options = dict(settings.options)
    backend = settings.backend

    if backend == "local_llm":
        extra: Dict[str, Any] = {}
        if model_path := options.get("model_path"):
            quantization = get_model_info(model_path)["quantization"]
            extra = {"quantized": quantization is not None, "quantization_type": quantization}
        adapter: Any = LocalLlmAdapter(descriptor=build_descriptor(settings, **extra), **options)
    elif backend == "openai":
        api_key = resolve_api_key(settings)
        if api_key is not None:
            options["api_key"] = api_key
        adapter = OpenAIAdapter(descriptor=build_descriptor(settings), **options)
    elif backend == "model2vec":
        adapter = Model2VecEmbeddingAdapter(descriptor=build_descriptor(settings), **options)
    else:
        factory = load_factory(backend)
        adapter = factory(descriptor=build_descriptor(settings), **options)
        if not isinstance(adapter, ModelAdapter):
            raise TypeError(
                f"Adapter factory '{backend}' returned {type(adapter).__name__}, "
                "expected a ModelAdapter"
            )

    logger.debug(f"Created adapter '{settings.id}' ({backend}, {adapter.origin.value})")
    return adapter


__all__ = [
    "BUILTIN_BACKENDS",
    "build_descriptor",
    "create_adapter",
    "load_factory",
    "resolve_api_key",
]
