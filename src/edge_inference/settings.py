"""
Settings schema for edge_inference.

Provides Pydantic models for generation parameters, retrieval, chat sessions,
adapters, vector stores and the model cache, plus load_settings() to read
them from YAML.

Precedence (highest first):
    1. Explicit overrides passed to load_settings()
    2. Environment: EDGE_INFERENCE_POLICY, EDGE_INFERENCE_LOG_LEVEL
    3. YAML file
    4. Model defaults

Example YAML:
    policy: prefer_on_device
    log_level: INFO
    adapters:
      - id: phi
        backend: local_llm
        options:
          model_path: ~/.cache/edge_inference/models/phi.gguf
      - id: gpt
        backend: openai
        origin: cloud
        api_key_env: OPENAI_API_KEY
        options:
          model: gpt-4o-mini
    vector_stores:
      - id: docs
        path: ./docs.sqlite
    chat:
      system_prompt: "You are a helpful assistant."
      retrieval:
        store_id: docs
        top_k: 3
        min_similarity: 0.2
    models:
      manifest: ./models.yaml

String values may reference environment variables as ${VAR} or
${VAR:-default}.
"""

import logging
import os
import re
from typing import Any, Dict, List, Optional

import fsspec
import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .models import InferencePolicy, ModelOrigin

logger = logging.getLogger(__name__)

ENV_POLICY = "EDGE_INFERENCE_POLICY"
ENV_LOG_LEVEL = "EDGE_INFERENCE_LOG_LEVEL"

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."


class GenerationParams(BaseModel):
    """
    Sampling parameters for text generation.

    Example:
        >>> GenerationParams(temperature=0.2).max_tokens
        256
    """

    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=256, ge=1)
    stop: Optional[List[str]] = Field(default=None, description="Stop sequences")

    @field_validator("stop", mode="before")
    @classmethod
    def validate_stop(cls, v):
        """Accept a single stop sequence as a string."""
        if isinstance(v, str):
            return [v]
        return v


class RetrievalConfig(BaseModel):
    """
    Retrieval settings for a chat session or query.

    Attributes:
        store_id: Vector store to query.
        top_k: Maximum documents injected as context.
        min_similarity: Documents scoring below this are excluded. None keeps all.
        metadata_filter: Exact-match conjunction on document metadata.
        max_chunk_size: Chunk size in characters used when ingesting.
        chunk_overlap: Characters shared by consecutive chunks.
    """

    store_id: str
    top_k: int = Field(default=3, ge=1)
    min_similarity: Optional[float] = Field(default=None, ge=-1.0, le=1.0)
    metadata_filter: Optional[Dict[str, Any]] = None
    max_chunk_size: int = Field(default=500, ge=1)
    chunk_overlap: int = Field(default=50, ge=0)

    @model_validator(mode="after")
    def validate_chunking(self):
        if self.chunk_overlap >= self.max_chunk_size:
            raise ValueError(
                f"chunk_overlap ({self.chunk_overlap}) must be smaller than "
                f"max_chunk_size ({self.max_chunk_size})"
            )
        return self


class ChatSessionConfig(BaseModel):
    """
    Configuration captured by a chat session at creation.

    Attributes:
        system_prompt: The single system prompt of the session.
        retrieval: Optional retrieval settings; None disables RAG.
        generation: Sampling parameters for every turn.
        max_history_messages: Most recent history messages sent to the model.
            None sends the full history.
    """

    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    retrieval: Optional[RetrievalConfig] = None
    generation: GenerationParams = Field(default_factory=GenerationParams)
    max_history_messages: Optional[int] = Field(default=None, ge=1)


class AdapterSettings(BaseModel):
    """
    Declarative adapter registration.

    Attributes:
        id: Logical identifier in the registry.
        backend: local_llm | openai | model2vec | "package.module:ClassName".
        model_id: Model identifier; defaults to the logical id.
        name: Human readable name; defaults to model_id.
        origin: on_device | cloud. Defaults from the backend.
        priority: Preference among adapters of the same origin.
        api_key_env: Environment variable holding the credential, if any.
        eager: Initialize at registration instead of on first use.
        options: Backend specific keyword arguments.
    """

    id: str
    backend: str
    model_id: Optional[str] = None
    name: Optional[str] = None
    origin: Optional[ModelOrigin] = None
    priority: int = 0
    api_key_env: Optional[str] = None
    eager: bool = False
    options: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("origin", mode="before")
    @classmethod
    def validate_origin(cls, v):
        """Accept 'on-device' / 'ON_DEVICE' spellings."""
        if isinstance(v, str):
            normalized = v.strip().lower().replace("-", "_")
            try:
                return ModelOrigin(normalized)
            except ValueError:
                valid = [o.value for o in ModelOrigin]
                raise ValueError(f"Invalid origin '{v}'. Valid options: {valid}")
        return v


class BindingSettings(BaseModel):
    """Pins a capability/origin pair to one logical id."""

    capability: str
    origin: ModelOrigin
    adapter: str


class VectorStoreSettings(BaseModel):
    """
    Declarative vector store.

    Attributes:
        id: Store identifier.
        path: SQLite file, ":memory:" for an in-memory SQLite database, or
            None for the plain in-memory record store.
        embedder: Logical id of the embedding adapter. None routes embedding
            through the policy router.
    """

    id: str
    path: Optional[str] = None
    embedder: Optional[str] = None


class ModelCacheSettings(BaseModel):
    """
    On-device model cache.

    Attributes:
        cache_dir: Directory downloaded models are stored in. None uses
            ~/.cache/edge_inference/models.
        manifest: JSON/YAML manifest of downloadable models (path or fsspec
            URI).
    """

    cache_dir: Optional[str] = None
    manifest: Optional[str] = None


class InferenceSettings(BaseModel):
    """Top-level settings consumed by InferenceManager.from_settings()."""

    policy: InferencePolicy = InferencePolicy.PREFER_ON_DEVICE
    log_level: Optional[str] = None
    adapters: List[AdapterSettings] = Field(default_factory=list)
    bindings: List[BindingSettings] = Field(default_factory=list)
    vector_stores: List[VectorStoreSettings] = Field(default_factory=list)
    chat: ChatSessionConfig = Field(default_factory=ChatSessionConfig)
    models: ModelCacheSettings = Field(default_factory=ModelCacheSettings)

    @field_validator("policy", mode="before")
    @classmethod
    def validate_policy(cls, v):
        if isinstance(v, str):
            return InferencePolicy.parse(v)
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v):
        if v is None:
            return None
        level = str(v).upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level '{v}'")
        return level

    @model_validator(mode="after")
    def validate_unique_ids(self):
        for kind, items in (("adapter", self.adapters), ("vector store", self.vector_stores)):
            seen = set()
            for item in items:
                if item.id in seen:
                    raise ValueError(f"Duplicate {kind} id '{item.id}'")
                seen.add(item.id)
        return self

    def apply_logging(self) -> None:
        """Set the edge_inference logger level when log_level is configured."""
        if self.log_level:
            logging.getLogger("edge_inference").setLevel(self.log_level)


def expand_env_vars(value: Any) -> Any:
    """
    Expand environment variables in a value.

    Supports ${VAR:-default} syntax. Unset variables without a default
    expand to the empty string.
    """
    if isinstance(value, str):
        pattern = r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}"

        def replacer(match):
            var_name = match.group(1)
            default = match.group(2) if match.group(2) is not None else ""
            return os.environ.get(var_name, default)

        return re.sub(pattern, replacer, value)
    elif isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    return value


def load_settings(
    path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> InferenceSettings:
    """
    Load settings from YAML, environment and explicit overrides.

    Args:
        path: YAML file (local path or any fsspec URI). None uses defaults.
        overrides: Top-level keys that win over everything else.

    Returns:
        Validated InferenceSettings.

    Raises:
        FileNotFoundError: If path does not exist.
        pydantic.ValidationError: If the merged configuration is invalid.

    Example:
        >>> settings = load_settings("edge.yaml", overrides={"policy": "cloud_only"})
        >>> settings.policy
        <InferencePolicy.CLOUD_ONLY: 'cloud_only'>
    """
    data: Dict[str, Any] = {}
    if path is not None:
        with fsspec.open(path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Settings file '{path}' must contain a mapping")
        # Accept either a bare document or one nested under 'edge_inference'
        data = loaded.get("edge_inference", loaded)
        data = expand_env_vars(data)
        logger.debug(f"Loaded settings from {path}")

    if env_policy := os.environ.get(ENV_POLICY):
        data["policy"] = env_policy
    if env_level := os.environ.get(ENV_LOG_LEVEL):
        data["log_level"] = env_level

    if overrides:
        data.update({k: v for k, v in overrides.items() if v is not None})

    return InferenceSettings(**data)


__all__ = [
    "DEFAULT_SYSTEM_PROMPT",
    "GenerationParams",
    "RetrievalConfig",
    "ChatSessionConfig",
    "AdapterSettings",
    "BindingSettings",
    "VectorStoreSettings",
    "ModelCacheSettings",
    "InferenceSettings",
    "expand_env_vars",
    "load_settings",
]
