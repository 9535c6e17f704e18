"""
Data model shared across edge_inference.

Contains the model descriptor attached to every adapter, the execution
origin and inference policy enums used by the router, and the typed results
returned by the capability operations (classification, detection, OCR,
generation).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union
from pathlib import Path


# Image inputs are passed through to the backend untouched
ImageInput = Union[str, Path, bytes]


class ModelOrigin(str, Enum):
    """Where an adapter executes."""

    ON_DEVICE = "on_device"
    CLOUD = "cloud"

    @property
    def other(self) -> "ModelOrigin":
        return ModelOrigin.CLOUD if self is ModelOrigin.ON_DEVICE else ModelOrigin.ON_DEVICE


class InferencePolicy(str, Enum):
    """
    Caller preference between on-device and cloud execution.

    The *_ONLY policies have a single candidate and never fall back; the
    PREFER_* policies try the primary origin first and the other one at most
    once.
    """

    ON_DEVICE_ONLY = "on_device_only"
    CLOUD_ONLY = "cloud_only"
    PREFER_ON_DEVICE = "prefer_on_device"
    PREFER_CLOUD = "prefer_cloud"

    @property
    def primary(self) -> ModelOrigin:
        if self in (InferencePolicy.ON_DEVICE_ONLY, InferencePolicy.PREFER_ON_DEVICE):
            return ModelOrigin.ON_DEVICE
        return ModelOrigin.CLOUD

    @property
    def fallback(self) -> Optional[ModelOrigin]:
        if self in (InferencePolicy.PREFER_ON_DEVICE, InferencePolicy.PREFER_CLOUD):
            return self.primary.other
        return None

    @classmethod
    def parse(cls, value: Union[str, "InferencePolicy"]) -> "InferencePolicy":
        """Accept enum members or strings such as 'prefer-cloud' / 'PREFER_CLOUD'."""
        if isinstance(value, InferencePolicy):
            return value
        normalized = str(value).strip().lower().replace("-", "_")
        try:
            return cls(normalized)
        except ValueError:
            valid = [p.value for p in cls]
            raise ValueError(f"Invalid inference policy '{value}'. Valid options: {valid}")


@dataclass(frozen=True)
class ModelDescriptor:
    """
    Describes the model behind an adapter.

    Attributes:
        model_id: Unique model identifier.
        name: Human-readable model name.
        size_bytes: Approximate model size in bytes (0 for remote models).
        framework: Runtime or provider (e.g. "llama.cpp", "openai", "model2vec").
        quantized: Whether the weights are quantized.
        origin: Where the model executes.
        priority: Higher wins when several adapters of one origin implement a
            capability.
        quantization_type: e.g. "Q4_K_M", "int8".
        version: Optional model version string.
    """

    model_id: str
    name: str
    size_bytes: int = 0
    framework: str = "unknown"
    quantized: bool = False
    origin: ModelOrigin = ModelOrigin.ON_DEVICE
    priority: int = 0
    quantization_type: Optional[str] = None
    version: Optional[str] = None

    @property
    def size_formatted(self) -> str:
        size = self.size_bytes
        if size < 1024:
            return f"{size} B"
        if size < 1024 * 1024:
            return f"{size / 1024:.2f} KB"
        if size < 1024 * 1024 * 1024:
            return f"{size / (1024 * 1024):.2f} MB"
        return f"{size / (1024 * 1024 * 1024):.2f} GB"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_id": self.model_id,
            "name": self.name,
            "size_bytes": self.size_bytes,
            "framework": self.framework,
            "quantized": self.quantized,
            "origin": self.origin.value,
            "priority": self.priority,
            "quantization_type": self.quantization_type,
            "version": self.version,
        }


@dataclass(frozen=True)
class LabelScore:
    label: str
    score: float
    index: Optional[int] = None


@dataclass(frozen=True)
class ClassificationResult:
    """Labels ranked by descending score."""

    labels: Tuple[LabelScore, ...]
    model_id: Optional[str] = None
    inference_time_ms: Optional[int] = None

    @property
    def top(self) -> Optional[LabelScore]:
        return self.labels[0] if self.labels else None

    @classmethod
    def ranked(
        cls,
        labels: List[LabelScore],
        threshold: float = 0.0,
        model_id: Optional[str] = None,
        inference_time_ms: Optional[int] = None,
    ) -> "ClassificationResult":
        """Build a result keeping labels >= threshold, highest score first."""
        kept = sorted(
            (label for label in labels if label.score >= threshold),
            key=lambda label: label.score,
            reverse=True,
        )
        return cls(labels=tuple(kept), model_id=model_id, inference_time_ms=inference_time_ms)


@dataclass(frozen=True)
class BoundingBox:
    left: float
    top: float
    right: float
    bottom: float

    @property
    def width(self) -> float:
        return self.right - self.left

    @property
    def height(self) -> float:
        return self.bottom - self.top


@dataclass(frozen=True)
class DetectedObject:
    label: str
    score: float
    bounding_box: BoundingBox
    tracking_id: Optional[int] = None
    attributes: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class OcrBlock:
    text: str
    confidence: float
    bounding_box: Optional[BoundingBox] = None
    language: Optional[str] = None


@dataclass(frozen=True)
class OcrResult:
    text: str
    blocks: Tuple[OcrBlock, ...] = ()
    model_id: Optional[str] = None
    inference_time_ms: Optional[int] = None

    def above_threshold(self, threshold: float) -> List[OcrBlock]:
        return [block for block in self.blocks if block.confidence >= threshold]


@dataclass
class GenerationResult:
    """
    Result from text generation.

    Attributes:
        text: The generated text content.
        model: The model identifier used.
        tokens_used: Optional total token count for the call.
        finish_reason: Optional reason for generation stop (e.g., "stop", "length").
    """

    text: str
    model: str
    tokens_used: Optional[int] = None
    finish_reason: Optional[str] = None


__all__ = [
    "ImageInput",
    "ModelOrigin",
    "InferencePolicy",
    "ModelDescriptor",
    "LabelScore",
    "ClassificationResult",
    "BoundingBox",
    "DetectedObject",
    "OcrBlock",
    "OcrResult",
    "GenerationResult",
]
