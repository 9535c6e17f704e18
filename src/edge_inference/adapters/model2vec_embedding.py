"""
On-device static embeddings using model2vec.

Uses minishlab/potion-multilingual-128M by default. The model (~500MB) is
downloaded from HuggingFace on first initialize() and cached in
~/.cache/huggingface/.

Requires: pip install 'edge_inference[model2vec]'
"""

import logging
from typing import List, Optional

from ..exceptions import InitializationError
from ..models import ModelDescriptor, ModelOrigin
from .base import TextEmbedder, run_blocking

logger = logging.getLogger(__name__)


class Model2VecEmbeddingAdapter(TextEmbedder):
    """
    Text embedding adapter backed by a model2vec StaticModel.

    Args:
        model: HuggingFace model name or local path.
        descriptor: Optional descriptor; derived from model when omitted.
        priority: Preference among on-device embedding adapters.
    """

    MODEL_NAME = "minishlab/potion-multilingual-128M"
    DIMENSIONS = 128

    def __init__(
        self,
        model: Optional[str] = None,
        descriptor: Optional[ModelDescriptor] = None,
        priority: int = 0,
    ):
        self._model_name = model or self.MODEL_NAME
        if descriptor is None:
            descriptor = ModelDescriptor(
                model_id=self._model_name,
                name=self._model_name.rsplit("/", 1)[-1],
                framework="model2vec",
                origin=ModelOrigin.ON_DEVICE,
                priority=priority,
            )
        super().__init__(descriptor)
        self._model = None

    async def _load(self) -> None:
        try:
            from model2vec import StaticModel
        except ImportError as exc:
            raise InitializationError(
                self.model_id,
                "model2vec not installed. Install with: pip install model2vec",
                cause=exc,
            ) from exc
        logger.info(f"Loading model2vec model {self._model_name}")
        self._model = await run_blocking(StaticModel.from_pretrained, self._model_name)

    async def _release(self) -> None:
        self._model = None

    async def _embed(self, text: str) -> List[float]:
        return (await self._embed_batch([text]))[0]

    async def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        embeddings = await run_blocking(self._model.encode, texts)
        # StaticModel.encode returns a numpy array
        if hasattr(embeddings, "tolist"):
            return embeddings.tolist()
        return [list(row) for row in embeddings]


__all__ = ["Model2VecEmbeddingAdapter"]
