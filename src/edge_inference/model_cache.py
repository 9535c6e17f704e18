"""
On-device model cache for edge_inference.

Models that run locally (GGUF files for llama.cpp, ONNX exports, ...) are
described by a manifest and downloaded into a cache directory, by default
~/.cache/edge_inference/models/ (the same directory LocalLlmAdapter searches).

Manifest format (JSON or YAML, local path or any fsspec URI):
    models:
      - id: gemma-3-1b
        name: Gemma 3 1B instruct
        framework: llama.cpp
        quantized: true
        quantization_type: Q8_0
        size_bytes: 1069000000
        download_url: https://huggingface.co/.../gemma-3-1b-it-Q8_0.gguf
        checksum: 3f1a...        # sha256 hex digest, optional
        license: gemma

Downloads stream through fsspec into a ``.part`` file, are verified against
the sha256 checksum when one is given and are renamed into place only after
verification, so the cache never exposes a partial or corrupt model.

Example:
    >>> cache = ModelCache()
    >>> cache.load_manifest("models.yaml")
    >>> path = await cache.download("gemma-3-1b")
    >>> cache.list_downloaded()
    ['gemma-3-1b']
"""

import asyncio
import hashlib
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union
from urllib.parse import urlparse

import fsspec
import yaml
from pydantic import BaseModel, Field, field_validator

from .exceptions import ModelDownloadError, NotFoundError
from .models import ModelDescriptor, ModelOrigin

logger = logging.getLogger(__name__)

DEFAULT_CACHE_DIR = Path.home() / ".cache" / "edge_inference" / "models"

PARTIAL_SUFFIX = ".part"
CHUNK_SIZE = 1024 * 1024


class ModelManifestEntry(BaseModel):
    """
    One downloadable model.

    Attributes:
        id: Model identifier used by download/delete/info.
        filename: Name of the cached file. Defaults to the last path segment
            of download_url, else "<id>.gguf".
        checksum: sha256 hex digest of the file ("sha256:" prefix allowed).
    """

    id: str
    name: Optional[str] = None
    size_bytes: int = Field(default=0, ge=0)
    framework: str = "llama.cpp"
    quantized: bool = False
    quantization_type: Optional[str] = None
    version: Optional[str] = None
    download_url: Optional[str] = None
    checksum: Optional[str] = None
    license: Optional[str] = None
    filename: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("checksum")
    @classmethod
    def validate_checksum(cls, v):
        if v is None:
            return None
        digest = v.strip().lower()
        if digest.startswith("sha256:"):
            digest = digest[len("sha256:"):]
        if len(digest) != 64 or any(c not in "0123456789abcdef" for c in digest):
            raise ValueError(f"Invalid sha256 checksum '{v}'")
        return digest

    @field_validator("filename")
    @classmethod
    def validate_filename(cls, v):
        # Cached files must stay inside the cache directory
        if v is not None and (Path(v).name != v or v.startswith(".")):
            raise ValueError(f"Invalid model filename '{v}'")
        return v

    @property
    def file_name(self) -> str:
        if self.filename:
            return self.filename
        if self.download_url:
            name = Path(urlparse(self.download_url).path).name
            if name and not name.startswith("."):
                return name
        return f"{self.id}.gguf"

    def to_descriptor(self) -> ModelDescriptor:
        return ModelDescriptor(
            model_id=self.id,
            name=self.name or self.id,
            size_bytes=self.size_bytes,
            framework=self.framework,
            quantized=self.quantized,
            origin=ModelOrigin.ON_DEVICE,
            quantization_type=self.quantization_type,
            version=self.version,
        )


class ModelCache:
    """
    Manifest of downloadable models plus the directory they are cached in.

    Args:
        cache_dir: Cache directory. Defaults to DEFAULT_CACHE_DIR.
        entries: Initial manifest entries.
    """

    def __init__(
        self,
        cache_dir: Optional[Union[str, Path]] = None,
        entries: Optional[Iterable[ModelManifestEntry]] = None,
    ):
        self.cache_dir = Path(cache_dir).expanduser() if cache_dir else DEFAULT_CACHE_DIR
        self._entries: Dict[str, ModelManifestEntry] = {}
        for entry in entries or ():
            self.add(entry)

    # Manifest

    def load_manifest(self, uri: str) -> int:
        """
        Add the models of a JSON/YAML manifest. Later entries replace earlier
        ones with the same id.

        Returns:
            Number of entries loaded.

        Raises:
            FileNotFoundError: The manifest does not exist.
            ValueError: The manifest is malformed.
        """
        with fsspec.open(uri, "r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid model manifest '{uri}': {e}") from e
        items = data.get("models", []) if isinstance(data, dict) else data
        if not isinstance(items, list):
            raise ValueError(f"Model manifest '{uri}' must contain a 'models' list")
        entries = [ModelManifestEntry.model_validate(item) for item in items]
        for entry in entries:
            self.add(entry)
        logger.info(f"Loaded {len(entries)} model(s) from manifest {uri}")
        return len(entries)

    def add(self, entry: ModelManifestEntry) -> None:
        self._entries[entry.id] = entry

    def entries(self) -> List[ModelManifestEntry]:
        return list(self._entries.values())

    def info(self, model_id: str) -> ModelManifestEntry:
        entry = self._entries.get(model_id)
        if entry is None:
            raise NotFoundError(model_id, kind="model")
        return entry

    # Cache contents

    def _locate(self, model_id: str) -> Optional[Path]:
        entry = self._entries.get(model_id)
        if entry is not None:
            path = self.cache_dir / entry.file_name
            return path if path.is_file() else None
        for path in self._files():
            if model_id in (path.name, path.stem):
                return path
        return None

    def _files(self) -> List[Path]:
        if not self.cache_dir.is_dir():
            return []
        return sorted(
            path for path in self.cache_dir.iterdir()
            if path.is_file() and not path.name.endswith(PARTIAL_SUFFIX)
        )

    def is_downloaded(self, model_id: str) -> bool:
        return self._locate(model_id) is not None

    def model_path(self, model_id: str) -> Optional[Path]:
        """Path of the cached file, or None if the model is not downloaded."""
        return self._locate(model_id)

    def list_downloaded(self) -> List[str]:
        """Ids of cached models; files not in the manifest are listed by stem."""
        by_file = {entry.file_name: entry.id for entry in self._entries.values()}
        return sorted(by_file.get(path.name, path.stem) for path in self._files())

    def delete(self, model_id: str) -> bool:
        """Remove a cached model. Returns False if it was not downloaded."""
        path = self._locate(model_id)
        if path is None:
            return False
        path.unlink()
        logger.info(f"Deleted cached model '{model_id}' ({path})")
        return True

    # Download

    async def download(self, model_id: str, force: bool = False) -> Path:
        """
        Fetch a manifest model into the cache.

        Args:
            model_id: Manifest id.
            force: Download again even if the file is cached.

        Returns:
            Path of the cached file.

        Raises:
            NotFoundError: model_id is not in the manifest.
            ModelDownloadError: No download_url, fetch failure or checksum
                mismatch. Nothing is left in the cache.
        """
        entry = self.info(model_id)
        target = self.cache_dir / entry.file_name
        if target.is_file() and not force:
            logger.info(f"Model '{model_id}' already cached at {target}")
            return target
        if not entry.download_url:
            raise ModelDownloadError(model_id, "manifest entry has no download_url")
        logger.info(f"Downloading model '{model_id}' from {entry.download_url}")
        path = await asyncio.to_thread(self._fetch, entry, target)
        logger.info(f"Model '{model_id}' downloaded to {path}")
        return path

    def _fetch(self, entry: ModelManifestEntry, target: Path) -> Path:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        partial = target.with_name(target.name + PARTIAL_SUFFIX)
        digest = hashlib.sha256()
        try:
            with fsspec.open(entry.download_url, "rb") as remote, open(partial, "wb") as local:
                while True:
                    chunk = remote.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    digest.update(chunk)
                    local.write(chunk)
        except Exception as e:
            partial.unlink(missing_ok=True)
            raise ModelDownloadError(entry.id, cause=e) from e

        actual = digest.hexdigest()
        if entry.checksum and actual != entry.checksum:
            partial.unlink(missing_ok=True)
            raise ModelDownloadError(
                entry.id, f"checksum mismatch (expected {entry.checksum}, got {actual})"
            )
        partial.replace(target)
        return target


__all__ = ["DEFAULT_CACHE_DIR", "ModelCache", "ModelManifestEntry"]
