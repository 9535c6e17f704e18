"""
Core Exception Classes for edge_inference.

This module provides the error taxonomy shared by adapters, the registry,
the policy router, vector stores and chat sessions. Exceptions live here
(rather than next to the components that raise them) so that every module
can import them without pulling in optional backend dependencies.

Design Principle:
    exceptions.py (BASE - zero dependencies)
        ^
    adapters/, registry.py, router.py, storage/, chat/
        ^
    manager.py, cli.py

Propagation:
    Backend failures are wrapped exactly once, at the adapter boundary, as
    InferenceError or InitializationError. The router is the only component
    that recovers from them (a single fallback attempt); everything else
    propagates to the caller unchanged.
"""

from typing import Any, Dict, List, Optional, Tuple


class EdgeInferenceError(Exception):
    """
    Base class for all edge_inference errors.

    Attributes:
        message: Human-readable error message.
        code: Optional short machine-readable error code.
        cause: Underlying exception, if any.

    Example:
        >>> try:
        ...     await registry.resolve("missing")
        ... except EdgeInferenceError as e:
        ...     print(e.to_dict())
    """

    code: str = "edge_inference_error"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        self.message = message
        if code is not None:
            self.code = code
        self.cause = cause
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a dictionary for structured error reporting."""
        result: Dict[str, Any] = {
            "type": type(self).__name__,
            "code": self.code,
            "message": self.message,
        }
        if self.cause is not None:
            result["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return result


class NotFoundError(EdgeInferenceError):
    """Raised when a logical id, capability candidate, store or session is unknown."""

    code = "not_found"

    def __init__(self, identifier: str, kind: str = "adapter", message: Optional[str] = None):
        self.identifier = identifier
        self.kind = kind
        super().__init__(message or f"{kind} not found: {identifier}")


class AdapterAlreadyRegisteredError(EdgeInferenceError):
    """Raised by register() when the logical id is taken. Use replace() instead."""

    code = "already_registered"

    def __init__(self, logical_id: str):
        self.logical_id = logical_id
        super().__init__(
            f"Adapter already registered under '{logical_id}'. "
            "Call replace() to dispose the old adapter and install a new one."
        )


class NotReadyError(EdgeInferenceError):
    """Raised when a capability operation runs before initialize() or after dispose()."""

    code = "not_ready"

    def __init__(self, model_id: str, state: str):
        self.model_id = model_id
        self.state = state
        super().__init__(f"Adapter for model '{model_id}' is not ready (state: {state})")


class InitializationError(EdgeInferenceError):
    """Raised when a backend cannot be loaded."""

    code = "initialization_failed"

    def __init__(
        self,
        model_id: str,
        message: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        self.model_id = model_id
        detail = message or (str(cause) if cause else "unknown error")
        super().__init__(
            f"Failed to initialize model '{model_id}': {detail}", cause=cause
        )


class InferenceError(EdgeInferenceError):
    """Raised when a single adapter fails to execute an operation."""

    code = "inference_failed"

    def __init__(
        self,
        model_id: str,
        operation: str,
        message: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        self.model_id = model_id
        self.operation = operation
        detail = message or (f"{type(cause).__name__}: {cause}" if cause else "unknown error")
        super().__init__(f"{operation} failed on model '{model_id}': {detail}", cause=cause)


class InferenceExhaustedError(EdgeInferenceError):
    """
    Raised when every candidate permitted by a policy has failed.

    Attributes:
        capability: Capability that was requested.
        policy: Policy that ordered the candidates.
        failures: (candidate, exception) pairs in attempt order. The candidate
            is a logical id, or the origin name when nothing was registered
            for it.
    """

    code = "inference_exhausted"

    def __init__(
        self,
        capability: str,
        policy: str,
        failures: List[Tuple[str, BaseException]],
    ):
        self.capability = capability
        self.policy = policy
        self.failures = list(failures)
        summary = "; ".join(
            f"{candidate}: {type(error).__name__}: {error}"
            for candidate, error in self.failures
        )
        super().__init__(
            f"All candidates failed for capability '{capability}' "
            f"under policy '{policy}' ({summary})",
            cause=self.failures[-1][1] if self.failures else None,
        )

    @property
    def errors(self) -> List[BaseException]:
        return [error for _, error in self.failures]

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["failures"] = [
            {"candidate": candidate, "type": type(error).__name__, "message": str(error)}
            for candidate, error in self.failures
        ]
        return result


class CapabilityMismatchError(EdgeInferenceError):
    """Raised when a routed adapter does not implement the requested capability."""

    code = "capability_mismatch"

    def __init__(self, logical_id: str, capability: str):
        self.logical_id = logical_id
        self.capability = capability
        super().__init__(
            f"Adapter '{logical_id}' does not implement capability '{capability}'"
        )


class AdapterDisposalError(EdgeInferenceError):
    """Raised after unregister_all() when one or more adapters failed to dispose."""

    code = "disposal_failed"

    def __init__(self, failures: List[Tuple[str, BaseException]]):
        self.failures = list(failures)
        ids = ", ".join(logical_id for logical_id, _ in self.failures)
        super().__init__(
            f"Failed to dispose adapters: {ids}",
            cause=self.failures[0][1] if self.failures else None,
        )


class StoreNotInitializedError(EdgeInferenceError):
    """Raised when a vector store is used before open()."""

    code = "store_not_initialized"

    def __init__(self, store_id: str):
        self.store_id = store_id
        super().__init__(f"Vector store '{store_id}' not initialized. Call open() first.")


class EmbeddingUnavailableError(EdgeInferenceError):
    """Raised when text must be embedded but the store has no embedding generator."""

    code = "embedding_unavailable"

    def __init__(self, store_id: str):
        self.store_id = store_id
        super().__init__(
            f"Vector store '{store_id}' has no embedding generator. "
            "Configure one or use add_document_with_embedding / query_with_embedding."
        )


class DimensionMismatchError(EdgeInferenceError, ValueError):
    """Raised when embeddings of different dimensionality are compared or mixed."""

    code = "dimension_mismatch"

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}"
        )


class SessionClosedError(EdgeInferenceError):
    """Raised when a turn is sent to a closed chat session."""

    code = "session_closed"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Chat session '{session_id}' is closed")


class ModelDownloadError(EdgeInferenceError):
    """Raised when a manifest model cannot be fetched or fails verification."""

    code = "model_download_failed"

    def __init__(
        self,
        model_id: str,
        message: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        self.model_id = model_id
        detail = message or (str(cause) if cause else "unknown error")
        super().__init__(f"Failed to download model '{model_id}': {detail}", cause=cause)


__all__ = [
    "EdgeInferenceError",
    "NotFoundError",
    "AdapterAlreadyRegisteredError",
    "NotReadyError",
    "InitializationError",
    "InferenceError",
    "InferenceExhaustedError",
    "CapabilityMismatchError",
    "AdapterDisposalError",
    "StoreNotInitializedError",
    "EmbeddingUnavailableError",
    "DimensionMismatchError",
    "SessionClosedError",
    "ModelDownloadError",
]
