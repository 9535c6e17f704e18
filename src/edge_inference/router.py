"""
Inference policy router.

Chooses which registered adapter serves a capability request and applies the
fallback rule of the caller's InferencePolicy:

    select candidate -> attempt -> success
                                -> failure -> attempt fallback -> success
                                                               -> InferenceExhaustedError

Candidate selection, per origin:
1. An explicit binding (router.bind(capability, origin, logical_id))
2. Otherwise the registered adapter of that origin implementing the
   capability with the highest descriptor priority, earliest registration
   winning ties.

Rules:
- *_ONLY policies have one candidate: failures surface unchanged.
- PREFER_* policies try the other origin exactly once after an
  InferenceError, InitializationError or NotFoundError.
- No candidate for any permitted origin -> NotFoundError without any attempt.
- The same adapter is never retried and there is never a second fallback.
- Any other exception propagates unchanged.

Example:
    >>> router = InferenceRouter(registry, default_policy=InferencePolicy.PREFER_ON_DEVICE)
    >>> vector = await router.embed("hello")
    >>> outcome = await router.route(
    ...     Capability.TEXT_GENERATION,
    ...     lambda adapter: adapter.generate(messages),
    ...     policy=InferencePolicy.PREFER_CLOUD,
    ... )
    >>> outcome.logical_id, outcome.fell_back
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Generic,
    List,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
    Union,
)

from .adapters.base import Capability, Message, ModelAdapter, supports
from .embedding import EmbeddingVector
from .exceptions import (
    CapabilityMismatchError,
    InferenceError,
    InferenceExhaustedError,
    InitializationError,
    NotFoundError,
)
from .models import (
    ClassificationResult,
    DetectedObject,
    GenerationResult,
    ImageInput,
    InferencePolicy,
    ModelOrigin,
    OcrResult,
)
from .registry import AdapterRegistry
from .settings import GenerationParams

logger = logging.getLogger(__name__)

T = TypeVar("T")

PolicyLike = Union[InferencePolicy, str, None]

# Failures that allow one attempt on the other origin
FALLBACK_ERRORS = (InferenceError, InitializationError, NotFoundError)

Candidate = Optional[Tuple[str, ModelAdapter]]


@dataclass
class RoutingOutcome(Generic[T]):
    """
    Result of a routed call.

    Attributes:
        value: What the operation returned.
        logical_id: Registry key of the adapter that produced value.
        origin: Origin of that adapter.
        attempts: Adapters actually invoked (1 or 2).
        fell_back: True if value came from the policy's fallback origin.
    """

    value: T
    logical_id: str
    origin: ModelOrigin
    attempts: int
    fell_back: bool


class InferenceRouter:
    """
    Routes capability requests over an AdapterRegistry.

    Args:
        registry: Registry holding the candidate adapters.
        default_policy: Used when a call passes no policy.
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        default_policy: InferencePolicy = InferencePolicy.PREFER_ON_DEVICE,
    ):
        self.registry = registry
        self.default_policy = InferencePolicy.parse(default_policy)
        self._bindings: Dict[Tuple[Capability, ModelOrigin], str] = {}

    def bind(self, capability: Capability, origin: ModelOrigin, logical_id: str) -> None:
        """Pin the candidate for a capability/origin pair to one logical id."""
        self._bindings[(Capability(capability), ModelOrigin(origin))] = logical_id
        logger.debug(f"Bound {Capability(capability).value}/{ModelOrigin(origin).value} -> '{logical_id}'")

    def unbind(self, capability: Capability, origin: ModelOrigin) -> None:
        self._bindings.pop((Capability(capability), ModelOrigin(origin)), None)

    def bindings(self) -> Dict[Tuple[Capability, ModelOrigin], str]:
        return dict(self._bindings)

    def _policy(self, policy: PolicyLike) -> InferencePolicy:
        return self.default_policy if policy is None else InferencePolicy.parse(policy)

    async def _candidate(self, capability: Capability, origin: ModelOrigin) -> Candidate:
        bound = self._bindings.get((capability, origin))
        if bound is not None:
            if bound not in self.registry:
                logger.debug(f"Binding '{bound}' for {capability.value}/{origin.value} is not registered")
                return None
            adapter = await self.registry.resolve(bound)
            if not supports(adapter, capability):
                raise CapabilityMismatchError(bound, capability.value)
            return bound, adapter

        matches = [
            (index, logical_id, adapter)
            for index, (logical_id, adapter) in enumerate(await self.registry.entries())
            if adapter.origin is origin and supports(adapter, capability)
        ]
        if not matches:
            return None
        _, logical_id, adapter = min(
            matches, key=lambda m: (-m[2].descriptor.priority, m[0])
        )
        logger.debug(f"Selected '{logical_id}' for {capability.value}/{origin.value}")
        return logical_id, adapter

    async def _plan(
        self, capability: Capability, policy: InferencePolicy
    ) -> List[Tuple[ModelOrigin, Candidate]]:
        origins = [policy.primary]
        if policy.fallback is not None:
            origins.append(policy.fallback)
        plan = [(origin, await self._candidate(capability, origin)) for origin in origins]
        if all(candidate is None for _, candidate in plan):
            wanted = " or ".join(origin.value for origin in origins)
            raise NotFoundError(
                capability.value,
                kind="capability",
                message=f"No {wanted} adapter registered for {capability.value} "
                f"(policy: {policy.value})",
            )
        return plan

    def _missing(self, capability: Capability, origin: ModelOrigin) -> NotFoundError:
        return NotFoundError(
            capability.value,
            kind="capability",
            message=f"No {origin.value} adapter registered for {capability.value}",
        )

    async def resolve(self, capability: Capability, policy: PolicyLike = None) -> ModelAdapter:
        """
        Return the adapter a request would try first, without running it.

        Raises:
            NotFoundError: If no permitted origin has a candidate.
        """
        plan = await self._plan(Capability(capability), self._policy(policy))
        return next(candidate[1] for _, candidate in plan if candidate is not None)

    async def route(
        self,
        capability: Capability,
        operation: Callable[[Any], Awaitable[T]],
        policy: PolicyLike = None,
    ) -> RoutingOutcome[T]:
        """
        Run operation(adapter) on the policy's candidates.

        Args:
            capability: Requested capability.
            operation: Coroutine function receiving an initialized adapter.
            policy: Overrides the default policy for this call.

        Returns:
            RoutingOutcome with the value and which adapter produced it.

        Raises:
            NotFoundError: No candidate for any permitted origin.
            InferenceError / InitializationError: Single-origin policy failed.
            InferenceExhaustedError: Primary and fallback both failed.
            CapabilityMismatchError: A binding names an unsuitable adapter.
        """
        capability = Capability(capability)
        policy = self._policy(policy)
        plan = await self._plan(capability, policy)

        failures: List[Tuple[str, BaseException]] = []
        attempts = 0
        for index, (origin, candidate) in enumerate(plan):
            is_last = index == len(plan) - 1
            if candidate is None:
                failures.append((origin.value, self._missing(capability, origin)))
                if not is_last:
                    logger.warning(
                        f"No {origin.value} adapter for {capability.value}, "
                        f"falling back to {plan[index + 1][0].value}"
                    )
                continue

            logical_id, adapter = candidate
            attempts += 1
            try:
                await adapter.initialize()
                value = await operation(adapter)
            except FALLBACK_ERRORS as exc:
                if len(plan) == 1:
                    raise
                failures.append((logical_id, exc))
                if not is_last:
                    logger.warning(
                        f"{capability.value} failed on '{logical_id}' ({origin.value}): {exc}. "
                        f"Falling back to {plan[index + 1][0].value}"
                    )
                continue

            return RoutingOutcome(
                value=value,
                logical_id=logical_id,
                origin=origin,
                attempts=attempts,
                fell_back=index > 0,
            )

        raise InferenceExhaustedError(capability.value, policy.value, failures)

    async def execute(
        self,
        capability: Capability,
        operation: Callable[[Any], Awaitable[T]],
        policy: PolicyLike = None,
    ) -> T:
        """route() returning only the value."""
        return (await self.route(capability, operation, policy)).value

    async def embed(self, text: str, policy: PolicyLike = None) -> EmbeddingVector:
        return await self.execute(
            Capability.TEXT_EMBEDDING, lambda adapter: adapter.embed(text), policy
        )

    async def embed_batch(
        self, texts: Sequence[str], policy: PolicyLike = None
    ) -> List[EmbeddingVector]:
        return await self.execute(
            Capability.TEXT_EMBEDDING, lambda adapter: adapter.embed_batch(texts), policy
        )

    async def classify(
        self, image: ImageInput, threshold: float = 0.0, policy: PolicyLike = None
    ) -> ClassificationResult:
        return await self.execute(
            Capability.IMAGE_CLASSIFICATION,
            lambda adapter: adapter.classify(image, threshold),
            policy,
        )

    async def classify_text(
        self, text: str, threshold: float = 0.0, policy: PolicyLike = None
    ) -> ClassificationResult:
        return await self.execute(
            Capability.TEXT_CLASSIFICATION,
            lambda adapter: adapter.classify_text(text, threshold),
            policy,
        )

    async def detect(
        self, image: ImageInput, threshold: float = 0.5, policy: PolicyLike = None
    ) -> List[DetectedObject]:
        return await self.execute(
            Capability.OBJECT_DETECTION,
            lambda adapter: adapter.detect(image, threshold),
            policy,
        )

    async def recognize(self, image: ImageInput, policy: PolicyLike = None) -> OcrResult:
        return await self.execute(
            Capability.OCR, lambda adapter: adapter.recognize(image), policy
        )

    async def generate(
        self,
        messages: Sequence[Message],
        params: Optional[GenerationParams] = None,
        policy: PolicyLike = None,
    ) -> RoutingOutcome[GenerationResult]:
        """Routed generation; the outcome tells which adapter answered."""
        return await self.route(
            Capability.TEXT_GENERATION,
            lambda adapter: adapter.generate(messages, params),
            policy,
        )

    def stream_generate(
        self,
        messages: Sequence[Message],
        params: Optional[GenerationParams] = None,
        policy: PolicyLike = None,
    ) -> "RoutedStream":
        """
        Stream generated chunks with the same fallback rules as route().

        Fallback is only possible while the primary has delivered nothing;
        a failure after the first chunk propagates as InferenceError.
        """
        return RoutedStream(self, list(messages), params, self._policy(policy))


class RoutedStream:
    """
    Async iterator over routed generation chunks.

    logical_id, model, origin, attempts and fell_back are filled in once an
    adapter starts delivering (or completes with no output).

    Each read runs in its own task, so aclose() may be called from another
    task while a read is pending: the read is cancelled, the adapter stream
    is closed before aclose() returns and the pending read ends the
    iteration.
    """

    def __init__(
        self,
        router: InferenceRouter,
        messages: List[Message],
        params: Optional[GenerationParams],
        policy: InferencePolicy,
    ):
        self.policy = policy
        self.logical_id: Optional[str] = None
        self.origin: Optional[ModelOrigin] = None
        self.model: Optional[str] = None
        self.attempts = 0
        self.fell_back = False
        self._router = router
        self._messages = messages
        self._params = params
        self._iterator = self._run()
        self._pending: Optional[asyncio.Task] = None
        self._closing = False

    def __aiter__(self) -> "RoutedStream":
        return self

    async def __anext__(self) -> str:
        if self._closing:
            raise StopAsyncIteration
        self._pending = asyncio.ensure_future(self._iterator.__anext__())
        try:
            return await self._pending
        except asyncio.CancelledError:
            if self._closing:
                raise StopAsyncIteration from None
            raise
        finally:
            self._pending = None

    async def aclose(self) -> None:
        self._closing = True
        pending = self._pending
        if pending is not None and not pending.done():
            pending.cancel()
            await asyncio.wait([pending])
        await self._iterator.aclose()

    def _settle(self, logical_id: str, adapter: ModelAdapter, fell_back: bool) -> None:
        self.logical_id = logical_id
        self.model = adapter.model_id
        self.origin = adapter.origin
        self.fell_back = fell_back

    async def _run(self) -> AsyncIterator[str]:
        capability = Capability.TEXT_GENERATION
        router = self._router
        plan = await router._plan(capability, self.policy)

        failures: List[Tuple[str, BaseException]] = []
        for index, (origin, candidate) in enumerate(plan):
            if candidate is None:
                failures.append((origin.value, router._missing(capability, origin)))
                continue

            logical_id, adapter = candidate
            self.attempts += 1
            delivered = False
            stream = None
            try:
                await adapter.initialize()
                stream = adapter.stream(self._messages, self._params)
                async for chunk in stream:
                    if not delivered:
                        delivered = True
                        self._settle(logical_id, adapter, index > 0)
                    yield chunk
            except FALLBACK_ERRORS as exc:
                if delivered or len(plan) == 1:
                    raise
                failures.append((logical_id, exc))
                logger.warning(
                    f"Streaming failed on '{logical_id}' ({origin.value}) before first chunk: {exc}"
                )
                continue
            finally:
                if stream is not None:
                    await stream.aclose()

            if not delivered:
                self._settle(logical_id, adapter, index > 0)
            return

        raise InferenceExhaustedError(capability.value, self.policy.value, failures)


__all__ = [
    "FALLBACK_ERRORS",
    "InferenceRouter",
    "RoutedStream",
    "RoutingOutcome",
]
