"""
Adapter registry.

Maps logical identifiers ("phi-local", "gpt-cloud") to adapter instances in
registration order. The registry is capability-agnostic; the router decides
which entry can serve a request.

Mutations (register, replace, unregister) take the write side of a
ReadWriteLock; lookups share the read side.

Example:
    >>> registry = AdapterRegistry()
    >>> await registry.register("phi", LocalLlmAdapter(model_path="phi.gguf"))
    >>> adapter = await registry.acquire("phi")  # initializes on first use
    >>> await registry.unregister_all()
"""

import logging
from typing import List, Optional, Tuple

from .adapters.base import ModelAdapter
from .exceptions import AdapterAlreadyRegisteredError, AdapterDisposalError, NotFoundError
from .locks import ReadWriteLock

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Logical id -> adapter mapping with lifecycle-aware mutation."""

    def __init__(self):
        self._entries: dict = {}
        self._lock = ReadWriteLock()

    async def register(
        self, logical_id: str, adapter: ModelAdapter, initialize: bool = False
    ) -> None:
        """
        Register an adapter under a new logical id.

        Args:
            logical_id: Unique key.
            adapter: Adapter instance, usually UNINITIALIZED.
            initialize: Load the backend now instead of on first use. A load
                failure propagates but the entry stays registered, so a later
                acquire() can retry.

        Raises:
            AdapterAlreadyRegisteredError: If logical_id is taken.
            InitializationError: If initialize=True and loading fails.
        """
        async with self._lock.write():
            if logical_id in self._entries:
                raise AdapterAlreadyRegisteredError(logical_id)
            self._entries[logical_id] = adapter
        logger.info(
            f"Registered adapter '{logical_id}' "
            f"(model={adapter.model_id}, origin={adapter.origin.value})"
        )
        if initialize:
            await adapter.initialize()

    async def replace(self, logical_id: str, adapter: ModelAdapter) -> Optional[ModelAdapter]:
        """
        Install adapter under logical_id, disposing the previous one first.

        The replacement counts as a new registration for ordering purposes.

        Returns:
            The disposed previous adapter, or None if the id was free.

        Raises:
            AdapterDisposalError: The old adapter failed to dispose. The new
                adapter is installed regardless.
        """
        failure = None
        async with self._lock.write():
            previous = self._entries.pop(logical_id, None)
            if previous is not None:
                try:
                    await previous.dispose()
                except Exception as exc:
                    logger.exception(f"Failed to dispose replaced adapter '{logical_id}'")
                    failure = exc
            self._entries[logical_id] = adapter
        logger.info(f"Replaced adapter '{logical_id}' (model={adapter.model_id})")
        if failure is not None:
            raise AdapterDisposalError([(logical_id, failure)])
        return previous

    async def resolve(self, logical_id: str) -> ModelAdapter:
        """
        Look up an adapter without initializing it.

        Raises:
            NotFoundError: If logical_id is not registered.
        """
        async with self._lock.read():
            adapter = self._entries.get(logical_id)
        if adapter is None:
            raise NotFoundError(logical_id, kind="adapter")
        return adapter

    async def acquire(self, logical_id: str) -> ModelAdapter:
        """Resolve and lazily initialize."""
        adapter = await self.resolve(logical_id)
        await adapter.initialize()
        return adapter

    async def unregister(self, logical_id: str) -> None:
        """
        Dispose and remove one adapter.

        Raises:
            NotFoundError: If logical_id is not registered.
        """
        async with self._lock.write():
            adapter = self._entries.pop(logical_id, None)
            if adapter is None:
                raise NotFoundError(logical_id, kind="adapter")
            await adapter.dispose()
        logger.info(f"Unregistered adapter '{logical_id}'")

    async def unregister_all(self) -> None:
        """
        Dispose every adapter, then clear the registry.

        Every adapter gets a dispose() call even if an earlier one fails.

        Raises:
            AdapterDisposalError: After clearing, if any dispose() failed.
        """
        failures: List[Tuple[str, BaseException]] = []
        async with self._lock.write():
            for logical_id, adapter in list(self._entries.items()):
                try:
                    await adapter.dispose()
                except Exception as exc:
                    logger.exception(f"Failed to dispose adapter '{logical_id}'")
                    failures.append((logical_id, exc))
            count = len(self._entries)
            self._entries.clear()
        logger.info(f"Unregistered {count} adapter(s)")
        if failures:
            raise AdapterDisposalError(failures)

    async def entries(self) -> List[Tuple[str, ModelAdapter]]:
        """Snapshot of (logical_id, adapter) in registration order."""
        async with self._lock.read():
            return list(self._entries.items())

    def ids(self) -> List[str]:
        return list(self._entries)

    def __contains__(self, logical_id: object) -> bool:
        return logical_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["AdapterRegistry"]
