from typing import Any, Awaitable, Callable, Dict, List, Optional
import structlog

from session_orchestrator.domain.models.chat_state import (
    ResourceName, RESOURCE_CHAIN, ResourceState, ModelResourceState, ChatSessionState
)
from session_orchestrator.domain.models.errors import PreconditionError
from session_orchestrator.domain.resources.lock_table import LockTable
from session_orchestrator.infrastructure.observability.logging import orchestrator_logger

logger = structlog.get_logger(__name__)

ChangeListener = Callable[[], Awaitable[None]]


def _default_state(name: ResourceName) -> ResourceState:
    if name == ResourceName.MODEL:
        return ModelResourceState()
    if name == ResourceName.CHAT_SESSION:
        return ChatSessionState()
    return ResourceState()


class ResourceLedger:
    """Tracks lifecycle state and handles of the chained resources.

    A resource can only be loaded while its predecessor in the chain is
    loaded. Disposing a resource first disposes every dependent, deepest
    first, and resets each one to its unloaded state.
    """

    def __init__(self, locks: Optional[LockTable] = None, on_change: Optional[ChangeListener] = None):
        self.locks = locks or LockTable()
        self._on_change = on_change
        self._states: Dict[ResourceName, ResourceState] = {
            name: _default_state(name) for name in RESOURCE_CHAIN
        }
        self._handles: Dict[ResourceName, Any] = {}

    def state(self, name: ResourceName) -> ResourceState:
        return self._states[ResourceName(name)]

    def handle(self, name: ResourceName) -> Optional[Any]:
        return self._handles.get(ResourceName(name))

    def is_loaded(self, name: ResourceName) -> bool:
        name = ResourceName(name)
        return self._handles.get(name) is not None and self._states[name].loaded

    @staticmethod
    def predecessor(name: ResourceName) -> Optional[ResourceName]:
        index = RESOURCE_CHAIN.index(ResourceName(name))
        return RESOURCE_CHAIN[index - 1] if index > 0 else None

    @staticmethod
    def dependents(name: ResourceName) -> List[ResourceName]:
        index = RESOURCE_CHAIN.index(ResourceName(name))
        return RESOURCE_CHAIN[index + 1:]

    def set(self, resource: ResourceName, **fields: Any):
        """Update state fields without notifying listeners"""

        resource = ResourceName(resource)
        self._states[resource] = self._states[resource].model_copy(update=fields)

    async def update(self, resource: ResourceName, **fields: Any):
        """Update state fields and notify listeners"""

        self.set(resource, **fields)
        await self.notify()

    async def notify(self):
        if self._on_change is not None:
            await self._on_change()

    def set_handle(self, name: ResourceName, handle: Optional[Any]):
        name = ResourceName(name)
        if handle is None:
            self._handles.pop(name, None)
        else:
            self._handles[name] = handle

    def require_loaded(self, name: ResourceName):
        name = ResourceName(name)
        if not self.is_loaded(name):
            raise PreconditionError(f"{name.value} not loaded", resource=name.value)

    async def transition(
        self,
        name: ResourceName,
        operation: Callable[[], Awaitable[Any]],
        reset_fields: Optional[Dict[str, Any]] = None,
        on_loaded: Optional[Callable[[Any], Dict[str, Any]]] = None
    ) -> bool:
        """Rebuild a resource under its lock.

        Any existing handle (and its dependents) is disposed first. A failure
        of `operation` is recorded in the resource's `error` field and reported
        by returning False; a missing predecessor raises PreconditionError.
        """

        name = ResourceName(name)
        async with self.locks.hold(name, *self.dependents(name)):
            previous = self.predecessor(name)
            if previous is not None:
                self.require_loaded(previous)

            await self._dispose_locked(name)
            await self.update(name, loaded=False, error=None, **(reset_fields or {}))

            try:
                handle = await operation()
            except Exception as e:
                logger.error("Failed to load resource", resource=name.value, error=str(e))
                orchestrator_logger.log_resource_transition(name.value, "failed", error=str(e))
                await self.update(name, loaded=False, error=str(e))
                return False

            self._handles[name] = handle
            extra = on_loaded(handle) if on_loaded else {}
            await self.update(name, loaded=True, error=None, **extra)
            orchestrator_logger.log_resource_transition(name.value, "loaded")
            return True

    async def dispose(self, name: ResourceName):
        """Dispose a resource and its dependents under their locks"""

        name = ResourceName(name)
        async with self.locks.hold(name, *self.dependents(name)):
            await self._dispose_locked(name)

    async def dispose_locked(self, name: ResourceName):
        """Dispose a resource whose locks the caller already holds"""

        await self._dispose_locked(ResourceName(name))

    async def _dispose_locked(self, name: ResourceName):
        for target in reversed([name, *self.dependents(name)]):
            handle = self._handles.pop(target, None)
            if handle is not None:
                try:
                    await handle.dispose()
                except Exception as e:
                    # Teardown is best-effort; keep going down the cascade
                    logger.error("Failed to dispose resource", resource=target.value, error=str(e))
                orchestrator_logger.log_resource_transition(target.value, "disposed")

            if handle is not None or self._states[target].loaded:
                self._states[target] = _default_state(target)
                await self.notify()
