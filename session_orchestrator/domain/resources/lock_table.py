from typing import AsyncIterator, Dict, Iterable
from contextlib import AsyncExitStack, asynccontextmanager
import asyncio

from session_orchestrator.domain.models.chat_state import ResourceName, RESOURCE_CHAIN


class LockTable:
    """Named mutex registry keyed by resource name"""

    def __init__(self, names: Iterable[ResourceName] = RESOURCE_CHAIN):
        self._locks: Dict[ResourceName, asyncio.Lock] = {
            ResourceName(name): asyncio.Lock() for name in names
        }

    def get(self, name: ResourceName) -> asyncio.Lock:
        return self._locks[ResourceName(name)]

    def locked(self, name: ResourceName) -> bool:
        return self.get(name).locked()

    @asynccontextmanager
    async def hold(self, *names: ResourceName) -> AsyncIterator[None]:
        """Acquire the named locks, always in dependency-chain order"""

        ordered = sorted({ResourceName(name) for name in names}, key=RESOURCE_CHAIN.index)
        async with AsyncExitStack() as stack:
            for name in ordered:
                await stack.enter_async_context(self._locks[name])
            yield
