from typing import Any, Awaitable, Callable, List, Union
import inspect
import structlog

from session_orchestrator.domain.models.chat_state import OrchestratorState

logger = structlog.get_logger(__name__)

StateSubscriber = Callable[[OrchestratorState], Union[None, Awaitable[None]]]


class StateBroadcaster:
    """Publishes full orchestrator snapshots to subscribers after each mutation"""

    def __init__(self):
        self.subscribers: List[StateSubscriber] = []
        self.last_state: Union[OrchestratorState, None] = None

    def subscribe(self, subscriber: StateSubscriber) -> Callable[[], None]:
        """Register a subscriber and return a function that removes it"""

        self.subscribers.append(subscriber)

        def unsubscribe():
            if subscriber in self.subscribers:
                self.subscribers.remove(subscriber)

        return unsubscribe

    async def publish(self, state: OrchestratorState):
        """Deliver one snapshot to every subscriber, in registration order"""

        self.last_state = state
        for subscriber in list(self.subscribers):
            try:
                result: Any = subscriber(state.model_copy(deep=True))
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Error in state subscriber",
                             subscriber=getattr(subscriber, "__name__", repr(subscriber)),
                             error=str(e))
