from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol
from enum import Enum
import asyncio

from pydantic import BaseModel

from session_orchestrator.domain.models.chat_state import CanonicalHistoryItem, ResponseFragment


class GenerationOutcome(str, Enum):
    """How a generation call ended"""
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CancellationToken:
    """Cooperative cancellation flag checked by engines at fragment boundaries"""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self):
        await self._event.wait()


class TokenMeterState(BaseModel):
    """Cumulative token counters of a context sequence"""
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def diff(self, prior: "TokenMeterState") -> "TokenMeterState":
        return TokenMeterState(
            input_tokens=self.input_tokens - prior.input_tokens,
            output_tokens=self.output_tokens - prior.output_tokens
        )


class TokenMeter(Protocol):
    def get_state(self) -> TokenMeterState:
        ...


class ToolInvoker(Protocol):
    """What a chat session needs to call tools during generation"""

    def list_tools(self) -> List[Dict[str, Any]]:
        ...

    async def invoke(self, name: str, arguments: Dict[str, Any]) -> Any:
        ...


FragmentCallback = Callable[[ResponseFragment], Awaitable[None]]
ProgressCallback = Callable[[float], Awaitable[None]]


class ResourceHandle(ABC):
    """A handle the orchestrator owns and disposes explicitly"""

    @abstractmethod
    async def dispose(self) -> None:
        pass


class EngineHandle(ResourceHandle):
    pass


class ModelHandle(ResourceHandle):
    name: str


class ContextHandle(ResourceHandle):
    pass


class SequenceHandle(ResourceHandle):
    token_meter: TokenMeter


class ChatSessionHandle(ResourceHandle):
    """Engine chat session holding the canonical history"""

    @abstractmethod
    def get_history(self) -> List[CanonicalHistoryItem]:
        """Return a copy of the canonical history"""
        pass

    @abstractmethod
    def set_history(self, items: List[CanonicalHistoryItem]) -> None:
        """Replace the canonical history wholesale"""
        pass

    @abstractmethod
    async def prompt(
        self,
        text: str,
        *,
        signal: Optional[CancellationToken] = None,
        on_fragment: Optional[FragmentCallback] = None,
        tools: Optional[ToolInvoker] = None
    ) -> GenerationOutcome:
        """Generate a response to `text` and append the turn to the history.

        An empty `text` against a history ending in a user item generates a
        fresh response to that user item without adding a new one. Raises
        GenerationAbort when cancelled before any output was produced.
        """
        pass

    def complete_prompt(self, prompt: str) -> str:
        """Suggested continuation of a draft prompt, empty when there is none"""
        return ""


class InferenceBackend(ABC):
    """Capability surface of the inference engine"""

    @abstractmethod
    async def load_engine(self) -> EngineHandle:
        pass

    @abstractmethod
    async def load_model(
        self,
        engine: EngineHandle,
        model_path: str,
        on_progress: Optional[ProgressCallback] = None
    ) -> ModelHandle:
        pass

    @abstractmethod
    async def create_context(self, model: ModelHandle) -> ContextHandle:
        pass

    @abstractmethod
    async def get_sequence(self, context: ContextHandle) -> SequenceHandle:
        pass

    @abstractmethod
    async def create_session(self, sequence: SequenceHandle) -> ChatSessionHandle:
        pass
