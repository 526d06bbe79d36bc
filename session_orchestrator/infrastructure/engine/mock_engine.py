"""
Mock inference backend - deterministic implementation for development and tests
"""

from typing import Any, Iterable, List, Optional, Set, Union
from datetime import datetime, timezone
from pathlib import Path
import asyncio
import re
import structlog

from session_orchestrator.domain.engine.base import (
    CancellationToken, ChatSessionHandle, ContextHandle, EngineHandle,
    FragmentCallback, GenerationOutcome, InferenceBackend, ModelHandle,
    ProgressCallback, SequenceHandle, TokenMeterState, ToolInvoker
)
from session_orchestrator.domain.models.chat_state import (
    CanonicalHistoryItem, FunctionCallRecord, ModelHistoryItem, ResponseFragment,
    SegmentBlock, SystemHistoryItem, TextBlock, UserHistoryItem, ResponseSegment
)
from session_orchestrator.domain.models.errors import GenerationAbort, ResourceError
from session_orchestrator.domain.streaming.stream_reconciler import blocks_to_response, fold_all

logger = structlog.get_logger(__name__)

TOOL_PATTERN = re.compile(r"\[\[tool:(\w+)\]\]")


def count_tokens(text: str) -> int:
    """Mock tokenizer - one token per whitespace-separated word"""
    return len(text.split())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _history_text(history: Iterable[CanonicalHistoryItem]) -> str:
    parts = []
    for item in history:
        if isinstance(item, (SystemHistoryItem, UserHistoryItem)):
            parts.append(item.text)
        else:
            for part in item.response:
                if isinstance(part, str):
                    parts.append(part)
                elif isinstance(part, ResponseSegment):
                    parts.append(part.text)
    return " ".join(parts)


class MockTokenMeter:
    def __init__(self):
        self._state = TokenMeterState()

    def get_state(self) -> TokenMeterState:
        return self._state.model_copy()

    def add(self, input_tokens: int, output_tokens: int):
        self._state = TokenMeterState(
            input_tokens=self._state.input_tokens + input_tokens,
            output_tokens=self._state.output_tokens + output_tokens
        )


class _MockHandle:
    def __init__(self, backend: "MockInferenceBackend", kind: str):
        self._backend = backend
        self.kind = kind
        self.disposed = False

    async def dispose(self) -> None:
        self.disposed = True
        self._backend.disposed.append(self.kind)
        if self.kind in self._backend.fail_dispose:
            raise RuntimeError(f"Failed to dispose {self.kind}")


class MockEngineHandle(_MockHandle, EngineHandle):
    pass


class MockModelHandle(_MockHandle, ModelHandle):
    def __init__(self, backend: "MockInferenceBackend", path: str):
        super().__init__(backend, "model")
        self.path = path
        self.name = Path(path).name


class MockContextHandle(_MockHandle, ContextHandle):
    pass


class MockSequenceHandle(_MockHandle, SequenceHandle):
    def __init__(self, backend: "MockInferenceBackend"):
        super().__init__(backend, "contextSequence")
        self.token_meter = MockTokenMeter()


class MockChatSession(_MockHandle, ChatSessionHandle):
    """Chat session that thinks briefly, then echoes the user's message"""

    def __init__(self, backend: "MockInferenceBackend", sequence: MockSequenceHandle):
        super().__init__(backend, "chatSession")
        self.sequence = sequence
        self._history: List[CanonicalHistoryItem] = []
        self.prompts: List[str] = []

    def get_history(self) -> List[CanonicalHistoryItem]:
        return [item.model_copy(deep=True) for item in self._history]

    def set_history(self, items: List[CanonicalHistoryItem]) -> None:
        self._history = [item.model_copy(deep=True) for item in items]

    def compose_reply(self, user_text: str) -> List[ResponseFragment]:
        """Fragments streamed for a reply: a thought segment, then echoed text word by word"""

        fragments: List[ResponseFragment] = []
        if self._backend.reasoning:
            thought = ["Considering", " the", " request."]
            for index, text in enumerate(thought):
                fragments.append(SegmentBlock(
                    segment_type="thought",
                    text=text,
                    start_time=_now() if index == 0 else None,
                    end_time=_now() if index == len(thought) - 1 else None
                ))

        words = f"You said: {user_text}".split(" ") if user_text else ["..."]
        for index, word in enumerate(words):
            fragments.append(TextBlock(text=word if index == 0 else f" {word}"))
        return fragments

    def complete_prompt(self, prompt: str) -> str:
        # Suggest the rest of an earlier user message that starts with the draft
        if not prompt.strip():
            return ""
        for item in reversed(self._history):
            if isinstance(item, UserHistoryItem) and len(item.text) > len(prompt) and item.text.startswith(prompt):
                return item.text[len(prompt):]
        return ""

    async def prompt(
        self,
        text: str,
        *,
        signal: Optional[CancellationToken] = None,
        on_fragment: Optional[FragmentCallback] = None,
        tools: Optional[ToolInvoker] = None
    ) -> GenerationOutcome:
        self.prompts.append(text)
        if signal is not None and signal.cancelled:
            raise GenerationAbort(signal.reason or "aborted")

        history = list(self._history)
        if text == "" and history and isinstance(history[-1], UserHistoryItem):
            user_text = history[-1].text
        else:
            user_text = text
            history.append(UserHistoryItem(text=text))

        input_tokens = count_tokens(_history_text(history))
        response: List[Union[str, ResponseSegment, FunctionCallRecord]] = []

        if tools is not None:
            for name in TOOL_PATTERN.findall(user_text):
                result = await tools.invoke(name, {})
                response.append(FunctionCallRecord(name=name, params={}, result=_tool_payload(result)))

        emitted: List[ResponseFragment] = []
        cancelled = False
        for fragment in self.compose_reply(user_text):
            await asyncio.sleep(self._backend.fragment_delay)
            if signal is not None and signal.cancelled:
                cancelled = True
                break

            emitted.append(fragment)
            if on_fragment is not None:
                await on_fragment(fragment)

        if cancelled and not emitted:
            raise GenerationAbort(signal.reason or "aborted")

        response.extend(blocks_to_response(fold_all(emitted)))
        history.append(ModelHistoryItem(response=response))
        self._history = history

        output_tokens = sum(count_tokens(fragment.text) for fragment in emitted)
        self.sequence.token_meter.add(input_tokens, output_tokens)

        return GenerationOutcome.CANCELLED if cancelled else GenerationOutcome.COMPLETED


def _tool_payload(result: Any) -> Any:
    if hasattr(result, "model_dump"):
        return result.model_dump(mode="json")
    return result


class MockInferenceBackend(InferenceBackend):
    """Deterministic backend with failure injection for each capability"""

    def __init__(
        self,
        fragment_delay: float = 0.0,
        reasoning: bool = True,
        fail_on: Optional[Set[str]] = None,
        fail_dispose: Optional[Set[str]] = None
    ):
        self.fragment_delay = fragment_delay
        self.reasoning = reasoning
        self.fail_on: Set[str] = set(fail_on or ())
        self.fail_dispose: Set[str] = set(fail_dispose or ())
        self.disposed: List[str] = []
        self.sessions: List[MockChatSession] = []

    def _check(self, operation: str, resource: str):
        if operation in self.fail_on:
            raise ResourceError(resource, f"Mock failure in {operation}")

    async def load_engine(self) -> EngineHandle:
        self._check("load_engine", "llama")
        return MockEngineHandle(self, "llama")

    async def load_model(
        self,
        engine: EngineHandle,
        model_path: str,
        on_progress: Optional[ProgressCallback] = None
    ) -> ModelHandle:
        for progress in (0.25, 0.5, 0.75):
            if on_progress is not None:
                await on_progress(progress)
            await asyncio.sleep(0)

        self._check("load_model", "model")
        logger.debug("Mock model loaded", model_path=model_path)
        return MockModelHandle(self, model_path)

    async def create_context(self, model: ModelHandle) -> ContextHandle:
        self._check("create_context", "context")
        return MockContextHandle(self, "context")

    async def get_sequence(self, context: ContextHandle) -> SequenceHandle:
        self._check("get_sequence", "contextSequence")
        return MockSequenceHandle(self)

    async def create_session(self, sequence: SequenceHandle) -> ChatSessionHandle:
        self._check("create_session", "chatSession")
        session = MockChatSession(self, sequence)
        self.sessions.append(session)
        return session
