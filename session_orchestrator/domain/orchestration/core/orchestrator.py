from typing import Any, Dict, List, Optional, Sequence
from datetime import datetime, timezone
from pathlib import Path
import asyncio
import json
import structlog

from session_orchestrator import __version__
from session_orchestrator.domain.chat.chat_projector import ChatProjector, IdArena
from session_orchestrator.domain.chat.history_editor import HistoryEditor
from session_orchestrator.domain.chat.token_accountant import TokenAccountant
from session_orchestrator.domain.engine.base import (
    CancellationToken, ChatSessionHandle, GenerationOutcome, InferenceBackend, TokenMeter
)
from session_orchestrator.domain.models.chat_state import (
    CanonicalHistoryItem, DraftPrompt, ExportedChatSession, ModelHistoryItem, OrchestratorState,
    PreservedChat, ResourceName, ResponseFragment, SavedChat, SystemHistoryItem, UserHistoryItem
)
from session_orchestrator.domain.models.errors import GenerationAbort, PreconditionError
from session_orchestrator.domain.resources.lock_table import LockTable
from session_orchestrator.domain.resources.resource_ledger import ResourceLedger
from session_orchestrator.domain.storage.chat_store import ChatStore, generate_chat_title
from session_orchestrator.domain.streaming.state_broadcaster import StateBroadcaster
from session_orchestrator.domain.streaming.stream_reconciler import StreamReconciler, blocks_to_response
from session_orchestrator.domain.tool.tool_executor import ToolExecutor
from session_orchestrator.infrastructure.config.settings import DEFAULT_SYSTEM_PROMPT, OrchestratorSettings
from session_orchestrator.infrastructure.observability.logging import orchestrator_logger

logger = structlog.get_logger(__name__)

LLAMA = ResourceName.LLAMA
MODEL = ResourceName.MODEL
CONTEXT = ResourceName.CONTEXT
CONTEXT_SEQUENCE = ResourceName.CONTEXT_SEQUENCE
CHAT_SESSION = ResourceName.CHAT_SESSION


def _last_user_index(history: Sequence[CanonicalHistoryItem]) -> Optional[int]:
    for index in range(len(history) - 1, -1, -1):
        if isinstance(history[index], UserHistoryItem):
            return index
    return None


class Orchestrator:
    """Session orchestrator between a chat front end and a stateful inference backend.

    Owns the resource chain (engine -> model -> context -> sequence -> chat
    session), serializes each resource's mutations behind its named lock,
    keeps the renderer-facing projection of the canonical history current,
    and publishes a full state snapshot after every mutation.
    """

    def __init__(
        self,
        backend: InferenceBackend,
        settings: Optional[OrchestratorSettings] = None,
        tool_executor: Optional[ToolExecutor] = None,
        chat_store: Optional[ChatStore] = None,
        broadcaster: Optional[StateBroadcaster] = None
    ):
        self.backend = backend
        self.settings = settings or OrchestratorSettings()
        self.system_prompt = self.settings.system_prompt
        self.broadcaster = broadcaster or StateBroadcaster()
        self.locks = LockTable()
        self.ledger = ResourceLedger(self.locks, on_change=self._broadcast)
        self.accountant = TokenAccountant()
        self.projector = ChatProjector(IdArena(), self.accountant)
        self.editor = HistoryEditor(self.projector)
        self.reconciler = StreamReconciler()
        self.tool_executor = tool_executor or ToolExecutor()
        self.chat_store = chat_store or ChatStore()

        self.selected_model_path: Optional[str] = None
        self.preserved_chat: Optional[PreservedChat] = None
        self._prompt_token: Optional[CancellationToken] = None
        self.draft_prompt = DraftPrompt()

    # State

    def get_state(self) -> OrchestratorState:
        """Consistent snapshot of every resource and the live chat"""

        return OrchestratorState(
            app_version=__version__,
            llama=self.ledger.state(LLAMA),
            selected_model_path=self.selected_model_path,
            model=self.ledger.state(MODEL),
            context=self.ledger.state(CONTEXT),
            context_sequence=self.ledger.state(CONTEXT_SEQUENCE),
            chat_session=self.ledger.state(CHAT_SESSION).model_copy(update={"draft_prompt": self.draft_prompt}),
            preserved_chat_history=self.preserved_chat
        ).model_copy(deep=True)

    async def _broadcast(self):
        await self.broadcaster.publish(self.get_state())

    def _session(self) -> Optional[ChatSessionHandle]:
        return self.ledger.handle(CHAT_SESSION)

    def _meter(self) -> Optional[TokenMeter]:
        sequence = self.ledger.handle(CONTEXT_SEQUENCE)
        return getattr(sequence, "token_meter", None) if sequence is not None else None

    def _chat_fields(
        self,
        session: Optional[ChatSessionHandle],
        generating: bool = False,
        live_user_text: Optional[str] = None
    ) -> Dict[str, Any]:
        """Projection and token totals for the chat-session state"""

        history = session.get_history() if session is not None else []
        in_flight = self.reconciler.blocks if generating else None
        message_count = sum(1 for item in history if not isinstance(item, SystemHistoryItem))

        return {
            "generating_result": generating,
            "simplified_chat": self.projector.project(history, in_flight, live_user_text, generating),
            "session_token_stats": self.accountant.session_totals(self._meter(), message_count)
        }

    def _refresh_draft(self, session: Optional[ChatSessionHandle]):
        prompt = self.draft_prompt.prompt
        completion = session.complete_prompt(prompt) if session is not None and prompt else ""
        self.draft_prompt = DraftPrompt(prompt=prompt, completion=completion)

    def _on_chat_session_loaded(self, session: ChatSessionHandle) -> Dict[str, Any]:
        self._refresh_draft(session)
        return self._chat_fields(session)

    # Resource chain

    async def load_engine(self) -> bool:
        return await self.ledger.transition(LLAMA, self.backend.load_engine)

    async def load_model(self, model_path: str) -> bool:
        async def on_progress(progress: float):
            await self.ledger.update(MODEL, load_progress=progress)

        async def operation():
            return await self.backend.load_model(self.ledger.handle(LLAMA), model_path, on_progress)

        return await self.ledger.transition(
            MODEL,
            operation,
            reset_fields={"load_progress": 0.0, "name": None},
            on_loaded=lambda handle: {
                "load_progress": 1.0,
                "name": getattr(handle, "name", None) or Path(model_path).name
            }
        )

    async def create_context(self) -> bool:
        return await self.ledger.transition(
            CONTEXT,
            lambda: self.backend.create_context(self.ledger.handle(MODEL))
        )

    async def create_context_sequence(self) -> bool:
        # A fresh sequence starts a fresh token meter
        self.accountant.reset_baseline()
        return await self.ledger.transition(
            CONTEXT_SEQUENCE,
            lambda: self.backend.get_sequence(self.ledger.handle(CONTEXT))
        )

    async def create_chat_session(self) -> bool:
        """Create the chat session, restoring a preserved chat if there is one"""

        return await self.ledger.transition(
            CHAT_SESSION,
            self._open_chat_session,
            on_loaded=self._on_chat_session_loaded
        )

    async def select_model_and_load(self, model_path: str) -> bool:
        """Load the whole chain for a model file, stopping at the first failure"""

        self.selected_model_path = model_path
        await self._broadcast()

        if not self.ledger.is_loaded(LLAMA) and not await self.load_engine():
            return False

        return (
            await self.load_model(model_path)
            and await self.create_context()
            and await self.create_context_sequence()
            and await self.create_chat_session()
        )

    async def unload_model(self, preserve_chat: bool = False):
        """Dispose the model and everything built on it.

        With `preserve_chat`, the canonical history, its ids and its token
        stats survive and are restored by the next create_chat_session.
        """

        self.stop_active_prompt()

        async with self.locks.hold(MODEL, CONTEXT, CONTEXT_SEQUENCE, CHAT_SESSION):
            session = self._session()
            if preserve_chat and session is not None:
                chat = self.ledger.state(CHAT_SESSION)
                self.preserved_chat = PreservedChat(
                    messages=session.get_history(),
                    simplified_chat=chat.simplified_chat,
                    session_token_stats=chat.session_token_stats,
                    id_slots=self.projector.arena.snapshot(),
                    turn_stats=self.accountant.snapshot()
                )
            elif not preserve_chat:
                self.preserved_chat = None

            await self.ledger.dispose_locked(MODEL)
            self.projector.clear()
            self.accountant.reset_baseline()
            self._refresh_draft(None)
            await self._broadcast()

        logger.info("Model unloaded", preserve_chat=preserve_chat)

    async def shutdown(self):
        """Dispose the whole chain, engine included"""

        self.stop_active_prompt()
        await self.ledger.dispose(LLAMA)

    # Chat session

    async def _open_chat_session(self, messages: Optional[List[CanonicalHistoryItem]] = None) -> ChatSessionHandle:
        session = await self.backend.create_session(self.ledger.handle(CONTEXT_SEQUENCE))
        session.set_history(self._seed_history(messages))
        return session

    def _seed_history(self, messages: Optional[List[CanonicalHistoryItem]]) -> List[CanonicalHistoryItem]:
        if messages is not None:
            self.projector.clear()
            return list(messages)

        if self.preserved_chat is not None:
            preserved = self.preserved_chat
            self.preserved_chat = None
            self.projector.arena.restore(preserved.id_slots)
            self.accountant.restore(preserved.turn_stats, preserved.session_token_stats)
            return list(preserved.messages)

        self.projector.clear()
        return [SystemHistoryItem(text=self.system_prompt)]

    async def reset_chat_history(
        self,
        mark_as_loaded: bool = True,
        messages: Optional[List[CanonicalHistoryItem]] = None,
        log_stats: bool = False
    ) -> bool:
        async with self.locks.hold(CHAT_SESSION):
            return await self._reset_chat_history_locked(mark_as_loaded, messages, log_stats)

    async def _reset_chat_history_locked(
        self,
        mark_as_loaded: bool = True,
        messages: Optional[List[CanonicalHistoryItem]] = None,
        log_stats: bool = False
    ) -> bool:
        """Dispose and recreate the chat session object with seeded history"""

        if not self.ledger.is_loaded(CONTEXT_SEQUENCE):
            logger.warning("Cannot reset chat history without a context sequence")
            return False

        if log_stats:
            stats = self.ledger.state(CHAT_SESSION).session_token_stats
            logger.info("Session token stats before reset", **stats.model_dump())

        previous = self._session()
        if previous is not None:
            self.ledger.set_handle(CHAT_SESSION, None)
            try:
                await previous.dispose()
            except Exception as e:
                logger.error("Failed to dispose chat session", error=str(e))

        try:
            session = await self._open_chat_session(messages)
        except Exception as e:
            logger.error("Failed to create chat session", error=str(e))
            orchestrator_logger.log_resource_transition(CHAT_SESSION.value, "failed", error=str(e))
            self._refresh_draft(None)
            await self.ledger.update(
                CHAT_SESSION, loaded=False, error=str(e), generating_result=False, simplified_chat=[]
            )
            return False

        self.ledger.set_handle(CHAT_SESSION, session)
        self._refresh_draft(session)
        loaded = True if mark_as_loaded else self.ledger.state(CHAT_SESSION).loaded
        await self.ledger.update(CHAT_SESSION, loaded=loaded, error=None, **self._chat_fields(session))
        return True

    async def clear_chat(self) -> bool:
        """Start a new chat, discarding any preserved one"""

        async with self.locks.hold(CHAT_SESSION):
            self.preserved_chat = None
            return await self._reset_chat_history_locked(True)

    async def update_system_prompt(self, prompt: str) -> bool:
        """Swap the system instruction of the live chat and of future resets"""

        self.system_prompt = prompt or DEFAULT_SYSTEM_PROMPT

        async with self.locks.hold(CHAT_SESSION):
            session = self._session()
            if session is None:
                return False

            history = session.get_history()
            for index, item in enumerate(history):
                if isinstance(item, SystemHistoryItem):
                    history[index] = SystemHistoryItem(text=self.system_prompt)
                    session.set_history(history)
                    await self.ledger.update(CHAT_SESSION, **self._chat_fields(session))
                    return True

        return False

    # Generation

    def _require_idle(self):
        self.ledger.require_loaded(CHAT_SESSION)
        if self.ledger.state(CHAT_SESSION).generating_result:
            raise PreconditionError("A response is already being generated", resource=CHAT_SESSION.value)

    async def prompt(self, message: str) -> GenerationOutcome:
        """Generate a response to `message` in the live chat"""

        self._require_idle()
        async with self.locks.hold(CHAT_SESSION):
            self._require_idle()
            return await self._prompt_locked(message)

    async def _prompt_locked(self, message: str) -> GenerationOutcome:
        session = self._session()
        history_before = session.get_history()
        regenerating = (
            message == ""
            and bool(history_before)
            and isinstance(history_before[-1], UserHistoryItem)
        )
        live_user_text = None if regenerating else message

        token = CancellationToken()
        self._prompt_token = token
        self.reconciler.reset()
        self.draft_prompt = DraftPrompt()

        # Flip to generating before the first await so a concurrent prompt fails fast
        self.ledger.set(CHAT_SESSION, generating_result=True)
        await self.ledger.update(CHAT_SESSION, **self._chat_fields(session, True, live_user_text))

        async def on_fragment(fragment: ResponseFragment):
            self.reconciler.push(fragment)
            await self.ledger.update(CHAT_SESSION, **self._chat_fields(session, True, live_user_text))

        measurement = self.accountant.begin(self._meter())
        outcome = GenerationOutcome.CANCELLED
        try:
            outcome = await session.prompt(
                message,
                signal=token,
                on_fragment=on_fragment,
                tools=self.tool_executor
            )
        except GenerationAbort:
            logger.info("Prompt aborted before generation started")
        except Exception as e:
            logger.error("Prompt failed", error=str(e))
            self.reconciler.reset()
            # Ids minted for the failed in-flight items must not leak to later turns
            self.projector.arena.truncate(len(session.get_history()))
            await self.ledger.update(CHAT_SESSION, **self._chat_fields(session))
            raise
        finally:
            self._prompt_token = None

        if outcome == GenerationOutcome.CANCELLED:
            self._commit_partial(session, history_before, message, regenerating)

        history = session.get_history()
        self.projector.arena.truncate(len(history))

        if len(history) > len(history_before) and isinstance(history[-1], ModelHistoryItem):
            position = _last_user_index(history)
            if position is not None:
                record = self.accountant.complete(measurement, self._meter(), position, history[position].text)
                orchestrator_logger.log_generation(
                    outcome.value,
                    input_tokens=record.token_stats.input_tokens,
                    output_tokens=record.token_stats.output_tokens,
                    duration_ms=record.performance_stats.duration_ms,
                    tokens_per_second=record.performance_stats.tokens_per_second
                )

        self.reconciler.reset()
        self._refresh_draft(session)
        await self.ledger.update(CHAT_SESSION, **self._chat_fields(session))
        return outcome

    def _commit_partial(
        self,
        session: ChatSessionHandle,
        history_before: List[CanonicalHistoryItem],
        message: str,
        regenerating: bool
    ):
        """Keep output produced before a stop if the engine did not commit it"""

        blocks = self.reconciler.blocks
        if not blocks or len(session.get_history()) > len(history_before):
            return

        committed = list(history_before)
        if not regenerating:
            committed.append(UserHistoryItem(text=message))
        committed.append(ModelHistoryItem(response=blocks_to_response(blocks)))
        session.set_history(committed)

    def stop_active_prompt(self) -> bool:
        """Ask the engine to stop; output produced so far is kept"""

        if self._prompt_token is None:
            return False
        self._prompt_token.cancel("stopped by user")
        return True

    async def set_draft_prompt(self, prompt: str) -> bool:
        """Record the text being typed and refresh its suggested completion"""

        session = self._session()
        if session is None:
            return False

        self.draft_prompt = DraftPrompt(prompt=prompt)
        self._refresh_draft(session)
        await self._broadcast()
        return True

    # History editing

    async def delete_message(self, item_id: str) -> bool:
        """Drop the user turn `item_id` and everything after it"""

        async with self.locks.hold(CHAT_SESSION):
            self.ledger.require_loaded(CHAT_SESSION)
            session = self._session()
            history = session.get_history()

            cut = self.editor.plan_delete(history, self.projector.project(history), item_id)
            if cut is None:
                return False

            self.editor.apply(session, cut, "delete", item_id)
            await self.ledger.update(CHAT_SESSION, **self._chat_fields(session))
            return True

    async def regenerate_message(self, item_id: str) -> Optional[GenerationOutcome]:
        """Drop model response `item_id` and everything after it, then generate a fresh one"""

        async with self.locks.hold(CHAT_SESSION):
            self.ledger.require_loaded(CHAT_SESSION)
            session = self._session()
            history = session.get_history()

            cut = self.editor.plan_regenerate(history, self.projector.project(history), item_id)
            if cut is None:
                return None

            self.editor.apply(session, cut, "regenerate", item_id)
            await self.ledger.update(CHAT_SESSION, **self._chat_fields(session))
            return await self._prompt_locked("")

    # Import / export

    def _model_label(self) -> str:
        name = self.ledger.state(MODEL).name
        if name:
            return name
        return Path(self.selected_model_path).name if self.selected_model_path else ""

    async def export_chat_session(self, output_path: str) -> bool:
        """Write the canonical history as a versioned JSON document"""

        async with self.locks.hold(CHAT_SESSION):
            session = self._session()
            messages = session.get_history() if session is not None else []
            if not messages:
                logger.warning("No chat messages to save")
                return False

            document = ExportedChatSession(
                model=self._model_label(),
                created_at=datetime.now(timezone.utc).isoformat(),
                messages=messages
            )
            try:
                await asyncio.to_thread(
                    Path(output_path).write_text,
                    json.dumps(document.model_dump(mode="json", by_alias=True), indent=2),
                    encoding="utf-8"
                )
                return True
            except OSError as e:
                logger.error("Failed to save chat session", path=output_path, error=str(e))
                return False

    async def import_chat_session(self, input_path: str) -> bool:
        """Replace the live chat with an exported session file"""

        async with self.locks.hold(CHAT_SESSION):
            try:
                raw = json.loads(await asyncio.to_thread(Path(input_path).read_text, encoding="utf-8"))
                document = ExportedChatSession.model_validate(raw)
            except (OSError, ValueError) as e:
                logger.error("Failed to import chat session", path=input_path, error=str(e))
                return False

            if document.version != "1.0":
                logger.error("Invalid chat session format", version=document.version)
                return False

            return await self._reset_chat_history_locked(True, list(document.messages))

    # Saved chats

    async def _current_messages(self) -> List[CanonicalHistoryItem]:
        async with self.locks.hold(CHAT_SESSION):
            session = self._session()
            if session is None or not self.ledger.state(CHAT_SESSION).loaded:
                return []
            return session.get_history()

    async def save_current_chat(self, title: Optional[str] = None) -> Optional[SavedChat]:
        messages = await self._current_messages()
        if not any(not isinstance(item, SystemHistoryItem) for item in messages):
            logger.warning("No active chat to save")
            return None

        chat = await self.chat_store.save_chat(
            title or generate_chat_title(messages),
            messages,
            model=self.ledger.state(MODEL).name
        )
        logger.info("Current chat saved", chat_id=chat.id, title=chat.title)
        return chat

    async def update_current_chat(self, chat_id: str) -> Optional[SavedChat]:
        existing = await self.chat_store.get_chat_by_id(chat_id)
        if existing is None:
            return None

        messages = await self._current_messages()
        if not messages:
            return None

        return await self.chat_store.save_chat(
            existing.title,
            messages,
            model=self.ledger.state(MODEL).name,
            chat_id=chat_id
        )

    async def load_chat(self, chat_id: str) -> bool:
        """Make a saved chat the live chat when the model chain is ready"""

        chat = await self.chat_store.get_chat_by_id(chat_id)
        if chat is None:
            logger.error("Chat not found", chat_id=chat_id)
            return False

        if not (self.ledger.is_loaded(LLAMA) and self.ledger.is_loaded(MODEL)):
            logger.info("Model not ready, chat not imported into the live session", chat_id=chat_id)
            return True

        if not self.ledger.is_loaded(CHAT_SESSION):
            try:
                await self.create_chat_session()
            except PreconditionError as e:
                logger.error("Failed to create chat session", chat_id=chat_id, error=str(e))
                return True

        if self.ledger.is_loaded(CHAT_SESSION):
            await self.reset_chat_history(True, list(chat.messages))

        return True
