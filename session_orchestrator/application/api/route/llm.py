from typing import Annotated, Any, Dict, List, Optional
from pathlib import Path
from fastapi import APIRouter, Depends, HTTPException, Request
import structlog

from session_orchestrator.domain.models.chat_state import CanonicalHistoryItem, SavedChat, WireModel
from session_orchestrator.domain.orchestration.core.orchestrator import Orchestrator
from session_orchestrator.domain.tool.tool_executor import ConsentRequest
from session_orchestrator.infrastructure.config.settings import OrchestratorSettings

logger = structlog.get_logger(__name__)

router = APIRouter()


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


OrchestratorDep = Annotated[Orchestrator, Depends(get_orchestrator)]


def get_settings(request: Request) -> OrchestratorSettings:
    return request.app.state.settings


SettingsDep = Annotated[OrchestratorSettings, Depends(get_settings)]


class LoadModelRequest(WireModel):
    model_path: str


class UnloadModelRequest(WireModel):
    preserve_chat: bool = False


class PromptRequest(WireModel):
    message: str


class FilePathRequest(WireModel):
    path: str


class SystemPromptRequest(WireModel):
    prompt: str


class DraftPromptRequest(WireModel):
    prompt: str


class ResetChatRequest(WireModel):
    mark_as_loaded: bool = True
    messages: Optional[List[CanonicalHistoryItem]] = None
    log_stats: bool = False


class SaveChatRequest(WireModel):
    title: Optional[str] = None


class ChatTitleRequest(WireModel):
    title: str


class ConsentDecision(WireModel):
    approved: bool


def _dump(model: WireModel) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


def resolve_chat_file(settings: OrchestratorSettings, path: str) -> Path:
    """Resolve a chat file path, refusing anything outside the export directory"""

    root = Path(settings.export_dir).expanduser().resolve()
    target = (root / path).resolve()
    if target == root or not target.is_relative_to(root):
        logger.warning("Rejected chat file path", path=path, export_dir=str(root))
        raise HTTPException(status_code=400, detail="Chat files must stay inside the export directory")
    return target


# Model lifecycle

@router.get("/api/v1/llm/state")
async def get_state(orchestrator: OrchestratorDep):
    return _dump(orchestrator.get_state())


@router.post("/api/v1/llm/model/load")
async def load_model(request: LoadModelRequest, orchestrator: OrchestratorDep):
    loaded = await orchestrator.select_model_and_load(request.model_path)
    return {"loaded": loaded, "state": _dump(orchestrator.get_state())}


@router.post("/api/v1/llm/model/unload")
async def unload_model(request: UnloadModelRequest, orchestrator: OrchestratorDep):
    await orchestrator.unload_model(preserve_chat=request.preserve_chat)
    return {"unloaded": True}


# Live chat

@router.post("/api/v1/llm/chat/prompt")
async def prompt(request: PromptRequest, orchestrator: OrchestratorDep):
    outcome = await orchestrator.prompt(request.message)
    return {"outcome": outcome.value}


@router.post("/api/v1/llm/chat/stop")
async def stop(orchestrator: OrchestratorDep):
    return {"stopped": orchestrator.stop_active_prompt()}


@router.post("/api/v1/llm/chat/reset")
async def reset_chat(orchestrator: OrchestratorDep, request: Optional[ResetChatRequest] = None):
    request = request or ResetChatRequest()
    reset = await orchestrator.reset_chat_history(
        mark_as_loaded=request.mark_as_loaded,
        messages=request.messages,
        log_stats=request.log_stats
    )
    return {"reset": reset}


@router.post("/api/v1/llm/chat/clear")
async def clear_chat(orchestrator: OrchestratorDep):
    return {"cleared": await orchestrator.clear_chat()}


@router.post("/api/v1/llm/chat/messages/{item_id}/delete")
async def delete_message(item_id: str, orchestrator: OrchestratorDep):
    return {"deleted": await orchestrator.delete_message(item_id)}


@router.post("/api/v1/llm/chat/messages/{item_id}/regenerate")
async def regenerate_message(item_id: str, orchestrator: OrchestratorDep):
    outcome = await orchestrator.regenerate_message(item_id)
    return {"regenerated": outcome is not None, "outcome": outcome.value if outcome else None}


@router.post("/api/v1/llm/chat/export")
async def export_chat(request: FilePathRequest, orchestrator: OrchestratorDep, settings: SettingsDep):
    target = resolve_chat_file(settings, request.path)
    target.parent.mkdir(parents=True, exist_ok=True)
    return {"saved": await orchestrator.export_chat_session(str(target))}


@router.post("/api/v1/llm/chat/import")
async def import_chat(request: FilePathRequest, orchestrator: OrchestratorDep, settings: SettingsDep):
    target = resolve_chat_file(settings, request.path)
    return {"imported": await orchestrator.import_chat_session(str(target))}


@router.put("/api/v1/llm/chat/system-prompt")
async def update_system_prompt(request: SystemPromptRequest, orchestrator: OrchestratorDep):
    return {"updated": await orchestrator.update_system_prompt(request.prompt)}


@router.put("/api/v1/llm/chat/draft-prompt")
async def set_draft_prompt(request: DraftPromptRequest, orchestrator: OrchestratorDep):
    return {"updated": await orchestrator.set_draft_prompt(request.prompt)}


# Saved chats

@router.get("/api/v1/chats")
async def list_chats(orchestrator: OrchestratorDep) -> List[Dict[str, Any]]:
    return [_dump(chat) for chat in await orchestrator.chat_store.get_all_chats()]


@router.post("/api/v1/chats")
async def save_current_chat(request: SaveChatRequest, orchestrator: OrchestratorDep):
    chat = await orchestrator.save_current_chat(request.title)
    if chat is None:
        raise HTTPException(status_code=400, detail="No active chat to save")
    return _dump(chat)


async def _require_chat(orchestrator: Orchestrator, chat_id: str) -> SavedChat:
    chat = await orchestrator.chat_store.get_chat_by_id(chat_id)
    if chat is None:
        raise HTTPException(status_code=404, detail=f"Chat {chat_id} not found")
    return chat


@router.get("/api/v1/chats/{chat_id}")
async def get_chat(chat_id: str, orchestrator: OrchestratorDep):
    return _dump(await _require_chat(orchestrator, chat_id))


@router.put("/api/v1/chats/{chat_id}")
async def update_current_chat(chat_id: str, orchestrator: OrchestratorDep):
    await _require_chat(orchestrator, chat_id)
    chat = await orchestrator.update_current_chat(chat_id)
    if chat is None:
        raise HTTPException(status_code=400, detail="No active chat to save")
    return _dump(chat)


@router.patch("/api/v1/chats/{chat_id}")
async def update_chat_title(chat_id: str, request: ChatTitleRequest, orchestrator: OrchestratorDep):
    if not await orchestrator.chat_store.update_chat_title(chat_id, request.title):
        raise HTTPException(status_code=404, detail=f"Chat {chat_id} not found")
    return {"updated": True}


@router.delete("/api/v1/chats/{chat_id}")
async def delete_chat(chat_id: str, orchestrator: OrchestratorDep):
    if not await orchestrator.chat_store.delete_chat(chat_id):
        raise HTTPException(status_code=404, detail=f"Chat {chat_id} not found")
    return {"deleted": True}


@router.post("/api/v1/chats/{chat_id}/load")
async def load_chat(chat_id: str, orchestrator: OrchestratorDep):
    await _require_chat(orchestrator, chat_id)
    return {"loaded": await orchestrator.load_chat(chat_id)}


# Tools

@router.get("/api/v1/tools")
async def list_tools(orchestrator: OrchestratorDep):
    return orchestrator.tool_executor.list_tools()


@router.get("/api/v1/tools/consent")
async def pending_consent(orchestrator: OrchestratorDep) -> List[ConsentRequest]:
    return orchestrator.tool_executor.consent_gate.pending_requests()


@router.post("/api/v1/tools/consent/{request_id}")
async def resolve_consent(request_id: str, decision: ConsentDecision, orchestrator: OrchestratorDep):
    if not orchestrator.tool_executor.consent_gate.resolve(request_id, decision.approved):
        raise HTTPException(status_code=404, detail=f"Consent request {request_id} not pending")
    logger.info("Consent resolved", request_id=request_id, approved=decision.approved)
    return {"resolved": True}
