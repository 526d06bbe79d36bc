from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Optional, Set
from datetime import datetime, timezone
from pydantic import ValidationError
import asyncio
import structlog

from session_orchestrator.application.api.api_server import install_api
from session_orchestrator.domain.models.errors import PreconditionError
from session_orchestrator.domain.orchestration.core.orchestrator import Orchestrator
from session_orchestrator.domain.tool.tool_executor import ConsentGate, ToolExecutor
from session_orchestrator.infrastructure.config.settings import OrchestratorSettings, load_settings
from session_orchestrator.infrastructure.engine.mock_engine import MockInferenceBackend
from session_orchestrator.infrastructure.observability.logging import setup_logging
from .connection_manager import ConnectionManager
from .schema.events import ConsentResponse, DraftPromptMessage, EventType, StateUpdateEvent, UserMessage

logger = structlog.get_logger(__name__)


def build_orchestrator(settings: OrchestratorSettings) -> Orchestrator:
    """Orchestrator over the mock backend, with tool consent configured from settings"""
    consent_gate = ConsentGate(
        require_consent=settings.require_tool_consent,
        timeout=settings.consent_timeout_s
    )
    return Orchestrator(
        MockInferenceBackend(),
        settings=settings,
        tool_executor=ToolExecutor(consent_gate=consent_gate)
    )


def create_app(
    orchestrator: Optional[Orchestrator] = None,
    settings: Optional[OrchestratorSettings] = None
) -> FastAPI:
    """Build the HTTP + WebSocket front of one orchestrator"""

    settings = settings or (orchestrator.settings if orchestrator else load_settings())
    orchestrator = orchestrator or build_orchestrator(settings)
    connection_manager = ConnectionManager()
    prompt_tasks: Set[asyncio.Task] = set()

    # Every state snapshot and consent request goes out to the renderers
    orchestrator.broadcaster.subscribe(connection_manager.push_state)
    orchestrator.tool_executor.consent_gate.add_listener(connection_manager.push_consent_request)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Orchestrator server started", service=settings.service_name)
        yield

        for client_id in list(connection_manager.active_connections.keys()):
            await connection_manager.disconnect(client_id)
        for task in list(prompt_tasks):
            task.cancel()
        await orchestrator.shutdown()
        logger.info("Orchestrator server shutdown")

    app = FastAPI(title="Session Orchestrator", lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.state.connection_manager = connection_manager
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_api(app)

    async def run_prompt(client_id: str, content: str):
        try:
            await orchestrator.prompt(content)
        except PreconditionError as e:
            await connection_manager.send_error(client_id, str(e), error_code="precondition_failed")
        except Exception as e:
            logger.error("Prompt failed", client_id=client_id, error=str(e))
            await connection_manager.send_error(client_id, f"Prompt failed: {str(e)}")

    @app.websocket("/ws/llm/{client_id}")
    async def llm_websocket(websocket: WebSocket, client_id: str):
        """Renderer channel: state pushes out, prompts and consent answers in"""

        await connection_manager.connect(websocket, client_id)
        structlog.contextvars.bind_contextvars(client_id=client_id)

        try:
            await connection_manager.send_event(
                client_id,
                StateUpdateEvent(payload=orchestrator.get_state().model_dump(mode="json", by_alias=True))
            )

            while True:
                data = await websocket.receive_json()

                try:
                    event_type = data.get("type")

                    if event_type == EventType.USER_MESSAGE:
                        message = UserMessage(**data)
                        # Generation streams through state pushes; keep reading stop and consent messages
                        task = asyncio.create_task(run_prompt(client_id, message.content))
                        prompt_tasks.add(task)
                        task.add_done_callback(prompt_tasks.discard)

                    elif event_type == EventType.STOP:
                        orchestrator.stop_active_prompt()

                    elif event_type == EventType.DRAFT_PROMPT:
                        draft = DraftPromptMessage(**data)
                        await orchestrator.set_draft_prompt(draft.content)

                    elif event_type == EventType.CONSENT_RESPONSE:
                        answer = ConsentResponse(**data)
                        if not orchestrator.tool_executor.consent_gate.resolve(answer.request_id, answer.approved):
                            await connection_manager.send_error(
                                client_id, f"Consent request {answer.request_id} not pending"
                            )

                    else:
                        await connection_manager.send_error(client_id, f"Unknown event type: {event_type}")

                except ValidationError as e:
                    logger.warning("Invalid client message", error=str(e))
                    await connection_manager.send_error(client_id, f"Invalid message: {str(e)}")

        except WebSocketDisconnect:
            logger.info("Client disconnected", client_id=client_id)
        except Exception as e:
            logger.error("WebSocket error", error=str(e), client_id=client_id)
        finally:
            await connection_manager.disconnect(client_id)
            structlog.contextvars.unbind_contextvars("client_id")

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        state = orchestrator.get_state()
        return {
            "status": "healthy",
            "active_connections": len(connection_manager.active_connections),
            "model_loaded": state.model.loaded,
            "chat_session_loaded": state.chat_session.loaded,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    return app


def main():
    settings = load_settings()
    setup_logging(settings.log_level, settings.log_format, settings.service_name)

    import uvicorn
    uvicorn.run(create_app(settings=settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
