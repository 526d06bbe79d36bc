from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import structlog

from session_orchestrator.domain.models.errors import OrchestratorError, PreconditionError
from .route.llm import router

logger = structlog.get_logger(__name__)


async def bind_request_context(request: Request, call_next):
    """Bind the calling client to every log line of the request"""
    structlog.contextvars.bind_contextvars(client_id=request.headers.get("X-Client-ID"))
    try:
        return await call_next(request)
    finally:
        structlog.contextvars.unbind_contextvars("client_id")


async def precondition_error_handler(request: Request, exc: PreconditionError):
    logger.warning("Precondition failed", path=request.url.path, resource=exc.resource, error=str(exc))
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "resource": exc.resource}
    )


async def orchestrator_error_handler(request: Request, exc: OrchestratorError):
    logger.error("Orchestrator error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"detail": str(exc)})


def install_api(app: FastAPI):
    """Attach the HTTP routes, error mapping and request context middleware"""
    app.middleware("http")(bind_request_context)
    app.add_exception_handler(PreconditionError, precondition_error_handler)
    app.add_exception_handler(OrchestratorError, orchestrator_error_handler)
    app.include_router(router)
