import structlog
import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import os


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "session-orchestrator"
) -> None:
    """Setup structured logging configuration"""

    # Configure Python logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    # Processors for structlog
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    # Add appropriate renderer based on format
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    # Configure structlog
    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Set service name in context
    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add service context to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

    # Client the current request came from, if bound by the transport
    client_id = structlog.contextvars.get_contextvars().get("client_id")
    if client_id:
        event_dict["client_id"] = client_id

    return event_dict


class OrchestratorLogger:
    """Specialized logger for orchestrator operations"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_resource_transition(
        self,
        resource: str,
        action: str,
        error: Optional[str] = None,
        **kwargs
    ):
        """Log resource lifecycle transitions"""

        if error:
            self.logger.warning(
                "resource_transition",
                resource=resource,
                action=action,
                error=error,
                **kwargs
            )
            return

        self.logger.info(
            "resource_transition",
            resource=resource,
            action=action,
            **kwargs
        )

    def log_generation(
        self,
        outcome: str,
        input_tokens: int = 0,
        output_tokens: int = 0,
        duration_ms: Optional[float] = None,
        tokens_per_second: Optional[float] = None
    ):
        """Log a finished generation call"""

        self.logger.info(
            "generation",
            outcome=outcome,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            duration_ms=duration_ms,
            tokens_per_second=tokens_per_second
        )

    def log_history_edit(
        self,
        action: str,
        item_id: str,
        cut_at: Optional[int] = None,
        remaining: Optional[int] = None
    ):
        """Log structural edits to the chat history"""

        self.logger.info(
            "history_edit",
            action=action,
            item_id=item_id,
            cut_at=cut_at,
            remaining=remaining
        )

    def log_tool_execution(
        self,
        tool_name: str,
        input_data: Dict[str, Any],
        output_data: Optional[Any] = None,
        duration_ms: Optional[float] = None,
        success: bool = True,
        error: Optional[str] = None
    ):
        """Log tool execution events"""

        self.logger.info(
            "tool_execution",
            tool_name=tool_name,
            input_data=input_data,
            output_data=output_data,
            duration_ms=duration_ms,
            success=success,
            error=error
        )


# Global logger instance
orchestrator_logger = OrchestratorLogger("orchestrator")
