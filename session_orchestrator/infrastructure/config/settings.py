from typing import List, Optional
from pydantic import BaseModel, Field
import os


DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful, respectful and honest assistant. Always answer as helpfully as possible.\n"
    "If a question does not make any sense, or is not factually coherent, explain why instead of "
    "answering something incorrectly. If you don't know the answer to a question, don't share false information."
)


class OrchestratorSettings(BaseModel):
    """Runtime configuration read from ORCHESTRATOR_* environment variables"""
    log_level: str = "INFO"
    log_format: str = "json"
    service_name: str = "session-orchestrator"
    host: str = "127.0.0.1"
    port: int = 8000
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"])
    export_dir: str = "~/.session-orchestrator/exports"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    require_tool_consent: bool = True
    consent_timeout_s: Optional[float] = 120.0


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_settings(prefix: str = "ORCHESTRATOR_") -> OrchestratorSettings:
    """Build settings from the environment, falling back to defaults"""

    raw = {}
    for field_name in OrchestratorSettings.model_fields:
        value = os.getenv(f"{prefix}{field_name.upper()}")
        if value is None:
            continue
        if field_name == "require_tool_consent":
            raw[field_name] = _env_bool(value)
        elif field_name == "consent_timeout_s" and value.strip().lower() in ("", "none"):
            raw[field_name] = None
        elif field_name == "cors_origins":
            raw[field_name] = [origin.strip() for origin in value.split(",") if origin.strip()]
        else:
            raw[field_name] = value

    return OrchestratorSettings(**raw)
