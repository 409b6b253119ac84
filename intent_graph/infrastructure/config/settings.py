from typing import Optional, Mapping
import os
from pydantic import BaseModel, Field, ValidationError, field_validator

from intent_graph.domain.errors import ConfigurationError
from intent_graph.domain.models.session import (
    SessionConfig, DEFAULT_MAX_MESSAGES, DEFAULT_MAX_CONVERSATIONS
)

ENV_PREFIX = "INTENT_GRAPH_"


class OrchestratorSettings(BaseModel):
    """Engine-wide defaults; per-call options override them"""

    max_messages: int = Field(default=DEFAULT_MAX_MESSAGES, gt=0)
    max_conversations: int = Field(default=DEFAULT_MAX_CONVERSATIONS, gt=0)
    router_history_messages: int = Field(default=5, ge=0)
    timeout_ms: Optional[int] = Field(default=60_000, gt=0)
    log_level: str = "INFO"
    log_format: str = "json"
    service_name: str = "intent-graph"

    @field_validator("log_format")
    @classmethod
    def _check_format(cls, value: str) -> str:
        if value not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return value

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "OrchestratorSettings":
        """Build settings from INTENT_GRAPH_* environment variables"""

        environ = os.environ if environ is None else environ
        fields = {
            "max_messages": "MAX_MESSAGES",
            "max_conversations": "MAX_CONVERSATIONS",
            "router_history_messages": "ROUTER_HISTORY_MESSAGES",
            "timeout_ms": "TIMEOUT_MS",
            "log_level": "LOG_LEVEL",
            "log_format": "LOG_FORMAT",
            "service_name": "SERVICE_NAME",
        }
        values = {
            field: environ[ENV_PREFIX + suffix]
            for field, suffix in fields.items()
            if environ.get(ENV_PREFIX + suffix)
        }
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid settings: {e}", {"fields": sorted(values)}) from e

    def session_config(self) -> SessionConfig:
        return SessionConfig(max_messages=self.max_messages, max_conversations=self.max_conversations)
