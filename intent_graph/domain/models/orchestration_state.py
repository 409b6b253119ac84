from typing import Dict, Any, List, Optional, Annotated, TypedDict, Callable, Awaitable
from pydantic import BaseModel, Field, ConfigDict
from enum import Enum
from langchain_core.messages import BaseMessage

from intent_graph.domain.models.session import SessionConfig


GREETING = "greeting"
CLARIFICATION = "clarification"
ERROR = "error"

# System tags that no capability may use as its name or intent tag
RESERVED_TAGS = frozenset({GREETING, CLARIFICATION, ERROR})

HANDLER_RESULT_SCHEMA_VERSION = "1"


class IntentAction(str, Enum):
    """Operation an intent asks a capability to perform"""
    LIST = "list"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SEARCH = "search"
    GET = "get"
    UNKNOWN = "unknown"


class ErrorCode(str, Enum):
    """Machine-readable error codes surfaced on the orchestration result"""
    ROUTING_ERROR = "routing_error"
    HANDLER_ERROR = "handler_error"
    COMBINER_ERROR = "combiner_error"
    LIMIT_EXCEEDED = "limit_exceeded"
    TIMEOUT = "timeout"
    PERSISTENCE_ERROR = "persistence_error"
    INTERNAL_ERROR = "internal_error"


class AgentContext(BaseModel):
    """Multi-tenant caller context"""
    model_config = ConfigDict(frozen=True)

    user_id: str = Field(description="User identifier")
    team_id: str = Field(description="Team (tenant) identifier")
    user_name: Optional[str] = Field(None, description="Display name, used for logging only")
    extras: Dict[str, Any] = Field(default_factory=dict, description="Application-specific context")


class Intent(BaseModel):
    """Structured classification of (part of) a user request"""
    type: str = Field(description="Capability name or 'greeting'")
    action: IntentAction = Field(default=IntentAction.UNKNOWN)
    slots: Dict[str, Any] = Field(default_factory=dict, description="Extracted parameters")
    original_text: str = Field(default="", description="Portion of the message that maps to this intent")


class ClarificationOption(BaseModel):
    """One choice offered to the user when the request is ambiguous"""
    label: str
    description: str = ""
    capability: Optional[str] = None


class HandlerResult(BaseModel):
    """Outcome of one capability handler.

    ``data`` is an opaque payload owned by the capability; ``schema_version``
    documents its shape so consumers can evolve independently of the engine.
    """
    success: bool
    operation: str = Field(default=IntentAction.UNKNOWN.value)
    data: Any = None
    count: Optional[int] = None
    message: Optional[str] = None
    error: Optional[str] = None
    schema_version: str = Field(default=HANDLER_RESULT_SCHEMA_VERSION)


def merge_handler_results(current: Optional[Dict[str, HandlerResult]],
                          update: Optional[Dict[str, HandlerResult]]) -> Dict[str, HandlerResult]:
    """Reducer for handler_results: per-capability keys are merged, never replaced wholesale"""
    if not update:
        return dict(current or {})
    return {**(current or {}), **update}


def append_completed(current: Optional[List[str]], update: Optional[List[str]]) -> List[str]:
    """Reducer for completed_handlers: append-only, first occurrence wins"""
    merged = list(current or [])
    for name in update or []:
        if name not in merged:
            merged.append(name)
    return merged


def keep_first_response(current: Optional[str], update: Optional[str]) -> Optional[str]:
    """Reducer for final_response: once set it never changes"""
    if current:
        return current
    return update


class OrchestrationState(TypedDict):
    """State channels for one orchestration pass"""
    # Input channels
    input: str
    session_id: str
    context: AgentContext
    history: List[BaseMessage]
    language: str
    trace_id: Optional[str]

    # Router output channels
    intents: List[Intent]
    needs_clarification: bool
    clarification_question: Optional[str]
    clarification_options: List[ClarificationOption]

    # Handler output channels
    handler_results: Annotated[dict, merge_handler_results]
    completed_handlers: Annotated[list, append_completed]

    # Final output channels
    final_response: Annotated[Optional[str], keep_first_response]
    error: Optional[str]
    error_code: Optional[str]


class OrchestrationEvent(BaseModel):
    """Progress notification emitted while a pass runs"""
    type: str = Field(description="'progress' or 'response'")
    node: str
    trace_id: Optional[str] = None
    session_id: Optional[str] = None
    status: str = ""
    step_index: Optional[int] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class InvokeOptions(BaseModel):
    """Per-call options for Orchestrator.invoke"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    session_config: Optional[SessionConfig] = None
    timeout_ms: Optional[int] = Field(None, gt=0)
    trace_id: Optional[str] = None
    on_event: Optional[Callable[[OrchestrationEvent], Awaitable[None]]] = None


class OrchestrationResult(BaseModel):
    """Final state of one pass, as returned to the caller"""
    final_response: str
    session_id: str
    trace_id: Optional[str] = None
    language: str = "en"
    intents: List[Intent] = Field(default_factory=list)
    completed_handlers: List[str] = Field(default_factory=list)
    handler_results: Dict[str, HandlerResult] = Field(default_factory=dict)
    needs_clarification: bool = False
    clarification_question: Optional[str] = None
    clarification_options: List[ClarificationOption] = Field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[str] = None
    duration_ms: float = 0.0

    def get_summary(self) -> Dict[str, Any]:
        """Compact summary for logging"""
        return {
            "intents": [intent.type for intent in self.intents],
            "completed_handlers": self.completed_handlers,
            "has_response": bool(self.final_response),
            "error_code": self.error_code,
            "duration_ms": round(self.duration_ms, 2)
        }
