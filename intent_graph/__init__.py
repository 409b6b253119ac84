from intent_graph.domain.capability.capability_registry import Capability, CapabilityRegistry, intents_for
from intent_graph.domain.context.memory.in_memory_session_store import InMemorySessionStore
from intent_graph.domain.context.memory.session_store import SessionStore, derive_sub_session_id
from intent_graph.domain.errors import (
    OrchestrationError, ConfigurationError, RoutingError, HandlerError, CombinerError,
    LimitExceededError, OrchestrationTimeoutError, SessionNotFoundError, SessionConflictError
)
from intent_graph.domain.models.orchestration_state import (
    AgentContext, Intent, IntentAction, HandlerResult, ClarificationOption,
    InvokeOptions, OrchestrationEvent, OrchestrationResult
)
from intent_graph.domain.models.session import SessionConfig, Session, ConversationInfo
from intent_graph.domain.orchestration.core.orchestrator_graph import Orchestrator
from intent_graph.domain.orchestration.subagent.base_subagent import ConversationalSubAgent
from intent_graph.domain.provider.model_provider import ModelProvider, LangChainModelProvider
from intent_graph.infrastructure.config.settings import OrchestratorSettings
from intent_graph.infrastructure.observability.logging import setup_logging
from intent_graph.infrastructure.observability.tracing import Tracer, NullTracer, GuardedTracer, LangfuseTracer

__version__ = "0.1.0"
