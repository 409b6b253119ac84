from typing import Any, Dict, List, Mapping, Optional, Sequence, Union
import asyncio
import time
import uuid
import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
from langgraph.graph import StateGraph, START, END

from intent_graph.domain.capability.capability_executor import CapabilityExecutor
from intent_graph.domain.capability.capability_registry import CapabilityRegistry
from intent_graph.domain.context.memory.session_store import SessionStore
from intent_graph.domain.errors import ConfigurationError, LimitExceededError
from intent_graph.domain.models.orchestration_state import (
    GREETING, AgentContext, ErrorCode, InvokeOptions, OrchestrationResult, OrchestrationState
)
from intent_graph.domain.models.session import SessionConfig
from intent_graph.domain.orchestration.combiner.combiner_node import CombinerNode
from intent_graph.domain.orchestration.combiner.templates import detect_language, localize
from intent_graph.domain.orchestration.core.system_nodes import (
    ROUTER_NODE, GREETING_NODE, CLARIFICATION_NODE, ERROR_NODE, COMBINER_NODE,
    greeting_node, clarification_update, error_node
)
from intent_graph.domain.orchestration.router.intent_router import IntentRouter
from intent_graph.domain.provider.model_provider import ModelProvider
from intent_graph.domain.streaming.streaming_handler import StreamingHandler
from intent_graph.infrastructure.config.settings import OrchestratorSettings
from intent_graph.infrastructure.observability.logging import agent_logger, metrics
from intent_graph.infrastructure.observability.tracing import Tracer, NullTracer, GuardedTracer

logger = structlog.get_logger(__name__)


def coerce_context(context: Union[AgentContext, Mapping[str, Any]]) -> AgentContext:
    """Accept an AgentContext or a plain {user_id, team_id, ...extras} mapping"""

    if isinstance(context, AgentContext):
        return context
    values = dict(context)
    known = {key: values.pop(key) for key in ("user_id", "team_id", "user_name") if key in values}
    extras = values.pop("extras", {}) or {}
    return AgentContext(**known, extras={**extras, **values})


class Orchestrator:
    """Intent-routing orchestration engine.

    The graph is built once from the capability registry: a router node, one
    node per capability, the greeting/clarification/error system nodes and a
    combiner. Each ``invoke`` runs exactly one user turn through it.
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        provider: ModelProvider,
        session_store: Optional[SessionStore] = None,
        settings: Optional[OrchestratorSettings] = None,
        tracer: Optional[Tracer] = None,
        router_prompt_extras: Optional[str] = None
    ):
        if len(registry) == 0:
            raise ConfigurationError("Cannot build an orchestrator without capabilities")

        self.registry = registry
        self.provider = provider
        self.session_store = session_store
        self.settings = settings or OrchestratorSettings()
        self.tracer = GuardedTracer(tracer) if tracer is not None else NullTracer()

        registry.freeze()
        self.router = IntentRouter(
            registry, provider, self.tracer,
            history_limit=self.settings.router_history_messages,
            prompt_extras=router_prompt_extras
        )
        self.combiner = CombinerNode(registry, provider, self.tracer)
        self.executors = {capability.name: CapabilityExecutor(capability) for capability in registry}
        # router + every handler + combiner, with headroom
        self.recursion_limit = len(registry) + 5
        self.workflow = self._create_workflow()

    def _create_workflow(self):
        """Compile the orchestration graph"""

        workflow = StateGraph(OrchestrationState)

        workflow.add_node(ROUTER_NODE, self.router)
        workflow.add_node(GREETING_NODE, greeting_node)
        workflow.add_node(CLARIFICATION_NODE, self.clarification_node)
        workflow.add_node(ERROR_NODE, error_node)
        workflow.add_node(COMBINER_NODE, self.combiner)
        for capability in self.registry:
            workflow.add_node(capability.node_name, self.executors[capability.name])

        workflow.add_edge(START, ROUTER_NODE)

        handler_nodes = {c.node_name: c.node_name for c in self.registry}
        workflow.add_conditional_edges(
            ROUTER_NODE,
            self.route_after_router,
            {
                ERROR_NODE: ERROR_NODE,
                CLARIFICATION_NODE: CLARIFICATION_NODE,
                GREETING_NODE: GREETING_NODE,
                **handler_nodes,
            }
        )
        for capability in self.registry:
            workflow.add_conditional_edges(
                capability.node_name,
                self.route_after_handler,
                {ERROR_NODE: ERROR_NODE, COMBINER_NODE: COMBINER_NODE, **handler_nodes}
            )

        workflow.add_edge(GREETING_NODE, COMBINER_NODE)
        workflow.add_edge(CLARIFICATION_NODE, END)
        workflow.add_edge(ERROR_NODE, END)
        workflow.add_edge(COMBINER_NODE, END)

        return workflow.compile()

    # Nodes and routing

    async def clarification_node(self, state: Mapping[str, Any]) -> Dict[str, Any]:
        return clarification_update(state, self.router.default_options())

    def needed_capabilities(self, state: Mapping[str, Any]) -> List[str]:
        """Capabilities addressed by the intents, in registration order"""
        requested = {intent.type for intent in state.get("intents") or []}
        return [name for name in self.registry.names() if name in requested]

    def route_after_router(self, state: Mapping[str, Any]) -> str:
        intents = state.get("intents") or []
        if state.get("error"):
            target = ERROR_NODE
        elif state.get("needs_clarification"):
            target = CLARIFICATION_NODE
        elif intents and all(intent.type == GREETING for intent in intents):
            target = GREETING_NODE
        else:
            needed = self.needed_capabilities(state)
            target = self.registry.get(needed[0]).node_name if needed else CLARIFICATION_NODE

        agent_logger.log_workflow_transition(state.get("session_id"), ROUTER_NODE, target)
        return target

    def route_after_handler(self, state: Mapping[str, Any]) -> str:
        if state.get("error"):
            target = ERROR_NODE
        else:
            completed = state.get("completed_handlers") or []
            pending = [name for name in self.needed_capabilities(state) if name not in completed]
            target = self.registry.get(pending[0]).node_name if pending else COMBINER_NODE

        agent_logger.log_workflow_transition(state.get("session_id"), "handler", target)
        return target

    # Entry point

    async def invoke(
        self,
        input: str,
        session_id: str,
        context: Union[AgentContext, Mapping[str, Any]],
        history: Optional[Sequence[BaseMessage]] = None,
        options: Optional[InvokeOptions] = None
    ) -> OrchestrationResult:
        """Process one user turn and return the final state"""

        options = options or InvokeOptions()
        trace_id = options.trace_id or str(uuid.uuid4())
        started = time.perf_counter()

        with structlog.contextvars.bound_contextvars(trace_id=trace_id, session_id=session_id):
            language = detect_language(input)
            session_config = options.session_config or self.settings.session_config()

            try:
                context = coerce_context(context)
                agent_logger.log_orchestration_event(
                    "pass_started", session_id,
                    {"user_id": context.user_id, "team_id": context.team_id, "language": language}
                )
                self.tracer.start_trace(trace_id, "orchestrator", context, session_id, input=input)

                state = await self._run_pass(
                    input, session_id, context, history, options, session_config, trace_id, language
                )
            except LimitExceededError as e:
                logger.warning("Session limit reached", limit=e.limit, current=e.current,
                               eviction_candidate=e.eviction_candidate)
                state = self._terminal_state(
                    input, session_id, context, language, trace_id,
                    localize("limit_exceeded", language, limit=e.limit),
                    ErrorCode.LIMIT_EXCEEDED, str(e)
                )
            except Exception as e:
                logger.error("Orchestration pass failed", error=str(e), exc_info=e)
                state = self._terminal_state(
                    input, session_id, context, language, trace_id,
                    localize("error", language), ErrorCode.INTERNAL_ERROR, str(e)
                )

            result = self._to_result(state, session_id, trace_id, language, started)

            metrics.record_latency("orchestration", result.duration_ms)
            metrics.increment_counter("orchestrations", tags={"outcome": result.error_code or "ok"})
            self.tracer.end_trace(trace_id, output=result.final_response, metadata=result.get_summary())
            agent_logger.log_orchestration_event("pass_completed", session_id, result.get_summary())

            return result

    async def _run_pass(self, input, session_id, context, history, options, session_config,
                        trace_id, language) -> Dict[str, Any]:
        if self.session_store is not None:
            await self._ensure_session(session_id, context, session_config)
            if history is None:
                history = await self.session_store.load(session_id, context)

        initial_state = {
            "input": input,
            "session_id": session_id,
            "context": context,
            "history": list(history or []),
            "language": language,
            "trace_id": trace_id,
            "intents": [],
            "needs_clarification": False,
            "clarification_question": None,
            "clarification_options": [],
            "handler_results": {},
            "completed_handlers": [],
            "final_response": None,
            "error": None,
            "error_code": None,
        }

        streaming = StreamingHandler(session_id, trace_id, options.on_event)
        snapshot: Dict[str, Any] = dict(initial_state)
        timeout_ms = options.timeout_ms or self.settings.timeout_ms

        try:
            if timeout_ms:
                await asyncio.wait_for(
                    self._stream(initial_state, streaming, snapshot), timeout_ms / 1000
                )
            else:
                await self._stream(initial_state, streaming, snapshot)
            state = snapshot
        except asyncio.TimeoutError:
            logger.warning("Orchestration deadline exceeded", timeout_ms=timeout_ms)
            state = {
                **snapshot,
                "error": f"Orchestration exceeded {timeout_ms} ms",
                "error_code": ErrorCode.TIMEOUT.value,
                "final_response": None,
            }
            update = await error_node(state)
            state.update(update)
            await streaming.handle_update({ERROR_NODE: update})
        except Exception as e:
            logger.error("Orchestration graph failed", error=str(e), exc_info=e)
            state = {
                **snapshot,
                "error": str(e),
                "error_code": ErrorCode.INTERNAL_ERROR.value,
                "final_response": localize("error", language),
            }

        if not state.get("final_response"):
            logger.error("Pass ended without a response", completed=state.get("completed_handlers"))
            state["final_response"] = localize("error", language)
            state["error_code"] = state.get("error_code") or ErrorCode.INTERNAL_ERROR.value

        if self.session_store is not None:
            await self._persist_turn(session_id, context, session_config, input, state)

        return state

    async def _stream(self, initial_state, streaming: StreamingHandler, snapshot: Dict[str, Any]):
        async for mode, chunk in self.workflow.astream(
            initial_state,
            config={"recursion_limit": self.recursion_limit},
            stream_mode=["updates", "values"]
        ):
            if mode == "values":
                snapshot.clear()
                snapshot.update(chunk)
            else:
                await streaming.handle_update(chunk)

    async def _ensure_session(self, session_id: str, context: AgentContext, config: SessionConfig):
        """Create the session up front so a full quota or an id conflict stops the pass before it runs.

        ``create`` returns an existing session unchanged.
        """

        await self.session_store.create(
            context, session_id=session_id, evict=config.auto_evict, config=config
        )

    async def _persist_turn(self, session_id, context, config, input, state: Dict[str, Any]):
        try:
            await self.session_store.append(
                session_id,
                [HumanMessage(content=input), AIMessage(content=state["final_response"])],
                context,
                config=config
            )
        except Exception as e:
            logger.error("Failed to persist turn", error=str(e), exc_info=e)
            metrics.increment_counter("persistence_failures")
            state["error_code"] = state.get("error_code") or ErrorCode.PERSISTENCE_ERROR.value

    def _terminal_state(self, input, session_id, context, language, trace_id,
                        response: str, code: ErrorCode, error: str) -> Dict[str, Any]:
        return {
            "input": input,
            "session_id": session_id,
            "context": context,
            "language": language,
            "trace_id": trace_id,
            "final_response": response,
            "error": error,
            "error_code": code.value,
        }

    def _to_result(self, state: Mapping[str, Any], session_id: str, trace_id: str,
                   language: str, started: float) -> OrchestrationResult:
        return OrchestrationResult(
            final_response=state["final_response"],
            session_id=session_id,
            trace_id=trace_id,
            language=language,
            intents=state.get("intents") or [],
            completed_handlers=state.get("completed_handlers") or [],
            handler_results=state.get("handler_results") or {},
            needs_clarification=bool(state.get("needs_clarification")),
            clarification_question=state.get("clarification_question"),
            clarification_options=state.get("clarification_options") or [],
            error=state.get("error"),
            error_code=state.get("error_code"),
            duration_ms=(time.perf_counter() - started) * 1000
        )
