from typing import Any, Dict, List, Mapping, Optional
import json
import re
import time
import structlog
from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, ValidationError

from intent_graph.domain.capability.capability_registry import CapabilityRegistry
from intent_graph.domain.context.history import trailing_history
from intent_graph.domain.errors import RoutingError
from intent_graph.domain.models.orchestration_state import (
    GREETING, CLARIFICATION, ErrorCode, Intent, ClarificationOption
)
from intent_graph.domain.orchestration.combiner.templates import localize
from intent_graph.domain.orchestration.router.prompts import RouterDecision, build_router_prompt
from intent_graph.domain.provider.model_provider import ModelProvider
from intent_graph.infrastructure.observability.logging import metrics
from intent_graph.infrastructure.observability.tracing import Tracer, NullTracer

logger = structlog.get_logger(__name__)

_CODE_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def extract_json(text: str) -> str:
    """Pull a JSON object out of model text that may carry markdown or prose"""
    match = _CODE_BLOCK.search(text)
    if match:
        return match.group(1).strip()
    match = _JSON_OBJECT.search(text)
    if match:
        return match.group(0)
    return text


def parse_decision(raw: Any) -> RouterDecision:
    """Validate provider output (model, dict or JSON text) into a RouterDecision"""

    try:
        if isinstance(raw, RouterDecision):
            return raw
        if isinstance(raw, BaseModel):
            return RouterDecision.model_validate(raw.model_dump())
        if isinstance(raw, Mapping):
            return RouterDecision.model_validate(dict(raw))
        if isinstance(raw, str):
            return RouterDecision.model_validate(json.loads(extract_json(raw)))
    except (ValidationError, json.JSONDecodeError) as e:
        raise RoutingError(f"Unparseable router output: {e}", {"output_type": type(raw).__name__}) from e

    raise RoutingError(
        f"Unsupported router output type: {type(raw).__name__}",
        {"output_type": type(raw).__name__}
    )


class IntentRouter:
    """Graph node that classifies the user turn into intents.

    Makes exactly one provider call per pass. The prompt is built from the
    registry once, when the router is created.
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        provider: ModelProvider,
        tracer: Optional[Tracer] = None,
        history_limit: int = 5,
        prompt_extras: Optional[str] = None
    ):
        self.registry = registry
        self.provider = provider
        self.tracer = tracer or NullTracer()
        self.history_limit = history_limit
        self.prompt = build_router_prompt(registry, prompt_extras)

    async def __call__(self, state: Mapping[str, Any]) -> Dict[str, Any]:
        trace_id = state.get("trace_id")
        messages = [
            SystemMessage(content=self.prompt),
            *trailing_history(state.get("history") or [], self.history_limit),
            HumanMessage(content=state["input"]),
        ]

        span = self.tracer.start_span(
            trace_id, "router",
            input={"message": state["input"]},
            metadata={"provider": self.provider.name, "history_messages": len(messages) - 2}
        )
        metrics.increment_counter("model_calls", tags={"stage": "router"})
        started = time.perf_counter()

        try:
            decision = parse_decision(await self.provider.complete(messages, schema=RouterDecision))
        except RoutingError as e:
            return self._failure(span, e)
        except Exception as e:
            return self._failure(span, RoutingError(f"Router provider failed: {e}", {"cause": type(e).__name__}))

        metrics.record_latency("router", (time.perf_counter() - started) * 1000)
        update = self._apply(decision, state.get("language") or "en")

        self.tracer.end_span(span, output={
            "intents": [{"type": i.type, "action": i.action.value} for i in update["intents"]],
            "needs_clarification": update["needs_clarification"],
        })
        logger.info("Intents classified",
                    intents=[i.type for i in update["intents"]],
                    needs_clarification=update["needs_clarification"])
        return update

    def _apply(self, decision: RouterDecision, language: str) -> Dict[str, Any]:
        intents: List[Intent] = []
        needs_clarification = decision.needs_clarification

        for routed in decision.intents:
            tag = routed.type.strip()
            if tag.lower() == GREETING:
                name = GREETING
            elif tag.lower() == CLARIFICATION:
                needs_clarification = True
                continue
            else:
                capability = self.registry.get_by_tag(tag)
                if capability is None:
                    logger.warning("Dropping intent outside the registered vocabulary", intent_type=tag)
                    metrics.increment_counter("dropped_intents")
                    continue
                name = capability.name

            intents.append(Intent(
                type=name,
                action=routed.action,
                slots=routed.parameters,
                original_text=routed.original_text
            ))

        # Greeting never coexists with real work
        if any(intent.type != GREETING for intent in intents):
            intents = [intent for intent in intents if intent.type != GREETING]

        if not intents:
            needs_clarification = True

        update: Dict[str, Any] = {
            "intents": intents,
            "needs_clarification": needs_clarification,
            "clarification_question": None,
            "clarification_options": [],
        }
        if needs_clarification:
            update["clarification_question"] = (
                (decision.clarification_question or "").strip()
                or localize("clarification_default", language)
            )
            update["clarification_options"] = self.default_options()
        return update

    def default_options(self) -> List[ClarificationOption]:
        return [
            ClarificationOption(
                label=capability.description or capability.name,
                description=capability.example_slots or "",
                capability=capability.name
            )
            for capability in self.registry.list()
        ]

    def _failure(self, span: Any, error: RoutingError) -> Dict[str, Any]:
        logger.error("Intent routing failed", error=str(error))
        metrics.increment_counter("router_failures")
        self.tracer.end_span(span, error=str(error))
        return {
            "intents": [],
            "needs_clarification": False,
            "error": str(error),
            "error_code": ErrorCode.ROUTING_ERROR.value,
        }
