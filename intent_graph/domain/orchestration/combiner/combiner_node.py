from typing import Any, Dict, List, Mapping, Optional, Tuple
import json
import re
import time
import structlog
from langchain_core.messages import HumanMessage, SystemMessage

from intent_graph.domain.capability.capability_registry import CapabilityRegistry
from intent_graph.domain.errors import CombinerError
from intent_graph.domain.models.orchestration_state import GREETING, ErrorCode, HandlerResult
from intent_graph.domain.orchestration.combiner.templates import (
    localize, language_hint, language_name, join_items
)
from intent_graph.domain.provider.model_provider import ModelProvider
from intent_graph.infrastructure.observability.logging import metrics
from intent_graph.infrastructure.observability.tracing import Tracer, NullTracer

logger = structlog.get_logger(__name__)

COMBINER_SYSTEM_PROMPT = """You are a response synthesizer that turns JSON operation results into a natural-language reply for the user.

## Your Task

Given the original user request and the results of one or more operations, write one clear reply that:
1. Summarizes ALL results, one by one
2. Is written in the same language as original_request{language_hint}
3. Is concise but complete
4. Includes the relevant data (names, counts, specific values)

## Input Format

You receive JSON with:
- original_request: the user's message
- results: one entry per operation, in order

Each result contains:
- success: whether the operation succeeded
- operation: what was done (list, create, update, search, ...)
- data: the returned data (list or single object)
- count: number of items, for list and search
- message: short description of the outcome

## Rules

1. Reply only in the language of original_request, whatever language that is
2. Use bullet points for lists (at most 5-7 items, summarize the rest)
3. When an operation did not succeed, apologize in plain words and offer an alternative
4. Never expose technical details: no JSON, no error codes, no internal messages, no stack traces

Return ONLY the reply text. No JSON and no code blocks."""

_STACK_LINE = re.compile(r'^\s*(File "[^"]+", line \d+|[A-Za-z_.]+(Error|Exception): )')


def looks_like_internal(text: str) -> bool:
    """True for replies that are raw JSON or a stack trace rather than prose"""

    stripped = text.strip()
    if stripped.startswith("```"):
        return True
    if stripped[:1] in ("{", "["):
        try:
            json.loads(stripped)
            return True
        except json.JSONDecodeError:
            pass
    if "Traceback (most recent call last)" in stripped:
        return True
    return sum(1 for line in stripped.splitlines() if _STACK_LINE.match(line)) >= 2


def sanitize_result(result: HandlerResult) -> Dict[str, Any]:
    """What the model may see of a handler result; failures carry no error text"""

    if not result.success:
        return {"success": False, "operation": result.operation}
    payload = {
        "success": True,
        "operation": result.operation,
        "data": result.data,
    }
    if result.count is not None:
        payload["count"] = result.count
    if result.message:
        payload["message"] = result.message
    return payload


class CombinerNode:
    """Synthesizes the final reply.

    Greeting-only passes use a localized template, anything with handler
    results costs exactly one model call. A failed or rejected synthesis
    falls back to concatenating the handler messages.
    """

    def __init__(self, registry: CapabilityRegistry, provider: ModelProvider,
                 tracer: Optional[Tracer] = None):
        self.registry = registry
        self.provider = provider
        self.tracer = tracer or NullTracer()

    def ordered_results(self, state: Mapping[str, Any]) -> List[Tuple[str, HandlerResult]]:
        results = state.get("handler_results") or {}
        return [(name, results[name]) for name in self.registry.names() if name in results]

    def greeting(self, language: str) -> str:
        capabilities = join_items(c.description or c.name for c in self.registry.list())
        return localize("greeting", language, capabilities=capabilities)

    async def __call__(self, state: Mapping[str, Any]) -> Dict[str, Any]:
        if state.get("final_response"):
            return {}

        language = state.get("language") or "en"
        results = self.ordered_results(state)

        if not results:
            intents = state.get("intents") or []
            if intents and all(intent.type == GREETING for intent in intents):
                return {"final_response": self.greeting(language)}
            return {"final_response": localize("no_results", language)}

        try:
            response = await self.synthesize(state, results, language)
        except CombinerError as e:
            logger.warning("Combiner failed, falling back to handler messages", error=str(e))
            metrics.increment_counter("combiner_fallbacks")
            return {
                "final_response": self.fallback(results, language),
                "error_code": ErrorCode.COMBINER_ERROR.value,
            }

        return {"final_response": response}

    @staticmethod
    def system_prompt(request: str) -> str:
        """Combiner instructions; names the request language only when detection is confident"""
        hint = language_hint(request)
        suffix = f" (it looks like {language_name(hint)})" if hint else ""
        return COMBINER_SYSTEM_PROMPT.format(language_hint=suffix)

    async def synthesize(self, state: Mapping[str, Any],
                         results: List[Tuple[str, HandlerResult]], language: str) -> str:
        payload = json.dumps({
            "original_request": state.get("input", ""),
            "results": {name: sanitize_result(result) for name, result in results},
        }, ensure_ascii=False, indent=2, default=str)

        messages = [
            SystemMessage(content=self.system_prompt(state.get("input", ""))),
            HumanMessage(content=payload),
        ]

        span = self.tracer.start_span(
            state.get("trace_id"), "combiner",
            input={"results_count": len(results)},
            metadata={"provider": self.provider.name, "language": language}
        )
        metrics.increment_counter("model_calls", tags={"stage": "combiner"})
        started = time.perf_counter()

        try:
            reply = await self.provider.complete(messages)
        except Exception as e:
            self.tracer.end_span(span, error=str(e))
            raise CombinerError(f"Combiner provider failed: {e}", {"cause": type(e).__name__}) from e

        metrics.record_latency("combiner", (time.perf_counter() - started) * 1000)

        if not isinstance(reply, str) or not reply.strip():
            self.tracer.end_span(span, error="empty reply")
            raise CombinerError("Combiner returned an empty reply")
        if looks_like_internal(reply):
            self.tracer.end_span(span, error="rejected reply")
            raise CombinerError("Combiner reply exposes internal data", {"length": len(reply)})

        self.tracer.end_span(span, output={"response_length": len(reply)})
        return reply.strip()

    def fallback(self, results: List[Tuple[str, HandlerResult]], language: str) -> str:
        parts = []
        for name, result in results:
            if result.success:
                parts.append(result.message or localize("handler_done", language, capability=name))
            else:
                parts.append(localize("handler_failed", language, capability=name))
        return "\n\n".join(parts)
