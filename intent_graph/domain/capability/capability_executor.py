from typing import Dict, Any, Mapping
from types import MappingProxyType
import asyncio
import copy
import functools
import inspect
import time
import structlog
from pydantic import ValidationError

from intent_graph.domain.capability.capability_registry import Capability
from intent_graph.domain.errors import HandlerError, OrchestrationTimeoutError
from intent_graph.domain.models.orchestration_state import HandlerResult, ErrorCode
from intent_graph.infrastructure.observability.logging import agent_logger, metrics

logger = structlog.get_logger(__name__)


def read_only_view(state: Mapping[str, Any]) -> Mapping[str, Any]:
    """Detached, immutable snapshot of the state handed to a handler"""
    return MappingProxyType(copy.deepcopy(dict(state)))


def coerce_result(capability: Capability, raw: Any) -> HandlerResult:
    """Validate whatever a handler returned into a HandlerResult"""

    if isinstance(raw, HandlerResult):
        return raw
    if isinstance(raw, Mapping):
        try:
            return HandlerResult.model_validate(dict(raw))
        except ValidationError as e:
            raise HandlerError(capability.name, e) from e
    raise HandlerError(
        capability.name,
        TypeError(f"handler returned {type(raw).__name__}, expected HandlerResult or dict")
    )


def is_async_handler(handler: Any) -> bool:
    """Coroutine functions, bound async methods and objects with an async __call__"""
    while isinstance(handler, functools.partial):
        handler = handler.func
    return inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(
        getattr(handler, "__call__", None)
    )


class CapabilityExecutor:
    """Runs one capability handler as a graph node.

    Guarantees at-most-once invocation per pass, isolates the handler from the
    live state and converts failures into state updates that route to the
    error node.
    """

    def __init__(self, capability: Capability):
        self.capability = capability

    async def __call__(self, state: Mapping[str, Any]) -> Dict[str, Any]:
        name = self.capability.name
        session_id = state.get("session_id")

        if name in state.get("completed_handlers", []):
            logger.warning("Capability already completed in this pass", capability=name)
            return {}

        view = read_only_view(state)
        started = time.perf_counter()

        try:
            result = await self._run_handler(view)
        except HandlerError as e:
            return self._failure(state, e, ErrorCode.HANDLER_ERROR, started)
        except OrchestrationTimeoutError as e:
            return self._failure(state, e, ErrorCode.TIMEOUT, started)
        except Exception as e:
            return self._failure(state, HandlerError(name, e), ErrorCode.HANDLER_ERROR, started)

        duration_ms = (time.perf_counter() - started) * 1000
        agent_logger.log_handler_execution(
            capability=name,
            session_id=session_id,
            operation=result.operation,
            duration_ms=duration_ms,
            success=result.success,
            error=result.error
        )
        metrics.record_latency("handler", duration_ms, tags={"capability": name})

        return {
            "handler_results": {name: result},
            "completed_handlers": [name]
        }

    async def _invoke(self, view: Mapping[str, Any]) -> Any:
        handler = self.capability.handler
        if is_async_handler(handler):
            return await handler(view)
        # Sync handlers may block, keep them off the event loop
        outcome = await asyncio.to_thread(handler, view)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return outcome

    async def _run_handler(self, view: Mapping[str, Any]) -> HandlerResult:
        timeout_ms = self.capability.timeout_ms
        if timeout_ms:
            try:
                outcome = await asyncio.wait_for(self._invoke(view), timeout_ms / 1000)
            except asyncio.TimeoutError as e:
                raise OrchestrationTimeoutError(
                    f"Capability '{self.capability.name}' exceeded {timeout_ms} ms",
                    {"capability": self.capability.name}
                ) from e
        else:
            outcome = await self._invoke(view)
        return coerce_result(self.capability, outcome)

    def _failure(self, state: Mapping[str, Any], error: Exception, code: ErrorCode, started: float) -> Dict[str, Any]:
        duration_ms = (time.perf_counter() - started) * 1000
        logger.error("Capability handler failed",
                     capability=self.capability.name,
                     error_type=type(error).__name__,
                     error=str(error),
                     exc_info=error)
        agent_logger.log_handler_execution(
            capability=self.capability.name,
            session_id=state.get("session_id"),
            operation=None,
            duration_ms=duration_ms,
            success=False,
            error=str(error)
        )
        metrics.increment_counter("handler_failures", tags={"capability": self.capability.name})
        return {
            "error": str(error),
            "error_code": code.value
        }
