from typing import Any, Callable, Dict, List, Optional

import pytest

from intent_graph.domain.capability.capability_registry import CapabilityRegistry
from intent_graph.domain.models.orchestration_state import AgentContext
from intent_graph.domain.provider.model_provider import ModelProvider
from intent_graph.infrastructure.observability.logging import metrics


class ScriptedProvider(ModelProvider):
    """Model provider fake with one scripted answer for each stage.

    Calls with a schema are router calls, calls without one are combiner
    calls. Answers may be values, callables of the message list, or
    exceptions to raise.
    """

    name = "scripted"

    def __init__(self, router: Any = None, combiner: Any = "All done."):
        self.router = router if router is not None else decision()
        self.combiner = combiner
        self.calls: List[Dict[str, Any]] = []

    @property
    def router_calls(self):
        return [call for call in self.calls if call["schema"] is not None]

    @property
    def combiner_calls(self):
        return [call for call in self.calls if call["schema"] is None]

    async def complete(self, messages, schema=None):
        self.calls.append({"messages": list(messages), "schema": schema})
        answer = self.router if schema is not None else self.combiner
        if isinstance(answer, BaseException):
            raise answer
        if callable(answer):
            return answer(messages)
        return answer


def intent(type: str, action: str = "list", parameters: Optional[Dict[str, Any]] = None,
           original_text: str = "") -> Dict[str, Any]:
    return {"type": type, "action": action, "parameters": parameters or {}, "original_text": original_text}


def decision(*intents: Dict[str, Any], needs_clarification: bool = False,
             question: Optional[str] = None) -> Dict[str, Any]:
    return {
        "intents": list(intents),
        "needs_clarification": needs_clarification,
        "clarification_question": question,
    }


class RecordingHandler:
    """Capability handler that records its calls"""

    def __init__(self, name: str, result: Optional[Dict[str, Any]] = None,
                 error: Optional[Exception] = None, log: Optional[List[str]] = None):
        self.name = name
        self.result = result or {"success": True, "operation": "list", "data": [], "count": 0,
                                 "message": f"{name} ok"}
        self.error = error
        self.log = log if log is not None else []
        self.calls: List[Any] = []

    async def __call__(self, state):
        self.calls.append(state)
        self.log.append(self.name)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def context() -> AgentContext:
    return AgentContext(user_id="user-1", team_id="team-1")


@pytest.fixture
def other_context() -> AgentContext:
    return AgentContext(user_id="user-1", team_id="team-2")


@pytest.fixture
def make_registry() -> Callable[..., CapabilityRegistry]:
    """Registry with one capability per (name, handler) pair; tags are '<name>s'"""

    def build(**handlers) -> CapabilityRegistry:
        registry = CapabilityRegistry()
        for name, handler in handlers.items():
            registry.register_capability(
                name=name,
                intent_tag=f"{name}s",
                handler=handler,
                description=f"Manage {name} records"
            )
        return registry

    return build
