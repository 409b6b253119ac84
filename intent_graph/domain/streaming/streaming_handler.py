from typing import Any, Awaitable, Callable, Dict, List, Optional
import structlog

from intent_graph.domain.models.orchestration_state import OrchestrationEvent
from intent_graph.domain.orchestration.core.system_nodes import (
    ROUTER_NODE, GREETING_NODE, CLARIFICATION_NODE, ERROR_NODE, COMBINER_NODE
)

logger = structlog.get_logger(__name__)

EventListener = Callable[[OrchestrationEvent], Awaitable[None]]

_TERMINAL_NODES = (CLARIFICATION_NODE, ERROR_NODE, COMBINER_NODE)


class StreamingHandler:
    """Turns graph node updates of one pass into progress events.

    A failing listener is logged and otherwise ignored.
    """

    def __init__(self, session_id: str, trace_id: Optional[str] = None,
                 listener: Optional[EventListener] = None):
        self.session_id = session_id
        self.trace_id = trace_id
        self.listener = listener
        self.step_index = 0
        self.events: List[OrchestrationEvent] = []

    async def handle_update(self, update: Dict[str, Any]):
        """Handle one 'updates' chunk, keyed by node name"""

        for node_id, node_data in update.items():
            await self._process_node_update(node_id, node_data or {})

    async def _process_node_update(self, node_id: str, data: Dict[str, Any]):
        logger.debug("Processing node update", node_id=node_id)
        self.step_index += 1

        if node_id == ROUTER_NODE:
            await self.send_progress(node_id, "Understanding your request", {
                "intents": [intent.type for intent in data.get("intents", [])],
                "needs_clarification": data.get("needs_clarification", False),
            })
        elif node_id == GREETING_NODE:
            await self.send_progress(node_id, "Greeting")
        elif node_id.endswith("_handler") and node_id != ERROR_NODE:
            capability = node_id[: -len("_handler")]
            results = data.get("handler_results") or {}
            result = results.get(capability)
            await self.send_progress(node_id, f"Running {capability}", {
                "capability": capability,
                "success": result.success if result is not None else False,
            })
        elif node_id in _TERMINAL_NODES:
            await self.send_progress(node_id, "Preparing response")
            if data.get("final_response"):
                await self.send_response(node_id, data["final_response"], data.get("error_code"))

    async def send_progress(self, node: str, status: str, data: Optional[Dict[str, Any]] = None):
        await self.emit(OrchestrationEvent(
            type="progress",
            node=node,
            trace_id=self.trace_id,
            session_id=self.session_id,
            status=status,
            step_index=self.step_index,
            data=data or {}
        ))

    async def send_response(self, node: str, response: str, error_code: Optional[str] = None):
        await self.emit(OrchestrationEvent(
            type="response",
            node=node,
            trace_id=self.trace_id,
            session_id=self.session_id,
            status="complete",
            step_index=self.step_index,
            data={"final_response": response, "error_code": error_code}
        ))

    async def emit(self, event: OrchestrationEvent):
        self.events.append(event)
        if self.listener is None:
            return
        try:
            await self.listener(event)
        except Exception as e:
            logger.warning("Event listener failed", node=event.node, event_type=event.type, error=str(e))
