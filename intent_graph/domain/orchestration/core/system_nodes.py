from typing import Any, Dict, List, Mapping, Optional
import structlog

from intent_graph.domain.models.orchestration_state import GREETING, ErrorCode, ClarificationOption
from intent_graph.domain.orchestration.combiner.templates import localize

logger = structlog.get_logger(__name__)

GREETING_NODE = "greeting"
CLARIFICATION_NODE = "clarification"
ERROR_NODE = "error_handler"
ROUTER_NODE = "router"
COMBINER_NODE = "combiner"


async def greeting_node(state: Mapping[str, Any]) -> Dict[str, Any]:
    """Marks the greeting as handled, the combiner renders the reply"""
    return {"completed_handlers": [GREETING]}


def render_clarification(question: str, options: List[ClarificationOption], language: str) -> str:
    """Question followed by a numbered list of options"""

    if not options:
        return question
    lines = [question, ""]
    for index, option in enumerate(options, start=1):
        line = f"{index}. {option.label}"
        if option.description:
            line += f" ({option.description})"
        lines.append(line)
    lines.append("")
    lines.append(localize("clarification_choose", language))
    return "\n".join(lines)


def clarification_update(state: Mapping[str, Any], default_options: List[ClarificationOption]) -> Dict[str, Any]:
    language = state.get("language") or "en"
    question = state.get("clarification_question") or localize("clarification_default", language)
    options = state.get("clarification_options") or default_options
    return {
        "needs_clarification": True,
        "clarification_question": question,
        "clarification_options": options,
        "final_response": render_clarification(question, options, language),
    }


def error_message(error_code: Optional[str], language: str) -> str:
    if error_code == ErrorCode.TIMEOUT.value:
        return localize("error_timeout", language)
    if error_code == ErrorCode.ROUTING_ERROR.value:
        return localize("error_routing", language)
    return localize("error", language)


async def error_node(state: Mapping[str, Any]) -> Dict[str, Any]:
    """Terminal apology in the user's language; the raw error stays internal"""

    error_code = state.get("error_code") or ErrorCode.INTERNAL_ERROR.value
    logger.info("Routing to error handler", error_code=error_code)
    return {
        "error_code": error_code,
        "final_response": error_message(error_code, state.get("language") or "en"),
    }
