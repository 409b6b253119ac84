from typing import List, Sequence
import structlog
from langchain_core.messages import BaseMessage, HumanMessage

from intent_graph.domain.errors import RoutingError

logger = structlog.get_logger(__name__)


def trailing_history(messages: Sequence[BaseMessage], limit: int) -> List[BaseMessage]:
    """Last ``limit`` messages, oldest first"""
    if limit <= 0:
        return []
    return list(messages[-limit:])


def last_human_index(messages: Sequence[BaseMessage]) -> int:
    """Index of the most recent human message, -1 if there is none"""
    for index in range(len(messages) - 1, -1, -1):
        if isinstance(messages[index], HumanMessage):
            return index
    return -1


def current_turn(messages: Sequence[BaseMessage], strict: bool = False) -> List[BaseMessage]:
    """Messages produced after the last human message.

    Decisions extracted from older turns are stale, so only the current turn is
    read. A history with no human message at all (e.g. a pre-seeded
    system-only session) falls back to the full history, or raises
    RoutingError when ``strict`` is set.
    """
    index = last_human_index(messages)
    if index >= 0:
        return list(messages[index + 1:])

    if strict:
        raise RoutingError(
            "History contains no human message",
            {"message_count": len(messages)}
        )

    if messages:
        logger.warning("No human message in history, using full history",
                       message_count=len(messages))
    return list(messages)
