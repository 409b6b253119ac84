from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence, Type
import structlog
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage
from pydantic import BaseModel

from intent_graph.infrastructure.observability.logging import metrics

logger = structlog.get_logger(__name__)

USAGE_KINDS = {"input_tokens": "input", "output_tokens": "output", "total_tokens": "total"}


def message_text(content: Any) -> str:
    """Text of a message content, joining text blocks of multimodal replies"""
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


class ModelProvider(ABC):
    """Interchangeable model-inference dependency used by router and combiner"""

    name: str = "model"

    @abstractmethod
    async def complete(
        self,
        messages: Sequence[BaseMessage],
        schema: Optional[Type[BaseModel]] = None
    ) -> Any:
        """Run one completion.

        Returns a ``schema`` instance (or dict) when structured output is
        supported and requested, otherwise the completion text.
        """
        pass


class LangChainModelProvider(ModelProvider):
    """Adapter for any langchain_core chat model.

    Token usage reported by the model is added to the ``tokens`` counters,
    tagged by provider and kind (input, output, total).
    """

    def __init__(self, chat_model: BaseChatModel, structured_output: bool = True, name: Optional[str] = None):
        self.chat_model = chat_model
        self.structured_output = structured_output
        self.name = name or type(chat_model).__name__

    def record_usage(self, message: Any) -> None:
        usage = getattr(message, "usage_metadata", None)
        if not usage:
            return
        for key, kind in USAGE_KINDS.items():
            count = usage.get(key)
            if count:
                metrics.increment_counter("tokens", value=count, tags={"provider": self.name, "kind": kind})
        logger.debug("Model usage", provider=self.name,
                     input_tokens=usage.get("input_tokens"), output_tokens=usage.get("output_tokens"))

    async def complete(self, messages, schema=None):
        if schema is not None and self.structured_output:
            structured = self.chat_model.with_structured_output(schema, include_raw=True)
            output = await structured.ainvoke(list(messages))
            raw = output.get("raw")
            self.record_usage(raw)
            if output.get("parsed") is not None:
                return output["parsed"]
            # Let the caller parse the raw text, it accepts JSON wrapped in prose
            logger.warning("Structured output not parsed", provider=self.name,
                           error=str(output.get("parsing_error")))
            return message_text(raw.content) if raw is not None else ""

        result = await self.chat_model.ainvoke(list(messages))
        self.record_usage(result)
        return message_text(result.content)
