from abc import ABC, abstractmethod
from typing import Dict, Any, Optional
import random
import re
import structlog

from intent_graph.domain.models.orchestration_state import AgentContext

logger = structlog.get_logger(__name__)

TRUNCATE_AT = 10000
TRUNCATION_SUFFIX = "...[truncated]"

# Cards before phones, a card number contains phone-shaped digit runs
_PII_PATTERNS = (
    (re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"), "[EMAIL]"),
    (re.compile(r"\b(?:\d{4}[- ]?){3}\d{4}\b"), "[CARD]"),
    (re.compile(r"(?<![\w+])(?:\+?\d{1,3}[-. ]?)?\(?\d{3}\)?[-. ]?\d{3}[-. ]?\d{4}\b"), "[PHONE]"),
)


def mask_pii(text: str) -> str:
    """Replace emails, card numbers and phone numbers with placeholders"""
    for pattern, placeholder in _PII_PATTERNS:
        text = pattern.sub(placeholder, text)
    return text


class Tracer(ABC):
    """Sink for per-pass traces and model-call spans"""

    @abstractmethod
    def start_trace(self, trace_id: str, name: str, context: AgentContext,
                    session_id: str, input: Any = None) -> None:
        pass

    @abstractmethod
    def start_span(self, trace_id: str, name: str, input: Any = None,
                   metadata: Optional[Dict[str, Any]] = None) -> Any:
        """Returns an opaque span handle for end_span"""
        pass

    @abstractmethod
    def end_span(self, span: Any, output: Any = None, error: Optional[str] = None) -> None:
        pass

    @abstractmethod
    def end_trace(self, trace_id: str, output: Any = None,
                  metadata: Optional[Dict[str, Any]] = None) -> None:
        pass


class NullTracer(Tracer):
    """Tracer that records nothing"""

    def start_trace(self, trace_id, name, context, session_id, input=None):
        return None

    def start_span(self, trace_id, name, input=None, metadata=None):
        return None

    def end_span(self, span, output=None, error=None):
        return None

    def end_trace(self, trace_id, output=None, metadata=None):
        return None


class GuardedTracer(Tracer):
    """Wraps an injected tracer so its failures are logged, never raised"""

    def __init__(self, tracer: Tracer):
        self.tracer = tracer

    def _call(self, operation: str, *args, **kwargs) -> Any:
        try:
            return getattr(self.tracer, operation)(*args, **kwargs)
        except Exception as e:
            logger.warning("Tracer call failed", operation=operation,
                           tracer=type(self.tracer).__name__, error=str(e))
            return None

    def start_trace(self, trace_id, name, context, session_id, input=None):
        self._call("start_trace", trace_id, name, context, session_id, input=input)

    def start_span(self, trace_id, name, input=None, metadata=None):
        return self._call("start_span", trace_id, name, input=input, metadata=metadata)

    def end_span(self, span, output=None, error=None):
        self._call("end_span", span, output=output, error=error)

    def end_trace(self, trace_id, output=None, metadata=None):
        self._call("end_trace", trace_id, output=output, metadata=metadata)


class LangfuseTracer(Tracer):
    """Langfuse-backed tracer.

    Tracing is best effort: sink failures are logged and never interrupt the
    pass. Uses the Langfuse v2 client API (trace/span/end).

    Only a ``sample_rate`` share of passes is traced. With
    ``always_trace_errors`` an unsampled pass that ends with an ``error_code``
    is still recorded, without its spans. Inputs and outputs are masked for
    PII and truncated before they leave the process.
    """

    def __init__(self, client: Optional[Any] = None, public_key: Optional[str] = None,
                 secret_key: Optional[str] = None, host: Optional[str] = None,
                 sample_rate: float = 1.0, always_trace_errors: bool = True,
                 mask_inputs: bool = True, mask_outputs: bool = True,
                 truncate_at: int = TRUNCATE_AT):
        if client is None:
            from langfuse import Langfuse
            client = Langfuse(public_key=public_key, secret_key=secret_key, host=host)
        self.langfuse = client
        self.sample_rate = sample_rate
        self.always_trace_errors = always_trace_errors
        self.mask_inputs = mask_inputs
        self.mask_outputs = mask_outputs
        self.truncate_at = truncate_at
        self._traces: Dict[str, Any] = {}
        # Unsampled traces, kept until end_trace knows whether the pass failed
        self._deferred: Dict[str, Dict[str, Any]] = {}

    def should_trace(self, error: bool = False) -> bool:
        if error and self.always_trace_errors:
            return True
        if self.sample_rate <= 0:
            return False
        return self.sample_rate >= 1 or random.random() < self.sample_rate

    def process_content(self, content: Any, direction: str = "input") -> Any:
        """Mask and truncate strings anywhere inside ``content``"""

        if isinstance(content, str):
            mask = self.mask_inputs if direction == "input" else self.mask_outputs
            if mask:
                content = mask_pii(content)
            if self.truncate_at and len(content) > self.truncate_at:
                content = content[:self.truncate_at] + TRUNCATION_SUFFIX
            return content
        if isinstance(content, dict):
            return {key: self.process_content(value, direction) for key, value in content.items()}
        if isinstance(content, (list, tuple)):
            return [self.process_content(value, direction) for value in content]
        return content

    def _open(self, trace_id, name, context, session_id, input):
        self._traces[trace_id] = self.langfuse.trace(
            id=trace_id,
            name=name,
            input=self.process_content(input, "input"),
            user_id=context.user_id,
            session_id=session_id,
            tags=["orchestrator", context.team_id],
            metadata={"team_id": context.team_id}
        )

    def start_trace(self, trace_id, name, context, session_id, input=None):
        if not self.should_trace():
            self._deferred[trace_id] = {
                "name": name, "context": context, "session_id": session_id, "input": input
            }
            return
        try:
            self._open(trace_id, name, context, session_id, input)
        except Exception as e:
            logger.warning("Failed to start trace", trace_id=trace_id, error=str(e))

    def start_span(self, trace_id, name, input=None, metadata=None):
        trace = self._traces.get(trace_id)
        if trace is None:
            return None
        try:
            return trace.span(name=name, input=self.process_content(input, "input"),
                              metadata=metadata or {})
        except Exception as e:
            logger.warning("Failed to start span", trace_id=trace_id, span=name, error=str(e))
            return None

    def end_span(self, span, output=None, error=None):
        if span is None:
            return
        try:
            if error:
                span.end(level="ERROR", status_message=self.process_content(error, "output"))
            else:
                span.end(output=self.process_content(output, "output"))
        except Exception as e:
            logger.warning("Failed to end span", error=str(e))

    def end_trace(self, trace_id, output=None, metadata=None):
        metadata = metadata or {}
        deferred = self._deferred.pop(trace_id, None)
        try:
            if deferred is not None:
                if not self.should_trace(error=bool(metadata.get("error_code"))):
                    return
                self._open(trace_id, **deferred)
            trace = self._traces.pop(trace_id, None)
            if trace is None:
                return
            trace.update(output=self.process_content(output, "output"), metadata=metadata)
            self.langfuse.flush()
        except Exception as e:
            self._traces.pop(trace_id, None)
            logger.warning("Failed to end trace", trace_id=trace_id, error=str(e))
