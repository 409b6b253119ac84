import structlog
import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime
import os


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "intent-graph"
) -> None:
    """Setup structured logging configuration"""

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add pass context (trace and session ids) to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.utcnow().isoformat()

    bound = structlog.contextvars.get_contextvars()

    # Events of one orchestration pass are keyed by trace_id
    trace_id = bound.get("trace_id")
    if trace_id:
        event_dict.setdefault("trace_id", trace_id)

    session_id = bound.get("session_id")
    if session_id:
        event_dict.setdefault("session_id", session_id)

    return event_dict


class OrchestrationLogger:
    """Typed structured events for orchestration passes"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_orchestration_event(
        self,
        event_type: str,
        session_id: Optional[str],
        data: Optional[Dict[str, Any]] = None,
        **kwargs
    ):
        """Pass-level events (start, end, limit hits)"""

        self.logger.info(
            "orchestration_event",
            event_type=event_type,
            session_id=session_id,
            data=data or {},
            **kwargs
        )

    def log_handler_execution(
        self,
        capability: str,
        session_id: Optional[str],
        operation: Optional[str] = None,
        duration_ms: Optional[float] = None,
        success: bool = True,
        error: Optional[str] = None
    ):
        """One capability handler run"""

        self.logger.info(
            "handler_execution",
            capability=capability,
            session_id=session_id,
            operation=operation,
            duration_ms=duration_ms,
            success=success,
            error=error
        )

    def log_workflow_transition(
        self,
        session_id: Optional[str],
        from_node: str,
        to_node: str,
        condition: Optional[str] = None
    ):
        """Conditional edge decisions"""

        self.logger.debug(
            "workflow_transition",
            session_id=session_id,
            from_node=from_node,
            to_node=to_node,
            condition=condition
        )

    def log_session_update(
        self,
        session_id: str,
        action: str,
        details: Optional[Dict[str, Any]] = None
    ):
        """Session store mutations"""

        self.logger.info(
            "session_update",
            session_id=session_id,
            action=action,
            details=details or {}
        )


agent_logger = OrchestrationLogger("intent_graph")


class MetricsCollector:
    """In-process metrics, mirrored to the log stream"""

    def __init__(self):
        self.metrics: Dict[str, Any] = {}

    @staticmethod
    def _key(name: str, tags: Optional[Dict[str, str]]) -> str:
        if not tags:
            return name
        suffix = ",".join(f"{k}={v}" for k, v in sorted(tags.items()))
        return f"{name}[{suffix}]"

    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        """Record operation latency"""

        key = self._key(f"latency.{operation}", tags)
        stats = self.metrics.setdefault(key, {"count": 0, "sum": 0.0, "min": float("inf"), "max": 0.0})
        stats["count"] += 1
        stats["sum"] += duration_ms
        stats["min"] = min(stats["min"], duration_ms)
        stats["max"] = max(stats["max"], duration_ms)

        agent_logger.logger.debug(
            "metric",
            metric_type="latency",
            operation=operation,
            duration_ms=duration_ms,
            tags=tags or {}
        )

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        """Increment a counter metric"""

        key = self._key(name, tags)
        self.metrics[key] = self.metrics.get(key, 0) + value

        agent_logger.logger.debug(
            "metric",
            metric_type="counter",
            name=name,
            value=value,
            tags=tags or {}
        )

    def get_counter(self, name: str, tags: Optional[Dict[str, str]] = None) -> int:
        value = self.metrics.get(self._key(name, tags), 0)
        return value if isinstance(value, int) else 0

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get summary of all metrics"""

        summary = {}
        for key, value in self.metrics.items():
            if isinstance(value, dict):
                summary[key] = {
                    "count": value["count"],
                    "avg": value["sum"] / value["count"] if value["count"] > 0 else 0,
                    "min": value["min"] if value["min"] != float("inf") else 0,
                    "max": value["max"]
                }
            else:
                summary[key] = value

        return summary

    def reset(self):
        self.metrics.clear()


metrics = MetricsCollector()
