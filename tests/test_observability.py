import structlog

from intent_graph.infrastructure.observability.logging import (
    MetricsCollector, add_service_context, setup_logging
)


def test_counters_are_keyed_by_tags():
    collector = MetricsCollector()
    collector.increment_counter("model_calls", tags={"stage": "router"})
    collector.increment_counter("model_calls", tags={"stage": "router"})
    collector.increment_counter("model_calls", tags={"stage": "combiner"})

    assert collector.get_counter("model_calls", tags={"stage": "router"}) == 2
    assert collector.get_counter("model_calls", tags={"stage": "combiner"}) == 1
    assert collector.get_counter("model_calls") == 0


def test_latency_summary():
    collector = MetricsCollector()
    collector.record_latency("router", 10.0)
    collector.record_latency("router", 30.0)

    summary = collector.get_metrics_summary()["latency.router"]

    assert summary == {"count": 2, "avg": 20.0, "min": 10.0, "max": 30.0}

    collector.reset()
    assert collector.get_metrics_summary() == {}


def test_service_context_adds_bound_ids():
    with structlog.contextvars.bound_contextvars(trace_id="t1", session_id="s1"):
        event = add_service_context(None, "info", {"event": "x"})

    assert event["trace_id"] == "t1"
    assert event["session_id"] == "s1"
    assert "timestamp" in event


def test_setup_logging_accepts_both_formats():
    setup_logging(log_level="DEBUG", log_format="console")
    setup_logging(log_level="INFO", log_format="json", service_name="test")
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
