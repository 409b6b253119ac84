import asyncio
import time
from unittest.mock import MagicMock

import pytest
from langchain_core.messages import AIMessage, HumanMessage

from intent_graph.domain.capability.capability_registry import CapabilityRegistry
from intent_graph.domain.context.memory.in_memory_session_store import InMemorySessionStore
from intent_graph.domain.errors import ConfigurationError
from intent_graph.domain.models.orchestration_state import InvokeOptions
from intent_graph.domain.orchestration.combiner.templates import localize
from intent_graph.domain.orchestration.core.orchestrator_graph import Orchestrator, coerce_context
from intent_graph.infrastructure.config.settings import OrchestratorSettings
from intent_graph.infrastructure.observability.logging import metrics
from intent_graph.infrastructure.observability.tracing import Tracer
from tests.conftest import RecordingHandler, ScriptedProvider, decision, intent


def invoke(orchestrator, text, context, session_id="session-1", **kwargs):
    return asyncio.run(orchestrator.invoke(text, session_id, context, **kwargs))


@pytest.fixture
def handlers():
    log = []
    return log, {
        "task": RecordingHandler("task", log=log),
        "customer": RecordingHandler("customer", log=log),
        "page": RecordingHandler("page", log=log),
    }


def test_empty_registry_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        Orchestrator(CapabilityRegistry(), ScriptedProvider())


def test_registry_is_frozen_after_build(make_registry, handlers):
    _, by_name = handlers
    registry = make_registry(task=by_name["task"])
    Orchestrator(registry, ScriptedProvider())

    with pytest.raises(ConfigurationError):
        registry.register_capability("late", "lates", by_name["page"])


def test_greeting_only_runs_no_handler(make_registry, handlers, context):
    log, by_name = handlers
    provider = ScriptedProvider(router=decision(intent("greeting", "unknown")))
    orchestrator = Orchestrator(make_registry(**by_name), provider)

    result = invoke(orchestrator, "Hola!", context)

    assert result.completed_handlers == ["greeting"]
    assert log == []
    assert result.language == "es"
    assert result.final_response.startswith("¡Hola!")
    assert result.error_code is None
    assert provider.combiner_calls == []


def test_handlers_run_in_registration_order(make_registry, handlers, context):
    log, by_name = handlers
    provider = ScriptedProvider(router=decision(intent("customers", "search"), intent("tasks")))
    orchestrator = Orchestrator(make_registry(task=by_name["task"], customer=by_name["customer"]), provider)

    result = invoke(orchestrator, "find ACME and show my tasks", context)

    assert result.completed_handlers == ["task", "customer"]
    assert log == ["task", "customer"]
    assert set(result.handler_results) == {"task", "customer"}
    assert result.final_response == "All done."
    assert len(provider.router_calls) == 1
    assert len(provider.combiner_calls) == 1


def test_only_mentioned_capability_runs(make_registry, handlers, context):
    log, by_name = handlers
    provider = ScriptedProvider(router=decision(intent("tasks")), combiner="You have no tasks.")
    orchestrator = Orchestrator(make_registry(task=by_name["task"], customer=by_name["customer"]), provider)

    result = invoke(orchestrator, "show my tasks", context)

    assert log == ["task"]
    assert result.completed_handlers == ["task"]
    assert result.final_response == "You have no tasks."


def test_duplicate_intents_dispatch_once(make_registry, handlers, context):
    log, by_name = handlers
    provider = ScriptedProvider(router=decision(
        intent("tasks", "create", {"title": "a"}), intent("tasks", "create", {"title": "b"})
    ))
    orchestrator = Orchestrator(make_registry(task=by_name["task"]), provider)

    invoke(orchestrator, "create tasks a and b", context)

    assert log == ["task"]
    seen = by_name["task"].calls[0]["intents"]
    assert [i.slots["title"] for i in seen] == ["a", "b"]


def test_failing_handler_stops_the_chain(make_registry, context):
    log = []
    by_name = {
        "task": RecordingHandler("task", log=log),
        "customer": RecordingHandler("customer", log=log, error=RuntimeError("DB unavailable")),
        "page": RecordingHandler("page", log=log),
    }
    provider = ScriptedProvider(router=decision(intent("pages"), intent("customers"), intent("tasks")))
    orchestrator = Orchestrator(make_registry(**by_name), provider)

    result = invoke(orchestrator, "do all three", context)

    assert log == ["task", "customer"]
    assert result.completed_handlers == ["task"]
    assert result.error_code == "handler_error"
    assert "DB unavailable" in result.error
    assert "DB unavailable" not in result.final_response
    assert "Traceback" not in result.final_response
    assert result.final_response.startswith("Sorry")
    assert provider.combiner_calls == []


def test_routing_error_still_answers(make_registry, handlers, context):
    _, by_name = handlers
    provider = ScriptedProvider(router=TimeoutError("router model unreachable"))
    orchestrator = Orchestrator(make_registry(**by_name), provider)

    result = invoke(orchestrator, "¿Cuáles son mis tareas?", context)

    assert result.error_code == "routing_error"
    assert result.final_response.startswith("Lo siento")
    assert "unreachable" not in result.final_response


def test_clarification_lists_numbered_options(make_registry, handlers, context):
    log, by_name = handlers
    provider = ScriptedProvider(router=decision(needs_clarification=True, question="What do you need?"))
    orchestrator = Orchestrator(make_registry(task=by_name["task"], customer=by_name["customer"]), provider)

    result = invoke(orchestrator, "help", context)

    assert result.needs_clarification
    assert log == []
    lines = result.final_response.splitlines()
    assert lines[0] == "What do you need?"
    assert "1. Manage task records" in lines
    assert "2. Manage customer records" in lines
    assert provider.combiner_calls == []


def test_combiner_failure_falls_back(make_registry, handlers, context):
    _, by_name = handlers
    provider = ScriptedProvider(router=decision(intent("tasks")), combiner=RuntimeError("overloaded"))
    orchestrator = Orchestrator(make_registry(task=by_name["task"]), provider)

    result = invoke(orchestrator, "show tasks", context)

    assert result.error_code == "combiner_error"
    assert result.final_response == "task ok"


def test_deadline_routes_through_error_handler(make_registry, context):
    async def slow(state):
        await asyncio.sleep(1)
        return {"success": True}

    provider = ScriptedProvider(router=decision(intent("tasks")))
    orchestrator = Orchestrator(make_registry(task=slow), provider)

    result = invoke(orchestrator, "show tasks", context, options=InvokeOptions(timeout_ms=50))

    assert result.error_code == "timeout"
    assert result.final_response.startswith("Sorry, that took too long")
    assert [i.type for i in result.intents] == ["task"]


def test_unexpected_failure_is_internal_error(make_registry, handlers, context):
    _, by_name = handlers
    provider = ScriptedProvider(router=decision(intent("tasks")))
    orchestrator = Orchestrator(make_registry(task=by_name["task"]), provider)

    def broken_route(state):
        raise KeyError("boom")

    orchestrator.route_after_router = broken_route
    orchestrator.workflow = orchestrator._create_workflow()

    result = invoke(orchestrator, "show tasks", context)

    assert result.error_code == "internal_error"
    assert result.final_response


def test_each_pass_appends_one_turn(make_registry, handlers, context):
    _, by_name = handlers
    store = InMemorySessionStore()
    provider = ScriptedProvider(router=decision(intent("tasks")))
    orchestrator = Orchestrator(make_registry(task=by_name["task"]), provider, session_store=store)

    async def scenario():
        await orchestrator.invoke("show tasks", "session-1", context)
        first = await store.load("session-1", context)
        await orchestrator.invoke("show tasks", "session-1", context)
        return first, await store.load("session-1", context)

    after_first, after_second = asyncio.run(scenario())

    assert [m.type for m in after_first] == ["human", "ai"]
    assert [m.type for m in after_second] == ["human", "ai", "human", "ai"]
    assert after_second[1].content == "All done."
    # The second pass saw the first turn as history
    assert [m.content for m in provider.router_calls[1]["messages"][1:3]] == ["show tasks", "All done."]


def test_explicit_history_is_used_as_given(make_registry, handlers, context):
    _, by_name = handlers
    store = InMemorySessionStore()
    provider = ScriptedProvider(router=decision(intent("tasks")))
    orchestrator = Orchestrator(make_registry(task=by_name["task"]), provider, session_store=store)

    invoke(orchestrator, "show tasks", context, history=[])

    assert len(provider.router_calls[0]["messages"]) == 2


def test_full_quota_stops_the_pass(make_registry, handlers, context):
    log, by_name = handlers
    store = InMemorySessionStore()
    provider = ScriptedProvider(router=decision(intent("tasks")))
    orchestrator = Orchestrator(make_registry(task=by_name["task"]), provider, session_store=store,
                                settings=OrchestratorSettings(max_conversations=1))

    async def scenario():
        await store.create(context, session_id="pinned")
        await store.pin("pinned", True, context)
        result = await orchestrator.invoke("show tasks", "new", context)
        return result, await store.get("new", context)

    result, created = asyncio.run(scenario())

    assert result.error_code == "limit_exceeded"
    assert "maximum of 1 conversations" in result.final_response
    assert log == []
    assert provider.calls == []
    assert created is None


def test_full_quota_evicts_oldest_by_default(make_registry, handlers, context):
    _, by_name = handlers
    settings = OrchestratorSettings(max_conversations=1)
    store = InMemorySessionStore()
    provider = ScriptedProvider(router=decision(intent("tasks")))
    orchestrator = Orchestrator(make_registry(task=by_name["task"]), provider,
                                session_store=store, settings=settings)

    async def scenario():
        await orchestrator.invoke("show tasks", "first", context)
        result = await orchestrator.invoke("show tasks", "second", context)
        return result, await store.list(context)

    result, listed = asyncio.run(scenario())

    assert result.error_code is None
    assert [info.session_id for info in listed] == ["second"]


def test_event_listener_sees_progress_and_response(make_registry, handlers, context):
    _, by_name = handlers
    events = []

    async def listener(event):
        events.append(event)

    provider = ScriptedProvider(router=decision(intent("tasks")))
    orchestrator = Orchestrator(make_registry(task=by_name["task"]), provider)

    result = invoke(orchestrator, "show tasks", context, options=InvokeOptions(on_event=listener))

    assert [e.node for e in events if e.type == "progress"] == ["router", "task_handler", "combiner"]
    assert events[-1].type == "response"
    assert events[-1].data["final_response"] == result.final_response
    assert all(e.trace_id == result.trace_id for e in events)


def test_failing_listener_does_not_break_the_pass(make_registry, handlers, context):
    _, by_name = handlers

    async def listener(event):
        raise RuntimeError("socket closed")

    orchestrator = Orchestrator(make_registry(task=by_name["task"]),
                                ScriptedProvider(router=decision(intent("tasks"))))

    result = invoke(orchestrator, "show tasks", context, options=InvokeOptions(on_event=listener))

    assert result.final_response == "All done."
    assert result.error_code is None


def test_trace_spans_router_and_combiner(make_registry, handlers, context):
    _, by_name = handlers
    tracer = MagicMock(spec=Tracer)
    orchestrator = Orchestrator(make_registry(task=by_name["task"]),
                                ScriptedProvider(router=decision(intent("tasks"))), tracer=tracer)

    result = invoke(orchestrator, "show tasks", context, options=InvokeOptions(trace_id="trace-9"))

    assert result.trace_id == "trace-9"
    tracer.start_trace.assert_called_once()
    assert [c.args[1] for c in tracer.start_span.call_args_list] == ["router", "combiner"]
    tracer.end_trace.assert_called_once()
    assert tracer.end_trace.call_args.args[0] == "trace-9"


def test_dict_context_is_accepted(make_registry, handlers):
    _, by_name = handlers
    orchestrator = Orchestrator(make_registry(task=by_name["task"]),
                                ScriptedProvider(router=decision(intent("tasks"))))

    result = invoke(orchestrator, "show tasks", {"user_id": "u", "team_id": "t", "locale": "en-GB"})

    assert result.final_response == "All done."
    context = by_name["task"].calls[0]["context"]
    assert context.user_id == "u"
    assert context.extras == {"locale": "en-GB"}


def test_coerce_context_merges_extras():
    context = coerce_context({"user_id": "u", "team_id": "t", "extras": {"a": 1}, "b": 2})
    assert context.extras == {"a": 1, "b": 2}


def test_metrics_count_model_calls(make_registry, handlers, context):
    _, by_name = handlers
    orchestrator = Orchestrator(make_registry(task=by_name["task"]),
                                ScriptedProvider(router=decision(intent("tasks"))))

    invoke(orchestrator, "show tasks", context)

    assert metrics.get_counter("model_calls", tags={"stage": "router"}) == 1
    assert metrics.get_counter("model_calls", tags={"stage": "combiner"}) == 1
    assert metrics.get_counter("orchestrations", tags={"outcome": "ok"}) == 1


@pytest.mark.parametrize("router_output", [
    decision(),
    decision(intent("weather")),
    decision(intent("greeting", "unknown")),
    decision(intent("tasks"), intent("customers"), intent("pages")),
    "nonsense",
    ValueError("bad"),
])
def test_every_pass_has_a_response(make_registry, handlers, context, router_output):
    _, by_name = handlers
    orchestrator = Orchestrator(make_registry(**by_name), ScriptedProvider(router=router_output))

    result = invoke(orchestrator, "anything", context)

    assert result.final_response.strip()


def test_context_without_team_is_an_internal_error(make_registry, handlers):
    log, by_name = handlers
    provider = ScriptedProvider(router=decision(intent("tasks")))
    orchestrator = Orchestrator(make_registry(task=by_name["task"]), provider,
                                session_store=InMemorySessionStore())

    result = invoke(orchestrator, "show tasks", {"user_id": "u"})

    assert result.error_code == "internal_error"
    assert result.final_response == localize("error", "en")
    assert provider.calls == []
    assert log == []


def test_failing_tracer_does_not_break_the_pass(make_registry, handlers, context):
    _, by_name = handlers
    tracer = MagicMock(spec=Tracer)
    for method in (tracer.start_trace, tracer.start_span, tracer.end_span, tracer.end_trace):
        method.side_effect = ConnectionError("tracing backend down")
    orchestrator = Orchestrator(make_registry(task=by_name["task"]),
                                ScriptedProvider(router=decision(intent("tasks"))), tracer=tracer)

    result = invoke(orchestrator, "show tasks", context)

    assert result.final_response == "All done."
    assert result.error_code is None
    tracer.end_trace.assert_called_once()


def test_double_submit_appends_both_turns(make_registry, handlers, context):
    _, by_name = handlers
    store = InMemorySessionStore()
    orchestrator = Orchestrator(make_registry(task=by_name["task"]),
                                ScriptedProvider(router=decision(intent("tasks"))), session_store=store)

    async def scenario():
        await store.append("session-1", [HumanMessage(content="earlier"), AIMessage(content="ok")], context)
        results = await asyncio.gather(
            orchestrator.invoke("show tasks", "session-1", context),
            orchestrator.invoke("show tasks", "session-1", context),
        )
        return results, await store.load("session-1", context)

    results, messages = asyncio.run(scenario())

    assert all(result.error_code is None for result in results)
    assert len(messages) == 2 + 4
    assert [m.type for m in messages[2:]] == ["human", "ai", "human", "ai"]


def test_blocking_handler_does_not_stall_other_passes(make_registry, handlers, context):
    _, by_name = handlers

    def slow_report(state):
        time.sleep(0.3)
        return {"success": True, "message": "report ready"}

    def route(messages):
        return decision(intent("reports")) if "report" in messages[-1].content else decision(intent("tasks"))

    orchestrator = Orchestrator(make_registry(report=slow_report, task=by_name["task"]),
                                ScriptedProvider(router=route))
    ticks = []

    async def ticker():
        while True:
            ticks.append(time.perf_counter())
            await asyncio.sleep(0.01)

    async def scenario():
        ticking = asyncio.create_task(ticker())
        await asyncio.sleep(0)
        results = await asyncio.gather(
            orchestrator.invoke("run the report", "slow", context),
            orchestrator.invoke("show tasks", "fast", context),
        )
        ticking.cancel()
        return results

    slow, fast = asyncio.run(scenario())

    assert slow.completed_handlers == ["report"]
    assert fast.completed_handlers == ["task"]
    assert max(b - a for a, b in zip(ticks, ticks[1:])) < 0.2
