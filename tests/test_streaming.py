import asyncio

from intent_graph.domain.models.orchestration_state import HandlerResult, Intent
from intent_graph.domain.streaming.streaming_handler import StreamingHandler


def test_updates_become_ordered_events():
    received = []

    async def listener(event):
        received.append(event)

    handler = StreamingHandler("s1", "t1", listener)

    async def scenario():
        await handler.handle_update({"router": {"intents": [Intent(type="task")]}})
        await handler.handle_update({"task_handler": {
            "handler_results": {"task": HandlerResult(success=True)}, "completed_handlers": ["task"]
        }})
        await handler.handle_update({"combiner": {"final_response": "Done."}})

    asyncio.run(scenario())

    assert [(e.type, e.node, e.step_index) for e in received] == [
        ("progress", "router", 1),
        ("progress", "task_handler", 2),
        ("progress", "combiner", 3),
        ("response", "combiner", 3),
    ]
    assert received[0].data["intents"] == ["task"]
    assert received[1].data == {"capability": "task", "success": True}
    assert received[-1].data["final_response"] == "Done."
    assert all(e.session_id == "s1" and e.trace_id == "t1" for e in received)


def test_error_node_is_not_a_capability():
    handler = StreamingHandler("s1")

    asyncio.run(handler.handle_update({"error_handler": {"final_response": "Sorry", "error_code": "timeout"}}))

    assert [e.type for e in handler.events] == ["progress", "response"]
    assert handler.events[-1].data["error_code"] == "timeout"


def test_empty_node_update_is_tolerated():
    handler = StreamingHandler("s1")

    asyncio.run(handler.handle_update({"combiner": None}))

    assert [e.type for e in handler.events] == ["progress"]


def test_listener_failure_is_swallowed():
    async def listener(event):
        raise RuntimeError("gone")

    handler = StreamingHandler("s1", listener=listener)

    asyncio.run(handler.handle_update({"greeting": {"completed_handlers": ["greeting"]}}))

    assert len(handler.events) == 1
