"""Server-sent event streaming of workflow runs."""
import asyncio
import inspect
import json
import logging
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, Optional, Union

from services.events import WorkflowEvents

logger = logging.getLogger(__name__)

_DONE = object()

CompletionHook = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


def format_sse(event: str, data: Any) -> str:
    """Encode one server-sent event."""
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


async def create_sse_stream(
    graph,
    input_data: Dict[str, Any],
    events: WorkflowEvents,
    signal: asyncio.Event,
    on_finish: Optional[CompletionHook] = None,
    on_complete: Optional[CompletionHook] = None,
) -> AsyncGenerator[str, None]:
    """
    Run the workflow and relay every event update as SSE.

    ``on_finish`` is handed to the workflow (called with the final answer),
    ``on_complete`` receives the final graph state once the run ends. When the
    client goes away the abort signal is set and the run cancelled.
    """
    queue: asyncio.Queue = asyncio.Queue()
    unsubscribe = events.subscribe(lambda key, value: queue.put_nowait((key, value)))
    config = {"configurable": {"events": events, "signal": signal, "on_finish": on_finish}}

    async def run() -> None:
        try:
            final_state = await graph.ainvoke(input_data, config=config)
            if on_complete:
                result = on_complete(final_state)
                if inspect.isawaitable(result):
                    await result
        finally:
            queue.put_nowait(_DONE)

    task = asyncio.create_task(run())
    try:
        while True:
            item = await queue.get()
            if item is _DONE:
                break
            key, value = item
            yield format_sse(key, value)

        await task
        yield format_sse("done", {"status": events.get("status")})
    except Exception as e:
        logger.error(f"Error while streaming workflow: {e}", exc_info=True)
        yield format_sse("error", {"message": "Stream failed", "status": "ERROR"})
    finally:
        unsubscribe()
        if not task.done():
            signal.set()
            task.cancel()
