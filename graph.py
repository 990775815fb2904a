import os
import re
import inspect
from datetime import datetime
from typing import TypedDict, Annotated, Optional, List, Dict, Any
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_core.runnables import RunnableConfig
from langgraph.graph import StateGraph, START, END
from langgraph.graph.message import add_messages
import logging

from services.chunk_buffer import ChunkBuffer
from services.domain import get_domain_instructions, validate_question_for_domain, GENERAL_INSTRUCTIONS
from services.events import WorkflowEvents
from services.llm import GenerationAborted, generate_text, get_chat_model

logger = logging.getLogger(__name__)

MAX_ALLOWED_CUSTOM_INSTRUCTIONS_LENGTH = 6000
CHUNK_THRESHOLD = 200
MAX_SUGGESTIONS = 3

TAVILY_API_KEY = os.getenv("TAVILY_API_KEY")
ENFORCE_DOMAIN_RESTRICTIONS = os.getenv("ENFORCE_DOMAIN_RESTRICTIONS", "true").lower() == "true"

SEARCH_PROMPT = """Answer the user's latest question using the web search results below.
Cite the results you rely on with their number in square brackets, e.g. [1].
If the results do not cover the question, say so before answering from general knowledge.

Search results:
{results}
"""

SUGGESTIONS_PROMPT = """Based on the question and answer below, suggest up to {count} short follow-up questions
the user is likely to ask next. Return one question per line with no numbering and no other text.

Question: {question}

Answer: {answer}
"""


class State(TypedDict, total=False):
    messages: Annotated[list[BaseMessage], add_messages]
    mode: Optional[str]
    web_search: bool
    show_suggestions: bool
    domain: Optional[str]
    custom_instructions: Optional[str]
    gl: Optional[Dict[str, str]]
    thread_id: Optional[str]
    thread_item_id: Optional[str]
    answer: Optional[str]
    sources: List[Dict[str, Any]]
    suggested_questions: List[str]
    redirect_to: Optional[str]
    domain_rejected: bool
    error: Optional[str]


def _runtime(config: Optional[RunnableConfig]) -> Dict[str, Any]:
    """Collaborators passed by the caller through config["configurable"]."""
    configurable = (config or {}).get("configurable", {})
    return {
        "events": configurable.get("events") or WorkflowEvents(),
        "signal": configurable.get("signal"),
        "on_finish": configurable.get("on_finish"),
        "enforce_domain": configurable.get("enforce_domain", ENFORCE_DOMAIN_RESTRICTIONS),
    }


def get_humanized_date(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).strftime("%A, %B %d, %Y")


def filter_messages(messages: List[BaseMessage]) -> List[BaseMessage]:
    """Keep user and assistant turns that carry content."""
    return [
        message for message in messages or []
        if isinstance(message, (HumanMessage, AIMessage)) and message.content
    ]


def latest_question(messages: List[BaseMessage]) -> str:
    for message in reversed(messages or []):
        if isinstance(message, HumanMessage) and isinstance(message.content, str):
            return message.content
    return ""


def build_system_prompt(
    domain: Optional[str],
    custom_instructions: Optional[str],
    gl: Optional[Dict[str, str]] = None,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """
    System prompt for a conversation, or None when there is neither a domain
    nor custom instructions to convey.
    """
    if not domain and not custom_instructions:
        return None

    gl = gl or {}
    content = (
        f"Today is {get_humanized_date(now)}. and current location is "
        f"{gl.get('city') or 'unknown'}, {gl.get('country') or 'unknown'}."
    )

    if domain:
        content += f"\n\n{get_domain_instructions(domain)}"

    if custom_instructions:
        if len(custom_instructions) < MAX_ALLOWED_CUSTOM_INSTRUCTIONS_LENGTH:
            content += f"\n\n{custom_instructions}"
        else:
            logger.warning(
                f"Custom instructions dropped: {len(custom_instructions)} characters "
                f"exceeds {MAX_ALLOWED_CUSTOM_INSTRUCTIONS_LENGTH}"
            )

    return content


def _reasoning_step(previous: Optional[Dict[Any, Any]], full_text: str) -> Dict[Any, Any]:
    previous = previous or {}
    step = previous.get("0") or {}
    return {
        **previous,
        "0": {
            **step,
            "id": 0,
            "status": "COMPLETED",
            "steps": {
                **(step.get("steps") or {}),
                "reasoning": {"data": full_text, "status": "COMPLETED"},
            },
        },
    }


async def stream_answer(model, messages: List[BaseMessage], events: WorkflowEvents, signal=None) -> str:
    """Generate an answer, pushing buffered reasoning and answer text to the event stream."""
    reasoning_buffer = ChunkBuffer(
        threshold=CHUNK_THRESHOLD,
        break_on=["\n\n"],
        on_flush=lambda _chunk, full_text: events.update(
            "steps", lambda previous: _reasoning_step(previous, full_text)
        ),
    )
    answer_buffer = ChunkBuffer(
        threshold=CHUNK_THRESHOLD,
        break_on=["\n"],
        on_flush=lambda chunk, _full_text: events.update(
            "answer", lambda current: {**(current or {}), "text": chunk, "status": "PENDING"}
        ),
    )

    response = await generate_text(
        model,
        messages,
        signal=signal,
        on_reasoning=lambda chunk, _full: reasoning_buffer.append(chunk),
        on_chunk=lambda chunk, _full: answer_buffer.append(chunk),
    )

    reasoning_buffer.finalize()
    answer_buffer.finalize()
    return response


async def finish_answer(state: State, answer: str, runtime: Dict[str, Any]) -> Dict[str, Any]:
    """Publish the final answer and hand it to the caller's completion callback."""
    events = runtime["events"]
    events.update("answer", lambda previous: {
        **(previous or {}),
        "text": "",
        "full_text": answer,
        "status": "COMPLETED",
    })
    events.update("status", "COMPLETED")

    on_finish = runtime["on_finish"]
    if on_finish:
        result = on_finish({
            "answer": answer,
            "thread_id": state.get("thread_id"),
            "thread_item_id": state.get("thread_item_id"),
        })
        if inspect.isawaitable(result):
            await result

    return {"answer": answer, "redirect_to": None}


def handle_error(error: Exception, events: WorkflowEvents) -> Dict[str, Any]:
    """Log a task failure and surface it on the event stream; the run then ends."""
    if isinstance(error, GenerationAborted):
        logger.info("Workflow task aborted")
        status, message = "ABORTED", "Generation stopped"
    else:
        logger.error(f"Workflow task failed: {error}", exc_info=True)
        status, message = "ERROR", "Something went wrong while generating the answer"

    events.update("answer", lambda previous: {**(previous or {}), "text": "", "status": status})
    events.update("error", {"message": message, "status": status})
    events.update("status", status)
    return {"error": message, "redirect_to": None}


async def domain_gate(state: State, config: RunnableConfig):
    """Reject an opening question that does not belong to the thread's restricted domain."""
    runtime = _runtime(config)
    if not runtime["enforce_domain"]:
        return {"domain_rejected": False}

    conversation = filter_messages(state.get("messages", []))
    if sum(isinstance(message, HumanMessage) for message in conversation) != 1:
        # Follow-ups inherit the topic of the opening question.
        return {"domain_rejected": False}

    result = validate_question_for_domain(latest_question(conversation), state.get("domain"))
    if result.is_valid:
        return {"domain_rejected": False}

    update = await finish_answer(state, result.suggestion, runtime)
    return {**update, "domain_rejected": True}


async def completion(state: State, config: RunnableConfig):
    """Answer the conversation with the model selected by the chat mode."""
    runtime = _runtime(config)
    try:
        messages = filter_messages(state.get("messages", []))

        system_prompt = build_system_prompt(
            state.get("domain"), state.get("custom_instructions"), state.get("gl")
        )
        if system_prompt:
            messages = [SystemMessage(content=system_prompt), *messages]

        if state.get("web_search"):
            logger.info("Web search requested, redirecting to quick_search")
            return {"redirect_to": "quick_search"}

        model = get_chat_model(state.get("mode"))
        answer = await stream_answer(model, messages, runtime["events"], runtime["signal"])
        return await finish_answer(state, answer, runtime)
    except Exception as e:
        return handle_error(e, runtime["events"])


def get_search_tool():
    """Web search tool used by the quick_search task."""
    from langchain_tavily import TavilySearch

    return TavilySearch(max_results=5, tavily_api_key=TAVILY_API_KEY)


def format_search_results(results: List[Dict[str, Any]]) -> str:
    return "\n\n".join(
        f"[{index}] {result.get('title', '')} ({result.get('url', '')})\n{result.get('content', '')}"
        for index, result in enumerate(results, start=1)
    )


async def quick_search(state: State, config: RunnableConfig):
    """Answer from web search results instead of the model's own knowledge."""
    runtime = _runtime(config)
    events = runtime["events"]
    try:
        conversation = filter_messages(state.get("messages", []))
        question = latest_question(conversation)

        raw = await get_search_tool().ainvoke({"query": question})
        results = raw.get("results", []) if isinstance(raw, dict) else []
        sources = [
            {"title": result.get("title", ""), "link": result.get("url", ""), "index": index}
            for index, result in enumerate(results, start=1)
        ]
        events.update("sources", sources)
        logger.info(f"Web search returned {len(results)} results")

        system_prompt = build_system_prompt(
            state.get("domain"), state.get("custom_instructions"), state.get("gl")
        ) or GENERAL_INSTRUCTIONS
        system_prompt += "\n\n" + SEARCH_PROMPT.format(results=format_search_results(results))
        messages = [SystemMessage(content=system_prompt), *conversation]

        model = get_chat_model(state.get("mode"))
        answer = await stream_answer(model, messages, events, runtime["signal"])
        update = await finish_answer(state, answer, runtime)
        return {**update, "sources": sources}
    except Exception as e:
        return handle_error(e, events)


def parse_suggestions(text: str, limit: int = MAX_SUGGESTIONS) -> List[str]:
    suggestions = []
    for line in text.splitlines():
        line = re.sub(r"^\s*(?:[-*•]|\d+[.)])\s*", "", line).strip()
        if line:
            suggestions.append(line)
    return suggestions[:limit]


async def suggestions(state: State, config: RunnableConfig):
    """Propose follow-up questions for a finished answer."""
    events = _runtime(config)["events"]
    try:
        model = get_chat_model(state.get("mode"))
        prompt = SUGGESTIONS_PROMPT.format(
            count=MAX_SUGGESTIONS,
            question=latest_question(state.get("messages", [])),
            answer=state.get("answer", ""),
        )
        response = await model.ainvoke([HumanMessage(content=prompt)])
        content = response.content if isinstance(response.content, str) else ""
        items = parse_suggestions(content)
    except Exception as e:
        logger.error(f"Error generating suggestions: {e}")
        items = []

    events.update("suggestions", items)
    return {"suggested_questions": items}


def route_after_gate(state: State) -> str:
    return END if state.get("domain_rejected") else "completion"


def route_after_answer(state: State) -> str:
    if state.get("redirect_to"):
        return state["redirect_to"]
    if state.get("error"):
        return END
    if state.get("show_suggestions") and state.get("answer"):
        return "suggestions"
    return END


# Build the chat workflow; callers compile it.
chat_graph = (
    StateGraph(State)
    .add_node("domain_gate", domain_gate)
    .add_node("completion", completion)
    .add_node("quick_search", quick_search)
    .add_node("suggestions", suggestions)
    .add_edge(START, "domain_gate")
    .add_conditional_edges("domain_gate", route_after_gate, {"completion": "completion", END: END})
    .add_conditional_edges(
        "completion",
        route_after_answer,
        {"quick_search": "quick_search", "suggestions": "suggestions", END: END},
    )
    .add_conditional_edges("quick_search", route_after_answer, {"suggestions": "suggestions", END: END})
    .add_edge("suggestions", END)
)
