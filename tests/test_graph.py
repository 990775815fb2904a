import asyncio
from datetime import datetime

from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.messages import AIMessage, AIMessageChunk

import graph as workflow
from services.events import WorkflowEvents

PATENT_QUESTION = "What is the process to file a patent?"
ANSWER = "File an application with the patent office.\nThen wait for examination."


def fake_model(*replies):
    return GenericFakeChatModel(messages=iter([AIMessage(content=reply) for reply in replies]))


def run(input_data, events=None, **configurable):
    compiled = workflow.chat_graph.compile()
    config = {"configurable": {"events": events or WorkflowEvents(), **configurable}}
    return compiled.ainvoke(input_data, config=config)


def question_state(question=PATENT_QUESTION, **overrides):
    state = {
        "messages": [{"role": "user", "content": question}],
        "mode": "gpt-4o-mini",
        "domain": "legal",
        "web_search": False,
        "show_suggestions": False,
        "thread_id": "thread-1",
        "thread_item_id": "item-1",
    }
    state.update(overrides)
    return state


async def test_completion_streams_answer_and_reports_it(monkeypatch):
    model = fake_model(ANSWER)
    monkeypatch.setattr(workflow, "get_chat_model", lambda mode: model)
    events = WorkflowEvents()
    seen = []
    events.subscribe(lambda key, value: seen.append((key, value)))
    finished = []

    final = await run(question_state(), events=events, on_finish=finished.append)

    assert final["answer"] == ANSWER
    assert finished == [{"answer": ANSWER, "thread_id": "thread-1", "thread_item_id": "item-1"}]
    assert events.get("status") == "COMPLETED"
    assert events.get("answer") == {"text": "", "full_text": ANSWER, "status": "COMPLETED"}

    pending_chunks = [value["text"] for key, value in seen if key == "answer" and value["status"] == "PENDING"]
    assert pending_chunks
    assert "".join(pending_chunks) == ANSWER


async def test_async_completion_callback_is_awaited(monkeypatch):
    monkeypatch.setattr(workflow, "get_chat_model", lambda mode: fake_model(ANSWER))
    finished = []

    async def on_finish(result):
        await asyncio.sleep(0)
        finished.append(result["answer"])

    await run(question_state(), on_finish=on_finish)
    assert finished == [ANSWER]


async def test_suggestions_follow_the_answer(monkeypatch):
    model = fake_model(ANSWER, "1. How long does it take?\n- What does it cost?\nWho can file?\nExtra question?")
    monkeypatch.setattr(workflow, "get_chat_model", lambda mode: model)
    events = WorkflowEvents()

    final = await run(question_state(show_suggestions=True), events=events)

    expected = ["How long does it take?", "What does it cost?", "Who can file?"]
    assert final["suggested_questions"] == expected
    assert events.get("suggestions") == expected


async def test_off_topic_opening_question_is_rejected_without_calling_the_model(monkeypatch):
    def no_model(mode):
        raise AssertionError("model must not be called")

    monkeypatch.setattr(workflow, "get_chat_model", no_model)
    events = WorkflowEvents()
    finished = []

    final = await run(
        question_state("What's a good recipe for pasta?", show_suggestions=True),
        events=events,
        on_finish=finished.append,
    )

    assert final["domain_rejected"] is True
    assert "Legal" in final["answer"]
    assert finished[0]["answer"] == final["answer"]
    assert events.get("status") == "COMPLETED"


async def test_domain_gate_can_be_disabled(monkeypatch):
    monkeypatch.setattr(workflow, "get_chat_model", lambda mode: fake_model("Boil water first."))

    final = await run(question_state("What's a good recipe for pasta?"), enforce_domain=False)

    assert final["answer"] == "Boil water first."


async def test_follow_up_questions_are_not_gated(monkeypatch):
    monkeypatch.setattr(workflow, "get_chat_model", lambda mode: fake_model("Sure."))
    messages = [
        {"role": "user", "content": PATENT_QUESTION},
        {"role": "assistant", "content": ANSWER},
        {"role": "user", "content": "Thanks, and any pasta tips?"},
    ]

    final = await run(question_state(messages=messages))

    assert final["answer"] == "Sure."
    assert not final.get("domain_rejected")


async def test_web_search_answers_from_results(monkeypatch):
    captured = {}

    class FakeSearch:
        async def ainvoke(self, payload):
            captured["query"] = payload["query"]
            return {"results": [
                {"title": "USPTO guide", "url": "https://example.com/uspto", "content": "How to apply."},
                {"title": "Patent basics", "url": "https://example.com/basics", "content": "Basics."},
            ]}

    class RecordingModel(GenericFakeChatModel):
        async def astream(self, messages, *args, **kwargs):
            captured["system"] = messages[0].content
            async for chunk in super().astream(messages, *args, **kwargs):
                yield chunk

    model = RecordingModel(messages=iter([AIMessage(content="Apply online [1].")]))
    monkeypatch.setattr(workflow, "get_chat_model", lambda mode: model)
    monkeypatch.setattr(workflow, "get_search_tool", lambda: FakeSearch())
    events = WorkflowEvents()

    final = await run(question_state(web_search=True), events=events)

    assert captured["query"] == PATENT_QUESTION
    assert "[1] USPTO guide (https://example.com/uspto)" in captured["system"]
    assert final["answer"] == "Apply online [1]."
    assert final["sources"] == [
        {"title": "USPTO guide", "link": "https://example.com/uspto", "index": 1},
        {"title": "Patent basics", "link": "https://example.com/basics", "index": 2},
    ]
    assert events.get("sources") == final["sources"]


async def test_abort_signal_stops_generation(monkeypatch):
    monkeypatch.setattr(workflow, "get_chat_model", lambda mode: fake_model(ANSWER))
    events = WorkflowEvents()
    signal = asyncio.Event()
    signal.set()
    finished = []

    final = await run(question_state(show_suggestions=True), events=events, signal=signal, on_finish=finished.append)

    assert final["error"] == "Generation stopped"
    assert events.get("status") == "ABORTED"
    assert finished == []
    assert "suggested_questions" not in final


async def test_model_failure_is_reported_as_error(monkeypatch):
    def broken_model(mode):
        raise RuntimeError("provider down")

    monkeypatch.setattr(workflow, "get_chat_model", broken_model)
    events = WorkflowEvents()

    final = await run(question_state(), events=events)

    assert events.get("status") == "ERROR"
    assert events.get("error")["status"] == "ERROR"
    assert "provider down" not in final["error"]


def test_system_prompt_includes_date_location_and_domain():
    prompt = workflow.build_system_prompt(
        "legal", "Answer briefly.", {"city": "Lahore", "country": "PK"}, now=datetime(2024, 3, 5)
    )
    assert prompt.startswith("Today is Tuesday, March 05, 2024. and current location is Lahore, PK.")
    assert workflow.get_domain_instructions("legal") in prompt
    assert prompt.endswith("Answer briefly.")


def test_system_prompt_drops_oversized_instructions():
    oversized = "x" * workflow.MAX_ALLOWED_CUSTOM_INSTRUCTIONS_LENGTH
    prompt = workflow.build_system_prompt("legal", oversized)
    assert oversized not in prompt


def test_no_system_prompt_without_domain_or_instructions():
    assert workflow.build_system_prompt(None, None) is None


def test_parse_suggestions_strips_list_markers():
    text = "1) First?\n\n* Second?\n2. Third?\n- Fourth?"
    assert workflow.parse_suggestions(text) == ["First?", "Second?", "Third?"]


class DroppingModel:
    """Streams two lines, then the provider connection drops."""

    async def astream(self, messages):
        yield AIMessageChunk(content="First line\n")
        yield AIMessageChunk(content="Second line\n")
        raise RuntimeError("connection dropped")


async def test_failure_mid_stream_publishes_no_extra_text(monkeypatch):
    monkeypatch.setattr(workflow, "get_chat_model", lambda mode: DroppingModel())
    events = WorkflowEvents()
    seen = []
    events.subscribe(lambda key, value: seen.append((key, value)))

    await run(question_state(), events=events)

    answers = [value for key, value in seen if key == "answer"]
    assert [answer["text"] for answer in answers] == ["First line\n", "Second line\n", ""]
    assert answers[-1]["status"] == "ERROR"
    assert events.get("status") == "ERROR"
