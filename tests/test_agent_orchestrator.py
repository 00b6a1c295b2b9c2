import asyncio
import json
from datetime import datetime, timedelta

import pytest
from sqlmodel import select

from legion_chat.db.models import Conversation, Message
from legion_chat.engine.errors import ChatError, ErrorKind, ModelProviderError
from legion_chat.engine.model_client import ModelDelta, ModelResponse
from legion_chat.engine.tool_calls import ToolCall, ToolCallDelta
from legion_chat.services.agent import AgentOrchestrator
from legion_chat.services.sql_store import SqlConversationStore
from legion_chat.tools.registry import Tool, ToolRegistry

STATUS = "\n\n[tools]\n\n"


def _registry(log=None) -> ToolRegistry:
    def _make(name):
        async def handler(params):
            if log is not None:
                log.append(name)
            return json.dumps({"tool": name, "params": params})

        return Tool(name=name, description=name, parameters={"type": "object", "properties": {}}, handler=handler)

    return ToolRegistry([_make("first"), _make("second")])


def _orchestrator(model, **kwargs) -> AgentOrchestrator:
    kwargs.setdefault("tool_status_text", STATUS)
    return AgentOrchestrator(SqlConversationStore(), model, _registry(kwargs.pop("log", None)), **kwargs)


async def _messages(session, conversation_id):
    rows = (
        await session.exec(
            select(Message).where(Message.conversation_id == conversation_id).order_by(Message.created_at)
        )
    ).all()
    return list(rows)


async def _drain(channel):
    return [event async for event in channel]


@pytest.mark.asyncio
async def test_new_conversation_persists_one_user_and_one_assistant_message(session, scripted_model):
    model = scripted_model([ModelResponse(content="Hi there!")])
    reply = await _orchestrator(model).process_message("alice.near", "Hello")

    assert reply.conversation_id
    assert reply.message["role"] == "assistant"
    assert reply.message["content"] == "Hi there!"

    convo = await session.get(Conversation, reply.conversation_id)
    assert convo.title == "Hello"
    assert convo.owner_account_id == "alice.near"
    msgs = await _messages(session, reply.conversation_id)
    assert sorted(m.role for m in msgs) == ["assistant", "user"]


@pytest.mark.asyncio
async def test_context_is_system_then_history_then_user(session, scripted_model):
    model = scripted_model([ModelResponse(content="one"), ModelResponse(content="two")])
    orchestrator = _orchestrator(model, history_limit=1)

    first = await orchestrator.process_message("alice.near", "first question")
    await orchestrator.process_message("alice.near", "second question", first.conversation_id)

    second_context = model.calls[1]
    assert second_context[0]["role"] == "system"
    # history_limit=1 keeps only the newest stored message (the assistant reply).
    assert [m["role"] for m in second_context[1:]] == ["assistant", "user"]
    assert second_context[-1]["content"] == "second question"


@pytest.mark.asyncio
async def test_title_is_truncated_to_limit(session, scripted_model):
    model = scripted_model([ModelResponse(content="ok")])
    text = "x" * 150
    reply = await _orchestrator(model).process_message("alice.near", text)
    convo = await session.get(Conversation, reply.conversation_id)
    assert convo.title == "x" * 100


@pytest.mark.asyncio
async def test_unknown_conversation_id_starts_a_new_conversation(session, scripted_model):
    model = scripted_model([ModelResponse(content="ok")])
    reply = await _orchestrator(model).process_message("alice.near", "Hello", "does-not-exist")
    assert reply.conversation_id != "does-not-exist"
    assert await session.get(Conversation, "does-not-exist") is None


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["", "y" * 10001])
async def test_message_length_is_validated(engine, scripted_model, text):
    model = scripted_model([])
    with pytest.raises(ChatError) as exc_info:
        await _orchestrator(model).process_message("alice.near", text)
    assert exc_info.value.kind == ErrorKind.VALIDATION
    assert model.calls == []


@pytest.mark.asyncio
async def test_foreign_conversation_is_forbidden_and_nothing_is_persisted(session, scripted_model):
    owner = await _orchestrator(scripted_model([ModelResponse(content="mine")])).process_message("a.near", "secret")
    before = await _messages(session, owner.conversation_id)

    intruder_model = scripted_model([ModelResponse(content="never")])
    with pytest.raises(ChatError) as exc_info:
        await _orchestrator(intruder_model).process_message("b.near", "let me in", owner.conversation_id)
    assert exc_info.value.kind == ErrorKind.FORBIDDEN
    assert exc_info.value.status_code == 403
    assert intruder_model.calls == []

    with pytest.raises(ChatError):
        await _orchestrator(intruder_model).process_message_stream("b.near", "let me in", owner.conversation_id)

    after = await _messages(session, owner.conversation_id)
    assert len(after) == len(before)


@pytest.mark.asyncio
async def test_user_message_survives_model_auth_failure(session, scripted_model):
    model = scripted_model([ModelProviderError(401, "Model auth error (401)")])
    orchestrator = _orchestrator(model)

    with pytest.raises(ChatError) as exc_info:
        await orchestrator.process_message("alice.near", "Are you there?")
    assert exc_info.value.kind == ErrorKind.UNAUTHORIZED

    convos = (await session.exec(select(Conversation).where(Conversation.owner_account_id == "alice.near"))).all()
    assert len(convos) == 1
    msgs = await _messages(session, convos[0].id)
    assert [(m.role, m.content) for m in msgs] == [("user", "Are you there?")]


@pytest.mark.asyncio
async def test_tool_results_follow_call_order_in_next_context(session, scripted_model):
    log = []
    model = scripted_model(
        [
            ModelResponse(
                content="",
                tool_calls=[
                    ToolCall(id="t1", name="first", arguments={"n": 1}),
                    ToolCall(id="t2", name="second", arguments={"n": 2}),
                ],
            ),
            ModelResponse(content="done"),
        ]
    )
    reply = await _orchestrator(model, log=log).process_message("alice.near", "use tools")

    assert log == ["first", "second"]
    assert reply.message["content"] == "done"
    next_context = model.calls[1]
    assistant = next_context[-3]
    assert assistant["role"] == "assistant"
    assert [c["id"] for c in assistant["tool_calls"]] == ["t1", "t2"]
    assert [(m["role"], m["tool_call_id"]) for m in next_context[-2:]] == [("tool", "t1"), ("tool", "t2")]
    assert json.loads(next_context[-2]["content"])["tool"] == "first"


@pytest.mark.asyncio
async def test_streaming_chunks_concatenate_to_persisted_content(session, scripted_model):
    model = scripted_model([[ModelDelta(content="Hel"), ModelDelta(content="lo, "), ModelDelta(content="world")]])
    channel = await _orchestrator(model).process_message_stream("alice.near", "Hello")
    events = await _drain(channel)

    assert [e.type for e in events] == ["chunk", "chunk", "chunk", "complete"]
    streamed = "".join(e.data["content"] for e in events if e.type == "chunk")
    complete = events[-1].data

    msg = await session.get(Message, complete["messageId"])
    assert msg.role == "assistant"
    assert msg.conversation_id == complete["conversationId"]
    assert msg.content == streamed == "Hello, world"


@pytest.mark.asyncio
async def test_streamed_tool_calls_emit_status_and_feed_results_back(session, scripted_model):
    model = scripted_model(
        [
            [
                ModelDelta(content="Let me check."),
                ModelDelta(tool_calls=[ToolCallDelta(index=0, id="t1", name="first", arguments='{"q":')]),
                ModelDelta(tool_calls=[ToolCallDelta(index=1, id="t2", name="second", arguments="{}")]),
                ModelDelta(tool_calls=[ToolCallDelta(index=0, arguments=' "rust"}')]),
            ],
            [ModelDelta(content=" Found two.")],
        ]
    )
    channel = await _orchestrator(model).process_message_stream("alice.near", "find rust devs")
    events = await _drain(channel)

    chunks = [e.data["content"] for e in events if e.type == "chunk"]
    assert chunks == ["Let me check.", STATUS, " Found two."]
    assert events[-1].type == "complete"

    next_context = model.calls[1]
    assert next_context[-3]["content"] == "Let me check."
    assert json.loads(next_context[-3]["tool_calls"][0]["function"]["arguments"]) == {"q": "rust"}
    assert [m["tool_call_id"] for m in next_context[-2:]] == ["t1", "t2"]

    msg = await session.get(Message, events[-1].data["messageId"])
    assert msg.content == "".join(chunks)


@pytest.mark.asyncio
async def test_loop_stops_after_five_iterations_and_still_completes(session, scripted_model):
    always_tools = [ModelDelta(tool_calls=[ToolCallDelta(index=0, id="t", name="first", arguments="{}")])]
    model = scripted_model([always_tools], repeat_last=True)
    channel = await _orchestrator(model, tool_status_text="").process_message_stream("alice.near", "loop forever")
    events = await _drain(channel)

    assert len(model.calls) == 5
    assert [e.type for e in events] == ["complete"]
    msg = await session.get(Message, events[-1].data["messageId"])
    assert msg.content == ""


@pytest.mark.asyncio
async def test_loop_bound_non_streaming(session, scripted_model):
    model = scripted_model(
        [ModelResponse(content="", tool_calls=[ToolCall(id="t", name="first", arguments={})])], repeat_last=True
    )
    reply = await _orchestrator(model).process_message("alice.near", "loop forever")
    assert len(model.calls) == 5
    assert reply.message["content"] == ""


@pytest.mark.asyncio
async def test_mid_stream_failure_emits_single_error_and_no_assistant_row(session, scripted_model):
    model = scripted_model([[ModelDelta(content="partial"), ModelProviderError(429, "Model HTTP 429", retry_after=5)]])
    channel = await _orchestrator(model).process_message_stream("alice.near", "Hello")
    events = await _drain(channel)

    assert [e.type for e in events] == ["chunk", "error"]
    assert events[-1].data == {"message": "Rate limited"}

    convo = (await session.exec(select(Conversation).where(Conversation.owner_account_id == "alice.near"))).one()
    msgs = await _messages(session, convo.id)
    assert [m.role for m in msgs] == ["user"]


@pytest.mark.asyncio
async def test_closing_channel_cancels_turn_without_persisting_reply(session, scripted_model):
    gate = asyncio.Event()

    class SlowModel:
        model = "slow"
        calls = []

        async def stream(self, messages, tools=None):
            yield ModelDelta(content="first")
            await gate.wait()
            yield ModelDelta(content="never")

    channel = await _orchestrator(SlowModel()).process_message_stream("alice.near", "Hello")
    iterator = channel.__aiter__()
    first = await iterator.__anext__()
    assert first.data == {"content": "first"}

    await channel.close()
    gate.set()
    await asyncio.sleep(0)

    convo = (await session.exec(select(Conversation).where(Conversation.owner_account_id == "alice.near"))).one()
    msgs = await _messages(session, convo.id)
    assert [m.role for m in msgs] == ["user"]


@pytest.mark.asyncio
async def test_missing_model_backend_is_service_unavailable(engine):
    with pytest.raises(ChatError) as exc_info:
        await AgentOrchestrator(SqlConversationStore()).process_message("alice.near", "Hello")
    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
async def test_prompt_builder_supplies_system_message(engine, scripted_model):
    async def prompt_for(account_id):
        return f"system for {account_id}"

    model = scripted_model([ModelResponse(content="ok")])
    await _orchestrator(model, prompt_builder=prompt_for).process_message("alice.near", "Hello")
    assert model.calls[0][0] == {"role": "system", "content": "system for alice.near"}


@pytest.mark.asyncio
async def test_get_conversation_pages_newest_first_and_returns_chronological(engine):
    store = SqlConversationStore()
    base = datetime(2026, 1, 1, 12, 0, 0)
    await store.add_user_message("c1", "alice.near", "m0", create=True, title="m0", created_at=base)
    for i in range(1, 5):
        await store.add_assistant_message("c1", f"m{i}", created_at=base + timedelta(minutes=i))

    orchestrator = AgentOrchestrator(store)
    page = await orchestrator.get_conversation("alice.near", "c1", limit=2, offset=0)
    assert [m["content"] for m in page.messages] == ["m3", "m4"]
    assert page.has_more is True

    last = await orchestrator.get_conversation("alice.near", "c1", limit=2, offset=4)
    assert [m["content"] for m in last.messages] == ["m0"]
    assert last.has_more is False

    with pytest.raises(ChatError) as forbidden:
        await orchestrator.get_conversation("bob.near", "c1")
    assert forbidden.value.kind == ErrorKind.FORBIDDEN

    with pytest.raises(ChatError) as missing:
        await orchestrator.get_conversation("alice.near", "nope")
    assert missing.value.kind == ErrorKind.NOT_FOUND


@pytest.mark.asyncio
async def test_list_conversations_is_scoped_to_account(engine):
    store = SqlConversationStore()
    base = datetime(2026, 1, 1)
    await store.add_user_message("old", "alice.near", "old", create=True, title="old", created_at=base)
    await store.add_user_message("new", "alice.near", "new", create=True, title="new", created_at=base + timedelta(days=1))
    await store.add_assistant_message("new", "reply", created_at=base + timedelta(days=1, minutes=1))
    await store.add_user_message("other", "bob.near", "bob", create=True, title="bob", created_at=base)

    summaries = await AgentOrchestrator(store).list_conversations("alice.near")
    assert [(s.id, s.message_count) for s in summaries] == [("new", 2), ("old", 1)]


@pytest.mark.asyncio
async def test_follow_up_keeps_title_and_bumps_updated_at_even_when_reply_fails(session, scripted_model):
    first = await _orchestrator(scripted_model([ModelResponse(content="ok")])).process_message(
        "alice.near", "Original title"
    )
    before = await session.get(Conversation, first.conversation_id, populate_existing=True)
    title, updated_at = before.title, before.updated_at

    failing = scripted_model([ModelProviderError(500, "Model HTTP 500")])
    with pytest.raises(ChatError):
        await _orchestrator(failing).process_message("alice.near", "A different opener", first.conversation_id)

    after = await session.get(Conversation, first.conversation_id, populate_existing=True)
    assert after.title == title == "Original title"
    assert after.updated_at > updated_at
    msgs = await _messages(session, first.conversation_id)
    assert [m.role for m in msgs] == ["user", "assistant", "user"]
