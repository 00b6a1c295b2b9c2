import json

from legion_chat.engine.tool_calls import (
    ToolCall,
    ToolCallDelta,
    ToolCallFragment,
    finalize_tool_calls,
    merge_tool_call_delta,
    merge_tool_call_deltas,
    parse_tool_arguments,
)


def test_merge_creates_fragment_for_new_index():
    merged = merge_tool_call_delta({}, ToolCallDelta(index=0, id="call_a", name="search_builders", arguments='{"q'))
    assert merged == {0: ToolCallFragment(index=0, id="call_a", name="search_builders", arguments_text='{"q')}


def test_merge_appends_arguments_and_keeps_first_id_and_name():
    fragments = {0: ToolCallFragment(index=0, id="call_a", name="search_builders", arguments_text='{"query": ')}
    merged = merge_tool_call_delta(fragments, ToolCallDelta(index=0, id="call_b", name="other", arguments='"rust"}'))
    assert merged[0].id == "call_a"
    assert merged[0].name == "search_builders"
    assert merged[0].arguments_text == '{"query": "rust"}'


def test_merge_fills_missing_id_and_name_from_later_delta():
    merged = merge_tool_call_deltas(
        {},
        [
            ToolCallDelta(index=1, arguments='{"accountId"'),
            ToolCallDelta(index=1, id="call_x"),
            ToolCallDelta(index=1, name="get_builder_profile", arguments=': "a.near"}'),
        ],
    )
    assert merged[1] == ToolCallFragment(
        index=1, id="call_x", name="get_builder_profile", arguments_text='{"accountId": "a.near"}'
    )


def test_merge_is_pure():
    original = {0: ToolCallFragment(index=0, id="call_a", name="t", arguments_text="{")}
    merged = merge_tool_call_delta(original, ToolCallDelta(index=0, arguments="}"))
    assert original[0].arguments_text == "{"
    assert merged[0].arguments_text == "{}"
    assert merged is not original


def test_interleaved_indices_are_merged_independently():
    deltas = [
        ToolCallDelta(index=0, id="c0", name="search_builders", arguments='{"query":'),
        ToolCallDelta(index=1, id="c1", name="get_member_rank", arguments='{"accountId":'),
        ToolCallDelta(index=0, arguments=' "defi"}'),
        ToolCallDelta(index=1, arguments=' "b.near"}'),
    ]
    calls = finalize_tool_calls(merge_tool_call_deltas({}, deltas))
    assert [c.id for c in calls] == ["c0", "c1"]
    assert calls[0].arguments == {"query": "defi"}
    assert calls[1].arguments == {"accountId": "b.near"}


def test_finalize_orders_by_index_and_defaults_missing_id():
    fragments = {
        2: ToolCallFragment(index=2, name="b", arguments_text="{}"),
        0: ToolCallFragment(index=0, id="first", name="a", arguments_text=""),
    }
    calls = finalize_tool_calls(fragments)
    assert [c.name for c in calls] == ["a", "b"]
    assert calls[0].arguments == {}
    assert calls[1].id == "call_2"


def test_finalize_marks_invalid_arguments_without_raising():
    calls = finalize_tool_calls({0: ToolCallFragment(index=0, id="c", name="t", arguments_text='{"query": ')})
    assert calls[0].arguments == {}
    assert calls[0].arguments_error is not None


def test_parse_tool_arguments_rejects_non_objects():
    assert parse_tool_arguments("[1, 2]") == ({}, "arguments must be a JSON object")
    assert parse_tool_arguments("   ") == ({}, None)


def test_delta_from_openai_requires_index():
    assert ToolCallDelta.from_openai({"id": "c", "function": {"name": "t"}}) is None
    delta = ToolCallDelta.from_openai({"index": 0, "id": "c", "function": {"name": "t", "arguments": "{}"}})
    assert delta == ToolCallDelta(index=0, id="c", name="t", arguments="{}")


def test_tool_call_to_openai_never_sends_invalid_json():
    call = ToolCall(id="c", name="t", arguments={}, arguments_text='{"broken', arguments_error="invalid JSON")
    payload = call.to_openai()
    assert payload["type"] == "function"
    assert json.loads(payload["function"]["arguments"]) == {}
