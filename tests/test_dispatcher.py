import threading

import pytest

from desklm.tools.dispatcher import (
    CallSegment,
    TextSegment,
    ToolCall,
    ToolCallDispatcher,
    ToolResult,
    extract,
    parse,
    reconstruct,
)
from desklm.errors import ToolExecutionError
from desklm.tools.values import ToolParameters

SAMPLE = 'pre ```json\n{"id":"1","name":"list_files","parameters":{"directory":"/tmp"}}\n``` post'


class EchoTool:
    name = "echo"
    description = "Repeat a message."
    required = {"message": str, "times": int}

    def __init__(self):
        self.calls = []

    async def execute(self, parameters, cancel=None):
        self.calls.append(parameters.to_dict())
        return parameters["message"] * parameters["times"]


class BrokenTool:
    name = "broken"
    description = "Always fails."
    required = {}

    def __init__(self, exc):
        self.exc = exc

    async def execute(self, parameters, cancel=None):
        raise self.exc


def _call(name, call_id="1", **params):
    return ToolCall(call_id, name, ToolParameters(params))


def test_extract_single_directive():
    calls = extract(SAMPLE)
    assert calls is not None and len(calls) == 1
    call = calls[0]
    assert call.id == "1"
    assert call.name == "list_files"
    assert call.parameters == {"directory": "/tmp"}


def test_reconstruct_keeps_surrounding_text_in_order():
    segments = parse(SAMPLE)
    assert isinstance(segments[0], TextSegment) and segments[0].text == "pre "
    assert isinstance(segments[1], CallSegment)
    assert isinstance(segments[2], TextSegment) and segments[2].text == " post"

    result = ToolResult("1", "list_files", output="RESULT")
    assert reconstruct(segments, [result]) == "pre RESULT post"


def test_extract_returns_none_without_directives():
    assert extract("just text") is None
    assert extract("```python\nprint(1)\n```") is None


def test_malformed_blocks_are_skipped():
    text = (
        '```json\n{"id": "1", "parameters": {}}\n```\n'
        '```json\nnot json\n```\n'
        '```json\n{"id": 2, "name": "echo", "parameters": {}}\n```\n'
        '```json\n{"id": "3", "name": "echo", "parameters": []}\n```\n'
        '```json\n{"id": "4", "name": "echo", "parameters": {"message": "x"}}\n```'
    )
    calls = extract(text)
    assert [call.id for call in calls] == ["4"]
    # skipped blocks stay visible as text
    segments = parse(text)
    assert "not json" in "".join(s.text for s in segments if isinstance(s, TextSegment))


def test_multiple_calls_keep_order_and_crlf_fences():
    text = (
        'a\r\n```json\r\n{"id": "x", "name": "one", "parameters": {}}\r\n```\r\n'
        'b\n```json\n{"id": "y", "name": "two", "parameters": {"n": 1}}\n```'
    )
    assert [call.name for call in extract(text)] == ["one", "two"]


def test_inline_fences_are_not_directives():
    assert extract('```json {"id": "1", "name": "echo", "parameters": {}} ```') is None


def test_unmatched_calls_keep_raw_text():
    segments = parse(SAMPLE)
    assert reconstruct(segments, []) == SAMPLE


@pytest.mark.asyncio
async def test_execute_success():
    tool = EchoTool()
    dispatcher = ToolCallDispatcher([tool])

    result = await dispatcher.execute(_call("echo", message="ab", times=2))

    assert result.ok
    assert result.output == "abab"
    assert tool.calls == [{"message": "ab", "times": 2}]


@pytest.mark.asyncio
async def test_unknown_tool_is_a_result():
    result = await ToolCallDispatcher().execute(_call("nope"))
    assert result.error_kind == "unknown_tool"
    assert result.render() == "Error (nope): Unknown tool function: nope"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "params",
    [{"message": "x"}, {"message": "x", "times": "2"}, {"message": "x", "times": True}],
)
async def test_invalid_parameters(params):
    tool = EchoTool()
    dispatcher = ToolCallDispatcher([tool])

    result = await dispatcher.execute(_call("echo", **params))

    assert result.error_kind == "invalid_parameters"
    assert "times (integer)" in result.error
    assert tool.calls == []


@pytest.mark.asyncio
async def test_execution_failures_are_results():
    dispatcher = ToolCallDispatcher([BrokenTool(RuntimeError("disk on fire"))])
    result = await dispatcher.execute(_call("broken"))
    assert result.error_kind == "execution_failed"
    assert "disk on fire" in result.error

    dispatcher = ToolCallDispatcher([BrokenTool(ToolExecutionError("nope"))])
    result = await dispatcher.execute(_call("broken"))
    assert result.error_kind == "execution_failed"
    assert result.error == "nope"


@pytest.mark.asyncio
async def test_process_replaces_each_call():
    dispatcher = ToolCallDispatcher([EchoTool()])
    text = (
        'first\n```json\n{"id": "1", "name": "echo", "parameters": {"message": "A", "times": 1}}\n```\n'
        'then\n```json\n{"id": "2", "name": "missing", "parameters": {}}\n```'
    )

    display, results = await dispatcher.process(text)

    assert [r.call_id for r in results] == ["1", "2"]
    assert display == "first\nA\nthen\nError (missing): Unknown tool function: missing"


def test_describe_lists_parameters():
    dispatcher = ToolCallDispatcher([EchoTool()])
    assert dispatcher.names() == ["echo"]
    assert dispatcher.describe() == "- echo(message: string, times: integer): Repeat a message."


def test_tool_parameters_accessors():
    params = ToolParameters({"s": "x", "i": 3, "f": 1.5, "b": True, "n": None, "l": [1, {"k": "v"}]})
    assert params.get_str("s") == "x"
    assert params.get_int("i") == 3
    assert params.get_int("b") is None
    assert params.get_float("i") == 3.0
    assert params.get_bool("b") is True
    assert params.get_str("missing") is None
    assert isinstance(params["l"][1], ToolParameters)
    assert params.to_dict()["l"] == [1, {"k": "v"}]
    with pytest.raises(TypeError):
        ToolParameters({"x": object()})
    with pytest.raises(TypeError):
        params["s"] = "y"


def test_tool_calls_are_hashable():
    first = _call("echo", message="x", times=1)
    same = _call("echo", message="x", times=1)
    assert first == same
    assert hash(first) == hash(same)
    assert len({first, same, _call("echo", call_id="2")}) == 2


class CancelAwareTool:
    name = "watch"
    description = "Records the cancel flag it was given."
    required = {}

    def __init__(self, trip=False):
        self.seen = []
        self.trip = trip

    async def execute(self, parameters, cancel=None):
        self.seen.append(cancel)
        if self.trip:
            cancel.set()
        return "ok"


@pytest.mark.asyncio
async def test_cancel_reaches_tools_and_stops_later_calls():
    tool = CancelAwareTool(trip=True)
    dispatcher = ToolCallDispatcher([tool])
    cancel = threading.Event()

    results = await dispatcher.execute_all([_call("watch", "1"), _call("watch", "2")], cancel)

    assert tool.seen == [cancel]
    assert [r.call_id for r in results] == ["1"]


@pytest.mark.asyncio
async def test_process_leaves_skipped_calls_as_text():
    dispatcher = ToolCallDispatcher([CancelAwareTool()])
    cancel = threading.Event()
    cancel.set()

    display, results = await dispatcher.process(SAMPLE, cancel)

    assert results == []
    assert display == SAMPLE
