from taskforce.agents import protocol
from taskforce.agents.protocol import DelegateRequest, MalformedRequest, NoAction, ToolRequest


def test_plain_text_is_no_action():
    assert protocol.decode("Here is the finished report.") == NoAction()
    assert protocol.decode_exact("") == NoAction()


def test_bare_agent_name():
    request = protocol.decode('Over to you: DELEGATE(Data Analyst, "crunch the numbers")')
    assert isinstance(request, DelegateRequest)
    assert request.agent == "Data Analyst"
    assert request.task == "crunch the numbers"


def test_quoted_agent_name_and_escaped_quotes():
    request = protocol.decode('DELEGATE("Bob, Jr.", "say \\"hi\\", then stop")')
    assert request.agent == "Bob, Jr."
    assert request.task == 'say "hi", then stop'


def test_tool_with_nested_json():
    request = protocol.decode('TOOL(search, {"query": "a(b)", "filters": {"year": [2023, 2024]}})')
    assert isinstance(request, ToolRequest)
    assert request.tool == "search"
    assert request.args == {"query": "a(b)", "filters": {"year": [2023, 2024]}}


def test_tool_without_arguments():
    request = protocol.decode("TOOL(clock)")
    assert request == ToolRequest(tool="clock", args={}, start=0, end=len("TOOL(clock)"))


def test_unquoted_task_fails_closed():
    request = protocol.decode("DELEGATE(Bob, do this for me)")
    assert isinstance(request, MalformedRequest)
    assert request.kind == "delegate"
    assert protocol.delegations("DELEGATE(Bob, do this for me)") == []


def test_bad_tool_json_fails_closed():
    request = protocol.decode("TOOL(search, {query: nope})")
    assert isinstance(request, MalformedRequest)
    assert request.kind == "tool"
    assert request.target == "search"
    assert protocol.has_tool_request("TOOL(search, {query: nope})") is False


def test_decode_exact_requires_whole_text():
    assert isinstance(protocol.decode_exact('  DELEGATE(Bob, "x")\n'), DelegateRequest)
    assert protocol.decode_exact('Sure. DELEGATE(Bob, "x")') == NoAction()
    assert protocol.decode_exact('DELEGATE(Bob, "x") and more') == NoAction()
    assert isinstance(protocol.decode_exact("TOOL(search, {oops})"), MalformedRequest)


def test_scan_finds_every_request_in_order():
    text = 'TOOL(a, 1) then DELEGATE(Bob, "x") then TOOL(b, "two")'
    kinds = [type(request).__name__ for request in protocol.scan(text)]
    assert kinds == ["ToolRequest", "DelegateRequest", "ToolRequest"]


def test_encode_then_replace():
    text = "Start. " + protocol.encode_delegate("Bob", 'quote " inside') + " End."
    assert protocol.delegations(text)[0].task == 'quote " inside'
    assert protocol.replace_delegations(text, "[blocked]") == "Start. [blocked] End."


def test_has_delegation_marker_is_loose():
    assert protocol.has_delegation_marker("DELEGATE(broken")
    assert not protocol.has_delegation_marker("delegate later")
