import pytest

from taskforce.agents.base import BLOCKED_DELEGATION, AgentRegistry, DelegationMarker
from taskforce.config import ConfigError
from taskforce.enums import ExecutionMode, MemoryScope
from taskforce.memory.simple import InMemoryMemoryProvider, MemoryRecord
from taskforce.telemetry import TelemetryRecorder
from taskforce.tools.builtin import EchoTool
from taskforce.training import TrainingResult


def _system(provider, call=0):
    return provider.calls[call][0][0].content


def _user(provider, call=0):
    return provider.calls[call][0][-1].content


@pytest.mark.asyncio
async def test_run_task_builds_prompts(make_agent):
    agent = make_agent(
        "Writer",
        "Final text",
        goal="Write about {topic}",
        guardrails=["Be brief", "Cite sources"],
    )
    output = await agent.run_task({"topic": "owls"}, "Describe {topic}", "json", "earlier draft", "too short")

    assert output == "Final text"
    system, user = _system(agent.llm_provider), _user(agent.llm_provider)
    assert "Goal: Write about owls" in system
    assert "1. Be brief\n2. Cite sources" in system
    assert "Delegation Instructions" not in system
    assert "Task:\nDescribe owls" in user
    assert "Previous output:\nearlier draft" in user
    assert "re-executed because: too short" in user
    assert "Return ONLY the result in json format." in user


@pytest.mark.asyncio
async def test_delegation_request_becomes_marker(make_agent):
    lead = make_agent("Lead", 'DELEGATE(Helper, "write the intro")', allow_delegation=True)
    AgentRegistry([lead, make_agent("Helper")])

    output = await lead.run_task({}, "Write an article")

    assert output == DelegationMarker(delegate_to="Helper", task="write the intro")
    assert lead.delegation_count == 1
    assert "Helper: Helper specialist" in _system(lead.llm_provider)


@pytest.mark.asyncio
async def test_delegation_cap(make_agent):
    lead = make_agent("Lead", 'DELEGATE(Helper, "x")', allow_delegation=True, max_delegation=1)
    first = await lead.run_task({}, "task")
    second = await lead.run_task({}, "task")

    assert isinstance(first, DelegationMarker)
    assert second == 'DELEGATE(Helper, "x")'


@pytest.mark.asyncio
async def test_disallowed_delegation_is_rewritten(make_agent):
    lead = make_agent("Lead", 'Not mine. DELEGATE(Helper, "x")', allow_delegation=True)
    lead.delegation_disallowed = True

    output = await lead.run_task({}, "task")

    assert output == f"Not mine. {BLOCKED_DELEGATION}"
    assert "Delegation Instructions" not in _system(lead.llm_provider)


@pytest.mark.asyncio
async def test_tool_loop_feeds_results_back(make_agent):
    agent = make_agent(
        "Researcher",
        ['TOOL(echo, {"text": "pong"})', "The tool said pong"],
        tools=[EchoTool("echo")],
    )
    events = []
    agent.set_event_hook(events.append)

    output = await agent.run_task({}, "Ping the echo tool")

    assert output == "The tool said pong"
    assert "Available Tools:" in _system(agent.llm_provider)
    followup = _user(agent.llm_provider, 1)
    assert 'Tool Response for echo({"text": "pong"}):\npong' in followup
    assert "Now complete this task:\n\nPing the echo tool" in followup
    assert events[0]["action"] == "tool_executed"


@pytest.mark.asyncio
async def test_malformed_tool_args_are_reported_in_band(make_agent):
    agent = make_agent("Researcher", ["TOOL(echo, {text: nope})", "gave up"], tools=[EchoTool("echo")])

    assert await agent.run_task({}, "task") == "gave up"
    assert "❌ Failed to parse tool args for echo" in _user(agent.llm_provider, 1)


@pytest.mark.asyncio
async def test_tool_recursion_is_bounded(make_agent):
    agent = make_agent("Looper", 'TOOL(echo, {"text": "again"})', tools=[EchoTool("echo")], max_tool_depth=2)

    output = await agent.run_task({}, "loop forever")

    assert output == 'TOOL(echo, {"text": "again"})'
    # initial call plus one follow-up per allowed depth level
    assert len(agent.llm_provider.calls) == 4


@pytest.mark.asyncio
async def test_sequential_run_stores_and_recalls_memory(make_agent):
    memory = InMemoryMemoryProvider()
    agent = make_agent("Writer", ["owls hunt at night", "second answer"], memory_provider=memory)
    assert agent.memory_scope is MemoryScope.SHORT

    await agent.run_task({"topic": "owls"}, "Describe owls", execution_mode=ExecutionMode.SEQUENTIAL, task_id="t1")
    stored = memory.dump()
    assert [record.output for record in stored] == ["owls hunt at night"]
    assert stored[0].agent == "Writer"

    await agent.run_task({"topic": "owls"}, "Describe owls", execution_mode=ExecutionMode.SEQUENTIAL, task_id="t1")
    assert "Previous output:\nowls hunt at night" in _user(agent.llm_provider, 1)


@pytest.mark.asyncio
async def test_training_run_skips_memory(make_agent):
    memory = InMemoryMemoryProvider()
    await memory.store_memory(MemoryRecord(task_id="t1", input="owls", output="old owls note", metadata={"agent": "Writer"}))
    agent = make_agent("Writer", "fresh", memory_provider=memory)

    await agent.run_task({"topic": "owls"}, "Describe owls", execution_mode=ExecutionMode.SEQUENTIAL, is_training=True, task_id="t1")

    assert "old owls note" not in _user(agent.llm_provider)
    assert len(memory.dump()) == 1


@pytest.mark.asyncio
async def test_training_insights_in_system_message(make_agent):
    agent = make_agent("Writer", "ok", training=TrainingResult(final_summary="Use shorter sentences please"))
    await agent.run_task({}, "task")
    assert "Training Insights:\n- Use shorter sentences please" in _system(agent.llm_provider)


@pytest.mark.asyncio
async def test_telemetry_is_recorded(make_agent):
    recorder = TelemetryRecorder()
    agent = make_agent("Writer", "ok", telemetry=recorder, model="llama3")
    await agent.run_task({}, "task")

    stats = recorder.export()["Writer"]
    assert stats["call_count"] == 1
    assert stats["models"][0]["model"] == "llama3"
    assert stats["total_tokens"] > 0


def test_registry_rejects_duplicates(make_agent):
    registry = AgentRegistry([make_agent("A")])
    with pytest.raises(ConfigError):
        registry.register(make_agent("A"))
    with pytest.raises(ConfigError, match="not found"):
        registry.require("B")
