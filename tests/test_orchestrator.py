import pytest

from taskforce.agents.manager import PlanError
from taskforce.agents.orchestrator import (
    FORCED_EXECUTION_REASON,
    LOOP_LIMIT_NOTICE,
    REPLAN_COUNT_KEY,
    REPLAN_REASON_KEY,
    UNRESOLVED_NOTICE,
    Orchestrator,
    OrchestratorSettings,
    RunResult,
    is_failed,
    is_unresolved,
)
from taskforce.agents.base import DelegationMarker
from taskforce.config import ConfigError
from taskforce.tasks.base import Task
from taskforce.tools.builtin import register_builtin_tools
from taskforce.tools.registry import ToolRegistry

ACCEPT = '{"action": "accept"}'


def _user(agent, call):
    return agent.llm_provider.calls[call][0][-1].content


def _system(agent, call):
    return agent.llm_provider.calls[call][0][0].content


def _hierarchical(**overrides):
    return OrchestratorSettings(execution_mode="hierarchical", **overrides)


@pytest.mark.asyncio
async def test_sequential_single_task(make_agent):
    agent = make_agent("Writer", "fixed string")
    task = Task(id="t1", name="Write", description="Write about {input}", agent="Writer")

    outcome = await Orchestrator([agent], [task]).run({"input": "x"})

    assert outcome.as_dict() == {"result": {"t1": "fixed string"}, "executedTaskIds": ["t1"]}
    assert "Task:\nWrite about x" in _user(agent, 0)


@pytest.mark.asyncio
async def test_sequential_passes_previous_output(make_agent):
    writer = make_agent("Writer", "draft v1")
    editor = make_agent("Editor", "final v2")
    tasks = [
        Task(id="draft", name="Draft", description="Draft it", agent="Writer"),
        Task(id="edit", name="Edit", description="Edit it", agent="Editor"),
    ]

    outcome = await Orchestrator([writer, editor], tasks).run({})

    assert outcome.result == {"draft": "draft v1", "edit": "final v2"}
    assert "Previous output:\ndraft v1" in _user(editor, 0)


@pytest.mark.asyncio
async def test_sequential_delegation_is_spliced(make_agent):
    lead = make_agent("Lead", 'DELEGATE(Helper, "write the summary")', allow_delegation=True)
    helper = make_agent("Helper", "summary text")
    tasks = [
        Task(id="t1", name="Summarise", description="Summarise the notes", agent="Lead"),
        Task(id="t2", name="Publish", description="Publish it", agent="Helper"),
    ]
    orchestrator = Orchestrator([lead, helper], tasks)
    events = []
    orchestrator.subscribe(events.append)

    outcome = await orchestrator.run({})

    assert outcome.result == {"t1": "summary text", "t2": "summary text"}
    assert "Task:\nwrite the summary" in _user(helper, 0)
    assert "Previous output:\nsummary text" in _user(helper, 1)
    delegated = [event for event in events if event["action"] == "delegated"]
    assert delegated[0]["to"] == "Helper"
    assert "timestamp" in delegated[0]
    assert tasks[0].execution_context.delegation_chain == ["Lead", "Helper"]


@pytest.mark.asyncio
async def test_sequential_self_delegation_forces_an_answer(make_agent):
    lead = make_agent("Lead", ['DELEGATE(Lead, "me again")', "own answer"], allow_delegation=True)
    task = Task(id="t1", name="Solo", description="Do it yourself", agent="Lead")

    outcome = await Orchestrator([lead], [task]).run({})

    assert outcome.result == {"t1": "own answer"}
    assert lead.delegation_disallowed is False
    assert "Delegation Instructions" not in _system(lead, 1)
    assert "delegated to you because: Delegation blocked. Forced to execute." in _user(lead, 1)


@pytest.mark.asyncio
async def test_sequential_unknown_delegate_is_fatal(make_agent):
    lead = make_agent("Lead", 'DELEGATE(Ghost, "x")', allow_delegation=True)
    task = Task(id="t1", name="T", description="d", agent="Lead")
    with pytest.raises(ConfigError, match="Ghost"):
        await Orchestrator([lead], [task]).run({})


@pytest.mark.asyncio
async def test_sequential_needs_assigned_agents(make_agent):
    task = Task(id="t1", name="T", description="d")
    with pytest.raises(ConfigError, match="no agent"):
        await Orchestrator([make_agent("Writer")], [task]).run({})


def test_unknown_agent_for_task_is_rejected(make_agent):
    with pytest.raises(ConfigError, match="unknown agent"):
        Orchestrator([make_agent("Writer")], [Task(id="t1", name="T", description="d", agent="Nobody")])


@pytest.mark.asyncio
async def test_parallel_dependent_receives_predecessor_output(make_agent, make_manager):
    first = make_agent("A", "A-out")
    echo = make_agent("B", lambda messages, context: messages[-1].content)
    manager, _ = make_manager(plan='{"tasks": ["first", "second"]}', evaluate=ACCEPT, review=ACCEPT)
    tasks = [
        Task(id="second", name="Second", description="Repeat your input", agent="B", input_from_task="first"),
        Task(id="first", name="First", description="Produce something", agent="A"),
    ]
    orchestrator = Orchestrator([first, echo], tasks, _hierarchical(allow_parallel=True), manager=manager)

    outcome = await orchestrator.run({})

    assert outcome.result["first"] == "A-out"
    assert "A-out" in outcome.result["second"]
    assert outcome.executed_task_ids == ["first", "second"]


@pytest.mark.asyncio
async def test_retry_is_bounded(make_agent, make_manager):
    agent = make_agent("Writer", "draft")
    manager, script = make_manager(plan='{"tasks": ["t1"]}', evaluate='{"action": "retry", "reason": "again"}')
    task = Task(id="t1", name="Write", description="Write", agent="Writer")
    settings = _hierarchical(enable_ai_planning=False, enable_replanning=False)

    outcome = await Orchestrator([agent], [task], settings, manager=manager).run({})

    assert len(agent.llm_provider.calls) == settings.max_retry_per_task
    assert script.count("evaluate") == settings.max_retry_per_task
    assert outcome.result == {"t1": "draft"}
    assert "re-executed because: again" in _user(agent, 1)


@pytest.mark.asyncio
async def test_replan_at_limit_changes_nothing(make_agent, make_manager):
    manager, script = make_manager()
    agent = make_agent("Writer", "unused")
    task = Task(id="t1", name="Write", description="Write", agent="Writer")
    orchestrator = Orchestrator([agent], [task], _hierarchical(), manager=manager)
    context = {"t1": "", REPLAN_COUNT_KEY: 2, REPLAN_REASON_KEY: "broken"}
    snapshot = dict(context)

    result = await orchestrator.replan_run(context, parallel=False)

    assert result is context
    assert result == snapshot
    assert script.seen == []
    assert agent.llm_provider.calls == []


@pytest.mark.asyncio
async def test_unresolved_output_triggers_one_replan(make_agent, make_manager):
    agent = make_agent("Writer", ["please provide more details", "done"])
    manager, script = make_manager(plan='{"tasks": ["t1"]}', evaluate=ACCEPT, review=ACCEPT)
    task = Task(id="t1", name="Write", description="Write", agent="Writer")

    outcome = await Orchestrator([agent], [task], _hierarchical(enable_ai_planning=False), manager=manager).run({})

    assert outcome.result == {"t1": "done"}
    assert script.count("plan") == 2
    assert script.count("review") == 0
    assert "System Check: Unresolved output in task 't1'" in _user(agent, 1)


@pytest.mark.asyncio
async def test_replan_keeps_healthy_outputs(make_agent, make_manager):
    good = make_agent("Good", "solid")
    flaky = make_agent("Flaky", ["", "recovered"])
    manager, _ = make_manager(plan='{"tasks": ["a", "b"]}', evaluate=ACCEPT, review='{"action": "replan", "reason": "b is empty"}')
    tasks = [
        Task(id="a", name="A", description="a", agent="Good"),
        Task(id="b", name="B", description="b", agent="Flaky"),
    ]

    outcome = await Orchestrator([good, flaky], tasks, _hierarchical(), manager=manager).run({})

    assert outcome.result == {"a": "solid", "b": "recovered"}
    assert len(good.llm_provider.calls) == 1
    assert "Manager Agent: b is empty" in _user(flaky, 1)


@pytest.mark.asyncio
async def test_manager_review_runs_once_per_run(make_agent, make_manager):
    agent = make_agent("Writer", "fine")
    manager, script = make_manager(plan='{"tasks": ["t1"]}', evaluate=ACCEPT, review='{"action": "replan", "reason": "no"}')
    task = Task(id="t1", name="Write", description="Write", agent="Writer")
    orchestrator = Orchestrator([agent], [task], _hierarchical(enable_ai_planning=False), manager=manager)

    outcome = await orchestrator.run({})

    assert outcome.result == {"t1": "fine"}
    assert script.count("review") == 1
    assert script.count("plan") == 2
    assert orchestrator._replan_count == 1


@pytest.mark.asyncio
async def test_delegate_decision_hands_task_over(make_agent, make_manager):
    writer = make_agent("Writer", "weak draft")
    helper = make_agent("Helper", "polished")
    manager, _ = make_manager(
        plan='{"tasks": ["t1"]}',
        evaluate=['{"action": "delegate", "delegateTo": "Helper", "reason": "better fit"}', ACCEPT],
        review=ACCEPT,
    )
    task = Task(id="t1", name="Write", description="Write", agent="Writer")
    orchestrator = Orchestrator([writer, helper], [task], _hierarchical(enable_ai_planning=False), manager=manager)
    events = []
    orchestrator.subscribe(events.append)

    outcome = await orchestrator.run({})

    assert outcome.result == {"t1": "polished"}
    assert "delegated to you because: better fit" in _user(helper, 0)
    assert "Previous output:\nweak draft" in _user(helper, 0)
    assert task.execution_context.delegation_chain == ["Writer", "Helper"]
    assert [event["action"] for event in events if event.get("task") == "Write"][-1] == "completed"


@pytest.mark.asyncio
async def test_weak_delegation_gets_one_retry_then_is_resolved(make_agent, make_manager):
    writer = make_agent("Writer", 'DELEGATE(Helper, "check the facts")')
    helper = make_agent("Helper", "facts ok")
    manager, script = make_manager(plan='{"tasks": ["t1"]}', evaluate=ACCEPT, review=ACCEPT)
    task = Task(id="t1", name="Check", description="Check facts", agent="Writer")
    orchestrator = Orchestrator([writer, helper], [task], _hierarchical(enable_ai_planning=False), manager=manager)
    events = []
    orchestrator.subscribe(events.append)

    outcome = await orchestrator.run({})

    assert outcome.result == {"t1": "facts ok"}
    assert len(writer.llm_provider.calls) == 2
    assert script.count("evaluate") == 2
    assert "Task:\ncheck the facts" in _user(helper, 0)
    assert [event["score"] for event in events if event["action"] == "delegation_score"] == [3]


@pytest.mark.asyncio
async def test_tool_marker_is_resolved_through_registry(make_agent):
    registry = ToolRegistry()
    register_builtin_tools(registry)
    agent = make_agent("Writer", "used the tool")
    task = Task(id="t1", name="T", description="d", agent="Writer")
    orchestrator = Orchestrator([agent], [task], tool_registry=registry)

    output = await orchestrator.handle_delegation_and_tool_output(task, 'TOOL(echo, {"text": "hello"})', agent, {})

    assert output == "used the tool"
    assert "Previous output:\nhello" in _user(agent, 0)


@pytest.mark.asyncio
async def test_long_tool_results_are_summarised(make_agent):
    registry = ToolRegistry()
    register_builtin_tools(registry)
    agent = make_agent("Writer", ["short summary", "final"])
    task = Task(id="t1", name="T", description="d", agent="Writer")
    orchestrator = Orchestrator([agent], [task], OrchestratorSettings(tool_summary_threshold=10), tool_registry=registry)

    output = await orchestrator.handle_delegation_and_tool_output(
        task, 'TOOL(echo, {"text": "a fairly long tool result"})', agent, {}
    )

    assert output == "final"
    assert _user(agent, 0) == "a fairly long tool result"
    assert "Previous output:\nshort summary" in _user(agent, 1)


@pytest.mark.asyncio
async def test_tool_marker_errors(make_agent):
    agent = make_agent("Writer", "unused")
    task = Task(id="t1", name="T", description="d", agent="Writer")
    orchestrator = Orchestrator([agent], [task])

    with pytest.raises(ConfigError, match="Tool 'missing' not found"):
        await orchestrator.handle_delegation_and_tool_output(task, "TOOL(missing, {})", agent, {})

    broken = await orchestrator.handle_delegation_and_tool_output(task, "TOOL(echo, {oops})", agent, {})
    assert broken.startswith("❌ Failed to parse tool call for 'echo'")
    assert agent.llm_provider.calls == []


@pytest.mark.asyncio
async def test_hierarchical_decomposes_single_task(make_agent, make_manager):
    writer = make_agent("Writer", "part")
    manager, script = make_manager(
        decompose='[{"id": "s1", "description": "outline", "agent": "Writer"}, {"id": "s2", "description": "write"}]',
        plan='{"tasks": ["s1", "s2"]}',
        assign="Writer",
        evaluate=ACCEPT,
        review=ACCEPT,
    )
    task = Task(id="main", name="Article", description="Write an article", agent="Writer")

    outcome = await Orchestrator([writer], [task], _hierarchical(), manager=manager).run({})

    assert outcome.executed_task_ids == ["s1", "s2"]
    assert outcome.result == {"s1": "part", "s2": "part"}
    assert script.count("assign") == 1


@pytest.mark.asyncio
async def test_dynamic_plan_hierarchical(make_agent, make_manager):
    writer = make_agent("Writer", lambda messages, context: "out:" + messages[-1].content.split("Task:\n")[1].split("\n")[0])
    manager, _ = make_manager(
        dynamic='{"executionMode": "hierarchical", "tasks": ['
        '{"id": "plan", "name": "Plan", "description": "Plan {topic}", "agent": "Writer"},'
        '{"id": "write", "name": "Write", "description": "Write it", "agent": "Writer", "inputFromTask": "plan"}]}',
        evaluate=ACCEPT,
    )
    orchestrator = Orchestrator([writer], [], OrchestratorSettings(execution_mode="ai-driven"), manager=manager)

    outcome = await orchestrator.run({"topic": "owls"})

    assert outcome.executed_task_ids == ["plan", "write"]
    assert outcome.result == {"plan": "out:Plan owls", "write": "out:Write it"}
    assert "Previous output:\nout:Plan owls" in _user(writer, 1)


@pytest.mark.asyncio
async def test_dynamic_plan_sequential_assigns_missing_agents(make_agent, make_manager):
    writer = make_agent("Writer", "written")
    manager, script = make_manager(
        dynamic='{"executionMode": "sequential", "tasks": [{"id": "only", "description": "Do it"}]}',
        assign="Writer",
    )
    orchestrator = Orchestrator([writer], [], OrchestratorSettings(execution_mode="ai-driven"), manager=manager)

    outcome = await orchestrator.run({})

    assert outcome.result == {"only": "written"}
    assert script.count("assign") == 1


@pytest.mark.asyncio
async def test_dynamic_plan_with_unknown_agent_is_fatal(make_agent, make_manager):
    manager, _ = make_manager(
        dynamic='{"executionMode": "parallel", "tasks": [{"id": "x", "description": "d", "agent": "Ghost"}]}'
    )
    orchestrator = Orchestrator([make_agent("Writer")], [], OrchestratorSettings(execution_mode="ai-driven"), manager=manager)
    with pytest.raises(PlanError, match="Ghost"):
        await orchestrator.run({})


def test_chained_input_is_truncated(make_agent):
    tasks = [
        Task(id="a", name="A", description="a", agent="Writer"),
        Task(id="b", name="B", description="b", agent="Writer", input_from_task="a", output_format="json"),
    ]
    orchestrator = Orchestrator([make_agent("Writer")], tasks, OrchestratorSettings(chained_input_limit=20))

    assert orchestrator.get_chained_input(tasks[0], {}) == ""
    assert orchestrator.get_chained_input(tasks[1], {"a": 'DELEGATE(X, "y")'}) == ""
    assert orchestrator.get_chained_input(tasks[1], {"a": '{"k": 1}'}) == '{"k": 1}'
    long_value = orchestrator.get_chained_input(tasks[1], {"a": "x" * 50})
    assert long_value == "x" * 20 + "\n\n[...truncated]"


def test_failure_heuristics():
    assert is_failed("")
    assert is_failed(None)
    assert is_failed("Could you please provide the data?")
    assert is_failed(RuntimeError("boom"))
    assert is_failed('{"__delegate__": {"delegate_to": "B", "task": "x"}}')
    assert is_unresolved(DelegationMarker("B", "x"))
    assert not is_failed("All good")


def test_run_result_shape():
    assert RunResult({"t": "x"}, ["t"]).as_dict() == {"result": {"t": "x"}, "executedTaskIds": ["t"]}


def test_bad_execution_mode():
    with pytest.raises(ConfigError):
        OrchestratorSettings(execution_mode="chaotic")


@pytest.mark.asyncio
async def test_repeated_runs_start_with_fresh_manager_history(make_agent, make_manager):
    writer = make_agent("Writer", "draft")
    helper = make_agent("Helper", "polished")
    delegate = '{"action": "delegate", "delegateTo": "Helper", "reason": "better fit"}'
    manager, _ = make_manager(plan='{"tasks": ["t1"]}', evaluate=[delegate, ACCEPT, delegate, ACCEPT], review=ACCEPT)
    task = Task(id="t1", name="Write", description="Write", agent="Writer")
    orchestrator = Orchestrator([writer, helper], [task], _hierarchical(enable_ai_planning=False), manager=manager)

    first = await orchestrator.run({})
    second = await orchestrator.run({})

    assert first.result == second.result == {"t1": "polished"}
    assert len(helper.llm_provider.calls) == 2


@pytest.mark.asyncio
async def test_untargeted_retry_goes_to_the_assigned_agent(make_agent, make_manager):
    writer = make_agent("Writer", "draft")
    helper = make_agent("Helper", "polished")
    manager, _ = make_manager(
        plan='{"tasks": ["t1"]}',
        evaluate=[
            '{"action": "delegate", "delegateTo": "Helper", "reason": "better fit"}',
            '{"action": "retry", "reason": "tighten"}',
            ACCEPT,
        ],
        review=ACCEPT,
    )
    task = Task(id="t1", name="Write", description="Write", agent="Writer")

    outcome = await Orchestrator([writer, helper], [task], _hierarchical(enable_ai_planning=False), manager=manager).run({})

    assert outcome.result == {"t1": "draft"}
    assert len(writer.llm_provider.calls) == 2
    assert len(helper.llm_provider.calls) == 1
    assert "re-executed because: tighten" in _user(writer, 1)


@pytest.mark.asyncio
async def test_marker_resolution_depth_forces_one_run(make_agent, make_manager):
    registry = ToolRegistry()
    register_builtin_tools(registry)
    blocked = []

    def reply(messages, context):
        blocked.append(writer.delegation_disallowed)
        if len(blocked) > 4:
            return "final answer"
        return f'TOOL(echo, {{"text": "round {len(blocked)}"}})'

    writer = make_agent("Writer", reply)
    manager, _ = make_manager(plan='{"tasks": ["t1"]}', evaluate=ACCEPT, review=ACCEPT)
    task = Task(id="t1", name="Write", description="Write", agent="Writer")
    settings = _hierarchical(enable_ai_planning=False)
    orchestrator = Orchestrator([writer], [task], settings, manager=manager, tool_registry=registry)

    outcome = await orchestrator.run({})

    assert outcome.result == {"t1": "final answer"}
    # initial run, one follow-up per allowed resolution, then the forced run
    assert blocked == [False] * (settings.max_delegate_per_task + 1) + [True]
    assert FORCED_EXECUTION_REASON in _user(writer, 4)
    assert writer.delegation_disallowed is False


@pytest.mark.asyncio
async def test_delegate_still_unresolved_after_retry_budget(make_agent, make_manager):
    writer = make_agent("Writer", "draft")
    helper = make_agent("Helper", 'Not for me. DELEGATE(Writer, "you do it")')
    manager, _ = make_manager(
        plan='{"tasks": ["t1"]}',
        evaluate='{"action": "delegate", "delegateTo": "Helper", "reason": "better fit"}',
    )
    task = Task(id="t1", name="Write", description="Write", agent="Writer")
    settings = _hierarchical(enable_ai_planning=False, enable_replanning=False, max_retry_per_task=1)

    outcome = await Orchestrator([writer, helper], [task], settings, manager=manager).run({})

    assert outcome.result["t1"].startswith(UNRESOLVED_NOTICE)
    assert outcome.result["t1"].endswith('DELEGATE(Writer, "you do it")')
    assert len(writer.llm_provider.calls) == 1
    assert len(helper.llm_provider.calls) == 1


@pytest.mark.asyncio
async def test_evaluation_refuses_agents_already_in_the_chain(make_agent, make_manager):
    writer = make_agent("Writer")
    manager, script = make_manager()
    task = Task(id="t1", name="Write", description="Write", agent="Writer")
    orchestrator = Orchestrator([writer], [task], _hierarchical(), manager=manager)

    task.execution_context.delegation_chain.append("Writer")
    looped = await orchestrator.evaluate_task_loop(task, writer, {}, "draft")

    task.execution_context.delegation_chain[:] = ["A", "B", "C", "D", "E"]
    too_far = await orchestrator.evaluate_task_loop(task, writer, {}, "draft")

    assert looped == too_far == f"{LOOP_LIMIT_NOTICE}\n\ndraft"
    assert script.seen == []
