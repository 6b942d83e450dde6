import pytest
from fastapi.testclient import TestClient

from taskforce.config import ProjectConfig
from taskforce.web import server
from taskforce.web.server import RUNS, RunState, app, execute_run

CONFIG = """
name: owl-report
defaults:
  llm_provider: taskforce.llm.provider:StaticResponseProvider
  llm_params:
    responses: ["hooting"]
agents:
  Writer: {role: Writer, goal: Write, backstory: Loves birds}
tasks:
  - id: t1
    description: Write about {topic}
    agent: Writer
"""


@pytest.fixture
def client():
    RUNS.clear()
    with TestClient(app) as client:
        yield client
    RUNS.clear()


def test_index_page(client):
    response = client.get("/")
    assert response.status_code == 200
    assert "Taskforce Runner" in response.text


def test_bad_requests(client, tmp_path):
    missing = client.post("/api/run", json={"config_path": str(tmp_path / "nope.yaml")})
    assert missing.status_code == 400

    broken = tmp_path / "broken.yaml"
    broken.write_text("agents: {}\ntasks: []\n")
    invalid = client.post("/api/run", json={"config_path": str(broken)})
    assert invalid.status_code == 400
    assert "agent" in invalid.json()["detail"]

    assert client.get("/api/runs/unknown").status_code == 404


def test_run_streams_events_until_complete(client, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    config = tmp_path / "owls.yaml"
    config.write_text(CONFIG)

    started = client.post("/api/run", json={"config_path": str(config), "inputs": {"topic": "owls"}})
    assert started.status_code == 200
    run_id = started.json()["run_id"]

    events = []
    with client.websocket_connect(f"/ws/{run_id}") as websocket:
        while True:
            event = websocket.receive_json()
            events.append(event)
            if event["type"] == "complete":
                break

    assert events[0]["type"] == "plan"
    assert events[-1]["result"] == {"result": {"t1": "hooting"}, "executedTaskIds": ["t1"]}
    assert any(event.get("action") == "completed" for event in events if event["type"] == "step")

    status = client.get(f"/api/runs/{run_id}").json()
    assert status["completed"] is True
    assert status["telemetry"]["Writer"]["call_count"] == 1


@pytest.mark.asyncio
async def test_unexpected_failure_is_reported(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    config = ProjectConfig.from_yaml(CONFIG.replace('["hooting"]', "[]"))
    RUNS["broken"] = RunState(config=config, inputs={"topic": "owls"})

    try:
        await execute_run("broken")
        state = RUNS["broken"]
    finally:
        RUNS.pop("broken", None)

    assert state.completed is True
    assert "StaticResponseProvider exhausted" in state.error
    assert [event["type"] for event in state.history][-2:] == ["error", "complete"]
    assert state.history[-1]["error"] == state.error


def test_finished_runs_are_evicted(monkeypatch):
    monkeypatch.setattr(server, "MAX_RUNS", 2)
    config = ProjectConfig.from_yaml(CONFIG)
    RUNS.clear()
    RUNS["old"] = RunState(config=config, inputs={}, completed=True)
    RUNS["busy"] = RunState(config=config, inputs={})
    RUNS["older"] = RunState(config=config, inputs={}, completed=True)

    server._prune_runs()

    assert list(RUNS) == ["busy"]
    RUNS.clear()
