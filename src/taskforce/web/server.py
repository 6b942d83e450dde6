"""FastAPI web server that runs task forces and streams their step events."""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, Field

from ..agents.orchestrator import Orchestrator
from ..config import ConfigError, ProjectConfig
from ..llm.provider import ProviderError
from ..telemetry import TelemetryRecorder

logger = logging.getLogger(__name__)

app = FastAPI(title="Taskforce Web Runner")


@dataclass
class RunState:
    config: ProjectConfig
    inputs: Dict[str, Any]
    history: List[Dict[str, Any]] = field(default_factory=list)
    subscribers: List[asyncio.Queue] = field(default_factory=list)
    task: Optional[asyncio.Task] = None
    completed: bool = False
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    telemetry: TelemetryRecorder = field(default_factory=TelemetryRecorder)

    def publish(self, event: Dict[str, Any]) -> None:
        self.history.append(event)
        for queue in list(self.subscribers):
            queue.put_nowait(event)


RUNS: Dict[str, RunState] = {}
MAX_RUNS = 100


def _prune_runs() -> None:
    """Forget the oldest finished runs once ``MAX_RUNS`` is reached."""
    finished = [run_id for run_id, state in RUNS.items() if state.completed]
    while finished and len(RUNS) >= MAX_RUNS:
        RUNS.pop(finished.pop(0))


class RunRequest(BaseModel):
    config_path: str
    inputs: Dict[str, Any] = Field(default_factory=dict)


HTML_PAGE = r"""<!doctype html>
<html lang="en">
  <head>
    <meta charset="utf-8" />
    <title>Taskforce Runner</title>
    <style>
      body { font-family: system-ui, sans-serif; background: #f8fafc; color: #0f172a; margin: 2rem; }
      .log { background: #e2e8f0; padding: 1rem; border-radius: 8px; white-space: pre-wrap; font-family: monospace; }
      .completed { color: #10b981; } .delegated { color: #7c3aed; } .replan { color: #f97316; }
    </style>
  </head>
  <body>
    <h1>Taskforce Runner</h1>
    <form id="run-form">
      <input id="config" size="60" placeholder="path/to/config.yaml" />
      <button type="submit">Run</button>
    </form>
    <div id="log" class="log"></div>
    <script>
      const log = document.getElementById('log');
      document.getElementById('run-form').onsubmit = async (event) => {
        event.preventDefault();
        log.textContent = '';
        const response = await fetch('/api/run', {
          method: 'POST',
          headers: {'Content-Type': 'application/json'},
          body: JSON.stringify({config_path: document.getElementById('config').value}),
        });
        const payload = await response.json();
        if (!response.ok) { log.textContent = payload.detail; return; }
        const protocol = window.location.protocol === 'https:' ? 'wss' : 'ws';
        const ws = new WebSocket(`${protocol}://${window.location.host}/ws/${payload.run_id}`);
        ws.onmessage = (message) => {
          const data = JSON.parse(message.data);
          const line = document.createElement('div');
          line.className = data.action || data.type;
          line.textContent = JSON.stringify(data);
          log.appendChild(line);
        };
      };
    </script>
  </body>
</html>
"""


@app.get("/", response_class=HTMLResponse)
async def root() -> HTMLResponse:
    return HTMLResponse(HTML_PAGE)


@app.post("/api/run")
async def start_run(request: RunRequest) -> Dict[str, Any]:
    config_path = Path(request.config_path)
    if not config_path.exists():
        raise HTTPException(status_code=400, detail=f"Config not found: {config_path}")
    try:
        config = ProjectConfig.from_file(config_path)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    inputs = {**config.inputs, **request.inputs}
    _prune_runs()
    run_id = str(uuid.uuid4())
    state = RunState(config=config, inputs=inputs)
    RUNS[run_id] = state
    logger.info("Starting run %s for project %s", run_id, config.name)
    state.task = asyncio.create_task(execute_run(run_id))
    return {"run_id": run_id, "project": config.name}


@app.get("/api/runs/{run_id}")
async def get_run(run_id: str) -> Dict[str, Any]:
    state = RUNS.get(run_id)
    if state is None:
        raise HTTPException(status_code=404, detail=f"Unknown run {run_id}")
    return {
        "run_id": run_id,
        "project": state.config.name,
        "completed": state.completed,
        "result": state.result,
        "error": state.error,
        "events": len(state.history),
        "telemetry": state.telemetry.export(),
    }


async def execute_run(run_id: str) -> None:
    state = RUNS[run_id]
    config = state.config
    state.publish(
        {
            "type": "plan",
            "project": config.name,
            "mode": config.orchestration.execution_mode,
            "tasks": [
                {"id": task.id, "agent": task.agent, "description": task.description, "input_from_task": task.input_from_task}
                for task in config.tasks
            ],
        }
    )

    started = time.perf_counter()
    try:
        orchestrator = Orchestrator.from_config(config, telemetry=state.telemetry)
        orchestrator.subscribe(lambda event: state.publish({"type": "step", **event}))
        outcome = await orchestrator.run(state.inputs)
    except (ConfigError, ProviderError) as exc:
        logger.error("Run %s aborted: %s", run_id, exc)
        state.error = str(exc)
        state.publish({"type": "error", "message": str(exc)})
    except Exception as exc:
        logger.exception("Run %s failed", run_id)
        state.error = f"{type(exc).__name__}: {exc}"
        state.publish({"type": "error", "message": state.error})
    else:
        state.result = outcome.as_dict()
    finally:
        state.completed = True
        state.publish(
            {
                "type": "complete",
                "result": state.result,
                "error": state.error,
                "duration": time.perf_counter() - started,
            }
        )


@app.websocket("/ws/{run_id}")
async def websocket_endpoint(websocket: WebSocket, run_id: str) -> None:
    if run_id not in RUNS:
        await websocket.close(code=1008)
        return
    state = RUNS[run_id]
    queue: asyncio.Queue = asyncio.Queue()
    backlog = list(state.history)
    state.subscribers.append(queue)
    await websocket.accept()
    try:
        for event in backlog:
            await websocket.send_text(json.dumps(event, default=str))
            if event.get("type") == "complete":
                return
        while True:
            event = await queue.get()
            await websocket.send_text(json.dumps(event, default=str))
            if event.get("type") == "complete":
                break
    except WebSocketDisconnect:
        logger.info("Client left run %s", run_id)
    finally:
        if queue in state.subscribers:
            state.subscribers.remove(queue)
