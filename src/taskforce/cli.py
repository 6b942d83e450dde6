"""Command line interface for taskforce projects."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .agents.base import Agent
from .agents.orchestrator import Orchestrator
from .config import ConfigError, ProjectConfig
from .logging_utils import configure_logging
from .telemetry import TelemetryRecorder

app = typer.Typer(help="Task force orchestration CLI")
console = Console()


def parse_inputs(pairs: List[str], base: Dict[str, Any] | None = None) -> Dict[str, Any]:
    """Merge ``key=value`` pairs over the inputs declared in the config."""
    inputs = dict(base or {})
    for pair in pairs:
        if "=" not in pair:
            raise typer.BadParameter(f"Input '{pair}' must look like key=value")
        key, value = pair.split("=", 1)
        inputs[key.strip()] = value
    return inputs


def _render_plan(config: ProjectConfig) -> None:
    plan = Table(title="Execution Plan", show_lines=True)
    plan.add_column("Task ID")
    plan.add_column("Agent")
    plan.add_column("Depends on")
    plan.add_column("Description")
    for spec in config.tasks:
        plan.add_row(spec.id, spec.agent or "(manager)", spec.input_from_task or "", spec.description)
    console.print(plan)


def _load(config_path: Path) -> ProjectConfig:
    try:
        return ProjectConfig.from_file(config_path)
    except (OSError, ConfigError) as exc:
        console.print(f"[bold red]Cannot load {config_path}:[/] {exc}")
        raise typer.Exit(code=1) from exc


@app.command()
def run(
    config_path: Path = typer.Argument(..., help="Path to YAML configuration"),
    inputs: List[str] = typer.Option([], "--input", "-i", help="Run input as key=value"),
    show_telemetry: bool = typer.Option(False, help="Print per-agent model usage after the run"),
    telemetry_file: Optional[Path] = typer.Option(None, help="Append model usage to this JSON file"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Execute the tasks described in the given config file."""

    config = _load(config_path)
    configure_logging(verbose or config.orchestration.verbose, console=console)
    run_inputs = parse_inputs(inputs, config.inputs)
    console.print(
        f"[bold green]Running project[/] {config.name} (mode={config.orchestration.execution_mode})"
    )
    _render_plan(config)

    recorder = TelemetryRecorder()
    orchestrator = Orchestrator.from_config(config, telemetry=recorder)

    progress = Progress(
        SpinnerColumn(style="cyan"),
        TextColumn("[progress.description]{task.description}"),
        TextColumn("{task.fields[status]}"),
        transient=False,
    )
    with progress:
        progress_tasks: Dict[str, Any] = {}

        def on_step(event: Dict[str, Any]) -> None:
            label = event.get("task")
            if not label or "action" not in event:
                return
            if label not in progress_tasks:
                progress_tasks[label] = progress.add_task(label, status="[yellow]pending")
            action = event["action"]
            if action == "completed":
                status = "[green]completed ✅"
            elif action == "delegated":
                status = f"[magenta]delegated → {event.get('to')}"
            elif action == "tool_executed":
                status = f"[blue]tool {event.get('tool')}"
            else:
                status = f"[cyan]{event.get('agent', '')} thinking..."
            progress.update(progress_tasks[label], status=status)

        orchestrator.subscribe(on_step)
        try:
            outcome = asyncio.run(orchestrator.run(run_inputs))
        except ConfigError as exc:
            console.print(f"[bold red]Run aborted:[/] {exc}")
            raise typer.Exit(code=1) from exc

    table = Table(title="Task outputs", show_lines=True)
    table.add_column("Task ID")
    table.add_column("Output")
    for task_id, output in outcome.result.items():
        table.add_row(task_id, str(output))
    console.print(table)
    console.print(f"Executed: {', '.join(outcome.executed_task_ids)}")

    if show_telemetry:
        usage = Table(title="Model usage", show_lines=True)
        usage.add_column("Agent")
        usage.add_column("Calls")
        usage.add_column("Tokens")
        usage.add_column("Time (ms)")
        for agent, stats in recorder.export().items():
            usage.add_row(agent, str(stats["call_count"]), str(stats["total_tokens"]), f"{stats['total_time_ms']:.0f}")
        console.print(usage)
    if telemetry_file is not None:
        recorder.save(telemetry_file)


@app.command()
def inspect(config_path: Path = typer.Argument(..., help="Config to inspect")) -> None:
    """Print the agents, tasks, and tools defined by a configuration file."""

    config = _load(config_path)
    console.print(f"[bold]Project:[/] {config.name}\n{config.description or ''}")
    orchestration = config.orchestration
    console.print(
        f"[bold]Mode:[/] {orchestration.execution_mode} (parallel={orchestration.allow_parallel}, "
        f"replanning={orchestration.enable_replanning})"
    )
    console.print("[bold]Agents[/]")
    for spec in config.agents.values():
        console.print(
            f"- {spec.name}: {spec.role} | tools={spec.tools} | delegation={spec.allow_delegation} "
            f"| memory={spec.memory.scope}"
        )
    console.print("[bold]Tasks[/]")
    for spec in config.tasks:
        arrow = f" <- {spec.input_from_task}" if spec.input_from_task else ""
        console.print(f"- {spec.id} -> {spec.agent or '(manager)'}: {spec.description}{arrow}")
    if config.tool_specs:
        console.print("[bold]Tools[/]")
        for spec in config.tool_specs.values():
            console.print(f"- {spec.name}: {spec.type}")


@app.command()
def train(
    config_path: Path = typer.Argument(..., help="Path to YAML configuration"),
    iterations: int = typer.Option(1, "--iterations", "-n", min=1),
    inputs: List[str] = typer.Option([], "--input", "-i", help="Run input as key=value"),
    directory: Optional[Path] = typer.Option(None, help="Where training files are written"),
) -> None:
    """Collect feedback on each agent's output and distill it into prompt insights."""

    config = _load(config_path)
    configure_logging(config.orchestration.verbose, console=console)
    orchestrator = Orchestrator.from_config(config)

    def ask(agent: Agent, output: str) -> str:
        console.rule(f"{agent.name}")
        console.print(output)
        return typer.prompt("Feedback (empty to skip)", default="", show_default=False)

    saved = asyncio.run(
        orchestrator.train(
            iterations,
            parse_inputs(inputs, config.inputs),
            ask,
            directory or config.defaults.training_dir,
        )
    )
    for agent_name, path in saved.items():
        console.print(f"[green]Saved training for {agent_name}[/] → {path}")


if __name__ == "__main__":  # pragma: no cover
    app()
