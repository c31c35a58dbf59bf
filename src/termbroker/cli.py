"""CLI entry point for termbroker."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from typing import TYPE_CHECKING, cast

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from termbroker.config import BrokerConfig
from termbroker.errors import SpawnError
from termbroker.policy import (
    ToolRequest,
    classify_escalation,
    effective_rules,
    evaluate_auto_approve,
    format_escalation_warning,
)
from termbroker.prompt import classify, get_input_for_option
from termbroker.pty.session import PERMISSION_MODES, PermissionMode

if TYPE_CHECKING:
    from termbroker.prompt.models import ParsedPrompt

app = typer.Typer(
    name="termbroker",
    help="Supervise interactive coding agents in a PTY and broker their decisions.",
    no_args_is_help=True,
)

console = Console()


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _render_prompt(session_id: str, prompt: dict) -> None:
    kind = prompt.get("type", "?")
    question = prompt.get("question") or ""
    console.print(f"\n[bold cyan]{session_id}[/] [yellow]{kind}[/] {escape(question)}")
    for option in prompt.get("options", []):
        marker = "❯" if option.get("is_selected") else " "
        console.print(f"  {marker} [bold]{option['index']}[/]. {escape(option['label'])}")
    if kind == "completion":
        console.print("  (type a follow-up, or Ctrl-D to quit)")
    else:
        console.print("  (type a number to pick an option, or any text to send it)")


def _answer_to_keys(prompt: ParsedPrompt | None, answer: str) -> str:
    """A bare number answers the on-screen prompt; anything else is typed."""
    if prompt is not None and prompt.options and answer.isdigit():
        return get_input_for_option(prompt, int(answer))
    return answer + "\r"


@app.command()
def run(
    task: str = typer.Argument(help="Task to hand to the agent."),
    cwd: str = typer.Option(
        ".", "--cwd", "-C", help="Working directory for the agent."
    ),
    mode: str = typer.Option(
        "default",
        "--mode",
        "-m",
        help=f"Permission mode: {', '.join(PERMISSION_MODES)}.",
    ),
    show_output: bool = typer.Option(
        False, "--show-output", "-o", help="Echo the agent's raw terminal output."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Run an agent in a supervised PTY and answer its prompts from here."""
    setup_logging(verbose)

    work_dir = os.path.abspath(cwd)
    if not os.path.isdir(work_dir):
        typer.echo(f"Error: Directory not found: {work_dir}", err=True)
        raise typer.Exit(1)
    if mode not in PERMISSION_MODES:
        typer.echo(f"Error: Unknown permission mode: {mode}", err=True)
        raise typer.Exit(1)

    config = BrokerConfig.load(config_file)

    typer.echo("termbroker v0.1.0")
    typer.echo(f"Agent: {config.session.agent_executable}")
    typer.echo(f"Directory: {work_dir}")
    typer.echo(f"Mode: {mode}")
    typer.echo("---")

    try:
        exit_code = asyncio.run(_run_session(task, work_dir, mode, config, show_output))
    except KeyboardInterrupt:
        typer.echo("\nInterrupted.")
        raise typer.Exit(130)
    raise typer.Exit(exit_code or 0)


async def _run_session(
    task: str, cwd: str, mode: str, config: BrokerConfig, show_output: bool
) -> int | None:
    """Supervise one session until the agent exits or stdin closes."""
    from termbroker.pty.manager import SessionSupervisor
    from termbroker.session.wire import EventType, Wire

    wire = Wire()
    supervisor = SessionSupervisor(wire=wire, config=config.session)
    topics = [EventType.PROMPT, EventType.SESSION_EXIT]
    if show_output:
        topics.append(EventType.SESSION_OUTPUT)
    events = wire.subscribe(topics)

    try:
        session = await supervisor.spawn(task, cwd, cast(PermissionMode, mode))
    except SpawnError as e:
        typer.echo(f"Error: {e}", err=True)
        return 1

    loop = asyncio.get_running_loop()
    lines: asyncio.Queue[str | None] = asyncio.Queue()

    def _on_stdin() -> None:
        line = sys.stdin.readline()
        lines.put_nowait(line.rstrip("\n") if line else None)

    loop.add_reader(sys.stdin.fileno(), _on_stdin)

    # --- stdin -> session ---
    async def _forward_input() -> None:
        while True:
            answer = await lines.get()
            if answer is None:
                supervisor.kill(session.id)
                return
            keys = _answer_to_keys(session.current_prompt, answer)
            if not supervisor.send_input(session.id, keys):
                console.print("[red]Session is no longer accepting input[/]")
                return

    forwarder = asyncio.create_task(_forward_input())
    exit_code: int | None = None
    try:
        while True:
            event = await events.get()
            if event is None:
                break
            d = event.data
            if event.type == EventType.SESSION_OUTPUT:
                sys.stdout.write(d["data"])
                sys.stdout.flush()
            elif event.type == EventType.PROMPT:
                _render_prompt(d["session_id"], d["prompt"])
            elif event.type == EventType.SESSION_EXIT:
                exit_code = d["exit_code"]
                console.print(f"\n[bold]{d['session_id']}[/] exited (code={exit_code})")
                if d.get("last_output"):
                    console.print(escape(d["last_output"]), style="dim")
                break
    finally:
        loop.remove_reader(sys.stdin.fileno())
        forwarder.cancel()
        supervisor.kill_all()
        wire.close()
    return exit_code


@app.command("classify")
def classify_cmd(
    transcript: str = typer.Argument(help="File holding captured terminal output."),
    as_json: bool = typer.Option(False, "--json", help="Print the prompt as JSON."),
) -> None:
    """Classify captured terminal output the way a live session would."""
    try:
        with open(transcript, encoding="utf-8", errors="replace") as f:
            chunk = f.read()
    except OSError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    prompt = classify(chunk)
    if prompt is None:
        if as_json:
            typer.echo("null")
        else:
            console.print("No prompt detected.")
        raise typer.Exit(1)

    if as_json:
        typer.echo(json.dumps(prompt.to_dict(), indent=2, ensure_ascii=False))
        return

    console.print(f"[bold]Type:[/] {prompt.type.value}")
    if prompt.question:
        console.print(f"[bold]Question:[/] {escape(prompt.question)}")
    if prompt.options:
        table = Table("#", "Option", "Selected", "Keys")
        for option in prompt.options:
            table.add_row(
                str(option.index),
                escape(option.label),
                "❯" if option.is_selected else "",
                repr(get_input_for_option(prompt, option.index)),
            )
        console.print(table)


@app.command()
def evaluate(
    tool_name: str = typer.Argument(help="Tool name, e.g. Bash or Write."),
    tool_input: str = typer.Option(
        "{}", "--input", "-i", help="Tool input as a JSON object."
    ),
    cwd: str = typer.Option("", "--cwd", help="Working directory of the request."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Show how the policy engine would settle a tool request."""
    try:
        parsed = json.loads(tool_input)
    except json.JSONDecodeError as e:
        typer.echo(f"Error: --input is not valid JSON: {e}", err=True)
        raise typer.Exit(1)
    if not isinstance(parsed, dict):
        typer.echo("Error: --input must be a JSON object", err=True)
        raise typer.Exit(1)

    config = BrokerConfig.load(config_file)
    request = ToolRequest(tool_name=tool_name, tool_input=parsed, cwd=cwd)

    rule = evaluate_auto_approve(request, effective_rules(config.rules))
    if rule is None:
        console.print("[bold]Rule:[/] none matched, a human decides")
    else:
        colour = "green" if rule.action == "allow" else "red"
        console.print(f"[bold]Rule:[/] {rule.name} -> [{colour}]{rule.action}[/]")
        if rule.reason:
            console.print(f"  {escape(rule.reason)}")

    escalation = classify_escalation(request)
    console.print(f"[bold]Escalation:[/] {escalation.level.label}")
    warning = format_escalation_warning(escalation)
    if warning:
        console.print(f"  {escape(warning)}")


@app.command()
def rules(
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """List the effective auto-approve rules in evaluation order."""
    config = BrokerConfig.load(config_file)

    table = Table("#", "Name", "Action", "Match", "Reason")
    for i, rule in enumerate(effective_rules(config.rules), 1):
        match = rule.match.model_dump(exclude_none=True, by_alias=True)
        table.add_row(
            str(i),
            rule.name,
            rule.action,
            escape(json.dumps(match)),
            escape(rule.reason),
        )
    console.print(table)


if __name__ == "__main__":
    app()
