"""Main CLI for phase shepherd."""

import asyncio
import json
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from ..core.agent_registry import AgentRegistry
from ..core.config import ShepherdConfig, load_config
from ..core.policy import InvalidWorkflowLabelError, PolicyLoadError, PolicyResolver, PolicyStore
from ..core.run_log import RunLog
from ..core.messenger import PhaseMessenger
from ..core.worker import WorkerLoop
from ..decision.prompt_builder import DecisionPromptBuilder
from ..integrations.beads import BeadsClient, BeadsError, IssueLabels
from ..llm.opencode_backend import OpenCodeBackend
from ..utils.rich_logging import setup_rich_logging


console = Console()

STATUS_STYLES = {
    "completed": "green",
    "failed": "red",
    "blocked": "yellow",
    "pending": "cyan",
    "running": "cyan",
}


def _config(ctx) -> ShepherdConfig:
    workspace = ctx.obj["workspace"]
    config_path = Path(ctx.obj["config_path"])
    if not config_path.is_absolute():
        config_path = workspace / config_path
    # Copy so the cached config is never mutated
    return load_config(config_path).model_copy(update={"workspace": workspace})


def _load_store(config: ShepherdConfig) -> PolicyStore:
    return PolicyStore.from_file(config.resolve_path(config.policies_path))


def _load_registry(config: ShepherdConfig) -> AgentRegistry:
    return AgentRegistry.from_file(config.resolve_path(config.agents_path))


def build_worker(config: ShepherdConfig, log_level: str = "INFO", worker_id: str = "shepherd") -> WorkerLoop:
    """Wire a WorkerLoop from configuration files under the workspace."""
    data_dir = config.resolve_path(config.data_dir)
    backend = OpenCodeBackend(
        executable=config.opencode.executable,
        working_dir=config.opencode.working_dir or str(config.workspace),
        default_model=config.opencode.default_model,
        logs_dir=data_dir / "logs",
    )
    return WorkerLoop(
        config=config,
        store=_load_store(config),
        registry=_load_registry(config),
        run_log=RunLog(data_dir),
        beads=BeadsClient(cwd=config.workspace),
        backend=backend,
        logger=setup_rich_logging(worker_id, data_dir, log_level=log_level),
    )


@click.group()
@click.option("--workspace", "-w", default=".", help="Workspace directory")
@click.option("--config", "-c", "config_path", default="config/shepherd.yaml", help="Config file")
@click.pass_context
def cli(ctx, workspace, config_path):
    """Phase Shepherd - drive issues through AI agent phases."""
    ctx.ensure_object(dict)
    ctx.obj["workspace"] = Path(workspace)
    ctx.obj["config_path"] = config_path


@cli.command()
@click.option("--once", is_flag=True, help="Process one poll cycle and exit")
@click.option("--log-level", default="INFO", help="Logging level")
@click.pass_context
def work(ctx, once, log_level):
    """Poll the issue tracker and process ready issues."""
    config = _config(ctx)
    try:
        worker = build_worker(config, log_level=log_level)
    except ValueError as e:
        console.print(f"[red]Error: {e}[/]")
        ctx.exit(1)

    console.print("[bold green]Starting phase worker...[/]")
    console.print("[dim]Press Ctrl+C to stop[/]\n")
    try:
        asyncio.run(worker.run(max_cycles=1 if once else None))
    except KeyboardInterrupt:
        console.print("\n[yellow]Worker stopped[/]")


@cli.command()
@click.argument("issue_id")
@click.option("--log-level", default="INFO", help="Logging level")
@click.pass_context
def process(ctx, issue_id, log_level):
    """Run one phase attempt for a single issue."""
    config = _config(ctx)
    try:
        worker = build_worker(config, log_level=log_level)
    except ValueError as e:
        console.print(f"[red]Error: {e}[/]")
        ctx.exit(1)

    async def _process():
        issue = await worker.beads.get_issue(issue_id)
        if issue is None:
            return None
        return await worker.process_issue(issue)

    try:
        result = asyncio.run(_process())
    except (BeadsError, InvalidWorkflowLabelError) as e:
        console.print(f"[red]Error: {e}[/]")
        ctx.exit(1)

    if result is None:
        console.print(f"[red]Error: issue {issue_id} not found[/]")
        ctx.exit(1)

    if not result.success:
        console.print(f"[red]✗ {issue_id} \\[{result.phase}]: {result.error}[/]")
        ctx.exit(1)

    transition = result.transition
    target = f" → {transition.target_phase}" if transition.target_phase else ""
    console.print(
        f"[green]✓[/] {issue_id} \\[{result.phase}] {transition.type.value}{target}: {transition.reason}"
    )


@cli.command()
@click.pass_context
def policies(ctx):
    """Show configured policies and their phases."""
    config = _config(ctx)
    try:
        store = _load_store(config)
    except PolicyLoadError as e:
        console.print(f"[red]Error: {e}[/]")
        ctx.exit(1)

    table = Table(title=f"Policies (default: {store.default_policy})")
    table.add_column("Policy")
    table.add_column("Issue Types")
    table.add_column("Priority", justify="right")
    table.add_column("Phases")
    table.add_column("Max Attempts", justify="right")

    for policy in store.policies():
        phases = []
        for phase in policy.phases:
            label = phase.name
            if phase.decision:
                label += "[magenta]*[/]"
            if phase.require_approval:
                label += "[yellow]![/]"
            phases.append(label)
        table.add_row(
            policy.name,
            ", ".join(policy.issue_types) or "[dim]-[/]",
            str(policy.priority),
            " → ".join(phases),
            str(policy.retry.max_attempts if policy.retry else 3),
        )

    console.print(table)
    console.print("[dim]* AI-routed decision   ! approval required[/]")


@cli.command()
@click.argument("issue_id")
@click.pass_context
def match(ctx, issue_id):
    """Show which policy and phase an issue resolves to."""
    config = _config(ctx)
    try:
        store = _load_store(config)
        issue = asyncio.run(BeadsClient(cwd=config.workspace).get_issue(issue_id))
    except (PolicyLoadError, BeadsError) as e:
        console.print(f"[red]Error: {e}[/]")
        ctx.exit(1)

    if issue is None:
        console.print(f"[red]Error: issue {issue_id} not found[/]")
        ctx.exit(1)

    resolver = PolicyResolver(
        store,
        label_prefix=config.labels.prefix,
        invalid_label_strategy=config.workflow.invalid_label_strategy,
    )
    try:
        policy_name = resolver.match_policy(issue)
    except InvalidWorkflowLabelError as e:
        console.print(f"[red]Error: {e}[/]")
        ctx.exit(1)

    current = IssueLabels(config.labels.prefix).current_phase(issue)
    console.print(f"[bold]{issue.id}[/] ({issue.issue_type}): {issue.title}")
    console.print(f"  Policy: [cyan]{policy_name}[/]")
    console.print(f"  Phases: {' → '.join(store.phase_sequence(policy_name))}")
    console.print(f"  Current phase: {current or '[dim]not started[/]'}")


@cli.command()
@click.pass_context
def validate(ctx):
    """Load all configuration and cross-check policies against agents."""
    config = _config(ctx)
    errors = []
    warnings = []

    try:
        store = _load_store(config)
        console.print(f"[green]✓[/] Policies: {len(store.policy_names())} loaded")
    except PolicyLoadError as e:
        errors.append(str(e))
        store = None

    try:
        registry = _load_registry(config)
        console.print(f"[green]✓[/] Agents: {len(registry.all_agents())} loaded")
    except ValueError as e:
        errors.append(str(e))
        registry = None

    if store is not None and registry is not None:
        if not store.has_policy(store.default_policy):
            warnings.append(f"Default policy '{store.default_policy}' is not defined")
        templates = DecisionPromptBuilder(config.resolve_path(config.decision_prompts_path)).available_templates()
        for policy in store.policies():
            for phase in policy.phases:
                if not registry.find_by_capabilities(phase.capabilities):
                    errors.append(
                        f"{policy.name}/{phase.name}: no active agent has capabilities "
                        f"{phase.capabilities}"
                    )
                if phase.agent and registry.get_agent(phase.agent) is None:
                    errors.append(f"{policy.name}/{phase.name}: pinned agent '{phase.agent}' is not registered")
                if phase.decision and not registry.find_by_capabilities([phase.decision.capability]):
                    errors.append(
                        f"{policy.name}/{phase.name}: no active agent for decision capability "
                        f"'{phase.decision.capability}'"
                    )
                if phase.decision and phase.decision.prompt and phase.decision.prompt not in templates:
                    warnings.append(
                        f"{policy.name}/{phase.name}: decision template '{phase.decision.prompt}' "
                        "is not defined; the default template will be used"
                    )
        if config.worker_assistant.enabled and not registry.find_by_capabilities(
            [config.worker_assistant.agent_capability]
        ):
            warnings.append(
                f"No agent with '{config.worker_assistant.agent_capability}' capability; "
                f"worker assistant will always fall back to {config.worker_assistant.fallback_action}"
            )

    for warning in warnings:
        console.print(f"[yellow]⚠ {warning}[/]")
    for error in errors:
        console.print(f"[red]✗ {error}[/]")

    if errors:
        console.print(f"\n[red]Validation failed with {len(errors)} error(s)[/]")
        ctx.exit(1)
    console.print("\n[green]Configuration is valid[/]")


@cli.command()
@click.option("--issue", "-i", "issue_id", help="Filter by issue id")
@click.option("--phase", "-p", help="Filter by phase")
@click.option("--status", "-s", help="Filter by run status")
@click.option("--limit", "-n", default=20, help="Max runs to show")
@click.pass_context
def runs(ctx, issue_id, phase, status, limit):
    """Show recent runs."""
    config = _config(ctx)
    run_log = RunLog(config.resolve_path(config.data_dir))
    records = run_log.query_runs(issue_id=issue_id, phase=phase, status=status, limit=limit)

    if not records:
        console.print("[dim]No runs recorded[/]")
        return

    table = Table(title="Runs")
    table.add_column("Run")
    table.add_column("Issue")
    table.add_column("Policy")
    table.add_column("Phase")
    table.add_column("Agent")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Tokens", justify="right")

    for run in records:
        style = STATUS_STYLES.get(run.status, "white")
        duration = f"{run.duration_ms / 1000:.1f}s" if run.duration_ms is not None else "-"
        table.add_row(
            run.id,
            run.issue_id,
            run.policy_name,
            run.phase,
            run.agent_id,
            f"[{style}]{run.status}[/]",
            duration,
            f"{run.tokens_used:,}" if run.tokens_used else "-",
        )

    console.print(table)


@cli.command()
@click.argument("run_id")
@click.pass_context
def decisions(ctx, run_id):
    """Show the decision trail for one run."""
    config = _config(ctx)
    run_log = RunLog(config.resolve_path(config.data_dir))
    run = run_log.get_run(run_id)
    if run is None:
        console.print(f"[red]Error: run {run_id} not found[/]")
        ctx.exit(1)

    console.print(f"[bold]{run.id}[/] {run.issue_id} \\[{run.phase}] agent={run.agent_id} status={run.status}")
    records = run_log.get_decisions(run_id)
    if not records:
        console.print("[dim]No decisions recorded[/]")
        return

    table = Table()
    table.add_column("Time")
    table.add_column("Type")
    table.add_column("Decision")
    table.add_column("Reasoning")

    for record in records:
        table.add_row(
            record.timestamp.strftime("%H:%M:%S"),
            record.type,
            record.decision,
            record.reasoning or "",
        )

    console.print(table)


@cli.command()
@click.argument("issue_id")
@click.option("--phase", "-p", help="Only messages addressed to this phase")
@click.option("--unread", is_flag=True, help="Only unread messages")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
@click.pass_context
def messages(ctx, issue_id, phase, unread, as_json):
    """Show inter-phase messages for an issue."""
    config = _config(ctx)
    messenger = PhaseMessenger(config.resolve_path(config.data_dir), config.messenger)
    found = messenger.list_messages(
        issue_id=issue_id,
        to_phase=phase,
        read=False if unread else None,
    )

    if as_json:
        click.echo(json.dumps([m.model_dump(mode="json") for m in found], indent=2))
        return

    if not found:
        console.print("[dim]No messages[/]")
        return

    table = Table(title=f"Messages for {issue_id}")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Type")
    table.add_column("Read")
    table.add_column("Content")

    for message in found:
        content = message.content if len(message.content) <= 80 else message.content[:77] + "..."
        table.add_row(
            message.from_phase,
            message.to_phase,
            message.message_type,
            "✓" if message.read else "",
            content,
        )

    console.print(table)


if __name__ == "__main__":
    cli()
