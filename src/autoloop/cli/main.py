#!/usr/bin/env python3
"""
Main CLI entry point for autoloop.
"""
import asyncio
import logging
import sys
from pathlib import Path

import click
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from autoloop import __version__
from autoloop.api.client import DeepSeekOracle, OracleError
from autoloop.core.config import API_KEY_ENV, load_config, mask_key, resolve_api_key
from autoloop.core.errors import AutoloopError
from autoloop.core.models import (
    FinalStatus, GenerationRequest, LoopState, OptimizerMetaprompt, WorkflowState,
    save_model_to_json
)
from autoloop.core.orchestrator import ClosedLoopOrchestrator
from autoloop.core.query_planner import QueryPlanner
from autoloop.core.retry import RetryPolicy
from autoloop.core.telemetry import DirectoryTelemetrySource, SyntheticTelemetryGenerator
from autoloop.core.workflow_engine import TestDrivenWorkflowEngine

console = Console()

STATUS_STYLES = {
    FinalStatus.SUCCESS: "[green]✅ success[/green]",
    FinalStatus.PARTIAL: "[yellow]⚠️  partial[/yellow]",
    FinalStatus.FAILED: "[red]❌ failed[/red]",
    FinalStatus.PENDING: "pending",
}


def setup_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)]
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def load_yaml(path: str) -> dict:
    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise click.BadParameter(f"{path} does not contain a mapping")
    return data


def load_request(path: str) -> GenerationRequest:
    return GenerationRequest.from_dict(load_yaml(path))


def load_metaprompt(path: str) -> OptimizerMetaprompt:
    data = load_yaml(path)
    persona = data.get('target_persona')
    # Persona paths are relative to the metaprompt file
    if isinstance(persona, str) and persona != "default" and not Path(persona).is_absolute():
        candidate = Path(path).parent / persona
        if candidate.exists():
            data['target_persona'] = str(candidate)
    return OptimizerMetaprompt.from_dict(data)


def create_oracle(config_path: str):
    config = load_config(config_path)
    return DeepSeekOracle(config=config), config


@click.group()
@click.version_option(version=__version__)
@click.option('--verbose', '-v', is_flag=True, help="Enable debug logging")
def cli(verbose):
    """autoloop - build, observe and evolve a product with a generation oracle."""
    setup_logging(verbose)


@cli.command()
@click.option('--config', '-c', default="config.yaml", help="Path to config file")
def test(config):
    """Test Oracle connection and configuration."""
    asyncio.run(_test_async(config))


async def _test_async(config_path: str):
    table = Table(title="Configuration Test")
    table.add_column("Component", style="cyan")
    table.add_column("Status", style="green")
    table.add_column("Details")

    try:
        oracle, config = create_oracle(config_path)
    except OracleError as e:
        table.add_row("API Key", "❌", str(e))
        console.print(table)
        sys.exit(1)

    table.add_row("API Key", "✅", mask_key(oracle.api_key))
    table.add_row("Model", "✅", f"{oracle.model} @ {oracle.base_url}")

    async with oracle:
        try:
            if await oracle.test_connection():
                table.add_row("Oracle Connection", "✅", "Connected")
            else:
                table.add_row("Oracle Connection", "❌", "Connection failed")
        except OracleError as e:
            table.add_row("Oracle Connection", "❌", str(e))

    console.print(table)


@cli.command()
@click.option('--config', '-c', 'config_path', default="config.yaml", help="Path to config file")
@click.option('--show-key', is_flag=True, help="Show full API key (be careful!)")
def config(config_path, show_key):
    """Show current configuration (defaults filled in)."""
    settings = load_config(config_path)

    table = Table(title="Current Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="yellow")

    api_key = resolve_api_key(settings)
    if api_key:
        table.add_row(API_KEY_ENV, api_key if show_key else mask_key(api_key))
    else:
        table.add_row(API_KEY_ENV, "[red]NOT SET[/red]")

    for section, values in settings.items():
        if isinstance(values, dict):
            for key, value in values.items():
                if key == 'api_key':
                    continue
                table.add_row(f"{section}.{key}", str(value))
        else:
            table.add_row(section, str(values))

    console.print(table)


@cli.command()
@click.argument('intent')
@click.option('--language', '-l', default=None, help="Restrict retrieval to a language's files")
@click.option('--directory', '-d', 'directories', multiple=True, help="Restrict retrieval to a directory")
@click.option('--index', 'index_dir', default=None, type=click.Path(exists=True, file_okay=False),
              help="Index this directory before querying")
@click.option('--config', '-c', default="config.yaml", help="Path to config file")
def plan(intent, language, directories, index_dir, config):
    """Plan and run a retrieval query for INTENT."""
    asyncio.run(_plan_async(intent, language, list(directories), index_dir, config))


async def _plan_async(intent: str, language, directories, index_dir, config_path: str):
    oracle, config = create_oracle(config_path)
    async with oracle:
        planner = QueryPlanner(oracle, RetryPolicy.from_config(config))

        if index_dir:
            root = Path(index_dir)
            files = [
                (str(p.relative_to(root)), p.read_text(encoding='utf-8', errors='ignore'))
                for p in sorted(root.rglob("*")) if p.is_file() and p.stat().st_size < 200_000
            ]
            planner.index_codebase(files)
            console.print(f"[green]✅ Indexed {planner.index_size} files[/green]")

        with console.status("[bold green]Planning and retrieving..."):
            result = await planner.query(intent, {'language': language, 'directories': directories})

    table = Table(title=f"Plan {result.plan.plan_id} ({result.plan.synthesis_strategy.value})")
    table.add_column("Type", style="cyan")
    table.add_column("Sub-query")
    table.add_column("Results", justify="right")
    for sub_query in result.plan.sub_queries:
        table.add_row(sub_query.query_type.value, sub_query.query_text,
                      str(len(result.query_results.get(sub_query.query_id, []))))
    console.print(table)

    console.print(Panel(result.synthesized_context[:3000] or "[dim]No context found[/dim]",
                        title="Synthesized context",
                        subtitle=f"confidence {result.confidence_score:.2f}"))


@cli.command()
@click.argument('request_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--output', '-o', default=None, help="Write the final workflow state as JSON")
@click.option('--config', '-c', default="config.yaml", help="Path to config file")
def workflow(request_file, output, config):
    """Run the test-driven workflow for a YAML REQUEST_FILE."""
    request = load_request(request_file)
    try:
        state = asyncio.run(_workflow_async(request, config))
    except OracleError as e:
        console.print(f"[red]❌ Error: {e}[/red]")
        sys.exit(1)

    _print_workflow(state)
    if output:
        save_model_to_json(state, Path(output))
        console.print(f"[green]💾 Saved workflow state to {output}[/green]")
    if state.final_status == FinalStatus.FAILED:
        sys.exit(1)


async def _workflow_async(request: GenerationRequest, config_path: str) -> WorkflowState:
    oracle, config = create_oracle(config_path)
    async with oracle:
        engine = TestDrivenWorkflowEngine(
            oracle,
            retry_policy=RetryPolicy.from_config(config),
            max_healing_iterations=config['workflow']['max_healing_iterations']
        )
        with console.status(f"[bold green]Running workflow '{request.title}'..."):
            return await engine.execute_workflow(request)


def _print_workflow(state: WorkflowState):
    console.print(Panel.fit(
        f"[bold]{state.request.title}[/bold]\n"
        f"Status: {STATUS_STYLES[state.final_status]}\n"
        f"Phases: {' → '.join(p.value for p in state.phase_history)}\n"
        f"Healing iterations: {len(state.healing_iterations)}"
        + (f"\n[red]Error ({state.failed_phase.value}): {state.error}[/red]" if state.failed_phase else "")
        + (f"\n[yellow]{state.error}[/yellow]" if state.error and not state.failed_phase else ""),
        title="Workflow"
    ))

    if state.generated_tests:
        results = {r.test_id: r for r in state.test_results}
        table = Table(title="Generated Tests")
        table.add_column("Test", style="cyan")
        table.add_column("File")
        table.add_column("Status")
        table.add_column("Error", style="red")
        for test in state.generated_tests:
            result = results.get(test.id)
            table.add_row(test.description[:60], test.file_path, test.status,
                          (result.error_message or "") if result else "")
        console.print(table)

    for code in state.generated_code:
        console.print(f"[bold]📄 {code.file_path}[/bold] ({len(code.content.splitlines())} lines)")


def _build_orchestrator(oracle, config, telemetry_dir=None) -> ClosedLoopOrchestrator:
    source = DirectoryTelemetrySource(telemetry_dir) if telemetry_dir else None
    return ClosedLoopOrchestrator(oracle, config=config, telemetry_source=source)


@cli.command()
@click.argument('request_file', type=click.Path(exists=True, dir_okay=False))
@click.argument('metaprompt_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--iterations', '-n', default=3, show_default=True, help="Number of loop iterations")
@click.option('--seed', default=None, type=int, help="Seed for synthetic telemetry")
@click.option('--sessions', default=5, show_default=True, help="Synthetic sessions per iteration")
@click.option('--output', '-o', default=None, help="Write the final loop state as JSON")
@click.option('--config', '-c', default="config.yaml", help="Path to config file")
def simulate(request_file, metaprompt_file, iterations, seed, sessions, output, config):
    """Run the closed loop on synthetic telemetry."""
    request = load_request(request_file)
    metaprompt = load_metaprompt(metaprompt_file)
    generator = SyntheticTelemetryGenerator(seed=seed, sessions_per_batch=sessions)

    try:
        state = asyncio.run(_simulate_async(request, metaprompt, iterations, generator, config))
    except (AutoloopError, OracleError) as e:
        console.print(f"[red]❌ Error: {e}[/red]")
        sys.exit(1)

    _print_loop(state)
    if output:
        save_model_to_json(state, Path(output))
        console.print(f"[green]💾 Saved loop state to {output}[/green]")


async def _simulate_async(request, metaprompt, iterations, generator, config_path) -> LoopState:
    oracle, config = create_oracle(config_path)
    async with oracle:
        orchestrator = _build_orchestrator(oracle, config)
        with console.status("[bold green]Initializing loop..."):
            await orchestrator.initialize(request, metaprompt)
        return await orchestrator.run_simulation(iterations, generator)


@cli.command()
@click.argument('request_file', type=click.Path(exists=True, dir_okay=False))
@click.argument('metaprompt_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--telemetry-dir', '-t', required=True, type=click.Path(file_okay=False),
              help="Directory of *.jsonl telemetry batches")
@click.option('--interval', default=None, type=float, help="Seconds between iterations")
@click.option('--config', '-c', default="config.yaml", help="Path to config file")
def loop(request_file, metaprompt_file, telemetry_dir, interval, config):
    """Run the closed loop against a telemetry directory until interrupted."""
    request = load_request(request_file)
    metaprompt = load_metaprompt(metaprompt_file)
    try:
        asyncio.run(_loop_async(request, metaprompt, telemetry_dir, interval, config))
    except KeyboardInterrupt:
        console.print("\n[yellow]Loop interrupted[/yellow]")


async def _loop_async(request, metaprompt, telemetry_dir, interval, config_path):
    oracle, config = create_oracle(config_path)
    async with oracle:
        orchestrator = _build_orchestrator(oracle, config, telemetry_dir)
        if interval is not None:
            orchestrator.set_loop_interval(interval)
        await orchestrator.initialize(request, metaprompt)
        console.print(Panel.fit(
            f"Watching [cyan]{telemetry_dir}[/cyan] every {orchestrator.loop_interval:g}s\n"
            "Press Ctrl+C to stop",
            title="🔁 Closed loop"
        ))
        try:
            await orchestrator.start_loop()
        finally:
            _print_loop(orchestrator.get_state())


def _print_loop(state: LoopState):
    metrics = state.product_metrics
    table = Table(title=f"Product Metrics (iteration {state.loop_iteration}, {state.deployment_status.value})")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    for name, value in metrics.to_dict().items():
        table.add_row(name, f"{value:.3f}")
    console.print(table)

    for failure in state.failed_iterations:
        console.print(f"[red]❌ {failure}[/red]")

    if not state.evolution_history:
        console.print("[dim]No evolution records (no actionable telemetry)[/dim]")
        return

    history = Table(title="Evolution History")
    history.add_column("#", justify="right")
    history.add_column("Changes")
    history.add_column("Delight", justify="right")
    history.add_column("Errors", justify="right")
    for record in state.evolution_history:
        history.add_row(
            str(record.iteration),
            "\n".join(record.changes_made),
            f"{record.metrics_before.user_delight:.2f} → {record.metrics_after.user_delight:.2f}",
            f"{record.metrics_before.error_rate:.2f} → {record.metrics_after.error_rate:.2f}"
        )
    console.print(history)


def main():
    cli()


if __name__ == "__main__":
    main()
