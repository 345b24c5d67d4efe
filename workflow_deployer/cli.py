"""CLI commands for planning and deploying workflow definitions."""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from workflow_deployer.config import Settings, get_settings
from workflow_deployer.core.errors import DefinitionSourceError, EngineError, PlanValidationError
from workflow_deployer.core.models import ActionType
from workflow_deployer.core.state_machine import DefinitionState
from workflow_deployer.engine.client import EngineClient, HttpEngineClient
from workflow_deployer.executor.executor import DeploymentReport
from workflow_deployer.planner.diff import DryRunReport
from workflow_deployer.service import DeploymentService

console = Console()

ACTION_STYLES = {
    ActionType.CREATE: "green",
    ActionType.UPDATE: "yellow",
    ActionType.SKIP: "dim",
}

STATE_STYLES = {
    DefinitionState.ACTIVATED: "green",
    DefinitionState.CREATED: "cyan",
    DefinitionState.SKIPPED: "dim",
    DefinitionState.PENDING: "magenta",
}


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        description="Dependency-aware deployment of workflow definitions",
        prog="workflow-deployer",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument("--api-url", type=str, default=None, help="Engine base URL (default: N8N_API_URL)")
    parser.add_argument("--api-key", type=str, default=None, help="Engine API key (default: N8N_API_KEY)")

    subparsers = parser.add_subparsers(dest="command", help="Command to run", required=True)

    plan_parser = subparsers.add_parser(
        "plan",
        help="Preview a deployment",
        description="Show what would be created, updated or skipped. Does not modify the engine.",
    )
    plan_parser.add_argument("--dir", dest="directory", default=None, help="Workflow definitions directory")
    plan_parser.add_argument("--force", action="store_true", help="Update workflows even when unchanged")
    plan_parser.add_argument(
        "--format",
        choices=["table", "json"],
        default="table",
        help="Output format (default: table)",
    )

    deploy_parser = subparsers.add_parser(
        "deploy",
        help="Deploy workflows",
        description=(
            "Materialize changed workflows inactive, then activate them "
            "so every callee is live before its callers."
        ),
    )
    deploy_parser.add_argument("--dir", dest="directory", default=None, help="Workflow definitions directory")
    deploy_parser.add_argument("--force", action="store_true", help="Update workflows even when unchanged")
    deploy_parser.add_argument("--no-activate", action="store_true", help="Only run the materialize phase")
    deploy_parser.add_argument(
        "--continue-on-failure",
        action="store_true",
        help="Keep activating after an activation failure",
    )
    deploy_parser.add_argument(
        "--format",
        choices=["table", "json"],
        default="table",
        help="Output format (default: table)",
    )

    return parser


def _settings_for(args: argparse.Namespace) -> Settings:
    settings = get_settings()
    overrides = {}
    if args.api_url:
        overrides["api_url"] = args.api_url
    if args.api_key:
        overrides["api_key"] = args.api_key
    if overrides:
        settings = settings.model_copy(update={"engine": settings.engine.model_copy(update=overrides)})
    if args.verbose:
        settings = settings.model_copy(update={"log_level": "DEBUG"})
    return settings


def print_plan(report: DryRunReport) -> None:
    """Print the dry-run report as tables."""
    table = Table(title="Deployment Plan")
    table.add_column("Workflow", style="cyan")
    table.add_column("Action", style="bold")
    table.add_column("Reason")
    table.add_column("Current", style="magenta")
    table.add_column("New", style="magenta")

    for item in report.workflows:
        style = ACTION_STYLES[item.action]
        table.add_row(
            item.name,
            f"[{style}]{item.action.value}[/{style}]",
            item.reason,
            item.current_version or "-",
            item.new_version or "-",
        )
    console.print(table)

    order = report.validation.dependency_validation.dependency_order
    if order:
        console.print(f"Activation order: {' -> '.join(order)}")
    for cycle in report.validation.dependency_validation.cycles:
        console.print(f"[red]Cycle: {' -> '.join(cycle)}[/red]")
    for error in report.validation.errors:
        console.print(f"[red]{error}[/red]")
    for warning in report.validation.warnings:
        console.print(f"[yellow]{warning}[/yellow]")

    summary = (
        f"{report.count(ActionType.CREATE)} create, "
        f"{report.count(ActionType.UPDATE)} update, "
        f"{report.count(ActionType.SKIP)} skip"
    )
    if report.valid:
        console.print(f"\n[green]Plan valid:[/green] {summary}")
    else:
        console.print(f"\n[red]Plan invalid:[/red] {summary}")


def print_report(report: DeploymentReport) -> None:
    """Print the execution report."""
    table = Table(title="Deployment Result")
    table.add_column("Workflow", style="cyan")
    table.add_column("Action")
    table.add_column("State", style="bold")
    table.add_column("ID")
    table.add_column("Error", style="red")

    for item in report.items:
        style = STATE_STYLES.get(item.state, "red")
        table.add_row(
            item.name,
            item.action.value,
            f"[{style}]{item.state.value}[/{style}]",
            item.workflow_id or "-",
            item.error or "",
        )
    console.print(table)

    console.print(
        f"\nCreated: {report.created}  Updated: {report.updated}  Skipped: {report.skipped}  "
        f"Activated: {report.activated}  Failed: {report.failed}"
    )
    if report.cancelled:
        console.print("[yellow]Deployment cancelled; pending workflows were not attempted.[/yellow]")
    elif report.halted:
        console.print("[red]Activation halted after a failure.[/red]")


async def cmd_plan(args: argparse.Namespace, service: DeploymentService) -> int:
    """Execute the plan command."""
    report = await service.dry_run(force=args.force, directory=args.directory)
    if args.format == "json":
        console.print_json(report.model_dump_json(by_alias=True))
    else:
        print_plan(report)
    return 0 if report.valid else 1


async def cmd_deploy(args: argparse.Namespace, service: DeploymentService) -> int:
    """Execute the deploy command."""
    outcome = await service.deploy(
        force=args.force,
        directory=args.directory,
        activate=False if args.no_activate else None,
        halt_on_activation_failure=False if args.continue_on_failure else None,
    )

    if outcome.report is None:
        if args.format == "json":
            console.print_json(outcome.plan.report.model_dump_json(by_alias=True))
        else:
            print_plan(outcome.plan.report)
            console.print("[red]Deployment refused: plan is invalid.[/red]")
        return 1

    if args.format == "json":
        console.print_json(outcome.report.model_dump_json(by_alias=True))
    else:
        print_report(outcome.report)
    return 0 if outcome.succeeded else 1


async def run(args: argparse.Namespace, settings: Settings, client: Optional[EngineClient] = None) -> int:
    """Run a parsed command against the engine."""
    owned_client: Optional[HttpEngineClient] = None
    if client is None:
        owned_client = HttpEngineClient(settings.engine, settings.retry)
        client = owned_client

    service = DeploymentService(client, settings)
    try:
        if args.command == "plan":
            return await cmd_plan(args, service)
        if args.command == "deploy":
            return await cmd_deploy(args, service)
        console.print(f"[red]Unknown command: {args.command}[/red]")
        return 1
    except DefinitionSourceError as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1
    except (EngineError, PlanValidationError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1
    finally:
        if owned_client is not None:
            await owned_client.close()


def main(argv: Optional[List[str]] = None, client: Optional[EngineClient] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = _settings_for(args)

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    return asyncio.run(run(args, settings, client))


if __name__ == "__main__":
    sys.exit(main())
