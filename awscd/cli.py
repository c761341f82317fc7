"""
awscd CLI: provision and tear down a project's CodeDeploy topology.

Usage:
    awscd plan INTENT        Show what apply would do
    awscd apply INTENT       Create, adopt or update resources
    awscd teardown           Delete everything carrying the project prefix
    awscd env ENVIRONMENT    List stored parameters for an environment
    awscd status             Show the descriptor found from this directory
"""

from pathlib import Path
from typing import Dict, List, Optional, Tuple

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import AgentConfig, RunContext, get_config, make_session, set_config
from .desired import DesiredConfig, load_intent
from .envvars import ParameterStore
from .errors import AwsCdError, CascadeConfirmationRequired, TimeoutError
from .handlers import build_handlers
from .inventory import ResourceInventory
from .logging import setup_logging
from .models import ActionType, BoundNames, DeletionResult, Outcome, ProvisionResult, Resolution
from .naming import ENVIRONMENTS, provision_tier, role_purpose
from .persistence import ConfigPersistence, bound_names, desired_seed
from .planner import Plan, ReconciliationPlanner, parse_resource_key
from .provisioner import Provisioner, succeeded
from .teardown import TeardownExecutor, TeardownPlanner

console = Console()
app = typer.Typer(
    name="awscd",
    help="Idempotent CodeDeploy infrastructure provisioning.",
    no_args_is_help=True,
)

_ACTION_STYLES = {
    ActionType.CREATE: "green",
    ActionType.KEEP: "dim",
    ActionType.UPDATE: "yellow",
    ActionType.CONFLICT: "red",
    ActionType.REPLACE: "magenta",
}
_OUTCOME_STYLES = {
    Outcome.CREATED: "green",
    Outcome.ADOPTED: "cyan",
    Outcome.UPDATED: "yellow",
    Outcome.KEPT: "dim",
    Outcome.FAILED: "red",
    Outcome.SKIPPED: "red",
}


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Log level (default INFO)"),
    log_format: Optional[str] = typer.Option(None, "--log-format", help="console or json"),
):
    """Configure logging before any command runs."""
    overrides = {}
    if log_level:
        overrides["log_level"] = log_level
    if log_format:
        overrides["log_format"] = log_format
    config = AgentConfig(**overrides) if overrides else get_config()
    set_config(config)
    setup_logging(config)


def _context(project_name: str, region: str) -> RunContext:
    config = get_config()
    return RunContext(
        project_name=project_name,
        region=region,
        session=make_session(region, config.aws_profile),
        config=config,
    )


def _find_descriptor(persistence: ConfigPersistence) -> Optional[Tuple[Path, BoundNames]]:
    try:
        return persistence.load(Path.cwd())
    except AwsCdError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)


def _load_desired(intent: Path) -> Tuple[Path, DesiredConfig]:
    """Merge the intent file over the nearest descriptor's seed."""
    persistence = ConfigPersistence(get_config())
    found = persistence.load(Path.cwd())
    seed = None
    root = Path.cwd()
    if found is not None:
        root, names = found
        seed = desired_seed(names)
        console.print(f"[dim]Using descriptor under {root}[/dim]")
    return root, load_intent(intent, seed)


def _print_plan(plan: Plan) -> None:
    table = Table(title=f"Plan for {plan.config.project_name}", box=box.ROUNDED)
    table.add_column("Action", style="bold")
    table.add_column("Kind")
    table.add_column("Name")
    table.add_column("Details")

    for action in plan.actions:
        style = _ACTION_STYLES[action.type]
        details = action.reason or ""
        if action.changes:
            changed = ", ".join(
                f"{field}: {change.observed!r} -> {change.desired!r}" for field, change in action.changes.items()
            )
            details = f"{details} ({changed})" if details else changed
        table.add_row(
            f"[{style}]{action.type.value}[/{style}]",
            action.key.kind.value,
            action.key.name,
            details,
        )
    console.print(table)

    summary = ", ".join(f"{k}={v}" for k, v in plan.summary().items() if v)
    console.print(f"[bold]Summary:[/bold] {summary}")


def _print_conflicts(plan: Plan) -> None:
    for action in plan.conflicts:
        hint = (
            f"resolve with --keep-existing {action.key} or --recreate {action.key}"
            if action.resolvable
            else "cannot be resolved; re-run when the provider is reachable"
        )
        console.print(f"[red]Conflict[/red] {action.key}: {action.reason} ({hint})")


def _resolutions(keep_existing: List[str], recreate: List[str]) -> Dict[str, Resolution]:
    resolutions: Dict[str, Resolution] = {}
    for value in keep_existing:
        resolutions[str(parse_resource_key(value))] = Resolution.KEEP_EXISTING
    for value in recreate:
        key = str(parse_resource_key(value))
        if key in resolutions:
            raise typer.BadParameter(f"{key} given to both --keep-existing and --recreate")
        resolutions[key] = Resolution.DELETE_AND_RECREATE
    return resolutions


class _TierPrinter:
    """Prints each outcome, with a header whenever the dependency tier changes."""

    def __init__(self, project_name: str):
        self.project_name = project_name
        self.tier: Optional[int] = None

    def __call__(self, result: ProvisionResult) -> None:
        purpose = role_purpose(self.project_name, result.name)
        tier = provision_tier(result.kind, purpose)
        if tier != self.tier:
            self.tier = tier
            console.print(f"[bold blue]-- {result.kind.value}[/bold blue]")
        style = _OUTCOME_STYLES[result.outcome]
        line = f"  [{style}]{result.outcome.value:>8}[/{style}]  {result.name}"
        if result.error:
            line += f"  [red]{result.error}[/red]"
        console.print(line)


def _print_deletion(result: DeletionResult) -> None:
    if result.deleted:
        console.print(f"  [green]deleted[/green]  {result.kind.value} {result.name}")
    else:
        console.print(f"  [red] failed[/red]  {result.kind.value} {result.name}  [red]{result.error}[/red]")


@app.command()
def plan(
    intent: Path = typer.Argument(..., help="YAML intent file"),
):
    """Inventory the account and show the planned actions."""
    try:
        _, desired = _load_desired(intent)
        ctx = _context(desired.project_name, desired.region)
        planner = ReconciliationPlanner(ResourceInventory(build_handlers(ctx)))
        result = planner.plan(desired)
    except AwsCdError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    _print_plan(result)
    if result.has_conflicts:
        _print_conflicts(result)
        raise typer.Exit(code=1)


@app.command()
def apply(
    intent: Path = typer.Argument(..., help="YAML intent file"),
    keep_existing: List[str] = typer.Option(
        [], "--keep-existing", help="Resolve a conflict by keeping the resource (Kind:name)"
    ),
    recreate: List[str] = typer.Option(
        [], "--recreate", help="Resolve a conflict by deleting and recreating (Kind:name)"
    ),
    confirm_cascade: bool = typer.Option(
        False, "--confirm-cascade", help="Also recreate existing dependents of recreated resources"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Provision the topology described by INTENT."""
    try:
        root, desired = _load_desired(intent)
        ctx = _context(desired.project_name, desired.region)
        handlers = build_handlers(ctx)
        planner = ReconciliationPlanner(ResourceInventory(handlers))
        current = planner.plan(desired)

        resolutions = _resolutions(keep_existing, recreate)
        if resolutions:
            current = planner.resolve(current, resolutions, confirm_cascade=confirm_cascade)
    except CascadeConfirmationRequired as exc:
        console.print(f"[red]{exc.message}[/red]")
        console.print("Re-run with --confirm-cascade to recreate the dependents as well.")
        raise typer.Exit(code=1)
    except AwsCdError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    _print_plan(current)
    if current.has_conflicts:
        _print_conflicts(current)
        raise typer.Exit(code=1)

    if not yes and not typer.confirm("Apply this plan?", default=False):
        console.print("[yellow]Aborted; nothing was changed.[/yellow]")
        raise typer.Exit(code=1)

    provisioner = Provisioner(handlers, ctx.config, on_result=_TierPrinter(desired.project_name))
    try:
        results = provisioner.apply(current)
    except TimeoutError as exc:
        console.print(f"[red]{exc}[/red]")
        console.print("Descriptor not written; re-run apply to resume.")
        raise typer.Exit(code=1)
    except AwsCdError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    applied = current.config
    try:
        written = ParameterStore(ctx).publish_layers(applied.runtime_env, applied.build_env, ENVIRONMENTS)
        if any(written.values()):
            console.print(
                "Parameters published: " + ", ".join(f"{env}={n}" for env, n in written.items())
            )
        path = ConfigPersistence(ctx.config).save(root, bound_names(applied))
    except AwsCdError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    console.print(f"[green]Descriptor saved to {path}[/green]")
    if not succeeded(results):
        failed = [r for r in results if r.failed]
        console.print(f"[red]{len(failed)} resource(s) failed or were skipped.[/red]")
        raise typer.Exit(code=1)
    console.print("[green]All resources provisioned.[/green]")


@app.command()
def teardown(
    project: Optional[str] = typer.Option(None, "--project", help="Project name (default: descriptor)"),
    region: Optional[str] = typer.Option(None, "--region", "-r", help="AWS region (default: descriptor)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Confirm the manifest without asking"),
    delete_bucket: bool = typer.Option(False, "--delete-bucket", help="Also empty and delete the artifact bucket"),
    delete_config: bool = typer.Option(False, "--delete-config", help="Also delete the local descriptor"),
):
    """Delete every resource carrying the project prefix, dependents first."""
    config = get_config()
    persistence = ConfigPersistence(config)
    found = _find_descriptor(persistence)
    names: Optional[BoundNames] = found[1] if found else None
    root = found[0] if found else Path.cwd()

    project_name = project or (names.project_name if names else None)
    if not project_name:
        console.print("[red]No descriptor found; pass --project.[/red]")
        raise typer.Exit(code=1)
    region = region or (names.region if names else config.aws_region)

    ctx = _context(project_name, region)
    handlers = build_handlers(ctx)
    try:
        manifest = TeardownPlanner(ResourceInventory(handlers)).scan(project_name, names)
    except AwsCdError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    for kind, error in manifest.scan_errors.items():
        console.print(f"[yellow]Could not scan {kind}: {error}[/yellow]")
    if manifest.is_empty:
        console.print(f"Nothing found for prefix '{project_name}-'.")
    else:
        table = Table(title=f"Teardown manifest for {project_name}", box=box.ROUNDED)
        table.add_column("#", justify="right")
        table.add_column("Kind", style="bold")
        table.add_column("Name")
        for index, resource in enumerate(manifest.resources, start=1):
            table.add_row(str(index), resource.kind.value, resource.name)
        console.print(table)

    executor = TeardownExecutor(manifest, handlers, config, persistence=persistence, on_result=_print_deletion)
    if not yes and not typer.confirm("Delete these resources?", default=False):
        executor.abort()
        console.print("[yellow]Teardown aborted.[/yellow]")
        raise typer.Exit(code=1)
    executor.confirm()

    if manifest.buckets:
        bucket_names = ", ".join(b.name for b in manifest.buckets)
        if delete_bucket or (not yes and typer.confirm(f"Also delete bucket {bucket_names} and its contents?", default=False)):
            executor.confirm_bucket_deletion()
    if found is not None:
        if delete_config or (not yes and typer.confirm("Also delete the local descriptor?", default=False)):
            executor.confirm_descriptor_deletion(root)

    try:
        results = executor.execute()
    except TimeoutError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    except AwsCdError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    failed = [r for r in results if not r.deleted]
    if failed:
        console.print(f"[red]{len(failed)} resource(s) could not be deleted.[/red]")
        raise typer.Exit(code=1)
    console.print("[green]Teardown complete.[/green]")


@app.command()
def env(
    environment: str = typer.Argument(..., help="production, staging or development"),
    project: Optional[str] = typer.Option(None, "--project", help="Project name (default: descriptor)"),
    region: Optional[str] = typer.Option(None, "--region", "-r", help="AWS region (default: descriptor)"),
):
    """List the parameters stored for ENVIRONMENT."""
    config = get_config()
    found = _find_descriptor(ConfigPersistence(config))
    names = found[1] if found else None
    project_name = project or (names.project_name if names else None)
    if not project_name:
        console.print("[red]No descriptor found; pass --project.[/red]")
        raise typer.Exit(code=1)
    region = region or (names.region if names else config.aws_region)

    try:
        stored = ParameterStore(_context(project_name, region)).read(environment)
    except AwsCdError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    table = Table(title=f"{project_name} / {environment}", box=box.ROUNDED)
    table.add_column("Scope", style="bold")
    table.add_column("Key")
    table.add_column("Value")
    for scope in ("runtime", "build"):
        for key, value in stored[scope].items():
            table.add_row(scope, key, value)
    console.print(table)


@app.command()
def status():
    """Show the descriptor found from the current directory."""
    found = _find_descriptor(ConfigPersistence(get_config()))
    if found is None:
        console.print("[yellow]No descriptor found in this directory or its parents.[/yellow]")
        raise typer.Exit(code=1)

    root, names = found
    lines = [f"[bold]{field}[/bold]: {value}" for field, value in names.model_dump(mode="json").items()]
    console.print(Panel("\n".join(lines), title=f"Descriptor ({root})", border_style="blue"))


if __name__ == "__main__":
    app()
