"""
stackwire — CLI entrypoint.

Usage:
    stackwire --help
    stackwire plan
    stackwire deploy --state-dir .state
    stackwire exports api--prod
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from stackwire import __version__
from stackwire.core.errors import StackwireError
from stackwire.core.observability.logging_config import resolve_level, setup_logging


@click.group()
@click.version_option(version=__version__, prog_name="stackwire")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to stackwire.yml (default: auto-detect).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """stackwire — provision stacks and wire their workloads."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    # ── Logging setup (once, at process start) ──────────────────
    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    elif quiet:
        level = "ERROR"
    else:
        level = None

    setup_logging(level=resolve_level(level), quiet_third_party=not debug)


def _load(ctx: click.Context):
    """Load the deployment config or exit with the error."""
    from stackwire.core.config.loader import find_config_file, load_deployment

    path = ctx.obj.get("config_path") or find_config_file()
    try:
        config = load_deployment(path)
    except StackwireError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(1)
    return config, path


def _state_dir(path: Path | None, state_dir: str | None) -> Path:
    from stackwire.core.persistence.export_state import DEFAULT_STATE_DIR

    if state_dir:
        return Path(state_dir)
    root = path.parent.resolve() if path else Path.cwd()
    return root / DEFAULT_STATE_DIR


# ── plan ────────────────────────────────────────────────────────────


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def plan(ctx: click.Context, as_json: bool) -> None:
    """Show stacks in deploy order and what each one provisions."""
    from stackwire.core.engine.executor import validate_stack
    from stackwire.core.engine.planner import StackCatalog
    from stackwire.resources import build_default_registry

    config, _ = _load(ctx)
    registry = build_default_registry()
    try:
        catalog = StackCatalog(config.stacks)
        steps = catalog.describe()
    except StackwireError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(1)

    problems: dict[str, str] = {}
    for stack in catalog.plan_order():
        try:
            validate_stack(stack, catalog, registry)
        except StackwireError as e:
            problems[stack.reference] = str(e)
    for step in steps:
        step["error"] = problems.get(step["reference"])

    if as_json:
        click.echo(json.dumps({"project": config.project, "stacks": steps}, indent=2))
        sys.exit(1 if problems else 0)

    click.secho(f"\n📋 {config.project} ({config.region})", fg="cyan", bold=True)
    for i, step in enumerate(steps, 1):
        click.echo()
        click.secho(f"   {i}. {step['reference']}", fg="white", bold=True)
        if step["after"]:
            click.echo(f"      after: {', '.join(step['after'])}")
        for res in step["resources"]:
            click.echo(f"      • {res['mode']:6} {res['type']} {res['name']} → {res['derived_name']}")
        for use in step["consumes"]:
            click.echo(f"      ← {use['relation']} {use['resource']} from {use['from']}")
        if step["workload"]:
            click.echo(f"      ▶ workload {step['workload']}")
        if step["error"]:
            click.secho(f"      ✗ {step['error']}", fg="red")
    click.echo()

    if problems:
        sys.exit(1)


# ── deploy ──────────────────────────────────────────────────────────


@cli.command()
@click.option("--state-dir", default=None, help="Where exports and the audit log live (default: .state).")
@click.option("--timeout", type=float, default=None, help="Seconds to wait for any single output.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def deploy(ctx: click.Context, state_dir: str | None, timeout: float | None, as_json: bool) -> None:
    """Deploy every stack against the in-memory engine."""
    from stackwire.adapters.memory import InMemoryEngine
    from stackwire.core.engine.executor import deploy_config, write_audit_entries
    from stackwire.core.exports import ExportStore
    from stackwire.core.persistence.audit import DEFAULT_AUDIT_FILE, AuditWriter
    from stackwire.core.persistence.export_state import DEFAULT_EXPORTS_DIR, FileStateBackend
    from stackwire.resources import build_default_registry

    config, path = _load(ctx)
    root = _state_dir(path, state_dir)
    backend = FileStateBackend(root / DEFAULT_EXPORTS_DIR)
    engine = InMemoryEngine(state=backend)
    for live in config.live:
        engine.seed_live(live.kind, live.id, live.properties)

    try:
        report = deploy_config(
            config, engine, build_default_registry(), exports=ExportStore(backend), timeout=timeout,
        )
    except StackwireError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(1)

    write_audit_entries(report, AuditWriter(path=root / DEFAULT_AUDIT_FILE))

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
        sys.exit(0 if report.all_ok else 1)

    quiet = ctx.obj.get("quiet", False)
    for stack in report.stacks:
        marker = {"ok": "✓", "failed": "✗"}.get(stack.status, "⊘")
        color = {"ok": "green", "failed": "red"}.get(stack.status, "yellow")
        click.secho(f"   {marker} {stack.reference}", fg=color, nl=False)
        click.echo(f"  [{stack.status}]")
        if stack.error:
            click.echo(f"      {stack.error}")
        elif not quiet:
            for name in stack.created:
                click.echo(f"      + {name}")
            for name in stack.adopted:
                click.echo(f"      ~ {name} (adopted)")

    status_color = {"ok": "green", "partial": "yellow"}.get(report.status, "red")
    click.echo()
    click.secho(
        f"   {report.status} — {report.succeeded}/{report.total} stacks ({report.operation_id})",
        fg=status_color,
        bold=True,
    )
    if not report.all_ok:
        sys.exit(1)


# ── exports ─────────────────────────────────────────────────────────


@cli.command()
@click.argument("stack")
@click.option("--state-dir", default=None, help="Where exports live (default: .state).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def exports(ctx: click.Context, stack: str, state_dir: str | None, as_json: bool) -> None:
    """Show the committed exports of STACK (secrets masked).

    STACK is an export reference (``api--prod``) or a bare stack name when
    only one environment of it has been committed.
    """
    from stackwire.core.naming import STACK_ENV_SEPARATOR, collapse_stack_reference
    from stackwire.core.persistence.export_state import DEFAULT_EXPORTS_DIR, FileStateBackend

    path = ctx.obj.get("config_path")
    if path is None:
        from stackwire.core.config.loader import find_config_file

        path = find_config_file()
    backend = FileStateBackend(_state_dir(path, state_dir) / DEFAULT_EXPORTS_DIR)

    ref = collapse_stack_reference(stack)
    if not backend.has_stack(ref):
        candidates = [s for s in backend.list_stacks() if s.split(STACK_ENV_SEPARATOR)[0] == ref]
        if len(candidates) == 1:
            ref = candidates[0]

    try:
        outputs = backend.read_masked(ref)
    except StackwireError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(1)
    if outputs is None:
        click.secho(f"❌ stack {stack!r} has no committed exports", fg="red", err=True)
        sys.exit(1)

    shown = {key: ("********" if out.secret else out.value) for key, out in sorted(outputs.items())}
    if as_json:
        click.echo(json.dumps({"stack": ref, "exports": shown}, indent=2))
        return

    click.secho(f"\n📦 {ref}", fg="cyan", bold=True)
    for key, value in shown.items():
        click.echo(f"   {key} = {value}")
    click.echo()


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
