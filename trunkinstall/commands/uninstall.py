"""Uninstall command implementation."""

import asyncio
import json
import logging
import sys

import click

from trunkinstall import ConfigError, format_error, load_configuration, setup_logging
from trunkinstall.errors import ConfirmationDenied, PrerequisiteError
from trunkinstall.installer import (
    TEARDOWN_ORDER,
    ExecutionContext,
    build_teardown,
    execute_plan,
    project_layout,
    render_plan,
)
from trunkinstall.paths import get_state_path
from trunkinstall.platforms import detect_platform
from trunkinstall.report import Reporter, plan_summary
from trunkinstall.state import ResourceKind, StateEntry, StateStore, StateStoreError, Tier
from trunkinstall.tui import ConfirmationProvider, make_provider

from .utils import EXIT_FAILED, EXIT_INVALID_INVOCATION, EXIT_SUCCESS, resolve_project_dir

_logging = logging.getLogger(__name__)

_LABELS = {
    ResourceKind.DEV_SERVER: "the running development server",
    ResourceKind.SUPERVISOR_JOB: "the supervisor job",
    ResourceKind.NGINX_SITE: "the nginx site",
    ResourceKind.DATABASE: "the PostgreSQL database (ALL DATA)",
    ResourceKind.DB_USER: "the PostgreSQL user",
    ResourceKind.SQLITE_DB: "the SQLite database file (ALL DATA)",
    ResourceKind.VENV: "the virtual environment",
    ResourceKind.LOG_DIR: "the service log directory",
    ResourceKind.SYSTEM_PACKAGE: "system packages",
}


def gather_confirmations(
    entries: list[StateEntry],
    confirm: ConfirmationProvider,
    yes: bool = False,
    remove_system_packages: bool = False,
) -> dict[ResourceKind, bool]:
    """Ask once per recorded resource kind.

    Project resources are confirmed by ``yes`` or a prompt. System packages
    need ``remove_system_packages`` in non-interactive runs and a typed
    confirmation in interactive ones.
    """
    present = [kind for kind in TEARDOWN_ORDER if any(e.kind is kind for e in entries)]
    confirmations = {}
    for kind in present:
        ids = ", ".join(e.identifier for e in entries if e.kind is kind)
        message = f"Remove {_LABELS[kind]} ({ids})?"
        if kind.tier is Tier.SYSTEM:
            if confirm.interactive:
                confirmations[kind] = confirm.confirm_typed(
                    "remove_system_packages",
                    f"{message} Other applications on this host may depend on them.",
                )
            else:
                confirmations[kind] = remove_system_packages
        else:
            confirmations[kind] = yes or confirm.confirm(f"remove_{kind.value}", message, default=False)
    return confirmations


@click.command()
@click.option(
    "--project-dir",
    "-C",
    type=click.Path(file_okay=False),
    default=None,
    help="Trunk Player checkout (default: current directory)",
)
@click.option("--yes", "-y", is_flag=True, help="Confirm removal of all recorded project resources")
@click.option(
    "--remove-system-packages",
    is_flag=True,
    help="Also uninstall system packages this tool installed (non-interactive runs)",
)
@click.option("--non-interactive", is_flag=True, help="Fail instead of prompting")
@click.option("--dry-run", is_flag=True, help="Show the teardown plan without executing it")
@click.option("--json", "json_output", is_flag=True, help="Output the summary as JSON")
@click.pass_context
def uninstall(
    ctx,
    project_dir: str | None,
    yes: bool,
    remove_system_packages: bool,
    non_interactive: bool,
    dry_run: bool,
    json_output: bool,
):
    """Remove what install created, and nothing else."""
    debug = ctx.obj.get("debug", False) if ctx.obj else False
    setup_logging(debug)

    root = resolve_project_dir(project_dir, require_files=False)
    try:
        config = load_configuration(root, overrides={"non_interactive": non_interactive or None})
    except (ConfigError, ValueError) as e:
        click.echo(format_error(str(e)), err=True)
        sys.exit(EXIT_INVALID_INVOCATION)

    state = StateStore(get_state_path(root))
    try:
        entries = state.list()
    except StateStoreError as e:
        click.echo(format_error(e.message), err=True)
        sys.exit(EXIT_FAILED)

    if not entries:
        click.echo("Nothing to uninstall: no resources recorded for this checkout.")
        sys.exit(EXIT_SUCCESS)

    confirm = make_provider(config.non_interactive)
    try:
        adapter = detect_platform()
        confirmations = gather_confirmations(entries, confirm, yes, remove_system_packages)
    except ConfirmationDenied as e:
        click.echo(format_error(e.message), err=True)
        sys.exit(EXIT_FAILED)
    except PrerequisiteError as e:
        click.echo(format_error(e.message), err=True)
        sys.exit(EXIT_FAILED)

    layout = project_layout(config)
    plan = build_teardown(entries, confirmations, config, adapter, layout)

    if dry_run:
        if json_output:
            click.echo(json.dumps(plan_summary(plan), indent=2))
        else:
            click.echo(render_plan(plan))
        sys.exit(EXIT_SUCCESS)

    reporter = Reporter(json_output=json_output, verbose=debug)
    reporter.plan_started(plan)
    execution = ExecutionContext(config=config, layout=layout, adapter=adapter, state=state)
    records = asyncio.run(execute_plan(plan, execution, reporter))
    code = reporter.summarize(plan, records)

    if not json_output:
        click.echo("Audio files, static files, logs and settings_local.py were left in place.")
    sys.exit(code)
