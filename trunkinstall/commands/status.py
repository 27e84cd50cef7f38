"""Status command implementation."""

import json
import sys

import click

from trunkinstall import format_error, setup_logging
from trunkinstall.paths import get_state_path
from trunkinstall.state import StateStore, StateStoreError

from .utils import EXIT_FAILED, resolve_project_dir


@click.command()
@click.option(
    "--project-dir",
    "-C",
    type=click.Path(file_okay=False),
    default=None,
    help="Trunk Player checkout (default: current directory)",
)
@click.option("--all", "show_all", is_flag=True, help="Include torn-down resources (full history)")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def status(ctx, project_dir: str | None, show_all: bool, json_output: bool):
    """List resources this tool created in a checkout."""
    setup_logging(ctx.obj.get("debug", False) if ctx.obj else False)
    root = resolve_project_dir(project_dir, require_files=False)
    state = StateStore(get_state_path(root))

    try:
        entries = state.list()
        history = state.history() if show_all else []
    except StateStoreError as e:
        click.echo(format_error(e.message), err=True)
        sys.exit(EXIT_FAILED)

    if json_output:
        payload = {"resources": [e.to_dict() for e in entries]}
        if show_all:
            payload["history"] = history
        click.echo(json.dumps(payload, indent=2))
        return

    if not entries:
        click.echo("No resources recorded.")
    else:
        click.echo(f"Resources recorded in {state.path}:")
        for entry in entries:
            click.echo(f"  ✅ {entry.key}  (created {entry.created_at}, {entry.kind.tier.value})")

    if show_all and history:
        click.echo("")
        click.echo("History:")
        for event in history:
            if event["op"] == "record":
                key = f"{event['entry']['kind']}:{event['entry']['identifier']}"
                click.echo(f"  {event['at']}  + {key}")
            else:
                click.echo(f"  {event['at']}  - {event['key']}")
