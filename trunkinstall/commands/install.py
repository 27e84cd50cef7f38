"""Install command implementation."""

import asyncio
import json
import logging
import sys
from pathlib import Path

import click

from trunkinstall import ConfigError, format_error, format_suggestion, load_configuration, setup_logging
from trunkinstall.config import DatabaseEngine, ExistingDatabaseChoice
from trunkinstall.errors import (
    ConfirmationDenied,
    ConfirmationRequired,
    PlanInvariantViolation,
    PrerequisiteError,
)
from trunkinstall.installer import (
    ALL_CAPABILITIES,
    ExecutionContext,
    build_plan,
    execute_plan,
    probe,
    project_layout,
    render_plan,
)
from trunkinstall.paths import get_state_path
from trunkinstall.platforms import detect_platform
from trunkinstall.report import Reporter, plan_summary
from trunkinstall.state import StateStore, StateStoreError
from trunkinstall.tui import make_provider

from .utils import EXIT_FAILED, EXIT_INVALID_INVOCATION, EXIT_SUCCESS, resolve_project_dir

_logging = logging.getLogger(__name__)


@click.command()
@click.option(
    "--project-dir",
    "-C",
    type=click.Path(file_okay=False),
    default=None,
    help="Trunk Player checkout (default: current directory)",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    default=None,
    help="Configuration file (JSON or YAML)",
)
@click.option("--audio-dir", type=click.Path(file_okay=False), default=None, help="Where audio files are stored")
@click.option(
    "--database",
    type=click.Choice([e.value for e in DatabaseEngine]),
    default=None,
    help="Database engine (default: auto, PostgreSQL if available)",
)
@click.option(
    "--existing-db",
    type=click.Choice([c.value for c in ExistingDatabaseChoice]),
    default=None,
    help="What to do with a PostgreSQL database/user not created by this tool",
)
@click.option(
    "--install-postgresql",
    is_flag=True,
    help="Install PostgreSQL when it is missing",
)
@click.option("--skip-services", is_flag=True, help="Do not configure nginx or supervisor")
@click.option("--non-interactive", is_flag=True, help="Fail instead of prompting")
@click.option("--no-dev-server", is_flag=True, help="Do not start the development server")
@click.option("--host", default=None, help="Development server bind address")
@click.option("--port", type=int, default=None, help="Development server port")
@click.option("--dry-run", is_flag=True, help="Show the plan without executing it")
@click.option("--json", "json_output", is_flag=True, help="Output the summary as JSON")
@click.pass_context
def install(
    ctx,
    project_dir: str | None,
    config_path: Path | None,
    audio_dir: str | None,
    database: str | None,
    existing_db: str | None,
    install_postgresql: bool,
    skip_services: bool,
    non_interactive: bool,
    no_dev_server: bool,
    host: str | None,
    port: int | None,
    dry_run: bool,
    json_output: bool,
):
    """Install or repair Trunk Player in a checkout.

    Safe to re-run: work that is already done is skipped.
    """
    debug = ctx.obj.get("debug", False) if ctx.obj else False
    setup_logging(debug)

    root = resolve_project_dir(project_dir)
    overrides = {
        "audio_dir": audio_dir,
        "database": database,
        "existing_database": existing_db,
        "install_postgresql": install_postgresql or None,
        "skip_services": skip_services or None,
        "non_interactive": non_interactive or None,
        "start_dev_server": False if no_dev_server else None,
        "server_host": host,
        "server_port": port,
    }
    try:
        config = load_configuration(root, config_path, overrides)
    except (ConfigError, ValueError) as e:
        click.echo(format_error(str(e)), err=True)
        sys.exit(EXIT_INVALID_INVOCATION)

    confirm = make_provider(config.non_interactive)
    layout = project_layout(config)

    try:
        if config.audio_dir is None and confirm.interactive and not layout.settings.exists():
            config.audio_dir = confirm.ask_path(
                "audio_dir", "Where should audio files be stored?", config.resolved_audio_dir
            )
        adapter = detect_platform()
        state = StateStore(get_state_path(root))
        _logging.debug(f"Platform: {adapter.name}, state file: {state.path}")
        probed = probe(ALL_CAPABILITIES, config, layout, adapter)
        plan = build_plan(config, probed, state, confirm, adapter, layout)
    except ConfirmationRequired as e:
        if e.hint:
            click.echo(format_suggestion(e.message, e.hint), err=True)
        else:
            click.echo(format_error(e.message), err=True)
        sys.exit(EXIT_INVALID_INVOCATION)
    except ConfirmationDenied as e:
        click.echo(format_error(e.message), err=True)
        sys.exit(EXIT_FAILED)
    except PlanInvariantViolation as e:
        click.echo(format_error(f"internal error: {e.message}"), err=True)
        sys.exit(EXIT_FAILED)
    except (PrerequisiteError, StateStoreError) as e:
        click.echo(format_error(e.message), err=True)
        sys.exit(EXIT_FAILED)

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

    if code == EXIT_SUCCESS and not json_output and config.start_dev_server:
        click.echo("")
        click.echo(f"Trunk Player: http://localhost:{config.server_port}/")
        click.echo(f"Server log:   {layout.dev_server_log}")
    sys.exit(code)
