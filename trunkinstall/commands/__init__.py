"""CLI command definitions for trunkinstall."""

import click

from trunkinstall import __version__, set_debug
from trunkinstall.commands.install import install
from trunkinstall.commands.status import status
from trunkinstall.commands.uninstall import uninstall
from trunkinstall.commands.utils import resolve_project_dir


@click.group()
@click.version_option(__version__, prog_name="trunkinstall")
@click.option("--debug", is_flag=True, help="Enable debug output for troubleshooting")
@click.pass_context
def cli(ctx, debug):
    """Install, repair and remove Trunk Player."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    set_debug(debug)


cli.add_command(install)
cli.add_command(uninstall)
cli.add_command(status)

__all__ = [
    "cli",
    "resolve_project_dir",
]


if __name__ == "__main__":
    cli()
