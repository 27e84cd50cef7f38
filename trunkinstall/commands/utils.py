"""Shared utility functions for commands."""

import os
import sys
from pathlib import Path

import click

from trunkinstall.errors import format_error, format_suggestion
from trunkinstall.paths import REQUIRED_PROJECT_FILES, ProjectLayout

# Exit codes
EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_INVALID_INVOCATION = 2


def check_project_dir(project_dir: Path, require_files: bool = True) -> list[str]:
    """Return problems that make project_dir unusable, empty if none.

    Args:
        project_dir: Candidate Trunk Player checkout
        require_files: Also require manage.py and requirements.txt
    """
    if not project_dir.is_dir():
        return [f"{project_dir} is not a directory"]

    problems = []
    if require_files:
        missing = ProjectLayout(project_dir).missing_files()
        if missing:
            problems.append(f"{', '.join(missing)} not found in {project_dir}")
    if not os.access(project_dir, os.W_OK):
        problems.append(f"{project_dir} is not writable")
    return problems


def resolve_project_dir(project_dir: str | None, require_files: bool = True) -> Path:
    """Validate the project directory or exit with an invalid-invocation code."""
    root = Path(project_dir or ".").expanduser().resolve()
    problems = check_project_dir(root, require_files)
    if problems:
        for problem in problems[:-1]:
            click.echo(format_error(problem), err=True)
        click.echo(
            format_suggestion(
                problems[-1],
                f"run from a Trunk Player checkout (needs {', '.join(REQUIRED_PROJECT_FILES)}) "
                "or pass --project-dir",
            ),
            err=True,
        )
        sys.exit(EXIT_INVALID_INVOCATION)
    return root
