"""Progress and summary output for plan execution."""

import json
from typing import Any, Sequence

import click

from .installer.models import Criticality, ExecutionRecord, Goal, Outcome, Plan, Step

OUTCOME_ICONS = {
    Outcome.SUCCEEDED: "✅",
    Outcome.SKIPPED: "⏭️ ",
    Outcome.FAILED: "❌",
    Outcome.NOT_RUN: "⏸️ ",
}

GOAL_ACHIEVED = "achieved"
GOAL_FAILED = "not achieved"
GOAL_NOT_PLANNED = "not planned"


def goal_status(plan: Plan, records: Sequence[ExecutionRecord]) -> dict[Goal, str]:
    """Whether each provisioning goal was reached.

    A failed Step whose rollback succeeded does not count against its goal;
    the plan's fallback Step carries the goal instead.
    """
    planned = {s.goal for s in plan.steps if s.goal is not None}
    status = {}
    for goal in Goal:
        if goal not in planned:
            status[goal] = GOAL_NOT_PLANNED
            continue
        blocking = [
            r
            for r in records
            if r.goal is goal
            and (r.outcome is Outcome.NOT_RUN or (r.outcome is Outcome.FAILED and not r.rolled_back))
        ]
        status[goal] = GOAL_FAILED if blocking else GOAL_ACHIEVED
    return status


def fatal_failures(records: Sequence[ExecutionRecord]) -> list[ExecutionRecord]:
    return [
        r for r in records if r.outcome is Outcome.FAILED and r.criticality is Criticality.FATAL
    ]


def collect_warnings(plan: Plan, records: Sequence[ExecutionRecord]) -> list[str]:
    warnings = list(plan.warnings)
    for record in records:
        if record.outcome is Outcome.FAILED and record.criticality is Criticality.WARN:
            warnings.append(f"{record.step_id}: {record.error or 'failed'}")
        warnings += [f"{record.step_id}: {w}" for w in record.warnings]
    return warnings


def build_summary(plan: Plan, records: Sequence[ExecutionRecord]) -> dict[str, Any]:
    fatal = fatal_failures(records)
    interrupted = any(
        r.outcome is Outcome.NOT_RUN and r.error == "interrupted" for r in records
    )
    return {
        "plan": plan.title,
        "ok": not fatal and not interrupted,
        "fatal": [{"step": r.step_id, "error": r.error} for r in fatal],
        "warnings": collect_warnings(plan, records),
        "steps": [r.to_dict() for r in records],
        "goals": {g.value: s for g, s in goal_status(plan, records).items()},
        "kept": [e.key for e in plan.kept],
    }


def plan_summary(plan: Plan) -> dict[str, Any]:
    return {
        "plan": plan.title,
        "warnings": list(plan.warnings),
        "steps": [
            {
                "id": s.id,
                "description": s.description,
                "action": s.action.describe(),
                "destructive": s.action.destructive,
                "criticality": s.criticality.value,
                "goal": s.goal.value if s.goal else None,
            }
            for s in plan.steps
        ],
        "kept": [e.key for e in plan.kept],
    }


def exit_code(plan: Plan, records: Sequence[ExecutionRecord]) -> int:
    return 0 if build_summary(plan, records)["ok"] else 1


class Reporter:
    """Live per-Step progress and the final summary.

    With ``json_output`` nothing is printed while Steps run; ``summarize``
    prints a single JSON document instead.
    """

    def __init__(self, json_output: bool = False, verbose: bool = False):
        self.json_output = json_output
        self.verbose = verbose
        self._index = 0
        self._total = 0

    def plan_started(self, plan: Plan) -> None:
        self._index = 0
        self._total = len(plan.steps)
        if self.json_output:
            return
        click.echo(f"Running {plan.title} plan ({self._total} steps)")
        for warning in plan.warnings:
            click.secho(f"⚠️  {warning}", fg="yellow")
        click.echo("")

    def step_started(self, step: Step) -> None:
        self._index += 1
        if self.json_output:
            return
        click.echo(f"[{self._index}/{self._total}] {step.description}...", nl=False)

    def step_finished(self, record: ExecutionRecord) -> None:
        if self.json_output:
            return
        icon = OUTCOME_ICONS[record.outcome]
        if record.outcome is Outcome.NOT_RUN:
            self._index += 1
            click.secho(f"[{self._index}/{self._total}] {icon} {record.description}: not run", dim=True)
            return

        color = {
            Outcome.SUCCEEDED: "green",
            Outcome.SKIPPED: None,
            Outcome.FAILED: "red" if record.criticality is Criticality.FATAL else "yellow",
        }[record.outcome]
        suffix = record.outcome.value
        if record.retries:
            suffix += f" after {record.attempts} attempts"
        click.secho(f" {icon} {suffix}", fg=color)

        if record.outcome is Outcome.FAILED and record.error:
            click.secho(f"    {record.error}", fg=color)
            if record.output and (self.verbose or record.criticality is Criticality.FATAL):
                for line in record.output.splitlines()[-15:]:
                    click.echo(f"    | {line}")
        for warning in record.warnings:
            click.secho(f"    ⚠️  {warning}", fg="yellow")

    def summarize(self, plan: Plan, records: Sequence[ExecutionRecord]) -> int:
        summary = build_summary(plan, records)
        if self.json_output:
            click.echo(json.dumps(summary, indent=2))
            return 0 if summary["ok"] else 1

        click.echo("")
        click.echo("=" * 60)
        click.echo(f"Summary: {plan.title}")
        click.echo("=" * 60)

        fatal = fatal_failures(records)
        if fatal:
            click.echo("")
            click.secho("❌ Fatal failures:", fg="red", bold=True)
            for record in fatal:
                click.secho(f"   • {record.step_id}: {record.error}", fg="red")

        if summary["warnings"]:
            click.echo("")
            click.secho("⚠️  Warnings:", fg="yellow", bold=True)
            for warning in summary["warnings"]:
                click.secho(f"   • {warning}", fg="yellow")

        click.echo("")
        click.echo("Steps:")
        width = max((len(r.step_id) for r in records), default=0)
        for record in records:
            attempts = f" ({record.attempts} attempts)" if record.retries else ""
            click.echo(
                f"   {OUTCOME_ICONS[record.outcome]} {record.step_id.ljust(width)}  "
                f"{record.outcome.value}{attempts}"
            )

        if plan.title == "install":
            click.echo("")
            click.echo("Goals:")
            for goal, status in goal_status(plan, records).items():
                if status == GOAL_ACHIEVED:
                    click.secho(f"   ✅ {goal.value}", fg="green")
                elif status == GOAL_FAILED:
                    click.secho(f"   ❌ {goal.value}: not achieved", fg="red")
                else:
                    click.secho(f"   ➖ {goal.value}: not planned", dim=True)

        if plan.kept:
            click.echo("")
            click.echo("Kept (not confirmed for removal):")
            for entry in plan.kept:
                click.echo(f"   • {entry.key}")

        click.echo("")
        if summary["ok"]:
            click.secho(f"✅ {plan.title.capitalize()} finished", fg="green", bold=True)
        else:
            click.secho(f"❌ {plan.title.capitalize()} did not complete", fg="red", bold=True)
        return 0 if summary["ok"] else 1


__all__ = [
    "OUTCOME_ICONS",
    "GOAL_ACHIEVED",
    "GOAL_FAILED",
    "GOAL_NOT_PLANNED",
    "goal_status",
    "fatal_failures",
    "collect_warnings",
    "build_summary",
    "plan_summary",
    "exit_code",
    "Reporter",
]
