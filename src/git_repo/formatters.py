"""Output formatters for console and JSON display."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.table import Table

if TYPE_CHECKING:
    from datetime import datetime

    from .core import BatchReport, RepositoryStatus, TargetOutcome
    from .registry import RepositoryRegistry

# Keyed by ``SyncStatus`` value; ahead/behind/diverged cells carry counts
SYNC_LABELS = {
    "clean": "[green]✓[/]",
    "no_upstream": "[dim]no upstream[/]",
    "detached": "[dim]detached[/]",
    "no_remote": "[dim]no remote[/]",
}

# Summary field and the colour it is printed in, in display order
SUMMARY_COLOURS = (
    ("clean", "green"),
    ("ahead", "yellow"),
    ("behind", "blue"),
    ("diverged", "red"),
    ("dirty", "yellow"),
    ("errors", "red"),
)


@dataclass
class StatusSummary:
    """Repository counts per sync state, plus dirty work trees and failures."""

    total: int = 0
    clean: int = 0
    ahead: int = 0
    behind: int = 0
    diverged: int = 0
    dirty: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_report(cls, report: BatchReport) -> StatusSummary:
        from .core import WorkingTreeStatus

        summary = cls(total=len(report.outcomes))
        for outcome in report.outcomes:
            status = outcome.status
            if outcome.failed or status is None:
                summary.errors += 1
                continue
            field = status.sync_status.value
            if field in ("clean", "ahead", "behind", "diverged"):
                setattr(summary, field, getattr(summary, field) + 1)
            if status.working_tree_status == WorkingTreeStatus.DIRTY:
                summary.dirty += 1
        return summary


class OutputFormatter:
    """Format output for console or JSON."""

    def __init__(self, console: Console, use_json: bool = False):
        self.console = console
        self.use_json = use_json

    def _print_json(self, output: dict):
        self.console.print(
            json.dumps(output, indent=2, default=str),
            soft_wrap=True,
            markup=False,
            highlight=False,
        )

    # -------------------------------------------------------------------------
    # status
    # -------------------------------------------------------------------------

    def print_status_report(self, report: BatchReport, strip: bool = False):
        """Print status list."""
        summary = StatusSummary.from_report(report)
        if self.use_json:
            output = report.to_dict()
            output["summary"] = summary.to_dict()
            self._print_json(output)
        elif strip:
            for outcome in report.outcomes:
                print(self._status_line(outcome))
        else:
            self._print_status_table(report, summary)

    @staticmethod
    def _status_line(outcome: TargetOutcome) -> str:
        """One plain line: name, branch, sync status, ahead/behind, working tree."""
        status = outcome.status
        if outcome.failed or status is None:
            return f"{outcome.name} error {outcome.kind}"
        return (
            f"{outcome.name} {status.branch or '-'} {status.sync_status.value} "
            f"+{status.ahead_count} -{status.behind_count} "
            f"{status.working_tree_status.value}"
        )

    def _print_status_table(self, report: BatchReport, summary: StatusSummary):
        """Print rich table output."""
        if not report.outcomes:
            self.console.print("[dim]No repositories registered[/]")
            return

        table = Table(title="Repository Status")

        table.add_column("Repository", style="cyan", no_wrap=True)
        table.add_column("Branch")
        table.add_column("Sync", justify="center")
        table.add_column("Working Tree", justify="center")
        table.add_column("Last Commit", justify="right")

        for outcome in report.outcomes:
            status = outcome.status
            if outcome.failed or status is None:
                table.add_row(
                    escape(outcome.name),
                    "",
                    f"[red]✗ {escape(outcome.kind)}[/]",
                    "",
                    "",
                )
                continue

            table.add_row(
                escape(outcome.name),
                f"[green]{escape(status.branch or '-')}[/]",
                self._sync_cell(status),
                self._tree_cell(status),
                self._commit_cell(status.last_commit_date),
            )

        self.console.print(table)
        self.console.print()
        self._print_summary(summary)

        for outcome in report.failures:
            self.console.print(f"[red]✗ {escape(outcome.name)}:[/] {escape(outcome.error)}")

    @staticmethod
    def _sync_cell(status: RepositoryStatus) -> str:
        ahead, behind = status.ahead_count, status.behind_count
        counted = {
            "ahead": f"[yellow]↑{ahead}[/]",
            "behind": f"[blue]↓{behind}[/]",
            "diverged": f"[red]↑{ahead} ↓{behind}[/]",
        }
        value = status.sync_status.value
        return counted.get(value) or SYNC_LABELS.get(value, "[dim]?[/]")

    @staticmethod
    def _tree_cell(status: RepositoryStatus) -> str:
        counts = (
            ("green", "+", status.staged_count),
            ("yellow", "~", status.unstaged_count),
            ("red", "?", status.untracked_count),
        )
        cells = [f"[{colour}]{sign}{n}[/]" for colour, sign, n in counts if n]
        return " ".join(cells) or "[green]clean[/]"

    @staticmethod
    def _commit_cell(when: datetime | None) -> str:
        if when is None:
            return "[dim]-[/]"
        return when.strftime("%Y-%m-%d %H:%M")

    def _print_summary(self, summary: StatusSummary):
        parts = [f"[bold]Total:[/] {summary.total}"]
        for field, colour in SUMMARY_COLOURS:
            count = getattr(summary, field)
            if count:
                parts.append(f"[{colour}]{field}:[/] {count}")
        self.console.print(" | ".join(parts))

    # -------------------------------------------------------------------------
    # pull / sync
    # -------------------------------------------------------------------------

    def print_operation_report(self, report: BatchReport):
        """Print operation results."""
        if self.use_json:
            self._print_json(report.to_dict())
        else:
            self._print_operation_table(report)

    def _print_operation_table(self, report: BatchReport):
        """Print operation results as table."""
        if not report.outcomes:
            self.console.print(f"[dim]No repositories to {report.operation}[/]")
            return

        table = Table(title=f"{report.operation.title()} Results")
        table.add_column("Repository", style="cyan")
        table.add_column("Status", justify="center")
        table.add_column("Message")

        success_count = 0
        for outcome in report.outcomes:
            if outcome.success:
                success_count += 1
                status = "[green]✓[/]"
                message = escape(outcome.message) if outcome.message else "OK"
            else:
                status = f"[red]✗ {escape(outcome.kind)}[/]"
                message = f"[red]{escape(outcome.error)}[/]" if outcome.error else "Failed"

            table.add_row(escape(outcome.name), status, message)

        self.console.print(table)
        self.console.print(f"\n[bold]Success:[/] {success_count}/{len(report.outcomes)}")

    # -------------------------------------------------------------------------
    # foreach
    # -------------------------------------------------------------------------

    def print_command_report(self, report: BatchReport):
        """Print captured output of a command run in every repository."""
        if self.use_json:
            self._print_json(report.to_dict())
            return

        if not report.outcomes:
            self.console.print("[dim]No repositories registered[/]")
            return

        for outcome in report.outcomes:
            icon = "[green]✓[/]" if outcome.success else "[red]✗[/]"
            self.console.print(Rule(f"{icon} [cyan]{escape(outcome.name)}[/]", align="left"))
            result = outcome.result
            if result is None:
                self.console.print(f"[red]{escape(outcome.error)}[/]")
                continue
            if result.stdout:
                self.console.print(escape(result.stdout.rstrip("\n")), highlight=False)
            if result.stderr:
                self.console.print(f"[yellow]{escape(result.stderr.rstrip())}[/]", highlight=False)
            if result.exit_code != 0:
                self.console.print(f"[red]exit status {result.exit_code}[/]")

        success_count = sum(1 for o in report.outcomes if o.success)
        self.console.print(f"\n[bold]Success:[/] {success_count}/{len(report.outcomes)}")

    # -------------------------------------------------------------------------
    # list
    # -------------------------------------------------------------------------

    def print_registry(self, registry: RepositoryRegistry):
        """Print registered repositories."""
        repos = [registry.get(name) for name in registry.names()]
        if self.use_json:
            self._print_json(
                {
                    "config": str(registry.path),
                    "count": len(repos),
                    "repositories": [{"name": r.name, **r.to_dict()} for r in repos],
                }
            )
            return

        self.console.print(f"[bold]{len(repos)} repositories in {escape(str(registry.path))}[/]\n")
        for repo in repos:
            origin = f" [dim]{escape(repo.origin)}[/]" if repo.origin else ""
            self.console.print(f"  [cyan]{escape(repo.name)}[/] {escape(str(repo.path))}{origin}")
