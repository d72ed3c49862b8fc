"""history command - display past runs from the store."""

from __future__ import annotations

import click
from rich.console import Console
from rich.table import Table

console = Console()

_VERDICT_STYLE = {"Approve": "green", "RequestChanges": "red"}


@click.command("history")
@click.option("--repo", required=True, help="GitHub repository (owner/name).")
@click.option("--pr", "pr_number", type=int, default=None, help="Filter by PR number.")
@click.option("--limit", default=20, show_default=True, help="Maximum number of runs to show.")
@click.pass_context
def history_cmd(ctx, repo: str, pr_number: int | None, limit: int):
    """Show past panel runs for a repository.

    Run history is kept by the SQLite store. Run `prpanel init` to set one up.
    """
    from prpanel_store.sqlite import SQLiteStore

    store = ctx.obj.get("store") if ctx.obj else None
    if not isinstance(store, SQLiteStore):
        raise click.UsageError(
            "Run history needs a persistent store. Add 'store: sqlite' to .prpanel.yml, "
            "or run `prpanel init` to set one up."
        )

    subject_id = f"{repo}#{pr_number}" if pr_number is not None else None
    runs = store.list_runs(repo, subject_id=subject_id)
    if not runs:
        console.print("[yellow]No runs found.[/yellow]")
        return

    # Most recent first, capped at --limit.
    runs = list(reversed(runs))[:limit]

    table = Table(title=f"Run History - {repo}", show_header=True, header_style="bold cyan")
    table.add_column("PR", style="bold", width=8)
    table.add_column("SHA", width=8)
    table.add_column("Verdict", width=16)
    table.add_column("Must/Should/Consider/Defer", justify="right")
    table.add_column("Fixed", justify="right")
    table.add_column("Blocked", justify="right")
    table.add_column("Halted at")
    table.add_column("Started At", width=20)

    for r in runs:
        verdict = r.verdict or "-"
        style = _VERDICT_STYLE.get(verdict, "white")
        tiers = "/".join(str(r.tier_counts.get(t, 0)) for t in ("must-fix", "should-fix", "consider", "defer"))
        table.add_row(
            "#" + r.subject_id.rsplit("#", 1)[-1],
            r.head_sha[:7],
            f"[{style}]{verdict}[/{style}]",
            tiers,
            str(r.fixed),
            str(r.blocked),
            r.halted_stage or "",
            r.started_at[:19].replace("T", " "),
        )

    console.print(table)
