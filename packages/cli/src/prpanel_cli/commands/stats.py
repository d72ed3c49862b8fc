"""stats command - aggregate verdicts and tiers across run history."""

from __future__ import annotations

from collections import Counter

import click
from rich.console import Console
from rich.table import Table

console = Console()

_TIER_ORDER = [("must-fix", "red"), ("should-fix", "yellow"), ("consider", "blue"), ("defer", "dim")]


@click.command("stats")
@click.option("--repo", required=True, help="GitHub repository (owner/name).")
@click.pass_context
def stats_cmd(ctx, repo: str):
    """Show aggregated panel statistics for a repository.

    Reports the verdict split, how findings spread across tiers, how many
    were fixed automatically and which stages halted runs most often.
    """
    from prpanel_store.sqlite import SQLiteStore

    store = ctx.obj.get("store") if ctx.obj else None
    if not isinstance(store, SQLiteStore):
        raise click.UsageError(
            "Run history needs a persistent store. Add 'store: sqlite' to .prpanel.yml, "
            "or run `prpanel init` to set one up."
        )

    runs = store.list_runs(repo)
    if not runs:
        console.print("[yellow]No runs found for this repository.[/yellow]")
        return

    verdicts: Counter[str] = Counter(r.verdict or "halted" for r in runs)
    tiers: Counter[str] = Counter()
    halted: Counter[str] = Counter()
    for r in runs:
        tiers.update(r.tier_counts)
        if r.halted_stage:
            halted[r.halted_stage] += 1
    total_findings = sum(tiers.values())

    console.print(f"\n[bold]Panel stats for [cyan]{repo}[/cyan][/bold]")
    console.print(f"  Total runs:      {len(runs)}")
    console.print(f"  Total findings:  {total_findings}")
    console.print(f"  Fixed:           {sum(r.fixed for r in runs)}")
    console.print(f"  Blocked:         {sum(r.blocked for r in runs)}")
    console.print(f"  Held for input:  {sum(r.held for r in runs)}")

    verdict_table = Table(title="Verdicts", show_header=True)
    verdict_table.add_column("Verdict", style="bold")
    verdict_table.add_column("Runs", justify="right")
    for verdict, count in verdicts.most_common():
        verdict_table.add_row(verdict, str(count))
    console.print(verdict_table)

    if total_findings:
        tier_table = Table(title="Tier Breakdown", show_header=True)
        tier_table.add_column("Tier", style="bold")
        tier_table.add_column("Count", justify="right")
        tier_table.add_column("% of total", justify="right")
        for tier, style in _TIER_ORDER:
            count = tiers.get(tier, 0)
            tier_table.add_row(f"[{style}]{tier}[/{style}]", str(count), f"{count / total_findings * 100:.1f}%")
        console.print(tier_table)

    if halted:
        halt_table = Table(title="Halted Stages", show_header=True)
        halt_table.add_column("Stage")
        halt_table.add_column("Runs", justify="right")
        for stage_id, count in halted.most_common():
            halt_table.add_row(stage_id, str(count))
        console.print(halt_table)
