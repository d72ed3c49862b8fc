"""Completion report: the final summary of one run.

Pure formatting over what the other components produced. Nothing here
changes a tier, a status or a thread.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from rich.console import Console
from rich.table import Table

from prpanel_store.models import RunRecord

from prpanel_core.aggregator import Decision
from prpanel_core.models import PipelineState, StageStatus, TaskStatus, Tier, utc_now
from prpanel_core.remediation import RemediationTask

NO_FINDINGS = "No significant findings."

_STAGE_STYLE = {
    StageStatus.DONE: "green",
    StageStatus.SKIPPED: "yellow",
    StageStatus.FAILED: "red",
    StageStatus.PENDING: "dim",
}
_TASK_STYLE = {
    TaskStatus.VERIFIED: "green",
    TaskStatus.BLOCKED: "red",
    TaskStatus.PLANNED: "yellow",
    TaskStatus.IMPLEMENTED: "yellow",
    TaskStatus.PENDING: "dim",
}


@dataclass
class TaskLine:
    thread_id: str
    tier: Tier
    status: TaskStatus
    held: bool
    change_refs: list[str]
    verify: str
    message: str | None


@dataclass
class CompletionReport:
    subject_id: str
    stage_status: dict[str, StageStatus]
    halted_stage: str | None
    aborted: bool
    verdict: str | None
    tier_counts: dict[Tier, dict[str, int]]
    tasks: list[TaskLine] = field(default_factory=list)
    remediation_ran: bool = False
    dropped_rules: list[str] = field(default_factory=list)
    unresolved_must_fix: list[str] = field(default_factory=list)
    no_findings: bool = False

    @property
    def fixed(self) -> int:
        return sum(1 for t in self.tasks if t.status is TaskStatus.VERIFIED)

    @property
    def blocked(self) -> list[TaskLine]:
        return [t for t in self.tasks if t.status is TaskStatus.BLOCKED]

    @property
    def held(self) -> list[TaskLine]:
        return [t for t in self.tasks if t.held]

    def to_dict(self) -> dict:
        return {
            "subject": self.subject_id,
            "stages": {stage_id: status.value for stage_id, status in self.stage_status.items()},
            "halted_stage": self.halted_stage,
            "aborted": self.aborted,
            "verdict": self.verdict,
            "tiers": {tier.label: dict(counts) for tier, counts in self.tier_counts.items()},
            "remediation": [
                {
                    "thread": t.thread_id,
                    "tier": t.tier.label,
                    "status": "Held" if t.held else t.status.value,
                    "changes": list(t.change_refs),
                    "verify": t.verify,
                    "message": t.message,
                }
                for t in self.tasks
            ],
            "unresolved_must_fix": list(self.unresolved_must_fix),
            "dropped_rules": list(self.dropped_rules),
            "summary": NO_FINDINGS if self.no_findings else None,
        }

    def to_run_record(self, repo: str, head_sha: str, started_at: str) -> RunRecord:
        return RunRecord(
            repo=repo,
            subject_id=self.subject_id,
            head_sha=head_sha,
            started_at=started_at,
            finished_at=utc_now().isoformat(),
            verdict=self.verdict or "",
            halted_stage=self.halted_stage,
            stage_status={k: v.value for k, v in self.stage_status.items()},
            tier_counts={tier.value: counts["total"] for tier, counts in self.tier_counts.items()},
            fixed=self.fixed,
            blocked=len(self.blocked),
            held=len(self.held),
        )

    def render(self, console: Console | None = None) -> None:
        console = console or Console()

        stages = Table(title=f"Stages: {self.subject_id}", show_header=True, header_style="bold cyan")
        stages.add_column("Stage", style="bold")
        stages.add_column("Status")
        for stage_id, status in self.stage_status.items():
            style = _STAGE_STYLE[status]
            stages.add_row(stage_id, f"[{style}]{status.value}[/{style}]")
        console.print(stages)

        if self.halted_stage:
            console.print(f"[red]Pipeline halted at stage [bold]{self.halted_stage}[/bold].[/red]")
        if self.aborted:
            console.print("[yellow]Run aborted by operator.[/yellow]")
        if self.verdict is None:
            return

        if self.no_findings:
            console.print(f"\n[green]{NO_FINDINGS}[/green]")
        else:
            tiers = Table(title="Findings by tier", show_header=True)
            tiers.add_column("Tier", style="bold")
            tiers.add_column("Total", justify="right")
            tiers.add_column("Fixed", justify="right")
            tiers.add_column("Skipped", justify="right")
            for tier, counts in self.tier_counts.items():
                tiers.add_row(tier.label, str(counts["total"]), str(counts["fixed"]), str(counts["skipped"]))
            console.print(tiers)

        if self.remediation_ran and self.tasks:
            tasks = Table(title="Remediation", show_header=True)
            tasks.add_column("Thread", style="bold")
            tasks.add_column("Tier")
            tasks.add_column("Status")
            tasks.add_column("Changes")
            tasks.add_column("Verify", max_width=50)
            for t in self.tasks:
                style = _TASK_STYLE[t.status]
                status = "Held" if t.held else t.status.value
                tasks.add_row(
                    t.thread_id,
                    t.tier.label,
                    f"[{style}]{status}[/{style}]",
                    ", ".join(ref[:7] for ref in t.change_refs) or "-",
                    (t.message or t.verify or "-")[:200],
                )
            console.print(tasks)

        if self.unresolved_must_fix:
            console.print(f"[red]Unresolved Must Fix threads: {', '.join(self.unresolved_must_fix)}[/red]")
        if self.dropped_rules:
            console.print(f"[yellow]No rule corpus for: {', '.join(self.dropped_rules)}[/yellow]")

        style = "red" if self.verdict == "RequestChanges" else "green"
        console.print(f"\n[bold]Verdict:[/bold] [{style}]{self.verdict}[/{style}]")


def build_report(
    state: PipelineState,
    decision: Decision | None = None,
    tasks: list[RemediationTask] | None = None,
    resolved_threads: set[str] | None = None,
    dropped_rules: list[str] | None = None,
    remediation_ran: bool = False,
) -> CompletionReport:
    """Assemble the report. ``decision`` is None when the pipeline halted before aggregation."""
    tasks = tasks or []
    resolved = set(resolved_threads or ())
    fixed_threads = {t.thread_id for t in tasks if t.status is TaskStatus.VERIFIED}
    resolved |= fixed_threads

    tier_counts: dict[Tier, dict[str, int]] = {t: {"total": 0, "fixed": 0, "skipped": 0} for t in Tier}
    unresolved_must_fix: list[str] = []
    if decision is not None:
        for finding in decision.findings:
            counts = tier_counts[finding.tier]
            counts["total"] += 1
            if finding.thread_id in fixed_threads:
                counts["fixed"] += 1
            elif finding.thread_id not in resolved:
                counts["skipped"] += 1
            if finding.tier is Tier.MUST_FIX and finding.thread_id not in resolved:
                unresolved_must_fix.append(finding.thread_id)

    return CompletionReport(
        subject_id=state.subject_id,
        stage_status=dict(state.status),
        halted_stage=state.halted_stage,
        aborted=state.aborted,
        verdict=decision.verdict.label if decision is not None else None,
        tier_counts=tier_counts,
        tasks=[
            TaskLine(
                thread_id=t.thread_id,
                tier=t.finding.tier,
                status=t.status,
                held=t.held,
                change_refs=list(t.change_refs),
                verify=t.verify_output,
                message=t.message,
            )
            for t in tasks
        ],
        remediation_ran=remediation_ran,
        dropped_rules=list(dropped_rules or ()),
        unresolved_must_fix=unresolved_must_fix,
        no_findings=decision is not None and not decision.records,
    )
