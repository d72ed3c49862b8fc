"""End-to-end run for one review subject.

Detector → Scheduler → Aggregator → scope selection → Remediation → Report.
Data flows one way; each phase reads only what the phases before it wrote.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from rich.console import Console

from prpanel_store.base import BaseStore, StoreError

from prpanel_core.aggregator import Aggregator, Decision
from prpanel_core.config import load_rules
from prpanel_core.detector import detect_technologies
from prpanel_core.discussion import DiscussionStore
from prpanel_core.errors import PersistenceError, StageDispatchError
from prpanel_core.models import FixScope, PipelineState, ReviewSubject, utc_now
from prpanel_core.pipeline import Scheduler
from prpanel_core.remediation import (
    Implementer,
    Planner,
    RemediationDispatcher,
    RemediationTask,
    Verifier,
)
from prpanel_core.report import CompletionReport, build_report
from prpanel_core.scope import select_findings

console = Console()
logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    state: PipelineState
    report: CompletionReport
    decision: Decision | None = None
    tasks: list[RemediationTask] = field(default_factory=list)
    tags: frozenset[str] = frozenset()
    error: StageDispatchError | None = None


def run_review(
    subject: ReviewSubject,
    config: dict,
    store: BaseStore,
    invoker,
    tree: tuple[list[str], Callable[[str], str | None]],
    planner: Planner | None = None,
    implementer: Implementer | None = None,
    verifier: Verifier | None = None,
    answer_provider: Callable[[RemediationTask, str], str | None] | None = None,
    should_abort: Callable[[], bool] | None = None,
    force_full: bool = False,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], datetime] = utc_now,
) -> RunResult:
    """Run the whole review for ``subject`` and persist a RunRecord.

    A halted pipeline does not raise here: the StageDispatchError is returned
    on the result so the caller can show the report before failing.
    Remediation runs only when a planner, implementer and verifier are given
    and the configured scope is not ``none``. A store failure outside the
    pipeline stages raises PersistenceError.
    """
    try:
        return _run(
            subject,
            config,
            store,
            invoker,
            tree,
            planner,
            implementer,
            verifier,
            answer_provider,
            should_abort or (lambda: False),
            force_full,
            sleep,
            clock,
        )
    except StoreError as e:
        raise PersistenceError(f"{subject.subject_id}: {e}") from e


def _run(
    subject,
    config,
    store,
    invoker,
    tree,
    planner,
    implementer,
    verifier,
    answer_provider,
    should_abort,
    force_full,
    sleep,
    clock,
) -> RunResult:
    tree_paths, read_file = tree
    tags = detect_technologies(subject.changed_files, tree_paths, read_file, config.get("exclude", []))
    console.print(f"[dim]Rule categories: {', '.join(sorted(tags)) or '(none detected)'}[/dim]")
    ruleset, dropped = load_rules(tags, config)

    discussion = DiscussionStore(store, subject.subject_id, clock=clock)
    scheduler = Scheduler(
        invoker,
        discussion,
        ruleset,
        backoff=config.get("stage_retry_backoff", 5),
        sleep=sleep,
        should_abort=should_abort,
        force_full=force_full,
    )

    def finish(decision=None, tasks=None, remediation_ran=False, error=None) -> RunResult:
        report = build_report(
            scheduler.state,
            decision,
            tasks,
            resolved_threads=store.resolved_threads(subject.subject_id),
            dropped_rules=dropped,
            remediation_ran=remediation_ran,
        )
        store.save_run(report.to_run_record(subject.repo, subject.head_sha, scheduler.state.started_at))
        return RunResult(
            state=scheduler.state,
            report=report,
            decision=decision,
            tasks=tasks or [],
            tags=tags,
            error=error,
        )

    try:
        state = scheduler.run(subject)
    except StageDispatchError as e:
        console.print(f"[red]{e}[/red]")
        return finish(error=e)
    if state.aborted:
        return finish()

    console.print("\n[bold]Aggregating decisions...[/bold]")
    decision = Aggregator(discussion).decide()

    scope = FixScope(config.get("scope", FixScope.MUST_FIX.value))
    queue = select_findings(decision.findings, scope)
    if not queue or None in (planner, implementer, verifier):
        if queue:
            logger.info("%d finding(s) in scope but no fixer configured; skipping remediation", len(queue))
        return finish(decision)
    if should_abort():
        state.aborted = True
        return finish(decision)

    console.print(f"\n[bold]Remediating {len(queue)} finding(s) in scope {scope.value}...[/bold]")
    dispatcher = RemediationDispatcher(
        discussion,
        planner,
        implementer,
        verifier,
        answer_provider=answer_provider,
        max_verify_attempts=config.get("max_verify_attempts", 2),
        stop_on_first_failure=config.get("stop_on_first_failure", False),
        should_abort=should_abort,
    )
    tasks = dispatcher.run(queue)
    if dispatcher.aborted:
        state.aborted = True
    return finish(decision, tasks, remediation_ran=True)
