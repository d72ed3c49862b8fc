"""Pipeline scheduler: runs the fixed stage sequence against the discussion log.

Stages run strictly one after another. Stage i+1 starts only after stage i's
reviewer has returned and its comments are committed and visible in the
store, so every stage reads the complete history before it.

Each stage gets one retry after a fixed backoff, for the reviewer call and
for the append separately. A second failure halts the pipeline with the
stage named; a stage is never skipped silently.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterable

from rich.console import Console

from prpanel_core.discussion import CommentDraft, DiscussionStore, Thread
from prpanel_core.errors import StageDispatchError
from prpanel_core.models import (
    QUALIFIER_TAGS,
    Category,
    PipelineState,
    ReviewSubject,
    Role,
    Severity,
    StageStatus,
    Stance,
    Tier,
)
from prpanel_core.roles import profile_for
from prpanel_core.stages import CANONICAL_STAGES, Stage
from prpanel_core.utils.retry import DEFAULT_BACKOFF_SECONDS, call_with_retry

console = Console()
logger = logging.getLogger(__name__)

_CATEGORIES = {c.value for c in Category}
_SEVERITIES = {s.value for s in Severity}
_TIERS = {t.value for t in Tier}


def _as_line(value) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or None
    return None


def _dedupe_key(role: str, target: str | tuple, body: str) -> tuple:
    return (role, target, body.strip())


def normalize_comments(
    raw_items: Iterable[dict],
    stage: Stage,
    threads: dict[str, Thread],
    replies_only: bool,
) -> list[CommentDraft]:
    """Validate a stage's raw output against the role profile and stage limits.

    Drops (with a log line) anything the stage is not allowed to post: replies
    to unknown threads, new threads in a replies-only stage, risk comments
    without a severity, replies without a recognised stance, and exact
    duplicates of comments already in the log or earlier in this batch.
    """
    profile = profile_for(stage.role)
    role = stage.role.value

    seen = set()
    for thread in threads.values():
        for c in thread.comments:
            seen.add(_dedupe_key(c.role, c.thread_id, c.body))
            if c is thread.opener:
                seen.add(_dedupe_key(c.role, (c.path, c.line), c.body))

    drafts: list[CommentDraft] = []
    for item in raw_items:
        body = item.get("body") or item.get("comment") or ""
        if not isinstance(body, str) or not body.strip():
            logger.debug("[%s] skipping item without body", stage.stage_id)
            continue

        thread_id = item.get("thread")
        stance = item.get("stance")
        if thread_id is not None:
            thread_id = str(thread_id)
            if thread_id not in threads:
                logger.debug("[%s] skipping reply to unknown thread %s", stage.stage_id, thread_id)
                continue
            if stance not in {s.value for s in profile.stances}:
                if stage.role is Role.ARBITER:
                    stance = Stance.DECIDE.value
                else:
                    logger.warning("[%s] skipping reply to %s without a valid stance", stage.stage_id, thread_id)
                    continue
            path, line = None, None
            target = thread_id
        else:
            if replies_only:
                logger.debug("[%s] replies-only stage; dropping new thread", stage.stage_id)
                continue
            stance = Stance.RAISE.value
            path = item.get("path") if isinstance(item.get("path"), str) and item.get("path") else None
            line = _as_line(item.get("line")) if path else None
            target = (path, line)

        severity = item.get("severity")
        if profile.severity == "none":
            severity = None
        elif severity not in _SEVERITIES:
            if profile.severity == "required":
                logger.warning("[%s] dropping comment without a valid severity: %r", stage.stage_id, severity)
                continue
            severity = None

        category = item.get("category") if item.get("category") in _CATEGORIES else None
        raw_tags = item.get("tags") or []
        tags = tuple(sorted({t for t in raw_tags if isinstance(t, str) and t in QUALIFIER_TAGS}))
        tier = item.get("tier") if stage.role is Role.ARBITER and item.get("tier") in _TIERS else None

        key = _dedupe_key(role, target, body)
        if key in seen:
            logger.debug("[%s] skipping duplicate comment on %s", stage.stage_id, target)
            continue
        seen.add(key)

        drafts.append(
            CommentDraft(
                role=role,
                body=body,
                thread_id=thread_id,
                path=path,
                line=line,
                category=category,
                severity=severity,
                stance=stance,
                tags=tags,
                tier=tier,
            )
        )
    return drafts


class Scheduler:
    """Runs the stage sequence for one subject. Owns the PipelineState."""

    def __init__(
        self,
        invoker,
        discussion: DiscussionStore,
        ruleset: dict[str, str],
        stages: tuple[Stage, ...] = CANONICAL_STAGES,
        backoff: float = DEFAULT_BACKOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        should_abort: Callable[[], bool] | None = None,
        force_full: bool = False,
    ):
        self.invoker = invoker
        self.discussion = discussion
        self.ruleset = ruleset
        self.stages = stages
        self.backoff = backoff
        self.sleep = sleep
        self.should_abort = should_abort or (lambda: False)
        self.force_full = force_full
        self.state = PipelineState(subject_id=discussion.subject_id, stage_ids=[s.stage_id for s in stages])

    def run(self, subject: ReviewSubject) -> PipelineState:
        """Run every stage in order and return the final state.

        Raises StageDispatchError when a stage fails twice; ``self.state`` then
        records the failed stage and every later stage stays Pending.
        """
        done_before = self.discussion.backend.completed_stages(subject.subject_id)

        for index, stage in enumerate(self.stages):
            self.state.current = index
            if self.should_abort():
                self._abort(index)
                break

            if stage.stage_id in done_before and not self.force_full:
                console.print(f"  [dim]{stage.stage_id}: already completed, skipping.[/dim]")
                self.state.status[stage.stage_id] = StageStatus.SKIPPED
                self.state.completed_at[stage.stage_id] = done_before[stage.stage_id]
                continue

            console.print(f"\n[[{index + 1}/{len(self.stages)}]] Stage: [bold]{stage.stage_id}[/bold]")
            posted = self._run_stage(subject, stage)
            console.print(f"  {posted} comment(s) posted.")

        return self.state

    def _abort(self, index: int) -> None:
        self.state.aborted = True
        for stage in self.stages[index:]:
            self.state.status[stage.stage_id] = StageStatus.SKIPPED
        console.print("[yellow]Run aborted by operator at a stage boundary.[/yellow]")

    def _attempt(self, stage: Stage, label: str, fn):
        calls = {"n": 0}

        def counted():
            calls["n"] += 1
            return fn()

        try:
            return call_with_retry(counted, label=f"{stage.stage_id} {label}", backoff=self.backoff, sleep=self.sleep)
        except Exception as e:
            self.state.status[stage.stage_id] = StageStatus.FAILED
            self.state.halted_stage = stage.stage_id
            self.state.halt_reason = f"{label}: {e}"
            raise StageDispatchError(stage.stage_id, e) from e
        finally:
            self.state.retries[stage.stage_id] = self.state.retries.get(stage.stage_id, 0) + calls["n"] - 1

    def _run_stage(self, subject: ReviewSubject, stage: Stage) -> int:
        history = self.discussion.comments()
        own = [c for c in history if c.role == stage.role.value]
        rerun = any(c.stage == stage.stage_id for c in own)
        replies_only = not stage.allow_new_threads or bool(own)

        raw = self._attempt(
            stage,
            "reviewer call",
            lambda: self.invoker.review(subject, history, self.ruleset, stage, rerun=rerun),
        )
        if not raw:
            logger.info("[%s] reviewer returned no comments", stage.stage_id)

        threads = {t.thread_id: t for t in self.discussion.threads()}
        drafts = normalize_comments(raw or [], stage, threads, replies_only)
        records = self.discussion.prepare(drafts, stage.stage_id)

        def commit() -> str:
            self.discussion.commit(records)
            completed_at = self.discussion.now()
            self.discussion.backend.mark_stage_done(subject.subject_id, stage.stage_id, completed_at)
            return completed_at

        completed_at = self._attempt(stage, "append", commit)
        self.state.status[stage.stage_id] = StageStatus.DONE
        self.state.completed_at[stage.stage_id] = completed_at
        self.state.comment_counts[stage.stage_id] = len(records)
        return len(records)
