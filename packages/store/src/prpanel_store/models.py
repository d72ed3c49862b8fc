"""Persistence records for the discussion log and run history.

Plain string-typed dataclasses so backends can serialise them without
knowing the enumerations prpanel_core builds on top of them.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class CommentRecord:
    """One immutable comment in a subject's discussion log.

    ``seq`` is the append position within the subject and defines the total
    order of comments; ``thread_id`` groups comments into threads.
    """

    subject_id: str
    comment_id: str
    thread_id: str
    seq: int
    role: str
    body: str
    created_at: str  # ISO-8601 UTC timestamp
    stage: str = ""
    path: str | None = None
    line: int | None = None
    category: str | None = None
    severity: str | None = None
    stance: str = "raise"
    tags: tuple[str, ...] = ()
    tier: str | None = None  # arbiter proposals only


@dataclass(frozen=True)
class DecisionRecord:
    """The binding tier for one thread, written once by the aggregator."""

    subject_id: str
    thread_id: str
    tier: str
    rationale: str
    rule: str
    decided_by: str = "arbiter"
    created_at: str = ""


@dataclass
class RunRecord:
    """A completed (or halted) run persisted for history and stats."""

    repo: str
    subject_id: str
    head_sha: str
    started_at: str
    finished_at: str
    verdict: str  # "Approve" | "RequestChanges" | "" when halted
    halted_stage: str | None = None
    stage_status: dict[str, str] = field(default_factory=dict)
    tier_counts: dict[str, int] = field(default_factory=dict)
    fixed: int = 0
    blocked: int = 0
    held: int = 0
