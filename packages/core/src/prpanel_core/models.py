"""Core value types shared by the pipeline, aggregator and dispatcher.

Enumerations subclass ``str`` so they compare equal to the plain strings
persisted in prpanel_store records (``record.role == Role.ARBITER``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    ARCHITECT = "architect"  # first debater
    PRAGMATIST = "pragmatist"  # second debater
    RISK = "risk"  # arbiter of risk
    ARBITER = "arbiter"  # decision arbiter
    FIXER = "fixer"  # remediation replies

    @property
    def prefix(self) -> str:
        return f"[{self.value.upper()}]"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


SEVERITY_RANK = {Severity.CRITICAL: 3, Severity.HIGH: 2, Severity.MEDIUM: 1, Severity.LOW: 0}


class Stance(str, Enum):
    RAISE = "raise"
    AGREE = "agree"
    DISAGREE = "disagree"
    WITHDRAW = "withdraw"
    # Arbiter only.
    DECIDE = "decide"
    OVERRIDE = "override"
    DOWNGRADE = "downgrade"


ARBITER_STANCES = frozenset({Stance.DECIDE, Stance.OVERRIDE, Stance.DOWNGRADE})


class Category(str, Enum):
    SECURITY = "security"
    CORRECTNESS = "correctness"
    DATA_LOSS = "data-loss"
    CONTRACT = "contract"
    ARCHITECTURE = "architecture"
    TESTING = "testing"
    NAMING = "naming"
    ERROR_HANDLING = "error-handling"
    REFACTOR = "refactor"
    PATTERN = "pattern"
    STYLE = "style"
    SPECULATIVE = "speculative"
    PERFORMANCE = "performance"
    DOCUMENTATION = "documentation"


# Qualifier tags a reviewer may attach to a finding.
TAG_EXPENSIVE_TO_REVERSE = "expensive-to-reverse"
TAG_SCHEDULED = "scheduled"
TAG_COMPLEX = "complex"
TAG_PUBLIC = "public"
TAG_UNMODIFIED = "unmodified"
TAG_CRITICAL_PATH = "critical-path"
TAG_SCHEDULE_PRESSURE = "schedule-pressure"

QUALIFIER_TAGS = frozenset(
    {
        TAG_EXPENSIVE_TO_REVERSE,
        TAG_SCHEDULED,
        TAG_COMPLEX,
        TAG_PUBLIC,
        TAG_UNMODIFIED,
        TAG_CRITICAL_PATH,
        TAG_SCHEDULE_PRESSURE,
    }
)


class Tier(str, Enum):
    MUST_FIX = "must-fix"
    SHOULD_FIX = "should-fix"
    CONSIDER = "consider"
    DEFER = "defer"

    @property
    def label(self) -> str:
        return _TIER_LABELS[self]


_TIER_LABELS = {
    Tier.MUST_FIX: "Must Fix",
    Tier.SHOULD_FIX: "Should Fix",
    Tier.CONSIDER: "Consider",
    Tier.DEFER: "Defer",
}

# Higher rank = more conservative.
TIER_RANK = {Tier.MUST_FIX: 3, Tier.SHOULD_FIX: 2, Tier.CONSIDER: 1, Tier.DEFER: 0}


class Verdict(str, Enum):
    APPROVE = "APPROVE"
    REQUEST_CHANGES = "REQUEST_CHANGES"

    @property
    def label(self) -> str:
        return "Approve" if self is Verdict.APPROVE else "RequestChanges"


class ThreadKind(str, Enum):
    AGREEMENT = "resolved-agreement"
    DEBATE = "unresolved-debate"
    STANDALONE = "standalone"


class StageStatus(str, Enum):
    PENDING = "Pending"
    DONE = "Done"
    SKIPPED = "Skipped"
    FAILED = "Failed"


class FixScope(str, Enum):
    MUST_FIX = "must-fix"
    MUST_AND_SHOULD = "must-and-should"
    ALL_BUT_DEFER = "all-but-defer"
    NONE = "none"


class TaskStatus(str, Enum):
    PENDING = "Pending"
    PLANNED = "Planned"
    IMPLEMENTED = "Implemented"
    VERIFIED = "Verified"
    BLOCKED = "Blocked"


@dataclass(frozen=True)
class ReviewSubject:
    """The change request under review. Resolved once per run."""

    subject_id: str
    repo: str
    changed_files: tuple[str, ...]
    base_ref: str
    head_ref: str
    head_sha: str = ""
    title: str = ""
    description: str = ""
    number: int | None = None
    diff: str = ""  # unified diff of the change, truncated per file


@dataclass
class Finding:
    """A unit of feedback distilled from one thread.

    ``tier`` stays None until the aggregator assigns it.
    """

    thread_id: str
    created_seq: int
    category: str | None
    severity: str | None
    origin_roles: tuple[str, ...]
    description: str
    kind: ThreadKind
    path: str | None = None
    line: int | None = None
    tags: frozenset[str] = frozenset()
    tier: Tier | None = None

    @property
    def location(self) -> str:
        if not self.path:
            return "general"
        return f"{self.path}:{self.line}" if self.line else self.path


@dataclass
class PipelineState:
    """Mutable run state, owned by the scheduler."""

    subject_id: str
    stage_ids: list[str]
    current: int = 0
    status: dict[str, StageStatus] = field(default_factory=dict)
    completed_at: dict[str, str] = field(default_factory=dict)
    retries: dict[str, int] = field(default_factory=dict)
    comment_counts: dict[str, int] = field(default_factory=dict)
    halted_stage: str | None = None
    halt_reason: str | None = None
    aborted: bool = False
    started_at: str = field(default_factory=lambda: utc_now().isoformat())

    def __post_init__(self):
        for stage_id in self.stage_ids:
            self.status.setdefault(stage_id, StageStatus.PENDING)

    @property
    def finished(self) -> bool:
        if self.halted_stage is not None or self.aborted:
            return False
        return all(s is not StageStatus.PENDING for s in self.status.values())
