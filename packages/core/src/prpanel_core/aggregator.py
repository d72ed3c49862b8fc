"""Decision aggregation: turn the finished debate into binding tiers.

Runs once, after the arbiter stage, over the complete discussion log:

1. Group comments by thread (DiscussionStore.threads()).
2. Classify each thread: standalone, resolved agreement or unresolved debate.
3. Reduce each thread to positions (a reviewer's category/severity claim)
   and score them on the arguments recorded against them: every later
   ``agree`` from another role supports a position, every ``disagree``
   rebuts it. Scores never depend on which role made the claim.
4. Evaluate DECISION_TABLE on the winning position(s); the first matching
   rule gives the tier. Balanced scores fall back to the arbiter's recorded
   decision, then to the reversibility default (higher tier when the change
   is hard to undo, lower tier otherwise).
5. Apply the two arbiter adjustments the table allows: a reasoned override
   of a severe security finding, and a schedule-pressure downgrade of a
   should-fix item. Nothing else moves a tier.

Every thread with at least one comment gets exactly one tier. A thread that
already has a DecisionRecord keeps it; tiers are never rewritten.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from prpanel_store.base import StoreError
from prpanel_store.models import CommentRecord, DecisionRecord

from prpanel_core.discussion import DiscussionStore, Thread
from prpanel_core.models import (
    TAG_COMPLEX,
    TAG_EXPENSIVE_TO_REVERSE,
    TAG_PUBLIC,
    TAG_SCHEDULE_PRESSURE,
    TAG_SCHEDULED,
    TAG_UNMODIFIED,
    TIER_RANK,
    Category,
    Finding,
    Role,
    Severity,
    Stance,
    ThreadKind,
    Tier,
    Verdict,
)

logger = logging.getLogger(__name__)

DECISION_TABLE_VERSION = "1"

_NON_VOICES = {Role.ARBITER.value, Role.FIXER.value}
_IRREVERSIBLE_CATEGORIES = {Category.SECURITY.value, Category.DATA_LOSS.value, Category.CONTRACT.value}


@dataclass
class Position:
    """One reviewer's claim about what a thread is and how severe it is."""

    comment: CommentRecord
    category: str | None
    severity: str | None
    tags: frozenset[str]
    support: int = 0
    rebuttal: int = 0
    withdrawn: bool = False

    @property
    def role(self) -> str:
        return self.comment.role

    @property
    def merit(self) -> int:
        return self.support - self.rebuttal

    @property
    def irreversible(self) -> bool:
        return self.category in _IRREVERSIBLE_CATEGORIES or TAG_EXPENSIVE_TO_REVERSE in self.tags


@dataclass(frozen=True)
class DecisionRule:
    rule_id: str
    tier: Tier
    description: str
    predicate: Callable[[Position], bool]
    # Only an explicit, reasoned arbiter override may lower the tier.
    overridable: bool = False
    # Only an arbiter downgrade citing schedule pressure may lower the tier.
    downgradable: bool = False


def _is(category: Category) -> Callable[[Position], bool]:
    return lambda p: p.category == category.value


def _severe_security(p: Position) -> bool:
    return p.category == Category.SECURITY.value and p.severity in (Severity.CRITICAL.value, Severity.HIGH.value)


# Ordered: the first rule whose predicate matches decides the tier.
DECISION_TABLE: tuple[DecisionRule, ...] = (
    DecisionRule(
        "security-severe",
        Tier.MUST_FIX,
        "Security finding at critical or high severity",
        _severe_security,
        overridable=True,
    ),
    DecisionRule(
        "correctness-defect",
        Tier.MUST_FIX,
        "Correctness or data-loss defect",
        lambda p: p.category in (Category.CORRECTNESS.value, Category.DATA_LOSS.value),
    ),
    DecisionRule(
        "irreversible-contract",
        Tier.MUST_FIX,
        "External contract change that is expensive to reverse",
        lambda p: p.category == Category.CONTRACT.value and TAG_EXPENSIVE_TO_REVERSE in p.tags,
    ),
    DecisionRule(
        "scheduled-architecture",
        Tier.SHOULD_FIX,
        "Architectural improvement tied to scheduled work",
        lambda p: p.category == Category.ARCHITECTURE.value and TAG_SCHEDULED in p.tags,
        downgradable=True,
    ),
    DecisionRule(
        "untested-complex-logic",
        Tier.SHOULD_FIX,
        "Missing tests on complex or error-prone logic",
        lambda p: p.category == Category.TESTING.value and TAG_COMPLEX in p.tags,
        downgradable=True,
    ),
    DecisionRule(
        "misleading-public-name",
        Tier.SHOULD_FIX,
        "Misleading public naming",
        lambda p: p.category == Category.NAMING.value and TAG_PUBLIC in p.tags,
        downgradable=True,
    ),
    DecisionRule(
        "missing-error-handling",
        Tier.SHOULD_FIX,
        "Missing production error handling",
        _is(Category.ERROR_HANDLING),
        downgradable=True,
    ),
    DecisionRule(
        "security-medium",
        Tier.SHOULD_FIX,
        "Security finding at medium (or unrated) severity",
        lambda p: p.category == Category.SECURITY.value and p.severity in (Severity.MEDIUM.value, None),
        downgradable=True,
    ),
    DecisionRule(
        "internal-refactor",
        Tier.CONSIDER,
        "Internal refactor",
        lambda p: p.category == Category.REFACTOR.value and TAG_UNMODIFIED not in p.tags,
    ),
    DecisionRule(
        "extra-coverage",
        Tier.CONSIDER,
        "Test coverage beyond critical paths",
        _is(Category.TESTING),
    ),
    DecisionRule(
        "optional-pattern",
        Tier.CONSIDER,
        "Optional pattern application",
        lambda p: p.category == Category.PATTERN.value and TAG_UNMODIFIED not in p.tags,
    ),
    DecisionRule(
        "security-low",
        Tier.CONSIDER,
        "Low-severity security note",
        _is(Category.SECURITY),
    ),
    DecisionRule(
        "reversible-change",
        Tier.CONSIDER,
        "Easily reversed structural, naming, performance or documentation note",
        lambda p: p.category
        in (
            Category.CONTRACT.value,
            Category.ARCHITECTURE.value,
            Category.NAMING.value,
            Category.PERFORMANCE.value,
            Category.DOCUMENTATION.value,
        )
        and TAG_UNMODIFIED not in p.tags,
    ),
    DecisionRule("speculative", Tier.DEFER, "Speculative improvement", _is(Category.SPECULATIVE)),
    DecisionRule(
        "unmodified-code",
        Tier.DEFER,
        "Change to unmodified, stable code",
        lambda p: TAG_UNMODIFIED in p.tags,
    ),
    DecisionRule("style-preference", Tier.DEFER, "Subjective style preference", _is(Category.STYLE)),
    DecisionRule("uncategorized", Tier.CONSIDER, "Finding without a recognised category", lambda p: True),
)

_WITHDRAWN_RULE = DecisionRule("withdrawn", Tier.DEFER, "Every finding in the thread was withdrawn", lambda p: True)


def match_rule(position: Position, table: tuple[DecisionRule, ...] = DECISION_TABLE) -> DecisionRule:
    for rule in table:
        if rule.predicate(position):
            return rule
    raise LookupError("Decision table has no catch-all rule.")


def classify_thread(thread: Thread) -> ThreadKind:
    """Standalone if one reviewer spoke; debate if any reviewer's last word is a disagreement."""
    voices = [c for c in thread.comments if c.role not in _NON_VOICES]
    last_stance: dict[str, str] = {}
    for c in voices:
        last_stance[c.role] = c.stance
    if len(last_stance) <= 1:
        return ThreadKind.STANDALONE
    if Stance.DISAGREE.value in last_stance.values():
        return ThreadKind.DEBATE
    return ThreadKind.AGREEMENT


def collect_positions(thread: Thread) -> list[Position]:
    """Replay a thread into scored positions.

    A reply answers the latest live position of a different role. Replies
    that state their own category or severity also open a counter-position;
    a missing category (and its tags) is inherited from the position they
    answer.
    """
    positions: list[Position] = []
    for c in thread.comments:
        if c.role in _NON_VOICES:
            continue
        if c.stance == Stance.WITHDRAW.value:
            for p in reversed(positions):
                if p.role == c.role and not p.withdrawn:
                    p.withdrawn = True
                    break
            continue

        target = next((p for p in reversed(positions) if p.role != c.role and not p.withdrawn), None)
        if target is not None:
            if c.stance == Stance.AGREE.value:
                target.support += 1
            elif c.stance == Stance.DISAGREE.value:
                target.rebuttal += 1

        if c.stance == Stance.RAISE.value or c.category or c.severity:
            inherit = target is not None and not c.category
            category = target.category if inherit else c.category
            tags = target.tags if inherit and not c.tags else frozenset(c.tags)
            positions.append(Position(c, category, c.severity, tags))
    return positions


@dataclass
class ThreadDecision:
    finding: Finding
    rule: DecisionRule
    rationale: str


def _firmness(ruled_position: tuple[Position, DecisionRule]) -> int:
    # Among equal tiers, a rule no arbiter adjustment can lower is chosen first.
    rule = ruled_position[1]
    return 0 if rule.overridable or rule.downgradable else 1


def _arbiter_comments(thread: Thread, stance: Stance, after_seq: int) -> list[CommentRecord]:
    return [
        c for c in thread.comments if c.role == Role.ARBITER.value and c.stance == stance.value and c.seq > after_seq
    ]


def decide_thread(thread: Thread, table: tuple[DecisionRule, ...] = DECISION_TABLE) -> ThreadDecision:
    kind = classify_thread(thread)
    positions = collect_positions(thread)
    live = [p for p in positions if not p.withdrawn]
    notes: list[str] = [kind.value]

    if not live:
        chosen, rule = None, _WITHDRAWN_RULE
        tier = rule.tier
    else:
        best = max(p.merit for p in live)
        contenders = [p for p in live if p.merit == best]
        # Severe security findings are not settled by debate, only by an arbiter override.
        contenders += [p for p in live if _severe_security(p) and p not in contenders]
        ruled = [(p, match_rule(p, table)) for p in contenders]
        tiers = {r.tier for _, r in ruled}

        if len(tiers) == 1:
            chosen, rule = max(ruled, key=_firmness)
        else:
            arbiter_tiers = [
                Tier(c.tier) for c in _arbiter_comments(thread, Stance.DECIDE, -1) if c.tier in {t.value for t in tiers}
            ]
            if arbiter_tiers and not any(r.overridable for _, r in ruled):
                wanted = arbiter_tiers[-1]
                chosen, rule = max(((p, r) for p, r in ruled if r.tier == wanted), key=_firmness)
                notes.append("balanced debate settled by the arbiter's recorded assessment")
            elif any(p.irreversible for p in contenders):
                chosen, rule = max(ruled, key=lambda pr: (TIER_RANK[pr[1].tier], _firmness(pr)))
                notes.append("balanced debate on a hard-to-reverse change: more conservative tier")
            else:
                chosen, rule = min(ruled, key=lambda pr: (TIER_RANK[pr[1].tier], -_firmness(pr)))
                notes.append("balanced debate on easily reversed code: less conservative tier")
        tier = rule.tier
        notes.append(
            f"position by {chosen.role} ({chosen.category or 'uncategorized'}/{chosen.severity or 'unrated'}, "
            f"merit {chosen.merit:+d})"
        )

        after = chosen.comment.seq
        if rule.overridable:
            for c in _arbiter_comments(thread, Stance.OVERRIDE, after):
                if c.tier and c.body.strip():
                    tier = Tier(c.tier)
                    notes.append(f"arbiter override: {c.body.strip()}")
                else:
                    logger.warning("Ignoring arbiter override on %s without a tier and reasoning", thread.thread_id)
        if rule.downgradable:
            for c in _arbiter_comments(thread, Stance.DOWNGRADE, after):
                if TAG_SCHEDULE_PRESSURE in c.tags and c.body.strip():
                    lower = Tier(c.tier) if c.tier and TIER_RANK[Tier(c.tier)] < TIER_RANK[tier] else Tier.CONSIDER
                    tier = lower
                    notes.append(f"downgraded for schedule pressure: {c.body.strip()}")
                else:
                    logger.warning("Ignoring downgrade on %s without a schedule-pressure justification", thread.thread_id)

    opener = thread.opener
    finding = Finding(
        thread_id=thread.thread_id,
        created_seq=thread.created_seq,
        category=chosen.category if chosen else opener.category,
        severity=chosen.severity if chosen else opener.severity,
        origin_roles=tuple(dict.fromkeys(p.role for p in positions)) or (opener.role,),
        description=opener.body.strip().splitlines()[0][:160] if opener.body.strip() else "(no description)",
        kind=kind,
        path=thread.path,
        line=thread.line,
        tags=chosen.tags if chosen else frozenset(),
        tier=tier,
    )
    rationale = f"{rule.description} [{rule.rule_id}]; " + "; ".join(notes)
    return ThreadDecision(finding=finding, rule=rule, rationale=rationale)


def compute_verdict(findings: list[Finding]) -> Verdict:
    if any(f.tier is Tier.MUST_FIX for f in findings):
        return Verdict.REQUEST_CHANGES
    return Verdict.APPROVE


@dataclass
class Decision:
    """Aggregated outcome: one finding and one record per thread, plus the verdict."""

    findings: list[Finding] = field(default_factory=list)
    records: list[DecisionRecord] = field(default_factory=list)
    verdict: Verdict = Verdict.APPROVE
    table_version: str = DECISION_TABLE_VERSION

    def by_tier(self) -> dict[Tier, list[Finding]]:
        grouped: dict[Tier, list[Finding]] = {t: [] for t in Tier}
        for f in sorted(self.findings, key=lambda f: f.created_seq):
            grouped[f.tier].append(f)
        return grouped

    def summary_dict(self) -> dict:
        """The structured decision summary: findings per tier and the verdict."""
        summary = {
            tier.label: [
                {
                    "description": f.description,
                    "origin-role": ", ".join(f.origin_roles),
                    "thread-ref": f.thread_id,
                }
                for f in findings
            ]
            for tier, findings in self.by_tier().items()
        }
        summary["Verdict"] = self.verdict.label
        return summary

    def summary_markdown(self) -> str:
        lines = ["## Decision summary\n"]
        if not self.findings:
            lines.append("No significant findings.\n")
        for tier, findings in self.by_tier().items():
            lines.append(f"### {tier.label} ({len(findings)})")
            if not findings:
                lines.append("_None._\n")
                continue
            for f in findings:
                lines.append(f"- **{f.thread_id}** `{f.location}` {f.description} _(origin: {', '.join(f.origin_roles)})_")
            lines.append("")
        lines.append(f"**Verdict: {self.verdict.label}**")
        lines.append(f"\n<sub>decision table v{self.table_version}</sub>")
        return "\n".join(lines)


class Aggregator:
    """Owns DecisionRecords and the verdict for one subject."""

    def __init__(self, discussion: DiscussionStore, table: tuple[DecisionRule, ...] = DECISION_TABLE):
        self.discussion = discussion
        self.table = table

    def decide(self) -> Decision:
        """Tier every thread, persist records for newly decided threads, return the Decision.

        Threads decided by an earlier run keep their recorded tier.
        """
        subject_id = self.discussion.subject_id
        existing = {d.thread_id: d for d in self.discussion.backend.list_decisions(subject_id)}
        now = self.discussion.now()

        findings: list[Finding] = []
        records: list[DecisionRecord] = []
        new_records: list[DecisionRecord] = []
        for thread in self.discussion.threads():
            decided = decide_thread(thread, self.table)
            finding = decided.finding
            if thread.thread_id in existing:
                record = existing[thread.thread_id]
                finding.tier = Tier(record.tier)
            else:
                record = DecisionRecord(
                    subject_id=subject_id,
                    thread_id=thread.thread_id,
                    tier=finding.tier.value,
                    rationale=decided.rationale,
                    rule=decided.rule.rule_id,
                    decided_by=Role.ARBITER.value,
                    created_at=now,
                )
                new_records.append(record)
            findings.append(finding)
            records.append(record)
            logger.debug("%s → %s (%s)", thread.thread_id, finding.tier.value, record.rule)

        if new_records:
            try:
                self.discussion.backend.save_decisions(subject_id, new_records)
            except StoreError:
                logger.error("Could not persist %d decision record(s) for %s", len(new_records), subject_id)
                raise

        return Decision(findings=findings, records=records, verdict=compute_verdict(findings))
