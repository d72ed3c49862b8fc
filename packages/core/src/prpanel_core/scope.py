"""Remediation scope: which tiers get fixed, and in what order."""

from __future__ import annotations

from prpanel_core.models import Category, Finding, FixScope, Tier

SCOPE_TIERS: dict[FixScope, frozenset[Tier]] = {
    FixScope.MUST_FIX: frozenset({Tier.MUST_FIX}),
    FixScope.MUST_AND_SHOULD: frozenset({Tier.MUST_FIX, Tier.SHOULD_FIX}),
    FixScope.ALL_BUT_DEFER: frozenset({Tier.MUST_FIX, Tier.SHOULD_FIX, Tier.CONSIDER}),
    FixScope.NONE: frozenset(),
}

# Lower runs first: security, then correctness, then structural changes, then the rest.
# Refactors and pattern changes reshape code the way architectural changes do.
_PRIORITY = {
    Category.SECURITY.value: 0,
    Category.CORRECTNESS.value: 1,
    Category.DATA_LOSS.value: 1,
    Category.ARCHITECTURE.value: 2,
    Category.CONTRACT.value: 2,
    Category.REFACTOR.value: 2,
    Category.PATTERN.value: 2,
}


def priority(finding: Finding) -> int:
    return _PRIORITY.get(finding.category or "", 3)


def select_findings(findings: list[Finding], scope: FixScope | str) -> list[Finding]:
    """Return the in-scope findings in execution order.

    Ordering is by category priority, then by thread creation order, so the
    same decisions always produce the same queue.
    """
    tiers = SCOPE_TIERS[FixScope(scope)]
    selected = [f for f in findings if f.tier in tiers]
    return sorted(selected, key=lambda f: (priority(f), f.created_seq))
