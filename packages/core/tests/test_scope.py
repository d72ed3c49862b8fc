"""Tests for remediation scope selection and ordering."""

from __future__ import annotations

import pytest

from prpanel_core.models import Finding, FixScope, ThreadKind, Tier
from prpanel_core.scope import select_findings


def _finding(thread_id, seq, category, tier):
    return Finding(
        thread_id=thread_id,
        created_seq=seq,
        category=category,
        severity=None,
        origin_roles=("risk",),
        description=f"{category} issue",
        kind=ThreadKind.STANDALONE,
        tier=tier,
    )


@pytest.fixture
def findings():
    return [
        _finding("T1", 0, "architecture", Tier.SHOULD_FIX),
        _finding("T2", 1, "correctness", Tier.MUST_FIX),
        _finding("T3", 2, "error-handling", Tier.SHOULD_FIX),
        _finding("T4", 3, "security", Tier.MUST_FIX),
        _finding("T5", 4, "testing", Tier.SHOULD_FIX),
        _finding("T6", 5, "refactor", Tier.CONSIDER),
        _finding("T7", 6, "style", Tier.DEFER),
    ]


def _ids(selected):
    return [f.thread_id for f in selected]


def test_must_fix_only_queues_must_fix_security_first(findings):
    assert _ids(select_findings(findings, FixScope.MUST_FIX)) == ["T4", "T2"]


def test_must_and_should_orders_by_category_then_creation(findings):
    assert _ids(select_findings(findings, "must-and-should")) == ["T4", "T2", "T1", "T3", "T5"]


def test_all_but_defer_excludes_defer(findings):
    assert _ids(select_findings(findings, FixScope.ALL_BUT_DEFER)) == ["T4", "T2", "T1", "T6", "T3", "T5"]


def test_refactor_and_pattern_rank_with_structural_changes():
    queue = [
        _finding("T1", 0, "performance", Tier.SHOULD_FIX),
        _finding("T2", 1, "pattern", Tier.SHOULD_FIX),
        _finding("T3", 2, "refactor", Tier.SHOULD_FIX),
        _finding("T4", 3, "architecture", Tier.SHOULD_FIX),
    ]
    assert _ids(select_findings(queue, FixScope.MUST_AND_SHOULD)) == ["T2", "T3", "T4", "T1"]


def test_none_scope_is_empty(findings):
    assert select_findings(findings, FixScope.NONE) == []


def test_ties_break_on_thread_creation_order():
    later = _finding("T9", 9, "security", Tier.MUST_FIX)
    earlier = _finding("T3", 3, "security", Tier.MUST_FIX)
    assert _ids(select_findings([later, earlier], FixScope.MUST_FIX)) == ["T3", "T9"]


def test_unknown_scope_rejected(findings):
    with pytest.raises(ValueError):
        select_findings(findings, "everything")
