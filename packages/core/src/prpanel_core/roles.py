"""Reviewer roles as configuration data.

Each role is one variant of the same ``review(subject, history, ruleset)``
capability; what differs is the data below: its voice, which stances it may
take and whether it tags severity.
"""

from __future__ import annotations

from dataclasses import dataclass

from prpanel_core.models import ARBITER_STANCES, Role, Stance

_DEBATE_STANCES = frozenset({Stance.RAISE, Stance.AGREE, Stance.DISAGREE, Stance.WITHDRAW})


@dataclass(frozen=True)
class RoleProfile:
    role: Role
    voice: str
    stances: frozenset[Stance]
    # "required": exactly one severity; "optional": may carry one; "none": stripped.
    severity: str

    @property
    def prefix(self) -> str:
        return self.role.prefix


ROLE_PROFILES: dict[Role, RoleProfile] = {
    Role.ARCHITECT: RoleProfile(
        role=Role.ARCHITECT,
        voice=(
            "You are the architect on a review panel. You care about long-lived structure: "
            "contracts, boundaries, naming that leaks into public interfaces, and whether the "
            "design will survive the work already scheduled after it."
        ),
        stances=_DEBATE_STANCES,
        severity="optional",
    ),
    Role.PRAGMATIST: RoleProfile(
        role=Role.PRAGMATIST,
        voice=(
            "You are the pragmatist on a review panel. You care about shipping correct code: "
            "real bugs, missing error handling, missing tests on risky logic. You push back "
            "on speculative or cosmetic requests."
        ),
        stances=_DEBATE_STANCES,
        severity="optional",
    ),
    Role.RISK: RoleProfile(
        role=Role.RISK,
        voice=(
            "You assess risk on a review panel. Report security exposure, data loss and "
            "irreversible changes. Every comment you make carries exactly one severity: "
            "critical, high, medium or low."
        ),
        stances=_DEBATE_STANCES,
        severity="required",
    ),
    Role.ARBITER: RoleProfile(
        role=Role.ARBITER,
        voice=(
            "You are the binding arbiter of a review panel. You do not report new issues. "
            "For each thread, weigh the arguments on their merits, not on who made them, and "
            "record a decision. An override of a security finding must state its reasoning; "
            "a downgrade of a should-fix item must state the schedule pressure behind it."
        ),
        stances=ARBITER_STANCES,
        severity="none",
    ),
    Role.FIXER: RoleProfile(
        role=Role.FIXER,
        voice="You implement the smallest change that resolves one review finding.",
        stances=frozenset({Stance.AGREE}),
        severity="none",
    ),
}


def profile_for(role: Role | str) -> RoleProfile:
    return ROLE_PROFILES[Role(role)]
