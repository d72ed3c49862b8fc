"""The fixed stage sequence of a review run."""

from __future__ import annotations

from dataclasses import dataclass

from prpanel_core.models import Role


@dataclass(frozen=True)
class Stage:
    stage_id: str
    role: Role
    allow_new_threads: bool
    round: int | None = None
    first_pass: bool = False

    def restrictions(self, rerun: bool = False) -> list[str]:
        """Human-readable capability limits passed to the reviewer for this stage."""
        rules = []
        if self.first_pass:
            rules.append("First pass: no other reviewer has commented yet; report your own findings.")
        if self.allow_new_threads and not rerun:
            rules.append("You may open new threads and reply to existing ones.")
        else:
            rules.append("Append-only: reply to existing threads by id. Do not open new threads.")
        if rerun:
            rules.append(
                "You have already reviewed this change. Your earlier comments are in the history; "
                "do not repeat them. Only add replies or updates."
            )
        if self.round is not None:
            rules.append(f"Debate round {self.round}.")
        return rules


CANONICAL_STAGES: tuple[Stage, ...] = (
    Stage("architect-r1", Role.ARCHITECT, allow_new_threads=True, round=1, first_pass=True),
    Stage("pragmatist-r1", Role.PRAGMATIST, allow_new_threads=True, round=1),
    Stage("architect-r2", Role.ARCHITECT, allow_new_threads=False, round=2),
    Stage("pragmatist-r2", Role.PRAGMATIST, allow_new_threads=False, round=2),
    Stage("risk", Role.RISK, allow_new_threads=True),
    Stage("arbiter", Role.ARBITER, allow_new_threads=False),
)
