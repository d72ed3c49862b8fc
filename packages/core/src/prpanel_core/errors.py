"""Error taxonomy for a review run.

Fatal errors (PreflightError, ResolutionError, StageDispatchError,
PersistenceError) abort the run and name the component that failed. VerificationFailure and
AmbiguityRequiresInput are raised by remediation collaborators and recorded
against their task by the dispatcher; they never abort the run.
"""

from __future__ import annotations


class PanelError(Exception):
    """Base class for every error prpanel raises on purpose."""

    component = "prpanel"

    def __str__(self) -> str:
        return f"[{self.component}] {super().__str__()}"


class PreflightError(PanelError):
    """Host tooling or credentials are missing. Raised before any stage runs."""

    component = "preflight"


class ResolutionError(PanelError):
    """The review subject could not be found or chosen. Raised before any stage runs."""

    component = "subject-resolution"


class StageDispatchError(PanelError):
    """A pipeline stage failed after its retry; the pipeline halts."""

    component = "scheduler"

    def __init__(self, stage_id: str, cause: BaseException | str):
        self.stage_id = stage_id
        self.cause = cause
        super().__init__(f"stage {stage_id!r} failed after retry: {cause}")


class PersistenceError(PanelError):
    """The store could not durably write or read records outside a pipeline stage."""

    component = "store"


class VerificationFailure(PanelError):
    """Validation of a remediation change failed."""

    component = "verifier"

    def __init__(self, message: str, output: str = ""):
        self.output = output
        super().__init__(message)


class AmbiguityRequiresInput(PanelError):
    """A remediation plan cannot be made without an answer from the operator."""

    component = "planner"

    def __init__(self, question: str):
        self.question = question
        super().__init__(question)
