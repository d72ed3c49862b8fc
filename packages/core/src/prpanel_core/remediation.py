"""Remediation dispatch: plan, implement and verify each in-scope finding.

Tasks run one at a time in the order produced by prpanel_core.scope. Each
task walks a small state machine:

    Pending → Planned → Implemented → Verified
                 ↑           │
                 └───────────┘  corrective attempt after a failed verification

Any state except Verified can move to Blocked. A task whose planner needs an
operator answer stays Planned with ``hold`` set until the answer arrives.
A thread is resolved only after its task reaches Verified.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from rich.console import Console

from prpanel_core.discussion import DiscussionStore, render_comment
from prpanel_core.errors import AmbiguityRequiresInput, VerificationFailure
from prpanel_core.models import Finding, TaskStatus
from prpanel_core.utils import git

console = Console()
logger = logging.getLogger(__name__)

# Verification failures reach Blocked from Implemented. Pending and Planned also
# reach it when a planner or implementer raises, so that task ends Blocked
# while the rest of the queue continues.
VALID_TASK_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.PLANNED, TaskStatus.BLOCKED},
    TaskStatus.PLANNED: {TaskStatus.IMPLEMENTED, TaskStatus.BLOCKED},
    TaskStatus.IMPLEMENTED: {TaskStatus.VERIFIED, TaskStatus.PLANNED, TaskStatus.BLOCKED},
    TaskStatus.VERIFIED: set(),
    TaskStatus.BLOCKED: set(),
}


class InvalidTaskTransitionError(Exception):
    def __init__(self, current: TaskStatus, target: TaskStatus, thread_id: str):
        self.current = current
        self.target = target
        super().__init__(f"Invalid task transition from {current.value} to {target.value} for {thread_id}")


@dataclass
class Plan:
    summary: str
    files: list[str]
    steps: list[str] = field(default_factory=list)


@dataclass
class ChangeResult:
    """What an implementation produced: a change reference and the files it touched."""

    ref: str
    files: list[str]


@dataclass
class RemediationTask:
    finding: Finding
    status: TaskStatus = TaskStatus.PENDING
    plan: Plan | None = None
    hold: str | None = None  # open question while waiting for operator input
    answer: str | None = None
    attempts: int = 0
    change_refs: list[str] = field(default_factory=list)
    verify_output: str = ""
    message: str | None = None

    @property
    def thread_id(self) -> str:
        return self.finding.thread_id

    @property
    def held(self) -> bool:
        return self.status is TaskStatus.PLANNED and self.hold is not None

    def transition(self, target: TaskStatus) -> None:
        if target not in VALID_TASK_TRANSITIONS[self.status]:
            raise InvalidTaskTransitionError(self.status, target, self.thread_id)
        logger.debug("%s: %s → %s", self.thread_id, self.status.value, target.value)
        self.status = target

    def block(self, message: str) -> None:
        self.message = message
        if self.status is not TaskStatus.BLOCKED:
            self.transition(TaskStatus.BLOCKED)


# ---------------------------------------------------------------------- #
# Collaborators                                                           #
# ---------------------------------------------------------------------- #


class Planner(ABC):
    @abstractmethod
    def plan(self, task: RemediationTask, context: str, answer: str | None = None) -> Plan:
        """Return a plan, or raise AmbiguityRequiresInput with the open question."""


class Implementer(ABC):
    @abstractmethod
    def implement(self, task: RemediationTask, plan: Plan, feedback: str | None = None) -> ChangeResult:
        """Apply the plan. ``feedback`` carries the previous verification failure."""


class Verifier(ABC):
    @abstractmethod
    def verify(self, task: RemediationTask, change: ChangeResult) -> str:
        """Return a short success summary, or raise VerificationFailure."""


class CommandVerifier(Verifier):
    """Runs configured shell commands; any non-zero exit fails verification.

    ``{files}`` in a command is replaced with the shell-quoted paths the
    change touched, e.g. ``ruff check {files}`` or ``pytest -q``.
    """

    def __init__(self, commands: list[str], cwd: str = ".", timeout: int = 600):
        self.commands = list(commands)
        self.cwd = cwd
        self.timeout = timeout

    def verify(self, task: RemediationTask, change: ChangeResult) -> str:
        if not self.commands:
            return "no verification commands configured"
        files = " ".join(shlex.quote(f) for f in change.files)
        for template in self.commands:
            command = template.replace("{files}", files)
            try:
                result = subprocess.run(
                    command,
                    shell=True,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                    cwd=self.cwd,
                )
            except subprocess.TimeoutExpired as e:
                raise VerificationFailure(f"`{command}` timed out after {self.timeout}s") from e
            if result.returncode != 0:
                output = (result.stdout + result.stderr)[-4000:]
                raise VerificationFailure(f"`{command}` exited with {result.returncode}", output=output)
        return "passed: " + "; ".join(self.commands)


_PLAN_SYSTEM = """You are the fixer on a code review panel. Plan the smallest change that
resolves the finding below without touching unrelated code.

Respond with only JSON:
{"summary": "<one sentence>", "files": ["<path>", ...], "steps": ["<step>", ...],
 "question": "<a question for the author if the right fix is genuinely ambiguous, else null>"}"""

_IMPLEMENT_SYSTEM = """You are the fixer on a code review panel. Apply the plan below.

Respond with only JSON:
{"message": "<commit message>", "files": [{"path": "<path>", "content": "<full new file content>"}, ...]}"""


class LLMFixer(Planner, Implementer):
    """Plans and implements fixes with a model invoker; each fix becomes one git commit."""

    def __init__(self, invoker, repo_root: str = ".", max_chars_per_file: int = 20000, commit: bool = True):
        self.invoker = invoker
        self.root = Path(repo_root).resolve()
        self.max_chars_per_file = max_chars_per_file
        self.commit = commit

    def _read(self, path: str) -> str:
        target = self._inside_root(path)
        if not target.is_file():
            return "(file does not exist yet)"
        return target.read_text(errors="replace")[: self.max_chars_per_file]

    def _inside_root(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if target != self.root and self.root not in target.parents:
            raise ValueError(f"Refusing to touch {path!r}: outside the repository.")
        return target

    def plan(self, task: RemediationTask, context: str, answer: str | None = None) -> Plan:
        finding = task.finding
        source = f"\n\n### {finding.path}\n```\n{self._read(finding.path)}\n```" if finding.path else ""
        user = (
            f"## Finding {finding.thread_id} ({finding.tier.label}, {finding.category or 'uncategorized'}) "
            f"at {finding.location}\n{finding.description}\n\n## Discussion\n{context}{source}"
        )
        if answer:
            user += f"\n\n## Author's answer to your question\n{answer}"

        data = self.invoker.complete_json(_PLAN_SYSTEM, user)
        if not isinstance(data, dict):
            raise RuntimeError("planner returned no usable plan")
        question = data.get("question")
        if question and not answer:
            raise AmbiguityRequiresInput(str(question))
        files = [f for f in data.get("files") or [] if isinstance(f, str) and f]
        if not files and finding.path:
            files = [finding.path]
        if not files:
            raise RuntimeError("plan names no files to change")
        steps = [s for s in data.get("steps") or [] if isinstance(s, str)]
        return Plan(summary=str(data.get("summary") or finding.description), files=files, steps=steps)

    def implement(self, task: RemediationTask, plan: Plan, feedback: str | None = None) -> ChangeResult:
        sources = "\n\n".join(f"### {path}\n```\n{self._read(path)}\n```" for path in plan.files)
        user = f"## Plan\n{plan.summary}\n" + "\n".join(f"- {s}" for s in plan.steps) + f"\n\n## Files\n{sources}"
        if feedback:
            user += f"\n\n## The previous attempt failed verification\n```\n{feedback}\n```"

        data = self.invoker.complete_json(_IMPLEMENT_SYSTEM, user)
        if not isinstance(data, dict) or not isinstance(data.get("files"), list):
            raise RuntimeError("implementation returned no file changes")

        written = []
        for entry in data["files"]:
            if not isinstance(entry, dict) or not isinstance(entry.get("path"), str):
                continue
            target = self._inside_root(entry["path"])
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(str(entry.get("content") or ""))
            written.append(entry["path"])
        if not written:
            raise RuntimeError("implementation returned no file changes")

        message = str(data.get("message") or plan.summary)
        message = f"{message}\n\nResolves review thread {task.thread_id}."
        ref = git.commit_paths(written, message, cwd=str(self.root)) if self.commit else "uncommitted"
        return ChangeResult(ref=ref, files=written)


# ---------------------------------------------------------------------- #
# Dispatcher                                                              #
# ---------------------------------------------------------------------- #


class RemediationDispatcher:
    """Runs remediation tasks strictly in queue order."""

    def __init__(
        self,
        discussion: DiscussionStore,
        planner: Planner,
        implementer: Implementer,
        verifier: Verifier,
        answer_provider: Callable[[RemediationTask, str], str | None] | None = None,
        max_verify_attempts: int = 2,
        stop_on_first_failure: bool = False,
        should_abort: Callable[[], bool] | None = None,
    ):
        self.discussion = discussion
        self.planner = planner
        self.implementer = implementer
        self.verifier = verifier
        self.answer_provider = answer_provider
        self.max_verify_attempts = max(1, max_verify_attempts)
        self.stop_on_first_failure = stop_on_first_failure
        self.should_abort = should_abort or (lambda: False)
        self.aborted = False

    def run(self, findings: list[Finding]) -> list[RemediationTask]:
        """Execute one task per finding. Tasks not reached stay Pending."""
        resolved = self.discussion.backend.resolved_threads(self.discussion.subject_id)
        tasks = []
        for finding in findings:
            if finding.thread_id in resolved:
                logger.info("%s is already resolved; no remediation needed", finding.thread_id)
                continue
            tasks.append(RemediationTask(finding))

        for index, task in enumerate(tasks):
            if self.should_abort():
                self.aborted = True
                console.print("[yellow]Remediation aborted by operator between tasks.[/yellow]")
                break
            console.print(
                f"\n[[{index + 1}/{len(tasks)}]] Fixing [bold]{task.thread_id}[/bold] "
                f"({task.finding.tier.label}) at {task.finding.location}"
            )
            self._run_task(task)
            console.print(f"  → {task.status.value}" + (f": {task.message}" if task.message else ""))
            if task.status is TaskStatus.BLOCKED and self.stop_on_first_failure:
                console.print("[yellow]Stopping remediation after the first blocked task.[/yellow]")
                break
        return tasks

    def _context(self, task: RemediationTask) -> str:
        thread = self.discussion.thread(task.thread_id)
        if thread is None:
            return "(no discussion)"
        return "\n".join(render_comment(c) for c in thread.comments)

    def _plan(self, task: RemediationTask, context: str) -> bool:
        """Plan the task. Returns False if it stays held waiting for input."""
        try:
            task.plan = self.planner.plan(task, context)
        except AmbiguityRequiresInput as e:
            task.transition(TaskStatus.PLANNED)
            task.hold = e.question
            answer = self.answer_provider(task, e.question) if self.answer_provider else None
            if not answer:
                task.message = f"held: {e.question}"
                logger.info("%s held for input: %s", task.thread_id, e.question)
                return False
            task.answer = answer
            try:
                task.plan = self.planner.plan(task, context, answer=answer)
            except AmbiguityRequiresInput as again:
                task.hold = again.question
                task.message = f"held: {again.question}"
                return False
            task.hold = None
            return True
        task.transition(TaskStatus.PLANNED)
        return True

    def _run_task(self, task: RemediationTask) -> None:
        try:
            if not self._plan(task, self._context(task)):
                return

            feedback = None
            for attempt in range(1, self.max_verify_attempts + 1):
                task.attempts = attempt
                if task.status is TaskStatus.IMPLEMENTED:
                    task.transition(TaskStatus.PLANNED)
                change = self.implementer.implement(task, task.plan, feedback=feedback)
                task.change_refs.append(change.ref)
                task.transition(TaskStatus.IMPLEMENTED)
                try:
                    task.verify_output = self.verifier.verify(task, change)
                except VerificationFailure as e:
                    task.verify_output = e.output or str(e)
                    feedback = f"{e}\n{e.output}".strip()
                    logger.warning(
                        "%s failed verification (attempt %d/%d): %s",
                        task.thread_id,
                        attempt,
                        self.max_verify_attempts,
                        e,
                    )
                    continue

                task.transition(TaskStatus.VERIFIED)
                rationale = (
                    f"Fixed in {', '.join(task.change_refs)}: {task.plan.summary}\n\n"
                    f"Verification {task.verify_output}"
                )
                self.discussion.resolve(task.thread_id, rationale)
                return

            task.block(f"verification failed after {self.max_verify_attempts} attempt(s)")
        except Exception as e:
            if task.status is TaskStatus.VERIFIED:
                # The change stands; only the resolution reply failed.
                logger.error("Task %s verified but its thread could not be resolved: %s", task.thread_id, e)
                task.message = f"thread not resolved: {e}"
                return
            logger.error("Task %s blocked: %s", task.thread_id, e)
            task.block(f"{type(e).__name__}: {e}")
