"""Tests for the remediation dispatcher, task state machine and collaborators."""

from __future__ import annotations

import subprocess
from unittest.mock import MagicMock

import pytest

from prpanel_core.errors import AmbiguityRequiresInput, VerificationFailure
from prpanel_core.models import Finding, Role, TaskStatus, ThreadKind, Tier
from prpanel_core.remediation import (
    ChangeResult,
    CommandVerifier,
    Implementer,
    InvalidTaskTransitionError,
    LLMFixer,
    Plan,
    Planner,
    RemediationDispatcher,
    RemediationTask,
    Verifier,
)


class FakePlanner(Planner):
    def __init__(self, question=None):
        self.question = question
        self.answers = []

    def plan(self, task, context, answer=None):
        self.answers.append(answer)
        if self.question and answer is None:
            raise AmbiguityRequiresInput(self.question)
        return Plan(summary=f"fix {task.thread_id}", files=["app/db.py"])


class FakeImplementer(Implementer):
    def __init__(self, error=None):
        self.error = error
        self.feedback = []

    def implement(self, task, plan, feedback=None):
        self.feedback.append(feedback)
        if self.error:
            raise self.error
        return ChangeResult(ref=f"sha{len(self.feedback)}", files=plan.files)


class FakeVerifier(Verifier):
    def __init__(self, failures=0):
        self.failures = failures

    def verify(self, task, change):
        if self.failures > 0:
            self.failures -= 1
            raise VerificationFailure("pytest exited with 1", output="1 failed")
        return "passed: pytest -q"


def _finding(thread_id, tier=Tier.MUST_FIX):
    return Finding(
        thread_id=thread_id,
        created_seq=0,
        category="security",
        severity="critical",
        origin_roles=("risk",),
        description="SQL injection",
        kind=ThreadKind.STANDALONE,
        path="app/db.py",
        line=3,
        tier=tier,
    )


@pytest.fixture
def threads(post):
    return [
        post("risk", "SQL injection", path="app/db.py", line=3, category="security", severity="critical"),
        post("pragmatist", "Null deref", path="app/db.py", line=9, category="correctness"),
    ]


def _dispatcher(discussion, planner=None, implementer=None, verifier=None, **kwargs):
    return RemediationDispatcher(
        discussion,
        planner or FakePlanner(),
        implementer or FakeImplementer(),
        verifier or FakeVerifier(),
        **kwargs,
    )


class TestTaskStateMachine:
    def test_happy_path_transitions(self):
        task = RemediationTask(_finding("T1"))
        for status in (TaskStatus.PLANNED, TaskStatus.IMPLEMENTED, TaskStatus.VERIFIED):
            task.transition(status)
        assert task.status is TaskStatus.VERIFIED

    def test_cannot_skip_implementation(self):
        task = RemediationTask(_finding("T1"))
        task.transition(TaskStatus.PLANNED)
        with pytest.raises(InvalidTaskTransitionError):
            task.transition(TaskStatus.VERIFIED)

    def test_collaborator_errors_block_before_implementation(self):
        for reached in ((), (TaskStatus.PLANNED,)):
            task = RemediationTask(_finding("T1"))
            for status in reached:
                task.transition(status)
            task.block("planner crashed")
            assert task.status is TaskStatus.BLOCKED

    def test_terminal_states_are_final(self):
        task = RemediationTask(_finding("T1"))
        task.block("nope")
        with pytest.raises(InvalidTaskTransitionError):
            task.transition(TaskStatus.PLANNED)


class TestDispatcher:
    def test_verified_task_resolves_thread(self, discussion, threads):
        [task] = _dispatcher(discussion).run([_finding(threads[0])])

        assert task.status is TaskStatus.VERIFIED
        assert task.change_refs == ["sha1"]
        assert threads[0] in discussion.backend.resolved_threads(discussion.subject_id)
        [reply] = discussion.comments_by_role(Role.FIXER)
        assert reply.thread_id == threads[0]
        assert "sha1" in reply.body

    def test_two_failed_verifications_block_task(self, discussion, threads):
        implementer = FakeImplementer()
        [task] = _dispatcher(discussion, implementer=implementer, verifier=FakeVerifier(failures=2)).run(
            [_finding(threads[0])]
        )

        assert task.status is TaskStatus.BLOCKED
        assert task.attempts == 2
        assert threads[0] not in discussion.backend.resolved_threads(discussion.subject_id)
        assert discussion.comments_by_role(Role.FIXER) == []
        assert implementer.feedback[0] is None
        assert "1 failed" in implementer.feedback[1]

    def test_corrective_attempt_can_succeed(self, discussion, threads):
        [task] = _dispatcher(discussion, verifier=FakeVerifier(failures=1)).run([_finding(threads[0])])
        assert task.status is TaskStatus.VERIFIED
        assert task.change_refs == ["sha1", "sha2"]

    def test_ambiguity_without_answer_holds_task(self, discussion, threads):
        implementer = FakeImplementer()
        planner = FakePlanner(question="Escape or parameterise?")
        [task] = _dispatcher(discussion, planner=planner, implementer=implementer).run([_finding(threads[0])])

        assert task.held
        assert task.status is TaskStatus.PLANNED
        assert task.hold == "Escape or parameterise?"
        assert implementer.feedback == []
        assert threads[0] not in discussion.backend.resolved_threads(discussion.subject_id)

    def test_answer_releases_held_task(self, discussion, threads):
        planner = FakePlanner(question="Escape or parameterise?")
        [task] = _dispatcher(discussion, planner=planner, answer_provider=lambda t, q: "parameterise").run(
            [_finding(threads[0])]
        )
        assert task.status is TaskStatus.VERIFIED
        assert not task.held
        assert planner.answers == [None, "parameterise"]

    def test_unexpected_error_blocks_only_that_task(self, discussion, threads):
        class FlakyImplementer(FakeImplementer):
            def implement(self, task, plan, feedback=None):
                if task.thread_id == threads[0]:
                    raise OSError("read-only file system")
                return super().implement(task, plan, feedback)

        tasks = _dispatcher(discussion, implementer=FlakyImplementer()).run(
            [_finding(threads[0]), _finding(threads[1])]
        )
        assert [t.status for t in tasks] == [TaskStatus.BLOCKED, TaskStatus.VERIFIED]
        assert "read-only" in tasks[0].message

    def test_stop_on_first_failure(self, discussion, threads):
        tasks = _dispatcher(
            discussion, implementer=FakeImplementer(error=OSError("boom")), stop_on_first_failure=True
        ).run([_finding(threads[0]), _finding(threads[1])])
        assert [t.status for t in tasks] == [TaskStatus.BLOCKED, TaskStatus.PENDING]

    def test_abort_between_tasks(self, discussion, threads):
        dispatcher = _dispatcher(discussion)
        dispatcher.should_abort = lambda: discussion.comments_by_role(Role.FIXER) != []
        tasks = dispatcher.run([_finding(threads[0]), _finding(threads[1])])
        assert [t.status for t in tasks] == [TaskStatus.VERIFIED, TaskStatus.PENDING]
        assert dispatcher.aborted

    def test_resolved_threads_not_requeued(self, discussion, threads):
        discussion.backend.mark_resolved(discussion.subject_id, threads[0])
        tasks = _dispatcher(discussion).run([_finding(threads[0]), _finding(threads[1])])
        assert [t.thread_id for t in tasks] == [threads[1]]


class TestCommandVerifier:
    def _change(self):
        return ChangeResult(ref="abc", files=["app/db.py", "my file.py"])

    def test_no_commands_passes(self):
        assert "no verification" in CommandVerifier([]).verify(RemediationTask(_finding("T1")), self._change())

    def test_files_placeholder_is_quoted(self, mocker):
        run = mocker.patch(
            "prpanel_core.remediation.subprocess.run",
            return_value=subprocess.CompletedProcess([], 0, stdout="", stderr=""),
        )
        CommandVerifier(["ruff check {files}"]).verify(RemediationTask(_finding("T1")), self._change())
        assert run.call_args[0][0] == "ruff check app/db.py 'my file.py'"

    def test_non_zero_exit_raises(self, mocker):
        mocker.patch(
            "prpanel_core.remediation.subprocess.run",
            return_value=subprocess.CompletedProcess([], 1, stdout="E501 line too long", stderr=""),
        )
        with pytest.raises(VerificationFailure) as exc:
            CommandVerifier(["ruff check {files}"]).verify(RemediationTask(_finding("T1")), self._change())
        assert "E501" in exc.value.output
        assert "[verifier]" in str(exc.value)


class TestLLMFixer:
    def test_plan_question_raises_ambiguity(self, tmp_path):
        invoker = MagicMock()
        invoker.complete_json.return_value = {"summary": "s", "files": [], "question": "Which API version?"}
        fixer = LLMFixer(invoker, repo_root=str(tmp_path), commit=False)
        with pytest.raises(AmbiguityRequiresInput, match="Which API version"):
            fixer.plan(RemediationTask(_finding("T1")), "context")

    def test_plan_defaults_to_finding_file(self, tmp_path):
        invoker = MagicMock()
        invoker.complete_json.return_value = {"summary": "Parameterise the query", "files": [], "question": None}
        plan = LLMFixer(invoker, repo_root=str(tmp_path), commit=False).plan(RemediationTask(_finding("T1")), "c")
        assert plan.files == ["app/db.py"]
        assert plan.summary == "Parameterise the query"

    def test_implement_writes_files(self, tmp_path):
        invoker = MagicMock()
        invoker.complete_json.return_value = {
            "message": "Parameterise search query",
            "files": [{"path": "app/db.py", "content": "cursor.execute(sql, (q,))\n"}],
        }
        fixer = LLMFixer(invoker, repo_root=str(tmp_path), commit=False)
        change = fixer.implement(RemediationTask(_finding("T1")), Plan("p", ["app/db.py"]))
        assert change.files == ["app/db.py"]
        assert (tmp_path / "app" / "db.py").read_text() == "cursor.execute(sql, (q,))\n"

    def test_implement_commits_change(self, tmp_path, mocker):
        commit = mocker.patch("prpanel_core.remediation.git.commit_paths", return_value="f" * 40)
        invoker = MagicMock()
        invoker.complete_json.return_value = {"message": "Fix", "files": [{"path": "a.py", "content": "x = 1\n"}]}
        change = LLMFixer(invoker, repo_root=str(tmp_path)).implement(RemediationTask(_finding("T1")), Plan("p", []))
        assert change.ref == "f" * 40
        assert "Resolves review thread T1" in commit.call_args[0][1]

    def test_refuses_paths_outside_repository(self, tmp_path):
        invoker = MagicMock()
        invoker.complete_json.return_value = {"files": [{"path": "../escape.py", "content": ""}]}
        fixer = LLMFixer(invoker, repo_root=str(tmp_path), commit=False)
        with pytest.raises(ValueError, match="outside the repository"):
            fixer.implement(RemediationTask(_finding("T1")), Plan("p", []))
