"""Abstract store interface.

Every backend (in-memory, SQLite, GitHub pull request comments) implements
this interface. The discussion log is append-only: there is no method to
edit or delete a comment, and decisions are written once per subject.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from prpanel_store.models import CommentRecord, DecisionRecord, RunRecord


class StoreError(Exception):
    """Raised when a backend cannot durably persist or read records."""


class BaseStore(ABC):
    """Pluggable persistence layer for one or more review subjects.

    Subjects are independent: nothing written for one subject is visible when
    reading another, so concurrent runs over different subjects share no state.
    """

    @abstractmethod
    def append_comments(self, records: list[CommentRecord]) -> None:
        """Durably append a batch of comments.

        The batch is all-or-nothing. Records whose ``comment_id`` is already
        stored are skipped so a retried append never duplicates a comment.
        """

    @abstractmethod
    def list_comments(self, subject_id: str) -> list[CommentRecord]:
        """Return every comment for a subject ordered by ``seq``."""

    @abstractmethod
    def mark_resolved(self, subject_id: str, thread_id: str) -> None:
        """Flag a thread as resolved. Resolution is never undone."""

    @abstractmethod
    def resolved_threads(self, subject_id: str) -> set[str]:
        """Return the ids of resolved threads for a subject."""

    @abstractmethod
    def save_decisions(self, subject_id: str, records: list[DecisionRecord]) -> None:
        """Append decision records for a subject.

        Decisions are write-once per thread: raises StoreError, writing nothing,
        if any record targets a thread that already has a decision.
        """

    @abstractmethod
    def list_decisions(self, subject_id: str) -> list[DecisionRecord]:
        """Return every decision written for a subject, in write order."""

    @abstractmethod
    def mark_stage_done(self, subject_id: str, stage_id: str, completed_at: str) -> None:
        """Persist the completion marker of a pipeline stage."""

    @abstractmethod
    def completed_stages(self, subject_id: str) -> dict[str, str]:
        """Return ``{stage_id: completed_at}`` for a subject."""

    def save_run(self, record: RunRecord) -> None:
        """Persist a run summary. Backends without run history ignore it."""

    def list_runs(self, repo: str, subject_id: str | None = None) -> list[RunRecord]:
        """Return past runs for a repo, optionally filtered by subject."""
        return []

    def close(self) -> None:
        """Release any resources held by the store (connections, clients).

        Default is a no-op so callers can always call close() safely.
        """
