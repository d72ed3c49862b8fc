"""The discussion log for one review subject.

DiscussionStore is the only writer of comments and thread state. It sits on
top of a prpanel_store backend and adds what the backend does not know:
thread grouping, sequence numbers, timestamps and the role prefix used when
a comment is rendered for a prompt or a report.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from prpanel_store.base import BaseStore, StoreError
from prpanel_store.models import CommentRecord

from prpanel_core.models import Role, Stance, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommentDraft:
    """A comment before it is appended. ``thread_id=None`` opens a new thread."""

    role: str
    body: str
    thread_id: str | None = None
    path: str | None = None
    line: int | None = None
    category: str | None = None
    severity: str | None = None
    stance: str = Stance.RAISE.value
    tags: tuple[str, ...] = ()
    tier: str | None = None


@dataclass
class Thread:
    thread_id: str
    path: str | None
    line: int | None
    comments: list[CommentRecord] = field(default_factory=list)
    resolved: bool = False

    @property
    def created_seq(self) -> int:
        return self.comments[0].seq

    @property
    def opener(self) -> CommentRecord:
        return self.comments[0]

    def roles(self) -> list[str]:
        """Roles that commented, in order of first appearance."""
        seen: list[str] = []
        for c in self.comments:
            if c.role not in seen:
                seen.append(c.role)
        return seen


def render_comment(comment: CommentRecord) -> str:
    """Render a comment with its role prefix, e.g. ``[RISK] (security/high) ...``."""
    meta = "/".join(p for p in (comment.category, comment.severity) if p)
    parts = [Role(comment.role).prefix]
    if meta:
        parts.append(f"({meta})")
    if comment.stance and comment.stance != Stance.RAISE.value:
        parts.append(f"<{comment.stance}>")
    parts.append(comment.body)
    return " ".join(parts)


class DiscussionStore:
    """Append-only discussion log for one subject.

    Comments are never edited or deleted; a thread is created by the first
    comment that targets it and can only move from unresolved to resolved.
    """

    def __init__(self, backend: BaseStore, subject_id: str, clock: Callable[[], datetime] = utc_now):
        self.backend = backend
        self.subject_id = subject_id
        self._clock = clock

    def now(self) -> str:
        return self._clock().isoformat()

    def comments(self) -> list[CommentRecord]:
        return self.backend.list_comments(self.subject_id)

    def comments_by_role(self, role: Role | str) -> list[CommentRecord]:
        role = Role(role).value
        return [c for c in self.comments() if c.role == role]

    def threads(self) -> list[Thread]:
        """Group the log into threads, ordered by creation."""
        resolved = self.backend.resolved_threads(self.subject_id)
        threads: dict[str, Thread] = {}
        for comment in self.comments():
            thread = threads.get(comment.thread_id)
            if thread is None:
                thread = Thread(comment.thread_id, comment.path, comment.line)
                threads[comment.thread_id] = thread
            thread.comments.append(comment)
        for thread_id, thread in threads.items():
            thread.resolved = thread_id in resolved
        return sorted(threads.values(), key=lambda t: t.created_seq)

    def thread(self, thread_id: str) -> Thread | None:
        for thread in self.threads():
            if thread.thread_id == thread_id:
                return thread
        return None

    def prepare(self, drafts: list[CommentDraft], stage_id: str) -> list[CommentRecord]:
        """Turn drafts into records with ids, sequence numbers and timestamps.

        Preparing once and appending the same records on retry is what makes a
        retried append idempotent: the backend skips ids it already holds.
        """
        existing = self.comments()
        next_seq = (existing[-1].seq + 1) if existing else 0
        thread_count = len({c.thread_id for c in existing})
        anchors = {c.thread_id: (c.path, c.line) for c in existing}

        records = []
        for offset, draft in enumerate(drafts):
            seq = next_seq + offset
            if draft.thread_id is None:
                thread_count += 1
                thread_id = f"T{thread_count}"
                path, line = draft.path, draft.line
                anchors[thread_id] = (path, line)
            else:
                thread_id = draft.thread_id
                if thread_id not in anchors:
                    raise ValueError(f"Reply targets unknown thread {thread_id!r}.")
                path, line = anchors[thread_id]
            records.append(
                CommentRecord(
                    subject_id=self.subject_id,
                    comment_id=f"{self.subject_id}/{seq}",
                    thread_id=thread_id,
                    seq=seq,
                    role=Role(draft.role).value,
                    body=draft.body.strip(),
                    created_at=self.now(),
                    stage=stage_id,
                    path=path,
                    line=line,
                    category=draft.category,
                    severity=draft.severity,
                    stance=draft.stance,
                    tags=tuple(draft.tags),
                    tier=draft.tier,
                )
            )
        return records

    def commit(self, records: list[CommentRecord]) -> None:
        """Append prepared records and confirm they are visible to readers.

        Raises StoreError if the backend accepted the write but a read-back does
        not show every record; the next stage must never see a partial history.
        """
        if not records:
            return
        self.backend.append_comments(records)
        visible = {c.comment_id for c in self.comments()}
        missing = [r.comment_id for r in records if r.comment_id not in visible]
        if missing:
            raise StoreError(f"{len(missing)} appended comment(s) are not visible after write: {missing[:3]}")
        logger.debug("Committed %d comment(s) for %s", len(records), self.subject_id)

    def append(self, drafts: list[CommentDraft], stage_id: str) -> list[CommentRecord]:
        records = self.prepare(drafts, stage_id)
        self.commit(records)
        return records

    def resolve(self, thread_id: str, rationale: str, stage_id: str = "remediation") -> CommentRecord:
        """Record a fixer reply with the resolution rationale and mark the thread resolved."""
        if self.thread(thread_id) is None:
            raise ValueError(f"Cannot resolve unknown thread {thread_id!r}.")
        [record] = self.append(
            [CommentDraft(role=Role.FIXER.value, body=rationale, thread_id=thread_id, stance=Stance.AGREE.value)],
            stage_id,
        )
        self.backend.mark_resolved(self.subject_id, thread_id)
        return record
