"""In-memory store - the default when no store is configured.

Holds the discussion log for the lifetime of the process, which is all a
single `prpanel review start` run needs. Nothing survives the process, so
history and stats require SQLiteStore instead.
"""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING

from prpanel_store.base import BaseStore, StoreError

if TYPE_CHECKING:
    from prpanel_store.models import CommentRecord, DecisionRecord


class MemoryStore(BaseStore):
    def __init__(self):
        self._comments: dict[str, list[CommentRecord]] = defaultdict(list)
        self._resolved: dict[str, set[str]] = defaultdict(set)
        self._decisions: dict[str, list[DecisionRecord]] = {}
        self._stages: dict[str, dict[str, str]] = defaultdict(dict)

    def append_comments(self, records: list[CommentRecord]) -> None:
        for record in records:
            existing = self._comments[record.subject_id]
            if any(c.comment_id == record.comment_id for c in existing):
                continue
            existing.append(record)

    def list_comments(self, subject_id: str) -> list[CommentRecord]:
        return sorted(self._comments.get(subject_id, []), key=lambda c: c.seq)

    def mark_resolved(self, subject_id: str, thread_id: str) -> None:
        self._resolved[subject_id].add(thread_id)

    def resolved_threads(self, subject_id: str) -> set[str]:
        return set(self._resolved.get(subject_id, set()))

    def save_decisions(self, subject_id: str, records: list[DecisionRecord]) -> None:
        decided = {d.thread_id for d in self._decisions.get(subject_id, [])}
        clashes = sorted(decided & {r.thread_id for r in records})
        if clashes:
            raise StoreError(f"Threads already decided for {subject_id}: {', '.join(clashes)}")
        self._decisions.setdefault(subject_id, []).extend(records)

    def list_decisions(self, subject_id: str) -> list[DecisionRecord]:
        return list(self._decisions.get(subject_id, []))

    def mark_stage_done(self, subject_id: str, stage_id: str, completed_at: str) -> None:
        self._stages[subject_id][stage_id] = completed_at

    def completed_stages(self, subject_id: str) -> dict[str, str]:
        return dict(self._stages.get(subject_id, {}))
