"""Shared fixtures: an in-memory discussion log with a deterministic clock."""

from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from prpanel_core.discussion import CommentDraft, DiscussionStore
from prpanel_core.models import ReviewSubject
from prpanel_store.memory import MemoryStore

SUBJECT_ID = "owner/repo#7"


@pytest.fixture
def clock():
    """Every call is one second later than the previous one."""
    ticks = itertools.count()
    start = datetime(2026, 1, 1, tzinfo=timezone.utc)
    return lambda: start + timedelta(seconds=next(ticks))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def discussion(store, clock):
    return DiscussionStore(store, SUBJECT_ID, clock=clock)


@pytest.fixture
def subject():
    return ReviewSubject(
        subject_id=SUBJECT_ID,
        repo="owner/repo",
        changed_files=("app/db.py", "app/views.py"),
        base_ref="main",
        head_ref="feature/search",
        head_sha="a" * 40,
        title="Add search endpoint",
        description="Adds /search backed by a raw SQL query.",
        number=7,
        diff="--- app/db.py\n+cursor.execute(f'SELECT * FROM t WHERE q={q}')",
    )


@pytest.fixture
def post(discussion):
    """Append one comment and return its thread id."""

    def _post(role, body, thread=None, stage="test", **fields):
        if "tags" in fields:
            fields["tags"] = tuple(fields["tags"])
        [record] = discussion.append([CommentDraft(role=role, body=body, thread_id=thread, **fields)], stage)
        return record.thread_id

    return _post
