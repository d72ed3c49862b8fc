"""SQLiteStore - local file-based store for the discussion log and run history.

Why SQLite as the durable local store:
- Batteries included: ships with Python, no extra dependencies.
- Transactions: an append batch commits as a unit, so a stage's output is
  either fully visible to the next stage or not visible at all.
- Lets a halted run be resumed: stage markers and comments survive the
  process, and `prpanel history` / `prpanel stats` read the runs table.

Schema:
  comments   - append-only discussion log, unique on (subject_id, comment_id)
  resolved   - resolved thread ids per subject
  decisions  - one row per thread, written once
  stages     - stage completion markers
  runs       - one row per run (stage table and tier counts as JSON)
"""

from __future__ import annotations

import json
import logging
import sqlite3

from prpanel_store.base import BaseStore, StoreError
from prpanel_store.models import CommentRecord, DecisionRecord, RunRecord

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS comments (
    subject_id  TEXT NOT NULL,
    comment_id  TEXT NOT NULL,
    thread_id   TEXT NOT NULL,
    seq         INTEGER NOT NULL,
    role        TEXT NOT NULL,
    body        TEXT NOT NULL,
    created_at  TEXT NOT NULL,
    stage       TEXT,
    path        TEXT,
    line        INTEGER,
    category    TEXT,
    severity    TEXT,
    stance      TEXT,
    tags_json   TEXT DEFAULT '[]',
    tier        TEXT,
    PRIMARY KEY (subject_id, comment_id)
);
CREATE INDEX IF NOT EXISTS idx_comments_seq ON comments (subject_id, seq);
CREATE TABLE IF NOT EXISTS resolved (
    subject_id  TEXT NOT NULL,
    thread_id   TEXT NOT NULL,
    PRIMARY KEY (subject_id, thread_id)
);
CREATE TABLE IF NOT EXISTS decisions (
    subject_id  TEXT NOT NULL,
    thread_id   TEXT NOT NULL,
    tier        TEXT NOT NULL,
    rationale   TEXT,
    rule        TEXT,
    decided_by  TEXT,
    created_at  TEXT,
    PRIMARY KEY (subject_id, thread_id)
);
CREATE TABLE IF NOT EXISTS stages (
    subject_id    TEXT NOT NULL,
    stage_id      TEXT NOT NULL,
    completed_at  TEXT NOT NULL,
    PRIMARY KEY (subject_id, stage_id)
);
CREATE TABLE IF NOT EXISTS runs (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    repo               TEXT NOT NULL,
    subject_id         TEXT NOT NULL,
    head_sha           TEXT,
    started_at         TEXT,
    finished_at        TEXT,
    verdict            TEXT,
    halted_stage       TEXT,
    stage_status_json  TEXT DEFAULT '{}',
    tier_counts_json   TEXT DEFAULT '{}',
    fixed              INTEGER DEFAULT 0,
    blocked            INTEGER DEFAULT 0,
    held               INTEGER DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_runs_repo ON runs (repo, subject_id);
"""


class SQLiteStore(BaseStore):
    """Stores the discussion log and run history in a local SQLite file.

    The database file path defaults to `.prpanel.db` in the current working
    directory. Configure via .prpanel.yml: `store_path: /path/to/prpanel.db`.
    """

    def __init__(self, db_path: str = ".prpanel.db"):
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    def append_comments(self, records: list[CommentRecord]) -> None:
        try:
            with self._conn:
                self._conn.executemany(
                    """
                    INSERT OR IGNORE INTO comments
                      (subject_id, comment_id, thread_id, seq, role, body, created_at,
                       stage, path, line, category, severity, stance, tags_json, tier)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            r.subject_id,
                            r.comment_id,
                            r.thread_id,
                            r.seq,
                            r.role,
                            r.body,
                            r.created_at,
                            r.stage,
                            r.path,
                            r.line,
                            r.category,
                            r.severity,
                            r.stance,
                            json.dumps(list(r.tags)),
                            r.tier,
                        )
                        for r in records
                    ],
                )
        except sqlite3.Error as e:
            raise StoreError(f"Could not append {len(records)} comment(s): {e}") from e

    def list_comments(self, subject_id: str) -> list[CommentRecord]:
        rows = self._conn.execute(
            "SELECT * FROM comments WHERE subject_id=? ORDER BY seq",
            (subject_id,),
        ).fetchall()
        return [self._row_to_comment(r) for r in rows]

    def mark_resolved(self, subject_id: str, thread_id: str) -> None:
        with self._conn:
            self._conn.execute(
                "INSERT OR IGNORE INTO resolved (subject_id, thread_id) VALUES (?, ?)",
                (subject_id, thread_id),
            )

    def resolved_threads(self, subject_id: str) -> set[str]:
        rows = self._conn.execute("SELECT thread_id FROM resolved WHERE subject_id=?", (subject_id,)).fetchall()
        return {r["thread_id"] for r in rows}

    def save_decisions(self, subject_id: str, records: list[DecisionRecord]) -> None:
        try:
            with self._conn:
                self._conn.executemany(
                    """
                    INSERT INTO decisions
                      (subject_id, thread_id, tier, rationale, rule, decided_by, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (subject_id, r.thread_id, r.tier, r.rationale, r.rule, r.decided_by, r.created_at)
                        for r in records
                    ],
                )
        except sqlite3.IntegrityError as e:
            # The primary key is (subject_id, thread_id): a thread is decided once.
            raise StoreError(f"Threads already decided for {subject_id}: {e}") from e

    def list_decisions(self, subject_id: str) -> list[DecisionRecord]:
        rows = self._conn.execute(
            "SELECT * FROM decisions WHERE subject_id=? ORDER BY rowid",
            (subject_id,),
        ).fetchall()
        return [
            DecisionRecord(
                subject_id=r["subject_id"],
                thread_id=r["thread_id"],
                tier=r["tier"],
                rationale=r["rationale"] or "",
                rule=r["rule"] or "",
                decided_by=r["decided_by"] or "arbiter",
                created_at=r["created_at"] or "",
            )
            for r in rows
        ]

    def mark_stage_done(self, subject_id: str, stage_id: str, completed_at: str) -> None:
        with self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO stages (subject_id, stage_id, completed_at) VALUES (?, ?, ?)",
                (subject_id, stage_id, completed_at),
            )

    def completed_stages(self, subject_id: str) -> dict[str, str]:
        rows = self._conn.execute(
            "SELECT stage_id, completed_at FROM stages WHERE subject_id=?", (subject_id,)
        ).fetchall()
        return {r["stage_id"]: r["completed_at"] for r in rows}

    def save_run(self, record: RunRecord) -> None:
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO runs
                  (repo, subject_id, head_sha, started_at, finished_at, verdict, halted_stage,
                   stage_status_json, tier_counts_json, fixed, blocked, held)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.repo,
                    record.subject_id,
                    record.head_sha,
                    record.started_at,
                    record.finished_at,
                    record.verdict,
                    record.halted_stage,
                    json.dumps(record.stage_status),
                    json.dumps(record.tier_counts),
                    record.fixed,
                    record.blocked,
                    record.held,
                ),
            )

    def list_runs(self, repo: str, subject_id: str | None = None) -> list[RunRecord]:
        if subject_id is not None:
            rows = self._conn.execute(
                "SELECT * FROM runs WHERE repo=? AND subject_id=? ORDER BY started_at",
                (repo, subject_id),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM runs WHERE repo=? ORDER BY started_at",
                (repo,),
            ).fetchall()
        return [self._row_to_run(r) for r in rows]

    def close(self) -> None:
        self._conn.close()

    @staticmethod
    def _row_to_comment(row: sqlite3.Row) -> CommentRecord:
        return CommentRecord(
            subject_id=row["subject_id"],
            comment_id=row["comment_id"],
            thread_id=row["thread_id"],
            seq=row["seq"],
            role=row["role"],
            body=row["body"],
            created_at=row["created_at"],
            stage=row["stage"] or "",
            path=row["path"],
            line=row["line"],
            category=row["category"],
            severity=row["severity"],
            stance=row["stance"] or "raise",
            tags=tuple(json.loads(row["tags_json"] or "[]")),
            tier=row["tier"],
        )

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> RunRecord:
        return RunRecord(
            repo=row["repo"],
            subject_id=row["subject_id"],
            head_sha=row["head_sha"] or "",
            started_at=row["started_at"] or "",
            finished_at=row["finished_at"] or "",
            verdict=row["verdict"] or "",
            halted_stage=row["halted_stage"],
            stage_status=json.loads(row["stage_status_json"] or "{}"),
            tier_counts=json.loads(row["tier_counts_json"] or "{}"),
            fixed=row["fixed"],
            blocked=row["blocked"],
            held=row["held"],
        )
