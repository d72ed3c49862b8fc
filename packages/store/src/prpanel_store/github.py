"""GitHubStore - the pull request conversation itself is the discussion log.

Why the pull request as a store:
- Zero infra: reviewers and authors already read the pull request, so the
  debate is visible where the change lives.
- Durable and shared: a re-run from CI or another machine sees exactly the
  comments the previous run posted.

Data format: every appended batch of records is one issue comment on the
pull request, so a batch is visible whole or not at all. The human-readable
bodies are followed by a hidden marker holding the records as a JSON list,
e.g. ``<!-- prpanel:comments [...] -->``. Stage markers and resolved
threads live in one state comment that is edited in place; each batch of
decisions is one comment, and a thread is never decided twice.

Only markers in comments written by the authenticated account are read;
anything another user pastes into the conversation is ignored.

Subject ids have the form ``owner/name#number``.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict

from prpanel_store.base import BaseStore, StoreError
from prpanel_store.models import CommentRecord, DecisionRecord

logger = logging.getLogger(__name__)

_MARKER_RE = re.compile(r"<!-- prpanel:(comments|decisions|state) (.*?) -->", re.DOTALL)
_SUBJECT_RE = re.compile(r"^(?P<repo>[^#\s]+/[^#\s]+)#(?P<number>\d+)$")


def _marker(kind: str, payload) -> str:
    # "--" would terminate the HTML comment early.
    encoded = json.dumps(payload).replace("--", "\\u002d\\u002d")
    return f"<!-- prpanel:{kind} {encoded} -->"


def _render(record: CommentRecord) -> str:
    label = record.role.upper()
    meta = "/".join(p for p in (record.category, record.severity) if p)
    head = f"**[{label}]**" + (f" `{meta}`" if meta else "")
    if record.path:
        head += f" on `{record.path}" + (f":{record.line}`" if record.line else "`")
    return f"{head}\n\n{record.body}"


class GitHubStore(BaseStore):
    """Stores the discussion log as pull request comments.

    Run history is not kept here; list_runs() always returns [].
    """

    def __init__(self, token: str, client=None):
        if client is None:
            try:
                from github import Github
            except ImportError:
                raise ImportError("PyGithub is required for GitHubStore. Install prpanel.")
            client = Github(token)
        self._gh = client
        self._pulls: dict[str, object] = {}
        self._login: str | None = None

    def _pull(self, subject_id: str):
        if subject_id not in self._pulls:
            match = _SUBJECT_RE.match(subject_id)
            if not match:
                raise StoreError(f"GitHubStore needs subject ids like owner/name#123, got {subject_id!r}.")
            repo = self._gh.get_repo(match.group("repo"))
            self._pulls[subject_id] = repo.get_pull(int(match.group("number")))
        return self._pulls[subject_id]

    def _author(self) -> str:
        if self._login is None:
            try:
                self._login = self._gh.get_user().login
            except Exception as e:
                raise StoreError(f"Could not identify the authenticated GitHub account ({type(e).__name__}: {e})") from e
        return self._login

    def _markers(self, subject_id: str, kind: str) -> list[tuple[object, object]]:
        """Return ``(issue_comment, payload)`` for every marker of the given kind
        written by the authenticated account."""
        author = self._author()
        found = []
        for issue_comment in self._pull(subject_id).get_issue_comments():
            user = getattr(issue_comment, "user", None)
            if user is None or user.login != author:
                continue
            for match in _MARKER_RE.finditer(issue_comment.body or ""):
                if match.group(1) != kind:
                    continue
                try:
                    found.append((issue_comment, json.loads(match.group(2))))
                except json.JSONDecodeError:
                    logger.warning("Ignoring unreadable prpanel marker in comment %s", issue_comment.id)
        return found

    def append_comments(self, records: list[CommentRecord]) -> None:
        if not records:
            return
        subject_id = records[0].subject_id
        try:
            posted = {payload.get("comment_id") for payload in self._comment_payloads(subject_id)}
            batch = [r for r in records if r.comment_id not in posted]
            if not batch:
                return
            payloads = []
            for record in batch:
                payload = asdict(record)
                payload["tags"] = list(record.tags)
                payloads.append(payload)
            rendered = "\n\n---\n\n".join(_render(r) for r in batch)
            self._pull(subject_id).create_issue_comment(f"{rendered}\n\n{_marker('comments', payloads)}")
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"Could not post comments to {subject_id} ({type(e).__name__}: {e})") from e

    def _comment_payloads(self, subject_id: str) -> list[dict]:
        return [payload for _, batch in self._markers(subject_id, "comments") for payload in batch]

    def list_comments(self, subject_id: str) -> list[CommentRecord]:
        records = []
        for payload in self._comment_payloads(subject_id):
            payload["tags"] = tuple(payload.get("tags") or ())
            records.append(CommentRecord(**payload))
        return sorted(records, key=lambda r: r.seq)

    def _state(self, subject_id: str) -> tuple[object | None, dict]:
        markers = self._markers(subject_id, "state")
        if not markers:
            return None, {"stages": {}, "resolved": []}
        return markers[-1]

    def _write_state(self, subject_id: str, state: dict) -> None:
        issue_comment, _ = self._state(subject_id)
        body = f"_prpanel run state_\n\n{_marker('state', state)}"
        if issue_comment is None:
            self._pull(subject_id).create_issue_comment(body)
        else:
            issue_comment.edit(body)

    def mark_resolved(self, subject_id: str, thread_id: str) -> None:
        _, state = self._state(subject_id)
        if thread_id not in state["resolved"]:
            state["resolved"].append(thread_id)
            self._write_state(subject_id, state)

    def resolved_threads(self, subject_id: str) -> set[str]:
        return set(self._state(subject_id)[1]["resolved"])

    def save_decisions(self, subject_id: str, records: list[DecisionRecord]) -> None:
        decided = {d.thread_id for d in self.list_decisions(subject_id)}
        clashes = sorted(decided & {r.thread_id for r in records})
        if clashes:
            raise StoreError(f"Threads already decided for {subject_id}: {', '.join(clashes)}")
        if not records:
            return
        payload = [asdict(r) for r in records]
        self._pull(subject_id).create_issue_comment(
            f"_prpanel decision records ({len(records)})_\n\n{_marker('decisions', payload)}"
        )

    def list_decisions(self, subject_id: str) -> list[DecisionRecord]:
        return [DecisionRecord(**d) for _, batch in self._markers(subject_id, "decisions") for d in batch]

    def mark_stage_done(self, subject_id: str, stage_id: str, completed_at: str) -> None:
        _, state = self._state(subject_id)
        state["stages"][stage_id] = completed_at
        self._write_state(subject_id, state)

    def completed_stages(self, subject_id: str) -> dict[str, str]:
        return dict(self._state(subject_id)[1]["stages"])
