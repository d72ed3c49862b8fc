from __future__ import annotations

import logging
from typing import Callable

from github import Github, GithubException

from prpanel_core.errors import ResolutionError
from prpanel_core.models import ReviewSubject

logger = logging.getLogger(__name__)

_SUMMARY_MARKER = "<!-- prpanel-summary -->"


def get_repo(repo_name: str, token: str):
    try:
        return Github(token).get_repo(repo_name)
    except GithubException as e:
        raise ResolutionError(f"Repository {repo_name} not found or not accessible with this token.") from e


def get_pull(repo, pr_number: int):
    try:
        return repo.get_pull(pr_number)
    except GithubException as e:
        raise ResolutionError(f"PR #{pr_number} not found in {repo.full_name}.") from e


def get_diff(pr):
    return pr.get_files()


def pulls_for_branch(repo, branch: str) -> list:
    """Open pull requests whose head is ``branch`` in this repository."""
    owner = repo.full_name.split("/")[0]
    return list(repo.get_pulls(state="open", head=f"{owner}:{branch}"))


def create_pull(repo, head: str, base: str | None = None, title: str | None = None, body: str = ""):
    base = base or repo.default_branch
    try:
        return repo.create_pull(title=title or head, body=body, head=head, base=base)
    except GithubException as e:
        raise ResolutionError(f"Could not open a pull request from {head} into {base}: {e}") from e


def subject_from_pull(repo, pr, max_chars_per_file: int = 20000) -> ReviewSubject:
    """Build the ReviewSubject for a pull request: changed files plus a truncated unified diff."""
    files = sorted(get_diff(pr), key=lambda f: f.filename)
    chunks = []
    for f in files:
        patch = f.patch or ""
        if len(patch) > max_chars_per_file:
            patch = patch[:max_chars_per_file] + "\n... [diff truncated]"
        chunks.append(f"--- {f.filename}\n{patch}" if patch else f"--- {f.filename} (binary or empty)")
    return ReviewSubject(
        subject_id=f"{repo.full_name}#{pr.number}",
        repo=repo.full_name,
        changed_files=tuple(f.filename for f in files),
        base_ref=pr.base.ref,
        head_ref=pr.head.ref,
        head_sha=pr.head.sha,
        title=pr.title or "",
        description=pr.body or "",
        number=pr.number,
        diff="\n\n".join(chunks),
    )


def github_tree(repo, head_sha: str) -> tuple[list[str], Callable[[str], str | None]]:
    """Return the repository paths at ``head_sha`` and a reader for their contents.

    The tree is fetched once; file contents are fetched lazily and only for
    the marker files the technology detector asks about.
    """
    try:
        tree = repo.get_git_tree(head_sha, recursive=True)
        paths = [item.path for item in tree.tree if item.type == "blob"]
    except GithubException as e:
        logger.warning("Could not fetch repo tree; framework detection limited to changed files: %s", e)
        paths = []

    def read_file(path: str) -> str | None:
        try:
            return repo.get_contents(path, ref=head_sha).decoded_content.decode("utf-8", errors="replace")
        except GithubException:
            return None

    return paths, read_file


def post_summary(pr, body: str) -> None:
    """Post the decision summary as a pull request comment, replacing an earlier one."""
    body = f"{body}\n{_SUMMARY_MARKER}"
    for comment in pr.get_issue_comments():
        if _SUMMARY_MARKER in (comment.body or ""):
            comment.edit(body)
            return
    pr.create_issue_comment(body)
