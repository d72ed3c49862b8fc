"""Thin wrappers around the local git checkout.

Used for subject auto-resolution (current branch, remote slug) and by the
fixer to record each remediation as its own commit.
"""

from __future__ import annotations

import logging
import subprocess

logger = logging.getLogger(__name__)


class GitError(RuntimeError):
    pass


def run_git(*args: str, cwd: str | None = None, timeout: int = 30) -> str:
    """Run a git command and return stripped stdout. Raises GitError on failure."""
    try:
        result = subprocess.run(
            ["git", *args],
            capture_output=True,
            text=True,
            timeout=timeout,
            cwd=cwd,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        raise GitError(f"git {' '.join(args)} could not run: {e}") from e
    if result.returncode != 0:
        raise GitError(f"git {' '.join(args)} failed: {result.stderr.strip()}")
    return result.stdout.strip()


def current_branch(cwd: str | None = None) -> str | None:
    try:
        branch = run_git("rev-parse", "--abbrev-ref", "HEAD", cwd=cwd)
    except GitError:
        return None
    # A detached HEAD has no branch to match pull requests against.
    return None if branch == "HEAD" else branch


def head_sha(cwd: str | None = None) -> str:
    return run_git("rev-parse", "HEAD", cwd=cwd)


def repo_slug_from_remote(cwd: str | None = None) -> str | None:
    """Return ``owner/name`` from the origin remote, or None if it is not on GitHub."""
    try:
        url = run_git("remote", "get-url", "origin", cwd=cwd, timeout=5)
    except GitError:
        return None
    # https://github.com/owner/repo.git  →  owner/repo
    # git@github.com:owner/repo.git      →  owner/repo
    if "github.com" not in url:
        return None
    slug = url.split("github.com")[-1].lstrip("/:").removesuffix(".git")
    return slug if "/" in slug else None


def commit_paths(paths: list[str], message: str, cwd: str | None = None) -> str:
    """Stage ``paths``, commit them and return the new commit sha."""
    run_git("add", "--", *paths, cwd=cwd)
    run_git("commit", "-m", message, "--", *paths, cwd=cwd)
    sha = head_sha(cwd=cwd)
    logger.debug("Committed %s: %s", sha[:7], message.splitlines()[0])
    return sha


def push(branch: str, cwd: str | None = None) -> None:
    run_git("push", "origin", branch, cwd=cwd, timeout=120)
