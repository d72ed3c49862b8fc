"""GitHub token resolution and run preflight.

Resolution order (stops at first success):
  1. GITHUB_TOKEN environment variable (CI / explicit override)
  2. `gh auth token` (GitHub CLI session, after `gh auth login`)

Preflight runs before any stage: a review that cannot post its result or
reach its model provider must fail before a single reviewer is called.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess

from prpanel_core.errors import PreflightError

logger = logging.getLogger(__name__)

_PROVIDER_KEYS = {"anthropic": "anthropic_api_key", "openai": "openai_api_key"}


def resolve_github_token() -> str | None:
    """Return a GitHub token or None if no valid source is available. Never raises."""
    token = os.environ.get("GITHUB_TOKEN")
    if token:
        return token

    try:
        result = subprocess.run(
            ["gh", "auth", "token"],
            capture_output=True,
            text=True,
            timeout=5,
        )
        if result.returncode == 0:
            gh_token = result.stdout.strip()
            if gh_token:
                logger.debug("Resolved GitHub token via gh CLI session.")
                return gh_token
    except (FileNotFoundError, subprocess.TimeoutExpired):
        # gh missing or slow; the caller reports the missing token.
        pass

    return None


def preflight(config: dict, needs_git: bool) -> None:
    """Raise PreflightError naming the first missing credential or tool."""
    if not config.get("github_token"):
        raise PreflightError(
            "No GitHub token found. Set GITHUB_TOKEN or run `gh auth login` first.\n"
            "Create a token at https://github.com/settings/tokens"
        )

    model = config.get("model")
    key = _PROVIDER_KEYS.get(model)
    if key is None:
        raise PreflightError(f"Unknown model provider: {model!r}. Choose 'anthropic' or 'openai'.")
    if not config.get(key):
        raise PreflightError(f"{key.upper()} environment variable is not set.")

    if needs_git and shutil.which("git") is None:
        raise PreflightError("git is not installed or not on PATH.")
