"""Base reviewer invoker implementing the Template Method pattern.

All providers share the same stage algorithm:
    review() → _build_system_prompt() + _build_user_prompt()
             → _call_api()   ← only this differs per provider
             → _parse()

Subclasses implement two things only:
  - __init__: validate and store the SDK client
  - _call_api: make one raw API call and return the text response

Retries are not handled here. A raising _call_api is a transient failure the
scheduler retries once; an unparseable response is a decline (no comments).
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from prpanel_core.discussion import render_comment
from prpanel_core.roles import profile_for

if TYPE_CHECKING:
    from prpanel_store.models import CommentRecord

    from prpanel_core.models import ReviewSubject
    from prpanel_core.stages import Stage

logger = logging.getLogger(__name__)

_MAX_TOKENS = 4096

_CATEGORIES = (
    "security|correctness|data-loss|contract|architecture|testing|naming|"
    "error-handling|refactor|pattern|style|speculative|performance|documentation"
)


class BaseInvoker(ABC):
    MAX_TOKENS: int = _MAX_TOKENS
    MODEL: str = ""

    # ------------------------------------------------------------------ #
    # Public interface                                                     #
    # ------------------------------------------------------------------ #

    def review(
        self,
        subject: ReviewSubject,
        history: list[CommentRecord],
        ruleset: dict[str, str],
        stage: Stage,
        rerun: bool = False,
    ) -> list[dict]:
        """Run one stage's reviewer and return its raw structured comments.

        Raises whatever the SDK raises on infrastructure failure.
        """
        system = self._build_system_prompt(stage, ruleset)
        user = self._build_user_prompt(subject, history, stage, rerun)
        raw = self._call_api(system, user)
        parsed = self._parse(raw)
        if not isinstance(parsed, list):
            logger.warning("%s: expected a JSON list, got %s", self.__class__.__name__, type(parsed).__name__)
            return []
        return [item for item in parsed if isinstance(item, dict)]

    def complete_json(self, system_prompt: str, user_prompt: str):
        """Make one call and return the parsed JSON value, or None if unparseable."""
        return self._parse(self._call_api(system_prompt, user_prompt))

    # ------------------------------------------------------------------ #
    # Abstract: implement in each provider                               #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def _call_api(self, system_prompt: str, user_prompt: str) -> str:
        """Make a single API call and return the raw text response.

        This is the only method subclasses must implement. It should raise
        on failure; the scheduler decides whether to retry.
        """

    # ------------------------------------------------------------------ #
    # Shared implementations                                               #
    # ------------------------------------------------------------------ #

    def _build_system_prompt(self, stage: Stage, ruleset: dict[str, str]) -> str:
        profile = profile_for(stage.role)
        rules = "\n\n".join(ruleset[tag] for tag in sorted(ruleset)) or "(no rule corpus loaded)"
        stances = ", ".join(sorted(s.value for s in profile.stances))
        return f"""{profile.voice}

Review rules for the technologies in this change:

{rules}

Allowed stances for you: {stances}.
Ground every comment in the diff. Be concise and actionable. Argue on merits,
never on who made a point."""

    def _build_user_prompt(
        self,
        subject: ReviewSubject,
        history: list[CommentRecord],
        stage: Stage,
        rerun: bool = False,
    ) -> str:
        profile = profile_for(stage.role)
        restrictions = "\n".join(f"- {r}" for r in stage.restrictions(rerun))
        if history:
            rendered = "\n".join(
                f"{c.thread_id} @ {c.path or 'general'}{':' + str(c.line) if c.line else ''}: {render_comment(c)}"
                for c in history
            )
        else:
            rendered = "(no comments yet)"
        if profile.severity == "required":
            severity_rule = 'Every item MUST include "severity": one of critical|high|medium|low.'
        elif profile.severity == "none":
            severity_rule = 'Do not include "severity".'
        else:
            severity_rule = '"severity" is optional: critical|high|medium|low.'

        return f"""## Change request {subject.subject_id}: {subject.title}
Base `{subject.base_ref}` → head `{subject.head_ref}`

### Intent
{subject.description or "(no description)"}

### Changed files
{chr(10).join(subject.changed_files) or "(none)"}

### Diff
{subject.diff or "(diff not available)"}

## Discussion so far
{rendered}

## Your stage: {stage.stage_id}
{restrictions}

### Output Format:
Respond with **only** a valid JSON list:

[
  {{
    "thread": "<existing thread id to reply to, or null to open a new thread>",
    "path": "<file path for a new thread, or null for a general thread>",
    "line": <line number in the new file, or null>,
    "stance": "<one of your allowed stances>",
    "category": "<{_CATEGORIES}>",
    "severity": "<critical|high|medium|low>",
    "tags": ["<expensive-to-reverse|scheduled|complex|public|unmodified|critical-path|schedule-pressure>"],
    "tier": "<must-fix|should-fix|consider|defer, arbiter only>",
    "body": "<concise comment in GitHub-flavored markdown>"
  }},
  ...
]

{severity_rule}
If you have nothing to add, return: []
Do not return any text outside the JSON block."""

    def _parse(self, raw: str | None):
        """Parse the model's raw text response into JSON.

        Strips only the outer ```json ... ``` fence the model wraps the
        response in, not backticks inside string values.
        """
        if not raw:
            return None
        try:
            cleaned = re.sub(r"^```(?:json)?\s*", "", raw.strip())
            cleaned = re.sub(r"\s*```$", "", cleaned.strip())
            return json.loads(cleaned)
        except json.JSONDecodeError:
            logger.warning(
                "%s: failed to parse response as JSON: %s",
                self.__class__.__name__,
                raw[:200],
            )
            return None
