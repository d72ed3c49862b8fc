"""Tests for reviewer invokers.

Shared behaviour (_parse, prompt building, review) lives in BaseInvoker and is
tested once via a lightweight stub. Provider-specific tests cover only what
differs between implementations: the SDK client setup and constants.
"""

import json
from unittest.mock import patch

import pytest

from prpanel_core.providers.anthropic import AnthropicInvoker
from prpanel_core.providers.base import BaseInvoker
from prpanel_core.providers.factory import get_invoker
from prpanel_core.providers.openai import OpenAIInvoker
from prpanel_core.stages import CANONICAL_STAGES
from prpanel_core.utils.retry import call_with_retry
from prpanel_store.models import CommentRecord

STAGE = {s.stage_id: s for s in CANONICAL_STAGES}
VALID_JSON = json.dumps([{"thread": None, "path": "app/db.py", "line": 3, "body": "Use a bound parameter"}])


class _StubInvoker(BaseInvoker):
    def __init__(self, response=VALID_JSON):
        self.response = response
        self.prompts = []

    def _call_api(self, system_prompt: str, user_prompt: str) -> str:
        self.prompts.append((system_prompt, user_prompt))
        return self.response


def _history():
    return [
        CommentRecord(
            subject_id="owner/repo#7",
            comment_id="owner/repo#7/0",
            thread_id="T1",
            seq=0,
            role="risk",
            body="SQL injection",
            created_at="",
            path="app/db.py",
            line=3,
            category="security",
            severity="critical",
        )
    ]


# ---------------------------------------------------------------------------
# Shared behaviour, tested once through the stub
# ---------------------------------------------------------------------------


class TestParse:
    def test_parses_valid_json(self):
        result = _StubInvoker()._parse(VALID_JSON)
        assert result[0]["line"] == 3

    def test_strips_markdown_code_fences(self):
        assert len(_StubInvoker()._parse(f"```json\n{VALID_JSON}\n```")) == 1

    def test_preserves_code_blocks_inside_bodies(self):
        payload = json.dumps([{"body": "Use this instead:\n```python\nfoo()\n```"}])
        result = _StubInvoker()._parse(f"```json\n{payload}\n```")
        assert "```python" in result[0]["body"]

    def test_returns_none_on_invalid_json(self):
        assert _StubInvoker()._parse("not json") is None

    def test_returns_none_on_empty_response(self):
        assert _StubInvoker()._parse("") is None


class TestReview:
    def test_returns_dict_items(self, subject):
        items = _StubInvoker().review(subject, [], {}, STAGE["architect-r1"])
        assert items == json.loads(VALID_JSON)

    def test_non_list_response_is_a_decline(self, subject):
        assert _StubInvoker('{"body": "x"}').review(subject, [], {}, STAGE["architect-r1"]) == []

    def test_unparseable_response_is_a_decline(self, subject):
        assert _StubInvoker("I have no comments.").review(subject, [], {}, STAGE["architect-r1"]) == []

    def test_non_dict_items_dropped(self, subject):
        items = _StubInvoker('[1, "x", {"body": "ok"}]').review(subject, [], {}, STAGE["architect-r1"])
        assert items == [{"body": "ok"}]

    def test_provider_errors_propagate(self, subject):
        class _Down(BaseInvoker):
            def _call_api(self, system_prompt, user_prompt):
                raise ConnectionError("503")

        with pytest.raises(ConnectionError):
            _Down().review(subject, [], {}, STAGE["risk"])

    def test_complete_json(self):
        assert _StubInvoker('{"summary": "s"}').complete_json("sys", "user") == {"summary": "s"}


class TestPrompts:
    def test_system_prompt_carries_voice_rules_and_stances(self):
        prompt = _StubInvoker()._build_system_prompt(STAGE["arbiter"], {"python": "- no bare except"})
        assert "binding arbiter" in prompt
        assert "- no bare except" in prompt
        assert "decide" in prompt

    def test_system_prompt_without_rules(self):
        assert "(no rule corpus loaded)" in _StubInvoker()._build_system_prompt(STAGE["risk"], {})

    def test_user_prompt_contains_subject_and_history(self, subject):
        prompt = _StubInvoker()._build_user_prompt(subject, _history(), STAGE["pragmatist-r1"])
        assert "owner/repo#7" in prompt
        assert "app/views.py" in prompt
        assert subject.diff in prompt
        assert "T1 @ app/db.py:3: [RISK] (security/critical) SQL injection" in prompt

    def test_first_stage_sees_empty_history(self, subject):
        prompt = _StubInvoker()._build_user_prompt(subject, [], STAGE["architect-r1"])
        assert "(no comments yet)" in prompt
        assert "First pass" in prompt

    def test_replies_only_stage_restriction(self, subject):
        prompt = _StubInvoker()._build_user_prompt(subject, _history(), STAGE["architect-r2"])
        assert "Do not open new threads" in prompt

    def test_rerun_restriction(self, subject):
        prompt = _StubInvoker()._build_user_prompt(subject, _history(), STAGE["architect-r1"], rerun=True)
        assert "already reviewed" in prompt
        assert "Do not open new threads" in prompt

    @pytest.mark.parametrize(
        "stage_id,expected",
        [("risk", "MUST include"), ("arbiter", 'Do not include "severity"'), ("architect-r1", "optional")],
    )
    def test_severity_instruction_per_role(self, subject, stage_id, expected):
        assert expected in _StubInvoker()._build_user_prompt(subject, [], STAGE[stage_id])


class TestCallWithRetry:
    def test_retries_once_then_succeeds(self):
        calls = []
        sleeps = []

        def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise TimeoutError("slow")
            return "ok"

        assert call_with_retry(flaky, "stage", backoff=3, sleep=sleeps.append) == "ok"
        assert sleeps == [3]

    def test_final_failure_propagates(self):
        def down():
            raise ConnectionError("down")

        with pytest.raises(ConnectionError):
            call_with_retry(down, "stage", sleep=lambda s: None)


# ---------------------------------------------------------------------------
# Provider-specific: SDK setup and constants
# ---------------------------------------------------------------------------


class TestAnthropicInvoker:
    def test_raises_import_error_without_sdk(self):
        with patch.dict("sys.modules", {"anthropic": None}):
            with pytest.raises(ImportError, match="prpanel\\[anthropic\\]"):
                AnthropicInvoker(api_key="key")

    def test_model_is_claude(self):
        assert "claude" in AnthropicInvoker.MODEL


class TestOpenAIInvoker:
    def test_raises_import_error_without_sdk(self):
        with patch("prpanel_core.providers.openai._OpenAI", None):
            with pytest.raises(ImportError, match="prpanel\\[openai\\]"):
                OpenAIInvoker(api_key="key")

    def test_model_is_gpt(self):
        assert "gpt" in OpenAIInvoker.MODEL


class TestFactory:
    def test_unknown_provider_rejected(self):
        with pytest.raises(ValueError, match="Unknown model provider"):
            get_invoker({"model": "llama"})

    def test_selects_provider_by_name(self):
        with patch("prpanel_core.providers.factory.OpenAIInvoker") as invoker:
            get_invoker({"model": "openai", "openai_api_key": "sk-test"})
        invoker.assert_called_once_with(api_key="sk-test")
