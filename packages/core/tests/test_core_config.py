"""Tests for configuration and rule corpus loading."""

import pytest

from prpanel_core.config import load_config, load_rules


def test_defaults_applied_when_no_config_file(tmp_path):
    config = load_config(config_path=str(tmp_path / "nonexistent.yml"))
    assert config["model"] == "anthropic"
    assert config["scope"] == "must-fix"
    assert config["max_verify_attempts"] == 2
    assert config["verify_commands"] == []
    assert config["store"] == "memory"
    assert config["repo"] is None


def test_config_file_overrides_defaults(tmp_path):
    cfg = tmp_path / ".prpanel.yml"
    cfg.write_text("model: openai\nscope: must-and-should\nverify_commands:\n  - pytest -q\n")
    config = load_config(config_path=str(cfg))
    assert config["model"] == "openai"
    assert config["scope"] == "must-and-should"
    assert config["verify_commands"] == ["pytest -q"]


def test_cli_overrides_config_file(tmp_path):
    cfg = tmp_path / ".prpanel.yml"
    cfg.write_text("scope: none\n")
    config = load_config(config_path=str(cfg), cli_overrides={"scope": "all-but-defer"})
    assert config["scope"] == "all-but-defer"


def test_none_cli_overrides_ignored(tmp_path):
    cfg = tmp_path / ".prpanel.yml"
    cfg.write_text("model: openai\n")
    config = load_config(config_path=str(cfg), cli_overrides={"model": None})
    assert config["model"] == "openai"


def test_defaults_not_mutated_between_loads(tmp_path):
    config = load_config(config_path=str(tmp_path / "none.yml"))
    config["verify_commands"].append("make test")
    assert load_config(config_path=str(tmp_path / "none.yml"))["verify_commands"] == []


def test_credentials_read_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("GITHUB_TOKEN", "ghp_test")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    config = load_config(config_path=str(tmp_path / "none.yml"))
    assert config["github_token"] == "ghp_test"
    assert config["openai_api_key"] is None


def test_builtin_rules_always_include_general():
    rules, dropped = load_rules(frozenset({"python", "django"}), {})
    assert set(rules) == {"general", "python", "django"}
    assert dropped == []
    assert rules["general"].strip()


def test_tag_without_corpus_is_dropped():
    rules, dropped = load_rules(frozenset({"python", "cobol"}), {})
    assert "cobol" not in rules
    assert dropped == ["cobol"]


def test_custom_rules_dir(tmp_path):
    (tmp_path / "general.md").write_text("# House rules")
    (tmp_path / "python.md").write_text("- no bare except")
    rules, dropped = load_rules(frozenset({"python", "go"}), {"rules_dir": str(tmp_path)})
    assert rules == {"general": "# House rules", "python": "- no bare except"}
    assert dropped == ["go"]


def test_missing_custom_rules_dir_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_rules(frozenset(), {"rules_dir": str(tmp_path / "missing")})
