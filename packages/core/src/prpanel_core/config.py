import logging
import os
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: dict = {
    "repo": None,  # owner/name; None = detect from the git remote
    "model": "anthropic",
    "scope": "must-fix",  # must-fix | must-and-should | all-but-defer | none
    "rules_dir": None,  # None = use the built-in rule corpora
    "max_chars_per_file": 20000,
    "stage_retry_backoff": 5,  # seconds before the single stage retry
    "verify_commands": [],  # shell templates run per task, "{files}" = affected paths
    "max_verify_attempts": 2,
    "stop_on_first_failure": False,
    "store": "memory",  # memory | sqlite | github
    "store_path": ".prpanel.db",
    "exclude": [],  # fnmatch patterns skipped by the technology detector
}

BUILTIN_RULES_DIR = Path(__file__).parent / "rules"

# Loaded for every run regardless of detected technologies.
ALWAYS_ON_RULES = ("general",)


def load_config(config_path: str = ".prpanel.yml", cli_overrides: Optional[dict] = None) -> dict:
    """
    Load configuration by merging (in order of precedence):
      1. Built-in defaults
      2. .prpanel.yml in the current directory
      3. CLI argument overrides
    """
    config = {
        **DEFAULT_CONFIG,
        "exclude": list(DEFAULT_CONFIG["exclude"]),
        "verify_commands": list(DEFAULT_CONFIG["verify_commands"]),
    }

    path = Path(config_path)
    if path.exists():
        with open(path) as f:
            file_config = yaml.safe_load(f) or {}
        config.update(file_config)

    if cli_overrides:
        for key, value in cli_overrides.items():
            if value is not None:
                config[key] = value

    # Resolve credentials from environment variables
    config["github_token"] = os.environ.get("GITHUB_TOKEN")
    config["anthropic_api_key"] = os.environ.get("ANTHROPIC_API_KEY")
    config["openai_api_key"] = os.environ.get("OPENAI_API_KEY")

    return config


def load_rules(tags, config: dict) -> tuple[dict[str, str], list[str]]:
    """
    Load the rule corpus for each rule-category tag.

    Looks in ``rules_dir`` when configured, otherwise in the built-in corpora.
    A tag without a ``<tag>.md`` file is not an error: it is dropped, logged,
    and returned in the second element so the run report can list it.
    """
    custom_dir = config.get("rules_dir")
    rules_dir = Path(custom_dir) if custom_dir else BUILTIN_RULES_DIR
    if custom_dir and not rules_dir.is_dir():
        raise FileNotFoundError(f"Rules directory not found: {custom_dir}")

    rules: dict[str, str] = {}
    dropped: list[str] = []
    for tag in sorted(set(tags) | set(ALWAYS_ON_RULES)):
        path = rules_dir / f"{tag}.md"
        if path.is_file():
            rules[tag] = path.read_text()
        else:
            logger.info("No rule corpus for %r in %s; tag dropped.", tag, rules_dir)
            dropped.append(tag)
    return rules, dropped
