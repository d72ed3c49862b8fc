"""init command - write .prpanel.yml for this repository.

Asks for the model provider, where the discussion log lives and which
tiers the panel may fix, and optionally generates a GitHub Actions
workflow that runs a review-only panel on every pull request.
"""

from __future__ import annotations

import importlib.metadata
from pathlib import Path

import click
import yaml
from rich.console import Console

from prpanel_core.models import FixScope
from prpanel_core.utils import git

console = Console()

_WORKFLOW_TEMPLATE = """\
name: PR Panel Review

on:
  pull_request:
    types: [opened, synchronize, reopened]

jobs:
  review:
    runs-on: ubuntu-latest
    permissions:
      contents: read
      pull-requests: write

    steps:
      - uses: actions/checkout@v4

      - name: Set up Python
        uses: actions/setup-python@v5
        with:
          python-version: "3.12"

      - name: Install prpanel
        run: pip install "prpanel[{provider}]=={version}"

      - name: Run review panel
        env:
          GITHUB_TOKEN: ${{{{ secrets.GITHUB_TOKEN }}}}
          {api_key_env}: ${{{{ secrets.{api_key_env} }}}}
        run: |
          prpanel review start \\
            "${{{{ github.repository }}}}#${{{{ github.event.pull_request.number }}}}" \\
            --scope none \\
            --yes
"""


@click.command("init")
@click.option("--repo", default=None, help="GitHub repository (owner/name). Auto-detected from git remote.")
@click.pass_context
def init_cmd(ctx, repo: str | None):
    """Set up prpanel for this repository."""
    console.print("\n[bold cyan]prpanel init[/bold cyan] - repository setup\n")

    if repo is None:
        repo = git.repo_slug_from_remote()
        if repo:
            console.print(f"[dim]Detected repository: {repo}[/dim]")
        else:
            repo = click.prompt("GitHub repository (owner/name)")

    provider = click.prompt(
        "AI provider",
        type=click.Choice(["anthropic", "openai"]),
        default="anthropic",
    )
    api_key_env = "ANTHROPIC_API_KEY" if provider == "anthropic" else "OPENAI_API_KEY"

    console.print("\nDiscussion log store:")
    console.print("  [bold]memory[/bold]  - this process only (default)")
    console.print("  [bold]sqlite[/bold]  - local SQLite file; halted runs can resume, history and stats work")
    console.print("  [bold]github[/bold]  - comments on the pull request itself, visible to the whole team")
    store_type = click.prompt(
        "Store backend",
        type=click.Choice(["memory", "sqlite", "github"]),
        default="memory",
    )
    db_path = None
    if store_type == "sqlite":
        db_path = click.prompt("SQLite database path", default=".prpanel.db")

    scope = click.prompt(
        "Tiers the panel may fix",
        type=click.Choice([s.value for s in FixScope]),
        default=FixScope.MUST_FIX.value,
    )

    config: dict = {"repo": repo, "model": provider, "store": store_type, "scope": scope}
    if db_path and db_path != ".prpanel.db":
        config["store_path"] = db_path

    if scope != FixScope.NONE.value:
        commands = click.prompt(
            "Verification commands, comma separated ({files} = changed paths)",
            default="",
            show_default=False,
        )
        config["verify_commands"] = [c.strip() for c in commands.split(",") if c.strip()]

    config_path = Path(ctx.obj.get("config_path", ".prpanel.yml") if ctx.obj else ".prpanel.yml")
    _write_config(config_path, config)
    console.print(f"[green]Created {config_path}[/green]")

    if click.confirm("\nGenerate .github/workflows/prpanel.yml for GitHub Actions?", default=True):
        _write_workflow(provider, api_key_env)
        console.print("[green]Created .github/workflows/prpanel.yml[/green]")
        console.print(
            f"\n[yellow]Remember to add [bold]{api_key_env}[/bold] to your "
            "GitHub repository secrets (Settings → Secrets → Actions).[/yellow]"
        )

    console.print("\n[bold green]Setup complete![/bold green]")
    console.print(f"Run a review with: [bold]prpanel review start {repo}#<number>[/bold]")


def _write_config(path: Path, config: dict) -> None:
    """Write or update the config file, preserving any existing keys."""
    existing: dict = {}
    if path.exists():
        existing = yaml.safe_load(path.read_text()) or {}
    existing.update(config)
    path.write_text(yaml.dump(existing, default_flow_style=False, sort_keys=False))


def _get_version() -> str:
    try:
        return importlib.metadata.version("prpanel")
    except importlib.metadata.PackageNotFoundError:
        return "0.1.0"


def _write_workflow(provider: str, api_key_env: str) -> None:
    workflow_dir = Path(".github/workflows")
    workflow_dir.mkdir(parents=True, exist_ok=True)
    (workflow_dir / "prpanel.yml").write_text(
        _WORKFLOW_TEMPLATE.format(provider=provider, api_key_env=api_key_env, version=_get_version())
    )
