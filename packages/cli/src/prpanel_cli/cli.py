"""CLI entry point for prpanel.

Commands:
  review start  - run the review panel on a pull request
  init          - write a .prpanel.yml for this repository
  history       - display past runs from the configured store
  stats         - aggregate verdicts and tiers across runs
"""

from __future__ import annotations

import importlib.metadata
import logging

import click
from rich.console import Console
from rich.logging import RichHandler

from prpanel_cli.commands.history import history_cmd
from prpanel_cli.commands.init import init_cmd
from prpanel_cli.commands.review import review_group
from prpanel_cli.commands.stats import stats_cmd

console = Console()


def _build_store(config: dict):
    """Instantiate the configured store from .prpanel.yml settings.

    Store selection:
      store: github → GitHubStore (the pull request itself; needs a GitHub token)
      store: sqlite → SQLiteStore (store_path or .prpanel.db)
      (default)     → MemoryStore (this process only)

    This factory lives in cli.py so neither prpanel_core nor prpanel_store
    know about the CLI config format.
    """
    from prpanel_store.memory import MemoryStore

    store_type = config.get("store", "memory")

    if store_type == "github":
        from prpanel_store.github import GitHubStore

        token = config.get("github_token")
        if not token:
            console.print("[yellow]GitHubStore requires a GitHub token. Falling back to the in-memory store.[/yellow]")
            return MemoryStore()
        return GitHubStore(token=token)

    if store_type == "sqlite":
        from prpanel_store.sqlite import SQLiteStore

        return SQLiteStore(db_path=config.get("store_path", ".prpanel.db"))

    if store_type != "memory":
        console.print(f"[yellow]Unknown store {store_type!r}. Using the in-memory store.[/yellow]")
    return MemoryStore()


@click.group()
@click.version_option(
    version=importlib.metadata.version("prpanel"),
    prog_name="prpanel",
)
@click.option(
    "--config",
    "config_path",
    default=".prpanel.yml",
    show_default=True,
    help="Path to the configuration file.",
    envvar="PRPANEL_CONFIG",
)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
@click.pass_context
def main(ctx: click.Context, config_path: str, verbose: bool):
    """Multi-reviewer debate panel for GitHub pull requests."""
    from prpanel_core.config import load_config
    from prpanel_cli.auth import resolve_github_token

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )

    ctx.ensure_object(dict)

    config = load_config(config_path)

    # Resolve token early so all subcommands share the same resolution.
    token = resolve_github_token()
    if token:
        config["github_token"] = token

    store = _build_store(config)
    ctx.obj["store"] = store
    ctx.obj["config"] = config
    ctx.obj["config_path"] = config_path
    ctx.call_on_close(store.close)


main.add_command(review_group)
main.add_command(init_cmd)
main.add_command(history_cmd)
main.add_command(stats_cmd)
