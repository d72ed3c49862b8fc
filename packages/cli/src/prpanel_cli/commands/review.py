"""review command group - run the review panel on a pull request."""

from __future__ import annotations

import re
import signal

import click
from rich.console import Console

from prpanel_core.detector import local_tree
from prpanel_core.errors import PanelError, ResolutionError
from prpanel_core.gh.pull_request import (
    create_pull,
    get_pull,
    get_repo,
    github_tree,
    post_summary,
    pulls_for_branch,
    subject_from_pull,
)
from prpanel_core.models import FixScope
from prpanel_core.utils import git

console = Console()

_SUBJECT_RE = re.compile(r"^(?:(?P<repo>[^#\s]+/[^#\s]+))?#?(?P<number>\d+)$")


class AbortFlag:
    """Ctrl-C requests an abort at the next phase boundary; a second Ctrl-C interrupts immediately."""

    def __init__(self):
        self.requested = False
        self._previous = None

    def __call__(self) -> bool:
        return self.requested

    def _handle(self, signum, frame):
        if self.requested:
            raise KeyboardInterrupt
        self.requested = True
        console.print("\n[yellow]Abort requested; finishing the current step. Press Ctrl-C again to stop now.[/yellow]")

    def __enter__(self):
        self._previous = signal.signal(signal.SIGINT, self._handle)
        return self

    def __exit__(self, *exc):
        signal.signal(signal.SIGINT, self._previous)
        return False


def parse_subject_id(subject_id: str, default_repo: str | None) -> tuple[str, int]:
    """Accept ``owner/name#12``, ``#12`` or ``12``."""
    match = _SUBJECT_RE.match(subject_id.strip())
    if not match:
        raise ResolutionError(f"Cannot read {subject_id!r} as a pull request; use owner/name#123 or 123.")
    repo = match.group("repo") or default_repo
    if not repo:
        raise ResolutionError(f"No repository for {subject_id!r}; pass --repo or use owner/name#123.")
    return repo, int(match.group("number"))


def resolve_pull(gh_repo, yes: bool):
    """Find the pull request for the current branch, offering to open a new one."""
    branch = git.current_branch()
    if branch is None:
        raise ResolutionError("Not on a git branch; pass a subject id such as owner/name#123.")

    candidates = pulls_for_branch(gh_repo, branch)
    if len(candidates) == 1:
        pr = candidates[0]
        console.print(f"[dim]Using PR #{pr.number} for branch {branch}.[/dim]")
        return pr

    if yes:
        if candidates:
            numbers = ", ".join(f"#{pr.number}" for pr in candidates)
            raise ResolutionError(f"Branch {branch} has several open pull requests ({numbers}); pass one explicitly.")
        return _open_pull(gh_repo, branch)

    console.print(f"\nPull requests for branch [bold]{branch}[/bold]:")
    console.print("  [bold]0[/bold]  create a new pull request")
    for i, pr in enumerate(candidates, 1):
        console.print(f"  [bold]{i}[/bold]  #{pr.number}  {pr.title}")
    choice = click.prompt("\nChoose", type=click.IntRange(0, len(candidates)), default=0)
    if choice == 0:
        return _open_pull(gh_repo, branch)
    return candidates[choice - 1]


def _open_pull(gh_repo, branch: str):
    console.print(f"[cyan]Opening a pull request for {branch}...[/cyan]")
    try:
        git.push(branch)
    except git.GitError as e:
        raise ResolutionError(f"Could not push {branch}: {e}") from e
    return create_pull(gh_repo, head=branch)


def _answer_provider(yes: bool):
    if yes:
        return None

    def ask(task, question: str) -> str | None:
        console.print(f"\n[bold yellow]{task.thread_id} needs input:[/bold yellow] {question}")
        answer = click.prompt("Answer (leave blank to hold the task)", default="", show_default=False)
        return answer.strip() or None

    return ask


@click.group("review")
def review_group():
    """Run the review panel on a pull request."""


@review_group.command("start")
@click.argument("subject_id", required=False)
@click.option("--repo", default=None, help="GitHub repository (owner/name). Auto-detected from git remote.")
@click.option(
    "--scope",
    type=click.Choice([s.value for s in FixScope]),
    default=None,
    help="Which tiers to remediate. Overrides config file.",
)
@click.option(
    "--model",
    type=click.Choice(["anthropic", "openai"]),
    default=None,
    help="AI model provider. Overrides config file.",
)
@click.option("--yes", "-y", is_flag=True, help="Non-interactive: skip prompts and confirmations.")
@click.option(
    "--full-review",
    "full_review",
    is_flag=True,
    help="Re-run stages that already completed for this pull request.",
)
@click.option("--stop-on-failure", is_flag=True, help="Stop remediation at the first blocked task.")
@click.pass_context
def start_cmd(
    ctx,
    subject_id: str | None,
    repo: str | None,
    scope: str | None,
    model: str | None,
    yes: bool,
    full_review: bool,
    stop_on_failure: bool,
):
    """Start a review of SUBJECT_ID (owner/name#123 or 123).

    Without SUBJECT_ID the pull request is looked up from the current
    branch; you can also open a new one from there.

    \b
    Required environment variables:
      GITHUB_TOKEN         GitHub personal access token (or use gh CLI)
      ANTHROPIC_API_KEY    Required when using --model anthropic
      OPENAI_API_KEY       Required when using --model openai
    """
    config = dict(ctx.obj["config"])
    overrides = {"scope": scope, "model": model, "stop_on_first_failure": True if stop_on_failure else None}
    config.update({k: v for k, v in overrides.items() if v is not None})
    store = ctx.obj["store"]

    try:
        result = _start(config, store, subject_id, repo, yes, full_review)
    except (PanelError, git.GitError) as e:
        raise click.ClickException(str(e)) from e

    if result.error is not None:
        raise click.ClickException(str(result.error))


def _detection_tree(gh_repo, sha: str):
    """Read the working copy when it is checked out at the reviewed commit, otherwise the GitHub tree."""
    try:
        checked_out = git.head_sha() == sha
    except git.GitError:
        checked_out = False
    if checked_out:
        return local_tree(".")
    return github_tree(gh_repo, sha)


def _start(config: dict, store, subject_id: str | None, repo: str | None, yes: bool, full_review: bool):
    from prpanel_cli.auth import preflight
    from prpanel_core.providers.factory import get_invoker
    from prpanel_core.remediation import CommandVerifier, LLMFixer
    from prpanel_core.runner import run_review

    fixing = FixScope(config.get("scope", FixScope.MUST_FIX.value)) is not FixScope.NONE
    preflight(config, needs_git=fixing or subject_id is None)

    repo = repo or config.get("repo") or git.repo_slug_from_remote()
    if subject_id is not None:
        repo, number = parse_subject_id(subject_id, repo)
        gh_repo = get_repo(repo, token=config["github_token"])
        pr = get_pull(gh_repo, number)
    else:
        if not repo:
            raise ResolutionError("Could not detect the repository from the git remote; pass --repo.")
        gh_repo = get_repo(repo, token=config["github_token"])
        pr = resolve_pull(gh_repo, yes)

    subject = subject_from_pull(gh_repo, pr, config.get("max_chars_per_file", 20000))
    console.print(f"\n[bold]Reviewing {subject.subject_id}[/bold]: {subject.title}")

    invoker = get_invoker(config)
    planner = implementer = verifier = None
    if fixing:
        if git.current_branch() == subject.head_ref:
            planner = implementer = LLMFixer(invoker, repo_root=".", max_chars_per_file=config["max_chars_per_file"])
            verifier = CommandVerifier(config.get("verify_commands") or [])
        else:
            console.print(
                f"[yellow]Check out {subject.head_ref} to let the panel apply fixes; "
                "remediation is skipped for this run.[/yellow]"
            )

    with AbortFlag() as abort:
        result = run_review(
            subject,
            config,
            store,
            invoker,
            _detection_tree(gh_repo, subject.head_sha),
            planner=planner,
            implementer=implementer,
            verifier=verifier,
            answer_provider=_answer_provider(yes),
            should_abort=abort,
            force_full=full_review,
        )

    result.report.render(console)

    if result.decision is not None:
        if yes or click.confirm("\nPost the decision summary to the pull request?", default=True):
            post_summary(pr, result.decision.summary_markdown())
            console.print("[green]Decision summary posted.[/green]")

    if result.tasks and any(t.change_refs for t in result.tasks):
        if yes or click.confirm(f"Push remediation commits to {subject.head_ref}?", default=True):
            git.push(subject.head_ref)
    return result
