from __future__ import annotations

import argparse
import json
from pathlib import Path
import sys

from ghcherry.config import (
    ENV_OVERRIDES_FILENAME,
    AppConfig,
    ConfigError,
    load_config,
    save_env_overrides,
)
from ghcherry.discovery import discover_repository
from ghcherry.git_ops import GitRepository, PreconditionError
from ghcherry.github_gateway import GitHubAccount, GitHubGateway
from ghcherry.models import ChangeRequest, short_sha
from ghcherry.observability import configure_logging
from ghcherry.orchestrator import ApplicationOutcome, CherryPickOrchestrator, ConflictDecision
from ghcherry.selector import CandidateSelector, SelectionFilter
from ghcherry.tui import describe_outcome, run_tui
from ghcherry.worktree_lock import working_copy_lock


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", type=Path, default=None, help="Path to config.toml")
    common.add_argument("-o", "--owner", help="GitHub repository owner")
    common.add_argument("-r", "--repo", help="GitHub repository name")
    common.add_argument("-b", "--base-branch", help="Branch the pull requests target")
    common.add_argument("-t", "--target-branch", help="Branch to cherry-pick onto")
    common.add_argument("-d", "--days", type=int, help="Number of days to look back for PRs")
    common.add_argument(
        "--only-forks",
        action="store_true",
        default=None,
        help="Only offer forked repositories when discovering --repo",
    )
    common.add_argument(
        "--repo-path",
        type=Path,
        default=None,
        help="Local working copy (defaults to the repository containing the cwd)",
    )
    common.add_argument(
        "--save-config",
        action="store_true",
        help=f"Save the effective GitHub settings to {ENV_OVERRIDES_FILENAME}",
    )
    common.add_argument("--log-dir", type=Path, default=None, help="Also write logs here")
    common.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        default=None,
        choices=("low", "high"),
        help="Enable runtime logging to stderr",
    )

    parser = argparse.ArgumentParser(
        prog="gh-cherry",
        description="Cherry-pick labeled GitHub pull requests onto a target branch.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser(
        "list", parents=[common], help="List pull requests that qualify for cherry-picking"
    )
    list_parser.add_argument("--json", action="store_true", help="Print candidates as JSON")

    apply_parser = subparsers.add_parser(
        "apply", parents=[common], help="Cherry-pick qualifying pull requests"
    )
    target = apply_parser.add_mutually_exclusive_group(required=True)
    target.add_argument(
        "--pr", type=int, action="append", help="Pull request number to apply (repeatable)"
    )
    target.add_argument("--all", action="store_true", help="Apply every qualifying pull request")
    apply_parser.add_argument(
        "--fetch", action="store_true", help="Fetch origin before checking out the target branch"
    )
    apply_parser.add_argument(
        "--abort-on-conflict",
        action="store_true",
        help="Abort instead of waiting for manual conflict resolution",
    )

    subparsers.add_parser(
        "abort",
        parents=[common],
        help="Abort a cherry-pick left unfinished in the working copy",
    )

    subparsers.add_parser("tui", parents=[common], help="Open the interactive terminal UI")

    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, state_dir=args.log_dir)
    config = _effective_config(args)

    if args.save_config:
        save_env_overrides(config, Path.cwd() / ENV_OVERRIDES_FILENAME)
        print(f"Configuration saved to {ENV_OVERRIDES_FILENAME}")

    if args.command == "list":
        _cmd_list(config, as_json=bool(args.json))
        return
    if args.command == "apply":
        ok = _cmd_apply(
            config,
            repo_path=args.repo_path,
            pr_numbers=tuple(args.pr or ()),
            apply_all=bool(args.all),
            fetch=bool(args.fetch),
            abort_on_conflict=bool(args.abort_on_conflict),
        )
        if not ok:
            raise SystemExit(1)
        return
    if args.command == "abort":
        _cmd_abort(repo_path=args.repo_path)
        return
    if args.command == "tui":
        _cmd_tui(config, repo_path=args.repo_path)
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _effective_config(args: argparse.Namespace) -> AppConfig:
    config = load_config(args.config).with_overrides(
        owner=args.owner,
        repo=args.repo,
        base_branch=args.base_branch,
        target_branch=args.target_branch,
        days_back=args.days,
        only_forks=args.only_forks,
    )
    if args.command == "abort":
        return config
    if config.needs_discovery:
        config = discover_repository(config, _build_account(), choose=_prompt_choice)
    config.validate()
    return config


def _cmd_list(config: AppConfig, *, as_json: bool) -> None:
    candidates = _build_selector(config).select()
    if as_json:
        payload = [
            {
                "number": item.number,
                "title": item.title,
                "author": item.author,
                "updated_at": item.updated_at.isoformat(),
                "labels": sorted(item.labels),
                "commits": [commit.sha for commit in item.commits],
                "head_ref": item.head_ref,
            }
            for item in candidates
        ]
        print(json.dumps(payload, indent=2))
        return

    if not candidates:
        print("No matching pull requests.")
        return
    for item in candidates:
        print(
            f"#{item.number} {item.title} author={item.author} "
            f"updated={item.updated_at:%Y-%m-%d} commits={len(item.commits)}"
        )


def _cmd_apply(
    config: AppConfig,
    *,
    repo_path: Path | None,
    pr_numbers: tuple[int, ...],
    apply_all: bool,
    fetch: bool,
    abort_on_conflict: bool,
) -> bool:
    repo = _open_repository(repo_path)
    if not repo.is_clean():
        raise PreconditionError(
            f"Working copy {repo.path} has uncommitted changes; commit or stash them first"
        )

    with working_copy_lock(git_dir=repo.git_dir(), command="apply"):
        if fetch:
            repo.fetch()
        candidates = _build_selector(config).select()
        chosen = candidates if apply_all else _pick_candidates(candidates, pr_numbers)
        if not chosen:
            print("No matching pull requests.")
            return True

        orchestrator = CherryPickOrchestrator(_build_gateway(config), repo, config.tags)
        decide = _abort_decision if abort_on_conflict else _prompt_conflict_decision
        outcomes = orchestrator.run_batch(
            chosen, config.github.target_branch, on_conflict=decide
        )

    for outcome in outcomes:
        print(describe_outcome(outcome))
    return all(outcome.success for outcome in outcomes) and len(outcomes) == len(chosen)


def _cmd_abort(*, repo_path: Path | None) -> None:
    repo = _open_repository(repo_path)
    with working_copy_lock(git_dir=repo.git_dir(), command="abort"):
        if repo.recover() == "clean":
            print("No cherry-pick in progress.")
            return
        repo.abort()
    print(f"Cherry-pick aborted; {repo.current_branch()} reset to {short_sha(repo.head_sha())}")


def _cmd_tui(config: AppConfig, *, repo_path: Path | None) -> None:
    repo = _open_repository(repo_path)
    with working_copy_lock(git_dir=repo.git_dir(), command="tui"):
        run_tui(
            selector=_build_selector(config),
            orchestrator=CherryPickOrchestrator(_build_gateway(config), repo, config.tags),
            target_branch=config.github.target_branch,
            repo_full_name=config.github.full_name,
            page_size=config.ui.page_size,
        )


def _pick_candidates(
    candidates: list[ChangeRequest], pr_numbers: tuple[int, ...]
) -> list[ChangeRequest]:
    by_number = {item.number: item for item in candidates}
    missing = [number for number in dict.fromkeys(pr_numbers) if number not in by_number]
    if missing:
        raise ConfigError(
            "Pull request(s) not among qualifying candidates: "
            + ", ".join(f"#{number}" for number in missing)
        )
    return [by_number[number] for number in dict.fromkeys(pr_numbers)]


def _prompt_conflict_decision(outcome: ApplicationOutcome) -> ConflictDecision:
    print(describe_outcome(outcome))
    while True:
        try:
            answer = input("Type 'c' to continue after resolving, or 'a' to abort: ")
        except EOFError:
            return "abort"
        normalized = answer.strip().lower()
        if normalized in {"c", "continue"}:
            return "continue"
        if normalized in {"a", "abort"}:
            return "abort"


def _prompt_choice(kind: str, options: tuple[str, ...]) -> str:
    print(f"Select a {kind}:")
    for index, option in enumerate(options, start=1):
        print(f"  {index}. {option}")
    while True:
        try:
            answer = input(f"{kind.capitalize()} number [1-{len(options)}]: ")
        except EOFError as exc:
            raise ConfigError(f"No {kind} selected") from exc
        normalized = answer.strip()
        if normalized.isdigit() and 1 <= int(normalized) <= len(options):
            return options[int(normalized) - 1]
        if normalized in options:
            return normalized


def _abort_decision(outcome: ApplicationOutcome) -> ConflictDecision:
    print(describe_outcome(outcome), file=sys.stderr)
    return "abort"


def _open_repository(repo_path: Path | None) -> GitRepository:
    return GitRepository.discover(repo_path)


def _build_account() -> GitHubAccount:
    return GitHubAccount()


def _build_gateway(config: AppConfig) -> GitHubGateway:
    return GitHubGateway(config.github.owner, config.github.repo)


def _build_selector(config: AppConfig) -> CandidateSelector:
    filters = SelectionFilter.from_tags(config.tags, days_back=config.selection.days_back)
    return CandidateSelector(
        _build_gateway(config),
        filters,
        base_branch=config.github.base_branch,
        commit_mode=config.selection.commit_mode,
    )
