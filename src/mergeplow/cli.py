from __future__ import annotations

import argparse
from pathlib import Path
from threading import Event

from mergeplow.config import AppConfig, load_config
from mergeplow.observability import configure_logging
from mergeplow.poller import (
    build_repo_runtime,
    run_polling,
    update_pull_requests_for_base,
)
from mergeplow.pull_context import GitHubPullContext


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mergeplow")
    subparsers = parser.add_subparsers(dest="command", required=True)

    process_parser = subparsers.add_parser(
        "process", help="Evaluate and, if eligible, merge a single pull request"
    )
    _add_common_arguments(process_parser)
    process_parser.add_argument("--repo", required=True, help="Repo id or owner/name")
    process_parser.add_argument("--pr", type=int, required=True, help="Pull request number")

    update_parser = subparsers.add_parser(
        "update", help="Update open pull requests that target a base branch"
    )
    _add_common_arguments(update_parser)
    update_parser.add_argument("--repo", required=True, help="Repo id or owner/name")
    update_parser.add_argument("--base-ref", required=True, help="Base branch that moved")

    run_parser = subparsers.add_parser(
        "run", help="Poll configured repositories and merge/update pull requests"
    )
    _add_common_arguments(run_parser)
    run_parser.add_argument(
        "--once", action="store_true", help="Poll every repository once and exit"
    )

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("mergeplow.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        default=None,
        choices=("low", "high"),
        help="Enable runtime logging to stderr (default: high)",
    )


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config)
    configure_logging(getattr(args, "verbose", None), state_dir=config.runtime.base_dir)

    if args.command == "process":
        _cmd_process(config, repo=str(args.repo), pr_number=int(args.pr))
        return
    if args.command == "update":
        _cmd_update(config, repo=str(args.repo), base_ref=str(args.base_ref))
        return
    if args.command == "run":
        _cmd_run(config, once=bool(args.once))
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_process(config: AppConfig, *, repo: str, pr_number: int) -> None:
    runtime = build_repo_runtime(config, config.find_repo(repo))
    pull_ctx = GitHubPullContext.fetch(runtime.github, pr_number)
    runtime.processor.process_pull_request(pull_ctx)
    print(f"Processed {pull_ctx}")


def _cmd_update(config: AppConfig, *, repo: str, base_ref: str) -> None:
    runtime = build_repo_runtime(config, config.find_repo(repo))
    summary = update_pull_requests_for_base(runtime, base_ref)
    print(
        f"Checked {summary.pull_request_count} pull request(s) targeting {base_ref}; "
        f"{summary.failed_event_count} failed."
    )
    if summary.failed_event_count:
        raise RuntimeError(f"{summary.failed_event_count} pull request update event(s) failed")


def _cmd_run(config: AppConfig, *, once: bool) -> None:
    stop_event = Event()
    runtimes = tuple(
        build_repo_runtime(config, repo, stop_event=stop_event) for repo in config.repos
    )
    try:
        run_polling(
            runtimes,
            poll_interval_seconds=config.runtime.poll_interval_seconds,
            once=once,
            stop_event=stop_event,
        )
    except KeyboardInterrupt:
        stop_event.set()
