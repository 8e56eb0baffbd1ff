from __future__ import annotations

from dataclasses import dataclass
import logging
from threading import Event

from mergeplow.conditions import ConditionEvaluator, LabelConditionEvaluator
from mergeplow.config import AppConfig, RepoConfig
from mergeplow.config_fetcher import GitHubConfigFetcher
from mergeplow.github_gateway import GitHubApiError, GitHubGateway, GitHubPollingError
from mergeplow.observability import log_event
from mergeplow.processor import (
    EventCancelledError,
    EventDeadlineError,
    EventProcessingError,
    PullRequestProcessor,
)
from mergeplow.pull_context import GitHubPullContext
from mergeplow.shell import CommandError, CommandTimeoutError


LOGGER = logging.getLogger("mergeplow.poller")


class PullRequestRefreshError(EventProcessingError):
    pass


@dataclass(frozen=True)
class RepoRuntime:
    repo: RepoConfig
    github: GitHubGateway
    processor: PullRequestProcessor


@dataclass(frozen=True)
class PollSummary:
    pull_request_count: int
    failed_event_count: int


def build_repo_runtime(
    config: AppConfig,
    repo: RepoConfig,
    *,
    evaluator: ConditionEvaluator | None = None,
    stop_event: Event | None = None,
) -> RepoRuntime:
    github = GitHubGateway(
        repo.owner,
        repo.name,
        timeout_seconds=float(config.runtime.request_timeout_seconds),
    )
    processor = PullRequestProcessor(
        github=github,
        config_fetcher=GitHubConfigFetcher(github, config.runtime.config_path),
        evaluator=evaluator or LabelConditionEvaluator(),
        elevated_token=config.runtime.push_restriction_token(),
        stop_event=stop_event,
    )
    return RepoRuntime(repo=repo, github=github, processor=processor)


def poll_repository(runtime: RepoRuntime) -> PollSummary:
    """Give every open pull request one merge event followed by one update event."""
    pulls = runtime.github.list_open_pull_requests()
    failed = 0
    for snapshot in pulls:
        try:
            runtime.processor.process_pull_request(GitHubPullContext(runtime.github, snapshot))
            # The merge may have closed the pull request; decide the update on fresh state.
            refreshed = _refetch(runtime, snapshot.number)
            runtime.processor.update_pull_request(refreshed, refreshed.snapshot.base_ref)
        except EventCancelledError:
            raise
        except EventProcessingError as exc:
            failed += 1
            _log_event_failure(runtime.repo, snapshot.number, exc)
    log_event(
        LOGGER,
        "repo_polled",
        outcome=True,
        repo_full_name=runtime.repo.full_name,
        pull_request_count=len(pulls),
        failed_event_count=failed,
    )
    return PollSummary(pull_request_count=len(pulls), failed_event_count=failed)


def update_pull_requests_for_base(runtime: RepoRuntime, base_ref: str) -> PollSummary:
    pulls = runtime.github.list_open_pull_requests(base=base_ref)
    failed = 0
    for snapshot in pulls:
        try:
            runtime.processor.update_pull_request(
                GitHubPullContext(runtime.github, snapshot), base_ref
            )
        except EventCancelledError:
            raise
        except EventProcessingError as exc:
            failed += 1
            _log_event_failure(runtime.repo, snapshot.number, exc)
    return PollSummary(pull_request_count=len(pulls), failed_event_count=failed)


def run_polling(
    runtimes: tuple[RepoRuntime, ...],
    *,
    poll_interval_seconds: int,
    once: bool,
    stop_event: Event,
) -> None:
    while not stop_event.is_set():
        for runtime in runtimes:
            if stop_event.is_set():
                break
            try:
                poll_repository(runtime)
            except EventCancelledError:
                return
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "repo_poll_failed",
                    level=logging.ERROR,
                    repo_full_name=runtime.repo.full_name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        if once:
            return
        stop_event.wait(poll_interval_seconds)


def _log_event_failure(repo: RepoConfig, pr_number: int, exc: EventProcessingError) -> None:
    log_event(
        LOGGER,
        "event_failed",
        level=logging.ERROR,
        repo_full_name=repo.full_name,
        pr_number=pr_number,
        error_type=type(exc).__name__,
        error=str(exc),
    )


def _refetch(runtime: RepoRuntime, pr_number: int) -> GitHubPullContext:
    target = f"{runtime.repo.full_name}#{pr_number}"
    try:
        return GitHubPullContext.fetch(runtime.github, pr_number)
    except CommandTimeoutError as exc:
        raise EventDeadlineError(f"refresh for {target} did not finish in time: {exc}") from exc
    except (GitHubApiError, GitHubPollingError, CommandError) as exc:
        raise PullRequestRefreshError(f"failed to refresh {target}: {exc}") from exc
