from __future__ import annotations

import logging
from threading import Event
from typing import Callable

from mergeplow.comments import CommentPostError, ensure_unique_comment
from mergeplow.conditions import ConditionEvaluator
from mergeplow.config_fetcher import ConfigFetcher, ConfigFetchError
from mergeplow.github_gateway import CredentialError, GitHubGateway
from mergeplow.merger import MergeError, MergeExecutor, build_merger
from mergeplow.models import ConfigAbsent, ConfigInvalid, RepoBotConfig
from mergeplow.observability import log_event
from mergeplow.pull_context import PullRequestContext
from mergeplow.shell import CommandTimeoutError
from mergeplow.updater import GitHubUpdater, UpdateError


LOGGER = logging.getLogger("mergeplow.processor")


class EventProcessingError(RuntimeError):
    """Processing of a pull request event was aborted."""


class ConfigResolutionError(EventProcessingError):
    pass


class ConditionEvaluationError(EventProcessingError):
    pass


class ExecutorConstructionError(EventProcessingError):
    pass


class EventCancelledError(EventProcessingError):
    pass


class EventDeadlineError(EventProcessingError):
    """A GitHub call did not finish within the request timeout."""


class PullRequestProcessor:
    """Runs the merge and update decisions for pull requests of one repository.

    Failed merge or update attempts are expected outcomes and are absorbed
    after logging; only failures to decide (configuration, conditions,
    credentials, cancellation) raise `EventProcessingError`.
    """

    def __init__(
        self,
        *,
        github: GitHubGateway,
        config_fetcher: ConfigFetcher,
        evaluator: ConditionEvaluator,
        updater: GitHubUpdater | None = None,
        elevated_token: str | None = None,
        merger_factory: Callable[[], MergeExecutor] | None = None,
        stop_event: Event | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._github = github
        self._config_fetcher = config_fetcher
        self._evaluator = evaluator
        self._updater = updater if updater is not None else GitHubUpdater(github)
        self._merger_factory = merger_factory or (lambda: build_merger(github, elevated_token))
        self._stop_event = stop_event
        self._logger = logger or LOGGER

    def process_pull_request(self, pull_ctx: PullRequestContext) -> None:
        config = self._resolve_config(pull_ctx)

        try:
            merger = self._merger_factory()
        except CredentialError as exc:
            raise ExecutorConstructionError(f"failed to create token client: {exc}") from exc

        if config is None:
            return

        self._check_cancelled(pull_ctx, step="merge_evaluation")
        try:
            should_merge = self._evaluator.should_merge(pull_ctx, config.merge)
        except Exception as exc:  # noqa: BLE001
            raise ConditionEvaluationError(
                f"unable to determine merge status for {pull_ctx}: {exc}"
            ) from exc
        if not should_merge:
            log_event(self._logger, "merge_skipped", pull_request=str(pull_ctx))
            return

        self._check_cancelled(pull_ctx, step="merge")
        log_event(
            self._logger,
            "merge_attempted",
            pull_request=str(pull_ctx),
            method=config.merge.method,
        )
        try:
            merger.merge(pull_ctx, config.merge)
        except CommandTimeoutError as exc:
            raise _deadline_exceeded(pull_ctx, "merge", exc) from exc
        except MergeError as exc:
            log_event(
                self._logger,
                "merge_failed",
                level=logging.ERROR,
                pull_request=str(pull_ctx),
                commentable=exc.commentable,
                privilege_blocked=exc.privilege_blocked,
                error=str(exc),
            )
            if exc.comment is not None:
                self._report_failure(pull_ctx, exc.comment)
            return
        log_event(self._logger, "merge_succeeded", outcome=True, pull_request=str(pull_ctx))

    def update_pull_request(self, pull_ctx: PullRequestContext, base_ref: str) -> None:
        config = self._resolve_config(pull_ctx)
        if config is None:
            return

        self._check_cancelled(pull_ctx, step="update_evaluation")
        try:
            should_update = self._evaluator.should_update(pull_ctx, config.update)
        except Exception as exc:  # noqa: BLE001
            raise ConditionEvaluationError(
                f"unable to determine update status for {pull_ctx}: {exc}"
            ) from exc
        if not should_update:
            log_event(self._logger, "update_skipped", pull_request=str(pull_ctx))
            return

        self._check_cancelled(pull_ctx, step="update")
        try:
            updated = self._updater.update(pull_ctx, base_ref)
        except CommandTimeoutError as exc:
            raise _deadline_exceeded(pull_ctx, "update", exc) from exc
        except UpdateError as exc:
            log_event(
                self._logger,
                "update_failed",
                level=logging.ERROR,
                pull_request=str(pull_ctx),
                base_ref=base_ref,
                error=str(exc),
            )
            return
        if updated:
            log_event(
                self._logger,
                "update_succeeded",
                outcome=True,
                pull_request=str(pull_ctx),
                base_ref=base_ref,
            )

    def _resolve_config(self, pull_ctx: PullRequestContext) -> RepoBotConfig | None:
        self._check_cancelled(pull_ctx, step="fetch_configuration")
        try:
            fetched = self._config_fetcher.config_for_pull_request(pull_ctx)
        except CommandTimeoutError as exc:
            raise _deadline_exceeded(pull_ctx, "fetch_configuration", exc) from exc
        except ConfigFetchError as exc:
            raise ConfigResolutionError(f"failed to fetch configuration: {exc}") from exc

        if isinstance(fetched, ConfigAbsent):
            log_event(
                self._logger,
                "config_missing",
                level=logging.DEBUG,
                pull_request=str(pull_ctx),
                source=str(fetched.source),
            )
            return None
        if isinstance(fetched, ConfigInvalid):
            log_event(
                self._logger,
                "config_invalid",
                level=logging.WARNING,
                pull_request=str(pull_ctx),
                source=str(fetched.source),
                reason=fetched.reason,
            )
            return None
        log_event(
            self._logger,
            "config_loaded",
            level=logging.DEBUG,
            pull_request=str(pull_ctx),
            source=str(fetched.source),
        )
        return fetched.config

    def _report_failure(self, pull_ctx: PullRequestContext, text: str) -> None:
        try:
            ensure_unique_comment(pull_ctx, self._github, text)
        except CommandTimeoutError as exc:
            raise _deadline_exceeded(pull_ctx, "failure_comment", exc) from exc
        except CommentPostError as exc:
            log_event(
                self._logger,
                "comment_post_failed",
                level=logging.ERROR,
                pull_request=str(pull_ctx),
                error=str(exc),
                cause=str(exc.__cause__) if exc.__cause__ else None,
            )

    def _check_cancelled(self, pull_ctx: PullRequestContext, *, step: str) -> None:
        if self._stop_event is not None and self._stop_event.is_set():
            raise EventCancelledError(f"processing of {pull_ctx} cancelled before {step}")


def _deadline_exceeded(
    pull_ctx: PullRequestContext, step: str, exc: CommandTimeoutError
) -> EventDeadlineError:
    return EventDeadlineError(f"{step} for {pull_ctx} did not finish in time: {exc}")
