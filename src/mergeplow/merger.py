from __future__ import annotations

from abc import ABC, abstractmethod
import logging

from mergeplow.github_gateway import GitHubApiError, GitHubGateway, GitHubPollingError
from mergeplow.models import MergeSettings
from mergeplow.observability import log_event
from mergeplow.pull_context import PullRequestContext
from mergeplow.shell import CommandError, CommandTimeoutError


LOGGER = logging.getLogger("mergeplow.merger")
_PRIVILEGE_BLOCKED_MARKERS = (
    "push restriction",
    "not authorized to push",
    "not allowed to push",
    "resource not accessible",
    "must have admin rights",
)


class MergeError(RuntimeError):
    """A merge attempt failed.

    `comment` is the exact text to show the user when the failure is
    commentable, and None when it should only be logged. `privilege_blocked`
    marks failures that a higher-privilege identity may be able to get past.
    """

    def __init__(
        self,
        message: str,
        *,
        comment: str | None = None,
        privilege_blocked: bool = False,
    ) -> None:
        super().__init__(message)
        self.comment = comment
        self.privilege_blocked = privilege_blocked

    @property
    def commentable(self) -> bool:
        return self.comment is not None


class MergeExecutor(ABC):
    @abstractmethod
    def merge(self, pull_ctx: PullRequestContext, settings: MergeSettings) -> None:
        """Merge the pull request or raise `MergeError`."""


class GitHubMerger(MergeExecutor):
    def __init__(self, github: GitHubGateway) -> None:
        self._github = github

    def merge(self, pull_ctx: PullRequestContext, settings: MergeSettings) -> None:
        snapshot = pull_ctx.snapshot
        try:
            self._github.merge_pull_request(
                pull_ctx.number,
                method=settings.method,
                expected_head_sha=snapshot.head_sha,
            )
        except CommandTimeoutError:
            raise
        except (GitHubApiError, GitHubPollingError, CommandError) as exc:
            raise classify_merge_failure(exc) from exc

        if settings.delete_after_merge:
            self._delete_head_branch(pull_ctx)

    def _delete_head_branch(self, pull_ctx: PullRequestContext) -> None:
        snapshot = pull_ctx.snapshot
        if snapshot.head_repo_full_name != self._github.full_name:
            log_event(
                LOGGER,
                "branch_delete_skipped",
                pull_request=str(pull_ctx),
                reason="head_in_other_repository",
            )
            return
        try:
            self._github.delete_branch(snapshot.head_ref)
        except (GitHubApiError, GitHubPollingError, CommandError) as exc:
            log_event(
                LOGGER,
                "branch_delete_failed",
                level=logging.WARNING,
                pull_request=str(pull_ctx),
                branch=snapshot.head_ref,
                error_type=type(exc).__name__,
                error=str(exc),
            )


class PushRestrictionMerger(MergeExecutor):
    """Falls back to an elevated identity when push restrictions block the primary one."""

    def __init__(self, primary: MergeExecutor, elevated: MergeExecutor) -> None:
        self._primary = primary
        self._elevated = elevated

    def merge(self, pull_ctx: PullRequestContext, settings: MergeSettings) -> None:
        try:
            self._primary.merge(pull_ctx, settings)
        except MergeError as exc:
            if not exc.privilege_blocked:
                raise
            log_event(
                LOGGER,
                "merge_delegated",
                outcome=True,
                pull_request=str(pull_ctx),
                error=str(exc),
            )
            self._elevated.merge(pull_ctx, settings)


def build_merger(github: GitHubGateway, elevated_token: str | None) -> MergeExecutor:
    """Primary merger, wrapped for delegation when an elevated token is configured.

    Raises `CredentialError` when the elevated token is unusable.
    """
    merger: MergeExecutor = GitHubMerger(github)
    if elevated_token is None:
        return merger
    return PushRestrictionMerger(merger, GitHubMerger(github.with_token(elevated_token)))


def classify_merge_failure(exc: Exception) -> MergeError:
    if not isinstance(exc, GitHubApiError):
        return MergeError(f"merge request failed: {exc}")

    message = exc.message.strip()
    lowered = message.lower()
    if exc.status_code in (403, 405) and any(
        marker in lowered for marker in _PRIVILEGE_BLOCKED_MARKERS
    ):
        return MergeError(
            f"merge blocked by repository permissions: {message}",
            comment=f"Unable to merge this pull request: {message}",
            privilege_blocked=True,
        )
    if exc.status_code == 405:
        return MergeError(
            f"pull request is not mergeable: {message}",
            comment=f"Unable to merge this pull request: {message}",
        )
    if exc.status_code == 409:
        return MergeError(f"head branch changed before merge: {message}")
    return MergeError(f"merge request failed with status {exc.status_code}: {message}")
