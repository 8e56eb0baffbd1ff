from __future__ import annotations

import logging

from mergeplow.github_gateway import GitHubApiError, GitHubGateway, GitHubPollingError
from mergeplow.observability import log_event
from mergeplow.pull_context import PullRequestContext
from mergeplow.shell import CommandError, CommandTimeoutError


LOGGER = logging.getLogger("mergeplow.updater")


class UpdateError(RuntimeError):
    pass


class GitHubUpdater:
    """Brings a pull request branch up to date with its base branch."""

    def __init__(self, github: GitHubGateway) -> None:
        self._github = github

    def update(self, pull_ctx: PullRequestContext, base_ref: str) -> bool:
        """Return True when an update was requested, False when none was needed."""
        snapshot = pull_ctx.snapshot
        if snapshot.base_ref != base_ref:
            return self._skip(pull_ctx, "different_base", base_ref=base_ref)

        try:
            status = self._github.compare_commits(base_ref, snapshot.head_sha)
            if status in ("ahead", "identical"):
                return self._skip(pull_ctx, "up_to_date", base_ref=base_ref)
            self._github.update_pull_request_branch(
                pull_ctx.number, expected_head_sha=snapshot.head_sha
            )
        except CommandTimeoutError:
            raise
        except (GitHubApiError, GitHubPollingError, CommandError) as exc:
            raise UpdateError(f"failed to update {pull_ctx} onto {base_ref}: {exc}") from exc
        return True

    def _skip(self, pull_ctx: PullRequestContext, reason: str, **fields: object) -> bool:
        log_event(LOGGER, "update_not_needed", pull_request=str(pull_ctx), reason=reason, **fields)
        return False
