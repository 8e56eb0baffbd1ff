from __future__ import annotations

import logging

from mergeplow.github_gateway import GitHubGateway
from mergeplow.observability import log_event
from mergeplow.pull_context import PullRequestContext
from mergeplow.shell import CommandTimeoutError


LOGGER = logging.getLogger("mergeplow.comments")


class CommentPostError(RuntimeError):
    pass


def ensure_unique_comment(pull_ctx: PullRequestContext, github: GitHubGateway, text: str) -> bool:
    """Post `text` unless an identical comment (ignoring case) already exists.

    Returns True when a new comment was created.
    """
    try:
        existing = pull_ctx.comments()
    except CommandTimeoutError:
        raise
    except Exception as exc:  # noqa: BLE001
        raise CommentPostError(f"failed to list comments on {pull_ctx}") from exc

    if any(is_same_comment(body, text) for body in existing):
        log_event(
            LOGGER,
            "comment_duplicate_skipped",
            pull_request=str(pull_ctx),
            existing_count=len(existing),
        )
        return False

    try:
        github.post_issue_comment(pull_ctx.number, text)
    except CommandTimeoutError:
        raise
    except Exception as exc:  # noqa: BLE001
        raise CommentPostError(f"unable to post failure comment on {pull_ctx}") from exc
    log_event(LOGGER, "comment_posted", outcome=True, pull_request=str(pull_ctx))
    return True


def is_same_comment(existing: str, candidate: str) -> bool:
    return existing.casefold() == candidate.casefold()
