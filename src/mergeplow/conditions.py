from __future__ import annotations

from abc import ABC, abstractmethod
import logging

from mergeplow.models import MergeSettings, UpdateSettings
from mergeplow.observability import log_event
from mergeplow.pull_context import PullRequestContext


LOGGER = logging.getLogger("mergeplow.conditions")


class ConditionEvaluator(ABC):
    @abstractmethod
    def should_merge(self, pull_ctx: PullRequestContext, settings: MergeSettings) -> bool:
        """Decide whether the pull request is ready to be merged."""

    @abstractmethod
    def should_update(self, pull_ctx: PullRequestContext, settings: UpdateSettings) -> bool:
        """Decide whether the pull request branch should be synced with its base."""


class LabelConditionEvaluator(ConditionEvaluator):
    """Label-driven eligibility: a trigger label must be present and no ignore label."""

    def should_merge(self, pull_ctx: PullRequestContext, settings: MergeSettings) -> bool:
        snapshot = pull_ctx.snapshot
        if snapshot.state != "open" or snapshot.merged:
            return self._reject(pull_ctx, "merge", "not_open")
        if snapshot.draft and not settings.allow_draft:
            return self._reject(pull_ctx, "merge", "draft")
        return self._labels_allow(
            pull_ctx,
            action="merge",
            trigger_labels=settings.trigger_labels,
            ignore_labels=settings.ignore_labels,
        )

    def should_update(self, pull_ctx: PullRequestContext, settings: UpdateSettings) -> bool:
        if pull_ctx.snapshot.state != "open":
            return self._reject(pull_ctx, "update", "not_open")
        return self._labels_allow(
            pull_ctx,
            action="update",
            trigger_labels=settings.trigger_labels,
            ignore_labels=settings.ignore_labels,
        )

    def _labels_allow(
        self,
        pull_ctx: PullRequestContext,
        *,
        action: str,
        trigger_labels: tuple[str, ...],
        ignore_labels: tuple[str, ...],
    ) -> bool:
        present = {label.casefold() for label in pull_ctx.labels}
        ignored = [label for label in ignore_labels if label.casefold() in present]
        if ignored:
            return self._reject(pull_ctx, action, "ignore_label", label=ignored[0])
        if not any(label.casefold() in present for label in trigger_labels):
            return self._reject(pull_ctx, action, "no_trigger_label")
        return True

    def _reject(
        self, pull_ctx: PullRequestContext, action: str, reason: str, **fields: object
    ) -> bool:
        log_event(
            LOGGER,
            "condition_not_met",
            level=logging.DEBUG,
            action=action,
            pull_request=str(pull_ctx),
            reason=reason,
            **fields,
        )
        return False
