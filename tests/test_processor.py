from __future__ import annotations

from dataclasses import replace
from threading import Event
from typing import Callable

import pytest

from mergeplow.conditions import ConditionEvaluator
from mergeplow.config_fetcher import ConfigFetcher, ConfigFetchError
from mergeplow.github_gateway import CredentialError, GitHubApiError
from mergeplow.merger import MergeError, MergeExecutor, PushRestrictionMerger
from mergeplow.models import (
    ConfigAbsent,
    ConfigInvalid,
    ConfigSource,
    ConfigValid,
    FetchedConfig,
    MergeSettings,
    PullRequestSnapshot,
    RepoBotConfig,
    UpdateSettings,
)
from mergeplow.observability import configure_logging
from mergeplow.processor import (
    ConditionEvaluationError,
    ConfigResolutionError,
    EventCancelledError,
    EventDeadlineError,
    ExecutorConstructionError,
    PullRequestProcessor,
)
from mergeplow.pull_context import PullRequestContext
from mergeplow.shell import CommandTimeoutError
from mergeplow.updater import UpdateError


SOURCE = ConfigSource(owner="o", repo="r", ref="main", path=".mergeplow.toml")
MERGE_SETTINGS = MergeSettings(method="squash", trigger_labels=("merge when ready",))
UPDATE_SETTINGS = UpdateSettings(trigger_labels=("keep updated",))
VALID = ConfigValid(
    source=SOURCE,
    config=RepoBotConfig(version=1, merge=MERGE_SETTINGS, update=UPDATE_SETTINGS),
)
BLOCKED_TEXT = "Unable to merge this pull request: Push restrictions apply"


class FakePullContext(PullRequestContext):
    def __init__(self, comments: tuple[str, ...] = (), base_ref: str = "main") -> None:
        self._comments = comments
        self._snapshot = PullRequestSnapshot(
            number=7,
            state="open",
            draft=False,
            merged=False,
            labels=("merge when ready",),
            head_ref="feature",
            head_sha="headsha",
            head_repo_full_name="o/r",
            base_ref=base_ref,
        )

    @property
    def owner(self) -> str:
        return "o"

    @property
    def repo(self) -> str:
        return "r"

    @property
    def snapshot(self) -> PullRequestSnapshot:
        return self._snapshot

    def comments(self) -> tuple[str, ...]:
        return self._comments


class FakeConfigFetcher(ConfigFetcher):
    def __init__(self, result: FetchedConfig | Exception) -> None:
        self.result = result
        self.calls = 0

    def config_for_pull_request(self, pull_ctx: PullRequestContext) -> FetchedConfig:
        _ = pull_ctx
        self.calls += 1
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class FakeEvaluator(ConditionEvaluator):
    def __init__(
        self,
        *,
        merge: bool | Exception = True,
        update: bool | Exception = True,
    ) -> None:
        self.merge = merge
        self.update = update
        self.merge_settings: list[MergeSettings] = []
        self.update_settings: list[UpdateSettings] = []

    def should_merge(self, pull_ctx: PullRequestContext, settings: MergeSettings) -> bool:
        _ = pull_ctx
        self.merge_settings.append(settings)
        if isinstance(self.merge, Exception):
            raise self.merge
        return self.merge

    def should_update(self, pull_ctx: PullRequestContext, settings: UpdateSettings) -> bool:
        _ = pull_ctx
        self.update_settings.append(settings)
        if isinstance(self.update, Exception):
            raise self.update
        return self.update


class FakeMerger(MergeExecutor):
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.settings: list[MergeSettings] = []

    def merge(self, pull_ctx: PullRequestContext, settings: MergeSettings) -> None:
        _ = pull_ctx
        self.settings.append(settings)
        if self.error is not None:
            raise self.error


class FakeUpdater:
    def __init__(self, result: bool | Exception = True) -> None:
        self.result = result
        self.calls: list[tuple[int, str]] = []

    def update(self, pull_ctx: PullRequestContext, base_ref: str) -> bool:
        self.calls.append((pull_ctx.number, base_ref))
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class FakeGitHub:
    def __init__(self, post_error: Exception | None = None) -> None:
        self.post_error = post_error
        self.posted: list[tuple[int, str]] = []

    def post_issue_comment(self, issue_number: int, body: str) -> None:
        if self.post_error is not None:
            raise self.post_error
        self.posted.append((issue_number, body))


def _processor(
    *,
    fetched: FetchedConfig | Exception = VALID,
    evaluator: FakeEvaluator | None = None,
    merger: MergeExecutor | None = None,
    merger_factory: Callable[[], MergeExecutor] | None = None,
    updater: FakeUpdater | None = None,
    github: FakeGitHub | None = None,
    stop_event: Event | None = None,
) -> PullRequestProcessor:
    executor = merger or FakeMerger()
    return PullRequestProcessor(
        github=github or FakeGitHub(),  # type: ignore[arg-type]
        config_fetcher=FakeConfigFetcher(fetched),
        evaluator=evaluator or FakeEvaluator(),
        updater=updater or FakeUpdater(),  # type: ignore[arg-type]
        merger_factory=merger_factory or (lambda: executor),
        stop_event=stop_event,
    )


@pytest.mark.parametrize(
    "fetched",
    (ConfigAbsent(source=SOURCE), ConfigInvalid(source=SOURCE, reason="bad toml")),
)
def test_absent_or_invalid_config_attempts_nothing(fetched: FetchedConfig) -> None:
    evaluator = FakeEvaluator()
    merger = FakeMerger()
    updater = FakeUpdater()
    github = FakeGitHub()
    processor = _processor(
        fetched=fetched, evaluator=evaluator, merger=merger, updater=updater, github=github
    )

    processor.process_pull_request(FakePullContext())
    processor.update_pull_request(FakePullContext(), "main")

    assert evaluator.merge_settings == []
    assert evaluator.update_settings == []
    assert merger.settings == []
    assert updater.calls == []
    assert github.posted == []


def test_invalid_config_is_logged_as_warning(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose="low")

    _processor(fetched=ConfigInvalid(source=SOURCE, reason="bad toml")).process_pull_request(
        FakePullContext()
    )

    stderr = capsys.readouterr().err
    assert "WARNING" in stderr
    assert "event=config_invalid" in stderr
    assert "reason=\"bad toml\"" in stderr


def test_merge_not_invoked_when_condition_is_false() -> None:
    merger = FakeMerger()
    evaluator = FakeEvaluator(merge=False)

    _processor(evaluator=evaluator, merger=merger).process_pull_request(FakePullContext())

    assert evaluator.merge_settings == [MERGE_SETTINGS]
    assert merger.settings == []


def test_eligible_pull_request_is_merged_with_configured_settings(
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(verbose="high")
    merger = FakeMerger()

    _processor(merger=merger).process_pull_request(FakePullContext())

    assert merger.settings == [MERGE_SETTINGS]
    stderr = capsys.readouterr().err
    assert "event=merge_attempted pull_request=o/r#7 method=squash" in stderr
    assert "event=merge_succeeded pull_request=o/r#7" in stderr


def test_commentable_failure_posts_verbatim_comment_once() -> None:
    github = FakeGitHub()
    merger = FakeMerger(MergeError("blocked", comment=BLOCKED_TEXT))

    _processor(merger=merger, github=github).process_pull_request(
        FakePullContext(comments=("unrelated", "Unable to merge this pull request"))
    )

    assert github.posted == [(7, BLOCKED_TEXT)]


def test_commentable_failure_skips_case_insensitive_duplicate() -> None:
    github = FakeGitHub()
    merger = FakeMerger(MergeError("blocked", comment=BLOCKED_TEXT))

    _processor(merger=merger, github=github).process_pull_request(
        FakePullContext(comments=(BLOCKED_TEXT.upper(),))
    )

    assert github.posted == []


def test_log_only_failure_posts_nothing(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose="low")
    github = FakeGitHub()
    merger = FakeMerger(MergeError("head branch changed before merge: moved"))

    _processor(merger=merger, github=github).process_pull_request(FakePullContext())

    assert github.posted == []
    stderr = capsys.readouterr().err
    assert "event=merge_failed pull_request=o/r#7 commentable=false" in stderr
    assert "privilege_blocked=false" in stderr


def test_comment_post_failure_is_logged_not_raised(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose="low")
    github = FakeGitHub(
        post_error=GitHubApiError(method="POST", path="/x", status_code=403, message="forbidden")
    )
    merger = FakeMerger(MergeError("blocked", comment=BLOCKED_TEXT))

    _processor(merger=merger, github=github).process_pull_request(FakePullContext())

    stderr = capsys.readouterr().err
    assert "event=comment_post_failed" in stderr
    assert "forbidden" in stderr


def test_privilege_blocked_failure_delegates_with_identical_settings() -> None:
    github = FakeGitHub()
    primary = FakeMerger(MergeError("blocked", comment=BLOCKED_TEXT, privilege_blocked=True))
    elevated = FakeMerger()

    _processor(
        merger=PushRestrictionMerger(primary, elevated), github=github
    ).process_pull_request(FakePullContext())

    assert primary.settings == [MERGE_SETTINGS]
    assert elevated.settings == [MERGE_SETTINGS]
    assert github.posted == []


def test_privilege_blocked_failure_without_elevated_executor_is_reported() -> None:
    github = FakeGitHub()
    primary = FakeMerger(MergeError("blocked", comment=BLOCKED_TEXT, privilege_blocked=True))

    _processor(merger=primary, github=github).process_pull_request(FakePullContext())

    assert github.posted == [(7, BLOCKED_TEXT)]


def test_elevated_failure_is_reported_with_its_own_text() -> None:
    github = FakeGitHub()
    primary = FakeMerger(MergeError("blocked", comment=BLOCKED_TEXT, privilege_blocked=True))
    elevated = FakeMerger(MergeError("admin blocked", comment="Unable to merge: still blocked"))

    _processor(
        merger=PushRestrictionMerger(primary, elevated), github=github
    ).process_pull_request(FakePullContext())

    assert github.posted == [(7, "Unable to merge: still blocked")]


def test_config_fetch_failure_is_fatal() -> None:
    with pytest.raises(ConfigResolutionError, match="failed to fetch configuration"):
        _processor(fetched=ConfigFetchError("failed to read o/r")).process_pull_request(
            FakePullContext()
        )


def test_executor_construction_failure_is_fatal() -> None:
    def broken_factory() -> MergeExecutor:
        raise CredentialError("GitHub token must be non-empty")

    with pytest.raises(ExecutorConstructionError, match="failed to create token client"):
        _processor(merger_factory=broken_factory).process_pull_request(FakePullContext())


def test_executor_construction_failure_is_fatal_even_without_config() -> None:
    def broken_factory() -> MergeExecutor:
        raise CredentialError("GitHub token must not contain whitespace")

    with pytest.raises(ExecutorConstructionError):
        _processor(
            fetched=ConfigAbsent(source=SOURCE), merger_factory=broken_factory
        ).process_pull_request(FakePullContext())


def test_condition_failures_are_fatal_and_distinguishable() -> None:
    evaluator = FakeEvaluator(merge=RuntimeError("labels unavailable"), update=KeyError("x"))
    processor = _processor(evaluator=evaluator)

    with pytest.raises(ConditionEvaluationError, match="unable to determine merge status") as merge:
        processor.process_pull_request(FakePullContext())
    with pytest.raises(ConditionEvaluationError, match="unable to determine update status"):
        processor.update_pull_request(FakePullContext(), "main")

    assert not isinstance(merge.value, MergeError)
    assert isinstance(merge.value.__cause__, RuntimeError)


def test_cancellation_aborts_before_any_step() -> None:
    stop_event = Event()
    stop_event.set()
    merger = FakeMerger()
    processor = _processor(merger=merger, stop_event=stop_event)

    with pytest.raises(EventCancelledError, match="cancelled before fetch_configuration"):
        processor.process_pull_request(FakePullContext())
    with pytest.raises(EventCancelledError):
        processor.update_pull_request(FakePullContext(), "main")
    assert merger.settings == []


def test_cancellation_between_evaluation_and_merge() -> None:
    stop_event = Event()
    merger = FakeMerger()

    class StoppingEvaluator(FakeEvaluator):
        def should_merge(self, pull_ctx: PullRequestContext, settings: MergeSettings) -> bool:
            stop_event.set()
            return super().should_merge(pull_ctx, settings)

    processor = _processor(evaluator=StoppingEvaluator(), merger=merger, stop_event=stop_event)

    with pytest.raises(EventCancelledError, match="cancelled before merge"):
        processor.process_pull_request(FakePullContext())
    assert merger.settings == []


def test_update_skipped_when_condition_is_false() -> None:
    updater = FakeUpdater()

    _processor(evaluator=FakeEvaluator(update=False), updater=updater).update_pull_request(
        FakePullContext(), "main"
    )

    assert updater.calls == []


def test_update_invokes_updater_for_base(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose="low")
    updater = FakeUpdater()

    _processor(updater=updater).update_pull_request(FakePullContext(), "main")

    assert updater.calls == [(7, "main")]
    assert "event=update_succeeded pull_request=o/r#7 base_ref=main" in capsys.readouterr().err


def test_update_not_needed_is_not_reported_as_success(
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(verbose="low")

    _processor(updater=FakeUpdater(result=False)).update_pull_request(FakePullContext(), "main")

    assert "event=update_succeeded" not in capsys.readouterr().err


def test_update_failure_is_logged_without_comment(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose="low")
    github = FakeGitHub()
    updater = FakeUpdater(result=UpdateError("failed to update o/r#7 onto main: conflict"))

    _processor(updater=updater, github=github).update_pull_request(FakePullContext(), "main")

    assert github.posted == []
    stderr = capsys.readouterr().err
    assert "ERROR" in stderr
    assert "event=update_failed" in stderr


def test_config_is_resolved_fresh_for_every_event() -> None:
    fetcher = FakeConfigFetcher(VALID)
    processor = PullRequestProcessor(
        github=FakeGitHub(),  # type: ignore[arg-type]
        config_fetcher=fetcher,
        evaluator=FakeEvaluator(),
        updater=FakeUpdater(),  # type: ignore[arg-type]
        merger_factory=FakeMerger,
    )

    processor.process_pull_request(FakePullContext())
    processor.update_pull_request(FakePullContext(), "main")
    processor.process_pull_request(FakePullContext())

    assert fetcher.calls == 3


def test_settings_from_config_flow_through_unchanged() -> None:
    custom = replace(MERGE_SETTINGS, method="rebase", delete_after_merge=True)
    merger = FakeMerger()

    _processor(
        fetched=ConfigValid(
            source=SOURCE,
            config=RepoBotConfig(version=1, merge=custom, update=UPDATE_SETTINGS),
        ),
        merger=merger,
    ).process_pull_request(FakePullContext())

    assert merger.settings == [custom]


def test_timeouts_are_fatal_deadline_errors() -> None:
    timeout = CommandTimeoutError("Command timed out after 30s")

    with pytest.raises(EventDeadlineError, match="merge for o/r#7 did not finish in time"):
        _processor(merger=FakeMerger(timeout)).process_pull_request(FakePullContext())
    with pytest.raises(EventDeadlineError, match="update for o/r#7"):
        _processor(updater=FakeUpdater(result=timeout)).update_pull_request(
            FakePullContext(), "main"
        )
    with pytest.raises(EventDeadlineError, match="fetch_configuration"):
        _processor(fetched=timeout).process_pull_request(FakePullContext())


def test_timeout_while_commenting_is_fatal() -> None:
    github = FakeGitHub(post_error=CommandTimeoutError("Command timed out after 30s"))
    merger = FakeMerger(MergeError("blocked", comment=BLOCKED_TEXT))

    with pytest.raises(EventDeadlineError, match="failure_comment"):
        _processor(merger=merger, github=github).process_pull_request(FakePullContext())
