from __future__ import annotations

from abc import ABC, abstractmethod

from mergeplow.github_gateway import GitHubGateway
from mergeplow.models import PullRequestSnapshot


class PullRequestContext(ABC):
    """Read-only view of one pull request for the duration of a single event."""

    @property
    @abstractmethod
    def owner(self) -> str:
        """Owning user or organization."""

    @property
    @abstractmethod
    def repo(self) -> str:
        """Repository name without the owner."""

    @property
    @abstractmethod
    def snapshot(self) -> PullRequestSnapshot:
        """Pull request state as observed when the event was built."""

    @abstractmethod
    def comments(self) -> tuple[str, ...]:
        """Bodies of every issue comment on the pull request, oldest first."""

    @property
    def number(self) -> int:
        return self.snapshot.number

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def labels(self) -> tuple[str, ...]:
        return self.snapshot.labels

    def __str__(self) -> str:
        return f"{self.full_name}#{self.number}"


class GitHubPullContext(PullRequestContext):
    def __init__(self, github: GitHubGateway, snapshot: PullRequestSnapshot) -> None:
        self._github = github
        self._snapshot = snapshot

    @classmethod
    def fetch(cls, github: GitHubGateway, pr_number: int) -> GitHubPullContext:
        return cls(github, github.get_pull_request(pr_number))

    @property
    def owner(self) -> str:
        return self._github.owner

    @property
    def repo(self) -> str:
        return self._github.name

    @property
    def snapshot(self) -> PullRequestSnapshot:
        return self._snapshot

    def comments(self) -> tuple[str, ...]:
        return self._github.list_issue_comments(self.number)
