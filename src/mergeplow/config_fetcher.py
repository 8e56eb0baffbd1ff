from __future__ import annotations

from abc import ABC, abstractmethod
import logging

from mergeplow.github_gateway import GitHubGateway
from mergeplow.models import (
    ConfigAbsent,
    ConfigInvalid,
    ConfigSource,
    ConfigValid,
    FetchedConfig,
)
from mergeplow.observability import log_event
from mergeplow.pull_context import PullRequestContext
from mergeplow.repo_config import RepoConfigError, parse_repo_config
from mergeplow.shell import CommandTimeoutError


LOGGER = logging.getLogger("mergeplow.config_fetcher")


class ConfigFetchError(RuntimeError):
    """The configuration could not be read from GitHub."""


class ConfigFetcher(ABC):
    @abstractmethod
    def config_for_pull_request(self, pull_ctx: PullRequestContext) -> FetchedConfig:
        """Resolve the bot configuration that governs `pull_ctx`.

        Missing and invalid files are ordinary results; only transport and
        API failures raise `ConfigFetchError`.
        """


class GitHubConfigFetcher(ConfigFetcher):
    """Reads the repository config file from the pull request's base branch."""

    def __init__(self, github: GitHubGateway, config_path: str) -> None:
        self._github = github
        self._config_path = config_path

    def config_for_pull_request(self, pull_ctx: PullRequestContext) -> FetchedConfig:
        source = ConfigSource(
            owner=pull_ctx.owner,
            repo=pull_ctx.repo,
            ref=pull_ctx.snapshot.base_ref,
            path=self._config_path,
        )
        try:
            raw = self._github.get_file_contents(self._config_path, ref=source.ref)
        except CommandTimeoutError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ConfigFetchError(f"failed to read {source}: {exc}") from exc

        if raw is None:
            return ConfigAbsent(source=source)

        try:
            config = parse_repo_config(raw.decode("utf-8"))
        except UnicodeDecodeError:
            return ConfigInvalid(source=source, reason="config is not valid UTF-8")
        except RepoConfigError as exc:
            log_event(LOGGER, "repo_config_rejected", source=str(source), reason=str(exc))
            return ConfigInvalid(source=source, reason=str(exc))
        return ConfigValid(source=source, config=config)
