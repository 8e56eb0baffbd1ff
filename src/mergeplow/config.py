from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import tomllib
from typing import Mapping, cast


DEFAULT_REPO_CONFIG_PATH = ".mergeplow.toml"
DEFAULT_PUSH_RESTRICTION_TOKEN_ENV = "MERGEPLOW_PUSH_RESTRICTION_TOKEN"


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    poll_interval_seconds: int = 60
    request_timeout_seconds: int = 30
    config_path: str = DEFAULT_REPO_CONFIG_PATH
    push_restriction_token_env: str = DEFAULT_PUSH_RESTRICTION_TOKEN_ENV

    def push_restriction_token(self, environ: Mapping[str, str] | None = None) -> str | None:
        env = os.environ if environ is None else environ
        token = env.get(self.push_restriction_token_env, "")
        if not token:
            return None
        return token


@dataclass(frozen=True)
class RepoConfig:
    repo_id: str
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    repos: tuple[RepoConfig, ...]

    def find_repo(self, candidate: str) -> RepoConfig:
        normalized = candidate.strip()
        if not normalized:
            raise ConfigError("repo must be non-empty")
        for repo in self.repos:
            if normalized == repo.repo_id or normalized == repo.full_name:
                return repo
        available = ", ".join(sorted(repo.full_name for repo in self.repos))
        raise ConfigError(f"Unknown repo {normalized!r}. Expected one of: {available}")


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _require_table(data, "runtime")
    repo_data = _require_table(data, "repo")

    runtime = RuntimeConfig(
        base_dir=Path(_require_str(runtime_data, "base_dir")).expanduser(),
        poll_interval_seconds=_int_with_default(runtime_data, "poll_interval_seconds", 60),
        request_timeout_seconds=_int_with_default(runtime_data, "request_timeout_seconds", 30),
        config_path=_str_with_default(runtime_data, "config_path", DEFAULT_REPO_CONFIG_PATH),
        push_restriction_token_env=_str_with_default(
            runtime_data, "push_restriction_token_env", DEFAULT_PUSH_RESTRICTION_TOKEN_ENV
        ),
    )

    if runtime.poll_interval_seconds < 5:
        raise ConfigError("runtime.poll_interval_seconds must be >= 5")
    if runtime.request_timeout_seconds < 1:
        raise ConfigError("runtime.request_timeout_seconds must be >= 1")
    if runtime.config_path.startswith("/"):
        raise ConfigError("runtime.config_path must be relative to the repository root")

    return AppConfig(runtime=runtime, repos=_load_repo_configs(repo_data))


def _load_repo_configs(repo_data: dict[str, object]) -> tuple[RepoConfig, ...]:
    if not repo_data:
        raise ConfigError("[repo] must define one repo configuration")

    keyed_items = [(key, value) for key, value in repo_data.items() if isinstance(value, dict)]
    scalar_items = [(key, value) for key, value in repo_data.items() if not isinstance(value, dict)]

    if keyed_items and scalar_items:
        raise ConfigError("Cannot mix legacy [repo] fields with [repo.<id>] tables")

    if scalar_items:
        name = _require_str(repo_data, "name")
        return (RepoConfig(repo_id=name, owner=_require_str(repo_data, "owner"), name=name),)

    repos: list[RepoConfig] = []
    for repo_id, raw_value in sorted(keyed_items):
        repo_table = _require_repo_table(raw_value, table_name=f"[repo.{repo_id}]")
        repos.append(
            RepoConfig(
                repo_id=repo_id,
                owner=_require_str(repo_table, "owner"),
                name=_str_with_default(repo_table, "name", repo_id),
            )
        )
    _ensure_unique_full_names(repos)
    return tuple(repos)


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    return cast(dict[str, object], value)


def _require_repo_table(value: object, *, table_name: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise ConfigError(f"{table_name} must be a TOML table")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _ensure_unique_full_names(repos: list[RepoConfig]) -> None:
    seen: dict[str, str] = {}
    for repo in repos:
        existing_id = seen.get(repo.full_name)
        if existing_id is not None:
            raise ConfigError(
                f"Duplicate repo full_name {repo.full_name!r} across repo ids "
                f"{existing_id!r} and {repo.repo_id!r}"
            )
        seen[repo.full_name] = repo.repo_id
