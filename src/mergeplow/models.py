from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


MergeMethod = Literal["merge", "squash", "rebase"]


@dataclass(frozen=True)
class PullRequestSnapshot:
    number: int
    state: str
    draft: bool
    merged: bool
    labels: tuple[str, ...]
    head_ref: str
    head_sha: str
    head_repo_full_name: str
    base_ref: str


@dataclass(frozen=True)
class MergeSettings:
    method: MergeMethod = "merge"
    trigger_labels: tuple[str, ...] = ()
    ignore_labels: tuple[str, ...] = ()
    delete_after_merge: bool = False
    allow_draft: bool = False


@dataclass(frozen=True)
class UpdateSettings:
    trigger_labels: tuple[str, ...] = ()
    ignore_labels: tuple[str, ...] = ()


@dataclass(frozen=True)
class RepoBotConfig:
    version: int
    merge: MergeSettings
    update: UpdateSettings


@dataclass(frozen=True)
class ConfigSource:
    owner: str
    repo: str
    ref: str
    path: str

    def __str__(self) -> str:
        return f"{self.owner}/{self.repo} ref={self.ref} path={self.path}"


@dataclass(frozen=True)
class ConfigAbsent:
    source: ConfigSource


@dataclass(frozen=True)
class ConfigInvalid:
    source: ConfigSource
    reason: str


@dataclass(frozen=True)
class ConfigValid:
    source: ConfigSource
    config: RepoBotConfig


FetchedConfig = ConfigAbsent | ConfigInvalid | ConfigValid
