"""Parsing and validation of the per-repository bot configuration file."""

from __future__ import annotations

import tomllib
from typing import cast

from mergeplow.models import MergeMethod, MergeSettings, RepoBotConfig, UpdateSettings


SUPPORTED_VERSIONS = frozenset({1})
_MERGE_METHODS: frozenset[str] = frozenset({"merge", "squash", "rebase"})


class RepoConfigError(ValueError):
    pass


def parse_repo_config(text: str) -> RepoBotConfig:
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise RepoConfigError(f"config is not valid TOML: {exc}") from exc

    version = data.get("version", 1)
    if not isinstance(version, int) or isinstance(version, bool):
        raise RepoConfigError("version must be an integer")
    if version not in SUPPORTED_VERSIONS:
        supported = ", ".join(str(item) for item in sorted(SUPPORTED_VERSIONS))
        raise RepoConfigError(f"unsupported config version {version}; expected one of: {supported}")

    merge_data = _optional_table(data, "merge")
    update_data = _optional_table(data, "update")
    if merge_data is None and update_data is None:
        raise RepoConfigError("config must define at least one of [merge] or [update]")

    return RepoBotConfig(
        version=version,
        merge=_parse_merge_settings(merge_data or {}),
        update=_parse_update_settings(update_data or {}),
    )


def _parse_merge_settings(data: dict[str, object]) -> MergeSettings:
    _reject_unknown_keys(
        data,
        table="merge",
        known={"method", "trigger_labels", "ignore_labels", "delete_after_merge", "allow_draft"},
    )
    return MergeSettings(
        method=_merge_method_with_default(data, "method", "merge"),
        trigger_labels=_labels(data, "trigger_labels", table="merge"),
        ignore_labels=_labels(data, "ignore_labels", table="merge"),
        delete_after_merge=_bool_with_default(data, "delete_after_merge", False, table="merge"),
        allow_draft=_bool_with_default(data, "allow_draft", False, table="merge"),
    )


def _parse_update_settings(data: dict[str, object]) -> UpdateSettings:
    _reject_unknown_keys(data, table="update", known={"trigger_labels", "ignore_labels"})
    return UpdateSettings(
        trigger_labels=_labels(data, "trigger_labels", table="update"),
        ignore_labels=_labels(data, "ignore_labels", table="update"),
    )


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise RepoConfigError(f"[{key}] must be a TOML table")
    return cast(dict[str, object], value)


def _reject_unknown_keys(data: dict[str, object], *, table: str, known: set[str]) -> None:
    unknown = sorted(key for key in data if key not in known)
    if unknown:
        raise RepoConfigError(f"unknown keys in [{table}]: {', '.join(unknown)}")


def _merge_method_with_default(
    data: dict[str, object], key: str, default: MergeMethod
) -> MergeMethod:
    value = data.get(key, default)
    if not isinstance(value, str):
        raise RepoConfigError(f"merge.{key} must be one of: merge, rebase, squash")
    normalized = value.strip().lower()
    if normalized not in _MERGE_METHODS:
        raise RepoConfigError(f"merge.{key} must be one of: merge, rebase, squash")
    return cast(MergeMethod, normalized)


def _bool_with_default(data: dict[str, object], key: str, default: bool, *, table: str) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise RepoConfigError(f"{table}.{key} must be a boolean")
    return value


def _labels(data: dict[str, object], key: str, *, table: str) -> tuple[str, ...]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise RepoConfigError(f"{table}.{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise RepoConfigError(f"{table}.{key} entries must be non-empty strings")
        label = item.strip()
        if label not in out:
            out.append(label)
    return tuple(out)
