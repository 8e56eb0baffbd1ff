from __future__ import annotations

from pathlib import Path

import pytest

from mergeplow import config
from mergeplow.config import AppConfig, ConfigError, RepoConfig, RuntimeConfig


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


def test_load_config_legacy_single_repo_applies_defaults(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "mergeplow.toml",
        """
[runtime]
base_dir = "~/tmp/mergeplow"

[repo]
owner = "acme"
name = "widgets"
""".strip(),
    )

    loaded = config.load_config(cfg_path)

    assert isinstance(loaded, AppConfig)
    assert loaded.runtime.base_dir.as_posix().endswith("/tmp/mergeplow")
    assert loaded.runtime.poll_interval_seconds == 60
    assert loaded.runtime.request_timeout_seconds == 30
    assert loaded.runtime.config_path == ".mergeplow.toml"
    assert loaded.runtime.push_restriction_token_env == "MERGEPLOW_PUSH_RESTRICTION_TOKEN"
    assert loaded.repos == (RepoConfig(repo_id="widgets", owner="acme", name="widgets"),)
    assert loaded.repos[0].full_name == "acme/widgets"


def test_load_config_multi_repo_keyed_tables_and_name_inference(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "mergeplow.toml",
        """
[runtime]
base_dir = "/var/lib/mergeplow"
poll_interval_seconds = 15
request_timeout_seconds = 5
config_path = ".github/mergeplow.toml"
push_restriction_token_env = "BOT_ADMIN_TOKEN"

[repo.zeta]
owner = "acme"

[repo.alpha]
owner = "acme"
name = "gadgets"
""".strip(),
    )

    loaded = config.load_config(cfg_path)

    assert loaded.runtime.poll_interval_seconds == 15
    assert loaded.runtime.request_timeout_seconds == 5
    assert loaded.runtime.config_path == ".github/mergeplow.toml"
    assert loaded.runtime.push_restriction_token_env == "BOT_ADMIN_TOKEN"
    assert [repo.repo_id for repo in loaded.repos] == ["alpha", "zeta"]
    assert [repo.full_name for repo in loaded.repos] == ["acme/gadgets", "acme/zeta"]


@pytest.mark.parametrize(
    ("body", "expected"),
    (
        ("[repo]\nowner='o'\nname='r'\n", r"\[runtime\] is required"),
        ("[runtime]\nbase_dir='/tmp'\n", r"\[repo\] is required"),
        ("[runtime]\nbase_dir='/tmp'\n[repo]\n", r"\[repo\] must define one repo"),
        (
            "[runtime]\nbase_dir='/tmp'\npoll_interval_seconds=1\n[repo]\nowner='o'\nname='r'\n",
            "poll_interval_seconds must be >= 5",
        ),
        (
            "[runtime]\nbase_dir='/tmp'\nrequest_timeout_seconds=0\n[repo]\nowner='o'\nname='r'\n",
            "request_timeout_seconds must be >= 1",
        ),
        (
            "[runtime]\nbase_dir='/tmp'\nconfig_path='/abs.toml'\n[repo]\nowner='o'\nname='r'\n",
            "config_path must be relative",
        ),
        (
            "[runtime]\nbase_dir='/tmp'\npoll_interval_seconds=true\n[repo]\nowner='o'\nname='r'\n",
            "poll_interval_seconds must be an integer",
        ),
        (
            "[runtime]\nbase_dir='/tmp'\n[repo]\nowner='o'\n[repo.x]\nowner='o'\n",
            "Cannot mix legacy",
        ),
        ("[runtime]\nbase_dir='/tmp'\n[repo.x]\nname='r'\n", "owner is required"),
        (
            "[runtime]\nbase_dir='/tmp'\n[repo.a]\nowner='o'\nname='r'\n[repo.b]\nowner='o'\nname='r'\n",
            "Duplicate repo full_name 'o/r'",
        ),
    ),
)
def test_load_config_rejects_invalid_files(tmp_path: Path, body: str, expected: str) -> None:
    cfg_path = _write(tmp_path / "mergeplow.toml", body)
    with pytest.raises(ConfigError, match=expected):
        config.load_config(cfg_path)


def test_push_restriction_token_reads_named_env_var() -> None:
    runtime = RuntimeConfig(base_dir=Path("/tmp"), push_restriction_token_env="ADMIN_TOKEN")

    assert runtime.push_restriction_token({"ADMIN_TOKEN": "ghp_abc"}) == "ghp_abc"
    assert runtime.push_restriction_token({"ADMIN_TOKEN": ""}) is None
    assert runtime.push_restriction_token({}) is None


def test_push_restriction_token_defaults_to_process_environment(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    runtime = RuntimeConfig(base_dir=Path("/tmp"))
    monkeypatch.setenv("MERGEPLOW_PUSH_RESTRICTION_TOKEN", "ghp_env")
    assert runtime.push_restriction_token() == "ghp_env"

    monkeypatch.delenv("MERGEPLOW_PUSH_RESTRICTION_TOKEN")
    assert runtime.push_restriction_token() is None


def test_find_repo_matches_id_or_full_name() -> None:
    app = AppConfig(
        runtime=RuntimeConfig(base_dir=Path("/tmp")),
        repos=(
            RepoConfig(repo_id="widgets", owner="acme", name="widgets"),
            RepoConfig(repo_id="tools", owner="acme", name="gadgets"),
        ),
    )

    assert app.find_repo("tools").name == "gadgets"
    assert app.find_repo(" acme/widgets ").repo_id == "widgets"
    with pytest.raises(ConfigError, match="Unknown repo 'nope'. Expected one of"):
        app.find_repo("nope")
    with pytest.raises(ConfigError, match="must be non-empty"):
        app.find_repo("  ")
