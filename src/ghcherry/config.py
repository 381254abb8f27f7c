from __future__ import annotations

from dataclasses import dataclass, replace
import os
from pathlib import Path
import re
import tomllib
from typing import Mapping, cast

from dotenv import dotenv_values

from ghcherry.models import CommitMode


DEFAULT_CONFIG_PATH = Path("~/.config/gh_cherry/config.toml")
ENV_OVERRIDES_FILENAME = "cherry.env"


@dataclass(frozen=True)
class GitHubConfig:
    owner: str = ""
    repo: str = ""
    base_branch: str = "develop"
    target_branch: str = "main"

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


@dataclass(frozen=True)
class TagConfig:
    sprint_pattern: str = r"S\d+"
    environment: str = "DEV"
    pending_tag: str = "pending cherrypick"
    completed_tag: str = "cherry picked"


@dataclass(frozen=True)
class SelectionConfig:
    days_back: int = 28
    commit_mode: CommitMode = "range"


@dataclass(frozen=True)
class UiConfig:
    page_size: int = 20
    only_forked_repos: bool = False


@dataclass(frozen=True)
class AppConfig:
    github: GitHubConfig = GitHubConfig()
    tags: TagConfig = TagConfig()
    selection: SelectionConfig = SelectionConfig()
    ui: UiConfig = UiConfig()

    def with_overrides(
        self,
        *,
        owner: str | None = None,
        repo: str | None = None,
        base_branch: str | None = None,
        target_branch: str | None = None,
        days_back: int | None = None,
        only_forks: bool | None = None,
    ) -> AppConfig:
        github = self.github
        if owner is not None:
            github = replace(github, owner=owner)
        if repo is not None:
            github = replace(github, repo=repo)
        if base_branch is not None:
            github = replace(github, base_branch=base_branch)
        if target_branch is not None:
            github = replace(github, target_branch=target_branch)
        selection = self.selection
        if days_back is not None:
            selection = replace(selection, days_back=days_back)
        ui = self.ui
        if only_forks is not None:
            ui = replace(ui, only_forked_repos=only_forks)
        return replace(self, github=github, selection=selection, ui=ui)

    @property
    def needs_discovery(self) -> bool:
        return not self.github.owner or not self.github.repo

    def validate(self) -> None:
        if not self.github.owner or not self.github.repo:
            raise ConfigError(
                "github.owner and github.repo are required "
                "(set them in the config file, cherry.env, or with --owner/--repo)"
            )
        if self.selection.days_back < 1:
            raise ConfigError("selection.days_back must be >= 1")
        if self.ui.page_size < 1:
            raise ConfigError("ui.page_size must be >= 1")
        compile_sprint_pattern(self.tags.sprint_pattern)


class ConfigError(ValueError):
    pass


def compile_sprint_pattern(pattern: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ConfigError(f"Invalid sprint pattern {pattern!r}: {exc}") from exc


def load_config(
    path: Path | None = None,
    *,
    env_file: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> AppConfig:
    """Load the file config, then apply cherry.env and process-environment overrides.

    A missing config file is not an error: defaults are used. Later sources win.
    """
    config_path = (path or DEFAULT_CONFIG_PATH).expanduser()
    if config_path.exists():
        config = _load_file(config_path)
    elif path is not None:
        raise ConfigError(f"Config file not found: {config_path}")
    else:
        config = AppConfig()

    dotenv_path = env_file if env_file is not None else Path.cwd() / ENV_OVERRIDES_FILENAME
    if dotenv_path.exists():
        file_values = {
            key: value for key, value in dotenv_values(dotenv_path).items() if value is not None
        }
        config = apply_env_overrides(config, file_values)

    return apply_env_overrides(config, os.environ if environ is None else environ)


def apply_env_overrides(config: AppConfig, values: Mapping[str, str]) -> AppConfig:
    github = config.github
    tags = config.tags
    selection = config.selection

    if values.get("GITHUB_OWNER"):
        github = replace(github, owner=values["GITHUB_OWNER"])
    if values.get("GITHUB_REPO"):
        github = replace(github, repo=values["GITHUB_REPO"])
    if values.get("BASE_BRANCH"):
        github = replace(github, base_branch=values["BASE_BRANCH"])
    if values.get("TARGET_BRANCH"):
        github = replace(github, target_branch=values["TARGET_BRANCH"])
    if values.get("SPRINT_PATTERN"):
        tags = replace(tags, sprint_pattern=values["SPRINT_PATTERN"])
    if values.get("ENVIRONMENT_TAG"):
        tags = replace(tags, environment=values["ENVIRONMENT_TAG"])
    if values.get("PENDING_TAG"):
        tags = replace(tags, pending_tag=values["PENDING_TAG"])
    if values.get("COMPLETED_TAG"):
        tags = replace(tags, completed_tag=values["COMPLETED_TAG"])
    raw_days = values.get("DAYS_BACK")
    if raw_days:
        try:
            days_back = int(raw_days)
        except ValueError as exc:
            raise ConfigError(f"DAYS_BACK must be an integer, got {raw_days!r}") from exc
        selection = replace(selection, days_back=days_back)

    return replace(config, github=github, tags=tags, selection=selection)


def save_env_overrides(config: AppConfig, path: Path) -> None:
    lines = [
        f'GITHUB_OWNER="{config.github.owner}"',
        f'GITHUB_REPO="{config.github.repo}"',
        f'BASE_BRANCH="{config.github.base_branch}"',
        f'TARGET_BRANCH="{config.github.target_branch}"',
        f"DAYS_BACK={config.selection.days_back}",
    ]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def _load_file(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        try:
            data = tomllib.load(fh)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc

    github_data = _optional_table(data, "github")
    tags_data = _optional_table(data, "tags")
    selection_data = _optional_table(data, "selection")
    ui_data = _optional_table(data, "ui")

    defaults = AppConfig()
    github = GitHubConfig(
        owner=_str_with_default(github_data, "owner", defaults.github.owner, allow_empty=True),
        repo=_str_with_default(github_data, "repo", defaults.github.repo, allow_empty=True),
        base_branch=_str_with_default(github_data, "base_branch", defaults.github.base_branch),
        target_branch=_str_with_default(
            github_data, "target_branch", defaults.github.target_branch
        ),
    )
    tags = TagConfig(
        sprint_pattern=_str_with_default(tags_data, "sprint_pattern", defaults.tags.sprint_pattern),
        environment=_str_with_default(tags_data, "environment", defaults.tags.environment),
        pending_tag=_str_with_default(tags_data, "pending_tag", defaults.tags.pending_tag),
        completed_tag=_str_with_default(tags_data, "completed_tag", defaults.tags.completed_tag),
    )
    compile_sprint_pattern(tags.sprint_pattern)
    if tags.pending_tag == tags.completed_tag:
        raise ConfigError("tags.pending_tag and tags.completed_tag must differ")

    selection = SelectionConfig(
        days_back=_int_with_default(selection_data, "days_back", defaults.selection.days_back),
        commit_mode=_commit_mode_with_default(
            selection_data, "commit_mode", defaults.selection.commit_mode
        ),
    )
    if selection.days_back < 1:
        raise ConfigError("selection.days_back must be >= 1")

    ui = UiConfig(
        page_size=_int_with_default(ui_data, "page_size", defaults.ui.page_size),
        only_forked_repos=_bool_with_default(
            ui_data, "only_forked_repos", defaults.ui.only_forked_repos
        ),
    )
    if ui.page_size < 1:
        raise ConfigError("ui.page_size must be >= 1")

    return AppConfig(github=github, tags=tags, selection=selection, ui=ui)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _str_with_default(
    data: dict[str, object], key: str, default: str, *, allow_empty: bool = False
) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or (not value and not allow_empty):
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _commit_mode_with_default(
    data: dict[str, object], key: str, default: CommitMode
) -> CommitMode:
    value = data.get(key, default)
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be one of: range, head")
    normalized = value.strip().lower()
    if normalized not in {"range", "head"}:
        raise ConfigError(f"{key} must be one of: range, head")
    return cast(CommitMode, normalized)
