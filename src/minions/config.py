"""Configuration module for minions settings.

Settings are read once (environment + `.env`) at the entry point and handed to
the pipeline as explicit values. Core modules never consult `os.environ`
themselves; they receive a `ProcessEnvironment` snapshot instead.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigError


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    database_url: str = "sqlite:///minions.db"

    # Sandboxes live under this root, one directory per job
    scratch_root: str = "/tmp"
    log_dir: Optional[str] = None
    log_level: str = "INFO"

    # Timeouts (seconds). The agent budget is roughly 3x the step budget.
    step_timeout_seconds: int = 5 * 60
    agent_timeout_seconds: int = 15 * 60
    self_improve_agent_timeout_seconds: int = 10 * 60
    classifier_timeout_seconds: int = 120

    max_remediation_attempts: int = 2

    # Default commands for target repositories (overridable per project)
    agent_install_cmd: str = "npm ci"
    agent_lint_cmd: str = "npm run lint --if-present"
    agent_typecheck_cmd: str = "npx tsc --noEmit --pretty"
    agent_build_cmd: str = "npm run build"
    agent_test_cmd: str = "npm test --if-present"
    projects_config_path: str = "config/projects.yaml"

    # Comma separated, simple trailing-* globs
    agent_env_forward: str = "NEXT_PUBLIC_*"
    agent_executable: str = "claude"
    agent_instruction_files: str = "CLAUDE.md"

    # Repository host
    github_token: Optional[SecretStr] = None
    github_app_id: Optional[str] = None
    github_app_private_key: Optional[SecretStr] = None
    github_api_url: str = "https://api.github.com"
    github_host: str = "github.com"

    git_author_name: str = "minions-bot"
    git_author_email: str = "minions-bot@users.noreply.github.com"

    # Agent authentication
    anthropic_api_key: Optional[SecretStr] = None
    claude_credentials_json: Optional[SecretStr] = None
    classifier_model: str = "claude-sonnet-4-5"

    # Orchestrator's own repository (target of self-improvement PRs)
    orchestrator_repo: str = "minions-dev/minions"
    orchestrator_base_branch: str = "main"
    self_improve_install_cmd: str = "python -m pip install -e .[test]"
    self_improve_build_cmd: str = "python -m compileall -q src"
    self_improve_test_cmd: str = "python -m pytest -x -q"
    widget_source_dir: str = "packages/widget"

    # Worker loop
    worker_id: str = "worker-1"
    poll_interval_seconds: float = 5.0
    max_backoff_seconds: float = 60.0

    def env_forward_patterns(self) -> List[str]:
        return [p.strip() for p in self.agent_env_forward.split(",") if p.strip()]

    def stripped_instruction_files(self) -> List[str]:
        return [p.strip() for p in self.agent_instruction_files.split(",") if p.strip()]

    def github_app_configured(self) -> bool:
        return bool(self.github_app_id and self.github_app_private_key)


def get_settings() -> Settings:
    """Build settings from the environment (and `.env`)."""

    return Settings()


def get_database_url(settings: Optional[Settings] = None) -> str:
    """Get database URL from environment or config.

    Priority:
    1. DATABASE_URL environment variable
    2. settings.database_url

    Relative SQLite paths are resolved against the current working directory
    once, so a worker and its subprocesses agree on which file is used.
    """
    url = os.getenv("DATABASE_URL") or (settings or Settings()).database_url

    if url.startswith("sqlite:///") and not url.startswith("sqlite:///:memory:"):
        db_path = Path(url[len("sqlite:///"):])
        if not db_path.is_absolute():
            db_path = (Path.cwd() / db_path).resolve()
        # SQLAlchemy URLs want forward slashes even on Windows (sqlite:///C:/path/to.db).
        url = f"sqlite:///{db_path.as_posix()}"

    return url


@dataclass(frozen=True)
class ProcessEnvironment:
    """Immutable snapshot of the variables handed to child processes."""

    variables: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "variables", MappingProxyType(dict(self.variables)))

    @classmethod
    def capture(cls, source: Optional[Mapping[str, str]] = None) -> "ProcessEnvironment":
        """Snapshot `source` (default: the current process environment)."""
        return cls(dict(os.environ if source is None else source))

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.variables.get(key, default)

    def with_overrides(self, **overrides: str) -> "ProcessEnvironment":
        merged = dict(self.variables)
        merged.update(overrides)
        return ProcessEnvironment(merged)

    def without(self, *keys: str) -> "ProcessEnvironment":
        return ProcessEnvironment({k: v for k, v in self.variables.items() if k not in keys})

    def as_dict(self) -> Dict[str, str]:
        return dict(self.variables)


class ValidationCommands(BaseModel):
    """Shell commands for the four validation tiers."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    lint: str
    typecheck: str
    build: str
    test: str


class ProjectCommands(BaseModel):
    """Install + validation commands for one target repository."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    install: str
    validation: ValidationCommands


def default_project_commands(settings: Settings) -> ProjectCommands:
    return ProjectCommands(
        install=settings.agent_install_cmd,
        validation=ValidationCommands(
            lint=settings.agent_lint_cmd,
            typecheck=settings.agent_typecheck_cmd,
            build=settings.agent_build_cmd,
            test=settings.agent_test_cmd,
        ),
    )


def load_project_commands(
    repo: str, settings: Settings, config_path: Optional[Path] = None
) -> ProjectCommands:
    """Resolve commands for `repo`, layering the projects YAML over the defaults.

    Example `config/projects.yaml`::

        projects:
          acme/web:
            install: pnpm install --frozen-lockfile
            validation:
              typecheck: pnpm exec tsc --noEmit
    """
    defaults = default_project_commands(settings)
    path = Path(config_path or settings.projects_config_path)
    if not path.exists():
        return defaults

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid projects config {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Projects config {path} must be a mapping")

    entry = (data.get("projects") or {}).get(repo)
    if not entry:
        return defaults

    validation = defaults.validation.model_dump()
    validation.update(entry.get("validation") or {})
    try:
        return ProjectCommands(
            install=entry.get("install", defaults.install),
            validation=ValidationCommands(**validation),
        )
    except ValueError as e:
        raise ConfigError(f"Invalid commands for {repo} in {path}: {e}") from e
