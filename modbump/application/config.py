import os
from pathlib import Path
from string import Template
from typing import List, Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from modbump.domain.exceptions import ConfigurationException
from modbump.domain.filters import FilterConfig
from modbump.domain.models import Repository

DEFAULT_CONFIG_FILENAME = ".modbump.yaml"

# Secrets never live in the config file; they are read from the environment
# (a .env file is loaded by main before the config).
SECRET_ENV_VARS = {
    ("scm", "bitbucket_server", "username"): "BITBUCKET_SERVER_USERNAME",
    ("scm", "bitbucket_server", "password"): "BITBUCKET_SERVER_PASSWORD",
    ("scm", "bitbucket_server", "token"): "BITBUCKET_SERVER_TOKEN",
    ("vcs", "git", "username"): "GIT_USERNAME",
    ("vcs", "git", "password"): "GIT_PASSWORD",
    ("vcs", "git", "token"): "GIT_TOKEN",
    ("storage", "database", "url"): "DATABASE_URL",
}


class GeneralConfig(BaseModel):
    workers: int = Field(4, ge=1, description="Repositories processed concurrently")
    work_dir: str = Field("repos", description="Directory all repositories are cloned under")
    clone_type: Literal["http", "ssh"] = "http"
    stateful: bool = Field(False, description="Persist open pull requests on every pass")
    clean_before: bool = Field(True, description="Delete the work dir before a pass")
    cleanup: bool = Field(False, description="Delete the work dir after a pass")
    delay: float = Field(0.0, ge=0, description="Seconds to pause after each state-changing host operation")
    fail_fast: bool = Field(False, description="Cancel remaining repositories on the first failure")

    @field_validator("work_dir")
    @classmethod
    def _clean_work_dir(cls, value: str) -> str:
        cleaned = os.path.normpath(value)
        # The work dir is deleted between passes.
        if cleaned in (os.curdir, os.pardir, os.sep):
            raise ValueError(f"work_dir {value!r} must be a dedicated directory")
        return cleaned


class PullRequestConfig(BaseModel):
    title: str = "Bump Go module dependencies"
    description: str = "Updated modules in $repository:\n\n$updates"
    auto_merge: bool = False


class BitbucketServerConfig(BaseModel):
    url: str = ""
    insecure: bool = False
    project_key: str = ""
    username: str = Field("", exclude=True)
    password: str = Field("", exclude=True)
    token: str = Field("", exclude=True)


class SCMConfig(BaseModel):
    pull_request: PullRequestConfig = Field(default_factory=PullRequestConfig)
    bitbucket_server: BitbucketServerConfig = Field(default_factory=BitbucketServerConfig)


class GitConfig(BaseModel):
    source_branch: str = "modbump"
    target_branch: str = "master"
    commit_message: str = "Bump Go module dependencies\n\n$updates"
    commit_author_name: str = "modbump"
    commit_author_email: str = "modbump@localhost"
    insecure: bool = False
    manifest_files: List[str] = Field(default_factory=lambda: ["go.mod", "go.sum"])
    username: str = Field("", exclude=True)
    password: str = Field("", exclude=True)
    token: str = Field("", exclude=True)


class VCSConfig(BaseModel):
    git: GitConfig = Field(default_factory=GitConfig)


class BumpConfig(FilterConfig):
    go_mod_tidy: bool = Field(True, description="Run 'go mod tidy' after applying updates")


class FileStorageConfig(BaseModel):
    filename: str = ".modbump-state.json"


class DatabaseStorageConfig(BaseModel):
    url: str = Field("", exclude=True)


class StorageConfig(BaseModel):
    backend: Literal["file", "database"] = "file"
    file: FileStorageConfig = Field(default_factory=FileStorageConfig)
    database: DatabaseStorageConfig = Field(default_factory=DatabaseStorageConfig)


class Configuration(BaseModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    scm: SCMConfig = Field(default_factory=SCMConfig)
    vcs: VCSConfig = Field(default_factory=VCSConfig)
    bump: BumpConfig = Field(default_factory=BumpConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)


def find_config_file(explicit: Optional[str] = None, home: Optional[Path] = None) -> Path:
    """
    Locates the configuration file: an explicit path, then ./.modbump.yaml, then ~/.modbump.yaml.

    Raises:
        ConfigurationException: If none of the candidates exist.
    """
    if explicit:
        path = Path(explicit)
        if not path.is_file():
            raise ConfigurationException(f"config file {path} does not exist")
        return path

    candidates = [Path(DEFAULT_CONFIG_FILENAME), (home or Path.home()) / DEFAULT_CONFIG_FILENAME]
    for candidate in candidates:
        if candidate.is_file():
            return candidate

    raise ConfigurationException(
        f"could not find config file in {', '.join(str(c) for c in candidates)}"
    )


def load_config(path: Path, environ: Optional[Mapping[str, str]] = None) -> Configuration:
    """
    Reads a YAML configuration file and overlays secrets from the environment.

    Raises:
        ConfigurationException: If the file cannot be read, parsed or validated.
    """
    try:
        raw = yaml.safe_load(Path(path).read_text()) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationException(f"could not read config file {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationException(f"config file {path} must contain a mapping")

    return build_config(raw, os.environ if environ is None else environ)


def build_config(raw: dict, environ: Mapping[str, str]) -> Configuration:
    for (section, subsection, field), env_var in SECRET_ENV_VARS.items():
        value = environ.get(env_var)
        if value:
            section_data = raw[section] = raw.get(section) or {}
            subsection_data = section_data[subsection] = section_data.get(subsection) or {}
            subsection_data[field] = value

    try:
        return Configuration.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationException(f"invalid configuration: {e}") from e


def render_message(template: str, repo: Repository) -> str:
    """Fills $repository and $updates in commit messages and pull request descriptions."""
    updates = "\n".join(f"- {update}" for update in repo.updates)
    return Template(template).safe_substitute(repository=repo.name, updates=updates)
