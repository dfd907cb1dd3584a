from enum import Enum
from pathlib import Path
from typing import Optional, Tuple

import semver
from pydantic import BaseModel, ConfigDict, Field, model_validator


class SCMKind(str, Enum):
    """Source-control hosts modbump can discover repositories from."""
    BITBUCKET_SERVER = "bitbucketserver"


class VCSKind(str, Enum):
    """Version-control systems modbump can clone and push with."""
    GIT = "git"


def parse_version(text: str) -> semver.Version:
    """
    Parses a version string using strict semantic-version rules.
    A single leading 'v' (as printed by the Go toolchain) is accepted.

    Raises:
        ValueError: If the text is not a valid semantic version.
    """
    return semver.Version.parse(text[1:] if text.startswith("v") else text)


class Update(BaseModel):
    """
    A single dependency change: a module moving from its current version to a newer one.
    Construction fails unless both versions parse and the new one is strictly greater.
    """
    model_config = ConfigDict(frozen=True)

    module: str = Field(..., min_length=1, description="Module path, e.g. github.com/foo/bar")
    old_version: str = Field(..., description="Version currently required")
    new_version: str = Field(..., description="Newer version available")

    @model_validator(mode="after")
    def _check_ordering(self) -> "Update":
        old = parse_version(self.old_version)
        new = parse_version(self.new_version)
        if new <= old:
            raise ValueError(
                f"new version {self.new_version} is not greater than {self.old_version} for module {self.module}"
            )
        return self

    @property
    def old(self) -> semver.Version:
        return parse_version(self.old_version)

    @property
    def new(self) -> semver.Version:
        return parse_version(self.new_version)

    @property
    def target(self) -> str:
        """The version argument handed to the update tool, always 'v'-prefixed."""
        return f"v{self.new}"

    def __str__(self) -> str:
        return f"{self.module} {self.old_version} -> {self.new_version}"


class Repository(BaseModel):
    """
    Immutable domain model representing one managed source repository.

    Lifecycle transitions never mutate an instance; they return a copy
    (see modbump.domain.state), so a repository value can be handed from
    one pipeline stage to the next without any locking.
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Repository slug")
    url: str = Field("", description="Remote URL used for cloning")
    base_dir: str = Field("", description="Working directory all clones live under")
    parent: str = Field("", description="Project or namespace the repository belongs to")
    source_branch: str = Field("", description="Branch the updates are committed on")
    target_branch: str = Field("", description="Branch the pull request is opened against")
    scm: SCMKind
    vcs: VCSKind
    cloned: bool = False
    bumped: bool = False
    pushed: bool = False
    pull_request_opened: bool = False
    updates: Tuple[Update, ...] = ()
    pull_request_id: int = Field(0, ge=0)
    # Live clone handle for the current run; never persisted.
    work_tree: Optional[Path] = Field(default=None, exclude=True)

    @model_validator(mode="after")
    def _check_updates_match_bumped(self) -> "Repository":
        if self.bumped != bool(self.updates):
            raise ValueError(
                f"repo '{self.name}': bumped={self.bumped} but {len(self.updates)} updates recorded"
            )
        return self

    @property
    def clone_path(self) -> Path:
        """Where the repository is cloned: <base_dir>/<scm>/<parent>/<name>."""
        return Path(self.base_dir, self.scm.value, self.parent, self.name)

    @property
    def key(self) -> str:
        """Identity of the repository independent of the working directory."""
        return f"{self.scm.value}/{self.parent}/{self.name}"


class MergeOutcome(str, Enum):
    """Result of asking the host to merge an existing pull request."""
    MERGED = "merged"
    # The pull request was already merged or declined; nothing left to merge.
    CLOSED = "closed"
    # Host policy (approvals, builds, conflicts) vetoes the merge for now.
    NOT_MERGEABLE = "not_mergeable"
