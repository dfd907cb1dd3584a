"""
Capability interfaces the bump engine talks to.

The engine never knows which host, version-control tool or storage backend
it is driving; main.py picks the concrete adapters from the configuration.
"""
from pathlib import Path
from typing import List, Protocol, Sequence

from modbump.domain.models import MergeOutcome, Repository, SCMKind, VCSKind


class SCMClient(Protocol):
    @property
    def scm_kind(self) -> SCMKind: ...

    async def discover(self, vcs_kind: VCSKind) -> List[Repository]:
        """Lists the repositories to manage, raising DiscoveryException on failure."""
        ...

    async def open_pull_request(self, repo: Repository) -> int:
        """Opens a pull request from the source to the target branch and returns its id."""
        ...

    async def merge_pull_request(self, repo: Repository) -> MergeOutcome: ...


class VCSClient(Protocol):
    @property
    def vcs_kind(self) -> VCSKind: ...

    def source_branch(self) -> str:
        """A fresh, timestamp-suffixed branch name for this run."""
        ...

    def target_branch(self) -> str: ...

    async def clone(self, repo: Repository) -> Path:
        """Clones the repository onto its source branch and returns the work tree."""
        ...

    async def push(self, repo: Repository) -> None:
        """Commits the dependency manifests and pushes the source branch."""
        ...

    async def delete_remote_branch(self, repo: Repository) -> None:
        """Deletes the source branch on the remote; a missing branch is not an error."""
        ...


class StorageClient(Protocol):
    async def load(self) -> List[Repository]: ...

    async def save(self, repos: Sequence[Repository]) -> None: ...

    async def close(self) -> None: ...


class UpdateCommandRunner(Protocol):
    async def is_module(self, working_dir: Path) -> bool: ...

    async def list_candidate_updates(self, working_dir: Path) -> List[str]:
        """Raw 'module:current:available' lines for direct dependencies with a newer version."""
        ...

    async def apply_update(self, working_dir: Path, module: str, version: str) -> None: ...

    async def reconcile(self, working_dir: Path) -> None: ...
