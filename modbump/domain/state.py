"""
Guard predicates and transitions of the repository lifecycle.

A repository moves through clone -> merge existing pull request -> bump ->
push -> open pull request. Each predicate decides whether a stage applies to
the current value; each transition returns the next value and is only called
once the matching collaborator call has succeeded.
"""
from pathlib import Path
from typing import Iterable, List, Sequence

from modbump.domain.models import Repository, SCMKind, Update, VCSKind


def is_cloneable(repo: Repository, vcs: VCSKind) -> bool:
    return repo.vcs == vcs


def is_mergeable(repo: Repository, scm: SCMKind) -> bool:
    """True when the repository has a pull request open on this host."""
    return repo.scm == scm and repo.pull_request_opened and repo.pull_request_id != 0


def is_bumpable(repo: Repository) -> bool:
    return not repo.pull_request_opened and not repo.bumped and repo.cloned


def is_pushable(repo: Repository, vcs: VCSKind) -> bool:
    return repo.vcs == vcs and not repo.pull_request_opened and not repo.pushed and repo.bumped


def is_prable(repo: Repository, scm: SCMKind) -> bool:
    return repo.scm == scm and not repo.pull_request_opened and repo.pushed


def is_savable(repo: Repository) -> bool:
    """Only repositories with a trackable open pull request are worth persisting."""
    return repo.pull_request_opened and repo.pull_request_id != 0


def get_savable(repos: Iterable[Repository]) -> List[Repository]:
    return [repo for repo in repos if is_savable(repo)]


def assign_branches(repo: Repository, source_branch: str, target_branch: str) -> Repository:
    """Fills in branch names the repository does not have yet."""
    return repo.model_copy(update={
        'source_branch': repo.source_branch or source_branch,
        'target_branch': repo.target_branch or target_branch,
    })


def mark_cloned(repo: Repository, work_tree: Path) -> Repository:
    return repo.model_copy(update={'cloned': True, 'work_tree': work_tree})


def mark_bumped(repo: Repository, updates: Sequence[Update]) -> Repository:
    if not updates:
        raise ValueError(f"repo '{repo.name}': cannot mark bumped without updates")
    return repo.model_copy(update={'bumped': True, 'updates': tuple(updates)})


def mark_pushed(repo: Repository) -> Repository:
    return repo.model_copy(update={'pushed': True})


def mark_pull_request(repo: Repository, pull_request_id: int) -> Repository:
    return repo.model_copy(update={'pull_request_opened': True, 'pull_request_id': pull_request_id})


def reset_state(repo: Repository) -> Repository:
    """Returns the repository to its pre-pipeline state, keeping only identity and location."""
    return repo.model_copy(update={
        'cloned': False,
        'bumped': False,
        'pushed': False,
        'pull_request_opened': False,
        'updates': (),
        'source_branch': '',
        'target_branch': '',
        'pull_request_id': 0,
        'work_tree': None,
    })
