import logging
from typing import Dict, Iterable, List

from modbump.domain.models import Repository

logger = logging.getLogger(__name__)


def converge(work_dir: str, persisted: Iterable[Repository], discovered: Iterable[Repository]) -> List[Repository]:
    """
    Merges repositories remembered from earlier runs into the freshly discovered ones.

    Repositories are matched on their clone path once both sides are placed under
    work_dir. A match keeps the persisted pipeline state (flags, branches, pull
    request id) and takes the remote URL and VCS kind from discovery. Persisted
    repositories that are no longer discovered are dropped. Order follows discovery.
    """
    remembered: Dict[str, Repository] = {}
    for repo in persisted:
        repo = repo.model_copy(update={'base_dir': work_dir})
        remembered[str(repo.clone_path)] = repo

    converged: List[Repository] = []
    matched = set()
    for repo in discovered:
        repo = repo.model_copy(update={'base_dir': work_dir})
        previous = remembered.get(str(repo.clone_path))
        if previous is not None:
            repo = previous.model_copy(update={'url': repo.url, 'vcs': repo.vcs})
            matched.add(str(repo.clone_path))
        converged.append(repo)

    dropped = len(remembered.keys() - matched)
    if dropped > 0:
        logger.info(f"Dropped {dropped} stored repositories that are no longer discovered.")

    return converged
