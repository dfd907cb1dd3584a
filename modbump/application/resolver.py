import logging
from pathlib import Path
from typing import Iterable, List

from pydantic import ValidationError

from modbump.application.ports import UpdateCommandRunner
from modbump.domain.exceptions import CommandFailedException, UpdateException
from modbump.domain.filters import FilterConfig
from modbump.domain.models import Repository, Update

logger = logging.getLogger(__name__)

FIELD_SEPARATOR = ":"
FIELD_COUNT = 3


def parse_update_lines(lines: Iterable[str], source: str = "") -> List[Update]:
    """
    Parses 'module:current:available' lines into updates.

    Lines that are not exactly three non-empty fields are skipped silently.
    Lines with a version that is not valid semver, or that would not move the
    module forward, are discarded with a warning; the rest are still parsed.
    """
    updates: List[Update] = []

    for line in lines:
        columns = line.strip().split(FIELD_SEPARATOR)
        if len(columns) != FIELD_COUNT or not all(columns):
            continue

        module, old_version, new_version = columns
        try:
            updates.append(Update(module=module, old_version=old_version, new_version=new_version))
        except ValidationError as e:
            reason = e.errors()[0].get('msg', str(e))
            logger.warning(f"Discarding update for module '{module}' in '{source}': {reason}")

    return updates


class UpdateResolver:
    """
    Finds the allowed dependency updates for a cloned repository and applies them.
    """

    def __init__(self, runner: UpdateCommandRunner, filters: FilterConfig, reconcile: bool = True):
        self.runner = runner
        self.filters = filters
        self.reconcile = reconcile

    @staticmethod
    def _working_dir(repo: Repository) -> Path:
        return repo.work_tree or repo.clone_path

    async def find_updates(self, repo: Repository) -> List[Update]:
        """
        Lists and filters the updates available for the repository without applying them.
        An empty list means there is nothing to do.
        """
        working_dir = self._working_dir(repo)

        if not await self.runner.is_module(working_dir):
            logger.info(f"repo '{repo.name}': not a Go module, skipping")
            return []

        lines = await self.runner.list_candidate_updates(working_dir)
        candidates = parse_update_lines(lines, source=repo.name)

        allowed = [update for update in candidates if self.filters.is_module_allowed(update.module)]
        blocked = len(candidates) - len(allowed)
        if blocked:
            logger.info(f"repo '{repo.name}': {blocked} updates blocked by filters")

        return allowed

    async def resolve(self, repo: Repository) -> List[Update]:
        """
        Applies every allowed update to the repository's work tree and returns them.

        Raises:
            UpdateException: If applying an update or reconciling the manifests fails.
                Updates applied before the failure are left in place.
        """
        updates = await self.find_updates(repo)
        if not updates:
            logger.info(f"repo '{repo.name}': has no updates, skipping")
            return []

        logger.info(f"repo '{repo.name}': has {len(updates)} updates, applying")
        working_dir = self._working_dir(repo)

        for update in updates:
            try:
                await self.runner.apply_update(working_dir, update.module, update.target)
            except (CommandFailedException, OSError) as e:
                raise UpdateException(
                    f"repo '{repo.name}': failed to update module '{update.module}' to {update.target}: {e}"
                ) from e
            logger.debug(f"repo '{repo.name}': updated {update}")

        if self.reconcile:
            try:
                await self.runner.reconcile(working_dir)
            except (CommandFailedException, OSError) as e:
                raise UpdateException(f"repo '{repo.name}': failed to reconcile modules: {e}") from e

        logger.info(f"repo '{repo.name}': bumped {len(updates)} modules")
        return updates
