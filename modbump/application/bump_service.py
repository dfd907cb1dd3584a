import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from typing import Awaitable, List, Optional, TypeVar

from modbump.application.config import GeneralConfig
from modbump.application.convergence import converge
from modbump.application.ports import SCMClient, StorageClient, VCSClient
from modbump.application.resolver import UpdateResolver
from modbump.domain import state
from modbump.domain.exceptions import Stage, StageFailedException
from modbump.domain.models import MergeOutcome, Repository

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class BumpReport:
    """Outcome of one pass: the final repository values and the stage failures in the order they happened."""
    repositories: List[Repository]
    failures: List[StageFailedException] = field(default_factory=list)

    @property
    def first_error(self) -> Optional[StageFailedException]:
        return self.failures[0] if self.failures else None

    @property
    def ok(self) -> bool:
        return not self.failures


class BumpService:
    """
    Service responsible for running one pass over the fleet of repositories:
    load remembered state, discover repositories, converge both, then drive every
    repository through clone -> merge -> bump -> push -> pull request.

    Each repository gets its own task. A shared semaphore bounds how many run at
    once, and a failure in one repository only stops that repository's pipeline.
    """

    def __init__(
            self,
            scm_client: SCMClient,
            vcs_client: VCSClient,
            storage: StorageClient,
            resolver: UpdateResolver,
            config: GeneralConfig,
            auto_merge: bool = False,
    ):
        self.scm_client = scm_client
        self.vcs_client = vcs_client
        self.storage = storage
        self.resolver = resolver
        self.config = config
        self.auto_merge = auto_merge

    async def run(self) -> BumpReport:
        """
        Runs a full pass.

        Raises:
            StorageException: If the snapshot cannot be loaded or saved.
            DiscoveryException: If repositories cannot be listed.
        """
        if self.config.clean_before:
            await self._clean()

        # Repositories from the last run, these carry pull request info.
        persisted = await self.storage.load()
        logger.info(f"Loaded {len(persisted)} repositories from storage.")

        discovered = await self.scm_client.discover(self.vcs_client.vcs_kind)
        logger.info(f"Discovered {len(discovered)} repositories.")

        repos = converge(self.config.work_dir, persisted, discovered)

        self._semaphore = asyncio.Semaphore(self.config.workers)
        self._repos = list(repos)
        self._stages = [Stage.CLONE] * len(self._repos)
        self._failures: List[StageFailedException] = []

        tasks = [asyncio.create_task(self._process(index)) for index in range(len(self._repos))]

        try:
            if self.config.fail_fast and tasks:
                await self._wait_fail_fast(tasks)
            await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            if self.config.cleanup:
                await self._clean()

        report = BumpReport(repositories=list(self._repos), failures=list(self._failures))

        # Only repos with an open pull request are remembered, and only when a later run needs them.
        if self.config.stateful or self.auto_merge:
            savable = state.get_savable(report.repositories)
            await self.storage.save(savable)
            logger.info(f"Saved {len(savable)} repositories to storage.")

        logger.info(
            f"Pass completed. {len(report.repositories)} repositories processed, "
            f"{len(report.failures)} failed."
        )
        return report

    async def _wait_fail_fast(self, tasks: List[asyncio.Task]) -> None:
        """Cancels every unfinished repository as soon as one fails."""
        _, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        if pending:
            logger.warning(f"Cancelling {len(pending)} repositories after the first failure.")
            for task in pending:
                task.cancel()

    async def _process(self, index: int) -> None:
        async with self._semaphore:
            try:
                await self._pipeline(index)
            except StageFailedException as e:
                self._record(e)
                raise
            except Exception as e:
                # Raised outside a collaborator call, e.g. while naming branches.
                failure = StageFailedException(self._repos[index].name, self._stages[index], e)
                self._record(failure)
                raise failure from e

    def _record(self, failure: StageFailedException) -> None:
        self._failures.append(failure)
        logger.error(str(failure))

    async def _pipeline(self, index: int) -> None:
        """
        Advances one repository as far as it can go in this pass.

        self._repos[index] is only replaced after a stage succeeds, so a failing
        stage leaves the repository exactly as it was before the attempt.
        """
        repo = self._repos[index]
        scm_kind = self.scm_client.scm_kind
        vcs_kind = self.vcs_client.vcs_kind

        # A clone from a previous run never survives, only the live handle counts.
        if state.is_cloneable(repo, vcs_kind) and repo.work_tree is None:
            self._stages[index] = Stage.CLONE
            repo = state.assign_branches(repo, self.vcs_client.source_branch(), self.vcs_client.target_branch())
            work_tree = await self._attempt(repo, Stage.CLONE, self.vcs_client.clone(repo))
            repo = self._advance(index, state.mark_cloned(repo, work_tree))

        if self.auto_merge and state.is_mergeable(repo, scm_kind):
            self._stages[index] = Stage.MERGE
            outcome = await self._attempt(repo, Stage.MERGE, self.scm_client.merge_pull_request(repo))
            if outcome == MergeOutcome.NOT_MERGEABLE:
                logger.info(f"repo '{repo.name}': pull request #{repo.pull_request_id} cannot be merged yet")
                return

            await self._attempt(repo, Stage.MERGE, self.vcs_client.delete_remote_branch(repo))
            repo = self._advance(index, state.reset_state(repo))
            logger.info(f"repo '{repo.name}': merged pull request and sleeping for {self.config.delay}s")
            await self._throttle()

        if state.is_bumpable(repo):
            self._stages[index] = Stage.BUMP
            updates = await self._attempt(repo, Stage.BUMP, self.resolver.resolve(repo))
            if not updates:
                return
            repo = self._advance(index, state.mark_bumped(repo, updates))

        if state.is_pushable(repo, vcs_kind):
            self._stages[index] = Stage.PUSH
            await self._attempt(repo, Stage.PUSH, self.vcs_client.push(repo))
            repo = self._advance(index, state.mark_pushed(repo))
            logger.info(f"repo '{repo.name}': pushed and sleeping for {self.config.delay}s")
            await self._throttle()

        if state.is_prable(repo, scm_kind):
            self._stages[index] = Stage.PULL_REQUEST
            pull_request_id = await self._attempt(repo, Stage.PULL_REQUEST, self.scm_client.open_pull_request(repo))
            repo = self._advance(index, state.mark_pull_request(repo, pull_request_id))
            logger.info(
                f"repo '{repo.name}': created pull request #{pull_request_id} "
                f"and sleeping for {self.config.delay}s"
            )
            await self._throttle()

    def _advance(self, index: int, repo: Repository) -> Repository:
        self._repos[index] = repo
        return repo

    @staticmethod
    async def _attempt(repo: Repository, stage: Stage, operation: Awaitable[T]) -> T:
        try:
            return await operation
        except Exception as e:
            raise StageFailedException(repo.name, stage, e) from e

    async def _throttle(self) -> None:
        await asyncio.sleep(self.config.delay)

    async def _clean(self) -> None:
        await asyncio.to_thread(shutil.rmtree, self.config.work_dir, ignore_errors=True)
