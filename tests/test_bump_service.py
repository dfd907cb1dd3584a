import asyncio
import tempfile
import unittest

from modbump.application.bump_service import BumpService
from modbump.application.config import GeneralConfig
from modbump.application.resolver import UpdateResolver
from modbump.domain.exceptions import (
    CommandFailedException,
    DiscoveryException,
    SCMException,
    Stage,
    StorageException,
)
from modbump.domain.filters import FilterConfig
from modbump.domain.models import MergeOutcome, Repository, SCMKind, Update, VCSKind

UPDATE = Update(module="github.com/foo/bar", old_version="v1.2.0", new_version="v1.3.0")


def _repo(name: str, **overrides) -> Repository:
    fields = dict(
        name=name,
        url=f"https://bitbucket.example.com/scm/go/{name}.git",
        parent="GO",
        scm=SCMKind.BITBUCKET_SERVER,
        vcs=VCSKind.GIT,
    )
    fields.update(overrides)
    return Repository(**fields)


def _open_pull_request(name: str, pull_request_id: int = 7) -> Repository:
    return _repo(
        name,
        cloned=True,
        bumped=True,
        pushed=True,
        pull_request_opened=True,
        pull_request_id=pull_request_id,
        updates=(UPDATE,),
        source_branch="modbump-20260101000000",
        target_branch="master",
    )


class _FakeSCM:
    scm_kind = SCMKind.BITBUCKET_SERVER

    def __init__(self, repos, merge_outcome=MergeOutcome.MERGED, pull_request_id=7, discover_error=None) -> None:
        self.repos = repos
        self.merge_outcome = merge_outcome
        self.pull_request_id = pull_request_id
        self.discover_error = discover_error
        self.opened = []
        self.merged = []

    async def discover(self, vcs_kind):
        if self.discover_error:
            raise self.discover_error
        return list(self.repos)

    async def open_pull_request(self, repo):
        self.opened.append((repo.name, repo.source_branch, repo.target_branch))
        return self.pull_request_id

    async def merge_pull_request(self, repo):
        self.merged.append((repo.name, repo.pull_request_id))
        return self.merge_outcome


class _FakeVCS:
    vcs_kind = VCSKind.GIT

    def __init__(self, fail_clone=(), fail_push=(), clone_delay=0.0) -> None:
        self.fail_clone = set(fail_clone)
        self.fail_push = set(fail_push)
        self.clone_delay = clone_delay
        self.cloned = []
        self.pushed = []
        self.deleted = []
        self.active = 0
        self.max_active = 0

    def source_branch(self):
        return "modbump-20261018120000"

    def target_branch(self):
        return "master"

    async def clone(self, repo):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.clone_delay)
            self.cloned.append(repo.name)
            if repo.name in self.fail_clone:
                raise CommandFailedException(["git", "clone", repo.url], 128, "repository not found")
            return repo.clone_path
        finally:
            self.active -= 1

    async def push(self, repo):
        if repo.name in self.fail_push:
            raise CommandFailedException(["git", "push"], 1, "rejected")
        self.pushed.append(repo.name)

    async def delete_remote_branch(self, repo):
        self.deleted.append((repo.name, repo.source_branch))


class _FakeStorage:
    def __init__(self, repos=(), load_error=None, save_error=None) -> None:
        self.repos = list(repos)
        self.load_error = load_error
        self.save_error = save_error
        self.saved = None

    async def load(self):
        if self.load_error:
            raise self.load_error
        return list(self.repos)

    async def save(self, repos):
        if self.save_error:
            raise self.save_error
        self.saved = list(repos)


class _FakeRunner:
    def __init__(self, lines=("github.com/foo/bar:v1.2.0:v1.3.0",)) -> None:
        self.lines = list(lines)
        self.applied = []

    async def is_module(self, working_dir):
        return True

    async def list_candidate_updates(self, working_dir):
        return list(self.lines)

    async def apply_update(self, working_dir, module, version):
        self.applied.append((str(working_dir), module, version))

    async def reconcile(self, working_dir):
        pass


class TestBumpService(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.work_dir = self._tmp.name

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _service(self, scm, vcs, storage, runner=None, auto_merge=False, **general) -> BumpService:
        general.setdefault("work_dir", self.work_dir)
        general.setdefault("clean_before", False)
        return BumpService(
            scm_client=scm,
            vcs_client=vcs,
            storage=storage,
            resolver=UpdateResolver(runner or _FakeRunner(), FilterConfig()),
            config=GeneralConfig(**general),
            auto_merge=auto_merge,
        )

    async def test_fresh_repository_goes_all_the_way_to_a_pull_request(self) -> None:
        scm = _FakeSCM([_repo("billing")])
        vcs = _FakeVCS()
        storage = _FakeStorage()

        report = await self._service(scm, vcs, storage, stateful=True).run()

        self.assertTrue(report.ok)
        self.assertIsNone(report.first_error)
        repo = report.repositories[0]
        self.assertTrue(repo.cloned and repo.bumped and repo.pushed and repo.pull_request_opened)
        self.assertEqual(repo.pull_request_id, 7)
        self.assertEqual(repo.updates, (UPDATE,))
        self.assertEqual(repo.base_dir, self.work_dir)
        self.assertEqual(scm.opened, [("billing", "modbump-20261018120000", "master")])
        self.assertEqual([saved.name for saved in storage.saved], ["billing"])

    async def test_open_pull_request_is_merged_and_reset(self) -> None:
        scm = _FakeSCM([_repo("billing")])
        vcs = _FakeVCS()
        storage = _FakeStorage([_open_pull_request("billing", 7)])

        report = await self._service(scm, vcs, storage, auto_merge=True).run()

        self.assertTrue(report.ok)
        self.assertEqual(scm.merged, [("billing", 7)])
        self.assertEqual(vcs.deleted, [("billing", "modbump-20260101000000")])
        repo = report.repositories[0]
        self.assertFalse(repo.cloned or repo.bumped or repo.pushed or repo.pull_request_opened)
        self.assertEqual(repo.pull_request_id, 0)
        self.assertEqual(repo.updates, ())
        self.assertEqual(repo.source_branch, "")
        self.assertEqual(repo.target_branch, "")
        # The merged repository starts over on the next run, nothing to remember.
        self.assertEqual(storage.saved, [])
        self.assertEqual(scm.opened, [])

    async def test_merge_is_skipped_without_auto_merge(self) -> None:
        scm = _FakeSCM([_repo("billing")])
        vcs = _FakeVCS()
        storage = _FakeStorage([_open_pull_request("billing", 7)])

        report = await self._service(scm, vcs, storage, stateful=True).run()

        self.assertEqual(scm.merged, [])
        self.assertEqual(vcs.pushed, [])
        self.assertEqual(report.repositories[0].pull_request_id, 7)
        self.assertEqual([saved.pull_request_id for saved in storage.saved], [7])

    async def test_not_mergeable_pull_request_is_kept(self) -> None:
        scm = _FakeSCM([_repo("billing")], merge_outcome=MergeOutcome.NOT_MERGEABLE)
        vcs = _FakeVCS()
        storage = _FakeStorage([_open_pull_request("billing", 7)])

        report = await self._service(scm, vcs, storage, auto_merge=True).run()

        self.assertTrue(report.ok)
        self.assertEqual(vcs.deleted, [])
        self.assertTrue(report.repositories[0].pull_request_opened)
        self.assertEqual([saved.pull_request_id for saved in storage.saved], [7])

    async def test_no_updates_stops_the_pipeline_without_error(self) -> None:
        scm = _FakeSCM([_repo("billing")])
        vcs = _FakeVCS()

        report = await self._service(scm, vcs, _FakeStorage(), runner=_FakeRunner(lines=[])).run()

        self.assertTrue(report.ok)
        self.assertTrue(report.repositories[0].cloned)
        self.assertFalse(report.repositories[0].bumped)
        self.assertEqual(vcs.pushed, [])
        self.assertEqual(scm.opened, [])

    async def test_one_failed_push_does_not_stop_the_others(self) -> None:
        scm = _FakeSCM([_repo("a"), _repo("b"), _repo("c")])
        vcs = _FakeVCS(fail_push=["b"])
        storage = _FakeStorage()

        report = await self._service(scm, vcs, storage, stateful=True, workers=3).run()

        self.assertFalse(report.ok)
        self.assertEqual(len(report.failures), 1)
        self.assertEqual(report.first_error.repository, "b")
        self.assertEqual(report.first_error.stage, Stage.PUSH)
        self.assertIn("repo 'b'", str(report.first_error))

        by_name = {repo.name: repo for repo in report.repositories}
        self.assertEqual(by_name["a"].pull_request_id, 7)
        self.assertEqual(by_name["c"].pull_request_id, 7)
        # The failed stage leaves the repository as it was before the push.
        self.assertTrue(by_name["b"].bumped)
        self.assertFalse(by_name["b"].pushed)
        self.assertEqual(sorted(saved.name for saved in storage.saved), ["a", "c"])

    async def test_clone_failure_is_reported_with_its_stage(self) -> None:
        scm = _FakeSCM([_repo("a"), _repo("b")])
        vcs = _FakeVCS(fail_clone=["a"])

        report = await self._service(scm, vcs, _FakeStorage()).run()

        self.assertEqual([(e.repository, e.stage) for e in report.failures], [("a", Stage.CLONE)])
        self.assertFalse(report.repositories[0].cloned)
        self.assertEqual(report.repositories[0].source_branch, "")
        self.assertTrue(report.repositories[1].pull_request_opened)

    async def test_error_outside_a_collaborator_call_fails_the_repository(self) -> None:
        class _BrokenBranchVCS(_FakeVCS):
            def source_branch(self):
                raise RuntimeError("clock unavailable")

        scm = _FakeSCM([_repo("a"), _repo("b")])
        vcs = _BrokenBranchVCS()

        report = await self._service(scm, vcs, _FakeStorage()).run()

        self.assertFalse(report.ok)
        self.assertEqual([(e.repository, e.stage) for e in report.failures], [("a", Stage.CLONE), ("b", Stage.CLONE)])
        self.assertIsInstance(report.first_error.cause, RuntimeError)
        self.assertEqual(vcs.cloned, [])
        self.assertFalse(report.repositories[0].cloned)

    async def test_pull_request_failure_keeps_pushed_state(self) -> None:
        class _FailingSCM(_FakeSCM):
            async def open_pull_request(self, repo):
                raise SCMException("POST pull-requests failed with status 409")

        scm = _FailingSCM([_repo("billing")])

        report = await self._service(scm, _FakeVCS(), _FakeStorage()).run()

        self.assertEqual(report.first_error.stage, Stage.PULL_REQUEST)
        self.assertTrue(report.repositories[0].pushed)
        self.assertFalse(report.repositories[0].pull_request_opened)

    async def test_workers_bound_concurrency(self) -> None:
        scm = _FakeSCM([_repo(f"repo-{n}") for n in range(6)])
        vcs = _FakeVCS(clone_delay=0.01)

        report = await self._service(scm, vcs, _FakeStorage(), workers=2).run()

        self.assertTrue(report.ok)
        self.assertEqual(len(vcs.cloned), 6)
        self.assertLessEqual(vcs.max_active, 2)

    async def test_isolate_mode_runs_every_repository(self) -> None:
        scm = _FakeSCM([_repo("a"), _repo("b"), _repo("c")])
        vcs = _FakeVCS(fail_clone=["a"], clone_delay=0.01)

        report = await self._service(scm, vcs, _FakeStorage(), workers=1).run()

        self.assertEqual(vcs.cloned, ["a", "b", "c"])
        self.assertEqual(len(report.failures), 1)

    async def test_fail_fast_cancels_remaining_repositories(self) -> None:
        scm = _FakeSCM([_repo("a"), _repo("b"), _repo("c")])
        vcs = _FakeVCS(fail_clone=["a"], clone_delay=0.01)

        report = await self._service(scm, vcs, _FakeStorage(), workers=1, fail_fast=True).run()

        self.assertEqual(vcs.cloned, ["a"])
        self.assertEqual(len(report.failures), 1)
        self.assertFalse(report.repositories[1].cloned)
        self.assertFalse(report.repositories[2].cloned)

    async def test_state_is_not_saved_unless_needed(self) -> None:
        storage = _FakeStorage()

        await self._service(_FakeSCM([_repo("billing")]), _FakeVCS(), storage).run()

        self.assertIsNone(storage.saved)

    async def test_load_failure_is_fatal(self) -> None:
        vcs = _FakeVCS()
        storage = _FakeStorage(load_error=StorageException("unable to load from storage"))

        with self.assertRaises(StorageException):
            await self._service(_FakeSCM([_repo("billing")]), vcs, storage).run()

        self.assertEqual(vcs.cloned, [])

    async def test_discovery_failure_is_fatal(self) -> None:
        vcs = _FakeVCS()
        scm = _FakeSCM([], discover_error=DiscoveryException("unable to list repositories"))

        with self.assertRaises(DiscoveryException):
            await self._service(scm, vcs, _FakeStorage()).run()

        self.assertEqual(vcs.cloned, [])

    async def test_save_failure_is_raised_after_the_work_is_done(self) -> None:
        scm = _FakeSCM([_repo("billing")])
        vcs = _FakeVCS()
        storage = _FakeStorage(save_error=StorageException("unable to save to storage"))

        with self.assertRaises(StorageException):
            await self._service(scm, vcs, storage, stateful=True).run()

        self.assertEqual(vcs.pushed, ["billing"])
        self.assertEqual(len(scm.opened), 1)
