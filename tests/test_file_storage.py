import json
import os
import stat
import tempfile
import unittest
from pathlib import Path

from modbump.domain.exceptions import StorageException
from modbump.domain.models import Repository, SCMKind, Update, VCSKind
from modbump.infrastructure.file_storage import FileStorage


def _repo(name: str) -> Repository:
    update = Update(module="github.com/foo/bar", old_version="v1.2.0", new_version="v1.3.0")
    return Repository(
        name=name, parent="GO", base_dir="repos", scm=SCMKind.BITBUCKET_SERVER, vcs=VCSKind.GIT,
        cloned=True, bumped=True, pushed=True, pull_request_opened=True, pull_request_id=7,
        updates=(update,), source_branch="modbump-20260101000000", target_branch="master",
        work_tree=Path("repos/bitbucketserver/GO") / name,
    )


class TestFileStorage(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "state" / "modbump.json"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    async def test_missing_file_loads_as_empty(self) -> None:
        self.assertEqual(await FileStorage(str(self.path)).load(), [])

    async def test_save_then_load_keeps_order_and_state(self) -> None:
        storage = FileStorage(str(self.path))

        await storage.save([_repo("b"), _repo("a")])
        repos = await storage.load()

        self.assertEqual([repo.name for repo in repos], ["b", "a"])
        self.assertEqual(repos[0].pull_request_id, 7)
        self.assertEqual(repos[0].updates[0].module, "github.com/foo/bar")
        self.assertIsNone(repos[0].work_tree)

    async def test_saved_file_uses_field_names_and_private_mode(self) -> None:
        await FileStorage(str(self.path)).save([_repo("billing")])

        payload = json.loads(self.path.read_text())
        self.assertEqual(payload[0]["pull_request_opened"], True)
        self.assertNotIn("work_tree", payload[0])
        if os.name == "posix":
            self.assertEqual(stat.S_IMODE(self.path.stat().st_mode), 0o600)

    async def test_corrupt_file_raises(self) -> None:
        self.path.parent.mkdir(parents=True)
        self.path.write_text("{not json")

        with self.assertRaises(StorageException):
            await FileStorage(str(self.path)).load()
