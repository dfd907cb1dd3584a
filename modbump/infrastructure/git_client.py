import asyncio
import base64
import logging
import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from modbump.application.config import GitConfig, render_message
from modbump.domain.models import Repository, VCSKind
from modbump.infrastructure.process import run_command

logger = logging.getLogger(__name__)

BRANCH_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
INSECURE_SSH_COMMAND = "ssh -o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null"


class GitClient:
    """
    Clones, commits and pushes repositories with the git command line.

    Credentials for http remotes are handed to git through GIT_CONFIG_* environment
    variables as an http.extraHeader, so they never show up in command lines or
    in error messages.
    """

    def __init__(self, config: GitConfig, clone_type: str = "http"):
        self.config = config
        self.clone_type = clone_type
        self.env = self._build_env()

    @property
    def vcs_kind(self) -> VCSKind:
        return VCSKind.GIT

    def source_branch(self) -> str:
        return f"{self.config.source_branch}-{datetime.now().strftime(BRANCH_TIMESTAMP_FORMAT)}"

    def target_branch(self) -> str:
        return self.config.target_branch

    def _auth_header(self) -> Optional[str]:
        if self.config.token.strip():
            return f"Authorization: Bearer {self.config.token}"
        if self.config.username:
            credentials = f"{self.config.username}:{self.config.password}".encode()
            return f"Authorization: Basic {base64.b64encode(credentials).decode()}"
        return None

    def _build_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env["GIT_TERMINAL_PROMPT"] = "0"

        settings: List[Tuple[str, str]] = []
        if self.clone_type == "ssh":
            if self.config.insecure:
                env["GIT_SSH_COMMAND"] = INSECURE_SSH_COMMAND
        else:
            header = self._auth_header()
            if header:
                settings.append(("http.extraHeader", header))
            if self.config.insecure:
                settings.append(("http.sslVerify", "false"))

        if settings:
            env["GIT_CONFIG_COUNT"] = str(len(settings))
            for n, (key, value) in enumerate(settings):
                env[f"GIT_CONFIG_KEY_{n}"] = key
                env[f"GIT_CONFIG_VALUE_{n}"] = value

        return env

    async def _git(self, args: Sequence[str], cwd: Optional[Path] = None) -> str:
        return await run_command(["git", *args], cwd=cwd, env=self.env)

    async def clone(self, repo: Repository) -> Path:
        """Clones the target branch and checks out a new source branch from it."""
        if not repo.source_branch:
            raise ValueError(f"repo '{repo.name}': cannot clone without a source branch")

        path = repo.clone_path
        # Leftovers of a failed attempt would make git refuse to clone.
        await asyncio.to_thread(shutil.rmtree, path, ignore_errors=True)
        path.parent.mkdir(parents=True, exist_ok=True)

        args = ["clone", "--single-branch"]
        if repo.target_branch:
            args += ["--branch", repo.target_branch]
        await self._git([*args, "--", repo.url, str(path)])

        await self._git(["checkout", "-b", repo.source_branch], cwd=path)

        logger.info(f"repo '{repo.name}': was cloned successfully")
        return path

    async def push(self, repo: Repository) -> None:
        """
        Commits the dependency manifests on the source branch and pushes it.
        A repeated push with nothing new staged skips the commit and only pushes.
        """
        work_tree = repo.work_tree or repo.clone_path
        logger.info(f"repo '{repo.name}': pushing commits to remote")

        manifests = [name for name in self.config.manifest_files if (work_tree / name).exists()]
        if manifests:
            await self._git(["add", "--", *manifests], cwd=work_tree)

        staged = await self._git(["diff", "--cached", "--name-only"], cwd=work_tree)
        if staged.strip():
            await self._git(
                [
                    "-c", f"user.name={self.config.commit_author_name}",
                    "-c", f"user.email={self.config.commit_author_email}",
                    "commit", "-m", render_message(self.config.commit_message, repo),
                ],
                cwd=work_tree,
            )
        else:
            logger.info(f"repo '{repo.name}': nothing new to commit")

        await self._git(["push", "--set-upstream", "origin", repo.source_branch], cwd=work_tree)

    async def delete_remote_branch(self, repo: Repository) -> None:
        if not repo.source_branch:
            logger.warning(f"repo '{repo.name}': no source branch recorded, nothing to delete")
            return

        work_tree = repo.work_tree or repo.clone_path
        refs = await self._git(["ls-remote", "--heads", "origin", repo.source_branch], cwd=work_tree)
        if not refs.strip():
            return

        await self._git(["push", "origin", "--delete", repo.source_branch], cwd=work_tree)
        logger.info(f"repo '{repo.name}': branch {repo.source_branch} cleaned up successfully")
