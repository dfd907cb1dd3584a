import aiohttp
import asyncio
import logging
import random
from typing import Any, Dict, List, Optional

from modbump.application.config import BitbucketServerConfig, PullRequestConfig, render_message
from modbump.domain.exceptions import DiscoveryException, SCMException
from modbump.domain.models import MergeOutcome, Repository, SCMKind, VCSKind
from modbump.infrastructure.acl import BitbucketTranslator

logger = logging.getLogger(__name__)

API_PATH = "/rest/api/1.0"
DEFAULT_PAGE_SIZE = 25
REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=60, connect=10)
MAX_RETRIES = 5
RETRYABLE_STATUSES = {429, 500, 502, 503, 504}
CONFLICT = 409


def vcs_not_supported_msg(vcs_kind: VCSKind) -> str:
    vcs = getattr(vcs_kind, "value", vcs_kind)
    return (
        f"scm '{SCMKind.BITBUCKET_SERVER.value}' does not support vcs type '{vcs}': "
        f"the following vcs types are supported [{VCSKind.GIT.value}]"
    )


class BitbucketServerClient:
    """
    Client for the Bitbucket Server REST API.
    Lists the repositories of a project and opens and merges pull requests.

    Use it as an async context manager so the underlying aiohttp session is closed.
    """

    def __init__(
        self,
        config: BitbucketServerConfig,
        pull_request: PullRequestConfig,
        clone_type: str = "http",
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.config = config
        self.pull_request = pull_request
        self.clone_type = clone_type
        self.headers = {
            "Accept": "application/json",
            "User-Agent": "modbump",
            # Bitbucket rejects state-changing requests without it.
            "X-Atlassian-Token": "no-check",
        }
        self.auth: Optional[aiohttp.BasicAuth] = None
        if config.token.strip():
            self.headers["Authorization"] = f"Bearer {config.token}"
        elif config.username:
            self.auth = aiohttp.BasicAuth(config.username, config.password)
        self.api_url = f"{config.url.rstrip('/')}{API_PATH}"
        self._session = session

    @property
    def scm_kind(self) -> SCMKind:
        return SCMKind.BITBUCKET_SERVER

    async def __aenter__(self) -> "BitbucketServerClient":
        self._get_session()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(ssl=not self.config.insecure),
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Sends one API request, retrying on rate limiting, server errors and connection failures.

        Raises:
            SCMException: On a non-retryable error status or once retries are exhausted.
        """
        session = self._get_session()
        url = f"{self.api_url}{path}"

        for attempt in range(MAX_RETRIES):
          try:
            async with session.request(
                method, url, params=params, json=payload,
                headers=self.headers, auth=self.auth, timeout=REQUEST_TIMEOUT,
            ) as response:
                if response.status in RETRYABLE_STATUSES:
                  retry_after = response.headers.get('Retry-After')
                  if retry_after and retry_after.isdigit():
                      sleep_time = int(retry_after)
                  else:
                      sleep_time = (2 ** attempt) + random.uniform(0, 2)
                  logger.warning(
                      f"{method} {path} returned {response.status}. "
                      f"Retrying in {sleep_time:.1f}s (attempt {attempt + 1}/{MAX_RETRIES})..."
                  )
                  await asyncio.sleep(sleep_time)
                  continue

                if response.status >= 400:
                    body = await response.text()
                    raise SCMException(
                        f"{method} {path} failed with status {response.status}: {body[:500]}",
                        status=response.status,
                    )

                if response.status == 204:
                    return {}

                return await response.json(content_type=None) or {}

          except (aiohttp.ClientError, asyncio.TimeoutError) as e:
              sleep_time = (2 ** attempt) + random.uniform(0, 2)
              logger.warning(
                  f"{method} {path} failed (attempt {attempt + 1}/{MAX_RETRIES}): {e}. "
                  f"Retrying in {sleep_time:.1f}s..."
              )
              await asyncio.sleep(sleep_time)

        raise SCMException(f"{method} {path} failed after {MAX_RETRIES} attempts.")

    async def discover(self, vcs_kind: VCSKind) -> List[Repository]:
        """
        Lists every repository of the configured project, following pagination.

        Raises:
            DiscoveryException: If the vcs kind is unsupported or the listing fails.
        """
        project_key = self.config.project_key
        logger.info(f"Getting repos for bitbucket-server project {project_key}.")

        if vcs_kind != VCSKind.GIT:
            raise DiscoveryException(vcs_not_supported_msg(vcs_kind))

        repos: List[Repository] = []
        start = 0
        try:
            while True:
                page = await self._request(
                    "GET",
                    f"/projects/{project_key}/repos",
                    params={"start": start, "limit": DEFAULT_PAGE_SIZE},
                )
                repos.extend(
                    BitbucketTranslator.to_domain(node, project_key, self.clone_type, vcs_kind)
                    for node in page.get('values', []) if node
                )

                next_start = page.get('nextPageStart')
                if page.get('isLastPage', True) or next_start is None:
                    break
                start = next_start
        except (SCMException, ValueError) as e:
            raise DiscoveryException(f"unable to list repositories of project {project_key}: {e}") from e

        return repos

    @staticmethod
    def _ref(repo: Repository, branch: str) -> Dict[str, Any]:
        return {
            "id": f"refs/heads/{branch}",
            "repository": {"slug": repo.name, "project": {"key": repo.parent}},
        }

    async def open_pull_request(self, repo: Repository) -> int:
        if repo.vcs != VCSKind.GIT:
            raise SCMException(vcs_not_supported_msg(repo.vcs))

        payload = {
            "title": self.pull_request.title,
            "description": render_message(self.pull_request.description, repo),
            "fromRef": self._ref(repo, repo.source_branch),
            "toRef": self._ref(repo, repo.target_branch),
        }
        path = f"/projects/{repo.parent}/repos/{repo.name}/pull-requests"
        try:
            data = await self._request("POST", path, payload=payload)
        except SCMException as e:
            if e.status != CONFLICT:
                raise
            # A resent create finds the pull request opened by the attempt that timed out.
            existing = await self._find_open_pull_request(repo)
            if not existing:
                raise
            logger.info(f"repo '{repo.name}': pull request #{existing} already open for {repo.source_branch}")
            return existing

        pull_request_id = data.get('id')
        if not pull_request_id:
            raise SCMException(f"repo '{repo.name}': pull request response has no id")
        return int(pull_request_id)

    async def _find_open_pull_request(self, repo: Repository) -> int:
        """Returns the id of the open pull request from the source to the target branch, or 0."""
        page = await self._request(
            "GET",
            f"/projects/{repo.parent}/repos/{repo.name}/pull-requests",
            params={
                "direction": "OUTGOING",
                "at": f"refs/heads/{repo.source_branch}",
                "state": "OPEN",
                "limit": DEFAULT_PAGE_SIZE,
            },
        )
        for pull_request in page.get('values', []):
            from_ref = pull_request.get('fromRef', {}).get('id')
            to_ref = pull_request.get('toRef', {}).get('id')
            if from_ref == f"refs/heads/{repo.source_branch}" and to_ref == f"refs/heads/{repo.target_branch}":
                return int(pull_request.get('id', 0))
        return 0

    async def merge_pull_request(self, repo: Repository) -> MergeOutcome:
        """
        Merges the repository's pull request when the host allows it.

        A pull request that is no longer open reports CLOSED, one vetoed by the
        host (missing approvals, failing builds, conflicts) reports NOT_MERGEABLE.
        """
        path = f"/projects/{repo.parent}/repos/{repo.name}/pull-requests/{repo.pull_request_id}"

        pull_request = await self._request("GET", path)
        if not pull_request.get('open', pull_request.get('state') == "OPEN"):
            logger.info(f"repo '{repo.name}': pull request #{repo.pull_request_id} is already closed")
            return MergeOutcome.CLOSED

        status = await self._request("GET", f"{path}/merge")
        if not status.get('canMerge', False):
            vetoes = [veto.get('summaryMessage', '') for veto in status.get('vetoes', [])]
            logger.info(f"repo '{repo.name}': unable to merge pull request #{repo.pull_request_id}: {vetoes}")
            return MergeOutcome.NOT_MERGEABLE

        try:
            await self._request("POST", f"{path}/merge", params={"version": pull_request.get('version', 0)})
        except SCMException as e:
            if e.status != CONFLICT:
                raise
            # A resent merge conflicts with the attempt that timed out after merging.
            current = await self._request("GET", path)
            if current.get('state') != "MERGED":
                raise
            logger.info(f"repo '{repo.name}': pull request #{repo.pull_request_id} was already merged")
        return MergeOutcome.MERGED
