"""
GitHub REST client that produces queue snapshots.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, FrozenSet, List, Optional

import requests

from ghscaler import __version__
from ghscaler.core.config import GithubConfig
from ghscaler.core.entities import QueueSnapshot
from ghscaler.core.errors import TransientError
from ghscaler.core.protocols import JobSource

logger = logging.getLogger(__name__)

API_VERSION = "2022-11-28"
_PAGE_SIZE = 100


class GithubJobSource(JobSource):
    """
    Counts queued and in-progress workflow runs of one repository and reports
    which self-hosted runners are currently busy.
    """

    def __init__(
        self,
        config: GithubConfig,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        max_pages: int = 10,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.owner, self.repo = config.runners.repository()
        self.api_url = config.runners.api_base_url()
        self.timeout = timeout
        self.max_pages = max_pages
        self._clock = clock
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {config.personal_access_token}",
                "X-GitHub-Api-Version": API_VERSION,
                "User-Agent": f"gh-actions-scaler/{__version__}",
            }
        )
        logger.debug("GithubJobSource initialised for %s/%s (%s)", self.owner, self.repo, self.api_url)

    def get_queue_snapshot(self) -> QueueSnapshot:
        queued = self._count_runs("queued")
        running = self._count_runs("in_progress")
        busy = self._busy_runners()
        snapshot = QueueSnapshot(queued=queued, running=running, timestamp=self._clock(), busy_runners=busy)
        logger.debug("Queue snapshot: queued=%d running=%d busy=%d", queued, running, len(busy))
        return snapshot

    # ------------------------------------------------------------------

    def _repo_path(self, suffix: str) -> str:
        return f"/repos/{self.owner}/{self.repo}{suffix}"

    def _count_runs(self, status: str) -> int:
        data = self._make_request("GET", self._repo_path("/actions/runs"), params={"status": status, "per_page": 1})
        count = data.get("total_count")
        if not isinstance(count, int):
            raise TransientError(f"The workflow runs response has no integer 'total_count' (status={status}).")
        return count

    def _busy_runners(self) -> FrozenSet[str]:
        names: List[str] = []
        for page in range(1, self.max_pages + 1):
            data = self._make_request(
                "GET",
                self._repo_path("/actions/runners"),
                params={"per_page": _PAGE_SIZE, "page": page},
            )
            runners = data.get("runners")
            if not isinstance(runners, list):
                raise TransientError("The runners response doesn't have an array field 'runners'.")
            names.extend(str(runner.get("name")) for runner in runners if runner.get("busy"))
            if len(runners) < _PAGE_SIZE:
                break
        return frozenset(names)

    def _make_request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        url = f"{self.api_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
        except requests.exceptions.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else "?"
            raise TransientError(f"GitHub API error [{method} {url}]: {status}") from exc
        except requests.exceptions.RequestException as exc:
            raise TransientError(f"GitHub API connection error [{method} {url}]: {exc}") from exc
        try:
            data = response.json()
        except ValueError as exc:
            raise TransientError(f"GitHub API returned invalid JSON [{method} {url}]") from exc
        if not isinstance(data, dict):
            raise TransientError(f"GitHub API returned an unexpected payload [{method} {url}]")
        return data
