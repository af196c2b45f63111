"""
GitHub REST API integration.

Searches repositories and optionally enriches them with README, recent
commits and the latest release.

API Documentation: https://docs.github.com/en/rest/search/search
"""

import asyncio
import base64
import logging
from datetime import datetime
from typing import Any, Optional

from aidigest.models.domain import SourceType
from aidigest.services.ingestion.base import (
    BaseFetcher,
    FetcherOptions,
    FetchRequest,
    FetchResult,
    MalformedResponseError,
    RawItem,
)
from aidigest.services.ingestion.normalizer import parse_datetime
from aidigest.services.ingestion.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
DEFAULT_QUERY = "machine learning"

# Sort keys that map to a numeric repository field
_SORT_FIELDS = {
    "stars": "stargazers_count",
    "forks": "forks_count",
    "help-wanted-issues": "open_issues_count",
}


class GitHubFetcher(BaseFetcher):
    """
    GitHub repository search.

    A token raises the ceiling from 10 to 60 search requests per minute.
    """

    source_type = SourceType.GITHUB

    def __init__(
        self,
        token: Optional[str] = None,
        options: Optional[FetcherOptions] = None,
        rate_limiter: Optional[RateLimiter] = None,
        sort: str = "updated",
        order: str = "desc",
    ):
        super().__init__(options, rate_limiter)
        self.token = token
        self.sort = sort
        self.order = order
        if token:
            self.rate_limiter.set_limit(self.name, self.rate_limiter.DEFAULT_LIMITS["github_token"])

    @property
    def headers(self) -> dict[str, str]:
        headers = {"Accept": "application/vnd.github.v3+json"}
        if self.token:
            headers["Authorization"] = f"token {self.token}"
        return headers

    async def _fetch(self, request: FetchRequest) -> FetchResult:
        query = self.build_query(request.query or DEFAULT_QUERY, request.since, request.until)
        repos = await self.search_repositories(
            query,
            sort=self.sort,
            order=self.order,
            per_page=request.max_results,
            timeout=request.timeout_seconds,
        )
        return FetchResult.ok(self.source_type, repos, query=query)

    @staticmethod
    def build_query(
        query: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> str:
        """Add a ``pushed:`` qualifier when a time window is active."""
        if since is None:
            return query
        start = since.strftime("%Y-%m-%dT%H:%M:%SZ")
        end = until.strftime("%Y-%m-%dT%H:%M:%SZ") if until else "*"
        return f"{query} pushed:{start}..{end}"

    async def search_repositories(
        self,
        query: str,
        sort: str = "stars",
        order: str = "desc",
        per_page: int = 10,
        timeout: Optional[float] = None,
    ) -> list[RawItem]:
        """Search repositories; results are re-sorted locally for numeric sort keys."""
        params = {
            "q": query,
            "sort": sort,
            "order": order,
            "per_page": min(per_page, 100),
        }
        response = await self._get(
            f"{GITHUB_API_URL}/search/repositories",
            params=params,
            headers=self.headers,
            timeout=timeout,
            context={"query": query},
        )
        try:
            payload = response.json()
        except ValueError as e:
            raise MalformedResponseError(f"GitHub search returned invalid JSON: {e}") from e

        repos = payload.get("items")
        if not isinstance(repos, list):
            raise MalformedResponseError("GitHub search response has no 'items' list")

        field = _SORT_FIELDS.get(sort)
        if field:
            repos = sorted(
                repos,
                key=lambda r: r.get(field) or 0,
                reverse=(order == "desc"),
            )

        return [self.to_raw_item(repo) for repo in repos[:per_page]]

    async def get_repository_details(self, owner: str, repo: str) -> RawItem:
        """
        Repository plus README, last five commits and latest release.

        Only the repository call is required; the rest are best effort.
        """
        base = f"{GITHUB_API_URL}/repos/{owner}/{repo}"
        repo_resp, readme_resp, commits_resp, release_resp = await asyncio.gather(
            self._get(base, headers=self.headers),
            self._get(f"{base}/readme", headers=self.headers),
            self._get(f"{base}/commits", params={"per_page": 5}, headers=self.headers),
            self._get(f"{base}/releases/latest", headers=self.headers),
            return_exceptions=True,
        )
        if isinstance(repo_resp, BaseException):
            raise repo_resp

        data = repo_resp.json()
        if not isinstance(readme_resp, BaseException):
            data["readme"] = self._decode_readme(readme_resp.json())
        if not isinstance(commits_resp, BaseException):
            data["recent_commits"] = [
                {
                    "sha": c.get("sha"),
                    "message": (c.get("commit") or {}).get("message"),
                    "date": ((c.get("commit") or {}).get("author") or {}).get("date"),
                }
                for c in commits_resp.json()
            ]
        if not isinstance(release_resp, BaseException):
            release = release_resp.json()
            data["latest_release"] = {
                "tag_name": release.get("tag_name"),
                "name": release.get("name"),
                "published_at": release.get("published_at"),
            }
        return self.to_raw_item(data)

    async def list_organization_repositories(self, org: str, per_page: int = 30) -> list[RawItem]:
        response = await self._get(
            f"{GITHUB_API_URL}/orgs/{org}/repos",
            params={"sort": "updated", "per_page": per_page},
            headers=self.headers,
        )
        return [self.to_raw_item(repo) for repo in response.json()]

    async def list_user_repositories(self, user: str, per_page: int = 30) -> list[RawItem]:
        response = await self._get(
            f"{GITHUB_API_URL}/users/{user}/repos",
            params={"sort": "updated", "per_page": per_page},
            headers=self.headers,
        )
        return [self.to_raw_item(repo) for repo in response.json()]

    async def get_rate_limit(self) -> dict[str, Any]:
        """Remaining quota as reported by GitHub."""
        response = await self._get(f"{GITHUB_API_URL}/rate_limit", headers=self.headers)
        return response.json().get("resources", {})

    def to_raw_item(self, repo: dict[str, Any]) -> RawItem:
        return RawItem(
            source_type=self.source_type,
            url=repo.get("html_url") or f"https://github.com/{repo.get('full_name', '')}",
            fields=repo,
            published_at=parse_datetime(repo.get("pushed_at") or repo.get("updated_at")),
        )

    @staticmethod
    def _decode_readme(payload: dict[str, Any]) -> Optional[str]:
        content = payload.get("content")
        if not content:
            return None
        try:
            return base64.b64decode(content).decode("utf-8", errors="replace")[:5000]
        except ValueError:
            return None
