"""GitHub REST API client."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Mapping

import aiohttp

from .models import (
    COMMITS,
    ISSUES,
    RELEASES,
    CandidateItem,
    RepositoryWatch,
    commit_item,
    issue_item,
    release_item,
)
from .utils import RateLimiter

_API_BASE = "https://api.github.com"
_USER_AGENT = "relay-monitor"


logger = logging.getLogger(__name__)


class GitHubError(Exception):
    """Raised when a repository feed cannot be fetched."""


@dataclass(slots=True)
class RepositoryInfo:
    """Basic repository metadata."""

    full_name: str
    description: str | None = None
    html_url: str | None = None
    stargazers_count: int = 0
    forks_count: int = 0
    language: str | None = None


class GitHubClient:
    """Thin asynchronous wrapper around the GitHub REST API."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        token: str | None = None,
        rate_limiter: RateLimiter | None = None,
        api_base: str = _API_BASE,
    ):
        self._session = session
        self._token = token.strip() if token else None
        self._rate = rate_limiter
        self._api_base = api_base.rstrip("/")

    async def fetch_items(self, repo: RepositoryWatch, *, limit: int = 5) -> list[CandidateItem]:
        """Fetch every watched kind for ``repo``, oldest first within each kind.

        The API lists newest first; the order is reversed so announcements
        read chronologically. Any failing kind fails the whole call so that a
        partial batch never reaches deduplication.
        """

        items: list[CandidateItem] = []
        if COMMITS in repo.event_kinds:
            items.extend(reversed(await self.fetch_commits(repo, limit=limit)))
        if ISSUES in repo.event_kinds:
            items.extend(reversed(await self.fetch_issues(repo, limit=limit)))
        if RELEASES in repo.event_kinds:
            items.extend(reversed(await self.fetch_releases(repo, limit=limit)))
        return items

    async def fetch_commits(self, repo: RepositoryWatch, *, limit: int = 5) -> list[CandidateItem]:
        data = await self._get_list(f"/repos/{repo.key}/commits", {"per_page": _per_page(limit)})
        return [item for item in (parse_commit(repo, entry) for entry in data) if item]

    async def fetch_issues(self, repo: RepositoryWatch, *, limit: int = 5) -> list[CandidateItem]:
        data = await self._get_list(
            f"/repos/{repo.key}/issues",
            {"state": "all", "per_page": _per_page(limit)},
        )
        return [item for item in (parse_issue(repo, entry) for entry in data) if item]

    async def fetch_releases(self, repo: RepositoryWatch, *, limit: int = 5) -> list[CandidateItem]:
        data = await self._get_list(f"/repos/{repo.key}/releases", {"per_page": _per_page(limit)})
        return [item for item in (parse_release(repo, entry) for entry in data) if item]

    async def fetch_repository(self, owner: str, name: str) -> RepositoryInfo | None:
        try:
            data = await self._get(f"/repos/{owner}/{name}", {})
        except GitHubError as exc:
            logger.warning("Could not load repository %s/%s: %s", owner, name, exc)
            return None
        if not isinstance(data, Mapping):
            return None
        return RepositoryInfo(
            full_name=str(data.get("full_name") or f"{owner}/{name}"),
            description=_optional_text(data.get("description")),
            html_url=_optional_text(data.get("html_url")),
            stargazers_count=_as_int(data.get("stargazers_count")),
            forks_count=_as_int(data.get("forks_count")),
            language=_optional_text(data.get("language")),
        )

    async def _get_list(self, path: str, params: Mapping[str, str]) -> list[Mapping[str, Any]]:
        data = await self._get(path, params)
        if not isinstance(data, list):
            raise GitHubError(f"Unexpected payload for {path}")
        return [entry for entry in data if isinstance(entry, Mapping)]

    async def _get(self, path: str, params: Mapping[str, str]) -> Any:
        headers = {
            "User-Agent": _USER_AGENT,
            "Accept": "application/vnd.github+json",
        }
        if self._token:
            headers["Authorization"] = f"token {self._token}"

        if self._rate is not None:
            await self._rate.wait()
        url = f"{self._api_base}{path}"
        try:
            timeout_cfg = aiohttp.ClientTimeout(total=15)
            async with self._session.get(
                url,
                headers=headers,
                params=dict(params),
                timeout=timeout_cfg,
            ) as resp:
                if resp.status >= 400:
                    await resp.read()
                    raise GitHubError(f"GitHub answered {resp.status} for {path}")
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise GitHubError(f"Request to {path} failed: {exc}") from exc
        except ValueError as exc:
            raise GitHubError(f"Invalid JSON from {path}") from exc


def parse_commit(repo: RepositoryWatch, payload: Mapping[str, Any]) -> CandidateItem | None:
    sha = _optional_text(payload.get("sha"))
    if not sha:
        return None
    commit = _mapping(payload.get("commit"))
    author = _login(payload.get("author")) or _optional_text(
        _mapping(commit.get("author")).get("name")
    )
    return commit_item(
        repo,
        sha=sha,
        author=author or "unknown",
        message=str(commit.get("message") or ""),
        url=str(payload.get("html_url") or ""),
    )


def parse_issue(repo: RepositoryWatch, payload: Mapping[str, Any]) -> CandidateItem | None:
    number = payload.get("number")
    if not isinstance(number, int):
        return None
    return issue_item(
        repo,
        number=number,
        author=_login(payload.get("user")) or "unknown",
        title=str(payload.get("title") or ""),
        state=str(payload.get("state") or ""),
        url=str(payload.get("html_url") or ""),
    )


def parse_release(repo: RepositoryWatch, payload: Mapping[str, Any]) -> CandidateItem | None:
    tag = _optional_text(payload.get("tag_name"))
    if not tag:
        return None
    return release_item(
        repo,
        tag=tag,
        name=str(payload.get("name") or ""),
        author=_login(payload.get("author")) or "unknown",
        url=str(payload.get("html_url") or ""),
    )


def _per_page(limit: int) -> str:
    return str(max(1, min(int(limit), 100)))


def _mapping(value: object) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _login(value: object) -> str | None:
    return _optional_text(_mapping(value).get("login"))


def _optional_text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_int(value: object) -> int:
    try:
        return int(str(value))
    except (TypeError, ValueError):
        return 0
