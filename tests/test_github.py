from __future__ import annotations

import asyncio
from typing import Any, Mapping, cast

import aiohttp
import pytest

from relay_monitor.github import (
    GitHubClient,
    GitHubError,
    parse_commit,
    parse_issue,
    parse_release,
)
from relay_monitor.models import COMMITS, EVENT_KINDS, RELEASES, RepositoryWatch

REPO = RepositoryWatch("octo", "repo", "Repo", frozenset(EVENT_KINDS))


class FakeResponse:
    def __init__(self, status: int, payload: Any) -> None:
        self.status = status
        self._payload = payload

    async def __aenter__(self) -> "FakeResponse":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        return None

    async def read(self) -> bytes:
        return b""

    async def json(self, content_type: str | None = None) -> Any:
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeSession:
    def __init__(self, responses: Mapping[str, FakeResponse]) -> None:
        self.responses = dict(responses)
        self.requests: list[tuple[str, dict[str, str], dict[str, str]]] = []

    def get(
        self,
        url: str,
        *,
        headers: dict[str, str],
        params: dict[str, str],
        timeout: aiohttp.ClientTimeout,
    ) -> FakeResponse:
        self.requests.append((url, headers, params))
        path = url.split("https://api.github.com", 1)[-1]
        response = self.responses.get(path)
        if response is None:
            raise aiohttp.ClientConnectionError("unreachable")
        return response


def make_client(
    responses: Mapping[str, FakeResponse], token: str | None = None
) -> tuple[GitHubClient, FakeSession]:
    session = FakeSession(responses)
    client = GitHubClient(cast(aiohttp.ClientSession, session), token=token)
    return client, session


COMMITS_PAYLOAD = [
    {
        "sha": "bbbbbbbbbb",
        "commit": {"message": "second\n\nbody", "author": {"name": "Bob"}},
        "author": {"login": "bob"},
        "html_url": "https://github.com/octo/repo/commit/b",
    },
    {
        "sha": "aaaaaaaaaa",
        "commit": {"message": "first", "author": {"name": "Alice"}},
        "author": None,
        "html_url": "https://github.com/octo/repo/commit/a",
    },
]


def test_parse_commit_prefers_login_and_headline() -> None:
    item = parse_commit(REPO, COMMITS_PAYLOAD[0])

    assert item is not None
    assert item.identity == "bbbbbbbbbb"
    assert item.fields["author"] == "bob"
    assert item.fields["message"] == "second"
    assert item.fields["sha"] == "bbbbbbb"
    assert item.fields["repo"] == "Repo"


def test_parse_commit_falls_back_to_commit_author_name() -> None:
    item = parse_commit(REPO, COMMITS_PAYLOAD[1])

    assert item is not None
    assert item.fields["author"] == "Alice"


def test_parse_rejects_payloads_without_identity() -> None:
    assert parse_commit(REPO, {"commit": {}}) is None
    assert parse_issue(REPO, {"number": "7"}) is None
    assert parse_release(REPO, {"name": "no tag"}) is None


def test_parse_issue_and_release() -> None:
    issue = parse_issue(
        REPO,
        {"number": 12, "title": "Crash", "state": "open", "user": {"login": "eve"}},
    )
    release = parse_release(REPO, {"tag_name": "v2.0", "name": "Big one"})

    assert issue is not None
    assert issue.identity == "issue-12"
    assert issue.fields["number"] == "12"
    assert issue.fields["author"] == "eve"
    assert release is not None
    assert release.identity == "release-v2.0"
    assert release.fields["title"] == "Big one"
    assert release.fields["author"] == "unknown"


def test_fetch_items_returns_oldest_first_per_kind() -> None:
    repo = RepositoryWatch("octo", "repo", "Repo", frozenset({COMMITS, RELEASES}))
    client, session = make_client(
        {
            "/repos/octo/repo/commits": FakeResponse(200, COMMITS_PAYLOAD),
            "/repos/octo/repo/releases": FakeResponse(
                200, [{"tag_name": "v2"}, {"tag_name": "v1"}]
            ),
        },
        token="secret",
    )

    items = asyncio.run(client.fetch_items(repo, limit=2))

    assert [item.identity for item in items] == [
        "aaaaaaaaaa",
        "bbbbbbbbbb",
        "release-v1",
        "release-v2",
    ]
    url, headers, params = session.requests[0]
    assert url.endswith("/repos/octo/repo/commits")
    assert headers["Authorization"] == "token secret"
    assert params == {"per_page": "2"}


def test_fetch_items_fails_whole_batch_on_error() -> None:
    client, _ = make_client(
        {
            "/repos/octo/repo/commits": FakeResponse(200, COMMITS_PAYLOAD),
            "/repos/octo/repo/issues": FakeResponse(403, {"message": "rate limited"}),
        }
    )

    with pytest.raises(GitHubError):
        asyncio.run(client.fetch_items(REPO))


def test_network_and_payload_errors_become_github_errors() -> None:
    client, _ = make_client(
        {"/repos/octo/repo/releases": FakeResponse(200, ValueError("bad json"))}
    )

    with pytest.raises(GitHubError):
        asyncio.run(client.fetch_commits(REPO))
    with pytest.raises(GitHubError):
        asyncio.run(client.fetch_releases(REPO))


def test_unexpected_payload_shape_is_an_error() -> None:
    client, _ = make_client({"/repos/octo/repo/commits": FakeResponse(200, {"oops": 1})})

    with pytest.raises(GitHubError):
        asyncio.run(client.fetch_commits(REPO))


def test_fetch_repository_returns_none_on_failure() -> None:
    client, _ = make_client(
        {
            "/repos/octo/repo": FakeResponse(
                200, {"full_name": "octo/repo", "stargazers_count": 42}
            )
        }
    )

    info = asyncio.run(client.fetch_repository("octo", "repo"))
    missing = asyncio.run(client.fetch_repository("octo", "gone"))

    assert info is not None
    assert info.full_name == "octo/repo"
    assert info.stargazers_count == 42
    assert missing is None
