"""Data models used across the relay service."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Sequence

COMMITS = "commits"
ISSUES = "issues"
RELEASES = "releases"
CHAT = "chat"

EVENT_KINDS: tuple[str, ...] = (COMMITS, ISSUES, RELEASES)

GROUP = "group"
PRIVATE = "private"


@dataclass(slots=True, frozen=True)
class ContentSegment:
    """Single element of a chat message in OneBot segment shape."""

    type: str
    data: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def text(cls, value: str) -> "ContentSegment":
        return cls("text", {"text": value})

    def preview_text(self) -> str:
        if self.type == "text":
            return str(self.data.get("text") or "")
        if self.type == "at":
            return f"@{self.data.get('qq', '')}"
        if self.type == "face":
            return "[face]"
        if self.type == "image":
            return "[image]"
        if self.type == "record":
            return "[voice]"
        if self.type == "video":
            return "[video]"
        if self.type == "reply":
            return ""
        return f"[{self.type}]"

    def as_payload(self) -> dict[str, Any]:
        return {"type": self.type, "data": dict(self.data)}


def extract_plain_text(segments: Sequence[ContentSegment]) -> str:
    """Join the preview text of every segment, in order."""

    return "".join(segment.preview_text() for segment in segments)


@dataclass(slots=True, frozen=True)
class DispatchTarget:
    """Destination address plus delivery channel kind."""

    address: str
    channel: str = GROUP

    def __str__(self) -> str:
        prefix = "group" if self.channel == GROUP else "friend"
        return f"{prefix}:{self.address}"


@dataclass(slots=True, frozen=True)
class MessageTemplates:
    """Per-event-kind templates used by repository notifications."""

    commit: str = "📝 [{repo}] {author} pushed a commit\n{message}\n{url}"
    issue: str = "🐛 [{repo}] Issue #{number} ({state}) by {author}\n{title}\n{url}"
    release: str = "🚀 [{repo}] Release {version}: {title}\n{url}"

    def for_kind(self, kind: str) -> str | None:
        return {
            COMMITS: self.commit,
            ISSUES: self.issue,
            RELEASES: self.release,
        }.get(kind)


@dataclass(slots=True, frozen=True)
class FilterConfig:
    """Match predicates of a rule; any kind matching is sufficient."""

    prefixes: tuple[str, ...] = ()
    keywords: tuple[str, ...] = ()
    event_kinds: frozenset[str] = frozenset()


@dataclass(slots=True, frozen=True)
class WatchRule:
    """One forwarding or notification rule, immutable after load."""

    name: str
    enabled: bool
    sources: frozenset[str]
    destinations: tuple[DispatchTarget, ...]
    filters: FilterConfig = field(default_factory=FilterConfig)
    forward_prefix: str = ""
    templates: MessageTemplates = field(default_factory=MessageTemplates)
    preserve_original_content: bool = True


@dataclass(slots=True, frozen=True)
class RepositoryWatch:
    """Poll parameters for one ``owner/repo`` source key."""

    owner: str
    name: str
    display_name: str
    event_kinds: frozenset[str]

    @property
    def key(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(slots=True, frozen=True)
class CandidateItem:
    """Observed unit considered for matching.

    ``kind`` tags the variant (commit, issue, release or chat message). All
    variants expose the same shape so a single pipeline can process them.
    """

    kind: str
    identity: str | None
    source_key: str
    text: str
    fields: Mapping[str, str] = field(default_factory=dict)
    raw_content: tuple[ContentSegment, ...] = ()
    sender_id: str | None = None


def commit_item(
    repo: RepositoryWatch, *, sha: str, author: str, message: str, url: str
) -> CandidateItem:
    headline = message.split("\n")[0]
    return CandidateItem(
        kind=COMMITS,
        identity=sha,
        source_key=repo.key,
        text=headline,
        fields={
            "repo": repo.display_name,
            "author": author,
            "message": headline,
            "url": url,
            "sha": sha[:7],
        },
    )


def issue_item(
    repo: RepositoryWatch,
    *,
    number: int,
    author: str,
    title: str,
    state: str,
    url: str,
) -> CandidateItem:
    return CandidateItem(
        kind=ISSUES,
        identity=f"issue-{number}",
        source_key=repo.key,
        text=title,
        fields={
            "repo": repo.display_name,
            "author": author,
            "title": title,
            "state": state,
            "number": str(number),
            "url": url,
        },
    )


def release_item(
    repo: RepositoryWatch,
    *,
    tag: str,
    name: str,
    author: str,
    url: str,
) -> CandidateItem:
    title = name or tag
    return CandidateItem(
        kind=RELEASES,
        identity=f"release-{tag}",
        source_key=repo.key,
        text=title,
        fields={
            "repo": repo.display_name,
            "version": tag,
            "title": title,
            "author": author,
            "url": url,
        },
    )


def chat_item(
    *,
    room_id: str,
    sender_id: str,
    segments: Sequence[ContentSegment],
    message_id: str | None = None,
) -> CandidateItem:
    return CandidateItem(
        kind=CHAT,
        identity=f"message-{message_id}" if message_id else None,
        source_key=room_id,
        text=extract_plain_text(segments),
        fields={"sourceGroup": room_id, "senderUin": sender_id},
        raw_content=tuple(segments),
        sender_id=sender_id,
    )


@dataclass(slots=True, frozen=True)
class RenderedMessage:
    """Outgoing content produced by the renderer."""

    segments: tuple[ContentSegment, ...]

    @property
    def text(self) -> str:
        return extract_plain_text(self.segments)


@dataclass(slots=True, frozen=True)
class NotificationResult:
    """Outcome of one send to one target."""

    target: DispatchTarget
    delivered: bool
    reason: str | None = None


@dataclass(slots=True)
class DispatchTally:
    """Success and failure counters used for status reporting."""

    success: int = 0
    failure: int = 0

    def record(self, result: NotificationResult) -> None:
        if result.delivered:
            self.success += 1
        else:
            self.failure += 1


@dataclass(slots=True)
class EngineStatus:
    """Snapshot returned by the status query."""

    enabled_rules: int
    source_count: int
    destination_count: int
    last_checks: Mapping[str, datetime]
    tallies: Mapping[str, DispatchTally]
    rule_listing: str


@dataclass(slots=True, frozen=True)
class AccountOptions:
    """Bot account identity; login itself is handled by the transport."""

    uin: int = 0
    password: str = ""
    protocol: str = "Linux"
    auto_reconnect: bool = True


@dataclass(slots=True, frozen=True)
class TransportOptions:
    """OneBot HTTP endpoint and inbound receiver settings."""

    api_url: str = "http://127.0.0.1:5700"
    access_token: str | None = None
    listen_host: str = "127.0.0.1"
    listen_port: int = 8080


@dataclass(slots=True, frozen=True)
class RuntimeOptions:
    """Tunable behaviour of the monitor loop and dispatcher."""

    poll_interval: float = 300.0
    max_items_per_check: int = 5
    send_interval: float = 1.0
    send_timeout: float | None = 15.0
    notifications_enabled: bool = True
    forward_enabled: bool = True
    verbose_logging: bool = False
    send_startup_message: bool = False
    startup_message: str = "🤖 Relay monitor started"
    max_seen_per_source: int | None = None
    github_request_rate: float = 2.0


@dataclass(slots=True, frozen=True)
class AppConfig:
    """Fully loaded, immutable configuration snapshot."""

    account: AccountOptions
    transport: TransportOptions
    runtime: RuntimeOptions
    rules: tuple[WatchRule, ...]
    repositories: tuple[RepositoryWatch, ...]
    github_token: str | None = None
