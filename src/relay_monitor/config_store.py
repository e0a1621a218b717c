"""JSON backed configuration for Relay Monitor."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Iterable, Mapping

from .models import (
    EVENT_KINDS,
    GROUP,
    PRIVATE,
    AccountOptions,
    AppConfig,
    DispatchTarget,
    FilterConfig,
    MessageTemplates,
    RepositoryWatch,
    RuntimeOptions,
    TransportOptions,
    WatchRule,
)
from .utils import parse_bool, parse_delay_setting

logger = logging.getLogger(__name__)

GITHUB_TOKEN_ENV = "RELAY_GITHUB_TOKEN"

DEFAULT_FORWARD_PREFIX = "[Forwarded from group {sourceGroup}] "

DEFAULT_CONFIG: dict[str, Any] = {
    "account": {
        "uin": 0,
        "password": "",
        "protocol": "Linux",
        "autoReconnect": True,
    },
    "onebot": {
        "apiUrl": "http://127.0.0.1:5700",
        "accessToken": "",
        "listenHost": "127.0.0.1",
        "listenPort": 8080,
    },
    "message": {
        "enabled": True,
        "sendInterval": 1000,
        "sendTimeout": 15000,
        "templates": {
            "newCommit": MessageTemplates().commit,
            "newIssue": MessageTemplates().issue,
            "newRelease": MessageTemplates().release,
        },
    },
    "monitor": {
        "interval": 300,
        "maxItemsPerCheck": 5,
        "verboseLogging": False,
        "sendStartupMessage": False,
        "startupMessage": RuntimeOptions().startup_message,
        "maxSeenPerSource": None,
    },
    "github": {
        "token": "",
        "requestRate": 2.0,
        "repositories": [
            {
                "owner": "octocat",
                "name": "Hello-World",
                "displayName": "Hello-World",
                "watchEvents": ["commits", "issues", "releases"],
                "targetGroups": [123456789],
                "targetFriends": [],
            }
        ],
    },
    "forward": {
        "enabled": True,
        "rules": [
            {
                "name": "Announcements",
                "enabled": False,
                "sourceGroups": [111111111],
                "targetGroups": [222222222],
                "targetFriends": [],
                "messagePrefixes": ["#notice"],
                "keywords": ["urgent"],
                "forwardFullMessage": True,
                "preserveFormat": True,
                "forwardPrefix": DEFAULT_FORWARD_PREFIX,
            }
        ],
    },
}


class ConfigError(Exception):
    """Raised when the configuration file cannot be used."""


class MissingAccountError(ConfigError):
    """Raised when no bot account identity is configured."""


class ConfigStore:
    """Load the configuration snapshot from a JSON file."""

    def __init__(self, path: Path):
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.is_file()

    def load(self) -> AppConfig:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise ConfigError(f"Configuration file {self._path} does not exist") from exc
        except OSError as exc:
            raise ConfigError(f"Cannot read {self._path}: {exc}") from exc
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Invalid JSON in {self._path}: {exc}") from exc
        if not isinstance(data, Mapping):
            raise ConfigError(f"{self._path} must contain a JSON object")
        config = parse_config(data, env=os.environ)
        if config.account.uin == 0:
            raise MissingAccountError("Bot account uin is not configured")
        return config

    def write_default(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(
            json.dumps(DEFAULT_CONFIG, indent=2, ensure_ascii=False) + "\n",
            encoding="utf-8",
        )
        logger.info("Default configuration written to %s", self._path)


def parse_config(data: Mapping[str, Any], *, env: Mapping[str, str] | None = None) -> AppConfig:
    """Build an immutable snapshot from decoded JSON."""

    env = env or {}
    account = _section(data, "account")
    onebot = _section(data, "onebot")
    message = _section(data, "message")
    monitor = _section(data, "monitor")
    github = _section(data, "github")
    forward = _section(data, "forward")

    templates = _templates(_section(message, "templates"), MessageTemplates())
    repo_entries = [_section_of(entry) for entry in _list(github, "repositories")]
    repo_rules = [
        _repository_rule(entry, templates, index)
        for index, entry in enumerate(repo_entries, start=1)
    ]
    forward_rules = [
        _forward_rule(_section_of(entry), index)
        for index, entry in enumerate(_list(forward, "rules"), start=1)
    ]

    defaults = RuntimeOptions()
    runtime = RuntimeOptions(
        poll_interval=max(1.0, _float(_get(monitor, "interval"), defaults.poll_interval)),
        max_items_per_check=max(1, _int(_get(monitor, "maxItemsPerCheck"), 5)),
        send_interval=parse_delay_setting(_get(message, "sendInterval"), defaults.send_interval),
        send_timeout=parse_delay_setting(_get(message, "sendTimeout"), 15.0) or None,
        notifications_enabled=parse_bool(_get(message, "enabled"), True),
        forward_enabled=parse_bool(_get(forward, "enabled"), True),
        verbose_logging=parse_bool(_get(monitor, "verboseLogging"), False),
        send_startup_message=parse_bool(_get(monitor, "sendStartupMessage"), False),
        startup_message=str(_get(monitor, "startupMessage") or defaults.startup_message),
        max_seen_per_source=_int(_get(monitor, "maxSeenPerSource"), 0) or None,
        github_request_rate=_float(_get(github, "requestRate"), defaults.github_request_rate),
    )

    token = env.get(GITHUB_TOKEN_ENV) or str(_get(github, "token") or "").strip() or None

    return AppConfig(
        account=AccountOptions(
            uin=_int(_get(account, "uin"), 0),
            password=str(_get(account, "password") or ""),
            protocol=str(_get(account, "protocol") or "Linux"),
            auto_reconnect=parse_bool(_get(account, "autoReconnect"), True),
        ),
        transport=TransportOptions(
            api_url=str(_get(onebot, "apiUrl") or TransportOptions().api_url),
            access_token=str(_get(onebot, "accessToken") or "").strip() or None,
            listen_host=str(_get(onebot, "listenHost") or "127.0.0.1"),
            listen_port=_int(_get(onebot, "listenPort"), 8080),
        ),
        runtime=runtime,
        rules=tuple(repo_rules + forward_rules),
        repositories=_repository_watches(repo_entries),
        github_token=token,
    )


def _repository_rule(
    entry: Mapping[str, Any], templates: MessageTemplates, index: int
) -> WatchRule:
    owner, name = _repository_key(entry, index)
    display_name = str(_get(entry, "displayName") or name)
    return WatchRule(
        name=display_name,
        enabled=parse_bool(_get(entry, "enabled"), True),
        sources=frozenset({f"{owner}/{name}"}),
        destinations=_targets(entry),
        filters=FilterConfig(event_kinds=_event_kinds(entry)),
        templates=_templates(_section(entry, "templates"), templates),
    )


def _forward_rule(entry: Mapping[str, Any], index: int) -> WatchRule:
    prefix = _get(entry, "forwardPrefix")
    return WatchRule(
        name=str(_get(entry, "name") or f"rule-{index}"),
        enabled=parse_bool(_get(entry, "enabled"), True),
        sources=frozenset(_ids(_list(entry, "sourceGroups"))),
        destinations=_targets(entry),
        filters=FilterConfig(
            prefixes=tuple(str(value) for value in _list(entry, "messagePrefixes") if value),
            keywords=tuple(str(value) for value in _list(entry, "keywords") if value),
        ),
        forward_prefix=DEFAULT_FORWARD_PREFIX if prefix is None else str(prefix),
        preserve_original_content=(
            parse_bool(_get(entry, "forwardFullMessage"), True)
            and parse_bool(_get(entry, "preserveFormat"), True)
        ),
    )


def _repository_watches(entries: Iterable[Mapping[str, Any]]) -> tuple[RepositoryWatch, ...]:
    merged: dict[str, RepositoryWatch] = {}
    for index, entry in enumerate(entries, start=1):
        if not parse_bool(_get(entry, "enabled"), True):
            continue
        owner, name = _repository_key(entry, index)
        kinds = _event_kinds(entry)
        key = f"{owner}/{name}"
        existing = merged.get(key)
        if existing is not None:
            kinds = kinds | existing.event_kinds
        merged[key] = RepositoryWatch(
            owner=owner,
            name=name,
            display_name=existing.display_name
            if existing is not None
            else str(_get(entry, "displayName") or name),
            event_kinds=kinds,
        )
    return tuple(watch for watch in merged.values() if watch.event_kinds)


def _repository_key(entry: Mapping[str, Any], index: int) -> tuple[str, str]:
    owner = str(_get(entry, "owner") or "").strip()
    name = str(_get(entry, "name") or "").strip()
    if not owner or not name:
        raise ConfigError(f"Repository #{index} needs both owner and name")
    return owner, name


def _event_kinds(entry: Mapping[str, Any]) -> frozenset[str]:
    if _get(entry, "watchEvents") is None:
        return frozenset(EVENT_KINDS)
    kinds: set[str] = set()
    for value in _list(entry, "watchEvents"):
        kind = str(value).strip().lower()
        if kind in EVENT_KINDS:
            kinds.add(kind)
        else:
            logger.warning("Ignoring unknown watch event %r", value)
    return frozenset(kinds)


def _targets(entry: Mapping[str, Any]) -> tuple[DispatchTarget, ...]:
    targets: list[DispatchTarget] = []
    for address in _ids(_list(entry, "targetGroups")):
        target = DispatchTarget(address, GROUP)
        if target not in targets:
            targets.append(target)
    for address in _ids(_list(entry, "targetFriends")):
        target = DispatchTarget(address, PRIVATE)
        if target not in targets:
            targets.append(target)
    return tuple(targets)


def _templates(section: Mapping[str, Any], base: MessageTemplates) -> MessageTemplates:
    return MessageTemplates(
        commit=str(_get(section, "newCommit") or base.commit),
        issue=str(_get(section, "newIssue") or base.issue),
        release=str(_get(section, "newRelease") or base.release),
    )


def _get(section: Mapping[str, Any], key: str) -> Any:
    if key in section:
        return section[key]
    lowered = key.lower()
    for candidate, value in section.items():
        if str(candidate).lower() == lowered:
            return value
    return None


def _section(section: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    return _section_of(_get(section, key))


def _section_of(value: object) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _list(section: Mapping[str, Any], key: str) -> list[Any]:
    value = _get(section, key)
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _ids(values: Iterable[Any]) -> list[str]:
    result: list[str] = []
    for value in values:
        text = str(value).strip()
        if text and text != "0" and text not in result:
            result.append(text)
    return result


def _int(value: object, default: int) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def _float(value: object, default: float) -> float:
    if value is None or isinstance(value, bool):
        return default
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default
