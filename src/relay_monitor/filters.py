"""Rule matching applied to candidate items before dispatch."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Sequence

from .models import CHAT, GROUP, CandidateItem, DispatchTarget, FilterConfig, WatchRule

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FilterDecision:
    """Result of evaluating one rule's filters."""

    allowed: bool
    reason: str | None = None


@dataclass(slots=True, frozen=True)
class Match:
    """A rule that matched an item, with the destinations left after loop avoidance."""

    rule: WatchRule
    destinations: tuple[DispatchTarget, ...]
    reason: str


class FilterEngine:
    """Apply prefix, keyword and event-kind filters of one rule."""

    def __init__(self, config: FilterConfig):
        self._config = config
        self._prefixes = _normalise_tokens(config.prefixes)
        self._keywords = _normalise_tokens(config.keywords)

    def evaluate(self, item: CandidateItem) -> FilterDecision:
        if item.kind != CHAT:
            if item.kind in self._config.event_kinds:
                return FilterDecision(True, "event_kind")
            return FilterDecision(False, "event_kind_not_watched")

        lowered = item.text.lower()
        if any(lowered.startswith(prefix) for prefix in self._prefixes):
            return FilterDecision(True, "prefix")
        if any(keyword in lowered for keyword in self._keywords):
            return FilterDecision(True, "keyword")
        return FilterDecision(False, "no_text_match")


class RuleEvaluator:
    """Match candidate items against the configured rules."""

    def __init__(self, rules: Iterable[WatchRule]):
        self._engines = [
            (rule, FilterEngine(rule.filters)) for rule in rules if rule.enabled
        ]

    def evaluate(self, item: CandidateItem) -> list[Match]:
        matches: list[Match] = []
        for rule, engine in self._engines:
            if item.source_key not in rule.sources:
                continue
            decision = engine.evaluate(item)
            if not decision.allowed:
                continue
            destinations = drop_loopback(rule.destinations, item.source_key)
            if not destinations:
                continue
            logger.debug(
                "Item %s from %s matched rule %s (%s)",
                item.identity,
                item.source_key,
                rule.name,
                decision.reason,
            )
            matches.append(
                Match(rule=rule, destinations=destinations, reason=decision.reason or "")
            )
        return matches


def evaluate(item: CandidateItem, rules: Sequence[WatchRule]) -> list[Match]:
    """Return every rule match for ``item``."""

    return RuleEvaluator(rules).evaluate(item)


def drop_loopback(
    destinations: Iterable[DispatchTarget], source_key: str
) -> tuple[DispatchTarget, ...]:
    """Remove room destinations that are the item's own source."""

    kept: list[DispatchTarget] = []
    for target in destinations:
        if target.channel == GROUP and target.address == source_key:
            logger.info("Skipping forward of %s back into itself", source_key)
            continue
        kept.append(target)
    return tuple(kept)


def _normalise_tokens(tokens: Iterable[str]) -> tuple[str, ...]:
    cleaned: list[str] = []
    for token in tokens:
        text = token.strip().lower()
        if text and text not in cleaned:
            cleaned.append(text)
    return tuple(cleaned)
