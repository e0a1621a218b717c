"""Deduplicated change detection and rule-based dispatch."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Sequence

from .deduplication import SeenStore
from .dispatcher import Dispatcher
from .filters import RuleEvaluator
from .formatting import render_notification
from .models import (
    CandidateItem,
    DispatchTarget,
    EngineStatus,
    NotificationResult,
    WatchRule,
)
from .utils import SourceProcessingGuard

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class BatchReport:
    """What happened to one candidate batch."""

    source_key: str
    baseline: bool = False
    novel: int = 0
    matched: int = 0
    results: list[NotificationResult] = field(default_factory=list)

    @property
    def delivered(self) -> int:
        return sum(1 for result in self.results if result.delivered)

    @property
    def failed(self) -> int:
        return sum(1 for result in self.results if not result.delivered)


class NotificationEngine:
    """Owns the seen sets, rules and dispatcher shared by both pipelines."""

    def __init__(
        self,
        rules: Iterable[WatchRule],
        dispatcher: Dispatcher,
        *,
        seen: SeenStore | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._rules = tuple(rules)
        self._evaluator = RuleEvaluator(self._rules)
        self._dispatcher = dispatcher
        self._seen = seen or SeenStore()
        self._guard = SourceProcessingGuard()
        self._clock = clock
        self._last_checks: dict[str, datetime] = {}

    @property
    def rules(self) -> Sequence[WatchRule]:
        return self._rules

    @property
    def dispatcher(self) -> Dispatcher:
        return self._dispatcher

    @property
    def seen(self) -> SeenStore:
        return self._seen

    def watches(self, source_key: str) -> bool:
        """Return True if any enabled rule lists ``source_key`` as a source."""

        return any(rule.enabled and source_key in rule.sources for rule in self._rules)

    async def process_batch(
        self,
        source_key: str,
        items: Sequence[CandidateItem],
        *,
        baseline_applies: bool = True,
        announce: bool = True,
    ) -> BatchReport:
        """Run one batch from one source through dedup, matching and dispatch.

        With ``baseline_applies`` the first batch of a key is absorbed into the
        seen set without any notification. ``announce=False`` keeps tracking
        items but sends nothing.
        """

        async with self._guard.lock(source_key):
            report = BatchReport(source_key=source_key)
            if baseline_applies:
                report.baseline = self._seen.is_baseline_cycle(source_key)
            novel = [
                item for item in items if self._seen.is_novel(source_key, item.identity)
            ]
            report.novel = len(novel)
            self._last_checks[source_key] = self._clock()

            if report.baseline:
                logger.info(
                    "Baseline for %s recorded with %d items", source_key, len(novel)
                )
                return report
            if not announce:
                return report

            for item in novel:
                await self._process_item(item, report)
            return report

    async def _process_item(self, item: CandidateItem, report: BatchReport) -> None:
        for match in self._evaluator.evaluate(item):
            message = render_notification(match.rule, item)
            if message is None:
                continue
            report.matched += 1
            logger.info(
                "Item %s from %s matched rule %s",
                item.identity or item.kind,
                item.source_key,
                match.rule.name,
            )
            results = await self._dispatcher.dispatch(
                message, match.destinations, rule_name=match.rule.name
            )
            report.results.extend(results)

    def status(self) -> EngineStatus:
        enabled = [rule for rule in self._rules if rule.enabled]
        sources = {source for rule in enabled for source in rule.sources}
        destinations: set[DispatchTarget] = {
            target for rule in enabled for target in rule.destinations
        }
        return EngineStatus(
            enabled_rules=len(enabled),
            source_count=len(sources),
            destination_count=len(destinations),
            last_checks=dict(self._last_checks),
            tallies=self._dispatcher.tallies(),
            rule_listing=describe_rules(self._rules),
        )


def describe_rules(rules: Sequence[WatchRule]) -> str:
    """Human-readable listing of every configured rule."""

    if not rules:
        return "No rules configured."
    lines = ["Configured rules:", ""]
    for index, rule in enumerate(rules, start=1):
        status = "on" if rule.enabled else "off"
        lines.append(f"{index}. [{status}] {rule.name or '(unnamed)'}")
        lines.append(f"   sources: {', '.join(sorted(rule.sources)) or '-'}")
        lines.append(
            f"   destinations: {', '.join(str(target) for target in rule.destinations) or '-'}"
        )
        if rule.filters.prefixes:
            lines.append(f"   prefixes: {', '.join(rule.filters.prefixes)}")
        if rule.filters.keywords:
            lines.append(f"   keywords: {', '.join(rule.filters.keywords)}")
        if rule.filters.event_kinds:
            lines.append(f"   events: {', '.join(sorted(rule.filters.event_kinds))}")
        if rule.filters.prefixes or rule.filters.keywords:
            keep = "yes" if rule.preserve_original_content else "no"
            lines.append(f"   preserve original content: {keep}")
        lines.append("")
    while lines and lines[-1] == "":
        lines.pop()
    return "\n".join(lines)


def format_status(status: EngineStatus) -> str:
    lines = [
        f"Active rules: {status.enabled_rules}",
        f"Watched sources: {status.source_count}",
        f"Destinations: {status.destination_count}",
    ]
    if status.last_checks:
        lines.append("Last checks:")
        for key in sorted(status.last_checks):
            moment = status.last_checks[key].astimezone()
            lines.append(f"  {key}: {moment:%Y-%m-%d %H:%M:%S}")
    if status.tallies:
        lines.append("Deliveries:")
        for name in sorted(status.tallies):
            tally = status.tallies[name]
            lines.append(f"  {name}: {tally.success} delivered, {tally.failure} failed")
    return "\n".join(lines)
