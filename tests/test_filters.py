from __future__ import annotations

from typing import Iterable

from relay_monitor.filters import FilterEngine, RuleEvaluator, drop_loopback, evaluate
from relay_monitor.models import (
    COMMITS,
    EVENT_KINDS,
    ISSUES,
    PRIVATE,
    CandidateItem,
    ContentSegment,
    DispatchTarget,
    FilterConfig,
    RepositoryWatch,
    WatchRule,
    chat_item,
    commit_item,
    issue_item,
)

REPO = RepositoryWatch("octo", "repo", "Repo", frozenset(EVENT_KINDS))


def make_chat(text: str, *, room: str = "1001", sender: str = "42") -> CandidateItem:
    return chat_item(
        room_id=room,
        sender_id=sender,
        segments=[ContentSegment.text(text)],
        message_id="7",
    )


def make_rule(
    name: str = "rule",
    *,
    sources: Iterable[str] = ("1001",),
    destinations: Iterable[DispatchTarget] = (DispatchTarget("2002"),),
    prefixes: Iterable[str] = (),
    keywords: Iterable[str] = (),
    event_kinds: Iterable[str] = (),
    enabled: bool = True,
) -> WatchRule:
    return WatchRule(
        name=name,
        enabled=enabled,
        sources=frozenset(sources),
        destinations=tuple(destinations),
        filters=FilterConfig(
            prefixes=tuple(prefixes),
            keywords=tuple(keywords),
            event_kinds=frozenset(event_kinds),
        ),
    )


def test_filter_engine_prefix_or_keyword() -> None:
    engine = FilterEngine(FilterConfig(prefixes=("注：",), keywords=("紧急",)))

    by_prefix = engine.evaluate(make_chat("注：明天放假"))
    by_keyword = engine.evaluate(make_chat("这是紧急通知"))
    missing = engine.evaluate(make_chat("普通消息"))

    assert by_prefix.allowed is True
    assert by_prefix.reason == "prefix"
    assert by_keyword.allowed is True
    assert by_keyword.reason == "keyword"
    assert missing.allowed is False


def test_filter_engine_is_case_insensitive() -> None:
    engine = FilterEngine(FilterConfig(prefixes=("#Notice",), keywords=("URGENT",)))

    assert engine.evaluate(make_chat("#notice meeting at 5")).allowed is True
    assert engine.evaluate(make_chat("this is urgent")).allowed is True
    assert engine.evaluate(make_chat("see #notice")).allowed is False


def test_filter_engine_without_predicates_matches_nothing() -> None:
    engine = FilterEngine(FilterConfig())

    assert engine.evaluate(make_chat("anything")).allowed is False
    commit = commit_item(REPO, sha="abc", author="bob", message="fix", url="")
    assert engine.evaluate(commit).allowed is False


def test_filter_engine_event_kinds() -> None:
    engine = FilterEngine(FilterConfig(event_kinds=frozenset({COMMITS})))
    commit = commit_item(REPO, sha="abc", author="bob", message="fix", url="")
    issue = issue_item(REPO, number=1, author="bob", title="bug", state="open", url="")

    assert engine.evaluate(commit).allowed is True
    decision = engine.evaluate(issue)
    assert decision.allowed is False
    assert decision.reason == "event_kind_not_watched"


def test_evaluator_returns_every_matching_rule_in_order() -> None:
    rules = [
        make_rule("first", prefixes=("注：",)),
        make_rule("second", keywords=("紧急",), destinations=[DispatchTarget("3003")]),
        make_rule("third", keywords=("nothing",)),
    ]

    matches = evaluate(make_chat("注：紧急"), rules)

    assert [match.rule.name for match in matches] == ["first", "second"]
    assert matches[1].destinations == (DispatchTarget("3003"),)


def test_evaluator_skips_disabled_rules_and_foreign_sources() -> None:
    rules = [
        make_rule("off", keywords=("hi",), enabled=False),
        make_rule("elsewhere", keywords=("hi",), sources=("9999",)),
        make_rule("empty", keywords=("hi",), sources=()),
    ]

    assert RuleEvaluator(rules).evaluate(make_chat("hi there")) == []


def test_evaluator_drops_loopback_destination() -> None:
    rule = make_rule(
        "loop",
        keywords=("hi",),
        destinations=[DispatchTarget("1001"), DispatchTarget("2002")],
    )

    matches = evaluate(make_chat("hi", room="1001"), [rule])

    assert len(matches) == 1
    assert matches[0].destinations == (DispatchTarget("2002"),)


def test_evaluator_skips_rule_left_without_destinations() -> None:
    rule = make_rule("loop", keywords=("hi",), destinations=[DispatchTarget("1001")])

    assert evaluate(make_chat("hi", room="1001"), [rule]) == []


def test_drop_loopback_keeps_private_targets_with_same_address() -> None:
    targets = [DispatchTarget("1001"), DispatchTarget("1001", PRIVATE)]

    assert drop_loopback(targets, "1001") == (DispatchTarget("1001", PRIVATE),)


def test_repository_rule_matches_by_source_and_kind() -> None:
    rule = make_rule(
        "Repo",
        sources=("octo/repo",),
        event_kinds=(COMMITS, ISSUES),
    )
    commit = commit_item(REPO, sha="abc", author="bob", message="fix", url="")

    matches = evaluate(commit, [rule])

    assert len(matches) == 1
    assert matches[0].reason == "event_kind"


def test_filter_engine_ignores_blank_tokens() -> None:
    engine = FilterEngine(FilterConfig(prefixes=("  ",), keywords=(" ", " 紧急 ")))

    assert engine.evaluate(make_chat("hello world")).allowed is False
    assert engine.evaluate(make_chat("这是紧急通知")).allowed is True
