"""Notification rendering helpers."""

from __future__ import annotations

import re
from typing import Mapping

from .models import CHAT, CandidateItem, ContentSegment, RenderedMessage, WatchRule

_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")


def render(template: str, fields: Mapping[str, str]) -> str:
    """Replace known ``{name}`` tokens, leaving unknown ones literal.

    Substitution is a single pass, so values that themselves contain braces
    are inserted verbatim.
    """

    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name in fields:
            return str(fields[name])
        return match.group(0)

    return _PLACEHOLDER_RE.sub(replace, template)


def render_notification(rule: WatchRule, item: CandidateItem) -> RenderedMessage | None:
    """Build the outgoing message for ``item`` under ``rule``."""

    if item.kind == CHAT:
        return render_forward(rule, item)
    template = rule.templates.for_kind(item.kind)
    if template is None:
        return None
    return RenderedMessage(segments=(ContentSegment.text(render(template, item.fields)),))


def render_forward(rule: WatchRule, item: CandidateItem) -> RenderedMessage:
    segments: list[ContentSegment] = []
    if rule.forward_prefix:
        segments.append(ContentSegment.text(render(rule.forward_prefix, item.fields)))
    if rule.preserve_original_content:
        segments.extend(item.raw_content)
    else:
        segments.append(ContentSegment.text(item.text))
    return RenderedMessage(segments=tuple(segments))
