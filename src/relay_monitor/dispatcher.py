"""Paced, failure-isolated delivery of rendered notifications."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Mapping, Sequence

from .models import DispatchTally, DispatchTarget, NotificationResult, RenderedMessage
from .onebot import ChatTransportProtocol

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


class Dispatcher:
    """Deliver messages to targets one after another.

    A fixed ``send_interval`` separates consecutive sends. A failed send is
    logged and counted and never retried; the remaining targets are still
    attempted. When the surrounding task is cancelled, the send already in
    flight is allowed to finish before the cancellation propagates.
    """

    def __init__(
        self,
        transport: ChatTransportProtocol,
        *,
        send_interval: float = 1.0,
        send_timeout: float | None = 15.0,
        sleep: Sleeper = asyncio.sleep,
    ):
        self._transport = transport
        self._send_interval = max(0.0, send_interval)
        self._send_timeout = send_timeout
        self._sleep = sleep
        self._total = DispatchTally()
        self._per_rule: dict[str, DispatchTally] = {}

    @property
    def total(self) -> DispatchTally:
        return self._total

    def tallies(self) -> Mapping[str, DispatchTally]:
        return dict(self._per_rule)

    async def dispatch(
        self,
        message: RenderedMessage,
        targets: Sequence[DispatchTarget],
        *,
        rule_name: str | None = None,
    ) -> list[NotificationResult]:
        results: list[NotificationResult] = []
        tally = DispatchTally()
        for index, target in enumerate(targets):
            if index and self._send_interval > 0:
                await self._sleep(self._send_interval)
            result = await self._send_to_completion(message, target, rule_name)
            results.append(result)
            tally.record(result)
            self._report(result, rule_name)

        if results:
            logger.info(
                "Dispatch summary for %s: %d delivered, %d failed",
                rule_name or "direct",
                tally.success,
                tally.failure,
            )
        return results

    async def _send_to_completion(
        self, message: RenderedMessage, target: DispatchTarget, rule_name: str | None
    ) -> NotificationResult:
        task = asyncio.ensure_future(self._send(message, target))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.done():
                logger.info("Shutdown requested, finishing send to %s", target)
                await asyncio.wait({task})
            if not task.cancelled():
                self._report(task.result(), rule_name)
            raise

    async def _send(self, message: RenderedMessage, target: DispatchTarget) -> NotificationResult:
        try:
            if self._send_timeout is not None and self._send_timeout > 0:
                code = await asyncio.wait_for(
                    self._transport.send_message(target, message.segments),
                    timeout=self._send_timeout,
                )
            else:
                code = await self._transport.send_message(target, message.segments)
        except asyncio.TimeoutError:
            return NotificationResult(target, delivered=False, reason="timeout")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Transport error while sending to %s", target)
            return NotificationResult(target, delivered=False, reason=str(exc) or type(exc).__name__)
        if code != 0:
            return NotificationResult(target, delivered=False, reason=f"result code {code}")
        return NotificationResult(target, delivered=True)

    def _report(self, result: NotificationResult, rule_name: str | None) -> None:
        self._record(result, rule_name)
        if result.delivered:
            logger.info("Delivered %s notification to %s", rule_name or "direct", result.target)
        else:
            logger.warning(
                "Delivery of %s notification to %s failed: %s",
                rule_name or "direct",
                result.target,
                result.reason,
            )

    def _record(self, result: NotificationResult, rule_name: str | None) -> None:
        self._total.record(result)
        if rule_name is not None:
            self._per_rule.setdefault(rule_name, DispatchTally()).record(result)
