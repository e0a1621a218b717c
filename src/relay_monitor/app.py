"""Application bootstrap for Relay Monitor."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

import aiohttp

from .deduplication import SeenStore
from .dispatcher import Dispatcher
from .engine import NotificationEngine, format_status
from .github import GitHubClient, GitHubError
from .models import (
    EVENT_KINDS,
    AppConfig,
    CandidateItem,
    ContentSegment,
    DispatchTarget,
    RenderedMessage,
    RepositoryWatch,
)
from .onebot import ChatTransportProtocol, InboundReceiver, OneBotAPI
from .utils import RateLimiter

logger = logging.getLogger(__name__)


class RelayMonitorApp:
    """High level coordinator tying together GitHub polling, chat events and delivery."""

    def __init__(self, config: AppConfig):
        self._config = config
        self._runtime = config.runtime
        self._pending: set[asyncio.Task[None]] = set()
        self._engine: NotificationEngine | None = None

    @property
    def engine(self) -> NotificationEngine | None:
        return self._engine

    def build_engine(self, transport: ChatTransportProtocol) -> NotificationEngine:
        dispatcher = Dispatcher(
            transport,
            send_interval=self._runtime.send_interval,
            send_timeout=self._runtime.send_timeout,
        )
        self._engine = NotificationEngine(
            self._config.rules,
            dispatcher,
            seen=SeenStore(self._seen_capacity()),
        )
        return self._engine

    def _seen_capacity(self) -> int | None:
        cap = self._runtime.max_seen_per_source
        if cap is None:
            return None
        # a full poll batch always fits
        batch = self._runtime.max_items_per_check * len(EVENT_KINDS)
        if cap < batch:
            logger.warning(
                "maxSeenPerSource %d raised to %d to hold a full poll batch", cap, batch
            )
        return max(cap, batch)

    async def run(self) -> None:
        async with aiohttp.ClientSession() as session:
            transport = OneBotAPI(
                self._config.transport.api_url,
                session,
                access_token=self._config.transport.access_token,
            )
            github = GitHubClient(
                session,
                token=self._config.github_token,
                rate_limiter=RateLimiter(self._runtime.github_request_rate),
            )
            engine = self.build_engine(transport)
            logger.info("Loaded rules:\n%s", engine.status().rule_listing)

            login = await transport.get_login_info()
            if login is None:
                logger.warning("OneBot API at %s is not answering", self._config.transport.api_url)
            else:
                logger.info("Connected as %s (%s)", login.get("nickname"), login.get("user_id"))

            await self._describe_repositories(github)
            if self._runtime.send_startup_message:
                await self.send_startup_messages(engine)

            tasks: list[asyncio.Task[None]] = []
            if self._config.repositories:
                tasks.append(
                    asyncio.create_task(
                        self._supervise(
                            "github-monitor",
                            lambda: self._monitor_loop(github, engine),
                        ),
                        name="github-monitor-supervisor",
                    )
                )
            else:
                logger.warning("No GitHub repositories configured")

            if any(rule.filters.prefixes or rule.filters.keywords for rule in engine.rules):
                receiver = InboundReceiver(
                    lambda item, self_id: self.handle_chat_item(engine, item, self_id),
                    host=self._config.transport.listen_host,
                    port=self._config.transport.listen_port,
                    access_token=self._config.transport.access_token,
                )
                tasks.append(
                    asyncio.create_task(
                        self._supervise("chat-receiver", receiver.run),
                        name="chat-receiver-supervisor",
                    )
                )

            if not tasks:
                logger.warning("Nothing to watch, exiting")
                return
            try:
                await asyncio.gather(*tasks)
            finally:
                for task in tasks:
                    task.cancel()
                await self._drain_pending()
                logger.info("Final status:\n%s", format_status(engine.status()))

    async def _monitor_loop(self, github: GitHubClient, engine: NotificationEngine) -> None:
        loop = asyncio.get_running_loop()
        interval = self._runtime.poll_interval
        logger.info(
            "GitHub monitor started for %d repositories, interval %.0fs",
            len(self._config.repositories),
            interval,
        )
        while True:
            started = loop.time()
            await self.check_repositories(github, engine)
            if self._runtime.verbose_logging:
                logger.info("Status:\n%s", format_status(engine.status()))
            elapsed = loop.time() - started
            await asyncio.sleep(max(0.0, interval - elapsed))

    async def check_repositories(self, github: GitHubClient, engine: NotificationEngine) -> None:
        """Run one polling cycle over every watched repository concurrently."""

        await asyncio.gather(
            *(
                self._check_repository(github, engine, repo)
                for repo in self._config.repositories
            )
        )

    async def _check_repository(
        self,
        github: GitHubClient,
        engine: NotificationEngine,
        repo: RepositoryWatch,
    ) -> None:
        if self._runtime.verbose_logging:
            logger.info("Checking repository %s", repo.key)
        try:
            items = await github.fetch_items(repo, limit=self._runtime.max_items_per_check)
        except asyncio.CancelledError:
            raise
        except GitHubError as exc:
            logger.warning("Skipping %s this cycle: %s", repo.key, exc)
            return
        except Exception:
            logger.exception("Unexpected error while fetching %s", repo.key)
            return

        try:
            report = await engine.process_batch(
                repo.key,
                items,
                announce=self._runtime.notifications_enabled,
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Error while processing updates of %s", repo.key)
            return

        if report.novel and not report.baseline:
            logger.info(
                "%s: %d new items, %d notifications, %d delivered, %d failed",
                repo.key,
                report.novel,
                report.matched,
                report.delivered,
                report.failed,
            )

    async def handle_chat_item(
        self,
        engine: NotificationEngine,
        item: CandidateItem,
        self_id: str | None,
    ) -> asyncio.Task[None] | None:
        """Accept one inbound group message and schedule it for forwarding.

        Returns the scheduled task, or ``None`` when the message is ignored.
        """

        if not self._runtime.forward_enabled:
            return None
        own_ids = {str(self._config.account.uin)}
        if self_id:
            own_ids.add(self_id)
        if item.sender_id in own_ids:
            logger.debug("Ignoring own message in %s", item.source_key)
            return None
        if not engine.watches(item.source_key):
            return None
        if not item.text.strip():
            return None

        logger.info("Message in %s: %s", item.source_key, item.text[:50])
        task = asyncio.create_task(self._forward(engine, item))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _forward(self, engine: NotificationEngine, item: CandidateItem) -> None:
        try:
            await engine.process_batch(item.source_key, [item], baseline_applies=False)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Error while forwarding message from %s", item.source_key)

    async def send_startup_messages(self, engine: NotificationEngine) -> None:
        targets: list[DispatchTarget] = []
        for rule in engine.rules:
            if not rule.enabled or not rule.filters.event_kinds:
                continue
            for target in rule.destinations:
                if target not in targets:
                    targets.append(target)
        if not targets:
            return
        message = RenderedMessage(segments=(ContentSegment.text(self._runtime.startup_message),))
        await engine.dispatcher.dispatch(message, targets)

    async def _describe_repositories(self, github: GitHubClient) -> None:
        for repo in self._config.repositories:
            info = await github.fetch_repository(repo.owner, repo.name)
            if info is None:
                continue
            logger.info(
                "Watching %s (%s) for %s, %d stars",
                info.full_name,
                repo.display_name,
                ", ".join(sorted(repo.event_kinds)),
                info.stargazers_count,
            )

    async def _drain_pending(self) -> None:
        pending = list(self._pending)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _supervise(
        self,
        name: str,
        factory: Callable[[], Awaitable[None]],
        *,
        retry_delay: float = 5.0,
    ) -> None:
        while True:
            try:
                await factory()
            except asyncio.CancelledError:
                logger.info("Task %s stopped", name)
                raise
            except Exception:
                logger.exception("Task %s failed", name)
            else:
                logger.warning("Task %s finished unexpectedly, restarting", name)
            await asyncio.sleep(retry_delay)
