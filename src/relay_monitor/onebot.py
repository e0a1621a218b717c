"""OneBot v11 chat transport: outbound HTTP API and inbound event receiver."""

from __future__ import annotations

import asyncio
import hmac
import logging
from typing import Any, Awaitable, Callable, Mapping, Protocol, Sequence

import aiohttp
from aiohttp import web

from .models import GROUP, CandidateItem, ContentSegment, DispatchTarget, chat_item

logger = logging.getLogger(__name__)

TRANSPORT_ERROR = -1

EventHandler = Callable[[CandidateItem, str | None], Awaitable[None]]


class ChatTransportProtocol(Protocol):
    async def send_message(
        self,
        target: DispatchTarget,
        segments: Sequence[ContentSegment],
    ) -> int: ...


class OneBotAPI:
    """Lightweight OneBot HTTP API wrapper.

    ``send_message`` returns the OneBot ``retcode``; zero means delivered.
    HTTP or network failures are reported as ``TRANSPORT_ERROR``.
    """

    def __init__(
        self,
        api_url: str,
        session: aiohttp.ClientSession,
        *,
        access_token: str | None = None,
    ):
        self._api_url = api_url.rstrip("/")
        self._session = session
        self._access_token = access_token

    async def send_message(
        self,
        target: DispatchTarget,
        segments: Sequence[ContentSegment],
    ) -> int:
        message = [segment.as_payload() for segment in segments]
        if target.channel == GROUP:
            action = "send_group_msg"
            data: dict[str, Any] = {"group_id": _as_id(target.address), "message": message}
        else:
            action = "send_private_msg"
            data = {"user_id": _as_id(target.address), "message": message}
        payload = await self._call(action, data)
        if payload is None:
            return TRANSPORT_ERROR
        try:
            return int(payload.get("retcode", TRANSPORT_ERROR))
        except (TypeError, ValueError):
            return TRANSPORT_ERROR

    async def get_login_info(self) -> Mapping[str, Any] | None:
        payload = await self._call("get_login_info", {})
        if payload is None or payload.get("retcode") != 0:
            return None
        data = payload.get("data")
        return data if isinstance(data, Mapping) else None

    async def _call(self, action: str, data: Mapping[str, Any]) -> Mapping[str, Any] | None:
        url = f"{self._api_url}/{action}"
        headers = {"Accept": "application/json"}
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        try:
            timeout_cfg = aiohttp.ClientTimeout(total=15)
            async with self._session.post(
                url,
                json=data,
                headers=headers,
                timeout=timeout_cfg,
            ) as resp:
                if resp.status >= 400:
                    logger.warning("OneBot answered %s to %s", resp.status, action)
                    await resp.read()
                    return None
                payload = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("OneBot call %s failed: %s", action, exc)
            return None
        if not isinstance(payload, Mapping):
            return None
        return payload


def parse_segments(message: Any) -> list[ContentSegment]:
    """Normalise a OneBot ``message`` field into segments."""

    if isinstance(message, str):
        return [ContentSegment.text(message)] if message else []
    segments: list[ContentSegment] = []
    if not isinstance(message, Sequence):
        return segments
    for entry in message:
        if not isinstance(entry, Mapping):
            continue
        segment_type = str(entry.get("type") or "").strip()
        if not segment_type:
            continue
        data = entry.get("data")
        segments.append(
            ContentSegment(segment_type, dict(data) if isinstance(data, Mapping) else {})
        )
    return segments


def parse_group_message(payload: Mapping[str, Any]) -> CandidateItem | None:
    """Return a chat item for a group message event, ``None`` for anything else."""

    if payload.get("post_type") not in {"message", "message_sent"}:
        return None
    if payload.get("message_type") != "group":
        return None
    group_id = _id_text(payload.get("group_id"))
    sender_id = _id_text(payload.get("user_id"))
    if not group_id or group_id == "0" or not sender_id:
        return None
    segments = parse_segments(payload.get("message"))
    if not segments:
        return None
    message_id = _id_text(payload.get("message_id"))
    return chat_item(
        room_id=group_id,
        sender_id=sender_id,
        segments=segments,
        message_id=message_id or None,
    )


class InboundReceiver:
    """aiohttp server accepting OneBot HTTP POST event reports."""

    def __init__(
        self,
        handler: EventHandler,
        *,
        host: str = "127.0.0.1",
        port: int = 8080,
        access_token: str | None = None,
    ):
        self._handler = handler
        self._host = host
        self._port = port
        self._access_token = access_token
        self._app = web.Application()
        self._app.router.add_post("/", self.handle_request)

    @property
    def app(self) -> web.Application:
        return self._app

    async def run(self) -> None:
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        try:
            await site.start()
            logger.info("Listening for chat events on %s:%s", self._host, self._port)
            await asyncio.Event().wait()
        finally:
            await runner.cleanup()

    async def handle_request(self, request: web.Request) -> web.Response:
        if not self._authorized(request):
            return web.Response(status=401)
        try:
            payload = await request.json()
        except ValueError:
            return web.Response(status=400)
        if not isinstance(payload, Mapping):
            return web.Response(status=400)
        item = parse_group_message(payload)
        if item is not None:
            self_id = _id_text(payload.get("self_id")) or None
            await self._handler(item, self_id)
        return web.Response(status=204)

    def _authorized(self, request: web.Request) -> bool:
        if not self._access_token:
            return True
        header = request.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() not in {"bearer", "token"}:
            token = request.query.get("access_token", "")
        return hmac.compare_digest(token.strip().encode(), self._access_token.encode())


def _id_text(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _as_id(address: str) -> int | str:
    return int(address) if address.lstrip("-").isdigit() else address
