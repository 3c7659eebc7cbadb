"""Server-sent-events consumer for task change notifications.

The channel only parses and forwards payloads; ordering and supersession are
decided by the reconciliation layer, so any other transport can replace this
one as long as it feeds the same callbacks.
"""

from __future__ import annotations

import asyncio
import json
import random
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from sprintboard.core.config import settings
from sprintboard.core.logging import get_logger
from sprintboard.schemas.events import ConnectionStatus

logger = get_logger(__name__)

EventCallback = Callable[[dict[str, Any]], Awaitable[None] | None]
StatusCallback = Callable[[ConnectionStatus], Awaitable[None] | None]


@dataclass
class ServerSentEvent:
    event: str = "message"
    data: str = ""
    id: str | None = None


@dataclass
class _SseBuffer:
    event: str = "message"
    data: list[str] = field(default_factory=list)
    id: str | None = None

    def flush(self) -> ServerSentEvent | None:
        if not self.data:
            self.event = "message"
            return None
        message = ServerSentEvent(event=self.event, data="\n".join(self.data), id=self.id)
        self.event = "message"
        self.data = []
        return message


async def iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[ServerSentEvent]:
    """Group raw SSE lines into events; comments and retry hints are skipped."""
    buffer = _SseBuffer()
    async for raw_line in lines:
        line = raw_line.rstrip("\r")
        if not line:
            message = buffer.flush()
            if message is not None:
                yield message
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        value = value.removeprefix(" ")
        if name == "data":
            buffer.data.append(value)
        elif name == "event":
            buffer.event = value or "message"
        elif name == "id":
            buffer.id = value
    message = buffer.flush()
    if message is not None:
        yield message


def reconnect_delay(attempt: int, *, base: float, maximum: float) -> float:
    """Exponential backoff capped at *maximum*."""
    return float(min(base * (2 ** max(0, attempt)), maximum))


def _compute_jitter(base_delay: float) -> float:
    return random.uniform(0.0, base_delay * 0.1)


async def _maybe_await(result: Awaitable[None] | None) -> None:
    if result is not None:
        await result


class PushChannel:
    """Long-lived SSE subscription with reconnect backoff and status signals."""

    def __init__(
        self,
        url: str,
        *,
        client: httpx.AsyncClient,
        on_event: EventCallback,
        on_status: StatusCallback,
        base_delay: float | None = None,
        max_delay: float | None = None,
        max_attempts: int | None = None,
    ) -> None:
        self.url = url
        self._client = client
        self._on_event = on_event
        self._on_status = on_status
        self.base_delay = base_delay or settings.push_reconnect_base_seconds
        self.max_delay = max_delay or settings.push_reconnect_max_seconds
        self.max_attempts = (
            settings.push_max_reconnect_attempts if max_attempts is None else max_attempts
        )
        self.status = ConnectionStatus.DISCONNECTED
        self._attempts = 0
        self._stopped = asyncio.Event()

    @property
    def attempts(self) -> int:
        return self._attempts

    def stop(self) -> None:
        self._stopped.set()

    async def _set_status(self, status: ConnectionStatus) -> None:
        if status == self.status:
            return
        self.status = status
        logger.info(
            "push.channel.status",
            extra={"status": status.value, "url": self.url, "attempts": self._attempts},
        )
        await _maybe_await(self._on_status(status))

    async def _dispatch(self, message: ServerSentEvent) -> None:
        if message.event not in {"message", "task", "task_event"}:
            logger.debug("push.channel.skip_event", extra={"event": message.event})
            return
        try:
            payload = json.loads(message.data)
        except ValueError:
            logger.warning(
                "push.channel.malformed_payload",
                extra={"event": message.event, "raw_payload": message.data[:500]},
            )
            return
        if not isinstance(payload, dict):
            logger.warning("push.channel.unexpected_payload", extra={"event": message.event})
            return
        await _maybe_await(self._on_event(payload))

    async def consume_once(self) -> None:
        """Hold one connection open until the server closes it or it fails."""
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        timeout = httpx.Timeout(settings.fetch_timeout_seconds, read=None)
        async with self._client.stream("GET", self.url, headers=headers, timeout=timeout) as resp:
            resp.raise_for_status()
            self._attempts = 0
            await self._set_status(ConnectionStatus.CONNECTED)
            async for message in iter_sse_events(resp.aiter_lines()):
                if self._stopped.is_set():
                    break
                await self._dispatch(message)

    async def run(self) -> None:
        """Reconnect forever until `stop()`; attempts reset after each successful connect."""
        logger.info("push.channel.started", extra={"url": self.url})
        try:
            while not self._stopped.is_set():
                try:
                    await self.consume_once()
                    logger.info("push.channel.closed_by_server", extra={"url": self.url})
                except asyncio.CancelledError:
                    raise
                except httpx.HTTPError as exc:
                    logger.warning(
                        "push.channel.disconnected",
                        extra={"url": self.url, "error": str(exc), "attempts": self._attempts},
                    )
                await self._set_status(ConnectionStatus.DISCONNECTED)
                if self._stopped.is_set():
                    break
                await self._wait_before_reconnect()
        finally:
            logger.info("push.channel.stopped", extra={"url": self.url})

    async def _wait_before_reconnect(self) -> None:
        if self._attempts == self.max_attempts:
            # Past this point the board relies on snapshot polling between retries.
            logger.warning(
                "push.channel.max_attempts_reached",
                extra={"url": self.url, "max_attempts": self.max_attempts},
            )
        base_delay = reconnect_delay(self._attempts, base=self.base_delay, maximum=self.max_delay)
        delay = base_delay + _compute_jitter(base_delay)
        self._attempts += 1
        logger.info(
            "push.channel.reconnect_scheduled",
            extra={"url": self.url, "delay_seconds": round(delay, 3), "attempt": self._attempts},
        )
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=delay)
        except TimeoutError:
            return
