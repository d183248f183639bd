"""Diagnostic sinks for contained handler errors.

A sink is any async callable taking formatted error text. Stack traces
only ever travel through a sink, never to the chat surface.
"""

import asyncio
import traceback
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import aiohttp
import structlog

logger = structlog.get_logger("switchboard.dispatch")

# Platform message length limit
MAX_MESSAGE_LENGTH = 2000


@dataclass
class Diagnostic:
    """A failure that was contained instead of surfacing.

    Attributes:
        stage: Where it was contained ("before", "middleware", ...).
        source: Command name for dispatch failures, event name for
            routing failures.
        error: The contained exception.
    """
    stage: str
    source: str
    error: BaseException


def format_error(source: str, error: BaseException) -> str:
    """Render ``error`` with its traceback, headed by the failing source."""
    trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    return f"Error in {source}: {error}\n```\n{trace.strip()}\n```"


def truncate(text: str, limit: int = MAX_MESSAGE_LENGTH) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


class ChannelSink:
    """Sends diagnostics to a chat channel through the host's send function.

    Args:
        send: Async ``send(channel_id, text)`` supplied by the host.
        channel_id: Destination channel.
    """

    def __init__(self, send: Callable[[str, str], Awaitable[Any]], channel_id: str):
        self._send = send
        self.channel_id = channel_id

    async def __call__(self, text: str) -> bool:
        try:
            await self._send(self.channel_id, truncate(text))
            return True
        except Exception as e:
            logger.error("diagnostic_channel_failed", channel=self.channel_id, error=str(e))
            return False


class WebhookSink:
    """POSTs diagnostics to a webhook URL.

    The aiohttp session is created lazily and shared across calls.
    """

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        """Close the shared HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def __call__(self, text: str) -> bool:
        try:
            session = await self._get_session()
            async with session.post(
                self.url,
                json={"content": truncate(text)},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status >= 400:
                    logger.error("diagnostic_webhook_rejected", status=resp.status)
                    return False
                return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("diagnostic_webhook_failed", error=str(e))
            return False
