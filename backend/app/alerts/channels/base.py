"""
base.py — Common contract for notification channel adapters.

    send(channel_id, message)   → DeliveryOutcome
    send_many([(id, message)], timeout=s)  → [DeliveryOutcome, ...]  (same order)

Recoverable provider errors (bad number, expired token, HTTP 5xx,
network failure, timeout) come back as DeliveryOutcome(success=False). Only a
malformed ChannelMessage raises ValueError, and it does so before any
request leaves the process.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Tuple

from backend.app.alerts.models import AlertChannel, ChannelMessage, DeliveryOutcome

logger = logging.getLogger(__name__)

SendItem = Tuple[str, ChannelMessage]


class ChannelAdapter(ABC):
    """One provider-backed delivery channel."""

    channel: AlertChannel

    @abstractmethod
    async def send(self, channel_id: str, message: ChannelMessage) -> DeliveryOutcome:
        ...

    async def send_many(
        self, items: Sequence[SendItem], *, timeout: Optional[float] = None,
    ) -> List[DeliveryOutcome]:
        """
        Deliver several messages concurrently.

        Providers without a native batch API fan out over `send`. Each send
        gets its own `timeout`, and a timeout or exception escaping `send`
        becomes a failed outcome for that item only.
        """
        for _, message in items:
            message.validate()

        results = await asyncio.gather(
            *(self._send_one(channel_id, message, timeout) for channel_id, message in items),
            return_exceptions=True,
        )

        outcomes: List[DeliveryOutcome] = []
        for (channel_id, _), result in zip(items, results):
            if isinstance(result, BaseException):
                logger.error(
                    "[%s] Unexpected error for %s: %s",
                    self.channel.value.upper(), _mask(channel_id), result,
                )
                outcomes.append(DeliveryOutcome.failed(str(result) or type(result).__name__))
            else:
                outcomes.append(result)
        return outcomes

    async def _send_one(
        self, channel_id: str, message: ChannelMessage, timeout: Optional[float],
    ) -> DeliveryOutcome:
        if timeout is None:
            return await self.send(channel_id, message)
        try:
            return await asyncio.wait_for(self.send(channel_id, message), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "[%s] Send to %s timed out after %.1fs",
                self.channel.value.upper(), _mask(channel_id), timeout,
            )
            return DeliveryOutcome.failed(timeout_error(timeout))

    async def aclose(self) -> None:
        """Release provider connections (no-op by default)."""
        return None


def timeout_error(timeout: float) -> str:
    return f"Timed out after {timeout}s"


def _mask(channel_id: str) -> str:
    """Log-safe form of a token or phone number."""
    if len(channel_id) <= 6:
        return "***"
    return f"{channel_id[:4]}…{channel_id[-2:]}"
