"""Deliver buffered domain events to an HTTP endpoint."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

import aiohttp

from licensing_engine.events.base import DomainEvent
from licensing_engine.events.outbox import OutboxSink

logger = logging.getLogger(__name__)


@dataclass
class DeliveryReport:
    """Outcome of one dispatch run."""

    delivered: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


class WebhookDispatcher:
    """POSTs events as JSON, one request per event, in publication order.

    Each event is sent with an ``Idempotency-Key`` header equal to its id so
    that a receiver can discard redeliveries. Use as an async context
    manager or call close() when done.
    """

    def __init__(self, url: str, timeout: float = 10.0) -> None:
        """Initialize the dispatcher.

        Args:
            url: Endpoint receiving the events.
            timeout: Total timeout for one request, in seconds.
        """
        self.url = url
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create the aiohttp session.

        Returns:
            The shared aiohttp ClientSession.
        """
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def close(self) -> None:
        """Close the aiohttp session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "WebhookDispatcher":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    async def send(self, event: DomainEvent) -> bool:
        """Deliver one event.

        Returns:
            True if the endpoint answered with a 2xx status.
        """
        logger.debug("Posting %s %s to %s", event.name.value, event.id, self.url)
        try:
            session = await self._get_session()
            async with session.post(
                self.url,
                json=event.to_dict(),
                headers={"Idempotency-Key": event.id},
            ) as response:
                if 200 <= response.status < 300:
                    return True
                logger.warning(
                    "Webhook returned status %d for %s %s",
                    response.status,
                    event.name.value,
                    event.id,
                )
                return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(
                "Network error delivering %s %s: %s", event.name.value, event.id, e
            )
            return False

    async def deliver(self, events: list[DomainEvent]) -> DeliveryReport:
        """Deliver events in order, continuing past individual failures."""
        report = DeliveryReport()
        for event in events:
            if await self.send(event):
                report.delivered.append(event.id)
            else:
                report.failed.append(event.id)
        logger.info(
            "Delivered %d event(s), %d failed", len(report.delivered), len(report.failed)
        )
        return report

    async def flush(self, outbox: OutboxSink) -> DeliveryReport:
        """Drain the outbox and requeue whatever could not be delivered."""
        events = outbox.drain()
        report = await self.deliver(events)
        if report.failed:
            failed = set(report.failed)
            outbox.requeue([e for e in events if e.id in failed])
        return report
