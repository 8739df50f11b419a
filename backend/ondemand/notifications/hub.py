"""Best-effort push of booking events to connected listeners.

Each subscriber id has at most one open ``SubscriberChannel``. Publishing
never blocks and never raises: an event for an absent subscriber is dropped,
and a channel that cannot take an event is closed and discarded. There is no
backlog for subscribers that connect later.
"""

import asyncio
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

import structlog

from ondemand.config import settings
from ondemand.metrics import NOTIFICATION_SUBSCRIBERS, NOTIFICATIONS_DELIVERED, NOTIFICATIONS_DROPPED
from ondemand.models.enums import BookingEventType, BookingStatus

logger = structlog.get_logger()


@dataclass(frozen=True)
class BookingEvent:
    type: BookingEventType
    booking_id: uuid.UUID
    status: BookingStatus
    latitude: float
    longitude: float
    description: str
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        data = asdict(self)
        data["type"] = self.type.value
        data["booking_id"] = str(self.booking_id)
        data["status"] = self.status.value
        data["occurred_at"] = self.occurred_at.isoformat()
        return data


class ChannelClosed(Exception):
    pass


class SubscriberChannel:
    """FIFO buffer between the hub and one streaming response."""

    def __init__(self, subscriber_id: uuid.UUID, maxsize: int):
        self.subscriber_id = subscriber_id
        self._queue: asyncio.Queue[BookingEvent | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, event: BookingEvent) -> None:
        if self._closed:
            raise ChannelClosed(f"Channel for {self.subscriber_id} is closed")
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Wake a reader blocked on get(); drop a pending event if the buffer is full
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._queue.put_nowait(None)

    async def receive(self, timeout: float | None = None) -> BookingEvent | None:
        """Next event, or None once closed. Raises TimeoutError on timeout."""
        if self._closed and self._queue.empty():
            return None
        return await asyncio.wait_for(self._queue.get(), timeout)


class NotificationHub:
    def __init__(self, queue_size: int | None = None):
        self._queue_size = queue_size or settings.NOTIFICATION_QUEUE_SIZE
        self._channels: dict[uuid.UUID, SubscriberChannel] = {}

    @property
    def active_channels(self) -> int:
        return len(self._channels)

    def is_subscribed(self, subscriber_id: uuid.UUID) -> bool:
        return subscriber_id in self._channels

    def subscribe(self, subscriber_id: uuid.UUID) -> SubscriberChannel:
        """Open a channel for subscriber_id, closing any channel it replaces."""
        previous = self._channels.pop(subscriber_id, None)
        if previous is not None:
            previous.close()
            logger.info("notification_channel_replaced", subscriber_id=str(subscriber_id))
        channel = SubscriberChannel(subscriber_id, self._queue_size)
        self._channels[subscriber_id] = channel
        NOTIFICATION_SUBSCRIBERS.set(len(self._channels))
        return channel

    def unsubscribe(self, subscriber_id: uuid.UUID, channel: SubscriberChannel | None = None) -> None:
        """Drop the subscription. With channel given, only if it is still the current one."""
        current = self._channels.get(subscriber_id)
        if current is None or (channel is not None and current is not channel):
            if channel is not None:
                channel.close()
            return
        del self._channels[subscriber_id]
        current.close()
        NOTIFICATION_SUBSCRIBERS.set(len(self._channels))

    def publish(self, subscriber_id: uuid.UUID | None, event: BookingEvent) -> bool:
        """Hand event to subscriber_id's open channel. Returns whether it was delivered."""
        if subscriber_id is None:
            return False
        channel = self._channels.get(subscriber_id)
        if channel is None:
            NOTIFICATIONS_DROPPED.labels(reason="no_subscriber").inc()
            logger.debug(
                "notification_dropped",
                subscriber_id=str(subscriber_id),
                booking_id=str(event.booking_id),
                reason="no_subscriber",
            )
            return False
        try:
            channel.send(event)
        except (asyncio.QueueFull, ChannelClosed) as exc:
            reason = "buffer_full" if isinstance(exc, asyncio.QueueFull) else "channel_closed"
            self.unsubscribe(subscriber_id, channel)
            NOTIFICATIONS_DROPPED.labels(reason=reason).inc()
            logger.warning(
                "notification_delivery_failed",
                subscriber_id=str(subscriber_id),
                booking_id=str(event.booking_id),
                reason=reason,
            )
            return False
        NOTIFICATIONS_DELIVERED.labels(event_type=event.type.value).inc()
        return True

    def close_all(self) -> None:
        for channel in self._channels.values():
            channel.close()
        self._channels.clear()
        NOTIFICATION_SUBSCRIBERS.set(0)
