import asyncio
import json
import uuid
from collections.abc import AsyncIterator

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from ondemand.config import settings
from ondemand.dependencies import get_notification_hub, get_subscriber_id
from ondemand.notifications.hub import NotificationHub, SubscriberChannel
from ondemand.utils.rate_limit import limiter

logger = structlog.get_logger()
router = APIRouter()

KEEPALIVE_FRAME = ": keepalive\n\n"


def format_event(payload: dict, event: str = "booking") -> str:
    return f"event: {event}\ndata: {json.dumps(payload, default=str)}\n\n"


async def event_stream(
    request: Request,
    hub: NotificationHub,
    channel: SubscriberChannel,
    keepalive_seconds: float,
) -> AsyncIterator[str]:
    """Server-sent event frames for one subscriber until it disconnects or is replaced."""
    try:
        yield ": connected\n\n"
        while True:
            if await request.is_disconnected():
                break
            try:
                event = await channel.receive(timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                yield KEEPALIVE_FRAME
                continue
            if event is None:
                # Closed by the hub: replaced by a newer stream or a failed delivery
                break
            yield format_event(event.to_dict())
    finally:
        hub.unsubscribe(channel.subscriber_id, channel)
        logger.info("notification_stream_closed", subscriber_id=str(channel.subscriber_id))


@router.get("/stream")
@limiter.limit("10/minute")
async def stream_notifications(
    request: Request,
    subscriber_id: uuid.UUID = Depends(get_subscriber_id),
    hub: NotificationHub = Depends(get_notification_hub),
):
    """Push booking status changes to the caller as server-sent events.

    Only events published while the stream is open are delivered; a second
    stream for the same user replaces the first.
    """
    channel = hub.subscribe(subscriber_id)
    logger.info("notification_stream_opened", subscriber_id=str(subscriber_id))
    return StreamingResponse(
        event_stream(request, hub, channel, settings.NOTIFICATION_KEEPALIVE_SECONDS),
        media_type="text/event-stream",
    )
