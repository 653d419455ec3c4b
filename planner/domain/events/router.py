"""
Server-Sent Events stream of committed changes.

A client joins with its scope and receives matching change events plus a
periodic system_status heartbeat. There is no replay: after a reconnect the
client re-fetches its calendar view.
"""

import asyncio
import json
import logging
import time
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from ...auth import get_current_user, resolve_scope
from ...config import SSE_HEARTBEAT_SECONDS
from ...models import User
from .notifier import ChangeNotifier, Subscription, get_change_notifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events", tags=["Events"])

POLL_SECONDS = 1.0


def heartbeat_message(subscribers: int) -> str:
    data = {
        "status": "connected",
        "subscribers": subscribers,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return f"event: system_status\ndata: {json.dumps(data)}\n\n"


async def stream_changes(
    subscription: Subscription,
    notifier: ChangeNotifier,
    heartbeat_seconds: float = SSE_HEARTBEAT_SECONDS,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
) -> AsyncGenerator[str, None]:
    """
    Yield SSE messages for one subscription until the client goes away or
    the notifier drops it for falling behind.
    """
    last_beat = time.monotonic()
    try:
        yield heartbeat_message(notifier.subscriber_count())
        while not subscription.closed:
            if is_disconnected is not None and await is_disconnected():
                logger.debug(f"SSE client {subscription.id} disconnected")
                break

            event = await asyncio.to_thread(subscription.get, min(POLL_SECONDS, heartbeat_seconds))
            if event is not None:
                yield event.to_sse()

            if time.monotonic() - last_beat >= heartbeat_seconds:
                last_beat = time.monotonic()
                yield heartbeat_message(notifier.subscriber_count())
    finally:
        notifier.unsubscribe(subscription)


@router.get("/stream")
async def stream_events(
    request: Request,
    teamId: Optional[int] = Query(None),
    current_user: User = Depends(get_current_user),
    notifier: ChangeNotifier = Depends(get_change_notifier),
) -> StreamingResponse:
    """
    Server-Sent Events endpoint for live calendar updates.

    Events: assignment_created, assignment_moved, assignment_updated,
    assignment_deleted, leave_submitted, leave_approved, leave_rejected,
    leave_deleted, and the system_status heartbeat.
    """
    scope = resolve_scope(current_user, teamId)
    subscription = notifier.subscribe(scope)
    logger.info(f"📡 User {current_user.id} joined change stream ({subscription.id})")
    return StreamingResponse(
        stream_changes(subscription, notifier, is_disconnected=request.is_disconnected),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
        },
    )
