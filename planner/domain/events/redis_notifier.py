"""
Redis pub/sub fan-out for multi-worker deployments.

publish() only appends to an in-memory outbox, so the mutation's caller never
waits on the network. One dispatcher thread drains the outbox in FIFO order,
which keeps events for the same slot in the order their commits were
serialized. A listener thread relays channel messages, including this
process's own, to local subscriptions.
"""

import logging
import queue
import threading
import time
from typing import Optional

import redis

from ...config import CHANGE_CHANNEL
from ...redis_client import close_redis_client, get_redis_client
from .notifier import ChangeEvent, ChangeNotifier

logger = logging.getLogger(__name__)

_STOP = object()


class RedisChangeNotifier(ChangeNotifier):
    def __init__(self, client: Optional[redis.Redis] = None, channel: str = CHANGE_CHANNEL, **kwargs):
        super().__init__(**kwargs)
        self.channel = channel
        self._client = client
        # Only the shared client built on first use is closed on stop
        self._owns_client = client is None
        self._outbox: queue.Queue = queue.Queue()
        self._pubsub = None
        self._dispatcher: Optional[threading.Thread] = None
        self._listener: Optional[threading.Thread] = None
        self._running = threading.Event()

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = get_redis_client()
        return self._client

    def start(self) -> None:
        if self._running.is_set():
            return
        self._running.set()

        self._pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        self._pubsub.subscribe(self.channel)

        self._dispatcher = threading.Thread(
            target=self._dispatch_loop, name="change-dispatcher", daemon=True
        )
        self._listener = threading.Thread(
            target=self._listen_loop, name="change-listener", daemon=True
        )
        self._dispatcher.start()
        self._listener.start()
        logger.info(f"✅ Redis change notifier listening on {self.channel}")

    def stop(self) -> None:
        if not self._running.is_set():
            return
        self._running.clear()
        self._outbox.put(_STOP)
        if self._dispatcher:
            self._dispatcher.join(timeout=5)
        if self._listener:
            self._listener.join(timeout=5)
        if self._pubsub is not None:
            self._pubsub.close()
            self._pubsub = None
        if self._owns_client and self._client is not None:
            close_redis_client()
            self._client = None
        logger.info("🛑 Redis change notifier stopped")

    def publish(self, event: ChangeEvent) -> None:
        self._outbox.put(event)

    def _dispatch_loop(self) -> None:
        while True:
            event = self._outbox.get()
            if event is _STOP:
                return
            try:
                self.client.publish(self.channel, event.to_json())
            except redis.RedisError as e:
                # At-most-once: viewers re-fetch on reconnect
                logger.error(f"❌ Failed to publish {event.event_type} #{event.sequence}: {str(e)}")

    def _listen_loop(self) -> None:
        while self._running.is_set():
            try:
                message = self._pubsub.get_message(timeout=1.0)
            except redis.RedisError as e:
                logger.error(f"❌ Redis listener error: {str(e)}")
                time.sleep(1.0)
                continue
            if not message or message.get("type") != "message":
                continue
            try:
                event = ChangeEvent.from_json(message["data"])
            except (TypeError, ValueError) as e:
                logger.warning(f"⚠️ Ignoring malformed change message: {str(e)}")
                continue
            self.deliver(event)
