from __future__ import annotations

import asyncio
import json
import logging
import os
from threading import Lock
from typing import Any, Dict, List, Optional

import redis


_logger = logging.getLogger("branchchat.events")


class _RedisPublisher:
    def __init__(self, url: str) -> None:
        self._url = url
        self._client = None
        self._connect()

    def _connect(self) -> None:
        try:
            self._client = redis.Redis.from_url(self._url, socket_timeout=0.5)
            self._client.ping()
        except Exception as exc:
            _logger.warning("redis_connect_failed", extra={"err": str(exc)})
            self._client = None

    def publish(self, channel: str, payload: Dict[str, Any]) -> None:
        if not self._client:
            self._connect()
        if not self._client:
            return
        try:
            self._client.publish(channel, json.dumps(payload))
        except Exception as exc:
            _logger.warning("redis_publish_failed", extra={"channel": channel, "err": str(exc)})
            self._client = None


_publisher: Optional[_RedisPublisher] = None


def _get_publisher() -> Optional[_RedisPublisher]:
    global _publisher
    if _publisher is not None:
        return _publisher
    url = os.getenv("REDIS_URL")
    if not url:
        return None
    _publisher = _RedisPublisher(url)
    return _publisher


def publish_event(event_type: str, payload: Dict[str, Any]) -> None:
    """Fan an event out to other processes; a no-op when REDIS_URL is unset."""
    publisher = _get_publisher()
    if not publisher:
        return
    publisher.publish(f"branchchat.events.{event_type}", payload)


def _evict_oldest_delta(queue: asyncio.Queue) -> None:
    """Free one slot, preferring the oldest delta over terminal items."""
    items = []
    while True:
        try:
            items.append(queue.get_nowait())
        except asyncio.QueueEmpty:
            break
    victim = next((i for i, item in enumerate(items) if item is not None and item.get("type") == "delta"), 0)
    if items:
        del items[victim]
    for item in items:
        queue.put_nowait(item)


class StreamBroadcaster:
    """In-process push channel keyed by message id.

    Every subscriber gets its own queue; publishing never blocks the writer.
    A ``None`` item tells subscribers the stream reached a terminal state.
    """

    def __init__(self, max_queue: int = 1000) -> None:
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}
        self._lock = Lock()
        self._max_queue = max_queue

    def subscribe(self, message_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue)
        with self._lock:
            self._subscribers.setdefault(message_id, []).append(queue)
        return queue

    def unsubscribe(self, message_id: str, queue: asyncio.Queue) -> None:
        with self._lock:
            queues = self._subscribers.get(message_id, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self._subscribers.pop(message_id, None)

    def subscriber_count(self, message_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(message_id, []))

    def publish(self, message_id: str, event: Optional[Dict[str, Any]]) -> None:
        terminal = event is None or event.get("type") != "delta"
        with self._lock:
            queues = list(self._subscribers.get(message_id, []))
        for queue in queues:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                if not terminal:
                    # Slow reader; the terminal event carries the full text
                    _logger.debug("stream_subscriber_queue_full", extra={"message_id": message_id})
                    continue
                # Terminal events and the end marker are never dropped
                _evict_oldest_delta(queue)
                queue.put_nowait(event)
        # Per-token deltas stay in-process; other processes re-read flushed rows
        if event is not None and event.get("type") != "delta":
            publish_event("message.stream", {"message_id": message_id, **event})

    def close(self, message_id: str, event: Dict[str, Any]) -> None:
        """Publish a terminal event followed by the end marker."""
        self.publish(message_id, event)
        self.publish(message_id, None)


_broadcaster: Optional[StreamBroadcaster] = None


def get_broadcaster() -> StreamBroadcaster:
    global _broadcaster
    if _broadcaster is None:
        _broadcaster = StreamBroadcaster()
    return _broadcaster
