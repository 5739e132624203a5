"""Lifecycle event bus with memory and Redis-backed pub/sub support."""

from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import UTC, datetime
import json
import threading
import time
import uuid
from typing import Any, Callable
from urllib.parse import urlparse, urlunparse

from clientstack.config.schema import EventBusConfig
from clientstack.core.logging import get_logger


EventHandler = Callable[[dict[str, Any]], None]

ENVIRONMENT_CREATED = "environment.created"
ENVIRONMENT_REMOVED = "environment.removed"
ENVIRONMENT_COMPLETED = "environment.completed"
DEPLOYMENT_FINISHED = "deployment.finished"
POLICY_APPLIED = "policy.applied"
POLICY_REMOVED = "policy.removed"


@dataclass(slots=True)
class EventBusStats:
    backend: str
    published: int = 0
    delivered: int = 0
    subscriptions: int = 0


class EventBus:
    def __init__(self, config: EventBusConfig | None = None) -> None:
        self.config = config or EventBusConfig()
        self.logger = get_logger("clientstack.event_bus")
        self._lock = threading.RLock()
        self._subscriptions: dict[str, list[EventHandler]] = defaultdict(list)
        self._recent_events: deque[dict[str, Any]] = deque(maxlen=200)
        self._seen_uids: set[str] = set()
        self._stats = EventBusStats(backend="memory")
        self._redis_client: Any | None = None
        self._pubsub: Any | None = None
        self._listener_thread: threading.Thread | None = None
        self._stop_event = threading.Event()

        if self.config.backend == "redis":
            self._initialize_redis()

    @property
    def backend(self) -> str:
        return self._stats.backend

    def subscribe(self, topic: str, handler: EventHandler) -> None:
        with self._lock:
            self._subscriptions[topic].append(handler)
            self._stats.subscriptions = sum(len(v) for v in self._subscriptions.values())
            if self._stats.backend == "redis":
                self._ensure_listener()

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        envelope = {
            "timestamp": datetime.now(UTC).isoformat(timespec="microseconds"),
            "topic": topic,
            "payload": payload,
            "event_uid": uuid.uuid4().hex,
        }
        with self._lock:
            self._stats.published += 1
            redis_client = self._redis_client if self._stats.backend == "redis" else None

        if redis_client is not None:
            try:
                redis_client.publish(self._channel(topic), json.dumps(envelope, separators=(",", ":")))
            except Exception as exc:
                self._degrade_to_memory(exc)
            else:
                if self._listener_active():
                    return
        self._record_and_dispatch(envelope)

    def snapshot(self) -> dict[str, int | str]:
        with self._lock:
            return {
                "backend": self._stats.backend,
                "published": self._stats.published,
                "delivered": self._stats.delivered,
                "subscriptions": self._stats.subscriptions,
            }

    def recent_events(self, *, topic: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        safe_limit = max(1, min(200, int(limit)))
        with self._lock:
            events = [event for event in self._recent_events if topic is None or event.get("topic") == topic]
        return events[-safe_limit:]

    def close(self) -> None:
        self._stop_event.set()
        if self._listener_thread and self._listener_thread.is_alive():
            self._listener_thread.join(timeout=1.0)
        self._listener_thread = None
        if self._pubsub:
            try:
                self._pubsub.close()
            except Exception as exc:
                self.logger.debug("redis pubsub close failed: %s", exc)
            self._pubsub = None

    def _record_and_dispatch(self, envelope: dict[str, Any]) -> None:
        event_uid = str(envelope.get("event_uid", ""))
        with self._lock:
            if event_uid and event_uid in self._seen_uids:
                return
            if len(self._recent_events) == self._recent_events.maxlen:
                evicted = self._recent_events[0]
                self._seen_uids.discard(str(evicted.get("event_uid", "")))
            self._recent_events.append(envelope)
            if event_uid:
                self._seen_uids.add(event_uid)
            topic = str(envelope.get("topic", ""))
            handlers = [*self._subscriptions.get(topic, []), *self._subscriptions.get("*", [])]
        for handler in handlers:
            try:
                handler(envelope)
            except Exception as exc:
                self.logger.warning(
                    "event handler failed",
                    extra={"event_action": "event_dispatch", "event_outcome": "failure", "payload": {"error": str(exc)}},
                )
                continue
            with self._lock:
                self._stats.delivered += 1

    def _initialize_redis(self) -> None:
        try:
            import redis  # type: ignore[import-not-found]

            client = redis.Redis.from_url(
                self.config.redis_url,
                socket_connect_timeout=self.config.connect_timeout_seconds,
                socket_timeout=self.config.connect_timeout_seconds,
                decode_responses=True,
            )
            client.ping()
            self._redis_client = client
            self._stats.backend = "redis"
            self.logger.info(
                "event bus backend initialized",
                extra={
                    "event_action": "event_bus_init",
                    "payload": {"backend": "redis", "redis_url": self._redact_redis_url(self.config.redis_url)},
                },
            )
        except Exception as exc:
            if self.config.required:
                raise RuntimeError(f"failed to initialize required redis event bus backend: {exc}") from exc
            self._stats.backend = "memory"
            self._redis_client = None
            self.logger.warning(
                "redis event bus unavailable, falling back to memory",
                extra={"event_action": "event_bus_init", "payload": {"backend": "memory", "error": str(exc)}},
            )

    def _degrade_to_memory(self, exc: Exception) -> None:
        with self._lock:
            if self._stats.backend == "memory":
                return
            self._stats.backend = "memory"
            self._redis_client = None
        self._stop_event.set()
        self.logger.error(
            "redis event bus failed, switched to memory",
            extra={"event_action": "event_bus_degrade", "payload": {"backend": "memory", "error": str(exc)}},
        )

    @staticmethod
    def _redact_redis_url(redis_url: str) -> str:
        raw = str(redis_url).strip()
        parsed = urlparse(raw)
        if not parsed.password or not parsed.hostname:
            return raw
        username = parsed.username or ""
        netloc = f"{username}:***@{parsed.hostname}"
        if parsed.port is not None:
            netloc = f"{netloc}:{parsed.port}"
        return urlunparse((parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment))

    def _listener_active(self) -> bool:
        with self._lock:
            return bool(self._listener_thread and self._listener_thread.is_alive())

    def _ensure_listener(self) -> None:
        if self._listener_thread and self._listener_thread.is_alive():
            return
        if not self._redis_client:
            return
        self._stop_event.clear()
        self._listener_thread = threading.Thread(target=self._listener_loop, name="event-bus-listener", daemon=True)
        self._listener_thread.start()

    def _listener_loop(self) -> None:
        try:
            assert self._redis_client is not None
            pubsub = self._redis_client.pubsub(ignore_subscribe_messages=True)
            self._pubsub = pubsub
            pubsub.psubscribe(self._channel("*"))
            while not self._stop_event.is_set():
                message = pubsub.get_message(timeout=0.2)
                if not message:
                    time.sleep(0.01)
                    continue
                data = message.get("data")
                if not data:
                    continue
                try:
                    envelope = json.loads(str(data))
                except json.JSONDecodeError:
                    continue
                if isinstance(envelope, dict):
                    self._record_and_dispatch(envelope)
        except Exception as exc:
            self._degrade_to_memory(exc)

    def _channel(self, topic: str) -> str:
        return f"{self.config.channel_prefix}:lifecycle:{topic}"
