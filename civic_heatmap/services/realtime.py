"""
realtime.py — Realtime Subscription Manager over the push transport.

One manager owns one transport connection and any number of labelled
region subscriptions (at most one per label). It never touches heatmap
data: an inbound update is only a "data may be stale" signal handed to
`on_update`, and the session answers it with orchestrator.refetch().

FRAMES
──────
Outbound (JSON):
  {"type": "subscribe",   "subscriptionId", "regionId", "bounds", "connectionId"}
  {"type": "unsubscribe", "subscriptionId", "connectionId"}
  {"type": "ping",        "timestamp", "connectionId"}

Inbound:
  heatmap_update          → on_update(UpdateEvent)   (known subscription ids only)
  notification            → on_notification(...)     (region must be subscribed)
  anomaly_alert           → on_notification(...)     once per subscription
  subscription_confirmed  → logged
  subscription_error      → error listeners (TransportError)
  pong                    → heartbeat latency

CONNECTION
──────────
Status is one of connecting | connected | disconnected | error. A lost
connection is retried with exponential backoff (reconnect_delay * 2^n,
capped at 30s, up to reconnect_attempts) unless disconnect() was called.
Every subscription is re-sent after each successful connect.

Tests pass `connector` (an async callable returning anything with
send/recv/close) instead of opening a real socket.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol

import pydantic
import websockets

from civic_heatmap.core.config import settings
from civic_heatmap.core.errors import TransportError
from civic_heatmap.core.ids import make_id, now_ms
from civic_heatmap.models.heatmap import ConnectionStatus, Notification, RegionBounds, UpdateEvent
from civic_heatmap.services.bounds import check_bounds

logger = logging.getLogger(__name__)

MAX_RECONNECT_DELAY = 30.0  # seconds


class Transport(Protocol):
    """The subset of a websockets client connection the manager uses."""

    async def send(self, message: str) -> None: ...

    async def recv(self) -> Any: ...

    async def close(self) -> None: ...


Connector = Callable[[], Awaitable[Transport]]


def make_subscription_id() -> str:
    return make_id("sub")


@dataclass
class Subscription:
    id: str
    label: str
    bounds: RegionBounds
    created_at: float = field(default_factory=time.time)
    confirmed: bool = False
    last_update: Optional[float] = None


class RealtimeSubscriptionManager:
    def __init__(
        self,
        url: Optional[str] = None,
        *,
        connector: Optional[Connector] = None,
        on_update: Optional[Callable[[UpdateEvent], None]] = None,
        on_notification: Optional[Callable[[Notification], None]] = None,
        reconnect_attempts: Optional[int] = None,
        reconnect_delay: Optional[float] = None,
        heartbeat_interval: Optional[float] = None,
        connect_timeout: Optional[float] = None,
        auth_token: Optional[str] = None,
    ) -> None:
        self.url = url or settings.websocket_url
        self.reconnect_attempts = (
            settings.ws_reconnect_attempts if reconnect_attempts is None else reconnect_attempts
        )
        self.reconnect_delay = settings.ws_reconnect_delay if reconnect_delay is None else reconnect_delay
        self.heartbeat_interval = (
            settings.ws_heartbeat_interval if heartbeat_interval is None else heartbeat_interval
        )
        self.connect_timeout = settings.ws_connect_timeout if connect_timeout is None else connect_timeout
        self.auth_token = settings.auth_token if auth_token is None else auth_token
        self._connector = connector or self._open_websocket

        self.on_update = on_update
        self.on_notification = on_notification

        self.connection_id = make_id("conn")
        self._status: ConnectionStatus = "disconnected"
        self._connection: Optional[Transport] = None
        self._subscriptions: dict[str, Subscription] = {}

        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._connect_lock = asyncio.Lock()
        self._manual_close = False
        self._closed = False

        self._status_listeners: list[Callable[[ConnectionStatus], None]] = []
        self._error_listeners: list[Callable[[TransportError], None]] = []

        # metrics
        self.reconnect_count = 0
        self.messages_sent = 0
        self.messages_received = 0
        self.latency_ms: Optional[float] = None
        self._connected_at: Optional[float] = None

    # ── Status ──────────────────────────────────────────────────────────────

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_connected(self) -> bool:
        return self._status == "connected" and self._connection is not None

    @property
    def subscriptions(self) -> dict[str, Subscription]:
        return dict(self._subscriptions)

    def add_status_listener(self, listener: Callable[[ConnectionStatus], None]) -> Callable[[], None]:
        self._status_listeners.append(listener)
        return lambda: self._status_listeners.remove(listener) if listener in self._status_listeners else None

    def add_error_listener(self, listener: Callable[[TransportError], None]) -> Callable[[], None]:
        self._error_listeners.append(listener)
        return lambda: self._error_listeners.remove(listener) if listener in self._error_listeners else None

    def _set_status(self, status: ConnectionStatus) -> None:
        if status == self._status:
            return
        logger.debug("Realtime status %s -> %s", self._status, status)
        self._status = status
        for listener in list(self._status_listeners):
            self._invoke(listener, status)

    def _emit_error(self, error: TransportError) -> None:
        for listener in list(self._error_listeners):
            self._invoke(listener, error)

    @staticmethod
    def _invoke(callback: Callable[[Any], None], argument: Any) -> None:
        try:
            callback(argument)
        except Exception:
            logger.exception("Realtime callback %r failed", callback)

    # ── Connection lifecycle ────────────────────────────────────────────────

    async def connect(self) -> None:
        """
        Open the transport. Raises TransportError on failure; a reconnect
        is scheduled before raising unless the manager is closed.
        """
        if self._closed:
            raise TransportError("Realtime manager is closed")
        self._manual_close = False
        if self.is_connected:
            return
        try:
            await self._open()
        except TransportError:
            self._schedule_reconnect()
            raise

    async def disconnect(self) -> None:
        """Close the transport on purpose; no reconnect is attempted."""
        self._manual_close = True
        await self._cancel(self._reconnect_task)
        self._reconnect_task = None
        await self._teardown_connection()
        self._set_status("disconnected")
        logger.info("Realtime transport disconnected")

    async def close(self) -> None:
        """Disconnect, forget every subscription and listener. Terminal."""
        self._closed = True
        await self.disconnect()
        self._subscriptions.clear()
        self._status_listeners.clear()
        self._error_listeners.clear()
        self.on_update = None
        self.on_notification = None

    async def _open_websocket(self) -> Transport:
        headers = {"Authorization": f"Bearer {self.auth_token}"} if self.auth_token else None
        return await websockets.connect(
            self.url,
            additional_headers=headers,
            open_timeout=self.connect_timeout,
            # application-level ping frames are sent by the heartbeat loop
            ping_interval=None,
        )

    async def _open(self) -> None:
        async with self._connect_lock:
            if self.is_connected:
                return
            self._set_status("connecting")
            logger.info("Connecting to realtime transport at %s", self.url)
            try:
                connection = await asyncio.wait_for(self._connector(), timeout=self.connect_timeout)
            except asyncio.CancelledError:
                self._set_status("disconnected")
                raise
            except Exception as exc:
                self._set_status("error")
                error = TransportError(
                    f"Failed to connect to realtime transport: {str(exc) or type(exc).__name__}"
                )
                logger.warning("%s", error.message)
                self._emit_error(error)
                raise error from exc

            self._connection = connection
            self._connected_at = time.monotonic()
            self.reconnect_count = 0
            self._set_status("connected")
            self._reader_task = asyncio.create_task(self._read_loop(connection), name="realtime-reader")
            if self.heartbeat_interval > 0:
                self._heartbeat_task = asyncio.create_task(
                    self._heartbeat_loop(connection), name="realtime-heartbeat"
                )
            logger.info("Realtime transport connected (%s)", self.connection_id)

        for subscription in list(self._subscriptions.values()):
            await self._send_subscribe(subscription)

    async def _teardown_connection(self) -> None:
        current = asyncio.current_task()
        for task in (self._heartbeat_task, self._reader_task):
            if task is not current:
                await self._cancel(task)
        self._heartbeat_task = None
        self._reader_task = None

        connection, self._connection = self._connection, None
        self._connected_at = None
        if connection is not None:
            try:
                await connection.close()
            except Exception as exc:
                logger.debug("Error while closing realtime transport: %s", exc)

    @staticmethod
    async def _cancel(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _read_loop(self, connection: Transport) -> None:
        try:
            while True:
                raw = await connection.recv()
                self.handle_message(raw)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Realtime connection lost: %s", str(exc) or type(exc).__name__)

        if connection is not self._connection:
            return
        await self._teardown_connection()
        self._set_status("disconnected")
        if not self._manual_close and not self._closed:
            self._schedule_reconnect()

    async def _heartbeat_loop(self, connection: Transport) -> None:
        while connection is self._connection:
            await asyncio.sleep(self.heartbeat_interval)
            await self._send({"type": "ping", "timestamp": now_ms(), "connectionId": self.connection_id})

    def _schedule_reconnect(self) -> None:
        if self._closed or self._manual_close or self.reconnect_attempts <= 0:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop(), name="realtime-reconnect")

    async def _reconnect_loop(self) -> None:
        while self.reconnect_count < self.reconnect_attempts:
            delay = min(self.reconnect_delay * (2 ** self.reconnect_count), MAX_RECONNECT_DELAY)
            self.reconnect_count += 1
            logger.info(
                "Scheduling realtime reconnection in %.2fs (attempt %d/%d)",
                delay, self.reconnect_count, self.reconnect_attempts,
            )
            await asyncio.sleep(delay)
            if self._manual_close or self._closed:
                return
            try:
                await self._open()
                return
            except TransportError:
                continue

        logger.error("Max realtime reconnection attempts reached (%d)", self.reconnect_attempts)
        self._set_status("error")
        self._emit_error(TransportError("Max reconnection attempts reached"))

    # ── Subscriptions ───────────────────────────────────────────────────────

    async def subscribe(self, label: str, bounds: Any) -> str:
        """
        Register interest in updates for `label`. Replaces any earlier
        subscription with the same label. Sent now if connected, otherwise
        on the next connect.
        """
        region = check_bounds(bounds)
        for existing in [s for s in self._subscriptions.values() if s.label == label]:
            await self.unsubscribe(existing.id)

        subscription = Subscription(id=make_subscription_id(), label=label, bounds=region)
        self._subscriptions[subscription.id] = subscription
        if self.is_connected:
            await self._send_subscribe(subscription)
        logger.info("Created subscription %s for region %s", subscription.id, label)
        return subscription.id

    async def unsubscribe(self, subscription_id: str) -> None:
        subscription = self._subscriptions.pop(subscription_id, None)
        if subscription is None:
            return
        if self.is_connected:
            await self._send({
                "type": "unsubscribe",
                "subscriptionId": subscription_id,
                "connectionId": self.connection_id,
            })
        logger.info("Removed subscription %s", subscription_id)

    async def unsubscribe_all(self) -> None:
        for subscription_id in list(self._subscriptions):
            await self.unsubscribe(subscription_id)

    async def _send_subscribe(self, subscription: Subscription) -> None:
        await self._send({
            "type": "subscribe",
            "subscriptionId": subscription.id,
            "regionId": subscription.label,
            "bounds": {
                "southwest": list(subscription.bounds.southwest),
                "northeast": list(subscription.bounds.northeast),
            },
            "connectionId": self.connection_id,
        })

    async def _send(self, frame: dict[str, Any]) -> bool:
        connection = self._connection
        if connection is None:
            logger.debug("Cannot send %s: realtime transport not connected", frame.get("type"))
            return False
        try:
            await connection.send(json.dumps(frame))
        except Exception as exc:
            logger.error("Failed to send realtime %s frame: %s", frame.get("type"), exc)
            return False
        self.messages_sent += 1
        return True

    # ── Inbound frames ──────────────────────────────────────────────────────

    def handle_message(self, raw: Any) -> None:
        """Parse and dispatch one inbound frame. Bad frames are logged and dropped."""
        if isinstance(raw, (str, bytes, bytearray)):
            try:
                message = json.loads(raw)
            except ValueError as exc:
                logger.error("Failed to parse realtime message: %s", exc)
                return
        else:
            message = raw
        if not isinstance(message, dict):
            logger.warning("Ignoring non-object realtime message: %r", message)
            return

        self.messages_received += 1
        message_type = message.get("type")
        logger.debug("Received realtime message: %s", message_type)
        try:
            if message_type == "pong":
                self._handle_pong(message)
            elif message_type == "heatmap_update":
                self._handle_update(message)
            elif message_type == "notification":
                self._handle_notification(message)
            elif message_type == "anomaly_alert":
                self._handle_anomaly_alert(message)
            elif message_type == "subscription_confirmed":
                self._handle_confirmed(message)
            elif message_type == "subscription_error":
                self._handle_subscription_error(message)
            else:
                logger.warning("Unknown realtime message type: %s", message_type)
        except pydantic.ValidationError as exc:
            logger.error("Malformed realtime %s frame: %s", message_type, exc)

    def _handle_pong(self, message: dict[str, Any]) -> None:
        sent_at = message.get("timestamp")
        if isinstance(sent_at, (int, float)):
            self.latency_ms = float(now_ms() - sent_at)
            logger.debug("Heartbeat latency: %.0fms", self.latency_ms)

    def _handle_update(self, message: dict[str, Any]) -> None:
        subscription = self._subscriptions.get(message.get("subscriptionId"))
        if subscription is None:
            logger.debug("Ignoring update for unknown subscription %s", message.get("subscriptionId"))
            return
        subscription.last_update = time.time()
        # signal only: any payload data on the frame is dropped here
        event = UpdateEvent(
            type=message.get("updateType") or "data_update",
            subscription_id=subscription.id,
            region_id=message.get("regionId") or subscription.label,
            timestamp=message.get("timestamp"),
        )
        if self.on_update is not None:
            self._invoke(self.on_update, event)

    def _handle_notification(self, message: dict[str, Any]) -> None:
        notification = Notification.model_validate(message.get("notification") or message)
        if notification.type == "notification":
            notification = notification.model_copy(update={"type": "info"})
        labels = {s.label for s in self._subscriptions.values()}
        if notification.region_id is not None and notification.region_id not in labels:
            logger.debug("Ignoring notification for unsubscribed region %s", notification.region_id)
            return
        if self.on_notification is not None:
            self._invoke(self.on_notification, notification)

    def _handle_anomaly_alert(self, message: dict[str, Any]) -> None:
        for subscription in list(self._subscriptions.values()):
            notification = Notification(
                id=message.get("id"),
                type="anomaly_detected",
                region_id=subscription.label,
                title="Anomaly Detected",
                message=message.get("message") or "",
                severity=message.get("severity") or "medium",
                timestamp=message.get("timestamp"),
                data=message.get("anomaly"),
            )
            if self.on_notification is not None:
                self._invoke(self.on_notification, notification)

    def _handle_confirmed(self, message: dict[str, Any]) -> None:
        subscription = self._subscriptions.get(message.get("subscriptionId"))
        if subscription is not None:
            subscription.confirmed = True
        logger.info("Subscription confirmed: %s", message.get("subscriptionId"))

    def _handle_subscription_error(self, message: dict[str, Any]) -> None:
        subscription_id = message.get("subscriptionId")
        if subscription_id not in self._subscriptions:
            return
        error = TransportError(
            message.get("error") or "Subscription error",
            details={"subscriptionId": subscription_id},
        )
        logger.warning("Subscription %s rejected: %s", subscription_id, error.message)
        self._emit_error(error)

    # ── Metrics ─────────────────────────────────────────────────────────────

    def metrics(self) -> dict[str, Any]:
        uptime = time.monotonic() - self._connected_at if self._connected_at is not None else 0.0
        return {
            "connection_id": self.connection_id,
            "status": self._status,
            "reconnect_attempts": self.reconnect_count,
            "messages_sent": self.messages_sent,
            "messages_received": self.messages_received,
            "active_subscriptions": len(self._subscriptions),
            "latency_ms": self.latency_ms,
            "uptime_s": uptime,
        }
