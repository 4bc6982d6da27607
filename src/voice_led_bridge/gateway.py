"""MQTT publish gateway for LED controller commands."""

from __future__ import annotations

import asyncio
import ssl
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

import paho.mqtt.client as mqtt
from paho.mqtt.enums import MessageState

from .commands import encode_command
from .config import Config
from .logging import get_logger
from .metrics import record_broker_state, record_publish_result

# Slice length for the acknowledgement wait, so an abandoned wait frees its thread quickly.
ACK_POLL_INTERVAL = 0.25

# Queued messages in these states are not counted in paho's inflight total.
_NOT_INFLIGHT = (MessageState.MQTT_MS_PUBLISH, MessageState.MQTT_MS_QUEUED)


class ConnectionState(str, Enum):
    """Broker link state as last reported by the MQTT client."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class PublishStatus(str, Enum):
    PUBLISHED = "published"
    SKIPPED_NOT_CONNECTED = "skipped_not_connected"
    PUBLISH_FAILED = "publish_failed"


@dataclass(frozen=True)
class PublishOutcome:
    """Result of a single publish attempt."""

    status: PublishStatus
    topic: str
    label: str
    reason: Optional[str] = None
    mid: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status is PublishStatus.PUBLISHED

    def as_dict(self) -> dict:
        return {
            "status": self.status.value,
            "topic": self.topic,
            "label": self.label,
            "reason": self.reason,
            "mid": self.mid,
        }


def render_topic(template: str, device: str) -> str:
    """Render the command topic for a device.

    A device already stored as a full topic rendered by the template is
    returned unchanged.
    """

    prefix, _, suffix = template.partition("{device}")
    if (
        (prefix or suffix)
        and device.startswith(prefix)
        and device.endswith(suffix)
        and len(device) > len(prefix) + len(suffix)
    ):
        return device
    return template.replace("{device}", device)


class PublishGateway:
    """Owns the broker connection and publishes commands at most once.

    Reconnection is left to paho-mqtt's network loop; the gateway only
    tracks the state reported through the client callbacks and checks it
    before each publish.
    """

    def __init__(self, config: Config, client: Optional[Any] = None) -> None:
        self.config = config
        self.logger = get_logger("voiceled.mqtt")
        self._client = client
        self._state = ConnectionState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._stopping = False
        self._started = False
        record_broker_state(self._state.value)

    @property
    def state(self) -> ConnectionState:
        with self._state_lock:
            return self._state

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def _set_state(self, state: ConnectionState) -> None:
        with self._state_lock:
            previous = self._state
            self._state = state
        record_broker_state(state.value)
        if previous is not state:
            self.logger.debug(
                "Broker connection state changed",
                extra={"previous": previous.value, "state": state.value},
            )

    def topic_for(self, device: str) -> str:
        return render_topic(self.config.topic_template, device)

    async def start(self) -> None:
        if self._started:
            return
        self._stopping = False
        client = self._client or self._build_client()
        self._configure_client(client)
        self._client = client
        self._set_state(ConnectionState.CONNECTING)
        client.connect_async(
            self.config.mqtt_host,
            self.config.mqtt_port,
            keepalive=self.config.mqtt_keepalive,
        )
        client.loop_start()
        self._started = True
        self.logger.info(
            "MQTT gateway connecting",
            extra={
                "host": self.config.mqtt_host,
                "port": self.config.mqtt_port,
                "tls": self.config.mqtt_tls,
                "username": self.config.mqtt_username,
                "reconnect_delay": self.config.mqtt_reconnect_delay,
            },
        )

    async def stop(self) -> None:
        self._stopping = True
        self._set_state(ConnectionState.DISCONNECTED)
        client = self._client
        if client is None or not self._started:
            return
        self._started = False
        rc = client.disconnect()
        if rc not in (None, mqtt.MQTT_ERR_SUCCESS, mqtt.MQTT_ERR_NO_CONN):
            self.logger.warning("MQTT disconnect failed", extra={"reason": mqtt.error_string(rc)})
        await asyncio.to_thread(client.loop_stop)
        self.logger.info("MQTT gateway stopped")

    def _build_client(self) -> mqtt.Client:
        return mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.config.mqtt_client_id or "",
        )

    def _configure_client(self, client: Any) -> None:
        if self.config.mqtt_username:
            client.username_pw_set(self.config.mqtt_username, self.config.mqtt_password)
        if self.config.mqtt_tls:
            if self.config.mqtt_tls_insecure:
                client.tls_set(cert_reqs=ssl.CERT_NONE)
                client.tls_insecure_set(True)
            else:
                client.tls_set()
        delay = max(1, int(round(self.config.mqtt_reconnect_delay)))
        client.reconnect_delay_set(min_delay=delay, max_delay=delay)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_connect_fail = self._on_connect_fail

    def _on_connect(
        self,
        client: Any,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        if getattr(reason_code, "is_failure", False):
            self._set_state(ConnectionState.CONNECTING)
            self.logger.error(
                "Broker refused connection",
                extra={"reason": str(reason_code)},
            )
            return
        self._set_state(ConnectionState.CONNECTED)
        self.logger.info(
            "Connected to MQTT broker",
            extra={"host": self.config.mqtt_host, "port": self.config.mqtt_port},
        )

    def _on_disconnect(
        self,
        client: Any,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        if self._stopping:
            self._set_state(ConnectionState.DISCONNECTED)
            self.logger.info("Disconnected from MQTT broker")
            return
        self._set_state(ConnectionState.CONNECTING)
        self.logger.warning(
            "MQTT client offline; reconnecting",
            extra={
                "reason": str(reason_code),
                "retry_seconds": self.config.mqtt_reconnect_delay,
            },
        )

    def _on_connect_fail(self, client: Any, userdata: Any) -> None:
        if self._stopping:
            return
        self._set_state(ConnectionState.CONNECTING)
        self.logger.warning(
            "MQTT connection attempt failed; will retry",
            extra={"retry_seconds": self.config.mqtt_reconnect_delay},
        )

    async def publish(
        self, topic: str, command: Mapping[str, Any], label: str = "unknown"
    ) -> PublishOutcome:
        """Publish a command and report how it went.

        Never raises for broker or transport problems and never waits for a
        reconnect: when the link is down the command is dropped. A message
        that fails or goes unacknowledged is also removed from paho's
        outbound queue so the client cannot resend it after reconnecting.
        """

        client = self._client
        if client is None or not self.connected or not client.is_connected():
            self.logger.warning(
                "MQTT not connected; skipping publish",
                extra={"label": label, "topic": topic, "state": self.state.value},
            )
            record_publish_result(PublishStatus.SKIPPED_NOT_CONNECTED.value)
            return PublishOutcome(PublishStatus.SKIPPED_NOT_CONNECTED, topic, label)

        payload = encode_command(command)
        started = time.perf_counter()
        try:
            info = client.publish(topic, payload, qos=self.config.mqtt_qos)
        except (ValueError, OSError) as exc:
            return self._failed(topic, label, str(exc), started)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self._discard_queued(client, info.mid)
            return self._failed(topic, label, mqtt.error_string(info.rc), started, info.mid)

        abandon = threading.Event()
        try:
            acknowledged = await asyncio.to_thread(self._wait_for_ack, info, abandon)
        except asyncio.CancelledError:
            abandon.set()
            self._discard_queued(client, info.mid)
            self.logger.warning(
                "Publish abandoned before acknowledgement",
                extra={"label": label, "topic": topic, "mid": info.mid},
            )
            raise
        except (RuntimeError, ValueError) as exc:
            self._discard_queued(client, info.mid)
            return self._failed(topic, label, str(exc), started, info.mid)
        if not acknowledged:
            self._discard_queued(client, info.mid)
            return self._failed(
                topic,
                label,
                f"no acknowledgement within {self.config.mqtt_ack_timeout}s",
                started,
                info.mid,
            )

        duration = time.perf_counter() - started
        record_publish_result(PublishStatus.PUBLISHED.value, duration)
        self.logger.info(
            "Published LED command",
            extra={
                "label": label,
                "topic": topic,
                "effect": command.get("effect", "leds"),
                "mid": info.mid,
                "duration_ms": round(duration * 1000, 2),
            },
        )
        return PublishOutcome(PublishStatus.PUBLISHED, topic, label, mid=info.mid)

    def _wait_for_ack(self, info: Any, abandon: threading.Event) -> bool:
        deadline = time.monotonic() + self.config.mqtt_ack_timeout
        while not abandon.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            info.wait_for_publish(timeout=min(remaining, ACK_POLL_INTERVAL))
            if info.is_published():
                return True
        return bool(info.is_published())

    def _discard_queued(self, client: Any, mid: Optional[int]) -> None:
        if mid is None:
            return
        with client._out_message_mutex:
            message = client._out_messages.pop(mid, None)
            if message is not None and message.state not in _NOT_INFLIGHT:
                client._inflight_messages -= 1
        if message is not None:
            self.logger.debug("Dropped undelivered message from outbound queue", extra={"mid": mid})

    def _failed(
        self,
        topic: str,
        label: str,
        reason: str,
        started: float,
        mid: Optional[int] = None,
    ) -> PublishOutcome:
        record_publish_result(PublishStatus.PUBLISH_FAILED.value, time.perf_counter() - started)
        self.logger.error(
            "MQTT publish failed",
            extra={"label": label, "topic": topic, "reason": reason, "mid": mid},
        )
        return PublishOutcome(PublishStatus.PUBLISH_FAILED, topic, label, reason=reason, mid=mid)
