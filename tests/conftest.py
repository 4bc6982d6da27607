import threading
import time
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Tuple

import paho.mqtt.client as mqtt
import pytest
from paho.mqtt.enums import MessageState


class FakeMessageInfo:
    def __init__(self, mid: int, rc: int = mqtt.MQTT_ERR_SUCCESS, published: bool = True,
                 wait_error: Optional[Exception] = None) -> None:
        self.mid = mid
        self.rc = rc
        self._published = published
        self._wait_error = wait_error
        self.wait_timeouts: List[Optional[float]] = []

    def wait_for_publish(self, timeout: Optional[float] = None) -> None:
        self.wait_timeouts.append(timeout)
        if self._wait_error is not None:
            raise self._wait_error
        if not self._published and timeout:
            time.sleep(timeout)

    def is_published(self) -> bool:
        return self._published


class FakeMqttClient:
    """Records calls the gateway makes against paho's client API.

    Unacknowledged QoS>0 messages are kept in ``_out_messages`` the way paho
    keeps them for redelivery.
    """

    def __init__(self) -> None:
        self.published: List[Tuple[str, bytes, int]] = []
        self.next_rc = mqtt.MQTT_ERR_SUCCESS
        self.next_published = True
        self.next_wait_error: Optional[Exception] = None
        self.credentials: Optional[Tuple[str, Optional[str]]] = None
        self.tls: Optional[dict] = None
        self.tls_insecure = False
        self.reconnect_delay: Optional[Tuple[int, int]] = None
        self.connect_args: Optional[Tuple[str, int, int]] = None
        self.loop_started = False
        self.loop_stopped = False
        self.disconnected = False
        self.link_up = False
        self.infos: List[FakeMessageInfo] = []
        self.on_connect: Any = None
        self.on_disconnect: Any = None
        self.on_connect_fail: Any = None
        self._out_message_mutex = threading.RLock()
        self._out_messages: Dict[int, Any] = {}
        self._inflight_messages = 0

    def username_pw_set(self, username: str, password: Optional[str] = None) -> None:
        self.credentials = (username, password)

    def tls_set(self, **kwargs: Any) -> None:
        self.tls = kwargs

    def tls_insecure_set(self, value: bool) -> None:
        self.tls_insecure = value

    def reconnect_delay_set(self, min_delay: int = 1, max_delay: int = 120) -> None:
        self.reconnect_delay = (min_delay, max_delay)

    def connect_async(self, host: str, port: int = 1883, keepalive: int = 60) -> None:
        self.connect_args = (host, port, keepalive)

    def loop_start(self) -> None:
        self.loop_started = True

    def loop_stop(self) -> None:
        self.loop_stopped = True

    def is_connected(self) -> bool:
        return self.link_up

    def disconnect(self) -> None:
        self.disconnected = True
        self.link_up = False
        if self.on_disconnect:
            self.on_disconnect(self, None, SimpleNamespace(), SimpleNamespace(is_failure=False), None)

    def publish(self, topic: str, payload: bytes, qos: int = 0) -> FakeMessageInfo:
        self.published.append((topic, payload, qos))
        mid = len(self.published)
        info = FakeMessageInfo(
            mid=mid,
            rc=self.next_rc,
            published=self.next_published,
            wait_error=self.next_wait_error,
        )
        self.infos.append(info)
        if qos > 0:
            with self._out_message_mutex:
                if self.next_rc != mqtt.MQTT_ERR_SUCCESS:
                    self._out_messages[mid] = SimpleNamespace(state=MessageState.MQTT_MS_PUBLISH)
                elif not self.next_published:
                    self._out_messages[mid] = SimpleNamespace(
                        state=MessageState.MQTT_MS_WAIT_FOR_PUBACK
                    )
                    self._inflight_messages += 1
        return info

    def simulate_connect(self, failure: bool = False) -> None:
        self.link_up = not failure
        reason = SimpleNamespace(is_failure=failure)
        self.on_connect(self, None, SimpleNamespace(session_present=False), reason, None)

    def simulate_drop(self) -> None:
        self.link_up = False
        reason = SimpleNamespace(is_failure=True)
        self.on_disconnect(self, None, SimpleNamespace(), reason, None)


@pytest.fixture
def fake_mqtt() -> FakeMqttClient:
    return FakeMqttClient()
