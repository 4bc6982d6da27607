import asyncio
from types import SimpleNamespace
from typing import List

import pytest

from voice_led_bridge.config import Config
from voice_led_bridge.discord_client import (
    VoicePresenceClient,
    VoicePresenceService,
    build_intents,
    transition_from_voice_states,
)
from voice_led_bridge.transitions import Transition, TransitionKind


def _state(channel_id=None, name=None):
    channel = SimpleNamespace(id=channel_id, name=name) if channel_id is not None else None
    return SimpleNamespace(channel=channel)


class RecordingBridge:
    def __init__(self) -> None:
        self.handled: List[Transition] = []

    async def handle(self, transition: Transition) -> None:
        if transition.user_id == "boom":
            raise RuntimeError("lookup exploded")
        await asyncio.sleep(0)
        self.handled.append(transition)

    async def log_tracked_users(self) -> None:
        return None


class IdleClient:
    def __init__(self) -> None:
        self.closed = False
        self.tokens: List[str] = []
        self._stop = asyncio.Event()

    async def start(self, token: str) -> None:
        self.tokens.append(token)
        await self._stop.wait()

    async def close(self) -> None:
        self.closed = True
        self._stop.set()

    def is_closed(self) -> bool:
        return self.closed


class RejectingClient(IdleClient):
    async def start(self, token: str) -> None:
        raise RuntimeError("gateway unreachable")


def test_transition_from_voice_states() -> None:
    member = SimpleNamespace(id=1234, name="alice")
    transition = transition_from_voice_states(member, _state(), _state(555, "General"))

    assert transition == Transition(
        user_id="1234",
        previous_channel=None,
        current_channel="555",
        username="alice",
        previous_channel_name=None,
        current_channel_name="General",
    )
    assert transition.kind is TransitionKind.JOIN


def test_channel_switch_is_a_move() -> None:
    member = SimpleNamespace(id=1234, name="alice")
    transition = transition_from_voice_states(member, _state(1, "a"), _state(2, "b"))
    assert transition.kind is TransitionKind.MOVE


def test_intents_cover_guilds_and_voice_states() -> None:
    intents = build_intents()
    assert intents.guilds is True
    assert intents.voice_states is True
    assert intents.message_content is False


@pytest.mark.asyncio
async def test_voice_state_update_is_queued() -> None:
    queue: asyncio.Queue = asyncio.Queue()
    client = VoicePresenceClient(queue, RecordingBridge())

    await client.on_voice_state_update(SimpleNamespace(id=9, name="zed"), _state(1), _state())

    queued = queue.get_nowait()
    assert queued.user_id == "9"
    assert queued.kind is TransitionKind.LEAVE


@pytest.mark.asyncio
async def test_worker_handles_events_in_order_and_survives_errors() -> None:
    bridge = RecordingBridge()
    client = IdleClient()
    service = VoicePresenceService(Config(discord_token="token"), bridge, client=client)
    await service.start()

    for user_id in ("1", "boom", "2", "3"):
        service.queue.put_nowait(Transition(user_id, None, "100"))
    await asyncio.wait_for(service.queue.join(), timeout=1.0)
    await service.stop()

    assert client.tokens == ["token"]
    assert client.closed is True
    assert [t.user_id for t in bridge.handled] == ["1", "2", "3"]
    assert service.error_event.is_set() is False


@pytest.mark.asyncio
async def test_stop_drains_queued_events() -> None:
    bridge = RecordingBridge()
    service = VoicePresenceService(Config(discord_token="token"), bridge, client=IdleClient())
    service.start_worker()
    for user_id in ("1", "2"):
        service.queue.put_nowait(Transition(user_id, "100", None))

    await service.stop(drain_timeout=1.0)

    assert [t.user_id for t in bridge.handled] == ["1", "2"]


@pytest.mark.asyncio
async def test_client_failure_sets_error_event() -> None:
    service = VoicePresenceService(
        Config(discord_token="token"), RecordingBridge(), client=RejectingClient()
    )
    await service.start()

    await asyncio.wait_for(service.error_event.wait(), timeout=1.0)
    await service.stop()
