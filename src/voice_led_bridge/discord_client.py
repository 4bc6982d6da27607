"""Discord gateway adapter feeding voice transitions to the presence bridge."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Optional

import discord

from .config import Config
from .logging import get_logger
from .presence import PresenceBridge
from .transitions import Transition


def _channel_id(state: Any) -> Optional[str]:
    channel = getattr(state, "channel", None)
    if channel is None:
        return None
    return str(channel.id)


def _channel_name(state: Any) -> Optional[str]:
    channel = getattr(state, "channel", None)
    return getattr(channel, "name", None) if channel is not None else None


def transition_from_voice_states(member: Any, before: Any, after: Any) -> Transition:
    """Build a transition from a discord.py ``on_voice_state_update`` triple."""

    return Transition(
        user_id=str(member.id),
        previous_channel=_channel_id(before),
        current_channel=_channel_id(after),
        username=getattr(member, "name", None),
        previous_channel_name=_channel_name(before),
        current_channel_name=_channel_name(after),
    )


def build_intents() -> discord.Intents:
    intents = discord.Intents.none()
    intents.guilds = True
    intents.voice_states = True
    return intents


class VoicePresenceClient(discord.Client):
    """discord.py client that only listens for voice state updates."""

    def __init__(self, queue: "asyncio.Queue[Transition]", bridge: PresenceBridge) -> None:
        super().__init__(intents=build_intents())
        self.queue = queue
        self.bridge = bridge
        self.logger = get_logger("voiceled.discord")

    async def on_ready(self) -> None:
        self.logger.info(
            "Discord client ready",
            extra={"user": str(self.user), "guilds": len(self.guilds)},
        )
        await self.bridge.log_tracked_users()

    async def on_voice_state_update(self, member: Any, before: Any, after: Any) -> None:
        self.queue.put_nowait(transition_from_voice_states(member, before, after))


class VoicePresenceService:
    """Runs the Discord client and a single worker draining its event queue.

    Transitions are handled one at a time, in arrival order. An exception
    raised while handling one event is logged and the worker moves on.
    """

    def __init__(
        self,
        config: Config,
        bridge: PresenceBridge,
        client: Optional[discord.Client] = None,
    ) -> None:
        self.config = config
        self.bridge = bridge
        self.logger = get_logger("voiceled.discord")
        self.queue: "asyncio.Queue[Transition]" = asyncio.Queue()
        self.client = client or VoicePresenceClient(self.queue, bridge)
        self.error_event = asyncio.Event()
        self._worker: Optional[asyncio.Task[None]] = None
        self._client_task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        self.start_worker()
        if self._client_task is None:
            self._client_task = asyncio.create_task(self._run_client())
            self.logger.info("Logging in to Discord")

    def start_worker(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(self._drain_queue())

    async def _run_client(self) -> None:
        token = self.config.discord_token or ""
        try:
            await self.client.start(token)
        except asyncio.CancelledError:
            raise
        except discord.LoginFailure:
            self.logger.error("Discord rejected the bot token")
            self.error_event.set()
        except Exception:
            self.logger.exception("Discord client stopped unexpectedly")
            self.error_event.set()

    async def _drain_queue(self) -> None:
        while True:
            transition = await self.queue.get()
            try:
                await self.bridge.handle(transition)
            except asyncio.CancelledError:
                raise
            except Exception:
                self.logger.exception(
                    "Failed to handle voice state update",
                    extra={"user_id": transition.user_id},
                )
            finally:
                self.queue.task_done()

    async def stop(self, drain_timeout: float = 5.0) -> None:
        """Close the Discord client, then finish the events already queued."""

        if not self.client.is_closed():
            await self.client.close()
        if self._client_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._client_task
            self._client_task = None
        if self._worker is None:
            return
        try:
            await asyncio.wait_for(self.queue.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            self.logger.warning(
                "Dropped queued voice events at shutdown",
                extra={"count": self.queue.qsize()},
            )
        self._worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._worker
        self._worker = None
        self.logger.info("Discord client stopped")
