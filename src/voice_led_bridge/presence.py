"""Turn voice presence transitions into LED commands."""

from __future__ import annotations

import asyncio
from typing import Optional, Set

from .commands import build_command
from .gateway import PublishGateway, PublishOutcome
from .logging import get_logger
from .metrics import record_transition, record_untracked
from .store import LightConfigStore
from .transitions import Transition, TransitionKind


class PresenceBridge:
    """Classify transitions, look up the user's LED and publish the effect.

    The bridge holds no per-user state between events. Publishes run as
    background tasks so the caller can move on to the next event while the
    broker acknowledgement is pending.
    """

    def __init__(self, store: LightConfigStore, gateway: PublishGateway) -> None:
        self.store = store
        self.gateway = gateway
        self.logger = get_logger("voiceled.presence")
        self._inflight: Set["asyncio.Task[PublishOutcome]"] = set()

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def handle(self, transition: Transition) -> Optional["asyncio.Task[PublishOutcome]"]:
        """Handle one transition; returns the scheduled publish task, if any."""

        kind = transition.kind
        record_transition(kind.value)
        context = {
            "user_id": transition.user_id,
            "label": transition.label,
            "kind": kind.value,
            "previous_channel": transition.previous_channel_name or transition.previous_channel,
            "current_channel": transition.current_channel_name or transition.current_channel,
        }
        if kind is TransitionKind.IGNORED:
            return None
        if kind is TransitionKind.MOVE:
            self.logger.debug("User moved between voice channels; no effect", extra=context)
            return None

        config = await self.store.lookup(transition.user_id)
        if config is None:
            record_untracked()
            self.logger.debug("No enabled LED configuration for user", extra=context)
            return None

        command = build_command(config, kind)
        topic = self.gateway.topic_for(config.device)
        self.logger.info(
            "User joined voice channel" if kind is TransitionKind.JOIN else "User left voice channel",
            extra={**context, "device": config.device, "led": config.led, "topic": topic},
        )
        task = asyncio.create_task(self.gateway.publish(topic, command, transition.label))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def drain(self, timeout: float) -> None:
        """Wait for in-flight publishes, cancelling whatever is left after ``timeout``."""

        pending = set(self._inflight)
        if not pending:
            return
        self.logger.info("Waiting for in-flight publishes", extra={"count": len(pending)})
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        for task in still_pending:
            task.cancel()
        if still_pending:
            await asyncio.gather(*still_pending, return_exceptions=True)
            self.logger.warning(
                "Cancelled unfinished publishes", extra={"count": len(still_pending)}
            )

    async def log_tracked_users(self) -> None:
        configs = await self.store.list_enabled()
        self.logger.info("Tracking users", extra={"count": len(configs)})
        for config in configs:
            self.logger.info(
                "Tracked user",
                extra={
                    "user_id": config.user_id,
                    "username": config.username,
                    "device": config.device,
                    "led": config.led,
                    "join_effect": config.join_effect,
                    "leave_effect": config.leave_effect,
                },
            )
