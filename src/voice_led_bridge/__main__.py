"""Entrypoint for the voice LED bridge."""

from __future__ import annotations

import asyncio
import contextlib
import signal
import sys
from typing import Iterable, Optional

from .api import ApiService
from .config import Config, load_config
from .db import apply_migrations
from .discord_client import VoicePresenceService
from .gateway import PublishGateway
from .logging import configure_logging, get_logger
from .presence import PresenceBridge
from .store import LightConfigStore

QUEUE_DRAIN_TIMEOUT = 5.0
PUBLISH_DRAIN_TIMEOUT = 3.0


async def _run_async(config: Config) -> None:
    logger = get_logger("voiceled")
    stop_event = asyncio.Event()

    def _request_shutdown(sig: Optional[str] = None) -> None:
        if not stop_event.is_set():
            logger.warning("Shutdown requested", extra={"signal": sig})
            stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _request_shutdown, sig.name)

    store = LightConfigStore(
        config.db_path, integrity_check_interval=config.integrity_check_interval
    )
    await store.start()
    gateway = PublishGateway(config)
    api: Optional[ApiService] = None
    presence: Optional[VoicePresenceService] = None
    bridge = PresenceBridge(store, gateway)
    try:
        await gateway.start()
        if config.api_enabled:
            api = ApiService(config, store, gateway)
            await api.start()
        await bridge.log_tracked_users()
        presence = VoicePresenceService(config, bridge)
        await presence.start()
        logger.info(
            "Bridge services started",
            extra={
                "broker": f"{config.mqtt_host}:{config.mqtt_port}",
                "api_port": config.api_port if config.api_enabled else None,
                "db_path": str(config.db_path),
            },
        )

        wait_tasks = [
            asyncio.create_task(stop_event.wait()),
            asyncio.create_task(presence.error_event.wait()),
        ]
        _, pending = await asyncio.wait(wait_tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        if not stop_event.is_set():
            logger.error("Discord connection failed; shutting down")
    finally:
        if presence is not None:
            await presence.stop(drain_timeout=QUEUE_DRAIN_TIMEOUT)
        await bridge.drain(PUBLISH_DRAIN_TIMEOUT)
        if api is not None:
            await api.stop()
        await gateway.stop()
        await store.stop()
        logger.info("Bridge shutdown complete")
    if presence is not None and presence.error_event.is_set():
        raise SystemExit(1)


def run(cli_args: Optional[Iterable[str]] = None) -> None:
    """CLI entrypoint used by setuptools."""

    config = load_config(cli_args)
    configure_logging(config)
    logger = get_logger("voiceled")
    logger.info("Loaded configuration", extra={"config": config.logging_dict()})

    apply_migrations(config.db_path)
    if config.migrate_only:
        logger.info("Migrations complete; exiting per configuration.")
        return
    missing = config.missing_required()
    if missing:
        logger.error("Missing required configuration", extra={"missing": missing})
        sys.stderr.write(f"Missing required configuration: {', '.join(missing)}\n")
        sys.exit(2)
    try:
        asyncio.run(_run_async(config))
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")


if __name__ == "__main__":
    run()
