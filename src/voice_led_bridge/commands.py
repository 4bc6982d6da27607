"""Translate a user's effect configuration into an LED controller command.

Commands are plain JSON-compatible mappings in one of two shapes understood
by the controller firmware::

    {"effect": "wakeup", "led": 2, "color": "#FF0000", "duration": 6000, "next": "breathe"}
    {"leds": [{"index": 5, "color": "#00FF00", "brightness": 128}]}

Everything here is pure: no I/O, no clocks, no shared state.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Callable, Dict, Mapping

from .store import UserLightConfig
from .transitions import TransitionKind

Command = Dict[str, Any]

OFF_COLOR = "#000000"


class EffectKind(str, Enum):
    """Closed set of command shapes the builder can emit."""

    WAKEUP = "wakeup"
    PULSE = "pulse"
    BREATHE = "breathe"
    SOLID = "solid"
    # Join fallback: set the LED to the configured color with no animation.
    STATIC = "static"
    SLEEP = "sleep"
    # Leave fallback: hard off.
    OFF = "off"


_JOIN_EFFECTS: Mapping[str, EffectKind] = {
    "wakeup": EffectKind.WAKEUP,
    "pulse": EffectKind.PULSE,
    "breathe": EffectKind.BREATHE,
    "solid": EffectKind.SOLID,
}
_LEAVE_EFFECTS: Mapping[str, EffectKind] = {
    "sleep": EffectKind.SLEEP,
}


def join_effect_kind(name: str) -> EffectKind:
    return _JOIN_EFFECTS.get(name, EffectKind.STATIC)


def leave_effect_kind(name: str) -> EffectKind:
    return _LEAVE_EFFECTS.get(name, EffectKind.OFF)


def _wakeup(config: UserLightConfig) -> Command:
    return {
        "effect": "wakeup",
        "led": config.led,
        "color": config.color,
        "duration": config.join_duration,
        "next": config.next_effect,
    }


def _animated(config: UserLightConfig) -> Command:
    return {
        "effect": config.join_effect,
        "led": config.led,
        "color": config.color,
        "speed": config.speed,
    }


def _solid(config: UserLightConfig) -> Command:
    return {
        "leds": [
            {"index": config.led, "color": config.color, "brightness": config.brightness}
        ]
    }


def _static(config: UserLightConfig) -> Command:
    return {"leds": [{"index": config.led, "color": config.color}]}


def _sleep(config: UserLightConfig) -> Command:
    return {"effect": "sleep", "led": config.led, "duration": config.leave_duration}


def _off(config: UserLightConfig) -> Command:
    return {"leds": [{"index": config.led, "color": OFF_COLOR}]}


EFFECT_BUILDERS: Mapping[EffectKind, Callable[[UserLightConfig], Command]] = {
    EffectKind.WAKEUP: _wakeup,
    EffectKind.PULSE: _animated,
    EffectKind.BREATHE: _animated,
    EffectKind.SOLID: _solid,
    EffectKind.STATIC: _static,
    EffectKind.SLEEP: _sleep,
    EffectKind.OFF: _off,
}


def effect_kind_for(config: UserLightConfig, kind: TransitionKind) -> EffectKind:
    """Resolve which command shape a transition produces for this config."""

    if kind is TransitionKind.JOIN:
        return join_effect_kind(config.join_effect)
    if kind is TransitionKind.LEAVE:
        return leave_effect_kind(config.leave_effect)
    raise ValueError(f"No command is defined for {kind.value} transitions")


def build_command(config: UserLightConfig, kind: TransitionKind) -> Command:
    """Build the controller command for a join or leave transition.

    Raises:
        ValueError: for ``move`` and ``ignored`` transitions, which never
            produce a command.
    """

    return EFFECT_BUILDERS[effect_kind_for(config, kind)](config)


def encode_command(command: Mapping[str, Any]) -> bytes:
    """Serialize a command to its UTF-8 JSON wire form."""

    return json.dumps(command, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
