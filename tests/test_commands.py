import json

import pytest

from voice_led_bridge.commands import (
    EFFECT_BUILDERS,
    EffectKind,
    build_command,
    effect_kind_for,
    encode_command,
)
from voice_led_bridge.store import UserLightConfig
from voice_led_bridge.transitions import TransitionKind


def _config(**overrides) -> UserLightConfig:
    values = {"user_id": "42", "username": "alice", "device": "kitchen", "led": 2}
    values.update(overrides)
    return UserLightConfig(**values)


def test_wakeup_join() -> None:
    config = _config(color="#FF0000", join_effect="wakeup", join_duration=6000, next_effect="breathe")
    assert build_command(config, TransitionKind.JOIN) == {
        "effect": "wakeup",
        "led": 2,
        "color": "#FF0000",
        "duration": 6000,
        "next": "breathe",
    }


@pytest.mark.parametrize("effect", ["pulse", "breathe"])
def test_animated_join(effect: str) -> None:
    config = _config(color="#112233", join_effect=effect, speed="fast")
    assert build_command(config, TransitionKind.JOIN) == {
        "effect": effect,
        "led": 2,
        "color": "#112233",
        "speed": "fast",
    }


def test_solid_join_carries_brightness() -> None:
    config = _config(led=5, color="#00FF00", join_effect="solid", brightness=128)
    assert build_command(config, TransitionKind.JOIN) == {
        "leds": [{"index": 5, "color": "#00FF00", "brightness": 128}]
    }


def test_solid_join_with_zero_brightness() -> None:
    config = _config(join_effect="solid", brightness=0)
    assert build_command(config, TransitionKind.JOIN)["leds"][0]["brightness"] == 0


def test_unknown_join_effect_sets_static_color() -> None:
    config = _config(color="#ABCDEF", join_effect="rainbow")
    assert effect_kind_for(config, TransitionKind.JOIN) is EffectKind.STATIC
    assert build_command(config, TransitionKind.JOIN) == {
        "leds": [{"index": 2, "color": "#ABCDEF"}]
    }


def test_sleep_leave() -> None:
    config = _config(led=3, leave_effect="sleep", leave_duration=4000)
    assert build_command(config, TransitionKind.LEAVE) == {
        "effect": "sleep",
        "led": 3,
        "duration": 4000,
    }


def test_other_leave_effect_switches_off() -> None:
    config = _config(led=3, leave_effect="off")
    assert effect_kind_for(config, TransitionKind.LEAVE) is EffectKind.OFF
    assert build_command(config, TransitionKind.LEAVE) == {
        "leds": [{"index": 3, "color": "#000000"}]
    }


@pytest.mark.parametrize("kind", [TransitionKind.MOVE, TransitionKind.IGNORED])
def test_move_and_ignored_produce_no_command(kind: TransitionKind) -> None:
    with pytest.raises(ValueError):
        build_command(_config(), kind)


def test_every_effect_kind_has_a_builder() -> None:
    assert set(EFFECT_BUILDERS) == set(EffectKind)


def test_encoding_is_deterministic_compact_json() -> None:
    config = _config(join_effect="solid", brightness=64)
    first = encode_command(build_command(config, TransitionKind.JOIN))
    second = encode_command(build_command(config, TransitionKind.JOIN))
    assert first == second
    assert first == b'{"leds":[{"index":2,"color":"#00FFAA","brightness":64}]}'
    assert json.loads(first.decode("utf-8")) == build_command(config, TransitionKind.JOIN)
