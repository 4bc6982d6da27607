import pytest

from voice_led_bridge.transitions import Transition, TransitionKind, classify_transition


@pytest.mark.parametrize(
    "previous,current,expected",
    [
        (None, "100", TransitionKind.JOIN),
        ("", "100", TransitionKind.JOIN),
        ("100", None, TransitionKind.LEAVE),
        ("100", "", TransitionKind.LEAVE),
        ("100", "200", TransitionKind.MOVE),
        ("100", "100", TransitionKind.IGNORED),
        (None, None, TransitionKind.IGNORED),
        ("", None, TransitionKind.IGNORED),
    ],
)
def test_classify_transition(previous, current, expected: TransitionKind) -> None:
    assert classify_transition(previous, current) is expected


def test_label_prefers_username() -> None:
    assert Transition("42", None, "100", username="alice").label == "alice"
    assert Transition("42", None, "100").label == "42"
    assert Transition("42", None, "100").kind is TransitionKind.JOIN
