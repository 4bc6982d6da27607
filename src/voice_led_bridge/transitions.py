"""Voice presence transitions and their classification."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class TransitionKind(str, Enum):
    """What happened to a user's voice channel membership."""

    JOIN = "join"
    LEAVE = "leave"
    MOVE = "move"
    IGNORED = "ignored"


@dataclass(frozen=True)
class Transition:
    """A single voice state change reported by the chat gateway.

    Channel identifiers are ``None`` when the user is not in a voice channel.
    ``username`` and the channel names only feed log messages.
    """

    user_id: str
    previous_channel: Optional[str]
    current_channel: Optional[str]
    username: Optional[str] = None
    previous_channel_name: Optional[str] = None
    current_channel_name: Optional[str] = None

    @property
    def kind(self) -> TransitionKind:
        return classify_transition(self.previous_channel, self.current_channel)

    @property
    def label(self) -> str:
        return self.username or self.user_id


def _present(channel: Optional[str]) -> bool:
    return channel is not None and channel != ""


def classify_transition(
    previous_channel: Optional[str], current_channel: Optional[str]
) -> TransitionKind:
    """Classify a (previous, current) channel pair; empty strings count as absent."""

    had = _present(previous_channel)
    has = _present(current_channel)
    if not had and has:
        return TransitionKind.JOIN
    if had and not has:
        return TransitionKind.LEAVE
    if had and has and previous_channel != current_channel:
        return TransitionKind.MOVE
    return TransitionKind.IGNORED
