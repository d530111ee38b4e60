"""Per-message rendering hints derived from a timeline's neighbours."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from chatsync.schemas.message import Message


@dataclass(frozen=True)
class DisplayHints:
    show_divider: bool
    show_avatar: bool
    show_timestamp: bool


def should_show_divider(
    messages: Sequence[Message], index: int, threshold_seconds: float = 300
) -> bool:
    """Divider before the first message and after any gap longer than the threshold."""
    if index == 0:
        return True
    gap = messages[index].timestamp - messages[index - 1].timestamp
    return gap.total_seconds() > threshold_seconds


def should_show_avatar(messages: Sequence[Message], index: int) -> bool:
    """Avatar on the last message of each run from the same sender."""
    if index == len(messages) - 1:
        return True
    return messages[index + 1].sender_id != messages[index].sender_id


def should_show_timestamp(messages: Sequence[Message], index: int) -> bool:
    if index == len(messages) - 1:
        return True
    current, following = messages[index], messages[index + 1]
    if following.sender_id != current.sender_id:
        return True
    return (current.timestamp.hour, current.timestamp.minute) != (
        following.timestamp.hour,
        following.timestamp.minute,
    )


def display_hints(
    messages: Sequence[Message], threshold_seconds: float = 300
) -> list[DisplayHints]:
    return [
        DisplayHints(
            show_divider=should_show_divider(messages, i, threshold_seconds),
            show_avatar=should_show_avatar(messages, i),
            show_timestamp=should_show_timestamp(messages, i),
        )
        for i in range(len(messages))
    ]
