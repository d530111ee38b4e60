"""Tests for text helpers: emoticons, emoji classification, previews."""

import pytest

from chatsync.schemas.message import MessageType
from chatsync.utils.text import (
    classify_message_type,
    is_emoji_only,
    is_valid_email,
    truncate_preview,
    trimmed,
    with_emoji,
)


@pytest.mark.parametrize(
    "text,expected",
    [
        (":)", "🙂"),
        (":D", "😄"),
        ("hello :D", "hello 😄"),
        (">:(", "😠"),
        ("</3", "💔"),
        ("<3", "❤️"),
        ("3:)", "😈"),
        ("nice :thumbsup:", "nice 👍"),
        ("no emoticons here", "no emoticons here"),
    ],
)
def test_with_emoji(text, expected):
    assert with_emoji(text) == expected


def test_trimmed_handles_none_and_whitespace():
    assert trimmed(None) == ""
    assert trimmed("  hi \n") == "hi"


@pytest.mark.parametrize(
    "text",
    ["😀", "😀😀😀", "👍🏽", "❤️", "🔥" * 8],
)
def test_emoji_only_messages_classify_as_emoji(text):
    assert is_emoji_only(text)
    assert classify_message_type(text) == MessageType.EMOJI


@pytest.mark.parametrize(
    "text",
    ["", "hello", "hi 😀", "😀 😀", "🔥" * 9],
)
def test_other_messages_classify_as_text(text):
    assert classify_message_type(text) == MessageType.TEXT


def test_emoji_limit_is_configurable():
    assert classify_message_type("😀😀😀", max_emoji=2) == MessageType.TEXT


def test_truncate_preview():
    exact = "a" * 100
    assert truncate_preview(exact) == exact
    assert truncate_preview("a" * 101) == "a" * 100 + "..."
    assert truncate_preview(None) == ""
    assert truncate_preview("abcdef", limit=3) == "abc..."


@pytest.mark.parametrize(
    "email,valid",
    [
        ("user@example.com", True),
        (" user.name+tag@mail.example.org ", True),
        ("user@", False),
        ("not-an-email", False),
        ("user@example", False),
    ],
)
def test_is_valid_email(email, valid):
    assert is_valid_email(email) is valid
