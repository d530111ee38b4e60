"""Text helpers for message composition: trimming, emoticons, emoji classification."""

from __future__ import annotations

import re
from typing import Optional

import emoji

from chatsync.schemas.message import MessageType

EMAIL_PATTERN = re.compile(r"^[A-Z0-9a-z._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,64}$")

EMOTICONS: dict[str, str] = {
    ":D": "😄",
    ":-D": "😄",
    ":)": "🙂",
    ":-)": "🙂",
    ":(": "😞",
    ":-(": "😞",
    ";)": "😉",
    ";-)": "😉",
    ":P": "😛",
    ":-P": "😛",
    ":p": "😛",
    ":-p": "😛",
    ":O": "😮",
    ":-O": "😮",
    ":o": "😮",
    ":-o": "😮",
    "<3": "❤️",
    "</3": "💔",
    ":*": "😘",
    ":-*": "😘",
    ":')": "🥲",
    ":'(": "😢",
    ":/": "😕",
    ":-/": "😕",
    ":|": "😐",
    ":-|": "😐",
    ">:(": "😠",
    ":@": "😡",
    "O:)": "😇",
    "3:)": "😈",
    "B)": "😎",
    "B-)": "😎",
    "^_^": "😊",
    "-_-": "😑",
    ">_<": "😣",
    "T_T": "😭",
    "o_O": "😳",
    "O_o": "😳",
    ":3": "😺",
    "UwU": "🥺",
    "uwu": "🥺",
    ":thumbsup:": "👍",
    ":thumbsdown:": "👎",
    ":fire:": "🔥",
    ":ok:": "👌",
    ":clap:": "👏",
    ":wave:": "👋",
    ":pray:": "🙏",
    ":100:": "💯",
    ":poop:": "💩",
    ":skull:": "💀",
    ":eyes:": "👀",
    ":rocket:": "🚀",
    ":star:": "⭐",
    ":check:": "✅",
    ":x:": "❌",
}

# Longest first so ">:(" wins over ":(" and "</3" over "<3".
_EMOTICON_PATTERN = re.compile(
    "|".join(re.escape(k) for k in sorted(EMOTICONS, key=len, reverse=True))
)


def trimmed(text: Optional[str]) -> str:
    return (text or "").strip()


def with_emoji(text: str) -> str:
    """Replace text emoticons with their emoji."""
    return _EMOTICON_PATTERN.sub(lambda m: EMOTICONS[m.group(0)], text)


def emoji_length(text: str) -> int:
    return emoji.emoji_count(text)


def is_emoji_only(text: str, max_emoji: int = 8) -> bool:
    """True when `text` is non-empty, made only of emoji, and has at most `max_emoji` of them."""
    if not text:
        return False
    return emoji.purely_emoji(text) and emoji_length(text) <= max_emoji


def classify_message_type(text: str, max_emoji: int = 8) -> MessageType:
    return MessageType.EMOJI if is_emoji_only(text, max_emoji) else MessageType.TEXT


def truncate_preview(text: Optional[str], limit: int = 100) -> str:
    text = text or ""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.match(email.strip()))
