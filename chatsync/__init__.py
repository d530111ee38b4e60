"""Client-side real-time sync engine for conversations and messages."""

__version__ = "0.1.0"
