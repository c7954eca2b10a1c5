"""VoiceFeed - record, publish, and browse short voice memos."""

__version__ = "0.1.0"
