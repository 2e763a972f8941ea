"""Shared utility functions for the reconciler service."""

from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    return datetime.now(UTC)


def excerpt(text: str, max_chars: int = 4000) -> str:
    """Trim long text for prompts, keeping the beginning and the end."""
    if len(text) <= max_chars:
        return text
    half = max_chars // 2
    return f"{text[:half].rstrip()}\n[...]\n{text[-half:].lstrip()}"
