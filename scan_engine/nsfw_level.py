"""Severity aggregation over a media item's tags"""

from typing import Iterable

from .reconciler import ResolvedTag


def aggregate_nsfw_level(tags: Iterable[ResolvedTag]) -> int:
    """Maximum severity across non-disabled tags, 0 when there are none"""
    return max((tag.nsfw_level for tag in tags if not tag.ignored), default=0)


def is_nsfw(level: int, ceiling: int) -> bool:
    return level > ceiling


def stored_nsfw_level(current: int, computed: int, locked: bool) -> int:
    """Level to persist; a locked level is never overwritten and an unlocked one never decreases"""
    return current if locked else max(current or 0, computed)
