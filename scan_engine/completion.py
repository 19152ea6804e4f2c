"""Scan completion gate"""

import logging
from typing import TYPE_CHECKING, Iterable, Optional

from .config import Settings, get_config

if TYPE_CHECKING:
    from .store import ScanStore

logger = logging.getLogger(__name__)


def is_complete(recorded_sources: Iterable[str], required_sources: Iterable[str]) -> bool:
    """True once every required source is among the recorded ones"""
    return set(required_sources) <= set(recorded_sources)


class ScanCompletionTracker:
    """Records scanner reports per media item and answers the completion gate"""

    def __init__(self, store: "ScanStore", settings: Optional[Settings] = None):
        self.store = store
        self.required_sources = frozenset((settings or get_config()).required_scan_sources)

    async def record(self, media_id: int, source: str) -> bool:
        """Record that ``source`` reported for ``media_id``; returns the gate state"""
        recorded = await self.store.record_scan_completion(media_id, source)
        complete = is_complete(recorded, self.required_sources)
        logger.debug(
            f"Scan completion for media {media_id}: {sorted(recorded)}",
            extra={"required_sources": sorted(self.required_sources), "complete": complete},
        )
        return complete
