"""Perceptual hash blocklist"""

import logging
from typing import TYPE_CHECKING, Optional

import imagehash

if TYPE_CHECKING:
    from .store import ScanStore

logger = logging.getLogger(__name__)


def hash_distance(a: str, b: str) -> int:
    """Hamming distance between two hex-encoded perceptual hashes"""
    return imagehash.hex_to_hash(a) - imagehash.hex_to_hash(b)


class HashBlocklist:
    def __init__(self, store: "ScanStore", max_distance: int = 5):
        self.store = store
        self.max_distance = max_distance

    async def find_match(self, phash: str) -> Optional[str]:
        """First enabled blocked hash strictly closer than ``max_distance``, if any"""
        for blocked in await self.store.get_blocked_hashes():
            try:
                distance = hash_distance(phash, blocked)
            except (ValueError, TypeError) as e:
                logger.warning(f"Skipping malformed blocked hash {blocked!r}: {e}")
                continue
            if distance < self.max_distance:
                logger.info(f"Hash {phash} is {distance} away from blocked hash {blocked}")
                return blocked
        return None

    async def is_blocked(self, phash: str) -> bool:
        return await self.find_match(phash) is not None
