"""
Tag reconciliation

Merges one scanner report into the media's tag associations:

1. prompt-derived tags (point-of-interest names, keyword tags)
2. de-duplication by name, keeping the strictly higher confidence
3. computed tags derived from the tags present
4. administrator substitution rules, in order
5. dictionary resolution through the tag cache, creating unknown names
6. one association per (media, tag, source), disabled when ignored for the source
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

from .config import Settings, get_config
from .models import MediaItem, NsfwLevel, TagSource
from .normalizer import NormalizedTag
from .prompt_audit import get_tags_from_prompt, includes_poi, normalize_text
from .tag_cache import CachedTag, TagCache
from .tag_rules import apply_tag_rules, get_computed_tags

if TYPE_CHECKING:
    from .store import ScanStore

logger = logging.getLogger(__name__)


@dataclass
class ResolvedTag:
    """Tag association with its dictionary identity resolved"""
    id: int
    name: str
    confidence: int
    source: str
    nsfw_level: int = 0
    ignored: bool = False
    automated: bool = True

    @property
    def blocked(self) -> bool:
        return self.nsfw_level == NsfwLevel.BLOCKED

    @property
    def is_blocking(self) -> bool:
        """Blocked-severity and not ignored for its source"""
        return self.blocked and not self.ignored


@dataclass
class ReconcileResult:
    tags: List[ResolvedTag] = field(default_factory=list)

    @property
    def has_blocking_tag(self) -> bool:
        return any(tag.is_blocking for tag in self.tags)


def should_ignore(name: str, source: str, ignored_tags: Dict[str, List[str]]) -> bool:
    return name in ignored_tags.get(source, ())


def dedupe_by_name(tags: Iterable[NormalizedTag]) -> List[NormalizedTag]:
    """Keep one tag per name; a later duplicate wins only with strictly higher confidence"""
    by_name: Dict[str, NormalizedTag] = {}
    for tag in tags:
        current = by_name.get(tag.name)
        if current is None or current.confidence < tag.confidence:
            by_name[tag.name] = tag
    return list(by_name.values())


class TagReconciler:
    """Reconciles scanner reports into persisted tag associations"""

    def __init__(self, store: "ScanStore", cache: TagCache, settings: Optional[Settings] = None):
        self.store = store
        self.cache = cache
        self.settings = settings or get_config()

    def prompt_tags(self, media: MediaItem, source: TagSource) -> List[NormalizedTag]:
        meta = media.meta or {}
        prompt = normalize_text(meta.get("prompt"))
        if not prompt:
            return []

        tags = []
        poi_name = includes_poi(prompt)
        if poi_name:
            tags.append(NormalizedTag(name=poi_name.lower(), confidence=100, source=source))
        for name in get_tags_from_prompt(prompt):
            tags.append(NormalizedTag(name=name, confidence=self.settings.default_tag_confidence, source=source))
        return tags

    async def reconcile(self, media: MediaItem, source: TagSource, tags: List[NormalizedTag]) -> ReconcileResult:
        """Merge ``tags`` reported by ``source`` into ``media``'s associations"""
        default_confidence = self.settings.default_tag_confidence

        tags = dedupe_by_name(list(tags) + self.prompt_tags(media, source))

        computed = get_computed_tags(tag.name for tag in tags)
        tags.extend(
            NormalizedTag(name=name, confidence=default_confidence, source=TagSource.COMPUTED)
            for name in computed
        )

        rules = await self.store.get_tag_rules()
        tags = apply_tag_rules(tags, rules, default_confidence)

        resolved = await self.resolve(tags)
        if resolved:
            await self.store.upsert_tag_associations(media.id, resolved)
        else:
            logger.info(f"No tags found for media {media.id}", extra={"media_id": media.id})

        return ReconcileResult(tags=resolved)

    async def resolve(self, tags: List[NormalizedTag]) -> List[ResolvedTag]:
        """Resolve names to dictionary entries; one result per (tag id, source)"""
        names = list(dict.fromkeys(tag.name for tag in tags))
        entries = await self.lookup(names)

        resolved: Dict[tuple, ResolvedTag] = {}
        for tag in tags:
            entry = entries.get(tag.name)
            if entry is None:
                logger.warning(f"Tag '{tag.name}' could not be resolved")
                continue
            source = getattr(tag.source, "value", tag.source)
            key = (entry.id, source)
            current = resolved.get(key)
            if current is not None and current.confidence >= tag.confidence:
                continue
            resolved[key] = ResolvedTag(
                id=entry.id,
                name=entry.name,
                confidence=tag.confidence,
                source=source,
                nsfw_level=entry.nsfw_level,
                ignored=should_ignore(entry.name, source, self.settings.ignored_tags),
            )
        return list(resolved.values())

    async def lookup(self, names: List[str]) -> Dict[str, CachedTag]:
        """Read through the cache, then the dictionary, creating what is still missing"""
        entries = await self.cache.get_many(names)

        missing = [name for name in names if name not in entries]
        if missing:
            found = await self.store.get_tags_by_name(missing)
            await self.cache.set_many(found.values())
            entries.update(found)

        missing = [name for name in names if name not in entries]
        if missing:
            created = await self.store.create_tags(missing)
            await self.cache.set_many(created.values())
            entries.update(created)
            logger.info(f"Created {len(created)} new tags")

        return entries
