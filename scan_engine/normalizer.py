"""
Tag normalization

Turns the raw tag list reported by one scanner into canonical tag records.
Scanner-specific cleanup is registered per source with ``@register_transform``;
sources without a registered transform pass through unchanged before the
shared canonicalization step.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from .models import TagSource

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 70

# Severity ladder emitted by the Clavata policy scanner, lowest first
SEVERITY_RUNGS = ("pg", "pg-13", "r", "x", "xxx")

CLAVATA_CONFIDENCE_REQUIREMENTS = {
    "daipers": 70,
    "urine": 60,
    "unconscious": 60,
    "graphic language": 70,
    "light violence": 70,
    "hypnosis": 70,
}
CLAVATA_MINIMUM_CONFIDENCE = 51
CLAVATA_MINIMUM_SEVERITY_CONFIDENCE = 51

HIVE_IGNORED = frozenset({"general_not_nsfw_not_suggestive", "natural"})
HIVE_SYNONYMS = {
    "general_nsfw": "nsfw",
    "general_suggestive": "suggestive",
}

_WHITESPACE = re.compile(r"\s+")


@dataclass
class NormalizedTag:
    """Canonical tag record produced from one scanner report"""
    name: str
    confidence: int
    source: TagSource
    annotations: Dict[str, Any] = field(default_factory=dict)


Transform = Callable[[List[NormalizedTag]], List[NormalizedTag]]

_TRANSFORMS: Dict[TagSource, Transform] = {}


def register_transform(source: TagSource) -> Callable[[Transform], Transform]:
    """Register the cleanup function applied to tags reported by ``source``"""
    def decorator(func: Transform) -> Transform:
        _TRANSFORMS[source] = func
        return func
    return decorator


def get_transform(source: TagSource) -> Optional[Transform]:
    return _TRANSFORMS.get(source)


def canonical_name(name: str) -> str:
    """Lowercase, trim, underscores to spaces, single spacing"""
    return _WHITESPACE.sub(" ", name.replace("_", " ")).strip().lower()


def severity_rank(name: str) -> int:
    """Position on the severity ladder, -1 for non-rung tags"""
    try:
        return SEVERITY_RUNGS.index(name)
    except ValueError:
        return -1


@register_transform(TagSource.WD14)
def process_word_form_tags(tags: List[NormalizedTag]) -> List[NormalizedTag]:
    for tag in tags:
        tag.name = tag.name.replace("_", " ")
    return tags


@register_transform(TagSource.HIVE)
def process_sentiment_bucket_tags(tags: List[NormalizedTag]) -> List[NormalizedTag]:
    results = []
    for tag in tags:
        if tag.name.startswith("no_") or tag.name in HIVE_IGNORED:
            continue

        if tag.name.startswith("yes_"):
            tag.name = tag.name[len("yes_"):]
        elif tag.name in HIVE_SYNONYMS:
            tag.name = HIVE_SYNONYMS[tag.name]
        tag.name = tag.name.replace("_", " ")
        results.append(tag)
    return results


@register_transform(TagSource.CLAVATA)
def process_severity_bucket_tags(tags: List[NormalizedTag]) -> List[NormalizedTag]:
    """Apply confidence floors and keep only the highest retained severity rung"""
    highest = NormalizedTag(name="pg", confidence=100, source=TagSource.CLAVATA)
    results = []
    for tag in tags:
        rank = severity_rank(tag.name)
        floor = CLAVATA_MINIMUM_SEVERITY_CONFIDENCE if rank >= 0 else CLAVATA_MINIMUM_CONFIDENCE
        if tag.confidence < CLAVATA_CONFIDENCE_REQUIREMENTS.get(tag.name, floor):
            continue

        if rank >= 0:
            if rank > severity_rank(highest.name):
                highest = tag
            continue
        results.append(tag)

    highest.annotations["severity_rung"] = highest.name
    results.append(highest)
    return results


def normalize_tags(
    raw_tags: Optional[Iterable[Any]],
    source: TagSource,
    default_confidence: int = DEFAULT_CONFIDENCE,
) -> List[NormalizedTag]:
    """
    Normalize one scanner report

    Args:
        raw_tags: ``IncomingTag``-like objects with ``name`` and ``confidence``
        source: Scanner that produced the tags
        default_confidence: Confidence assigned to tags reported without one

    Returns:
        Canonical tags; may be empty
    """
    tags = [
        NormalizedTag(
            name=raw.name.lower().strip(),
            confidence=int(round(raw.confidence)) if raw.confidence is not None else default_confidence,
            source=source,
        )
        for raw in raw_tags or []
    ]

    transform = get_transform(source)
    if transform is not None:
        tags = transform(tags)

    normalized = []
    for tag in tags:
        tag.name = canonical_name(tag.name)
        if tag.name:
            normalized.append(tag)

    logger.debug(f"Normalized {len(normalized)} {source.value} tags")
    return normalized
