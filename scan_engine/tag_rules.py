"""Derived tags and administrator tag substitution rules"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from .models import TagRuleType, TagSource
from .normalizer import DEFAULT_CONFIDENCE, NormalizedTag

logger = logging.getLogger(__name__)

# Derived tag -> tags that imply it, regardless of the reporting scanner
DERIVED_TAGS: Dict[str, List[str]] = {
    "animal": ["dog", "cat", "horse", "wolf", "fox", "bird", "cow", "pig", "dragon", "tiger", "lion"],
    "woman": ["1girl", "2girls", "3girls", "multiple girls", "female"],
    "man": ["1boy", "2boys", "3boys", "multiple boys", "male"],
    "nudity": ["completely nude", "nude", "topless", "bottomless"],
    "underwear": ["panties", "bra", "lingerie"],
}

_IMPLIED_BY: Dict[str, List[str]] = {}
for _derived, _triggers in DERIVED_TAGS.items():
    for _trigger in _triggers:
        _IMPLIED_BY.setdefault(_trigger, []).append(_derived)


def get_computed_tags(names: Iterable[str]) -> List[str]:
    """Derived tags implied by ``names`` and not already among them"""
    present = set(names)
    computed: List[str] = []
    for name in present:
        for derived in _IMPLIED_BY.get(name, []):
            if derived not in present and derived not in computed:
                computed.append(derived)
    return sorted(computed)


@dataclass
class TagSubstitutionRule:
    """Ordered admin rule; fires when a tag named ``trigger_tag`` is present"""
    type: TagRuleType
    trigger_tag: str
    target_tag: str
    id: Optional[int] = None


def apply_tag_rules(
    tags: List[NormalizedTag],
    rules: Iterable[TagSubstitutionRule],
    default_confidence: int = DEFAULT_CONFIDENCE,
) -> List[NormalizedTag]:
    """
    Apply substitution rules in order; later rules see earlier rules' effects

    Replace renames the first matching tag to the rule's target. Append adds
    the target as a computed tag.
    """
    for rule in rules:
        match = next((tag for tag in tags if tag.name == rule.trigger_tag), None)
        if match is None:
            continue

        if rule.type == TagRuleType.REPLACE:
            match.name = rule.target_tag
        elif rule.type == TagRuleType.APPEND:
            tags.append(
                NormalizedTag(
                    name=rule.target_tag,
                    confidence=default_confidence,
                    source=TagSource.COMPUTED,
                )
            )
        logger.debug(f"Tag rule {rule.type.value} applied: {rule.trigger_tag} -> {rule.target_tag}")
    return tags
