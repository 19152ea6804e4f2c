"""
Review escalation

Selects at most one review reason for a fully scanned media item. Stages run
in priority order (point of interest, minor, blocked tag, new user) and the
first one that matches wins. Sticky poi/minor flags are collected separately
because they are recorded even when no review is requested.
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from .models import ReviewReason, TagSource
from .normalizer import SEVERITY_RUNGS, severity_rank
from .prompt_audit import includes_inappropriate, includes_poi, is_poi_name
from .reconciler import ResolvedTag

logger = logging.getLogger(__name__)

MINOR_TAGS = frozenset({
    "child", "children", "kid", "teen", "teenager", "toddler",
    "loli", "shota", "young child", "minor", "schoolgirl", "schoolboy",
})
STYLE_TAGS = frozenset({"anime", "cartoon", "comics", "manga", "3d", "illustration", "chibi", "animated"})
ADULT_TAGS = frozenset({"adult"})
YOUNG_AGE_TAGS = ("child-10", "child-13", "child-15")


class Reviewer(str, enum.Enum):
    MODERATORS = "moderators"
    KNIGHTS = "knights"


class ReviewConditionKind(str, enum.Enum):
    TAG_WITH_ANY = "tag_with_any"  # tag present together with any companion tag
    TAG_IN = "tag_in"  # tag is one of a configured list


@dataclass(frozen=True)
class ReviewCondition:
    reviewer: Reviewer
    kind: ReviewConditionKind
    tag: Optional[str] = None
    tags: Tuple[str, ...] = ()

    def matches(self, tag: str, present: FrozenSet[str]) -> bool:
        if self.kind == ReviewConditionKind.TAG_WITH_ANY:
            return tag == self.tag and any(other in present for other in self.tags)
        if self.kind == ReviewConditionKind.TAG_IN:
            return tag in self.tags
        return False


DEFAULT_REVIEW_CONDITIONS: Tuple[ReviewCondition, ...] = (
    ReviewCondition(Reviewer.MODERATORS, ReviewConditionKind.TAG_WITH_ANY, "unconscious", ("r", "x", "xxx")),
    ReviewCondition(Reviewer.MODERATORS, ReviewConditionKind.TAG_WITH_ANY, "bestiality", ("animal",)),
)


def build_review_conditions(knight_tags: Iterable[str] = ()) -> List[ReviewCondition]:
    conditions = list(DEFAULT_REVIEW_CONDITIONS)
    knight_tags = tuple(knight_tags)
    if knight_tags:
        conditions.append(ReviewCondition(Reviewer.KNIGHTS, ReviewConditionKind.TAG_IN, tags=knight_tags))
    return conditions


def determine_reviewer(tag_names: Sequence[str], conditions: Sequence[ReviewCondition]) -> Optional[Reviewer]:
    """Reviewer class of the first condition matched, scanning tags in order"""
    present = frozenset(tag_names)
    for name in tag_names:
        for condition in conditions:
            if condition.matches(name, present):
                return condition.reviewer
    return None


@dataclass
class EscalationContext:
    """Everything the stages may look at for one media item"""
    media_id: int
    user_id: int
    tags: List[ResolvedTag]
    nsfw: bool
    prompt: Optional[str] = None
    negative_prompt: Optional[str] = None
    resource_poi: bool = False
    resource_minor: bool = False
    detected_minor: bool = False  # sticky flag from demographic scanners
    has_blocking_tag: bool = False

    def __post_init__(self):
        self.active_tags = [tag for tag in self.tags if not tag.ignored]
        self.names = [tag.name for tag in self.active_tags]
        self.name_set = frozenset(self.names)
        self._inappropriate: Optional[str] = None
        self._inappropriate_checked = False

    @property
    def inappropriate(self) -> Optional[str]:
        if not self._inappropriate_checked:
            self._inappropriate = includes_inappropriate(self.prompt, self.negative_prompt, self.nsfw)
            self._inappropriate_checked = True
        return self._inappropriate

    @property
    def severity_rung(self) -> Optional[str]:
        """Highest severity rung reported by the severity-bucket scanner"""
        rungs = [
            tag.name for tag in self.active_tags
            if tag.source == TagSource.CLAVATA.value and tag.name in SEVERITY_RUNGS
        ]
        return max(rungs, key=severity_rank) if rungs else None


@dataclass
class EscalationDecision:
    reason: Optional[ReviewReason] = None
    reviewer: Optional[Reviewer] = None
    poi: bool = False
    minor: bool = False
    stage: Optional[str] = None


Stage = Callable[[EscalationContext], Awaitable[bool]]


class ReviewEscalationEvaluator:
    """Ordered escalation stages composed by first match"""

    def __init__(
        self,
        new_user_check: Callable[[int], Awaitable[bool]],
        review_conditions: Optional[Sequence[ReviewCondition]] = None,
    ):
        self.new_user_check = new_user_check
        self.review_conditions = list(review_conditions or DEFAULT_REVIEW_CONDITIONS)
        self.stages: List[Tuple[ReviewReason, Stage]] = [
            (ReviewReason.POI, self.poi_stage),
            (ReviewReason.MINOR, self.minor_stage),
            (ReviewReason.TAG, self.tag_stage),
            (ReviewReason.NEW_USER, self.new_user_stage),
        ]

    async def evaluate(self, ctx: EscalationContext) -> EscalationDecision:
        decision = EscalationDecision(reviewer=determine_reviewer(ctx.names, self.review_conditions))
        decision.poi, decision.minor = self.collect_flags(ctx)

        for reason, stage in self.stages:
            if await stage(ctx):
                decision.reason = reason
                decision.stage = stage.__name__
                break

        if decision.reason is not None:
            logger.info(
                f"Media {ctx.media_id} escalated for review: {decision.reason.value}",
                extra={"stage": decision.stage, "reviewer": decision.reviewer},
            )
        return decision

    def collect_flags(self, ctx: EscalationContext) -> Tuple[bool, bool]:
        poi = (
            ctx.resource_poi
            or any(is_poi_name(name) for name in ctx.names)
            or bool(ctx.prompt and includes_poi(ctx.prompt))
        )
        minor = (
            ctx.resource_minor
            or ctx.detected_minor
            or bool(ctx.name_set & MINOR_TAGS)
            or self.young_at_rung(ctx)
        )
        return poi, minor

    @staticmethod
    def young_at_rung(ctx: EscalationContext) -> bool:
        return ctx.severity_rung is not None and any(tag in ctx.name_set for tag in YOUNG_AGE_TAGS)

    async def poi_stage(self, ctx: EscalationContext) -> bool:
        if any(is_poi_name(name) for name in ctx.names):
            return True
        if ctx.inappropriate == "poi":
            return True
        return ctx.resource_poi and ctx.nsfw

    async def minor_stage(self, ctx: EscalationContext) -> bool:
        if ctx.inappropriate == "minor":
            return True

        rung = ctx.severity_rung
        young = any(tag in ctx.name_set for tag in YOUNG_AGE_TAGS)
        if rung == "pg" and young:
            return True
        if rung is not None and severity_rank(rung) >= severity_rank("pg-13"):
            if "child-10" in ctx.name_set:
                return True
            if young and "realistic" in ctx.name_set:
                return True

        if (ctx.resource_minor or ctx.detected_minor) and ctx.nsfw:
            return True

        has_minor_tag = bool(ctx.name_set & MINOR_TAGS)
        has_adult_tag = bool(ctx.name_set & ADULT_TAGS)
        has_style_tag = bool(ctx.name_set & STYLE_TAGS)
        return has_minor_tag and not has_adult_tag and (not has_style_tag or ctx.nsfw)

    async def tag_stage(self, ctx: EscalationContext) -> bool:
        if ctx.has_blocking_tag or any(tag.is_blocking for tag in ctx.active_tags):
            return True
        return determine_reviewer(ctx.names, self.review_conditions) == Reviewer.MODERATORS

    async def new_user_stage(self, ctx: EscalationContext) -> bool:
        if not ctx.nsfw:
            return False
        return await self.new_user_check(ctx.user_id)
