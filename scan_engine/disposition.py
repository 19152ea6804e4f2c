"""
Disposition state machine

Decides the terminal ingestion state of a fully scanned media item from the
aggregated severity, resource facts, prompt audit, moderation rule verdict
and review escalation. Stages run in priority order and the first one that
returns a disposition wins; the final stage always marks the media Scanned.

A ``Disposition`` is a decision, not a write: ``ScanStore.commit_disposition``
applies it to the media row re-read under lock, and ``apply`` refuses to
touch media that already left the pending states, so replays are no-ops.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .config import Settings, get_config
from .escalation import EscalationDecision
from .models import (
    PENDING_STATES,
    BlockedReason,
    IngestionState,
    MediaItem,
    ModerationRuleAction,
    NsfwLevel,
    ReviewReason,
    as_utc,
)
from .mod_rules import RuleVerdict
from .nsfw_level import is_nsfw
from .prompt_audit import audit_prompt
from .sinks import (
    NotificationRequest,
    QueuePriority,
    QueueRank,
    ReviewQueueAdmission,
    SearchIndexAction,
    SearchIndexInstruction,
)
from .store import ResourceFacts

logger = logging.getLogger(__name__)

SideEffectInstruction = Union[NotificationRequest, SearchIndexInstruction, ReviewQueueAdmission]

RULE_BLOCK_MESSAGE = (
    "One of your images has been blocked due to a moderation rule violation{reason}. "
    "If you believe this is a mistake, you can appeal this decision."
)
BLOCK_MESSAGE = (
    "One of your images has been blocked ({reason}). "
    "If you believe this is a mistake, you can appeal this decision."
)


@dataclass
class Disposition:
    """Outcome of one scan cycle, applied to the locked media row"""
    state: IngestionState
    nsfw_level: int
    stage: str
    blocked_for: Optional[str] = None
    needs_review: Optional[str] = None
    reviewer: Optional[str] = None
    poi: bool = False
    minor: bool = False
    rule_id: Optional[int] = None
    rule_reason: Optional[str] = None
    scanned_at_recency_days: int = 7

    @property
    def blocked(self) -> bool:
        return self.state == IngestionState.BLOCKED

    @property
    def from_rule(self) -> bool:
        return self.rule_id is not None

    def apply(self, media: MediaItem, now: datetime) -> bool:
        """Write the decision onto ``media``; False when the media is no longer pending"""
        if media.ingestion not in PENDING_STATES:
            logger.info(
                f"Media {media.id} is already {media.ingestion.value}, disposition not applied",
                extra={"stage": self.stage},
            )
            return False

        media.ingestion = self.state
        # Severity only ratchets up; a locked level is left as moderators set it
        if not media.nsfw_level_locked:
            media.nsfw_level = max(media.nsfw_level or 0, self.nsfw_level)

        # Sticky flags only ever turn on
        if self.poi:
            media.poi = True
        if self.minor:
            media.minor = True

        if self.blocked:
            media.blocked_for = self.blocked_for
            media.needs_review = None
        else:
            media.blocked_for = None
            media.needs_review = self.needs_review
            if self.should_set_scanned_at(media, now):
                media.scanned_at = now

        if self.rule_id is not None:
            metadata = dict(media.metadata_json or {})
            metadata["ruleId"] = self.rule_id
            metadata["ruleReason"] = self.rule_reason
            media.metadata_json = metadata

        return True

    def should_set_scanned_at(self, media: MediaItem, now: datetime) -> bool:
        if media.scanned_at is None:
            return True
        if (media.metadata_json or {}).get("skipScannedAtReassignment"):
            return False
        created_at = as_utc(media.created_at)
        return created_at is not None and created_at > now - timedelta(days=self.scanned_at_recency_days)

    def audit_data(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"stage": self.stage}
        if self.reviewer:
            data["reviewer"] = self.reviewer
        if self.rule_id is not None:
            data["ruleId"] = self.rule_id
            data["ruleReason"] = self.rule_reason
        if self.poi:
            data["poi"] = True
        if self.minor:
            data["minor"] = True
        return data


@dataclass
class DispositionContext:
    """Inputs gathered once the completion gate has opened"""
    media: MediaItem
    nsfw_level: int
    escalation: EscalationDecision = field(default_factory=EscalationDecision)
    facts: ResourceFacts = field(default_factory=ResourceFacts)
    verdict: Optional[RuleVerdict] = None
    has_blocking_tag: bool = False

    @property
    def prompt(self) -> Optional[str]:
        return (self.media.meta or {}).get("prompt")

    @property
    def approved(self) -> bool:
        return self.verdict is not None and self.verdict.action == ModerationRuleAction.APPROVE


def is_valid_ai_generation(media: MediaItem, facts: ResourceFacts) -> bool:
    """Whether the media plausibly came out of a declared generation workflow"""
    meta = media.meta or {}
    if meta.get("prompt") or meta.get("comfy") or meta.get("workflow"):
        return True
    if media.tools:
        return True
    return facts.has_resource


def queue_admission(
    media_id: int,
    nsfw: bool,
    needs_review: Optional[str],
    reviewer: Optional[str] = None,
    sampling_modulus: int = 20,
) -> Optional[ReviewQueueAdmission]:
    """
    Review-lane admission for a media item that just became Scanned

    Media requiring review is always admitted at elevated priority. NSFW media
    without a review reason is sampled by id so that only one in
    ``sampling_modulus`` items is admitted; the choice is a pure function of
    the id. Everything else is admitted at standard priority.
    """
    if needs_review:
        return ReviewQueueAdmission(
            media_id=media_id,
            priority=QueuePriority.ELEVATED,
            rank=QueueRank.TEMPLAR,
            reviewer=reviewer,
            reason=needs_review,
        )
    if nsfw:
        if media_id % sampling_modulus != 0:
            return None
        return ReviewQueueAdmission(media_id=media_id, priority=QueuePriority.NSFW, rank=QueueRank.KNIGHT, reviewer=reviewer)
    return ReviewQueueAdmission(media_id=media_id, priority=QueuePriority.STANDARD, rank=QueueRank.KNIGHT, reviewer=reviewer)


def blocked_notification(media_id: int, user_id: int, disposition: Disposition) -> NotificationRequest:
    if disposition.from_rule:
        reason = f" by the following reason: {disposition.rule_reason}" if disposition.rule_reason else ""
        message = RULE_BLOCK_MESSAGE.format(reason=reason)
    else:
        message = BLOCK_MESSAGE.format(reason=disposition.blocked_for or BlockedReason.MODERATED.value)
    return NotificationRequest(user_id=user_id, key=f"image-block:{media_id}", message=message)


Stage = Callable[[DispositionContext], Optional[Disposition]]


class DispositionStateMachine:
    """Ordered disposition stages composed by first match"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_config()
        self.stages: List[Tuple[str, Stage]] = [
            ("unverified_ai", self.unverified_ai_stage),
            ("policy_violation", self.policy_violation_stage),
            ("prompt_audit", self.prompt_audit_stage),
            ("rule_block", self.rule_block_stage),
            ("blocked_tag", self.blocked_tag_stage),
            ("scanned", self.scanned_stage),
        ]

    def is_nsfw_level(self, level: int) -> bool:
        return is_nsfw(level, self.settings.sfw_nsfw_level_ceiling)

    def is_nsfw(self, ctx: DispositionContext) -> bool:
        return self.is_nsfw_level(ctx.nsfw_level)

    def decide(self, ctx: DispositionContext) -> Disposition:
        for name, stage in self.stages:
            disposition = stage(ctx)
            if disposition is not None:
                logger.info(
                    f"Media {ctx.media.id} disposition {disposition.state.value} from stage {name}",
                    extra={"blocked_for": disposition.blocked_for, "needs_review": disposition.needs_review},
                )
                return disposition
        raise AssertionError("scanned stage always decides")

    def _blocked(self, ctx: DispositionContext, stage: str, reason: str, nsfw_level: Optional[int] = None) -> Disposition:
        return Disposition(
            state=IngestionState.BLOCKED,
            nsfw_level=ctx.nsfw_level if nsfw_level is None else nsfw_level,
            stage=stage,
            blocked_for=reason,
            poi=ctx.escalation.poi,
            minor=ctx.escalation.minor,
            scanned_at_recency_days=self.settings.first_scan_recency_days,
        )

    # Stages

    def unverified_ai_stage(self, ctx: DispositionContext) -> Optional[Disposition]:
        if self.is_nsfw(ctx) and not is_valid_ai_generation(ctx.media, ctx.facts):
            return self._blocked(ctx, "unverified_ai", BlockedReason.AI_NOT_VERIFIED.value)
        return None

    def policy_violation_stage(self, ctx: DispositionContext) -> Optional[Disposition]:
        if self.is_nsfw(ctx) and ctx.facts.restricted:
            return self._blocked(ctx, "policy_violation", BlockedReason.POLICY_VIOLATION.value)
        return None

    def prompt_audit_stage(self, ctx: DispositionContext) -> Optional[Disposition]:
        if not self.is_nsfw(ctx) or not ctx.prompt:
            return None
        audit = audit_prompt(ctx.prompt, nsfw=True)
        if audit.success:
            return None
        reason = ",".join(audit.blocked_for) or BlockedReason.FAILED_AUDIT.value
        return self._blocked(ctx, "prompt_audit", reason, nsfw_level=NsfwLevel.BLOCKED)

    def rule_block_stage(self, ctx: DispositionContext) -> Optional[Disposition]:
        verdict = ctx.verdict
        if verdict is None or verdict.action != ModerationRuleAction.BLOCK:
            return None
        disposition = self._blocked(
            ctx, "rule_block", verdict.reason or BlockedReason.MODERATED.value, nsfw_level=NsfwLevel.BLOCKED
        )
        disposition.rule_id = verdict.rule_id
        disposition.rule_reason = verdict.reason
        return disposition

    def blocked_tag_stage(self, ctx: DispositionContext) -> Optional[Disposition]:
        if ctx.has_blocking_tag and self.is_nsfw(ctx) and not ctx.approved:
            return self._blocked(ctx, "blocked_tag", BlockedReason.BLOCKED_TAG.value)
        return None

    def scanned_stage(self, ctx: DispositionContext) -> Optional[Disposition]:
        disposition = Disposition(
            state=IngestionState.SCANNED,
            nsfw_level=ctx.nsfw_level,
            stage="scanned",
            poi=ctx.escalation.poi,
            minor=ctx.escalation.minor,
            scanned_at_recency_days=self.settings.first_scan_recency_days,
        )
        if ctx.escalation.reviewer is not None:
            disposition.reviewer = ctx.escalation.reviewer.value

        verdict = ctx.verdict
        if verdict is not None and verdict.action == ModerationRuleAction.HOLD:
            disposition.needs_review = ReviewReason.MOD_RULE.value
            disposition.rule_id = verdict.rule_id
            disposition.rule_reason = verdict.reason
        elif ctx.approved:
            disposition.needs_review = None
        elif ctx.escalation.reason is not None:
            disposition.needs_review = ctx.escalation.reason.value
        return disposition

    # Side effects

    def side_effects(self, media: MediaItem, disposition: Disposition) -> List[SideEffectInstruction]:
        """Instructions to dispatch after ``disposition`` was committed for ``media``"""
        if disposition.blocked:
            return [
                SearchIndexInstruction(media_id=media.id, action=SearchIndexAction.DELETE),
                blocked_notification(media.id, media.user_id, disposition),
            ]

        instructions: List[SideEffectInstruction] = [
            SearchIndexInstruction(media_id=media.id, action=SearchIndexAction.UPDATE),
        ]
        admission = queue_admission(
            media.id,
            nsfw=self.is_nsfw_level(media.nsfw_level),
            needs_review=disposition.needs_review,
            reviewer=disposition.reviewer,
            sampling_modulus=self.settings.review_queue_sampling_modulus,
        )
        if admission is not None:
            instructions.append(admission)
        return instructions


def similar_to_blocked(settings: Optional[Settings] = None) -> Disposition:
    """Disposition for media whose perceptual hash matches the blocklist"""
    settings = settings or get_config()
    return Disposition(
        state=IngestionState.BLOCKED,
        nsfw_level=NsfwLevel.BLOCKED,
        stage="similar_to_blocked",
        blocked_for=BlockedReason.SIMILAR_TO_BLOCKED.value,
        scanned_at_recency_days=settings.first_scan_recency_days,
    )
