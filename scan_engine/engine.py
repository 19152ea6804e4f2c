"""
Scan result processor

Entry point for one scanner submission. Non-success submissions move the
media straight to NotFound/Error. Successful ones are normalized, reconciled
into tag associations and recorded against the completion gate; once every
required scanner has reported, the disposition is computed from the full
persisted tag set and committed, and its side effects are dispatched.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from prometheus_client import Counter, Histogram

from .completion import ScanCompletionTracker
from .config import Settings, get_config
from .disposition import DispositionContext, DispositionStateMachine, Disposition, queue_admission, similar_to_blocked
from .errors import MediaNotFoundError, ProcessingError, RetryableError, SubmissionValidationError
from .escalation import EscalationContext, ReviewEscalationEvaluator, build_review_conditions
from .hash_blocklist import HashBlocklist
from .logging import scan_context
from .mod_rules import ModerationRuleEngine, RuleSubject
from .models import PENDING_STATES, IngestionState, NsfwLevel, ReviewReason, TagSource
from .normalizer import normalize_tags
from .nsfw_level import aggregate_nsfw_level, stored_nsfw_level
from .reconciler import TagReconciler
from .schemas import DemographicResult, ScanStatus, ScanSubmission
from .side_effects import SideEffectDispatcher
from .sinks import Sinks, create_sinks
from .store import ScanStore
from .tag_cache import TagCache

logger = logging.getLogger(__name__)

SUBMISSIONS = Counter('scan_engine_submissions_total', 'Scan submissions processed', ['source', 'status'])
DISPOSITIONS = Counter('scan_engine_dispositions_total', 'Dispositions committed', ['state'])
PROCESSING_FAILURES = Counter('scan_engine_processing_failures_total', 'Core path failures', ['source'])
PROCESSING_DURATION = Histogram('scan_engine_processing_duration_seconds', 'Submission processing duration')

# Sources that report facts about the media rather than tags
TAGLESS_SOURCES = frozenset({TagSource.IMAGE_HASH, TagSource.HIVE_DEMOGRAPHICS, TagSource.MINOR_DETECTION})

ADULT_AGE = 18


@dataclass
class ScanOutcome:
    media_id: int
    ingestion: IngestionState
    gate_open: bool = False
    applied: bool = False
    needs_review: Optional[str] = None
    blocked_for: Optional[str] = None


def summarize_demographics(results: List[DemographicResult]) -> Dict[str, Any]:
    """Scan metadata entry for a demographic estimator report"""
    faces = []
    for result in results:
        names = {tag.name for tag in result.tags}
        gender = "female" if "female" in names else "male" if "male" in names else None
        faces.append({
            "age": round(result.age),
            "gender": gender,
            "dimensions": result.bounding_box.model_dump(),
        })
    summary: Dict[str, Any] = {"demographics": faces}
    if faces:
        summary["age"] = min(face["age"] for face in faces)
    return summary


def rating_level(label: Optional[str]) -> Optional[int]:
    """Severity level for a rating label such as ``pg13`` or ``X``"""
    if not label:
        return None
    key = label.upper().replace("-", "").replace(" ", "")
    try:
        return int(NsfwLevel[key])
    except KeyError:
        logger.warning(f"Unknown rating label: {label}")
        return None


class ScanResultProcessor:
    """Processes scanner submissions into tag associations and dispositions"""

    def __init__(
        self,
        store: ScanStore,
        cache: TagCache,
        sinks: Optional[Sinks] = None,
        settings: Optional[Settings] = None,
        dispatcher: Optional[SideEffectDispatcher] = None,
    ):
        self.settings = settings or get_config()
        self.store = store
        self.reconciler = TagReconciler(store, cache, self.settings)
        self.completion = ScanCompletionTracker(store, self.settings)
        self.escalation = ReviewEscalationEvaluator(
            new_user_check=self.is_new_user,
            review_conditions=build_review_conditions(self.settings.moderation_knight_tags),
        )
        self.state_machine = DispositionStateMachine(self.settings)
        self.hash_blocklist = HashBlocklist(store, self.settings.blocked_hash_max_distance)
        self.dispatcher = dispatcher or SideEffectDispatcher(sinks or create_sinks(self.settings))

    async def is_new_user(self, user_id: int) -> bool:
        return await self.store.is_new_user(user_id, self.settings.new_user_window_days)

    async def process(self, submission: ScanSubmission) -> ScanOutcome:
        SUBMISSIONS.labels(source=submission.source.value, status=submission.status.name).inc()
        with scan_context(submission.media_id, submission.source.value), PROCESSING_DURATION.time():
            if submission.status == ScanStatus.NOT_FOUND:
                state = await self.store.mark_not_found(submission.media_id)
                logger.info(f"Media {submission.media_id} reported not found, now {state.value}")
                return ScanOutcome(media_id=submission.media_id, ingestion=state)

            if submission.status == ScanStatus.UNSCANNABLE:
                state = await self.store.mark_unscannable(submission.media_id)
                logger.info(f"Media {submission.media_id} reported unscannable, now {state.value}")
                return ScanOutcome(media_id=submission.media_id, ingestion=state)

            try:
                return await self.process_success(submission)
            except (RetryableError, MediaNotFoundError, SubmissionValidationError):
                raise
            except Exception as e:
                PROCESSING_FAILURES.labels(source=submission.source.value).inc()
                logger.error(
                    f"Failed to process {submission.source.value} result for media {submission.media_id}: {e}",
                    exc_info=True,
                )
                await self.record_failure(submission.media_id)
                raise ProcessingError(f"Scan processing failed: {e}", media_id=submission.media_id) from e

    async def record_failure(self, media_id: int) -> None:
        try:
            await self.store.mark_error(media_id)
        except RetryableError as e:
            logger.error(f"Could not mark media {media_id} as Error: {e}")

    async def process_success(self, submission: ScanSubmission) -> ScanOutcome:
        media_id = submission.media_id
        source = submission.source
        media = await self.store.get_media(media_id)

        if submission.hash:
            await self.store.record_hash(media_id, submission.hash)
            if self.settings.blocked_hash_check and await self.hash_blocklist.is_blocked(submission.hash):
                return await self.commit(media_id, similar_to_blocked(self.settings), source)

        if source == TagSource.WD14 and submission.context and submission.context.rating_label:
            level = rating_level(submission.context.rating_label)
            if level is not None:
                await self.store.record_ai_rating(media_id, level, submission.context.rating_model_id)

        if source == TagSource.HIVE_DEMOGRAPHICS:
            results = submission.result or []
            has_minor = any(result.age < ADULT_AGE for result in results)
            await self.record_demographics(media_id, summarize_demographics(results), has_minor)
        elif source == TagSource.MINOR_DETECTION:
            has_minor = bool(submission.context and submission.context.has_minor)
            await self.record_demographics(media_id, {"hasMinor": has_minor}, has_minor)

        if source not in TAGLESS_SOURCES:
            tags = normalize_tags(submission.tags, source, self.settings.default_tag_confidence)
            await self.reconciler.reconcile(media, source, tags)

        if not await self.completion.record(media_id, source.value):
            return ScanOutcome(media_id=media_id, ingestion=media.ingestion)

        return await self.decide(media_id, source)

    async def record_demographics(self, media_id: int, scan_update: Dict[str, Any], has_minor: bool) -> None:
        review_changed = await self.store.record_demographics(
            media_id, scan_update, has_minor, self.settings.sfw_nsfw_level_ceiling
        )
        if review_changed:
            logger.info(f"Media {media_id} flagged for minor review after demographic scan")
            self.dispatcher.dispatch([queue_admission(media_id, nsfw=True, needs_review=ReviewReason.MINOR.value)])

    async def decide(self, media_id: int, source: TagSource) -> ScanOutcome:
        media = await self.store.get_media(media_id)
        if media.ingestion not in PENDING_STATES:
            logger.info(f"Media {media_id} already {media.ingestion.value}, keeping disposition")
            return ScanOutcome(
                media_id=media_id,
                ingestion=media.ingestion,
                gate_open=True,
                needs_review=media.needs_review,
                blocked_for=media.blocked_for,
            )

        tags = await self.store.get_media_tags(media_id)
        nsfw_level = stored_nsfw_level(media.nsfw_level, aggregate_nsfw_level(tags), media.nsfw_level_locked)
        nsfw = self.state_machine.is_nsfw_level(nsfw_level)
        facts = await self.store.get_resource_facts(media_id)
        meta = media.meta or {}
        has_blocking_tag = any(tag.is_blocking for tag in tags)

        escalation = await self.escalation.evaluate(
            EscalationContext(
                media_id=media_id,
                user_id=media.user_id,
                tags=tags,
                nsfw=nsfw,
                prompt=meta.get("prompt"),
                negative_prompt=meta.get("negativePrompt"),
                resource_poi=facts.poi,
                resource_minor=facts.minor,
                detected_minor=bool(media.minor),
                has_blocking_tag=has_blocking_tag,
            )
        )

        rules = ModerationRuleEngine(await self.store.get_moderation_rules())
        verdict = rules.evaluate(
            RuleSubject.from_media((tag.name for tag in tags if not tag.ignored), media.meta, media.metadata_json)
        )

        disposition = self.state_machine.decide(
            DispositionContext(
                media=media,
                nsfw_level=nsfw_level,
                escalation=escalation,
                facts=facts,
                verdict=verdict,
                has_blocking_tag=has_blocking_tag,
            )
        )
        return await self.commit(media_id, disposition, source)

    async def commit(self, media_id: int, disposition: Disposition, source: TagSource) -> ScanOutcome:
        result = await self.store.commit_disposition(media_id, disposition, source=source.value)
        media = result.media
        if result.applied:
            DISPOSITIONS.labels(state=media.ingestion.value).inc()
            self.dispatcher.dispatch(self.state_machine.side_effects(media, disposition))
        else:
            logger.info(f"Disposition for media {media_id} skipped, media is {media.ingestion.value}")
        return ScanOutcome(
            media_id=media_id,
            ingestion=media.ingestion,
            gate_open=True,
            applied=result.applied,
            needs_review=media.needs_review,
            blocked_for=media.blocked_for,
        )
