"""Tests for the scan result processor"""
import asyncio

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine

from scan_engine.config import Settings
from scan_engine.engine import ScanResultProcessor, rating_level, summarize_demographics
from scan_engine.errors import MediaNotFoundError, ProcessingError
from scan_engine.database import Base
from scan_engine.models import (
    BlockedMediaHash,
    DispositionAuditLog,
    IngestionState,
    MediaResource,
    ModerationRule,
    ModerationRuleAction,
    NsfwLevel,
    ScanCompletion,
    Tag,
)
from scan_engine.schemas import parse_submission
from scan_engine.sinks import QueuePriority, QueueRank, SearchIndexAction
from scan_engine.tag_cache import TtlTagCache


def submission(source="Clavata", tags=None, media_id=1, status=0, **extra):
    payload = {"mediaId": media_id, "status": status, "source": source, **extra}
    if tags is not None:
        payload["tags"] = [{"tag": name, "confidence": confidence} for name, confidence in tags]
    return parse_submission(payload)


MINOR_AT_PG13 = [("pg-13", 80), ("child-10", 80), ("realistic", 90)]


class TestDisposition:
    """End-to-end dispositions through the store"""

    async def test_minor_review_at_pg13(self, processor, store, sinks, make_media):
        """Test a young-age tag at pg-13 is Scanned and held for minor review"""
        await make_media()
        outcome = await processor.process(submission(tags=MINOR_AT_PG13))
        await processor.dispatcher.drain()

        assert outcome.gate_open and outcome.applied
        assert outcome.ingestion == IngestionState.SCANNED
        assert outcome.needs_review == "minor"

        media = await store.get_media(1)
        assert media.minor
        assert media.nsfw_level == NsfwLevel.PG13
        assert media.scanned_at is not None

        search = sinks.search_index.queue.await_args.args[0]
        assert search.action == SearchIndexAction.UPDATE
        admission = sinks.review_queue.admit.await_args.args[0]
        assert admission.priority == QueuePriority.ELEVATED
        assert admission.rank == QueueRank.TEMPLAR
        sinks.notification.send.assert_not_awaited()

    async def test_block_rule(self, processor, store, sinks, add_rows, make_media):
        """Test a Block rule on a present tag blocks with the rule's reason"""
        await add_rows(
            ModerationRule(
                id=1,
                name="no realism",
                position=1,
                action=ModerationRuleAction.BLOCK,
                reason="Realistic content is not allowed",
                definition={"type": "tag", "value": "realistic"},
            )
        )
        await make_media()
        outcome = await processor.process(submission(tags=MINOR_AT_PG13))
        await processor.dispatcher.drain()

        assert outcome.ingestion == IngestionState.BLOCKED
        assert outcome.blocked_for == "Realistic content is not allowed"

        media = await store.get_media(1)
        assert media.nsfw_level == NsfwLevel.BLOCKED
        assert media.needs_review is None
        assert media.metadata_json["ruleId"] == 1

        search = sinks.search_index.queue.await_args.args[0]
        assert search.action == SearchIndexAction.DELETE
        notification = sinks.notification.send.await_args.args[0]
        assert notification.user_id == 1
        assert "Realistic content is not allowed" in notification.message
        sinks.review_queue.admit.assert_not_awaited()

    async def test_blocked_tag(self, processor, add_rows, make_media):
        """Test a blocked-severity tag blocks the media"""
        await add_rows(Tag(id=50, name="gore", nsfw_level=NsfwLevel.BLOCKED))
        await make_media()
        outcome = await processor.process(submission(tags=[("gore", 90)]))
        assert outcome.ingestion == IngestionState.BLOCKED
        assert outcome.blocked_for == "blocked tag"

    async def test_approve_rule_overrides_blocked_tag(self, processor, add_rows, make_media):
        """Test an Approve rule lets blocked-tag media through without review"""
        await add_rows(
            Tag(id=50, name="gore", nsfw_level=NsfwLevel.BLOCKED),
            ModerationRule(
                id=2, position=1, action=ModerationRuleAction.APPROVE, definition={"type": "tag", "value": "gore"}
            ),
        )
        await make_media()
        outcome = await processor.process(submission(tags=[("gore", 90)]))
        assert outcome.ingestion == IngestionState.SCANNED
        assert outcome.needs_review is None

    async def test_unverified_ai(self, processor, make_media):
        """Test NSFW media without generation metadata or resources is blocked"""
        await make_media(meta={})
        outcome = await processor.process(submission(tags=[("x", 90)]))
        assert outcome.ingestion == IngestionState.BLOCKED
        assert outcome.blocked_for == "unverified AI generation"

    async def test_resource_verifies_generation(self, processor, add_rows, make_media):
        """Test a linked generation resource counts as evidence"""
        await make_media(meta={})
        await add_rows(MediaResource(media_id=1, resource_id=10))
        outcome = await processor.process(submission(tags=[("x", 90)]))
        assert outcome.ingestion == IngestionState.SCANNED

    async def test_locked_severity(self, processor, store, make_media):
        """Test a locked level drives the decision and is never overwritten"""
        await make_media(meta={}, nsfw_level=NsfwLevel.PG, nsfw_level_locked=True)
        outcome = await processor.process(submission(tags=[("x", 90)]))

        assert outcome.ingestion == IngestionState.SCANNED
        assert (await store.get_media(1)).nsfw_level == NsfwLevel.PG

    async def test_severity_never_decreases(self, processor, store, make_media):
        """Test a milder tag set does not lower a previously recorded level"""
        await make_media(nsfw_level=NsfwLevel.X)
        outcome = await processor.process(submission(tags=[("castle", 90)]))

        assert outcome.ingestion == IngestionState.SCANNED
        assert (await store.get_media(1)).nsfw_level == NsfwLevel.X

    async def test_blank_tag_name_dropped(self, processor, store, make_media):
        """Test a blank tag name is dropped without rejecting the rest of the report"""
        await make_media()
        outcome = await processor.process(submission(tags=[("castle", 90), ("  ", 50)]))

        assert outcome.gate_open
        assert outcome.ingestion == IngestionState.SCANNED
        assert [tag.name for tag in await store.get_media_tags(1)] == ["castle"]

    async def test_audit_log_written(self, processor, db_manager, make_media):
        """Test every committed transition is audited"""
        await make_media()
        await processor.process(submission(tags=[("castle", 90)]))

        async with db_manager.get_session() as session:
            logs = list((await session.execute(select(DispositionAuditLog))).scalars())
        assert len(logs) == 1
        assert logs[0].previous_state == "Pending"
        assert logs[0].new_state == "Scanned"
        assert logs[0].source == "Clavata"


class TestCompletionGate:
    """Tests for the multi-scanner completion gate"""

    @pytest.fixture
    def settings(self):
        return Settings(required_scan_sources=["WD14", "Hive"], moderation_knight_tags=[])

    async def test_waits_for_every_source(self, processor, sinks, make_media):
        """Test no disposition until every required source has reported"""
        await make_media()
        outcome = await processor.process(submission("WD14", [("castle", 80)]))
        assert not outcome.gate_open
        assert outcome.ingestion == IngestionState.PENDING
        sinks.search_index.queue.assert_not_awaited()

        outcome = await processor.process(submission("Hive", [("yes_sky", 80)]))
        assert outcome.gate_open
        assert outcome.ingestion == IngestionState.SCANNED

    async def test_duplicates_merged_within_submission(self, processor, store, make_media):
        """Test duplicate names in one report keep the higher confidence"""
        await make_media()
        await processor.process(submission("WD14", [("cat", 40), ("cat", 85)]))

        tags = {(t.name, t.source): t.confidence for t in await store.get_media_tags(1)}
        assert tags[("cat", "WD14")] == 85

    async def test_resubmission_is_idempotent(self, processor, store, db_manager, make_media):
        """Test the same report twice while the gate is closed leaves the same state"""
        await make_media()
        report = submission("WD14", [("castle", 80), ("cat", 60)])
        await processor.process(report)
        tags_once = sorted((t.name, t.source, t.confidence) for t in await store.get_media_tags(1))

        outcome = await processor.process(report)
        tags_twice = sorted((t.name, t.source, t.confidence) for t in await store.get_media_tags(1))

        assert tags_twice == tags_once
        assert not outcome.gate_open
        assert (await store.get_media(1)).ingestion == IngestionState.PENDING
        async with db_manager.get_session() as session:
            completions = list((await session.execute(select(ScanCompletion))).scalars())
        assert [c.source for c in completions] == ["WD14"]

    async def test_replay_is_a_no_op(self, processor, store, db_manager, make_media):
        """Test a late duplicate report does not change a decided media item"""
        await make_media()
        await processor.process(submission("WD14", [("castle", 80)]))
        await processor.process(submission("Hive", [("yes_sky", 80)]))
        before = await store.get_media(1)

        outcome = await processor.process(submission("Hive", [("yes_sky", 80)]))
        after = await store.get_media(1)

        assert outcome.ingestion == IngestionState.SCANNED
        assert not outcome.applied
        assert after.scanned_at == before.scanned_at
        async with db_manager.get_session() as session:
            logs = list((await session.execute(select(DispositionAuditLog))).scalars())
        assert len(logs) == 1


class TestConcurrentReports:
    """Tests for the last scanners reporting at the same time"""

    @pytest.fixture
    async def test_engine(self, tmp_path):
        """File database so each session gets its own connection"""
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'scan.db'}", echo=False)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        yield engine
        await engine.dispose()

    @pytest.fixture
    def settings(self):
        return Settings(required_scan_sources=["WD14", "Hive"], moderation_knight_tags=[])

    async def test_single_disposition(self, processor, store, db_manager, make_media):
        """Test concurrent final reports commit one disposition and one audit row"""
        await make_media()
        outcomes = await asyncio.gather(
            processor.process(submission("WD14", [("castle", 80)])),
            processor.process(submission("Hive", [("yes_sky", 80)])),
        )

        assert sum(1 for outcome in outcomes if outcome.applied) == 1
        assert (await store.get_media(1)).ingestion == IngestionState.SCANNED
        async with db_manager.get_session() as session:
            logs = list((await session.execute(select(DispositionAuditLog))).scalars())
        assert len(logs) == 1
        assert logs[0].new_state == "Scanned"


class TestNonSuccess:
    """Tests for NotFound and Unscannable reports"""

    async def test_not_found(self, processor, store, make_media):
        """Test a not-found report moves pending media to NotFound"""
        await make_media()
        outcome = await processor.process(submission(status=1))
        assert outcome.ingestion == IngestionState.NOT_FOUND

    async def test_unscannable_counts_retries(self, processor, store, make_media):
        """Test unscannable reports move media to Error and count retries"""
        await make_media()
        await processor.process(submission(status=2))
        await processor.process(submission(status=2))

        media = await store.get_media(1)
        assert media.ingestion == IngestionState.ERROR
        assert media.scan_jobs["retryCount"] == 2

    async def test_terminal_media_untouched(self, processor, make_media):
        """Test non-success reports leave decided media alone"""
        await make_media(ingestion=IngestionState.SCANNED)
        outcome = await processor.process(submission(status=1))
        assert outcome.ingestion == IngestionState.SCANNED

    async def test_unknown_media(self, processor):
        """Test submissions for unknown media raise not-found"""
        with pytest.raises(MediaNotFoundError):
            await processor.process(submission(tags=[("castle", 80)], media_id=999))


class TestFailures:
    """Tests for core path failures"""

    async def test_processing_error_marks_media(self, processor, store, make_media, monkeypatch):
        """Test unexpected failures surface as ProcessingError and mark the media Error"""
        await make_media()

        async def broken(*args, **kwargs):
            raise RuntimeError("dictionary unavailable")

        monkeypatch.setattr(processor.reconciler, "reconcile", broken)
        with pytest.raises(ProcessingError) as exc_info:
            await processor.process(submission(tags=[("castle", 80)]))

        assert exc_info.value.media_id == 1
        assert (await store.get_media(1)).ingestion == IngestionState.ERROR


class TestScanFacts:
    """Tests for hash, rating and demographic reports"""

    async def test_hash_blocklist(self, store, sinks, add_rows, make_media):
        """Test a hash close to a blocked hash blocks before the gate opens"""
        settings = Settings(required_scan_sources=["WD14", "Hive"], blocked_hash_check=True, moderation_knight_tags=[])
        processor = ScanResultProcessor(store=store, cache=TtlTagCache(), sinks=sinks, settings=settings)
        await add_rows(BlockedMediaHash(hash="0000000000000abc"))
        await make_media()

        outcome = await processor.process(submission("ImageHash", hash="0000000000000abd"))
        assert outcome.ingestion == IngestionState.BLOCKED
        assert outcome.blocked_for == "Similar to blocked content"
        assert (await store.get_media(1)).phash == "0000000000000abd"

    async def test_hash_recorded_without_check(self, processor, store, add_rows, make_media):
        """Test hashes are stored even when the blocklist check is off"""
        await add_rows(BlockedMediaHash(hash="0000000000000abc"))
        await make_media()
        outcome = await processor.process(submission("ImageHash", hash="0000000000000abc"))
        assert outcome.ingestion == IngestionState.PENDING
        assert (await store.get_media(1)).phash == "0000000000000abc"

    async def test_ai_rating(self, processor, store, make_media):
        """Test the WD14 rating label is stored as the AI severity"""
        await make_media()
        await processor.process(
            submission("WD14", [("castle", 80)], context={"movie_rating": "R", "movie_rating_model_id": "wd-v3"})
        )
        media = await store.get_media(1)
        assert media.ai_nsfw_level == NsfwLevel.R
        assert media.ai_model == "wd-v3"

    async def test_demographics_flag_minor(self, processor, store, make_media):
        """Test a detected minor sets the sticky flag and age summary"""
        await make_media()
        await processor.process(submission("HiveDemographics", result=[
            {"age": 12.4, "tags": [{"name": "female"}], "boundingBox": {"top": 0, "bottom": 1, "left": 0, "right": 1}},
            {"age": 34, "tags": [{"name": "male"}], "boundingBox": {"top": 0, "bottom": 1, "left": 0, "right": 1}},
        ]))
        media = await store.get_media(1)
        assert media.minor
        assert media.scan_jobs["age"] == 12
        assert media.scan_jobs["hasMinor"]

    async def test_minor_detection_on_scanned_nsfw(self, processor, store, sinks, make_media):
        """Test a late minor detection requests review on scanned NSFW media"""
        await make_media(ingestion=IngestionState.SCANNED, nsfw_level=NsfwLevel.X)
        await processor.process(submission("MinorDetection", context={"hasMinor": True}))
        media = await store.get_media(1)
        assert media.needs_review == "minor"
        assert media.ingestion == IngestionState.SCANNED

        await processor.dispatcher.drain()
        admission = sinks.review_queue.admit.await_args.args[0]
        assert admission.media_id == 1
        assert admission.priority == QueuePriority.ELEVATED
        assert admission.rank == QueueRank.TEMPLAR
        assert admission.reason == "minor"


class TestHelpers:
    """Tests for module helpers"""

    def test_rating_level(self):
        """Test rating labels map onto the severity ladder"""
        assert rating_level("pg-13") == NsfwLevel.PG13
        assert rating_level("XXX") == NsfwLevel.XXX
        assert rating_level("unrated") is None
        assert rating_level(None) is None

    def test_summarize_demographics_empty(self):
        """Test an empty report has no age"""
        assert summarize_demographics([]) == {"demographics": []}
