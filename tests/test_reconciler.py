"""Tests for tag reconciliation against the dictionary and associations"""
from unittest.mock import AsyncMock

import pytest

from scan_engine.models import NsfwLevel, Tag, TagRule, TagRuleType, TagSource
from scan_engine.normalizer import NormalizedTag
from scan_engine.reconciler import TagReconciler, dedupe_by_name, should_ignore
from scan_engine.tag_cache import CachedTag, TtlTagCache


def tag(name, confidence=80, source=TagSource.WD14):
    return NormalizedTag(name=name, confidence=confidence, source=source)


class TestDedupe:
    """Tests for dedupe_by_name"""

    def test_keeps_higher_confidence(self):
        """Test the higher-confidence duplicate wins regardless of order"""
        assert dedupe_by_name([tag("cat", 40), tag("cat", 85)])[0].confidence == 85
        assert dedupe_by_name([tag("cat", 85), tag("cat", 40)])[0].confidence == 85

    def test_equal_confidence_keeps_first(self):
        """Test a later duplicate needs strictly higher confidence"""
        first = tag("cat", 60, TagSource.WD14)
        second = tag("cat", 60, TagSource.COMPUTED)
        assert dedupe_by_name([first, second]) == [first]

    def test_should_ignore(self):
        """Test ignore lists are per source"""
        ignored = {"WD14": ["loli"]}
        assert should_ignore("loli", "WD14", ignored)
        assert not should_ignore("loli", "Hive", ignored)


class TestTagReconciler:
    """Tests for TagReconciler against the store"""

    @pytest.fixture
    def cache(self):
        return TtlTagCache()

    @pytest.fixture
    def reconciler(self, store, cache, settings):
        return TagReconciler(store, cache, settings)

    async def test_merges_and_persists(self, reconciler, store, make_media):
        """Test duplicates merge and associations are written per source"""
        media = await make_media()
        result = await reconciler.reconcile(media, TagSource.WD14, [tag("cat", 40), tag("cat", 85), tag("castle", 70)])

        by_name = {t.name: t for t in result.tags}
        assert by_name["cat"].confidence == 85
        assert by_name["animal"].source == TagSource.COMPUTED.value

        stored = {(t.name, t.source): t.confidence for t in await store.get_media_tags(media.id)}
        assert stored[("cat", "WD14")] == 85
        assert stored[("castle", "WD14")] == 70
        assert stored[("animal", "Computed")] == 70

    async def test_prompt_tags_added(self, reconciler, make_media):
        """Test prompt keywords and point-of-interest names become tags"""
        media = await make_media(meta={"prompt": "photorealistic portrait of emma watson"})
        result = await reconciler.reconcile(media, TagSource.WD14, [])

        by_name = {t.name: t for t in result.tags}
        assert by_name["emma watson"].confidence == 100
        assert by_name["photorealistic"].confidence == 70

    async def test_existing_dictionary_entries_reused(self, reconciler, add_rows, make_media, cache):
        """Test known names resolve to their dictionary entry and fill the cache"""
        await add_rows(Tag(id=50, name="gore", nsfw_level=NsfwLevel.BLOCKED))
        media = await make_media()

        result = await reconciler.reconcile(media, TagSource.CLAVATA, [tag("gore", 90, TagSource.CLAVATA)])
        gore = next(t for t in result.tags if t.name == "gore")
        assert gore.id == 50
        assert gore.is_blocking
        assert result.has_blocking_tag
        assert (await cache.get_many(["gore"]))["gore"].id == 50

    async def test_new_severity_rung_tags_seeded(self, reconciler, make_media):
        """Test rung-named tags are created at the matching level"""
        media = await make_media()
        result = await reconciler.reconcile(media, TagSource.CLAVATA, [tag("x", 90, TagSource.CLAVATA)])
        rung = next(t for t in result.tags if t.name == "x")
        assert rung.nsfw_level == NsfwLevel.X

    async def test_ignored_tags_disabled(self, reconciler, store, make_media):
        """Test ignore-listed (tag, source) pairs are stored disabled"""
        media = await make_media()
        await reconciler.reconcile(media, TagSource.WD14, [tag("loli", 90)])

        stored = await store.get_media_tags(media.id)
        loli = next(t for t in stored if t.name == "loli")
        assert loli.ignored

    async def test_substitution_rules_applied(self, reconciler, add_rows, make_media):
        """Test admin rules run after computed tags"""
        await add_rows(
            TagRule(type=TagRuleType.REPLACE, trigger_tag="kitty", target_tag="cat", position=1),
            TagRule(type=TagRuleType.APPEND, trigger_tag="cat", target_tag="pet", position=2),
        )
        media = await make_media()
        result = await reconciler.reconcile(media, TagSource.WD14, [tag("kitty", 90)])
        names = {t.name for t in result.tags}
        assert {"cat", "pet"} <= names
        assert "kitty" not in names

    async def test_stale_cache_is_used(self, reconciler, store, add_rows, make_media, cache):
        """Test cached entries win over the dictionary until invalidated"""
        await add_rows(Tag(id=60, name="smoke", nsfw_level=0))
        media = await make_media()
        await cache.set_many([CachedTag(60, "smoke", NsfwLevel.BLOCKED)])

        result = await reconciler.reconcile(media, TagSource.WD14, [tag("smoke", 90)])
        assert result.has_blocking_tag

        await cache.invalidate(["smoke"])
        result = await reconciler.reconcile(media, TagSource.WD14, [tag("smoke", 90)])
        assert not result.has_blocking_tag

    async def test_empty_submission(self, reconciler, store, make_media):
        """Test a submission without tags writes no associations"""
        media = await make_media()
        store.upsert_tag_associations = AsyncMock()
        result = await reconciler.reconcile(media, TagSource.WD14, [])
        assert result.tags == []
        store.upsert_tag_associations.assert_not_awaited()
