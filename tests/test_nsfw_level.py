"""Tests for severity aggregation"""
from scan_engine.models import NsfwLevel
from scan_engine.nsfw_level import aggregate_nsfw_level, is_nsfw, stored_nsfw_level
from scan_engine.reconciler import ResolvedTag


def resolved(name, level, ignored=False):
    return ResolvedTag(id=hash(name) % 1000, name=name, confidence=90, source="WD14", nsfw_level=level, ignored=ignored)


class TestAggregateNsfwLevel:
    """Tests for aggregate_nsfw_level"""

    def test_maximum_of_enabled_tags(self):
        """Test the level is the maximum across non-disabled tags"""
        tags = [resolved("castle", 0), resolved("r", NsfwLevel.R), resolved("gore", NsfwLevel.BLOCKED, ignored=True)]
        assert aggregate_nsfw_level(tags) == NsfwLevel.R

    def test_empty(self):
        """Test no tags means level 0"""
        assert aggregate_nsfw_level([]) == 0


class TestSeverityHelpers:
    """Tests for the threshold and lock helpers"""

    def test_threshold(self):
        """Test only levels above PG13 count as NSFW"""
        assert not is_nsfw(NsfwLevel.PG13, 3)
        assert is_nsfw(NsfwLevel.R, 3)

    def test_locked_level_is_kept(self):
        """Test a locked level is never overwritten by a higher computed one"""
        assert stored_nsfw_level(NsfwLevel.PG, NsfwLevel.X, locked=True) == NsfwLevel.PG
        assert stored_nsfw_level(NsfwLevel.PG, NsfwLevel.X, locked=False) == NsfwLevel.X

    def test_unlocked_level_never_decreases(self):
        """Test a lower computed level does not replace a higher stored one"""
        assert stored_nsfw_level(NsfwLevel.X, NsfwLevel.PG, locked=False) == NsfwLevel.X
        assert stored_nsfw_level(NsfwLevel.NONE, NsfwLevel.R, locked=False) == NsfwLevel.R
