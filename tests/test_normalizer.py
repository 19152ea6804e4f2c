"""Tests for per-source tag normalization"""
import pytest

from scan_engine.models import TagSource
from scan_engine.normalizer import canonical_name, normalize_tags, severity_rank
from scan_engine.schemas import IncomingTag


def raw(name, confidence=None):
    return IncomingTag(name=name, confidence=confidence)


class TestCanonicalName:
    """Tests for name canonicalization"""

    def test_lowercases_trims_and_replaces_underscores(self):
        """Test names are lowercased, trimmed and use single spaces"""
        assert canonical_name("  Long_Hair  ") == "long hair"
        assert canonical_name("blue__sky") == "blue sky"

    def test_severity_rank(self):
        """Test rung ordering and non-rung tags"""
        assert severity_rank("pg") < severity_rank("pg-13") < severity_rank("xxx")
        assert severity_rank("castle") == -1


class TestNormalizeTags:
    """Tests for normalize_tags"""

    def test_word_form_source_replaces_underscores(self):
        """Test WD14 tags become space separated"""
        tags = normalize_tags([raw("long_hair", 91.6)], TagSource.WD14)
        assert [(t.name, t.confidence) for t in tags] == [("long hair", 92)]

    def test_missing_confidence_uses_default(self):
        """Test confidence-less tags receive the default confidence"""
        tags = normalize_tags([raw("castle")], TagSource.REKOGNITION, default_confidence=70)
        assert tags[0].confidence == 70

    def test_unregistered_source_is_identity(self):
        """Test sources without a transform only get canonicalized"""
        tags = normalize_tags([raw("no_hat", 80)], TagSource.REKOGNITION)
        assert [t.name for t in tags] == ["no hat"]

    def test_empty_report(self):
        """Test an empty or missing tag list is valid"""
        assert normalize_tags([], TagSource.WD14) == []
        assert normalize_tags(None, TagSource.HIVE) == []


class TestSentimentBucketTags:
    """Tests for the Hive transform"""

    def test_negatives_dropped_and_prefixes_removed(self):
        """Test no_* tags are dropped and yes_* tags lose the prefix"""
        tags = normalize_tags(
            [raw("no_nudity", 99), raw("yes_female_nudity", 95), raw("animal_genitalia", 60)],
            TagSource.HIVE,
        )
        assert [t.name for t in tags] == ["female nudity", "animal genitalia"]

    def test_synonyms_and_ignore_list(self):
        """Test synonyms are renamed and neutral tags ignored"""
        tags = normalize_tags(
            [raw("general_nsfw", 90), raw("general_suggestive", 80), raw("natural", 99),
             raw("general_not_nsfw_not_suggestive", 99)],
            TagSource.HIVE,
        )
        assert [t.name for t in tags] == ["nsfw", "suggestive"]


class TestSeverityBucketTags:
    """Tests for the Clavata transform"""

    def test_keeps_only_highest_rung(self):
        """Test severity rungs collapse into the highest retained one"""
        tags = normalize_tags(
            [raw("pg-13", 90), raw("r", 80), raw("x", 40), raw("castle", 88)],
            TagSource.CLAVATA,
        )
        names = [t.name for t in tags]
        assert names == ["castle", "r"]
        assert tags[-1].annotations["severity_rung"] == "r"

    def test_defaults_to_pg(self):
        """Test a report without rungs is treated as pg"""
        tags = normalize_tags([raw("castle", 88)], TagSource.CLAVATA)
        assert tags[-1].name == "pg"
        assert tags[-1].confidence == 100

    def test_per_tag_confidence_requirements(self):
        """Test listed tags need higher confidence than the default floor"""
        tags = normalize_tags(
            [raw("unconscious", 55), raw("hypnosis", 75), raw("smoke", 52), raw("mist", 50)],
            TagSource.CLAVATA,
        )
        names = {t.name for t in tags}
        assert "unconscious" not in names
        assert "hypnosis" in names
        assert "smoke" in names
        assert "mist" not in names

    @pytest.mark.parametrize("confidence,expected", [(40, "pg"), (60, "xxx")])
    def test_rung_below_floor_is_dropped(self, confidence, expected):
        """Test rungs under the severity floor are ignored"""
        tags = normalize_tags([raw("xxx", confidence)], TagSource.CLAVATA)
        assert tags[-1].name == expected
