"""Tests for review escalation"""
from unittest.mock import AsyncMock

import pytest

from scan_engine.escalation import (
    EscalationContext,
    ReviewEscalationEvaluator,
    Reviewer,
    build_review_conditions,
    determine_reviewer,
)
from scan_engine.models import NsfwLevel, ReviewReason
from scan_engine.reconciler import ResolvedTag

_ids = iter(range(1, 10_000))


def resolved(name, source="WD14", level=0, ignored=False):
    return ResolvedTag(id=next(_ids), name=name, confidence=90, source=source, nsfw_level=level, ignored=ignored)


def context(tags, nsfw=False, **kwargs):
    return EscalationContext(media_id=1, user_id=1, tags=tags, nsfw=nsfw, **kwargs)


@pytest.fixture
def new_user_check():
    return AsyncMock(return_value=False)


@pytest.fixture
def evaluator(new_user_check):
    return ReviewEscalationEvaluator(new_user_check=new_user_check)


class TestReviewConditions:
    """Tests for the compound reviewer conditions"""

    def test_unconscious_with_high_severity(self):
        """Test unconscious with an r/x/xxx tag routes to moderators"""
        assert determine_reviewer(["unconscious", "x"], build_review_conditions()) == Reviewer.MODERATORS
        assert determine_reviewer(["unconscious", "pg"], build_review_conditions()) is None

    def test_knight_tags(self):
        """Test configured knight tags route to knights"""
        conditions = build_review_conditions(["latex"])
        assert determine_reviewer(["latex"], conditions) == Reviewer.KNIGHTS


class TestEscalationPriority:
    """Tests for the ordered escalation stages"""

    async def test_poi_beats_blocked_tag(self, evaluator):
        """Test a point-of-interest match wins over a blocked tag"""
        tags = [resolved("emma watson"), resolved("gore", level=NsfwLevel.BLOCKED)]
        decision = await evaluator.evaluate(context(tags, nsfw=True))
        assert decision.reason == ReviewReason.POI
        assert decision.poi

    async def test_blocked_tag(self, evaluator):
        """Test a non-ignored blocked tag escalates"""
        decision = await evaluator.evaluate(context([resolved("gore", level=NsfwLevel.BLOCKED)], nsfw=True))
        assert decision.reason == ReviewReason.TAG

    async def test_ignored_blocked_tag(self, evaluator):
        """Test ignored blocked tags do not escalate"""
        decision = await evaluator.evaluate(context([resolved("gore", level=NsfwLevel.BLOCKED, ignored=True)]))
        assert decision.reason is None

    async def test_moderator_condition_escalates_as_tag(self, evaluator):
        """Test the compound moderator condition escalates with the tag reason"""
        decision = await evaluator.evaluate(context([resolved("unconscious"), resolved("xxx")], nsfw=True))
        assert decision.reason == ReviewReason.TAG
        assert decision.reviewer == Reviewer.MODERATORS

    async def test_knights_do_not_escalate(self, new_user_check):
        """Test the knights reviewer is recorded without a review reason"""
        evaluator = ReviewEscalationEvaluator(new_user_check, build_review_conditions(["latex"]))
        decision = await evaluator.evaluate(context([resolved("latex")]))
        assert decision.reason is None
        assert decision.reviewer == Reviewer.KNIGHTS


class TestMinorStage:
    """Tests for minor-depiction escalation"""

    async def test_pg13_young_and_realistic(self, evaluator):
        """Test a pg-13 rung with a young-age tag and realistic escalates"""
        tags = [resolved("pg-13", "Clavata"), resolved("child-13", "Clavata"), resolved("realistic", "Clavata")]
        decision = await evaluator.evaluate(context(tags))
        assert decision.reason == ReviewReason.MINOR
        assert decision.minor

    async def test_pg13_young_without_realistic(self, evaluator):
        """Test an older young-age tag alone at pg-13 does not escalate"""
        tags = [resolved("pg-13", "Clavata"), resolved("child-15", "Clavata")]
        decision = await evaluator.evaluate(context(tags))
        assert decision.reason is None

    async def test_pg_with_young_tag(self, evaluator):
        """Test the pg rung with any young-age tag escalates"""
        tags = [resolved("pg", "Clavata"), resolved("child-15", "Clavata")]
        decision = await evaluator.evaluate(context(tags))
        assert decision.reason == ReviewReason.MINOR

    async def test_minor_tag_without_adult(self, evaluator):
        """Test a minor-indicator tag escalates unless an adult tag is present"""
        assert (await evaluator.evaluate(context([resolved("child")]))).reason == ReviewReason.MINOR
        assert (await evaluator.evaluate(context([resolved("child"), resolved("adult")]))).reason is None

    async def test_stylized_minor_tag_needs_nsfw(self, evaluator):
        """Test stylized content only escalates when it is also NSFW"""
        tags = [resolved("child"), resolved("anime")]
        assert (await evaluator.evaluate(context(tags))).reason is None
        assert (await evaluator.evaluate(context(tags, nsfw=True))).reason == ReviewReason.MINOR

    async def test_resource_minor_with_nsfw(self, evaluator):
        """Test minor resources escalate NSFW content"""
        decision = await evaluator.evaluate(context([resolved("castle")], nsfw=True, resource_minor=True))
        assert decision.reason == ReviewReason.MINOR

    async def test_prompt_heuristic(self, evaluator):
        """Test NSFW prompts mentioning young nouns escalate"""
        decision = await evaluator.evaluate(context([resolved("castle")], nsfw=True, prompt="a little girl"))
        assert decision.reason == ReviewReason.MINOR


class TestNewUserStage:
    """Tests for the new-account heuristic"""

    async def test_new_user_nsfw(self, evaluator, new_user_check):
        """Test NSFW content from a new account escalates"""
        new_user_check.return_value = True
        decision = await evaluator.evaluate(context([resolved("castle")], nsfw=True))
        assert decision.reason == ReviewReason.NEW_USER
        new_user_check.assert_awaited_once_with(1)

    async def test_new_user_sfw_not_checked(self, evaluator, new_user_check):
        """Test SFW content skips the account lookup"""
        decision = await evaluator.evaluate(context([resolved("castle")]))
        assert decision.reason is None
        new_user_check.assert_not_awaited()
