"""
Unit Tests for Personalized Guidance

build_guidance is pure; GuidanceService runs against in-memory SQLite.
"""

import pytest
import sqlalchemy as sa

from engagement_backbone.config.constants import PAGE_CONTEXTS
from engagement_backbone.infrastructure.database.models import Achievement, UserAchievement, UserGuidanceCache
from engagement_backbone.services.guidance import GuidanceService, NextAchievement, build_guidance
from engagement_backbone.services.user_classification import ClassificationResult
from engagement_backbone.services.user_stats import UserStats


def _classification(stage: str, breadth: str = "moderate", focus: list[str] | None = None, user_id: int = 1):
    return ClassificationResult(
        user_id=user_id,
        journey_stage=stage,
        engagement_level="medium",
        exploration_breadth=breadth,
        focus_areas=focus or [],
        flavor_profile_community=None,
        classification_data={},
    )


NEXT = NextAchievement(achievement_id=7, code="flavor-hunter", name="Flavor Hunter", current=2, target=5)


@pytest.mark.unit
class TestBuildGuidance:
    def test_hook_appended(self):
        guidance = build_guidance("rank", _classification("new_user"), UserStats(user_id=1), NEXT)

        assert guidance["title"] == "Welcome to Your Flavor Ranking!"
        assert guidance["message"].endswith('3 more to unlock "Flavor Hunter"!')
        assert guidance["next_achievement"]["remaining"] == 3
        assert guidance["page_context"] == "rank"

    def test_fallback_text_without_hook(self):
        guidance = build_guidance("rank", _classification("power_user"), UserStats(user_id=1, total_rankings=40))

        assert guidance["message"].startswith("40 flavors ranked!")
        assert "Coin Book" in guidance["message"]
        assert guidance["next_achievement"] is None

    def test_no_hook_messages_ignore_next_achievement(self):
        guidance = build_guidance("general", _classification("dormant"), UserStats(user_id=1), NEXT)
        assert "unlock" not in guidance["message"]
        assert guidance["type"] == "reengagement"

    def test_narrow_products_message(self):
        classification = _classification("exploring", breadth="narrow", focus=["teriyaki", "beef"])

        guidance = build_guidance("products", classification, UserStats(user_id=1), NEXT)

        assert guidance["title"] == "Branch Out & Discover!"
        assert "teriyaki and beef" in guidance["message"]
        assert "Flavor Hunter" not in guidance["message"]

    def test_stage_without_message_uses_page_default(self):
        guidance = build_guidance("community", _classification("engaged"), UserStats(user_id=1))
        assert guidance["title"] == "Connect with Fellow Rankers!"
        assert guidance["icon"] == "wave"

    def test_unknown_page_uses_general(self):
        guidance = build_guidance("checkout", _classification("exploring"), UserStats(user_id=1, total_rankings=4))
        assert guidance["title"] == "Keep Exploring!"
        assert guidance["message"].startswith("4 flavors ranked so far!")


@pytest.mark.unit
class TestGuidanceService:
    @pytest.fixture
    async def achievements(self, user_factory, db_add):
        user_id = await user_factory()
        await db_add(
            Achievement(id=1, code="rank-10", name="Ten Ranked", collection_type="engagement_collection",
                        category="ranking", requirement={"stat": "total_rankings", "min": 10}),
            Achievement(id=2, code="rank-5", name="Five Ranked", collection_type="engagement_collection",
                        category="ranking", requirement={"stat": "total_rankings", "min": 5}),
            Achievement(id=3, code="search-3", name="Searcher", collection_type="engagement_collection",
                        category="engagement", requirement={"stat": "searches", "min": 3}),
            Achievement(id=4, code="rank-4", name="Four Ranked", collection_type="engagement_collection",
                        category="ranking", requirement={"stat": "total_rankings", "min": 4}),
            UserAchievement(user_id=user_id, achievement_id=4),
        )
        return user_id

    @pytest.mark.asyncio
    async def test_closest_unearned(self, database, achievements):
        stats = UserStats(user_id=achievements, total_rankings=3, searches=2)

        async with database.session() as session:
            service = GuidanceService(session)
            ranking = await service.closest_unearned_achievement(achievements, stats, "ranking")
            engagement = await service.closest_unearned_achievement(achievements, stats, "engagement")
            anything = await service.closest_unearned_achievement(achievements, stats)

        assert ranking.code == "rank-5"
        assert ranking.remaining == 2
        assert engagement.code == "search-3"
        assert anything.code == "search-3"

    @pytest.mark.asyncio
    async def test_refresh_upserts_every_context(self, database, achievements):
        classification = _classification("exploring", user_id=achievements)
        stats = UserStats(user_id=achievements, total_rankings=3, days_since_last_activity=1)

        for _ in range(2):
            async with database.session() as session:
                assert await GuidanceService(session).refresh(classification, stats) == len(PAGE_CONTEXTS)

        async with database.session() as session:
            rows = (await session.scalars(sa.select(UserGuidanceCache))).all()
        assert sorted(r.page_context for r in rows) == sorted(PAGE_CONTEXTS)
        rank = next(r for r in rows if r.page_context == "rank")
        assert rank.guidance_data["message"].endswith('2 more to unlock "Five Ranked"!')
