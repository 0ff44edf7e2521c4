"""
Unit Tests for User Statistics and UserClassificationService

Runs against in-memory SQLite.
"""

from datetime import timedelta

import pytest
import sqlalchemy as sa

from engagement_backbone.core.exceptions import UserNotFoundError
from engagement_backbone.infrastructure.database.models import (
    Achievement,
    CustomerOrderItem,
    ProductMetadata,
    ProductRanking,
    UserAchievement,
    UserActivity,
    UserClassification,
    UserFlavorCommunity,
    utcnow,
)
from engagement_backbone.services.user_classification import UserClassificationService
from engagement_backbone.services.user_stats import NO_ACTIVITY_DAYS, gather_user_stats

NOW = utcnow()


def _order_item(user_id: int, line_item_id: str, product_id: str, status: str | None) -> CustomerOrderItem:
    return CustomerOrderItem(
        line_item_id=line_item_id,
        order_number="#1001",
        order_date=NOW - timedelta(days=5),
        product_id=product_id,
        fulfillment_status=status,
        user_id=user_id,
        customer_email="user@example.com",
    )


@pytest.fixture
async def seeded_user(user_factory, db_add):
    user_id = await user_factory()
    await db_add(
        ProductMetadata(product_id="p1", title="Teriyaki Beef", primary_flavor="teriyaki", animal_type="beef"),
        ProductMetadata(product_id="p2", title="Teriyaki Turkey", primary_flavor="teriyaki", animal_type="turkey"),
        ProductMetadata(product_id="p4", title="Spicy Pork", primary_flavor="spicy", animal_type="pork"),
        ProductRanking(user_id=user_id, product_id="p1", ranking=1, created_at=NOW - timedelta(days=2)),
        ProductRanking(user_id=user_id, product_id="p2", ranking=1, created_at=NOW - timedelta(days=2)),
        ProductRanking(user_id=user_id, product_id="p3", ranking=3, created_at=NOW - timedelta(days=2)),
        UserActivity(user_id=user_id, activity_type="page_view", created_at=NOW - timedelta(days=1)),
        UserActivity(
            user_id=user_id,
            activity_type="search",
            activity_data={"product_id": "p4"},
            created_at=NOW - timedelta(days=40),
        ),
        _order_item(user_id, "li-1", "p1", "delivered"),
        _order_item(user_id, "li-2", "p2", None),
        Achievement(id=1, code="first-rank", name="First Rank", collection_type="engagement_collection"),
        UserAchievement(user_id=user_id, achievement_id=1),
    )
    return user_id


@pytest.mark.unit
class TestGatherUserStats:
    @pytest.mark.asyncio
    async def test_aggregates(self, database, seeded_user):
        async with database.session() as session:
            stats = await gather_user_stats(session, seeded_user, now=NOW)

        assert stats.total_rankings == 3
        assert stats.unique_products_ranked == 3
        assert stats.flavor_distribution == {"teriyaki": 2}
        assert stats.animal_distribution == {"beef": 1, "turkey": 1}
        assert stats.activities_30d == 1
        assert stats.page_views == 1
        assert stats.searches == 1
        assert stats.days_since_last_activity == 1
        assert stats.days_since_registration == 40
        assert stats.purchased_product_ids == {"p1", "p2"}
        assert stats.delivered_product_ids == {"p1"}
        assert stats.engagement_coins == 1

    @pytest.mark.asyncio
    async def test_empty_user(self, database, user_factory):
        user_id = await user_factory()
        async with database.session() as session:
            stats = await gather_user_stats(session, user_id)

        assert stats.total_rankings == 0
        assert stats.days_since_last_activity == NO_ACTIVITY_DAYS
        assert stats.days_since_registration == 0
        assert stats.to_classification_data()["total_engagement_coins"] == 0


@pytest.mark.unit
class TestUserClassificationService:
    @pytest.mark.asyncio
    async def test_classifies_and_stores(self, database, seeded_user):
        async with database.session() as session:
            result = await UserClassificationService(session).classify_user(seeded_user)

        assert result.journey_stage == "exploring"
        assert result.engagement_level == "low"
        assert result.exploration_breadth == "narrow"
        assert result.flavor_profile_community == "teriyaki:enthusiast"
        flavors = {c["flavor_profile"]: c for c in result.classification_data["flavor_communities"]}
        assert flavors["spicy"]["state"] == "curious"
        assert flavors["teriyaki"]["products_purchased"] == 2

        async with database.session() as session:
            row = await session.scalar(sa.select(UserClassification).where(UserClassification.user_id == seeded_user))
            communities = (
                await session.scalars(sa.select(UserFlavorCommunity).where(UserFlavorCommunity.user_id == seeded_user))
            ).all()
        assert row.journey_stage == "exploring"
        assert row.classification_data["total_rankings"] == 3
        assert {c.flavor_profile: c.community_state for c in communities} == {
            "teriyaki": "enthusiast",
            "spicy": "curious",
        }

    @pytest.mark.asyncio
    async def test_reclassification_updates_single_row(self, database, user_factory):
        user_id = await user_factory()

        for _ in range(2):
            async with database.session() as session:
                result = await UserClassificationService(session).classify_user(user_id)

        assert result.journey_stage == "dormant"
        assert result.engagement_level == "none"
        assert result.flavor_profile_community is None
        async with database.session() as session:
            count = await session.scalar(sa.select(sa.func.count()).select_from(UserClassification))
        assert count == 1

    @pytest.mark.asyncio
    async def test_missing_user(self, database):
        with pytest.raises(UserNotFoundError):
            async with database.session() as session:
                await UserClassificationService(session).classify_user(999)
