"""
User Statistics

One aggregate read of a user's rankings, activities, purchases and earned
coins, shared by classification, guidance and the coin managers.

Achievement requirements are small JSON rules evaluated against these
statistics by a pure function, so managers can swap the evaluator:

    {"stat": "total_rankings", "min": 10}
    {"stat": "flavor_rankings", "flavor": "teriyaki", "min": 3}
    {"stat": "animal_rankings", "animal": "beef", "min": 5}
    {"stat": "products_purchased", "product_ids": ["p1", "p2"], "min": 2}

Author: Platform Engineering
Date: 2026-03-05
"""

from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from engagement_backbone.infrastructure.database.models import (
    Achievement,
    CustomerOrderItem,
    ProductMetadata,
    ProductRanking,
    UserAchievement,
    UserActivity,
    utcnow,
)

DELIVERED_STATUS = "delivered"
NO_ACTIVITY_DAYS = 999


@dataclass
class UserStats:
    user_id: int
    total_rankings: int = 0
    unique_products_ranked: int = 0
    activities_30d: int = 0
    page_views: int = 0
    searches: int = 0
    engagement_coins: int = 0
    days_since_last_activity: int = NO_ACTIVITY_DAYS
    days_since_registration: int = 0
    flavor_distribution: dict[str, int] = field(default_factory=dict)
    animal_distribution: dict[str, int] = field(default_factory=dict)
    purchased_product_ids: set[str] = field(default_factory=set)
    delivered_product_ids: set[str] = field(default_factory=set)
    ranked_product_ids: set[str] = field(default_factory=set)

    @property
    def unique_flavors(self) -> int:
        return len(self.flavor_distribution)

    @property
    def unique_animals(self) -> int:
        return len(self.animal_distribution)

    @property
    def products_purchased(self) -> int:
        return len(self.purchased_product_ids)

    @property
    def products_delivered(self) -> int:
        return len(self.delivered_product_ids)

    def stat(self, name: str) -> int:
        value = getattr(self, name, None)
        if isinstance(value, bool) or not isinstance(value, int):
            raise KeyError(name)
        return value

    def to_classification_data(self) -> dict[str, Any]:
        return {
            "total_rankings": self.total_rankings,
            "total_engagement_coins": self.engagement_coins,
            "unique_flavors": self.unique_flavors,
            "unique_animals": self.unique_animals,
            "activities_30d": self.activities_30d,
            "days_since_last_activity": self.days_since_last_activity,
            "days_since_registration": self.days_since_registration,
            "flavor_distribution": dict(self.flavor_distribution),
            "animal_distribution": dict(self.animal_distribution),
        }


# =============================================================================
# Requirement evaluation
# =============================================================================

RequirementEvaluator = Callable[[dict[str, Any], UserStats], bool]


def requirement_progress(requirement: dict[str, Any], stats: UserStats) -> tuple[int, int]:
    """
    Return (current, target) for one requirement.

    Unknown stats count as zero progress, so a malformed rule is simply
    never met.
    """
    target = int(requirement.get("min", 1))
    stat = requirement.get("stat", "")

    if stat == "flavor_rankings":
        current = stats.flavor_distribution.get(requirement.get("flavor", ""), 0)
    elif stat == "animal_rankings":
        current = stats.animal_distribution.get(requirement.get("animal", ""), 0)
    elif stat == "products_purchased" and requirement.get("product_ids"):
        current = len(stats.purchased_product_ids.intersection(requirement["product_ids"]))
    elif stat == "products_ranked" and requirement.get("product_ids"):
        current = len(stats.ranked_product_ids.intersection(requirement["product_ids"]))
    else:
        try:
            current = stats.stat(stat)
        except KeyError:
            current = 0
    return current, target


def requirement_met(requirement: dict[str, Any], stats: UserStats) -> bool:
    current, target = requirement_progress(requirement, stats)
    return current >= target


# =============================================================================
# Aggregation
# =============================================================================


async def gather_user_stats(session: AsyncSession, user_id: int, now: datetime | None = None) -> UserStats:
    """
    Read everything the derived-state services need about one user.

    STAGE-SVC.1: User statistics
    """
    now = now or utcnow()
    stats = UserStats(user_id=user_id)

    ranking_rows = (
        await session.execute(
            sa.select(
                ProductRanking.product_id,
                ProductRanking.created_at,
                ProductMetadata.primary_flavor,
                ProductMetadata.animal_type,
            )
            .outerjoin(ProductMetadata, ProductMetadata.product_id == ProductRanking.product_id)
            .where(ProductRanking.user_id == user_id)
        )
    ).all()

    flavors: Counter[str] = Counter()
    animals: Counter[str] = Counter()
    first_seen: datetime | None = None
    for product_id, created_at, flavor, animal in ranking_rows:
        stats.ranked_product_ids.add(product_id)
        if flavor:
            flavors[flavor] += 1
        if animal:
            animals[animal] += 1
        first_seen = created_at if first_seen is None else min(first_seen, created_at)

    stats.total_rankings = len(ranking_rows)
    stats.unique_products_ranked = len(stats.ranked_product_ids)
    stats.flavor_distribution = dict(flavors)
    stats.animal_distribution = dict(animals)

    activity = (
        await session.execute(
            sa.select(
                sa.func.min(UserActivity.created_at),
                sa.func.max(UserActivity.created_at),
                sa.func.count().filter(UserActivity.created_at >= now - timedelta(days=30)),
                sa.func.count().filter(UserActivity.activity_type == "page_view"),
                sa.func.count().filter(UserActivity.activity_type == "search"),
            ).where(UserActivity.user_id == user_id)
        )
    ).one()
    first_activity, last_activity, stats.activities_30d, stats.page_views, stats.searches = activity

    if first_activity is not None:
        first_seen = first_activity if first_seen is None else min(first_seen, first_activity)
    if last_activity is not None:
        stats.days_since_last_activity = (now - last_activity).days
    if first_seen is not None:
        stats.days_since_registration = (now - first_seen).days

    purchase_rows = (
        await session.execute(
            sa.select(CustomerOrderItem.product_id, CustomerOrderItem.fulfillment_status).where(
                CustomerOrderItem.user_id == user_id
            )
        )
    ).all()
    for product_id, status in purchase_rows:
        stats.purchased_product_ids.add(product_id)
        if status == DELIVERED_STATUS:
            stats.delivered_product_ids.add(product_id)

    stats.engagement_coins = (
        await session.execute(
            sa.select(sa.func.count())
            .select_from(UserAchievement)
            .join(Achievement, Achievement.id == UserAchievement.achievement_id)
            .where(UserAchievement.user_id == user_id, Achievement.collection_type == "engagement_collection")
        )
    ).scalar_one()

    return stats
