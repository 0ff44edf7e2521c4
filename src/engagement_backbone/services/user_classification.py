"""
User Classification Service

Assigns each user a journey stage, an engagement level, an exploration
breadth, focus areas and a dominant flavor community, then stores the
result in user_classifications (one row per user).

The determine_* functions are pure and take the aggregated UserStats.

Author: Platform Engineering
Date: 2026-03-05
"""

from dataclasses import asdict, dataclass
from typing import Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from engagement_backbone.config.constants import EngagementLevel, ExplorationBreadth, JourneyStage
from engagement_backbone.core.exceptions import UserNotFoundError
from engagement_backbone.core.logging.logger import get_logger
from engagement_backbone.infrastructure.database.models import User, UserClassification, utcnow
from engagement_backbone.services.flavor_community import FlavorCommunityService, dominant_community
from engagement_backbone.services.user_stats import UserStats, gather_user_stats

logger = get_logger(__name__)

FOCUS_AREA_MIN_COUNT = 3


@dataclass
class ClassificationResult:
    user_id: int
    journey_stage: str
    engagement_level: str
    exploration_breadth: str
    focus_areas: list[str]
    flavor_profile_community: str | None
    classification_data: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# =============================================================================
# Rules
# =============================================================================


def determine_journey_stage(stats: UserStats) -> JourneyStage:
    if stats.days_since_last_activity >= 30:
        return JourneyStage.DORMANT
    if stats.total_rankings == 0 and stats.days_since_registration <= 7:
        return JourneyStage.NEW_USER
    if stats.total_rankings >= 31 and stats.activities_30d >= 20:
        return JourneyStage.POWER_USER
    if 11 <= stats.total_rankings <= 30 and stats.activities_30d >= 5:
        return JourneyStage.ENGAGED
    if 1 <= stats.total_rankings <= 10 and stats.activities_30d >= 1:
        return JourneyStage.EXPLORING
    return JourneyStage.EXPLORING if stats.total_rankings > 0 else JourneyStage.NEW_USER


def determine_engagement_level(stats: UserStats) -> EngagementLevel:
    activities = stats.activities_30d
    if activities >= 50:
        return EngagementLevel.VERY_HIGH
    if activities >= 20:
        return EngagementLevel.HIGH
    if activities >= 5:
        return EngagementLevel.MEDIUM
    if activities >= 1:
        return EngagementLevel.LOW
    return EngagementLevel.NONE


def determine_exploration_breadth(stats: UserStats) -> ExplorationBreadth:
    if stats.unique_flavors >= 9 and stats.unique_animals >= 3:
        return ExplorationBreadth.DIVERSE
    if 4 <= stats.unique_flavors <= 8 and stats.unique_animals >= 2:
        return ExplorationBreadth.MODERATE
    return ExplorationBreadth.NARROW


def determine_focus_areas(stats: UserStats) -> list[str]:
    """Top two flavors and top two animals, each ranked at least three times."""
    focus: list[str] = []
    for distribution in (stats.flavor_distribution, stats.animal_distribution):
        top = sorted(distribution.items(), key=lambda kv: (-kv[1], kv[0]))[:2]
        focus.extend(name for name, count in top if count >= FOCUS_AREA_MIN_COUNT)
    return focus


# =============================================================================
# Service
# =============================================================================


class UserClassificationService:
    """
    Classifies one user inside the caller's session.

    Usage:
        async with database.worker_session() as session:
            result = await UserClassificationService(session).classify_user(42)
    """

    def __init__(self, session: AsyncSession, communities: FlavorCommunityService | None = None):
        self.session = session
        self.communities = communities or FlavorCommunityService(session)

    async def classify_user(self, user_id: int, stats: UserStats | None = None) -> ClassificationResult:
        """
        Recompute and store the classification of one user.

        STAGE-CLS.1: Classification

        Raises:
            UserNotFoundError: No such user (terminal for the job)
        """
        if await self.session.get(User, user_id) is None:
            raise UserNotFoundError(f"User {user_id} not found", details={"user_id": user_id})

        if stats is None:
            stats = await gather_user_stats(self.session, user_id)
        communities = await self.communities.update_user_flavor_communities(user_id)

        data = stats.to_classification_data()
        data["flavor_communities"] = [
            {
                "flavor_profile": c.flavor,
                "state": c.state,
                "products_purchased": c.products_purchased,
                "products_delivered": c.products_delivered,
                "products_ranked": c.products_ranked,
                "avg_rank_position": c.avg_rank_position,
            }
            for c in communities
        ]

        result = ClassificationResult(
            user_id=user_id,
            journey_stage=determine_journey_stage(stats).value,
            engagement_level=determine_engagement_level(stats).value,
            exploration_breadth=determine_exploration_breadth(stats).value,
            focus_areas=determine_focus_areas(stats),
            flavor_profile_community=dominant_community(communities),
            classification_data=data,
        )

        row = await self.session.scalar(sa.select(UserClassification).where(UserClassification.user_id == user_id))
        if row is None:
            row = UserClassification(user_id=user_id)
            self.session.add(row)
        row.journey_stage = result.journey_stage
        row.engagement_level = result.engagement_level
        row.exploration_breadth = result.exploration_breadth
        row.focus_areas = result.focus_areas
        row.flavor_profile_community = result.flavor_profile_community
        row.classification_data = result.classification_data
        row.updated_at = utcnow()
        await self.session.flush()

        logger.info(
            "User classified",
            stage="CLS.1",
            user_id=user_id,
            journey_stage=result.journey_stage,
            engagement_level=result.engagement_level,
            exploration_breadth=result.exploration_breadth,
        )
        return result
