"""
Coin Managers

Re-evaluate a user's coin awards against current statistics. A manager
owns a set of collection types; for each active achievement of those
types it awards the coin when the requirement is met and revokes an
earned coin when it no longer is (cancelled orders, fulfillment
downgrades).

Requirement evaluation is a pluggable pure function, requirement_met by
default.
"""

from dataclasses import dataclass, field
from typing import Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from engagement_backbone.config.constants import COLLECTION_COIN_TYPES, ENGAGEMENT_COIN_TYPES
from engagement_backbone.core.logging.logger import get_logger
from engagement_backbone.infrastructure.database.models import Achievement, UserAchievement, utcnow
from engagement_backbone.services.user_stats import (
    RequirementEvaluator,
    UserStats,
    gather_user_stats,
    requirement_met,
)

logger = get_logger(__name__)


@dataclass
class RecalculationResult:
    user_id: int
    manager: str
    awarded: list[str] = field(default_factory=list)
    revoked: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"user_id": self.user_id, "manager": self.manager, "awarded": self.awarded, "revoked": self.revoked}


class CoinManager:
    name = "coins"
    collection_types: tuple[str, ...] = ()

    def __init__(self, session: AsyncSession, evaluator: RequirementEvaluator = requirement_met):
        self.session = session
        self.evaluator = evaluator

    async def recalculate_user_coins(
        self,
        user_id: int,
        context: dict[str, Any] | None = None,
        stats: UserStats | None = None,
    ) -> RecalculationResult:
        """
        Award and revoke this manager's coins for one user.

        STAGE-COIN.2: Coin re-evaluation
        """
        if stats is None:
            stats = await gather_user_stats(self.session, user_id)
        result = RecalculationResult(user_id=user_id, manager=self.name)

        achievements = list(
            await self.session.scalars(
                sa.select(Achievement)
                .where(Achievement.is_active.is_(True), Achievement.collection_type.in_(self.collection_types))
                .order_by(Achievement.id)
            )
        )
        if not achievements:
            return result

        earned = {
            row.achievement_id: row
            for row in await self.session.scalars(
                sa.select(UserAchievement).where(
                    UserAchievement.user_id == user_id,
                    UserAchievement.achievement_id.in_([a.id for a in achievements]),
                )
            )
        }

        for achievement in achievements:
            qualified = self.evaluator(achievement.requirement or {}, stats)
            held = earned.get(achievement.id)
            if qualified and held is None:
                self.session.add(
                    UserAchievement(
                        user_id=user_id,
                        achievement_id=achievement.id,
                        points_awarded=achievement.points,
                        earned_at=utcnow(),
                    )
                )
                result.awarded.append(achievement.code)
            elif not qualified and held is not None:
                await self.session.delete(held)
                result.revoked.append(achievement.code)

        await self.session.flush()
        if result.awarded or result.revoked:
            logger.info(
                "Coins recalculated",
                stage="COIN.2",
                user_id=user_id,
                manager=self.name,
                awarded=result.awarded,
                revoked=result.revoked,
                reason=(context or {}).get("reason"),
            )
        return result


class EngagementManager(CoinManager):
    name = "engagement"
    collection_types = ENGAGEMENT_COIN_TYPES


class CollectionManager(CoinManager):
    name = "collection"
    collection_types = COLLECTION_COIN_TYPES
