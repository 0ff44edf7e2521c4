"""
Engagement Score

Per-user engagement score over three windows (all time, 7 days, 30 days):

    score = achievements + page views + rankings + searches

Scores are upserted into user_engagement_scores, one row per user.
"""

from datetime import datetime, timedelta
from typing import Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from engagement_backbone.core.exceptions import UserNotFoundError
from engagement_backbone.core.logging.logger import get_logger
from engagement_backbone.infrastructure.database.models import (
    ProductRanking,
    User,
    UserAchievement,
    UserActivity,
    UserEngagementScore,
    utcnow,
)

logger = get_logger(__name__)

# Column suffix per window; None is all time
WINDOWS: dict[str, int | None] = {"": None, "_week": 7, "_month": 30}


class EngagementScoreService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _window_counts(self, user_id: int, since: datetime | None) -> dict[str, int]:
        def _since(column):
            return [column >= since] if since is not None else []

        achievements = await self.session.scalar(
            sa.select(sa.func.count())
            .select_from(UserAchievement)
            .where(UserAchievement.user_id == user_id, *_since(UserAchievement.earned_at))
        )
        rankings = await self.session.scalar(
            sa.select(sa.func.count())
            .select_from(ProductRanking)
            .where(ProductRanking.user_id == user_id, *_since(ProductRanking.created_at))
        )
        page_views, searches = (
            await self.session.execute(
                sa.select(
                    sa.func.count().filter(UserActivity.activity_type == "page_view"),
                    sa.func.count().filter(UserActivity.activity_type == "search"),
                ).where(UserActivity.user_id == user_id, *_since(UserActivity.created_at))
            )
        ).one()
        return {
            "achievements_count": achievements or 0,
            "page_views_count": page_views or 0,
            "rankings_count": rankings or 0,
            "searches_count": searches or 0,
        }

    async def recalculate_user_score(self, user_id: int, now: datetime | None = None) -> dict[str, Any]:
        """
        Recompute and store all three windows of one user's score.

        STAGE-ENG.1: Score recalculation

        Raises:
            UserNotFoundError: No such user (terminal for the job)
        """
        if await self.session.get(User, user_id) is None:
            raise UserNotFoundError(f"User {user_id} not found", details={"user_id": user_id})

        now = now or utcnow()
        values: dict[str, Any] = {}
        for suffix, days in WINDOWS.items():
            counts = await self._window_counts(user_id, now - timedelta(days=days) if days else None)
            for name, count in counts.items():
                values[f"{name}{suffix}"] = count
            values[f"engagement_score{suffix}"] = sum(counts.values())

        values["unique_products_count"] = (
            await self.session.scalar(
                sa.select(sa.func.count(sa.distinct(ProductRanking.product_id))).where(
                    ProductRanking.user_id == user_id
                )
            )
            or 0
        )

        row = await self.session.scalar(sa.select(UserEngagementScore).where(UserEngagementScore.user_id == user_id))
        if row is None:
            row = UserEngagementScore(user_id=user_id)
            self.session.add(row)
        for name, value in values.items():
            setattr(row, name, value)
        row.last_updated_at = now
        await self.session.flush()

        logger.debug(
            "Engagement score recalculated",
            stage="ENG.1",
            user_id=user_id,
            score=values["engagement_score"],
            score_week=values["engagement_score_week"],
        )
        return {"user_id": user_id, **values}
