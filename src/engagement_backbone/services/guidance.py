"""
Personalized Guidance

Page-aware, journey-aware guidance messages, pre-rendered by the
classification pipeline into user_guidance_cache (one row per user and
page context).

Messages end with a tactical hook toward the closest unearned
achievement of the page's category when one exists:
    '3 more to unlock "Flavor Hunter"!'
"""

from dataclasses import dataclass
from typing import Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from engagement_backbone.config.constants import PAGE_CONTEXTS
from engagement_backbone.core.logging.logger import get_logger
from engagement_backbone.infrastructure.database.models import (
    Achievement,
    UserAchievement,
    UserGuidanceCache,
    utcnow,
)
from engagement_backbone.services.user_classification import ClassificationResult
from engagement_backbone.services.user_stats import UserStats, requirement_progress

logger = get_logger(__name__)

# Achievement category shown per page; None means any category
CONTEXT_CATEGORIES: dict[str, str | None] = {
    "rank": "ranking",
    "products": "engagement",
    "community": "engagement",
    "coinbook": None,
    "general": None,
}


@dataclass(frozen=True)
class Message:
    title: str
    icon: str
    type: str
    text: str
    # Text used instead of `text` when there is no achievement hook
    fallback: str | None = None


@dataclass(frozen=True)
class NextAchievement:
    achievement_id: int
    code: str
    name: str
    current: int
    target: int

    @property
    def remaining(self) -> int:
        return max(0, self.target - self.current)

    def hook(self) -> str:
        return f'{self.remaining} more to unlock "{self.name}"!'


# (page context, journey stage) -> message; stage None is the page default
MESSAGES: dict[tuple[str, str | None], Message] = {
    ("rank", "new_user"): Message(
        "Welcome to Your Flavor Ranking!", "target", "onboarding",
        "Ready to build your flavor profile? Drag products below to rank them from favorite to least "
        "favorite. Each ranking earns you Flavor Coins and unlocks achievements.",
    ),
    ("rank", "dormant"): Message(
        "Welcome Back, Flavor Hunter!", "fire", "reengagement",
        "We've missed you! New flavors are waiting to be ranked. Jump back in and keep building your collection.",
    ),
    ("rank", "power_user"): Message(
        "You're Crushing It", "trophy", "challenge",
        "{ranked} flavors ranked! Keep that streak alive and climb the leaderboard.",
        "{ranked} flavors ranked! Keep that streak alive and climb the leaderboard. "
        "Every new ranking brings you closer to completing your Coin Book!",
    ),
    ("rank", "engaged"): Message(
        "Keep the Momentum Going!", "muscle", "momentum",
        "You're on a roll! Rank more flavors today to maintain your streak.",
        "You're on a roll! Rank more flavors today to maintain your streak. The more you rank, the more coins you earn!",
    ),
    ("rank", "exploring"): Message(
        "Great Start!", "rocket", "discovery",
        "{ranked} flavors ranked so far! Search for flavors you've purchased, then drag them into your ranking.",
        "{ranked} flavors ranked so far! Search for flavors you've purchased, then drag them into your ranking. "
        "Each one gets you closer to unlocking new coins!",
    ),
    ("rank", None): Message(
        "Build Your Rankings", "chart", "general",
        "Drag products to rank them! Every ranking earns Flavor Coins and brings you closer to completing your collection.",
    ),
    ("products", "new_user"): Message(
        "Discover Your Next Favorite!", "search", "discovery",
        "Browse the full catalog! When you find flavors you've tried, head to the Rank page to add them "
        "to your collection and earn Flavor Coins.",
    ),
    ("products", "power_user"): Message(
        "Complete Your Catalog!", "books", "completion",
        "Find products you haven't ranked yet and add them to your collection. Every new flavor brings you "
        "closer to 100% catalog completion.",
    ),
    ("products", None): Message(
        "Explore the Catalog!", "target", "discovery",
        "Use filters to find flavors that match your taste! Try different animals, flavor profiles, or brands.",
        "Use filters to find flavors that match your taste! Try different animals, flavor profiles, or brands. "
        "The more you explore, the more you'll discover!",
    ),
    ("community", "new_user"): Message(
        "Find Your Flavor Tribe!", "handshake", "community",
        "See what others are ranking! As you rank more flavors you'll be matched with people who share your taste.",
    ),
    ("community", "power_user"): Message(
        "Compare & Compete!", "medal", "competition",
        "Check out the leaderboard and see how your collection stacks up! Find players with similar tastes "
        "and discover flavors you might be missing.",
    ),
    ("community", None): Message(
        "Connect with Fellow Rankers!", "wave", "community",
        "See what the community is ranking! Compare collections, discover popular flavors, and find your flavor tribe.",
    ),
    ("coinbook", "new_user"): Message(
        "Your Achievement Journey!", "medal", "achievement",
        "This is your Coin Book! Every flavor you rank and every search you make earns achievements and coins. "
        "Start ranking to unlock your first coin!",
    ),
    ("coinbook", "power_user"): Message(
        "Complete Your Coin Book!", "gem", "completion",
        "You're on fire! Complete every collection and unlock all the coins.",
    ),
    ("coinbook", None): Message(
        "Unlock More Coins!", "coin", "progress",
        "Each achievement brings you closer to completing your Coin Book! "
        "Check your progress bars and jump to the Rank page to keep earning!",
    ),
    ("general", "new_user"): Message(
        "Welcome to the Coin Book!", "wave", "onboarding",
        "Rank the flavors you've purchased to earn Flavor Coins and unlock achievements.",
    ),
    ("general", "dormant"): Message(
        "We Missed You!", "target", "reengagement",
        "New flavors have been added since your last visit! Rank your recent purchases to earn more coins.",
    ),
    ("general", "power_user"): Message(
        "You're a Flavor Legend!", "star", "celebration",
        "{ranked} flavors ranked! Keep building your collection and climbing the leaderboard!",
    ),
    ("general", "engaged"): Message(
        "Building Your Collection!", "medal", "momentum",
        "You're making great progress! Keep your ranking streak alive to earn Engagement Coins.",
    ),
    ("general", None): Message(
        "Keep Exploring!", "rocket", "discovery",
        "{ranked} flavors ranked so far! Every new ranking earns coins and sharpens your taste profile.",
    ),
}

# Messages that never carry an achievement hook
NO_HOOK = {
    ("products", "new_user"),
    ("products", "power_user"),
    ("community", "new_user"),
    ("community", "power_user"),
    ("coinbook", "new_user"),
    ("coinbook", "power_user"),
    ("general", "new_user"),
    ("general", "dormant"),
    ("general", "power_user"),
    ("general", "engaged"),
}


def _narrow_products_message(focus_areas: list[str]) -> Message:
    focus = " and ".join(focus_areas[:2])
    return Message(
        "Branch Out & Discover!", "star", "exploration",
        f"You seem to love {focus}! There's more to explore: try new flavor profiles and protein types "
        "to earn Engagement Coins.",
    )


def build_guidance(
    page_context: str,
    classification: ClassificationResult,
    stats: UserStats,
    next_achievement: NextAchievement | None = None,
) -> dict[str, Any]:
    """Render the guidance payload of one page context (pure)."""
    stage = classification.journey_stage
    key = (page_context, stage)

    if (
        page_context == "products"
        and stage != "new_user"
        and classification.exploration_breadth == "narrow"
        and classification.focus_areas
    ):
        message = _narrow_products_message(classification.focus_areas)
        hook_allowed = False
    else:
        if key not in MESSAGES:
            key = (page_context if (page_context, None) in MESSAGES else "general", None)
        message = MESSAGES[key]
        hook_allowed = key not in NO_HOOK

    if hook_allowed and next_achievement is not None and next_achievement.remaining > 0:
        text = f"{message.text} {next_achievement.hook()}"
    else:
        text = message.fallback or message.text

    return {
        "message": text.format(ranked=stats.total_rankings),
        "title": message.title,
        "type": message.type,
        "icon": message.icon,
        "page_context": page_context,
        "classification": {
            "journey_stage": classification.journey_stage,
            "engagement_level": classification.engagement_level,
            "exploration_breadth": classification.exploration_breadth,
            "focus_areas": classification.focus_areas,
            "flavor_profile_community": classification.flavor_profile_community,
        },
        "next_achievement": (
            {
                "code": next_achievement.code,
                "name": next_achievement.name,
                "current": next_achievement.current,
                "target": next_achievement.target,
                "remaining": next_achievement.remaining,
            }
            if next_achievement is not None
            else None
        ),
        "stats": stats.to_classification_data(),
    }


class GuidanceService:
    """Computes and stores guidance rows for one user."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def closest_unearned_achievement(
        self, user_id: int, stats: UserStats, category: str | None = None
    ) -> NextAchievement | None:
        earned = sa.select(UserAchievement.achievement_id).where(UserAchievement.user_id == user_id)
        query = sa.select(Achievement).where(Achievement.is_active.is_(True), Achievement.id.not_in(earned))
        if category is not None:
            query = query.where(Achievement.category == category)

        best: NextAchievement | None = None
        for achievement in await self.session.scalars(query.order_by(Achievement.id)):
            current, target = requirement_progress(achievement.requirement or {}, stats)
            if current >= target:
                continue
            candidate = NextAchievement(achievement.id, achievement.code, achievement.name, current, target)
            if best is None or candidate.remaining < best.remaining:
                best = candidate
        return best

    async def compute_all(self, classification: ClassificationResult, stats: UserStats) -> dict[str, dict[str, Any]]:
        guidance: dict[str, dict[str, Any]] = {}
        hooks: dict[str | None, NextAchievement | None] = {}
        for context in PAGE_CONTEXTS:
            category = CONTEXT_CATEGORIES.get(context)
            if category not in hooks:
                hooks[category] = await self.closest_unearned_achievement(classification.user_id, stats, category)
            guidance[context] = build_guidance(context, classification, stats, hooks[category])
        return guidance

    async def store(self, user_id: int, page_context: str, guidance_data: dict[str, Any]) -> None:
        row = await self.session.scalar(
            sa.select(UserGuidanceCache).where(
                UserGuidanceCache.user_id == user_id, UserGuidanceCache.page_context == page_context
            )
        )
        now = utcnow()
        if row is None:
            row = UserGuidanceCache(user_id=user_id, page_context=page_context)
            self.session.add(row)
        row.guidance_data = guidance_data
        row.calculated_at = now
        row.updated_at = now
        await self.session.flush()

    async def refresh(self, classification: ClassificationResult, stats: UserStats) -> int:
        """
        Recompute and upsert guidance for every page context.

        STAGE-CLS.3: Guidance cache
        """
        guidance = await self.compute_all(classification, stats)
        for context, data in guidance.items():
            await self.store(classification.user_id, context, data)
        logger.debug("Guidance cached", stage="CLS.3", user_id=classification.user_id, contexts=len(guidance))
        return len(guidance)
