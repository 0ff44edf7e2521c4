"""
Flavor Communities

Per-flavor micro-communities of a user. Each flavor the user has bought,
ranked, searched or viewed gets one state:

    curious     searched or viewed only
    seeker      purchased, nothing delivered yet
    taster      delivered, or ranked mid-list
    enthusiast  average rank position in the top 40%
    explorer    average rank position in the bottom 40%
"""

import math
from dataclasses import dataclass, field

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from engagement_backbone.core.logging.logger import get_logger
from engagement_backbone.infrastructure.database.models import (
    CustomerOrderItem,
    ProductMetadata,
    ProductRanking,
    UserActivity,
    UserFlavorCommunity,
)
from engagement_backbone.services.user_stats import DELIVERED_STATUS

logger = get_logger(__name__)

ENTHUSIAST_TOP_PCT = 40
EXPLORER_BOTTOM_PCT = 40

# Tie-break order when two flavors have the same interaction count
STATE_WEIGHT = {"enthusiast": 4, "explorer": 3, "taster": 2, "seeker": 1, "curious": 0}


@dataclass
class FlavorInteractions:
    flavor: str
    products_purchased: int = 0
    products_delivered: int = 0
    products_ranked: int = 0
    rank_positions: list[int] = field(default_factory=list)
    state: str = "curious"

    @property
    def avg_rank_position(self) -> int | None:
        if not self.rank_positions:
            return None
        return round(sum(self.rank_positions) / len(self.rank_positions))

    @property
    def weight(self) -> int:
        return self.products_purchased + self.products_ranked


def compute_community_state(
    products_purchased: int,
    products_delivered: int,
    products_ranked: int,
    avg_rank_position: int | None,
    enthusiast_top_pct: int = ENTHUSIAST_TOP_PCT,
    explorer_bottom_pct: int = EXPLORER_BOTTOM_PCT,
) -> str:
    """
    Map one flavor's interactions to a community state.

    Rankings take precedence over purchases: with 10 ranked products,
    an average position of 1-4 is enthusiast and 6-10 is explorer.
    """
    if products_ranked > 0 and avg_rank_position is not None:
        top = math.ceil(products_ranked * enthusiast_top_pct / 100)
        bottom = products_ranked - math.floor(products_ranked * explorer_bottom_pct / 100)
        if avg_rank_position <= top:
            return "enthusiast"
        if avg_rank_position >= bottom:
            return "explorer"
        return "taster"
    if products_delivered > 0:
        return "taster"
    if products_purchased > 0:
        return "seeker"
    return "curious"


def dominant_community(interactions: list[FlavorInteractions]) -> str | None:
    """'<flavor>:<state>' of the flavor with the most purchases and rankings."""
    engaged = [i for i in interactions if i.weight > 0]
    if not engaged:
        return None
    best = max(engaged, key=lambda i: (i.weight, STATE_WEIGHT.get(i.state, 0), i.flavor))
    return f"{best.flavor}:{best.state}"


class FlavorCommunityService:
    """Recomputes and stores every flavor community of one user."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _interactions(self, user_id: int) -> dict[str, FlavorInteractions]:
        interactions: dict[str, FlavorInteractions] = {}

        def entry(flavor: str) -> FlavorInteractions:
            if flavor not in interactions:
                interactions[flavor] = FlavorInteractions(flavor=flavor)
            return interactions[flavor]

        purchases = await self.session.execute(
            sa.select(ProductMetadata.primary_flavor, CustomerOrderItem.fulfillment_status)
            .join(ProductMetadata, ProductMetadata.product_id == CustomerOrderItem.product_id)
            .where(CustomerOrderItem.user_id == user_id)
        )
        for flavor, status in purchases:
            if not flavor:
                continue
            item = entry(flavor)
            item.products_purchased += 1
            if status == DELIVERED_STATUS:
                item.products_delivered += 1

        rankings = await self.session.execute(
            sa.select(ProductMetadata.primary_flavor, ProductRanking.ranking)
            .join(ProductMetadata, ProductMetadata.product_id == ProductRanking.product_id)
            .where(ProductRanking.user_id == user_id)
        )
        for flavor, position in rankings:
            if not flavor:
                continue
            item = entry(flavor)
            item.products_ranked += 1
            item.rank_positions.append(position)

        # Searched or viewed products only open a curious community
        viewed = await self.session.execute(
            sa.select(UserActivity.activity_data).where(
                UserActivity.user_id == user_id,
                UserActivity.activity_type.in_(("search", "product_view")),
            )
        )
        product_ids = {data.get("product_id") for (data,) in viewed if data and data.get("product_id")}
        if product_ids:
            flavors = await self.session.execute(
                sa.select(ProductMetadata.primary_flavor).where(ProductMetadata.product_id.in_(product_ids))
            )
            for (flavor,) in flavors:
                if flavor:
                    entry(flavor)

        return interactions

    async def update_user_flavor_communities(self, user_id: int) -> list[FlavorInteractions]:
        """
        Recompute and upsert the user's flavor communities.

        STAGE-SVC.2: Flavor communities
        """
        interactions = await self._interactions(user_id)

        existing = {
            row.flavor_profile: row
            for row in (
                await self.session.scalars(sa.select(UserFlavorCommunity).where(UserFlavorCommunity.user_id == user_id))
            )
        }

        for item in interactions.values():
            item.state = compute_community_state(
                item.products_purchased, item.products_delivered, item.products_ranked, item.avg_rank_position
            )
            row = existing.get(item.flavor)
            if row is None:
                row = UserFlavorCommunity(user_id=user_id, flavor_profile=item.flavor)
                self.session.add(row)
            row.community_state = item.state
            row.products_purchased = item.products_purchased
            row.products_delivered = item.products_delivered
            row.products_ranked = item.products_ranked
            row.avg_rank_position = item.avg_rank_position

        await self.session.flush()
        logger.debug(
            "Flavor communities updated",
            stage="SVC.2",
            user_id=user_id,
            communities=len(interactions),
        )
        return sorted(interactions.values(), key=lambda i: i.flavor)
