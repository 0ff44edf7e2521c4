"""
Relational Store Models

SQLAlchemy 2.0 declarative models for the tables the pipelines read and
write. JSON columns use the generic JSON type so the same models run on
PostgreSQL (asyncpg) and SQLite (aiosqlite, tests).
"""

from datetime import datetime, timezone
from typing import Any

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(sa.DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(sa.DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class User(Base, TimestampMixin):
    """Customer account mirrored from the external catalog."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(sa.String(64), unique=True, nullable=False, index=True)
    email: Mapped[str] = mapped_column(sa.String(320), nullable=False, index=True)
    first_name: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    last_name: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    display_name: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    role: Mapped[str] = mapped_column(sa.String(32), default="user", server_default="user", nullable=False)
    active: Mapped[bool] = mapped_column(sa.Boolean, default=False, server_default=sa.false(), nullable=False)

    # Import bookkeeping: full_history_imported implies import_status = completed
    import_status: Mapped[str] = mapped_column(
        sa.String(16), default="pending", server_default="pending", nullable=False, index=True
    )
    full_history_imported: Mapped[bool] = mapped_column(
        sa.Boolean, default=False, server_default=sa.false(), nullable=False
    )
    history_imported_at: Mapped[datetime | None] = mapped_column(sa.DateTime, nullable=True)
    last_order_synced_at: Mapped[datetime | None] = mapped_column(sa.DateTime, nullable=True)
    shopify_created_at: Mapped[datetime | None] = mapped_column(sa.DateTime, nullable=True)
    orders_count: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)


class UserClassification(Base):
    __tablename__ = "user_classifications"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(sa.ForeignKey("users.id"), unique=True, nullable=False, index=True)
    journey_stage: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    engagement_level: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    exploration_breadth: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    flavor_profile_community: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    focus_areas: Mapped[list[str] | None] = mapped_column(sa.JSON, nullable=True)
    classification_data: Mapped[dict[str, Any]] = mapped_column(sa.JSON, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(sa.DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class UserGuidanceCache(Base, TimestampMixin):
    """Pre-rendered guidance, one row per (user, page context)."""

    __tablename__ = "user_guidance_cache"
    __table_args__ = (sa.UniqueConstraint("user_id", "page_context", name="uq_user_guidance_user_page"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(sa.ForeignKey("users.id"), nullable=False, index=True)
    page_context: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    guidance_data: Mapped[dict[str, Any]] = mapped_column(sa.JSON, nullable=False)
    calculated_at: Mapped[datetime] = mapped_column(sa.DateTime, default=utcnow, nullable=False)


class FailedEnqueueJob(Base):
    """Durable record of a job the broker refused at admission."""

    __tablename__ = "failed_enqueue_jobs"

    user_id: Mapped[int] = mapped_column(primary_key=True, autoincrement=False)
    external_id: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    email: Mapped[str | None] = mapped_column(sa.String(320), nullable=True)
    error_message: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(sa.Integer, default=0, server_default="0", nullable=False)

    # Enough to rebuild the job on drain
    queue_name: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    job_name: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    job_id: Mapped[str | None] = mapped_column(sa.String(128), nullable=True)
    payload: Mapped[dict[str, Any] | None] = mapped_column(sa.JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(sa.DateTime, default=utcnow, nullable=False)
    last_retry_at: Mapped[datetime | None] = mapped_column(sa.DateTime, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(sa.DateTime, nullable=True, index=True)


# =============================================================================
# Supporting tables read by the classification, backfill and coin pipelines
# =============================================================================


class UserEngagementScore(Base):
    __tablename__ = "user_engagement_scores"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(sa.ForeignKey("users.id"), unique=True, nullable=False, index=True)

    achievements_count: Mapped[int] = mapped_column(sa.Integer, default=0, nullable=False)
    page_views_count: Mapped[int] = mapped_column(sa.Integer, default=0, nullable=False)
    rankings_count: Mapped[int] = mapped_column(sa.Integer, default=0, nullable=False)
    searches_count: Mapped[int] = mapped_column(sa.Integer, default=0, nullable=False)
    unique_products_count: Mapped[int] = mapped_column(sa.Integer, default=0, nullable=False)
    engagement_score: Mapped[int] = mapped_column(sa.Integer, default=0, nullable=False, index=True)

    achievements_count_week: Mapped[int] = mapped_column(sa.Integer, default=0, nullable=False)
    page_views_count_week: Mapped[int] = mapped_column(sa.Integer, default=0, nullable=False)
    rankings_count_week: Mapped[int] = mapped_column(sa.Integer, default=0, nullable=False)
    searches_count_week: Mapped[int] = mapped_column(sa.Integer, default=0, nullable=False)
    engagement_score_week: Mapped[int] = mapped_column(sa.Integer, default=0, nullable=False)

    achievements_count_month: Mapped[int] = mapped_column(sa.Integer, default=0, nullable=False)
    page_views_count_month: Mapped[int] = mapped_column(sa.Integer, default=0, nullable=False)
    rankings_count_month: Mapped[int] = mapped_column(sa.Integer, default=0, nullable=False)
    searches_count_month: Mapped[int] = mapped_column(sa.Integer, default=0, nullable=False)
    engagement_score_month: Mapped[int] = mapped_column(sa.Integer, default=0, nullable=False)

    last_updated_at: Mapped[datetime] = mapped_column(sa.DateTime, default=utcnow, nullable=False)


class ProductRanking(Base, TimestampMixin):
    __tablename__ = "product_rankings"
    __table_args__ = (sa.UniqueConstraint("user_id", "product_id", "ranking_list_id", name="uq_ranking_user_product_list"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(sa.ForeignKey("users.id"), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    ranking: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    ranking_list_id: Mapped[str] = mapped_column(sa.String(64), default="default", nullable=False)


class ProductMetadata(Base, TimestampMixin):
    __tablename__ = "products_metadata"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    product_id: Mapped[str] = mapped_column(sa.String(64), unique=True, nullable=False)
    title: Mapped[str] = mapped_column(sa.String(512), nullable=False)
    animal_type: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    primary_flavor: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    vendor: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)


class UserActivity(Base):
    __tablename__ = "user_activities"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(sa.ForeignKey("users.id"), nullable=False, index=True)
    # page_view, search, product_view, ranking_saved, coin_earned, login, purchase
    activity_type: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    activity_data: Mapped[dict[str, Any] | None] = mapped_column(sa.JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime, default=utcnow, nullable=False, index=True)


class Achievement(Base, TimestampMixin):
    __tablename__ = "achievements"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(sa.String(128), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    collection_type: Mapped[str] = mapped_column(sa.String(32), nullable=False, index=True)
    category: Mapped[str | None] = mapped_column(sa.String(32), nullable=True)
    requirement: Mapped[dict[str, Any]] = mapped_column(sa.JSON, nullable=False, default=dict)
    points: Mapped[int] = mapped_column(sa.Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(sa.Boolean, default=True, nullable=False)


class UserAchievement(Base):
    __tablename__ = "user_achievements"
    __table_args__ = (sa.UniqueConstraint("user_id", "achievement_id", name="uq_user_achievement"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(sa.ForeignKey("users.id"), nullable=False, index=True)
    achievement_id: Mapped[int] = mapped_column(sa.ForeignKey("achievements.id"), nullable=False)
    points_awarded: Mapped[int] = mapped_column(sa.Integer, default=0, nullable=False)
    earned_at: Mapped[datetime] = mapped_column(sa.DateTime, default=utcnow, nullable=False)


class CustomerOrderItem(Base, TimestampMixin):
    __tablename__ = "customer_order_items"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    line_item_id: Mapped[str] = mapped_column(sa.String(64), unique=True, nullable=False)
    order_number: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    order_date: Mapped[datetime] = mapped_column(sa.DateTime, nullable=False)
    product_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    sku: Mapped[str | None] = mapped_column(sa.String(128), nullable=True)
    quantity: Mapped[int] = mapped_column(sa.Integer, default=1, nullable=False)
    fulfillment_status: Mapped[str | None] = mapped_column(sa.String(32), nullable=True)
    user_id: Mapped[int] = mapped_column(sa.ForeignKey("users.id"), nullable=False, index=True)
    customer_email: Mapped[str] = mapped_column(sa.String(320), nullable=False)
    line_item_data: Mapped[dict[str, Any] | None] = mapped_column(sa.JSON, nullable=True)


class UserFlavorCommunity(Base, TimestampMixin):
    __tablename__ = "user_flavor_communities"
    __table_args__ = (sa.UniqueConstraint("user_id", "flavor_profile", name="uq_user_flavor"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(sa.ForeignKey("users.id"), nullable=False, index=True)
    flavor_profile: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    # curious, seeker, taster, enthusiast, explorer
    community_state: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    products_purchased: Mapped[int] = mapped_column(sa.Integer, default=0, nullable=False)
    products_delivered: Mapped[int] = mapped_column(sa.Integer, default=0, nullable=False)
    products_ranked: Mapped[int] = mapped_column(sa.Integer, default=0, nullable=False)
    avg_rank_position: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
