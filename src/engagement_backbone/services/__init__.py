"""
Domain Services

Relational-store logic invoked by the pipeline workers. Every service works
inside a session owned by the caller (one session per job), so a job's
writes commit or roll back together.
"""

from engagement_backbone.services.coin_managers import CoinManager, CollectionManager, EngagementManager
from engagement_backbone.services.engagement_score import EngagementScoreService
from engagement_backbone.services.flavor_community import FlavorCommunityService, compute_community_state
from engagement_backbone.services.guidance import GuidanceService, build_guidance
from engagement_backbone.services.purchase_history import PurchaseHistoryService
from engagement_backbone.services.user_classification import ClassificationResult, UserClassificationService
from engagement_backbone.services.user_stats import UserStats, gather_user_stats, requirement_met

__all__ = [
    "ClassificationResult",
    "CoinManager",
    "CollectionManager",
    "EngagementManager",
    "EngagementScoreService",
    "FlavorCommunityService",
    "GuidanceService",
    "PurchaseHistoryService",
    "UserClassificationService",
    "UserStats",
    "build_guidance",
    "compute_community_state",
    "gather_user_stats",
    "requirement_met",
]
