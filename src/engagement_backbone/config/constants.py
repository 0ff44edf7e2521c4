#!/usr/bin/env python3
"""
System Constants and Enumerations

Queue names, job names, cache namespaces, broker key formats and other
fixed identifiers shared by the pipelines.

Author: Platform Engineering
Date: 2026-03-02
"""

from enum import Enum

# ============================================================================
# Queue Names
# ============================================================================

QUEUE_BULK_IMPORT = "bulk-import"
QUEUE_USER_CLASSIFICATION = "user-classification"
QUEUE_ENGAGEMENT_BACKFILL = "engagement-backfill"
QUEUE_COIN_RECALCULATION = "coin-recalculation"

ALL_QUEUES = (
    QUEUE_BULK_IMPORT,
    QUEUE_USER_CLASSIFICATION,
    QUEUE_ENGAGEMENT_BACKFILL,
    QUEUE_COIN_RECALCULATION,
)

# ============================================================================
# Job Names
# ============================================================================

JOB_IMPORT_USER = "import-user"
JOB_CLASSIFY_USER = "classify-user"
JOB_BACKFILL_USER = "backfill-user"
JOB_RECALCULATE_COINS = "recalculate-coins"


class JobState(str, Enum):
    """
    Job lifecycle states.

    waiting -> active -> (completed | failed); delayed holds jobs that wait
    for a backoff or an explicit delay before becoming waiting again.
    """
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = (JobState.COMPLETED, JobState.FAILED)

# ============================================================================
# Broker Key Formats
# ============================================================================

CLASSIFICATION_LAST_CALC_KEY = "classification:last_calc:{user_id}"
BACKFILL_RUN_KEY = "engagement-backfill:current-run"
BROADCAST_CHANNEL_PREFIX = "broadcast"
QUEUE_MONITOR_CHANNEL = "admin:queue-monitor"

# ============================================================================
# Cache Namespaces (name -> default TTL seconds)
# ============================================================================


class CacheNamespace(str, Enum):
    HOME_STATS = "home_stats"
    LEADERBOARD = "leaderboard"
    LEADERBOARD_POSITION = "leaderboard_position"
    ACHIEVEMENT_DEFINITIONS = "achievement_definitions"
    PRODUCTS = "products"
    PRODUCT_METADATA = "product_metadata"
    RANKING_STATS = "ranking_stats"
    USER_CLASSIFICATION = "user_classification"
    PROGRESS = "progress"
    GUIDANCE = "guidance"
    COINBOOK = "coinbook"


NAMESPACE_TTLS: dict[CacheNamespace, int] = {
    CacheNamespace.HOME_STATS: 300,
    CacheNamespace.LEADERBOARD: 300,
    CacheNamespace.LEADERBOARD_POSITION: 300,
    CacheNamespace.ACHIEVEMENT_DEFINITIONS: 3600,
    CacheNamespace.PRODUCTS: 1800,
    CacheNamespace.PRODUCT_METADATA: 1800,
    CacheNamespace.RANKING_STATS: 1800,
    CacheNamespace.USER_CLASSIFICATION: 300,
    CacheNamespace.PROGRESS: 300,
    CacheNamespace.GUIDANCE: 300,
    CacheNamespace.COINBOOK: 300,
}

LEADERBOARD_LIMITS = (5, 10, 50)
LEADERBOARD_PERIODS = ("all_time", "week", "month")

# ============================================================================
# Classification
# ============================================================================

PAGE_CONTEXTS = ("rank", "products", "community", "coinbook", "general")

CLASSIFICATION_THROTTLE_SECONDS = 300
CLASSIFICATION_LAST_CALC_TTL = 3600


class JourneyStage(str, Enum):
    NEW_USER = "new_user"
    EXPLORING = "exploring"
    ENGAGED = "engaged"
    POWER_USER = "power_user"
    DORMANT = "dormant"


class EngagementLevel(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"


class ExplorationBreadth(str, Enum):
    NARROW = "narrow"
    MODERATE = "moderate"
    DIVERSE = "diverse"


# ============================================================================
# Users and Coins
# ============================================================================


class ImportStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


COLLECTION_TYPES = (
    "engagement_collection",
    "dynamic_collection",
    "static_collection",
    "flavor_coin",
    "hidden_collection",
    "legacy",
)

COIN_TYPE_ALL = "all"
ENGAGEMENT_COIN_TYPES = ("engagement_collection",)
COLLECTION_COIN_TYPES = ("flavor_coin", "dynamic_collection", "static_collection")

# ============================================================================
# One-shot Command Exit Codes
# ============================================================================

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_BROKER_UNAVAILABLE = 2
EXIT_DATABASE_UNAVAILABLE = 3
