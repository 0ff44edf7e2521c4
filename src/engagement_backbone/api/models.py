"""
Admin API Models

Pydantic request and response models for the admin endpoints. Fields carry
bounds so invalid requests fail with 422 before reaching a pipeline.
"""

from typing import Any

from pydantic import BaseModel, Field, field_validator

from engagement_backbone.config.constants import COIN_TYPE_ALL
from engagement_backbone.pipelines.bulk_import import ImportOptions
from engagement_backbone.pipelines.coin_recalculation.queue import SUPPORTED_COIN_TYPES


class StartImportRequest(BaseModel):
    """Options of one bulk import run."""

    reimport_all: bool = Field(default=False, description="Re-import users whose history is already imported")
    target_unprocessed: int | None = Field(
        default=None, ge=1, description="Stop scanning once this many unprocessed users were identified"
    )
    max_customers: int | None = Field(default=None, ge=1, description="Cap on customers scanned")
    full_import: bool = Field(default=False, description="Enqueue every catalog customer")
    batch_size: int | None = Field(default=None, ge=1, description="Customer cap in full import mode")

    def to_options(self) -> ImportOptions:
        return ImportOptions(**self.model_dump())


class RetryFailedEnqueuesRequest(BaseModel):
    limit: int = Field(default=100, ge=1, le=10_000)


class ClassificationEnqueueRequest(BaseModel):
    user_id: int = Field(..., ge=1)
    reason: str = Field(default="admin_action", min_length=1, max_length=64)
    force: bool = Field(default=True, description="Bypass the per-user debounce")


class CoinRecalculationRequest(BaseModel):
    user_id: int = Field(..., ge=1)
    coin_type: str = Field(default=COIN_TYPE_ALL)
    reason: str = Field(default="admin_action", min_length=1, max_length=64)
    context: dict[str, Any] = Field(default_factory=dict)

    @field_validator("coin_type")
    @classmethod
    def validate_coin_type(cls, v: str) -> str:
        if v not in SUPPORTED_COIN_TYPES:
            raise ValueError(f"coin_type must be one of {', '.join(SUPPORTED_COIN_TYPES)}")
        return v


class EnqueueResponse(BaseModel):
    success: bool
    job_id: str | None = None
    created: bool = False
    throttled: bool = False


class QueueCleanResponse(BaseModel):
    success: bool = True
    completed: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)


class ClearResponse(BaseModel):
    success: bool = True
    removed: int = Field(..., ge=0)


class ObliterateStartedResponse(BaseModel):
    status: str = "started"
    queue: str
    channel: str


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    components: dict[str, Any] | None = None
