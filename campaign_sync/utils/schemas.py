"""
Pydantic Schemas - Data Validation Models

Defines all Pydantic schemas used throughout the sync engine:
- Ad platform API responses (token, campaign pages, sync acknowledgements)
- Campaign records
- Credentials held by the token provider
- Per-record outcomes and run summaries
- Redis Pub/Sub event payloads

Usage:
    from campaign_sync.utils.schemas import CampaignPage

    page = CampaignPage.model_validate(response.json())
    if page.pagination.has_more:
        ...
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


class CampaignStatus(str, Enum):
    """Statuses the platform is known to send; others are stored as-is."""

    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"
    ARCHIVED = "archived"
    DRAFT = "draft"


class Campaign(BaseModel):
    """Campaign record as served by GET /api/campaigns.

    `id` is the natural key: re-syncing the same id updates the stored row.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str = Field(..., min_length=1, description="Campaign ID")
    name: str = Field(..., description="Campaign name")
    status: str = Field(..., min_length=1, description="Delivery status, free-form")
    budget: Decimal = Field(..., ge=0, description="Budget")
    impressions: int = Field(default=0, ge=0)
    clicks: int = Field(default=0, ge=0)
    conversions: int = Field(default=0, ge=0)
    created_at: Optional[datetime] = Field(default=None, description="Creation timestamp")

    @field_validator("status", mode="before")
    @classmethod
    def _status_value(cls, value: Any) -> Any:
        return value.value if isinstance(value, Enum) else value

    @property
    def known_status(self) -> Optional[CampaignStatus]:
        try:
            return CampaignStatus(self.status)
        except ValueError:
            return None


class PaginationInfo(BaseModel):
    page: int = Field(..., ge=1)
    limit: int = Field(..., ge=1)
    total: Optional[int] = Field(default=None, ge=0, description="Total-count hint")
    has_more: bool


class CampaignPage(BaseModel):
    """One page of the campaign listing."""

    data: list[Campaign]
    pagination: PaginationInfo


class TokenResponse(BaseModel):
    """Response from POST /auth/token."""

    access_token: str = Field(..., min_length=1)
    token_type: str = "Bearer"
    expires_in: int = Field(..., gt=0)
    issued_at: Optional[float] = None


class Credential(BaseModel):
    """Bearer credential cached by the token provider."""

    model_config = ConfigDict(frozen=True)

    access_token: str = Field(..., repr=False)
    token_type: str = "Bearer"
    issued_at: float = Field(..., description="Epoch seconds")
    expires_in: int = Field(..., description="Lifetime in seconds")

    @property
    def expires_at(self) -> float:
        return self.issued_at + self.expires_in

    def is_usable(self, now: float, refresh_buffer: float) -> bool:
        return now < self.expires_at - refresh_buffer

    @property
    def authorization(self) -> str:
        return f"Bearer {self.access_token}"


class SyncAck(BaseModel):
    """Response from POST /api/campaigns/{id}/sync."""

    model_config = ConfigDict(extra="ignore")

    success: bool
    campaign_id: Optional[str] = None
    synced_at: Optional[datetime] = None
    message: Optional[str] = None


class SyncOutcome(BaseModel):
    """Result of syncing a single campaign."""

    campaign_id: str
    success: bool
    error_kind: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def ok(cls, campaign_id: str) -> "SyncOutcome":
        return cls(campaign_id=campaign_id, success=True)

    @classmethod
    def failed(cls, campaign_id: str, kind: str, message: str) -> "SyncOutcome":
        return cls(campaign_id=campaign_id, success=False, error_kind=kind, error_message=message)


class SyncSummary(BaseModel):
    """Aggregated result of one orchestrator run."""

    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    attempted: int = 0
    succeeded: int = 0
    skipped: int = 0
    partial: bool = False
    failures: list[SyncOutcome] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def healthy(self) -> bool:
        return not self.failures and not self.skipped and not self.partial

    @classmethod
    def from_outcomes(cls, outcomes: list[SyncOutcome], **kwargs: Any) -> "SyncSummary":
        failures = [o for o in outcomes if not o.success and o.error_kind != "cancelled"]
        skipped = sum(1 for o in outcomes if o.error_kind == "cancelled")
        return cls(
            attempted=len(outcomes) - skipped,
            succeeded=sum(1 for o in outcomes if o.success),
            skipped=skipped,
            failures=failures,
            **kwargs,
        )


class SyncEvent(BaseModel):
    """Redis Pub/Sub event payload.

    {
        "type": "sync_completed" | "sync_failed",
        "ts": "2025-01-15T03:15:02Z",
        "data": {...}
    }
    """

    type: str = Field(..., description="Event type")
    ts: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="Timestamp")
    data: dict[str, Any] = Field(default_factory=dict)
