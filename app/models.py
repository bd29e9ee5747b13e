import enum
import uuid
from datetime import date, datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from app.db import Base


# ---------------------------------------------------------------------------
# Enumerations (stored as text)
# ---------------------------------------------------------------------------


class RunType(enum.StrEnum):
    METRICS_SYNC = "metrics_sync"
    OPPORTUNITY_SCAN = "opportunity_scan"
    RPM_ANALYSIS = "rpm_analysis"
    FORECAST = "forecast"
    CLEANUP = "cleanup"
    FULL = "full"
    REPORT = "report"


class RunStatus(enum.StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class OpportunityType(enum.StrEnum):
    AFFILIATE_PLACEMENT = "affiliate_placement"
    AD_LAYOUT_OPTIMIZATION = "ad_layout_optimization"
    TRAFFIC_SOURCE_OPTIMIZATION = "traffic_source_optimization"
    CONTENT_EXPANSION = "content_expansion"


class OpportunityStatus(enum.StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    IMPLEMENTED = "implemented"
    EXPIRED = "expired"


class ActionType(enum.StrEnum):
    ADD_AFFILIATE_LINK = "add_affiliate_link"
    UPDATE_AD_PLACEMENT = "update_ad_placement"
    OPTIMIZE_SEO = "optimize_seo"
    CREATE_COLLECTION = "create_collection"
    EXPAND_CONTENT = "expand_content"


class ActionStatus(enum.StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTED = "executed"


class MeasurementStatus(enum.StrEnum):
    PENDING = "pending"
    COMPLETE = "complete"
    INCONCLUSIVE = "inconclusive"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _json_type():
    return JSONB().with_variant(JSON, "sqlite")


# ---------------------------------------------------------------------------
# Agent runs
# ---------------------------------------------------------------------------


class AgentRun(Base):
    __tablename__ = "agent_runs"
    __table_args__ = (
        Index("ix_agent_runs_type_started", "run_type", "started_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    run_type: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default=RunStatus.RUNNING)
    parent_run_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("agent_runs.id"), nullable=True
    )
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    items_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    opportunities_found: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors_encountered: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    log_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_details: Mapped[dict | None] = mapped_column(_json_type(), nullable=True)


# ---------------------------------------------------------------------------
# Opportunities and their actions
# ---------------------------------------------------------------------------


class Opportunity(Base):
    __tablename__ = "monetization_opportunities"
    __table_args__ = (
        Index("ix_opportunities_status_priority", "status", "priority"),
        Index("ix_opportunities_page_type", "page_url", "opportunity_type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    opportunity_type: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    estimated_revenue_impact: Mapped[float | None] = mapped_column(Float, nullable=True)
    page_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    subject_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(Text, nullable=False, default=OpportunityStatus.PENDING)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    implemented_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    actions: Mapped[list["Action"]] = relationship(
        back_populates="opportunity",
        order_by="Action.position",
        cascade="all, delete-orphan",
    )


class Action(Base):
    __tablename__ = "monetization_actions"
    __table_args__ = (
        Index("ix_actions_opportunity", "opportunity_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    opportunity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("monetization_opportunities.id"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    action_type: Mapped[str] = mapped_column(Text, nullable=False)
    action_data: Mapped[dict] = mapped_column(_json_type(), nullable=False, default=dict)
    status: Mapped[str] = mapped_column(Text, nullable=False, default=ActionStatus.PENDING)
    executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    execution_result: Mapped[dict | None] = mapped_column(_json_type(), nullable=True)

    opportunity: Mapped[Opportunity] = relationship(back_populates="actions")


# ---------------------------------------------------------------------------
# Impact measurements
# ---------------------------------------------------------------------------


class ImpactMeasurement(Base):
    """Before/after comparison for one executed action's page."""

    __tablename__ = "impact_measurements"
    __table_args__ = (
        Index("ix_impact_measurements_status_end", "status", "end_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    action_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("monetization_actions.id"), nullable=False, unique=True
    )
    measurement_type: Mapped[str] = mapped_column(Text, nullable=False)
    measurement_window: Mapped[int] = mapped_column(Integer, nullable=False)
    baseline_window: Mapped[int] = mapped_column(Integer, nullable=False)
    baseline_start: Mapped[date] = mapped_column(Date, nullable=False)
    baseline_end: Mapped[date] = mapped_column(Date, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    baseline_value: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    baseline_revenue: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    measured_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    measured_revenue: Mapped[float | None] = mapped_column(Float, nullable=True)
    absolute_impact: Mapped[float | None] = mapped_column(Float, nullable=True)
    percent_impact: Mapped[float | None] = mapped_column(Float, nullable=True)
    revenue_impact: Mapped[float | None] = mapped_column(Float, nullable=True)
    estimated_impact: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    prediction_error: Mapped[float | None] = mapped_column(Float, nullable=True)
    prediction_accuracy: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(Text, nullable=False, default=MeasurementStatus.PENDING)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    action: Mapped[Action] = relationship()

    @property
    def action_type(self) -> str:
        return self.action.action_type


# ---------------------------------------------------------------------------
# Forecasts
# ---------------------------------------------------------------------------


class RevenueForecast(Base):
    __tablename__ = "revenue_forecasts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    forecast_month: Mapped[date] = mapped_column(Date, nullable=False, unique=True)
    forecasted_total_revenue: Mapped[float] = mapped_column(
        Numeric(12, 2, asdecimal=False), nullable=False
    )
    forecasted_ad_revenue: Mapped[float] = mapped_column(
        Numeric(12, 2, asdecimal=False), nullable=False, default=0
    )
    forecasted_affiliate_revenue: Mapped[float] = mapped_column(
        Numeric(12, 2, asdecimal=False), nullable=False, default=0
    )
    confidence_level: Mapped[float] = mapped_column(Float, nullable=False)
    month_over_month_growth: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    growth_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    model_version: Mapped[str] = mapped_column(Text, nullable=False)
    input_snapshot: Mapped[dict] = mapped_column(_json_type(), nullable=False, default=dict)
    actual_total_revenue: Mapped[float | None] = mapped_column(
        Numeric(12, 2, asdecimal=False), nullable=True
    )
    actual_ad_revenue: Mapped[float | None] = mapped_column(
        Numeric(12, 2, asdecimal=False), nullable=True
    )
    actual_affiliate_revenue: Mapped[float | None] = mapped_column(
        Numeric(12, 2, asdecimal=False), nullable=True
    )
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Page metrics and content
# ---------------------------------------------------------------------------


class MonetizationMetric(Base):
    __tablename__ = "monetization_metrics"
    __table_args__ = (
        UniqueConstraint("metric_date", "page_url", name="uq_monetization_metrics_date_page"),
        Index("ix_monetization_metrics_page", "page_url"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    metric_date: Mapped[date] = mapped_column(Date, nullable=False)
    page_url: Mapped[str] = mapped_column(Text, nullable=False)
    page_type: Mapped[str] = mapped_column(Text, nullable=False, default="other")
    pageviews: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    unique_visitors: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    bounce_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    avg_time_on_page: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    traffic_google: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    traffic_pinterest: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    traffic_direct: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    traffic_social: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    traffic_other: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    affiliate_clicks: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    ad_revenue: Mapped[float] = mapped_column(
        Numeric(12, 4, asdecimal=False), nullable=False, default=0
    )
    affiliate_revenue: Mapped[float] = mapped_column(
        Numeric(12, 4, asdecimal=False), nullable=False, default=0
    )
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ContentItem(Base):
    __tablename__ = "content_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    author: Mapped[str | None] = mapped_column(Text, nullable=True)
    source: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_free: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )

    @property
    def page_url(self) -> str:
        return f"/content/{self.id}"
