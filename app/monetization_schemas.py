import uuid
from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, field_validator

from app.models import RunType


class ActionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    position: int
    action_type: str
    action_data: dict[str, Any] = {}
    status: str
    executed_at: datetime | None = None
    execution_result: dict[str, Any] | None = None


class OpportunityOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    opportunity_type: str
    title: str
    description: str
    priority: int
    confidence: float
    estimated_revenue_impact: float | None = None
    page_url: str | None = None
    subject_id: str | None = None
    category: str | None = None
    status: str
    created_at: datetime
    reviewed_at: datetime | None = None
    reviewed_by: str | None = None
    rejection_reason: str | None = None
    implemented_at: datetime | None = None
    actions: list[ActionOut] = []


class QueueStatsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    pending: int
    approved: int
    rejected: int
    implemented: int
    expired: int
    total_estimated_impact: float


class QueueOut(BaseModel):
    opportunities: list[OpportunityOut]
    stats: QueueStatsOut


class QueueDecisionRequest(BaseModel):
    opportunity_id: uuid.UUID
    action: Literal["approve", "reject"]
    reason: str | None = None


class ActionRecordOut(BaseModel):
    success: bool
    action_id: str
    action_type: str
    error: str | None = None


class ExecutionSummaryOut(BaseModel):
    total: int
    succeeded: int
    failed: int
    opportunities_implemented: int
    records: list[ActionRecordOut] = []


# ---------------------------------------------------------------------------
# Agent runs
# ---------------------------------------------------------------------------


class RunJobRequest(BaseModel):
    job_type: RunType

    @field_validator("job_type", mode="before")
    @classmethod
    def _normalize(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value


class RunSummaryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    run_type: str
    status: str
    started_at: datetime
    completed_at: datetime | None = None
    items_processed: int
    opportunities_found: int
    errors_encountered: int
    log_summary: str | None = None
    error_details: dict[str, Any] | None = None
    parent_run_id: str | None = None
    duration_ms: int | None = None
    sub_runs: list["RunSummaryOut"] = []


class AgentReportOut(BaseModel):
    generated_at: datetime
    hours: int
    last_run_times: dict[str, datetime | None]
    queue_stats: QueueStatsOut | None = None
    recent_jobs: list[RunSummaryOut] = []
    errors: list[str] = []


class RunTypeStatsOut(BaseModel):
    run_type: str
    count: int
    success_rate: float


class RunHistoryStatsOut(BaseModel):
    total_runs: int
    success_rate: float
    avg_duration_ms: int
    total_opportunities: int
    by_type: list[RunTypeStatsOut] = []


class RunHistoryOut(BaseModel):
    runs: list[RunSummaryOut]
    total: int
    page: int
    limit: int
    total_pages: int
    stats: RunHistoryStatsOut


# ---------------------------------------------------------------------------
# Forecasts
# ---------------------------------------------------------------------------


class ForecastOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    forecast_month: date
    forecasted_total_revenue: float
    forecasted_ad_revenue: float
    forecasted_affiliate_revenue: float
    confidence_level: float
    month_over_month_growth: float
    growth_rate: float
    model_version: str
    actual_total_revenue: float | None = None
    actual_ad_revenue: float | None = None
    actual_affiliate_revenue: float | None = None
    generated_at: datetime


class ForecastGenerateOut(BaseModel):
    forecasts_written: int
    forecasts: list[ForecastOut]


class ForecastAccuracyOut(BaseModel):
    total_forecasts: int
    with_actuals: int
    average_error: float
    accuracy_percent: float



# ---------------------------------------------------------------------------
# Impact
# ---------------------------------------------------------------------------


class ImpactMeasurementOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    action_id: uuid.UUID
    action_type: str
    measurement_type: str
    status: str
    baseline_start: date
    start_date: date
    end_date: date
    baseline_value: float
    measured_value: float | None = None
    absolute_impact: float | None = None
    percent_impact: float | None = None
    revenue_impact: float | None = None
    estimated_impact: float
    prediction_accuracy: float | None = None
    notes: str | None = None
    completed_at: datetime | None = None


class ActionTypeImpactOut(BaseModel):
    action_type: str
    count: int
    avg_accuracy: float
    total_impact: float


class ImpactSummaryOut(BaseModel):
    total_measurements: int
    pending: int
    completed: int
    inconclusive: int
    avg_prediction_accuracy: float
    total_verified_impact: float
    by_action_type: list[ActionTypeImpactOut] = []
