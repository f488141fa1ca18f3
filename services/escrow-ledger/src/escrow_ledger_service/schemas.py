"""Pydantic request/response models for the API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    uptime_seconds: float
    started_at: str
    transactions_by_status: dict[str, int]
    held_amount: int


class ErrorResponse(BaseModel):
    """Standard error response model."""

    model_config = ConfigDict(extra="forbid")
    error: str
    message: str
    details: dict[str, object]


class TaskMirrorRequest(BaseModel):
    """Body of PUT /internal/tasks/{task_id}."""

    model_config = ConfigDict(extra="forbid")
    client_id: str = Field(min_length=1)
    steward_id: str | None = None
    category: str = Field(min_length=1)
    status: Literal[
        "OPEN",
        "ASSIGNED",
        "IN_PROGRESS",
        "DONE",
        "DISPUTED",
        "CANCELLED",
        "ADMIN_CANCELLED",
        "ADMIN_FROZEN",
        "EXPIRED",
    ]
    agreed_price: int = Field(ge=0)
    currency: str = Field(min_length=3, max_length=3)
    expires_at: str | None = None


class MilestoneItem(BaseModel):
    """One milestone in POST /tasks/{task_id}/milestones."""

    model_config = ConfigDict(extra="forbid")
    name: str = Field(min_length=1)
    description: str | None = None
    amount: int
    due_date: str | None = None


class MilestonesCreateRequest(BaseModel):
    """Body of POST /tasks/{task_id}/milestones."""

    model_config = ConfigDict(extra="forbid")
    milestones: list[MilestoneItem]


class WalletBalanceResponse(BaseModel):
    """Response model for GET /wallet/balance."""

    model_config = ConfigDict(extra="forbid")
    available_balance: int
    pending_balance: int
    frozen_balance: int
    total_earnings: int
    currency: str


class EarningsResponse(BaseModel):
    """Response model for GET /wallet/earnings."""

    model_config = ConfigDict(extra="forbid")
    total_earnings: int
    this_month: int
    last_month: int
    total_transactions: int
    completed_tasks: int
    currency: str
