"""
Pydantic schemas for the HTTP API.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

ProgressStatus = Literal["not_started", "in_progress", "completed"]


class HealthResponse(BaseModel):
    status: Literal["ok"] = "ok"
    timestamp: str
    version: str


class LoginRequest(BaseModel):
    """Optional body for login; the token may come in the header instead."""

    access_token: Optional[str] = None
    email: Optional[str] = Field(default=None, max_length=320, pattern=EMAIL_PATTERN)
    display_name: Optional[str] = Field(default=None, min_length=1, max_length=100)


class LogoutResponse(BaseModel):
    status: Literal["ok"] = "ok"


class UserResponse(BaseModel):
    id: str
    privy_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class UserUpdateRequest(BaseModel):
    display_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    email: Optional[str] = Field(default=None, max_length=320, pattern=EMAIL_PATTERN)
    avatar_url: Optional[str] = Field(default=None, max_length=2048)


class LessonResponse(BaseModel):
    id: str
    title: str
    description: str
    position: int

    model_config = {"from_attributes": True}


class LessonListResponse(BaseModel):
    lessons: list[LessonResponse]
    count: int


class ProgressUpdateRequest(BaseModel):
    lesson_id: str = Field(..., min_length=1, max_length=128)
    status: ProgressStatus = "in_progress"
    progress_percent: Optional[float] = Field(default=None, ge=0, le=100)
    score: Optional[float] = Field(default=None, ge=0)


class ProgressResponse(BaseModel):
    id: str
    user_id: str
    lesson_id: str
    status: ProgressStatus
    progress_percent: float
    score: Optional[float] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime

    model_config = {"from_attributes": True}


class ProgressListResponse(BaseModel):
    progress: list[ProgressResponse]
    count: int


class CheckoutSessionRequest(BaseModel):
    price_id: Optional[str] = Field(default=None, max_length=255)


class CheckoutSessionResponse(BaseModel):
    session_id: str
    url: str


class SubscriptionResponse(BaseModel):
    id: str
    status: str
    price_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    is_active: bool


class SubscriptionStatusResponse(BaseModel):
    subscription: Optional[SubscriptionResponse] = None


class WebhookResponse(BaseModel):
    received: bool = True
    duplicate: bool = False
