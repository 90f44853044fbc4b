from datetime import datetime
from typing import Dict, Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field, HttpUrl, field_validator

from .models import UserRole


T = TypeVar("T")

EventStatus = Literal["upcoming", "ongoing", "completed", "cancelled"]
SentimentCategory = Literal["positive", "neutral", "negative"]
ReminderMethod = Literal["email", "notification"]


def _validate_password_strength(v: str) -> str:
    if len(v) < 8:
        raise ValueError("Password must be at least 8 characters")
    if not any(ch.isalpha() for ch in v) or not any(ch.isdigit() for ch in v):
        raise ValueError("Password must include letters and numbers")
    return v


class ApiResponse(BaseModel, Generic[T]):
    success: bool = True
    message: Optional[str] = None
    count: Optional[int] = None
    data: Optional[T] = None


class Page(BaseModel, Generic[T]):
    items: List[T]
    total: int
    page: int
    page_size: int
    total_pages: int


class UserRegister(BaseModel):
    username: str = Field(..., min_length=3, max_length=50, pattern=r"^[A-Za-z0-9_.-]+$")
    email: EmailStr
    password: str

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return _validate_password_strength(v)


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class Token(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str
    role: UserRole
    user_id: int


class TokenData(BaseModel):
    email: Optional[str] = None
    role: Optional[UserRole] = None
    user_id: Optional[int] = None


class RefreshRequest(BaseModel):
    refresh_token: str


class UserResponse(BaseModel):
    id: int
    username: str
    email: EmailStr
    bio: Optional[str] = None
    profile_pic: Optional[str] = None
    role: UserRole
    is_active: bool = True
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class PublicUserResponse(BaseModel):
    id: int
    username: str
    bio: Optional[str] = None
    profile_pic: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class UserUpdate(BaseModel):
    username: Optional[str] = Field(default=None, min_length=3, max_length=50, pattern=r"^[A-Za-z0-9_.-]+$")
    email: Optional[EmailStr] = None
    bio: Optional[str] = Field(default=None, max_length=2000)
    profile_pic: Optional[HttpUrl] = None


class PasswordChange(BaseModel):
    current_password: str
    new_password: str

    @field_validator("new_password")
    @classmethod
    def validate_new_password(cls, v: str) -> str:
        return _validate_password_strength(v)


class PasswordResetRequest(BaseModel):
    email: EmailStr


class PasswordResetConfirm(BaseModel):
    token: str
    new_password: str

    @field_validator("new_password")
    @classmethod
    def validate_new_password(cls, v: str) -> str:
        return _validate_password_strength(v)


class AdminUserUpdate(BaseModel):
    role: Optional[UserRole] = None
    is_active: Optional[bool] = None


class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    description: Optional[str] = None


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    description: Optional[str] = None


class CategoryRef(BaseModel):
    id: int
    name: str

    model_config = ConfigDict(from_attributes=True)


class CategoryResponse(CategoryRef):
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    event_count: int = 0


class EventCreate(BaseModel):
    title: str = Field(..., min_length=3, max_length=255)
    description: Optional[str] = None
    start_time: datetime
    location: Optional[str] = Field(default=None, max_length=255)
    cover_url: Optional[HttpUrl] = None
    status: EventStatus = "upcoming"
    category_ids: List[int] = Field(default_factory=list)


class EventUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=3, max_length=255)
    description: Optional[str] = None
    start_time: Optional[datetime] = None
    location: Optional[str] = Field(default=None, max_length=255)
    cover_url: Optional[HttpUrl] = None
    status: Optional[EventStatus] = None
    category_ids: Optional[List[int]] = None


class EventStatusUpdate(BaseModel):
    status: EventStatus


class EventResponse(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    start_time: datetime
    location: Optional[str] = None
    cover_url: Optional[str] = None
    organizer_id: int
    organizer_name: Optional[str] = None
    status: str
    avg_rating: float = 0.0
    categories: List[CategoryRef] = []
    created_at: Optional[datetime] = None


class ReviewStats(BaseModel):
    count: int = 0
    average_rating: float = 0.0


class EventDetailResponse(EventResponse):
    review_stats: ReviewStats = ReviewStats()
    in_calendar: bool = False
    is_owner: bool = False


class ReviewCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    content: Optional[str] = Field(default=None, max_length=5000)


class ReviewUpdate(BaseModel):
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    content: Optional[str] = Field(default=None, max_length=5000)


class ReviewResponse(BaseModel):
    id: int
    user_id: int
    username: Optional[str] = None
    event_id: int
    event_title: Optional[str] = None
    rating: int
    content: Optional[str] = None
    sentiment_score: Optional[float] = None
    sentiment_category: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ReviewStatsResponse(BaseModel):
    event_id: int
    total: int
    average_rating: float
    rating_counts: Dict[int, int]
    sentiment_counts: Dict[str, int]


class ReviewSummaryResponse(BaseModel):
    event_id: int
    review_count: int
    average_rating: float
    sentiment_breakdown: Dict[str, int]
    rating_distribution: Dict[int, int]
    summary: str


class ReminderSettings(BaseModel):
    remind: bool = True
    time: int = Field(default=60, ge=0, le=60 * 24 * 7)
    method: ReminderMethod = "email"


class CalendarEntryCreate(BaseModel):
    event_id: int
    reminder_settings: Optional[ReminderSettings] = None


class CalendarReminderUpdate(BaseModel):
    reminder_settings: ReminderSettings


class CalendarSyncUpdate(BaseModel):
    is_synced: bool


class CalendarEntryResponse(BaseModel):
    id: int
    event_id: int
    reminder_settings: ReminderSettings
    is_synced: bool
    created_at: Optional[datetime] = None
    event: EventResponse


class NotificationResponse(BaseModel):
    id: int
    content: str
    type: str
    related_id: Optional[int] = None
    is_read: bool
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class UnreadCountResponse(BaseModel):
    count: int


class SystemNotificationCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=2000)


class RecommendationResponse(BaseModel):
    id: int
    event_id: int
    score: float
    reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    event: EventResponse


class GeneratedRecommendation(BaseModel):
    event_id: int
    score: float
    reason: str


class RecommendationFeedbackCreate(BaseModel):
    feedback: str


class PopularEventResponse(BaseModel):
    event_id: int
    popularity_score: float
    review_count: int
    calendar_count: int
    event: EventResponse


class EnqueuedJobResponse(BaseModel):
    job_id: Optional[int] = None
    job_type: str
    status: str
    result: Optional[dict] = None
