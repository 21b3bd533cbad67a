from pydantic import Field, field_validator
from typing import List, Optional
from datetime import datetime

from models.auth import CamelModel


class BookRef(CamelModel):
    """Request body naming a single book"""
    book_id: str = Field(min_length=1)

    @field_validator("book_id", mode="before")
    @classmethod
    def coerce_book_id(cls, value):
        # Older clients send numeric ids
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        if isinstance(value, str):
            return value.strip()
        return value


class ReadingSessionStarted(CamelModel):
    success: bool = True
    message: str
    session_id: str
    start_time: datetime


class ReadingSessionSummary(CamelModel):
    session_id: str
    start_time: datetime
    end_time: datetime
    total_seconds: int
    user_id: str
    book_id: str


class ReadingSessionEnded(CamelModel):
    success: bool = True
    message: str = "Reading session ended successfully"
    data: ReadingSessionSummary


class ProgressUpdate(BookRef):
    percent_complete: float = Field(ge=0, le=100)


class ProgressOut(CamelModel):
    id: str
    user_id: str
    book_id: str
    percent_complete: float
    total_reading_time: int
    last_read_at: Optional[datetime] = None
    book_title: Optional[str] = None
    user_name: Optional[str] = None
    is_complete: bool = False


class ProgressList(CamelModel):
    progress: List[ProgressOut]
    total_progress: int


class DashboardStats(CamelModel):
    avg_reading_time: int
    completion_rate: int
    book_completion_rate: int
    total_sessions: int
    total_reading_seconds: int
    # Legacy key: the dashboard client reads this name, the value is seconds
    total_reading_minutes: int


class DashboardStatsResponse(CamelModel):
    success: bool = True
    stats: DashboardStats


class BookCreate(CamelModel):
    title: str = Field(min_length=2)
    description: str = Field(default="", max_length=5000)
    subject: Optional[str] = None
    book_type: str = Field(default="storybook", pattern="^(storybook|educational)$")
    grade: Optional[str] = None
    cover_image: Optional[str] = None


class BookOut(CamelModel):
    id: str
    title: str
    description: str
    subject: Optional[str] = None
    book_type: str
    grade: Optional[str] = None
    cover_image: Optional[str] = None


class StudentSummary(CamelModel):
    id: str
    username: str
    first_name: str
    last_name: str
    grade_level: Optional[str] = None
    books_completed: int
    total_reading_time: int


class StudentRoster(CamelModel):
    students: List[StudentSummary]
    total_students: int
