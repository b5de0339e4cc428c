from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Optional
from datetime import datetime

from app.core.config import settings
from app.utils.timeutils import to_naive_utc

class ExamBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    duration_minutes: int = Field(..., ge=1, le=1440)
    available_anytime: bool = True
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    randomize_questions: bool = False
    pass_percentage: float = Field(default=settings.DEFAULT_PASS_PERCENTAGE, ge=0, le=100)

    @field_validator('title')
    @classmethod
    def strip_title(cls, v):
        if v is not None and not v.strip():
            raise ValueError("Title cannot be empty")
        return v.strip() if v is not None else v

    @field_validator('start_date', 'end_date')
    @classmethod
    def normalize_dates(cls, v):
        return to_naive_utc(v)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "title": "Final Exam",
                "description": "End of term assessment",
                "duration_minutes": 60,
                "available_anytime": False,
                "start_date": "2026-01-10T09:00:00Z",
                "end_date": "2026-01-10T18:00:00Z",
                "randomize_questions": True,
                "pass_percentage": 70.0
            }
        }
    )

class ExamCreate(ExamBase):

    @model_validator(mode='after')
    def check_window(self):
        if not self.available_anytime:
            if self.start_date is None or self.end_date is None:
                raise ValueError("start_date and end_date are required unless the exam is available anytime")
            if self.start_date >= self.end_date:
                raise ValueError("start_date must be before end_date")
        return self

class ExamUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    duration_minutes: Optional[int] = Field(None, ge=1, le=1440)
    available_anytime: Optional[bool] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    randomize_questions: Optional[bool] = None
    pass_percentage: Optional[float] = Field(None, ge=0, le=100)
    version: Optional[int] = Field(None, ge=1, description="Expected current version for optimistic locking")

    @field_validator('start_date', 'end_date')
    @classmethod
    def normalize_dates(cls, v):
        return to_naive_utc(v)

class Exam(ExamBase):
    id: int
    creator_id: int
    version: int
    question_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

