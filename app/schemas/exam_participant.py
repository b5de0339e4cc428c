from pydantic import BaseModel, ConfigDict, EmailStr, field_validator
from typing import Optional
from datetime import datetime

class ExamParticipantAdd(BaseModel):
    email: EmailStr

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v):
        return v.strip().lower()

class ExamParticipantCreate(BaseModel):
    exam_id: int
    user_id: int
    email: str
    access_code: str

class ExamParticipantUpdate(BaseModel):
    is_used: Optional[bool] = None
    used_at: Optional[datetime] = None

class ExamParticipant(BaseModel):
    id: int
    exam_id: int
    user_id: int
    email: str
    access_code: str
    is_used: bool
    used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
