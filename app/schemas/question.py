from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Any, Dict, Union
from datetime import datetime

from app.core.constants import QuestionTypeEnum

Prompt = Union[str, Dict[str, Any]]

class QuestionCreate(BaseModel):
    question_type: QuestionTypeEnum
    prompt: Prompt
    options: List[str] = []
    correct_answer: Any = None
    points: int = 1

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "question_type": "single_choice",
                "prompt": "What is 2 + 2?",
                "options": ["3", "4", "5"],
                "correct_answer": "1",
                "points": 1
            }
        }
    )

class QuestionUpdate(BaseModel):
    question_type: Optional[QuestionTypeEnum] = None
    prompt: Optional[Prompt] = None
    options: Optional[List[str]] = None
    correct_answer: Any = None
    points: Optional[int] = None
    version: Optional[int] = Field(None, ge=1, description="Expected current version for optimistic locking")

class QuestionReorder(BaseModel):
    question_ids: List[int] = Field(..., min_length=1)
    version: Optional[int] = Field(None, ge=1, description="Expected current exam version")

class ParticipantQuestion(BaseModel):
    """Question as shown during an attempt. Never carries the correct answer."""
    id: int
    question_type: QuestionTypeEnum
    prompt: Prompt
    options: List[str]
    points: int
    position: int

class Question(ParticipantQuestion):
    exam_id: int
    correct_answer: Any
    version: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
