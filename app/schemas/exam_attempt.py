from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Any, Dict, Union
from datetime import datetime

from app.core.constants import ExamAttemptStatusEnum
from app.schemas.question import ParticipantQuestion, Prompt

AnswerValue = Union[int, str, List[Union[int, str]]]

class ExamAttemptCreate(BaseModel):
    exam_id: int
    participant_id: int
    user_id: int
    status: ExamAttemptStatusEnum = ExamAttemptStatusEnum.IN_PROGRESS
    started_at: datetime
    last_activity_at: datetime
    time_remaining: int
    current_question_index: int = 0
    question_ids: List[int]
    question_order: List[int]
    answered_questions: List[int] = []
    answers: Dict[str, Any] = {}

class ExamAttemptUpdate(BaseModel):
    status: Optional[ExamAttemptStatusEnum] = None
    last_activity_at: Optional[datetime] = None
    time_remaining: Optional[int] = None
    current_question_index: Optional[int] = None
    answered_questions: Optional[List[int]] = None
    answers: Optional[Dict[str, Any]] = None

class AttemptStartRequest(BaseModel):
    access_code: str = Field(..., min_length=1)

    @field_validator("access_code")
    @classmethod
    def normalize_code(cls, v):
        return v.strip().upper()

class AnswerSubmit(BaseModel):
    question_id: int
    answer: AnswerValue

class AttemptStarted(BaseModel):
    attempt_id: int
    exam_id: int
    title: str
    duration_minutes: int
    total_questions: int
    started_at: datetime
    time_remaining: int

class AttemptProgress(BaseModel):
    answered: int
    total: int
    current_index: int
    percentage: float
    remaining: int

class AttemptSummary(BaseModel):
    """Terminal outcome of an attempt."""
    attempt_id: int
    exam_id: int
    status: ExamAttemptStatusEnum
    score: Optional[float] = None
    max_score: Optional[float] = None
    percentage: Optional[float] = None
    passed: Optional[bool] = None
    pass_percentage: float
    started_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    abandoned_at: Optional[datetime] = None

class NextQuestion(BaseModel):
    """Either the next question to answer, or the result once the attempt has ended."""
    status: ExamAttemptStatusEnum
    time_remaining: int
    question: Optional[ParticipantQuestion] = None
    question_number: Optional[int] = None
    total_questions: Optional[int] = None
    has_next: Optional[bool] = None
    progress: Optional[AttemptProgress] = None
    result: Optional[AttemptSummary] = None

class AnswerAccepted(BaseModel):
    status: ExamAttemptStatusEnum
    time_remaining: int
    progress: Optional[AttemptProgress] = None
    result: Optional[AttemptSummary] = None

class QuestionResult(BaseModel):
    question_id: int
    question_number: int
    question_type: str
    prompt: Prompt
    options: List[str]
    user_answer: str
    correct_answer: str
    is_correct: bool
    points: int
    earned_points: float

class AttemptResults(AttemptSummary):
    title: str
    total_questions: int
    questions: List[QuestionResult]

class ExamAttemptOverview(BaseModel):
    attempt_id: int
    user_id: int
    status: ExamAttemptStatusEnum
    started_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    answered: int
    total_questions: int
    score: Optional[float] = None
    max_score: Optional[float] = None
    percentage: Optional[float] = None
    passed: Optional[bool] = None

class ExamAttempt(BaseModel):
    id: int
    exam_id: int
    participant_id: int
    user_id: int
    status: ExamAttemptStatusEnum
    started_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    abandoned_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    time_remaining: int
    current_question_index: int
    answered_questions: List[int]
    score: Optional[float] = None
    max_score: Optional[float] = None
    percentage: Optional[float] = None
    passed: Optional[bool] = None

    model_config = ConfigDict(from_attributes=True)
