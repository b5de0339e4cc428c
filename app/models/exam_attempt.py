from sqlalchemy import Column, Integer, DateTime, ForeignKey, Float, Boolean, Enum, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.core.database import Base
from app.core.constants import ExamAttemptStatusEnum

class ExamAttempt(Base):
    __tablename__ = "exam_attempts"
    __table_args__ = (
        UniqueConstraint("exam_id", "user_id", name="uq_exam_attempts_exam_user"),
    )

    id = Column(Integer, primary_key=True, index=True)
    exam_id = Column(Integer, ForeignKey("exams.id"), nullable=False, index=True)
    participant_id = Column(Integer, ForeignKey("exam_participants.id"), nullable=False, unique=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(Enum(ExamAttemptStatusEnum), nullable=False, default=ExamAttemptStatusEnum.NOT_STARTED)
    started_at = Column(DateTime, nullable=True)
    submitted_at = Column(DateTime, nullable=True)
    abandoned_at = Column(DateTime, nullable=True)
    last_activity_at = Column(DateTime, nullable=True)
    time_remaining = Column(Integer, nullable=False, default=0) # seconds
    current_question_index = Column(Integer, nullable=False, default=0)
    question_ids = Column(JSON, nullable=False, default=list) # Frozen at start, exam position order
    question_order = Column(JSON, nullable=False, default=list) # Permutation of indices into question_ids
    answered_questions = Column(JSON, nullable=False, default=list) # Answered session positions
    answers = Column(JSON, nullable=False, default=dict) # str(question_id) -> {answer, answered_at, updated_at}
    question_results = Column(JSON, nullable=True) # Per-question breakdown frozen at finalization
    score = Column(Float, nullable=True)
    max_score = Column(Float, nullable=True)
    percentage = Column(Float, nullable=True)
    passed = Column(Boolean, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())

    exam = relationship("Exam", back_populates="attempts")
    participant = relationship("ExamParticipant", back_populates="attempt")
    user = relationship("User", back_populates="exam_attempts")
