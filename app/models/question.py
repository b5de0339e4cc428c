from sqlalchemy import Column, Integer, DateTime, ForeignKey, Enum, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.core.database import Base
from app.core.constants import QuestionTypeEnum

class Question(Base):
    __tablename__ = "questions"

    id = Column(Integer, primary_key=True, index=True)
    exam_id = Column(Integer, ForeignKey("exams.id"), nullable=False, index=True)
    question_type = Column(Enum(QuestionTypeEnum), nullable=False)
    prompt = Column(JSON, nullable=False) # Plain text or {"text": ..., ...}
    options = Column(JSON, nullable=False, default=list)
    correct_answer = Column(JSON, nullable=False) # Normalized by the question type handler
    points = Column(Integer, nullable=False, default=1)
    position = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())

    exam = relationship("Exam", back_populates="questions")
