from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.core.database import Base

class ExamParticipant(Base):
    __tablename__ = "exam_participants"
    __table_args__ = (
        UniqueConstraint("exam_id", "user_id", name="uq_exam_participants_exam_user"),
    )

    id = Column(Integer, primary_key=True, index=True)
    exam_id = Column(Integer, ForeignKey("exams.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    email = Column(String, nullable=False)
    access_code = Column(String, unique=True, index=True, nullable=False)
    is_used = Column(Boolean, nullable=False, default=False)
    used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    exam = relationship("Exam", back_populates="participants")
    user = relationship("User", back_populates="exam_participations")
    attempt = relationship("ExamAttempt", back_populates="participant", uselist=False)
