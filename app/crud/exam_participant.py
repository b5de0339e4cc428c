from datetime import datetime
from typing import List, Optional
from sqlalchemy.orm import Session

from app.crud.base import CRUDBase
from app.models.exam_participant import ExamParticipant
from app.schemas.exam_participant import ExamParticipantCreate, ExamParticipantUpdate

class CRUDExamParticipant(CRUDBase[ExamParticipant, ExamParticipantCreate, ExamParticipantUpdate]):

    def get_by_access_code(self, db: Session, *, access_code: str) -> Optional[ExamParticipant]:
        return (
            db.query(ExamParticipant)
            .filter(ExamParticipant.access_code == access_code.strip().upper())
            .first()
        )

    def get_by_exam_and_user(self, db: Session, *, exam_id: int, user_id: int) -> Optional[ExamParticipant]:
        return (
            db.query(ExamParticipant)
            .filter(ExamParticipant.exam_id == exam_id, ExamParticipant.user_id == user_id)
            .first()
        )

    def get_in_exam(self, db: Session, *, exam_id: int, participant_id: int) -> Optional[ExamParticipant]:
        return (
            db.query(ExamParticipant)
            .filter(ExamParticipant.id == participant_id, ExamParticipant.exam_id == exam_id)
            .first()
        )

    def get_by_exam(self, db: Session, *, exam_id: int) -> List[ExamParticipant]:
        return (
            db.query(ExamParticipant)
            .filter(ExamParticipant.exam_id == exam_id)
            .order_by(ExamParticipant.id)
            .all()
        )

    def access_code_exists(self, db: Session, *, access_code: str) -> bool:
        return db.query(ExamParticipant.id).filter(ExamParticipant.access_code == access_code).first() is not None

    def mark_used(self, db: Session, *, db_obj: ExamParticipant, used_at: datetime,
                  commit: bool = True) -> ExamParticipant:
        return self.update(db, db_obj=db_obj, obj_in={"is_used": True, "used_at": used_at}, commit=commit)

exam_participant = CRUDExamParticipant(ExamParticipant)
