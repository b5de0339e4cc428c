from typing import List, Optional
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.crud.base import CRUDBase
from app.models.question import Question
from app.schemas.question import QuestionCreate, QuestionUpdate

class CRUDQuestion(CRUDBase[Question, QuestionCreate, QuestionUpdate]):
    def get_by_exam(self, db: Session, *, exam_id: int) -> List[Question]:
        return (
            db.query(self.model)
            .filter(self.model.exam_id == exam_id)
            .order_by(self.model.position, self.model.id)
            .all()
        )

    def get_in_exam(self, db: Session, *, exam_id: int, question_id: int) -> Optional[Question]:
        return (
            db.query(self.model)
            .filter(self.model.id == question_id, self.model.exam_id == exam_id)
            .first()
        )

    def get_by_ids(self, db: Session, *, ids: List[int]) -> List[Question]:
        if not ids:
            return []
        return db.query(self.model).filter(self.model.id.in_(ids)).all()

    def get_next_position(self, db: Session, *, exam_id: int) -> int:
        current_max = (
            db.query(func.max(self.model.position))
            .filter(self.model.exam_id == exam_id)
            .scalar()
        )
        return 0 if current_max is None else current_max + 1

question = CRUDQuestion(Question)
