from sqlalchemy.orm import Session, selectinload
from typing import List

from app.crud.base import CRUDBase
from app.models.exam import Exam
from app.schemas.exam import ExamCreate, ExamUpdate


class CRUDExam(CRUDBase[Exam, ExamCreate, ExamUpdate]):

    def _query_with_relationships(self, db: Session):
        return db.query(Exam).options(
            selectinload(Exam.questions)
        )

    def _query_active(self, db: Session):
        return self._query_with_relationships(db).filter(Exam.deleted_at.is_(None))

    def get(self, db: Session, id: int):
        return self._query_active(db).filter(Exam.id == id).first()

    def get_including_deleted(self, db: Session, id: int):
        return self._query_with_relationships(db).filter(Exam.id == id).first()

    def get_multi(self, db: Session, skip: int = 0, limit: int = 100) -> List[Exam]:
        return (
            self._query_active(db)
            .offset(skip)
            .limit(limit)
            .all()
        )

    def get_by_creator(self, db: Session, creator_id: int, skip: int = 0, limit: int = 100) -> List[Exam]:
        return (
            self._query_active(db)
            .filter(Exam.creator_id == creator_id)
            .order_by(Exam.created_at.desc(), Exam.id.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )

    def count_by_creator(self, db: Session, creator_id: int) -> int:
        return (
            db.query(Exam)
            .filter(Exam.creator_id == creator_id, Exam.deleted_at.is_(None))
            .count()
        )

exam = CRUDExam(Exam)
