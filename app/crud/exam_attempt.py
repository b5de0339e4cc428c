from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional

from app.core.constants import ExamAttemptStatusEnum, FINALIZED_ATTEMPT_STATUSES, LOCKING_ATTEMPT_STATUSES
from app.crud.base import CRUDBase
from app.models.exam_attempt import ExamAttempt
from app.schemas.exam_attempt import ExamAttemptCreate, ExamAttemptUpdate

class CRUDExamAttempt(CRUDBase[ExamAttempt, ExamAttemptCreate, ExamAttemptUpdate]):

    def get_by_exam_and_user(self, db: Session, *, exam_id: int, user_id: int) -> Optional[ExamAttempt]:
        return (
            db.query(ExamAttempt)
            .filter(ExamAttempt.exam_id == exam_id, ExamAttempt.user_id == user_id)
            .first()
        )

    def get_all_by_exam(self, db: Session, exam_id: int, skip: int = 0, limit: int = 100) -> List[ExamAttempt]:
        return (
            db.query(ExamAttempt)
            .filter(ExamAttempt.exam_id == exam_id)
            .order_by(ExamAttempt.started_at.desc(), ExamAttempt.id.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )

    def has_active_attempts(self, db: Session, *, exam_id: int) -> bool:
        return (
            db.query(ExamAttempt.id)
            .filter(
                ExamAttempt.exam_id == exam_id,
                ExamAttempt.status.in_(LOCKING_ATTEMPT_STATUSES)
            )
            .first()
        ) is not None

    def get_finalized_by_user(self, db: Session, *, user_id: int, skip: int = 0, limit: int = 100) -> List[ExamAttempt]:
        return (
            db.query(ExamAttempt)
            .filter(
                ExamAttempt.user_id == user_id,
                ExamAttempt.status.in_(FINALIZED_ATTEMPT_STATUSES)
            )
            .order_by(ExamAttempt.submitted_at.desc(), ExamAttempt.id.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )

    def count_finalized_by_user(self, db: Session, *, user_id: int) -> int:
        return (
            db.query(ExamAttempt)
            .filter(
                ExamAttempt.user_id == user_id,
                ExamAttempt.status.in_(FINALIZED_ATTEMPT_STATUSES)
            )
            .count()
        )

    def finalize(self, db: Session, *, attempt_id: int, values: Dict[str, Any], commit: bool = True) -> bool:
        """Write a terminal state only if the attempt is still in progress.

        Bumps ``version`` so that answer writes prepared before finalization fail their check.

        Returns False when another writer finalized the attempt first.
        """
        updated = (
            db.query(ExamAttempt)
            .filter(
                ExamAttempt.id == attempt_id,
                ExamAttempt.status == ExamAttemptStatusEnum.IN_PROGRESS
            )
            .update({**values, "version": ExamAttempt.version + 1}, synchronize_session=False)
        )
        if commit:
            db.commit()
        else:
            db.flush()
        return updated == 1


exam_attempt = CRUDExamAttempt(ExamAttempt)
