import logging
from typing import Any, Callable, Dict, Optional, TypeVar

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.exceptions import BadRequestError, ConflictError, InternalError, VersionConflictError
from app.crud.exam_attempt import exam_attempt as crud_exam_attempt

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConcurrencyGuard:
    """Transactions, optimistic version checks and the active-attempt lock."""

    def __init__(self, attempts=crud_exam_attempt):
        self.attempts = attempts

    def with_transaction(self, db: Session, fn: Callable[[Session], T]) -> T:
        """Run ``fn(db)`` as one unit of work.

        Writers inside ``fn`` must pass ``commit=False``. Everything commits together
        on success; any exception rolls the whole unit back.
        """
        try:
            result = fn(db)
            db.commit()
            return result
        except HTTPException:
            db.rollback()
            raise
        except IntegrityError as e:
            db.rollback()
            logger.warning(f"Transaction aborted on integrity violation: {e.orig}")
            raise ConflictError("The request conflicts with existing data.") from e
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Transaction aborted on database error: {e}", exc_info=True)
            raise InternalError("The operation could not be completed.") from e
        except Exception:
            db.rollback()
            raise

    def versioned_update(
        self,
        db: Session,
        db_obj: Any,
        values: Dict[str, Any],
        expected_version: Optional[int] = None,
        commit: bool = True
    ) -> Any:
        """Compare-and-swap update that always increments ``version``.

        The write only lands when the stored version equals ``expected_version``;
        without an expected version the check is skipped.
        """
        model = type(db_obj)
        query = db.query(model).filter(model.id == db_obj.id)
        if expected_version is not None:
            query = query.filter(model.version == expected_version)

        updated = query.update({**values, "version": model.version + 1}, synchronize_session=False)
        if updated == 0:
            current_version = db.query(model.version).filter(model.id == db_obj.id).scalar()
            logger.info(
                f"Version conflict on {model.__tablename__} {db_obj.id}: "
                f"expected {expected_version}, current {current_version}"
            )
            raise VersionConflictError(current_version=current_version, expected_version=expected_version)

        if commit:
            db.commit()
        else:
            db.flush()
        db.refresh(db_obj)
        return db_obj

    def require_no_active_attempts(self, db: Session, exam_id: int, action: str = "modify this exam"):
        if self.attempts.has_active_attempts(db, exam_id=exam_id):
            raise BadRequestError(
                f"Cannot {action}: exam has active attempts.",
                details={"exam_id": exam_id}
            )


concurrency_guard = ConcurrencyGuard()
