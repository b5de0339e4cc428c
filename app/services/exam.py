import logging
from typing import List

from sqlalchemy.orm import Session

from app.core.exceptions import BadRequestError, ForbiddenError, NotFoundError
from app.crud.exam import exam as crud_exam
from app.crud.exam_attempt import exam_attempt as crud_exam_attempt
from app.crud.question import question as crud_question
from app.models.exam import Exam as ExamModel
from app.schemas.exam import ExamCreate, ExamUpdate, Exam
from app.schemas.exam_attempt import ExamAttemptOverview
from app.schemas.question import QuestionCreate, QuestionUpdate, QuestionReorder, Question
from app.services.concurrency import ConcurrencyGuard, concurrency_guard
from app.services.question_types import QuestionTypeRegistry, question_registry

logger = logging.getLogger(__name__)

# Exam fields that change how a running attempt is timed or graded
ATTEMPT_SENSITIVE_FIELDS = {"duration_minutes", "pass_percentage", "randomize_questions"}
NON_NULLABLE_FIELDS = {"title", "duration_minutes", "available_anytime", "randomize_questions", "pass_percentage"}


class ExamService:

    def __init__(
        self,
        exams=crud_exam,
        questions=crud_question,
        attempts=crud_exam_attempt,
        guard: ConcurrencyGuard = concurrency_guard,
        registry: QuestionTypeRegistry = question_registry
    ):
        self.exams = exams
        self.questions = questions
        self.attempts = attempts
        self.guard = guard
        self.registry = registry

    def _to_schema(self, exam: ExamModel) -> Exam:
        return Exam.model_validate(exam).model_copy(update={"question_count": len(exam.questions)})

    def get_owned_exam(self, db: Session, exam_id: int, user_id: int, action: str = "manage") -> ExamModel:
        exam = self.exams.get(db, id=exam_id)
        if not exam:
            raise NotFoundError("Exam not found.")
        if exam.creator_id != user_id:
            raise ForbiddenError(f"You do not have permission to {action} this exam.")
        return exam

    def create_exam(self, db: Session, exam_in: ExamCreate, user_id: int) -> Exam:
        new_exam = self.exams.create(db, obj_in={**exam_in.model_dump(), "creator_id": user_id, "version": 1})
        logger.info(f"Exam {new_exam.id} created by user {user_id}")
        return self._to_schema(new_exam)

    def get_exams(self, db: Session, user_id: int, skip: int = 0, limit: int = 100) -> List[Exam]:
        exams = self.exams.get_by_creator(db, creator_id=user_id, skip=skip, limit=limit)
        return [self._to_schema(exam) for exam in exams]

    def get_exam(self, db: Session, exam_id: int, user_id: int) -> Exam:
        return self._to_schema(self.get_owned_exam(db, exam_id, user_id, action="view"))

    def update_exam(self, db: Session, exam_id: int, exam_in: ExamUpdate, user_id: int) -> Exam:
        exam = self.get_owned_exam(db, exam_id, user_id, action="update")

        update_data = exam_in.model_dump(exclude_unset=True)
        expected_version = update_data.pop("version", None)
        update_data = {
            field: value for field, value in update_data.items()
            if value is not None or field not in NON_NULLABLE_FIELDS
        }
        if not update_data:
            raise BadRequestError("No fields provided for update.")

        if ATTEMPT_SENSITIVE_FIELDS & update_data.keys():
            self.guard.require_no_active_attempts(db, exam.id, action="change timing or grading settings")

        available_anytime = update_data.get("available_anytime", exam.available_anytime)
        start_date = update_data.get("start_date", exam.start_date)
        end_date = update_data.get("end_date", exam.end_date)
        if not available_anytime:
            if start_date is None or end_date is None:
                raise BadRequestError("start_date and end_date are required unless the exam is available anytime.")
            if start_date >= end_date:
                raise BadRequestError("start_date must be before end_date.")

        updated_exam = self.guard.versioned_update(db, exam, update_data, expected_version=expected_version)
        logger.info(f"Exam {exam.id} updated to version {updated_exam.version}")
        return self._to_schema(updated_exam)

    def delete_exam(self, db: Session, exam_id: int, user_id: int) -> None:
        exam = self.get_owned_exam(db, exam_id, user_id, action="delete")
        self.exams.delete(db, id=exam.id)
        logger.info(f"Exam {exam_id} soft-deleted by user {user_id}")

    def get_questions(self, db: Session, exam_id: int, user_id: int) -> List[Question]:
        exam = self.get_owned_exam(db, exam_id, user_id, action="view")
        return [Question.model_validate(q) for q in self.questions.get_by_exam(db, exam_id=exam.id)]

    def add_question(self, db: Session, exam_id: int, question_in: QuestionCreate, user_id: int) -> Question:
        exam = self.get_owned_exam(db, exam_id, user_id)
        self.guard.require_no_active_attempts(db, exam.id, action="add questions")

        handler = self.registry.get(question_in.question_type)
        values = handler.build_from_input(
            question_in.prompt,
            question_in.options,
            question_in.correct_answer,
            question_in.points,
            self.questions.get_next_position(db, exam_id=exam.id)
        )

        def _add(session: Session):
            question = self.questions.create(session, obj_in={**values, "exam_id": exam.id, "version": 1}, commit=False)
            self.guard.versioned_update(session, exam, {}, commit=False)
            return question

        question = self.guard.with_transaction(db, _add)
        db.refresh(question)
        logger.info(f"Question {question.id} added to exam {exam.id} at position {question.position}")
        return Question.model_validate(question)

    def update_question(self, db: Session, exam_id: int, question_id: int,
                        question_in: QuestionUpdate, user_id: int) -> Question:
        exam = self.get_owned_exam(db, exam_id, user_id)
        self.guard.require_no_active_attempts(db, exam.id, action="update questions")

        question = self.questions.get_in_exam(db, exam_id=exam.id, question_id=question_id)
        if not question:
            raise NotFoundError("Question not found.")

        changes = question_in.model_dump(exclude_unset=True)
        expected_version = changes.pop("version", None)
        if not changes:
            raise BadRequestError("No fields provided for update.")

        question_type = changes.get("question_type") or question.question_type
        handler = self.registry.get(question_type)
        values = handler.build_from_input(
            changes.get("prompt", question.prompt),
            changes.get("options", question.options),
            changes["correct_answer"] if "correct_answer" in changes else question.correct_answer,
            changes.get("points", question.points),
            question.position
        )
        values.pop("position")

        updated = self.guard.versioned_update(db, question, values, expected_version=expected_version)
        logger.info(f"Question {question_id} in exam {exam.id} updated to version {updated.version}")
        return Question.model_validate(updated)

    def delete_question(self, db: Session, exam_id: int, question_id: int, user_id: int) -> None:
        exam = self.get_owned_exam(db, exam_id, user_id)
        self.guard.require_no_active_attempts(db, exam.id, action="delete questions")

        question = self.questions.get_in_exam(db, exam_id=exam.id, question_id=question_id)
        if not question:
            raise NotFoundError("Question not found.")

        def _delete(session: Session):
            self.questions.delete(session, id=question.id, commit=False)
            self.guard.versioned_update(session, exam, {}, commit=False)

        self.guard.with_transaction(db, _delete)
        logger.info(f"Question {question_id} deleted from exam {exam_id}")

    def reorder_questions(self, db: Session, exam_id: int, reorder_in: QuestionReorder, user_id: int) -> List[Question]:
        exam = self.get_owned_exam(db, exam_id, user_id)
        self.guard.require_no_active_attempts(db, exam.id, action="reorder questions")

        questions = {q.id: q for q in self.questions.get_by_exam(db, exam_id=exam.id)}
        requested = reorder_in.question_ids
        if len(set(requested)) != len(requested) or set(requested) != set(questions):
            raise BadRequestError(
                "question_ids must list every question of the exam exactly once.",
                details={"expected": sorted(questions), "received": requested}
            )

        def _reorder(session: Session):
            self.guard.versioned_update(session, exam, {}, expected_version=reorder_in.version, commit=False)
            for position, question_id in enumerate(requested):
                self.questions.update(session, db_obj=questions[question_id], obj_in={"position": position}, commit=False)

        self.guard.with_transaction(db, _reorder)
        logger.info(f"Questions of exam {exam_id} reordered")
        return [Question.model_validate(q) for q in self.questions.get_by_exam(db, exam_id=exam.id)]

    def get_exam_attempts(self, db: Session, exam_id: int, user_id: int,
                          skip: int = 0, limit: int = 100) -> List[ExamAttemptOverview]:
        exam = self.get_owned_exam(db, exam_id, user_id, action="view attempts for")
        return [
            ExamAttemptOverview(
                attempt_id=attempt.id,
                user_id=attempt.user_id,
                status=attempt.status,
                started_at=attempt.started_at,
                submitted_at=attempt.submitted_at,
                answered=len(attempt.answered_questions or []),
                total_questions=len(attempt.question_ids or []),
                score=attempt.score,
                max_score=attempt.max_score,
                percentage=attempt.percentage,
                passed=attempt.passed
            )
            for attempt in self.attempts.get_all_by_exam(db, exam_id=exam.id, skip=skip, limit=limit)
        ]


exam_service = ExamService()
