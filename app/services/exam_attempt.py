"""
Exam attempt lifecycle.

An attempt moves ``not_started -> in_progress -> submitted | abandoned | expired``
and never leaves a terminal state. All state is persisted; time limits are enforced
lazily by comparing the wall clock with ``started_at + duration`` whenever the
attempt is read or written, so there is no background timer.
"""
import logging
import math
import random
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.cache import CacheManager, cache
from app.core.cache_config import CACHE_KEYS, CACHE_TTL
from app.core.constants import (
    ANSWER_WRITE_RETRIES,
    ExamAttemptStatusEnum,
    FINALIZED_ATTEMPT_STATUSES,
    NOT_ANSWERED_LABEL,
    TERMINAL_ATTEMPT_STATUSES,
)
from app.core.exceptions import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    VersionConflictError,
)
from app.crud.exam import exam as crud_exam
from app.crud.exam_attempt import exam_attempt as crud_exam_attempt
from app.crud.exam_participant import exam_participant as crud_exam_participant
from app.crud.question import question as crud_question
from app.models.exam import Exam
from app.models.exam_attempt import ExamAttempt
from app.models.question import Question
from app.schemas.exam_attempt import (
    AnswerAccepted,
    AttemptProgress,
    AttemptResults,
    AttemptStarted,
    AttemptSummary,
    ExamAttemptCreate,
    NextQuestion,
    QuestionResult,
)
from app.schemas.question import ParticipantQuestion
from app.schemas.response import PaginatedResponse
from app.services.concurrency import ConcurrencyGuard, concurrency_guard
from app.services.question_types import QuestionTypeRegistry, question_registry
from app.services.scoring import GradedAnswer, ScoringEngine, scoring_engine
from app.utils.cache_invalidation import AttemptCacheInvalidator
from app.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


class ExamAttemptService:

    def __init__(
        self,
        exams=crud_exam,
        questions=crud_question,
        participants=crud_exam_participant,
        attempts=crud_exam_attempt,
        guard: ConcurrencyGuard = concurrency_guard,
        registry: QuestionTypeRegistry = question_registry,
        scoring: ScoringEngine = scoring_engine,
        cache: CacheManager = cache,
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None
    ):
        self.exams = exams
        self.questions = questions
        self.participants = participants
        self.attempts = attempts
        self.guard = guard
        self.registry = registry
        self.scoring = scoring
        self.cache = cache
        self.invalidator = AttemptCacheInvalidator(cache)
        self.clock = clock
        self.rng = rng or random.Random()

    # Lookups and guards

    def _get_attempt(self, db: Session, attempt_id: int, user_id: int) -> ExamAttempt:
        attempt = self.attempts.get(db, id=attempt_id)
        if not attempt:
            raise NotFoundError("Exam attempt not found.")
        if attempt.user_id != user_id:
            raise ForbiddenError("You do not have permission to access this attempt.")
        return attempt

    def _get_exam(self, db: Session, attempt: ExamAttempt) -> Exam:
        # Attempts already running may finish even if the exam was deleted meanwhile
        exam = self.exams.get_including_deleted(db, id=attempt.exam_id)
        if not exam:
            raise NotFoundError("Exam not found for this attempt.")
        return exam

    def _require_in_progress(self, attempt: ExamAttempt):
        if attempt.status == ExamAttemptStatusEnum.NOT_STARTED:
            raise NotFoundError("Exam attempt has not started.")
        if attempt.status in (ExamAttemptStatusEnum.SUBMITTED, ExamAttemptStatusEnum.ABANDONED):
            raise ConflictError(f"Exam attempt has already been {attempt.status.value}.")

    def _require_available(self, exam: Exam, now: datetime):
        if exam.available_anytime:
            return
        if exam.start_date and now < exam.start_date:
            raise BadRequestError("Exam has not started yet.")
        if exam.end_date and now > exam.end_date:
            raise BadRequestError("Exam has ended.")

    # Timing and progress

    def _deadline(self, attempt: ExamAttempt, exam: Exam) -> datetime:
        return attempt.started_at + timedelta(minutes=exam.duration_minutes)

    def _time_remaining(self, attempt: ExamAttempt, exam: Exam, now: datetime) -> int:
        seconds = (self._deadline(attempt, exam) - now).total_seconds()
        return max(0, math.ceil(seconds))

    def _is_elapsed(self, attempt: ExamAttempt, exam: Exam, now: datetime) -> bool:
        return now >= self._deadline(attempt, exam)

    def _progress(self, attempt: ExamAttempt) -> AttemptProgress:
        total = len(attempt.question_ids or [])
        answered = len(attempt.answered_questions or [])
        return AttemptProgress(
            answered=answered,
            total=total,
            current_index=attempt.current_question_index,
            percentage=round(answered / total * 100, 1) if total else 0.0,
            remaining=total - answered
        )

    @staticmethod
    def _first_unanswered(answered: List[int], total: int) -> int:
        answered_set = set(answered)
        for position in range(total):
            if position not in answered_set:
                return position
        return total

    # Grading and finalization

    def _frozen_questions(self, db: Session, attempt: ExamAttempt) -> List[Question]:
        """Questions captured at start, in session order."""
        by_id = {q.id: q for q in self.questions.get_by_ids(db, ids=attempt.question_ids)}
        ordered = []
        for index in attempt.question_order:
            question_id = attempt.question_ids[index]
            question = by_id.get(question_id)
            if question is None:
                logger.warning(f"Question {question_id} of attempt {attempt.id} no longer exists")
                continue
            ordered.append(question)
        return ordered

    def _stored_answer(self, attempt: ExamAttempt, question_id: int) -> Any:
        entry = (attempt.answers or {}).get(str(question_id))
        return entry.get("answer") if entry else None

    def _grade(self, attempt: ExamAttempt, questions: List[Question]) -> List[GradedAnswer]:
        graded = []
        for question in questions:
            answer = self._stored_answer(attempt, question.id)
            earned = 0
            if answer is not None:
                handler = self.registry.get(question.question_type)
                earned = handler.mark_answer(answer, question.correct_answer, question.points, question.options)
            graded.append(GradedAnswer(question_id=question.id, points=question.points, earned_points=earned))
        return graded

    def _summary(self, attempt: ExamAttempt, exam: Exam) -> AttemptSummary:
        return AttemptSummary(
            attempt_id=attempt.id,
            exam_id=attempt.exam_id,
            status=attempt.status,
            score=attempt.score,
            max_score=attempt.max_score,
            percentage=attempt.percentage,
            passed=attempt.passed,
            pass_percentage=exam.pass_percentage,
            started_at=attempt.started_at,
            submitted_at=attempt.submitted_at,
            abandoned_at=attempt.abandoned_at
        )

    def _question_results(self, attempt: ExamAttempt, questions: List[Question],
                          graded: List[GradedAnswer]) -> List[QuestionResult]:
        question_results = []
        for number, (question, graded_answer) in enumerate(zip(questions, graded), start=1):
            handler = self.registry.get(question.question_type)
            answer = self._stored_answer(attempt, question.id)
            question_results.append(QuestionResult(
                question_id=question.id,
                question_number=number,
                question_type=question.question_type.value,
                prompt=question.prompt,
                options=question.options,
                user_answer=handler.display_answer(answer, question.options) if answer is not None else NOT_ANSWERED_LABEL,
                correct_answer=handler.display_answer(question.correct_answer, question.options),
                is_correct=graded_answer.is_correct,
                points=question.points,
                earned_points=graded_answer.earned_points
            ))
        return question_results

    async def _finalize(self, db: Session, attempt: ExamAttempt, exam: Exam,
                        status: ExamAttemptStatusEnum, now: datetime) -> AttemptSummary:
        """Grade the recorded answers and move the attempt to ``status`` exactly once.

        The per-question breakdown is stored with the score, so later edits to the
        exam's questions never change a finished attempt's results.
        """
        db.refresh(attempt)
        questions = self._frozen_questions(db, attempt)
        graded = self._grade(attempt, questions)
        result = self.scoring.score(graded, exam.pass_percentage)
        values = {
            "question_results": [
                r.model_dump(mode="json") for r in self._question_results(attempt, questions, graded)
            ],
            "status": status,
            "submitted_at": now,
            "last_activity_at": now,
            "time_remaining": self._time_remaining(attempt, exam, now),
            "score": result.score,
            "max_score": result.max_score,
            "percentage": result.percentage,
            "passed": result.passed,
        }
        applied = self.guard.with_transaction(
            db, lambda session: self.attempts.finalize(session, attempt_id=attempt.id, values=values, commit=False)
        )
        db.refresh(attempt)

        if applied:
            logger.info(
                f"Attempt {attempt.id} {status.value}: {result.score}/{result.max_score} "
                f"({result.percentage}%), passed={result.passed}"
            )
            await self.invalidator.invalidate_attempt(attempt.id, attempt.user_id)
        else:
            logger.info(f"Attempt {attempt.id} was already finalized as {attempt.status.value}")
        return self._summary(attempt, exam)

    async def _expire_if_elapsed(self, db: Session, attempt: ExamAttempt, exam: Exam,
                                 now: datetime) -> Optional[AttemptSummary]:
        if not self._is_elapsed(attempt, exam, now):
            return None
        logger.info(f"Attempt {attempt.id} ran out of time, finalizing as expired")
        return await self._finalize(db, attempt, exam, ExamAttemptStatusEnum.EXPIRED, now)

    # Operations

    def start(self, db: Session, access_code: str, user_id: int) -> AttemptStarted:
        participant = self.participants.get_by_access_code(db, access_code=access_code)
        if not participant:
            raise NotFoundError("Invalid access code.")
        if participant.user_id != user_id:
            raise ForbiddenError("This access code does not belong to you.")
        if participant.is_used:
            raise ConflictError("This access code has already been used.")
        if self.attempts.get_by_exam_and_user(db, exam_id=participant.exam_id, user_id=user_id):
            raise ConflictError("You have already started this exam.")

        exam = self.exams.get(db, id=participant.exam_id)
        if not exam:
            raise NotFoundError("Exam not found.")

        now = self.clock()
        self._require_available(exam, now)

        questions = self.questions.get_by_exam(db, exam_id=exam.id)
        if not questions:
            raise BadRequestError("Exam has no questions.")

        question_order = list(range(len(questions)))
        if exam.randomize_questions:
            self.rng.shuffle(question_order)

        attempt_in = ExamAttemptCreate(
            exam_id=exam.id,
            participant_id=participant.id,
            user_id=user_id,
            status=ExamAttemptStatusEnum.IN_PROGRESS,
            started_at=now,
            last_activity_at=now,
            time_remaining=exam.duration_minutes * 60,
            question_ids=[q.id for q in questions],
            question_order=question_order
        )

        def _start(session: Session) -> ExamAttempt:
            attempt = self.attempts.create(session, obj_in=attempt_in, commit=False)
            self.participants.mark_used(session, db_obj=participant, used_at=now, commit=False)
            return attempt

        attempt = self.guard.with_transaction(db, _start)
        db.refresh(attempt)
        logger.info(f"Attempt {attempt.id} started by user {user_id} for exam {exam.id}")

        return AttemptStarted(
            attempt_id=attempt.id,
            exam_id=exam.id,
            title=exam.title,
            duration_minutes=exam.duration_minutes,
            total_questions=len(questions),
            started_at=attempt.started_at,
            time_remaining=attempt.time_remaining
        )

    async def get_next_question(self, db: Session, attempt_id: int, user_id: int) -> NextQuestion:
        attempt = self._get_attempt(db, attempt_id, user_id)
        exam = self._get_exam(db, attempt)

        if attempt.status == ExamAttemptStatusEnum.EXPIRED:
            return NextQuestion(status=attempt.status, time_remaining=0, result=self._summary(attempt, exam))
        self._require_in_progress(attempt)

        now = self.clock()
        expired = await self._expire_if_elapsed(db, attempt, exam, now)
        if expired:
            return NextQuestion(status=expired.status, time_remaining=0, result=expired)

        total = len(attempt.question_ids)
        position = attempt.current_question_index
        if position >= total:
            raise BadRequestError("All questions have been answered. Please submit the exam.")

        question = self.questions.get(db, id=attempt.question_ids[attempt.question_order[position]])
        if not question:
            raise NotFoundError("Question not found.")
        rendered = self.registry.get(question.question_type).render_for_participant(question)

        time_remaining = self._time_remaining(attempt, exam, now)
        self.attempts.update(db, db_obj=attempt, obj_in={"last_activity_at": now, "time_remaining": time_remaining})

        return NextQuestion(
            status=attempt.status,
            time_remaining=time_remaining,
            question=ParticipantQuestion(**rendered),
            question_number=position + 1,
            total_questions=total,
            has_next=position + 1 < total,
            progress=self._progress(attempt)
        )

    async def submit_answer(self, db: Session, attempt_id: int, user_id: int,
                            question_id: int, answer: Any) -> AnswerAccepted:
        """Record or replace the answer to one question.

        The write only lands if the attempt's ``version`` is unchanged since it was read.
        When another request got there first, the attempt is reloaded and every check
        runs again against the fresh row.
        """
        for _ in range(ANSWER_WRITE_RETRIES):
            accepted = await self._record_answer(db, attempt_id, user_id, question_id, answer)
            if accepted is not None:
                return accepted
        raise ConflictError("The attempt is being updated by another request. Please try again.")

    async def _record_answer(self, db: Session, attempt_id: int, user_id: int,
                             question_id: int, answer: Any) -> Optional[AnswerAccepted]:
        attempt = self._get_attempt(db, attempt_id, user_id)
        exam = self._get_exam(db, attempt)

        if attempt.status == ExamAttemptStatusEnum.EXPIRED:
            return AnswerAccepted(status=attempt.status, time_remaining=0, result=self._summary(attempt, exam))
        self._require_in_progress(attempt)

        now = self.clock()
        expired = await self._expire_if_elapsed(db, attempt, exam, now)
        if expired:
            return AnswerAccepted(status=expired.status, time_remaining=0, result=expired)

        if question_id not in attempt.question_ids:
            raise BadRequestError("Question is not part of this exam attempt.")

        question = self.questions.get(db, id=question_id)
        if not question:
            raise NotFoundError("Question not found.")

        handler = self.registry.get(question.question_type)
        if not handler.validate_answer_format(answer):
            raise BadRequestError(f"Invalid answer format for {question.question_type.value} question.")

        position = attempt.question_order.index(attempt.question_ids.index(question_id))
        if position > attempt.current_question_index:
            raise BadRequestError(f"Please answer question {attempt.current_question_index + 1} first.")

        key = str(question_id)
        stamp = now.isoformat()
        answers: Dict[str, Any] = dict(attempt.answers or {})
        previous = answers.get(key)
        answers[key] = {
            "answer": answer,
            "answered_at": previous["answered_at"] if previous else stamp,
            "updated_at": stamp,
        }
        answered = sorted(set(attempt.answered_questions or []) | {position})
        time_remaining = self._time_remaining(attempt, exam, now)

        values = {
            "answers": answers,
            "answered_questions": answered,
            "current_question_index": self._first_unanswered(answered, len(attempt.question_ids)),
            "last_activity_at": now,
            "time_remaining": time_remaining,
        }
        expected_version = attempt.version
        try:
            self.guard.with_transaction(
                db, lambda session: self.guard.versioned_update(
                    session, attempt, values, expected_version=expected_version, commit=False
                )
            )
        except VersionConflictError:
            # Rolled back; the next read reloads the attempt
            logger.info(f"Attempt {attempt.id} changed while recording question {question_id}, retrying")
            return None
        logger.debug(f"Attempt {attempt.id} recorded answer for question {question_id} at position {position}")

        return AnswerAccepted(status=attempt.status, time_remaining=time_remaining, progress=self._progress(attempt))

    async def submit_exam(self, db: Session, attempt_id: int, user_id: int) -> AttemptSummary:
        attempt = self._get_attempt(db, attempt_id, user_id)
        if attempt.status in TERMINAL_ATTEMPT_STATUSES:
            raise ConflictError(f"Exam attempt has already been {attempt.status.value}.")
        self._require_in_progress(attempt)

        exam = self._get_exam(db, attempt)
        now = self.clock()
        expired = await self._expire_if_elapsed(db, attempt, exam, now)
        if expired:
            return expired

        answered = set(attempt.answered_questions or [])
        unanswered = [p for p in range(len(attempt.question_ids)) if p not in answered]
        if unanswered:
            numbers = [p + 1 for p in unanswered]
            raise BadRequestError(
                f"Please answer all questions before submitting. Unanswered questions: "
                f"{', '.join(str(n) for n in numbers)}",
                details={
                    "unanswered_questions": numbers,
                    "question_ids": [attempt.question_ids[attempt.question_order[p]] for p in unanswered],
                }
            )

        return await self._finalize(db, attempt, exam, ExamAttemptStatusEnum.SUBMITTED, now)

    async def get_results(self, db: Session, attempt_id: int, user_id: int) -> AttemptResults:
        attempt = self._get_attempt(db, attempt_id, user_id)

        cache_key = CACHE_KEYS["attempt_results"].format(attempt_id)
        cached = await self.cache.get(cache_key)
        if cached:
            return AttemptResults.model_validate(cached)

        exam = self._get_exam(db, attempt)
        if attempt.status == ExamAttemptStatusEnum.IN_PROGRESS:
            await self._expire_if_elapsed(db, attempt, exam, self.clock())
        if attempt.status not in FINALIZED_ATTEMPT_STATUSES:
            raise BadRequestError("Results are only available after the exam has been submitted.")

        results = AttemptResults(
            **self._summary(attempt, exam).model_dump(),
            title=exam.title,
            total_questions=len(attempt.question_ids),
            questions=[QuestionResult.model_validate(r) for r in attempt.question_results or []]
        )
        await self.cache.set(cache_key, results.model_dump(mode="json"), CACHE_TTL["attempt_results"])
        return results

    async def get_my_results(self, db: Session, user_id: int, page: int = 1,
                             size: int = 20) -> PaginatedResponse[AttemptSummary]:
        cache_key = CACHE_KEYS["my_results"].format(user_id, page, size)
        cached = await self.cache.get(cache_key)
        if cached:
            return PaginatedResponse[AttemptSummary].model_validate(cached)

        attempts = self.attempts.get_finalized_by_user(db, user_id=user_id, skip=(page - 1) * size, limit=size)
        total = self.attempts.count_finalized_by_user(db, user_id=user_id)
        results = PaginatedResponse[AttemptSummary].build(
            items=[self._summary(attempt, attempt.exam) for attempt in attempts],
            total=total,
            page=page,
            size=size
        )
        await self.cache.set(cache_key, results.model_dump(mode="json"), CACHE_TTL["my_results"])
        return results

    async def abandon(self, db: Session, attempt_id: int, actor_id: int) -> AttemptSummary:
        """Administrative stop by the exam's creator. Never triggered automatically."""
        attempt = self.attempts.get(db, id=attempt_id)
        if not attempt:
            raise NotFoundError("Exam attempt not found.")
        exam = self._get_exam(db, attempt)
        if exam.creator_id != actor_id:
            raise ForbiddenError("Only the exam creator can abandon an attempt.")
        if attempt.status != ExamAttemptStatusEnum.IN_PROGRESS:
            raise ConflictError(f"Cannot abandon an attempt that is {attempt.status.value}.")

        now = self.clock()
        values = {
            "status": ExamAttemptStatusEnum.ABANDONED,
            "abandoned_at": now,
            "last_activity_at": now,
        }
        applied = self.guard.with_transaction(
            db, lambda session: self.attempts.finalize(session, attempt_id=attempt.id, values=values, commit=False)
        )
        db.refresh(attempt)
        if not applied:
            raise ConflictError(f"Cannot abandon an attempt that is {attempt.status.value}.")

        logger.info(f"Attempt {attempt.id} abandoned by exam creator {actor_id}")
        await self.invalidator.invalidate_attempt(attempt.id, attempt.user_id)
        return self._summary(attempt, exam)


exam_attempt_service = ExamAttemptService()
