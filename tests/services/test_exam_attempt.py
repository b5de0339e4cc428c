import pytest
from datetime import timedelta
from sqlalchemy.orm import sessionmaker

from app.core.constants import ExamAttemptStatusEnum, NOT_ANSWERED_LABEL
from app.core.exceptions import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from app.crud.exam_attempt import exam_attempt as crud_exam_attempt
from app.crud.exam_participant import exam_participant as crud_exam_participant
from app.schemas.question import QuestionCreate, QuestionUpdate
from tests.helpers.exam_data import DEFAULT_QUESTIONS, SINGLE_QUESTION


def _start(db_session, attempt_svc, setup):
    return attempt_svc.start(db_session, access_code=setup.access_code, user_id=setup.student.id)


async def _answer_all(db_session, attempt_svc, setup, attempt_id, answers):
    for question, answer in zip(setup.questions, answers):
        await attempt_svc.submit_answer(
            db_session, attempt_id=attempt_id, user_id=setup.student.id, question_id=question.id, answer=answer
        )


class TestStartAttempt:
    def test_start_freezes_questions_and_uses_code(self, db_session, exam_setup, attempt_svc, clock):
        setup = exam_setup()
        started = _start(db_session, attempt_svc, setup)

        assert started.total_questions == 2
        assert started.time_remaining == 30 * 60
        assert started.started_at == clock.now

        attempt = crud_exam_attempt.get(db_session, id=started.attempt_id)
        assert attempt.status == ExamAttemptStatusEnum.IN_PROGRESS
        assert attempt.question_ids == [q.id for q in setup.questions]
        assert attempt.question_order == [0, 1]

        participant = crud_exam_participant.get(db_session, id=setup.participant.id)
        assert participant.is_used is True
        assert participant.used_at == clock.now

    def test_access_code_is_case_insensitive(self, db_session, exam_setup, attempt_svc):
        setup = exam_setup()
        started = attempt_svc.start(db_session, access_code=f" {setup.access_code.lower()} ", user_id=setup.student.id)
        assert started.exam_id == setup.exam.id

    def test_second_start_is_rejected(self, db_session, exam_setup, attempt_svc):
        setup = exam_setup()
        _start(db_session, attempt_svc, setup)
        with pytest.raises(ConflictError):
            _start(db_session, attempt_svc, setup)

    def test_unknown_code(self, db_session, exam_setup, attempt_svc):
        setup = exam_setup()
        with pytest.raises(NotFoundError):
            attempt_svc.start(db_session, access_code="NOPE", user_id=setup.student.id)

    def test_code_belongs_to_someone_else(self, db_session, exam_setup, attempt_svc, user_factory):
        setup = exam_setup()
        with pytest.raises(ForbiddenError):
            attempt_svc.start(db_session, access_code=setup.access_code, user_id=user_factory().id)

    def test_exam_without_questions(self, db_session, exam_setup, attempt_svc):
        setup = exam_setup(questions=[])
        with pytest.raises(BadRequestError) as exc_info:
            _start(db_session, attempt_svc, setup)
        assert exc_info.value.detail == "Exam has no questions."
        assert crud_exam_participant.get(db_session, id=setup.participant.id).is_used is False

    def test_exam_window(self, db_session, exam_setup, attempt_svc, clock):
        setup = exam_setup(
            available_anytime=False,
            start_date=clock.now + timedelta(hours=1),
            end_date=clock.now + timedelta(hours=3)
        )
        with pytest.raises(BadRequestError) as exc_info:
            _start(db_session, attempt_svc, setup)
        assert exc_info.value.detail == "Exam has not started yet."

        clock.advance(hours=4)
        with pytest.raises(BadRequestError) as exc_info:
            _start(db_session, attempt_svc, setup)
        assert exc_info.value.detail == "Exam has ended."

        clock.now -= timedelta(hours=2)
        assert _start(db_session, attempt_svc, setup).exam_id == setup.exam.id

    def test_randomized_order_is_a_permutation(self, db_session, exam_setup, attempt_svc):
        questions = [
            {"question_type": "single_choice", "prompt": f"Question {n}", "options": ["a", "b"], "correct_answer": 0}
            for n in range(6)
        ]
        setup = exam_setup(questions=questions, randomize_questions=True)
        started = _start(db_session, attempt_svc, setup)

        attempt = crud_exam_attempt.get(db_session, id=started.attempt_id)
        assert sorted(attempt.question_order) == list(range(6))
        assert attempt.question_ids == [q.id for q in setup.questions]


@pytest.mark.asyncio
class TestAnswering:
    async def test_next_question_hides_correct_answer(self, db_session, exam_setup, attempt_svc):
        setup = exam_setup()
        started = _start(db_session, attempt_svc, setup)

        next_question = await attempt_svc.get_next_question(
            db_session, attempt_id=started.attempt_id, user_id=setup.student.id
        )
        assert next_question.question.id == setup.questions[0].id
        assert "correct_answer" not in next_question.question.model_dump()
        assert next_question.question_number == 1
        assert next_question.total_questions == 2
        assert next_question.has_next is True
        assert next_question.progress.answered == 0
        assert next_question.time_remaining == 1800

    async def test_time_remaining_rounds_up(self, db_session, exam_setup, attempt_svc, clock):
        setup = exam_setup()
        started = _start(db_session, attempt_svc, setup)
        clock.advance(seconds=10, milliseconds=500)

        next_question = await attempt_svc.get_next_question(
            db_session, attempt_id=started.attempt_id, user_id=setup.student.id
        )
        assert next_question.time_remaining == 1790

    async def test_questions_must_be_answered_in_order(self, db_session, exam_setup, attempt_svc):
        setup = exam_setup()
        started = _start(db_session, attempt_svc, setup)

        with pytest.raises(BadRequestError) as exc_info:
            await attempt_svc.submit_answer(
                db_session, attempt_id=started.attempt_id, user_id=setup.student.id,
                question_id=setup.questions[1].id, answer=[0, 2]
            )
        assert exc_info.value.detail == "Please answer question 1 first."

    async def test_answer_advances_to_next_question(self, db_session, exam_setup, attempt_svc):
        setup = exam_setup()
        started = _start(db_session, attempt_svc, setup)

        accepted = await attempt_svc.submit_answer(
            db_session, attempt_id=started.attempt_id, user_id=setup.student.id,
            question_id=setup.questions[0].id, answer="1"
        )
        assert accepted.progress.answered == 1
        assert accepted.progress.current_index == 1

        next_question = await attempt_svc.get_next_question(
            db_session, attempt_id=started.attempt_id, user_id=setup.student.id
        )
        assert next_question.question.id == setup.questions[1].id
        assert next_question.has_next is False

    async def test_reanswer_overwrites(self, db_session, exam_setup, attempt_svc, clock):
        setup = exam_setup(questions=SINGLE_QUESTION)
        started = _start(db_session, attempt_svc, setup)
        question_id = setup.questions[0].id
        first_stamp = clock.now.isoformat()

        await attempt_svc.submit_answer(
            db_session, attempt_id=started.attempt_id, user_id=setup.student.id, question_id=question_id, answer="0"
        )
        clock.advance(minutes=1)
        accepted = await attempt_svc.submit_answer(
            db_session, attempt_id=started.attempt_id, user_id=setup.student.id, question_id=question_id, answer="1"
        )
        assert accepted.progress.answered == 1

        attempt = crud_exam_attempt.get(db_session, id=started.attempt_id)
        entry = attempt.answers[str(question_id)]
        assert entry["answer"] == "1"
        assert entry["answered_at"] == first_stamp
        assert entry["updated_at"] == clock.now.isoformat()

        summary = await attempt_svc.submit_exam(db_session, attempt_id=started.attempt_id, user_id=setup.student.id)
        assert summary.score == 1

    async def test_all_answered_has_no_next_question(self, db_session, exam_setup, attempt_svc):
        setup = exam_setup()
        started = _start(db_session, attempt_svc, setup)
        await _answer_all(db_session, attempt_svc, setup, started.attempt_id, ["1", [0, 2]])

        with pytest.raises(BadRequestError):
            await attempt_svc.get_next_question(db_session, attempt_id=started.attempt_id, user_id=setup.student.id)

    async def test_rejects_foreign_question_and_bad_format(self, db_session, exam_setup, attempt_svc):
        setup = exam_setup()
        other = exam_setup(questions=SINGLE_QUESTION)
        started = _start(db_session, attempt_svc, setup)

        with pytest.raises(BadRequestError) as exc_info:
            await attempt_svc.submit_answer(
                db_session, attempt_id=started.attempt_id, user_id=setup.student.id,
                question_id=other.questions[0].id, answer="1"
            )
        assert exc_info.value.detail == "Question is not part of this exam attempt."

        with pytest.raises(BadRequestError) as exc_info:
            await attempt_svc.submit_answer(
                db_session, attempt_id=started.attempt_id, user_id=setup.student.id,
                question_id=setup.questions[0].id, answer=[1]
            )
        assert exc_info.value.detail == "Invalid answer format for single_choice question."

    async def test_attempt_belongs_to_student(self, db_session, exam_setup, attempt_svc):
        setup = exam_setup()
        started = _start(db_session, attempt_svc, setup)
        with pytest.raises(ForbiddenError):
            await attempt_svc.get_next_question(db_session, attempt_id=started.attempt_id, user_id=setup.creator.id)
        with pytest.raises(NotFoundError):
            await attempt_svc.get_next_question(db_session, attempt_id=9999, user_id=setup.student.id)


@pytest.mark.asyncio
class TestSubmitAndResults:
    async def test_correct_single_answer_passes(self, db_session, exam_setup, attempt_svc, clock):
        setup = exam_setup(questions=SINGLE_QUESTION)
        started = _start(db_session, attempt_svc, setup)
        await _answer_all(db_session, attempt_svc, setup, started.attempt_id, ["1"])
        clock.advance(minutes=5)

        summary = await attempt_svc.submit_exam(db_session, attempt_id=started.attempt_id, user_id=setup.student.id)

        assert summary.status == ExamAttemptStatusEnum.SUBMITTED
        assert summary.score == 1
        assert summary.max_score == 1
        assert summary.percentage == 100.0
        assert summary.passed is True
        assert summary.submitted_at == clock.now

    async def test_wrong_single_answer_fails(self, db_session, exam_setup, attempt_svc):
        setup = exam_setup(questions=SINGLE_QUESTION)
        started = _start(db_session, attempt_svc, setup)
        await _answer_all(db_session, attempt_svc, setup, started.attempt_id, ["0"])

        summary = await attempt_svc.submit_exam(db_session, attempt_id=started.attempt_id, user_id=setup.student.id)
        assert summary.score == 0
        assert summary.percentage == 0.0
        assert summary.passed is False

    @pytest.mark.parametrize("answer", [1, "1", "4"])
    async def test_answer_encodings_grade_the_same(self, answer, db_session, exam_setup, attempt_svc):
        setup = exam_setup(questions=SINGLE_QUESTION)
        started = _start(db_session, attempt_svc, setup)
        await _answer_all(db_session, attempt_svc, setup, started.attempt_id, [answer])

        summary = await attempt_svc.submit_exam(db_session, attempt_id=started.attempt_id, user_id=setup.student.id)
        assert summary.score == 1

    async def test_mixed_exam_scoring(self, db_session, exam_setup, attempt_svc):
        setup = exam_setup(pass_percentage=70)
        started = _start(db_session, attempt_svc, setup)
        await _answer_all(db_session, attempt_svc, setup, started.attempt_id, ["1", [0, 1]])

        summary = await attempt_svc.submit_exam(db_session, attempt_id=started.attempt_id, user_id=setup.student.id)
        assert summary.score == 1
        assert summary.max_score == 3
        assert summary.percentage == 33.3
        assert summary.passed is False
        assert summary.pass_percentage == 70

    async def test_submit_requires_every_answer(self, db_session, exam_setup, attempt_svc):
        setup = exam_setup()
        started = _start(db_session, attempt_svc, setup)
        await _answer_all(db_session, attempt_svc, setup, started.attempt_id, ["1"])

        with pytest.raises(BadRequestError) as exc_info:
            await attempt_svc.submit_exam(db_session, attempt_id=started.attempt_id, user_id=setup.student.id)
        assert exc_info.value.details["unanswered_questions"] == [2]
        assert exc_info.value.details["question_ids"] == [setup.questions[1].id]

    async def test_submit_twice_conflicts(self, db_session, exam_setup, attempt_svc):
        setup = exam_setup(questions=SINGLE_QUESTION)
        started = _start(db_session, attempt_svc, setup)
        await _answer_all(db_session, attempt_svc, setup, started.attempt_id, ["1"])
        await attempt_svc.submit_exam(db_session, attempt_id=started.attempt_id, user_id=setup.student.id)

        with pytest.raises(ConflictError):
            await attempt_svc.submit_exam(db_session, attempt_id=started.attempt_id, user_id=setup.student.id)
        with pytest.raises(ConflictError):
            await attempt_svc.submit_answer(
                db_session, attempt_id=started.attempt_id, user_id=setup.student.id,
                question_id=setup.questions[0].id, answer="0"
            )

    async def test_results_detail(self, db_session, exam_setup, attempt_svc, memory_cache):
        setup = exam_setup()
        started = _start(db_session, attempt_svc, setup)
        await _answer_all(db_session, attempt_svc, setup, started.attempt_id, ["1", [2, 0]])
        await attempt_svc.submit_exam(db_session, attempt_id=started.attempt_id, user_id=setup.student.id)

        results = await attempt_svc.get_results(db_session, attempt_id=started.attempt_id, user_id=setup.student.id)

        assert results.title == "Arithmetic Check"
        assert results.score == 3
        assert results.total_questions == 2
        first, second = results.questions
        assert first.question_number == 1
        assert first.user_answer == "4"
        assert first.correct_answer == "4"
        assert first.is_correct is True
        assert second.user_answer == "5, 2"
        assert second.correct_answer == "2, 5"
        assert second.earned_points == 2
        assert f"attempt:results:{started.attempt_id}" in memory_cache.backend.keys()

        cached = await attempt_svc.get_results(db_session, attempt_id=started.attempt_id, user_id=setup.student.id)
        assert cached == results

    async def test_results_unavailable_while_in_progress(self, db_session, exam_setup, attempt_svc):
        setup = exam_setup()
        started = _start(db_session, attempt_svc, setup)
        with pytest.raises(BadRequestError):
            await attempt_svc.get_results(db_session, attempt_id=started.attempt_id, user_id=setup.student.id)

    async def test_my_results_refresh_after_submit(self, db_session, exam_setup, attempt_svc):
        setup = exam_setup(questions=SINGLE_QUESTION)
        started = _start(db_session, attempt_svc, setup)

        empty = await attempt_svc.get_my_results(db_session, user_id=setup.student.id)
        assert empty.total == 0

        await _answer_all(db_session, attempt_svc, setup, started.attempt_id, ["1"])
        await attempt_svc.submit_exam(db_session, attempt_id=started.attempt_id, user_id=setup.student.id)

        page = await attempt_svc.get_my_results(db_session, user_id=setup.student.id)
        assert page.total == 1
        assert page.pages == 1
        assert page.has_next is False
        assert page.items[0].attempt_id == started.attempt_id
        assert page.items[0].passed is True


@pytest.mark.asyncio
class TestExpiry:
    async def test_next_question_after_deadline_expires(self, db_session, exam_setup, attempt_svc, clock):
        setup = exam_setup()
        started = _start(db_session, attempt_svc, setup)
        await _answer_all(db_session, attempt_svc, setup, started.attempt_id, ["1"])
        clock.advance(minutes=30)

        next_question = await attempt_svc.get_next_question(
            db_session, attempt_id=started.attempt_id, user_id=setup.student.id
        )

        assert next_question.status == ExamAttemptStatusEnum.EXPIRED
        assert next_question.question is None
        assert next_question.time_remaining == 0
        assert next_question.result.score == 1
        assert next_question.result.max_score == 3
        assert next_question.result.submitted_at == clock.now

    async def test_answer_after_deadline_is_not_recorded(self, db_session, exam_setup, attempt_svc, clock):
        setup = exam_setup()
        started = _start(db_session, attempt_svc, setup)
        clock.advance(minutes=45)

        accepted = await attempt_svc.submit_answer(
            db_session, attempt_id=started.attempt_id, user_id=setup.student.id,
            question_id=setup.questions[0].id, answer="1"
        )
        assert accepted.status == ExamAttemptStatusEnum.EXPIRED
        assert accepted.result.score == 0

        attempt = crud_exam_attempt.get(db_session, id=started.attempt_id)
        assert attempt.answers == {}

        again = await attempt_svc.submit_answer(
            db_session, attempt_id=started.attempt_id, user_id=setup.student.id,
            question_id=setup.questions[0].id, answer="1"
        )
        assert again.status == ExamAttemptStatusEnum.EXPIRED

    async def test_submit_after_deadline_returns_expired(self, db_session, exam_setup, attempt_svc, clock):
        setup = exam_setup(questions=SINGLE_QUESTION)
        started = _start(db_session, attempt_svc, setup)
        await _answer_all(db_session, attempt_svc, setup, started.attempt_id, ["1"])
        clock.advance(minutes=31)

        summary = await attempt_svc.submit_exam(db_session, attempt_id=started.attempt_id, user_id=setup.student.id)
        assert summary.status == ExamAttemptStatusEnum.EXPIRED
        assert summary.passed is True

    async def test_results_expire_lazily(self, db_session, exam_setup, attempt_svc, clock):
        setup = exam_setup()
        started = _start(db_session, attempt_svc, setup)
        clock.advance(hours=1)

        results = await attempt_svc.get_results(db_session, attempt_id=started.attempt_id, user_id=setup.student.id)
        assert results.status == ExamAttemptStatusEnum.EXPIRED
        assert [q.user_answer for q in results.questions] == [NOT_ANSWERED_LABEL, NOT_ANSWERED_LABEL]

    async def test_results_ignore_question_edits_after_expiry(self, db_session, exam_setup, attempt_svc,
                                                              exam_svc, clock):
        setup = exam_setup()
        started = _start(db_session, attempt_svc, setup)
        await _answer_all(db_session, attempt_svc, setup, started.attempt_id, ["1"])
        clock.advance(minutes=30)
        await attempt_svc.get_next_question(db_session, attempt_id=started.attempt_id, user_id=setup.student.id)

        # Expired attempts no longer lock authoring
        first_id, second_id = [q.id for q in setup.questions]
        exam_svc.update_question(db_session, setup.exam.id, first_id, QuestionUpdate(correct_answer="0"), setup.creator.id)
        exam_svc.delete_question(db_session, setup.exam.id, second_id, setup.creator.id)

        results = await attempt_svc.get_results(db_session, attempt_id=started.attempt_id, user_id=setup.student.id)

        assert results.status == ExamAttemptStatusEnum.EXPIRED
        assert results.score == 1
        assert [q.question_id for q in results.questions] == [first_id, second_id]
        assert results.questions[0].correct_answer == "4"
        assert results.questions[0].is_correct is True
        assert results.questions[0].earned_points == 1
        assert results.questions[1].user_answer == NOT_ANSWERED_LABEL
        assert results.questions[1].points == 2


@pytest.mark.asyncio
class TestAbandonAndAuthoringLock:
    async def test_creator_abandons_attempt(self, db_session, exam_setup, attempt_svc, clock):
        setup = exam_setup()
        started = _start(db_session, attempt_svc, setup)

        with pytest.raises(ForbiddenError):
            await attempt_svc.abandon(db_session, attempt_id=started.attempt_id, actor_id=setup.student.id)

        summary = await attempt_svc.abandon(db_session, attempt_id=started.attempt_id, actor_id=setup.creator.id)
        assert summary.status == ExamAttemptStatusEnum.ABANDONED
        assert summary.abandoned_at == clock.now
        assert summary.score is None

        with pytest.raises(ConflictError):
            await attempt_svc.abandon(db_session, attempt_id=started.attempt_id, actor_id=setup.creator.id)
        with pytest.raises(BadRequestError):
            await attempt_svc.get_results(db_session, attempt_id=started.attempt_id, user_id=setup.student.id)

    async def test_questions_locked_during_attempt(self, db_session, exam_setup, attempt_svc, exam_svc):
        setup = exam_setup()
        _start(db_session, attempt_svc, setup)

        with pytest.raises(BadRequestError):
            exam_svc.delete_question(db_session, setup.exam.id, setup.questions[0].id, setup.creator.id)
        with pytest.raises(BadRequestError):
            exam_svc.add_question(
                db_session, setup.exam.id, QuestionCreate(**DEFAULT_QUESTIONS[0]), setup.creator.id
            )

    async def test_deleted_exam_attempt_can_finish(self, db_session, exam_setup, attempt_svc, exam_svc):
        setup = exam_setup(questions=SINGLE_QUESTION)
        started = _start(db_session, attempt_svc, setup)
        exam_svc.delete_exam(db_session, setup.exam.id, setup.creator.id)

        await _answer_all(db_session, attempt_svc, setup, started.attempt_id, ["1"])
        summary = await attempt_svc.submit_exam(db_session, attempt_id=started.attempt_id, user_id=setup.student.id)
        assert summary.status == ExamAttemptStatusEnum.SUBMITTED


@pytest.mark.asyncio
class TestConcurrentAnswers:
    @pytest.fixture
    def other_session(self, database_engine):
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=database_engine)
        db = SessionLocal()
        try:
            yield db
        finally:
            db.rollback()
            db.close()

    async def test_stale_session_keeps_answers_written_elsewhere(self, db_session, other_session,
                                                                 exam_setup, attempt_svc):
        setup = exam_setup()
        started = _start(db_session, attempt_svc, setup)
        first, second = setup.questions
        await attempt_svc.submit_answer(
            db_session, attempt_id=started.attempt_id, user_id=setup.student.id, question_id=first.id, answer="0"
        )

        stale = crud_exam_attempt.get(other_session, id=started.attempt_id)
        assert list(stale.answers) == [str(first.id)]

        await attempt_svc.submit_answer(
            db_session, attempt_id=started.attempt_id, user_id=setup.student.id, question_id=second.id, answer=[0, 2]
        )
        accepted = await attempt_svc.submit_answer(
            other_session, attempt_id=started.attempt_id, user_id=setup.student.id, question_id=first.id, answer="1"
        )
        assert accepted.progress.answered == 2

        db_session.expire_all()
        attempt = crud_exam_attempt.get(db_session, id=started.attempt_id)
        assert set(attempt.answers) == {str(first.id), str(second.id)}
        assert attempt.answers[str(first.id)]["answer"] == "1"
        assert attempt.answers[str(second.id)]["answer"] == [0, 2]
        assert attempt.answered_questions == [0, 1]
        assert attempt.current_question_index == 2
        assert attempt.version == 4

        summary = await attempt_svc.submit_exam(db_session, attempt_id=started.attempt_id, user_id=setup.student.id)
        assert summary.score == 3

    async def test_stale_session_cannot_answer_after_submit(self, db_session, other_session,
                                                            exam_setup, attempt_svc):
        setup = exam_setup(questions=SINGLE_QUESTION)
        started = _start(db_session, attempt_svc, setup)
        question_id = setup.questions[0].id
        await attempt_svc.submit_answer(
            db_session, attempt_id=started.attempt_id, user_id=setup.student.id, question_id=question_id, answer="1"
        )

        stale = crud_exam_attempt.get(other_session, id=started.attempt_id)
        assert stale.status == ExamAttemptStatusEnum.IN_PROGRESS

        await attempt_svc.submit_exam(db_session, attempt_id=started.attempt_id, user_id=setup.student.id)
        with pytest.raises(ConflictError):
            await attempt_svc.submit_answer(
                other_session, attempt_id=started.attempt_id, user_id=setup.student.id,
                question_id=question_id, answer="0"
            )

        db_session.expire_all()
        attempt = crud_exam_attempt.get(db_session, id=started.attempt_id)
        assert attempt.answers[str(question_id)]["answer"] == "1"
        assert attempt.score == 1
