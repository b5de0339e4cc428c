import logging
import secrets
from typing import Callable, List

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import BadRequestError, ConflictError, InternalError, NotFoundError
from app.crud.exam_attempt import exam_attempt as crud_exam_attempt
from app.crud.exam_participant import exam_participant as crud_exam_participant
from app.crud.user import user as crud_user
from app.schemas.exam_participant import ExamParticipant, ExamParticipantAdd, ExamParticipantCreate
from app.services.concurrency import ConcurrencyGuard, concurrency_guard
from app.services.exam import ExamService, exam_service
from app.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

ACCESS_CODE_ATTEMPTS = 10


class ExamParticipantService:

    def __init__(
        self,
        exams: ExamService = exam_service,
        participants=crud_exam_participant,
        users=crud_user,
        attempts=crud_exam_attempt,
        guard: ConcurrencyGuard = concurrency_guard,
        clock: Callable = utcnow,
        code_bytes: int = settings.ACCESS_CODE_BYTES
    ):
        self.exams = exams
        self.participants = participants
        self.users = users
        self.attempts = attempts
        self.guard = guard
        self.clock = clock
        self.code_bytes = code_bytes

    def _generate_access_code(self, db: Session) -> str:
        for _ in range(ACCESS_CODE_ATTEMPTS):
            code = secrets.token_hex(self.code_bytes).upper()
            if not self.participants.access_code_exists(db, access_code=code):
                return code
        raise InternalError("Could not generate a unique access code.")

    def add_participant(self, db: Session, exam_id: int, participant_in: ExamParticipantAdd,
                        user_id: int) -> ExamParticipant:
        exam = self.exams.get_owned_exam(db, exam_id, user_id, action="add participants to")

        if not exam.available_anytime and exam.end_date and self.clock() > exam.end_date:
            raise BadRequestError("Cannot add participants to an exam that has ended.")

        self.guard.require_no_active_attempts(db, exam.id, action="add participants")

        user = self.users.get_by_email(db, email=participant_in.email)
        if not user:
            raise NotFoundError("User with this email not found.")

        if self.participants.get_by_exam_and_user(db, exam_id=exam.id, user_id=user.id):
            raise ConflictError("Participant already added to this exam.")

        participant_create = ExamParticipantCreate(
            exam_id=exam.id,
            user_id=user.id,
            email=user.email,
            access_code=self._generate_access_code(db)
        )
        participant = self.guard.with_transaction(
            db, lambda session: self.participants.create(session, obj_in=participant_create, commit=False)
        )
        db.refresh(participant)
        logger.info(f"Participant {participant.id} (user {user.id}) added to exam {exam.id}")
        return ExamParticipant.model_validate(participant)

    def list_participants(self, db: Session, exam_id: int, user_id: int) -> List[ExamParticipant]:
        exam = self.exams.get_owned_exam(db, exam_id, user_id, action="view participants of")
        return [ExamParticipant.model_validate(p) for p in self.participants.get_by_exam(db, exam_id=exam.id)]

    def remove_participant(self, db: Session, exam_id: int, participant_id: int, user_id: int) -> None:
        exam = self.exams.get_owned_exam(db, exam_id, user_id, action="remove participants from")

        participant = self.participants.get_in_exam(db, exam_id=exam.id, participant_id=participant_id)
        if not participant:
            raise NotFoundError("Participant not found.")

        if participant.is_used or self.attempts.get_by_exam_and_user(db, exam_id=exam.id, user_id=participant.user_id):
            raise BadRequestError("Cannot remove participant who has started the exam.")

        self.guard.require_no_active_attempts(db, exam.id, action="remove participants")

        self.participants.delete(db, id=participant.id)
        logger.info(f"Participant {participant_id} removed from exam {exam_id}")


exam_participant_service = ExamParticipantService()
