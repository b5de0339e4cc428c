from fastapi import APIRouter, Depends, status, Query
from sqlalchemy.orm import Session

from app.core.constants import ExamAttemptStatusEnum
from app.models.user import User
from app.schemas.response import APIResponse, PaginatedResponse
from app.utils import deps
from app.schemas.exam_attempt import (
    AnswerAccepted,
    AnswerSubmit,
    AttemptResults,
    AttemptStarted,
    AttemptStartRequest,
    AttemptSummary,
    NextQuestion,
)
from app.services.exam_attempt import exam_attempt_service

router = APIRouter()

@router.post("/start", response_model=APIResponse[AttemptStarted], status_code=status.HTTP_201_CREATED)
async def start_attempt(
    *,
    db: Session = Depends(deps.get_transactional_db),
    start_in: AttemptStartRequest,
    current_user: User = Depends(deps.get_current_user)
):
    started = exam_attempt_service.start(db, access_code=start_in.access_code, user_id=current_user.id)
    return APIResponse(message="Exam attempt started successfully", data=started)


@router.get("/my/results", response_model=APIResponse[PaginatedResponse[AttemptSummary]])
async def get_my_results(
    db: Session = Depends(deps.get_db),
    current_user: User = Depends(deps.get_current_user),
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100)
):
    results = await exam_attempt_service.get_my_results(db, user_id=current_user.id, page=page, size=size)
    return APIResponse(message="Results retrieved successfully", data=results)


@router.get("/{attempt_id}/next", response_model=APIResponse[NextQuestion])
async def get_next_question(
    *,
    db: Session = Depends(deps.get_transactional_db),
    attempt_id: int,
    current_user: User = Depends(deps.get_current_user)
):
    next_question = await exam_attempt_service.get_next_question(db, attempt_id=attempt_id, user_id=current_user.id)
    message = "Question retrieved successfully" if next_question.result is None else \
        f"Exam time has expired. Your exam has been finalized as {next_question.status.value}."
    return APIResponse(message=message, data=next_question)


@router.post("/{attempt_id}/answers", response_model=APIResponse[AnswerAccepted])
async def submit_answer(
    *,
    db: Session = Depends(deps.get_transactional_db),
    attempt_id: int,
    answer_in: AnswerSubmit,
    current_user: User = Depends(deps.get_current_user)
):
    accepted = await exam_attempt_service.submit_answer(
        db,
        attempt_id=attempt_id,
        user_id=current_user.id,
        question_id=answer_in.question_id,
        answer=answer_in.answer
    )
    message = "Answer submitted successfully" if accepted.result is None else \
        f"Exam time has expired. Your exam has been finalized as {accepted.status.value}."
    return APIResponse(message=message, data=accepted)


@router.post("/{attempt_id}/submit", response_model=APIResponse[AttemptSummary])
async def submit_exam(
    *,
    db: Session = Depends(deps.get_transactional_db),
    attempt_id: int,
    current_user: User = Depends(deps.get_current_user)
):
    summary = await exam_attempt_service.submit_exam(db, attempt_id=attempt_id, user_id=current_user.id)
    message = "Exam submitted successfully" if summary.status == ExamAttemptStatusEnum.SUBMITTED else \
        f"Exam time has expired. Your exam has been finalized as {summary.status.value}."
    return APIResponse(message=message, data=summary)


@router.get("/{attempt_id}/results", response_model=APIResponse[AttemptResults])
async def get_results(
    *,
    db: Session = Depends(deps.get_transactional_db),
    attempt_id: int,
    current_user: User = Depends(deps.get_current_user)
):
    results = await exam_attempt_service.get_results(db, attempt_id=attempt_id, user_id=current_user.id)
    return APIResponse(message="Results retrieved successfully", data=results)


@router.post("/{attempt_id}/abandon", response_model=APIResponse[AttemptSummary])
async def abandon_attempt(
    *,
    db: Session = Depends(deps.get_transactional_db),
    attempt_id: int,
    current_user: User = Depends(deps.get_current_user)
):
    summary = await exam_attempt_service.abandon(db, attempt_id=attempt_id, actor_id=current_user.id)
    return APIResponse(message="Exam attempt abandoned", data=summary)
