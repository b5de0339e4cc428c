from typing import List
from fastapi import APIRouter, Depends, status, Query
from sqlalchemy.orm import Session

from app.models.user import User
from app.schemas.response import APIResponse
from app.utils import deps
from app.schemas.exam import Exam, ExamCreate, ExamUpdate
from app.schemas.exam_attempt import ExamAttemptOverview
from app.schemas.exam_participant import ExamParticipant, ExamParticipantAdd
from app.schemas.question import Question, QuestionCreate, QuestionUpdate, QuestionReorder
from app.services.exam import exam_service
from app.services.exam_participant import exam_participant_service

router = APIRouter()

@router.post("/", response_model=APIResponse[Exam], status_code=status.HTTP_201_CREATED)
async def create_exam(
    *,
    db: Session = Depends(deps.get_transactional_db),
    exam_in: ExamCreate,
    current_user: User = Depends(deps.get_current_user)
):
    new_exam = exam_service.create_exam(db, exam_in=exam_in, user_id=current_user.id)
    return APIResponse(message="Exam created successfully", data=new_exam)


@router.get("/", response_model=APIResponse[List[Exam]])
async def get_my_exams(
    db: Session = Depends(deps.get_db),
    current_user: User = Depends(deps.get_current_user),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500)
):
    exams = exam_service.get_exams(db, user_id=current_user.id, skip=skip, limit=limit)
    return APIResponse(message="Exams retrieved successfully", data=exams)


@router.get("/{exam_id}", response_model=APIResponse[Exam])
async def get_exam(
    *,
    db: Session = Depends(deps.get_db),
    exam_id: int,
    current_user: User = Depends(deps.get_current_user)
):
    exam = exam_service.get_exam(db, exam_id=exam_id, user_id=current_user.id)
    return APIResponse(message="Exam retrieved successfully", data=exam)


@router.put("/{exam_id}", response_model=APIResponse[Exam])
async def update_exam(
    *,
    db: Session = Depends(deps.get_transactional_db),
    exam_id: int,
    exam_in: ExamUpdate,
    current_user: User = Depends(deps.get_current_user)
):
    updated_exam = exam_service.update_exam(db, exam_id=exam_id, exam_in=exam_in, user_id=current_user.id)
    return APIResponse(message="Exam updated successfully", data=updated_exam)


@router.delete("/{exam_id}", response_model=APIResponse)
async def delete_exam(
    *,
    db: Session = Depends(deps.get_transactional_db),
    exam_id: int,
    current_user: User = Depends(deps.get_current_user)
):
    exam_service.delete_exam(db, exam_id=exam_id, user_id=current_user.id)
    return APIResponse(message="Exam deleted successfully")


@router.get("/{exam_id}/questions", response_model=APIResponse[List[Question]])
async def get_exam_questions(
    *,
    db: Session = Depends(deps.get_db),
    exam_id: int,
    current_user: User = Depends(deps.get_current_user)
):
    questions = exam_service.get_questions(db, exam_id=exam_id, user_id=current_user.id)
    return APIResponse(message="Questions retrieved successfully", data=questions)


@router.post("/{exam_id}/questions", response_model=APIResponse[Question], status_code=status.HTTP_201_CREATED)
async def add_question(
    *,
    db: Session = Depends(deps.get_transactional_db),
    exam_id: int,
    question_in: QuestionCreate,
    current_user: User = Depends(deps.get_current_user)
):
    question = exam_service.add_question(db, exam_id=exam_id, question_in=question_in, user_id=current_user.id)
    return APIResponse(message="Question added successfully", data=question)


@router.put("/{exam_id}/questions/order", response_model=APIResponse[List[Question]])
async def reorder_questions(
    *,
    db: Session = Depends(deps.get_transactional_db),
    exam_id: int,
    reorder_in: QuestionReorder,
    current_user: User = Depends(deps.get_current_user)
):
    questions = exam_service.reorder_questions(db, exam_id=exam_id, reorder_in=reorder_in, user_id=current_user.id)
    return APIResponse(message="Questions reordered successfully", data=questions)


@router.put("/{exam_id}/questions/{question_id}", response_model=APIResponse[Question])
async def update_question(
    *,
    db: Session = Depends(deps.get_transactional_db),
    exam_id: int,
    question_id: int,
    question_in: QuestionUpdate,
    current_user: User = Depends(deps.get_current_user)
):
    question = exam_service.update_question(
        db, exam_id=exam_id, question_id=question_id, question_in=question_in, user_id=current_user.id
    )
    return APIResponse(message="Question updated successfully", data=question)


@router.delete("/{exam_id}/questions/{question_id}", response_model=APIResponse)
async def delete_question(
    *,
    db: Session = Depends(deps.get_transactional_db),
    exam_id: int,
    question_id: int,
    current_user: User = Depends(deps.get_current_user)
):
    exam_service.delete_question(db, exam_id=exam_id, question_id=question_id, user_id=current_user.id)
    return APIResponse(message="Question deleted successfully")


@router.get("/{exam_id}/attempts", response_model=APIResponse[List[ExamAttemptOverview]])
async def get_exam_attempts(
    *,
    db: Session = Depends(deps.get_db),
    exam_id: int,
    current_user: User = Depends(deps.get_current_user),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500)
):
    attempts = exam_service.get_exam_attempts(db, exam_id=exam_id, user_id=current_user.id, skip=skip, limit=limit)
    return APIResponse(message="Exam attempts retrieved successfully", data=attempts)


@router.post("/{exam_id}/participants", response_model=APIResponse[ExamParticipant], status_code=status.HTTP_201_CREATED)
async def add_participant(
    *,
    db: Session = Depends(deps.get_transactional_db),
    exam_id: int,
    participant_in: ExamParticipantAdd,
    current_user: User = Depends(deps.get_current_user)
):
    participant = exam_participant_service.add_participant(
        db, exam_id=exam_id, participant_in=participant_in, user_id=current_user.id
    )
    return APIResponse(message="Participant added successfully", data=participant)


@router.get("/{exam_id}/participants", response_model=APIResponse[List[ExamParticipant]])
async def list_participants(
    *,
    db: Session = Depends(deps.get_db),
    exam_id: int,
    current_user: User = Depends(deps.get_current_user)
):
    participants = exam_participant_service.list_participants(db, exam_id=exam_id, user_id=current_user.id)
    return APIResponse(message="Participants retrieved successfully", data=participants)


@router.delete("/{exam_id}/participants/{participant_id}", response_model=APIResponse)
async def remove_participant(
    *,
    db: Session = Depends(deps.get_transactional_db),
    exam_id: int,
    participant_id: int,
    current_user: User = Depends(deps.get_current_user)
):
    exam_participant_service.remove_participant(
        db, exam_id=exam_id, participant_id=participant_id, user_id=current_user.id
    )
    return APIResponse(message="Participant removed successfully")
