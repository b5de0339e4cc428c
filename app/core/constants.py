from enum import Enum


NOT_ANSWERED_LABEL = "Not answered"

class QuestionTypeEnum(str, Enum):
    SINGLE_CHOICE = "single_choice"
    MULTI_SELECT = "multi_select"

class ExamAttemptStatusEnum(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    ABANDONED = "abandoned"
    EXPIRED = "expired"

TERMINAL_ATTEMPT_STATUSES = frozenset({
    ExamAttemptStatusEnum.SUBMITTED,
    ExamAttemptStatusEnum.ABANDONED,
    ExamAttemptStatusEnum.EXPIRED,
})

# Statuses that freeze an exam's structure for authoring
LOCKING_ATTEMPT_STATUSES = (
    ExamAttemptStatusEnum.IN_PROGRESS,
    ExamAttemptStatusEnum.SUBMITTED,
)

# Statuses that carry a final score
FINALIZED_ATTEMPT_STATUSES = (
    ExamAttemptStatusEnum.SUBMITTED,
    ExamAttemptStatusEnum.EXPIRED,
)

# Reload-and-retry budget for answer writes that lose a version check
ANSWER_WRITE_RETRIES = 3
