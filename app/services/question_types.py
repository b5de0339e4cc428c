"""
Question type handlers.

Each supported question type provides one handler that knows how to validate and
normalize authored questions, render them for participants, check the shape of a
submitted answer, grade it and describe it for the results view. Nothing outside
this module branches on the question type; callers look the handler up in the
registry.
"""
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Type, Union

from app.core.constants import QuestionTypeEnum, NOT_ANSWERED_LABEL
from app.core.exceptions import BadRequestError

logger = logging.getLogger(__name__)

INDEX_PATTERN = re.compile(r"^\d+$")


def _as_index(value: Any) -> Optional[int]:
    """Return the option index a value encodes, or None if it is not index-shaped."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, str) and INDEX_PATTERN.match(value.strip()):
        return int(value.strip())
    return None


def option_text(value: Any, options: List[str]) -> str:
    """Normalize an answer value to lower-cased option text.

    Index-shaped values that fall inside ``options`` are mapped to the option; any
    other value is compared as literal text.
    """
    index = _as_index(value)
    if index is not None and index < len(options):
        return options[index].strip().lower()
    return str(value).strip().lower()


class QuestionTypeHandler(ABC):
    question_type: QuestionTypeEnum
    min_options = 2

    def build_from_input(
        self,
        prompt: Union[str, Dict[str, Any], None],
        options: Optional[List[Any]],
        correct_answer: Any,
        points: Optional[int] = 1,
        position: int = 0
    ) -> Dict[str, Any]:
        """Validate an authored question and return the normalized column values."""
        clean_prompt = self._normalize_prompt(prompt)
        clean_options = self._normalize_options(options)

        if points is None:
            points = 1
        if isinstance(points, bool) or not isinstance(points, int) or points < 0:
            raise BadRequestError("Points must be a non-negative integer.")

        return {
            "question_type": self.question_type,
            "prompt": clean_prompt,
            "options": clean_options,
            "correct_answer": self.normalize_correct_answer(correct_answer, clean_options),
            "points": points,
            "position": position,
        }

    def _normalize_prompt(self, prompt):
        if isinstance(prompt, str):
            if not prompt.strip():
                raise BadRequestError("Question text cannot be empty.")
            return prompt.strip()
        if isinstance(prompt, dict):
            text = prompt.get("text")
            if not isinstance(text, str) or not text.strip():
                raise BadRequestError("Question text is required and must be a non-empty string.")
            return {**prompt, "text": text.strip()}
        raise BadRequestError("Question text is required.")

    def _normalize_options(self, options) -> List[str]:
        if not isinstance(options, list):
            raise BadRequestError(f"Options are required for {self.question_type.value} questions.")
        cleaned = [str(opt).strip() for opt in options if opt is not None and str(opt).strip()]
        if len(cleaned) < self.min_options:
            raise BadRequestError(
                f"{self.question_type.value} questions must have at least {self.min_options} options."
            )
        return cleaned

    def render_for_participant(self, question) -> Dict[str, Any]:
        return {
            "id": question.id,
            "question_type": question.question_type,
            "prompt": question.prompt,
            "options": list(question.options or []),
            "points": question.points,
            "position": question.position,
        }

    @abstractmethod
    def normalize_correct_answer(self, correct_answer: Any, options: List[str]) -> Any:
        pass

    @abstractmethod
    def validate_answer_format(self, answer: Any) -> bool:
        pass

    @abstractmethod
    def mark_answer(self, answer: Any, correct_answer: Any, points: int, options: List[str]) -> int:
        pass

    @abstractmethod
    def display_answer(self, answer: Any, options: List[str]) -> str:
        pass


class SingleChoiceQuestion(QuestionTypeHandler):
    question_type = QuestionTypeEnum.SINGLE_CHOICE

    def normalize_correct_answer(self, correct_answer, options):
        if correct_answer is None or isinstance(correct_answer, (bool, list, dict)):
            raise BadRequestError("Correct answer for single_choice must be an option index or option text.")

        raw = str(correct_answer).strip()
        if not raw:
            raise BadRequestError("Correct answer is required for single_choice questions.")

        index = _as_index(correct_answer)
        if index is not None:
            if index >= len(options):
                raise BadRequestError(
                    f"Correct answer index {index} is out of range. Must be between 0 and {len(options) - 1}."
                )
            return options[index]

        for option in options:
            if option.lower() == raw.lower():
                return option
        raise BadRequestError("Correct answer must be one of the provided options.")

    def validate_answer_format(self, answer):
        if isinstance(answer, bool):
            return False
        if isinstance(answer, int):
            return True
        return isinstance(answer, str) and bool(answer.strip())

    def _correct_text(self, correct_answer, options):
        # Stored answers are option text; only fall back to index mapping for legacy values
        if isinstance(correct_answer, str) and correct_answer.strip().lower() in (o.lower() for o in options):
            return correct_answer.strip().lower()
        return option_text(correct_answer, options)

    def mark_answer(self, answer, correct_answer, points, options):
        if not self.validate_answer_format(answer):
            logger.warning(f"Invalid single_choice answer format: {answer!r}")
            return 0

        submitted = option_text(answer, options)
        expected = self._correct_text(correct_answer, options)
        is_correct = submitted == expected
        logger.debug(
            f"single_choice marked: submitted={submitted!r} expected={expected!r} correct={is_correct}"
        )
        return points if is_correct else 0

    def display_answer(self, answer, options):
        if answer is None or (isinstance(answer, str) and not answer.strip()):
            return NOT_ANSWERED_LABEL
        index = _as_index(answer)
        if index is not None and index < len(options):
            return options[index]
        return str(answer).strip()


class MultiSelectQuestion(QuestionTypeHandler):
    """Checkbox question. Grading is all-or-nothing: the selected set must equal the correct set."""
    question_type = QuestionTypeEnum.MULTI_SELECT

    def normalize_correct_answer(self, correct_answer, options):
        if isinstance(correct_answer, (str, int)) and not isinstance(correct_answer, bool):
            entries = [correct_answer]
        elif isinstance(correct_answer, list):
            entries = correct_answer
        else:
            raise BadRequestError(
                "Correct answer for multi_select must be a list of option indices or option texts."
            )

        lowered = [opt.lower() for opt in options]
        indices = set()
        for entry in entries:
            index = _as_index(entry)
            if index is not None:
                if index >= len(options):
                    raise BadRequestError(
                        f"Invalid correct answer index: {entry}. Must be a valid option index "
                        f"(0 to {len(options) - 1})."
                    )
                indices.add(index)
                continue
            text = str(entry).strip().lower() if entry is not None else ""
            if text not in lowered:
                raise BadRequestError(f"Correct answer '{entry}' is not one of the provided options.")
            indices.add(lowered.index(text))

        if len(indices) < 2:
            raise BadRequestError("multi_select questions must have at least 2 correct answers.")
        return [str(i) for i in sorted(indices)]

    def validate_answer_format(self, answer):
        if not isinstance(answer, list) or not answer:
            return False
        for item in answer:
            if isinstance(item, bool):
                return False
            if isinstance(item, int):
                continue
            if not isinstance(item, str) or not item.strip():
                return False
        return True

    def mark_answer(self, answer, correct_answer, points, options):
        if not self.validate_answer_format(answer):
            logger.warning(f"Invalid multi_select answer format: {answer!r}")
            return 0
        if not isinstance(correct_answer, list):
            correct_answer = [correct_answer]

        submitted = {option_text(item, options) for item in answer}
        expected = {option_text(item, options) for item in correct_answer}
        is_correct = submitted == expected
        logger.debug(
            f"multi_select marked: submitted={sorted(submitted)} expected={sorted(expected)} correct={is_correct}"
        )
        return points if is_correct else 0

    def display_answer(self, answer, options):
        if answer is None or answer == [] or answer == "":
            return NOT_ANSWERED_LABEL
        items = answer if isinstance(answer, list) else [answer]
        texts = []
        for item in items:
            index = _as_index(item)
            texts.append(options[index] if index is not None and index < len(options) else str(item).strip())
        return ", ".join(texts)


class QuestionTypeRegistry:
    def __init__(self):
        self._handlers: Dict[QuestionTypeEnum, QuestionTypeHandler] = {}

    def register(self, question_type: QuestionTypeEnum, handler_cls: Type[QuestionTypeHandler]):
        self._handlers[QuestionTypeEnum(question_type)] = handler_cls()
        logger.debug(f"Registered question type handler {handler_cls.__name__} for {question_type}")

    def is_supported(self, question_type) -> bool:
        try:
            return QuestionTypeEnum(question_type) in self._handlers
        except ValueError:
            return False

    def get(self, question_type) -> QuestionTypeHandler:
        if not self.is_supported(question_type):
            supported = ", ".join(t.value for t in self._handlers)
            raise BadRequestError(
                f"Unsupported question type: {question_type}. Supported types: {supported}"
            )
        return self._handlers[QuestionTypeEnum(question_type)]

    def supported_types(self) -> List[QuestionTypeEnum]:
        return list(self._handlers)


question_registry = QuestionTypeRegistry()
question_registry.register(QuestionTypeEnum.SINGLE_CHOICE, SingleChoiceQuestion)
question_registry.register(QuestionTypeEnum.MULTI_SELECT, MultiSelectQuestion)
