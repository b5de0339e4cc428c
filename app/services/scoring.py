import logging
from dataclasses import dataclass
from typing import Iterable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GradedAnswer:
    question_id: int
    points: int
    earned_points: float

    @property
    def is_correct(self) -> bool:
        return self.points > 0 and self.earned_points >= self.points


@dataclass(frozen=True)
class ScoreResult:
    score: float
    max_score: float
    percentage: float
    passed: bool


class ScoringEngine:
    """Aggregates graded answers over an attempt's frozen question set."""

    def score(self, graded: Iterable[GradedAnswer], pass_percentage: float) -> ScoreResult:
        total = 0.0
        max_score = 0.0
        for answer in graded:
            points = max(answer.points, 0)
            max_score += points
            total += min(max(answer.earned_points, 0), points)

        percentage = round(total / max_score * 100, 1) if max_score > 0 else 0.0
        passed = percentage >= pass_percentage
        logger.debug(f"Scored attempt: {total}/{max_score} ({percentage}%), pass mark {pass_percentage}%")
        return ScoreResult(score=total, max_score=max_score, percentage=percentage, passed=passed)


scoring_engine = ScoringEngine()
