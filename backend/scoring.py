import math
import time
from typing import NamedTuple, Optional

import config
from models import Question


class ScoreResult(NamedTuple):
    is_correct: bool
    points: int


def server_elapsed(started_at: float, now: Optional[float] = None) -> float:
    """Seconds since the question went out, rounded half-up to 0.1s.

    Always measured from the server's own start stamp; whatever timing a
    client reports is never consulted.
    """
    if now is None:
        now = time.time()
    elapsed = max(0.0, now - started_at)
    return math.floor(elapsed * 10 + 0.5) / 10


def score_answer(selected_index: int, question: Question, elapsed_seconds: float) -> ScoreResult:
    if selected_index != question.correct_index:
        return ScoreResult(False, 0)
    bonus = max(0, math.floor((question.time_limit_seconds - elapsed_seconds) / 2))
    return ScoreResult(True, config.CORRECT_ANSWER_POINTS + bonus)
