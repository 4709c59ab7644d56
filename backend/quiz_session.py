import asyncio
import logging
import math
import time
from typing import Awaitable, Callable, List, Optional

import config
from broadcaster import Broadcaster
from errors import ConflictError, ValidationError
from models import AnswerRecord, Player, Question, QuizStatus, Room, epoch_ms
from quiz_engine import default_questions, validate_questions
from scoring import score_answer, server_elapsed

logger = logging.getLogger(__name__)

FINISHED_MESSAGE = "Quiz finished! Thanks for playing"


class QuizSession:
    """Progression state of one room's quiz."""

    def __init__(self, questions: List[Question]):
        self.status = QuizStatus.WAITING
        self.questions: List[Question] = questions
        self.current_index = -1
        self.dispatched_index = -1  # last index whose question actually went out
        self.started_at: Optional[float] = None
        self.question_started_at: Optional[float] = None
        self.answered_count = 0
        self.expected_answerer_count = 0
        # The one pending wait (lead-in, question timeout or all-answered grace).
        # Arming a new wait always cancels the previous one.
        self.pending_advance: Optional[asyncio.Task] = None

    @property
    def current_question(self) -> Optional[Question]:
        if 0 <= self.current_index < len(self.questions):
            return self.questions[self.current_index]
        return None

    @property
    def question_open(self) -> bool:
        return self.status == QuizStatus.PLAYING and self.dispatched_index == self.current_index

    def cancel_pending(self):
        task = self.pending_advance
        self.pending_advance = None
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()


class QuizController:
    """Drives QuizSession transitions and the timers that force them.

    Every method expects the caller to hold ``room.lock``; the timer
    callbacks take it themselves.
    """

    def __init__(self, broadcaster: Broadcaster, lead_in: Optional[float] = None,
                 grace: Optional[float] = None, question_buffer: Optional[float] = None):
        self.broadcaster = broadcaster
        self.lead_in = config.LEAD_IN_SECONDS if lead_in is None else lead_in
        self.grace = config.ALL_ANSWERED_GRACE_SECONDS if grace is None else grace
        self.question_buffer = config.QUESTION_BUFFER_SECONDS if question_buffer is None else question_buffer

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _schedule(self, room: Room, delay: float, question_index: int,
                  action: Callable[[Room], Awaitable[None]]):
        room.quiz.cancel_pending()
        room.quiz.pending_advance = asyncio.create_task(
            self._fire(room, delay, question_index, action)
        )

    async def _fire(self, room: Room, delay: float, question_index: int,
                    action: Callable[[Room], Awaitable[None]]):
        try:
            await asyncio.sleep(delay)
            async with room.lock:
                quiz = room.quiz
                if quiz.pending_advance is not asyncio.current_task():
                    return  # superseded while waiting for the lock
                quiz.pending_advance = None
                if quiz.status != QuizStatus.PLAYING or quiz.current_index != question_index:
                    return
                await action(room)
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Timer callback failed in room %s", room.code)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def start(self, room: Room, custom_questions=None):
        quiz = room.quiz
        if quiz.status != QuizStatus.WAITING:
            raise ConflictError("Quiz has already started")

        if custom_questions:
            questions = validate_questions(custom_questions)
            logger.info("Using %d custom questions in room %s", len(questions), room.code)
        else:
            questions = default_questions()
            logger.info("Using default questions (%d) in room %s", len(questions), room.code)

        quiz.questions = questions
        quiz.status = QuizStatus.PLAYING
        quiz.current_index = 0
        quiz.started_at = time.time()
        logger.info("Quiz started in room %s", room.code)

        await self.broadcaster.broadcast(room, "quiz-started", {
            "totalQuestions": len(questions),
            "message": "Quiz is starting! Get ready...",
        })
        self._schedule(room, self.lead_in, 0, self._dispatch_current)

    async def _dispatch_current(self, room: Room):
        await self.send_question(room, room.quiz.current_index)

    async def send_question(self, room: Room, index: int):
        quiz = room.quiz
        question = quiz.questions[index]
        quiz.expected_answerer_count = len(room.players)
        quiz.question_started_at = time.time()
        quiz.dispatched_index = index
        quiz.answered_count = 0
        self._schedule(room, question.time_limit_seconds + self.question_buffer, index, self.advance)

        await self.broadcaster.broadcast(room, "new-question", {
            "questionNumber": index + 1,
            "totalQuestions": len(quiz.questions),
            "text": question.text,
            "options": list(question.options),
            "timeLimitSeconds": question.time_limit_seconds,
            "startedAt": epoch_ms(quiz.question_started_at),
        })
        logger.info("Sent Q%d/%d to room %s", index + 1, len(quiz.questions), room.code)

    async def advance(self, room: Room):
        quiz = room.quiz
        if quiz.status != QuizStatus.PLAYING:
            return
        quiz.cancel_pending()
        next_index = quiz.current_index + 1
        if next_index >= len(quiz.questions):
            await self.finish(room)
            return
        quiz.current_index = next_index
        await self.send_question(room, next_index)

    async def skip(self, room: Room):
        """Host-forced progression: open the pending question, or move past the open one."""
        quiz = room.quiz
        if quiz.status != QuizStatus.PLAYING:
            raise ConflictError("Quiz is not in progress")
        if quiz.question_open:
            await self.advance(room)
        else:
            await self._dispatch_current(room)

    async def submit_answer(self, room: Room, player: Player, selected_index) -> AnswerRecord:
        quiz = room.quiz
        if quiz.status != QuizStatus.PLAYING:
            raise ConflictError("Quiz is not in progress")
        if not quiz.question_open:
            raise ConflictError("Question has not started yet")
        question = quiz.current_question
        if (not isinstance(selected_index, int) or isinstance(selected_index, bool)
                or not 0 <= selected_index < len(question.options)):
            raise ValidationError("selectedIndex must be an option index between 0 and 3")
        if player.answer_for(quiz.current_index) is not None:
            raise ConflictError("You already answered this question")

        elapsed = server_elapsed(quiz.question_started_at)
        result = score_answer(selected_index, question, elapsed)
        record = AnswerRecord(
            question_index=quiz.current_index,
            selected_index=selected_index,
            correct_index=question.correct_index,
            is_correct=result.is_correct,
            elapsed_seconds=elapsed,
            points_earned=result.points,
        )
        player.answers.append(record)
        player.score += result.points
        quiz.answered_count += 1
        logger.info("'%s' answered Q%d in room %s: %s (+%d) | %d/%d",
                    player.display_name, quiz.current_index + 1, room.code,
                    "correct" if result.is_correct else "wrong", result.points,
                    quiz.answered_count, quiz.expected_answerer_count)

        await self.broadcaster.send(player.identity, "answer-submitted", {
            "isCorrect": result.is_correct,
            "correctIndex": question.correct_index,
            "correctText": question.options[question.correct_index],
            "points": result.points,
            "newScore": player.score,
            "answeredCount": quiz.answered_count,
            "expectedAnswererCount": quiz.expected_answerer_count,
        })
        await self.broadcaster.broadcast(room, "answer-progress", {
            "answeredCount": quiz.answered_count,
            "expectedAnswererCount": quiz.expected_answerer_count,
            "questionNumber": quiz.current_index + 1,
        })
        if quiz.answered_count >= quiz.expected_answerer_count:
            logger.info("All players answered Q%d in room %s", quiz.current_index + 1, room.code)
            await self.broadcaster.broadcast(room, "all-answered", {})
            # Replaces the question timeout, so only one of them can advance
            self._schedule(room, self.grace, quiz.current_index, self.advance)
        await self.broadcast_leaderboard(room)
        return record

    async def finish(self, room: Room):
        quiz = room.quiz
        quiz.cancel_pending()
        quiz.status = QuizStatus.FINISHED
        leaderboard = self.final_leaderboard(room)
        await self.broadcaster.broadcast(room, "quiz-finished", {
            "leaderboard": leaderboard,
            "message": FINISHED_MESSAGE,
        })
        logger.info("Quiz finished in room %s", room.code)
        if leaderboard:
            logger.info("Winner in room %s: '%s' (%d pts)", room.code,
                        leaderboard[0]["displayName"], leaderboard[0]["score"])

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    def ranked_players(self, room: Room) -> List[Player]:
        # sorted() is stable, so equal scores keep join order
        return sorted(room.players, key=lambda p: p.score, reverse=True)

    def leaderboard(self, room: Room) -> List[dict]:
        return [
            {"displayName": p.display_name, "score": p.score, "answeredCount": len(p.answers)}
            for p in self.ranked_players(room)
        ]

    def final_leaderboard(self, room: Room) -> List[dict]:
        result = []
        for p in self.ranked_players(room):
            total = len(p.answers)
            correct = p.correct_count
            result.append({
                "displayName": p.display_name,
                "score": p.score,
                "correctAnswers": correct,
                "totalAnswers": total,
                "accuracy": math.floor(correct * 100 / total + 0.5) if total else 0,
            })
        return result

    async def broadcast_leaderboard(self, room: Room):
        await self.broadcaster.broadcast(room, "leaderboard-update", {"leaderboard": self.leaderboard(room)})

    def review(self, room: Room, player: Player) -> dict:
        answers = []
        for record in player.answers:
            question = room.quiz.questions[record.question_index]
            answers.append({
                "questionIndex": record.question_index,
                "text": question.text,
                "options": list(question.options),
                "selectedIndex": record.selected_index,
                "correctIndex": record.correct_index,
                "isCorrect": record.is_correct,
                "elapsedSeconds": record.elapsed_seconds,
                "pointsEarned": record.points_earned,
            })
        return {
            "displayName": player.display_name,
            "score": player.score,
            "answers": answers,
            "totalCorrect": player.correct_count,
            "totalQuestions": len(player.answers),
        }
