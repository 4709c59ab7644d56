import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, field_validator

import config
from errors import ConflictError


def epoch_ms(ts: Optional[float]) -> Optional[int]:
    """Seconds-since-epoch float to the millisecond integers used on the wire."""
    if ts is None:
        return None
    return int(ts * 1000)


class QuizStatus(str, Enum):
    WAITING = "waiting"
    PLAYING = "playing"
    FINISHED = "finished"


class Question(BaseModel):
    """One multiple-choice question. Frozen once built."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    text: StrictStr
    options: List[StrictStr]
    correct_index: StrictInt = Field(alias="correctIndex")
    time_limit_seconds: StrictInt = Field(alias="timeLimitSeconds")

    @field_validator('text')
    @classmethod
    def validate_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError('Question text must not be empty')
        return v

    @field_validator('options')
    @classmethod
    def validate_options(cls, v: List[str]) -> List[str]:
        if len(v) != 4:
            raise ValueError('Question must have exactly 4 options')
        return v

    @field_validator('correct_index')
    @classmethod
    def validate_correct_index(cls, v: int) -> int:
        if not 0 <= v <= 3:
            raise ValueError('correctIndex must be between 0 and 3')
        return v

    @field_validator('time_limit_seconds')
    @classmethod
    def validate_time_limit(cls, v: int) -> int:
        if v < config.MIN_TIME_LIMIT or v > config.MAX_TIME_LIMIT:
            raise ValueError(
                f'timeLimitSeconds must be between {config.MIN_TIME_LIMIT} and {config.MAX_TIME_LIMIT}'
            )
        return v

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


@dataclass(frozen=True)
class AnswerRecord:
    question_index: int
    selected_index: int
    correct_index: int
    is_correct: bool
    elapsed_seconds: float
    points_earned: int


@dataclass(frozen=True)
class ChatMessage:
    display_name: str
    text: str
    sent_at: float

    def to_wire(self) -> dict:
        return {"displayName": self.display_name, "text": self.text, "sentAt": epoch_ms(self.sent_at)}


class Player:
    def __init__(self, identity: str, display_name: str):
        self.identity = identity  # repointed on every reconnect
        self.display_name = display_name
        self.score = 0
        self.answers: List[AnswerRecord] = []

    def answer_for(self, question_index: int) -> Optional[AnswerRecord]:
        for record in self.answers:
            if record.question_index == question_index:
                return record
        return None

    @property
    def correct_count(self) -> int:
        return sum(1 for a in self.answers if a.is_correct)


class Room:
    def __init__(self, code: str, host_identity: str, host_display_name: str, quiz):
        self.code = code
        self.host_identity = host_identity
        self.host_display_name = host_display_name
        self.players: List[Player] = []  # join order
        self.quiz = quiz
        self.chat_log: List[ChatMessage] = []
        self.created_at = time.time()
        self.last_activity_at = self.created_at
        self.lock = asyncio.Lock()

    def touch(self, now: Optional[float] = None):
        """Update last activity timestamp."""
        self.last_activity_at = now if now is not None else time.time()

    def is_host(self, identity: str) -> bool:
        return identity == self.host_identity

    def find_player(self, display_name: str) -> Optional[Player]:
        for player in self.players:
            if player.display_name == display_name:
                return player
        return None

    def player_by_identity(self, identity: str) -> Optional[Player]:
        for player in self.players:
            if player.identity == identity:
                return player
        return None

    def add_player(self, identity: str, display_name: str) -> Player:
        """Admit a new display name. Only allowed before the quiz starts."""
        if self.find_player(display_name):
            raise ConflictError("Display name is already taken")
        if self.quiz.status != QuizStatus.WAITING:
            raise ConflictError("Quiz has already started")
        if len(self.players) >= config.MAX_PLAYERS_PER_ROOM:
            raise ConflictError("Room is full")
        player = Player(identity, display_name)
        self.players.append(player)
        self.touch()
        return player

    def add_chat(self, display_name: str, text: str) -> ChatMessage:
        message = ChatMessage(display_name=display_name, text=text, sent_at=time.time())
        self.chat_log.append(message)
        if len(self.chat_log) > config.MAX_CHAT_LOG:
            del self.chat_log[:len(self.chat_log) - config.MAX_CHAT_LOG]
        self.touch(message.sent_at)
        return message

    def player_summaries(self) -> List[Dict]:
        return [{"displayName": p.display_name, "score": p.score} for p in self.players]
