import random
import string
import time
import logging
from typing import Callable, Dict, List, Optional

import config
from errors import ConflictError
from models import Room
from quiz_engine import default_questions
from quiz_session import QuizSession

logger = logging.getLogger(__name__)

ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits


class RoomStore:
    def __init__(self):
        self.rooms: Dict[str, Room] = {}

    def __len__(self):
        return len(self.rooms)

    def generate_room_code(self) -> str:
        """Generate a unique room code, checking for collisions."""
        for _ in range(config.MAX_ROOM_CODE_ATTEMPTS):
            code = ''.join(random.choices(ROOM_CODE_ALPHABET, k=config.ROOM_CODE_LENGTH))
            if code not in self.rooms:
                return code
        raise ConflictError("Failed to generate unique room code")

    def create_room(self, host_display_name: str, host_identity: str) -> Room:
        if len(self.rooms) >= config.MAX_ROOMS:
            raise ConflictError("Too many active rooms. Please try again later.")
        code = self.generate_room_code()
        room = Room(code, host_identity, host_display_name, QuizSession(default_questions()))
        self.rooms[code] = room
        logger.info("Room created: %s by '%s' (%d rooms)", code, host_display_name, len(self.rooms))
        return room

    def get_room(self, code: Optional[str]) -> Optional[Room]:
        if not code:
            return None
        return self.rooms.get(code)

    def evict_idle(self, now: Optional[float] = None,
                   idle_threshold: Optional[float] = None) -> List[str]:
        """Remove rooms that are empty and idle for longer than the threshold."""
        if now is None:
            now = time.time()
        if idle_threshold is None:
            idle_threshold = config.EMPTY_ROOM_TTL_SECONDS
        expired = [
            code for code, room in self.rooms.items()
            if not room.players and now - room.last_activity_at > idle_threshold
        ]
        for code in expired:
            self._remove(code, now, "empty")
        return expired

    def evict_abandoned(self, is_connected: Callable[[str], bool], now: Optional[float] = None,
                        ttl: Optional[float] = None) -> List[str]:
        """Remove rooms none of whose players has a live connection, once idle past ttl.

        Players are never removed on disconnect, so without this a room that
        everyone walked away from would never become empty. This extends the
        empty-rooms-only rule of evict_idle on purpose: such rooms still hold
        players, but none of them can reach it any more.
        """
        if now is None:
            now = time.time()
        if ttl is None:
            ttl = config.ABANDONED_ROOM_TTL_SECONDS
        expired = [
            code for code, room in self.rooms.items()
            if room.players
            and not any(is_connected(p.identity) for p in room.players)
            and now - room.last_activity_at > ttl
        ]
        for code in expired:
            self._remove(code, now, "abandoned")
        return expired

    def _remove(self, code: str, now: float, reason: str):
        room = self.rooms.pop(code)
        room.quiz.cancel_pending()
        logger.info("Cleaned up %s room %s (idle %ds)", reason, code, int(now - room.last_activity_at))
