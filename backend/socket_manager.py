from fastapi import WebSocket, WebSocketDisconnect
from typing import Dict, List, Optional
import json
import time
import asyncio
import logging

import config
from broadcaster import Broadcaster
from connection_registry import ConnectionRegistry
from errors import AuthorizationError, ConflictError, NotFoundError, QuizError, ValidationError
from models import Player, Room, epoch_ms
from quiz_engine import question_summary, sanitize_text
from quiz_session import QuizController
from room_store import RoomStore

logger = logging.getLogger(__name__)


class SocketManager:
    def __init__(self):
        self.registry = ConnectionRegistry()
        self.store = RoomStore()
        self.broadcaster = Broadcaster(self.registry)
        self.controller = QuizController(self.broadcaster)
        self._cleanup_task: Optional[asyncio.Task] = None
        self.allowed_origins: List[str] = []
        self._handlers = {
            "create-room": self._create_room,
            "join-room": self._join_room,
            "get-room-data": self._get_room_data,
            "send-chat": self._send_chat,
            "start-quiz": self._start_quiz,
            "submit-answer": self._submit_answer,
            "next-question": self._next_question,
            "get-my-review": self._get_my_review,
            "ping": self._ping,
        }

    @property
    def rooms(self) -> Dict[str, Room]:
        return self.store.rooms

    def start_cleanup_loop(self):
        """Start the background room cleanup task."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_idle_rooms())

    async def stop_cleanup_loop(self):
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    async def _cleanup_idle_rooms(self):
        """Periodically remove empty and abandoned rooms."""
        while True:
            try:
                await asyncio.sleep(config.ROOM_SWEEP_INTERVAL_SECONDS)
                self.sweep()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in room cleanup loop")

    def sweep(self, now: Optional[float] = None) -> List[str]:
        evicted = self.store.evict_idle(now)
        evicted += self.store.evict_abandoned(lambda identity: identity in self.registry.connections, now)
        logger.info("Server stats: %d rooms, %d connections", len(self.store), len(self.registry.connections))
        return evicted

    # ------------------------------------------------------------------
    # Connection loop
    # ------------------------------------------------------------------

    async def connect(self, websocket: WebSocket):
        # Validate WebSocket origin
        origin = websocket.headers.get("origin", "")
        if self.allowed_origins and origin not in self.allowed_origins:
            logger.warning("Rejected WebSocket from unauthorized origin: %s", origin)
            await websocket.close(code=1008)
            return

        await websocket.accept()
        identity = self.registry.mint_identity()
        self.registry.attach(identity, websocket)
        logger.info("WebSocket connected: %s", identity)
        await self.broadcaster.send(identity, "connected", {"identity": identity})

        timestamps: List[float] = []
        try:
            while True:
                data = await websocket.receive_text()

                # Enforce message size limit
                if len(data) > config.MAX_WS_MESSAGE_SIZE:
                    await self.broadcaster.send(identity, "error", {"message": "Message too large"})
                    continue

                # Per-client rate limiting
                now = time.time()
                timestamps[:] = [t for t in timestamps if now - t < 1.0]
                if len(timestamps) >= config.WS_RATE_LIMIT_PER_SEC:
                    await self.broadcaster.send(identity, "error", {"message": "Too many messages"})
                    continue
                timestamps.append(now)

                try:
                    message = json.loads(data)
                except json.JSONDecodeError:
                    logger.warning("Malformed JSON from client %s: %s", identity, data[:100])
                    await self.broadcaster.send(identity, "error", {"message": "Invalid message format"})
                    continue

                await self.handle_message(identity, message)
        except WebSocketDisconnect:
            logger.info("Client %s disconnected", identity)
        except Exception:
            logger.exception("WebSocket error for client %s", identity)
        finally:
            self.disconnect(identity)

    def disconnect(self, identity: str):
        """Drop the connection only. The player, host role and room timers are untouched."""
        binding = self.registry.resolve(identity)
        if binding:
            logger.info("'%s' disconnected from room %s (kept for reconnect)", binding[1], binding[0])
        self.registry.detach(identity)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def handle_message(self, identity: str, message):
        if not isinstance(message, dict):
            await self.broadcaster.send(identity, "error", {"message": "Invalid message format"})
            return
        kind = message.get("type")
        data = message.get("data")
        if data is None:
            data = {}
        logger.debug("Received [%s] from %s", kind, identity)
        try:
            handler = self._handlers.get(kind) if isinstance(kind, str) else None
            if handler is None:
                raise ValidationError("Unknown message type")
            if not isinstance(data, dict):
                raise ValidationError("Message data must be an object")
            await handler(identity, data)
        except QuizError as e:
            logger.info("Rejected [%s] from %s: %s", kind, identity, e)
            reply = "join-error" if kind == "join-room" else "error"
            await self.broadcaster.send(identity, reply, {"message": str(e)})

    # ------------------------------------------------------------------
    # Lookups and gates
    # ------------------------------------------------------------------

    def _room_from(self, data: dict) -> Room:
        code = data.get("roomCode")
        if not code or not isinstance(code, str):
            raise ValidationError("Missing room code")
        room = self.store.get_room(code.strip().upper())
        if room is None:
            raise NotFoundError("Room not found")
        return room

    def _display_name_from(self, data: dict) -> str:
        name = data.get("displayName")
        if not isinstance(name, str):
            raise ValidationError("Missing display name")
        name = sanitize_text(name)
        if not name or len(name) > config.MAX_DISPLAY_NAME_LENGTH:
            raise ValidationError(f"Display name must be 1-{config.MAX_DISPLAY_NAME_LENGTH} characters")
        return name

    def _member(self, identity: str, room: Room) -> Player:
        binding = self.registry.resolve(identity)
        if binding is None or binding[0] != room.code:
            raise NotFoundError("You are not in this room")
        player = room.find_player(binding[1])
        if player is None or player.identity != identity:
            raise NotFoundError("You are not in this room")
        return player

    def _require_host(self, identity: str, room: Room) -> Player:
        player = self._member(identity, room)
        if not room.is_host(identity):
            raise AuthorizationError("Only the host can do that")
        return player

    def _room_payload(self, room: Room) -> dict:
        quiz = room.quiz
        current = quiz.current_question if quiz.question_open else None
        return {
            "code": room.code,
            "players": room.player_summaries(),
            "quiz": {
                "status": quiz.status.value,
                "currentQuestion": quiz.current_index,
                "totalQuestions": len(quiz.questions),
                "questionStartedAt": epoch_ms(quiz.question_started_at),
                "timeLimitSeconds": current.time_limit_seconds if current else None,
                "question": question_summary(current),
            },
            "chat": [m.to_wire() for m in room.chat_log],
        }

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _create_room(self, identity: str, data: dict):
        display_name = self._display_name_from(data)
        if self.registry.resolve(identity):
            raise ConflictError("You are already in a room")
        room = self.store.create_room(display_name, identity)
        async with room.lock:
            self.registry.bind(identity, room, display_name)
        await self.broadcaster.send(identity, "room-created", {"roomCode": room.code, "isHost": True})

    async def _join_room(self, identity: str, data: dict):
        room = self._room_from(data)
        display_name = self._display_name_from(data)
        async with room.lock:
            # join-room is for new names only; rejoining goes through get-room-data
            if room.find_player(display_name):
                raise ConflictError("Display name is already taken")
            self.registry.bind(identity, room, display_name)
            logger.info("'%s' joined room %s (%d players)", display_name, room.code, len(room.players))
            await self.broadcaster.send(identity, "room-joined", {
                "roomCode": room.code,
                "isHost": room.is_host(identity),
            })
            await self.broadcaster.broadcast(room, "player-joined", {
                "displayName": display_name,
                "players": room.player_summaries(),
            })

    async def _get_room_data(self, identity: str, data: dict):
        room = self._room_from(data)
        async with room.lock:
            if data.get("displayName") is not None:
                display_name = self._display_name_from(data)
                _, reconnected = self.registry.bind(identity, room, display_name)
                if not reconnected:
                    logger.info("New player '%s' in room %s via room data", display_name, room.code)
                    await self.broadcaster.broadcast(room, "player-joined", {
                        "displayName": display_name,
                        "players": room.player_summaries(),
                    })
            await self.broadcaster.send(identity, "room-data", {
                "room": self._room_payload(room),
                "isHost": room.is_host(identity),
            })

    async def _send_chat(self, identity: str, data: dict):
        room = self._room_from(data)
        text = data.get("text")
        if not isinstance(text, str) or not sanitize_text(text):
            raise ValidationError("Message must not be empty")
        text = sanitize_text(text)[:config.MAX_CHAT_LENGTH]
        async with room.lock:
            player = self._member(identity, room)
            message = room.add_chat(player.display_name, text)
            await self.broadcaster.broadcast(room, "new-chat", message.to_wire())

    async def _start_quiz(self, identity: str, data: dict):
        room = self._room_from(data)
        async with room.lock:
            self._require_host(identity, room)
            await self.controller.start(room, data.get("questions"))

    async def _submit_answer(self, identity: str, data: dict):
        room = self._room_from(data)
        async with room.lock:
            player = self._member(identity, room)
            await self.controller.submit_answer(room, player, data.get("selectedIndex"))

    async def _next_question(self, identity: str, data: dict):
        room = self._room_from(data)
        async with room.lock:
            self._require_host(identity, room)
            await self.controller.skip(room)

    async def _get_my_review(self, identity: str, data: dict):
        room = self._room_from(data)
        async with room.lock:
            player = self._member(identity, room)
            review = self.controller.review(room, player)
        await self.broadcaster.send(identity, "player-review", review)

    async def _ping(self, identity: str, data: dict):
        await self.broadcaster.send(identity, "pong", {"timestamp": epoch_ms(time.time())})


socket_manager = SocketManager()
