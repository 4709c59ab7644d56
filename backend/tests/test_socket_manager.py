"""
Unit tests for SocketManager.handle_message: dispatch, gates, error
replies and the room sweep. Uses a mock WebSocket per client.
"""
import sys
import os
import asyncio
import time

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from models import QuizStatus
from quiz_session import QuizController
from socket_manager import SocketManager


class MockWebSocket:
    """Lightweight mock for fastapi.WebSocket."""
    def __init__(self):
        self.sent_messages: list[dict] = []

    async def send_json(self, data: dict):
        self.sent_messages.append(data)

    def last(self, kind: str) -> dict | None:
        for msg in reversed(self.sent_messages):
            if msg.get("type") == kind:
                return msg["data"]
        return None

    def types(self) -> list[str]:
        return [m["type"] for m in self.sent_messages]


def make_manager():
    manager = SocketManager()
    manager.controller = QuizController(manager.broadcaster, lead_in=0.01, grace=0.01, question_buffer=0.0)
    return manager


def connect(manager, identity):
    ws = MockWebSocket()
    manager.registry.attach(identity, ws)
    return ws


async def setup_room(manager, *names):
    """Host creates a room and the remaining names join. Returns (code, sockets)."""
    host = names[0]
    sockets = {host: connect(manager, f"id-{host}")}
    await manager.handle_message(f"id-{host}", {"type": "create-room", "data": {"displayName": host}})
    code = sockets[host].last("room-created")["roomCode"]
    for name in names[1:]:
        sockets[name] = connect(manager, f"id-{name}")
        await manager.handle_message(f"id-{name}", {
            "type": "join-room", "data": {"roomCode": code, "displayName": name},
        })
    return code, sockets


def cancel_timers(manager):
    for room in manager.rooms.values():
        room.quiz.cancel_pending()


# ===========================================================================
# Dispatch
# ===========================================================================

class TestDispatch:
    @pytest.mark.asyncio
    async def test_unknown_type_gets_error(self):
        manager = make_manager()
        ws = connect(manager, "c1")
        await manager.handle_message("c1", {"type": "dance", "data": {}})
        assert "Unknown" in ws.last("error")["message"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", [["create-room"], {}, {"name": "ping"}, None, 7])
    async def test_non_string_type_gets_error(self, kind):
        manager = make_manager()
        ws = connect(manager, "c1")
        await manager.handle_message("c1", {"type": kind, "data": {"displayName": "Host"}})
        assert ws.last("error")["message"] == "Unknown message type"
        assert len(manager.rooms) == 0

    @pytest.mark.asyncio
    async def test_non_object_message_rejected(self):
        manager = make_manager()
        ws = connect(manager, "c1")
        await manager.handle_message("c1", ["create-room"])
        assert ws.last("error") is not None

    @pytest.mark.asyncio
    async def test_non_object_data_rejected(self):
        manager = make_manager()
        ws = connect(manager, "c1")
        await manager.handle_message("c1", {"type": "create-room", "data": "Host"})
        assert ws.last("error") is not None
        assert len(manager.rooms) == 0

    @pytest.mark.asyncio
    async def test_ping(self):
        manager = make_manager()
        ws = connect(manager, "c1")
        before = int(time.time() * 1000)
        await manager.handle_message("c1", {"type": "ping"})
        assert ws.last("pong")["timestamp"] >= before


# ===========================================================================
# Rooms
# ===========================================================================

class TestCreateAndJoin:
    @pytest.mark.asyncio
    async def test_create_room(self):
        manager = make_manager()
        code, sockets = await setup_room(manager, "Host")
        assert sockets["Host"].last("room-created") == {"roomCode": code, "isHost": True}
        room = manager.rooms[code]
        assert room.host_identity == "id-Host"
        assert [p.display_name for p in room.players] == ["Host"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", [None, "", "   ", "x" * 21, 42])
    async def test_create_room_bad_name(self, name):
        manager = make_manager()
        ws = connect(manager, "c1")
        await manager.handle_message("c1", {"type": "create-room", "data": {"displayName": name}})
        assert ws.last("error") is not None
        assert len(manager.rooms) == 0

    @pytest.mark.asyncio
    async def test_join_broadcasts_roster(self):
        manager = make_manager()
        code, sockets = await setup_room(manager, "Host", "Ana")
        assert sockets["Ana"].last("room-joined") == {"roomCode": code, "isHost": False}
        joined = sockets["Host"].last("player-joined")
        assert joined["displayName"] == "Ana"
        assert joined["players"] == [
            {"displayName": "Host", "score": 0},
            {"displayName": "Ana", "score": 0},
        ]

    @pytest.mark.asyncio
    async def test_join_lowercase_code(self):
        manager = make_manager()
        code, _ = await setup_room(manager, "Host")
        ws = connect(manager, "c2")
        await manager.handle_message("c2", {
            "type": "join-room", "data": {"roomCode": code.lower(), "displayName": "Ana"},
        })
        assert ws.last("room-joined")["roomCode"] == code

    @pytest.mark.asyncio
    async def test_join_unknown_room(self):
        manager = make_manager()
        ws = connect(manager, "c1")
        await manager.handle_message("c1", {
            "type": "join-room", "data": {"roomCode": "ZZZZZZ", "displayName": "Ana"},
        })
        assert ws.last("join-error")["message"] == "Room not found"

    @pytest.mark.asyncio
    async def test_join_taken_name(self):
        manager = make_manager()
        code, sockets = await setup_room(manager, "Host", "Ana")
        ws = connect(manager, "c3")
        await manager.handle_message("c3", {
            "type": "join-room", "data": {"roomCode": code, "displayName": "Ana"},
        })
        assert ws.last("join-error") is not None
        assert len(manager.rooms[code].players) == 2
        # the error goes to the sender only
        assert sockets["Ana"].last("join-error") is None

    @pytest.mark.asyncio
    async def test_join_full_room(self):
        manager = make_manager()
        names = ["Host"] + [f"P{i}" for i in range(9)]
        code, _ = await setup_room(manager, *names)
        assert len(manager.rooms[code].players) == 10
        ws = connect(manager, "late")
        await manager.handle_message("late", {
            "type": "join-room", "data": {"roomCode": code, "displayName": "Late"},
        })
        assert ws.last("join-error") is not None
        assert len(manager.rooms[code].players) == 10

    @pytest.mark.asyncio
    async def test_second_create_from_same_connection_rejected(self):
        manager = make_manager()
        code, sockets = await setup_room(manager, "Host")
        await manager.handle_message("id-Host", {"type": "create-room", "data": {"displayName": "Again"}})
        assert sockets["Host"].last("error")["message"] == "You are already in a room"
        assert list(manager.rooms) == [code]
        assert manager.registry.resolve("id-Host") == (code, "Host")

    @pytest.mark.asyncio
    async def test_join_second_room_rejected(self):
        manager = make_manager()
        first, sockets = await setup_room(manager, "Host", "Ana")
        ws_other = connect(manager, "id-Other")
        await manager.handle_message("id-Other", {"type": "create-room", "data": {"displayName": "Other"}})
        second = ws_other.last("room-created")["roomCode"]

        await manager.handle_message("id-Ana", {
            "type": "join-room", "data": {"roomCode": second, "displayName": "Ana"},
        })
        assert sockets["Ana"].last("join-error")["message"] == "You are already in a room"
        assert [p.display_name for p in manager.rooms[second].players] == ["Other"]
        assert manager.registry.resolve("id-Ana") == (first, "Ana")

        # still a working member of the first room
        await manager.handle_message("id-Ana", {
            "type": "send-chat", "data": {"roomCode": first, "text": "still here"},
        })
        assert sockets["Host"].last("new-chat")["text"] == "still here"


class TestRoomData:
    @pytest.mark.asyncio
    async def test_snapshot_without_binding(self):
        manager = make_manager()
        code, _ = await setup_room(manager, "Host")
        ws = connect(manager, "watcher")
        await manager.handle_message("watcher", {"type": "get-room-data", "data": {"roomCode": code}})
        data = ws.last("room-data")
        assert data["isHost"] is False
        assert data["room"]["code"] == code
        assert data["room"]["quiz"]["status"] == "waiting"
        assert data["room"]["quiz"]["question"] is None
        assert len(manager.rooms[code].players) == 1

    @pytest.mark.asyncio
    async def test_host_reconnects_with_new_identity(self):
        manager = make_manager()
        code, sockets = await setup_room(manager, "Host", "Ana")
        manager.disconnect("id-Host")
        ws = connect(manager, "id-Host-2")
        await manager.handle_message("id-Host-2", {
            "type": "get-room-data", "data": {"roomCode": code, "displayName": "Host"},
        })
        assert ws.last("room-data")["isHost"] is True
        room = manager.rooms[code]
        assert room.host_identity == "id-Host-2"
        assert len(room.players) == 2
        # no duplicate join announcement
        assert sockets["Ana"].types().count("player-joined") == 1

        await manager.handle_message("id-Host-2", {"type": "start-quiz", "data": {"roomCode": code}})
        assert room.quiz.status == QuizStatus.PLAYING
        cancel_timers(manager)

    @pytest.mark.asyncio
    async def test_first_contact_via_room_data_joins(self):
        manager = make_manager()
        code, sockets = await setup_room(manager, "Host")
        ws = connect(manager, "c2")
        await manager.handle_message("c2", {
            "type": "get-room-data", "data": {"roomCode": code, "displayName": "Ben"},
        })
        assert ws.last("room-data")["room"]["players"][-1]["displayName"] == "Ben"
        assert sockets["Host"].last("player-joined")["displayName"] == "Ben"

    @pytest.mark.asyncio
    async def test_room_data_during_question(self):
        manager = make_manager()
        code, sockets = await setup_room(manager, "Host", "Ana")
        await manager.handle_message("id-Host", {"type": "start-quiz", "data": {"roomCode": code}})
        await asyncio.sleep(0.05)
        await manager.handle_message("id-Ana", {"type": "get-room-data", "data": {"roomCode": code}})
        quiz = sockets["Ana"].last("room-data")["room"]["quiz"]
        assert quiz["status"] == "playing"
        assert quiz["currentQuestion"] == 0
        assert quiz["timeLimitSeconds"] == 15
        assert quiz["questionStartedAt"] is not None
        assert "correctIndex" not in quiz["question"]
        cancel_timers(manager)


# ===========================================================================
# Chat
# ===========================================================================

class TestChat:
    @pytest.mark.asyncio
    async def test_chat_broadcast(self):
        manager = make_manager()
        code, sockets = await setup_room(manager, "Host", "Ana")
        await manager.handle_message("id-Ana", {
            "type": "send-chat", "data": {"roomCode": code, "text": "  hi <b>all</b> "},
        })
        for ws in sockets.values():
            msg = ws.last("new-chat")
            assert msg["displayName"] == "Ana"
            assert msg["text"] == "hi all"
        assert len(manager.rooms[code].chat_log) == 1

    @pytest.mark.asyncio
    async def test_chat_truncated(self):
        manager = make_manager()
        code, sockets = await setup_room(manager, "Host")
        await manager.handle_message("id-Host", {
            "type": "send-chat", "data": {"roomCode": code, "text": "a" * 600},
        })
        assert len(sockets["Host"].last("new-chat")["text"]) == 500

    @pytest.mark.asyncio
    async def test_empty_chat_rejected(self):
        manager = make_manager()
        code, sockets = await setup_room(manager, "Host")
        await manager.handle_message("id-Host", {
            "type": "send-chat", "data": {"roomCode": code, "text": "   "},
        })
        assert sockets["Host"].last("new-chat") is None
        assert sockets["Host"].last("error") is not None

    @pytest.mark.asyncio
    async def test_chat_from_outsider_rejected(self):
        manager = make_manager()
        code, sockets = await setup_room(manager, "Host")
        ws = connect(manager, "stranger")
        await manager.handle_message("stranger", {
            "type": "send-chat", "data": {"roomCode": code, "text": "hello"},
        })
        assert ws.last("error") is not None
        assert sockets["Host"].last("new-chat") is None


# ===========================================================================
# Quiz control
# ===========================================================================

class TestQuizControl:
    @pytest.mark.asyncio
    async def test_only_host_can_start(self):
        manager = make_manager()
        code, sockets = await setup_room(manager, "Host", "Ana")
        await manager.handle_message("id-Ana", {"type": "start-quiz", "data": {"roomCode": code}})
        assert "host" in sockets["Ana"].last("error")["message"].lower()
        assert sockets["Host"].last("error") is None
        assert manager.rooms[code].quiz.status == QuizStatus.WAITING

    @pytest.mark.asyncio
    async def test_only_host_can_skip(self):
        manager = make_manager()
        code, sockets = await setup_room(manager, "Host", "Ana")
        await manager.handle_message("id-Host", {"type": "start-quiz", "data": {"roomCode": code}})
        await manager.handle_message("id-Ana", {"type": "next-question", "data": {"roomCode": code}})
        assert sockets["Ana"].last("error") is not None
        cancel_timers(manager)

    @pytest.mark.asyncio
    async def test_start_with_invalid_questions(self):
        manager = make_manager()
        code, sockets = await setup_room(manager, "Host", "Ana")
        await manager.handle_message("id-Host", {
            "type": "start-quiz", "data": {"roomCode": code, "questions": [{"text": "broken"}]},
        })
        assert "Question 1" in sockets["Host"].last("error")["message"]
        assert sockets["Ana"].last("quiz-started") is None
        assert manager.rooms[code].quiz.status == QuizStatus.WAITING

    @pytest.mark.asyncio
    async def test_answer_flow_and_review(self):
        manager = make_manager()
        code, sockets = await setup_room(manager, "Host", "Ana")
        await manager.handle_message("id-Host", {"type": "start-quiz", "data": {"roomCode": code}})
        await asyncio.sleep(0.05)
        question = manager.rooms[code].quiz.current_question

        await manager.handle_message("id-Ana", {
            "type": "submit-answer", "data": {"roomCode": code, "selectedIndex": question.correct_index},
        })
        assert sockets["Ana"].last("answer-submitted")["isCorrect"] is True
        await manager.handle_message("id-Ana", {
            "type": "submit-answer", "data": {"roomCode": code, "selectedIndex": question.correct_index},
        })
        assert "already" in sockets["Ana"].last("error")["message"]

        await manager.handle_message("id-Ana", {"type": "get-my-review", "data": {"roomCode": code}})
        review = sockets["Ana"].last("player-review")
        assert review["totalCorrect"] == 1
        assert review["answers"][0]["text"] == question.text
        cancel_timers(manager)

    @pytest.mark.asyncio
    async def test_default_game_first_question(self):
        manager = make_manager()
        code, sockets = await setup_room(manager, "Host", "Ana")
        assert len(manager.rooms[code].players) == 2
        await manager.handle_message("id-Host", {"type": "start-quiz", "data": {"roomCode": code}})
        assert sockets["Ana"].last("quiz-started")["totalQuestions"] == 8
        await asyncio.sleep(0.05)
        first = sockets["Ana"].last("new-question")
        assert first["questionNumber"] == 1
        assert first["timeLimitSeconds"] == 15

        room = manager.rooms[code]
        room.quiz.question_started_at = time.time() - 2.0
        correct = room.quiz.current_question.correct_index
        await manager.handle_message("id-Ana", {
            "type": "submit-answer", "data": {"roomCode": code, "selectedIndex": correct},
        })
        assert sockets["Ana"].last("answer-submitted")["points"] == 16
        await manager.handle_message("id-Host", {
            "type": "submit-answer", "data": {"roomCode": code, "selectedIndex": correct},
        })
        assert sockets["Host"].last("all-answered") == {}
        assert sockets["Host"].last("new-question")["questionNumber"] == 1
        await asyncio.sleep(0.05)
        assert sockets["Host"].last("new-question")["questionNumber"] == 2
        cancel_timers(manager)

    @pytest.mark.asyncio
    async def test_answer_from_outsider_rejected(self):
        manager = make_manager()
        code, _ = await setup_room(manager, "Host")
        await manager.handle_message("id-Host", {"type": "start-quiz", "data": {"roomCode": code}})
        await asyncio.sleep(0.05)
        ws = connect(manager, "stranger")
        await manager.handle_message("stranger", {
            "type": "submit-answer", "data": {"roomCode": code, "selectedIndex": 0},
        })
        assert ws.last("error") is not None
        assert manager.rooms[code].quiz.answered_count == 0
        cancel_timers(manager)

    @pytest.mark.asyncio
    async def test_stale_identity_cannot_answer(self):
        manager = make_manager()
        code, _ = await setup_room(manager, "Host", "Ana")
        ws_new = connect(manager, "id-Ana-2")
        await manager.handle_message("id-Ana-2", {
            "type": "get-room-data", "data": {"roomCode": code, "displayName": "Ana"},
        })
        await manager.handle_message("id-Host", {"type": "start-quiz", "data": {"roomCode": code}})
        await asyncio.sleep(0.05)
        await manager.handle_message("id-Ana", {
            "type": "submit-answer", "data": {"roomCode": code, "selectedIndex": 0},
        })
        assert manager.rooms[code].find_player("Ana").answers == []
        await manager.handle_message("id-Ana-2", {
            "type": "submit-answer", "data": {"roomCode": code, "selectedIndex": 0},
        })
        assert ws_new.last("answer-submitted") is not None
        cancel_timers(manager)


# ===========================================================================
# Disconnect and sweep
# ===========================================================================

class TestDisconnectAndSweep:
    @pytest.mark.asyncio
    async def test_disconnect_keeps_player(self):
        manager = make_manager()
        code, _ = await setup_room(manager, "Host", "Ana")
        manager.disconnect("id-Ana")
        room = manager.rooms[code]
        assert [p.display_name for p in room.players] == ["Host", "Ana"]
        assert "id-Ana" not in manager.registry.connections
        assert manager.registry.resolve("id-Ana") is None

    @pytest.mark.asyncio
    async def test_sweep_removes_abandoned_room(self):
        manager = make_manager()
        code, _ = await setup_room(manager, "Host")
        room = manager.rooms[code]
        manager.disconnect("id-Host")
        evicted = manager.sweep(now=room.last_activity_at + 3600)
        assert evicted == [code]
        assert code not in manager.rooms

    @pytest.mark.asyncio
    async def test_sweep_keeps_connected_room(self):
        manager = make_manager()
        code, _ = await setup_room(manager, "Host")
        room = manager.rooms[code]
        assert manager.sweep(now=room.last_activity_at + 3600) == []
        assert code in manager.rooms

    @pytest.mark.asyncio
    async def test_sweep_cancels_room_timers(self):
        manager = make_manager()
        code, _ = await setup_room(manager, "Host")
        room = manager.rooms[code]
        await manager.handle_message("id-Host", {"type": "start-quiz", "data": {"roomCode": code}})
        pending = room.quiz.pending_advance
        manager.disconnect("id-Host")
        manager.sweep(now=room.last_activity_at + 3600)
        await asyncio.sleep(0.01)
        assert pending.done()
        assert room.quiz.pending_advance is None
        assert room.quiz.dispatched_index == -1
