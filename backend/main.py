from fastapi import FastAPI, File, Form, HTTPException, UploadFile, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import uvicorn
import logging

import config
config.setup_logging()

from errors import ValidationError
from models import epoch_ms
from quiz_engine import parse_question_file
from socket_manager import socket_manager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting quiz room server (max %d rooms, %d players per room)",
                config.MAX_ROOMS, config.MAX_PLAYERS_PER_ROOM)
    socket_manager.start_cleanup_loop()
    yield
    await socket_manager.stop_cleanup_loop()
    logger.info("Shutting down quiz room server")


app = FastAPI(title="Live Quiz Rooms", lifespan=lifespan)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await socket_manager.connect(websocket)


@app.get("/api/status")
async def get_status():
    return {
        "status": "online",
        "totalRooms": len(socket_manager.rooms),
        "totalUsers": len(socket_manager.registry.bindings),
        "wsConnections": len(socket_manager.registry.connections),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/api/room/{code}")
async def get_room_info(code: str):
    room = socket_manager.store.get_room(code.upper())
    if not room:
        raise HTTPException(status_code=404, detail="Room not found")
    quiz = room.quiz
    current = quiz.current_question if quiz.question_open else None
    return {
        "code": room.code,
        "totalPlayers": len(room.players),
        "players": [p.display_name for p in room.players],
        "status": quiz.status.value,
        "currentQuestion": quiz.current_index,
        "questionStartedAt": epoch_ms(quiz.question_started_at),
        "timeLimitSeconds": current.time_limit_seconds if current else None,
        "createdAt": datetime.fromtimestamp(room.created_at, timezone.utc).isoformat(),
    }


@app.post("/api/upload-questions")
async def upload_questions(file: UploadFile = File(...), roomCode: str = Form(...),
                           clientId: str = Form(...)):
    """Parse an Excel or CSV question file for the host; they are applied via start-quiz."""
    room = socket_manager.store.get_room(roomCode.strip().upper())
    if not room:
        raise HTTPException(status_code=404, detail="Room not found")
    if not room.is_host(clientId):
        raise HTTPException(status_code=403, detail="Only the host can upload questions")

    content = await file.read(config.MAX_UPLOAD_BYTES + 1)
    if len(content) > config.MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=400, detail="File too large")
    try:
        questions = parse_question_file(file.filename, content)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info("Host of room %s uploaded %d questions", room.code, len(questions))
    return {"success": True, "questions": [q.to_wire() for q in questions]}


# Configure CORS
origins = [o.strip() for o in config.ALLOWED_ORIGINS.split(",") if o.strip()]
socket_manager.allowed_origins = origins

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
)


@app.get("/")
async def root():
    return {"message": "Live quiz server is running"}


@app.get("/health")
async def health():
    return {"status": "healthy"}


if __name__ == "__main__":
    uvicorn.run("main:app", host=config.HOST, port=config.PORT, reload=True)
