import logging
from typing import Optional

from connection_registry import ConnectionRegistry
from models import Room

logger = logging.getLogger(__name__)


class Broadcaster:
    """Best-effort fan-out of typed events.

    A recipient that cannot be reached is skipped and counted. Nothing is
    retried and a failed send never aborts the rest of a broadcast.
    """

    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry
        self.delivered = 0
        self.failed = 0

    async def send(self, identity: str, kind: str, data: Optional[dict] = None) -> bool:
        ws = self.registry.send_target(identity)
        if ws is None:
            self.failed += 1
            return False
        try:
            await ws.send_json({"type": kind, "data": data or {}})
        except Exception as e:
            self.failed += 1
            logger.warning("Delivery of [%s] to %s failed: %s", kind, identity, e)
            return False
        self.delivered += 1
        return True

    async def broadcast(self, room: Room, kind: str, data: Optional[dict] = None) -> int:
        """Send to every player in the room. Returns how many were reached."""
        sent = 0
        # Snapshot: a send can yield and the roster may grow meanwhile
        for identity in [p.identity for p in room.players]:
            if await self.send(identity, kind, data):
                sent += 1
        logger.debug("Broadcast [%s] to room %s: %d/%d clients", kind, room.code, sent, len(room.players))
        return sent
