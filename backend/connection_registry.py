import itertools
import logging
import time
from typing import Dict, Optional, Tuple

from fastapi import WebSocket

from errors import ConflictError
from models import Player, Room

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Live connections and which (room, display name) each one speaks for.

    Identities are minted per physical connection and are never reused, so a
    reconnect is recognised by display name within the room, not by identity.
    """

    def __init__(self):
        self._counter = itertools.count(1)
        self.connections: Dict[str, WebSocket] = {}  # identity -> ws
        self.bindings: Dict[str, Tuple[str, str]] = {}  # identity -> (room_code, display_name)

    def mint_identity(self) -> str:
        return f"client_{next(self._counter)}_{int(time.time() * 1000)}"

    def attach(self, identity: str, websocket: WebSocket):
        self.connections[identity] = websocket

    def detach(self, identity: str):
        """Forget a closed connection. The player it spoke for stays in its room."""
        self.connections.pop(identity, None)
        self.unbind(identity)

    def send_target(self, identity: str) -> Optional[WebSocket]:
        return self.connections.get(identity)

    def bind(self, identity: str, room: Room, display_name: str) -> Tuple[Player, bool]:
        """Bind an identity to a display name in a room.

        Returns (player, reconnected). An existing display name is taken over
        by the new identity; otherwise a new player is admitted, subject to
        the room's admission rules. A connection speaks for one player only,
        so an identity already bound elsewhere is refused.
        """
        current = self.bindings.get(identity)
        if current is not None and current != (room.code, display_name):
            raise ConflictError("You are already in a room")
        player = room.find_player(display_name)
        if player is None:
            player = room.add_player(identity, display_name)
            self.bindings[identity] = (room.code, display_name)
            return player, False

        stale = player.identity
        if stale != identity:
            self.bindings.pop(stale, None)
            player.identity = identity
            logger.info("Reconnect in room %s: '%s' (%s -> %s)", room.code, display_name, stale, identity)
        if display_name == room.host_display_name:
            room.host_identity = identity
        self.bindings[identity] = (room.code, display_name)
        room.touch()
        return player, True

    def resolve(self, identity: str) -> Optional[Tuple[str, str]]:
        return self.bindings.get(identity)

    def unbind(self, identity: str):
        self.bindings.pop(identity, None)
