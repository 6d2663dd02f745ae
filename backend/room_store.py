from typing import Callable, Dict, List, Optional, Tuple
import time
import logging

import config
from scheduler import RoundTimer
from storage import ArchiveStore, archive_store

logger = logging.getLogger(__name__)

WAITING = "waiting"
ACTIVE = "active"    # round started by the push transport
PLAYING = "playing"  # round started by the poll transport
IN_ROUND = (ACTIVE, PLAYING)


def now_ms(clock: Callable[[], float] = time.time) -> int:
    return int(clock() * 1000)


class Room:
    def __init__(self, room_key: str, clock: Callable[[], float] = time.time):
        self.room_key = room_key
        self.clock = clock
        self.players: Dict[str, dict] = {}  # player_id -> {id, name, avatar, score, connection_id, connected, last_active}
        self.current_question: Optional[dict] = None
        self.selections: Dict[str, dict] = {}  # push round: player_id -> {option_index, time_taken, timestamp}
        self.current_selections: Dict[str, dict] = {}  # poll round, same shape
        self.scores: Dict[str, int] = {}
        self.host_id: Optional[str] = None  # connection id of the host
        self.game_state = WAITING
        self.round_ended = False
        self.generating_question = False
        self.question_start_time: Optional[int] = None  # epoch ms
        self.last_round_result: Optional[dict] = None
        self.question_history: List[dict] = []
        self.connections: Dict[str, object] = {}  # connection_id -> WebSocket
        self.msg_timestamps: Dict[str, list] = {}
        self.timer = RoundTimer()
        self.created_at = clock()
        self.last_active = clock()

    def touch(self):
        """Update last activity timestamp."""
        self.last_active = self.clock()

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = self.clock() if now is None else now
        return now - self.last_active > config.ROOM_INACTIVE_THRESHOLD

    def refresh_scores(self):
        self.scores = {pid: p.get("score", 0) for pid, p in self.players.items()}

    def round_selections(self) -> Dict[str, dict]:
        return self.current_selections if self.game_state == PLAYING else self.selections

    def connected_players(self) -> List[dict]:
        return [p for p in self.players.values() if p.get("connected")]

    def player_by_connection(self, connection_id: str) -> Optional[dict]:
        for player in self.players.values():
            if player.get("connection_id") == connection_id:
                return player
        return None

    def host_valid(self) -> bool:
        host = self.player_by_connection(self.host_id) if self.host_id else None
        return host is not None and host.get("connected", False)

    def roster(self) -> List[dict]:
        return [
            {"id": p["id"], "name": p["name"], "score": p.get("score", 0),
             "avatar": p.get("avatar"), "connected": p.get("connected", False)}
            for p in self.players.values()
        ]

    def room_state(self) -> dict:
        return {
            "type": "room_state",
            "players": self.roster(),
            "scores": dict(self.scores),
            "gameState": self.game_state,
        }

    def time_left(self, now: Optional[float] = None) -> float:
        if not self.current_question or self.question_start_time is None:
            return 0
        now = self.clock() if now is None else now
        max_time = self.current_question.get("maxTime", config.MAX_TIME)
        elapsed = (now * 1000 - self.question_start_time) / 1000
        return max(0.0, max_time - elapsed)

    def reset_scores(self) -> List[dict]:
        """Zero every score; returns the pre-reset entries."""
        previous = [
            {"id": p["id"], "name": p["name"], "score": p.get("score", 0), "avatar": p.get("avatar")}
            for p in self.players.values()
        ]
        for player in self.players.values():
            player["score"] = 0
        self.refresh_scores()
        return previous

    async def send_to(self, connection_id: str, message: dict) -> bool:
        ws = self.connections.get(connection_id)
        if not ws:
            return False
        try:
            await ws.send_json(message)
            return True
        except Exception:
            self.connections.pop(connection_id, None)
            return False

    async def broadcast(self, message: dict):
        disconnected = []
        for connection_id, ws in list(self.connections.items()):
            try:
                await ws.send_json(message)
            except Exception:
                disconnected.append(connection_id)
        # The receive loop of a dead socket performs the actual removal
        for connection_id in disconnected:
            self.connections.pop(connection_id, None)


class RoomStore:
    """Authoritative map of room key -> Room.

    Every mutation that has to keep the host and score-view invariants goes
    through here.
    """

    def __init__(self, archive: ArchiveStore = archive_store, clock: Callable[[], float] = time.time):
        self.rooms: Dict[str, Room] = {}
        self.archive = archive
        self.clock = clock

    def get(self, room_key: str) -> Optional[Room]:
        return self.rooms.get(room_key)

    def get_or_create(self, room_key: str) -> Room:
        room = self.rooms.get(room_key)
        if room is None:
            room = Room(room_key, clock=self.clock)
            self.rooms[room_key] = room
            logger.info("Room %s created", room_key)
        return room

    def _upsert(self, room: Room, identity: dict) -> dict:
        player_id = str(identity["id"])
        player = room.players.get(player_id)
        if player is None:
            restored = self.archive.recall(room.room_key, player_id) if self.archive else None
            player = {
                "id": player_id,
                "name": (identity.get("name") or player_id)[:config.MAX_PLAYER_NAME_LENGTH],
                "avatar": identity.get("avatar"),
                "score": restored or 0,
                "connection_id": None,
                "connected": False,
                "last_active": self.clock(),
            }
            room.players[player_id] = player
            if restored:
                logger.info("Restored score %d for player %s in room %s", restored, player_id, room.room_key)
        else:
            if identity.get("name"):
                player["name"] = identity["name"][:config.MAX_PLAYER_NAME_LENGTH]
            if identity.get("avatar") is not None:
                player["avatar"] = identity["avatar"]
        player["last_active"] = self.clock()
        return player

    def join(self, room: Room, identity: dict, connection_id: str) -> bool:
        """Bind a connected identity to the room; returns whether it is host."""
        player = self._upsert(room, identity)
        previous_connection = player.get("connection_id")
        player["connection_id"] = connection_id
        player["connected"] = True
        if room.host_id is None or room.host_id == previous_connection or not room.host_valid():
            room.host_id = connection_id
        room.refresh_scores()
        room.touch()
        return room.host_id == connection_id

    def register_guest(self, room: Room, player_id: str, name: Optional[str] = None) -> dict:
        """Record a poll-only player that has no persistent connection."""
        player = self._upsert(room, {"id": player_id, "name": str(name) if name else None})
        room.refresh_scores()
        return player

    def _reassign_host(self, room: Room) -> Optional[dict]:
        if room.host_valid():
            return None
        remaining = room.connected_players()
        room.host_id = remaining[0]["connection_id"] if remaining else None
        if remaining:
            logger.info("Host of room %s reassigned to %s", room.room_key, remaining[0]["id"])
            return remaining[0]
        return None

    def remove(self, room: Room, player_id: str) -> Tuple[Optional[dict], bool]:
        """Drop a player; returns (new host player if reassigned, room now empty)."""
        player = room.players.pop(player_id, None)
        room.selections.pop(player_id, None)
        room.current_selections.pop(player_id, None)
        room.scores.pop(player_id, None)
        if player is not None:
            if self.archive:
                self.archive.remember(room.room_key, player)
            if player.get("connection_id"):
                room.connections.pop(player["connection_id"], None)
        room.touch()
        new_host = self._reassign_host(room)
        room.refresh_scores()
        if not room.players:
            room.host_id = None
            return None, True
        return new_host, False

    def delete(self, room_key: str) -> Optional[Room]:
        """Retire a room; players still in it keep their score for the day."""
        room = self.rooms.pop(room_key, None)
        if room is not None:
            room.timer.cancel()
            if self.archive:
                for player in room.players.values():
                    self.archive.remember(room_key, player)
            # Late disconnects against the retired room find nobody to remove
            room.players.clear()
            room.refresh_scores()
            room.host_id = None
            logger.info("Room %s deleted", room_key)
        return room

    def cleanup_inactive(self, now: Optional[float] = None) -> List[Room]:
        """Delete rooms idle past the threshold; returns the retired rooms."""
        now = self.clock() if now is None else now
        expired = [room for room in self.rooms.values() if room.is_expired(now)]
        for room in expired:
            self.delete(room.room_key)
            logger.info("Cleaned up inactive room %s", room.room_key)
        return expired

    def evict_idle_players(self, room: Room, now: Optional[float] = None) -> Tuple[List[str], Optional[dict], bool]:
        """Remove players with no live connection idle past the threshold."""
        now = self.clock() if now is None else now
        idle = [
            pid for pid, p in room.players.items()
            if not p.get("connected") and now - p.get("last_active", now) > config.PLAYER_INACTIVE_THRESHOLD
        ]
        new_host, empty = None, not room.players
        for pid in idle:
            reassigned, empty = self.remove(room, pid)
            new_host = reassigned or new_host
        return idle, new_host, empty


room_store = RoomStore()
