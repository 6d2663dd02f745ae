from fastapi import WebSocket, WebSocketDisconnect
from datetime import datetime, timezone
from typing import Dict, List, Optional
import json
import math
import time
import uuid
import logging

import config
import identity
from analytics import Analytics, analytics
from question_bank import QuestionBank, TRIVIA, public_question, question_bank
from room_store import ACTIVE, WAITING, Room, RoomStore, now_ms, room_store
from scoring import score_round
from storage import ArchiveStore, archive_store

logger = logging.getLogger(__name__)

AUTH_FAILED_CLOSE_CODE = 4401
ROOM_CLOSED_CLOSE_CODE = 4000


class SocketManager:
    """Push transport: one WebSocket per player, server-initiated fan-out."""

    def __init__(self, store: RoomStore = room_store, bank: QuestionBank = question_bank,
                 archive: ArchiveStore = archive_store, stats: Analytics = analytics,
                 scoring_strategy: str = config.PUSH_SCORING_STRATEGY):
        self.store = store
        self.question_bank = bank
        self.archive = archive
        self.analytics = stats
        self.scoring_strategy = scoring_strategy
        self.allowed_origins: List[str] = []
        self.clock = time.time

    async def _reject(self, websocket: WebSocket, message: str):
        await websocket.send_json({"type": "error", "message": message})
        await websocket.close(code=AUTH_FAILED_CLOSE_CODE)

    async def authenticate(self, token: str, room_key: str) -> Optional[dict]:
        """Resolve the connecting identity; ``None`` means reject."""
        if not token or not room_key:
            return None
        try:
            return await identity.validate_token(token)
        except identity.IdentityError as e:
            logger.warning("Rejected connection to room %s: %s", room_key, e)
            return None
        except Exception:
            logger.exception("Socket authentication error")
            return None

    async def connect(self, websocket: WebSocket, token: str, room_key: str,
                      reconnecting: bool = False):
        # Validate WebSocket origin
        origin = websocket.headers.get("origin", "")
        if self.allowed_origins and origin not in self.allowed_origins:
            logger.warning("Rejected WebSocket from unauthorized origin: %s", origin)
            await websocket.close(code=1008)
            return

        await websocket.accept()
        if not token:
            await self._reject(websocket, "Missing token")
            return
        if not room_key:
            await self._reject(websocket, "Missing voice channel ID")
            return

        user = await self.authenticate(token, room_key)
        if user is None:
            await self._reject(websocket, "Invalid Discord token")
            return

        # Nothing below awaits until the join is complete
        connection_id = uuid.uuid4().hex
        room = self.store.get_or_create(room_key)
        existing = room.players.get(user["id"])
        stale_connection = existing.get("connection_id") if existing and existing.get("connected") else None
        room.connections[connection_id] = websocket
        is_host = self.store.join(room, user, connection_id)
        logger.info("Player %s joined room %s (host=%s, reconnecting=%s)",
                    user["id"], room_key, is_host, bool(reconnecting))

        if stale_connection and stale_connection != connection_id:
            await self._kick(room, stale_connection)

        await room.send_to(connection_id, {"type": "you_joined", "playerId": user["id"], "isHost": is_host})
        if reconnecting and existing:
            await room.send_to(connection_id, self.game_state_snapshot(room))
        else:
            await room.broadcast(room.room_state())

        try:
            while True:
                data = await websocket.receive_text()

                # Enforce message size limit
                if len(data) > config.MAX_WS_MESSAGE_SIZE:
                    await websocket.send_json({"type": "error", "message": "Message too large"})
                    continue

                # Per-connection rate limiting
                now = time.time()
                timestamps = room.msg_timestamps.setdefault(connection_id, [])
                timestamps[:] = [t for t in timestamps if now - t < 1.0]
                if len(timestamps) >= config.WS_RATE_LIMIT_PER_SEC:
                    await websocket.send_json({"type": "error", "message": "Too many messages"})
                    continue
                timestamps.append(now)

                try:
                    message = json.loads(data)
                except json.JSONDecodeError:
                    logger.warning("Malformed JSON from connection %s: %s", connection_id, data[:100])
                    await websocket.send_json({"type": "error", "message": "Invalid message format"})
                    continue
                if not isinstance(message, dict):
                    await websocket.send_json({"type": "error", "message": "Invalid message format"})
                    continue

                try:
                    await self.handle_message(room, connection_id, user["id"], message)
                except Exception:
                    logger.exception("Error handling %s in room %s", message.get("type"), room_key)
                    await websocket.send_json({"type": "error", "message": "Internal error"})
        except WebSocketDisconnect:
            logger.info("Connection %s disconnected from room %s", connection_id, room_key)
        except Exception:
            logger.exception("WebSocket error for connection %s in room %s", connection_id, room_key)
        finally:
            await self.disconnect(room, connection_id, user["id"])

    async def _kick(self, room: Room, connection_id: str):
        ws = room.connections.pop(connection_id, None)
        if not ws:
            return
        try:
            await ws.send_json({"type": "kicked", "message": "You joined from another device"})
            await ws.close()
        except Exception as e:
            logger.debug("Could not notify replaced connection %s: %s", connection_id, e)

    async def handle_message(self, room: Room, connection_id: str, player_id: str, message: dict):
        if self.store.get(room.room_key) is not room:
            logger.info("Ignoring %s for retired room %s", message.get("type"), room.room_key)
            return
        msg_type = message.get("type")
        room.touch()

        if msg_type == "start_question":
            await self.start_question(room, connection_id, message.get("kind", TRIVIA))
        elif msg_type == "select_option":
            await self.select_option(room, player_id, message.get("optionIndex"))
        else:
            logger.debug("Unknown message type %r from %s", msg_type, connection_id)

    async def start_question(self, room: Room, connection_id: str, kind: str = TRIVIA):
        # Only the host may start, and only between rounds
        if room.host_id != connection_id or room.game_state != WAITING:
            return
        if room.generating_question:
            return

        room.generating_question = True
        try:
            question = await self.question_bank.draw(kind)
        finally:
            room.generating_question = False
        if not question:
            logger.error("Question pool is empty; cannot start a round in room %s", room.room_key)
            return
        # State may have moved on while the pool was being read
        if room.game_state != WAITING or self.store.get(room.room_key) is not room:
            return

        start = now_ms(self.clock)
        room.current_question = {**question, "startTime": start, "maxTime": config.MAX_TIME}
        room.question_start_time = start
        room.selections = {}
        room.game_state = ACTIVE
        room.round_ended = False
        room.last_round_result = None
        room.touch()
        room.question_history.append({"questionId": question["id"], "startTime": start})
        self.analytics.record_round_started(room.room_key, list(room.players))
        room.timer.arm(config.MAX_TIME, self.resolve_round, room)
        logger.info("Round %s started in room %s", question["id"], room.room_key)

        await room.broadcast({
            "type": "question_started",
            "question": public_question(room.current_question),
            "startTime": start,
            "maxTime": config.MAX_TIME,
        })

    async def select_option(self, room: Room, player_id: str, option_index):
        if room.game_state != ACTIVE or not room.current_question:
            return
        player = room.players.get(player_id)
        if not player or player_id in room.selections:
            return
        options = room.current_question.get("options", [])
        if not isinstance(option_index, int) or isinstance(option_index, bool) \
                or not (0 <= option_index < len(options)):
            return

        timestamp = now_ms(self.clock)
        room.selections[player_id] = {
            "option_index": option_index,
            "time_taken": (timestamp - room.current_question["startTime"]) / 1000,
            "timestamp": timestamp,
        }
        player["last_active"] = self.clock()
        room.touch()
        self.analytics.record_answer(room.room_key, player_id)

        await room.broadcast({
            "type": "player_selected",
            "playerId": player_id,
            "optionIndex": option_index,
            "playerName": player["name"],
        })
        await self._resolve_if_complete(room)

    async def _resolve_if_complete(self, room: Room):
        if room.game_state != ACTIVE:
            return
        connected = room.connected_players()
        if connected and all(p["id"] in room.selections for p in connected):
            room.timer.cancel()
            await self.resolve_round(room)

    async def resolve_round(self, room: Room):
        """Score and reveal the current round; shared by timer expiry and early finish."""
        # Guard against double-fire (timer + all-answered race)
        if room.game_state != ACTIVE or room.current_question is None:
            return
        if self.store.get(room.room_key) is not room:
            return
        room.timer.cancel()

        question = room.current_question
        earned = score_round(self.scoring_strategy, question["correctIndex"], room.selections,
                             question["startTime"], question["maxTime"])
        for player_id, points in earned.items():
            if player_id in room.players:
                room.players[player_id]["score"] = room.players[player_id].get("score", 0) + points
        room.refresh_scores()

        result = {
            "type": "show_result",
            "questionId": question["id"],
            "correctIndex": question["correctIndex"],
            "scores": dict(room.scores),
            "selections": {pid: sel["option_index"] for pid, sel in room.selections.items()},
            "points": earned,
        }
        room.current_question = None
        room.question_start_time = None
        room.selections = {}
        room.game_state = WAITING
        room.last_round_result = result
        room.touch()
        logger.info("Round %s resolved in room %s (%d correct)", question["id"], room.room_key, len(earned))

        await room.broadcast(result)
        await room.broadcast(room.room_state())

    async def disconnect(self, room: Room, connection_id: str, player_id: str):
        room.connections.pop(connection_id, None)
        room.msg_timestamps.pop(connection_id, None)
        player = room.players.get(player_id)
        # A replaced connection closing must not remove the player
        if not player or player.get("connection_id") != connection_id:
            return

        new_host, empty = self.store.remove(room, player_id)
        logger.info("Player %s left room %s", player_id, room.room_key)
        if empty:
            if self.store.get(room.room_key) is room:
                self.store.delete(room.room_key)
            return
        await self._announce_departure(room, new_host)
        await self._resolve_if_complete(room)

    async def _announce_departure(self, room: Room, new_host: Optional[dict]):
        if new_host:
            await room.send_to(new_host["connection_id"], {
                "type": "you_joined",
                "playerId": new_host["id"],
                "isHost": True,
            })
        await room.broadcast(room.room_state())

    def game_state_snapshot(self, room: Room) -> dict:
        """Direct state sync for a reconnecting player."""
        question = room.current_question
        time_left = 0
        if question:
            elapsed = math.floor((now_ms(self.clock) - question["startTime"]) / 1000)
            time_left = max(0, question["maxTime"] - elapsed)
        return {
            "type": "game_state",
            "currentQuestion": public_question(question) if question else None,
            "startTime": question["startTime"] if question else None,
            "maxTime": question["maxTime"] if question else config.MAX_TIME,
            "selections": {pid: sel["option_index"] for pid, sel in room.round_selections().items()},
            "scores": dict(room.scores),
            "gameState": room.game_state,
            "timeLeft": time_left,
        }

    async def reset_leaderboards(self) -> Dict[str, List[dict]]:
        """Archive and zero every room's scores, then notify each room."""
        logger.info("Performing daily leaderboard reset")
        timestamp = datetime.now(timezone.utc).isoformat()
        previous_by_room: Dict[str, List[dict]] = {}
        for room_key, room in list(self.store.rooms.items()):
            previous = room.reset_scores()
            previous_by_room[room_key] = previous
            if previous:
                self.archive.archive(room_key, previous)
        self.analytics.reset_daily()
        self.archive.reset_daily()

        for room_key, previous in previous_by_room.items():
            room = self.store.get(room_key)
            if room is None:
                continue
            await room.broadcast({"type": "leaderboard_reset", "previousScores": previous, "timestamp": timestamp})
            await room.broadcast(room.room_state())
        logger.info("Leaderboard reset complete (%d rooms)", len(previous_by_room))
        return previous_by_room

    async def _close_retired(self, room: Room):
        """Disconnect every socket still bound to a room that no longer exists."""
        for connection_id, ws in list(room.connections.items()):
            room.connections.pop(connection_id, None)
            room.msg_timestamps.pop(connection_id, None)
            try:
                await ws.send_json({"type": "error", "message": "Room closed due to inactivity"})
                await ws.close(code=ROOM_CLOSED_CLOSE_CODE)
            except Exception as e:
                logger.debug("Could not close connection %s of retired room %s: %s",
                             connection_id, room.room_key, e)

    async def sweep_inactive(self, now: Optional[float] = None) -> List[str]:
        """Evict inactive rooms, then idle connectionless players."""
        expired = self.store.cleanup_inactive(now)
        for room in expired:
            await self._close_retired(room)
        for room_key, room in list(self.store.rooms.items()):
            removed, new_host, empty = self.store.evict_idle_players(room, now)
            if not removed:
                continue
            logger.info("Evicted %d idle players from room %s", len(removed), room_key)
            if empty:
                self.store.delete(room_key)
                continue
            await self._announce_departure(room, new_host)
        return [room.room_key for room in expired]


socket_manager = SocketManager()
