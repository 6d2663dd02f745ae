"""Pull transport: stateless request/response access to the shared rooms.

Pollers have no persistent identity and retry freely, so every operation here
must converge when called more than once for the same round:

- ``start_question`` hands back the question already in progress instead of
  minting a second one, and waits behind an in-flight generation.
- ``end_round`` scores a round once and replays the cached result afterwards.
"""
import asyncio
import logging
import math
import time
from typing import Optional

import config
from analytics import Analytics, analytics
from question_bank import QuestionBank, TRIVIA, public_question, question_bank
from room_store import ACTIVE, IN_ROUND, PLAYING, WAITING, Room, RoomStore, now_ms, room_store
from scoring import score_round

logger = logging.getLogger(__name__)

EVENTS = ("start_question", "select_option", "end_round")


def _as_time_taken(value) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if math.isnan(value) or value <= 0:
        return None
    return float(value)


class PollGateway:
    def __init__(self, store: RoomStore = room_store, bank: QuestionBank = question_bank,
                 stats: Analytics = analytics, sleep=asyncio.sleep):
        self.store = store
        self.question_bank = bank
        self.analytics = stats
        self.scoring_strategy = config.POLL_SCORING_STRATEGY
        self.clock = time.time
        self._sleep = sleep

    async def handle_event(self, event: str, data: dict) -> dict:
        room_id = data.get("roomId")
        if not room_id:
            return {"success": False, "error": "roomId is required"}
        # Polling clients have no connection that would create the room
        room = self.store.get_or_create(str(room_id))

        if event == "start_question":
            return await self.start_question(room, bool(data.get("forceNew")), data.get("kind") or TRIVIA)
        if event == "select_option":
            return self.select_option(room, data)
        if event == "end_round":
            return self.end_round(room)
        return {"success": False, "error": f"Unknown event: {event}"}

    def _question_response(self, room: Room, is_new: bool) -> dict:
        question = room.current_question
        return {
            "success": True,
            "action": "question_started",
            "question": public_question(question),
            "timeLeft": config.MAX_TIME if is_new else room.time_left(),
            "startTime": question["startTime"],
            "maxTime": question["maxTime"],
            "isNew": is_new,
        }

    async def start_question(self, room: Room, force_new: bool = False, kind: str = TRIVIA) -> dict:
        waited = False
        for _ in range(config.GENERATION_MAX_WAITS):
            if not room.generating_question:
                break
            waited = True
            await self._sleep(config.GENERATION_WAIT_SECONDS)
        if room.generating_question:
            logger.warning("Question generation still in flight for room %s", room.room_key)
            return {"success": False, "error": "Question generation in progress", "retry": True}

        if room.current_question is not None:
            # A follower that waited takes the question its leader just made;
            # a live-session round is never replaced from here.
            if waited or not force_new or room.game_state == ACTIVE:
                return self._question_response(room, is_new=False)

        room.generating_question = True
        try:
            question = await self.question_bank.draw(kind)
        finally:
            room.generating_question = False
        if not question:
            logger.error("Question pool is empty; cannot start a round in room %s", room.room_key)
            return {"success": False, "error": "No questions available"}
        if room.game_state == ACTIVE and room.current_question is not None:
            return self._question_response(room, is_new=False)

        start = now_ms(self.clock)
        room.current_question = {**question, "startTime": start, "maxTime": config.MAX_TIME}
        room.question_start_time = start
        room.game_state = PLAYING
        room.round_ended = False
        room.last_round_result = None
        room.current_selections = {}
        room.touch()
        room.question_history.append({"questionId": question["id"], "startTime": start})
        self.analytics.record_round_started(room.room_key, list(room.players))
        logger.info("Round %s started in room %s via polling", question["id"], room.room_key)
        return self._question_response(room, is_new=True)

    def select_option(self, room: Room, data: dict) -> dict:
        player_id = data.get("playerId")
        if not player_id:
            return {"success": False, "error": "playerId is required"}
        player_id = str(player_id)
        if room.game_state not in IN_ROUND or room.current_question is None or room.round_ended:
            return {"success": True, "message": "Selection ignored"}

        option_index = data.get("optionIndex")
        options = room.current_question.get("options", [])
        if not isinstance(option_index, int) or isinstance(option_index, bool) \
                or not (0 <= option_index < len(options)):
            return {"success": True, "message": "Selection ignored"}
        if room.game_state == ACTIVE and player_id in room.selections:
            return {"success": True, "message": "Selection ignored"}

        player = room.players.get(player_id)
        if player is None or not player.get("connected"):
            player = self.store.register_guest(room, player_id, data.get("playerName"))

        timestamp = now_ms(self.clock)
        if room.game_state == ACTIVE:
            return self._select_live(room, player, option_index, timestamp)

        time_taken = _as_time_taken(data.get("timeTaken"))
        if time_taken is None:
            time_taken = (timestamp - room.current_question["startTime"]) / 1000

        previous = room.current_selections.get(player_id)
        is_change = previous is not None and previous["option_index"] != option_index
        room.current_selections[player_id] = {
            "option_index": option_index,
            "time_taken": time_taken,
            "timestamp": timestamp,
        }
        player["last_active"] = self.clock()
        room.touch()
        if previous is None:
            self.analytics.record_answer(room.room_key, player_id)

        logger.info("Player %s %s option %d in room %s (%d selections)", player_id,
                    "changed to" if is_change else "selected", option_index,
                    room.room_key, len(room.current_selections))
        return {"success": True, "message": "Selection changed" if is_change else "Selection recorded"}

    def _select_live(self, room: Room, player: dict, option_index: int, timestamp: int) -> dict:
        """Record a guest answer into a round owned by the live session.

        Live rounds keep the first answer and time it on the server; the
        session timer scores it with everyone else's.
        """
        room.selections[player["id"]] = {
            "option_index": option_index,
            "time_taken": (timestamp - room.current_question["startTime"]) / 1000,
            "timestamp": timestamp,
        }
        player["last_active"] = self.clock()
        room.touch()
        self.analytics.record_answer(room.room_key, player["id"])
        logger.info("Guest %s selected option %d in live round of room %s",
                    player["id"], option_index, room.room_key)
        return {"success": True, "message": "Selection recorded"}

    def end_round(self, room: Room) -> dict:
        if room.round_ended and room.last_round_result is not None:
            return {"success": True, "action": "round_complete", "data": room.last_round_result}
        if room.game_state == ACTIVE:
            return {"success": False, "error": "Round is managed by the live session"}

        question = room.current_question
        if question is None:
            return {
                "success": True,
                "action": "round_complete",
                "data": {"selections": {}, "scores": dict(room.scores),
                         "correctAnswer": None, "correctIndex": None},
            }

        earned = score_round(self.scoring_strategy, question["correctIndex"], room.current_selections,
                             question["startTime"], question["maxTime"])
        for player_id, points in earned.items():
            player = room.players.get(player_id) or self.store.register_guest(room, player_id)
            player["score"] = player.get("score", 0) + points
        room.refresh_scores()

        result = {
            "questionId": question["id"],
            "selections": {pid: sel["option_index"] for pid, sel in room.current_selections.items()},
            "scores": dict(room.scores),
            "correctAnswer": question["answer"],
            "correctIndex": question["correctIndex"],
            "points": earned,
        }
        room.round_ended = True
        room.last_round_result = result
        room.current_question = None
        room.question_start_time = None
        room.current_selections = {}
        room.game_state = WAITING
        room.touch()
        logger.info("Round %s resolved in room %s via polling (%d correct)",
                    question["id"], room.room_key, len(earned))
        return {"success": True, "action": "round_complete", "data": result}

    def game_state(self, room_key: str) -> dict:
        """Read-only snapshot; creates an empty room record if none exists yet."""
        room = self.store.get_or_create(room_key)
        question = room.current_question
        return {
            "success": True,
            "roomId": room_key,
            "currentQuestion": public_question(question) if question else None,
            "startTime": question["startTime"] if question else None,
            "timeLeft": room.time_left() if question else config.MAX_TIME,
            "gameState": room.game_state,
            "roundEnded": room.round_ended,
            "showResult": room.round_ended,
            "lastResult": room.last_round_result if room.round_ended else None,
            "selections": {pid: sel["option_index"] for pid, sel in room.round_selections().items()},
            "scores": dict(room.scores),
            "players": room.roster(),
        }


poll_gateway = PollGateway()
