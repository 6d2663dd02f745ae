import logging
from datetime import datetime, timezone
from typing import Iterable

logger = logging.getLogger(__name__)


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


class Analytics:
    """Process-wide play counters, with a daily slice reset by the scheduler."""

    def __init__(self):
        self.total_games_played = 0
        self.total_questions_answered = 0
        self.active_channels: set = set()
        self.reset_daily()

    def reset_daily(self):
        self.daily_date = _today()
        self.daily_games_played = 0
        self.daily_questions_answered = 0
        self.daily_unique_players: set = set()

    def record_round_started(self, room_key: str, player_ids: Iterable[str]):
        self.total_games_played += 1
        self.daily_games_played += 1
        self.active_channels.add(room_key)
        self.daily_unique_players.update(player_ids)

    def record_answer(self, room_key: str, player_id: str):
        self.total_questions_answered += 1
        self.daily_questions_answered += 1
        self.active_channels.add(room_key)
        self.daily_unique_players.add(player_id)

    def snapshot(self, current_sessions: int = 0) -> dict:
        return {
            "totalGamesPlayed": self.total_games_played,
            "totalQuestionsAnswered": self.total_questions_answered,
            "activeChannels": len(self.active_channels),
            "dailyStats": {
                "date": self.daily_date,
                "gamesPlayed": self.daily_games_played,
                "questionsAnswered": self.daily_questions_answered,
                "uniquePlayers": len(self.daily_unique_players),
            },
            "currentSessions": current_sessions,
        }


analytics = Analytics()
